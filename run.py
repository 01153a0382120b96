#!/usr/bin/env python3
"""
Command line entry point for the Poloniex client.
Streams the ticker or a market's order book, or prints account balances.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path

from polobot.client import PoloniexClient
from polobot.config import load_config
from polobot.connectors import SubscriptionControl
from polobot.errors import PoloniexError


def setup_logging(config) -> None:
    """Setup logging configuration."""
    log_level = getattr(logging, config.logging.level.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    if config.logging.file:
        # Create logs directory if it doesn't exist
        log_file = Path(config.logging.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def print_update(update) -> None:
    print(update.model_dump_json())


async def run_stream(config, topic: str) -> None:
    """Stream one topic until interrupted."""
    print(f"Streaming {topic} (Ctrl-C to stop)")
    print("=" * 40)

    control = SubscriptionControl()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, control.stop)
    except NotImplementedError:
        pass

    async with PoloniexClient(config=config) as client:
        if topic == "ticker":
            await client.subscribe_ticker(print_update, control)
        else:
            await client.subscribe_order_book(topic, print_update, control)


async def run_balances(config) -> None:
    """Print non-zero balances."""
    async with PoloniexClient(config=config) as client:
        balances = await client.get_balances()

    for currency, balance in sorted(balances.items()):
        if balance.available or balance.on_orders:
            print(f"{currency:>8}  available={balance.available}  on_orders={balance.on_orders}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Poloniex API client")
    parser.add_argument(
        "--config",
        help="Configuration file path (environment variables are used if omitted)"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("ticker", help="Stream the global ticker")
    book = subparsers.add_parser("book", help="Stream order book changes of a market")
    book.add_argument("pair", help="Market name, e.g. BTC_ETH")
    subparsers.add_parser("balances", help="Print account balances")

    args = parser.parse_args()

    try:
        config = load_config(args.config)

        if args.verbose:
            config.logging.level = "DEBUG"
            config.poloniex.debug = True

        setup_logging(config)

        if args.command == "ticker":
            asyncio.run(run_stream(config, "ticker"))
        elif args.command == "book":
            asyncio.run(run_stream(config, args.pair))
        elif args.command == "balances":
            asyncio.run(run_balances(config))

    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)
    except (PoloniexError, FileNotFoundError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
