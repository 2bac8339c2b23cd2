#!/usr/bin/env python3
"""
Crypto Sentinel
Main Entry Point

Usage:
    crypto-sentinel                    # Run with the mode set in config (paper.enabled)
    crypto-sentinel --paper            # Paper trading with REAL market data
    crypto-sentinel --live             # Force live trading (asks for confirmation)
    crypto-sentinel --config path.yaml # Use custom config file
    crypto-sentinel --status           # Show current status and exit
    crypto-sentinel --test             # Run one iteration of every loop and exit
"""

import asyncio
import argparse
import sys

from .core.scheduler import LoopType
from .core.trading_system import TradingSystem, run_trading_system
from .utils.logger import setup_logging, get_logger


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Crypto Sentinel - risk-managed core/satellite spot trading bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  crypto-sentinel                    Run in the mode set by the config file
  crypto-sentinel --paper            Paper trade with REAL market data
  crypto-sentinel --live             Trade with real funds on Binance
  crypto-sentinel --config my.yaml   Use custom configuration
  crypto-sentinel --status           Show daily stats and settings
  crypto-sentinel --test             Run single iteration test
        """
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--live",
        action="store_true",
        help="Run in LIVE mode (real trading), overriding the config."
    )
    mode.add_argument(
        "--paper",
        action="store_true",
        help="Paper trading with REAL market data but NO real trades."
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration YAML file"
    )

    parser.add_argument(
        "--status",
        action="store_true",
        help="Show current status and exit"
    )

    parser.add_argument(
        "--test",
        action="store_true",
        help="Run a single iteration of each loop and exit"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config)"
    )

    return parser.parse_args(argv)


def show_status(config_path: str = None, log_level: str = None):
    """Show persisted daily stats and tunable settings"""
    system = TradingSystem(config_path=config_path, log_level=log_level)
    status = system.get_status()
    risk = status["risk"]

    print("\n" + "=" * 60)
    print("CRYPTO SENTINEL STATUS")
    print("=" * 60)

    print(f"\nPairs: {status['pairs']}")
    print(f"Core: {status['core_coins']}")
    print(f"Paper trading: {status['paper_trading']}")

    print("\n--- Daily Stats ---")
    print(f"Date: {risk['date']}")
    print(f"Mode: {risk['mode'].upper()}" + (f" ({risk['halt_reason']})" if risk["halt_reason"] else ""))
    print(f"Initial Balance: {risk['initial_balance']:.2f}")
    print(f"Current Balance: {risk['current_balance']:.2f}")
    print(f"Daily PnL: {risk['daily_pnl'] * 100:.2f}%")
    print(f"Trades: {risk['trades_count']}/{risk['max_trades_per_day']}")

    print("\n--- Settings ---")
    for key, value in status["settings"].items():
        print(f"  {key}: {value}")

    print("\n" + "=" * 60)


async def run_test(config_path: str = None, paper_trading=None, log_level: str = None):
    """Run one iteration of every loop"""
    print("\n" + "=" * 60)
    print("RUNNING SINGLE ITERATION TEST")
    print("=" * 60)

    system = TradingSystem(config_path=config_path, paper_trading=paper_trading, log_level=log_level)
    try:
        await system.initialize()

        print("\n--- Scan ---")
        result = await system.scheduler.run_once(LoopType.SCAN)
        print(f"Pairs scanned: {result['pairs_scanned']}")
        print(f"Trades executed: {result['trades']}")
        if result["skipped"]:
            print(f"Skipped: {result['skipped']}")

        print("\n--- Trailing Stops ---")
        moved = await system.scheduler.run_once(LoopType.TRAILING)
        print(f"Stops ratcheted: {moved}")

        print("\n--- Heartbeat ---")
        await system.scheduler.run_once(LoopType.HEARTBEAT)

        risk = system.risk_manager.get_status()
        print("\n--- Final Status ---")
        print(f"Balance: {risk['current_balance']:.2f}")
        print(f"Mode: {risk['mode'].upper()}")
    finally:
        await system.stop()

    print("\n" + "=" * 60)
    print("TEST COMPLETE")
    print("=" * 60)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    setup_logging(level=args.log_level or "INFO")
    logger = get_logger(__name__)

    paper_trading = True if args.paper else (False if args.live else None)

    if args.live and not args.status:
        # Safety confirmation for live mode
        print("\n" + "!" * 60)
        print("WARNING: LIVE TRADING MODE")
        print("This will execute REAL trades with REAL money!")
        print("!" * 60)

        confirm = input("\nType 'CONFIRM' to proceed: ")
        if confirm != "CONFIRM":
            print("Aborted.")
            sys.exit(0)

    try:
        if args.status:
            show_status(args.config, args.log_level)
        elif args.test:
            asyncio.run(run_test(args.config, paper_trading, args.log_level))
        else:
            print("\n" + "=" * 60)
            print("STARTING CRYPTO SENTINEL")
            print("=" * 60)
            print("\nPress Ctrl+C to stop\n")

            asyncio.run(run_trading_system(
                config_path=args.config,
                paper_trading=paper_trading,
                log_level=args.log_level
            ))

    except KeyboardInterrupt:
        print("\nShutdown requested...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
