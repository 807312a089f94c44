#!/usr/bin/env python
"""Run the conditional execution engine until interrupted.

Usage:
    python scripts/run_engine.py --config config.yaml
    python scripts/run_engine.py --config config.yaml --log-level DEBUG --no-console

Credentials come from BINANCE_API_KEY / BINANCE_API_SECRET or the JSON config
file (see condexec.secrets). Orders are created through the order store; use
scripts/order_manager.py to inspect or cancel them.
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Project root on sys.path so `condexec` imports when run as a plain script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from condexec.config import EngineConfig
from condexec.errors import TradingError
from condexec.event_loop import build_engine, build_venues
from condexec.logging_setup import logger, setup_logging
from condexec.secrets import load_credentials


def main():
    parser = argparse.ArgumentParser(description="Conditional execution engine")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--credentials", default=None, help="Credentials JSON file (overrides default location)")
    parser.add_argument("--log-level", default=None, help="Override persistence.log_level")
    parser.add_argument("--no-console", action="store_true", help="Log to file only")
    args = parser.parse_args()

    try:
        config = EngineConfig.from_yaml(args.config)
    except (FileNotFoundError, TradingError) as e:
        print(f"Failed to load config: {e}")
        sys.exit(1)

    setup_logging(
        log_file=config.persistence.log_file,
        level=args.log_level or config.persistence.log_level,
        enable_console=not args.no_console,
    )
    logger.info(f"Config loaded | path={args.config} backend={config.persistence.backend}")

    try:
        credentials = load_credentials(args.credentials)
    except TradingError as e:
        logger.error(f"Failed to load credentials | error={e}")
        sys.exit(1)

    engine = build_engine(config, build_venues(config, credentials))
    try:
        asyncio.run(engine.runner.run_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted; engine stopped")
    finally:
        engine.store.close()


if __name__ == "__main__":
    main()
