#!/usr/bin/env python3
"""
Ownership Discovery Runner

Runs batch ownership discovery over a records file, persists the resulting
artifact to the configured cache store and optionally screens suppliers
against an exported restricted-party list.

Usage:
    python run_discovery.py companies.json
    python run_discovery.py companies.csv --backend database --list entities.json \
        --screen "Shanghai Huawei Device Co., Ltd."
    python run_discovery.py companies.json --offline --list entities.json --screen-file suppliers.csv
"""

import sys
import json
import argparse
import logging
from pathlib import Path

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent))

from audit_logger import configure_logging
from config_manager import get_config, ConfigurationError
from database.connection import close_db
from pipeline import DiscoveryError, DiscoveryPipeline, build_cache_store, load_records_file
from restricted_list import RestrictedListUnavailableError, RestrictedPartyList, load_entries_file
from screener import InputValidationError, RiskScreeningEngine

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Discover ownership relationships and screen suppliers")
    parser.add_argument("records", help="JSON or CSV file of companies (name, aliases, country, address)")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--backend", choices=["memory", "database"],
                        help="Cache backend (overrides cache.backend)")
    parser.add_argument("--offline", action="store_true",
                        help="Heuristics and curated relationships only, no connector calls")
    parser.add_argument("--list", dest="list_file", help="Restricted-party list file (JSON or CSV)")
    parser.add_argument("--screen", action="append", default=[], metavar="NAME",
                        help="Supplier to screen after discovery (repeatable)")
    parser.add_argument("--screen-file", metavar="FILE",
                        help="Supplier file (JSON or CSV) to screen after discovery, with a portfolio summary")
    parser.add_argument("--output", help="Write the discovery artifact as JSON to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        config = get_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    configure_logging(config)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    if args.backend:
        config.cache.backend = args.backend

    try:
        records = load_records_file(args.records)
        pipeline = DiscoveryPipeline(
            config,
            connectors=[] if args.offline else None,
            cache_store=build_cache_store(config),
        )

        logger.info("=" * 50)
        logger.info("Ownership discovery over %d companies", len(records))
        logger.info("=" * 50)
        result = pipeline.run(records)
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))

        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                json.dump(result.artifact.to_dict(), f, indent=2, ensure_ascii=False)
            logger.info(f"Artifact written to {args.output}")

        if args.screen or args.screen_file:
            if not args.list_file:
                logger.error("--screen and --screen-file require --list")
                return 2
            restricted = RestrictedPartyList(load_entries_file(args.list_file))
            engine = RiskScreeningEngine(restricted, pipeline.graph_store, config,
                                         on_demand=None if args.offline else pipeline.discover_on_demand)
            try:
                for name in args.screen:
                    print(json.dumps(engine.screen(name).to_dict(), indent=2, ensure_ascii=False))
                if args.screen_file:
                    report = engine.screen_batch(load_records_file(args.screen_file))
                    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
            finally:
                engine.close()
    except (DiscoveryError, InputValidationError, RestrictedListUnavailableError) as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    finally:
        close_db()

    return 0


if __name__ == "__main__":
    sys.exit(main())
