#!/usr/bin/env python3
"""
Claims Anomaly Detection Engine
===============================
Loads pharmacy, medical and joined claims extracts and runs the rule
catalogue over them in a fixed stage order:

1. Data Quality (row validators, schema and type checks)
2. Smart Data Quality (cross-field consistency)
3. Business (clinical and benefit rules)
4. Pharmacy Analytics (cohort statistics, peer outliers, activity
   patterns, vendor revisions, isolation forest)

Writes the anomaly ledger as a flat CSV (anomaly_id, stage, rule, source,
row_index, description) plus a JSON run report.

Uses DuckDB for loading and joining the extracts.
"""

import argparse
import logging
import sys
import time
from pathlib import Path

import requests

from claimwatch.config import DetectionConfig, config_from_dict, load_config
from claimwatch.errors import ConfigError, MissingDatasetError
from claimwatch.ingest import fetch_datasets, get_connection, load_all, load_csv
from claimwatch.output import VERSION, generate_report, write_anomalies_csv, write_report
from claimwatch.pipeline import run_detection
from claimwatch.schema import PHARMACY

SCRIPT_DIR = Path(__file__).resolve().parent
DATA_DIR = SCRIPT_DIR / "data"
OUTPUT_FILE = SCRIPT_DIR / "anomalies.csv"
REPORT_FILE = SCRIPT_DIR / "anomaly_report.json"

log = logging.getLogger("claimwatch")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Claims Anomaly Detection Engine"
    )
    parser.add_argument("--data-dir", default=str(DATA_DIR),
                        help="Directory holding pharmacy.csv, medical.csv and optionally joined.csv")
    parser.add_argument("--data-url", default=None,
                        help="Base URL to download missing CSVs from")
    parser.add_argument("--output", default=str(OUTPUT_FILE),
                        help="Output anomalies CSV path")
    parser.add_argument("--report", default=str(REPORT_FILE),
                        help="Output JSON report path")
    parser.add_argument("--config", default=None,
                        help="JSON file with threshold overrides")
    parser.add_argument("--memory-limit", default="1GB",
                        help="DuckDB memory limit (default: 1GB)")
    parser.add_argument("--previous-pharmacy", default=None,
                        help="Previous vendor drop of pharmacy.csv for revision deltas")
    parser.add_argument("--zmad-threshold", type=float, default=None,
                        help="Peer outlier |zMAD| threshold (default: 4.5)")
    parser.add_argument("--monthly-z-threshold", type=float, default=None,
                        help="Monthly spike |z| threshold (default: 3.0)")
    parser.add_argument("--charge-multiplier", type=float, default=None,
                        help="Charge magnification multiplier (default: 10)")
    parser.add_argument("--min-cohort-size", type=int, default=None,
                        help="Minimum cohort size for robust statistics (default: 5)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Log at DEBUG level")
    return parser


def resolve_config(args) -> DetectionConfig:
    """Config file first, then command-line threshold flags on top."""
    config = load_config(args.config) if args.config else DetectionConfig()
    return config_from_dict({
        "zmad_threshold": args.zmad_threshold,
        "monthly_z_threshold": args.monthly_z_threshold,
        "charge_multiplier": args.charge_multiplier,
        "min_cohort_size": args.min_cohort_size,
    }, base=config)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    start_time = time.time()
    log.info("=" * 70)
    log.info("Claims Anomaly Detection Engine v%s", VERSION)
    log.info("=" * 70)

    # Step 0: Configuration
    log.info("--- Step 0: Loading configuration ---")
    try:
        config = resolve_config(args)
    except ConfigError as e:
        log.error("Invalid configuration: %s", e)
        return 2
    log.info("zMAD > %s | monthly |z| > %s | charge x%s | min cohort %d",
             config.zmad_threshold, config.monthly_z_threshold,
             config.charge_multiplier, config.min_cohort_size)

    # Step 1: Data files
    data_dir = Path(args.data_dir)
    if args.data_url:
        log.info("--- Step 1: Fetching data files ---")
        try:
            fetch_datasets(args.data_url, data_dir)
        except requests.RequestException as e:
            log.error("Download failed: %s", e)
            return 1

    # Step 2: Load and join
    log.info("--- Step 2: Loading claims with DuckDB ---")
    con = get_connection(args.memory_limit)
    try:
        datasets = load_all(data_dir, con, config.relaxed_join_window_days)
        previous = None
        if args.previous_pharmacy:
            log.info("Loading previous pharmacy drop: %s", args.previous_pharmacy)
            previous = load_csv(con, PHARMACY, args.previous_pharmacy, table="previous_pharmacy")
    except FileNotFoundError as e:
        log.error("%s", e)
        con.close()
        return 1

    # Step 3: Detection
    log.info("--- Step 3: Running detection ---")
    try:
        ledger = run_detection(datasets, config, previous=previous)
    except (ConfigError, MissingDatasetError) as e:
        log.error("Detection aborted: %s", e)
        return 1
    finally:
        con.close()

    # Step 4: Write output
    log.info("--- Step 4: Writing output ---")
    write_anomalies_csv(ledger, args.output)
    log.info("Anomalies written to: %s", args.output)
    report = generate_report(ledger, datasets)
    report["config"] = config.to_dict()
    write_report(report, args.report)

    elapsed = time.time() - start_time
    log.info("=" * 70)
    log.info("DETECTION COMPLETE")
    log.info("  Total anomalies:   %s", f"{len(ledger):,}")
    log.info("  Rule failures:     %d", len(ledger.diagnostics))
    log.info("  Time elapsed:      %.1f seconds", elapsed)
    log.info("=" * 70)
    for rule_id, count in ledger.top_rules(10):
        log.info("  %-35s %d", rule_id, count)
    return 0


if __name__ == "__main__":
    sys.exit(main())
