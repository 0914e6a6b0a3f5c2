"""Anomaly CSV export/import and the JSON run report."""

import csv
import json
from datetime import datetime, timezone

from claimwatch.ledger import WIRE_COLUMNS, Anomaly, AnomalyLedger
from claimwatch.pipeline import default_rules
from claimwatch.rules import Stage
from claimwatch.schema import JOINED, SOURCES

VERSION = "1.0.0"

# Presentation names, used only when rendering for people
STAGE_DISPLAY_NAMES = {
    Stage.DATA_QUALITY: "Data Quality",
    Stage.SMART_DATA_QUALITY: "Smart Data Quality",
    Stage.BUSINESS: "Business Rules",
    Stage.PHARMACY_ANALYTICS: "Pharmacy Analytics",
}

# Older exports spell the joined source "join"
SOURCE_ALIASES = {"join": JOINED}


def parse_stage(value: str) -> Stage:
    """Map a canonical or display stage name back to the enum."""
    value = value.strip()
    for stage, display in STAGE_DISPLAY_NAMES.items():
        if value == display:
            return stage
    return Stage.from_value(value)


def parse_source(value: str) -> str:
    source = value.strip().lower()
    source = SOURCE_ALIASES.get(source, source)
    if source not in SOURCES:
        raise ValueError(f"unknown source: {value!r}")
    return source


def write_anomalies_csv(ledger: AnomalyLedger, output_path: str) -> None:
    """Write the ledger in wire format: one row per anomaly, fixed column order."""
    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=WIRE_COLUMNS)
        writer.writeheader()
        for anomaly in ledger:
            writer.writerow(anomaly.to_record())


def read_anomalies_csv(path: str) -> AnomalyLedger:
    """Read a wire-format anomalies CSV back into a ledger."""
    anomalies = []
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        missing = [c for c in WIRE_COLUMNS if c not in (reader.fieldnames or [])]
        if missing:
            raise ValueError(f"{path}: missing columns {', '.join(missing)}")
        for record in reader:
            anomalies.append(Anomaly(
                anomaly_id=int(record["anomaly_id"]),
                stage=parse_stage(record["stage"]),
                rule_id=record["rule"],
                source=parse_source(record["source"]),
                row_index=int(record["row_index"]),
                description=record["description"],
            ))
    return AnomalyLedger(anomalies)


def generate_report(ledger: AnomalyLedger, datasets: dict, rules=None) -> dict:
    """Summarize one detection run as a JSON-serializable dict.

    ``rules`` is the rule set the ledger came from; its titles and severities
    label the top rules.
    """
    catalogue = {r.rule_id: r for r in (rules if rules is not None else default_rules())}
    joined = datasets.get(JOINED)
    rows_scanned = {name: len(d) for name, d in datasets.items() if d is not None}
    by_stage = {}
    for (stage, rule_id), count in ledger.counts_by_stage_and_rule().items():
        by_stage.setdefault(STAGE_DISPLAY_NAMES[stage], {})[rule_id] = count

    return {
        "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "tool_version": VERSION,
        "rows_scanned": rows_scanned,
        "total_anomalies": len(ledger),
        "stage_counts": {
            STAGE_DISPLAY_NAMES[stage]: n for stage, n in ledger.stage_counts().items()
        },
        "rule_counts": by_stage,
        "top_rules": [
            {
                "rule": r,
                "title": catalogue[r].title if r in catalogue else "",
                "severity": catalogue[r].severity if r in catalogue else "",
                "count": n,
            }
            for r, n in ledger.top_rules()
        ],
        "dataset_stats": ledger.dataset_stats(datasets),
        "health": ledger.health_stats(len(joined) if joined is not None else 0),
        "diagnostics": [
            {
                "rule": d.rule_id,
                "source": d.source,
                "row_index": d.row_index,
                "message": d.message,
            }
            for d in ledger.diagnostics
        ],
    }


def write_report(report: dict, output_path: str) -> None:
    """Write the report to a JSON file."""
    with open(output_path, "w") as f:
        json.dump(report, f, indent=2, default=str)
    print(f"\nReport written to: {output_path}")
    for name, rows in report["rows_scanned"].items():
        print(f"  {name} rows scanned: {rows:,}")
    print(f"  Anomalies: {report['total_anomalies']:,}")
    for stage, count in report["stage_counts"].items():
        print(f"  {stage}: {count}")
    if report["diagnostics"]:
        print(f"  Rule failures: {len(report['diagnostics'])}")
