"""Anomaly ledger and the row index consumers query it through."""

from collections import Counter
from dataclasses import dataclass
from typing import Iterator

from claimwatch.rules import Stage
from claimwatch.schema import JOINED, SOURCES

WIRE_COLUMNS = ("anomaly_id", "stage", "rule", "source", "row_index", "description")


@dataclass(frozen=True)
class Anomaly:
    anomaly_id: int
    stage: Stage
    rule_id: str
    source: str
    row_index: int
    description: str

    @property
    def key(self) -> tuple:
        return (self.rule_id, self.source, self.row_index)

    def to_record(self) -> dict:
        """Flat wire-format record, in wire column order."""
        return {
            "anomaly_id": self.anomaly_id,
            "stage": self.stage.value,
            "rule": self.rule_id,
            "source": self.source,
            "row_index": str(self.row_index),
            "description": self.description,
        }


@dataclass(frozen=True)
class Diagnostic:
    """A rule that raised instead of returning a verdict."""

    rule_id: str
    source: str
    row_index: int
    message: str


class AnomalyLedger:
    """Ordered, deduplicated findings of one run plus their lookup maps.

    The maps are built in a single pass at construction and never updated;
    a changed ledger is a new ledger.
    """

    def __init__(self, anomalies, diagnostics=()):
        self._anomalies = tuple(anomalies)
        self.diagnostics = tuple(diagnostics)
        self._by_id: dict[int, Anomaly] = {}
        self._by_row: dict[tuple[str, int], list[Anomaly]] = {}
        self._counts: dict[tuple[Stage, str], int] = {}
        for anomaly in self._anomalies:
            self._by_id[anomaly.anomaly_id] = anomaly
            self._by_row.setdefault((anomaly.source, anomaly.row_index), []).append(anomaly)
            key = (anomaly.stage, anomaly.rule_id)
            self._counts[key] = self._counts.get(key, 0) + 1

    @property
    def anomalies(self) -> tuple:
        return self._anomalies

    def __len__(self) -> int:
        return len(self._anomalies)

    def __iter__(self) -> Iterator[Anomaly]:
        return iter(self._anomalies)

    def __eq__(self, other) -> bool:
        if not isinstance(other, AnomalyLedger):
            return NotImplemented
        return self._anomalies == other._anomalies

    def get_by_id(self, anomaly_id: int) -> Anomaly | None:
        return self._by_id.get(anomaly_id)

    def get_for_row(self, source: str, row_index: int) -> list[Anomaly]:
        """Anomalies for one row in production order (stage, rule, row)."""
        return list(self._by_row.get((source, row_index), ()))

    def counts_by_stage_and_rule(self) -> dict[tuple[Stage, str], int]:
        return dict(self._counts)

    # -- dashboard statistics ------------------------------------------------

    def stage_counts(self) -> dict[Stage, int]:
        counts = {stage: 0 for stage in Stage}
        for (stage, _), n in self._counts.items():
            counts[stage] += n
        return counts

    def rule_counts(self) -> dict[str, int]:
        counts: Counter = Counter()
        for (_, rule_id), n in self._counts.items():
            counts[rule_id] += n
        return dict(counts)

    def top_rules(self, n: int = 5) -> list[tuple[str, int]]:
        """Most frequent rules, ties broken by first appearance in the ledger."""
        ranked = sorted(self.rule_counts().items(), key=lambda item: -item[1])
        return ranked[:n]

    def anomalous_rows(self, source: str) -> set[int]:
        return {row for (src, row) in self._by_row if src == source and row >= 0}

    def health_stats(self, total_rows: int, source: str = JOINED) -> dict:
        anomalous = len(self.anomalous_rows(source))
        healthy = max(total_rows - anomalous, 0)
        return {
            "total_rows": total_rows,
            "healthy_rows": healthy,
            "anomalous_rows": anomalous,
            "healthy_percentage": (healthy / total_rows * 100.0) if total_rows else 0.0,
        }

    def dataset_stats(self, datasets: dict) -> dict:
        stats = {}
        for source in SOURCES:
            dataset = datasets.get(source)
            stats[source] = {
                "total": len(dataset) if dataset is not None else 0,
                "anomalous": sum(1 for a in self._anomalies if a.source == source),
            }
        return stats

    def filter(self, stage: Stage | None = None, rule: str | None = None,
               source: str | None = None) -> list[Anomaly]:
        return [
            a for a in self._anomalies
            if (stage is None or a.stage == stage)
            and (rule is None or a.rule_id == rule)
            and (source is None or a.source == source)
        ]
