"""Rule descriptors, stages and the ordered rule set."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

STAGE_ORDER = ("DATA_QUALITY", "SMART_DATA_QUALITY", "BUSINESS", "PHARMACY_ANALYTICS")


class Stage(Enum):
    """Detection stages; the value is the canonical name written to the ledger."""

    DATA_QUALITY = "Data Quality"
    SMART_DATA_QUALITY = "Smart Data Quality"
    BUSINESS = "Business"
    PHARMACY_ANALYTICS = "Pharmacy Analytics"

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self.name)

    @classmethod
    def from_value(cls, value: str) -> "Stage":
        for stage in cls:
            if stage.value == value:
                return stage
        raise ValueError(f"unknown stage: {value!r}")


class Granularity(Enum):
    ROW = "single-row"
    COHORT = "cohort"


@dataclass(frozen=True)
class Finding:
    """A rule hit before an anomaly id has been assigned."""

    rule_id: str
    source: str
    row_index: int
    description: str


@dataclass
class RuleContext:
    """Everything a rule may read while evaluating one dataset."""

    dataset: Any
    config: Any
    cohorts: Any = None
    previous: Any = None
    state: Any = None


@dataclass(frozen=True)
class Rule:
    """A named, staged check.

    Row rules are called as ``evaluate(row, ctx)`` and return a description
    string or ``None``. Cohort rules are called as ``evaluate(dataset, ctx)``
    and return an iterable of findings. ``reads`` lists the columns the rule
    needs; the rule is skipped for datasets lacking any of them. ``prepare``
    runs once per dataset before a row rule and its result lands in
    ``ctx.state``.
    """

    rule_id: str
    stage: Stage
    granularity: Granularity
    evaluate: Callable
    reads: tuple[str, ...] = ()
    sources: tuple[str, ...] = ("pharmacy", "medical", "joined")
    severity: str = "medium"
    prepare: Callable | None = None
    title: str = ""

    def applies_to(self, dataset) -> bool:
        return dataset.name in self.sources and dataset.has_columns(*self.reads)

    def missing_reads(self, dataset) -> list[str]:
        return [c for c in self.reads if c not in dataset.columns]


def order_rules(rules: list[Rule]) -> list[Rule]:
    """Sort by stage, keeping declaration order within a stage.

    Raises ValueError when two rules share an id, since anomaly identity
    depends on it.
    """
    seen = set()
    for rule in rules:
        if rule.rule_id in seen:
            raise ValueError(f"duplicate rule id: {rule.rule_id}")
        seen.add(rule.rule_id)
    return sorted(rules, key=lambda r: r.stage.rank)
