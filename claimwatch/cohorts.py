"""Cohort statistics engine.

Medians, MAD and quartiles are computed exactly from sorted values. Quartiles
use linear interpolation between closest ranks, the same definition as
DuckDB's ``quantile_cont``. MAD is stored raw; ``mad_scaled`` multiplies by
1.4826 so it estimates the standard deviation under normality, which makes
``0.6745 * (x - median) / mad`` and ``(x - median) / mad_scaled`` the same
robust z-score.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterable

from claimwatch.errors import CohortTooSmallWarning

log = logging.getLogger("claimwatch.cohorts")

MAD_SCALE = 1.4826
ZMAD_FACTOR = 0.6745

PEER_METRICS = ("cost_per_claim", "paid_per_unit", "paid_per_day")
ISOLATION_FEATURES = (
    "cost_per_claim",
    "paid_median",
    "paid_per_unit",
    "paid_per_day",
    "claims",
    "days",
)


# ---------------------------------------------------------------------------
# Exact order statistics
# ---------------------------------------------------------------------------

def quantile(sorted_values: list[float], q: float) -> float:
    """Linear-interpolated quantile of an already sorted, non-empty list."""
    if not sorted_values:
        raise ValueError("quantile of an empty sequence")
    pos = (len(sorted_values) - 1) * q
    lo = math.floor(pos)
    hi = math.ceil(pos)
    if lo == hi:
        return sorted_values[lo]
    return sorted_values[lo] + (sorted_values[hi] - sorted_values[lo]) * (pos - lo)


def median(values: Iterable[float]) -> float:
    return quantile(sorted(values), 0.5)


def median_absolute_deviation(values: list[float], center: float | None = None) -> float:
    if center is None:
        center = median(values)
    return median(abs(v - center) for v in values)


def exceeds(score: float, threshold: float) -> bool:
    """Strict magnitude test shared by every z-score rule."""
    return abs(score) > threshold


@dataclass(frozen=True)
class CohortStat:
    key: Any
    count: int
    mean: float
    median: float
    mad: float
    q1: float
    q3: float

    @property
    def mad_scaled(self) -> float:
        return self.mad * MAD_SCALE

    @property
    def iqr(self) -> float:
        return self.q3 - self.q1

    def fence(self, multiplier: float) -> tuple[float, float]:
        return self.q1 - multiplier * self.iqr, self.q3 + multiplier * self.iqr

    def outside_fence(self, value: float, multiplier: float) -> bool:
        lo, hi = self.fence(multiplier)
        return value < lo or value > hi

    def zmad(self, value: float) -> float | None:
        """Robust z-score, or None when MAD is zero and no score exists."""
        if self.mad == 0:
            return None
        return ZMAD_FACTOR * (value - self.median) / self.mad

    def usable(self, min_size: int) -> bool:
        return self.count >= min_size


def describe(key: Any, values: list[float]) -> CohortStat:
    ordered = sorted(values)
    med = quantile(ordered, 0.5)
    return CohortStat(
        key=key,
        count=len(ordered),
        mean=sum(ordered) / len(ordered),
        median=med,
        mad=median_absolute_deviation(ordered, med),
        q1=quantile(ordered, 0.25),
        q3=quantile(ordered, 0.75),
    )


def compute_cohort_stats(items: Iterable[Any], group_by: Callable[[Any], Hashable],
                         value: Callable[[Any], float | None] = lambda x: x) -> dict:
    """Group items, drop missing values, and describe each group.

    Groups whose key is None are skipped. Returns ``{key: CohortStat}`` in
    first-seen key order.
    """
    groups: dict = {}
    for item in items:
        key = group_by(item)
        v = value(item)
        if key is None or v is None:
            continue
        groups.setdefault(key, []).append(float(v))
    return {k: describe(k, vs) for k, vs in groups.items()}


def usable_cohorts(stats: dict, min_size: int, label: str) -> dict:
    """Filter out cohorts too small for robust statistics, logging each."""
    kept = {}
    for key, stat in stats.items():
        if stat.usable(min_size):
            kept[key] = stat
        else:
            log.debug("%s: %s (cohort %s has %d members, need %d)",
                      CohortTooSmallWarning.__name__, label, key, stat.count, min_size)
    return kept


# ---------------------------------------------------------------------------
# Peer aggregates
# ---------------------------------------------------------------------------

@dataclass
class ProviderDrugMetrics:
    provider: str
    drug: str
    rows: list[int] = field(default_factory=list)
    paid: list[float] = field(default_factory=list)
    quantity: float = 0.0
    days: float = 0.0

    @property
    def anchor(self) -> int:
        return self.rows[0]

    @property
    def claims(self) -> int:
        return len(self.rows)

    @property
    def paid_total(self) -> float:
        return sum(self.paid)

    @property
    def paid_median(self) -> float | None:
        return median(self.paid) if self.paid else None

    @property
    def cost_per_claim(self) -> float | None:
        return self.paid_total / self.claims if self.paid else None

    @property
    def paid_per_unit(self) -> float | None:
        return self.paid_total / self.quantity if self.paid and self.quantity > 0 else None

    @property
    def paid_per_day(self) -> float | None:
        return self.paid_total / self.days if self.paid and self.days > 0 else None

    def metric(self, name: str) -> float | None:
        return getattr(self, name)


@dataclass(frozen=True)
class MonthlyTotal:
    key: tuple
    month: str
    paid: float
    anchor: int


def month_of(row, date_column: str) -> str | None:
    d = row.get(date_column)
    return d.strftime("%Y-%m") if d is not None else None


def provider_drug_metrics(dataset) -> dict:
    """Aggregate rows per (provider, normalized drug) in first-seen order."""
    schema = dataset.schema
    metrics: dict = {}
    for row in dataset:
        provider = row.get(schema.provider_column)
        drug = row.drug
        if not provider or not drug:
            continue
        m = metrics.get((provider, drug))
        if m is None:
            m = metrics[(provider, drug)] = ProviderDrugMetrics(provider, drug)
        m.rows.append(row.index)
        paid = row.get("Paid_Amount")
        if paid is not None:
            m.paid.append(paid)
        m.quantity += row.get("Quantity", 0.0)
        m.days += row.get("Days_Supply", 0.0)
    return metrics


def monthly_paid_totals(dataset, by_provider: bool = True) -> dict:
    """Monthly paid totals per (provider, drug) or per drug nationally.

    Returns ``{series_key: [MonthlyTotal, ...]}`` with months ascending.
    """
    schema = dataset.schema
    buckets: dict = {}
    for row in dataset:
        month = month_of(row, schema.service_date_column)
        paid = row.get("Paid_Amount")
        drug = row.drug
        if month is None or paid is None or not drug:
            continue
        if by_provider:
            provider = row.get(schema.provider_column)
            if not provider:
                continue
            series = (provider, drug)
        else:
            series = (drug,)
        slot = buckets.setdefault(series, {})
        if month in slot:
            total, anchor = slot[month]
            slot[month] = (total + paid, anchor)
        else:
            slot[month] = (paid, row.index)
    return {
        series: [MonthlyTotal(series, month, total, anchor)
                 for month, (total, anchor) in sorted(months.items())]
        for series, months in buckets.items()
    }


# ---------------------------------------------------------------------------
# Per-dataset bundle
# ---------------------------------------------------------------------------

@dataclass
class CohortTables:
    """All cohort statistics for one dataset, read-only once built."""

    metrics: dict = field(default_factory=dict)
    peer: dict = field(default_factory=dict)
    charge: dict = field(default_factory=dict)
    quantity: dict = field(default_factory=dict)
    provider_monthly: dict = field(default_factory=dict)
    national_monthly: dict = field(default_factory=dict)


def peer_key(row) -> str | None:
    """Peer group for charge comparisons: normalized drug, else HCPCS code."""
    return row.drug or row.get("Drug_HCPCS_Code") or None


def build_cohort_tables(dataset) -> CohortTables:
    """Compute every aggregate the outlier detectors read.

    Aggregates whose inputs are missing from the dataset are left empty.
    """
    tables = CohortTables()
    schema = dataset.schema

    if dataset.has_columns("Charge_Amount"):
        tables.charge = compute_cohort_stats(dataset, peer_key, lambda r: r.get("Charge_Amount"))

    if dataset.has_columns("Quantity", "Drug_Name"):
        tables.quantity = compute_cohort_stats(dataset, lambda r: r.drug or None,
                                               lambda r: r.get("Quantity"))

    if dataset.has_columns(schema.provider_column, "Drug_Name", "Paid_Amount"):
        tables.metrics = provider_drug_metrics(dataset)
        for name in ISOLATION_FEATURES:
            tables.peer[name] = compute_cohort_stats(
                tables.metrics.values(), lambda m: m.drug, lambda m, n=name: m.metric(n))
        if dataset.has_columns(schema.service_date_column):
            tables.provider_monthly = monthly_paid_totals(dataset, by_provider=True)
            tables.national_monthly = monthly_paid_totals(dataset, by_provider=False)

    log.info("%s cohorts: %d provider x drug, %d drug charge peers, %d quantity peers",
             dataset.name, len(tables.metrics), len(tables.charge), len(tables.quantity))
    return tables
