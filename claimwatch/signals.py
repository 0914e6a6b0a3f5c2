"""Pharmacy analytics and peer-normalized outlier detectors.

Every detector here is a cohort rule: it reads the dataset plus the cohort
tables computed beforehand and returns findings anchored on the first row of
the cohort it flags.
"""

import logging

import numpy as np
from sklearn.ensemble import IsolationForest

from claimwatch.cohorts import (
    ISOLATION_FEATURES,
    PEER_METRICS,
    describe,
    exceeds,
    monthly_paid_totals,
    usable_cohorts,
)
from claimwatch.rules import Finding, Granularity, Rule, Stage

log = logging.getLogger("claimwatch.signals")

ANALYTICS = Stage.PHARMACY_ANALYTICS
PHARMACY_ONLY = ("pharmacy",)


def _fmt(value: float) -> str:
    return f"{value:,.2f}"


# ---------------------------------------------------------------------------
# Repeated claims
# ---------------------------------------------------------------------------

REPEAT_KEY = ("Patient_ID", "Prescriber_NPI", "Drug_Name", "Service_Date", "Quantity", "Days_Supply")


def repeated_claims(dataset, ctx) -> list[Finding]:
    """Same patient, prescriber, product, date, quantity and days under different Claim_IDs."""
    groups: dict = {}
    for row in dataset:
        key = tuple(row.drug if c == "Drug_Name" else row.get(c) for c in REPEAT_KEY)
        if any(part in (None, "") for part in key):
            continue
        groups.setdefault(key, []).append(row)

    findings = []
    for key, rows in groups.items():
        claim_ids = sorted({r.get("Claim_ID") for r in rows if r.get("Claim_ID")})
        if len(claim_ids) < 2:
            continue
        patient, prescriber, drug, day, qty, days = key
        findings.append(Finding(
            "repeated_claim", dataset.name, rows[0].index,
            f"Rows {', '.join(str(r.index) for r in rows)} repeat patient {patient}, "
            f"prescriber {prescriber}, {drug} on {day} (qty {qty:g}, {days:g} days) "
            f"under Claim_IDs {', '.join(claim_ids)}",
        ))
    return findings


# ---------------------------------------------------------------------------
# Quantity fence
# ---------------------------------------------------------------------------

def quantity_outliers(dataset, ctx) -> list[Finding]:
    cfg = ctx.config
    cohorts = usable_cohorts(ctx.cohorts.quantity, cfg.min_cohort_size, "quantity_iqr_outlier")
    findings = []
    for row in dataset:
        qty = row.get("Quantity")
        stat = cohorts.get(row.drug)
        if qty is None or stat is None or not stat.outside_fence(qty, cfg.iqr_multiplier):
            continue
        lo, hi = stat.fence(cfg.iqr_multiplier)
        findings.append(Finding(
            "quantity_iqr_outlier", dataset.name, row.index,
            f"Quantity {qty:g} for {row.drug} is outside the product fence "
            f"[{lo:g}, {hi:g}] (Q1={stat.q1:g}, Q3={stat.q3:g}, n={stat.count})",
        ))
    return findings


# ---------------------------------------------------------------------------
# Provider activity
# ---------------------------------------------------------------------------

def _provider_timelines(dataset) -> dict:
    schema = dataset.schema
    if not dataset.has_columns(schema.provider_column, schema.service_date_column):
        return {}
    timelines: dict = {}
    for row in dataset:
        provider = row.get(schema.provider_column)
        day = row.get(schema.service_date_column)
        if provider and day is not None:
            timelines.setdefault(provider, []).append((day, row.index))
    for entries in timelines.values():
        entries.sort()
    return timelines


def inactivity_gaps(dataset, ctx) -> list[Finding]:
    gap_days = ctx.config.inactivity_gap_days
    findings = []
    for provider, entries in _provider_timelines(dataset).items():
        for (prev_day, _), (day, index) in zip(entries, entries[1:]):
            gap = (day - prev_day).days
            if gap >= gap_days:
                findings.append(Finding(
                    "provider_inactivity_gap", dataset.name, index,
                    f"Provider {provider} had no claims for {gap} days "
                    f"({prev_day} to {day}, threshold {gap_days})",
                ))
    return findings


def claim_bursts(dataset, ctx) -> list[Finding]:
    window = ctx.config.burst_window_days
    minimum = ctx.config.burst_min_claims
    findings = []
    for provider, entries in _provider_timelines(dataset).items():
        i = 0
        while i < len(entries):
            start = entries[i][0]
            j = i
            while j < len(entries) and (entries[j][0] - start).days < window:
                j += 1
            if j - i >= minimum:
                findings.append(Finding(
                    "provider_claim_burst", dataset.name, entries[i][1],
                    f"Provider {provider} submitted {j - i} claims within {window} days "
                    f"starting {start} (rows {', '.join(str(e[1]) for e in entries[i:j])})",
                ))
                i = j
            else:
                i += 1
    return findings


# ---------------------------------------------------------------------------
# Monthly robust z-score
# ---------------------------------------------------------------------------

def _monthly_spikes(dataset, ctx, series_map: dict, rule_id: str, label) -> list[Finding]:
    cfg = ctx.config
    findings = []
    for series, months in series_map.items():
        if len(months) < cfg.min_cohort_size:
            log.debug("CohortTooSmallWarning: %s series %s has %d months", rule_id, series, len(months))
            continue
        stat = describe(series, [m.paid for m in months])
        for m in months:
            z = stat.zmad(m.paid)
            if z is None or not exceeds(z, cfg.monthly_z_threshold):
                continue
            kind = "spike" if z > 0 else "dip"
            findings.append(Finding(
                rule_id, dataset.name, m.anchor,
                f"{label(series)} monthly paid {kind} in {m.month}: {_fmt(m.paid)} vs median "
                f"{_fmt(stat.median)} (robust z={z:.2f}, threshold {cfg.monthly_z_threshold:g})",
            ))
    return findings


def provider_monthly_spikes(dataset, ctx) -> list[Finding]:
    return _monthly_spikes(dataset, ctx, ctx.cohorts.provider_monthly, "monthly_zscore_provider",
                           lambda s: f"Provider {s[0]} x {s[1]}")


def national_monthly_spikes(dataset, ctx) -> list[Finding]:
    return _monthly_spikes(dataset, ctx, ctx.cohorts.national_monthly, "monthly_zscore_national",
                           lambda s: f"National x {s[0]}")


# ---------------------------------------------------------------------------
# Vendor revision delta
# ---------------------------------------------------------------------------

def _flatten(series_map: dict) -> dict:
    return {series + (m.month,): m for series, months in series_map.items() for m in months}


def revision_deltas(previous: dict, current: dict) -> list[dict]:
    """Absolute and percentage change per (provider, drug, month).

    ``previous`` and ``current`` map keys to paid totals. Keys missing on
    one side count as zero there; ``pct`` is None when the previous total
    was zero.
    """
    deltas = []
    keys = list(current) + [k for k in previous if k not in current]
    for key in keys:
        before = previous.get(key, 0.0)
        after = current.get(key, 0.0)
        delta = after - before
        pct = (delta / before * 100.0) if before else None
        deltas.append({"key": key, "previous": before, "current": after,
                       "delta": delta, "pct": pct})
    return deltas


def is_material(change: dict, config) -> bool:
    if abs(change["delta"]) <= config.revision_abs_threshold:
        return False
    return change["pct"] is None or abs(change["pct"]) > config.revision_pct_threshold


def vendor_revisions(dataset, ctx) -> list[Finding]:
    if ctx.previous is None:
        return []
    current = _flatten(ctx.cohorts.provider_monthly)
    previous = _flatten(monthly_paid_totals(ctx.previous, by_provider=True))
    changes = revision_deltas({k: m.paid for k, m in previous.items()},
                              {k: m.paid for k, m in current.items()})
    findings, dropped = [], []
    for change in changes:
        if not is_material(change, ctx.config):
            continue
        provider, drug, month = change["key"]
        pct = "new" if change["pct"] is None else f"{change['pct']:+.1f}%"
        text = (f"Provider {provider} x {drug} {month}: paid {_fmt(change['previous'])} -> "
                f"{_fmt(change['current'])} (delta {change['delta']:+,.2f}, {pct})")
        if change["key"] in current:
            findings.append(Finding("vendor_revision_delta", dataset.name,
                                    current[change["key"]].anchor, text))
        else:
            dropped.append(text)
    if dropped:
        findings.append(Finding("vendor_revision_delta", dataset.name, -1,
                                "Totals removed in the new vendor drop: " + "; ".join(dropped)))
    return findings


# ---------------------------------------------------------------------------
# Peer-normalized outliers
# ---------------------------------------------------------------------------

def _by_drug(metrics: dict) -> dict:
    groups: dict = {}
    for m in metrics.values():
        groups.setdefault(m.drug, []).append(m)
    return groups


def peer_zmad_outliers(dataset, ctx) -> list[Finding]:
    """Provider x drug metrics far from the drug's peer median (|zMAD| above threshold).

    Cohorts with MAD = 0 cannot produce a score and are left to the IQR rule.
    """
    cfg = ctx.config
    findings = []
    for m in ctx.cohorts.metrics.values():
        hits = []
        for name in PEER_METRICS:
            stat = ctx.cohorts.peer[name].get(m.drug)
            value = m.metric(name)
            if stat is None or value is None or not stat.usable(cfg.min_cohort_size):
                continue
            z = stat.zmad(value)
            if z is not None and exceeds(z, cfg.zmad_threshold):
                hits.append(f"{name}={_fmt(value)} (peer median {_fmt(stat.median)}, zMAD={z:.2f})")
        if hits:
            findings.append(Finding(
                "peer_zmad_outlier", dataset.name, m.anchor,
                f"Provider {m.provider} x {m.drug} is far from peer median: {'; '.join(hits)}",
            ))
    return findings


def peer_iqr_outliers(dataset, ctx) -> list[Finding]:
    cfg = ctx.config
    findings = []
    for m in ctx.cohorts.metrics.values():
        hits = []
        for name in PEER_METRICS:
            stat = ctx.cohorts.peer[name].get(m.drug)
            value = m.metric(name)
            if stat is None or value is None or not stat.usable(cfg.min_cohort_size):
                continue
            if stat.outside_fence(value, cfg.iqr_multiplier):
                lo, hi = stat.fence(cfg.iqr_multiplier)
                hits.append(f"{name}={_fmt(value)} outside [{_fmt(lo)}, {_fmt(hi)}]")
        if hits:
            findings.append(Finding(
                "peer_iqr_outlier", dataset.name, m.anchor,
                f"Provider {m.provider} x {m.drug} is outside the peer IQR fence: {'; '.join(hits)}",
            ))
    return findings


def peer_feature_matrix(members: list, peer: dict) -> np.ndarray:
    """zMAD of every isolation feature for each provider x drug member.

    Missing values and zero-MAD features contribute 0.
    """
    rows = []
    for m in members:
        vector = []
        for name in ISOLATION_FEATURES:
            stat = peer[name].get(m.drug)
            value = m.metric(name)
            z = stat.zmad(value) if stat is not None and value is not None else None
            vector.append(0.0 if z is None else z)
        rows.append(vector)
    return np.array(rows, dtype=float)


def isolation_scores(features: np.ndarray, config) -> np.ndarray:
    """Path-length anomaly score per sample; higher means easier to isolate."""
    model = IsolationForest(
        n_estimators=config.isolation_trees,
        max_samples=min(config.isolation_subsample, len(features)),
        random_state=config.random_seed,
    )
    model.fit(features)
    return -model.score_samples(features)


def isolation_outliers(dataset, ctx) -> list[Finding]:
    cfg = ctx.config
    findings = []
    for drug, members in _by_drug(ctx.cohorts.metrics).items():
        if len(members) < cfg.min_cohort_size:
            log.debug("CohortTooSmallWarning: isolation cohort %s has %d providers", drug, len(members))
            continue
        features = peer_feature_matrix(members, ctx.cohorts.peer)
        scores = isolation_scores(features, cfg)
        for m, vector, score in zip(members, features, scores):
            if score <= cfg.isolation_threshold:
                continue
            top = int(np.argmax(np.abs(vector)))
            findings.append(Finding(
                "isolation_forest_outlier", dataset.name, m.anchor,
                f"Provider {m.provider} x {drug}: unusual combination of peer-normalized "
                f"features (isolation score {score:.3f}); top deviating feature is "
                f"{ISOLATION_FEATURES[top]} with |z|={abs(vector[top]):.2f}",
            ))
    return findings


def _cohort(rule_id, evaluate, reads=(), sources=PHARMACY_ONLY, title="", severity="medium"):
    return Rule(rule_id, ANALYTICS, Granularity.COHORT, evaluate, reads=reads,
                sources=sources, title=title, severity=severity)


RULES = [
    _cohort("repeated_claim", repeated_claims, reads=REPEAT_KEY + ("Claim_ID",),
            title="Repeated claim", severity="high"),
    _cohort("quantity_iqr_outlier", quantity_outliers, reads=("Quantity", "Drug_Name"),
            title="Abnormal quantity outlier"),
    _cohort("provider_inactivity_gap", inactivity_gaps, sources=("pharmacy", "medical"),
            title="Provider inactivity"),
    _cohort("provider_claim_burst", claim_bursts, sources=("pharmacy", "medical"),
            title="Provider claim burst"),
    _cohort("monthly_zscore_provider", provider_monthly_spikes,
            reads=("Paid_Amount", "Drug_Name"), title="Monthly spike/dip (provider x product)"),
    _cohort("monthly_zscore_national", national_monthly_spikes,
            reads=("Paid_Amount", "Drug_Name"), title="Monthly spike/dip (national x product)"),
    _cohort("vendor_revision_delta", vendor_revisions, reads=("Paid_Amount", "Drug_Name"),
            title="Vendor revision delta"),
    _cohort("peer_zmad_outlier", peer_zmad_outliers, reads=("Paid_Amount", "Drug_Name"),
            title="Manual peer outlier (zMAD)", severity="high"),
    _cohort("peer_iqr_outlier", peer_iqr_outliers, reads=("Paid_Amount", "Drug_Name"),
            title="Peer IQR outlier"),
    _cohort("isolation_forest_outlier", isolation_outliers, reads=("Paid_Amount", "Drug_Name"),
            title="Isolation Forest outlier"),
]
