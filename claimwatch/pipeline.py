"""Anomaly aggregator: runs every rule in stage order and builds the ledger."""

import logging
import time

from claimwatch import business, cross_field, signals, validators
from claimwatch.cohorts import build_cohort_tables
from claimwatch.config import DetectionConfig
from claimwatch.errors import MissingDatasetError
from claimwatch.ledger import Anomaly, AnomalyLedger, Diagnostic
from claimwatch.rules import Finding, Granularity, Rule, RuleContext, order_rules
from claimwatch.schema import MEDICAL, PHARMACY, SOURCES

log = logging.getLogger("claimwatch.pipeline")

REQUIRED_DATASETS = (PHARMACY, MEDICAL)


def default_rules() -> list[Rule]:
    """The full rule catalogue in evaluation order."""
    return order_rules(validators.RULES + cross_field.RULES + business.RULES + signals.RULES)


def evaluate_row_rule(rule: Rule, dataset, ctx: RuleContext,
                      diagnostics: list[Diagnostic]) -> list[Finding]:
    """Run a row rule over every row; a failing row becomes a diagnostic."""
    findings = []
    for row in dataset:
        try:
            description = rule.evaluate(row, ctx)
        except Exception as e:
            log.warning("Rule %s failed on %s row %d: %s", rule.rule_id, dataset.name, row.index, e)
            diagnostics.append(Diagnostic(rule.rule_id, dataset.name, row.index, repr(e)))
            continue
        if description:
            findings.append(Finding(rule.rule_id, dataset.name, row.index, description))
    return findings


def evaluate_rule(rule: Rule, dataset, ctx: RuleContext,
                  diagnostics: list[Diagnostic]) -> list[Finding]:
    """Evaluate one rule against one dataset, isolating its failures."""
    try:
        if rule.granularity is Granularity.ROW:
            ctx.state = rule.prepare(dataset, ctx.config) if rule.prepare else None
            findings = evaluate_row_rule(rule, dataset, ctx, diagnostics)
        else:
            findings = list(rule.evaluate(dataset, ctx))
    except Exception as e:
        log.warning("Rule %s failed on %s: %s", rule.rule_id, dataset.name, e, exc_info=True)
        diagnostics.append(Diagnostic(rule.rule_id, dataset.name, -1, repr(e)))
        return []
    finally:
        ctx.state = None
    return sorted(findings, key=lambda f: f.row_index)


def assign_ids(findings: list[Finding], stages: dict) -> list[Anomaly]:
    """Drop repeated (rule, source, row) triples and number the rest from 1."""
    seen = set()
    anomalies = []
    for f in findings:
        key = (f.rule_id, f.source, f.row_index)
        if key in seen:
            log.debug("Dropping repeated finding %s", key)
            continue
        seen.add(key)
        anomalies.append(Anomaly(len(anomalies) + 1, stages[f.rule_id], f.rule_id,
                                 f.source, f.row_index, f.description))
    return anomalies


def run_detection(datasets: dict, config: DetectionConfig | None = None,
                  previous=None, rules: list[Rule] | None = None) -> AnomalyLedger:
    """Run the whole rule catalogue over an immutable dataset snapshot.

    ``datasets`` maps source names to loaded ``Dataset`` objects; pharmacy
    and medical are required, joined is optional. ``previous`` is an
    optional earlier pharmacy vendor drop for revision deltas. The result
    depends only on the inputs, the config and the rule order.
    """
    start = time.time()
    config = (config or DetectionConfig()).validate()
    for name in REQUIRED_DATASETS:
        if datasets.get(name) is None:
            raise MissingDatasetError(name)
    rules = order_rules(rules) if rules is not None else default_rules()
    present = [datasets[s] for s in SOURCES if datasets.get(s) is not None]

    log.info("=== Cohort statistics ===")
    cohorts = {d.name: build_cohort_tables(d) for d in present}

    findings: list[Finding] = []
    diagnostics: list[Diagnostic] = []
    stage = None
    for rule in rules:
        if rule.stage is not stage:
            stage = rule.stage
            log.info("=== Stage: %s ===", stage.value)
        hits = 0
        for dataset in present:
            if dataset.name not in rule.sources:
                continue
            if not rule.applies_to(dataset):
                log.info("Skipping %s on %s: missing %s", rule.rule_id, dataset.name,
                         ", ".join(rule.missing_reads(dataset)))
                continue
            ctx = RuleContext(dataset, config, cohorts[dataset.name],
                              previous if dataset.name == PHARMACY else None)
            batch = evaluate_rule(rule, dataset, ctx, diagnostics)
            hits += len(batch)
            findings.extend(batch)
        log.info("  %-34s %d", rule.rule_id, hits)

    anomalies = assign_ids(findings, {r.rule_id: r.stage for r in rules})
    log.info("Detection finished: %d anomalies, %d diagnostics in %.1fs",
             len(anomalies), len(diagnostics), time.time() - start)
    return AnomalyLedger(anomalies, diagnostics)
