"""Tests for the cohort statistics engine."""

import logging

import pytest

from claimwatch.cohorts import (
    build_cohort_tables,
    compute_cohort_stats,
    describe,
    exceeds,
    median_absolute_deviation,
    monthly_paid_totals,
    quantile,
    usable_cohorts,
)


class TestOrderStatistics:

    def test_quantile_interpolates(self):
        values = [1.0, 2.0, 3.0, 4.0]
        assert quantile(values, 0.5) == 2.5
        assert quantile(values, 0.25) == 1.75
        assert quantile(values, 0.75) == 3.25

    def test_quantile_of_empty_raises(self):
        with pytest.raises(ValueError):
            quantile([], 0.5)

    def test_mad(self):
        assert median_absolute_deviation([1.0, 1.0, 2.0, 2.0, 4.0, 6.0, 9.0]) == 1.0

    def test_describe_skewed_cohort(self):
        stat = describe("drug", [10, 10, 10, 10, 1000])
        assert stat.median == 10
        assert stat.mad == 0
        assert stat.q1 == 10 and stat.q3 == 10
        assert stat.count == 5

    def test_mad_scaled(self):
        stat = describe("k", [1.0, 2.0, 3.0, 4.0, 5.0])
        assert stat.mad == 1.0
        assert stat.mad_scaled == pytest.approx(1.4826)


class TestRobustZScore:

    def test_zero_mad_has_no_score(self):
        assert describe("k", [5.0] * 6).zmad(5.0) is None
        assert describe("k", [5.0] * 6).zmad(500.0) is None

    def test_zmad_matches_scaled_form(self):
        stat = describe("k", [10.0, 12.0, 13.0, 15.0, 40.0])
        assert stat.zmad(40.0) == pytest.approx((40.0 - stat.median) / stat.mad_scaled, rel=1e-4)

    def test_threshold_is_strict(self):
        assert not exceeds(4.5, 4.5)
        assert not exceeds(-4.5, 4.5)
        assert exceeds(4.50001, 4.5)
        assert exceeds(-4.50001, 4.5)


class TestIqrFence:

    def test_fence_bounds(self):
        stat = describe("k", [1.0, 2.0, 3.0, 4.0])
        assert stat.iqr == 1.5
        assert stat.fence(3.0) == (1.75 - 4.5, 3.25 + 4.5)

    def test_zero_iqr_fence_flags_anything_different(self):
        stat = describe("k", [10, 10, 10, 10, 1000])
        assert stat.outside_fence(1000, 3.0)
        assert not stat.outside_fence(10, 3.0)


class TestCohortGrouping:

    def test_groups_skip_missing_keys_and_values(self):
        items = [("a", 1.0), ("a", 3.0), (None, 9.0), ("b", None), ("b", 2.0)]
        stats = compute_cohort_stats(items, lambda x: x[0], lambda x: x[1])
        assert list(stats) == ["a", "b"]
        assert stats["a"].median == 2.0
        assert stats["b"].count == 1

    def test_small_cohorts_are_excluded_and_logged(self, caplog):
        stats = {"big": describe("big", [1.0] * 5), "small": describe("small", [1.0] * 4)}
        with caplog.at_level(logging.DEBUG, logger="claimwatch.cohorts"):
            kept = usable_cohorts(stats, 5, "test")
        assert list(kept) == ["big"]
        assert "CohortTooSmallWarning" in caplog.text


class TestCohortTables:

    def test_provider_drug_metrics(self, make_dataset):
        ds = make_dataset("pharmacy",
                          {"Prescriber_NPI": "A", "Paid_Amount": "100", "Quantity": "10", "Days_Supply": "5"},
                          {"Prescriber_NPI": "B"},
                          {"Prescriber_NPI": "A", "Paid_Amount": "50", "Quantity": "20", "Days_Supply": "25"})
        tables = build_cohort_tables(ds)
        m = tables.metrics[("A", "tamoxifen")]
        assert m.rows == [0, 2]
        assert m.anchor == 0
        assert m.cost_per_claim == 75.0
        assert m.paid_per_unit == 5.0
        assert m.paid_per_day == 5.0
        assert m.paid_median == 75.0

    def test_charge_cohorts_need_the_column(self, make_dataset):
        ds = make_dataset("pharmacy", {}, drop=("Charge_Amount",))
        assert build_cohort_tables(ds).charge == {}

    def test_monthly_totals_sum_per_month(self, make_dataset):
        ds = make_dataset("pharmacy",
                          {"Prescriber_NPI": "A", "Service_Date": "2022-01-05"},
                          {"Prescriber_NPI": "A", "Service_Date": "2022-01-20"},
                          {"Prescriber_NPI": "A", "Service_Date": "2022-02-01"})
        series = monthly_paid_totals(ds)[("A", "tamoxifen")]
        assert [(m.month, m.paid, m.anchor) for m in series] == [
            ("2022-01", 160.0, 0), ("2022-02", 80.0, 2)]

    def test_national_series_spans_providers(self, make_dataset):
        ds = make_dataset("pharmacy", {"Service_Date": "2022-01-05"}, {"Service_Date": "2022-01-06"})
        national = monthly_paid_totals(ds, by_provider=False)
        assert [m.paid for m in national[("tamoxifen",)]] == [160.0]
