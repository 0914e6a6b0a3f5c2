"""Tests for the schema registry, typed rows and drug-name normalization."""

from datetime import date

import pytest

from claimwatch.errors import ParseError
from claimwatch.pipeline import run_detection
from claimwatch.schema import (
    Column,
    Dataset,
    get_schema,
    normalize_drug_name,
    parse_record,
)


class TestNormalizeDrugName:

    def test_trims_lowercases_and_collapses_whitespace(self):
        assert normalize_drug_name("  TAMSULOSIN   0.4 mg ") == "tamsulosin 0.4 mg"

    def test_none_is_empty(self):
        assert normalize_drug_name(None) == ""

    def test_tabs_and_newlines_collapse(self):
        assert normalize_drug_name("Letrozole\t2.5\nmg") == "letrozole 2.5 mg"


class TestColumnCoercion:

    def test_blank_becomes_none(self):
        assert Column("Paid_Amount", "float").coerce("  ") is None

    def test_currency_formatting_is_accepted(self):
        assert Column("Paid_Amount", "float").coerce("$1,250.50") == 1250.50

    def test_dates_in_supported_formats(self):
        col = Column("Service_Date", "date")
        assert col.coerce("2022-03-01") == date(2022, 3, 1)
        assert col.coerce("03/01/2022") == date(2022, 3, 1)
        assert col.coerce("20220301") == date(2022, 3, 1)

    def test_whole_float_is_an_int(self):
        assert Column("Patient_Age", "int").coerce("42.0") == 42

    def test_fractional_age_is_a_parse_error(self):
        with pytest.raises(ParseError) as exc:
            Column("Patient_Age", "int").coerce("42.5")
        assert exc.value.column == "Patient_Age"
        assert exc.value.value == "42.5"

    def test_garbage_date_is_a_parse_error(self):
        with pytest.raises(ParseError):
            Column("Service_Date", "date").coerce("not-a-date")

    @pytest.mark.parametrize("raw", ["NaN", "nan", "inf", "-inf", "Infinity", float("nan")])
    def test_non_finite_amount_is_a_parse_error(self, raw):
        with pytest.raises(ParseError):
            Column("Paid_Amount", "float").coerce(raw)


class TestDatasetSchema:

    def test_required_columns_are_fixed_per_dataset(self):
        assert "Prescriber_NPI" in get_schema("pharmacy").required
        assert "Provider_ID" in get_schema("medical").required
        assert "Match_Type" in get_schema("joined").required

    def test_unknown_dataset_is_rejected(self):
        with pytest.raises(ValueError):
            get_schema("dental")

    def test_parse_record_keeps_unknown_columns_as_extras(self):
        row = parse_record(get_schema("pharmacy"), 3,
                           {"Claim_ID": "RX1", "Paid_Amount": "12.5", "Vendor_Note": "x"})
        assert row.index == 3
        assert row["Paid_Amount"] == 12.5
        assert row.extras == {"Vendor_Note": "x"}
        assert "Vendor_Note" not in row

    def test_unparseable_cell_is_recorded_not_raised(self):
        row = parse_record(get_schema("pharmacy"), 0, {"Paid_Amount": "twelve"})
        assert row.get("Paid_Amount") is None
        assert [e.column for e in row.errors] == ["Paid_Amount"]


class TestDataset:

    def test_rows_keep_file_order(self, make_dataset):
        ds = make_dataset("pharmacy", {"Claim_ID": "A"}, {"Claim_ID": "B"}, {"Claim_ID": "C"})
        assert [r.index for r in ds] == [0, 1, 2]
        assert [r.get("Claim_ID") for r in ds] == ["A", "B", "C"]

    def test_has_columns(self, make_dataset):
        ds = make_dataset("pharmacy", {}, drop=("Charge_Amount",))
        assert not ds.has_columns("Charge_Amount")
        assert ds.has_columns("Paid_Amount", "Allowed_Amount")

    def test_columns_default_to_first_record_keys(self):
        ds = Dataset.from_records("medical", [{"Claim_ID": "M1", "Units": "2"}])
        assert ds.columns == ["Claim_ID", "Units"]
        assert len(ds) == 1

    def test_drug_property_is_normalized(self, make_dataset):
        ds = make_dataset("pharmacy", {"Drug_Name": "  FINASTERIDE 5MG"})
        assert ds.rows[0].drug == "finasteride 5mg"


class TestNonFiniteAmounts:

    def test_nan_paid_amount_is_reported_as_unparseable(self, make_dataset):
        ds = make_dataset("pharmacy", *[{"Drug_Name": "Leuprolide", "Paid_Amount": p}
                                        for p in ("NaN", "100", "101", "99", "102", "98")])
        ledger = run_detection({"pharmacy": ds, "medical": make_dataset("medical", {})})
        hits = ledger.filter(rule="unparseable_field", source="pharmacy")
        assert [a.row_index for a in hits] == [0]
        assert "Paid_Amount" in hits[0].description
        assert ds.rows[0].get("Paid_Amount") is None
        assert ledger.diagnostics == ()
