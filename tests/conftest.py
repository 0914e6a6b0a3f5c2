"""Shared test fixtures: synthetic claim records, datasets and a DuckDB connection."""

import csv
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from claimwatch.cohorts import build_cohort_tables
from claimwatch.config import DetectionConfig
from claimwatch.ingest import get_connection
from claimwatch.rules import RuleContext
from claimwatch.schema import JOINED, MEDICAL, PHARMACY, Dataset

# A clean claim for a female breast-cancer patient on tamoxifen in New York.
# Every row built from these templates passes every row rule unless overridden.
PHARMACY_ROW = {
    "Claim_ID": "RX0001",
    "Patient_ID": "P001",
    "Prescriber_NPI": "1000000001",
    "Drug_Name": "Tamoxifen",
    "Drug_HCPCS_Code": "J8999",
    "Diagnosis_Code_Primary": "C50.911",
    "Service_Date": "2022-03-01",
    "Claim_Submission_Date": "2022-03-02",
    "Claim_Adjudication_Date": "2022-03-05",
    "Quantity": "30",
    "Days_Supply": "30",
    "Charge_Amount": "120.00",
    "Allowed_Amount": "100.00",
    "Paid_Amount": "80.00",
    "Patient_Responsibility": "20.00",
    "Adjustment_Amount": "20.00",
    "Patient_Age": "55",
    "Patient_Gender": "F",
    "Patient_ZIP": "10001",
    "State": "NY",
    "Claim_Status": "Paid",
}

MEDICAL_ROW = {
    "Claim_ID": "MD0001",
    "Patient_ID": "P001",
    "Provider_ID": "1000000001",
    "Drug_Name": "Tamoxifen",
    "Drug_HCPCS_Code": "J8999",
    "Diagnosis_Code_Primary": "C50.911",
    "Place_of_Service_Code": "11",
    "Service_From_Date": "2022-03-01",
    "Service_To_Date": "2022-03-01",
    "Claim_Submission_Date": "2022-03-02",
    "Claim_Adjudication_Date": "2022-03-05",
    "Admission_Date": "",
    "Discharge_Date": "",
    "Units": "1",
    "Charge_Amount": "120.00",
    "Allowed_Amount": "100.00",
    "Paid_Amount": "80.00",
    "Patient_Responsibility": "20.00",
    "Adjustment_Amount": "20.00",
    "Patient_Age": "55",
    "Patient_Gender": "F",
    "Patient_ZIP": "10001",
    "State": "NY",
    "Claim_Status": "Paid",
}

JOINED_ROW = {
    **MEDICAL_ROW,
    "Rx_Claim_ID": "RX0001",
    "Prescriber_NPI": "1000000001",
    "Service_Date": "2022-03-01",
    "Quantity": "30",
    "Days_Supply": "30",
    "Rx_Paid_Amount": "80.00",
    "Match_Type": "strict",
}

TEMPLATES = {PHARMACY: PHARMACY_ROW, MEDICAL: MEDICAL_ROW, JOINED: JOINED_ROW}
PROVIDER_COLUMN = {PHARMACY: "Prescriber_NPI", MEDICAL: "Provider_ID", JOINED: "Provider_ID"}
CLAIM_PREFIX = {PHARMACY: "RX", MEDICAL: "MD", JOINED: "JN"}


def build_records(name: str, *overrides: dict, drop=()) -> list[dict]:
    """One record per override dict.

    Claim, patient and provider ids differ per row unless overridden, so
    rows do not accidentally form repeated claims or provider bursts.
    """
    records = []
    for i, override in enumerate(overrides):
        record = dict(TEMPLATES[name])
        record["Claim_ID"] = f"{CLAIM_PREFIX[name]}{i + 1:04d}"
        record["Patient_ID"] = f"P{i + 1:03d}"
        record[PROVIDER_COLUMN[name]] = str(1000000001 + i)
        record.update(override)
        for column in drop:
            record.pop(column, None)
        records.append(record)
    return records


def build_dataset(name: str, *overrides: dict, drop=()) -> Dataset:
    columns = [c for c in TEMPLATES[name] if c not in drop]
    return Dataset.from_records(name, build_records(name, *overrides, drop=drop), columns)


def write_csv(path, records: list[dict]) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=list(records[0].keys()))
        writer.writeheader()
        writer.writerows(records)


@pytest.fixture
def make_dataset():
    """Factory: make_dataset("pharmacy", {...}, {...}, drop=("Charge_Amount",))."""
    return build_dataset


@pytest.fixture
def make_context():
    """Factory for a RuleContext with cohort tables already computed."""
    def _make(dataset, config=None, previous=None):
        return RuleContext(dataset, config or DetectionConfig(), build_cohort_tables(dataset), previous)
    return _make


@pytest.fixture
def datasets():
    """A small clean snapshot of all three sources."""
    return {
        PHARMACY: build_dataset(PHARMACY, {}, {}, {}),
        MEDICAL: build_dataset(MEDICAL, {}, {}),
        JOINED: build_dataset(JOINED, {}),
    }


@pytest.fixture
def con():
    """DuckDB connection with the drug-name UDF registered."""
    c = get_connection("256MB")
    yield c
    c.close()


@pytest.fixture
def data_dir(tmp_path):
    """pharmacy.csv and medical.csv on disk; no joined.csv, so it is built."""
    write_csv(tmp_path / "pharmacy.csv", build_records(
        PHARMACY,
        {"Patient_ID": "P001", "Prescriber_NPI": "1111111111", "Drug_Name": "Tamoxifen",
         "Service_Date": "2022-03-01"},
        {"Patient_ID": "P002", "Prescriber_NPI": "2222222222", "Drug_Name": "LETROZOLE  2.5 mg",
         "Diagnosis_Code_Primary": "C50.912", "Service_Date": "2022-03-10"},
        {"Patient_ID": "P003", "Prescriber_NPI": "3333333333", "Drug_Name": "Anastrozole",
         "Service_Date": "2022-08-01"},
    ))
    write_csv(tmp_path / "medical.csv", build_records(
        MEDICAL,
        {"Patient_ID": "P001", "Provider_ID": "1111111111", "Drug_Name": " tamoxifen ",
         "Service_From_Date": "2022-03-01", "Service_To_Date": "2022-03-01"},
        {"Patient_ID": "P002", "Provider_ID": "9999999999", "Drug_Name": "letrozole 2.5 MG",
         "Service_From_Date": "2022-03-05", "Service_To_Date": "2022-03-05"},
        {"Patient_ID": "P004", "Provider_ID": "3333333333", "Drug_Name": "Anastrozole",
         "Service_From_Date": "2022-03-01", "Service_To_Date": "2022-03-01"},
    ))
    return tmp_path
