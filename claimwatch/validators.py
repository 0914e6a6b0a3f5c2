"""Data-quality rules: schema drift and single-field row checks."""

from collections import Counter

from claimwatch import reference as ref
from claimwatch.cohorts import peer_key
from claimwatch.errors import SchemaError
from claimwatch.rules import Finding, Granularity, Rule, Stage

DQ = Stage.DATA_QUALITY


# ---------------------------------------------------------------------------
# Dataset-level
# ---------------------------------------------------------------------------

def validate_schema(dataset, ctx=None) -> list[Finding]:
    """Report schema drift once per dataset, never once per row."""
    if not dataset.columns:
        return [Finding("missing_columns", dataset.name, -1,
                        f"{dataset.name} has no column header; every required column is absent")]
    missing = [c for c in dataset.schema.required if c not in dataset.columns]
    if not missing:
        return []
    return [Finding("missing_columns", dataset.name, -1, str(SchemaError(dataset.name, missing)))]


# ---------------------------------------------------------------------------
# Row validators
# ---------------------------------------------------------------------------

def unparseable_field(row, ctx):
    if not row.errors:
        return None
    parts = [f"{e.column}={e.value!r} (expected {e.expected})" for e in row.errors]
    return f"Unparseable field(s): {'; '.join(parts)}"


def count_claim_ids(dataset, config):
    return Counter(row.get("Claim_ID") for row in dataset if row.get("Claim_ID"))


def duplicate_claim_id(row, ctx):
    claim_id = row.get("Claim_ID")
    if claim_id and ctx.state[claim_id] > 1:
        return f"Claim_ID {claim_id} appears on {ctx.state[claim_id]} rows"
    return None


def negative_amount(row, ctx):
    negatives = [f"{c}={row.get(c):.2f}" for c in ref.AMOUNT_COLUMNS
                 if row.get(c) is not None and row.get(c) < 0]
    if negatives:
        return f"Negative amount(s): {', '.join(negatives)}"
    return None


def charge_magnified(row, ctx):
    charge = row.get("Charge_Amount")
    key = peer_key(row)
    if charge is None or key is None or key not in ctx.cohorts.charge:
        return None
    peer = ctx.cohorts.charge[key]
    limit = peer.median * ctx.config.charge_multiplier
    if peer.median > 0 and charge > limit:
        return (f"Charge_Amount {charge:,.2f} is {charge / peer.median:.1f}x the peer median "
                f"{peer.median:,.2f} for {key} (limit {ctx.config.charge_multiplier:g}x)")
    return None


def invalid_icd10(row, ctx):
    code = row.get("Diagnosis_Code_Primary")
    if code is None:
        return None
    normalized = code.strip().upper()
    if normalized in ref.INVALID_ICD10_CODES or not ref.ICD10_PATTERN.match(normalized):
        return f"Diagnosis_Code_Primary {code!r} is not a valid ICD-10 code"
    return None


def invalid_hcpcs(row, ctx):
    code = row.get("Drug_HCPCS_Code")
    if code is None:
        return None
    normalized = code.strip().upper()
    if normalized in ref.INVALID_HCPCS_CODES or not ref.HCPCS_PATTERN.match(normalized):
        return f"Drug_HCPCS_Code {code!r} is not a valid HCPCS code"
    return None


def invalid_pos(row, ctx):
    code = row.get("Place_of_Service_Code")
    if code is None:
        return None
    normalized = code.strip().zfill(2)
    if normalized not in ref.VALID_POS_CODES:
        return f"Place_of_Service_Code {code!r} is not a valid place-of-service code"
    return None


def age_out_of_range(row, ctx):
    age = row.get("Patient_Age")
    if age is not None and (age < 0 or age > 120):
        return f"Patient_Age {age} is outside 0-120"
    return None


def gender_invalid(row, ctx):
    gender = row.values.get("Patient_Gender")
    if gender is None or gender.strip().upper() not in ref.VALID_GENDERS:
        return f"Patient_Gender {gender!r} is not one of M, F"
    return None


def date_outside_window(row, ctx):
    start, end = ctx.config.date_window_start, ctx.config.date_window_end
    outside = [f"{c}={row.get(c).isoformat()}" for c in ref.DATE_COLUMNS
               if row.get(c) is not None and not start <= row.get(c) <= end]
    if outside:
        return f"Date(s) outside {start.isoformat()}..{end.isoformat()}: {', '.join(outside)}"
    return None


def zip_out_of_state(row, ctx):
    state = (row.get("State") or "").strip().upper()
    zip_code = row.get("Patient_ZIP")
    if state == "NY" and zip_code is not None and not ref.is_ny_zip(zip_code):
        return f"State is NY but Patient_ZIP {zip_code} is not a New York ZIP"
    return None


RULES = [
    Rule("missing_columns", DQ, Granularity.COHORT, validate_schema,
         severity="high", title="Missing columns"),
    Rule("unparseable_field", DQ, Granularity.ROW, unparseable_field,
         title="Unparseable field"),
    Rule("duplicate_claim_id", DQ, Granularity.ROW, duplicate_claim_id,
         reads=("Claim_ID",), prepare=count_claim_ids, severity="high",
         title="Duplicate Claim_ID"),
    Rule("negative_amount", DQ, Granularity.ROW, negative_amount,
         severity="high", title="Negative amounts"),
    Rule("charge_magnified", DQ, Granularity.ROW, charge_magnified,
         reads=("Charge_Amount",), title="Charge magnified"),
    Rule("invalid_icd10", DQ, Granularity.ROW, invalid_icd10,
         reads=("Diagnosis_Code_Primary",), title="Invalid ICD-10"),
    Rule("invalid_hcpcs", DQ, Granularity.ROW, invalid_hcpcs,
         reads=("Drug_HCPCS_Code",), title="Invalid HCPCS"),
    Rule("invalid_pos", DQ, Granularity.ROW, invalid_pos,
         reads=("Place_of_Service_Code",), title="Invalid place of service"),
    Rule("age_out_of_range", DQ, Granularity.ROW, age_out_of_range,
         reads=("Patient_Age",), title="Age out of range"),
    Rule("gender_invalid", DQ, Granularity.ROW, gender_invalid,
         reads=("Patient_Gender",), title="Gender invalid"),
    Rule("date_outside_window", DQ, Granularity.ROW, date_outside_window,
         title="Dates outside window"),
    Rule("zip_out_of_state", DQ, Granularity.ROW, zip_out_of_state,
         reads=("State", "Patient_ZIP"), title="ZIP out of state"),
]
