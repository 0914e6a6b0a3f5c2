"""Static code domains and clinical reference tables.

Code sets are the subset relevant to the NY oncology claims feed; the
clinical tables encode the gender, drug and age restrictions used by the
business rules.
"""

import re

# ---------------------------------------------------------------------------
# Code domains
# ---------------------------------------------------------------------------

# Letter, digit, digit-or-letter, then an optional extension of up to 4 chars.
# U is reserved by WHO and not used in ICD-10-CM.
ICD10_PATTERN = re.compile(r"^[A-TV-Z][0-9][0-9A-Z](\.?[0-9A-Z]{1,4})?$")

# Values known to be synthetic junk even though some pass the lexical check.
INVALID_ICD10_CODES = frozenset({"X999", "X99.9", "XXX", "000", "0000", "UNK"})

# Level II HCPCS (letter + 4 digits) or CPT category I/II/III (4 digits + digit/F/T).
HCPCS_PATTERN = re.compile(r"^([A-V][0-9]{4}|[0-9]{4}[0-9FT])$")

INVALID_HCPCS_CODES = frozenset({"ZZZ99", "00000", "99999"})

# CMS place-of-service code set; 99 ("other") is excluded for this feed.
VALID_POS_CODES = frozenset(
    [f"{c:02d}" for c in range(1, 27)]
    + ["31", "32", "33", "34", "41", "42"]
    + [str(c) for c in range(49, 63)]
    + ["65", "66", "71", "72", "81"]
)

VALID_GENDERS = frozenset({"M", "F"})

# First three digits of every New York ZIP code.
NY_ZIP_PREFIXES = frozenset(["005", "063"] + [str(p) for p in range(100, 150)])

AMOUNT_COLUMNS = (
    "Charge_Amount",
    "Allowed_Amount",
    "Paid_Amount",
    "Patient_Responsibility",
    "Adjustment_Amount",
)

DATE_COLUMNS = (
    "Service_Date",
    "Service_From_Date",
    "Service_To_Date",
    "Claim_Submission_Date",
    "Claim_Adjudication_Date",
    "Admission_Date",
    "Discharge_Date",
)

# ---------------------------------------------------------------------------
# Clinical / benefit tables
# ---------------------------------------------------------------------------

# Prefixes compare against codes with the dot removed.
FEMALE_ONLY_DX_PREFIXES = ("O", "Z34", "Z1231", "N60", "N63")
MALE_ONLY_DX_PREFIXES = ("C61", "N40", "Z125")

MALE_ONLY_DRUGS = frozenset({"tamsulosin", "finasteride", "dutasteride", "alfuzosin", "silodosin"})
FEMALE_ASSOCIATED_DRUGS = frozenset(
    {"tamoxifen", "letrozole", "anastrozole", "clomiphene", "medroxyprogesterone"}
)

BPH_PROSTATE_FAMILY = ("N40", "C61", "Z125")
BREAST_CANCER_FAMILY = ("C50", "Z17", "D05", "Z853")

DRUG_DIAGNOSIS_FAMILIES = {
    "tamsulosin": ("BPH/prostate", BPH_PROSTATE_FAMILY),
    "finasteride": ("BPH/prostate", BPH_PROSTATE_FAMILY),
    "dutasteride": ("BPH/prostate", BPH_PROSTATE_FAMILY),
    "alfuzosin": ("BPH/prostate", BPH_PROSTATE_FAMILY),
    "silodosin": ("BPH/prostate", BPH_PROSTATE_FAMILY),
    "tamoxifen": ("breast cancer", BREAST_CANCER_FAMILY),
    "letrozole": ("breast cancer", BREAST_CANCER_FAMILY),
    "anastrozole": ("breast cancer", BREAST_CANCER_FAMILY),
}

# Patients younger than this should not receive adult urology medication.
MINIMUM_AGE_BY_DRUG = {drug: 13 for drug in MALE_ONLY_DRUGS}


def strip_code(code: str) -> str:
    """Uppercase a diagnosis or procedure code and drop dots and spaces."""
    return code.strip().upper().replace(".", "").replace(" ", "")


def has_prefix(code: str, prefixes) -> str | None:
    """Return the first matching prefix for a dotless code, if any."""
    bare = strip_code(code)
    for prefix in prefixes:
        if bare.startswith(prefix):
            return prefix
    return None


def is_ny_zip(zip_code: str) -> bool:
    digits = zip_code.strip()[:5]
    if len(digits) < 3 or not digits[:3].isdigit():
        return False
    return digits[:3] in NY_ZIP_PREFIXES