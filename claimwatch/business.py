"""Clinical and benefit rules backed by the reference tables."""

from claimwatch import reference as ref
from claimwatch.rules import Granularity, Rule, Stage

BUSINESS = Stage.BUSINESS


def lookup_drug(row, table) -> str | None:
    """Find a row's drug in a reference table by full name or leading word.

    Names are normalized first, so "  TAMSULOSIN  0.4 mg" matches
    "tamsulosin".
    """
    name = row.drug
    if not name:
        return None
    if name in table:
        return name
    head = name.split(" ", 1)[0]
    return head if head in table else None


def _gender(row) -> str:
    return (row.get("Patient_Gender") or "").strip().upper()


def male_female_diagnosis_mismatch(row, ctx):
    code = row.get("Diagnosis_Code_Primary")
    if _gender(row) != "M" or not code:
        return None
    prefix = ref.has_prefix(code, ref.FEMALE_ONLY_DX_PREFIXES)
    if prefix:
        return f"Male patient with female-only diagnosis {code} (prefix {prefix})"
    return None


def female_male_diagnosis_mismatch(row, ctx):
    code = row.get("Diagnosis_Code_Primary")
    if _gender(row) != "F" or not code:
        return None
    prefix = ref.has_prefix(code, ref.MALE_ONLY_DX_PREFIXES)
    if prefix:
        return f"Female patient with male-only diagnosis {code} (prefix {prefix})"
    return None


def female_male_drug_mismatch(row, ctx):
    drug = lookup_drug(row, ref.MALE_ONLY_DRUGS)
    if _gender(row) == "F" and drug:
        return f"Female patient on male-only drug {drug}"
    return None


def male_female_drug_mismatch(row, ctx):
    drug = lookup_drug(row, ref.FEMALE_ASSOCIATED_DRUGS)
    if _gender(row) == "M" and drug:
        return f"Male patient on female-associated drug {drug}"
    return None


def drug_diagnosis_mismatch(row, ctx):
    drug = lookup_drug(row, ref.DRUG_DIAGNOSIS_FAMILIES)
    code = row.get("Diagnosis_Code_Primary")
    if not drug or not code:
        return None
    family, prefixes = ref.DRUG_DIAGNOSIS_FAMILIES[drug]
    if ref.has_prefix(code, prefixes) is None:
        return f"Drug {drug} expects a {family} diagnosis but Diagnosis_Code_Primary is {code}"
    return None


def pediatric_adult_urology_drug(row, ctx):
    drug = lookup_drug(row, ref.MINIMUM_AGE_BY_DRUG)
    age = row.get("Patient_Age")
    if drug and age is not None and 0 <= age < ref.MINIMUM_AGE_BY_DRUG[drug]:
        return (f"Patient aged {age} received adult urology drug {drug} "
                f"(minimum age {ref.MINIMUM_AGE_BY_DRUG[drug]})")
    return None


RULES = [
    Rule("male_female_diagnosis_mismatch", BUSINESS, Granularity.ROW,
         male_female_diagnosis_mismatch, reads=("Patient_Gender", "Diagnosis_Code_Primary"),
         title="Male with female-only diagnosis"),
    Rule("female_male_diagnosis_mismatch", BUSINESS, Granularity.ROW,
         female_male_diagnosis_mismatch, reads=("Patient_Gender", "Diagnosis_Code_Primary"),
         title="Female with male-only diagnosis"),
    Rule("female_male_drug_mismatch", BUSINESS, Granularity.ROW,
         female_male_drug_mismatch, reads=("Patient_Gender", "Drug_Name"),
         title="Female on male-only drug"),
    Rule("male_female_drug_mismatch", BUSINESS, Granularity.ROW,
         male_female_drug_mismatch, reads=("Patient_Gender", "Drug_Name"),
         title="Male on female-associated drug"),
    Rule("drug_diagnosis_mismatch", BUSINESS, Granularity.ROW,
         drug_diagnosis_mismatch, reads=("Drug_Name", "Diagnosis_Code_Primary"),
         title="Drug / diagnosis mismatch"),
    Rule("pediatric_adult_urology_drug", BUSINESS, Granularity.ROW,
         pediatric_adult_urology_drug, reads=("Drug_Name", "Patient_Age"),
         title="Pediatric on adult urology drug"),
]
