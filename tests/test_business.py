"""Tests for the clinical and benefit business rules."""

from claimwatch import business
from claimwatch import reference as ref


def hits_for(rule_fn, dataset, ctx):
    return {row.index: rule_fn(row, ctx) for row in dataset if rule_fn(row, ctx)}


class TestDiagnosisGender:

    def test_male_with_pregnancy_code(self, make_dataset, make_context):
        ds = make_dataset("medical", {"Patient_Gender": "M", "Diagnosis_Code_Primary": "Z34.1",
                                      "Drug_Name": "Prenatal Vitamin"})
        hits = hits_for(business.male_female_diagnosis_mismatch, ds, make_context(ds))
        assert list(hits) == [0]
        assert "Z34.1" in hits[0]

    def test_obstetric_chapter_matches_letter_prefix(self, make_dataset, make_context):
        ds = make_dataset("medical", {"Patient_Gender": "M", "Diagnosis_Code_Primary": "O09.90"})
        assert list(hits_for(business.male_female_diagnosis_mismatch, ds, make_context(ds))) == [0]

    def test_female_with_prostate_cancer(self, make_dataset, make_context):
        ds = make_dataset("medical", {"Patient_Gender": "F", "Diagnosis_Code_Primary": "C61"},
                          {"Patient_Gender": "M", "Diagnosis_Code_Primary": "C61"})
        hits = hits_for(business.female_male_diagnosis_mismatch, ds, make_context(ds))
        assert list(hits) == [0]


class TestDrugGender:

    def test_female_on_male_only_drug(self, make_dataset, make_context):
        ds = make_dataset("pharmacy", {"Patient_Gender": "F", "Drug_Name": "TAMSULOSIN 0.4 mg"})
        hits = hits_for(business.female_male_drug_mismatch, ds, make_context(ds))
        assert hits == {0: "Female patient on male-only drug tamsulosin"}

    def test_male_on_female_associated_drug(self, make_dataset, make_context):
        ds = make_dataset("pharmacy", {"Patient_Gender": "M"}, {"Patient_Gender": "F"})
        hits = hits_for(business.male_female_drug_mismatch, ds, make_context(ds))
        assert list(hits) == [0]


class TestDrugDiagnosis:

    def test_bph_drug_with_unrelated_diagnosis(self, make_dataset, make_context):
        ds = make_dataset("pharmacy",
                          {"Patient_Gender": "M", "Drug_Name": "Finasteride",
                           "Diagnosis_Code_Primary": "E11.9"},
                          {"Patient_Gender": "M", "Drug_Name": "Finasteride",
                           "Diagnosis_Code_Primary": "N40.0"})
        hits = hits_for(business.drug_diagnosis_mismatch, ds, make_context(ds))
        assert list(hits) == [0]
        assert "BPH/prostate" in hits[0]

    def test_unknown_drug_is_ignored(self, make_dataset, make_context):
        ds = make_dataset("pharmacy", {"Drug_Name": "Metformin", "Diagnosis_Code_Primary": "E11.9"})
        assert hits_for(business.drug_diagnosis_mismatch, ds, make_context(ds)) == {}


class TestPediatricUrology:

    def test_child_on_urology_drug(self, make_dataset, make_context):
        ds = make_dataset("pharmacy",
                          {"Patient_Age": "8", "Patient_Gender": "M", "Drug_Name": "Tamsulosin"},
                          {"Patient_Age": "13", "Patient_Gender": "M", "Drug_Name": "Tamsulosin"})
        hits = hits_for(business.pediatric_adult_urology_drug, ds, make_context(ds))
        assert list(hits) == [0]
        assert "minimum age 13" in hits[0]

    def test_minimum_age_table_covers_urology_drugs(self):
        assert set(ref.MINIMUM_AGE_BY_DRUG) == set(ref.MALE_ONLY_DRUGS)


class TestLookupDrug:

    def test_full_name_then_leading_word(self, make_dataset):
        ds = make_dataset("pharmacy", {"Drug_Name": "letrozole"}, {"Drug_Name": "Letrozole 2.5MG tab"},
                          {"Drug_Name": "exemestane"})
        found = [business.lookup_drug(row, ref.FEMALE_ASSOCIATED_DRUGS) for row in ds]
        assert found == ["letrozole", "letrozole", None]
