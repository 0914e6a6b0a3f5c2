"""Smart data-quality rules comparing two or more fields of one row."""

from claimwatch import reference as ref
from claimwatch.rules import Granularity, Rule, Stage

SMART = Stage.SMART_DATA_QUALITY


def _money(value: float) -> str:
    return f"{value:,.2f}"


def service_interval_reversed(row, ctx):
    start, end = row.get("Service_From_Date"), row.get("Service_To_Date")
    if start and end and end < start:
        return f"Service_To_Date {end} is before Service_From_Date {start}"
    return None


def adjudicated_before_submitted(row, ctx):
    submitted, adjudicated = row.get("Claim_Submission_Date"), row.get("Claim_Adjudication_Date")
    if submitted and adjudicated and adjudicated < submitted:
        return f"Claim_Adjudication_Date {adjudicated} is before Claim_Submission_Date {submitted}"
    return None


def admission_after_discharge(row, ctx):
    admitted, discharged = row.get("Admission_Date"), row.get("Discharge_Date")
    if admitted and discharged and admitted > discharged:
        return f"Admission_Date {admitted} is after Discharge_Date {discharged}"
    return None


def length_of_stay_excessive(row, ctx):
    admitted, discharged = row.get("Admission_Date"), row.get("Discharge_Date")
    if not (admitted and discharged):
        return None
    stay = (discharged - admitted).days
    if stay > ctx.config.los_max_days:
        return f"Length of stay {stay} days exceeds {ctx.config.los_max_days} days"
    return None


def zip_state_mismatch(row, ctx):
    """ZIP lies in New York while the claim names another state."""
    state = (row.get("State") or "").strip().upper()
    zip_code = row.get("Patient_ZIP")
    if state and state != "NY" and zip_code and ref.is_ny_zip(zip_code):
        return f"Patient_ZIP {zip_code} is a New York ZIP but State is {state}"
    return None


def allowed_gt_charge(row, ctx):
    allowed, charge = row.get("Allowed_Amount"), row.get("Charge_Amount")
    if allowed is not None and charge is not None and round(allowed, 2) > round(charge, 2):
        return f"Allowed_Amount {_money(allowed)} exceeds Charge_Amount {_money(charge)}"
    return None


def allowed_lt_paid(row, ctx):
    allowed, paid = row.get("Allowed_Amount"), row.get("Paid_Amount")
    if allowed is not None and paid is not None and round(allowed, 2) < round(paid, 2):
        return f"Allowed_Amount {_money(allowed)} is less than Paid_Amount {_money(paid)}"
    return None


def paid_plus_adjustment_gt_charge(row, ctx):
    paid, adjustment, charge = (row.get("Paid_Amount"), row.get("Adjustment_Amount"),
                                row.get("Charge_Amount"))
    if None in (paid, adjustment, charge):
        return None
    if round(paid + adjustment, 2) > round(charge, 2):
        return (f"Paid_Amount {_money(paid)} + Adjustment_Amount {_money(adjustment)} "
                f"exceeds Charge_Amount {_money(charge)}")
    return None


def reversed_nonzero_amount(row, ctx):
    if (row.get("Claim_Status") or "").strip().lower() != "reversed":
        return None
    nonzero = [f"{c}={_money(row.get(c))}" for c in ref.AMOUNT_COLUMNS
               if row.get(c) not in (None, 0)]
    if nonzero:
        return f"Claim_Status is Reversed but amounts are non-zero: {', '.join(nonzero)}"
    return None


def denied_with_payment(row, ctx):
    paid = row.get("Paid_Amount")
    if (row.get("Claim_Status") or "").strip().lower() == "denied" and paid and paid > 0:
        return f"Claim_Status is Denied but Paid_Amount is {_money(paid)}"
    return None


RULES = [
    Rule("service_interval_reversed", SMART, Granularity.ROW, service_interval_reversed,
         reads=("Service_From_Date", "Service_To_Date"), title="Service interval reversed"),
    Rule("adjudicated_before_submitted", SMART, Granularity.ROW, adjudicated_before_submitted,
         reads=("Claim_Submission_Date", "Claim_Adjudication_Date"),
         title="Adjudicated before submitted"),
    Rule("admission_after_discharge", SMART, Granularity.ROW, admission_after_discharge,
         reads=("Admission_Date", "Discharge_Date"), title="Admission after discharge"),
    Rule("length_of_stay_excessive", SMART, Granularity.ROW, length_of_stay_excessive,
         reads=("Admission_Date", "Discharge_Date"), title="Unreasonable length of stay"),
    Rule("zip_state_mismatch", SMART, Granularity.ROW, zip_state_mismatch,
         reads=("State", "Patient_ZIP"), title="State / ZIP mismatch"),
    Rule("allowed_gt_charge", SMART, Granularity.ROW, allowed_gt_charge,
         reads=("Allowed_Amount", "Charge_Amount"), title="Allowed > Billed"),
    Rule("allowed_lt_paid", SMART, Granularity.ROW, allowed_lt_paid,
         reads=("Allowed_Amount", "Paid_Amount"), title="Allowed < Paid"),
    Rule("paid_plus_adjustment_gt_charge", SMART, Granularity.ROW, paid_plus_adjustment_gt_charge,
         reads=("Paid_Amount", "Adjustment_Amount", "Charge_Amount"),
         title="Paid + Adjusted > Billed"),
    Rule("reversed_nonzero_amount", SMART, Granularity.ROW, reversed_nonzero_amount,
         reads=("Claim_Status",), title="Reversed claim with non-zero amounts"),
    Rule("denied_with_payment", SMART, Granularity.ROW, denied_with_payment,
         reads=("Claim_Status", "Paid_Amount"), title="Denied claim with payment"),
]
