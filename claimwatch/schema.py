"""Dataset schemas, typed claim rows and the shared drug-name normalization."""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Iterator, Mapping

from claimwatch.errors import ParseError

log = logging.getLogger("claimwatch.schema")

PHARMACY = "pharmacy"
MEDICAL = "medical"
JOINED = "joined"
SOURCES = (PHARMACY, MEDICAL, JOINED)

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%Y%m%d")


# ---------------------------------------------------------------------------
# Column types
# ---------------------------------------------------------------------------

def normalize_drug_name(name: Any) -> str:
    """Trim, lowercase and collapse internal whitespace.

    The join step registers this exact function with DuckDB, so a drug
    matches across datasets if and only if the rules see the same name.
    """
    if name is None:
        return ""
    return " ".join(str(name).split()).lower()


def parse_date(value: str) -> date:
    text = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    # Timestamps exported with a time component
    return datetime.fromisoformat(text).date()


def parse_int(value: str) -> int:
    number = float(value)
    if not number.is_integer():
        raise ValueError(f"{value} is not a whole number")
    return int(number)


def parse_float(value: str) -> float:
    number = float(value.replace(",", "").replace("$", ""))
    if not math.isfinite(number):
        raise ValueError(f"{value} is not a finite number")
    return number


PARSERS = {
    "str": lambda v: v.strip(),
    "float": parse_float,
    "int": parse_int,
    "date": parse_date,
}

NATIVE_TYPES = {
    "str": str,
    "float": (int, float),
    "int": int,
    "date": date,
}


@dataclass(frozen=True)
class Column:
    name: str
    kind: str = "str"

    def coerce(self, raw: Any) -> Any:
        """Convert a raw cell to the column type; blank cells become None."""
        if raw is None:
            return None
        if self.kind == "float" and isinstance(raw, (int, float)) and not isinstance(raw, bool):
            if not math.isfinite(raw):
                raise ParseError(self.name, str(raw), self.kind)
            return float(raw)
        if self.kind == "date" and isinstance(raw, datetime):
            return raw.date()
        if not isinstance(raw, str) and isinstance(raw, NATIVE_TYPES[self.kind]):
            return raw
        text = str(raw)
        if not text.strip():
            return None
        try:
            return PARSERS[self.kind](text)
        except (ValueError, OverflowError) as e:
            raise ParseError(self.name, text, self.kind) from e


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DatasetSchema:
    name: str
    columns: tuple[Column, ...]
    provider_column: str
    service_date_column: str

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def required(self) -> list[str]:
        return self.column_names

    def column(self, name: str) -> Column | None:
        for c in self.columns:
            if c.name == name:
                return c
        return None


_DEMOGRAPHICS = (
    Column("Patient_Age", "int"),
    Column("Patient_Gender"),
    Column("Patient_ZIP"),
    Column("State"),
)

_AMOUNTS = (
    Column("Charge_Amount", "float"),
    Column("Allowed_Amount", "float"),
    Column("Paid_Amount", "float"),
    Column("Patient_Responsibility", "float"),
    Column("Adjustment_Amount", "float"),
)

_MEDICAL_COLUMNS = (
    Column("Claim_ID"),
    Column("Patient_ID"),
    Column("Provider_ID"),
    Column("Drug_Name"),
    Column("Drug_HCPCS_Code"),
    Column("Diagnosis_Code_Primary"),
    Column("Place_of_Service_Code"),
    Column("Service_From_Date", "date"),
    Column("Service_To_Date", "date"),
    Column("Claim_Submission_Date", "date"),
    Column("Claim_Adjudication_Date", "date"),
    Column("Admission_Date", "date"),
    Column("Discharge_Date", "date"),
    Column("Units", "float"),
    *_AMOUNTS,
    *_DEMOGRAPHICS,
    Column("Claim_Status"),
)

_PHARMACY_COLUMNS = (
    Column("Claim_ID"),
    Column("Patient_ID"),
    Column("Prescriber_NPI"),
    Column("Drug_Name"),
    Column("Drug_HCPCS_Code"),
    Column("Diagnosis_Code_Primary"),
    Column("Service_Date", "date"),
    Column("Claim_Submission_Date", "date"),
    Column("Claim_Adjudication_Date", "date"),
    Column("Quantity", "float"),
    Column("Days_Supply", "float"),
    *_AMOUNTS,
    *_DEMOGRAPHICS,
    Column("Claim_Status"),
)

# Medical claim enriched with the matched pharmacy fill.
_JOINED_COLUMNS = _MEDICAL_COLUMNS + (
    Column("Rx_Claim_ID"),
    Column("Prescriber_NPI"),
    Column("Service_Date", "date"),
    Column("Quantity", "float"),
    Column("Days_Supply", "float"),
    Column("Rx_Paid_Amount", "float"),
    Column("Match_Type"),
)

SCHEMAS = {
    PHARMACY: DatasetSchema(PHARMACY, _PHARMACY_COLUMNS, "Prescriber_NPI", "Service_Date"),
    MEDICAL: DatasetSchema(MEDICAL, _MEDICAL_COLUMNS, "Provider_ID", "Service_From_Date"),
    JOINED: DatasetSchema(JOINED, _JOINED_COLUMNS, "Provider_ID", "Service_From_Date"),
}


def get_schema(dataset: str) -> DatasetSchema:
    try:
        return SCHEMAS[dataset]
    except KeyError:
        raise ValueError(f"unknown dataset '{dataset}', expected one of {', '.join(SOURCES)}")


# ---------------------------------------------------------------------------
# Rows and datasets
# ---------------------------------------------------------------------------

class ClaimRow:
    """One read-only claim record with typed values for the known columns.

    Columns outside the schema are kept as raw strings in ``extras``; cells
    that failed coercion are ``None`` in ``values`` and listed in ``errors``.
    """

    __slots__ = ("source", "index", "values", "extras", "errors")

    def __init__(self, source: str, index: int, values: dict, extras: dict | None = None,
                 errors: list[ParseError] | None = None):
        self.source = source
        self.index = index
        self.values = values
        self.extras = extras or {}
        self.errors = errors or []

    def get(self, column: str, default: Any = None) -> Any:
        value = self.values.get(column)
        return default if value is None else value

    def __getitem__(self, column: str) -> Any:
        return self.values[column]

    def __contains__(self, column: str) -> bool:
        return column in self.values

    def __repr__(self) -> str:
        return f"ClaimRow({self.source}#{self.index}, Claim_ID={self.values.get('Claim_ID')!r})"

    @property
    def drug(self) -> str:
        return normalize_drug_name(self.values.get("Drug_Name"))


def parse_record(schema: DatasetSchema, index: int, record: Mapping[str, Any]) -> ClaimRow:
    values, extras, errors = {}, {}, []
    for key, raw in record.items():
        column = schema.column(key)
        if column is None:
            extras[key] = raw
            continue
        try:
            values[key] = column.coerce(raw)
        except ParseError as e:
            values[key] = None
            errors.append(e)
    return ClaimRow(schema.name, index, values, extras, errors)


@dataclass
class Dataset:
    """An immutable snapshot of one source, in file order."""

    name: str
    columns: list[str]
    rows: list[ClaimRow] = field(default_factory=list)

    @classmethod
    def from_records(cls, name: str, records: Iterable[Mapping[str, Any]],
                     columns: list[str] | None = None) -> "Dataset":
        schema = get_schema(name)
        records = list(records)
        if columns is None:
            columns = list(records[0].keys()) if records else []
        rows = [parse_record(schema, i, rec) for i, rec in enumerate(records)]
        bad = sum(1 for r in rows if r.errors)
        if bad:
            log.info("%s: %d rows with unparseable cells", name, bad)
        return cls(name, list(columns), rows)

    @property
    def schema(self) -> DatasetSchema:
        return get_schema(self.name)

    def has_columns(self, *names: str) -> bool:
        return all(n in self.columns for n in names)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[ClaimRow]:
        return iter(self.rows)
