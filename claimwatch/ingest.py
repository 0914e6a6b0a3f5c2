"""Data loading and joining module using DuckDB."""

import logging
import os
from pathlib import Path

import duckdb
import requests
from duckdb.sqltypes import VARCHAR

from claimwatch.schema import DATE_FORMATS, JOINED, MEDICAL, PHARMACY, Dataset, normalize_drug_name

log = logging.getLogger("claimwatch.ingest")

DATASET_FILES = {
    PHARMACY: "pharmacy.csv",
    MEDICAL: "medical.csv",
    JOINED: "joined.csv",
}

JOIN_COLUMNS = {
    MEDICAL: ("Patient_ID", "Provider_ID", "Drug_Name", "Service_From_Date"),
    PHARMACY: ("Claim_ID", "Patient_ID", "Prescriber_NPI", "Drug_Name", "Service_Date",
               "Quantity", "Days_Supply", "Paid_Amount"),
}


def get_connection(memory_limit: str = "1GB") -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection with the drug-name UDF registered."""
    con = duckdb.connect(":memory:")
    con.execute(f"SET memory_limit = '{memory_limit}'")
    con.execute("SET threads = 4")
    # row_index is the position in the file, so scans must keep file order
    con.execute("SET preserve_insertion_order = true")
    con.create_function("normalize_drug", normalize_drug_name, [VARCHAR], VARCHAR,
                        side_effects=False)
    return con


def load_csv(con: duckdb.DuckDBPyConnection, name: str, path: str | Path,
             table: str | None = None) -> Dataset:
    """Load one CSV as an all-varchar table and return it as Dataset ``name``.

    Typing happens in the schema layer so unparseable cells survive as
    findings instead of failing the load.
    """
    path = str(path)
    table = table or name
    if not os.path.exists(path):
        raise FileNotFoundError(f"{name} data not found: {path}")
    if os.path.getsize(path) == 0:
        log.warning("%s file is empty: %s", name, path)
        return Dataset(name, [], [])
    con.execute(f"""
        CREATE OR REPLACE TABLE {table} AS
        SELECT ROW_NUMBER() OVER () - 1 AS __row, *
        FROM read_csv('{path}', header=true, all_varchar=true, auto_detect=true)
    """)
    return fetch_dataset(con, table, name)


def fetch_dataset(con: duckdb.DuckDBPyConnection, table: str, name: str | None = None) -> Dataset:
    cur = con.execute(f"SELECT * EXCLUDE (__row) FROM {table} ORDER BY __row")
    columns = [d[0] for d in cur.description]
    records = [dict(zip(columns, values)) for values in cur.fetchall()]
    return Dataset.from_records(name or table, records, columns)


def claim_date_sql(column: str) -> str:
    """SQL date expression accepting the same layouts as the schema layer."""
    parsed = ", ".join(f"TRY_STRPTIME(TRIM({column}), '{fmt}')" for fmt in DATE_FORMATS)
    return f"CAST(COALESCE({parsed}, TRY_CAST(TRIM({column}) AS TIMESTAMP)) AS DATE)"


def build_joined(con: duckdb.DuckDBPyConnection, window_days: int = 14) -> Dataset | None:
    """Link medical claims to pharmacy fills.

    Strict match: Patient_ID + Provider_ID/Prescriber_NPI + normalized drug.
    Relaxed match, only for medical rows without a strict match: Patient_ID +
    normalized drug with the fill within ``window_days`` of the service date.
    Each medical row keeps its first strict match, or its closest relaxed one.
    Both tables must already be loaded with ``load_csv``.
    """
    for name, needed in JOIN_COLUMNS.items():
        present = {d[0] for d in con.execute(f"SELECT * FROM {name} LIMIT 0").description}
        missing = [c for c in needed if c not in present]
        if missing:
            log.warning("Cannot build joined dataset: %s lacks %s", name, ", ".join(missing))
            return None

    gap = (f"ABS(DATE_DIFF('day', {claim_date_sql('m.Service_From_Date')}, "
           f"{claim_date_sql('p.Service_Date')}))")
    con.execute(f"""
        CREATE OR REPLACE TABLE joined AS
        WITH strict_matches AS (
            SELECT
                m.__row AS m_row,
                p.__row AS p_row,
                ROW_NUMBER() OVER (PARTITION BY m.__row ORDER BY p.__row) AS rn
            FROM medical m
            INNER JOIN pharmacy p
                ON m.Patient_ID = p.Patient_ID
               AND m.Provider_ID = p.Prescriber_NPI
               AND normalize_drug(m.Drug_Name) = normalize_drug(p.Drug_Name)
        ),
        relaxed_matches AS (
            SELECT
                m.__row AS m_row,
                p.__row AS p_row,
                ROW_NUMBER() OVER (
                    PARTITION BY m.__row
                    ORDER BY {gap}, p.__row
                ) AS rn
            FROM medical m
            INNER JOIN pharmacy p
                ON m.Patient_ID = p.Patient_ID
               AND normalize_drug(m.Drug_Name) = normalize_drug(p.Drug_Name)
            WHERE m.__row NOT IN (SELECT m_row FROM strict_matches)
              AND {gap} <= ?
        ),
        matches AS (
            SELECT m_row, p_row, 'strict' AS match_type FROM strict_matches WHERE rn = 1
            UNION ALL
            SELECT m_row, p_row, 'relaxed' AS match_type FROM relaxed_matches WHERE rn = 1
        )
        SELECT
            ROW_NUMBER() OVER (ORDER BY m.__row) - 1 AS __row,
            m.* EXCLUDE (__row),
            p.Claim_ID AS Rx_Claim_ID,
            p.Prescriber_NPI,
            p.Service_Date,
            p.Quantity,
            p.Days_Supply,
            p.Paid_Amount AS Rx_Paid_Amount,
            x.match_type AS Match_Type
        FROM matches x
        INNER JOIN medical m ON m.__row = x.m_row
        INNER JOIN pharmacy p ON p.__row = x.p_row
    """, [window_days])

    counts = dict(con.execute(
        "SELECT Match_Type, COUNT(*) FROM joined GROUP BY Match_Type").fetchall())
    log.info("Joined rows: %d strict, %d relaxed", counts.get("strict", 0), counts.get("relaxed", 0))
    return fetch_dataset(con, JOINED)


def load_all(data_dir: str | Path, con: duckdb.DuckDBPyConnection | None = None,
             join_window_days: int = 14) -> dict:
    """Load pharmacy, medical and joined datasets from ``data_dir``.

    ``joined.csv`` is used when present; otherwise the joined dataset is
    built from the other two.
    """
    data_dir = Path(data_dir)
    con = con or get_connection()
    datasets = {}

    log.info("Loading pharmacy claims...")
    datasets[PHARMACY] = load_csv(con, PHARMACY, data_dir / DATASET_FILES[PHARMACY])
    log.info("Loading medical claims...")
    datasets[MEDICAL] = load_csv(con, MEDICAL, data_dir / DATASET_FILES[MEDICAL])

    joined_path = data_dir / DATASET_FILES[JOINED]
    if joined_path.exists():
        log.info("Loading joined claims...")
        datasets[JOINED] = load_csv(con, JOINED, joined_path)
    elif not (datasets[PHARMACY].columns and datasets[MEDICAL].columns):
        log.warning("Cannot build joined dataset from an empty input file")
    else:
        log.info("No joined.csv, building joined claims (window %d days)...", join_window_days)
        joined = build_joined(con, join_window_days)
        if joined is not None:
            datasets[JOINED] = joined

    for name, dataset in datasets.items():
        log.info("  %-9s rows: %s", name, f"{len(dataset):,}")
    return datasets


def fetch_datasets(base_url: str, data_dir: str | Path, timeout: int = 120) -> list[Path]:
    """Download the published CSVs into ``data_dir`` unless already present.

    The joined file is optional upstream; a 404 for it is not an error.
    """
    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for name, filename in DATASET_FILES.items():
        path = data_dir / filename
        if path.exists():
            log.info("%s already exists: %s", filename, path)
            continue
        url = f"{base_url.rstrip('/')}/{filename}"
        log.info("Downloading %s...", url)
        resp = requests.get(url, timeout=timeout)
        if resp.status_code == 404 and name == JOINED:
            log.info("No published %s, it will be built locally", filename)
            continue
        resp.raise_for_status()
        path.write_bytes(resp.content)
        log.info("%s downloaded: %d bytes", filename, len(resp.content))
        written.append(path)
    return written
