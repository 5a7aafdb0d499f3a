import argparse
import json
import os
from datetime import datetime, timezone

from .db import connect_db, parse_database_config
from .store import ENTITIES, open_store


REQUIRED_TABLES = {
    "people": {
        "columns": {"id", "name", "active", "created_at"},
        "indexes": set(),
    },
    "cycles": {
        "columns": {"id", "month_key", "label", "date_from", "date_to", "finalized", "created_at"},
        "indexes": set(),
    },
    "transactions": {
        "columns": {
            "id",
            "cycle_id",
            "date",
            "merchant",
            "amount",
            "source",
            "fingerprint",
            "verified",
            "notes",
            "created_at",
        },
        "indexes": {"idx_transactions_cycle", "uq_transactions_fingerprint"},
    },
    "consumption_entries": {
        "columns": {"id", "cycle_id", "person_id", "weight", "notes", "updated_at"},
        "indexes": {"idx_consumption_entries_cycle"},
    },
    "personal_payments": {
        "columns": {"id", "cycle_id", "person_id", "amount", "note", "date", "created_at"},
        "indexes": {"idx_personal_payments_cycle", "idx_personal_payments_person"},
    },
    "bank_links": {
        "columns": {"id", "item_id", "access_token", "institution", "last_synced", "created_at"},
        "indexes": set(),
    },
}

LEGACY_SOURCE_MAPPING = {
    "visa": "bank-sync",
    "plaid": "bank-sync",
    "csv": "csv-import",
    "receipt": "manual",
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def column_exists(conn, table, column):
    if not table_exists(conn, table):
        return False
    return column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    conn.execute(create_sql)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS people (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS cycles (
            id TEXT PRIMARY KEY,
            month_key TEXT NOT NULL UNIQUE,
            label TEXT NOT NULL,
            date_from TEXT NOT NULL,
            date_to TEXT NOT NULL,
            finalized INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            cycle_id TEXT NOT NULL REFERENCES cycles(id) ON DELETE CASCADE,
            date TEXT NOT NULL,
            merchant TEXT NOT NULL,
            amount DOUBLE PRECISION NOT NULL,
            source TEXT NOT NULL DEFAULT 'manual',
            fingerprint TEXT,
            verified INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            created_at TEXT NOT NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS consumption_entries (
            id TEXT PRIMARY KEY,
            cycle_id TEXT NOT NULL REFERENCES cycles(id) ON DELETE CASCADE,
            person_id TEXT NOT NULL REFERENCES people(id),
            weight INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            updated_at TEXT NOT NULL,
            UNIQUE(cycle_id, person_id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS personal_payments (
            id TEXT PRIMARY KEY,
            cycle_id TEXT NOT NULL REFERENCES cycles(id) ON DELETE CASCADE,
            person_id TEXT NOT NULL REFERENCES people(id),
            amount DOUBLE PRECISION NOT NULL,
            note TEXT,
            date TEXT,
            created_at TEXT NOT NULL
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_transactions_cycle",
        "CREATE INDEX IF NOT EXISTS idx_transactions_cycle ON transactions(cycle_id)",
    )
    create_index_if_missing(
        conn,
        "idx_consumption_entries_cycle",
        "CREATE INDEX IF NOT EXISTS idx_consumption_entries_cycle ON consumption_entries(cycle_id)",
    )
    create_index_if_missing(
        conn,
        "idx_personal_payments_cycle",
        "CREATE INDEX IF NOT EXISTS idx_personal_payments_cycle ON personal_payments(cycle_id)",
    )
    create_index_if_missing(
        conn,
        "idx_personal_payments_person",
        "CREATE INDEX IF NOT EXISTS idx_personal_payments_person ON personal_payments(person_id)",
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS bank_links (
            id TEXT PRIMARY KEY,
            item_id TEXT NOT NULL UNIQUE,
            access_token TEXT NOT NULL,
            institution TEXT,
            last_synced TEXT,
            created_at TEXT NOT NULL
        )
        """,
    )


def migration_003(conn):
    # Databases written by the first GrocSplit release keyed bank-sync rows by
    # plaid_id and kept dinners, receipts and Plaid items in their own tables.
    add_column_if_missing(conn, "transactions", "fingerprint TEXT")
    add_column_if_missing(conn, "transactions", "verified INTEGER NOT NULL DEFAULT 0")
    add_column_if_missing(conn, "transactions", "notes TEXT")
    if column_exists(conn, "transactions", "plaid_id"):
        conn.execute("UPDATE transactions SET fingerprint = plaid_id WHERE fingerprint IS NULL AND plaid_id IS NOT NULL")
    for legacy_source, source in LEGACY_SOURCE_MAPPING.items():
        conn.execute("UPDATE transactions SET source = ? WHERE source = ?", (source, legacy_source))

    if table_exists(conn, "dinner_entries"):
        conn.execute(
            """
            INSERT INTO consumption_entries (id, cycle_id, person_id, weight, notes, updated_at)
            SELECT d.id, d.cycle_id, d.person_id, d.dinner_count, d.notes, d.updated_at
            FROM dinner_entries d
            WHERE NOT EXISTS (
                SELECT 1 FROM consumption_entries c
                WHERE c.cycle_id = d.cycle_id AND c.person_id = d.person_id
            )
            """
        )
    if table_exists(conn, "personal_receipts"):
        conn.execute(
            """
            INSERT INTO personal_payments (id, cycle_id, person_id, amount, note, date, created_at)
            SELECT r.id, r.cycle_id, r.person_id, r.amount, r.note, r.date, r.created_at
            FROM personal_receipts r
            WHERE NOT EXISTS (SELECT 1 FROM personal_payments p WHERE p.id = r.id)
            """
        )
    if table_exists(conn, "plaid_items"):
        conn.execute(
            """
            INSERT INTO bank_links (id, item_id, access_token, institution, last_synced, created_at)
            SELECT i.id, i.item_id, i.access_token, i.institution, i.last_synced, i.created_at
            FROM plaid_items i
            WHERE NOT EXISTS (SELECT 1 FROM bank_links b WHERE b.item_id = i.item_id)
            """
        )


def migration_004(conn):
    create_index_if_missing(
        conn,
        "uq_transactions_fingerprint",
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_fingerprint ON transactions(fingerprint)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        absent_cols = sorted(col for col in table_spec["columns"] if col not in table_cols)
        missing_columns[table_name] = absent_cols

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def ledger_counts(config):
    store = open_store({"LEDGER_BACKEND": "sql", "DATABASE": config["database_path"], "DATABASE_URL": config["database_url"]})
    try:
        return {entity: len(store.list(entity)) for entity in ENTITIES}
    finally:
        store.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Check and print the GrocSplit ledger schema health")
    parser.add_argument(
        "db_path",
        nargs="?",
        default=os.environ.get("DB_PATH", "instance/grocsplit.sqlite"),
        help="Path to SQLite DB (ignored when DATABASE_URL is postgres)",
    )
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    parser.add_argument("--counts", action="store_true", help="Also report row counts per ledger table")
    args = parser.parse_args(argv)

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    health = get_db_health(config)
    health["backend"] = config["backend"]
    if args.counts and health["ok"]:
        health["counts"] = ledger_counts(config)
    print(json.dumps(health, indent=2, sort_keys=True))
    return 0 if health["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
