import json
import sqlite3

import pytest

from grocsplit.db import rewrite_sql
from grocsplit.db_migrations import MIGRATIONS, apply_migrations, get_db_health, main, migration_003


class _FakeCursor:
    def __init__(self, one=None, all_rows=None):
        self._one = one
        self._all = all_rows or []

    def fetchone(self):
        return self._one

    def fetchall(self):
        return self._all


class _FakePostgresMigration003Connection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []

    def execute(self, sql, params=None):
        normalized_sql = " ".join(sql.split())
        self.statements.append((normalized_sql, params))
        if "FROM information_schema.tables" in normalized_sql:
            # only the transactions table exists; no legacy side tables
            return _FakeCursor(one=(1,) if params == ("transactions",) else None)
        if "FROM information_schema.columns" in normalized_sql:
            return _FakeCursor(all_rows=[("id",), ("cycle_id",), ("plaid_id",), ("source",)])
        if normalized_sql.startswith("ALTER TABLE transactions ADD COLUMN IF NOT EXISTS"):
            return _FakeCursor()
        if normalized_sql.startswith("UPDATE transactions SET"):
            return _FakeCursor()
        raise AssertionError(f"Unexpected SQL in migration_003: {sql}")


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == len(MIGRATIONS)
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    conn.close()
    assert versions == [version for version, _ in MIGRATIONS]


def test_health_reports_missing_pieces(tmp_path):
    db_path = tmp_path / "partial.sqlite"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE people (id TEXT PRIMARY KEY, name TEXT)")
    conn.commit()
    conn.close()

    health = get_db_health(str(db_path))

    assert health["ok"] is False
    assert "cycles" in health["missing_tables"]
    assert health["missing_columns"]["people"] == ["active", "created_at"]
    assert "uq_transactions_fingerprint" in health["missing_indexes"]


def test_apply_migrations_upgrades_legacy_grocsplit_db(tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE people (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        );
        INSERT INTO people VALUES ('p1', 'Alex', 1, '2025-01-01T00:00:00Z');

        CREATE TABLE cycles (
            id TEXT PRIMARY KEY,
            month_key TEXT NOT NULL UNIQUE,
            label TEXT NOT NULL,
            date_from TEXT NOT NULL,
            date_to TEXT NOT NULL,
            finalized INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );
        INSERT INTO cycles VALUES ('c1', '2025-01', 'January 2025', '2025-01-01', '2025-01-31', 0, '2025-01-01T00:00:00Z');

        CREATE TABLE transactions (
            id TEXT PRIMARY KEY,
            cycle_id TEXT NOT NULL,
            date TEXT NOT NULL,
            merchant TEXT NOT NULL,
            amount REAL NOT NULL,
            source TEXT NOT NULL,
            plaid_id TEXT,
            created_at TEXT NOT NULL
        );
        INSERT INTO transactions VALUES ('t1', 'c1', '2025-01-04', 'Thrifty Foods', 54.2, 'visa', 'plaid-abc', '2025-01-04T00:00:00Z');
        INSERT INTO transactions VALUES ('t2', 'c1', '2025-01-05', 'Farmers Market', 12.0, 'receipt', NULL, '2025-01-05T00:00:00Z');

        CREATE TABLE dinner_entries (
            id TEXT PRIMARY KEY,
            cycle_id TEXT NOT NULL,
            person_id TEXT NOT NULL,
            dinner_count INTEGER NOT NULL,
            notes TEXT,
            updated_at TEXT NOT NULL
        );
        INSERT INTO dinner_entries VALUES ('d1', 'c1', 'p1', 17, 'away one week', '2025-01-31T00:00:00Z');

        CREATE TABLE personal_receipts (
            id TEXT PRIMARY KEY,
            cycle_id TEXT NOT NULL,
            person_id TEXT NOT NULL,
            amount REAL NOT NULL,
            note TEXT,
            date TEXT,
            created_at TEXT NOT NULL
        );
        INSERT INTO personal_receipts VALUES ('r1', 'c1', 'p1', 45.0, 'bakery', '2025-01-09', '2025-01-09T00:00:00Z');

        CREATE TABLE plaid_items (
            id TEXT PRIMARY KEY,
            item_id TEXT NOT NULL,
            access_token TEXT NOT NULL,
            institution TEXT,
            last_synced TEXT,
            created_at TEXT NOT NULL
        );
        INSERT INTO plaid_items VALUES ('i1', 'item-1', 'access-sandbox', 'Coast Capital', NULL, '2025-01-01T00:00:00Z');
        """
    )
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))
    assert health["ok"] is True

    conn = sqlite3.connect(db_path)
    rows = conn.execute("SELECT id, source, fingerprint, verified FROM transactions ORDER BY id").fetchall()
    assert rows == [("t1", "bank-sync", "plaid-abc", 0), ("t2", "manual", None, 0)]

    entry = conn.execute("SELECT cycle_id, person_id, weight, notes FROM consumption_entries").fetchone()
    assert entry == ("c1", "p1", 17, "away one week")

    payment = conn.execute("SELECT amount, note FROM personal_payments WHERE id = 'r1'").fetchone()
    assert payment == (45.0, "bakery")

    link = conn.execute("SELECT item_id, institution FROM bank_links").fetchone()
    assert link == ("item-1", "Coast Capital")

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "INSERT INTO transactions (id, cycle_id, date, merchant, amount, source, fingerprint, created_at) "
            "VALUES ('t3', 'c1', '2025-01-06', 'Copy', 1.0, 'bank-sync', 'plaid-abc', '2025-01-06')"
        )
    conn.close()


def test_migration_003_uses_if_not_exists_on_postgres():
    conn = _FakePostgresMigration003Connection()

    migration_003(conn)

    alters = [sql for sql, _ in conn.statements if sql.startswith("ALTER TABLE")]
    assert alters == [
        "ALTER TABLE transactions ADD COLUMN IF NOT EXISTS fingerprint TEXT",
        "ALTER TABLE transactions ADD COLUMN IF NOT EXISTS verified INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE transactions ADD COLUMN IF NOT EXISTS notes TEXT",
    ]
    assert any("SET fingerprint = plaid_id" in sql for sql, _ in conn.statements)


def test_rewrite_sql_converts_placeholders_for_postgres():
    sql, params = rewrite_sql("postgres", "SELECT * FROM cycles WHERE id = ? AND month_key = ?", ["c1", "2025-12"])
    assert sql == "SELECT * FROM cycles WHERE id = %s AND month_key = %s"
    assert params == ["c1", "2025-12"]

    sql, params = rewrite_sql("postgres", "PRAGMA table_info(people)", None)
    assert "information_schema.columns" in sql
    assert params == ("people",)

    assert rewrite_sql("sqlite", "SELECT ?", (1,)) == ("SELECT ?", (1,))


def test_apply_migrations_does_not_close_passed_connection(tmp_path):
    db_path = tmp_path / "connection.sqlite"
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    apply_migrations(conn)

    row = conn.execute("SELECT 1").fetchone()
    assert row[0] == 1
    conn.close()


def test_check_db_main_migrates_and_reports_counts(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    db_path = tmp_path / "check.sqlite"

    assert main([str(db_path)]) == 1
    capsys.readouterr()

    assert main([str(db_path), "--migrate", "--counts"]) == 0
    report = json.loads(capsys.readouterr().out)

    assert report["ok"] is True
    assert report["backend"] == "sqlite"
    assert report["counts"]["transactions"] == 0
    assert set(report["counts"]) == {"people", "cycles", "transactions", "consumption_entries", "personal_payments", "bank_links"}
