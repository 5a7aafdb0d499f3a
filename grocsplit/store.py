"""Ledger storage behind one narrow interface.

Rows go in and come out as plain dicts. ``SqlLedgerStore`` runs against SQLite
or Postgres through :mod:`grocsplit.db`; ``MemoryLedgerStore`` keeps everything
in process and is meant for tests and demos. ``open_store`` picks one from the
app config.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone

from .db import INTEGRITY_ERRORS, connect_db, is_unique_violation, parse_database_config


ENTITIES = {
    "people": {
        "columns": ("id", "name", "active", "created_at"),
        "booleans": {"active"},
        "floats": set(),
        "stamp": "created_at",
        "order_by": (("name", False),),
        "unique": [("name",)],
        "references": {},
    },
    "cycles": {
        "columns": ("id", "month_key", "label", "date_from", "date_to", "finalized", "created_at"),
        "booleans": {"finalized"},
        "floats": set(),
        "stamp": "created_at",
        "order_by": (("month_key", True),),
        "unique": [("month_key",)],
        "references": {},
    },
    "transactions": {
        "columns": (
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
        ),
        "booleans": {"verified"},
        "floats": {"amount"},
        "stamp": "created_at",
        "order_by": (("date", True), ("created_at", True)),
        "unique": [("fingerprint",)],
        "references": {"cycle_id": "cycles"},
    },
    "consumption_entries": {
        "columns": ("id", "cycle_id", "person_id", "weight", "notes", "updated_at"),
        "booleans": set(),
        "floats": set(),
        "stamp": "updated_at",
        "order_by": (("updated_at", False),),
        "unique": [("cycle_id", "person_id")],
        "references": {"cycle_id": "cycles", "person_id": "people"},
    },
    "personal_payments": {
        "columns": ("id", "cycle_id", "person_id", "amount", "note", "date", "created_at"),
        "booleans": set(),
        "floats": {"amount"},
        "stamp": "created_at",
        "order_by": (("created_at", True),),
        "unique": [],
        "references": {"cycle_id": "cycles", "person_id": "people"},
    },
    "bank_links": {
        "columns": ("id", "item_id", "access_token", "institution", "last_synced", "created_at"),
        "booleans": set(),
        "floats": set(),
        "stamp": "created_at",
        "order_by": (("created_at", False),),
        "unique": [("item_id",)],
        "references": {},
    },
}

CASCADES = {
    "cycles": ("transactions", "consumption_entries", "personal_payments"),
}


class StoreError(Exception):
    """Base exception for ledger storage operations."""


class StoreIntegrityError(StoreError):
    """A write violated a reference or constraint."""


class DuplicateKeyError(StoreIntegrityError):
    """A write collided with a unique key."""


def new_id():
    return str(uuid.uuid4())


def now_text():
    return datetime.now(timezone.utc).isoformat()


def _schema(entity):
    try:
        return ENTITIES[entity]
    except KeyError:
        raise ValueError(f"Unknown entity: {entity}") from None


def _check_columns(entity, names):
    columns = _schema(entity)["columns"]
    unknown = [name for name in names if name not in columns]
    if unknown:
        raise ValueError(f"Unknown columns for {entity}: {', '.join(sorted(unknown))}")


def _prepare_fields(entity, fields):
    schema = _schema(entity)
    values = dict(fields)
    values.setdefault("id", new_id())
    values.setdefault(schema["stamp"], now_text())
    _check_columns(entity, values)
    for name in schema["booleans"]:
        if name in values and values[name] is not None:
            values[name] = 1 if values[name] else 0
    return values


def _row_to_dict(entity, row):
    if row is None:
        return None
    schema = _schema(entity)
    data = {key: row[key] for key in row.keys()}
    for name in schema["booleans"]:
        if name in data and data[name] is not None:
            data[name] = bool(data[name])
    for name in schema["floats"]:
        if name in data and data[name] is not None:
            data[name] = float(data[name])
    return data


class LedgerStore(ABC):
    backend = None

    @abstractmethod
    def get(self, entity, row_id):
        """Return one row by id, or None."""

    @abstractmethod
    def list(self, entity, order_by=None, **filters):
        """Return rows whose columns equal every filter value."""

    @abstractmethod
    def insert(self, entity, fields):
        """Insert a row and return it. Missing ids and timestamps are filled in."""

    @abstractmethod
    def update(self, entity, row_id, fields):
        """Update a row and return it, or None when the id is unknown."""

    @abstractmethod
    def delete(self, entity, row_id):
        """Delete a row (and its cascade children). Returns True when a row went away."""

    @abstractmethod
    def upsert(self, entity, fields, key):
        """Insert, or update the row that already holds the same ``key`` values."""

    @abstractmethod
    def transaction(self):
        """Context manager scoping an atomic unit of work."""

    def find_one(self, entity, **filters):
        rows = self.list(entity, **filters)
        return rows[0] if rows else None

    def run_in_transaction(self, fn, *args, **kwargs):
        with self.transaction():
            return fn(*args, **kwargs)

    def close(self):
        pass


class SqlLedgerStore(LedgerStore):
    def __init__(self, conn):
        self.conn = conn
        self.backend = conn.backend
        self._depth = 0

    @contextmanager
    def transaction(self):
        savepoint = f"sp_{self._depth}" if self._depth else None
        if savepoint:
            self.conn.execute(f"SAVEPOINT {savepoint}")
        else:
            self.conn.begin()
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if savepoint:
                self.conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            else:
                self.conn.rollback()
            raise
        self._depth -= 1
        if savepoint:
            self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
        else:
            self.conn.commit()

    def _execute(self, sql, params=()):
        try:
            return self.conn.execute(sql, params)
        except INTEGRITY_ERRORS as exc:
            if is_unique_violation(exc):
                raise DuplicateKeyError(str(exc)) from exc
            raise StoreIntegrityError(str(exc)) from exc

    def get(self, entity, row_id):
        _schema(entity)
        row = self._execute(f"SELECT * FROM {entity} WHERE id = ?", (row_id,)).fetchone()
        return _row_to_dict(entity, row)

    def list(self, entity, order_by=None, **filters):
        schema = _schema(entity)
        _check_columns(entity, filters)
        where_parts = []
        params = []
        for column, value in filters.items():
            if value is None:
                where_parts.append(f"{column} IS NULL")
            else:
                where_parts.append(f"{column} = ?")
                params.append(1 if value is True else 0 if value is False else value)
        sql = f"SELECT * FROM {entity}"
        if where_parts:
            sql += " WHERE " + " AND ".join(where_parts)
        ordering = order_by or schema["order_by"]
        _check_columns(entity, [column for column, _ in ordering])
        sql += " ORDER BY " + ", ".join(f"{column} {'DESC' if desc else 'ASC'}" for column, desc in ordering)
        rows = self._execute(sql, tuple(params)).fetchall()
        return [_row_to_dict(entity, row) for row in rows]

    def insert(self, entity, fields):
        values = _prepare_fields(entity, fields)
        columns = list(values)
        placeholders = ", ".join(["?"] * len(columns))
        with self.transaction():
            self._execute(
                f"INSERT INTO {entity} ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(values[column] for column in columns),
            )
        return self.get(entity, values["id"])

    def update(self, entity, row_id, fields):
        values = dict(fields)
        values.pop("id", None)
        _check_columns(entity, values)
        for name in _schema(entity)["booleans"]:
            if name in values and values[name] is not None:
                values[name] = 1 if values[name] else 0
        if values:
            assignments = ", ".join(f"{column} = ?" for column in values)
            with self.transaction():
                self._execute(
                    f"UPDATE {entity} SET {assignments} WHERE id = ?",
                    tuple(values.values()) + (row_id,),
                )
        return self.get(entity, row_id)

    def delete(self, entity, row_id):
        _schema(entity)
        with self.transaction():
            cursor = self._execute(f"DELETE FROM {entity} WHERE id = ?", (row_id,))
        return cursor.rowcount > 0

    def upsert(self, entity, fields, key):
        values = _prepare_fields(entity, fields)
        columns = list(values)
        changed = [column for column in columns if column not in key and column not in ("id", "created_at")]
        placeholders = ", ".join(["?"] * len(columns))
        assignments = ", ".join(f"{column} = excluded.{column}" for column in changed)
        with self.transaction():
            self._execute(
                f"""
                INSERT INTO {entity} ({', '.join(columns)}) VALUES ({placeholders})
                ON CONFLICT({', '.join(key)}) DO UPDATE SET {assignments}
                """,
                tuple(values[column] for column in columns),
            )
        return self.find_one(entity, **{column: values[column] for column in key})

    def close(self):
        self.conn.close()


class MemoryLedgerStore(LedgerStore):
    backend = "memory"

    def __init__(self):
        self._tables = {entity: {} for entity in ENTITIES}
        self._lock = threading.RLock()
        self._journals = []

    @contextmanager
    def transaction(self):
        # each scope keeps an undo journal of the rows it replaced
        with self._lock:
            journal = []
            self._journals.append(journal)
            try:
                yield self
            except BaseException:
                self._journals.pop()
                for entity, row_id, previous in reversed(journal):
                    if previous is None:
                        self._tables[entity].pop(row_id, None)
                    else:
                        self._tables[entity][row_id] = previous
                raise
            self._journals.pop()
            if self._journals:
                self._journals[-1].extend(journal)

    def _write(self, entity, row_id, row):
        rows = self._tables[entity]
        self._journals[-1].append((entity, row_id, rows.get(row_id)))
        if row is None:
            rows.pop(row_id, None)
        else:
            rows[row_id] = row

    def _read(self, entity, row):
        return _row_to_dict(entity, row)

    def _check_integrity(self, entity, row):
        schema = _schema(entity)
        for column, parent in schema["references"].items():
            if row.get(column) is not None and row[column] not in self._tables[parent]:
                raise StoreIntegrityError(f"{entity}.{column} references a missing {parent} row")
        for key in schema["unique"]:
            values = tuple(row.get(column) for column in key)
            if any(value is None for value in values):
                continue
            for other in self._tables[entity].values():
                if other["id"] != row["id"] and tuple(other.get(column) for column in key) == values:
                    raise DuplicateKeyError(f"UNIQUE constraint failed: {entity}.{', '.join(key)}")

    def get(self, entity, row_id):
        _schema(entity)
        return self._read(entity, self._tables[entity].get(row_id))

    def list(self, entity, order_by=None, **filters):
        schema = _schema(entity)
        _check_columns(entity, filters)
        rows = [
            row
            for row in self._tables[entity].values()
            if all(_matches(row.get(column), value) for column, value in filters.items())
        ]
        for column, desc in reversed(order_by or schema["order_by"]):
            rows.sort(key=lambda row: _sort_key(row.get(column)), reverse=desc)
        return [self._read(entity, row) for row in rows]

    def insert(self, entity, fields):
        values = _prepare_fields(entity, fields)
        row = {column: values.get(column) for column in _schema(entity)["columns"]}
        with self.transaction():
            if row["id"] in self._tables[entity]:
                raise DuplicateKeyError(f"UNIQUE constraint failed: {entity}.id")
            self._check_integrity(entity, row)
            self._write(entity, row["id"], row)
        return self.get(entity, row["id"])

    def update(self, entity, row_id, fields):
        values = dict(fields)
        values.pop("id", None)
        _check_columns(entity, values)
        for name in _schema(entity)["booleans"]:
            if name in values and values[name] is not None:
                values[name] = 1 if values[name] else 0
        with self.transaction():
            current = self._tables[entity].get(row_id)
            if current is None:
                return None
            candidate = dict(current, **values)
            self._check_integrity(entity, candidate)
            self._write(entity, row_id, candidate)
        return self.get(entity, row_id)

    def delete(self, entity, row_id):
        _schema(entity)
        with self.transaction():
            if row_id not in self._tables[entity]:
                return False
            self._write(entity, row_id, None)
            for child in CASCADES.get(entity, ()):
                fk = next(column for column, parent in ENTITIES[child]["references"].items() if parent == entity)
                for child_id in [cid for cid, row in self._tables[child].items() if row[fk] == row_id]:
                    self._write(child, child_id, None)
        return True

    def upsert(self, entity, fields, key):
        values = _prepare_fields(entity, fields)
        with self.transaction():
            existing = self.find_one(entity, **{column: values[column] for column in key})
            if existing is None:
                return self.insert(entity, values)
            changes = {
                column: value
                for column, value in values.items()
                if column not in key and column not in ("id", "created_at")
            }
            return self.update(entity, existing["id"], changes)


def _matches(stored, wanted):
    if isinstance(wanted, bool):
        return stored is not None and bool(stored) == wanted
    return stored == wanted


def _sort_key(value):
    return (value is None, value if value is not None else "")


def open_store(config):
    backend = (config.get("LEDGER_BACKEND") or "sql").strip().lower()
    if backend == "memory":
        return MemoryLedgerStore()
    if backend != "sql":
        raise ValueError(f"Unsupported LEDGER_BACKEND: {backend}")
    db_config = parse_database_config(config.get("DATABASE"), config.get("DATABASE_URL"))
    return SqlLedgerStore(connect_db(db_config))
