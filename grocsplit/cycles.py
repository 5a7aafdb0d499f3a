import calendar
import logging
import re
from datetime import date

from .errors import ConflictError, NotFoundError, ValidationError
from .store import DuplicateKeyError


logger = logging.getLogger(__name__)

MONTH_KEY_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


def parse_month_key(month_key):
    match = MONTH_KEY_PATTERN.match(month_key or "") if isinstance(month_key, str) else None
    if not match:
        raise ValidationError("month_key must be YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12 or year < 1:
        raise ValidationError("month_key must be YYYY-MM")
    return year, month


def month_bounds(month_key):
    year, month = parse_month_key(month_key)
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1).isoformat(), date(year, month, last_day).isoformat()


def month_label(month_key):
    year, month = parse_month_key(month_key)
    return f"{calendar.month_name[month]} {year}"


def current_month_key(today=None):
    today = today or date.today()
    return f"{today.year:04d}-{today.month:02d}"


def get_cycle(store, cycle_id):
    cycle = store.get("cycles", cycle_id)
    if cycle is None:
        raise NotFoundError("Cycle not found")
    return cycle


def list_cycles(store):
    return store.list("cycles")


def create_cycle(store, month_key):
    date_from, date_to = month_bounds(month_key)
    existing = store.find_one("cycles", month_key=month_key)
    if existing is not None:
        raise ConflictError("A cycle for that month already exists.", cycle=existing)

    try:
        with store.transaction():
            cycle = store.insert(
                "cycles",
                {
                    "month_key": month_key,
                    "label": month_label(month_key),
                    "date_from": date_from,
                    "date_to": date_to,
                    "finalized": False,
                },
            )
            active_people = store.list("people", active=True)
            for person in active_people:
                store.upsert(
                    "consumption_entries",
                    {"cycle_id": cycle["id"], "person_id": person["id"], "weight": 0, "notes": None},
                    key=("cycle_id", "person_id"),
                )
    except DuplicateKeyError:
        raise ConflictError(
            "A cycle for that month already exists.",
            cycle=store.find_one("cycles", month_key=month_key),
        ) from None

    logger.info("Created cycle %s (%s) seeded for %s people", cycle["id"], month_key, len(active_people))
    return cycle


def get_or_create_cycle(store, month_key):
    existing = store.find_one("cycles", month_key=month_key)
    if existing is not None:
        return existing
    try:
        return create_cycle(store, month_key)
    except ConflictError:
        return store.find_one("cycles", month_key=month_key)


def _set_finalized(store, cycle_id, finalized):
    with store.transaction():
        cycle = get_cycle(store, cycle_id)
        if cycle["finalized"] == finalized:
            return cycle
        cycle = store.update("cycles", cycle_id, {"finalized": finalized})
    logger.info("Cycle %s (%s) %s", cycle_id, cycle["month_key"], "finalized" if finalized else "reopened")
    return cycle


def finalize_cycle(store, cycle_id):
    return _set_finalized(store, cycle_id, True)


def unfinalize_cycle(store, cycle_id):
    return _set_finalized(store, cycle_id, False)


def require_open_cycle(store, cycle_id):
    cycle = get_cycle(store, cycle_id)
    if cycle["finalized"]:
        raise ConflictError("Cycle is finalized")
    return cycle


def delete_cycle(store, cycle_id):
    with store.transaction():
        cycle = require_open_cycle(store, cycle_id)
        store.delete("cycles", cycle_id)
    logger.info("Deleted cycle %s (%s)", cycle_id, cycle["month_key"])
    return cycle
