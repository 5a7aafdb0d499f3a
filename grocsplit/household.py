import logging
from datetime import date

from .cycles import get_cycle, require_open_cycle
from .errors import ConflictError, NotFoundError, ValidationError
from .ingest import coerce_amount, parse_iso_date, to_cents
from .store import DuplicateKeyError, now_text


logger = logging.getLogger(__name__)


def _clean_name(name):
    cleaned = name.strip() if isinstance(name, str) else ""
    if not cleaned:
        raise ValidationError("name is required")
    return cleaned


def _clean_note(value):
    if not isinstance(value, str):
        return None
    return value.strip() or None


def get_person(store, person_id):
    person = store.get("people", person_id)
    if person is None:
        raise NotFoundError("Person not found")
    return person


def list_people(store, include_inactive=False):
    if include_inactive:
        return store.list("people")
    return store.list("people", active=True)


def add_person(store, name):
    name = _clean_name(name)
    try:
        person = store.insert("people", {"name": name, "active": True})
    except DuplicateKeyError:
        raise ConflictError("A person with that name already exists.") from None
    logger.info("Added person %s (%s)", person["id"], name)
    return person


def rename_person(store, person_id, name):
    name = _clean_name(name)
    get_person(store, person_id)
    try:
        return store.update("people", person_id, {"name": name})
    except DuplicateKeyError:
        raise ConflictError("A person with that name already exists.") from None


def deactivate_person(store, person_id):
    person = get_person(store, person_id)
    if not person["active"]:
        return person
    person = store.update("people", person_id, {"active": False})
    logger.info("Deactivated person %s (%s)", person_id, person["name"])
    return person


def _with_person_names(store, rows):
    names = {person["id"]: person["name"] for person in store.list("people")}
    return [dict(row, person_name=names.get(row["person_id"])) for row in rows]


def list_consumption(store, cycle_id):
    get_cycle(store, cycle_id)
    rows = _with_person_names(store, store.list("consumption_entries", cycle_id=cycle_id))
    return sorted(rows, key=lambda row: (row["person_name"] or "").lower())


def _clean_weight(value):
    if value is None or value == "":
        return 0
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    raise ValidationError("weight must be a non-negative integer")


def save_consumption(store, cycle_id, entries):
    if not isinstance(entries, list):
        raise ValidationError("Body must be an array of consumption entries")

    cleaned = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("person_id"):
            raise ValidationError("Each entry needs a person_id")
        raw_weight = entry.get("weight", entry.get("dinner_count"))
        cleaned.append(
            {
                "person_id": entry["person_id"],
                "weight": _clean_weight(raw_weight),
                "notes": _clean_note(entry.get("notes")),
            }
        )

    with store.transaction():
        require_open_cycle(store, cycle_id)
        for entry in cleaned:
            get_person(store, entry["person_id"])
            store.upsert(
                "consumption_entries",
                {
                    "cycle_id": cycle_id,
                    "person_id": entry["person_id"],
                    "weight": entry["weight"],
                    "notes": entry["notes"],
                    "updated_at": now_text(),
                },
                key=("cycle_id", "person_id"),
            )
    logger.info("Saved %s consumption entries for cycle %s", len(cleaned), cycle_id)
    return list_consumption(store, cycle_id)


def list_payments(store, cycle_id):
    get_cycle(store, cycle_id)
    return _with_person_names(store, store.list("personal_payments", cycle_id=cycle_id))


def add_payment(store, cycle_id, payload, today=None):
    person_id = payload.get("person_id")
    if not person_id:
        raise ValidationError("person_id is required")
    amount = coerce_amount(payload.get("amount"))
    if amount is None or amount <= 0 or not to_cents(amount):
        raise ValidationError("amount must be greater than 0")

    raw_date = payload.get("date")
    if raw_date:
        paid_on = parse_iso_date(raw_date)
        if paid_on is None:
            raise ValidationError("date must be YYYY-MM-DD")
    else:
        paid_on = today or date.today()

    with store.transaction():
        require_open_cycle(store, cycle_id)
        get_person(store, person_id)
        payment = store.insert(
            "personal_payments",
            {
                "cycle_id": cycle_id,
                "person_id": person_id,
                "amount": to_cents(amount),
                "note": _clean_note(payload.get("note")),
                "date": paid_on.isoformat(),
            },
        )
    logger.info("Recorded personal payment %s of %.2f for person %s in cycle %s", payment["id"], payment["amount"], person_id, cycle_id)
    return payment


def delete_payment(store, cycle_id, payment_id):
    with store.transaction():
        require_open_cycle(store, cycle_id)
        payment = store.get("personal_payments", payment_id)
        if payment is None or payment["cycle_id"] != cycle_id:
            raise NotFoundError("Personal payment not found")
        store.delete("personal_payments", payment_id)
    return payment
