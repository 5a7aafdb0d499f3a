import logging

from .bank_sync import BankFetchError
from .cycles import get_cycle, require_open_cycle
from .errors import NotFoundError, ValidationError
from .ingest import is_grocery, normalize_bank_record, normalize_manual_entry, parse_csv_text
from .store import DuplicateKeyError, now_text


logger = logging.getLogger(__name__)

ADDED = "added"
SKIPPED = "skipped"


def merge_transaction(store, cycle_id, record):
    """Insert a normalized record unless its fingerprint is already on the ledger."""
    fingerprint = record.get("fingerprint")
    if fingerprint and store.find_one("transactions", fingerprint=fingerprint) is not None:
        return SKIPPED
    try:
        with store.transaction():
            require_open_cycle(store, cycle_id)
            store.insert(
                "transactions",
                {
                    "cycle_id": cycle_id,
                    "date": record["date"],
                    "merchant": record["merchant"],
                    "amount": record["amount"],
                    "source": record["source"],
                    "fingerprint": fingerprint,
                    "verified": False,
                    "notes": record.get("notes"),
                },
            )
    except DuplicateKeyError:
        return SKIPPED
    return ADDED


def list_transactions(store, cycle_id):
    get_cycle(store, cycle_id)
    return store.list("transactions", cycle_id=cycle_id)


def _get_cycle_transaction(store, cycle_id, transaction_id):
    transaction = store.get("transactions", transaction_id)
    if transaction is None or transaction["cycle_id"] != cycle_id:
        raise NotFoundError("Transaction not found")
    return transaction


def add_manual_transaction(store, cycle_id, payload, today=None):
    record = normalize_manual_entry(payload, today=today)
    with store.transaction():
        require_open_cycle(store, cycle_id)
        transaction = store.insert(
            "transactions",
            {
                "cycle_id": cycle_id,
                "date": record["date"],
                "merchant": record["merchant"],
                "amount": record["amount"],
                "source": record["source"],
                "fingerprint": None,
                "verified": False,
                "notes": record["notes"],
            },
        )
    logger.info("Added manual transaction %s (%s, %.2f) to cycle %s", transaction["id"], transaction["merchant"], transaction["amount"], cycle_id)
    return transaction


def set_verified(store, cycle_id, transaction_id, verified):
    if not isinstance(verified, bool):
        raise ValidationError("verified must be true or false")
    with store.transaction():
        require_open_cycle(store, cycle_id)
        _get_cycle_transaction(store, cycle_id, transaction_id)
        return store.update("transactions", transaction_id, {"verified": verified})


def delete_transaction(store, cycle_id, transaction_id):
    with store.transaction():
        require_open_cycle(store, cycle_id)
        transaction = _get_cycle_transaction(store, cycle_id, transaction_id)
        store.delete("transactions", transaction_id)
    logger.info("Deleted transaction %s from cycle %s", transaction_id, cycle_id)
    return transaction


def import_csv(store, cycle_id, text):
    require_open_cycle(store, cycle_id)
    parsed = parse_csv_text(text)

    added = skipped = 0
    with store.transaction():
        require_open_cycle(store, cycle_id)
        for record in parsed["rows"]:
            if merge_transaction(store, cycle_id, record) == ADDED:
                added += 1
            else:
                skipped += 1

    result = {
        "added": added,
        "skipped": skipped,
        "errors": parsed["errors"],
        "ignored": parsed["ignored"],
        "records": parsed["records"],
    }
    logger.info(
        "CSV import into cycle %s: %s added, %s skipped, %s errors, %s ignored",
        cycle_id,
        added,
        skipped,
        parsed["errors"],
        parsed["ignored"],
    )
    return result


def sync_bank(store, cycle_id, client, link, keywords=()):
    cycle = require_open_cycle(store, cycle_id)
    date_range = {"from": cycle["date_from"], "to": cycle["date_to"]}

    try:
        records = client.fetch_transactions(link["access_token"], cycle["date_from"], cycle["date_to"])
    except BankFetchError:
        logger.warning("Bank sync for cycle %s failed before anything was merged", cycle_id)
        raise

    groceries = [record for record in records if is_grocery(record, keywords)]
    added = skipped = 0
    with store.transaction():
        require_open_cycle(store, cycle_id)
        for record in groceries:
            normalized = normalize_bank_record(record)
            if normalized is None or merge_transaction(store, cycle_id, normalized) == SKIPPED:
                skipped += 1
            else:
                added += 1
        if link.get("id"):
            store.update("bank_links", link["id"], {"last_synced": now_text()})

    logger.info(
        "Bank sync into cycle %s: %s fetched, %s groceries, %s added, %s skipped",
        cycle_id,
        len(records),
        len(groceries),
        added,
        skipped,
    )
    return {
        "added": added,
        "skipped": skipped,
        "errors": 0,
        "total_records": len(records),
        "grocery_records": len(groceries),
        "date_range": date_range,
    }
