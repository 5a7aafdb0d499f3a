"""Proportional allocation of a cycle's grocery spend.

Everybody's share is their consumption weight over the cycle's total weight.
Personal payments are household spend too: they grow the pool and are then
credited back to whoever paid them. Rounding happens per figure when the row
is built, so the rounded ``owed`` values may not add up to ``total`` exactly.
"""

from decimal import ROUND_HALF_UP, Decimal

from .cycles import get_cycle
from .household import list_consumption, list_payments
from .ledger import list_transactions


CENT = Decimal("0.01")
SHARE_PLACES = Decimal("0.0001")


def _decimal(value):
    return Decimal(str(value or 0))


def _cents(value):
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


def compute_bill(store, cycle_id):
    get_cycle(store, cycle_id)
    transactions = store.list("transactions", cycle_id=cycle_id)
    entries = store.list("consumption_entries", cycle_id=cycle_id)
    payments = store.list("personal_payments", cycle_id=cycle_id)
    people = {person["id"]: person for person in store.list("people")}

    spend = sum((_decimal(tx["amount"]) for tx in transactions), Decimal(0))
    paid_total = sum((_decimal(payment["amount"]) for payment in payments), Decimal(0))
    total = spend + paid_total
    total_weight = sum(int(entry["weight"] or 0) for entry in entries)

    paid_by_person = {}
    for payment in payments:
        paid_by_person[payment["person_id"]] = paid_by_person.get(payment["person_id"], Decimal(0)) + _decimal(payment["amount"])

    rows = []
    for entry in entries:
        weight = int(entry["weight"] or 0)
        share = Decimal(weight) / Decimal(total_weight) if total_weight > 0 else Decimal(0)
        owed = total * share
        paid = paid_by_person.get(entry["person_id"], Decimal(0))
        balance = _cents(owed - paid)
        person = people.get(entry["person_id"], {})
        rows.append(
            {
                "person_id": entry["person_id"],
                "person_name": person.get("name"),
                "active": person.get("active", False),
                "weight": weight,
                "share": float(share.quantize(SHARE_PLACES, rounding=ROUND_HALF_UP) * 100),
                "owed": _cents(owed),
                "paid": _cents(paid),
                "balance": balance,
                "status": "owes" if balance > 0 else "credit",
            }
        )
    rows.sort(key=lambda row: ((row["person_name"] or "").lower(), row["person_id"]))

    return {
        "cycle_id": cycle_id,
        "total": float(total),
        "transactions_total": float(spend),
        "payments_total": float(paid_total),
        "total_weight": total_weight,
        "rows": rows,
    }


def cycle_detail(store, cycle_id):
    return {
        "cycle": get_cycle(store, cycle_id),
        "transactions": list_transactions(store, cycle_id),
        "consumption": list_consumption(store, cycle_id),
        "payments": list_payments(store, cycle_id),
        "bill": compute_bill(store, cycle_id),
    }
