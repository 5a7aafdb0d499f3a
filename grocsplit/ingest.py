import csv
import io
import math
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import ValidationError


SOURCE_BANK_SYNC = "bank-sync"
SOURCE_CSV_IMPORT = "csv-import"
SOURCE_MANUAL = "manual"

MAX_MERCHANT_LENGTH = 200
GROCERY_CATEGORY_TERMS = ("groceries", "supermarket", "food and drink")
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
CENT = Decimal("0.01")

# date, vendor, debit, credit, card_number
CSV_DATE, CSV_VENDOR, CSV_DEBIT, CSV_CREDIT = range(4)


def parse_money(value):
    text = (value or "").strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("$", "")
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    try:
        amount = float(cleaned)
    except ValueError:
        return None
    return amount if math.isfinite(amount) else None


def coerce_amount(value):
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        amount = float(value)
        return amount if math.isfinite(amount) else None
    if isinstance(value, str):
        return parse_money(value)
    return None


def to_cents(value):
    try:
        return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return None


def parse_iso_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    cleaned = (value or "").strip() if isinstance(value, str) else ""
    if not ISO_DATE_PATTERN.match(cleaned):
        return None
    try:
        return date.fromisoformat(cleaned)
    except ValueError:
        return None


def normalize_merchant(value):
    if not isinstance(value, str):
        return ""
    return value.strip()[:MAX_MERCHANT_LENGTH]


def parse_keywords(value):
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [keyword.strip().lower() for keyword in value if keyword and keyword.strip()]


def is_grocery(record, keywords=()):
    name = (record.get("merchant_name") or "").lower()
    if any(keyword and keyword in name for keyword in keywords):
        return True
    labels = [label.lower() for label in (record.get("category_labels") or []) if label]
    return any(term in label for label in labels for term in GROCERY_CATEGORY_TERMS)


def normalize_bank_record(record):
    amount = coerce_amount(record.get("amount"))
    if amount is None:
        return None
    amount = to_cents(abs(amount))
    if not amount or amount <= 0:
        return None
    posted = parse_iso_date(record.get("date"))
    merchant = normalize_merchant(record.get("merchant_name"))
    if posted is None or not merchant:
        return None
    return {
        "date": posted.isoformat(),
        "merchant": merchant,
        "amount": amount,
        "source": SOURCE_BANK_SYNC,
        "fingerprint": str(record["external_id"]) if record.get("external_id") else None,
    }


def csv_fingerprint(row_date, vendor, amount):
    return f"csv:{row_date}:{vendor}:{amount:.2f}"


def parse_csv_text(text):
    if not isinstance(text, str):
        raise ValidationError("CSV import expects the file contents as text.")
    if text.startswith("\ufeff"):
        text = text[1:]

    parsed_rows = []
    errors = 0
    ignored = 0
    for raw_row in csv.reader(io.StringIO(text)):
        row = [cell.strip() for cell in raw_row]
        if not any(row):
            continue
        if not ISO_DATE_PATTERN.match(row[CSV_DATE]):
            continue

        row_date = parse_iso_date(row[CSV_DATE])
        vendor = normalize_merchant(row[CSV_VENDOR]) if len(row) > CSV_VENDOR else ""
        debit = row[CSV_DEBIT] if len(row) > CSV_DEBIT else ""
        credit = row[CSV_CREDIT] if len(row) > CSV_CREDIT else ""

        if not debit and credit:
            ignored += 1
            continue
        if row_date is None or not vendor:
            errors += 1
            continue
        amount = parse_money(debit)
        if amount is None or amount <= 0:
            errors += 1
            continue

        amount = to_cents(amount)
        if not amount:
            errors += 1
            continue
        parsed_rows.append(
            {
                "date": row_date.isoformat(),
                "merchant": vendor,
                "amount": amount,
                "source": SOURCE_CSV_IMPORT,
                "fingerprint": csv_fingerprint(row_date.isoformat(), vendor, amount),
            }
        )

    return {
        "rows": parsed_rows,
        "errors": errors,
        "ignored": ignored,
        "records": len(parsed_rows) + errors,
    }


def normalize_manual_entry(payload, today=None):
    merchant = normalize_merchant(payload.get("merchant"))
    if not merchant:
        raise ValidationError("merchant is required")

    amount = coerce_amount(payload.get("amount"))
    amount = to_cents(abs(amount)) if amount is not None else None
    if not amount or amount <= 0:
        raise ValidationError("amount must be a non-zero number")

    raw_date = payload.get("date")
    if raw_date:
        posted = parse_iso_date(raw_date)
        if posted is None:
            raise ValidationError("date must be YYYY-MM-DD")
    else:
        posted = today or date.today()

    notes = payload.get("notes")
    if isinstance(notes, str):
        notes = notes.strip() or None
    else:
        notes = None
    return {
        "date": posted.isoformat(),
        "merchant": merchant,
        "amount": amount,
        "source": SOURCE_MANUAL,
        "fingerprint": None,
        "notes": notes,
    }


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None
