from datetime import date

import pytest

from grocsplit.errors import ValidationError
from grocsplit.ingest import (
    csv_fingerprint,
    decode_csv_bytes,
    is_grocery,
    normalize_bank_record,
    normalize_manual_entry,
    normalize_merchant,
    parse_csv_text,
    parse_keywords,
    parse_money,
)


def test_parse_csv_row_with_quoted_vendor():
    parsed = parse_csv_text('2025-12-29,"PHARMASAVE 115 VICTORIA, BC",51.20,,4500********6473\n')

    assert parsed["errors"] == 0
    assert parsed["records"] == 1
    row = parsed["rows"][0]
    assert row["date"] == "2025-12-29"
    assert row["merchant"] == "PHARMASAVE 115 VICTORIA, BC"
    assert row["amount"] == 51.20
    assert row["source"] == "csv-import"
    assert row["fingerprint"] == "csv:2025-12-29:PHARMASAVE 115 VICTORIA, BC:51.20"


def test_credit_only_rows_are_ignored_not_errors():
    text = "\n".join(
        [
            "2025-12-01,THRIFTY FOODS,23.10,,4500********6473",
            "2025-12-02,PAYMENT THANK YOU,,500.00,4500********6473",
        ]
    )
    parsed = parse_csv_text(text)

    assert len(parsed["rows"]) == 1
    assert parsed["ignored"] == 1
    assert parsed["errors"] == 0
    assert parsed["records"] == 1


def test_header_and_blank_lines_are_skipped_silently():
    parsed = parse_csv_text('Date,Vendor,Debit,Credit,Card\n\n2025-12-05,SAVE ON FOODS,"$1,204.50",,4500\n')

    assert parsed["errors"] == 0
    assert parsed["records"] == 1
    assert parsed["rows"][0]["amount"] == 1204.50


def test_malformed_rows_are_counted_as_errors():
    text = "\n".join(
        [
            "2025-02-30,BAD DATE MARKET,10.00,,",
            "2025-12-03,,10.00,,",
            "2025-12-04,FREE SAMPLES,0,,",
            "2025-12-05,NOT A NUMBER,abc,,",
            "2025-12-06,FAIRWAY MARKET,19.99,,",
        ]
    )
    parsed = parse_csv_text(text)

    assert parsed["errors"] == 4
    assert len(parsed["rows"]) == 1
    assert parsed["records"] == len(parsed["rows"]) + parsed["errors"]


def test_parse_csv_text_requires_text():
    with pytest.raises(ValidationError):
        parse_csv_text(None)


def test_parse_money_handles_symbols_and_parentheses():
    assert parse_money("$1,234.50") == 1234.50
    assert parse_money("(12.00)") == -12.00
    assert parse_money("") is None
    assert parse_money("nan") is None


def test_normalize_merchant_trims_and_truncates():
    assert normalize_merchant("  Costco  ") == "Costco"
    assert len(normalize_merchant("x" * 500)) == 200
    assert normalize_merchant(None) == ""


def test_grocery_classification_by_category_and_keyword():
    supermarket = {"merchant_name": "Thrifty Foods", "category_labels": ["Shops", "SUPERMARKETS AND OTHER GROCERY STORES"]}
    restaurant = {"merchant_name": "Pizza Place", "category_labels": ["Restaurants"]}
    keyword_hit = {"merchant_name": "Pizza Place Market", "category_labels": ["Restaurants"]}

    assert is_grocery(supermarket)
    assert not is_grocery(restaurant)
    assert is_grocery(keyword_hit, parse_keywords("market, bakery"))


def test_parse_keywords_accepts_strings_and_lists():
    assert parse_keywords(" Costco,,Fairway ") == ["costco", "fairway"]
    assert parse_keywords(["Market"]) == ["market"]
    assert parse_keywords(None) == []


def test_normalize_bank_record_uses_absolute_amount_and_external_id():
    record = normalize_bank_record(
        {"amount": -42.499, "merchant_name": " Save-On-Foods ", "external_id": "abc123", "date": "2025-12-09"}
    )

    assert record == {
        "date": "2025-12-09",
        "merchant": "Save-On-Foods",
        "amount": 42.50,
        "source": "bank-sync",
        "fingerprint": "abc123",
    }
    assert normalize_bank_record({"amount": 0, "merchant_name": "X", "external_id": "z", "date": "2025-12-09"}) is None
    assert normalize_bank_record({"amount": 5, "merchant_name": "X", "external_id": "z", "date": "12/09/2025"}) is None


def test_normalize_manual_entry_defaults_and_validation():
    entry = normalize_manual_entry({"merchant": "Farmers Market", "amount": "18.255", "notes": "  eggs "}, today=date(2025, 12, 14))
    assert entry["date"] == "2025-12-14"
    assert entry["amount"] == 18.26
    assert entry["source"] == "manual"
    assert entry["fingerprint"] is None
    assert entry["notes"] == "eggs"

    with pytest.raises(ValidationError):
        normalize_manual_entry({"merchant": "", "amount": 4})
    with pytest.raises(ValidationError):
        normalize_manual_entry({"merchant": "Deli", "amount": 0})
    with pytest.raises(ValidationError):
        normalize_manual_entry({"merchant": "Deli", "amount": True})
    with pytest.raises(ValidationError):
        normalize_manual_entry({"merchant": "Deli", "amount": 4, "date": "14/12/2025"})


def test_csv_fingerprint_uses_two_decimals():
    assert csv_fingerprint("2025-12-01", "COSTCO", 80.5) == "csv:2025-12-01:COSTCO:80.50"


def test_decode_csv_bytes_strips_bom():
    assert decode_csv_bytes("\ufeff2025-12-01,A,1.00,,".encode("utf-8")) == "2025-12-01,A,1.00,,"


def test_unroundable_debit_is_a_row_error_not_a_crash():
    parsed = parse_csv_text("2025-12-01,OK FOODS,10.00,,x\n2025-12-02,BIG,1e30,,x\n2025-12-03,TINY,0.001,,x\n")

    assert [row["merchant"] for row in parsed["rows"]] == ["OK FOODS"]
    assert parsed["errors"] == 2
    assert parsed["records"] == 3


def test_leading_bom_in_text_keeps_first_row():
    parsed = parse_csv_text("\ufeff2025-12-01,OK FOODS,10.00,,x\n")

    assert parsed["records"] == 1
    assert parsed["rows"][0]["date"] == "2025-12-01"
