import random
from datetime import date

from grocsplit import create_app
from grocsplit.cycles import current_month_key, get_or_create_cycle
from grocsplit.household import add_payment, add_person, list_people, save_consumption
from grocsplit.ingest import csv_fingerprint
from grocsplit.ledger import merge_transaction


MERCHANTS = ["Thrifty Foods", "Save-On-Foods", "Costco Wholesale", "Fairway Market", "Country Grocer"]
HOUSEHOLD = ["Alex", "Sam", "Jordan"]


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        store = app.get_store()

        if not list_people(store):
            for name in HOUSEHOLD:
                add_person(store, name)
        people = list_people(store)

        month_key = current_month_key()
        cycle = get_or_create_cycle(store, month_key)
        year, month = (int(part) for part in month_key.split("-"))

        for day in range(1, 25, 3):
            posted = date(year, month, day).isoformat()
            merchant = random.choice(MERCHANTS)
            amount = round(random.uniform(15, 180), 2)
            merge_transaction(
                store,
                cycle["id"],
                {
                    "date": posted,
                    "merchant": merchant,
                    "amount": amount,
                    "source": "csv-import",
                    "fingerprint": csv_fingerprint(posted, merchant, amount),
                },
            )

        save_consumption(
            store,
            cycle["id"],
            [{"person_id": person["id"], "weight": random.randint(8, 24)} for person in people],
        )
        add_payment(
            store,
            cycle["id"],
            {"person_id": people[0]["id"], "amount": 45.00, "note": "Farmers market"},
        )
    print(f"Sample data generated for {month_key}.")


if __name__ == "__main__":
    main()
