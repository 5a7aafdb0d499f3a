import json
import os
import sqlite3

import click
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from .bank_sync import build_bank_client, link_status, register_link, resolve_bank_link
from .billing import compute_bill, cycle_detail
from .cycles import (
    create_cycle,
    current_month_key,
    delete_cycle,
    finalize_cycle,
    get_cycle,
    get_or_create_cycle,
    list_cycles,
    unfinalize_cycle,
)
from .db import parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .errors import DatabaseInitError, GrocSplitError, ValidationError
from .household import (
    add_payment,
    add_person,
    deactivate_person,
    delete_payment,
    list_consumption,
    list_payments,
    list_people,
    rename_person,
    save_consumption,
)
from .ingest import decode_csv_bytes, parse_keywords
from .ledger import (
    add_manual_transaction,
    delete_transaction,
    import_csv,
    list_transactions,
    set_verified,
    sync_bank,
)
from .store import MemoryLedgerStore, open_store


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.environ.get("DB_PATH") or os.path.join(app.instance_path, "grocsplit.sqlite"),
        DATABASE_URL=os.environ.get("DATABASE_URL"),
        LEDGER_BACKEND=os.environ.get("LEDGER_BACKEND", "sql"),
        GROCERY_KEYWORDS=os.environ.get("GROCERY_KEYWORDS", ""),
        PLAID_CLIENT_ID=os.environ.get("PLAID_CLIENT_ID"),
        PLAID_SECRET=os.environ.get("PLAID_SECRET"),
        PLAID_ENV=os.environ.get("PLAID_ENV", "sandbox"),
        BANK_ACCESS_TOKEN=os.environ.get("BANK_ACCESS_TOKEN"),
        BANK_SYNC_TIMEOUT=float(os.environ.get("BANK_SYNC_TIMEOUT", "30")),
        BANK_CLIENT=None,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def uses_memory_backend():
        return (app.config.get("LEDGER_BACKEND") or "sql").strip().lower() == "memory"

    def database_config():
        return parse_database_config(app.config["DATABASE"], app.config.get("DATABASE_URL"))

    @app.teardown_appcontext
    def close_store(_=None):
        store = g.pop("store", None)
        if store is not None:
            store.close()

    def get_store():
        if uses_memory_backend():
            # one shared ledger per app, not per request
            return app.extensions.setdefault("grocsplit.memory_store", MemoryLedgerStore())
        if "store" not in g:
            try:
                g.store = open_store(app.config)
            except (sqlite3.Error, OSError) as exc:
                message = f"Unable to open the ledger database at {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.store

    def init_db():
        if uses_memory_backend():
            app.config["DB_INIT_ERROR"] = None
            return
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (sqlite3.Error, OSError, RuntimeError) as exc:
            message = f"Failed to initialize the ledger database at {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    def grocery_keywords():
        return parse_keywords(app.config.get("GROCERY_KEYWORDS"))

    def json_body():
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return payload

    @app.errorhandler(GrocSplitError)
    def handle_domain_error(exc):
        if exc.status_code >= 500:
            app.logger.warning("%s %s failed upstream: %s", request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(DatabaseInitError)
    def handle_db_init_error(exc):
        return jsonify({"error": str(exc)}), 500

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({"error": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    @app.before_request
    def refuse_when_db_broken():
        message = app.config.get("DB_INIT_ERROR")
        if message and request.path.startswith("/api/"):
            return jsonify({"error": message}), 500
        return None

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.cli.command("import-csv")
    @click.argument("month_key")
    @click.argument("path", type=click.Path(exists=True, dir_okay=False))
    def import_csv_command(month_key, path):
        store = get_store()
        try:
            cycle = get_or_create_cycle(store, month_key)
        except GrocSplitError as exc:
            raise click.ClickException(exc.message) from exc
        with open(path, "rb") as handle:
            text = decode_csv_bytes(handle.read())
        if text is None:
            raise click.ClickException("Could not decode the CSV file.")
        try:
            result = import_csv(store, cycle["id"], text)
        except GrocSplitError as exc:
            raise click.ClickException(exc.message) from exc
        print(json.dumps(result, indent=2, sort_keys=True))

    @app.cli.command("bank-sync")
    @click.argument("month_key")
    def bank_sync_command(month_key):
        store = get_store()
        try:
            cycle = get_or_create_cycle(store, month_key)
            client = build_bank_client(app.config)
            link = resolve_bank_link(store, app.config)
            result = sync_bank(store, cycle["id"], client, link, grocery_keywords())
        except GrocSplitError as exc:
            raise click.ClickException(exc.message) from exc
        print(json.dumps(result, indent=2, sort_keys=True))

    @app.get("/api/health")
    def health():
        return jsonify({"ok": True, "backend": "memory" if uses_memory_backend() else database_config()["backend"]})

    @app.get("/health/db")
    def db_health():
        if uses_memory_backend():
            return jsonify({"ok": True, "backend": "memory"})
        try:
            return jsonify(get_db_health(database_config()))
        except sqlite3.Error as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.get("/api/people")
    def people_index():
        include_inactive = request.args.get("include_inactive") == "1"
        return jsonify(list_people(get_store(), include_inactive=include_inactive))

    @app.post("/api/people")
    def people_create():
        return jsonify(add_person(get_store(), json_body().get("name"))), 201

    @app.patch("/api/people/<person_id>")
    def people_rename(person_id):
        return jsonify(rename_person(get_store(), person_id, json_body().get("name")))

    @app.delete("/api/people/<person_id>")
    def people_deactivate(person_id):
        return jsonify(deactivate_person(get_store(), person_id))

    @app.get("/api/cycles")
    def cycles_index():
        return jsonify(list_cycles(get_store()))

    @app.post("/api/cycles")
    def cycles_create():
        return jsonify(create_cycle(get_store(), json_body().get("month_key"))), 201

    @app.get("/api/cycles/current")
    def cycles_current():
        return jsonify(get_or_create_cycle(get_store(), current_month_key()))

    @app.get("/api/cycles/<cycle_id>")
    def cycles_detail(cycle_id):
        return jsonify(cycle_detail(get_store(), cycle_id))

    @app.delete("/api/cycles/<cycle_id>")
    def cycles_delete(cycle_id):
        cycle = delete_cycle(get_store(), cycle_id)
        return jsonify({"deleted": True, "id": cycle["id"]})

    @app.post("/api/cycles/<cycle_id>/finalize")
    def cycles_finalize(cycle_id):
        return jsonify(finalize_cycle(get_store(), cycle_id))

    @app.post("/api/cycles/<cycle_id>/unfinalize")
    def cycles_unfinalize(cycle_id):
        return jsonify(unfinalize_cycle(get_store(), cycle_id))

    @app.get("/api/cycles/<cycle_id>/bill")
    def cycles_bill(cycle_id):
        return jsonify(compute_bill(get_store(), cycle_id))

    @app.get("/api/cycles/<cycle_id>/consumption")
    def consumption_index(cycle_id):
        return jsonify(list_consumption(get_store(), cycle_id))

    @app.put("/api/cycles/<cycle_id>/consumption")
    def consumption_save(cycle_id):
        return jsonify(save_consumption(get_store(), cycle_id, request.get_json(silent=True)))

    @app.get("/api/cycles/<cycle_id>/payments")
    def payments_index(cycle_id):
        return jsonify(list_payments(get_store(), cycle_id))

    @app.post("/api/cycles/<cycle_id>/payments")
    def payments_create(cycle_id):
        return jsonify(add_payment(get_store(), cycle_id, json_body())), 201

    @app.delete("/api/cycles/<cycle_id>/payments/<payment_id>")
    def payments_delete(cycle_id, payment_id):
        payment = delete_payment(get_store(), cycle_id, payment_id)
        return jsonify({"deleted": True, "id": payment["id"]})

    @app.get("/api/cycles/<cycle_id>/transactions")
    def transactions_index(cycle_id):
        return jsonify(list_transactions(get_store(), cycle_id))

    @app.post("/api/cycles/<cycle_id>/transactions")
    def transactions_create(cycle_id):
        return jsonify(add_manual_transaction(get_store(), cycle_id, json_body())), 201

    @app.patch("/api/cycles/<cycle_id>/transactions/<transaction_id>")
    def transactions_verify(cycle_id, transaction_id):
        return jsonify(set_verified(get_store(), cycle_id, transaction_id, json_body().get("verified")))

    @app.delete("/api/cycles/<cycle_id>/transactions/<transaction_id>")
    def transactions_delete(cycle_id, transaction_id):
        transaction = delete_transaction(get_store(), cycle_id, transaction_id)
        return jsonify({"deleted": True, "id": transaction["id"]})

    def uploaded_csv_text():
        upload = request.files.get("file")
        if upload is not None:
            text = decode_csv_bytes(upload.read())
        elif request.is_json:
            text = json_body().get("csv_text")
        else:
            text = decode_csv_bytes(request.get_data())
        if not text:
            raise ValidationError("Provide CSV content as csv_text, a text/csv body or a file upload.")
        return text

    @app.post("/api/cycles/<cycle_id>/transactions/import-csv")
    def transactions_import_csv(cycle_id):
        store = get_store()
        get_cycle(store, cycle_id)
        return jsonify(import_csv(store, cycle_id, uploaded_csv_text()))

    @app.post("/api/cycles/<cycle_id>/bank-sync")
    def cycles_bank_sync(cycle_id):
        store = get_store()
        get_cycle(store, cycle_id)
        client = build_bank_client(app.config)
        link = resolve_bank_link(store, app.config)
        return jsonify(sync_bank(store, cycle_id, client, link, grocery_keywords()))

    @app.get("/api/bank/status")
    def bank_status():
        return jsonify(link_status(get_store()))

    @app.post("/api/bank/links")
    def bank_links_create():
        link = register_link(get_store(), json_body())
        return jsonify({"item_id": link["item_id"], "institution": link["institution"]}), 201

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_store = get_store
    app.init_db = init_db
    return app
