import logging

import requests

from .errors import UpstreamError, ValidationError


logger = logging.getLogger(__name__)

PLAID_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}
PAGE_SIZE = 500


class BankFetchError(UpstreamError):
    """The bank aggregator could not deliver a transaction feed."""


class BankClient:
    def fetch_transactions(self, access_token, date_from, date_to):
        """Return ``{amount, merchant_name, category_labels, external_id, date}`` records."""
        raise NotImplementedError


def plaid_record(transaction):
    labels = list(transaction.get("category") or [])
    finance_category = transaction.get("personal_finance_category") or {}
    for key in ("detailed", "primary"):
        if finance_category.get(key):
            labels.append(finance_category[key].replace("_", " "))
    return {
        "amount": transaction.get("amount"),
        "merchant_name": transaction.get("merchant_name") or transaction.get("name") or "",
        "category_labels": labels,
        "external_id": transaction.get("transaction_id"),
        "date": transaction.get("date"),
    }


class PlaidBankClient(BankClient):
    def __init__(self, client_id, secret, environment="sandbox", timeout=30, session=None):
        if environment not in PLAID_HOSTS:
            raise ValueError(f"Unknown Plaid environment: {environment}")
        self.client_id = client_id
        self.secret = secret
        self.base_url = PLAID_HOSTS[environment]
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, path, payload):
        body = dict(payload, client_id=self.client_id, secret=self.secret)
        try:
            response = self.session.post(f"{self.base_url}{path}", json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Plaid request to %s failed: %s", path, exc)
            raise BankFetchError("Bank sync failed", detail=str(exc)) from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.ok:
            logger.warning("Plaid request to %s returned HTTP %s", path, response.status_code)
            raise BankFetchError("Bank sync failed", detail=data or response.text, status=response.status_code)
        if not isinstance(data, dict):
            raise BankFetchError("Bank sync failed", detail="Malformed response from bank aggregator")
        return data

    def fetch_transactions(self, access_token, date_from, date_to):
        records = []
        offset = 0
        while True:
            data = self._post(
                "/transactions/get",
                {
                    "access_token": access_token,
                    "start_date": date_from,
                    "end_date": date_to,
                    "options": {
                        "count": PAGE_SIZE,
                        "offset": offset,
                        "include_personal_finance_category": True,
                    },
                },
            )
            page = data.get("transactions")
            if not isinstance(page, list):
                raise BankFetchError("Bank sync failed", detail="Response did not include transactions")
            records.extend(plaid_record(transaction) for transaction in page)
            offset += len(page)
            if not page or offset >= int(data.get("total_transactions") or 0):
                break
        logger.info("Fetched %s bank transactions between %s and %s", len(records), date_from, date_to)
        return records


def build_bank_client(config):
    client = config.get("BANK_CLIENT")
    if client is not None:
        return client
    if not config.get("PLAID_CLIENT_ID") or not config.get("PLAID_SECRET"):
        raise ValidationError("Bank sync is not configured. Set PLAID_CLIENT_ID and PLAID_SECRET.")
    return PlaidBankClient(
        config["PLAID_CLIENT_ID"],
        config["PLAID_SECRET"],
        environment=config.get("PLAID_ENV") or "sandbox",
        timeout=float(config.get("BANK_SYNC_TIMEOUT") or 30),
    )


def resolve_bank_link(store, config):
    link = store.find_one("bank_links")
    if link is not None:
        return link
    token = config.get("BANK_ACCESS_TOKEN")
    if token:
        return {"id": None, "item_id": None, "access_token": token, "institution": None}
    raise ValidationError("No bank account connected. Register an access token first.")


def register_link(store, payload):
    access_token = payload.get("access_token")
    access_token = access_token.strip() if isinstance(access_token, str) else ""
    if not access_token:
        raise ValidationError("access_token is required")
    item_id = payload.get("item_id") or "default"
    institution = payload.get("institution") or "Unknown"
    link = store.upsert(
        "bank_links",
        {"item_id": item_id, "access_token": access_token, "institution": institution},
        key=("item_id",),
    )
    logger.info("Registered bank link %s (%s)", link["item_id"], institution)
    return link


def link_status(store):
    link = store.find_one("bank_links")
    if link is None:
        return {"connected": False}
    return {
        "connected": True,
        "institution": link["institution"],
        "last_synced": link["last_synced"],
    }
