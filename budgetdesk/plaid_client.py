from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

PLAID_ENVIRONMENTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}
SYNC_PAGE_SIZE = 500


class PlaidError(RuntimeError):
    """Base error for the banking aggregation API."""


class PlaidUnavailable(PlaidError):
    """Raised when Plaid cannot be reached or is not configured."""


class PlaidApiError(PlaidError):
    """Raised when Plaid answers with an error payload."""

    def __init__(self, message: str, error_code: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.status = status


@dataclass
class PlaidClient:
    client_id: str | None = None
    secret: str | None = None
    environment: str = "sandbox"
    products: Sequence[str] = ("transactions",)
    country_codes: Sequence[str] = ("US",)
    redirect_uri: str | None = None
    client_name: str = "Budgetdesk"
    timeout_seconds: int = 30
    base_url: str = field(default="")

    def __post_init__(self) -> None:
        if not self.base_url:
            try:
                self.base_url = PLAID_ENVIRONMENTS[self.environment.strip().lower()]
            except KeyError as exc:
                raise ValueError(f"Unsupported Plaid environment: {self.environment}") from exc

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.secret)

    def link_token_create(self, client_user_id: str) -> dict:
        payload = {
            "client_name": self.client_name,
            "user": {"client_user_id": client_user_id},
            "products": list(self.products),
            "country_codes": list(self.country_codes),
            "language": "en",
        }
        if self.redirect_uri:
            payload["redirect_uri"] = self.redirect_uri
        return self._post("/link/token/create", payload)

    def item_public_token_exchange(self, public_token: str) -> dict:
        return self._post("/item/public_token/exchange", {"public_token": public_token})

    def item_get(self, access_token: str) -> dict:
        return self._post("/item/get", {"access_token": access_token})

    def institution_get_by_id(self, institution_id: str) -> dict:
        return self._post(
            "/institutions/get_by_id",
            {"institution_id": institution_id, "country_codes": list(self.country_codes)},
        )

    def accounts_get(self, access_token: str) -> dict:
        return self._post("/accounts/get", {"access_token": access_token})

    def transactions_sync(
        self, access_token: str, cursor: str | None = None, count: int = SYNC_PAGE_SIZE
    ) -> dict:
        payload: dict = {"access_token": access_token, "count": count}
        if cursor:
            payload["cursor"] = cursor
        return self._post("/transactions/sync", payload)

    def transactions_recurring_get(self, access_token: str, account_ids: Sequence[str] | None = None) -> dict:
        payload: dict = {"access_token": access_token}
        if account_ids:
            payload["account_ids"] = list(account_ids)
        return self._post("/transactions/recurring/get", payload)

    def item_remove(self, access_token: str) -> dict:
        return self._post("/item/remove", {"access_token": access_token})

    def _post(self, path: str, payload: dict) -> dict:
        if not self.is_configured:
            raise PlaidUnavailable("Plaid credentials are not configured.")
        body = json.dumps({"client_id": self.client_id, "secret": self.secret, **payload}).encode("utf-8")
        request = Request(
            f"{self.base_url}{path}",
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                return json.load(response)
        except HTTPError as exc:
            raise _api_error(exc) from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            logger.warning("Plaid request to %s failed: %s", path, exc)
            raise PlaidUnavailable("Plaid API unavailable") from exc


def _api_error(exc: HTTPError) -> PlaidApiError:
    try:
        details = json.loads(exc.read().decode("utf-8") or "{}")
    except (ValueError, OSError):
        details = {}
    message = details.get("error_message") or f"Plaid request failed with status {exc.code}"
    return PlaidApiError(message, error_code=details.get("error_code"), status=exc.code)
