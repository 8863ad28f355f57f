"""HTTP client for the expense API, used by auto-save and the submission UI."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from .conversion import jsonable_form, record_to_form
from .errors import STATUS_TO_ERROR, BackendFailure, NetworkError, RequestTimeout, ValidationFailed
from .models import ExpenseRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class ExpenseApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ExpenseApiClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def list_expenses(self, status: Optional[str] = None, expense_type: Optional[str] = None) -> list[dict[str, Any]]:
        params = {key: value for key, value in (("status", status), ("type", expense_type)) if value}
        return self._request("GET", "/api/expenses", params=params)["expenses"]

    def create_expense(self, form: Mapping[str, Any]) -> dict[str, Any]:
        return self._request("POST", "/api/expenses", json={"expense": jsonable_form(form)})["expense"]

    def update_expense(self, expense_id: str, form: Mapping[str, Any]) -> dict[str, Any]:
        body = {"expense": jsonable_form(form)}
        return self._request("PUT", f"/api/expenses/{expense_id}", json=body)["expense"]

    def save_draft(self, record: ExpenseRecord) -> dict[str, Any]:
        """Persist callback for ``AutoSaveScheduler``: create on first save, update afterwards."""
        form = record_to_form(record)
        if record.id:
            return self.update_expense(record.id, form)
        return self.create_expense(form)

    def submit_expense(self, expense_id: str, confirmations: Optional[Mapping[str, bool]] = None) -> dict[str, Any]:
        body = {"confirmations": dict(confirmations)} if confirmations is not None else None
        return self._request("POST", f"/api/expenses/{expense_id}/submit", json=body)

    def decide(self, expense_id: str, action: str, notes: Optional[str] = None) -> dict[str, Any]:
        body = {"action": action, "notes": notes}
        return self._request("POST", f"/api/expenses/{expense_id}/approve", json=body)

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Request timed out", extra={"method": method, "path": path})
            raise RequestTimeout() from exc
        except httpx.TransportError as exc:
            logger.warning("Request failed", extra={"method": method, "path": path, "error": str(exc)})
            raise NetworkError() from exc

        if response.is_success:
            return response.json()
        raise _error_for(response)


def _error_for(response: httpx.Response) -> Exception:
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("error") if isinstance(body, dict) else None
    error_cls = STATUS_TO_ERROR.get(response.status_code)
    if error_cls is None:
        error_cls = BackendFailure if response.status_code >= 500 else ValidationFailed
    if issubclass(error_cls, ValidationFailed):
        return error_cls(message, body.get("details") if isinstance(body, dict) else None)
    return error_cls(message)
