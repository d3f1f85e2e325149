"""
Paginated REST client for the external CRM.

Only read access is needed: one call per page per entity type, optionally
restricted to records updated after a timestamp for incremental runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping

import requests

DEFAULT_TIMEOUT_SECONDS = 30
USER_AGENT = "practice-sync/1.0"


@dataclass(frozen=True)
class CrmRecord:
    """One external entity: its identifier, type and flat attribute map."""

    id: str
    type: str
    attributes: Mapping[str, Any]

    def as_payload(self) -> dict[str, Any]:
        payload = dict(self.attributes)
        payload["id"] = self.id
        return payload


@dataclass(frozen=True)
class CrmPage:
    """A single page returned by the CRM together with its pagination state."""

    records: List[CrmRecord]
    current_page: int
    total_pages: int
    total_count: int
    per_page: int

    @property
    def has_more(self) -> bool:
        return self.current_page < self.total_pages and len(self.records) > 0


class CrmClientError(RuntimeError):
    """Base error for CRM client failures."""


class CrmConnectionError(CrmClientError):
    """Raised when the CRM cannot be reached at all."""


class RateLimitError(CrmClientError):
    """Raised when the CRM throttles the caller (HTTP 429)."""

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class CrmApiError(CrmClientError):
    """Raised for any other non-2xx response."""

    def __init__(self, message: str, status_code: int, response_body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class CrmClient:
    """Fetch pages of entities from the CRM REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("CRM base URL is required.")
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

    def __repr__(self) -> str:
        return f"<CrmClient {self.base_url}>"

    # Public API -----------------------------------------------------------------

    def fetch_page(
        self,
        entity_type: str,
        *,
        page: int = 1,
        per_page: int = 100,
        updated_since: str | None = None,
    ) -> CrmPage:
        params: dict[str, Any] = {"fields": "all", "page": page, "per_page": per_page}
        if updated_since:
            params.update({"filter_by": "updated_at", "filter_op": "gt", "filter_on": updated_since})

        payload = self._get(f"/{entity_type}", params)
        data = payload.get("data") or []
        records = [self._to_record(item, entity_type) for item in data if isinstance(item, Mapping)]

        pagination = (payload.get("meta") or {}).get("pagination") or {}
        page_result = CrmPage(
            records=records,
            current_page=_as_int(pagination.get("current_page"), page),
            total_pages=_as_int(pagination.get("total_pages"), 1),
            total_count=_as_int(pagination.get("total_count"), len(records)),
            per_page=_as_int(pagination.get("per_page"), per_page),
        )
        self.logger.debug(
            "Fetched CRM page",
            extra={
                "sync_entity_type": entity_type,
                "sync_page": page_result.current_page,
                "sync_total_pages": page_result.total_pages,
                "sync_record_count": len(records),
            },
        )
        return page_result

    # Internal helpers -----------------------------------------------------------

    def _get(self, path: str, params: Mapping[str, Any]) -> Mapping[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, headers=self._headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise CrmConnectionError(f"Failed to reach CRM at {url}: {exc}") from exc

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError("Rate limit exceeded", _as_int(retry_after, None))
        if not response.ok:
            raise CrmApiError(
                f"CRM API error: {response.status_code} {response.reason}",
                response.status_code,
                response.text,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise CrmApiError("CRM API returned a non-JSON body.", response.status_code, response.text) from exc
        if not isinstance(body, Mapping):
            raise CrmApiError("CRM API returned an unexpected payload.", response.status_code, response.text)
        return body

    @staticmethod
    def _to_record(item: Mapping[str, Any], entity_type: str) -> CrmRecord:
        attributes = item.get("attributes")
        return CrmRecord(
            id=str(item.get("id") or ""),
            type=str(item.get("type") or entity_type),
            attributes=dict(attributes) if isinstance(attributes, Mapping) else {},
        )


def _as_int(value: Any, default: int | None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
