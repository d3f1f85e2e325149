from __future__ import annotations

import pytest
import requests

from flask_app.sync.client import CrmApiError, CrmClient, CrmConnectionError, RateLimitError


class FakeResponse:
    def __init__(self, *, status_code=200, json_data=None, text: str = "", headers=None, reason="OK"):
        self.status_code = status_code
        self._json_data = json_data
        self.text = text
        self.headers = headers or {}
        self.reason = reason
        self.ok = status_code < 400

    def json(self):
        if self._json_data is None:
            raise ValueError("No JSON body")
        return self._json_data


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.get_calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.get_calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(session):
    return CrmClient(base_url="https://crm.test/api/v1/", access_token="secret-token", session=session, timeout=12)


def _page_body(records, *, current_page=1, total_pages=1, total_count=None):
    return {
        "data": records,
        "meta": {
            "pagination": {
                "current_page": current_page,
                "total_pages": total_pages,
                "total_count": total_count if total_count is not None else len(records),
                "per_page": 100,
            }
        },
    }


def test_fetch_page_parses_records_and_pagination():
    body = _page_body(
        [
            {"id": 17, "type": "contacts", "attributes": {"first_name": "Ada", "email": "ada@example.com"}},
            {"id": "18", "type": "contacts", "attributes": None},
        ],
        current_page=1,
        total_pages=3,
        total_count=250,
    )
    session = FakeSession([FakeResponse(json_data=body)])

    page = _client(session).fetch_page("contacts", page=1, per_page=100)

    assert [record.id for record in page.records] == ["17", "18"]
    assert page.records[0].attributes["first_name"] == "Ada"
    assert page.records[1].attributes == {}
    assert page.records[0].as_payload()["id"] == "17"
    assert page.total_count == 250
    assert page.has_more is True

    call = session.get_calls[0]
    assert call["url"] == "https://crm.test/api/v1/contacts"
    assert call["headers"]["Authorization"] == "Bearer secret-token"
    assert call["params"]["page"] == 1
    assert call["params"]["per_page"] == 100
    assert "filter_on" not in call["params"]
    assert call["timeout"] == 12


def test_fetch_page_adds_incremental_filter():
    session = FakeSession([FakeResponse(json_data=_page_body([]))])

    _client(session).fetch_page("notes", page=2, per_page=25, updated_since="2024-05-01T00:00:00+00:00")

    params = session.get_calls[0]["params"]
    assert params["filter_by"] == "updated_at"
    assert params["filter_op"] == "gt"
    assert params["filter_on"] == "2024-05-01T00:00:00+00:00"


def test_missing_pagination_means_single_page():
    session = FakeSession([FakeResponse(json_data={"data": [{"id": "1", "attributes": {}}]})])

    page = _client(session).fetch_page("contacts", page=1)

    assert page.total_pages == 1
    assert page.total_count == 1
    assert page.has_more is False
    assert page.records[0].type == "contacts"


def test_empty_page_never_has_more():
    session = FakeSession([FakeResponse(json_data=_page_body([], current_page=2, total_pages=5, total_count=90))])

    assert _client(session).fetch_page("contacts", page=2).has_more is False


def test_rate_limit_raises_with_retry_after():
    session = FakeSession([FakeResponse(status_code=429, headers={"Retry-After": "42"}, reason="Too Many Requests")])

    with pytest.raises(RateLimitError) as excinfo:
        _client(session).fetch_page("contacts")
    assert excinfo.value.retry_after == 42


def test_api_error_carries_status_and_body():
    session = FakeSession([FakeResponse(status_code=503, text="maintenance", reason="Service Unavailable")])

    with pytest.raises(CrmApiError) as excinfo:
        _client(session).fetch_page("contacts")
    assert excinfo.value.status_code == 503
    assert excinfo.value.response_body == "maintenance"


def test_non_json_body_is_an_api_error():
    session = FakeSession([FakeResponse(status_code=200, json_data=None, text="<html>")])

    with pytest.raises(CrmApiError, match="non-JSON"):
        _client(session).fetch_page("contacts")


def test_transport_failure_raises_connection_error():
    session = FakeSession([requests.ConnectionError("connection refused")])

    with pytest.raises(CrmConnectionError, match="Failed to reach CRM"):
        _client(session).fetch_page("contacts")


def test_repr_does_not_leak_token():
    client = _client(FakeSession([]))
    assert "secret-token" not in repr(client)


def test_base_url_required():
    with pytest.raises(ValueError):
        CrmClient(base_url="", access_token="token")
