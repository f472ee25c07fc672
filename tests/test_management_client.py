from __future__ import annotations

import httpx
import pytest

from partner_link.config import ManagementApiSettings
from partner_link.management_client import ManagementApiError, ManagementClient

from .conftest import FakeManagementApi


def test_requests_carry_bearer_token(client: ManagementClient, api: FakeManagementApi):
    api.links["t1"] = "1234567"

    response = client.get_partners("token-t1")

    assert response.status_code == 200
    request = api.requests[-1]
    assert request.headers["Authorization"] == "Bearer token-t1"
    assert request.url.params["api-version"] == "2018-02-01"


def test_list_tenants_follows_next_link(client: ManagementClient, api: FakeManagementApi):
    api.tenants = [{"tenantId": f"t{index}"} for index in range(5)]

    tenants = client.list_tenants("token-organizations")

    assert [tenant["tenantId"] for tenant in tenants] == ["t0", "t1", "t2", "t3", "t4"]
    assert len(api.requests_for("GET")) == 3
    assert api.requests[0].url.params["api-version"] == "2020-01-01"


def test_create_partner_sends_properties_body(client: ManagementClient, api: FakeManagementApi):
    response = client.create_partner("token-t1", "1234567")

    assert response.is_success
    assert api.requests[-1].method == "PUT"
    assert api.requests[-1].url.path.endswith("/partners/1234567")
    assert api.links == {"t1": "1234567"}


def test_delete_partner(client: ManagementClient, api: FakeManagementApi):
    api.links["t1"] = "1234567"

    assert client.delete_partner("token-t1", "1234567").is_success
    assert api.links == {}


def test_failed_request_raises_when_asked(client: ManagementClient):
    with pytest.raises(ManagementApiError) as excinfo:
        client.request("GET", "https://management.azure.com/unknown", "token-t1")

    assert excinfo.value.status_code == 400
    assert "BadRequest" in excinfo.value.body


def test_throttled_requests_are_retried(audit, monkeypatch):
    monkeypatch.setattr("partner_link.management_client.time.sleep", lambda seconds: None)
    answers = [
        httpx.Response(429, headers={"Retry-After": "0"}),
        httpx.Response(503),
        httpx.Response(200, json={"value": []}),
    ]
    client = ManagementClient(
        ManagementApiSettings(max_retries=3),
        audit,
        http_client=httpx.Client(transport=httpx.MockTransport(lambda request: answers.pop(0))),
    )

    assert client.list_tenants("token") == []
    assert answers == []


def test_throttling_gives_up_after_max_retries(audit, monkeypatch):
    sleeps = []
    monkeypatch.setattr("partner_link.management_client.time.sleep", sleeps.append)
    client = ManagementClient(
        ManagementApiSettings(max_retries=2),
        audit,
        http_client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(429))),
    )

    response = client.get_partners("token")

    assert response.status_code == 429
    assert sleeps == [1.0, 2.0]
