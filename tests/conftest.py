"""Shared fakes for the identity platform and the Azure Management API."""

from __future__ import annotations

import io
import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

from partner_link.audit import InMemoryAuditStore, JsonAuditLogger
from partner_link.auth import AuthenticationService
from partner_link.config import AuthenticationSettings, LinkSettings, ManagementApiSettings, PartnerLinkConfig
from partner_link.discovery import TenantDiscoveryService
from partner_link.management_client import PARTNERS_PATH, ManagementClient
from partner_link.orchestrator import BulkLinkOrchestrator
from partner_link.partner_link import PartnerLinkService

HOME_TENANT = "home-tenant"
ACCOUNT = {
    "username": "admin@contoso.com",
    "home_account_id": f"user-oid.{HOME_TENANT}",
    "environment": "login.microsoftonline.com",
}

Scripted = Union[Dict[str, Any], Exception, Callable[[], Dict[str, Any]], None]


def token_result(tenant: str) -> Dict[str, Any]:
    return {
        "access_token": f"token-{tenant}",
        "expires_in": 3600,
        "id_token_claims": {
            "preferred_username": ACCOUNT["username"],
            "name": "Contoso Admin",
            "tid": HOME_TENANT,
        },
    }


def _play(value: Scripted) -> Optional[Dict[str, Any]]:
    if isinstance(value, Exception):
        raise value
    if callable(value):
        return value()
    return value


class FakeIdentity:
    """Scripted identity platform shared by every fake MSAL application.

    Unscripted tenants succeed with ``token-<tenant>``; the default authority
    maps to the ``organizations`` tenant.
    """

    def __init__(self) -> None:
        self.accounts: List[Dict[str, Any]] = []
        self.silent: Dict[str, Scripted] = {}
        self.interactive: Dict[str, Scripted] = {}
        self.device_flow: Dict[str, Any] = {
            "user_code": "ABCD-1234",
            "verification_uri": "https://microsoft.com/devicelogin",
        }
        self.device_result: Scripted = None
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.removed: List[Dict[str, Any]] = []
        self.authorities: List[str] = []

    def calls_of(self, kind: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [call for call in self.calls if call[0] == kind]

    def app_factory(self, authority: str) -> "FakePublicClientApplication":
        self.authorities.append(authority)
        return FakePublicClientApplication(authority, self)


class FakePublicClientApplication:
    def __init__(self, authority: str, identity: FakeIdentity):
        self.authority = authority
        self.tenant = authority.rstrip("/").rsplit("/", 1)[-1]
        self.identity = identity

    def get_accounts(self, username: Optional[str] = None) -> List[Dict[str, Any]]:
        return list(self.identity.accounts)

    def acquire_token_silent_with_error(self, scopes, account, **kwargs) -> Optional[Dict[str, Any]]:
        self.identity.calls.append(("silent", self.tenant, {"scopes": list(scopes)}))
        if self.tenant in self.identity.silent:
            return _play(self.identity.silent[self.tenant])
        return token_result(self.tenant)

    def acquire_token_interactive(self, scopes, **kwargs) -> Optional[Dict[str, Any]]:
        self.identity.calls.append(("interactive", self.tenant, kwargs))
        if self.tenant in self.identity.interactive:
            return _play(self.identity.interactive[self.tenant])
        if ACCOUNT not in self.identity.accounts:
            self.identity.accounts.append(ACCOUNT)
        return token_result(self.tenant)

    def initiate_device_flow(self, scopes=None, **kwargs) -> Dict[str, Any]:
        self.identity.calls.append(("device_flow", self.tenant, {}))
        return dict(self.identity.device_flow)

    def acquire_token_by_device_flow(self, flow, **kwargs) -> Optional[Dict[str, Any]]:
        if self.identity.device_result is not None:
            return _play(self.identity.device_result)
        if ACCOUNT not in self.identity.accounts:
            self.identity.accounts.append(ACCOUNT)
        return token_result(self.tenant)

    def remove_account(self, account: Dict[str, Any]) -> None:
        self.identity.removed.append(account)
        self.identity.accounts.remove(account)


class FakeManagementApi:
    """In-memory Azure Management API keyed by the tenant encoded in the token."""

    def __init__(self, page_size: int = 2) -> None:
        self.tenants: List[Dict[str, Any]] = []
        self.links: Dict[str, str] = {}
        self.page_size = page_size
        # Per-tenant queue of (status, body) answers for GET partners.
        self.partner_reads: Dict[str, List[Tuple[int, Any]]] = {}
        # Per-tenant (status, body) answer for PUT partners.
        self.create_responses: Dict[str, Tuple[int, Any]] = {}
        self.requests: List[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def requests_for(self, method: str, tenant: Optional[str] = None) -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and (tenant is None or self._tenant(request) == tenant)
        ]

    @staticmethod
    def _tenant(request: httpx.Request) -> str:
        return request.headers["Authorization"].split(" ", 1)[1][len("token-"):]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        tenant = self._tenant(request)
        path = request.url.path

        if path == "/tenants":
            page = int(request.url.params.get("page", "1"))
            start = (page - 1) * self.page_size
            body: Dict[str, Any] = {"value": self.tenants[start:start + self.page_size]}
            if start + self.page_size < len(self.tenants):
                body["nextLink"] = f"https://management.azure.com/tenants?api-version=2020-01-01&page={page + 1}"
            return httpx.Response(200, json=body)

        if path == PARTNERS_PATH and request.method == "GET":
            scripted = self.partner_reads.get(tenant)
            if scripted:
                status, payload = scripted.pop(0)
                return httpx.Response(status, json=payload)
            if tenant not in self.links:
                return httpx.Response(404, json={"error": {"code": "PartnerNotFound", "message": "Not found"}})
            return httpx.Response(200, json=self._partner(self.links[tenant]))

        if path.startswith(PARTNERS_PATH + "/"):
            partner_id = path.rsplit("/", 1)[-1]
            if request.method == "PUT":
                assert json.loads(request.content) == {"properties": {"partnerId": partner_id}}
                if tenant in self.create_responses:
                    status, payload = self.create_responses[tenant]
                    return httpx.Response(status, json=payload)
                self.links[tenant] = partner_id
                return httpx.Response(200, json=self._partner(partner_id))
            if request.method == "DELETE":
                if self.links.get(tenant) != partner_id:
                    return httpx.Response(404, json={"error": {"code": "PartnerNotFound"}})
                del self.links[tenant]
                return httpx.Response(200)

        return httpx.Response(400, json={"error": {"code": "BadRequest", "message": path}})

    @staticmethod
    def _partner(partner_id: str) -> Dict[str, Any]:
        return {
            "id": f"/providers/microsoft.managementpartner/partners/{partner_id}",
            "name": partner_id,
            "properties": {"partnerId": partner_id, "partnerName": "Contoso Partner"},
        }


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def audit(audit_store: InMemoryAuditStore) -> JsonAuditLogger:
    return JsonAuditLogger(name=f"partner_link.test.{uuid.uuid4().hex}", store=audit_store, stream=io.StringIO())


@pytest.fixture
def config() -> PartnerLinkConfig:
    return PartnerLinkConfig(
        authentication=AuthenticationSettings(),
        management=ManagementApiSettings(max_retries=2),
        link=LinkSettings(delay_seconds=0, discovery_timeout_seconds=0.2),
    )


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def api() -> FakeManagementApi:
    return FakeManagementApi()


@pytest.fixture
def auth(config: PartnerLinkConfig, identity: FakeIdentity, audit: JsonAuditLogger) -> AuthenticationService:
    return AuthenticationService(
        config.authentication,
        scopes=config.management.scopes,
        audit_logger=audit,
        app_factory=identity.app_factory,
    )


@pytest.fixture
def signed_in(auth: AuthenticationService, identity: FakeIdentity) -> AuthenticationService:
    session = auth.sign_in_interactive()
    assert session.is_authenticated
    identity.calls.clear()
    return auth


@pytest.fixture
def client(config: PartnerLinkConfig, api: FakeManagementApi, audit: JsonAuditLogger) -> ManagementClient:
    return ManagementClient(config.management, audit, http_client=httpx.Client(transport=api.transport()))


@pytest.fixture
def links(signed_in: AuthenticationService, client: ManagementClient, audit: JsonAuditLogger) -> PartnerLinkService:
    return PartnerLinkService(signed_in, client, audit_logger=audit)


@pytest.fixture
def orchestrator(links: PartnerLinkService, audit: JsonAuditLogger) -> BulkLinkOrchestrator:
    return BulkLinkOrchestrator(links, audit_logger=audit, delay_seconds=0)


@pytest.fixture
def discovery(
    signed_in: AuthenticationService,
    client: ManagementClient,
    links: PartnerLinkService,
    audit: JsonAuditLogger,
    config: PartnerLinkConfig,
) -> TenantDiscoveryService:
    return TenantDiscoveryService(
        signed_in,
        client,
        links,
        audit_logger=audit,
        timeout_seconds=config.link.discovery_timeout_seconds,
    )
