from __future__ import annotations

import logging
from threading import Lock
from typing import List, Optional, Sequence

import httpx

from .audit import JsonAuditLogger
from .auth import AppFactory, AuthenticationService
from .config import PartnerLinkConfig
from .discovery import TenantDiscoveryService
from .management_client import ManagementClient
from .models import PartnerLinkOutcome, Tenant
from .orchestrator import BulkLinkOrchestrator, ProgressCallback
from .partner_link import AuthFailureCallback, AuthTimeoutCallback, PartnerLinkService

logger = logging.getLogger(__name__)


class PartnerLinkTool:
    """Wires authentication, discovery and linking together from one config."""

    def __init__(
        self,
        config: PartnerLinkConfig,
        audit_logger: Optional[JsonAuditLogger] = None,
        app_factory: Optional[AppFactory] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.config = config
        self.audit = audit_logger or JsonAuditLogger()
        self.auth = AuthenticationService(
            config.authentication,
            scopes=config.management.scopes,
            audit_logger=self.audit,
            app_factory=app_factory,
        )
        self.client = ManagementClient(config.management, self.audit, http_client=http_client)
        self.links = PartnerLinkService(
            self.auth,
            self.client,
            audit_logger=self.audit,
            allow_bare_number_fallback=config.link.allow_bare_number_fallback,
            prompt_lock=Lock(),
        )
        self.discovery = TenantDiscoveryService(
            self.auth,
            self.client,
            self.links,
            audit_logger=self.audit,
            timeout_seconds=config.link.discovery_timeout_seconds,
        )
        self.orchestrator = BulkLinkOrchestrator(
            self.links, audit_logger=self.audit, delay_seconds=config.link.delay_seconds
        )

    def discover(
        self,
        on_auth_failure: Optional[AuthFailureCallback] = None,
        on_auth_timeout: Optional[AuthTimeoutCallback] = None,
        tenant_ids: Optional[Sequence[str]] = None,
    ) -> List[Tenant]:
        tenants = self.discovery.discover(on_auth_failure=on_auth_failure, on_auth_timeout=on_auth_timeout)
        if tenant_ids:
            wanted = set(tenant_ids)
            tenants = [tenant for tenant in tenants if tenant.id in wanted]
        return tenants

    def link_all(
        self,
        partner_id: str,
        tenants: Sequence[Tenant],
        progress: Optional[ProgressCallback] = None,
    ) -> List[PartnerLinkOutcome]:
        return self.orchestrator.link_many(partner_id, tenants, progress=progress)

    def unlink_one(self, tenants: Sequence[Tenant], tenant_id: Optional[str] = None) -> PartnerLinkOutcome:
        """Remove the partner link of a single tenant, the home tenant by default."""
        tenant_id = tenant_id or self.auth.session.home_tenant_id or ""
        tenant = next((tenant for tenant in tenants if tenant.id == tenant_id), None) or Tenant(id=tenant_id)
        return self.links.unlink(tenant)

    def close(self) -> None:
        self.client.close()
