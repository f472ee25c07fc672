from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .audit import JsonAuditLogger
from .auth import AuthenticationService
from .management_client import ManagementApiError, ManagementClient
from .models import LinkCheck, Tenant
from .partner_link import AuthFailureCallback, AuthTimeoutCallback, PartnerLinkService

logger = logging.getLogger(__name__)

TIMEOUT_KIND = "timeout"
TIMEOUT_MESSAGE = "Authentication is taking longer than expected. This might be due to MFA requirements."


def tenant_from_item(item: Dict[str, Any]) -> Tenant:
    tenant_id = item.get("tenantId") or ""
    return Tenant(
        id=tenant_id,
        display_name=item.get("displayName") or tenant_id,
        domain=item.get("defaultDomain") or "Unknown",
    )


class TenantDiscoveryService:
    """Lists the tenants the signed-in user can reach and their partner links."""

    def __init__(
        self,
        auth: AuthenticationService,
        client: ManagementClient,
        link_service: PartnerLinkService,
        audit_logger: Optional[JsonAuditLogger] = None,
        timeout_seconds: float = 5.0,
    ):
        self.auth = auth
        self.client = client
        self.link_service = link_service
        self.audit = audit_logger or JsonAuditLogger()
        self.timeout_seconds = timeout_seconds

    def discover(
        self,
        on_auth_failure: Optional[AuthFailureCallback] = None,
        on_auth_timeout: Optional[AuthTimeoutCallback] = None,
    ) -> List[Tenant]:
        logger.info("Starting tenant discovery")
        if not self.auth.session.is_authenticated:
            logger.warning("User not authenticated, cannot discover tenants")
            return []

        token = self.auth.get_access_token()
        if not token.success or not token.access_token:
            logger.warning("No Azure Management token available: %s", token.error_message)
            return []

        tenants = self.list_tenants(token.access_token)

        timeout_callback = on_auth_timeout
        if on_auth_failure is not None and timeout_callback is None:
            failure_callback = on_auth_failure

            def timeout_callback(tenant_id: str) -> bool:
                return failure_callback(tenant_id, TIMEOUT_KIND, TIMEOUT_MESSAGE)

        discovered: List[Tenant] = []
        for tenant in tenants:
            try:
                check = self._check(tenant.id, on_auth_failure, timeout_callback)
            except Exception:  # noqa: BLE001
                logger.warning("Failed to retrieve Partner ID for tenant %s", tenant.id, exc_info=True)
                tenant.record_partner_link(None)
                discovered.append(tenant)
                continue

            if check.skipped:
                logger.info("Skipping tenant %s during discovery", tenant.id)
                continue
            tenant.record_partner_link(check.partner_id if check.has_link else None)
            discovered.append(tenant)

        if not discovered:
            logger.warning("No tenants discovered, or every tenant was skipped")
        self.audit.info("tenants_discovered", listed=len(tenants), kept=len(discovered))
        return discovered

    def list_tenants(self, access_token: str) -> List[Tenant]:
        """Follow ``nextLink`` pages; a failing page keeps what was already read."""
        tenants: List[Tenant] = []
        try:
            for page in self.client.iter_tenant_pages(access_token):
                tenants.extend(
                    tenant_from_item(item) for item in page if isinstance(item, dict) and item.get("tenantId")
                )
        except (ManagementApiError, httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to list tenants from Azure Management API: %s", exc)
            self.audit.error("tenant_listing_failed", error=str(exc), listed=len(tenants))
        return tenants

    def _check(
        self,
        tenant_id: str,
        on_auth_failure: Optional[AuthFailureCallback],
        on_auth_timeout: Optional[AuthTimeoutCallback],
    ) -> LinkCheck:
        if on_auth_timeout is None and on_auth_failure is None:
            return self.link_service.check_existing_link(tenant_id)
        return self.link_service.check_existing_link_with_timeout(
            tenant_id,
            on_auth_timeout,
            timeout_seconds=self.timeout_seconds,
            on_auth_failure=on_auth_failure,
        )
