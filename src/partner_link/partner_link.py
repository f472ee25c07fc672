from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from threading import Lock
from typing import Callable, Optional

import httpx

from .audit import JsonAuditLogger
from .auth import AUTH_CHALLENGE_KINDS, AuthenticationService
from .extraction import error_code_from_body, extract_partner_id, is_partner_id, partner_id_from_payload
from .management_client import ManagementClient
from .models import LinkCheck, PartnerLinkOutcome, Tenant, TokenAcquisitionResult

logger = logging.getLogger(__name__)

ALREADY_LINKED = "Partner ID is already linked to this tenant."
LINKED_ELSEWHERE = "Tenant already linked to a different Partner ID"
ALREADY_LINKED_CODE = "partneridalreadylinked"

AuthFailureCallback = Callable[[str, str, str], bool]
AuthTimeoutCallback = Callable[[str], bool]


def validate_partner_id(partner_id: Optional[str]) -> bool:
    return is_partner_id(partner_id)


def _is_conflict(error_code: Optional[str]) -> bool:
    if not error_code:
        return False
    code = error_code.lower()
    return code == ALREADY_LINKED_CODE or "conflict" in code


class PartnerLinkService:
    """Links a Partner ID to tenants and reconciles whatever is already there.

    Every public method returns a typed result. ``Tenant.current_partner_link``
    is only ever set to an identifier that the Azure Management API returned
    or reported in an error.
    """

    def __init__(
        self,
        auth: AuthenticationService,
        client: ManagementClient,
        audit_logger: Optional[JsonAuditLogger] = None,
        allow_bare_number_fallback: bool = True,
        prompt_lock: Optional[Lock] = None,
    ):
        self.auth = auth
        self.client = client
        self.audit = audit_logger or JsonAuditLogger()
        self.allow_bare_number_fallback = allow_bare_number_fallback
        # Serializes every user prompt raised while checking tenants.
        self.prompt_lock = prompt_lock or Lock()

    # Link / unlink

    def link(self, partner_id: str, tenant: Tenant) -> PartnerLinkOutcome:
        logger.info("Linking Partner ID %s to tenant %s", partner_id, tenant.id)
        try:
            outcome = self._link(partner_id, tenant)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Exception while linking Partner ID %s to tenant %s", partner_id, tenant.id)
            outcome = PartnerLinkOutcome.failed(tenant, partner_id, f"unexpected_error: {exc}", repr(exc))

        if outcome.success:
            self.audit.info(
                "partner_linked", tenant_id=tenant.id, partner_id=partner_id, details=outcome.details
            )
        else:
            self.audit.warning(
                "partner_link_failed",
                tenant_id=tenant.id,
                partner_id=partner_id,
                error_kind=outcome.error_kind,
                error=outcome.error_message,
            )
        return outcome

    def _link(self, partner_id: str, tenant: Tenant) -> PartnerLinkOutcome:
        if not self.auth.session.is_authenticated:
            return PartnerLinkOutcome.failed(
                tenant, partner_id, "not_authenticated: Authentication is required to link a Partner ID"
            )
        if not validate_partner_id(partner_id):
            return PartnerLinkOutcome.failed(
                tenant,
                partner_id,
                "invalid_partner_id: Partner ID must be a 6-10 digit Microsoft AI Cloud Partner Program ID",
                f"Received: {partner_id!r}",
            )

        existing = self.check_existing_link(tenant.id)
        if existing.has_link:
            tenant.record_partner_link(existing.partner_id)
            if existing.partner_id == partner_id:
                logger.info("Tenant %s already linked to Partner ID %s", tenant.id, partner_id)
                return PartnerLinkOutcome.succeeded(tenant, partner_id, ALREADY_LINKED)
            return PartnerLinkOutcome.failed(
                tenant, partner_id, LINKED_ELSEWHERE, f"Existing Partner ID: {existing.partner_id}"
            )

        token = self.auth.get_access_token(tenant_id=tenant.id)
        if not token.success:
            return self._token_failure(tenant, partner_id, token)

        outcome = self._create(partner_id, tenant, token.access_token or "")
        if outcome.success:
            tenant.record_partner_link(partner_id)
            return outcome
        return self._reconcile_after_failure(partner_id, tenant, outcome)

    def unlink(self, tenant: Tenant) -> PartnerLinkOutcome:
        logger.info("Unlinking Partner ID from tenant %s", tenant.id)
        if not self.auth.session.is_authenticated:
            return PartnerLinkOutcome.failed(
                tenant, "", "not_authenticated: Authentication is required to unlink a Partner ID"
            )
        home_tenant_id = self.auth.session.home_tenant_id
        if tenant.id != home_tenant_id:
            # The default-authority token only reaches the home tenant's partner link.
            return PartnerLinkOutcome.failed(
                tenant,
                "",
                "not_home_tenant: Partner links can only be removed from the signed-in user's home tenant",
                f"Home tenant: {home_tenant_id}",
            )

        token = self.auth.get_access_token()
        if not token.success:
            return self._token_failure(tenant, "", token)

        try:
            response = self.client.get_partners(token.access_token or "")
            if response.status_code == 404:
                partner_id = None
            elif response.is_success:
                partner_id = partner_id_from_payload(response.json())
            else:
                return PartnerLinkOutcome.failed(
                    tenant, "", "api_error: Unable to retrieve current partner link", response.text
                )
            if not partner_id:
                tenant.record_partner_link(None)
                return PartnerLinkOutcome.failed(
                    tenant, "", "no_partner_link: No partner link found to remove",
                    "Tenant does not have an existing partner link",
                )

            response = self.client.delete_partner(token.access_token or "", partner_id)
        except (httpx.HTTPError, ValueError) as exc:
            return PartnerLinkOutcome.failed(tenant, "", f"http_error: HTTP request failed: {exc}", repr(exc))

        if response.is_success:
            tenant.record_partner_link(None)
            self.audit.info("partner_unlinked", tenant_id=tenant.id, partner_id=partner_id)
            return PartnerLinkOutcome.succeeded(tenant, partner_id, "Partner link removed successfully")
        return PartnerLinkOutcome.failed(
            tenant,
            partner_id,
            f"api_error: Delete request failed with status {response.status_code}",
            response.text,
        )

    # Existing link checks

    def check_existing_link(
        self, tenant_id: str, on_auth_failure: Optional[AuthFailureCallback] = None
    ) -> LinkCheck:
        """Read the tenant's current partner link without changing anything.

        With ``on_auth_failure`` the token is first requested without any
        browser prompt; an authentication challenge is handed to the callback,
        which returns True to skip the tenant or False to retry once with
        interactive sign-in allowed.
        """
        logger.debug("Checking existing partner link for tenant %s", tenant_id)
        token = self.auth.get_access_token(tenant_id=tenant_id, allow_interactive=on_auth_failure is None)
        return self._finish_check(tenant_id, token, on_auth_failure)

    def check_existing_link_with_timeout(
        self,
        tenant_id: str,
        on_timeout: Optional[AuthTimeoutCallback],
        timeout_seconds: float = 5.0,
        on_auth_failure: Optional[AuthFailureCallback] = None,
    ) -> LinkCheck:
        """Like ``check_existing_link`` but asks ``on_timeout`` when sign-in is slow.

        A skip leaves the token request running in the background; its result
        is simply ignored.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"link-check-{tenant_id[:8]}")
        try:
            pending = executor.submit(
                self.auth.get_access_token, tenant_id=tenant_id, allow_interactive=on_auth_failure is None
            )
            try:
                token = pending.result(timeout=timeout_seconds)
            except FutureTimeoutError:
                if on_timeout is not None:
                    with self.prompt_lock:
                        skip = on_timeout(tenant_id)
                    if skip:
                        logger.info("Skipping tenant %s after authentication timeout", tenant_id)
                        self.audit.info("tenant_skipped", tenant_id=tenant_id, reason="timeout")
                        return LinkCheck(skipped=True)
                    logger.info("Continuing to wait for authentication for tenant %s", tenant_id)
                token = pending.result()
        finally:
            executor.shutdown(wait=False)

        return self._finish_check(tenant_id, token, on_auth_failure)

    def _finish_check(
        self,
        tenant_id: str,
        token: TokenAcquisitionResult,
        on_auth_failure: Optional[AuthFailureCallback],
    ) -> LinkCheck:
        if not token.success and on_auth_failure is not None and token.error_kind in AUTH_CHALLENGE_KINDS:
            with self.prompt_lock:
                skip = on_auth_failure(tenant_id, token.error_kind or "unknown", token.error_message or "")
            if skip:
                logger.info("Skipping tenant %s after authentication failure", tenant_id)
                self.audit.info("tenant_skipped", tenant_id=tenant_id, reason=token.error_kind)
                return LinkCheck(skipped=True)
            logger.info("Retrying authentication for tenant %s", tenant_id)
            token = self.auth.get_access_token(tenant_id=tenant_id, allow_interactive=True)
        return self._read_link(tenant_id, token)

    def _read_link(self, tenant_id: str, token: TokenAcquisitionResult) -> LinkCheck:
        if not token.success or not token.access_token:
            logger.warning(
                "No Azure Management token for tenant %s: %s - %s",
                tenant_id,
                token.error_kind,
                token.error_message,
            )
            return LinkCheck(error=f"{token.error_kind}: {token.error_message}")

        try:
            response = self.client.get_partners(token.access_token)
        except httpx.HTTPError as exc:
            logger.error("Failed to check existing partner link for tenant %s: %s", tenant_id, exc)
            return LinkCheck(error=f"http_error: {exc}")

        if response.status_code == 404:
            return LinkCheck(has_link=False)
        if not response.is_success:
            logger.warning(
                "Failed to get partner link for tenant %s: %s %s", tenant_id, response.status_code, response.text
            )
            return LinkCheck(error=f"api_error: status {response.status_code}")

        try:
            partner_id = partner_id_from_payload(response.json())
        except ValueError:
            return LinkCheck(error="api_error: partners response is not JSON")
        if partner_id:
            logger.debug("Found Partner ID %s for tenant %s", partner_id, tenant_id)
            return LinkCheck(has_link=True, partner_id=partner_id)
        return LinkCheck(has_link=False)

    # Internals

    def _token_failure(
        self, tenant: Tenant, partner_id: str, token: TokenAcquisitionResult
    ) -> PartnerLinkOutcome:
        details = token.error_message or ""
        if token.action_url:
            details = f"{details}\nAction required: {token.action_url}"
        kind = token.error_kind or "token_error"
        return PartnerLinkOutcome.failed(tenant, partner_id, f"{kind}: {token.error_message}", details)

    def _create(self, partner_id: str, tenant: Tenant, access_token: str) -> PartnerLinkOutcome:
        try:
            response = self.client.create_partner(access_token, partner_id)
        except httpx.HTTPError as exc:
            return PartnerLinkOutcome.failed(
                tenant, partner_id, f"http_error: HTTP request failed: {exc}", repr(exc)
            )

        if response.is_success:
            return PartnerLinkOutcome.succeeded(tenant, partner_id, "Partner link created successfully")

        body = response.text
        error_code = error_code_from_body(body)
        if not _is_conflict(error_code):
            return PartnerLinkOutcome.failed(
                tenant,
                partner_id,
                f"{error_code or 'api_error'}: API request failed with status {response.status_code}",
                body,
            )

        logger.debug("%s for tenant %s; retrieving the linked Partner ID", error_code, tenant.id)
        existing = self._existing_after_conflict(access_token, tenant.id)
        if not existing:
            existing = extract_partner_id(body, allow_bare_number=self.allow_bare_number_fallback)

        tenant.record_partner_link(existing)
        if existing == partner_id:
            return PartnerLinkOutcome.succeeded(tenant, partner_id, ALREADY_LINKED)
        if existing:
            return PartnerLinkOutcome.failed(
                tenant, partner_id, LINKED_ELSEWHERE, f"Existing Partner ID: {existing}\n{body}"
            )
        return PartnerLinkOutcome.failed(
            tenant,
            partner_id,
            "partner_link_conflict: Tenant is linked to a Partner ID that could not be determined",
            body,
        )

    def _existing_after_conflict(self, access_token: str, tenant_id: str) -> Optional[str]:
        try:
            response = self.client.get_partners(access_token)
            if not response.is_success:
                logger.warning(
                    "Failed to retrieve existing Partner ID for tenant %s: status %s",
                    tenant_id,
                    response.status_code,
                )
                return None
            found = partner_id_from_payload(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Exception while retrieving existing Partner ID for tenant %s: %s", tenant_id, exc)
            return None
        if not found:
            logger.warning("No Partner ID in partners response despite conflict for tenant %s", tenant_id)
        return found

    def _reconcile_after_failure(
        self, partner_id: str, tenant: Tenant, outcome: PartnerLinkOutcome
    ) -> PartnerLinkOutcome:
        recheck = self.check_existing_link(tenant.id)
        if not recheck.observed:
            return outcome

        tenant.record_partner_link(recheck.partner_id if recheck.has_link else None)
        if recheck.has_link and recheck.partner_id == partner_id:
            logger.info("Tenant %s reports Partner ID %s after failed attempt", tenant.id, partner_id)
            return PartnerLinkOutcome.succeeded(tenant, partner_id, ALREADY_LINKED)
        if recheck.has_link:
            return PartnerLinkOutcome.failed(
                tenant, partner_id, LINKED_ELSEWHERE, f"Existing Partner ID: {recheck.partner_id}"
            )
        return outcome
