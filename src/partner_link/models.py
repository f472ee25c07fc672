from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Session:
    """Snapshot of the signed-in principal.

    A new instance replaces the previous one on every authentication event;
    instances are never mutated.
    """

    is_authenticated: bool = False
    principal_name: Optional[str] = None
    display_name: Optional[str] = None
    home_tenant_id: Optional[str] = None
    last_auth_time: Optional[datetime] = None
    token_expiry: Optional[datetime] = None

    @classmethod
    def unauthenticated(cls) -> "Session":
        return cls(is_authenticated=False)


@dataclass
class Tenant:
    id: str
    display_name: str = ""
    domain: str = "Unknown"
    is_guest_user: bool = False
    user_roles: Set[str] = field(default_factory=set)
    has_partner_link: bool = False
    current_partner_link: Optional[str] = None

    def record_partner_link(self, partner_id: Optional[str]) -> None:
        """Store the partner link last observed on the server."""
        self.current_partner_link = partner_id or None
        self.has_partner_link = self.current_partner_link is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "domain": self.domain,
            "is_guest_user": self.is_guest_user,
            "user_roles": sorted(self.user_roles),
            "has_partner_link": self.has_partner_link,
            "current_partner_link": self.current_partner_link,
        }


@dataclass(frozen=True)
class TokenAcquisitionResult:
    success: bool
    access_token: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    action_url: Optional[str] = None

    @classmethod
    def ok(cls, access_token: str) -> "TokenAcquisitionResult":
        return cls(success=True, access_token=access_token)

    @classmethod
    def failure(
        cls, error_kind: str, error_message: str, action_url: Optional[str] = None
    ) -> "TokenAcquisitionResult":
        return cls(
            success=False,
            error_kind=error_kind,
            error_message=error_message,
            action_url=action_url,
        )


@dataclass
class PartnerLinkOutcome:
    success: bool
    tenant: Tenant
    partner_id: str
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    details: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def succeeded(
        cls, tenant: Tenant, partner_id: str, details: Optional[str] = None
    ) -> "PartnerLinkOutcome":
        return cls(success=True, tenant=tenant, partner_id=partner_id, details=details)

    @classmethod
    def failed(
        cls,
        tenant: Tenant,
        partner_id: str,
        message: str,
        details: Optional[str] = None,
    ) -> "PartnerLinkOutcome":
        # "kind: message" splits on the first colon; otherwise the text is both.
        error_kind = error_message = message
        if ":" in message:
            head, tail = message.split(":", 1)
            error_kind, error_message = head.strip(), tail.strip()
        return cls(
            success=False,
            tenant=tenant,
            partner_id=partner_id,
            error_kind=error_kind,
            error_message=error_message,
            details=details,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "tenant_id": self.tenant.id,
            "tenant_name": self.tenant.display_name,
            "partner_id": self.partner_id,
            "current_partner_link": self.tenant.current_partner_link,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class LinkCheck:
    """Result of reading a tenant's partner link without changing it."""

    has_link: bool = False
    partner_id: Optional[str] = None
    skipped: bool = False
    error: Optional[str] = None

    @property
    def observed(self) -> bool:
        return not self.skipped and self.error is None
