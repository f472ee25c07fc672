from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .audit import JsonAuditLogger
from .models import PartnerLinkOutcome, Tenant
from .partner_link import PartnerLinkService

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, Tenant], None]


@dataclass(frozen=True)
class BatchSummary:
    succeeded: int
    total: int

    @property
    def failed(self) -> int:
        return self.total - self.succeeded


def summarize(outcomes: Sequence[PartnerLinkOutcome]) -> BatchSummary:
    return BatchSummary(succeeded=sum(1 for outcome in outcomes if outcome.success), total=len(outcomes))


class BulkLinkOrchestrator:
    """Links one Partner ID to many tenants, one tenant at a time."""

    def __init__(
        self,
        link_service: PartnerLinkService,
        audit_logger: Optional[JsonAuditLogger] = None,
        delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.link_service = link_service
        self.audit = audit_logger or JsonAuditLogger()
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    def link_many(
        self,
        partner_id: str,
        tenants: Sequence[Tenant],
        progress: Optional[ProgressCallback] = None,
        correlation_id: Optional[str] = None,
    ) -> List[PartnerLinkOutcome]:
        correlation_id = correlation_id or str(uuid.uuid4())
        total = len(tenants)
        outcomes: List[PartnerLinkOutcome] = []
        self.audit.info("batch_started", partner_id=partner_id, correlation_id=correlation_id, total=total)

        for index, tenant in enumerate(tenants):
            if index and self.delay_seconds:
                self._sleep(self.delay_seconds)
            if progress:
                progress(index, total, tenant)
            try:
                outcome = self.link_service.link(partner_id, tenant)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Linking tenant %s raised", tenant.id)
                outcome = PartnerLinkOutcome.failed(tenant, partner_id, f"unexpected_error: {exc}", repr(exc))
            outcomes.append(outcome)

        if progress and tenants:
            progress(total, total, tenants[-1])

        summary = summarize(outcomes)
        self.audit.info(
            "batch_completed",
            partner_id=partner_id,
            correlation_id=correlation_id,
            succeeded=summary.succeeded,
            total=summary.total,
        )
        return outcomes
