from __future__ import annotations

import json
import logging
import sys
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Collection, Deque, Dict, List, Optional, TextIO

_CORRELATED_FIELDS = {"tenant_id", "partner_id", "correlation_id"}


@dataclass
class AuditEvent:
    timestamp: str
    level: str
    message: str
    tenant_id: Optional[str] = None
    partner_id: Optional[str] = None
    correlation_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InMemoryAuditStore:
    """Thread-safe buffer of audit events, newest first."""

    def __init__(self, max_events: int = 1000):
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = Lock()

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.appendleft(event)

    def list(self, limit: int = 100, tenant_ids: Optional[Collection[str]] = None) -> List[AuditEvent]:
        """Newest events first; with ``tenant_ids`` only those tenants plus untenanted events."""
        with self._lock:
            events = list(self._events)
        if tenant_ids:
            wanted = set(tenant_ids)
            events = [event for event in events if event.tenant_id is None or event.tenant_id in wanted]
        return events[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class JsonAuditLogger:
    """Structured logger for sign-in, discovery and partner link events.

    Each event is written as one JSON document per line and, when a store is
    attached, mirrored into it so the command line can print a run summary.
    """

    def __init__(
        self,
        name: str = "partner_link.audit",
        level: int = logging.INFO,
        store: Optional[InMemoryAuditStore] = None,
        stream: Optional[TextIO] = None,
    ):
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            handler = logging.StreamHandler(stream or sys.stdout)
            handler.setFormatter(_JsonFormatter())
            self.logger.addHandler(handler)
        self.logger.setLevel(level)
        self.logger.propagate = False
        self.store = store

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        if self.store is not None:
            self.store.append(self._build_event(level, message, **kwargs))
        self.logger.log(level, message, extra={"audit": kwargs})

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)

    def _build_event(self, level: int, message: str, **kwargs: Any) -> AuditEvent:
        return AuditEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=logging.getLevelName(level),
            message=message,
            tenant_id=kwargs.get("tenant_id"),
            partner_id=kwargs.get("partner_id"),
            correlation_id=kwargs.get("correlation_id"),
            extra={k: v for k, v in kwargs.items() if k not in _CORRELATED_FIELDS},
        )


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
        }

        audit: Optional[Dict[str, Any]] = getattr(record, "audit", None)  # type: ignore[attr-defined]
        if audit:
            payload.update(audit)

        return json.dumps(payload, default=str)
