"""Audit trail for account and channel-linking operations.

An ``AuditTrail`` is handed to each service explicitly instead of living as a
process-wide singleton, so tests can pass their own logger and assert on what
was recorded.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

EMAIL_FIELDS = {"email"}
TOKEN_FIELDS = {"nonce", "link", "token"}


def redact_email(email: Optional[str]) -> str:
    """Keep the first three characters of an email for correlation."""
    if not email:
        return "<none>"
    return f"{email[:3]}***"


def redact_nonce(nonce: Optional[str]) -> str:
    """Keep the first eight characters of a nonce or link value."""
    if not nonce:
        return "<none>"
    return f"{nonce[:8]}..."


def redact_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``fields`` with emails and tokens truncated."""
    redacted = {}
    for key, value in fields.items():
        if key in EMAIL_FIELDS and isinstance(value, str):
            redacted[key] = redact_email(value)
        elif key in TOKEN_FIELDS and isinstance(value, str):
            redacted[key] = redact_nonce(value)
        elif isinstance(value, dict):
            redacted[key] = redact_fields(value)
        else:
            redacted[key] = value
    return redacted


class AuditEventType(str, Enum):
    """Kinds of audited operations."""
    USER_REGISTRATION = "user_registration"
    USER_LOGIN = "user_login"
    CHANNEL_LINKED = "channel_linked"
    CHANNEL_VERIFICATION = "channel_verification"
    NONCE_GENERATED = "nonce_generated"
    NONCE_VALIDATED = "nonce_validated"
    BILLING_CUSTOMER = "billing_customer"
    SUBSCRIPTION_SYNC = "subscription_sync"
    SECURITY_VIOLATION = "security_violation"


@dataclass
class AuditEvent:
    """A single recorded operation."""
    event_type: AuditEventType
    resource: str
    action: str
    success: bool
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)


class AuditTrail:
    """Writes redacted audit events to a logger and keeps the recent ones."""

    def __init__(self, audit_logger: Optional[logging.Logger] = None, max_events: int = 500):
        self.logger = audit_logger or logging.getLogger("anthonchat.audit")
        self.max_events = max_events
        self.events: List[AuditEvent] = []

    def record(
        self,
        event_type: AuditEventType,
        resource: str,
        action: str,
        success: bool = True,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        reason: Optional[str] = None,
        **metadata: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type,
            resource=resource,
            action=action,
            success=success,
            user_id=user_id,
            resource_id=resource_id,
            reason=reason,
            metadata=redact_fields(metadata),
        )
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

        level = logging.INFO if success else logging.WARNING
        self.logger.log(
            level,
            f"AUDIT {event.event_type.value} {resource}.{action} success={success} "
            f"user={user_id} resource_id={resource_id} reason={reason} meta={event.metadata}",
        )
        return event

    def step(self, name: str, **fields: Any) -> None:
        """Log a plain progress line for a multi-step flow."""
        self.logger.info(f"{name} {redact_fields(fields)}")

    def warn(self, name: str, **fields: Any) -> None:
        self.logger.warning(f"{name} {redact_fields(fields)}")

    def error(self, name: str, **fields: Any) -> None:
        self.logger.error(f"{name} {redact_fields(fields)}")

    def of_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]
