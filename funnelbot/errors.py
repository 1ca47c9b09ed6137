"""
errors.py — domain exceptions for the funnel engine.

Routes never raise these as HTTP errors directly; main.py maps them onto the
standard {error: {code, message, details}} envelope.
"""
from __future__ import annotations

from typing import Any


class FunnelError(Exception):
    """Base class for every funnelbot domain error."""


class NotFoundError(FunnelError, LookupError):
    """Session or job absent."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class InvalidTransitionError(FunnelError):
    """Disallowed session state change, e.g. completing an expired session."""

    def __init__(self, session_id: str, current: str, action: str) -> None:
        self.session_id = session_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} session {session_id} in status '{current}'")


class DeliveryError(FunnelError):
    """Outbound send did not succeed."""


class TransientDeliveryFailure(DeliveryError):
    """Network error, timeout or 5xx from the transport. Retryable."""


class PermanentDeliveryFailure(DeliveryError):
    """Transport rejected the message, or the retry budget is exhausted."""


class CalendarViolation(FunnelError, RuntimeError):
    """A send time could not be placed inside a sendable window.

    Only raised when the calendar is misconfigured (e.g. every day blocked).
    """


class TemplateVariablesError(FunnelError, ValueError):
    """Required template variables missing or invalid for a message type."""

    def __init__(self, message_type: str, details: list[dict[str, Any]]) -> None:
        self.message_type = message_type
        self.details = details
        fields = ", ".join(str(d.get("field")) for d in details)
        super().__init__(f"Invalid variables for {message_type}: {fields}")
