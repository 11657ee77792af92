"""Structured logging helpers (PHI-safe)."""

from typing import Any


def build_log_context(
    *,
    owner: object | None = None,
    integration_id: object | None = None,
    event_id: object | None = None,
    slot_id: object | None = None,
    booking_id: object | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """
    Return a PHI-safe log context dict for ``logger.*(..., extra=...)``.

    Only identifiers are recorded. Client names and contact details never
    pass through here.
    """
    context: dict[str, Any] = {}
    if owner is not None:
        context["owner"] = str(owner)
    if integration_id:
        context["integration_id"] = str(integration_id)
    if event_id:
        context["event_id"] = str(event_id)
    if slot_id:
        context["slot_id"] = str(slot_id)
    if booking_id:
        context["booking_id"] = str(booking_id)
    if request_id:
        context["request_id"] = request_id
    return context
