"""Webhook and operator endpoint schemas."""

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Response for the payment webhook endpoint."""

    success: bool
    message: str
    event_type: str | None = None
    event_id: str | None = None
    status: str | None = None


class ReplayResponse(BaseModel):
    """Outcome of replaying failed payment events."""

    replayed: int
    outcomes: dict[str, int]


class ReconcileResponse(BaseModel):
    """Outcome of an on-demand reconciliation tick."""

    skipped: bool
    selected: int
    advanced: int
    exhausted: int
    conflicts: int
    errors: int
