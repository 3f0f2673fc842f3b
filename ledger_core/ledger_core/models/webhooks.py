"""Closed tagged union of inbound payment-provider events.

Each provider posts a differently shaped payload.  They are parsed into
exactly one variant below *before* a signature scheme is chosen, because
the provider identity (not the signature header) determines how the
payload is read.  Anything unrecognised becomes :class:`UnrecognizedEvent`
instead of being guessed at.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from ledger_core.models.payments import ProviderType, ReportedStatus


class _ProviderEventBase(BaseModel):
    reference: str | None = None
    reported_status: ReportedStatus = ReportedStatus.PENDING
    raw_status: str | None = None
    amount: Decimal | None = None
    provider_transaction_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class PaystackChargeEvent(_ProviderEventBase):
    kind: Literal["paystack"] = "paystack"
    event: str


class StripeCheckoutEvent(_ProviderEventBase):
    kind: Literal["stripe"] = "stripe"
    event: str
    session_id: str | None = None


class FlutterwaveChargeEvent(_ProviderEventBase):
    kind: Literal["flutterwave"] = "flutterwave"
    event: str


class RedirectCallback(_ProviderEventBase):
    """Browser redirect after checkout.  Never trusted on its own."""

    kind: Literal["redirect"] = "redirect"
    provider: ProviderType | None = None
    session_id: str | None = None


class UnrecognizedEvent(_ProviderEventBase):
    kind: Literal["unrecognized"] = "unrecognized"
    event: str | None = None


ProviderEvent = Annotated[
    PaystackChargeEvent | StripeCheckoutEvent | FlutterwaveChargeEvent | RedirectCallback | UnrecognizedEvent,
    Field(discriminator="kind"),
]


def provider_of(event: Any) -> ProviderType | None:
    """Return the provider whose signature scheme applies to *event*."""
    if isinstance(event, PaystackChargeEvent):
        return ProviderType.PAYSTACK
    if isinstance(event, StripeCheckoutEvent):
        return ProviderType.STRIPE
    if isinstance(event, FlutterwaveChargeEvent):
        return ProviderType.FLUTTERWAVE
    if isinstance(event, RedirectCallback):
        return event.provider
    return None
