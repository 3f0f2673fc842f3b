"""Pure platform fee rule evaluation.

Given a tenant's active :class:`FeeConfiguration` and one billable
transaction, compute the platform fee and the amount the guest pays.
Nothing here touches the database or the wall clock: ``now`` is always
passed in, so evaluating the same inputs twice yields the same result.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from ledger_core.errors import FeeValidationError
from ledger_core.models.fees import (
    BillingCycle,
    FeeComputation,
    FeeConfiguration,
    FeeSkipReason,
    FeeType,
    Payer,
    TenantProfile,
    TransactionClass,
)
from ledger_core.models.ledger import LedgerStatus

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")
_HUNDRED = Decimal("100")
DEFAULT_TRIAL_DAYS = 14


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Convert *value* to a ``Decimal`` rounded half-up to two places.

    Floats are routed through ``str`` so ``0.1`` becomes ``Decimal("0.10")``
    rather than its binary expansion.
    """
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise FeeValidationError(f"Invalid monetary amount: {value!r}") from exc
    if not dec.is_finite():
        raise FeeValidationError(f"Invalid monetary amount: {value!r}")
    return dec.quantize(_CENTS, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Trial window
# ---------------------------------------------------------------------------


def trial_end_for(tenant: TenantProfile, trial_days: int | None = None) -> datetime:
    """Return the instant the tenant's fee trial ends.

    An explicit ``trial_end_date`` on the tenant wins; otherwise the trial
    runs ``trial_days`` (default 14) from the tenant's creation.
    """
    if tenant.trial_end_date is not None:
        return tenant.trial_end_date
    days = DEFAULT_TRIAL_DAYS if trial_days is None else trial_days
    return tenant.created_at + timedelta(days=days)


def is_in_trial(config: FeeConfiguration, tenant: TenantProfile | None, at: datetime) -> bool:
    """Return ``True`` if fees are waived for *tenant* at instant *at*."""
    if not config.trial_exemption_enabled or tenant is None:
        return False
    return at < trial_end_for(tenant, config.trial_days)


# ---------------------------------------------------------------------------
# Forward computation
# ---------------------------------------------------------------------------


def _skip(base: Decimal, reason: FeeSkipReason) -> FeeComputation:
    return FeeComputation(
        applied=False,
        base_amount=base,
        total_amount=base,
        net_to_property=base,
        reason=reason,
    )


def compute_fee(
    config: FeeConfiguration | None,
    transaction_class: TransactionClass,
    base_amount: Decimal | int | float | str | None,
    *,
    tenant: TenantProfile | None = None,
    now: datetime,
) -> FeeComputation:
    """Compute the platform fee for one billable transaction.

    Parameters
    ----------
    config:
        The tenant's active fee configuration, or ``None`` when the tenant
        has none (no fee is applied).
    transaction_class:
        Which configured rate applies.
    base_amount:
        The amount the property charges before platform fees.
    tenant:
        Tenant profile used for the trial exemption check.
    now:
        Evaluation instant.

    Returns
    -------
    FeeComputation
        ``applied=False`` with a ``reason`` when no fee is due.

    Raises
    ------
    FeeValidationError
        If *base_amount* is negative or not a number.
    """
    if base_amount is None:
        return _skip(Decimal("0.00"), FeeSkipReason.NO_BASE_AMOUNT)

    base = to_money(base_amount)
    if base < 0:
        raise FeeValidationError(f"base_amount must not be negative (got {base})")
    if base == 0:
        return _skip(base, FeeSkipReason.NO_BASE_AMOUNT)
    if config is None or not config.active:
        return _skip(base, FeeSkipReason.NO_ACTIVE_CONFIG)
    if transaction_class not in config.applies_to:
        return _skip(base, FeeSkipReason.NOT_APPLICABLE)
    if is_in_trial(config, tenant, now):
        return _skip(base, FeeSkipReason.TRIAL_EXEMPTION)

    rate = config.rate_for(transaction_class)
    if config.fee_type == FeeType.PERCENTAGE:
        fee = to_money(base * rate / _HUNDRED)
    else:
        fee = to_money(rate)

    if config.payer == Payer.GUEST:
        total = base + fee
        net = base
    else:
        total = base
        net = base - fee

    return FeeComputation(
        applied=True,
        base_amount=base,
        fee_amount=fee,
        total_amount=total,
        net_to_property=net,
        rate=rate,
        fee_type=config.fee_type,
        payer=config.payer,
        billing_cycle=config.billing_cycle,
    )


def initial_status(billing_cycle: BillingCycle) -> LedgerStatus:
    """Realtime fees are billed on creation; deferred ones wait for the billing run."""
    return LedgerStatus.BILLED if billing_cycle == BillingCycle.REALTIME else LedgerStatus.PENDING


# ---------------------------------------------------------------------------
# Reverse computation (historical backfill)
# ---------------------------------------------------------------------------


def reverse_fee(
    config: FeeConfiguration,
    transaction_class: TransactionClass,
    amount_paid: Decimal | int | float | str,
) -> FeeComputation:
    """Recover base and fee from an amount already collected.

    Guest-paid fees were included in *amount_paid*, so the base is
    ``amount / (1 + rate/100)`` (percentage) or ``amount - rate`` (flat).
    Property-paid fees were deducted afterwards, so the base is the amount
    itself.
    """
    paid = to_money(amount_paid)
    if paid <= 0:
        raise FeeValidationError(f"amount_paid must be positive (got {paid})")

    rate = config.rate_for(transaction_class)
    if config.payer == Payer.GUEST:
        if config.fee_type == FeeType.PERCENTAGE:
            base = to_money(paid / (1 + rate / _HUNDRED))
        else:
            base = to_money(paid - rate)
        fee = paid - base
        total = paid
        net = base
    else:
        base = paid
        fee = to_money(paid * rate / _HUNDRED) if config.fee_type == FeeType.PERCENTAGE else to_money(rate)
        total = paid
        net = paid - fee

    if base <= 0 or fee < 0:
        raise FeeValidationError(f"amount_paid {paid} is too small for the configured fee")

    return FeeComputation(
        applied=True,
        base_amount=base,
        fee_amount=fee,
        total_amount=total,
        net_to_property=net,
        rate=rate,
        fee_type=config.fee_type,
        payer=config.payer,
        billing_cycle=config.billing_cycle,
    )
