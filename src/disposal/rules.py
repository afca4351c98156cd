"""Pure disposal and auction rules.

Nothing here touches the record store; the service layer reads state, asks
these functions what is allowed, then writes.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, TypeVar

from disposal.config import DisposalPolicy
from disposal.data_models import AuctionStatus, Bid
from disposal.errors import BusinessRuleError, ValidationError

CENTS = Decimal("0.01")

E = TypeVar("E", bound=enum.Enum)


def generate_disposal_number(now: datetime, token: str | None = None) -> str:
    suffix = (token or uuid.uuid4().hex)[:6].upper()
    return f"DSP-{int(now.timestamp() * 1000)}-{suffix}"


def require_text(value: str | None, field_name: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required", field=field_name)
    return text


def coerce_enum(enum_cls: type[E], value: Any, field_name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"{field_name} must be one of: {allowed}", field=field_name
        ) from None


def parse_money(value: Any, field_name: str, *, allow_zero: bool = True) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required", field=field_name)
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a number", field=field_name) from None
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a number", field=field_name)
    if amount < 0 or (amount == 0 and not allow_zero):
        qualifier = "zero or more" if allow_zero else "greater than zero"
        raise ValidationError(f"{field_name} must be {qualifier}", field=field_name)
    return amount.quantize(CENTS)


def parse_mileage(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("current_mileage must be a whole number", field="current_mileage")
    if value < 0:
        raise ValidationError("current_mileage must be zero or more", field="current_mileage")
    return value


def validate_auction_terms(
    *,
    starting_price: Decimal,
    reserve_price: Decimal | None,
    start_date: datetime,
    end_date: datetime,
    policy: DisposalPolicy,
) -> None:
    if starting_price <= 0:
        raise ValidationError("starting price must be greater than zero", field="starting_price")
    if reserve_price is not None and reserve_price < starting_price:
        raise ValidationError(
            "reserve price must be greater than or equal to starting price",
            field="reserve_price",
        )
    if end_date <= start_date:
        raise ValidationError("auction end date must be after its start date", field="end_date")
    if end_date - start_date < policy.min_auction_duration:
        raise ValidationError(
            f"auction duration must be at least {policy.min_auction_duration_days} days",
            field="end_date",
        )


def initial_auction_status(start_date: datetime, now: datetime) -> AuctionStatus:
    return AuctionStatus.ACTIVE if start_date <= now else AuctionStatus.SCHEDULED


def minimum_next_bid(
    starting_price: Decimal,
    current_highest: Decimal | None,
    increment: Decimal,
) -> Decimal:
    highest = current_highest if current_highest is not None else Decimal("0")
    return max(starting_price, highest + increment).quantize(CENTS)


def validate_bid_amount(amount: Decimal, minimum: Decimal) -> None:
    if amount <= 0:
        raise ValidationError("bid amount must be greater than zero", field="bid_amount")
    if amount < minimum:
        raise ValidationError(
            f"bid amount {amount:.2f} is below the minimum next bid of {minimum:.2f}",
            field="bid_amount",
            minimum_next_bid=str(minimum),
        )


def select_winning_bid(bids: Iterable[Bid]) -> Bid | None:
    """Highest valid bid; the first bid recorded at a given amount wins ties."""
    winner: Bid | None = None
    for bid in bids:
        if not bid.is_valid:
            continue
        if winner is None or bid.bid_amount > winner.bid_amount:
            winner = bid
        elif bid.bid_amount == winner.bid_amount and bid.bid_date < winner.bid_date:
            winner = bid
    return winner


def check_settlement(winning_bid: Bid | None, reserve_price: Decimal | None) -> Bid:
    if winning_bid is None:
        raise BusinessRuleError("cannot close an auction with no bids")
    if reserve_price is not None and winning_bid.bid_amount < reserve_price:
        raise BusinessRuleError(
            "reserve price not met",
            highest_bid=str(winning_bid.bid_amount),
            reserve_price=str(reserve_price),
        )
    return winning_bid


def suggest_pricing(estimated_value: Decimal, policy: DisposalPolicy) -> dict[str, Decimal]:
    return {
        "starting_price": (estimated_value * policy.starting_price_ratio).quantize(CENTS),
        "reserve_price": (estimated_value * policy.reserve_price_ratio).quantize(CENTS),
    }
