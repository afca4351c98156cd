from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from disposal.config import DisposalPolicy
from disposal.data_models import (
    ApprovalStatus,
    Auction,
    AuctionStatus,
    AuctionType,
    DisposalStatus,
    OPEN_AUCTION_STATUSES,
)
from disposal.errors import InvalidStateError, NotFoundError, ValidationError
from disposal.rules import (
    coerce_enum,
    initial_auction_status,
    parse_money,
    suggest_pricing as _suggest_pricing,
    validate_auction_terms,
)
from disposal.state_machine import ensure_auction_transition, ensure_request_transition
from service.disposal_requests import get_request
from service.messaging import AuditSink
from service.storage import DisposalStore, StaleWriteError

logger = logging.getLogger(__name__)


async def get_auction(*, store: DisposalStore, auction_id: str) -> Auction:
    row = await store.get_auction(auction_id)
    if row is None:
        raise NotFoundError(f"auction {auction_id} not found", auction_id=auction_id)
    return Auction.from_row(row)


async def list_auctions(*, store: DisposalStore, disposal_id: str) -> list[Auction]:
    await get_request(store=store, request_id=disposal_id)
    return [Auction.from_row(r) for r in await store.list_auctions(disposal_id=disposal_id)]


async def suggest_pricing(
    *,
    store: DisposalStore,
    policy: DisposalPolicy,
    disposal_id: str,
) -> dict[str, Decimal]:
    request = await get_request(store=store, request_id=disposal_id)
    return _suggest_pricing(request.estimated_value, policy)


async def create_auction(
    *,
    store: DisposalStore,
    audit: AuditSink,
    policy: DisposalPolicy,
    disposal_id: str,
    auction_type: Any,
    starting_price: Any,
    start_date: datetime,
    end_date: datetime,
    reserve_price: Any = None,
    now: datetime | None = None,
) -> Auction:
    now = now or datetime.now(timezone.utc)
    request = await get_request(store=store, request_id=disposal_id)
    if request.approval_status != ApprovalStatus.APPROVED:
        raise InvalidStateError(
            f"disposal request {request.disposal_number} is not approved",
            request_id=request.id,
        )
    ensure_request_transition(request.status, DisposalStatus.BIDDING_OPEN)
    open_auctions = await store.list_auctions(
        disposal_id=disposal_id, statuses=[s.value for s in OPEN_AUCTION_STATUSES],
    )
    if open_auctions:
        raise InvalidStateError(
            f"disposal request {request.disposal_number} already has an open auction",
            request_id=request.id,
        )

    kind = coerce_enum(AuctionType, auction_type, "auction_type")
    start = parse_money(starting_price, "starting_price", allow_zero=False)
    reserve = None if reserve_price is None else parse_money(reserve_price, "reserve_price")
    if start_date.tzinfo is None or end_date.tzinfo is None:
        raise ValidationError("auction dates must include a timezone", field="start_date")
    validate_auction_terms(
        starting_price=start,
        reserve_price=reserve,
        start_date=start_date,
        end_date=end_date,
        policy=policy,
    )

    status = initial_auction_status(start_date, now)
    record = {
        "id": str(uuid.uuid4()),
        "disposal_id": disposal_id,
        "auction_type": kind.value,
        "start_date": start_date,
        "end_date": end_date,
        "starting_price": start,
        "reserve_price": reserve,
        "current_highest_bid": None,
        "total_bids": 0,
        "auction_status": status.value,
    }
    try:
        row = await store.insert_auction(
            record,
            expected_request_status=request.status.value,
            request_values={"status": DisposalStatus.BIDDING_OPEN.value},
        )
    except StaleWriteError:
        raise InvalidStateError(
            f"disposal request {request.disposal_number} changed while the auction was being created",
            request_id=request.id,
        ) from None

    auction = Auction.from_row(row)
    logger.info(
        "Auction %s created for %s (%s, starting %s, %s)",
        auction.id, request.disposal_number, kind.value, start, status.value,
    )
    await audit.emit("auction.created", _event(auction, disposal_number=request.disposal_number))
    return auction


async def cancel_auction(
    *,
    store: DisposalStore,
    audit: AuditSink,
    auction_id: str,
    reason: str | None = None,
) -> Auction:
    auction = await get_auction(store=store, auction_id=auction_id)
    ensure_auction_transition(auction.status, AuctionStatus.CANCELLED)
    try:
        row = await store.transition_auction(
            auction.id,
            expected_status=auction.status.value,
            values={"auction_status": AuctionStatus.CANCELLED.value},
            expected_request_status=DisposalStatus.BIDDING_OPEN.value,
            request_values={"status": DisposalStatus.LISTED.value},
        )
    except StaleWriteError:
        raise InvalidStateError(
            f"auction {auction.id} changed while being cancelled; reload and retry",
            auction_id=auction.id,
        ) from None

    cancelled = Auction.from_row(row)
    logger.info("Auction %s cancelled: %s", cancelled.id, reason or "no reason given")
    await audit.emit("auction.cancelled", _event(cancelled, reason=reason))
    return cancelled


async def activate_due_auctions(
    *,
    store: DisposalStore,
    audit: AuditSink,
    now: datetime | None = None,
) -> list[Auction]:
    now = now or datetime.now(timezone.utc)
    activated: list[Auction] = []
    for row in await store.list_auctions(statuses=[AuctionStatus.SCHEDULED.value]):
        auction = Auction.from_row(row)
        if auction.start_date > now:
            continue
        try:
            updated = await store.transition_auction(
                auction.id,
                expected_status=AuctionStatus.SCHEDULED.value,
                values={"auction_status": AuctionStatus.ACTIVE.value},
            )
        except StaleWriteError:
            logger.info("Auction %s left scheduled state before activation", auction.id)
            continue
        active = Auction.from_row(updated)
        logger.info("Auction %s is now active", active.id)
        await audit.emit("auction.activated", _event(active))
        activated.append(active)
    return activated


def _event(auction: Auction, **extra: Any) -> dict[str, Any]:
    return {
        "id": auction.id,
        "disposal_id": auction.disposal_id,
        "auction_type": auction.auction_type.value,
        "status": auction.status.value,
        "starting_price": str(auction.starting_price),
        "reserve_price": None if auction.reserve_price is None else str(auction.reserve_price),
        "start_date": auction.start_date.isoformat(),
        "end_date": auction.end_date.isoformat(),
        **extra,
    }
