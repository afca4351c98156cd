from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from disposal.config import DisposalPolicy
from disposal.data_models import Auction, AuctionStatus, Bid
from disposal.errors import BusinessRuleError, InvalidStateError
from disposal.rules import (
    minimum_next_bid,
    parse_money,
    require_text,
    select_winning_bid,
    validate_bid_amount,
)
from service.auctions import get_auction
from service.messaging import AuditSink
from service.storage import DisposalStore, StaleWriteError

logger = logging.getLogger(__name__)


async def list_bids(*, store: DisposalStore, auction_id: str) -> list[Bid]:
    """Bid history, highest amount first."""
    await get_auction(store=store, auction_id=auction_id)
    bids = [Bid.from_row(r) for r in await store.list_bids(auction_id)]
    return sorted(bids, key=lambda b: b.bid_amount, reverse=True)


async def highest_bid(*, store: DisposalStore, auction_id: str) -> Bid | None:
    await get_auction(store=store, auction_id=auction_id)
    return select_winning_bid(Bid.from_row(r) for r in await store.list_bids(auction_id))


def next_minimum(auction: Auction, policy: DisposalPolicy) -> Decimal:
    return minimum_next_bid(auction.starting_price, auction.current_highest_bid, policy.min_bid_increment)


async def place_bid(
    *,
    store: DisposalStore,
    audit: AuditSink,
    policy: DisposalPolicy,
    auction_id: str,
    bidder_name: str,
    bidder_contact: str,
    bid_amount: Any,
    notes: str | None = None,
    now: datetime | None = None,
) -> Bid:
    now = now or datetime.now(timezone.utc)
    auction = await get_auction(store=store, auction_id=auction_id)
    if auction.status != AuctionStatus.ACTIVE:
        raise InvalidStateError(
            f"auction {auction.id} is {auction.status.value}; bids are only accepted while active",
            auction_id=auction.id,
        )
    if now > auction.end_date:
        raise InvalidStateError(
            f"auction {auction.id} ended at {auction.end_date.isoformat()}; bids are no longer accepted",
            auction_id=auction.id,
        )

    name = require_text(bidder_name, "bidder_name")
    contact = require_text(bidder_contact, "bidder_contact")
    amount = parse_money(bid_amount, "bid_amount", allow_zero=False)
    minimum = next_minimum(auction, policy)
    validate_bid_amount(amount, minimum)

    record = {
        "id": str(uuid.uuid4()),
        "auction_id": auction.id,
        "bidder_name": name,
        "bidder_contact": contact,
        "bid_amount": amount,
        "bid_date": now,
        "is_valid": True,
        "notes": (notes or "").strip() or None,
    }
    try:
        row = await store.append_bid(record, expected_total_bids=auction.total_bids)
    except StaleWriteError:
        latest = await get_auction(store=store, auction_id=auction_id)
        if latest.status != AuctionStatus.ACTIVE:
            raise InvalidStateError(
                f"auction {latest.id} is {latest.status.value}; bids are only accepted while active",
                auction_id=latest.id,
            ) from None
        raise BusinessRuleError(
            f"another bid was accepted first; minimum next bid is now {next_minimum(latest, policy):.2f}",
            auction_id=latest.id,
            minimum_next_bid=str(next_minimum(latest, policy)),
        ) from None

    bid = Bid.from_row(row)
    logger.info("Bid %s of %s accepted on auction %s", bid.id, bid.bid_amount, auction.id)
    await audit.emit(
        "bid.placed",
        {
            "id": bid.id,
            "auction_id": auction.id,
            "bidder_name": bid.bidder_name,
            "bid_amount": str(bid.bid_amount),
            "total_bids": auction.total_bids + 1,
        },
    )
    return bid
