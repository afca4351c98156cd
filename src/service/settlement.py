from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from disposal.data_models import Auction, AuctionStatus, Bid, DisposalStatus
from disposal.errors import BusinessRuleError, DisposalError, InvalidStateError
from disposal.rules import check_settlement, select_winning_bid
from disposal.state_machine import ensure_auction_transition
from service.auctions import get_auction
from service.messaging import AuditSink
from service.storage import DisposalStore, StaleWriteError

logger = logging.getLogger(__name__)


async def close_auction(
    *,
    store: DisposalStore,
    audit: AuditSink,
    auction_id: str,
) -> Auction:
    auction = await get_auction(store=store, auction_id=auction_id)
    if auction.status != AuctionStatus.ACTIVE:
        raise InvalidStateError(
            f"auction {auction.id} is {auction.status.value}; only active auctions can be closed",
            auction_id=auction.id,
        )
    ensure_auction_transition(auction.status, AuctionStatus.AWARDED)

    # The award is only valid against the ledger it was chosen from.
    bids = [Bid.from_row(r) for r in await store.list_bids(auction.id)]
    winning = check_settlement(select_winning_bid(bids), auction.reserve_price)
    try:
        row = await store.transition_auction(
            auction.id,
            expected_status=AuctionStatus.ACTIVE.value,
            values={
                "auction_status": AuctionStatus.AWARDED.value,
                "winner": winning.bidder_name,
                "winning_bid_id": winning.id,
                "winning_bid": winning.bid_amount,
            },
            expected_request_status=DisposalStatus.BIDDING_OPEN.value,
            request_values={"status": DisposalStatus.SOLD.value},
            expected_total_bids=auction.total_bids,
        )
    except StaleWriteError:
        latest = await get_auction(store=store, auction_id=auction.id)
        if latest.status == AuctionStatus.ACTIVE:
            raise BusinessRuleError(
                f"auction {auction.id} received a bid while being settled; close again to award the current highest bid",
                auction_id=auction.id,
            ) from None
        raise InvalidStateError(
            f"auction {auction.id} is {latest.status.value}; it changed while being settled",
            auction_id=auction.id,
        ) from None

    awarded = Auction.from_row(row)
    logger.info(
        "Auction %s awarded to %s at %s", awarded.id, awarded.winner, awarded.winning_bid,
    )
    await audit.emit(
        "auction.awarded",
        {
            "id": awarded.id,
            "disposal_id": awarded.disposal_id,
            "winner": awarded.winner,
            "winning_bid_id": awarded.winning_bid_id,
            "settlement_amount": str(awarded.winning_bid),
        },
    )
    return awarded


async def close_expired_auctions(
    *,
    store: DisposalStore,
    audit: AuditSink,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Settle every active auction past its end date, reporting per-auction outcomes."""
    now = now or datetime.now(timezone.utc)
    results: list[dict[str, Any]] = []
    for row in await store.list_auctions(statuses=[AuctionStatus.ACTIVE.value]):
        auction = Auction.from_row(row)
        if auction.end_date > now:
            continue
        try:
            awarded = await close_auction(store=store, audit=audit, auction_id=auction.id)
        except DisposalError as exc:
            logger.info("Expired auction %s not settled: %s", auction.id, exc.message)
            results.append({"auction_id": auction.id, "outcome": exc.kind, "message": exc.message})
            continue
        results.append({
            "auction_id": auction.id,
            "outcome": "awarded",
            "winner": awarded.winner,
            "winning_bid": str(awarded.winning_bid),
        })
    awarded_count = sum(1 for r in results if r["outcome"] == "awarded")
    return {"status": "ok", "examined": len(results), "awarded": awarded_count, "results": results}
