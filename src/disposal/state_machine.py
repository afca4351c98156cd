from __future__ import annotations

from disposal.data_models import AuctionStatus, DisposalStatus
from disposal.errors import InvalidStateError

REQUEST_TRANSITIONS: dict[DisposalStatus, frozenset[DisposalStatus]] = {
    DisposalStatus.PENDING_APPROVAL: frozenset({DisposalStatus.LISTED, DisposalStatus.CANCELLED}),
    # bidding_open -> listed only happens when the auction is cancelled.
    DisposalStatus.LISTED: frozenset({DisposalStatus.BIDDING_OPEN}),
    DisposalStatus.BIDDING_OPEN: frozenset({DisposalStatus.SOLD, DisposalStatus.LISTED}),
    DisposalStatus.SOLD: frozenset({DisposalStatus.TRANSFERRED}),
    DisposalStatus.TRANSFERRED: frozenset(),
    DisposalStatus.CANCELLED: frozenset(),
}

AUCTION_TRANSITIONS: dict[AuctionStatus, frozenset[AuctionStatus]] = {
    AuctionStatus.SCHEDULED: frozenset({AuctionStatus.ACTIVE, AuctionStatus.CANCELLED}),
    AuctionStatus.ACTIVE: frozenset({AuctionStatus.AWARDED, AuctionStatus.CLOSED, AuctionStatus.CANCELLED}),
    AuctionStatus.CLOSED: frozenset(),
    AuctionStatus.AWARDED: frozenset(),
    AuctionStatus.CANCELLED: frozenset(),
}


def can_transition_request(current: DisposalStatus, target: DisposalStatus) -> bool:
    return target in REQUEST_TRANSITIONS.get(current, frozenset())


def can_transition_auction(current: AuctionStatus, target: AuctionStatus) -> bool:
    return target in AUCTION_TRANSITIONS.get(current, frozenset())


def ensure_request_transition(current: DisposalStatus, target: DisposalStatus) -> None:
    if not can_transition_request(current, target):
        raise InvalidStateError(
            f"disposal request cannot move from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


def ensure_auction_transition(current: AuctionStatus, target: AuctionStatus) -> None:
    if not can_transition_auction(current, target):
        raise InvalidStateError(
            f"auction cannot move from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )
