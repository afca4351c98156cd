from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from disposal.config import DisposalPolicy
from disposal.data_models import AuctionStatus, Bid, DisposalReason, DisposalStatus
from disposal.errors import BusinessRuleError, InvalidStateError, ValidationError
from disposal.rules import (
    check_settlement,
    coerce_enum,
    generate_disposal_number,
    initial_auction_status,
    minimum_next_bid,
    parse_mileage,
    parse_money,
    select_winning_bid,
    suggest_pricing,
    validate_auction_terms,
    validate_bid_amount,
)
from disposal.state_machine import (
    can_transition_auction,
    can_transition_request,
    ensure_auction_transition,
    ensure_request_transition,
)

NOW = datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc)
POLICY = DisposalPolicy()


def _bid(amount: str, minutes: int = 0, valid: bool = True, bid_id: str | None = None) -> Bid:
    return Bid(
        id=bid_id or f"bid-{amount}-{minutes}",
        auction_id="auc-1",
        bidder_name=f"bidder-{amount}",
        bidder_contact="bidder@example.com",
        bid_amount=Decimal(amount),
        bid_date=NOW + timedelta(minutes=minutes),
        is_valid=valid,
    )


# ── Disposal numbers ────────────────────────────────────────────────


def test_disposal_number_format():
    number = generate_disposal_number(NOW, token="a1b2c3d4")
    assert number == f"DSP-{int(NOW.timestamp() * 1000)}-A1B2C3"


def test_disposal_numbers_unique_within_same_millisecond():
    numbers = {generate_disposal_number(NOW) for _ in range(200)}
    assert len(numbers) == 200


# ── Input parsing ───────────────────────────────────────────────────


def test_coerce_enum_accepts_wire_value():
    assert coerce_enum(DisposalReason, "accident_damage", "disposal_reason") is DisposalReason.ACCIDENT_DAMAGE


def test_coerce_enum_rejects_unknown_value():
    with pytest.raises(ValidationError) as exc:
        coerce_enum(DisposalReason, "stolen", "disposal_reason")
    assert "end_of_life" in exc.value.message
    assert exc.value.kind == "validation"


def test_parse_money_quantizes_and_rejects_negative():
    assert parse_money("12500.5", "estimated_value") == Decimal("12500.50")
    assert parse_money(0, "estimated_value") == Decimal("0.00")
    with pytest.raises(ValidationError):
        parse_money(-1, "estimated_value")
    with pytest.raises(ValidationError):
        parse_money(0, "starting_price", allow_zero=False)
    with pytest.raises(ValidationError):
        parse_money("NaN", "estimated_value")
    with pytest.raises(ValidationError):
        parse_money("lots", "estimated_value")


def test_parse_mileage():
    assert parse_mileage(0) == 0
    assert parse_mileage(182000) == 182000
    with pytest.raises(ValidationError):
        parse_mileage(-5)
    with pytest.raises(ValidationError):
        parse_mileage(True)
    with pytest.raises(ValidationError):
        parse_mileage("182000")


# ── Auction terms ───────────────────────────────────────────────────


def test_auction_terms_accept_exact_minimum_duration():
    validate_auction_terms(
        starting_price=Decimal("70000"),
        reserve_price=Decimal("85000"),
        start_date=NOW,
        end_date=NOW + timedelta(days=7),
        policy=POLICY,
    )


def test_auction_terms_reject_short_duration():
    with pytest.raises(ValidationError) as exc:
        validate_auction_terms(
            starting_price=Decimal("70000"),
            reserve_price=None,
            start_date=NOW,
            end_date=NOW + timedelta(days=6, hours=23),
            policy=POLICY,
        )
    assert "at least 7 days" in exc.value.message


def test_auction_terms_reject_reserve_below_start():
    with pytest.raises(ValidationError):
        validate_auction_terms(
            starting_price=Decimal("70000"),
            reserve_price=Decimal("60000"),
            start_date=NOW,
            end_date=NOW + timedelta(days=10),
            policy=POLICY,
        )


def test_auction_terms_reject_end_before_start():
    with pytest.raises(ValidationError):
        validate_auction_terms(
            starting_price=Decimal("70000"),
            reserve_price=None,
            start_date=NOW,
            end_date=NOW - timedelta(days=1),
            policy=POLICY,
        )


def test_auction_duration_follows_policy():
    short_policy = DisposalPolicy(min_auction_duration_days=3)
    validate_auction_terms(
        starting_price=Decimal("100"),
        reserve_price=None,
        start_date=NOW,
        end_date=NOW + timedelta(days=3),
        policy=short_policy,
    )


def test_initial_auction_status():
    assert initial_auction_status(NOW, NOW) == AuctionStatus.ACTIVE
    assert initial_auction_status(NOW - timedelta(hours=1), NOW) == AuctionStatus.ACTIVE
    assert initial_auction_status(NOW + timedelta(hours=1), NOW) == AuctionStatus.SCHEDULED


# ── Bidding ─────────────────────────────────────────────────────────


def test_minimum_next_bid_without_bids_is_starting_price():
    assert minimum_next_bid(Decimal("70000"), None, Decimal("1000")) == Decimal("70000.00")


def test_minimum_next_bid_adds_increment_to_highest():
    assert minimum_next_bid(Decimal("70000"), Decimal("70500"), Decimal("1000")) == Decimal("71500.00")


def test_minimum_next_bid_small_starting_price():
    # With a starting price under the increment the first bid still has to clear the increment.
    assert minimum_next_bid(Decimal("500"), None, Decimal("1000")) == Decimal("1000.00")


def test_validate_bid_amount_rejects_below_minimum():
    with pytest.raises(ValidationError) as exc:
        validate_bid_amount(Decimal("70800"), Decimal("71500"))
    assert "71500.00" in exc.value.message
    assert exc.value.context["minimum_next_bid"] == "71500"
    validate_bid_amount(Decimal("71500"), Decimal("71500"))


def test_select_winning_bid_highest_amount():
    winner = select_winning_bid([_bid("71000", 0), _bid("86000", 2), _bid("80000", 1)])
    assert winner.bid_amount == Decimal("86000")


def test_select_winning_bid_ties_go_to_earliest():
    later = _bid("80000", 5, bid_id="late")
    earlier = _bid("80000", 1, bid_id="early")
    assert select_winning_bid([later, earlier]).id == "early"


def test_select_winning_bid_ignores_invalid():
    winner = select_winning_bid([_bid("90000", 0, valid=False), _bid("75000", 1)])
    assert winner.bid_amount == Decimal("75000")
    assert select_winning_bid([]) is None


def test_check_settlement():
    with pytest.raises(BusinessRuleError) as exc:
        check_settlement(None, Decimal("85000"))
    assert "no bids" in exc.value.message

    with pytest.raises(BusinessRuleError) as exc:
        check_settlement(_bid("82000"), Decimal("85000"))
    assert exc.value.message == "reserve price not met"

    winner = _bid("86000")
    assert check_settlement(winner, Decimal("85000")) is winner
    assert check_settlement(winner, None) is winner


def test_suggest_pricing():
    pricing = suggest_pricing(Decimal("100000"), POLICY)
    assert pricing == {"starting_price": Decimal("70000.00"), "reserve_price": Decimal("85000.00")}


# ── State machines ──────────────────────────────────────────────────


def test_request_lifecycle_transitions():
    assert can_transition_request(DisposalStatus.PENDING_APPROVAL, DisposalStatus.LISTED)
    assert can_transition_request(DisposalStatus.PENDING_APPROVAL, DisposalStatus.CANCELLED)
    assert can_transition_request(DisposalStatus.LISTED, DisposalStatus.BIDDING_OPEN)
    assert can_transition_request(DisposalStatus.BIDDING_OPEN, DisposalStatus.SOLD)
    assert can_transition_request(DisposalStatus.SOLD, DisposalStatus.TRANSFERRED)
    assert not can_transition_request(DisposalStatus.LISTED, DisposalStatus.SOLD)
    assert not can_transition_request(DisposalStatus.PENDING_APPROVAL, DisposalStatus.BIDDING_OPEN)


def test_terminal_request_states():
    for target in DisposalStatus:
        assert not can_transition_request(DisposalStatus.TRANSFERRED, target)
        assert not can_transition_request(DisposalStatus.CANCELLED, target)


def test_auction_transitions():
    assert can_transition_auction(AuctionStatus.SCHEDULED, AuctionStatus.ACTIVE)
    assert can_transition_auction(AuctionStatus.ACTIVE, AuctionStatus.AWARDED)
    assert not can_transition_auction(AuctionStatus.SCHEDULED, AuctionStatus.AWARDED)
    for target in AuctionStatus:
        assert not can_transition_auction(AuctionStatus.AWARDED, target)
        assert not can_transition_auction(AuctionStatus.CANCELLED, target)


def test_ensure_transition_raises_invalid_state():
    with pytest.raises(InvalidStateError):
        ensure_request_transition(DisposalStatus.CANCELLED, DisposalStatus.LISTED)
    with pytest.raises(InvalidStateError):
        ensure_auction_transition(AuctionStatus.AWARDED, AuctionStatus.ACTIVE)
    ensure_request_transition(DisposalStatus.LISTED, DisposalStatus.BIDDING_OPEN)
