from __future__ import annotations

import enum
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any


class DisposalReason(str, enum.Enum):
    END_OF_LIFE = "end_of_life"
    EXCESSIVE_MAINTENANCE = "excessive_maintenance"
    ACCIDENT_DAMAGE = "accident_damage"
    UPGRADE = "upgrade"
    POLICY_CHANGE = "policy_change"


class DisposalMethod(str, enum.Enum):
    AUCTION = "auction"
    BEST_OFFER = "best_offer"
    TRADE_IN = "trade_in"
    SCRAP = "scrap"
    DONATION = "donation"


class ConditionRating(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    SALVAGE = "salvage"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DisposalStatus(str, enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    LISTED = "listed"
    BIDDING_OPEN = "bidding_open"
    SOLD = "sold"
    TRANSFERRED = "transferred"
    CANCELLED = "cancelled"


class AuctionType(str, enum.Enum):
    PUBLIC = "public"
    SEALED_BID = "sealed_bid"
    ONLINE = "online"


class AuctionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    CLOSED = "closed"
    AWARDED = "awarded"
    CANCELLED = "cancelled"


OPEN_AUCTION_STATUSES = (AuctionStatus.SCHEDULED, AuctionStatus.ACTIVE)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _money(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value)).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class Vehicle:
    id: str
    plate_number: str = ""
    vin: str = ""
    make: str = ""
    model: str = ""
    year: int | None = None
    status: str = ""


@dataclass(frozen=True)
class DisposalRequest:
    id: str
    disposal_number: str
    vehicle_id: str
    requested_by: str
    disposal_reason: DisposalReason
    recommended_method: DisposalMethod
    condition_rating: ConditionRating
    current_mileage: int
    estimated_value: Decimal
    request_date: date
    approval_status: ApprovalStatus
    status: DisposalStatus
    approved_by: str | None = None
    approval_date: date | None = None
    rejection_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DisposalRequest:
        return cls(
            id=row["id"],
            disposal_number=row["disposal_number"],
            vehicle_id=row["vehicle_id"],
            requested_by=row["requested_by"],
            disposal_reason=DisposalReason(row["disposal_reason"]),
            recommended_method=DisposalMethod(row["recommended_method"]),
            condition_rating=ConditionRating(row["condition_rating"]),
            current_mileage=int(row["current_mileage"]),
            estimated_value=_money(row["estimated_value"]),
            request_date=row["request_date"],
            approval_status=ApprovalStatus(row["approval_status"]),
            status=DisposalStatus(row["status"]),
            approved_by=row.get("approved_by"),
            approval_date=row.get("approval_date"),
            rejection_reason=row.get("rejection_reason"),
            created_at=_aware(row.get("created_at")),
            updated_at=_aware(row.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Auction:
    id: str
    disposal_id: str
    auction_type: AuctionType
    starting_price: Decimal
    start_date: datetime
    end_date: datetime
    status: AuctionStatus
    reserve_price: Decimal | None = None
    current_highest_bid: Decimal | None = None
    total_bids: int = 0
    winner: str | None = None
    winning_bid_id: str | None = None
    winning_bid: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Auction:
        return cls(
            id=row["id"],
            disposal_id=row["disposal_id"],
            auction_type=AuctionType(row["auction_type"]),
            starting_price=_money(row["starting_price"]),
            start_date=_aware(row["start_date"]),
            end_date=_aware(row["end_date"]),
            status=AuctionStatus(row["auction_status"]),
            reserve_price=_money(row.get("reserve_price")),
            current_highest_bid=_money(row.get("current_highest_bid")),
            total_bids=int(row.get("total_bids") or 0),
            winner=row.get("winner"),
            winning_bid_id=row.get("winning_bid_id"),
            winning_bid=_money(row.get("winning_bid")),
            created_at=_aware(row.get("created_at")),
            updated_at=_aware(row.get("updated_at")),
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_AUCTION_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Bid:
    id: str
    auction_id: str
    bidder_name: str
    bidder_contact: str
    bid_amount: Decimal
    bid_date: datetime
    is_valid: bool = True
    notes: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Bid:
        return cls(
            id=row["id"],
            auction_id=row["auction_id"],
            bidder_name=row["bidder_name"],
            bidder_contact=row["bidder_contact"],
            bid_amount=_money(row["bid_amount"]),
            bid_date=_aware(row["bid_date"]),
            is_valid=bool(row.get("is_valid", True)),
            notes=row.get("notes"),
            created_at=_aware(row.get("created_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
