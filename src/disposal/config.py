from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal


@dataclass(frozen=True)
class DisposalPolicy:
    min_auction_duration_days: int = 7
    min_bid_increment: Decimal = Decimal("1000")
    # Auction setup defaults, as fractions of the request's estimated value.
    starting_price_ratio: Decimal = Decimal("0.70")
    reserve_price_ratio: Decimal = Decimal("0.85")
    sweep_cron: str = "*/15 * * * *"

    @property
    def min_auction_duration(self) -> timedelta:
        return timedelta(days=self.min_auction_duration_days)
