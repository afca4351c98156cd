from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, Iterable

import redis.asyncio as redis
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine


metadata = MetaData()

disposal_requests_table = Table(
    "disposal_requests",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("disposal_number", String(50), nullable=False, unique=True),
    Column("vehicle_id", String(64), nullable=False, index=True),
    Column("requested_by", String(64), nullable=False),
    Column("disposal_reason", String(50), nullable=False),
    Column("recommended_method", String(50), nullable=False),
    Column("condition_rating", String(50), nullable=False),
    Column("current_mileage", Integer, nullable=False),
    Column("estimated_value", Numeric(12, 2), nullable=False),
    Column("request_date", Date, nullable=False),
    Column("approval_status", String(50), nullable=False, default="pending"),
    Column("approved_by", String(64), nullable=True),
    Column("approval_date", Date, nullable=True),
    Column("rejection_reason", Text, nullable=True),
    Column("status", String(50), nullable=False, default="pending_approval", index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

disposal_auctions_table = Table(
    "disposal_auctions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("disposal_id", String(36), nullable=False, index=True),
    Column("auction_type", String(50), nullable=False),
    Column("start_date", DateTime(timezone=True), nullable=False),
    Column("end_date", DateTime(timezone=True), nullable=False),
    Column("starting_price", Numeric(12, 2), nullable=False),
    Column("reserve_price", Numeric(12, 2), nullable=True),
    Column("current_highest_bid", Numeric(12, 2), nullable=True),
    Column("total_bids", Integer, nullable=False, default=0),
    Column("winner", String(255), nullable=True),
    Column("winning_bid_id", String(36), nullable=True),
    Column("winning_bid", Numeric(12, 2), nullable=True),
    Column("auction_status", String(50), nullable=False, default="scheduled", index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

bids_table = Table(
    "bids",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("auction_id", String(36), nullable=False, index=True),
    Column("bidder_name", String(255), nullable=False),
    Column("bidder_contact", String(255), nullable=False),
    Column("bid_amount", Numeric(12, 2), nullable=False),
    Column("bid_date", DateTime(timezone=True), nullable=False),
    Column("is_valid", Boolean, nullable=False, default=True),
    Column("notes", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


class DuplicateKeyError(Exception):
    """An insert collided with a unique key."""


class StaleWriteError(Exception):
    """A conditional write matched no row: the guarded state changed underneath us."""

    def __init__(self, table: str, row_id: str, expected: dict[str, Any]) -> None:
        super().__init__(f"conditional write on {table}/{row_id} did not match {expected}")
        self.table = table
        self.row_id = row_id
        self.expected = expected


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "disposal") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                return None
        if full_key in self._expiry and time.monotonic() > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                pass
        self._mem[full_key] = payload
        self._expiry[full_key] = time.monotonic() + ttl_seconds


class DisposalStore:
    """Record store for disposal requests, auctions and bids.

    Every method is one transaction. Status changes are compare-and-set on the
    current status and raise ``StaleWriteError`` when the row moved on; bid
    appends are guarded by the auction's ``total_bids`` marker. Without a
    reachable database the same contract is served from process memory.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_requests: dict[str, dict[str, Any]] = {}
        self._mem_auctions: dict[str, dict[str, Any]] = {}
        self._mem_bids: dict[str, dict[str, Any]] = {}

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None:
            return False
        if self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Disposal requests ───────────────────────────────────────────

    async def insert_disposal_request(self, record: dict[str, Any]) -> dict[str, Any]:
        now = _now()
        row = {**record, "created_at": now, "updated_at": now}
        if self.engine is None:
            if any(r["disposal_number"] == row["disposal_number"] for r in self._mem_requests.values()):
                raise DuplicateKeyError(row["disposal_number"])
            self._mem_requests[row["id"]] = row
            return dict(row)
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(disposal_requests_table).values(**row))
                return await self._fetch_one(conn, disposal_requests_table, row["id"])
        except IntegrityError as exc:
            raise DuplicateKeyError(row["disposal_number"]) from exc

    async def get_disposal_request(self, request_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            row = self._mem_requests.get(request_id)
            return None if row is None else dict(row)
        async with self.engine.connect() as conn:
            return await self._fetch_one(conn, disposal_requests_table, request_id)

    async def list_disposal_requests(
        self,
        *,
        status: str | None = None,
        approval_status: str | None = None,
        limit: int | None = 500,
    ) -> list[dict[str, Any]]:
        """Newest first; `limit=None` reads every matching row."""
        if self.engine is None:
            rows = [
                dict(r) for r in self._mem_requests.values()
                if (status is None or r["status"] == status)
                and (approval_status is None or r["approval_status"] == approval_status)
            ]
            rows.sort(key=lambda r: r["created_at"], reverse=True)
            return rows if limit is None else rows[:limit]
        stmt = select(disposal_requests_table)
        if status is not None:
            stmt = stmt.where(disposal_requests_table.c.status == status)
        if approval_status is not None:
            stmt = stmt.where(disposal_requests_table.c.approval_status == approval_status)
        stmt = stmt.order_by(disposal_requests_table.c.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def update_disposal_request(
        self,
        request_id: str,
        *,
        expected_status: str,
        values: dict[str, Any],
    ) -> dict[str, Any]:
        if self.engine is None:
            self._mem_check_request(request_id, expected_status)
            return dict(self._mem_apply(self._mem_requests[request_id], values))
        async with self.engine.begin() as conn:
            await self._cas_request(conn, request_id, expected_status, values)
            return await self._fetch_one(conn, disposal_requests_table, request_id)

    # ── Auctions ────────────────────────────────────────────────────

    async def insert_auction(
        self,
        record: dict[str, Any],
        *,
        expected_request_status: str,
        request_values: dict[str, Any],
    ) -> dict[str, Any]:
        """Create an auction and move its disposal request in the same transaction."""
        now = _now()
        row = {**record, "created_at": now, "updated_at": now}
        open_statuses = ("scheduled", "active")
        disposal_id = row["disposal_id"]
        if self.engine is None:
            self._mem_check_request(disposal_id, expected_request_status)
            if any(
                a["disposal_id"] == disposal_id and a["auction_status"] in open_statuses
                for a in self._mem_auctions.values()
            ):
                raise StaleWriteError("disposal_auctions", disposal_id, {"open_auctions": 0})
            self._mem_apply(self._mem_requests[disposal_id], request_values)
            self._mem_auctions[row["id"]] = row
            return dict(row)
        async with self.engine.begin() as conn:
            existing = (
                await conn.execute(
                    select(disposal_auctions_table.c.id)
                    .where(disposal_auctions_table.c.disposal_id == disposal_id)
                    .where(disposal_auctions_table.c.auction_status.in_(open_statuses))
                )
            ).first()
            if existing is not None:
                raise StaleWriteError("disposal_auctions", disposal_id, {"open_auctions": 0})
            await self._cas_request(conn, disposal_id, expected_request_status, request_values)
            await conn.execute(insert(disposal_auctions_table).values(**row))
            return await self._fetch_one(conn, disposal_auctions_table, row["id"])

    async def get_auction(self, auction_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            row = self._mem_auctions.get(auction_id)
            return None if row is None else dict(row)
        async with self.engine.connect() as conn:
            return await self._fetch_one(conn, disposal_auctions_table, auction_id)

    async def list_auctions(
        self,
        *,
        disposal_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        wanted = None if statuses is None else set(statuses)
        if self.engine is None:
            rows = [
                dict(a) for a in self._mem_auctions.values()
                if (disposal_id is None or a["disposal_id"] == disposal_id)
                and (wanted is None or a["auction_status"] in wanted)
            ]
            rows.sort(key=lambda a: a["created_at"], reverse=True)
            return rows
        stmt = select(disposal_auctions_table)
        if disposal_id is not None:
            stmt = stmt.where(disposal_auctions_table.c.disposal_id == disposal_id)
        if wanted is not None:
            stmt = stmt.where(disposal_auctions_table.c.auction_status.in_(sorted(wanted)))
        stmt = stmt.order_by(disposal_auctions_table.c.created_at.desc())
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def transition_auction(
        self,
        auction_id: str,
        *,
        expected_status: str,
        values: dict[str, Any],
        expected_request_status: str | None = None,
        request_values: dict[str, Any] | None = None,
        expected_total_bids: int | None = None,
    ) -> dict[str, Any]:
        """Move an auction (and optionally its disposal request) in one transaction.

        With ``expected_total_bids`` the write also requires the bid count to be
        unchanged, so an award cannot land on a ledger that grew after it was read.
        """
        expected: dict[str, Any] = {"auction_status": expected_status}
        if expected_total_bids is not None:
            expected["total_bids"] = expected_total_bids
        if self.engine is None:
            auction = self._mem_auctions.get(auction_id)
            if (
                auction is None
                or auction["auction_status"] != expected_status
                or (expected_total_bids is not None and int(auction.get("total_bids") or 0) != expected_total_bids)
            ):
                raise StaleWriteError("disposal_auctions", auction_id, expected)
            if request_values is not None:
                self._mem_check_request(auction["disposal_id"], expected_request_status)
                self._mem_apply(self._mem_requests[auction["disposal_id"]], request_values)
            return dict(self._mem_apply(auction, values))
        async with self.engine.begin() as conn:
            stmt = (
                update(disposal_auctions_table)
                .where(disposal_auctions_table.c.id == auction_id)
                .where(disposal_auctions_table.c.auction_status == expected_status)
            )
            if expected_total_bids is not None:
                stmt = stmt.where(disposal_auctions_table.c.total_bids == expected_total_bids)
            result = await conn.execute(stmt.values(**values, updated_at=_now()))
            if result.rowcount != 1:
                raise StaleWriteError("disposal_auctions", auction_id, expected)
            row = await self._fetch_one(conn, disposal_auctions_table, auction_id)
            if request_values is not None:
                await self._cas_request(conn, row["disposal_id"], expected_request_status, request_values)
            return row

    # ── Bids ────────────────────────────────────────────────────────

    async def append_bid(self, record: dict[str, Any], *, expected_total_bids: int) -> dict[str, Any]:
        """Insert a bid and advance the auction's highest-bid marker atomically.

        The marker only advances while the auction is still ``active`` and has
        exactly ``expected_total_bids`` bids, so two bids priced against the
        same snapshot cannot both land.
        """
        row = {**record, "created_at": _now()}
        auction_id = row["auction_id"]
        marker = {"auction_status": "active", "total_bids": expected_total_bids}
        if self.engine is None:
            auction = self._mem_auctions.get(auction_id)
            if (
                auction is None
                or auction["auction_status"] != "active"
                or int(auction.get("total_bids") or 0) != expected_total_bids
            ):
                raise StaleWriteError("disposal_auctions", auction_id, marker)
            self._mem_apply(
                auction,
                {"current_highest_bid": row["bid_amount"], "total_bids": expected_total_bids + 1},
            )
            self._mem_bids[row["id"]] = row
            return dict(row)
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(disposal_auctions_table)
                .where(disposal_auctions_table.c.id == auction_id)
                .where(disposal_auctions_table.c.auction_status == "active")
                .where(disposal_auctions_table.c.total_bids == expected_total_bids)
                .values(
                    current_highest_bid=row["bid_amount"],
                    total_bids=expected_total_bids + 1,
                    updated_at=_now(),
                )
            )
            if result.rowcount != 1:
                raise StaleWriteError("disposal_auctions", auction_id, marker)
            await conn.execute(insert(bids_table).values(**row))
            return await self._fetch_one(conn, bids_table, row["id"])

    async def list_bids(self, auction_id: str) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [dict(b) for b in self._mem_bids.values() if b["auction_id"] == auction_id]
            rows.sort(key=lambda b: (b["bid_date"], b["created_at"]))
            return rows
        stmt = (
            select(bids_table)
            .where(bids_table.c.auction_id == auction_id)
            .order_by(bids_table.c.bid_date.asc(), bids_table.c.created_at.asc())
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    async def _fetch_one(conn: AsyncConnection, table: Table, row_id: str) -> dict[str, Any] | None:
        row = (await conn.execute(select(table).where(table.c.id == row_id))).first()
        return dict(row._mapping) if row else None

    @staticmethod
    async def _cas_request(
        conn: AsyncConnection,
        request_id: str,
        expected_status: str | None,
        values: dict[str, Any],
    ) -> None:
        result = await conn.execute(
            update(disposal_requests_table)
            .where(disposal_requests_table.c.id == request_id)
            .where(disposal_requests_table.c.status == expected_status)
            .values(**values, updated_at=_now())
        )
        if result.rowcount != 1:
            raise StaleWriteError("disposal_requests", request_id, {"status": expected_status})

    def _mem_check_request(self, request_id: str, expected_status: str | None) -> None:
        row = self._mem_requests.get(request_id)
        if row is None or row["status"] != expected_status:
            raise StaleWriteError("disposal_requests", request_id, {"status": expected_status})

    @staticmethod
    def _mem_apply(row: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
        row.update(values)
        row["updated_at"] = _now()
        return row
