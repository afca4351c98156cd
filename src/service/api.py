from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from disposal.data_models import (
    ApprovalStatus,
    AuctionStatus,
    AuctionType,
    ConditionRating,
    DisposalMethod,
    DisposalReason,
    DisposalStatus,
)
from disposal.errors import DisposalError
from disposal.scheduler import build_auction_sweep_scheduler
from service import auctions, bids, disposal_requests, settlement
from service.auth import APIKeyAuth, RateLimiter, parse_api_keys
from service.logging_config import configure_logging, correlation_id
from service.messaging import AUCTION_CLOSE_REQUESTS_TOPIC, AuditSink, KafkaBus
from service.settings import ServiceSettings
from service.storage import DisposalStore, RedisCache
from service.vehicle_registry import HttpVehicleRegistry, VehicleRegistryError

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
    "business_rule": status.HTTP_409_CONFLICT,
}


# ── Request / Response Models ───────────────────────────────────────

class SubmitDisposalRequest(BaseModel):
    vehicle_id: str
    requested_by: str | None = None
    disposal_reason: DisposalReason
    recommended_method: DisposalMethod
    condition_rating: ConditionRating
    current_mileage: int
    estimated_value: Decimal
    request_date: date | None = None


class RejectDisposalRequest(BaseModel):
    reason: str


class CreateAuctionRequest(BaseModel):
    auction_type: AuctionType
    starting_price: Decimal
    reserve_price: Decimal | None = None
    start_date: datetime
    end_date: datetime

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class CancelAuctionRequest(BaseModel):
    reason: str | None = None


class PlaceBidRequest(BaseModel):
    bidder_name: str
    bidder_contact: str
    bid_amount: Decimal
    notes: str | None = None


class DisposalRequestResponse(BaseModel):
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


class AuctionResponse(BaseModel):
    id: str
    disposal_id: str
    auction_type: AuctionType
    starting_price: Decimal
    reserve_price: Decimal | None = None
    start_date: datetime
    end_date: datetime
    status: AuctionStatus
    current_highest_bid: Decimal | None = None
    total_bids: int = 0
    winner: str | None = None
    winning_bid_id: str | None = None
    winning_bid: Decimal | None = None
    minimum_next_bid: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BidResponse(BaseModel):
    id: str
    auction_id: str
    bidder_name: str
    bidder_contact: str
    bid_amount: Decimal
    bid_date: datetime
    is_valid: bool
    notes: str | None = None


class PricingResponse(BaseModel):
    starting_price: Decimal
    reserve_price: Decimal


class SummaryResponse(BaseModel):
    pending_requests: int
    active_auctions: int
    completed_disposals: int
    total_revenue: Decimal
    requests_by_status: dict[str, int]


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


class ErrorResponse(BaseModel):
    kind: str
    message: str = Field(description="Human-readable reason, safe to show to the operator")


# ── Metrics ─────────────────────────────────────────────────────────

_prom_counters: dict[str, int] = defaultdict(int)
_prom_histograms: dict[str, list[float]] = defaultdict(list)


def _record_latency(name: str, seconds: float) -> None:
    _prom_histograms[name].append(seconds)
    _prom_counters[f"{name}_count"] += 1


def _prometheus_text() -> str:
    """Render metrics in Prometheus exposition format."""
    lines: list[str] = []
    for k, v in sorted(_prom_counters.items()):
        safe = k.replace(".", "_").replace("-", "_")
        lines.append(f"# TYPE disposal_{safe} counter")
        lines.append(f"disposal_{safe} {v}")

    for name, vals in sorted(_prom_histograms.items()):
        if not vals:
            continue
        safe = name.replace(".", "_").replace("-", "_")
        sorted_vals = sorted(vals)
        n = len(sorted_vals)
        lines.append(f"# TYPE disposal_{safe}_seconds summary")
        for q in (0.5, 0.9, 0.99):
            idx = min(int(n * q), n - 1)
            lines.append(f'disposal_{safe}_seconds{{quantile="{q}"}} {sorted_vals[idx]:.6f}')
        lines.append(f"disposal_{safe}_seconds_count {n}")
        lines.append(f"disposal_{safe}_seconds_sum {sum(sorted_vals):.6f}")

    return "\n".join(lines) + "\n"


# ── App Factory ─────────────────────────────────────────────────────

def create_app(registry: Any | None = None) -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    policy = settings.disposal_policy()
    cache = RedisCache(redis_url=settings.redis_url)
    store = DisposalStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )
    audit = AuditSink(kafka)
    if registry is None:
        registry = HttpVehicleRegistry(
            cache=cache,
            base_url=settings.vehicle_registry_url,
            ttl_seconds=settings.vehicle_cache_ttl_seconds,
            api_key=settings.vehicle_registry_api_key,
        )

    auth = APIKeyAuth(allowed_keys=parse_api_keys(settings.api_keys) or None)
    limiter = RateLimiter(requests_per_minute=settings.rate_limit_rpm)

    async def run_sweep() -> dict[str, Any]:
        activated = await auctions.activate_due_auctions(store=store, audit=audit)
        closed = await settlement.close_expired_auctions(store=store, audit=audit)
        return {"activated": [a.id for a in activated], **closed}

    async def handle_close_request(event: dict[str, Any]) -> None:
        auction_id = event.get("auction_id")
        if not auction_id:
            logger.warning("Ignoring close request without auction_id: %s", event)
            return
        try:
            await settlement.close_auction(store=store, audit=audit, auction_id=auction_id)
        except DisposalError as exc:
            logger.info("Close request for %s rejected (%s): %s", auction_id, exc.kind, exc.message)

    stop_event = asyncio.Event()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        await kafka.connect()

        consumer_task = asyncio.create_task(
            kafka.consume_forever(AUCTION_CLOSE_REQUESTS_TOPIC, handle_close_request, stop_event)
        )
        scheduler = None
        if settings.auction_sweep_enabled:
            scheduler = build_auction_sweep_scheduler(policy.sweep_cron, run_sweep)
            scheduler.start()
        try:
            yield
        finally:
            stop_event.set()
            consumer_task.cancel()
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Fleet Vehicle Disposal API", version="1.0.0", lifespan=lifespan)
    app.state.store = store
    app.state.kafka = kafka
    app.state.policy = policy

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:12]
        correlation_id.set(cid)
        t0 = time.monotonic()
        response = await call_next(request)
        _record_latency(f"http_{request.method.lower()}", time.monotonic() - t0)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next: Any) -> Response:
        return await limiter.middleware(request, call_next)

    # ── Error Mapping ───────────────────────────────────────────────

    @app.exception_handler(DisposalError)
    async def disposal_error_handler(request: Request, exc: DisposalError) -> JSONResponse:
        _prom_counters[f"errors_{exc.kind}"] += 1
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(
            status_code=_ERROR_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST),
            content=exc.to_dict(),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        _prom_counters["errors_validation"] += 1
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"kind": "validation", "message": problems},
        )

    @app.exception_handler(VehicleRegistryError)
    async def registry_error_handler(request: Request, exc: VehicleRegistryError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"kind": "registry_unavailable", "message": f"vehicle registry unavailable: {exc}"},
        )

    error_responses = {
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    }

    # ── Disposal Requests ───────────────────────────────────────────

    @app.post(
        "/disposal-requests",
        response_model=DisposalRequestResponse,
        status_code=status.HTTP_201_CREATED,
        responses=error_responses,
    )
    async def submit_request(
        payload: SubmitDisposalRequest, actor: str | None = Depends(auth),
    ) -> DisposalRequestResponse:
        request = await disposal_requests.submit(
            store=store,
            registry=registry,
            audit=audit,
            vehicle_id=payload.vehicle_id,
            requested_by=payload.requested_by or actor or "",
            disposal_reason=payload.disposal_reason,
            recommended_method=payload.recommended_method,
            condition_rating=payload.condition_rating,
            current_mileage=payload.current_mileage,
            estimated_value=payload.estimated_value,
            request_date=payload.request_date,
        )
        return DisposalRequestResponse(**request.to_dict())

    @app.get("/disposal-requests", response_model=list[DisposalRequestResponse])
    async def get_requests(
        status_filter: str | None = Query(default=None, alias="status"),
        approval_status: str | None = None,
    ) -> list[DisposalRequestResponse]:
        rows = await disposal_requests.list_requests(
            store=store, status=status_filter, approval_status=approval_status,
        )
        return [DisposalRequestResponse(**r.to_dict()) for r in rows]

    @app.get("/disposal-requests/summary", response_model=SummaryResponse)
    async def get_summary() -> SummaryResponse:
        return SummaryResponse(**await disposal_requests.disposal_summary(store=store))

    @app.get("/disposal-requests/{request_id}", response_model=DisposalRequestResponse, responses=error_responses)
    async def get_request(request_id: str) -> DisposalRequestResponse:
        request = await disposal_requests.get_request(store=store, request_id=request_id)
        return DisposalRequestResponse(**request.to_dict())

    @app.post(
        "/disposal-requests/{request_id}/approve",
        response_model=DisposalRequestResponse,
        responses=error_responses,
    )
    async def approve_request(request_id: str, actor: str | None = Depends(auth)) -> DisposalRequestResponse:
        request = await disposal_requests.approve(
            store=store, audit=audit, request_id=request_id, approved_by=actor,
        )
        return DisposalRequestResponse(**request.to_dict())

    @app.post(
        "/disposal-requests/{request_id}/reject",
        response_model=DisposalRequestResponse,
        responses=error_responses,
    )
    async def reject_request(
        request_id: str, payload: RejectDisposalRequest, actor: str | None = Depends(auth),
    ) -> DisposalRequestResponse:
        request = await disposal_requests.reject(
            store=store, audit=audit, request_id=request_id, reason=payload.reason, rejected_by=actor,
        )
        return DisposalRequestResponse(**request.to_dict())

    @app.post(
        "/disposal-requests/{request_id}/transfer",
        response_model=DisposalRequestResponse,
        responses=error_responses,
    )
    async def transfer_request(request_id: str, _: str | None = Depends(auth)) -> DisposalRequestResponse:
        request = await disposal_requests.mark_transferred(store=store, audit=audit, request_id=request_id)
        return DisposalRequestResponse(**request.to_dict())

    @app.get("/disposal-requests/{request_id}/pricing", response_model=PricingResponse, responses=error_responses)
    async def get_pricing(request_id: str) -> PricingResponse:
        return PricingResponse(**await auctions.suggest_pricing(store=store, policy=policy, disposal_id=request_id))

    # ── Auctions ────────────────────────────────────────────────────

    def _auction_response(auction: Any) -> AuctionResponse:
        body = auction.to_dict()
        if auction.status == AuctionStatus.ACTIVE:
            body["minimum_next_bid"] = bids.next_minimum(auction, policy)
        return AuctionResponse(**body)

    @app.post(
        "/disposal-requests/{request_id}/auctions",
        response_model=AuctionResponse,
        status_code=status.HTTP_201_CREATED,
        responses=error_responses,
    )
    async def create_auction(
        request_id: str, payload: CreateAuctionRequest, _: str | None = Depends(auth),
    ) -> AuctionResponse:
        auction = await auctions.create_auction(
            store=store,
            audit=audit,
            policy=policy,
            disposal_id=request_id,
            auction_type=payload.auction_type,
            starting_price=payload.starting_price,
            reserve_price=payload.reserve_price,
            start_date=payload.start_date,
            end_date=payload.end_date,
        )
        return _auction_response(auction)

    @app.get(
        "/disposal-requests/{request_id}/auctions",
        response_model=list[AuctionResponse],
        responses=error_responses,
    )
    async def get_request_auctions(request_id: str) -> list[AuctionResponse]:
        rows = await auctions.list_auctions(store=store, disposal_id=request_id)
        return [_auction_response(a) for a in rows]

    @app.post("/auctions/sweep")
    async def sweep_auctions(_: str | None = Depends(auth)) -> dict[str, Any]:
        return await run_sweep()

    @app.get("/auctions/{auction_id}", response_model=AuctionResponse, responses=error_responses)
    async def get_auction(auction_id: str) -> AuctionResponse:
        return _auction_response(await auctions.get_auction(store=store, auction_id=auction_id))

    @app.post(
        "/auctions/{auction_id}/bids",
        response_model=BidResponse,
        status_code=status.HTTP_201_CREATED,
        responses=error_responses,
    )
    async def place_bid(auction_id: str, payload: PlaceBidRequest) -> BidResponse:
        t0 = time.monotonic()
        bid = await bids.place_bid(
            store=store,
            audit=audit,
            policy=policy,
            auction_id=auction_id,
            bidder_name=payload.bidder_name,
            bidder_contact=payload.bidder_contact,
            bid_amount=payload.bid_amount,
            notes=payload.notes,
        )
        _record_latency("place_bid", time.monotonic() - t0)
        _prom_counters["bids_accepted"] += 1
        return BidResponse(**bid.to_dict())

    @app.get("/auctions/{auction_id}/bids", response_model=list[BidResponse], responses=error_responses)
    async def get_bids(auction_id: str) -> list[BidResponse]:
        return [BidResponse(**b.to_dict()) for b in await bids.list_bids(store=store, auction_id=auction_id)]

    @app.get("/auctions/{auction_id}/highest-bid", response_model=BidResponse | None, responses=error_responses)
    async def get_highest_bid(auction_id: str) -> BidResponse | None:
        bid = await bids.highest_bid(store=store, auction_id=auction_id)
        return None if bid is None else BidResponse(**bid.to_dict())

    @app.post("/auctions/{auction_id}/close", response_model=AuctionResponse, responses=error_responses)
    async def close_auction(auction_id: str, _: str | None = Depends(auth)) -> AuctionResponse:
        awarded = await settlement.close_auction(store=store, audit=audit, auction_id=auction_id)
        _prom_counters["auctions_awarded"] += 1
        return _auction_response(awarded)

    @app.post("/auctions/{auction_id}/cancel", response_model=AuctionResponse, responses=error_responses)
    async def cancel_auction(
        auction_id: str, payload: CancelAuctionRequest | None = None, _: str | None = Depends(auth),
    ) -> AuctionResponse:
        cancelled = await auctions.cancel_auction(
            store=store, audit=audit, auction_id=auction_id, reason=payload.reason if payload else None,
        )
        return _auction_response(cancelled)

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
            "vehicle_registry": await registry.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Metrics ─────────────────────────────────────────────────────

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        latencies = sorted(_prom_histograms.get("place_bid", []))
        return {
            "counters": dict(_prom_counters),
            "place_bid_latency": {
                "count": len(latencies),
                "p50_ms": round(latencies[len(latencies) // 2] * 1000, 1) if latencies else 0,
                "p99_ms": round(latencies[int(len(latencies) * 0.99)] * 1000, 1) if latencies else 0,
            },
        }

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
