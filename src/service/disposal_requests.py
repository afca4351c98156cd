from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import pandas as pd

from disposal.data_models import (
    ApprovalStatus,
    AuctionStatus,
    ConditionRating,
    DisposalMethod,
    DisposalReason,
    DisposalRequest,
    DisposalStatus,
    Vehicle,
)
from disposal.errors import InvalidStateError, NotFoundError, ValidationError
from disposal.rules import (
    coerce_enum,
    generate_disposal_number,
    parse_mileage,
    parse_money,
    require_text,
)
from disposal.state_machine import ensure_request_transition
from service.messaging import AuditSink
from service.storage import DisposalStore, DuplicateKeyError, StaleWriteError

logger = logging.getLogger(__name__)

DISPOSED_VEHICLE_STATUS = "disposed"
_NUMBER_ATTEMPTS = 3


class VehicleRegistry(Protocol):
    async def get_vehicle(self, vehicle_id: str) -> Vehicle | None: ...


async def get_request(*, store: DisposalStore, request_id: str) -> DisposalRequest:
    row = await store.get_disposal_request(request_id)
    if row is None:
        raise NotFoundError(f"disposal request {request_id} not found", request_id=request_id)
    return DisposalRequest.from_row(row)


async def list_requests(
    *,
    store: DisposalStore,
    status: str | None = None,
    approval_status: str | None = None,
) -> list[DisposalRequest]:
    if status is not None:
        status = coerce_enum(DisposalStatus, status, "status").value
    if approval_status is not None:
        approval_status = coerce_enum(ApprovalStatus, approval_status, "approval_status").value
    rows = await store.list_disposal_requests(status=status, approval_status=approval_status)
    return [DisposalRequest.from_row(r) for r in rows]


async def submit(
    *,
    store: DisposalStore,
    registry: VehicleRegistry,
    audit: AuditSink,
    vehicle_id: str,
    requested_by: str,
    disposal_reason: Any,
    recommended_method: Any,
    condition_rating: Any,
    current_mileage: Any,
    estimated_value: Any,
    request_date: date | None = None,
    now: datetime | None = None,
) -> DisposalRequest:
    now = now or datetime.now(timezone.utc)
    vehicle_id = require_text(vehicle_id, "vehicle_id")
    record = {
        "vehicle_id": vehicle_id,
        "requested_by": require_text(requested_by, "requested_by"),
        "disposal_reason": coerce_enum(DisposalReason, disposal_reason, "disposal_reason").value,
        "recommended_method": coerce_enum(DisposalMethod, recommended_method, "recommended_method").value,
        "condition_rating": coerce_enum(ConditionRating, condition_rating, "condition_rating").value,
        "current_mileage": parse_mileage(current_mileage),
        "estimated_value": parse_money(estimated_value, "estimated_value"),
        "request_date": request_date or now.date(),
        "approval_status": ApprovalStatus.PENDING.value,
        "status": DisposalStatus.PENDING_APPROVAL.value,
    }

    vehicle = await registry.get_vehicle(vehicle_id)
    if vehicle is None:
        raise ValidationError(f"vehicle {vehicle_id} does not exist", field="vehicle_id")
    if vehicle.status == DISPOSED_VEHICLE_STATUS:
        raise ValidationError(f"vehicle {vehicle_id} is already disposed", field="vehicle_id")

    for attempt in range(_NUMBER_ATTEMPTS):
        record["id"] = str(uuid.uuid4())
        record["disposal_number"] = generate_disposal_number(now)
        try:
            row = await store.insert_disposal_request(record)
            break
        except DuplicateKeyError:
            if attempt == _NUMBER_ATTEMPTS - 1:
                raise
            logger.info("Disposal number %s already taken; regenerating", record["disposal_number"])

    request = DisposalRequest.from_row(row)
    logger.info("Disposal request %s submitted for vehicle %s", request.disposal_number, vehicle_id)
    await audit.emit("disposal_request.submitted", _event(request))
    return request


async def approve(
    *,
    store: DisposalStore,
    audit: AuditSink,
    request_id: str,
    approved_by: str | None = None,
    now: datetime | None = None,
) -> DisposalRequest:
    now = now or datetime.now(timezone.utc)
    request = await get_request(store=store, request_id=request_id)
    _ensure_pending(request, "approve")
    ensure_request_transition(request.status, DisposalStatus.LISTED)

    row = await _update(
        store,
        request,
        {
            "approval_status": ApprovalStatus.APPROVED.value,
            "status": DisposalStatus.LISTED.value,
            "approved_by": approved_by,
            "approval_date": now.date(),
        },
    )
    approved = DisposalRequest.from_row(row)
    logger.info("Disposal request %s approved by %s", approved.disposal_number, approved_by or "unknown")
    await audit.emit("disposal_request.approved", _event(approved, approved_by=approved_by))
    return approved


async def reject(
    *,
    store: DisposalStore,
    audit: AuditSink,
    request_id: str,
    reason: str,
    rejected_by: str | None = None,
) -> DisposalRequest:
    reason = require_text(reason, "reason")
    request = await get_request(store=store, request_id=request_id)
    _ensure_pending(request, "reject")
    ensure_request_transition(request.status, DisposalStatus.CANCELLED)

    row = await _update(
        store,
        request,
        {
            "approval_status": ApprovalStatus.REJECTED.value,
            "status": DisposalStatus.CANCELLED.value,
            "rejection_reason": reason,
        },
    )
    rejected = DisposalRequest.from_row(row)
    logger.info("Disposal request %s rejected: %s", rejected.disposal_number, reason)
    await audit.emit("disposal_request.rejected", _event(rejected, reason=reason, rejected_by=rejected_by))
    return rejected


async def mark_transferred(
    *,
    store: DisposalStore,
    audit: AuditSink,
    request_id: str,
) -> DisposalRequest:
    """Record the ownership transfer completed outside the engine."""
    request = await get_request(store=store, request_id=request_id)
    ensure_request_transition(request.status, DisposalStatus.TRANSFERRED)
    row = await _update(store, request, {"status": DisposalStatus.TRANSFERRED.value})
    transferred = DisposalRequest.from_row(row)
    logger.info("Disposal request %s marked transferred", transferred.disposal_number)
    await audit.emit("disposal_request.transferred", _event(transferred))
    return transferred


async def disposal_summary(*, store: DisposalStore) -> dict[str, Any]:
    requests = pd.DataFrame(
        await store.list_disposal_requests(limit=None),
        columns=["id", "approval_status", "status"],
    )
    auctions = pd.DataFrame(
        await store.list_auctions(),
        columns=["id", "auction_status", "winning_bid"],
    )

    revenue = Decimal("0")
    if not auctions.empty:
        revenue = sum((Decimal(str(v)) for v in auctions["winning_bid"].dropna()), Decimal("0"))

    return {
        "pending_requests": int((requests["approval_status"] == ApprovalStatus.PENDING.value).sum()),
        "active_auctions": int((auctions["auction_status"] == AuctionStatus.ACTIVE.value).sum()),
        "completed_disposals": int((requests["status"] == DisposalStatus.TRANSFERRED.value).sum()),
        "total_revenue": revenue.quantize(Decimal("0.01")),
        "requests_by_status": {
            status.value: int(requests["status"].value_counts().get(status.value, 0))
            for status in DisposalStatus
        },
    }


def _ensure_pending(request: DisposalRequest, action: str) -> None:
    if request.approval_status != ApprovalStatus.PENDING:
        raise InvalidStateError(
            f"cannot {action} disposal request {request.disposal_number}: "
            f"approval status is {request.approval_status.value}",
            request_id=request.id,
        )


async def _update(store: DisposalStore, request: DisposalRequest, values: dict[str, Any]) -> dict[str, Any]:
    try:
        return await store.update_disposal_request(
            request.id, expected_status=request.status.value, values=values,
        )
    except StaleWriteError:
        raise InvalidStateError(
            f"disposal request {request.disposal_number} changed concurrently; reload and retry",
            request_id=request.id,
        ) from None


def _event(request: DisposalRequest, **extra: Any) -> dict[str, Any]:
    return {
        "id": request.id,
        "disposal_number": request.disposal_number,
        "vehicle_id": request.vehicle_id,
        "approval_status": request.approval_status.value,
        "status": request.status.value,
        **extra,
    }
