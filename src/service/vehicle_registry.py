from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from disposal.data_models import Vehicle
from service.storage import RedisCache

logger = logging.getLogger(__name__)


class VehicleRegistryError(Exception):
    """The fleet vehicle registry could not be reached or answered garbage."""


def _to_vehicle(row: dict[str, Any]) -> Vehicle:
    year = row.get("year")
    return Vehicle(
        id=str(row["id"]),
        plate_number=row.get("plate_number") or "",
        vin=row.get("vin") or "",
        make=row.get("make") or "",
        model=row.get("model") or "",
        year=int(year) if year else None,
        status=row.get("status") or "",
    )


class HttpVehicleRegistry:
    """Read-only lookup against the fleet backend's vehicle records.

    Found vehicles are cached for ``ttl_seconds``; misses are never cached so a
    newly registered vehicle becomes visible immediately.
    """

    def __init__(self, cache: RedisCache, base_url: str, ttl_seconds: int, api_key: str = "") -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.api_key = api_key

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        cache_key = f"vehicle:{vehicle_id}"
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return _to_vehicle(cached)

        try:
            url = f"{self.base_url}/vehicles/{vehicle_id}"
            async with httpx.AsyncClient(timeout=2.0) as client:
                resp = await client.get(url, headers=self._headers())
            if resp.status_code == httpx.codes.NOT_FOUND:
                return None
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as exc:
            logger.warning("Vehicle registry lookup failed for %s: %s", vehicle_id, exc)
            raise VehicleRegistryError(str(exc)) from exc

        row = payload.get("vehicle", payload) if isinstance(payload, dict) else None
        if not row or "id" not in row:
            raise VehicleRegistryError(f"malformed registry response for vehicle {vehicle_id}")
        await self.cache.set_json(cache_key, row, ttl_seconds=self.ttl_seconds)
        return _to_vehicle(row)

    async def ping(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=0.75) as client:
                resp = await client.get(f"{self.base_url}/health", headers=self._headers())
            return resp.status_code < 500
        except httpx.HTTPError:
            return False


class StaticVehicleRegistry:
    """In-process registry for local runs and tests."""

    def __init__(self, vehicles: Iterable[Vehicle] = ()) -> None:
        self._vehicles = {v.id: v for v in vehicles}

    def add(self, vehicle: Vehicle) -> None:
        self._vehicles[vehicle.id] = vehicle

    async def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        return self._vehicles.get(vehicle_id)

    async def ping(self) -> bool:
        return True
