"""Periodic fetch of the raw vehicle position feed (GeoJSON point features)."""

import datetime
import inspect
import logging
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any, Literal

import httpx
import orjson
from pydantic import BaseModel, ValidationError, field_validator

from transit_tracker.config import settings
from transit_tracker.core.scheduler import create_scheduler
from transit_tracker.core.vehicle_tracker import TelemetryReading

logger = logging.getLogger(__name__)

# Detailed samples of rejected features logged per batch
MAX_INVALID_DETAILS = 5


class FeedError(Exception):
    """The position feed answered with something other than a feature collection."""


class _FeatureCollection(BaseModel):
    type: Literal["FeatureCollection"]
    features: list[Any]


class _PointGeometry(BaseModel):
    type: Literal["Point"]
    coordinates: tuple[float, float]  # (lon, lat)

    @field_validator("coordinates")
    @classmethod
    def _finite(cls, v: tuple[float, float]) -> tuple[float, float]:
        if not all(math.isfinite(c) for c in v):
            raise ValueError("coordinates must be finite")
        return v


class _VehicleProperties(BaseModel):
    id: str
    line: str
    type: int
    direction: float
    destination: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v: Any) -> str:
        if not isinstance(v, (str, int)) or isinstance(v, bool):
            raise ValueError("vehicle id must be a string or number")
        value = str(v).strip()
        if not value:
            raise ValueError("vehicle id is empty")
        return value

    @field_validator("line", mode="before")
    @classmethod
    def _line(cls, v: Any) -> str:
        if not isinstance(v, (str, int)) or isinstance(v, bool):
            raise ValueError("line must be a string or number")
        return str(v)

    @field_validator("direction")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("direction must be finite")
        return v

    @field_validator("destination", mode="before")
    @classmethod
    def _destination(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""


class _VehicleFeature(BaseModel):
    type: Literal["Feature"]
    geometry: _PointGeometry
    properties: _VehicleProperties


def parse_feature_collection(data: Any, now: datetime.datetime) -> list[TelemetryReading]:
    """Turn a decoded feed document into readings, skipping invalid features."""
    try:
        envelope = _FeatureCollection.model_validate(data)
    except ValidationError as e:
        raise FeedError(f"Position feed is not a FeatureCollection: {e.errors()[0]['msg']}") from e

    readings: list[TelemetryReading] = []
    invalid = 0
    details: list[str] = []
    for raw in envelope.features:
        try:
            feature = _VehicleFeature.model_validate(raw)
        except ValidationError as e:
            invalid += 1
            if len(details) < MAX_INVALID_DETAILS:
                issues = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}"
                    for err in e.errors()
                )
                sample = orjson.dumps(raw, default=str).decode()[:400]
                details.append(f"feature[{invalid}] invalid -> {issues} | sample={sample}")
            continue

        lon, lat = feature.geometry.coordinates
        props = feature.properties
        readings.append(TelemetryReading(
            vehicle_id=props.id,
            lat=lat,
            lon=lon,
            heading=props.direction,
            transport_type=props.type,
            line_number=props.line,
            destination=props.destination,
            timestamp=now,
        ))

    if invalid:
        logger.warning("Position feed: skipped %d invalid feature(s)", invalid)
        for detail in details:
            logger.warning("Position feed detail: %s", detail)
        if invalid > len(details):
            logger.warning("Position feed detail: %d additional invalid feature(s) omitted",
                           invalid - len(details))
    return readings


class GpsClient:
    """Fetches the vehicle position feed."""

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url or settings.gps_url
        self._client = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds if timeout is None else timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_readings(self) -> list[TelemetryReading]:
        now = datetime.datetime.now(datetime.timezone.utc)
        # cache-busting query parameter, the upstream serves stale copies otherwise
        resp = await self._client.get(self.url, params={"ver": int(time.time() * 1000)})
        resp.raise_for_status()
        readings = parse_feature_collection(orjson.loads(resp.content), now)
        logger.debug("Fetched %d vehicle readings", len(readings))
        return readings


OnData = Callable[[list[TelemetryReading]], Awaitable[None] | None]


class GpsPoller:
    """Polls the feed on a fixed interval and hands each batch to ``on_data``.

    A poll that is still running makes the next tick a no-op instead of queuing it.
    """

    def __init__(
        self,
        client: GpsClient,
        on_data: OnData,
        interval_seconds: float | None = None,
    ) -> None:
        self.client = client
        self.on_data = on_data
        self.interval_seconds = interval_seconds or settings.poll_interval_seconds
        self._polling = False
        self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = create_scheduler(self)
        self._scheduler.start()
        logger.info("Position poller started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        await self.client.close()
        logger.info("Position poller stopped")

    async def poll(self) -> None:
        if self._polling:
            logger.debug("Previous poll still in flight, skipping tick")
            return
        self._polling = True
        try:
            readings = await self.client.fetch_readings()
            result = self.on_data(readings)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Error in position poll cycle")
        finally:
            self._polling = False
