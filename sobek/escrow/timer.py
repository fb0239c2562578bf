"""
Scheduled-release timer client.

A timer is a schedule held by an external scheduler that "fires" once its
expiry passes. Schedule documents follow the mirror-node shape::

    {"schedule_id": "0.0.4821", "memo": "sobek:escrow:<tx id>",
     "expiration_time": "1718000000.000000000",
     "executed_timestamp": null, "deleted": false}

Timestamps are consensus strings (``seconds.nanos``); ISO-8601 is accepted too.
A fired timer only makes a transaction *eligible* for release: the coordinator
still has to win the claim on the ledger.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

import httpx

from sobek.escrow.errors import TimerServiceError
from sobek.escrow.models import parse_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimerRegistration:
    """A created timer."""

    handle: str
    fire_at: datetime


@dataclass(frozen=True)
class TimerStatus:
    """Result of polling a timer."""

    fired: bool
    fired_at: Optional[datetime] = None
    cancelled: bool = False


def parse_consensus_timestamp(value: Any) -> Optional[datetime]:
    """Parse a ``seconds.nanos`` consensus timestamp (or ISO string)."""
    if value is None or value == "":
        return None
    text = str(value)
    try:
        seconds, _, nanos = text.partition(".")
        ts = int(seconds) + int((nanos or "0").ljust(9, "0")[:9]) / 1_000_000_000
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except ValueError:
        return parse_timestamp(text)


def _consensus_string(moment: datetime) -> str:
    return f"{moment.timestamp():.9f}"


class TimerService(Protocol):
    """Protocol for the scheduled-release timer backend."""

    async def create(self, subject_id: str, duration_seconds: int) -> TimerRegistration:
        """Schedule a timer that fires ``duration_seconds`` from now."""
        ...

    async def poll(self, handle: str) -> TimerStatus:
        """Check whether a timer has fired."""
        ...

    async def cancel(self, handle: str) -> bool:
        """Cancel a timer. Returns False when the scheduler refused."""
        ...


class HttpTimerService:
    """Timer client for a scheduler REST API.

    Endpoints:
        POST   {base_url}/api/v1/schedules
        GET    {base_url}/api/v1/schedules/{schedule_id}
        DELETE {base_url}/api/v1/schedules/{schedule_id}
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        memo_prefix: str = "sobek:escrow",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Missing timer service URL")
        self.base_url = base_url.rstrip("/")
        self.memo_prefix = memo_prefix
        self.timeout = timeout
        self._transport = transport
        self._headers = {"Content-Type": "application/json"}
        if api_token:
            self._headers["Authorization"] = f"Bearer {api_token}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TimerServiceError(f"{method} {path} failed: {e}") from e

    async def create(self, subject_id: str, duration_seconds: int) -> TimerRegistration:
        if duration_seconds <= 0:
            raise ValueError("Timer duration must be positive")

        fire_at = utc_now() + timedelta(seconds=duration_seconds)
        response = await self._request(
            "POST",
            "/api/v1/schedules",
            json={
                "memo": f"{self.memo_prefix}:{subject_id}",
                "expiration_time": _consensus_string(fire_at),
                "wait_for_expiry": True,
            },
        )
        if response.status_code not in (200, 201):
            raise TimerServiceError(
                f"Timer creation rejected ({response.status_code}): {response.text[:200]}"
            )

        body: Dict[str, Any] = response.json()
        handle = body.get("schedule_id")
        if not handle:
            raise TimerServiceError("Timer service response missing schedule_id")
        scheduled = parse_consensus_timestamp(body.get("expiration_time")) or fire_at
        logger.info(f"Timer {handle} created for {subject_id}, fires at {scheduled.isoformat()}")
        return TimerRegistration(handle=str(handle), fire_at=scheduled)

    async def poll(self, handle: str) -> TimerStatus:
        response = await self._request("GET", f"/api/v1/schedules/{handle}")
        if response.status_code == 404:
            raise TimerServiceError(f"Timer {handle} not found")
        if response.status_code != 200:
            raise TimerServiceError(f"Timer poll failed ({response.status_code}) for {handle}")

        body = response.json()
        if body.get("deleted"):
            return TimerStatus(fired=False, cancelled=True)
        executed = parse_consensus_timestamp(body.get("executed_timestamp"))
        return TimerStatus(fired=executed is not None, fired_at=executed)

    async def cancel(self, handle: str) -> bool:
        response = await self._request("DELETE", f"/api/v1/schedules/{handle}")
        if response.status_code in (200, 202, 204):
            return True
        logger.warning(f"Timer {handle} cancel refused ({response.status_code})")
        return False


class InMemoryTimerService:
    """In-process timer backend for testing and local development.

    Timers fire on wall-clock expiry, or immediately via ``fire()``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._timers: Dict[str, Dict[str, Any]] = {}
        self.cancelled: list = []

    async def create(self, subject_id: str, duration_seconds: int) -> TimerRegistration:
        if duration_seconds <= 0:
            raise ValueError("Timer duration must be positive")
        handle = f"timer-{uuid.uuid4().hex[:12]}"
        fire_at = utc_now() + timedelta(seconds=duration_seconds)
        with self._lock:
            self._timers[handle] = {
                "subject_id": subject_id,
                "fire_at": fire_at,
                "fired_at": None,
                "deleted": False,
            }
        return TimerRegistration(handle=handle, fire_at=fire_at)

    def fire(self, handle: str, at: Optional[datetime] = None) -> None:
        """Force a timer to fire now."""
        with self._lock:
            timer = self._timers[handle]
            timer["fired_at"] = at or utc_now()

    def handles_for(self, subject_id: str) -> list:
        with self._lock:
            return [h for h, t in self._timers.items() if t["subject_id"] == subject_id]

    async def poll(self, handle: str) -> TimerStatus:
        with self._lock:
            timer = self._timers.get(handle)
            if timer is None:
                raise TimerServiceError(f"Timer {handle} not found")
            if timer["deleted"]:
                return TimerStatus(fired=False, cancelled=True)
            if timer["fired_at"] is None and utc_now() >= timer["fire_at"]:
                timer["fired_at"] = timer["fire_at"]
            fired_at = timer["fired_at"]
        return TimerStatus(fired=fired_at is not None, fired_at=fired_at)

    async def cancel(self, handle: str) -> bool:
        with self._lock:
            timer = self._timers.get(handle)
            if timer is None or timer["fired_at"] is not None:
                return False
            timer["deleted"] = True
            self.cancelled.append(handle)
        return True
