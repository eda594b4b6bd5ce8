"""Nightscout remote mirror: glucose source and cloud upload target.

Environment variables (read through settings):
    GLUCOLINK_NIGHTSCOUT_URL        — Site base URL
    GLUCOLINK_NIGHTSCOUT_API_SECRET — API secret (sent SHA-1 hashed)

Endpoints used:
    GET    /api/v1/entries/sgv.json — Recent sensor glucose values
    POST   /api/v1/entries.json     — Upload sensor glucose values
    DELETE /api/v1/treatments.json  — Remove a manual BG check

Every call is best-effort: HTTP failures are logged and swallowed, so a
broken site degrades to "no data" rather than an error in the pipeline.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable

import httpx

from src.cgm.base import FetchTrigger, GlucoseReading, GlucoseSource, utc_now
from src.cgm.collaborators import CloudMirror
from src.cgm.store import ReadingStore

logger = logging.getLogger("glucolink.cgm.sources.nightscout")

_DEFAULT_COUNT = 288  # one day of 5-minute readings
_TIMEOUT = httpx.Timeout(10.0)


class NightscoutClient(GlucoseSource, CloudMirror):
    """Nightscout REST client.

    Acts as the ``nightscout`` glucose source and as the cloud mirror that
    receives the reconciled timeline.
    """

    SOURCE_ID = "nightscout"
    DISPLAY_NAME = "Nightscout"

    def __init__(
        self,
        base_url: str,
        api_secret: str | None = None,
        store: ReadingStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        fetch_count: int = _DEFAULT_COUNT,
        min_fetch_interval: timedelta = timedelta(minutes=1),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the client.

        Args:
            base_url:           Nightscout site URL.
            api_secret:         Plain API secret; hashed before sending.
            store:              Reading store whose recent window is uploaded.
            http_client:        Optional pre-configured httpx client (for testing).
            fetch_count:        Number of entries requested per fetch.
            min_fetch_interval: ``fetch_if_needed`` skips calls closer than this.
            clock:              Returns the current UTC time.
        """
        self._base_url = base_url.rstrip("/")
        self._api_secret = api_secret
        self._store = store
        self._http_client = http_client
        self._fetch_count = fetch_count
        self._min_fetch_interval = min_fetch_interval
        self._clock = clock
        self._last_fetch_at: datetime | None = None
        self._uploaded_ids: set[str] = set()

    # ------------------------------------------------------------------
    # GlucoseSource interface
    # ------------------------------------------------------------------

    async def fetch(self, trigger: FetchTrigger | None) -> AsyncIterator[GlucoseReading]:
        self._last_fetch_at = self._clock()
        try:
            entries = await self._request(
                "GET",
                "/api/v1/entries/sgv.json",
                params={"count": self._fetch_count},
            )
        except httpx.HTTPError as exc:
            logger.warning("Nightscout: glucose fetch failed: %s", exc)
            return
        if not isinstance(entries, list):
            logger.warning("Nightscout: unexpected entries payload %r", type(entries))
            return
        for entry in entries:
            reading = self._parse_entry(entry)
            if reading is not None:
                yield reading

    async def fetch_if_needed(self) -> AsyncIterator[GlucoseReading]:
        now = self._clock()
        if (
            self._last_fetch_at is not None
            and now - self._last_fetch_at < self._min_fetch_interval
        ):
            logger.debug("Nightscout: skipping fetch, last at %s", self._last_fetch_at)
            return
        async for reading in self.fetch(FetchTrigger("refresh", now)):
            yield reading

    def source_info(self) -> dict[str, Any]:
        return {
            "type": self.SOURCE_ID,
            "url": self._base_url,
            "uploaded": len(self._uploaded_ids),
            "lastFetch": self._last_fetch_at.isoformat() if self._last_fetch_at else None,
        }

    # ------------------------------------------------------------------
    # CloudMirror interface
    # ------------------------------------------------------------------

    async def upload_glucose(self) -> None:
        """Upload readings in the store's recent window not yet sent."""
        if self._store is None:
            return
        recent = self._store.recent()
        # Forget ids the store has already trimmed.
        self._uploaded_ids &= {r.id for r in recent}
        pending = [r for r in recent if r.id not in self._uploaded_ids]
        # Never echo readings that came from Nightscout itself.
        pending = [r for r in pending if r.source != self.SOURCE_ID]
        if not pending:
            return
        try:
            await self._request(
                "POST",
                "/api/v1/entries.json",
                json=[_entry_from_reading(r) for r in pending],
            )
        except httpx.HTTPError as exc:
            logger.warning("Nightscout: upload of %d readings failed: %s", len(pending), exc)
            return
        self._uploaded_ids.update(r.id for r in pending)
        logger.info("Nightscout: uploaded %d readings", len(pending))

    async def delete_manual_glucose(self, at: datetime) -> None:
        created_at = at.astimezone(timezone.utc).isoformat()
        try:
            await self._request(
                "DELETE",
                "/api/v1/treatments.json",
                params={
                    "find[eventType]": "BG Check",
                    "find[created_at][$eq]": created_at,
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("Nightscout: manual glucose delete failed: %s", exc)
            return
        logger.info("Nightscout: deleted manual glucose at %s", created_at)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_secret:
            headers["api-secret"] = hashlib.sha1(self._api_secret.encode()).hexdigest()
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._base_url}{path}"
        if self._http_client is not None:
            response = await self._http_client.request(
                method, url, headers=self._headers(), **kwargs
            )
        else:
            async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
                response = await client.request(
                    method, url, headers=self._headers(), **kwargs
                )
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    def _parse_entry(self, entry: Any) -> GlucoseReading | None:
        if not isinstance(entry, dict):
            return None
        value = self._safe_float(entry.get("sgv"))
        timestamp: datetime | None = None
        millis = self._safe_float(entry.get("date"))
        if millis is not None:
            timestamp = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
        else:
            timestamp = self._parse_iso_datetime(entry.get("dateString"))
        if value is None or timestamp is None:
            return None
        return GlucoseReading(
            id=str(entry.get("_id") or ""),
            timestamp=timestamp,
            value=value,
            source=self.SOURCE_ID,
            device=entry.get("device"),
            direction=entry.get("direction"),
        )


def _entry_from_reading(reading: GlucoseReading) -> dict[str, Any]:
    return {
        "type": "sgv",
        "sgv": round(reading.value),
        "date": int(reading.timestamp.timestamp() * 1000),
        "dateString": reading.timestamp.isoformat(),
        "direction": reading.direction,
        "device": reading.device or reading.source,
        "identifier": reading.id,
    }
