"""Client-side half of the upload flow.

Front ends (and scripts) call ``SnapMealClient`` to upload photos and read
entries back. ``ReconciliationCache`` keeps week-grouped entries, shows an
optimistic placeholder while an upload is in flight, and remembers which
entry ids are still waiting for analysis. Nothing here is a source of truth:
losing it only loses the "processing" hint until the next refetch.
"""

import logging
import time
from collections import OrderedDict
from datetime import date, timedelta
from typing import Any, Optional, Union

import httpx

logger = logging.getLogger("snapmeal-client")

PLACEHOLDER_NAME = "Фото загружено, анализируем..."


class SnapMealApiError(Exception):
    def __init__(self, status_code: int, message: str, body: Optional[dict] = None):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.body = body or {}


def monday_of_week(value: Union[date, str]) -> str:
    day = date.fromisoformat(value) if isinstance(value, str) else value
    return (day - timedelta(days=day.weekday())).isoformat()


class PendingAnalysisSet:
    """Bounded set of entry ids whose analysis has not finished yet."""

    def __init__(self, max_size: int = 256):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._ids: "OrderedDict[int, None]" = OrderedDict()

    def add(self, entry_id: int) -> None:
        self._ids[entry_id] = None
        self._ids.move_to_end(entry_id)
        while len(self._ids) > self.max_size:
            self._ids.popitem(last=False)

    def discard(self, entry_id: int) -> None:
        self._ids.pop(entry_id, None)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def ids(self) -> list[int]:
        return list(self._ids)


class ReconciliationCache:
    def __init__(self, pending: PendingAnalysisSet):
        self.pending = pending
        self._weeks: dict[str, list[dict[str, Any]]] = {}
        self._stale: set[str] = set()

    def week(self, monday: str) -> list[dict[str, Any]]:
        return list(self._weeks.get(monday, []))

    def add_optimistic(self, entry_date: str, image_preview_url: Optional[str] = None) -> dict[str, Any]:
        placeholder = {
            "id": -time.time_ns(),
            "name": PLACEHOLDER_NAME,
            "date": entry_date,
            "imageUrl": image_preview_url,
            "status": "pending",
        }
        monday = monday_of_week(entry_date)
        self._weeks[monday] = [placeholder, *self._weeks.get(monday, [])]
        return placeholder

    def drop_placeholder(self, placeholder: dict[str, Any]) -> None:
        monday = monday_of_week(placeholder["date"])
        self._weeks[monday] = [
            entry for entry in self._weeks.get(monday, []) if entry["id"] != placeholder["id"]
        ]

    def on_upload_success(self, response: dict[str, Any]) -> None:
        self.pending.add(int(response["id"]))
        self.invalidate()

    def invalidate(self) -> None:
        self._stale = set(self._weeks)

    def stale_weeks(self) -> list[str]:
        return sorted(self._stale)

    def apply_refetch(self, monday: str, entries: list[dict[str, Any]]) -> None:
        """Replace a week with server state; placeholders in it go away."""
        self._weeks[monday] = list(entries)
        self._stale.discard(monday)
        for entry in entries:
            entry_id = entry.get("id")
            if entry_id in self.pending and entry.get("status") != "pending":
                self.pending.discard(entry_id)

    def is_processing(self, entry_id: int) -> bool:
        return entry_id in self.pending


class SnapMealClient:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        cache: ReconciliationCache,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.cache = cache
        self._transport = transport
        self.timeout = httpx.Timeout(timeout)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=self.timeout,
            transport=self._transport,
        )

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.status_code == 200:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("error") if isinstance(body, dict) else None
        raise SnapMealApiError(
            response.status_code,
            message if isinstance(message, str) else "Request failed",
            body if isinstance(body, dict) else None,
        )

    async def upload_photo(
        self,
        data: bytes,
        filename: str,
        content_type: str,
        entry_date: str,
    ) -> dict[str, Any]:
        placeholder = self.cache.add_optimistic(entry_date)
        try:
            async with self._client() as client:
                response = await client.post(
                    "/v1/analyze-food-photo",
                    files={"photo": (filename, data, content_type)},
                    data={"date": entry_date},
                )
            self._raise_for_error(response)
        except BaseException as exc:
            logger.warning("Photo upload failed date=%s reason=%s", entry_date, type(exc).__name__)
            self.cache.drop_placeholder(placeholder)
            raise

        body = response.json()
        self.cache.on_upload_success(body)
        return body

    async def fetch_week(self, monday: str) -> list[dict[str, Any]]:
        sunday = (date.fromisoformat(monday) + timedelta(days=6)).isoformat()
        async with self._client() as client:
            response = await client.get("/v1/entries", params={"from": monday, "to": sunday})
        self._raise_for_error(response)
        items = response.json()["items"]
        self.cache.apply_refetch(monday, items)
        return items

    async def refresh(self) -> None:
        for monday in self.cache.stale_weeks():
            await self.fetch_week(monday)
