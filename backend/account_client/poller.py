"""
Account Stats Poller

Fetches ``GET {base_url}/user/{username}`` every ``interval`` seconds
and publishes the result as an AccountSummary. A failed poll keeps the
previous summary; the next poll tries again.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from aggregator.models import AccountSummary
from aggregator.snapshot_store import SnapshotStore
from relay_client.exceptions import AccountPollError

logger = logging.getLogger(__name__)

DEFAULT_STATS_URL = "https://api.foldingathome.org"
DEFAULT_INTERVAL = 300.0
DEFAULT_TIMEOUT = 30.0


def _as_int(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool):
        raise AccountPollError(f"Field {key!r} is not a number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise AccountPollError(f"Field {key!r} is not a number: {value!r}") from None


def parse_summary(data: Any, username: str) -> AccountSummary:
    """
    Build an AccountSummary from the stats API response.

    Raises:
        AccountPollError: If the response is not an object or has bad numbers
    """
    if not isinstance(data, dict):
        raise AccountPollError("Account response is not an object")

    return AccountSummary(
        name=str(data.get("name") or username),
        score=_as_int(data, "score"),
        work_units=_as_int(data, "wus"),
        rank=_as_int(data, "rank"),
    )


class AccountPoller:
    """Periodic account summary fetcher writing into a SnapshotStore."""

    def __init__(
        self,
        store: SnapshotStore,
        username: str,
        base_url: str = DEFAULT_STATS_URL,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not username:
            raise ValueError("username is required")
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.store = store
        self.username = username
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def fetch_summary(self) -> AccountSummary:
        """
        Fetch the account summary once.

        Returns:
            AccountSummary for the configured user

        Raises:
            AccountPollError: If the request fails or the response is unusable
        """
        client = await self._get_client()

        try:
            response = await client.get(f"/user/{self.username}")
        except httpx.HTTPError as e:
            logger.error("Account stats request failed: %s", e)
            raise AccountPollError(f"Account stats request failed: {e}") from e

        if response.status_code != 200:
            logger.error("Account stats request failed: %s", response.status_code)
            raise AccountPollError(f"Account stats request failed: {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise AccountPollError("Account stats response is not JSON") from None

        return parse_summary(data, self.username)

    async def poll_once(self) -> Optional[AccountSummary]:
        """Fetch and publish. Returns None (and keeps the old summary) on failure."""
        try:
            summary = await self.fetch_summary()
        except AccountPollError as e:
            logger.warning("Keeping previous account summary: %s", e)
            return None

        self.store.publish_account(summary)
        logger.debug("Account %s: score %d, %d WUs", summary.name, summary.score, summary.work_units)
        return summary

    async def run(self) -> None:
        """Poll until stop() is called."""
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        logger.info("Polling account stats for %s every %.0fs", self.username, self.interval)
        try:
            while not self._stop_event.is_set():
                await self.poll_once()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            await self.close()

    def stop(self) -> None:
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
