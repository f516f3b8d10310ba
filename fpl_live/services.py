"""
FPL Live - Services Module

HTTP client, circuit breaker, FPL API fetchers, stat snapshot construction
and the live polling state machine. This is the I/O boundary around the
pure scoring engine.
"""

import asyncio
import random
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Optional, List, Dict, Tuple, Callable, Awaitable

import httpx
from fastapi import HTTPException

from fpl_live.config import ENGINE_CONFIG, PollingConfig
from fpl_live.constants import FPL_BASE_URL
from fpl_live.models import Player, LiveStat, Fixture, Squad, StatSnapshot
from fpl_live.cache import cache


logger = logging.getLogger("fpl_live")


# ============ HTTP CLIENT & CIRCUIT BREAKER ============

# Global HTTP client (initialized in lifespan)
http_client: Optional[httpx.AsyncClient] = None


def create_http_client() -> httpx.AsyncClient:
    api = ENGINE_CONFIG["api"]
    return httpx.AsyncClient(
        timeout=api.timeout,
        limits=httpx.Limits(
            max_keepalive_connections=api.max_keepalive_connections,
            max_connections=api.max_connections,
        ),
        headers={"User-Agent": api.user_agent},
    )


async def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client, creating one if needed."""
    global http_client
    if http_client is None:
        http_client = create_http_client()
    return http_client


# Circuit breaker state for FPL API
_circuit_breaker = {
    "consecutive_failures": 0,
    "open_until": None,  # datetime when circuit can be retried
    "threshold": ENGINE_CONFIG["api"].circuit_threshold,
    "cooldown": ENGINE_CONFIG["api"].circuit_cooldown,
}


def reset_circuit_breaker():
    _circuit_breaker["consecutive_failures"] = 0
    _circuit_breaker["open_until"] = None


def parse_retry_after(value: Optional[str], default: float) -> float:
    """
    Seconds to wait from a Retry-After header.

    Accepts delay-seconds or an HTTP-date; anything unparseable gets `default`.
    A date in the past means retry now.
    """
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning(f"Unparseable Retry-After header {value!r}, using {default:.1f}s")
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


async def fetch_with_retry(
    url: str,
    max_retries: int = None,
    base_delay: float = None,
) -> httpx.Response:
    """
    Fetch URL with exponential backoff retry logic.
    Handles rate limiting (429) and transient errors.
    Includes circuit breaker: after repeated exhausted retries, fails fast
    for the cooldown period.
    """
    api = ENGINE_CONFIG["api"]
    max_retries = max_retries if max_retries is not None else api.max_retries
    base_delay = base_delay if base_delay is not None else api.retry_base_delay

    cb = _circuit_breaker
    now = datetime.now()

    # Circuit breaker: fail fast if open
    if cb["open_until"] and now < cb["open_until"]:
        remaining = (cb["open_until"] - now).seconds
        raise HTTPException(
            status_code=503,
            detail=f"FPL API circuit breaker open, retrying in {remaining}s"
        )

    client = await get_http_client()
    last_error = None

    for attempt in range(max_retries):
        try:
            response = await client.get(url)

            if response.status_code == 429:
                # Rate limited - wait and retry
                retry_after = parse_retry_after(response.headers.get("Retry-After"), base_delay * (2 ** attempt))
                logger.warning(f"Rate limited on {url}, waiting {retry_after:.0f}s")
                await asyncio.sleep(retry_after)
                continue

            response.raise_for_status()
            # Success - reset circuit breaker
            cb["consecutive_failures"] = 0
            cb["open_until"] = None
            return response

        except httpx.HTTPStatusError as e:
            if e.response.status_code in (500, 502, 503, 504):
                # Server error - retry with backoff
                delay = base_delay * (2 ** attempt) + random.uniform(0, 1)
                logger.warning(f"Server error {e.response.status_code} on {url}, retry in {delay:.1f}s")
                await asyncio.sleep(delay)
                last_error = e
                continue
            raise
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            delay = base_delay * (2 ** attempt) + random.uniform(0, 1)
            logger.warning(f"Connection error on {url}, retry in {delay:.1f}s: {e}")
            await asyncio.sleep(delay)
            last_error = e
            continue

    # All retries exhausted - update circuit breaker
    cb["consecutive_failures"] += 1
    if cb["consecutive_failures"] >= cb["threshold"]:
        cb["open_until"] = now + timedelta(seconds=cb["cooldown"])
        logger.error(f"Circuit breaker OPEN after {cb['consecutive_failures']} consecutive failures. Cooldown {cb['cooldown']}s.")

    if last_error:
        raise last_error
    raise HTTPException(status_code=503, detail="Failed after max retries")


# ============ FPL API FETCHERS ============

async def fetch_fpl_data() -> Dict:
    if not cache.is_stale() and cache.bootstrap_data:
        return cache.bootstrap_data
    try:
        response = await fetch_with_retry(f"{FPL_BASE_URL}/bootstrap-static/")
        cache.bootstrap_data = response.json()
        cache.last_update = datetime.now()
        return cache.bootstrap_data
    except (httpx.HTTPError, HTTPException) as e:
        if cache.bootstrap_data:
            logger.warning(f"Serving stale bootstrap data: {e}")
            return cache.bootstrap_data
        raise HTTPException(status_code=503, detail=f"FPL API unavailable: {str(e)}")


async def fetch_fixtures() -> List[Dict]:
    if cache.fixtures_data and not cache.fixtures_is_stale():
        return cache.fixtures_data
    try:
        response = await fetch_with_retry(f"{FPL_BASE_URL}/fixtures/")
        cache.fixtures_data = response.json()
        cache.fixtures_last_update = datetime.now()
        return cache.fixtures_data
    except (httpx.HTTPError, HTTPException) as e:
        raise HTTPException(status_code=503, detail=f"FPL API unavailable: {str(e)}")


async def fetch_live_gameweek(gameweek: int) -> Dict:
    cached = cache.get_live(gameweek)
    if cached is not None:
        return cached
    try:
        response = await fetch_with_retry(f"{FPL_BASE_URL}/event/{gameweek}/live/")
        payload = response.json()
        cache.set_live(gameweek, payload)
        return payload
    except (httpx.HTTPError, HTTPException) as e:
        raise HTTPException(status_code=503, detail=f"FPL API unavailable: {str(e)}")


async def fetch_manager_picks(manager_id: int, gameweek: int) -> Optional[Dict]:
    """Picks for one GW, or None when the manager has none for it."""
    try:
        response = await fetch_with_retry(f"{FPL_BASE_URL}/entry/{manager_id}/event/{gameweek}/picks/")
        return response.json()
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 404:
            return None
        raise HTTPException(status_code=503, detail=f"FPL API error: {str(e)}")
    except httpx.HTTPError as e:
        raise HTTPException(status_code=503, detail=f"FPL API unavailable: {str(e)}")


async def fetch_picks_with_fallback(
    manager_id: int,
    gameweek: int,
    fallback_gameweeks: int = None,
) -> Tuple[int, Dict]:
    """
    Find the manager's picks, walking back from `gameweek`.

    Tries the requested GW and then up to `fallback_gameweeks` earlier ones.
    Returns (gameweek_used, payload).
    """
    if fallback_gameweeks is None:
        fallback_gameweeks = ENGINE_CONFIG["polling"].picks_fallback_gameweeks

    for gw in range(gameweek, max(0, gameweek - fallback_gameweeks - 1), -1):
        payload = await fetch_manager_picks(manager_id, gw)
        if payload and payload.get("picks"):
            if gw != gameweek:
                logger.info(f"No picks for manager {manager_id} in GW{gameweek}, using GW{gw}")
            return gw, payload

    raise HTTPException(status_code=404, detail="Manager not found or no team for this gameweek")


def get_current_gameweek(events: List[Dict]) -> int:
    for event in events:
        if event.get("is_current"):
            return event["id"]
    for event in events:
        if event.get("is_next"):
            return event["id"]
    return 1


# ============ STAT SNAPSHOT ============

def build_stat_snapshot(
    gameweek: int,
    bootstrap: Dict,
    live_payload: Dict,
    fixtures: List[Dict],
    picks_payload: Optional[Dict] = None,
    season: Optional[str] = None,
) -> StatSnapshot:
    """Decode raw API payloads into the immutable snapshot the engine consumes."""
    players = {e["id"]: Player.from_api(e) for e in bootstrap.get("elements", [])}
    live = {e["id"]: LiveStat.from_api(e) for e in live_payload.get("elements", [])}
    gw_fixtures = tuple(
        Fixture.from_api(f) for f in fixtures if f.get("event") == gameweek
    )
    squad = Squad.from_api(picks_payload) if picks_payload else None

    return StatSnapshot(
        gameweek=gameweek,
        players=players,
        live=live,
        fixtures=gw_fixtures,
        squad=squad,
        season=season,
    )


async def load_stat_snapshot(
    gameweek: Optional[int] = None,
    manager_id: Optional[int] = None,
    season: Optional[str] = None,
) -> StatSnapshot:
    """Fetch everything for one poll. Picks are only fetched for a manager."""
    bootstrap = await fetch_fpl_data()
    gameweek = gameweek or get_current_gameweek(bootstrap.get("events", []))

    live_payload, fixtures = await asyncio.gather(
        fetch_live_gameweek(gameweek),
        fetch_fixtures(),
    )

    picks_payload = None
    if manager_id is not None:
        _, picks_payload = await fetch_picks_with_fallback(manager_id, gameweek)

    snapshot = build_stat_snapshot(gameweek, bootstrap, live_payload, fixtures, picks_payload, season)
    logger.info(f"Snapshot GW{gameweek}: {len(snapshot.live)} live players, {len(snapshot.fixtures)} fixtures")
    return snapshot


# ============ LIVE POLLING ============

class PollStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    SUCCESS = "success"
    BACKOFF_WAIT = "backoff_wait"


@dataclass
class LivePollState:
    """Caller-owned state for one polling loop. The engine itself holds none."""
    status: PollStatus = PollStatus.IDLE
    retry_count: int = 0
    next_delay: float = 0.0
    auto_refresh: bool = True
    last_error: Optional[str] = None
    last_success: Optional[datetime] = None


def retry_delay(retry_count: int, config: PollingConfig = None) -> float:
    """Capped exponential backoff: base * 2^n, at most the cap."""
    config = config or ENGINE_CONFIG["polling"]
    return min(config.retry_base_delay * (2 ** retry_count), config.retry_max_delay)


def start_poll(state: LivePollState) -> LivePollState:
    state.status = PollStatus.FETCHING
    return state


def poll_succeeded(
    state: LivePollState,
    has_live_fixtures: bool,
    config: PollingConfig = None,
) -> LivePollState:
    """Reset backoff; auto-refresh switches itself off once nothing is live."""
    config = config or ENGINE_CONFIG["polling"]
    state.status = PollStatus.SUCCESS
    state.retry_count = 0
    state.last_error = None
    state.last_success = datetime.now()
    state.next_delay = config.refresh_interval
    if not has_live_fixtures:
        state.auto_refresh = False
    return state


def poll_failed(state: LivePollState, error: str, config: PollingConfig = None) -> LivePollState:
    state.status = PollStatus.BACKOFF_WAIT
    state.last_error = error
    state.next_delay = retry_delay(state.retry_count, config)
    state.retry_count += 1
    return state


class LivePoller:
    """
    Drive a fetch -> score cycle from a single timer.

    `fetch` returns a fresh StatSnapshot, `on_snapshot` consumes it (scoring
    is recomputed from scratch there). Ticks are serialised, and no fetch
    happens while `visible` is False.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[StatSnapshot]],
        on_snapshot: Callable[[StatSnapshot], None],
        config: PollingConfig = None,
    ):
        self.fetch = fetch
        self.on_snapshot = on_snapshot
        self.config = config or ENGINE_CONFIG["polling"]
        self.state = LivePollState()
        self.visible = True
        self._lock = asyncio.Lock()

    async def tick(self) -> LivePollState:
        async with self._lock:
            if not self.visible:
                return self.state

            start_poll(self.state)
            try:
                snapshot = await self.fetch()
                self.on_snapshot(snapshot)
            except (HTTPException, httpx.HTTPError) as e:
                message = getattr(e, "detail", None) or str(e)
                poll_failed(self.state, message, self.config)
                logger.warning(f"Live poll failed (attempt {self.state.retry_count}), next try in {self.state.next_delay:.0f}s: {message}")
                return self.state
            except Exception as e:
                # Anything else still has to leave FETCHING so the loop keeps its schedule
                poll_failed(self.state, f"{type(e).__name__}: {e}", self.config)
                logger.error(f"Live poll error (attempt {self.state.retry_count}), next try in {self.state.next_delay:.0f}s: {e}")
                return self.state

            poll_succeeded(self.state, snapshot.has_live_fixtures, self.config)
            return self.state

    async def run(self, max_ticks: Optional[int] = None):
        """Poll until auto-refresh turns off (nothing live) or max_ticks is hit."""
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            state = await self.tick()
            ticks += 1
            if state.status == PollStatus.SUCCESS and not state.auto_refresh:
                logger.info("No live fixtures, stopping auto-refresh")
                return
            delay = state.next_delay if self.visible else self.config.refresh_interval
            await asyncio.sleep(delay)
