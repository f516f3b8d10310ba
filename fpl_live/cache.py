import logging
from datetime import datetime
from typing import Optional, Dict, List, Tuple

from fpl_live.config import ENGINE_CONFIG, ApiConfig

logger = logging.getLogger("fpl_live")


class DataCache:
    """
    Raw FPL payloads with per-resource staleness.

    Holds API responses only. Derived scoring results are never cached:
    they are recomputed from the newest snapshot on every poll.
    """

    def __init__(self, config: ApiConfig = None):
        config = config or ENGINE_CONFIG["api"]
        self.bootstrap_data: Optional[Dict] = None
        self.fixtures_data: Optional[List] = None
        self.last_update: Optional[datetime] = None
        self.fixtures_last_update: Optional[datetime] = None
        # Live gameweek payloads: gw -> (payload, fetched_at)
        self.live_data: Dict[int, Tuple[Dict, datetime]] = {}
        self.cache_duration = config.bootstrap_ttl
        self.fixtures_cache_duration = config.fixtures_ttl
        self.live_cache_duration = config.live_ttl

    def is_stale(self) -> bool:
        return self.last_update is None or (datetime.now() - self.last_update).total_seconds() > self.cache_duration

    def fixtures_is_stale(self) -> bool:
        return (
            self.fixtures_last_update is None or
            (datetime.now() - self.fixtures_last_update).total_seconds() > self.fixtures_cache_duration
        )

    def get_live(self, gameweek: int) -> Optional[Dict]:
        """Cached live payload for a gameweek if not stale."""
        entry = self.live_data.get(gameweek)
        if entry is None:
            return None
        payload, fetched_at = entry
        if (datetime.now() - fetched_at).total_seconds() > self.live_cache_duration:
            return None
        return payload

    def set_live(self, gameweek: int, payload: Dict):
        self.live_data[gameweek] = (payload, datetime.now())

    def clear_live(self) -> int:
        """Drop all live payloads, e.g. to force a fresh poll."""
        count = len(self.live_data)
        self.live_data.clear()
        self.fixtures_last_update = None
        logger.info(f"Cleared {count} cached live gameweeks")
        return count


cache = DataCache()
