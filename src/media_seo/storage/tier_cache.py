"""Detected provider tiers, kept for a day per API key."""

import hashlib
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..models import ProviderConfig, TierInfo

logger = logging.getLogger(__name__)

TIER_TTL = 86400


def key_fingerprint(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


class TierCache:
    """JSON file of detected tiers keyed by provider.

    Entries are tied to a fingerprint of the API key so that swapping keys
    invalidates them. Without a path the cache lives in memory only.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        ttl: int = TIER_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path) if path else None
        self.ttl = ttl
        self.clock = clock
        self.lock = threading.Lock()
        self.entries: Dict[str, Dict[str, Any]] = {}
        if self.path and self.path.exists():
            with open(self.path) as f:
                self.entries = json.load(f)

    def get(self, provider: str, api_key: str) -> Optional[TierInfo]:
        entry = self.entries.get(provider)
        if not entry or entry.get("key") != key_fingerprint(api_key):
            return None

        info = TierInfo.from_dict(entry["tier"])
        if info.detected_at is None or self.clock() - info.detected_at > self.ttl:
            logger.debug(f"Cached tier for {provider} has expired")
            return None
        return info

    def put(self, info: TierInfo, api_key: str):
        info.detected_at = self.clock()
        with self.lock:
            self.entries[info.provider] = {"key": key_fingerprint(api_key), "tier": info.to_dict()}
            self._save()

    def apply(self, rate_limiter, providers: Dict[str, ProviderConfig]) -> int:
        """Feed cached detected limits to the rate limiter. Returns how many were applied."""
        applied = 0
        for name, config in providers.items():
            info = self.get(name, config.api_key)
            if info is not None and info.detected:
                rate_limiter.set_detected_limit(name, info.rpm)
                applied += 1
        return applied

    def _save(self):
        if self.path is None:
            return
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(self.entries, f, indent=2)
        tmp.replace(self.path)
