from typing import Dict, Optional

from kb_chat.logger import GLOBAL_LOGGER as log


class ApiTracker:
    """Per-endpoint request counters kept in the session store."""

    def __init__(self, store, config: Optional[dict] = None):
        cfg = config or {}
        self.store = store
        self.enabled = bool(cfg.get("enabled", True))
        self.key_prefix = cfg.get("key_prefix", "api_count")
        self.ttl_seconds = int(cfg.get("ttl_seconds", 7 * 24 * 3600))

    def key(self, method: str, path: str) -> str:
        return f"{self.key_prefix}:{method.upper()}:{path}"

    async def track(self, method: str, path: str) -> None:
        """Count one request. Store failures are logged and never reach the caller."""
        if not self.enabled:
            return
        try:
            await self.store.increment(self.key(method, path), self.ttl_seconds)
        except Exception as e:
            log.warning("API count failed | path=%s | error=%s", path, str(e))

    async def get_api_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        prefix = f"{self.key_prefix}:"
        for key in await self.store.keys(f"{prefix}*"):
            value = await self.store.get(key)
            if value is not None:
                counts[key[len(prefix):]] = int(value)
        return counts
