"""File-based TTL cache for provider payloads."""

from __future__ import annotations

import hashlib
import json
import time
from pathlib import Path

import pandas as pd

from src.config import Paths, SETTINGS


class DataCache:
    """File-based cache with TTL support.

    One directory per *category*; TTL comes from ``cache.ttl_hours`` in
    settings.yaml unless *ttl_hours* is given.
    """

    def __init__(self, category: str = "general", base_dir: Path | None = None, ttl_hours: float | None = None):
        self.cache_dir = (base_dir or Paths.DATA_CACHE) / category
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        if ttl_hours is None:
            ttl_hours = SETTINGS.get("cache", {}).get("ttl_hours", {}).get(category, 24)
        self.ttl_seconds = float(ttl_hours) * 3600

    def _key_path(self, key: str, ext: str = "json") -> Path:
        hashed = hashlib.md5(key.encode()).hexdigest()
        return self.cache_dir / f"{hashed}.{ext}"

    def _fresh(self, path: Path) -> bool:
        if not path.exists():
            return False
        if time.time() - path.stat().st_mtime > self.ttl_seconds:
            path.unlink()
            return False
        return True

    def get(self, key: str) -> dict | list | None:
        """Retrieve cached JSON data if not expired."""
        path = self._key_path(key)
        if not self._fresh(path):
            return None
        with open(path) as f:
            return json.load(f)

    def set(self, key: str, data: dict | list) -> None:
        with open(self._key_path(key), "w") as f:
            json.dump(data, f, default=str)

    def get_df(self, key: str) -> pd.DataFrame | None:
        """Retrieve cached DataFrame (pickled, keeps the DatetimeIndex)."""
        path = self._key_path(key, ext="pkl")
        if not self._fresh(path):
            return None
        return pd.read_pickle(path)

    def set_df(self, key: str, df: pd.DataFrame) -> None:
        df.to_pickle(self._key_path(key, ext="pkl"))
