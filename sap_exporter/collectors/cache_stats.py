# sap_exporter/collectors/cache_stats.py
"""
Cache collector: exposes the counters of the exporter's own caches.
"""

from __future__ import annotations

from dataclasses import fields
from typing import Iterable, Mapping

from prometheus_client.core import Metric

from ..cache import CacheStats, TTLCache
from .base import DefaultCollector


class CacheStatsCollector(DefaultCollector):
    """Reads the caches directly; no upstream calls, so no recorders."""

    def __init__(self, caches: Mapping[str, TTLCache]) -> None:
        super().__init__("cache")
        self.caches = dict(caches)

        for f in fields(CacheStats):
            self.set_descriptor(f.name, f"Cache {f.name} since start", ("cache",), kind="counter")
        self.set_descriptor("entries", "Entries currently held, including expired ones", ("cache",))

    def collect(self) -> Iterable[Metric]:
        batch = self.new_batch()
        for name, cache in self.caches.items():
            stats = cache.stats()
            for f in fields(CacheStats):
                batch.add(f.name, getattr(stats, f.name), name)
            batch.add("entries", len(cache), name)
        return batch.families()
