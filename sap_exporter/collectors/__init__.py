# sap_exporter/collectors/__init__.py
"""
Collectors package exports.
"""
from .alerts import AlertsCollector
from .base import DefaultCollector, MetricBatch, record_concurrently
from .cache_stats import CacheStatsCollector
from .dispatcher import DispatcherCollector
from .enqueue_server import EnqueueServerCollector
from .registry import register_collectors
from .start_service import StartServiceCollector
from .workprocess import WorkProcessCollector

__all__ = [
    "AlertsCollector",
    "CacheStatsCollector",
    "DefaultCollector",
    "DispatcherCollector",
    "EnqueueServerCollector",
    "MetricBatch",
    "StartServiceCollector",
    "WorkProcessCollector",
    "record_concurrently",
    "register_collectors",
]
