# sap_exporter/collectors/registry.py
"""
Collector registration.

The start service and cache collectors are always registered; the others
depend on the collect_* switches in the config.
"""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional

from prometheus_client import CollectorRegistry

from ..cache import TTLCache
from ..config import AppConfig
from ..loki_client import LokiClient
from ..sapcontrol_client import SAPControlClient
from ..services import InstanceService, ProcessService
from .alerts import AlertsCollector
from .cache_stats import CacheStatsCollector
from .dispatcher import DispatcherCollector
from .enqueue_server import EnqueueServerCollector
from .start_service import StartServiceCollector
from .workprocess import WorkProcessCollector

logger = logging.getLogger(__name__)


def register_collectors(
    registry: CollectorRegistry,
    cfg: AppConfig,
    client: SAPControlClient,
    instances: InstanceService,
    processes: ProcessService,
    caches: Mapping[str, TTLCache],
    loki: Optional[LokiClient] = None,
) -> List[str]:
    """Register all enabled collectors and return their subsystem names."""
    timeout = cfg.scrape_timeout
    collectors = [
        StartServiceCollector(instances, processes, scrape_timeout=timeout),
        CacheStatsCollector(caches),
    ]

    optional = (
        ("collect_enqueueserver", "Enqueue Server",
         lambda: EnqueueServerCollector(client, instances, processes, scrape_timeout=timeout)),
        ("collect_dispatcher", "Dispatcher",
         lambda: DispatcherCollector(client, instances, processes, scrape_timeout=timeout)),
        ("collect_workprocess", "WorkProcess",
         lambda: WorkProcessCollector(client, instances, scrape_timeout=timeout)),
        ("collect_alerts", "Alerts",
         lambda: AlertsCollector(
             client,
             instances,
             loki=loki,
             send_to_prom=cfg.send_alerts_to_prom,
             samples_max_age=cfg.alert_samples_max_age,
             scrape_timeout=timeout,
         )),
    )
    for flag, label, factory in optional:
        if getattr(cfg, flag):
            collectors.append(factory())
            logger.info("%s optional collector registered", label)
        else:
            logger.debug("%s optional collector is not registered", label)

    for collector in collectors:
        registry.register(collector)
    return [c.subsystem for c in collectors]
