# sap_exporter/collectors/enqueue_server.py
"""
Enqueue server collector: lock table statistics of every instance running an
enqueue server process.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..models import state_color_to_float
from ..sapcontrol_client import SAPControlClient, SAPControlError
from ..services import InstanceService, ProcessListError, ProcessService
from .base import INSTANCE_LABELS, DefaultCollector, MetricBatch

logger = logging.getLogger(__name__)

ENQUEUE_PROCESS_NAMES = ("enserver", "enq_server", "enq_replicator")

_GAUGES = {
    "owner_now": "Current number of lock owners in the lock table",
    "owner_high": "Peak number of lock owners stored in the lock table",
    "owner_max": "Maximum number of lock owner IDs in the lock table",
    "arguments_now": "Current number of lock arguments in the lock table",
    "arguments_high": "Peak number of different lock arguments stored in the lock table",
    "arguments_max": "Maximum number of lock arguments in the lock table",
    "locks_now": "Current number of elementary locks in the lock table",
    "locks_high": "Peak number of elementary locks stored in the lock table",
    "locks_max": "Maximum number of elementary locks in the lock table",
    "lock_time": "Total time spent in the lock table",
    "lock_wait_time": "Total waiting time of all work processes for accessing the lock table",
    "server_time": "Total time spent in the enqueue server",
}

_COUNTERS = {
    "enqueue_requests": "Lock acquisition requests",
    "enqueue_rejects": "Rejected lock requests",
    "enqueue_errors": "Lock acquisition errors",
    "dequeue_requests": "Lock release requests",
    "dequeue_errors": "Lock release errors",
    "dequeue_all_requests": "Requests to release all locks of a transaction",
    "cleanup_requests": "Requests to release all locks of an application server",
    "backup_requests": "Number of update requests to the backup file",
    "reporting_requests": "Number of reading operations on the lock table",
    "compress_requests": "Internal lock table compress operations",
    "verify_requests": "Internal lock table verify operations",
}

_STATES = {
    "owner_state": "Owner table health (GRAY=1 .. RED=4)",
    "arguments_state": "Arguments table health (GRAY=1 .. RED=4)",
    "locks_state": "Locks table health (GRAY=1 .. RED=4)",
    "replication_state": "Replication health (GRAY=1 .. RED=4)",
}


class EnqueueServerCollector(DefaultCollector):

    def __init__(
        self,
        client: SAPControlClient,
        instances: InstanceService,
        processes: ProcessService,
        scrape_timeout: float = 30.0,
    ) -> None:
        super().__init__("enqueue_server", scrape_timeout)
        self.client = client
        self.instances = instances
        self.processes = processes

        for name, doc in _GAUGES.items():
            self.set_descriptor(name, doc, INSTANCE_LABELS)
        for name, doc in _COUNTERS.items():
            self.set_descriptor(name, doc, INSTANCE_LABELS, kind="counter")
        for name, doc in _STATES.items():
            self.set_descriptor(name, doc, INSTANCE_LABELS)

    def recorders(self):
        return (self.record_enqueue_stats,)

    def record_enqueue_stats(self, deadline: Optional[float], batch: MetricBatch) -> None:
        for instance in self.instances.get_instances(deadline):
            try:
                processes = self.processes.get_processes(instance.endpoint, deadline)
            except ProcessListError as exc:
                logger.warning("GetProcessList error: %s", exc)
                continue
            if not any(n in p.name for p in processes for n in ENQUEUE_PROCESS_NAMES):
                continue

            try:
                stats = self.client.enq_get_statistic(instance.endpoint, deadline)
            except SAPControlError as exc:
                logger.warning("EnqGetStatistic error: %s", exc)
                continue

            common = instance.common_labels()
            for name in (*_GAUGES, *_COUNTERS):
                batch.add(name, getattr(stats, name), *common)
            for name in _STATES:
                color = getattr(stats, name)
                if not color:
                    continue
                try:
                    batch.add(name, state_color_to_float(color), *common)
                except ValueError as exc:
                    logger.warning("Enqueue %s of %s: %s", name, instance.endpoint, exc)
