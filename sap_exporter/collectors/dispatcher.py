# sap_exporter/collectors/dispatcher.py
"""
Dispatcher collector: work process queue statistics of every instance that
runs a disp+work process.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..sapcontrol_client import SAPControlClient, SAPControlError
from ..services import InstanceService, ProcessListError, ProcessService
from .base import INSTANCE_LABELS, DefaultCollector, MetricBatch

logger = logging.getLogger(__name__)

_LABELS = ("type", *INSTANCE_LABELS)


class DispatcherCollector(DefaultCollector):

    def __init__(
        self,
        client: SAPControlClient,
        instances: InstanceService,
        processes: ProcessService,
        scrape_timeout: float = 30.0,
    ) -> None:
        super().__init__("dispatcher", scrape_timeout)
        self.client = client
        self.instances = instances
        self.processes = processes

        self.set_descriptor("queue_now", "Work process current queue length", _LABELS)
        self.set_descriptor("queue_high", "Work process peak queue length", _LABELS, kind="counter")
        self.set_descriptor("queue_max", "Work process maximum queue length", _LABELS)
        self.set_descriptor("queue_writes", "Work process queue writes", _LABELS, kind="counter")
        self.set_descriptor("queue_reads", "Work process queue reads", _LABELS, kind="counter")

    def recorders(self):
        return (self.record_queue_stats,)

    def record_queue_stats(self, deadline: Optional[float], batch: MetricBatch) -> None:
        for instance in self.instances.get_instances(deadline):
            try:
                processes = self.processes.get_processes(instance.endpoint, deadline)
            except ProcessListError as exc:
                logger.warning("GetProcessList error: %s", exc)
                continue
            if not any("disp+work" in p.name for p in processes):
                continue

            try:
                queues = self.client.get_queue_statistic(instance.endpoint, deadline)
            except SAPControlError as exc:
                logger.warning("GetQueueStatistic error: %s", exc)
                continue

            common = instance.common_labels()
            # one line per queue stat, with the queue type as a common label
            for queue in queues:
                batch.add("queue_now", queue.now, queue.type, *common)
                batch.add("queue_high", queue.high, queue.type, *common)
                batch.add("queue_max", queue.max, queue.type, *common)
                batch.add("queue_writes", queue.writes, queue.type, *common)
                batch.add("queue_reads", queue.reads, queue.type, *common)
