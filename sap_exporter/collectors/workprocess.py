# sap_exporter/collectors/workprocess.py
"""
Work process collector: ABAP work process table of every ABAP instance.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Optional, Sequence

from ..models import WorkProcess
from ..sapcontrol_client import SAPControlClient, SAPControlError
from ..services import InstanceService
from .base import INSTANCE_LABELS, DefaultCollector, MetricBatch

logger = logging.getLogger(__name__)

_WP_LABELS = ("wp_type", "status", "pid", "name", "description", "client", "user", *INSTANCE_LABELS)


def work_process_status_value(status: str) -> float:
    """RUN* = 1, WAIT* = 0.5, anything else 0."""
    up = status.upper()
    if "RUN" in up:
        return 1.0
    if "WAIT" in up:
        return 0.5
    return 0.0


def _parse_float(raw: str) -> Optional[float]:
    try:
        return float(raw)
    except ValueError:
        return None


class WorkProcessCollector(DefaultCollector):

    def __init__(self, client: SAPControlClient, instances: InstanceService, scrape_timeout: float = 30.0) -> None:
        super().__init__("workprocess", scrape_timeout)
        self.client = client
        self.instances = instances

        self.set_descriptor(
            "dispatcher_work_processes",
            "Dispatcher work process counts by type and status",
            ("wp_type", "status", *INSTANCE_LABELS),
        )
        self.set_descriptor("dispatcher_work_processes_status", "Status of SAP process", _WP_LABELS)
        self.set_descriptor("dispatcher_work_processes_cpu", "CPU usage percentage of SAP process", _WP_LABELS)
        self.set_descriptor("dispatcher_work_processes_elapsed", "Elapsed time of SAP process in seconds", _WP_LABELS)

    def recorders(self):
        return (self.record_work_process_stats,)

    def record_work_process_stats(self, deadline: Optional[float], batch: MetricBatch) -> None:
        for instance in self.instances.get_instances(deadline):
            if "ABAP" not in instance.features.upper():
                continue

            try:
                table = self.client.abap_get_wp_table(instance.endpoint, deadline)
            except SAPControlError as exc:
                logger.error("ABAPGetWPTable error %s", exc)
                continue

            common = instance.common_labels()
            counts: Counter = Counter((wp.type, wp.status) for wp in table)
            for wp in table:
                self._record_work_process(batch, common, wp)
            for (wp_type, status), count in counts.items():
                batch.add("dispatcher_work_processes", count, wp_type, status, *common)

    def _record_work_process(self, batch: MetricBatch, common: Sequence[str], wp: WorkProcess) -> None:
        labels = (wp.type, wp.status, wp.pid, f"WP-{wp.no}", wp.reason, wp.client, wp.user, *common)
        batch.add("dispatcher_work_processes_status", work_process_status_value(wp.status), *labels)

        cpu = _parse_float(wp.cpu)
        if cpu is not None:
            batch.add("dispatcher_work_processes_cpu", cpu, *labels)
        elapsed = _parse_float(wp.time)
        if elapsed is not None:
            batch.add("dispatcher_work_processes_elapsed", elapsed, *labels)
