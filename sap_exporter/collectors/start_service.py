# sap_exporter/collectors/start_service.py
"""
Start service collector: instances of the system and the processes each
instance's start service runs.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..models import StateColor
from ..services import InstanceService, ProcessListError, ProcessService
from .base import INSTANCE_LABELS, DefaultCollector, MetricBatch

logger = logging.getLogger(__name__)

_COLOR_SUFFIX = {
    StateColor.GRAY.value: "gray",
    StateColor.GREEN.value: "green",
    StateColor.YELLOW.value: "yellow",
    StateColor.RED.value: "red",
}


class StartServiceCollector(DefaultCollector):

    def __init__(self, instances: InstanceService, processes: ProcessService, scrape_timeout: float = 30.0) -> None:
        super().__init__("start_service", scrape_timeout)
        self.instances = instances
        self.processes = processes

        self.set_descriptor(
            "instances",
            "The SAP instances in the context of the whole SAP system",
            ["features", "start_priority", "instance_name", "instance_number",
             "SID", "instance_hostname", "dispstatus"],
        )
        self.set_descriptor(
            "processes",
            "The processes started by the SAP Start Service",
            ["name", "pid", "status", "description", "starttime", "elapsedtime",
             *INSTANCE_LABELS, "proc_dispstatus"],
        )
        for color in _COLOR_SUFFIX.values():
            self.set_descriptor(
                f"processesperinstance_{color}",
                f"Processes in state {color.upper()}",
                INSTANCE_LABELS,
            )

    def recorders(self):
        return (self.record_instances, self.record_processes)

    def record_instances(self, deadline: Optional[float], batch: MetricBatch) -> None:
        instances = self.instances.get_instances(deadline)
        logger.debug("record_instances: instances in the list: %d", len(instances))

        for instance in instances:
            batch.add(
                "instances",
                instance.status,
                instance.features,
                instance.start_priority,
                instance.name,
                str(instance.instance_nr),
                instance.sid,
                instance.hostname,
                instance.dispstatus,
            )

    def record_processes(self, deadline: Optional[float], batch: MetricBatch) -> None:
        instances = self.instances.get_instances(deadline)

        for instance in instances:
            try:
                processes = self.processes.get_processes(instance.endpoint, deadline)
            except ProcessListError as exc:
                logger.warning("GetProcessList error: %s", exc)
                continue

            common = instance.common_labels()
            counts = dict.fromkeys(_COLOR_SUFFIX.values(), 0)
            for process in processes:
                suffix = _COLOR_SUFFIX.get(process.dispstatus)
                if suffix:
                    counts[suffix] += 1
                p = process.base
                batch.add(
                    "processes",
                    process.status,
                    p.name,
                    str(p.pid),
                    p.textstatus,
                    p.description,
                    p.starttime,
                    p.elapsedtime,
                    *common,
                    p.dispstatus,
                )
            for suffix, count in counts.items():
                batch.add(f"processesperinstance_{suffix}", count, *common)
