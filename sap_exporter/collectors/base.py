# sap_exporter/collectors/base.py
"""
Shared collector plumbing.

A collector declares its metrics once with ``set_descriptor`` and, on every
scrape, fills a fresh ``MetricBatch`` from one or more recorder functions that
run concurrently.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

logger = logging.getLogger(__name__)

NAMESPACE = "sap"

INSTANCE_LABELS = ("instance_name", "instance_number", "SID", "instance_hostname")


@dataclass(frozen=True)
class Descriptor:
    name: str
    documentation: str
    labels: Sequence[str]
    kind: str = "gauge"

    def new_family(self) -> Metric:
        if self.kind == "counter":
            return CounterMetricFamily(self.name, self.documentation, labels=list(self.labels))
        return GaugeMetricFamily(self.name, self.documentation, labels=list(self.labels))


class MetricBatch:
    """Per-scrape set of metric families; safe to fill from several threads."""

    def __init__(self, descriptors: Dict[str, Descriptor]) -> None:
        self._descriptors = descriptors
        self._families: Dict[str, Metric] = {k: d.new_family() for k, d in descriptors.items()}
        self._lock = threading.Lock()

    def add(self, name: str, value: float, *labels: str) -> None:
        """
        Add one sample to the family registered as ``name``.

        Raises:
            KeyError for an undeclared metric, ValueError on a label count mismatch.
        """
        descriptor = self._descriptors[name]
        if len(labels) != len(descriptor.labels):
            raise ValueError(
                f"{descriptor.name}: expected {len(descriptor.labels)} label values, got {len(labels)}"
            )
        with self._lock:
            self._families[name].add_metric([str(v) for v in labels], float(value))

    def families(self) -> List[Metric]:
        """Families that received at least one sample."""
        with self._lock:
            return [f for f in self._families.values() if f.samples]


Recorder = Callable[[Optional[float], MetricBatch], None]


def record_concurrently(recorders: Sequence[Recorder], deadline: Optional[float], batch: MetricBatch) -> List[Exception]:
    """
    Run all recorders in parallel and return the errors they raised.

    One failing recorder does not stop the others.
    """
    if not recorders:
        return []
    errors: List[Exception] = []
    with ThreadPoolExecutor(max_workers=len(recorders), thread_name_prefix="recorder") as pool:
        futures = [pool.submit(r, deadline, batch) for r in recorders]
        for future in futures:
            try:
                future.result()
            except Exception as exc:
                errors.append(exc)
    return errors


class DefaultCollector:
    """Base for the exporter's prometheus_client custom collectors."""

    def __init__(self, subsystem: str, scrape_timeout: float = 30.0) -> None:
        self.subsystem = subsystem
        self.scrape_timeout = scrape_timeout
        self._descriptors: Dict[str, Descriptor] = {}

    def set_descriptor(self, name: str, documentation: str, labels: Sequence[str], kind: str = "gauge") -> None:
        full_name = f"{NAMESPACE}_{self.subsystem}_{name}"
        self._descriptors[name] = Descriptor(full_name, documentation, tuple(labels), kind)

    def get_descriptor(self, name: str) -> Descriptor:
        return self._descriptors[name]

    def new_batch(self) -> MetricBatch:
        return MetricBatch(self._descriptors)

    def recorders(self) -> Sequence[Recorder]:
        """Recorder functions run on every scrape. Subclasses override."""
        return ()

    def describe(self) -> Iterable[Metric]:
        # Lets the registry check names without running a scrape.
        return [d.new_family() for d in self._descriptors.values()]

    def collect(self) -> Iterable[Metric]:
        logger.debug("Collecting %s metrics", self.subsystem)
        batch = self.new_batch()
        deadline = time.monotonic() + self.scrape_timeout
        for err in record_concurrently(self.recorders(), deadline, batch):
            logger.warning("%s collector scrape error: %s", self.subsystem, err)
        return batch.families()
