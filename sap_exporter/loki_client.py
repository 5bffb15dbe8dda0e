# sap_exporter/loki_client.py
"""
Batched pusher for Loki.

Entries are queued by ``push()`` and sent from a background thread either when
``batch_entries`` are waiting or ``batch_wait`` has passed since the first
entry of the batch. Push failures are logged; scrapes never wait on Loki.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests
from dateutil import tz

from .config import AppConfig

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True)
class LogEntry:
    labels: Mapping[str, str]
    ts: datetime
    line: str


def build_push_payload(entries: Sequence[LogEntry], job: str = "") -> Dict[str, Any]:
    """
    Group entries into Loki streams (one per label set).

    Values inside a stream are sorted by timestamp, which Loki requires.
    """
    streams: Dict[tuple, List[LogEntry]] = {}
    for entry in entries:
        labels = dict(entry.labels)
        if job:
            labels.setdefault("job", job)
        streams.setdefault(tuple(sorted(labels.items())), []).append(entry)

    out = []
    for key, items in streams.items():
        items.sort(key=lambda e: e.ts)
        out.append({
            "stream": dict(key),
            "values": [[str(int(e.ts.timestamp() * 1_000_000_000)), e.line] for e in items],
        })
    return {"streams": out}


class LokiClient:
    """Pushes log lines to a Loki push endpoint in batches."""

    def __init__(
        self,
        push_url: str,
        name: str = "sap_alerts",
        tenant_id: str = "fake",
        batch_wait: float = 0.1,
        batch_entries: int = 32,
        timeout: float = 1.0,
        location: Optional[tzinfo] = None,
    ) -> None:
        """Store push options and start the sender thread."""
        self.push_url = push_url
        self.name = name
        self.tenant_id = tenant_id
        self.batch_wait = batch_wait
        self.batch_entries = max(1, batch_entries)
        self.timeout = timeout
        self.location = location or tz.UTC

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="loki-push", daemon=True)
        self._thread.start()

    @classmethod
    def from_config(cls, cfg: AppConfig) -> Optional["LokiClient"]:
        """Build a client from config, or None when no Loki URL is configured."""
        if not cfg.loki_url:
            logger.info("loki_url option is empty, will not use Loki to push alerts")
            return None

        location = tz.gettz(cfg.loki_time_location)
        if location is None:
            logger.error("Option loki_time_location incorrect: %s. Use UTC", cfg.loki_time_location)
            location = tz.UTC

        return cls(
            cfg.loki_url,
            name=cfg.loki_name,
            tenant_id=cfg.loki_tenantid,
            batch_wait=(cfg.loki_batch_wait if cfg.loki_batch_wait > 0 else 100) / 1000.0,
            batch_entries=cfg.loki_batch_entries_number if cfg.loki_batch_entries_number > 0 else 1,
            timeout=(cfg.loki_http_timeout if cfg.loki_http_timeout > 0 else 1000) / 1000.0,
            location=location,
        )

    def push(self, labels: Mapping[str, str], ts: datetime, line: str) -> None:
        """Queue one log line."""
        self._queue.put(LogEntry(labels=dict(labels), ts=ts, line=line))

    def shutdown(self, timeout: float = 5.0) -> None:
        """Flush pending entries and stop the sender thread."""
        self._queue.put(_STOP)
        self._thread.join(timeout)

    def _run(self) -> None:
        batch: List[LogEntry] = []
        flush_at = 0.0
        while True:
            wait = max(0.0, flush_at - time.monotonic()) if batch else None
            try:
                item = self._queue.get(timeout=wait)
            except queue.Empty:
                item = None

            if item is _STOP:
                if batch:
                    self._send(batch)
                return

            if item is not None:
                if not batch:
                    flush_at = time.monotonic() + self.batch_wait
                batch.append(item)

            if batch and (len(batch) >= self.batch_entries or time.monotonic() >= flush_at):
                self._send(batch)
                batch = []

    def _send(self, batch: Sequence[LogEntry]) -> None:
        payload = build_push_payload(batch, job=self.name)
        try:
            r = requests.post(
                self.push_url,
                json=payload,
                headers={"X-Scope-OrgID": self.tenant_id},
                timeout=self.timeout,
            )
            r.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Loki push of %d entries failed: %s", len(batch), exc)
            return
        logger.debug("Pushed %d entries to Loki", len(batch))
