# sap_exporter/services/instance_service.py
"""
Instance directory logic.

Responsibilities:
  - fetch the system-wide instance list from the central instance
  - compute each instance's SAPControl endpoint
  - resolve name + SID of every instance concurrently
  - cache the resulting snapshot for all collectors
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from ..cache import TTLCache
from ..models import InstanceDirectory, InstanceInfo, SAPInstance, state_color_to_float
from ..sapcontrol_client import SAPControlClient, SAPControlError

logger = logging.getLogger(__name__)

CACHE_KEY = "InstanceInfo"


class InstanceDirectoryError(Exception):
    """The instance list could not be fetched; no snapshot is available."""


class SidSlot:
    """
    Process-wide system id, filled at most once.

    Seeded from configuration; otherwise the first instance that reports a SID
    fills it. Later, different SIDs are not reconciled.
    """

    def __init__(self, initial: str = "") -> None:
        self._value = initial
        self._lock = threading.Lock()

    def get(self) -> str:
        with self._lock:
            return self._value

    def set_if_empty(self, sid: str) -> bool:
        """Store ``sid`` if nothing is stored yet. Returns True if it was stored."""
        if not sid:
            return False
        with self._lock:
            if self._value:
                return False
            self._value = sid
        logger.info("System id set to %s", sid)
        return True


@dataclass
class InstanceService:
    """Service responsible for the cached list of instances of the system."""

    client: SAPControlClient
    cache: TTLCache[Optional[InstanceDirectory]]
    sid: SidSlot
    ttl: float = 30.0
    failure_ttl: float = 5.0
    use_ssl: bool = False
    host_domain: str = ""
    max_fanout: int = 8

    _last_error: str = field(default="", init=False, repr=False)

    def endpoint_for(self, instance: SAPInstance) -> str:
        """
        Build the SAPControl URL of an instance.

        Bare hostnames are qualified with host_domain; the port follows the scheme.
        """
        hostname = instance.hostname
        if "." not in hostname and self.host_domain:
            hostname = f"{hostname}.{self.host_domain}"
        if self.use_ssl:
            return f"https://{hostname}:{instance.https_port}"
        return f"http://{hostname}:{instance.http_port}"

    def get_instances(self, deadline: Optional[float] = None) -> List[InstanceInfo]:
        """
        Return all instances of the system, from cache when fresh.

        Raises:
            InstanceDirectoryError if the instance list call failed.
        """
        return list(self.snapshot(deadline).instances)

    def snapshot(self, deadline: Optional[float] = None) -> InstanceDirectory:
        """Return the cached directory snapshot, refreshing it if stale."""
        logger.debug("GetCachedInstanceList start")
        directory = self.cache.get_or_set(CACHE_KEY, lambda: self._load(deadline))
        if directory is None:
            raise InstanceDirectoryError(f"instance list unavailable: {self._last_error or 'unknown error'}")
        return directory

    def _load(self, deadline: Optional[float]) -> Tuple[Optional[InstanceDirectory], float]:
        """Cache loader: a fresh snapshot, or None for a short while after a failure."""
        try:
            directory = self.get_all_instances(deadline)
        except SAPControlError as exc:
            logger.error("GetCachedInstanceList: %s", exc)
            self._last_error = str(exc)
            if self.failure_ttl <= 0:
                raise InstanceDirectoryError(f"instance list unavailable: {exc}") from exc
            return None, self.failure_ttl
        return directory, self.ttl

    def get_all_instances(self, deadline: Optional[float] = None) -> InstanceDirectory:
        """
        Build a new directory snapshot from the upstream service (no caching).

        Raises:
            SAPControlError if the system instance list cannot be fetched.
        """
        base_list = self.client.get_system_instance_list(deadline)
        logger.debug("Instances in the list: %d", len(base_list))

        seeds = [self._seed(instance) for instance in base_list]
        workers = max(1, min(self.max_fanout, len(seeds)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="instance-props") as pool:
            resolved = list(pool.map(lambda seed: self.resolve_instance(seed, deadline), seeds))

        for info in resolved:
            if info.scrape_success and info.sid:
                self.sid.set_if_empty(info.sid)
                break

        fallback_sid = self.sid.get()
        instances = tuple(
            info if info.scrape_success else replace(info, sid=fallback_sid)
            for info in resolved
        )
        return InstanceDirectory(
            instances=instances,
            populated_at=datetime.now(timezone.utc),
            ttl_seconds=self.ttl,
        )

    def _seed(self, instance: SAPInstance) -> InstanceInfo:
        endpoint = self.endpoint_for(instance)
        try:
            status = state_color_to_float(instance.dispstatus)
        except ValueError as exc:
            logger.warning("Instance url %s: %s", endpoint, exc)
            status = 0.0
        return InstanceInfo(base=instance, endpoint=endpoint, status=status)

    def resolve_instance(self, seed: InstanceInfo, deadline: Optional[float] = None) -> InstanceInfo:
        """
        Fill in name and SID from GetInstanceProperties.

        Failures are recorded on the returned record (name falls back to the
        instance number) instead of being raised.
        """
        now = datetime.now(timezone.utc)
        try:
            props = self.client.get_instance_properties(seed.endpoint, deadline)
        except SAPControlError as exc:
            logger.error("Properties for instance %d: %s", seed.instance_nr, exc)
            return replace(
                seed,
                name=str(seed.instance_nr),
                last_scrape=now,
                scrape_success=False,
                last_error=str(exc),
            )

        values = {p.property: p.value for p in props}
        return replace(
            seed,
            name=values.get("INSTANCE_NAME") or str(seed.instance_nr),
            sid=values.get("SAPSYSTEMNAME", ""),
            last_scrape=now,
            scrape_success=True,
        )
