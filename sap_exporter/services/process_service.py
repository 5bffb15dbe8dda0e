# sap_exporter/services/process_service.py
"""
Process list logic.

Responsibilities:
  - fetch GetProcessList for one instance endpoint
  - decorate each process with its numeric status
  - cache per endpoint
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..cache import TTLCache
from ..models import ProcessInfo, state_color_to_float
from ..sapcontrol_client import SAPControlClient, SAPControlError

logger = logging.getLogger(__name__)


class ProcessListError(Exception):
    """The process list of an instance could not be fetched."""


def cache_key(endpoint: str) -> str:
    return f"ProcessList_{endpoint}"


@dataclass
class ProcessService:
    """Service responsible for returning cached per-instance process lists."""

    client: SAPControlClient
    cache: TTLCache[Optional[Sequence[ProcessInfo]]]
    ttl: float = 30.0
    failure_ttl: float = 5.0

    _last_errors: Dict[str, str] = field(default_factory=dict, init=False, repr=False)

    def get_processes(self, endpoint: str, deadline: Optional[float] = None) -> List[ProcessInfo]:
        """
        Return the processes of the instance at ``endpoint``, from cache when fresh.

        Raises:
            ProcessListError if the last fetch for this endpoint failed.
        """
        processes = self.cache.get_or_set(cache_key(endpoint), lambda: self._load(endpoint, deadline))
        if processes is None:
            raise ProcessListError(
                f"process list unavailable for {endpoint}: {self._last_errors.get(endpoint, 'unknown error')}"
            )
        return list(processes)

    def _load(self, endpoint: str, deadline: Optional[float]) -> Tuple[Optional[Sequence[ProcessInfo]], float]:
        try:
            processes = self.fetch_processes(endpoint, deadline)
        except SAPControlError as exc:
            logger.error("GetCachedProcessList: %s", exc)
            self._last_errors[endpoint] = str(exc)
            if self.failure_ttl <= 0:
                raise ProcessListError(f"process list unavailable for {endpoint}: {exc}") from exc
            return None, self.failure_ttl
        return processes, self.ttl

    def fetch_processes(self, endpoint: str, deadline: Optional[float] = None) -> Tuple[ProcessInfo, ...]:
        """Fetch and decorate the process list (no caching)."""
        logger.debug("GetProcesses start, url = %s", endpoint)
        raw = self.client.get_process_list(endpoint, deadline)
        logger.debug("Processes in the list: %d", len(raw))

        out: List[ProcessInfo] = []
        for process in raw:
            try:
                status = state_color_to_float(process.dispstatus)
            except ValueError as exc:
                logger.warning("Process status error, url %s: %s", endpoint, exc)
                status = 0.0
            out.append(ProcessInfo(base=process, status=status))
        return tuple(out)
