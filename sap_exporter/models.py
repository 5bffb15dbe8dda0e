# sap_exporter/models.py
"""
Domain models for the exporter.

Raw records mirror what the SAPControl web service returns. Enriched records
(InstanceInfo, ProcessInfo) hold their raw record as ``base`` and add what the
exporter computes on top of it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence


class StateColor(str, Enum):
    """SAPControl health indicator."""
    GRAY = "SAPControl-GRAY"
    GREEN = "SAPControl-GREEN"
    YELLOW = "SAPControl-YELLOW"
    RED = "SAPControl-RED"


_STATE_CODES = {
    StateColor.GRAY: 1.0,
    StateColor.GREEN: 2.0,
    StateColor.YELLOW: 3.0,
    StateColor.RED: 4.0,
}

_STATE_LEVELS = {
    StateColor.GRAY: "unknown",
    StateColor.GREEN: "info",
    StateColor.YELLOW: "warning",
    StateColor.RED: "error",
}


def state_color_to_float(color: str) -> float:
    """
    Map a STATECOLOR string to its metric value (GRAY=1 .. RED=4).

    Raises:
        ValueError for anything that is not a known STATECOLOR.
    """
    try:
        return _STATE_CODES[StateColor(color)]
    except ValueError:
        raise ValueError(f"invalid STATECOLOR value: {color!r}") from None


def state_color_to_level(color: str) -> str:
    """Map a STATECOLOR string to a log level; unknown colors become 'alert'."""
    try:
        return _STATE_LEVELS[StateColor(color)]
    except ValueError:
        return "alert"


@dataclass(frozen=True)
class SAPInstance:
    """One entry of GetSystemInstanceList."""
    hostname: str
    instance_nr: int
    http_port: int = 0
    https_port: int = 0
    start_priority: str = ""
    features: str = ""
    dispstatus: str = ""


@dataclass(frozen=True)
class InstanceProperty:
    property: str
    propertytype: str = ""
    value: str = ""


@dataclass(frozen=True)
class InstanceProperties:
    """Identity of the instance behind one endpoint (GetCurrentInstance)."""
    sid: str = ""
    number: int = 0
    name: str = ""
    hostname: str = ""

    def __str__(self) -> str:
        return f"SID: {self.sid}, Name: {self.name}, Number: {self.number}, Hostname: {self.hostname}"


@dataclass(frozen=True)
class InstanceInfo:
    """A resolved instance, rebuilt from scratch on every directory refresh."""
    base: SAPInstance
    endpoint: str
    name: str = ""
    sid: str = ""
    status: float = 0.0
    last_scrape: Optional[datetime] = None
    scrape_success: bool = False
    last_error: str = ""

    @property
    def hostname(self) -> str:
        return self.base.hostname

    @property
    def instance_nr(self) -> int:
        return self.base.instance_nr

    @property
    def features(self) -> str:
        return self.base.features

    @property
    def start_priority(self) -> str:
        return self.base.start_priority

    @property
    def dispstatus(self) -> str:
        return self.base.dispstatus

    def common_labels(self) -> list[str]:
        """instance_name, instance_number, SID, instance_hostname label values."""
        return [self.name, str(self.instance_nr), self.sid, self.hostname]


@dataclass(frozen=True)
class InstanceDirectory:
    """A full topology snapshot of one system."""
    instances: Sequence[InstanceInfo]
    populated_at: datetime
    ttl_seconds: float


@dataclass(frozen=True)
class OSProcess:
    """One entry of GetProcessList."""
    name: str
    description: str = ""
    dispstatus: str = ""
    textstatus: str = ""
    starttime: str = ""
    elapsedtime: str = ""
    pid: int = 0


@dataclass(frozen=True)
class ProcessInfo:
    base: OSProcess
    status: float = 0.0

    @property
    def name(self) -> str:
        return self.base.name

    @property
    def dispstatus(self) -> str:
        return self.base.dispstatus


@dataclass(frozen=True)
class TaskHandlerQueue:
    """One dispatcher queue from GetQueueStatistic."""
    type: str
    now: int = 0
    high: int = 0
    max: int = 0
    writes: int = 0
    reads: int = 0


@dataclass(frozen=True)
class Alert:
    object: str = ""
    attribute: str = ""
    value: str = ""
    description: str = ""
    time: str = ""
    tid: str = ""
    aid: str = ""


@dataclass(frozen=True)
class WorkProcess:
    """One row of ABAPGetWPTable (all fields are strings on the wire)."""
    no: str = ""
    type: str = ""
    pid: str = ""
    status: str = ""
    reason: str = ""
    start: str = ""
    err: str = ""
    sem: str = ""
    cpu: str = ""
    time: str = ""
    program: str = ""
    client: str = ""
    user: str = ""
    action: str = ""
    table: str = ""


@dataclass(frozen=True)
class EnqueueStatistic:
    """EnqGetStatistic response."""
    owner_now: int = 0
    owner_high: int = 0
    owner_max: int = 0
    owner_state: str = ""
    arguments_now: int = 0
    arguments_high: int = 0
    arguments_max: int = 0
    arguments_state: str = ""
    locks_now: int = 0
    locks_high: int = 0
    locks_max: int = 0
    locks_state: str = ""
    enqueue_requests: int = 0
    enqueue_rejects: int = 0
    enqueue_errors: int = 0
    dequeue_requests: int = 0
    dequeue_errors: int = 0
    dequeue_all_requests: int = 0
    cleanup_requests: int = 0
    backup_requests: int = 0
    reporting_requests: int = 0
    compress_requests: int = 0
    verify_requests: int = 0
    lock_time: float = 0.0
    lock_wait_time: float = 0.0
    server_time: float = 0.0
    replication_state: str = ""
