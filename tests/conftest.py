import threading
import time
from collections import Counter

import pytest

from sap_exporter.cache import TTLCache
from sap_exporter.models import (
    Alert,
    EnqueueStatistic,
    InstanceProperty,
    OSProcess,
    SAPInstance,
    TaskHandlerQueue,
    WorkProcess,
)
from sap_exporter.sapcontrol_client import DeadlineExceeded, SAPControlError
from sap_exporter.services import InstanceService, ProcessService, SidSlot

DOMAIN = "corp.local"


class FakeClock:
    """Manually advanced replacement for time.monotonic."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_instances(n: int, features: str = "ABAP|GATEWAY|ICMAN|IGS"):
    return [
        SAPInstance(
            hostname=f"sapapp{i}",
            instance_nr=i,
            http_port=50013 + 100 * i,
            https_port=50014 + 100 * i,
            start_priority="3",
            features=features,
            dispstatus="SAPControl-GREEN",
        )
        for i in range(n)
    ]


def endpoint(i: int) -> str:
    return f"http://sapapp{i}.{DOMAIN}:{50013 + 100 * i}"


def properties(sid: str, name: str):
    return [
        InstanceProperty("SAPSYSTEMNAME", "Attribute", sid),
        InstanceProperty("INSTANCE_NAME", "Attribute", name),
        InstanceProperty("SAPLOCALHOST", "Attribute", "sapapp"),
    ]


class FakeSAPControl:
    """In-memory stand-in for SAPControlClient."""

    def __init__(self, instances=(), delay: float = 0.0, list_delay: float = 0.0) -> None:
        self.instances = list(instances)
        self.properties = {endpoint(i.instance_nr): properties("PRD", f"D{i.instance_nr:02d}") for i in self.instances}
        self.processes = {}
        self.queues = {}
        self.alerts = {}
        self.wp_tables = {}
        self.enqueue = {}
        self.fail_list = False
        self.fail_endpoints = set()
        self.delay = delay
        self.list_delay = list_delay

        self.calls = Counter()
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def _enter(self, name: str, ep: str = "", deadline=None) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            raise DeadlineExceeded(f"{name} failed, endpoint={ep}, err=deadline exceeded")
        with self._lock:
            self.calls[name] += 1
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if ep in self.fail_endpoints:
                raise SAPControlError(f"{name} failed, endpoint={ep}, err=connection refused")
        finally:
            with self._lock:
                self.active -= 1

    def get_system_instance_list(self, deadline=None):
        self._enter("GetSystemInstanceList", deadline=deadline)
        if self.list_delay:
            time.sleep(self.list_delay)
        if self.fail_list:
            raise SAPControlError("GetSystemInstanceList: failed to get instances from any endpoint")
        return list(self.instances)

    def get_instance_properties(self, ep, deadline=None):
        self._enter("GetInstanceProperties", ep, deadline)
        return self.properties.get(ep, [])

    def get_process_list(self, ep, deadline=None):
        self._enter("GetProcessList", ep, deadline)
        return self.processes.get(ep, [])

    def get_queue_statistic(self, ep, deadline=None):
        self._enter("GetQueueStatistic", ep, deadline)
        return self.queues.get(ep, [])

    def get_alerts(self, ep, deadline=None):
        self._enter("GetAlerts", ep, deadline)
        return self.alerts.get(ep, [])

    def abap_get_wp_table(self, ep, deadline=None):
        self._enter("ABAPGetWPTable", ep, deadline)
        return self.wp_tables.get(ep, [])

    def enq_get_statistic(self, ep, deadline=None):
        self._enter("EnqGetStatistic", ep, deadline)
        return self.enqueue.get(ep, EnqueueStatistic())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_client():
    return FakeSAPControl(make_instances(2))


@pytest.fixture
def make_services(clock):
    """Build (InstanceService, ProcessService) around a client with fake-clock caches."""

    def _make(client, sid: str = "", ttl: float = 30.0, failure_ttl: float = 5.0, max_fanout: int = 8):
        instances = InstanceService(
            client=client,
            cache=TTLCache(clock=clock),
            sid=SidSlot(sid),
            ttl=ttl,
            failure_ttl=failure_ttl,
            use_ssl=False,
            host_domain=DOMAIN,
            max_fanout=max_fanout,
        )
        processes = ProcessService(client=client, cache=TTLCache(clock=clock), ttl=ttl, failure_ttl=failure_ttl)
        return instances, processes

    return _make


def sample_processes():
    return [
        OSProcess(name="disp+work", description="Dispatcher", dispstatus="SAPControl-GREEN",
                  textstatus="Running", starttime="2024 01 31 08:00:00", elapsedtime="10:00:00", pid=1001),
        OSProcess(name="igswd_mt", description="IGS Watchdog", dispstatus="SAPControl-GREEN",
                  textstatus="Running", pid=1002),
        OSProcess(name="gwrd", description="Gateway", dispstatus="SAPControl-YELLOW",
                  textstatus="Running", pid=1003),
        OSProcess(name="icman", description="ICM", dispstatus="SAPControl-RED",
                  textstatus="Stopped", pid=1004),
    ]


def sample_queues():
    return [
        TaskHandlerQueue(type="ABAP/NOWP", now=1, high=7, max=14000, writes=100, reads=99),
        TaskHandlerQueue(type="ABAP/DIA", now=0, high=12, max=14000, writes=5000, reads=5000),
    ]


def sample_wp_table():
    return [
        WorkProcess(no="0", type="DIA", pid="2001", status="Run", cpu="12", time="35", client="100", user="DDIC"),
        WorkProcess(no="1", type="DIA", pid="2002", status="Wait", cpu="", time=""),
        WorkProcess(no="2", type="BTC", pid="2003", status="Wait", cpu="3", time=""),
    ]


def sample_alerts():
    return [
        Alert(object="R3Services", attribute="Dialog", value="SAPControl-RED",
              description="Response time too high", time="2024 01 31 13:45:00"),
        Alert(object="R3Services", attribute="Dialog", value="SAPControl-RED",
              description="Response time too high", time="2024 01 31 13:45:00"),
        Alert(object="OperatingSystem", attribute="CPU", value="SAPControl-YELLOW",
              description="CPU utilization high", time="2024 01 31 13:50:00"),
    ]
