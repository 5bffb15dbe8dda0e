import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from sap_exporter.cache import TTLCache
from sap_exporter.models import SAPInstance
from sap_exporter.sapcontrol_client import SAPControlClient
from sap_exporter.services import InstanceDirectoryError, InstanceService, SidSlot
from sap_exporter.services.instance_service import CACHE_KEY

from .conftest import FakeSAPControl, endpoint, make_instances


def test_partial_failure_keeps_every_instance(make_services):
    client = FakeSAPControl(make_instances(5))
    client.fail_endpoints = {endpoint(1), endpoint(3)}
    instances, _ = make_services(client)

    result = instances.get_instances()

    assert [i.instance_nr for i in result] == [0, 1, 2, 3, 4]
    failed = [i for i in result if not i.scrape_success]
    assert [i.name for i in failed] == ["1", "3"]
    assert all("connection refused" in i.last_error for i in failed)
    assert all(i.last_scrape is not None for i in result)

    ok = [i for i in result if i.scrape_success]
    assert [i.name for i in ok] == ["D00", "D02", "D04"]
    assert all(i.sid == "PRD" for i in result)
    assert all(i.last_error == "" for i in ok)


def test_directory_is_cached_for_the_ttl(make_services, clock):
    client = FakeSAPControl(make_instances(3))
    instances, _ = make_services(client, ttl=30)

    first = instances.snapshot()
    clock.advance(29)
    assert instances.snapshot() is first
    assert client.calls["GetSystemInstanceList"] == 1
    assert client.calls["GetInstanceProperties"] == 3

    clock.advance(2)
    assert instances.snapshot() is not first
    assert client.calls["GetSystemInstanceList"] == 2


def test_concurrent_callers_share_one_refresh(make_services):
    client = FakeSAPControl(make_instances(4), delay=0.05)
    instances, _ = make_services(client)
    barrier = threading.Barrier(10)

    def worker():
        barrier.wait()
        return instances.get_instances()

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = [f.result() for f in [pool.submit(worker) for _ in range(10)]]

    assert client.calls["GetSystemInstanceList"] == 1
    assert client.calls["GetInstanceProperties"] == 4
    assert all(r == results[0] for r in results)


def test_total_failure_raises_and_is_remembered_briefly(make_services, clock):
    client = FakeSAPControl(make_instances(2))
    client.fail_list = True
    instances, _ = make_services(client, failure_ttl=5)

    with pytest.raises(InstanceDirectoryError, match="failed to get instances"):
        instances.get_instances()
    with pytest.raises(InstanceDirectoryError):
        instances.get_instances()
    assert client.calls["GetSystemInstanceList"] == 1

    client.fail_list = False
    clock.advance(6)
    assert len(instances.get_instances()) == 2
    assert client.calls["GetSystemInstanceList"] == 2


def test_failure_is_not_cached_without_failure_ttl(make_services):
    client = FakeSAPControl(make_instances(2))
    client.fail_list = True
    instances, _ = make_services(client, failure_ttl=0)

    for _ in range(2):
        with pytest.raises(InstanceDirectoryError):
            instances.get_instances()
    assert client.calls["GetSystemInstanceList"] == 2
    assert instances.cache.get(CACHE_KEY) is None


def test_properties_fan_out_is_bounded(make_services):
    client = FakeSAPControl(make_instances(6), delay=0.1)
    instances, _ = make_services(client, max_fanout=3)

    instances.get_instances()

    assert 1 < client.peak <= 3


def test_sid_is_backfilled_from_first_resolved_instance(make_services):
    client = FakeSAPControl(make_instances(3))
    client.fail_endpoints = {endpoint(0)}
    instances, _ = make_services(client, sid="")

    result = instances.get_instances()

    assert instances.sid.get() == "PRD"
    assert result[0].scrape_success is False
    assert result[0].sid == "PRD"


def test_configured_sid_is_not_replaced(make_services):
    client = FakeSAPControl(make_instances(2))
    instances, _ = make_services(client, sid="QAS")

    result = instances.get_instances()

    assert instances.sid.get() == "QAS"
    # resolved instances keep what they reported
    assert {i.sid for i in result} == {"PRD"}


def test_invalid_dispstatus_gives_zero_status(make_services):
    base = make_instances(1)[0]
    client = FakeSAPControl([SAPInstance(hostname=base.hostname, instance_nr=0, http_port=base.http_port,
                                         dispstatus="SAPControl-PURPLE")])
    instances, _ = make_services(client)

    assert instances.get_instances()[0].status == 0.0


def test_status_follows_state_color(make_services):
    client = FakeSAPControl(make_instances(1))
    instances, _ = make_services(client)

    assert instances.get_instances()[0].status == 2.0


@pytest.mark.parametrize(
    "hostname, use_ssl, domain, expected",
    [
        ("sapapp1", False, "corp.local", "http://sapapp1.corp.local:50113"),
        ("sapapp1", True, "corp.local", "https://sapapp1.corp.local:50114"),
        ("sapapp1.other.net", False, "corp.local", "http://sapapp1.other.net:50113"),
        ("sapapp1", False, "", "http://sapapp1:50113"),
    ],
)
def test_endpoint_for(hostname, use_ssl, domain, expected, fake_client):
    service = InstanceService(
        client=fake_client,
        cache=TTLCache(),
        sid=SidSlot(),
        use_ssl=use_ssl,
        host_domain=domain,
    )
    instance = SAPInstance(hostname=hostname, instance_nr=1, http_port=50113, https_port=50114)

    assert service.endpoint_for(instance) == expected


def test_sid_slot_first_writer_wins():
    slot = SidSlot()
    assert slot.set_if_empty("") is False
    assert slot.set_if_empty("PRD") is True
    assert slot.set_if_empty("QAS") is False
    assert slot.get() == "PRD"


def test_deadline_expiring_during_fan_out_marks_every_instance(make_services):
    client = FakeSAPControl(make_instances(3), list_delay=0.2)
    instances, _ = make_services(client)

    result = instances.get_instances(deadline=time.monotonic() + 0.1)

    assert len(result) == 3
    assert all(not i.scrape_success for i in result)
    assert all("GetInstanceProperties failed" in i.last_error for i in result)
    assert all("deadline exceeded" in i.last_error for i in result)
    assert [i.name for i in result] == ["0", "1", "2"]


def test_expired_deadline_fails_the_directory(make_services):
    client = FakeSAPControl(make_instances(2))
    instances, _ = make_services(client)

    with pytest.raises(InstanceDirectoryError, match="GetSystemInstanceList failed.*deadline exceeded"):
        instances.get_instances(deadline=time.monotonic() - 1)
    assert client.calls["GetInstanceProperties"] == 0


def test_expired_deadline_names_the_call_with_real_client(clock):
    service = InstanceService(
        client=SAPControlClient("http://sapci.corp.local:50013"),
        cache=TTLCache(clock=clock),
        sid=SidSlot(),
        failure_ttl=0,
    )

    with pytest.raises(InstanceDirectoryError, match=r"GetSystemInstanceList failed, endpoint=http://sapci"):
        service.get_instances(deadline=time.monotonic() - 1)
