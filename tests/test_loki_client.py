import threading
from datetime import datetime, timedelta

import pytest
import requests
from dateutil import tz

from sap_exporter.config import AppConfig
from sap_exporter.loki_client import LogEntry, LokiClient, build_push_payload

T0 = datetime(2024, 1, 31, 13, 45, tzinfo=tz.UTC)


def test_payload_groups_streams_and_sorts_values():
    red = {"Object": "R3Services", "level": "error"}
    green = {"Object": "Disk", "level": "info"}
    entries = [
        LogEntry(red, T0 + timedelta(seconds=2), "second"),
        LogEntry(green, T0, "disk ok"),
        LogEntry(dict(reversed(list(red.items()))), T0, "first"),
    ]

    payload = build_push_payload(entries, job="sap_alerts")

    streams = {s["stream"]["Object"]: s for s in payload["streams"]}
    assert set(streams) == {"R3Services", "Disk"}
    assert streams["R3Services"]["stream"]["job"] == "sap_alerts"
    assert [v[1] for v in streams["R3Services"]["values"]] == ["first", "second"]
    assert streams["Disk"]["values"] == [[str(int(T0.timestamp()) * 1_000_000_000), "disk ok"]]


def test_payload_keeps_an_explicit_job_label():
    payload = build_push_payload([LogEntry({"job": "custom"}, T0, "x")], job="sap_alerts")

    assert payload["streams"][0]["stream"] == {"job": "custom"}


@pytest.fixture
def pushes(monkeypatch):
    sent = []
    done = threading.Event()

    class Response:
        def __init__(self, status_code):
            self.status_code = status_code

        def raise_for_status(self):
            if self.status_code >= 400:
                raise requests.HTTPError(f"{self.status_code} Client Error")

    def fake_post(url, json=None, headers=None, timeout=None):
        sent.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        done.set()
        return Response(204)

    monkeypatch.setattr(requests, "post", fake_post)
    return sent, done


def test_full_batch_is_sent(pushes):
    sent, done = pushes
    client = LokiClient("http://loki:3100/loki/api/v1/push", tenant_id="ops", batch_wait=60, batch_entries=2)

    client.push({"level": "info"}, T0, "one")
    client.push({"level": "info"}, T0, "two")

    assert done.wait(5)
    client.shutdown()
    assert len(sent) == 1
    assert sent[0]["headers"] == {"X-Scope-OrgID": "ops"}
    assert [v[1] for v in sent[0]["json"]["streams"][0]["values"]] == ["one", "two"]


def test_shutdown_flushes_partial_batch(pushes):
    sent, _ = pushes
    client = LokiClient("http://loki:3100/loki/api/v1/push", batch_wait=60, batch_entries=100)

    client.push({"level": "warning"}, T0, "pending")
    client.shutdown()

    assert len(sent) == 1
    assert sent[0]["json"]["streams"][0]["values"][0][1] == "pending"


def test_batch_is_sent_after_wait(pushes):
    sent, done = pushes
    client = LokiClient("http://loki:3100/loki/api/v1/push", batch_wait=0.05, batch_entries=100)

    client.push({"level": "info"}, T0, "late")

    assert done.wait(5)
    client.shutdown()
    assert len(sent) == 1


def test_push_errors_are_logged(monkeypatch, caplog):
    done = threading.Event()

    def failing_post(*args, **kwargs):
        done.set()
        raise requests.ConnectionError("loki unreachable")

    monkeypatch.setattr(requests, "post", failing_post)
    client = LokiClient("http://loki:3100/loki/api/v1/push", batch_entries=1)

    client.push({"level": "error"}, T0, "lost")
    assert done.wait(5)
    client.shutdown()

    assert "loki unreachable" in caplog.text


def test_from_config():
    url = "http://sapci.corp.local:50013"
    assert LokiClient.from_config(AppConfig(sap_control_url=url, loki_url="")) is None

    client = LokiClient.from_config(
        AppConfig(
            sap_control_url=url,
            loki_url="http://loki:3100/loki/api/v1/push",
            loki_batch_wait=250,
            loki_http_timeout=0,
            loki_time_location="Not/AZone",
        )
    )
    try:
        assert client.batch_wait == 0.25
        assert client.timeout == 1.0
        assert client.location is tz.UTC
    finally:
        client.shutdown()
