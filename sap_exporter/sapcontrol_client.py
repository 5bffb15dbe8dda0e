# sap_exporter/sapcontrol_client.py
"""
Thin SOAP client for the SAPControl web service (sapstartsrv).

Requests are plain SOAP 1.1 envelopes POSTed with ``requests``; responses are
parsed with ElementTree into the records in ``models``. Every call takes an
optional ``deadline`` (a ``time.monotonic()`` timestamp) and uses whatever is
left of it as the HTTP timeout.
"""

from __future__ import annotations

import logging
import time
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, Tuple

import requests

from .config import AppConfig
from .models import (
    Alert,
    EnqueueStatistic,
    InstanceProperties,
    InstanceProperty,
    OSProcess,
    SAPInstance,
    TaskHandlerQueue,
    WorkProcess,
)

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SAPCONTROL_NS = "urn:SAPControl"
ACCESS_POINT = "/sap/bc/soap/rfc"

# Tried in order for the system-wide instance list.
SYSTEM_LIST_PATHS = (ACCESS_POINT, "/SAPControl.cgi", "/sap/bc/webdynpro/sap/dba_control")

ET.register_namespace("SOAP-ENV", SOAP_ENV_NS)
ET.register_namespace("ns", SAPCONTROL_NS)


class SAPControlError(Exception):
    """A SAPControl call failed (transport, HTTP status, SOAP fault or bad payload)."""


class DeadlineExceeded(SAPControlError):
    """The caller's deadline ran out before the call could be made."""


def safe_int(v, default=0) -> int:
    """Convert a value to int safely; return default on failures."""
    try:
        return int(v)
    except Exception:
        return default


def safe_float(v, default=0.0) -> float:
    try:
        return float(v)
    except Exception:
        return default


def remaining(deadline: Optional[float], default: float) -> float:
    """
    Seconds left until ``deadline``, or ``default`` when there is no deadline.

    Raises:
        DeadlineExceeded if the deadline has already passed.
    """
    if deadline is None:
        return default
    left = deadline - time.monotonic()
    if left <= 0:
        raise DeadlineExceeded("deadline exceeded")
    return left


def _local(tag: str) -> str:
    """Strip the {namespace} part of an element tag."""
    return tag.rsplit("}", 1)[-1]


def _fields(el: ET.Element) -> Dict[str, str]:
    """Map child local names to their text."""
    return {_local(child.tag): (child.text or "").strip() for child in el}


def _items(response: ET.Element, list_name: str) -> List[Dict[str, str]]:
    """Return the ``<list_name><item>..</item></list_name>`` rows of a response."""
    for child in response:
        if _local(child.tag) == list_name:
            return [_fields(item) for item in child if _local(item.tag) == "item"]
    return []


def build_envelope(method: str, params: Optional[Dict[str, Any]] = None) -> bytes:
    """Serialize a SOAP 1.1 request for a SAPControl method."""
    envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
    body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    call = ET.SubElement(body, f"{{{SAPCONTROL_NS}}}{method}")
    for name, value in (params or {}).items():
        ET.SubElement(call, name).text = str(value)
    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def parse_envelope(payload: bytes) -> ET.Element:
    """
    Return the first element inside the SOAP Body.

    Raises:
        SAPControlError on malformed XML, a missing Body or a SOAP fault.
    """
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as exc:
        raise SAPControlError(f"invalid SOAP response: {exc}") from exc

    body = root.find(f"{{{SOAP_ENV_NS}}}Body")
    if body is None or len(body) == 0:
        raise SAPControlError("SOAP response has no Body")

    response = body[0]
    if _local(response.tag) == "Fault":
        f = _fields(response)
        raise SAPControlError(f"SOAP fault: {f.get('faultstring') or f.get('faultcode') or 'unknown'}")
    return response


class SAPControlClient:
    """A minimal client for the SAPControl SOAP operations the exporter uses."""

    def __init__(
        self,
        base_url: str,
        auth: Optional[Tuple[str, str]] = None,
        verify: bool = True,
        timeout: float = 30.0,
    ) -> None:
        """Store the central instance URL and request options."""
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.verify = verify
        self.timeout = timeout
        self._headers = {"User-Agent": "sap-system-exporter/1.0", "Content-Type": "text/xml; charset=utf-8"}

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "SAPControlClient":
        return cls(
            cfg.sap_control_url,
            auth=cfg.basic_auth,
            verify=not cfg.tls_skip_verify,
            timeout=cfg.scrape_timeout,
        )

    def call(
        self,
        url: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        deadline: Optional[float] = None,
    ) -> ET.Element:
        """
        POST a SOAP request to ``url`` and return the response element.

        Raises:
            SAPControlError (or DeadlineExceeded) with the method and URL in the message.
        """
        try:
            timeout = remaining(deadline, self.timeout)
        except DeadlineExceeded as exc:
            raise DeadlineExceeded(f"{method} failed, endpoint={url}, err={exc}") from exc
        headers = dict(self._headers, SOAPAction=f'"{method}"')
        try:
            r = requests.post(
                url,
                data=build_envelope(method, params),
                headers=headers,
                auth=self.auth,
                verify=self.verify,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise SAPControlError(f"{method} failed, endpoint={url}, err={exc}") from exc

        # Faults arrive as HTTP 500 with a SOAP body, so parse before checking the status.
        try:
            response = parse_envelope(r.content)
        except SAPControlError as exc:
            if r.status_code >= 400:
                raise SAPControlError(f"{method} failed, endpoint={url}, err=HTTP {r.status_code}: {exc}") from exc
            raise SAPControlError(f"{method} failed, endpoint={url}, err={exc}") from exc
        try:
            r.raise_for_status()
        except requests.HTTPError as exc:
            raise SAPControlError(f"{method} failed, endpoint={url}, err={exc}") from exc
        return response

    def _instance_call(self, endpoint: str, method: str, deadline: Optional[float]) -> ET.Element:
        return self.call(f"{endpoint.rstrip('/')}{ACCESS_POINT}", method, deadline=deadline)

    def get_system_instance_list(self, deadline: Optional[float] = None) -> List[SAPInstance]:
        """
        Fetch all instances of the system from the central instance.

        The known access points are tried in order; the first one that answers
        with a non-empty list wins.
        """
        errors: List[str] = []
        for path in SYSTEM_LIST_PATHS:
            url = f"{self.base_url}{path}"
            try:
                response = self.call(url, "GetSystemInstanceList", deadline=deadline)
            except DeadlineExceeded as exc:
                if not errors:
                    raise
                raise DeadlineExceeded(
                    "GetSystemInstanceList: failed to get instances from any endpoint: "
                    + ", ".join([*errors, str(exc)])
                ) from exc
            except SAPControlError as exc:
                errors.append(str(exc))
                continue

            rows = _items(response, "instance")
            if not rows:
                errors.append(f"no instances found at {url}")
                continue

            logger.debug("Got instance list from endpoint %s", url)
            return [
                SAPInstance(
                    hostname=row.get("hostname", ""),
                    instance_nr=safe_int(row.get("instanceNr")),
                    http_port=safe_int(row.get("httpPort")),
                    https_port=safe_int(row.get("httpsPort")),
                    start_priority=row.get("startPriority", ""),
                    features=row.get("features", ""),
                    dispstatus=row.get("dispstatus", ""),
                )
                for row in rows
            ]

        raise SAPControlError(
            "GetSystemInstanceList: failed to get instances from any endpoint: " + ", ".join(errors)
        )

    def get_instance_properties(self, endpoint: str, deadline: Optional[float] = None) -> List[InstanceProperty]:
        """Fetch the property list of the instance behind ``endpoint``."""
        response = self._instance_call(endpoint, "GetInstanceProperties", deadline)
        return [
            InstanceProperty(
                property=row.get("property", ""),
                propertytype=row.get("propertytype", ""),
                value=row.get("value", ""),
            )
            for row in _items(response, "properties")
        ]

    def get_current_instance(self, endpoint: Optional[str] = None, deadline: Optional[float] = None) -> InstanceProperties:
        """
        Resolve SID, number, name and hostname of one instance (default: the central one).

        Raises:
            SAPControlError if the call fails or SAPSYSTEM is not a number.
        """
        props = self.get_instance_properties(endpoint or self.base_url, deadline)
        values = {p.property: p.value for p in props}

        raw_nr = values.get("SAPSYSTEM", "0") or "0"
        try:
            number = int(raw_nr)
        except ValueError as exc:
            raise SAPControlError(f"GetCurrentInstance: instance number parse: {raw_nr}") from exc

        return InstanceProperties(
            sid=values.get("SAPSYSTEMNAME", ""),
            number=number,
            name=values.get("INSTANCE_NAME", ""),
            hostname=values.get("SAPLOCALHOST", ""),
        )

    def get_process_list(self, endpoint: str, deadline: Optional[float] = None) -> List[OSProcess]:
        """Processes started by the start service of one instance."""
        response = self._instance_call(endpoint, "GetProcessList", deadline)
        return [
            OSProcess(
                name=row.get("name", ""),
                description=row.get("description", ""),
                dispstatus=row.get("dispstatus", ""),
                textstatus=row.get("textstatus", ""),
                starttime=row.get("starttime", ""),
                elapsedtime=row.get("elapsedtime", ""),
                pid=safe_int(row.get("pid")),
            )
            for row in _items(response, "process")
        ]

    def get_queue_statistic(self, endpoint: str, deadline: Optional[float] = None) -> List[TaskHandlerQueue]:
        """Dispatcher / ICM queue statistics (similar to dpmon)."""
        response = self._instance_call(endpoint, "GetQueueStatistic", deadline)
        return [
            TaskHandlerQueue(
                type=row.get("Typ", ""),
                now=safe_int(row.get("Now")),
                high=safe_int(row.get("High")),
                max=safe_int(row.get("Max")),
                writes=safe_int(row.get("Writes")),
                reads=safe_int(row.get("Reads")),
            )
            for row in _items(response, "queue")
        ]

    def get_alerts(self, endpoint: str, deadline: Optional[float] = None) -> List[Alert]:
        """Currently open CCMS alerts of one instance."""
        response = self._instance_call(endpoint, "GetAlerts", deadline)
        return [
            Alert(
                object=row.get("Object", ""),
                attribute=row.get("Attribute", ""),
                value=row.get("Value", ""),
                description=row.get("Description", ""),
                time=row.get("Time", ""),
                tid=row.get("Tid", ""),
                aid=row.get("Aid", ""),
            )
            for row in _items(response, "alert")
        ]

    def abap_get_wp_table(self, endpoint: str, deadline: Optional[float] = None) -> List[WorkProcess]:
        """ABAP work process table of one instance."""
        response = self._instance_call(endpoint, "ABAPGetWPTable", deadline)
        return [
            WorkProcess(
                no=row.get("No", ""),
                type=row.get("Typ", ""),
                pid=row.get("Pid", ""),
                status=row.get("Status", ""),
                reason=row.get("Reason", ""),
                start=row.get("Start", ""),
                err=row.get("Err", ""),
                sem=row.get("Sem", ""),
                cpu=row.get("Cpu", ""),
                time=row.get("Time", ""),
                program=row.get("Program", ""),
                client=row.get("Client", ""),
                user=row.get("User", ""),
                action=row.get("Action", ""),
                table=row.get("Table", ""),
            )
            for row in _items(response, "workprocess")
        ]

    def enq_get_statistic(self, endpoint: str, deadline: Optional[float] = None) -> EnqueueStatistic:
        """Enqueue server statistics of one instance."""
        response = self._instance_call(endpoint, "EnqGetStatistic", deadline)

        # The counters sit either directly in the response or in one wrapper element.
        holder = next(
            (el for el in response.iter() if any(_local(c.tag) == "owner-now" for c in el)),
            response,
        )
        f = _fields(holder)

        return EnqueueStatistic(
            owner_now=safe_int(f.get("owner-now")),
            owner_high=safe_int(f.get("owner-high")),
            owner_max=safe_int(f.get("owner-max")),
            owner_state=f.get("owner-state", ""),
            arguments_now=safe_int(f.get("arguments-now")),
            arguments_high=safe_int(f.get("arguments-high")),
            arguments_max=safe_int(f.get("arguments-max")),
            arguments_state=f.get("arguments-state", ""),
            locks_now=safe_int(f.get("locks-now")),
            locks_high=safe_int(f.get("locks-high")),
            locks_max=safe_int(f.get("locks-max")),
            locks_state=f.get("locks-state", ""),
            enqueue_requests=safe_int(f.get("enqueue-requests")),
            enqueue_rejects=safe_int(f.get("enqueue-rejects")),
            enqueue_errors=safe_int(f.get("enqueue-errors")),
            dequeue_requests=safe_int(f.get("dequeue-requests")),
            dequeue_errors=safe_int(f.get("dequeue-errors")),
            dequeue_all_requests=safe_int(f.get("dequeue-all-requests")),
            cleanup_requests=safe_int(f.get("cleanup-requests")),
            backup_requests=safe_int(f.get("backup-requests")),
            reporting_requests=safe_int(f.get("reporting-requests")),
            compress_requests=safe_int(f.get("compress-requests")),
            verify_requests=safe_int(f.get("verify-requests")),
            lock_time=safe_float(f.get("lock-time")),
            lock_wait_time=safe_float(f.get("lock-wait-time")),
            server_time=safe_float(f.get("server-time")),
            replication_state=f.get("replication-state", ""),
        )
