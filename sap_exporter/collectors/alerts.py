# sap_exporter/collectors/alerts.py
"""
Alerts collector.

Open CCMS alerts of every instance are pushed to Loki as log lines (when a
Loki client is configured) and, optionally, exposed as a Prometheus gauge.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, tzinfo
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, TypeVar

from dateutil import tz

from ..loki_client import LokiClient
from ..models import state_color_to_float, state_color_to_level
from ..sapcontrol_client import SAPControlClient, SAPControlError
from ..services import InstanceService
from .base import INSTANCE_LABELS, DefaultCollector, MetricBatch

logger = logging.getLogger(__name__)

ALERT_TIME_FORMAT = "%Y %m %d %H:%M:%S"

H = TypeVar("H", bound=Hashable)


def remove_duplicates(items: Iterable[H]) -> List[H]:
    """Drop repeated items, keeping first-seen order."""
    return list(dict.fromkeys(items))


def parse_alert_time(raw: str, location: tzinfo) -> datetime:
    """Parse an alert timestamp ("2024 01 31 13:45:00") in the given zone."""
    return datetime.strptime(raw.strip(), ALERT_TIME_FORMAT).replace(tzinfo=location)


class AlertsCollector(DefaultCollector):

    def __init__(
        self,
        client: SAPControlClient,
        instances: InstanceService,
        loki: Optional[LokiClient] = None,
        send_to_prom: bool = False,
        samples_max_age: float = 24 * 3600.0,
        scrape_timeout: float = 30.0,
    ) -> None:
        super().__init__("alerts", scrape_timeout)
        self.client = client
        self.instances = instances
        self.loki = loki
        self.send_to_prom = send_to_prom
        self.samples_max_age = samples_max_age

        self.set_descriptor(
            "Alert",
            "SAP System open Alerts",
            ("Object", "Attribute", "Message", "ATime", "State", *INSTANCE_LABELS),
        )

    @property
    def location(self) -> tzinfo:
        return self.loki.location if self.loki is not None else tz.UTC

    def recorders(self):
        return (self.record_alerts,)

    def record_alerts(self, deadline: Optional[float], batch: MetricBatch) -> None:
        instances = self.instances.get_instances(deadline)
        logger.debug("record_alerts: instances in the list: %d", len(instances))

        for instance in instances:
            try:
                alerts = self.client.get_alerts(instance.endpoint, deadline)
            except SAPControlError as exc:
                logger.warning("GetAlerts: %s", exc)
                continue

            items = [(a.object, a.attribute, a.value, a.description, a.time) for a in alerts]
            if self.send_to_prom:
                items = remove_duplicates(items)
            logger.debug("Alerts in the list: %d", len(items))

            common = instance.common_labels()
            sent = 0
            for obj, attribute, value, description, atime in items:
                try:
                    state = state_color_to_float(value)
                except ValueError as exc:
                    logger.warning("record_alerts: alert state conversion %r: %s", value, exc)
                    continue

                labels = (obj, attribute, description, atime, value, *common)
                if self.send_to_prom:
                    batch.add("Alert", state, *labels)
                if self.loki is not None and self._push(labels, value):
                    sent += 1
            logger.debug("Alerts sent to loki: %d", sent)

    def _push(self, labels: Sequence[str], color: str) -> bool:
        """Send one alert line to Loki. Returns False when it was too old to send."""
        label_set: Dict[str, str] = dict(zip(self.get_descriptor("Alert").labels, labels))
        message = label_set.pop("Message")
        atime = label_set.pop("ATime")

        now = datetime.now(tz=self.location)
        try:
            ts = parse_alert_time(atime, self.location)
        except ValueError as exc:
            logger.warning("Alert ATime parsing: %s", exc)
            ts = now

        if self.samples_max_age >= 0 and now - ts > timedelta(seconds=self.samples_max_age):
            logger.info("Alert entry too far behind, ts=%s", ts.isoformat())
            return False

        label_set["level"] = state_color_to_level(color)
        self.loki.push(label_set, ts, message)
        return True
