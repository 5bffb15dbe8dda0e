# app.py
"""
Flask entrypoint for the SAP system exporter.

Routes:
  - /               landing page
  - /metrics        Prometheus exposition of all registered collectors
  - /health         liveness check
  - /api/instances  JSON view of the cached instance directory
  - /api/cache      JSON view of the cache counters

Notes:
  - All collectors share one instance directory cache and one process list cache,
    so a scrape costs at most one upstream refresh per TTL window.
  - The startup identity check against SAPControl runs in main(), not in create_app(),
    so importing this module never touches the network.
  - Importing this module builds nothing; the WSGI app lives in wsgi.py.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, PlatformCollector, ProcessCollector, generate_latest

from sap_exporter import __version__
from sap_exporter.cache import TTLCache
from sap_exporter.collectors import register_collectors
from sap_exporter.config import AppConfig, ConfigError, configure_logging, load_config
from sap_exporter.loki_client import LokiClient
from sap_exporter.sapcontrol_client import SAPControlClient, SAPControlError
from sap_exporter.services import InstanceDirectoryError, InstanceService, ProcessService, SidSlot

logger = logging.getLogger(__name__)

LANDING_PAGE = """<html>
<head><title>SAP System Exporter</title></head>
<body>
<h1>SAP System Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
<p><a href="/api/instances">Instances</a></p>
</body>
</html>
"""


def create_app(
    cfg: Optional[AppConfig] = None,
    client: Optional[SAPControlClient] = None,
    loki: Optional[LokiClient] = None,
) -> Flask:
    """
    App factory.

    Builds shared dependencies (client + caches + services + collectors) once per process.
    The wired objects are kept in ``app.extensions["sap_exporter"]``.
    """
    cfg = cfg or AppConfig()
    client = client or SAPControlClient.from_config(cfg)
    if loki is None:
        loki = LokiClient.from_config(cfg)

    instance_cache: TTLCache = TTLCache()
    process_cache: TTLCache = TTLCache()
    sid = SidSlot(cfg.sap_sid)

    instances = InstanceService(
        client=client,
        cache=instance_cache,
        sid=sid,
        ttl=cfg.cache_ttl,
        failure_ttl=cfg.failure_cache_ttl,
        use_ssl=cfg.use_ssl,
        host_domain=cfg.host_domain,
        max_fanout=cfg.max_fanout,
    )
    processes = ProcessService(
        client=client,
        cache=process_cache,
        ttl=cfg.cache_ttl,
        failure_ttl=cfg.failure_cache_ttl,
    )

    registry = CollectorRegistry()
    # Runtime metrics of the exporter itself only when debugging.
    if logging.getLogger().isEnabledFor(logging.DEBUG):
        ProcessCollector(registry=registry)
        PlatformCollector(registry=registry)
    caches = {"instances": instance_cache, "processes": process_cache}
    registered = register_collectors(registry, cfg, client, instances, processes, caches, loki=loki)
    logger.debug("Registered collectors: %s", ", ".join(registered))

    app = Flask(__name__)
    app.extensions["sap_exporter"] = {
        "config": cfg,
        "client": client,
        "loki": loki,
        "sid": sid,
        "instances": instances,
        "processes": processes,
        "caches": caches,
        "registry": registry,
    }

    def instance_to_dict(i) -> Dict[str, Any]:
        """Convert an InstanceInfo into a JSON-friendly dict."""
        return {
            "name": i.name,
            "sid": i.sid,
            "hostname": i.hostname,
            "instanceNr": i.instance_nr,
            "endpoint": i.endpoint,
            "features": i.features,
            "startPriority": i.start_priority,
            "dispstatus": i.dispstatus,
            "status": i.status,
            "lastScrape": i.last_scrape.isoformat() if i.last_scrape else None,
            "scrapeSuccess": i.scrape_success,
            "lastError": i.last_error,
        }

    @app.get("/")
    def landing():
        """Landing page with links."""
        return LANDING_PAGE

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""
        return Response(generate_latest(registry), headers={"Content-Type": CONTENT_TYPE_LATEST})

    @app.get("/api/instances")
    def api_instances():
        """
        Cached instance directory as JSON.

        Returns 503 while the instance list cannot be fetched.
        """
        deadline = time.monotonic() + cfg.scrape_timeout
        try:
            snapshot = instances.snapshot(deadline)
        except InstanceDirectoryError as exc:
            return jsonify({"error": str(exc), "instances": []}), 503

        out: List[Dict[str, Any]] = [instance_to_dict(i) for i in snapshot.instances]
        return jsonify(
            {
                "populatedAt": snapshot.populated_at.isoformat(),
                "ttlSeconds": snapshot.ttl_seconds,
                "sid": sid.get(),
                "instances": out,
            }
        )

    @app.get("/api/cache")
    def api_cache():
        """Cache counters as JSON."""
        return jsonify({name: dict(asdict(c.stats()), entries=len(c)) for name, c in caches.items()})

    @app.get("/health")
    def health():
        """Simple health endpoint for Docker/monitoring checks."""
        return {"ok": True}

    return app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Prometheus/Loki exporter for the SAPControl web service")
    parser.add_argument("--port", help="The port number to listen on for HTTP requests (default 9680)")
    parser.add_argument("--address", help="The address to listen on for HTTP requests (default 0.0.0.0)")
    parser.add_argument(
        "--log-level",
        help="The minimum logging level; levels are, in ascending order: debug, info, warn, error",
    )
    parser.add_argument(
        "--sap-control-url",
        help="The URL of the SAPControl SOAP web service, e.g. [https://]$HOST:$PORT. "
             "Port: 5xx13 (http) or 5xx14 (https). Point it at the central instance.",
    )
    parser.add_argument(
        "--host-domain",
        help="Domain appended to single-word SAP hostnames to make them FQDNs",
    )
    parser.add_argument(
        "--tls-skip-verify",
        help="For HTTPS, accept certificates signed by an unknown authority (yes/no)",
    )
    parser.add_argument(
        "--alert-samples-max-age",
        help='Oldest acceptable alert timestamp, back from now (e.g. "24h"); "-1s" for unlimited',
    )
    parser.add_argument("-c", "--config", help="Path to a YAML configuration file")
    parser.add_argument("--version", action="store_true", help="Show version information and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point: load config, check SAPControl, serve /metrics."""
    args = build_parser().parse_args(argv)
    if args.version:
        print(f"sap-system-exporter {__version__} (python {sys.version.split()[0]})")
        return 0

    configure_logging(args.log_level or os.getenv("LOG_LEVEL", "info"))
    try:
        cfg = load_config(
            args.config,
            overrides={
                "port": args.port,
                "address": args.address,
                "log_level": args.log_level,
                "sap_control_url": args.sap_control_url,
                "host_domain": args.host_domain,
                "tls_skip_verify": args.tls_skip_verify,
                "alert_samples_max_age": args.alert_samples_max_age,
            },
        )
    except ConfigError as exc:
        logger.critical("Could not initialize config: %s", exc)
        return 1
    configure_logging(cfg.log_level)

    logger.info(
        "Starting SAP System Exporter version=%s sap_control_url=%s loki_url=%s",
        __version__, cfg.sap_control_url, cfg.loki_url,
    )

    client = SAPControlClient.from_config(cfg)
    try:
        current = client.get_current_instance(deadline=time.monotonic() + cfg.scrape_timeout)
    except SAPControlError as exc:
        logger.critical("SAPControl web service error: %s", exc)
        return 1
    logger.info("Monitoring SAP Instance %s", current)

    application = create_app(cfg, client=client)
    wired = application.extensions["sap_exporter"]
    wired["sid"].set_if_empty(current.sid)

    logger.info("Serving metrics on %s:%s", cfg.address, cfg.port)
    try:
        application.run(host=cfg.address, port=cfg.port, threaded=True)
    finally:
        if wired["loki"] is not None:
            wired["loki"].shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
