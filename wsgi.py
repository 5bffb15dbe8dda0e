# wsgi.py
"""
WSGI entrypoint for gunicorn (CMD uses: wsgi:app).

Configuration comes from the environment and the default config file locations.
"""

from app import create_app
from sap_exporter.config import configure_logging, load_config

_cfg = load_config()
configure_logging(_cfg.log_level)

app = create_app(_cfg)
