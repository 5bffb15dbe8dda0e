# sap_exporter/__init__.py
"""
Prometheus/Loki exporter for the SAPControl web service.
"""

__version__ = "1.0.0"
