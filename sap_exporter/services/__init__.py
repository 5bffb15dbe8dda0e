# sap_exporter/services/__init__.py
"""
Services package exports.
"""
from .instance_service import InstanceDirectoryError, InstanceService, SidSlot
from .process_service import ProcessListError, ProcessService

__all__ = ["InstanceDirectoryError", "InstanceService", "ProcessListError", "ProcessService", "SidSlot"]
