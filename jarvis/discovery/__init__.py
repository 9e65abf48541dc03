"""Multi-protocol network discovery and device classification."""

from .classifier import DeviceClassifier, Signature
from .inventory import DeviceInventory
from .models import Classification, Device, DiscoveryRecord, ScanResult, WebService
from .scanner import NetworkScanner

__all__ = [
    "Classification",
    "Device",
    "DeviceClassifier",
    "DeviceInventory",
    "DiscoveryRecord",
    "NetworkScanner",
    "ScanResult",
    "Signature",
    "WebService",
]
