"""Core infrastructure subpackage.

This package contains cluster access, event recording and the reconcile
driver.
"""

from trust_sync.core.cluster import Cluster
from trust_sync.core.events import EventRecorder
from trust_sync.core.controller import BundleReconciler, ControllerOptions

__all__ = [
    "BundleReconciler",
    "Cluster",
    "ControllerOptions",
    "EventRecorder",
]
