"""trust-sync: keep CA trust bundles in sync across a Kubernetes cluster.

This package resolves Bundle resources into a canonical PEM trust bundle
and writes it, optionally with JKS and PKCS#12 encodings, into ConfigMaps
and Secrets in every selected namespace.

Example usage:
    from trust_sync import BundleReconciler, Cluster, ControllerOptions

    cluster = Cluster(context="staging")
    reconciler = BundleReconciler(cluster, ControllerOptions(once=True))
    results = reconciler.reconcile_all()
"""

__version__ = "0.1.0"

from trust_sync.cli import cli
from trust_sync.core.cluster import Cluster
from trust_sync.core.controller import BundleReconciler, ControllerOptions
from trust_sync.exceptions import (
    BundleParsingError,
    ClusterConnectionError,
    EmptyBundleError,
    EncodingError,
    InvalidCertificateError,
    InvalidSecretError,
    NoDefaultPackageError,
    NotFoundError,
    PackageLoadError,
    TargetSyncError,
    TrustSyncError,
)

__all__ = [
    # Version
    "__version__",
    # Main CLI
    "cli",
    # Classes
    "BundleReconciler",
    "Cluster",
    "ControllerOptions",
    # Exceptions
    "TrustSyncError",
    "BundleParsingError",
    "ClusterConnectionError",
    "EmptyBundleError",
    "EncodingError",
    "InvalidCertificateError",
    "InvalidSecretError",
    "NoDefaultPackageError",
    "NotFoundError",
    "PackageLoadError",
    "TargetSyncError",
]
