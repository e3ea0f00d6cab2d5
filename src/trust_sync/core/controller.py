"""Bundle reconcile driver.

This module ties the engine together: each pass fetches a Bundle,
resolves its sources, encodes the additional formats, syncs every target
and records the outcome on the Bundle's ``Synced`` condition.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime

from icecream import ic
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from trust_sync import console
from trust_sync.bundle.package import DefaultPackage
from trust_sync.bundle.source import BundleResolver, utcnow
from trust_sync.bundle.status import CONDITION_FALSE, CONDITION_TRUE, bundle_has_condition, set_bundle_condition
from trust_sync.bundle.target import TargetSynchronizer
from trust_sync.bundle.truststore import encode_additional_formats
from trust_sync.core.cluster import Cluster
from trust_sync.core.events import EventRecorder
from trust_sync.exceptions import (
    BundleParsingError,
    ClusterConnectionError,
    EmptyBundleError,
    EncodingError,
    InvalidCertificateError,
    InvalidSecretError,
    NoDefaultPackageError,
    NotFoundError,
    TargetSyncError,
    TrustSyncError,
)
from trust_sync.models import CONDITION_SYNCED, Bundle, Condition, ReconcileResult

DEFAULT_TRUST_NAMESPACE = "cert-manager"

REASON_SYNCED = "Synced"
REASON_SOURCE_NOT_FOUND = "SourceNotFound"
REASON_SYNC_TARGET_FAILED = "SyncTargetFailed"
REASON_API_ERROR = "APIError"
REASON_INVALID_BUNDLE = "InvalidBundle"

# Condition reason recorded for each resolution or sync failure
_FAILURE_REASONS: dict[type[TrustSyncError], str] = {
    NotFoundError: REASON_SOURCE_NOT_FOUND,
    InvalidCertificateError: "InvalidCertificate",
    EmptyBundleError: "EmptyBundle",
    InvalidSecretError: "InvalidSecret",
    NoDefaultPackageError: "NoDefaultPackage",
    EncodingError: "EncodingError",
    TargetSyncError: REASON_SYNC_TARGET_FAILED,
}

_REQUEUE_ERRORS = (NotFoundError, TargetSyncError)


@dataclass(frozen=True, slots=True)
class ControllerOptions:
    """Runtime options of the reconcile driver.

    Attributes:
        trust_namespace: Namespace holding source ConfigMaps and Secrets.
        default_package_location: Path to the default CA package, if any.
        filter_expired_certs: Drop expired certificates from bundles.
        workers: Number of target objects written concurrently.
        interval: Seconds between reconcile passes.
        once: Run a single pass and exit.
        bundle: Only reconcile the Bundle with this name.
        request_timeout: Timeout in seconds for API calls.

    """

    trust_namespace: str = DEFAULT_TRUST_NAMESPACE
    default_package_location: str | None = None
    filter_expired_certs: bool = False
    workers: int = 4
    interval: float = 30.0
    once: bool = False
    bundle: str | None = None
    request_timeout: float | None = 30.0


def failure_reason(err: TrustSyncError) -> str:
    for error_type, reason in _FAILURE_REASONS.items():
        if isinstance(err, error_type):
            return reason
    return type(err).__name__.removesuffix("Error")


class BundleReconciler:
    """Reconciles Bundles against the cluster.

    Attributes:
        options: The driver options.
        resolver: Resolves Bundle sources.
        synchronizer: Writes targets.
        recorder: Emits events on Bundles.

    """

    def __init__(
        self,
        cluster: Cluster,
        options: ControllerOptions,
        *,
        default_package: DefaultPackage | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cluster = cluster
        self.options = options
        self._clock = clock
        self.recorder = EventRecorder(cluster.core_v1)
        self.resolver = BundleResolver(
            cluster.core_v1,
            options.trust_namespace,
            default_package=default_package,
            filter_expired=options.filter_expired_certs,
            clock=clock,
            request_timeout=options.request_timeout,
        )
        self.synchronizer = TargetSynchronizer(
            cluster.core_v1,
            self.recorder,
            workers=options.workers,
            request_timeout=options.request_timeout,
        )

    def __repr__(self) -> str:
        """Return a detailed string representation for debugging."""
        return f"BundleReconciler(cluster={self.cluster!r}, resolver={self.resolver!r})"

    def reconcile(self, name: str) -> ReconcileResult:
        """Run one reconcile pass for a Bundle.

        Resolution failures abort the pass before any target is written.

        Args:
            name: The Bundle name.

        Returns:
            The outcome of the pass. A Bundle that no longer exists is
            reported as synced without changes.

        Raises:
            ClusterConnectionError: If the cluster is unreachable.

        """
        try:
            bundle = self.cluster.get_bundle(name)
        except BundleParsingError as err:
            console.error(f"Bundle {name} is invalid: {err}")
            return ReconcileResult(name=name, synced=False, reason=REASON_INVALID_BUNDLE)
        except (ApiException, HTTPError) as err:
            console.error(f"Bundle {name}: failed to fetch Bundle: {err}")
            return ReconcileResult(name=name, synced=False, requeue=True, reason=REASON_API_ERROR)
        if bundle is None:
            ic(name)
            return ReconcileResult(name=name, synced=True)

        console.action(f"Reconciling Bundle {console.highlight(bundle.name)}")

        try:
            resolved = self.resolver.resolve(bundle.spec)
            resolved = replace(
                resolved, binary_data=encode_additional_formats(resolved.data, bundle.spec.target.additional_formats)
            )
            changed = self.synchronizer.sync(bundle, resolved)
        except TrustSyncError as err:
            reason = failure_reason(err)
            self.recorder.warning(bundle, reason, str(err))
            recorded = self._update_status(
                bundle, CONDITION_FALSE, reason, str(err), bundle.status.default_ca_version
            )
            return ReconcileResult(
                name=name, synced=False, requeue=isinstance(err, _REQUEUE_ERRORS) or not recorded, reason=reason
            )
        except (ApiException, HTTPError) as err:
            console.error(f"Bundle {bundle.name}: API request failed: {err}")
            return ReconcileResult(name=name, synced=False, requeue=True, reason=REASON_API_ERROR)

        message = "Successfully synced Bundle to all namespaces"
        if changed:
            self.recorder.normal(bundle, REASON_SYNCED, message)
        if not self._update_status(
            bundle, CONDITION_TRUE, REASON_SYNCED, message, resolved.default_ca_package_string_id or None
        ):
            return ReconcileResult(name=name, synced=False, changed=changed, requeue=True, reason=REASON_API_ERROR)
        return ReconcileResult(name=name, synced=True, changed=changed, reason=REASON_SYNCED)

    def _update_status(
        self, bundle: Bundle, status: str, reason: str, message: str, default_ca_version: str | None
    ) -> bool:
        """Patch the Bundle status, skipping the write when nothing changed.

        Returns:
            False if the status patch was rejected by the API server.

        """
        condition = Condition(
            type=CONDITION_SYNCED,
            status=status,
            reason=reason,
            message=message,
            observed_generation=bundle.generation,
        )
        if bundle_has_condition(bundle.status, condition) and bundle.status.default_ca_version == default_ca_version:
            return True

        new_status = set_bundle_condition(bundle.status, condition, self._clock())
        new_status = replace(new_status, default_ca_version=default_ca_version)
        try:
            self.cluster.patch_bundle_status(bundle.name, new_status)
        except (ApiException, HTTPError) as err:
            console.error(f"Bundle {bundle.name}: failed to update status: {err}")
            return False
        return True

    def reconcile_all(self) -> list[ReconcileResult]:
        """Reconcile every Bundle, or only the one named in the options.

        Raises:
            ApiException: If the Bundles cannot be listed.
            ClusterConnectionError: If the cluster is unreachable.

        """
        if self.options.bundle is not None:
            return [self.reconcile(self.options.bundle)]
        return [self.reconcile(bundle.name) for bundle in self.cluster.list_bundles()]

    def run(self, sleep: Callable[[float], None] = time.sleep) -> list[ReconcileResult]:
        """Reconcile repeatedly every ``interval`` seconds.

        Returns:
            The results of the last pass, when running with ``once``.

        Raises:
            ApiException: If the Bundles cannot be listed with ``once``.
            ClusterConnectionError: If the cluster is unreachable with ``once``.
                Without ``once`` both errors are reported and the pass retried.

        """
        while True:
            if self.options.once:
                return self.reconcile_all()
            try:
                results = self.reconcile_all()
            except (ApiException, HTTPError, ClusterConnectionError) as err:
                console.error(f"Reconcile pass failed: {err}")
                results = []
            requeued = [result.name for result in results if result.requeue]
            if requeued:
                console.warning(f"Retrying next pass: {', '.join(requeued)}")
            sleep(self.options.interval)
