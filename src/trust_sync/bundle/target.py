"""Target synchronization.

This module writes a resolved Bundle into a ConfigMap and/or Secret named
after the Bundle in every selected namespace. Each (namespace, kind) pair
is reconciled independently:

* objects are created or updated with server-side apply,
* objects already up to date are left alone, so repeated passes issue no
  writes,
* objects are deleted from namespaces that are no longer selected,
* objects not controlled by the Bundle are never written or deleted.
"""

import base64
import hashlib
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

from icecream import ic
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from trust_sync import console
from trust_sync.bundle.ssa import FIELD_MANAGER, managed_fields_patch, owned_keys, upgrade_managed_fields
from trust_sync.core.events import EventRecorder
from trust_sync.exceptions import TargetSyncError, TrustSyncError
from trust_sync.models import (
    API_GROUP,
    API_VERSION,
    BUNDLE_HASH_ANNOTATION_KEY,
    BUNDLE_KIND,
    BUNDLE_LABEL_KEY,
    Bundle,
    ResolvedBundle,
    TargetKind,
)

APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"
JSON_PATCH_CONTENT_TYPE = "application/json-patch+json"

REASON_NOT_OWNED = "NotOwned"

_NAMESPACE_TERMINATING = "Terminating"

# Top-level fields holding bundle data, per target kind
_DATA_FIELDS: dict[TargetKind, tuple[str, ...]] = {
    TargetKind.CONFIG_MAP: ("data", "binaryData"),
    TargetKind.SECRET: ("data",),
}


def is_controlled_by(obj: Any, bundle: Bundle) -> bool:
    """Check whether an object carries a controller reference to the Bundle."""
    for ref in obj.metadata.owner_references or []:
        if not ref.controller or ref.kind != BUNDLE_KIND:
            continue
        if bundle.uid and ref.uid == bundle.uid:
            return True
        if not bundle.uid and ref.name == bundle.name:
            return True
    return False


def target_hash(kind: TargetKind, bundle: Bundle, resolved: ResolvedBundle) -> str:
    """Compute the hash annotation of a target object.

    The digest starts from the canonical bundle and also covers the
    keystore passwords, the PKCS#12 profile and the template labels and
    annotations, so changing any of them rewrites the targets. Without
    additional formats or template metadata it equals ``resolved.hash``.

    Args:
        kind: ConfigMap or Secret.
        bundle: The owning Bundle.
        resolved: The resolved bundle.

    Returns:
        The sha256 hex digest.

    """
    digest = hashlib.sha256(resolved.data.encode())

    formats = bundle.spec.target.additional_formats
    if formats is not None:
        if formats.jks is not None:
            digest.update(formats.jks.password.encode())
        if formats.pkcs12 is not None:
            digest.update(formats.pkcs12.password.encode())
            digest.update(formats.pkcs12.profile.value.encode())

    template = bundle.spec.target.for_kind(kind)
    if template is not None:
        # sorted so the digest doesn't depend on mapping order
        for key, value in sorted(template.metadata.annotations.items()):
            digest.update(f"{key}={value}\n".encode())
        for key, value in sorted(template.metadata.labels.items()):
            digest.update(f"{key}={value}\n".encode())

    return digest.hexdigest()


def desired_metadata(kind: TargetKind, bundle: Bundle, resolved: ResolvedBundle) -> tuple[dict[str, str], dict[str, str]]:
    """Return the labels and annotations a target object must carry."""
    template = bundle.spec.target.for_kind(kind)
    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}
    if template is not None:
        labels.update(template.metadata.labels)
        annotations.update(template.metadata.annotations)
    labels[BUNDLE_LABEL_KEY] = bundle.name
    annotations[BUNDLE_HASH_ANNOTATION_KEY] = target_hash(kind, bundle, resolved)
    return labels, annotations


def expected_keys(kind: TargetKind, bundle: Bundle) -> set[str]:
    """Return the data keys the field manager should own on a target."""
    template = bundle.spec.target.for_kind(kind)
    if template is None:
        return set()
    return {template.key} | bundle.spec.target.format_keys()


def build_target_object(kind: TargetKind, namespace: str, bundle: Bundle, resolved: ResolvedBundle) -> dict[str, Any]:
    """Build the full apply configuration for one target object.

    Args:
        kind: ConfigMap or Secret.
        namespace: Namespace the object is written to.
        bundle: The owning Bundle.
        resolved: The resolved bundle, with additional formats encoded.

    Returns:
        The object as a dict, ready for server-side apply.

    Raises:
        ValueError: If the Bundle has no target of this kind.

    """
    template = bundle.spec.target.for_kind(kind)
    if template is None:
        raise ValueError(f"Bundle {bundle.name} has no {kind.value} target")

    labels, annotations = desired_metadata(kind, bundle, resolved)
    obj: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": kind.value,
        "metadata": {
            "name": bundle.name,
            "namespace": namespace,
            "labels": labels,
            "annotations": annotations,
            "ownerReferences": [
                {
                    "apiVersion": f"{API_GROUP}/{API_VERSION}",
                    "kind": BUNDLE_KIND,
                    "name": bundle.name,
                    "uid": bundle.uid,
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ],
        },
    }

    binary_data = {key: base64.b64encode(value).decode() for key, value in resolved.binary_data.items()}
    match kind:
        case TargetKind.CONFIG_MAP:
            obj["data"] = {template.key: resolved.data}
            if binary_data:
                obj["binaryData"] = binary_data
        case TargetKind.SECRET:
            obj["data"] = {template.key: base64.b64encode(resolved.data.encode()).decode(), **binary_data}

    return obj


class TargetSynchronizer:
    """Writes resolved Bundles to their target ConfigMaps and Secrets.

    Attributes:
        workers: Maximum number of target objects written concurrently.

    """

    def __init__(
        self,
        core_v1_api: client.CoreV1Api,
        recorder: EventRecorder,
        *,
        workers: int = 4,
        request_timeout: float | None = None,
    ) -> None:
        self._core_v1_api = core_v1_api
        self._recorder = recorder
        self.workers = max(1, workers)
        self._request_timeout = request_timeout

    def sync(self, bundle: Bundle, resolved: ResolvedBundle) -> bool:
        """Sync a resolved Bundle to every namespace.

        Args:
            bundle: The Bundle being reconciled.
            resolved: Its resolved data, with additional formats encoded.

        Returns:
            True if any target object was created, updated or deleted.

        Raises:
            TargetSyncError: If one or more target objects failed to sync.
                All other targets are still processed.

        """
        namespaces = self._list_namespaces()
        selector = bundle.spec.target.namespace_selector

        jobs: list[tuple[str, TargetKind, bool]] = []
        for ns in namespaces:
            if ns.status is not None and ns.status.phase == _NAMESPACE_TERMINATING:
                ic(ns.metadata.name)
                continue
            matches = selector is None or selector.matches(ns.metadata.labels)
            for kind in TargetKind:
                should_exist = matches and bundle.spec.target.for_kind(kind) is not None
                jobs.append((ns.metadata.name, kind, should_exist))

        changed = False
        failures: dict[str, Exception] = {}
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {
                pool.submit(self.sync_target, bundle, resolved, namespace, kind, should_exist): (namespace, kind)
                for namespace, kind, should_exist in jobs
            }
            for future in as_completed(futures):
                namespace, kind = futures[future]
                try:
                    changed = future.result() or changed
                except (ApiException, HTTPError, TrustSyncError, ValueError) as e:
                    failures[f"{kind.value} {namespace}/{bundle.name}"] = e

        if failures:
            raise TargetSyncError(failures)

        return changed

    def sync_target(
        self,
        bundle: Bundle,
        resolved: ResolvedBundle,
        namespace: str,
        kind: TargetKind,
        should_exist: bool,
    ) -> bool:
        """Reconcile one target object.

        Args:
            bundle: The owning Bundle.
            resolved: The resolved bundle data.
            namespace: The namespace of the target object.
            kind: ConfigMap or Secret.
            should_exist: Whether the object is wanted in this namespace.

        Returns:
            True if the object was created, updated or deleted.

        """
        current = self._get(kind, namespace, bundle.name)

        if not should_exist:
            if current is None or not is_controlled_by(current, bundle):
                return False
            self._delete(kind, namespace, bundle.name)
            console.step(f"Deleted {kind.value} {console.highlight(f'{namespace}/{bundle.name}')}")
            return True

        if current is not None:
            if not is_controlled_by(current, bundle):
                self._recorder.warning(
                    bundle,
                    REASON_NOT_OWNED,
                    f"{kind.value} {namespace}/{bundle.name} already exists and is not owned by this Bundle; skipping",
                )
                return False

            if not self.needs_update(kind, current, bundle, resolved):
                return False

        self._apply(kind, namespace, build_target_object(kind, namespace, bundle, resolved))
        console.step(f"Synced {kind.value} {console.highlight(f'{namespace}/{bundle.name}')}")
        return True

    def needs_update(self, kind: TargetKind, current: Any, bundle: Bundle, resolved: ResolvedBundle) -> bool:
        """Compare an existing target with the desired state.

        Objects last written by a legacy Update manager are migrated to
        server-side apply ownership and always reported as stale.

        """
        metadata = current.metadata
        labels, annotations = desired_metadata(kind, bundle, resolved)
        stale = any((metadata.labels or {}).get(k) != v for k, v in labels.items()) or any(
            (metadata.annotations or {}).get(k) != v for k, v in annotations.items()
        )

        owned = owned_keys(metadata.managed_fields, FIELD_MANAGER, _DATA_FIELDS[kind])
        if owned != expected_keys(kind, bundle):
            ic(owned)
            stale = True

        if self._migrate_to_apply(kind, current):
            console.step(f"Migrated {kind.value} {metadata.namespace}/{metadata.name} from Update to Apply")
            stale = True

        return stale

    def _migrate_to_apply(self, kind: TargetKind, current: Any) -> bool:
        metadata = current.metadata
        upgraded = upgrade_managed_fields(metadata.managed_fields, _DATA_FIELDS[kind])
        if upgraded is None:
            return False

        body = managed_fields_patch(metadata.resource_version, upgraded)
        kwargs = {"_content_type": JSON_PATCH_CONTENT_TYPE, "_request_timeout": self._request_timeout}
        match kind:
            case TargetKind.CONFIG_MAP:
                self._core_v1_api.patch_namespaced_config_map(metadata.name, metadata.namespace, body, **kwargs)
            case TargetKind.SECRET:
                self._core_v1_api.patch_namespaced_secret(metadata.name, metadata.namespace, body, **kwargs)
        return True

    def _list_namespaces(self) -> list[Any]:
        return self._core_v1_api.list_namespace(_request_timeout=self._request_timeout).items

    def _get(self, kind: TargetKind, namespace: str, name: str) -> Any | None:
        try:
            match kind:
                case TargetKind.CONFIG_MAP:
                    return self._core_v1_api.read_namespaced_config_map(
                        name, namespace, _request_timeout=self._request_timeout
                    )
                case TargetKind.SECRET:
                    return self._core_v1_api.read_namespaced_secret(
                        name, namespace, _request_timeout=self._request_timeout
                    )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def _apply(self, kind: TargetKind, namespace: str, body: dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        kwargs = {
            "field_manager": FIELD_MANAGER,
            "force": True,
            "_content_type": APPLY_PATCH_CONTENT_TYPE,
            "_request_timeout": self._request_timeout,
        }
        match kind:
            case TargetKind.CONFIG_MAP:
                self._core_v1_api.patch_namespaced_config_map(name, namespace, body, **kwargs)
            case TargetKind.SECRET:
                self._core_v1_api.patch_namespaced_secret(name, namespace, body, **kwargs)

    def _delete(self, kind: TargetKind, namespace: str, name: str) -> None:
        try:
            match kind:
                case TargetKind.CONFIG_MAP:
                    self._core_v1_api.delete_namespaced_config_map(
                        name, namespace, _request_timeout=self._request_timeout
                    )
                case TargetKind.SECRET:
                    self._core_v1_api.delete_namespaced_secret(name, namespace, _request_timeout=self._request_timeout)
        except ApiException as e:
            if e.status != 404:
                raise
