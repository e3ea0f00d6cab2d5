"""Shared test fixtures for trust-sync tests."""

import base64
import copy
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from trust_sync.models import (
    Bundle,
    BundleSpec,
    BundleStatus,
    KeyTarget,
    Target,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)

_APPLY = "application/apply-patch+yaml"
_JSON_PATCH = "application/json-patch+json"

# API field name -> python attribute, per kind
_DATA_ATTRS = {
    "ConfigMap": {"data": "data", "binaryData": "binary_data"},
    "Secret": {"data": "data"},
}

_METADATA_FIELDS = ("labels", "annotations")


def _make_ca_pem(common_name: str, *, not_before: datetime | None = None, not_after: datetime | None = None) -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or NOW - timedelta(days=1))
        .not_valid_after(not_after or NOW + timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(Encoding.PEM).decode()


@pytest.fixture
def now():
    """Fixed reference time the test certificates are valid at."""
    return NOW


@pytest.fixture
def make_ca():
    """Factory generating self-signed CA certificates as PEM."""
    return _make_ca_pem


@pytest.fixture(scope="session")
def ca1():
    return _make_ca_pem("Test Root CA 1")


@pytest.fixture(scope="session")
def ca2():
    return _make_ca_pem("Test Root CA 2")


@pytest.fixture(scope="session")
def ca3():
    return _make_ca_pem("Test Root CA 3")


@pytest.fixture(scope="session")
def expired_ca():
    return _make_ca_pem(
        "Expired Root CA",
        not_before=NOW - timedelta(days=730),
        not_after=NOW - timedelta(days=365),
    )


def _selector_matches(selector: str | None, labels: dict[str, str]) -> bool:
    """Evaluate equality and existence terms of a label selector string."""
    for term in filter(None, (selector or "").split(",")):
        if term.startswith("!"):
            if term[1:] in labels:
                return False
        elif "=" in term:
            key, value = term.split("=", 1)
            if labels.get(key) != value:
                return False
        elif term not in labels:
            return False
    return True


def _not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


class FakeCoreV1Api:
    """In-memory stand-in for CoreV1Api.

    Server-side apply is emulated closely enough to track ownership: every
    apply records the data keys, labels and annotations of the body in the
    field manager's Apply entry, and whatever that manager applied before
    but no longer applies is removed from the object. Keys owned by Update
    entries are left alone.

    Attributes:
        namespaces: Namespace name -> V1Namespace.
        objects: (kind, namespace, name) -> V1ConfigMap or V1Secret.
        writes: (verb, kind, namespace, name) for every mutating call.
        events: Bodies passed to create_namespaced_event.

    """

    def __init__(self) -> None:
        self.namespaces: dict[str, client.V1Namespace] = {}
        self.objects: dict[tuple[str, str, str], object] = {}
        self.writes: list[tuple[str, str, str, str]] = []
        self.events: list[client.CoreV1Event] = []
        self._resource_version = 0
        self._lock = threading.Lock()

    def _next_resource_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    # Test setup helpers

    def add_namespace(self, name: str, labels: dict[str, str] | None = None, phase: str = "Active") -> None:
        self.namespaces[name] = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=name, labels=labels or {}),
            status=client.V1NamespaceStatus(phase=phase),
        )

    def _metadata(self, namespace, name, labels, annotations, owner_references, managed_fields):
        return client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            owner_references=owner_references,
            managed_fields=managed_fields,
            resource_version=self._next_resource_version(),
        )

    def add_config_map(
        self,
        namespace: str,
        name: str,
        data: dict[str, str] | None = None,
        *,
        binary_data: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
        owner_references: list[client.V1OwnerReference] | None = None,
        managed_fields: list[client.V1ManagedFieldsEntry] | None = None,
    ) -> client.V1ConfigMap:
        obj = client.V1ConfigMap(
            metadata=self._metadata(namespace, name, labels, annotations, owner_references, managed_fields),
            data=data,
            binary_data=binary_data,
        )
        self.objects[("ConfigMap", namespace, name)] = obj
        return obj

    def add_secret(
        self,
        namespace: str,
        name: str,
        data: dict[str, bytes] | None = None,
        *,
        secret_type: str = "Opaque",
        labels: dict[str, str] | None = None,
        owner_references: list[client.V1OwnerReference] | None = None,
        managed_fields: list[client.V1ManagedFieldsEntry] | None = None,
    ) -> client.V1Secret:
        obj = client.V1Secret(
            metadata=self._metadata(namespace, name, labels, None, owner_references, managed_fields),
            data={k: base64.b64encode(v).decode() for k, v in (data or {}).items()},
            type=secret_type,
        )
        self.objects[("Secret", namespace, name)] = obj
        return obj

    def get(self, kind: str, namespace: str, name: str):
        return self.objects.get((kind, namespace, name))

    # Namespaces and events

    def list_namespace(self, **kwargs) -> client.V1NamespaceList:
        return client.V1NamespaceList(items=[copy.deepcopy(ns) for ns in self.namespaces.values()])

    def create_namespaced_event(self, namespace: str, body: client.CoreV1Event, **kwargs) -> client.CoreV1Event:
        self.events.append(body)
        return body

    # ConfigMaps and Secrets

    def _read(self, kind: str, name: str, namespace: str):
        obj = self.objects.get((kind, namespace, name))
        if obj is None:
            raise _not_found()
        return copy.deepcopy(obj)

    def _list(self, kind: str, namespace: str, label_selector: str | None) -> list:
        return [
            copy.deepcopy(obj)
            for (obj_kind, obj_namespace, _), obj in self.objects.items()
            if obj_kind == kind
            and obj_namespace == namespace
            and _selector_matches(label_selector, obj.metadata.labels or {})
        ]

    def read_namespaced_config_map(self, name: str, namespace: str, **kwargs) -> client.V1ConfigMap:
        return self._read("ConfigMap", name, namespace)

    def read_namespaced_secret(self, name: str, namespace: str, **kwargs) -> client.V1Secret:
        return self._read("Secret", name, namespace)

    def list_namespaced_config_map(self, namespace: str, label_selector: str = "", **kwargs):
        return client.V1ConfigMapList(items=self._list("ConfigMap", namespace, label_selector))

    def list_namespaced_secret(self, namespace: str, label_selector: str = "", **kwargs):
        return client.V1SecretList(items=self._list("Secret", namespace, label_selector))

    def patch_namespaced_config_map(self, name: str, namespace: str, body, **kwargs):
        return self._patch("ConfigMap", name, namespace, body, **kwargs)

    def patch_namespaced_secret(self, name: str, namespace: str, body, **kwargs):
        return self._patch("Secret", name, namespace, body, **kwargs)

    def delete_namespaced_config_map(self, name: str, namespace: str, **kwargs) -> None:
        self._delete("ConfigMap", name, namespace)

    def delete_namespaced_secret(self, name: str, namespace: str, **kwargs) -> None:
        self._delete("Secret", name, namespace)

    def _delete(self, kind: str, name: str, namespace: str) -> None:
        with self._lock:
            if self.objects.pop((kind, namespace, name), None) is None:
                raise _not_found()
            self.writes.append(("delete", kind, namespace, name))

    def _patch(self, kind, name, namespace, body, field_manager=None, force=None, _content_type=None, **kwargs):
        with self._lock:
            if _content_type == _JSON_PATCH:
                return self._json_patch(kind, name, namespace, body)
            if _content_type != _APPLY:
                raise AssertionError(f"unexpected patch content type {_content_type!r}")
            assert force is True
            return self._apply(kind, name, namespace, body, field_manager)

    def _json_patch(self, kind, name, namespace, ops):
        current = self.objects.get((kind, namespace, name))
        if current is None:
            raise _not_found()
        for op in ops:
            if op["op"] == "test" and op["path"] == "/metadata/resourceVersion":
                if current.metadata.resource_version != op["value"]:
                    raise ApiException(status=409, reason="Conflict")
            elif op["op"] == "replace" and op["path"] == "/metadata/managedFields":
                current.metadata.managed_fields = [
                    client.V1ManagedFieldsEntry(
                        manager=entry.get("manager"),
                        operation=entry.get("operation"),
                        api_version=entry.get("apiVersion"),
                        fields_type=entry.get("fieldsType"),
                        fields_v1=entry.get("fieldsV1"),
                        subresource=entry.get("subresource"),
                    )
                    for entry in op["value"]
                ]
            else:
                raise AssertionError(f"unexpected JSON patch operation {op!r}")
        current.metadata.resource_version = self._next_resource_version()
        self.writes.append(("migrate", kind, namespace, name))
        return copy.deepcopy(current)

    def _apply(self, kind, name, namespace, body, field_manager):
        attrs = _DATA_ATTRS[kind]
        applied = {field_name: dict(body.get(field_name) or {}) for field_name in attrs}

        current = self.objects.get((kind, namespace, name))
        if current is None:
            current = client.V1ConfigMap() if kind == "ConfigMap" else client.V1Secret(type="Opaque")
            current.metadata = client.V1ObjectMeta(name=name, namespace=namespace, managed_fields=[])

        metadata = body["metadata"]
        applied_meta = {field_name: dict(metadata.get(field_name) or {}) for field_name in _METADATA_FIELDS}

        previous: dict[str, set[str]] = {field_name: set() for field_name in attrs}
        previous_meta: dict[str, set[str]] = {field_name: set() for field_name in _METADATA_FIELDS}
        kept_entries = []
        for entry in current.metadata.managed_fields or []:
            fields_v1 = entry.fields_v1 or {}
            owned_meta = fields_v1.get("f:metadata") or {}
            if entry.manager == field_manager and entry.operation == "Apply":
                for field_name in attrs:
                    previous[field_name] |= {k[2:] for k in fields_v1.get(f"f:{field_name}", {})}
                for field_name in _METADATA_FIELDS:
                    previous_meta[field_name] |= {k[2:] for k in owned_meta.get(f"f:{field_name}", {})}
                continue
            # force=True moves conflicting keys to the applying manager
            for tree, applied_fields in ((fields_v1, applied), (owned_meta, applied_meta)):
                for field_name, values in applied_fields.items():
                    owned = tree.get(f"f:{field_name}")
                    if owned:
                        for key in values:
                            owned.pop(f"f:{key}", None)
            kept_entries.append(entry)

        for field_name, attr in attrs.items():
            values = dict(getattr(current, attr) or {})
            for key in previous[field_name] - set(applied[field_name]):
                values.pop(key, None)
            values.update(applied[field_name])
            setattr(current, attr, values or None)

        # labels and annotations this manager stopped applying are removed
        for field_name in _METADATA_FIELDS:
            values = dict(getattr(current.metadata, field_name) or {})
            for key in previous_meta[field_name] - set(applied_meta[field_name]):
                values.pop(key, None)
            values.update(applied_meta[field_name])
            setattr(current.metadata, field_name, values)
        current.metadata.owner_references = [
            client.V1OwnerReference(
                api_version=ref["apiVersion"],
                kind=ref["kind"],
                name=ref["name"],
                uid=ref["uid"],
                controller=ref.get("controller"),
                block_owner_deletion=ref.get("blockOwnerDeletion"),
            )
            for ref in metadata.get("ownerReferences", [])
        ]

        fields_v1 = {
            f"f:{field_name}": {f"f:{key}": {} for key in values} for field_name, values in applied.items() if values
        }
        fields_v1["f:metadata"] = {
            f"f:{field_name}": {f"f:{key}": {} for key in values} for field_name, values in applied_meta.items() if values
        }
        kept_entries.append(
            client.V1ManagedFieldsEntry(
                manager=field_manager,
                operation="Apply",
                api_version="v1",
                fields_type="FieldsV1",
                fields_v1=fields_v1,
            )
        )
        current.metadata.managed_fields = kept_entries
        current.metadata.resource_version = self._next_resource_version()

        self.objects[(kind, namespace, name)] = current
        self.writes.append(("apply", kind, namespace, name))
        return copy.deepcopy(current)


@pytest.fixture
def fake_core_v1():
    """A FakeCoreV1Api with three namespaces, one of them labelled."""
    api = FakeCoreV1Api()
    api.add_namespace("cert-manager")
    api.add_namespace("default")
    api.add_namespace("team-a", labels={"team": "a"})
    return api


@pytest.fixture
def make_bundle():
    """Factory for Bundle objects with a ConfigMap target."""

    def _make_bundle(
        sources,
        *,
        name: str = "trust-bundle",
        uid: str = "bundle-uid",
        config_map_key: str | None = "ca.crt",
        secret_key: str | None = None,
        additional_formats=None,
        namespace_selector=None,
        generation: int = 1,
        status: BundleStatus | None = None,
    ) -> Bundle:
        target = Target(
            config_map=KeyTarget(key=config_map_key) if config_map_key else None,
            secret=KeyTarget(key=secret_key) if secret_key else None,
            additional_formats=additional_formats,
            namespace_selector=namespace_selector,
        )
        return Bundle(
            name=name,
            uid=uid,
            generation=generation,
            spec=BundleSpec(sources=tuple(sources), target=target),
            status=status or BundleStatus(),
        )

    return _make_bundle


@pytest.fixture
def mock_kube_contexts():
    """Mock kubernetes config contexts."""
    with patch("kubernetes.config.list_kube_config_contexts") as mock:
        mock.return_value = ([{"name": "test-context"}, {"name": "staging"}], {"name": "test-context"})
        yield mock


@pytest.fixture
def mock_kube_config():
    """Mock kubernetes config loading."""
    with patch("kubernetes.config.load_kube_config") as mock:
        yield mock


@pytest.fixture
def sample_bundle_yaml():
    """Sample Bundle manifest."""
    return """apiVersion: trust.cert-manager.io/v1alpha1
kind: Bundle
metadata:
  name: example-bundle
spec:
  sources:
    - useDefaultCAs: false
    - configMap:
        name: my-root-cas
        key: root-certs.pem
    - secret:
        selector:
          matchLabels:
            fruit: apple
        key: "*.crt"
  target:
    configMap:
      key: trust-bundle.pem
      metadata:
        labels:
          app: trust
    additionalFormats:
      jks:
        key: bundle.jks
      pkcs12:
        key: bundle.p12
        profile: Modern2023
    namespaceSelector:
      matchLabels:
        linkerd.io/inject: enabled
"""
