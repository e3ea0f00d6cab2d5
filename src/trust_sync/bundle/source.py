"""Bundle source resolution.

This module turns the ordered source list of a Bundle into the canonical
PEM bundle. Every source is fetched and sanitized on its own, then the
results are concatenated in declaration order.
"""

import base64
import binascii
from collections.abc import Callable
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, NamedTuple

from icecream import ic
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from trust_sync import console
from trust_sync.bundle.package import DefaultPackage
from trust_sync.bundle.pem import sanitize
from trust_sync.exceptions import (
    EmptyBundleError,
    InvalidCertificateError,
    InvalidSecretError,
    NoDefaultPackageError,
    NotFoundError,
)
from trust_sync.labels import LabelSelector
from trust_sync.models import (
    BundleSpec,
    DefaultPackageSource,
    InlineSource,
    ObjectSource,
    ResolvedBundle,
    SelectorSource,
    Source,
    SourceKind,
)

_TLS_SECRET_TYPE = "kubernetes.io/tls"
_ALL_KEYS = "*"


def utcnow() -> datetime:
    """Default clock used when resolving bundles."""
    return datetime.now(timezone.utc)


class SourceObject(NamedTuple):
    """A ConfigMap or Secret read from the trust namespace.

    Attributes:
        kind: ConfigMap or Secret.
        namespace: The namespace of the object.
        name: The object name.
        data: Data key to raw value; Secret values are already decoded.
        type: The Secret type, empty for ConfigMaps.

    """

    kind: SourceKind
    namespace: str
    name: str
    data: dict[str, bytes]
    type: str = ""

    @property
    def ref(self) -> str:
        return f"{self.kind.value} {self.namespace}/{self.name}"


class BundleResolver:
    """Resolves Bundle sources into a canonical PEM bundle.

    Attributes:
        trust_namespace: Namespace that holds source ConfigMaps and Secrets.
        default_package: The default CA package, if one was loaded.
        filter_expired: Whether expired certificates are dropped.

    """

    def __init__(
        self,
        core_v1_api: client.CoreV1Api,
        trust_namespace: str,
        *,
        default_package: DefaultPackage | None = None,
        filter_expired: bool = False,
        clock: Callable[[], datetime] = utcnow,
        request_timeout: float | None = None,
    ) -> None:
        self._core_v1_api = core_v1_api
        self.trust_namespace = trust_namespace
        self.default_package = default_package
        self.filter_expired = filter_expired
        self._clock = clock
        self._request_timeout = request_timeout

    def __repr__(self) -> str:
        """Return a detailed string representation for debugging."""
        return (
            f"BundleResolver(trust_namespace={self.trust_namespace!r}, "
            f"filter_expired={self.filter_expired!r}, "
            f"default_package={self.default_package.string_id if self.default_package else None!r})"
        )

    def resolve(self, spec: BundleSpec) -> ResolvedBundle:
        """Resolve every source of a Bundle, in order.

        Args:
            spec: The Bundle spec whose sources are resolved.

        Returns:
            The canonical bundle. Additional formats are not encoded here.

        Raises:
            NotFoundError: If a referenced object or key does not exist.
            InvalidCertificateError: If a source holds invalid PEM data.
            InvalidSecretError: If all keys of a TLS Secret are requested.
            NoDefaultPackageError: If the default package is used but not loaded.
            EmptyBundleError: If no source yields any certificate.

        """
        now = self._clock()
        resolved: list[str] = []
        package_id = ""

        for source in spec.sources:
            pieces = self._resolve_source(source, now)
            if isinstance(source, DefaultPackageSource) and self.default_package is not None:
                package_id = self.default_package.string_id
            if pieces:
                resolved.append("\n".join(pieces))

        if not resolved:
            raise EmptyBundleError("couldn't find any valid certificates in bundle")

        return ResolvedBundle(data="\n".join(resolved) + "\n", default_ca_package_string_id=package_id)

    def _resolve_source(self, source: Source, now: datetime) -> list[str]:
        """Return the sanitized PEM pieces of one source, trailing newlines removed."""
        match source:
            case InlineSource(pem=pem):
                return [self._sanitize(pem, now, "inline source")]

            case ObjectSource(kind=kind, name=name, key=key, include_all_keys=include_all_keys):
                obj = self._get_object(kind, name)
                return self._object_pieces(obj, key, include_all_keys, now)

            case SelectorSource(kind=kind, selector=selector, key=key, include_all_keys=include_all_keys):
                objects = self._list_objects(kind, selector)
                if not objects:
                    console.warning(
                        f"label selector {selector.to_selector_string()!r} for {kind.value} didn't match any resources"
                    )
                pieces: list[str] = []
                for obj in objects:
                    pieces.extend(self._object_pieces(obj, key, include_all_keys, now))
                return pieces

            case DefaultPackageSource():
                if self.default_package is None:
                    raise NoDefaultPackageError(
                        "no default package was specified when trust-sync was started; default CAs not available"
                    )
                return [self._sanitize(self.default_package.bundle, now, "default package")]

    def _object_pieces(self, obj: SourceObject, key: str, include_all_keys: bool, now: datetime) -> list[str]:
        all_keys = include_all_keys or key == _ALL_KEYS
        if all_keys and obj.type == _TLS_SECRET_TYPE:
            raise InvalidSecretError(f"including all keys is not supported for TLS Secrets such as {obj.ref}")

        if all_keys:
            keys = sorted(obj.data)
        else:
            keys = [k for k in sorted(obj.data) if fnmatchcase(k, key)]

        if not keys:
            raise NotFoundError(f"no data found in {obj.ref} at key {key!r}")

        ic(obj.ref, keys)
        return [self._sanitize(obj.data[k], now, f"{obj.ref} at key {k!r}") for k in keys]

    def _sanitize(self, raw: bytes | str, now: datetime, where: str) -> str:
        try:
            return sanitize(raw, filter_expired=self.filter_expired, now=now).rstrip("\n")
        except InvalidCertificateError as err:
            raise InvalidCertificateError(f"invalid PEM data in {where}: {err}") from err
        except EmptyBundleError as err:
            raise EmptyBundleError(f"invalid PEM data in {where}: {err}") from err

    def _get_object(self, kind: SourceKind, name: str) -> SourceObject:
        """Read one named ConfigMap or Secret from the trust namespace.

        Raises:
            NotFoundError: If the object does not exist.

        """
        try:
            match kind:
                case SourceKind.CONFIG_MAP:
                    raw = self._core_v1_api.read_namespaced_config_map(
                        name, self.trust_namespace, _request_timeout=self._request_timeout
                    )
                case SourceKind.SECRET:
                    raw = self._core_v1_api.read_namespaced_secret(
                        name, self.trust_namespace, _request_timeout=self._request_timeout
                    )
        except ApiException as err:
            if err.status == 404:
                raise NotFoundError(f"failed to get {kind.value} {self.trust_namespace}/{name}: not found") from err
            raise
        return _to_source_object(kind, raw)

    def _list_objects(self, kind: SourceKind, selector: LabelSelector) -> list[SourceObject]:
        """List ConfigMaps or Secrets in the trust namespace matching a selector, ordered by name."""
        label_selector = selector.to_selector_string()
        match kind:
            case SourceKind.CONFIG_MAP:
                items = self._core_v1_api.list_namespaced_config_map(
                    self.trust_namespace, label_selector=label_selector, _request_timeout=self._request_timeout
                ).items
            case SourceKind.SECRET:
                items = self._core_v1_api.list_namespaced_secret(
                    self.trust_namespace, label_selector=label_selector, _request_timeout=self._request_timeout
                ).items
        objects = [_to_source_object(kind, item) for item in items]
        return sorted(objects, key=lambda obj: obj.name)


def _to_source_object(kind: SourceKind, raw: Any) -> SourceObject:
    """Convert a V1ConfigMap or V1Secret into a SourceObject."""
    data: dict[str, bytes] = {}
    secret_type = ""
    match kind:
        case SourceKind.CONFIG_MAP:
            data = {k: v.encode() for k, v in (raw.data or {}).items()}
        case SourceKind.SECRET:
            secret_type = raw.type or ""
            for k, v in (raw.data or {}).items():
                try:
                    data[k] = base64.b64decode(v)
                except (binascii.Error, ValueError) as err:
                    raise InvalidCertificateError(
                        f"invalid base64 data in Secret {raw.metadata.namespace}/{raw.metadata.name} at key {k!r}"
                    ) from err

    return SourceObject(
        kind=kind,
        namespace=raw.metadata.namespace,
        name=raw.metadata.name,
        data=data,
        type=secret_type,
    )
