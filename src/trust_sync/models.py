"""Data models for trust-sync.

This module provides type-safe data structures for Bundles, their sources
and targets, and the ephemeral result of resolving a Bundle.
"""

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from trust_sync.labels import LabelSelector

API_GROUP = "trust.cert-manager.io"
API_VERSION = "v1alpha1"
BUNDLE_KIND = "Bundle"
BUNDLE_PLURAL = "bundles"

# Metadata written to every target object
BUNDLE_LABEL_KEY = "trust.cert-manager.io/bundle"
BUNDLE_HASH_ANNOTATION_KEY = "trust.cert-manager.io/hash"

DEFAULT_JKS_PASSWORD = "changeit"
DEFAULT_PKCS12_PASSWORD = ""

CONDITION_SYNCED = "Synced"


class SourceKind(str, Enum):
    """Kinds of key-value objects a source can reference."""

    CONFIG_MAP = "ConfigMap"
    SECRET = "Secret"


class TargetKind(str, Enum):
    """Kinds of key-value objects a Bundle is written to."""

    CONFIG_MAP = "ConfigMap"
    SECRET = "Secret"


class PKCS12Profile(str, Enum):
    """Encryption profiles for PKCS#12 truststores.

    LEGACY_RC2 is accepted for compatibility but cryptography cannot write
    RC2-encrypted stores, so it is encoded exactly like LEGACY_DES
    (3DES with a SHA-1 MAC). MODERN_2023 uses AES-256-CBC with a SHA-256 MAC.
    """

    LEGACY_RC2 = "LegacyRC2"
    LEGACY_DES = "LegacyDES"
    MODERN_2023 = "Modern2023"


@dataclass(frozen=True, slots=True)
class InlineSource:
    """PEM data given literally in the Bundle."""

    pem: str


@dataclass(frozen=True, slots=True)
class ObjectSource:
    """One named ConfigMap or Secret in the trust namespace.

    Attributes:
        kind: Whether the object is a ConfigMap or a Secret.
        name: The object name.
        key: The data key holding PEM data.
        include_all_keys: Use every key of the object instead of ``key``.

    """

    kind: SourceKind
    name: str
    key: str = ""
    include_all_keys: bool = False


@dataclass(frozen=True, slots=True)
class SelectorSource:
    """All ConfigMaps or Secrets in the trust namespace matching a selector.

    Attributes:
        kind: Whether the objects are ConfigMaps or Secrets.
        selector: Label selector choosing the objects.
        key: Data key, or glob pattern over data keys.
        include_all_keys: Use every key of every matched object.

    """

    kind: SourceKind
    selector: LabelSelector
    key: str = ""
    include_all_keys: bool = False


@dataclass(frozen=True, slots=True)
class DefaultPackageSource:
    """The default CA package loaded at startup."""


Source = InlineSource | ObjectSource | SelectorSource | DefaultPackageSource


@dataclass(frozen=True, slots=True)
class TargetMetadata:
    """Extra annotations and labels copied onto target objects."""

    annotations: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class KeyTarget:
    """A target kind and the key the canonical bundle is written under."""

    key: str
    metadata: TargetMetadata = field(default_factory=TargetMetadata)


@dataclass(frozen=True, slots=True)
class JKSFormat:
    key: str
    password: str = DEFAULT_JKS_PASSWORD


@dataclass(frozen=True, slots=True)
class PKCS12Format:
    key: str
    password: str = DEFAULT_PKCS12_PASSWORD
    profile: PKCS12Profile = PKCS12Profile.LEGACY_DES


@dataclass(frozen=True, slots=True)
class AdditionalFormats:
    jks: JKSFormat | None = None
    pkcs12: PKCS12Format | None = None

    def keys(self) -> set[str]:
        """Data keys the encoded formats are written under."""
        return {fmt.key for fmt in (self.jks, self.pkcs12) if fmt is not None}


@dataclass(frozen=True, slots=True)
class Target:
    """Where a resolved Bundle is written.

    Attributes:
        config_map: ConfigMap target, if any.
        secret: Secret target, if any.
        additional_formats: Binary encodings written next to the PEM data.
        namespace_selector: Namespaces to write to; None selects all.

    """

    config_map: KeyTarget | None = None
    secret: KeyTarget | None = None
    additional_formats: AdditionalFormats | None = None
    namespace_selector: LabelSelector | None = None

    def for_kind(self, kind: TargetKind) -> KeyTarget | None:
        match kind:
            case TargetKind.CONFIG_MAP:
                return self.config_map
            case TargetKind.SECRET:
                return self.secret

    def format_keys(self) -> set[str]:
        if self.additional_formats is None:
            return set()
        return self.additional_formats.keys()


@dataclass(frozen=True, slots=True)
class BundleSpec:
    sources: tuple[Source, ...]
    target: Target


@dataclass(frozen=True, slots=True)
class Condition:
    """A status condition as stored on the Bundle.

    Attributes:
        type: The condition type, e.g. "Synced".
        status: "True" or "False".
        reason: A CamelCase machine-readable reason.
        message: Human-readable details.
        last_transition_time: When status last changed.
        observed_generation: Bundle generation the condition was computed for.

    """

    type: str
    status: str
    reason: str
    message: str
    last_transition_time: datetime | None = None
    observed_generation: int = 0


@dataclass(frozen=True, slots=True)
class BundleStatus:
    conditions: tuple[Condition, ...] = ()
    default_ca_version: str | None = None


@dataclass(frozen=True, slots=True)
class Bundle:
    """A cluster-scoped Bundle resource.

    Attributes:
        name: The Bundle name, also the name of every target object.
        uid: The Bundle UID, used in owner references.
        generation: metadata.generation of the Bundle.
        spec: Sources and target.
        status: Last recorded status.

    """

    name: str
    uid: str
    spec: BundleSpec
    generation: int = 0
    status: BundleStatus = field(default_factory=BundleStatus)


@dataclass(frozen=True, slots=True)
class ResolvedBundle:
    """The result of resolving a Bundle's sources.

    Attributes:
        data: The canonical PEM bundle.
        binary_data: Additional format key -> encoded bytes.
        default_ca_package_string_id: String id of the default package, if used.

    """

    data: str
    binary_data: Mapping[str, bytes] = field(default_factory=dict)
    default_ca_package_string_id: str = ""
    hash: str = field(init=False)

    def __post_init__(self) -> None:
        # computed once, reused for every target comparison in a pass
        object.__setattr__(self, "hash", hashlib.sha256(self.data.encode()).hexdigest())


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Outcome of reconciling one Bundle.

    Attributes:
        name: The Bundle name.
        synced: Whether the pass succeeded.
        changed: Whether any target object was written or deleted.
        requeue: Whether the Bundle should be retried soon.
        reason: Reason recorded on the Synced condition.

    """

    name: str
    synced: bool
    changed: bool = False
    requeue: bool = False
    reason: str = ""
