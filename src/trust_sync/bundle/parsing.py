"""Bundle manifest parsing.

This module decodes Bundle resources, either as returned by the custom
objects API or read from a YAML manifest, into the typed model.
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

import yaml

from trust_sync.exceptions import BundleParsingError
from trust_sync.labels import LabelSelector
from trust_sync.models import (
    DEFAULT_JKS_PASSWORD,
    DEFAULT_PKCS12_PASSWORD,
    AdditionalFormats,
    Bundle,
    BundleSpec,
    BundleStatus,
    Condition,
    DefaultPackageSource,
    InlineSource,
    JKSFormat,
    KeyTarget,
    ObjectSource,
    PKCS12Format,
    PKCS12Profile,
    SelectorSource,
    Source,
    SourceKind,
    Target,
    TargetMetadata,
)

_SOURCE_FIELDS = ("configMap", "secret", "inLine", "useDefaultCAs")
_SOURCE_KINDS = {"configMap": SourceKind.CONFIG_MAP, "secret": SourceKind.SECRET}


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise BundleParsingError(f"{where} must be a mapping")
    return value


def _parse_selector(raw: Any, where: str) -> LabelSelector:
    try:
        return LabelSelector.from_dict(_mapping(raw, where))
    except (TypeError, ValueError) as err:
        raise BundleParsingError(f"{where} is invalid: {err}") from err


def _parse_object_source(field_name: str, raw: Any, where: str) -> ObjectSource | SelectorSource:
    ref = _mapping(raw, where)
    kind = _SOURCE_KINDS[field_name]
    name = ref.get("name") or ""
    key = ref.get("key") or ""
    include_all_keys = bool(ref.get("includeAllKeys", False))

    if include_all_keys and key:
        raise BundleParsingError(f"{where}: key and includeAllKeys are mutually exclusive")
    if not include_all_keys and not key:
        raise BundleParsingError(f"{where}: one of key or includeAllKeys must be set")

    has_selector = ref.get("selector") is not None
    if bool(name) == has_selector:
        raise BundleParsingError(f"{where}: exactly one of name or selector must be set")

    if has_selector:
        selector = _parse_selector(ref["selector"], f"{where}.selector")
        return SelectorSource(kind=kind, selector=selector, key=key, include_all_keys=include_all_keys)
    return ObjectSource(kind=kind, name=name, key=key, include_all_keys=include_all_keys)


def _parse_sources(raw: Any) -> tuple[Source, ...]:
    if not isinstance(raw, list) or not raw:
        raise BundleParsingError("spec.sources must be a non-empty list")

    sources: list[Source] = []
    default_package_sources = 0
    for index, entry in enumerate(raw):
        where = f"spec.sources[{index}]"
        entry = _mapping(entry, where)
        populated = [name for name in _SOURCE_FIELDS if entry.get(name) is not None]
        if len(populated) != 1:
            raise BundleParsingError(
                f"{where} must define exactly one of {', '.join(_SOURCE_FIELDS)}, found {len(populated)}"
            )

        field_name = populated[0]
        match field_name:
            case "configMap" | "secret":
                sources.append(_parse_object_source(field_name, entry[field_name], f"{where}.{field_name}"))
            case "inLine":
                sources.append(InlineSource(pem=str(entry["inLine"])))
            case "useDefaultCAs":
                default_package_sources += 1
                if entry["useDefaultCAs"]:
                    sources.append(DefaultPackageSource())

    if default_package_sources > 1:
        raise BundleParsingError("spec.sources may only use the default CA package once")

    return tuple(sources)


def _parse_key_target(raw: Any, where: str) -> KeyTarget | None:
    if raw is None:
        return None
    target = _mapping(raw, where)
    key = target.get("key")
    if not key:
        raise BundleParsingError(f"{where}.key must be set")
    metadata = _mapping(target.get("metadata"), f"{where}.metadata")
    return KeyTarget(
        key=key,
        metadata=TargetMetadata(
            annotations=dict(_mapping(metadata.get("annotations"), f"{where}.metadata.annotations")),
            labels=dict(_mapping(metadata.get("labels"), f"{where}.metadata.labels")),
        ),
    )


def _parse_additional_formats(raw: Any) -> AdditionalFormats | None:
    if raw is None:
        return None
    formats = _mapping(raw, "spec.target.additionalFormats")

    jks = None
    if formats.get("jks") is not None:
        jks_raw = _mapping(formats["jks"], "spec.target.additionalFormats.jks")
        if not jks_raw.get("key"):
            raise BundleParsingError("spec.target.additionalFormats.jks.key must be set")
        jks = JKSFormat(key=jks_raw["key"], password=jks_raw.get("password", DEFAULT_JKS_PASSWORD))

    pkcs12 = None
    if formats.get("pkcs12") is not None:
        p12_raw = _mapping(formats["pkcs12"], "spec.target.additionalFormats.pkcs12")
        if not p12_raw.get("key"):
            raise BundleParsingError("spec.target.additionalFormats.pkcs12.key must be set")
        try:
            profile = PKCS12Profile(p12_raw.get("profile") or PKCS12Profile.LEGACY_DES.value)
        except ValueError as err:
            raise BundleParsingError(f"unknown PKCS#12 profile {p12_raw.get('profile')!r}") from err
        pkcs12 = PKCS12Format(
            key=p12_raw["key"],
            password=p12_raw.get("password", DEFAULT_PKCS12_PASSWORD),
            profile=profile,
        )

    return AdditionalFormats(jks=jks, pkcs12=pkcs12)


def _parse_target(raw: Any) -> Target:
    target = _mapping(raw, "spec.target")
    config_map = _parse_key_target(target.get("configMap"), "spec.target.configMap")
    secret = _parse_key_target(target.get("secret"), "spec.target.secret")
    additional_formats = _parse_additional_formats(target.get("additionalFormats"))

    if additional_formats is not None:
        keys = [fmt.key for fmt in (additional_formats.jks, additional_formats.pkcs12) if fmt is not None]
        primary = {t.key for t in (config_map, secret) if t is not None}
        if len(set(keys)) != len(keys) or primary & set(keys):
            raise BundleParsingError("spec.target keys must be unique across the bundle and additional formats")

    namespace_selector = None
    if target.get("namespaceSelector") is not None:
        namespace_selector = _parse_selector(target["namespaceSelector"], "spec.target.namespaceSelector")

    return Target(
        config_map=config_map,
        secret=secret,
        additional_formats=additional_formats,
        namespace_selector=namespace_selector,
    )


def _parse_time(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as err:
        raise BundleParsingError(f"invalid timestamp {value!r}") from err


def _parse_status(raw: Any) -> BundleStatus:
    status = _mapping(raw, "status")
    conditions = tuple(
        Condition(
            type=c.get("type", ""),
            status=c.get("status", ""),
            reason=c.get("reason", ""),
            message=c.get("message", ""),
            last_transition_time=_parse_time(c.get("lastTransitionTime")),
            observed_generation=int(c.get("observedGeneration") or 0),
        )
        for c in (_mapping(c, "status.conditions[]") for c in status.get("conditions") or [])
    )
    return BundleStatus(conditions=conditions, default_ca_version=status.get("defaultCAVersion"))


def parse_bundle(obj: Mapping[str, Any]) -> Bundle:
    """Decode a Bundle resource.

    Args:
        obj: The resource as a dictionary, with camelCase field names.

    Returns:
        The decoded Bundle.

    Raises:
        BundleParsingError: If a required field is missing, a source entry
            does not define exactly one variant, or a value is malformed.

    """
    obj = _mapping(obj, "Bundle")
    metadata = _mapping(obj.get("metadata"), "metadata")
    name = metadata.get("name")
    if not name:
        raise BundleParsingError("metadata.name must be set")

    spec = _mapping(obj.get("spec"), "spec")
    return Bundle(
        name=name,
        uid=metadata.get("uid") or "",
        generation=int(metadata.get("generation") or 0),
        spec=BundleSpec(sources=_parse_sources(spec.get("sources")), target=_parse_target(spec.get("target"))),
        status=_parse_status(obj.get("status")),
    )


def parse_bundle_file(bundle_path: str) -> Bundle:
    """Parse a YAML Bundle manifest.

    Args:
        bundle_path: Path to the manifest.

    Returns:
        The decoded Bundle.

    Raises:
        BundleParsingError: If the file does not exist, holds malformed YAML,
            holds zero or several documents, or is not a valid Bundle.

    """
    try:
        with open(bundle_path) as stream:
            docs = [doc for doc in yaml.safe_load_all(stream) if doc is not None]
    except FileNotFoundError as err:
        raise BundleParsingError(f"Bundle file '{bundle_path}' does not exist") from err
    except yaml.YAMLError as err:
        raise BundleParsingError(f"Bundle file '{bundle_path}' contains malformed YAML: {err}") from err

    if len(docs) != 1:
        raise BundleParsingError(f"File '{bundle_path}' must contain exactly one YAML document, found {len(docs)}")

    return parse_bundle(docs[0])
