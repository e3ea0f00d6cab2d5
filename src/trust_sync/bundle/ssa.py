"""Server-side apply field ownership helpers.

Managed fields are read from the ``metadata.managedFields`` of a target
object. Ownership is expressed as plain sets of data keys so drift
detection can be checked without a live API server.
"""

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from kubernetes import client

FIELD_MANAGER = "trust-manager"

# Managers that wrote targets with Update (client-side apply) before the
# move to server-side apply. "Go-http-client" was the default user agent
# of the regressed client library release.
LEGACY_FIELD_MANAGERS = frozenset({FIELD_MANAGER, "Go-http-client"})

OPERATION_APPLY = "Apply"
OPERATION_UPDATE = "Update"

_FIELD_PREFIX = "f:"


def _children(fields: Mapping[str, Any] | None, field_name: str) -> set[str]:
    """Return the keys managed below a top-level field, without the 'f:' prefix."""
    if not fields:
        return set()
    node = fields.get(f"{_FIELD_PREFIX}{field_name}") or {}
    return {key.removeprefix(_FIELD_PREFIX) for key in node if key.startswith(_FIELD_PREFIX)}


def owned_keys(
    managed_fields: Iterable[client.V1ManagedFieldsEntry] | None,
    manager: str,
    field_names: Iterable[str],
) -> set[str]:
    """List the data keys owned by a field manager.

    Args:
        managed_fields: The object's managed field entries.
        manager: The field manager to look for.
        field_names: Top-level fields to inspect, e.g. ("data", "binaryData").

    Returns:
        The union of keys the manager owns under the given fields.

    """
    field_names = tuple(field_names)
    keys: set[str] = set()
    for entry in managed_fields or []:
        if entry.manager != manager or entry.fields_v1 is None:
            continue
        for field_name in field_names:
            keys |= _children(entry.fields_v1, field_name)
    return keys


def is_legacy_entry(
    entry: client.V1ManagedFieldsEntry,
    field_names: Iterable[str],
    legacy_managers: frozenset[str] = LEGACY_FIELD_MANAGERS,
) -> bool:
    """Check whether an entry records a client-side write of target data."""
    if entry.manager not in legacy_managers or entry.operation != OPERATION_UPDATE or entry.subresource:
        return False
    return any(_children(entry.fields_v1, field_name) for field_name in field_names)


def merge_fields(base: Mapping[str, Any], other: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge two FieldsV1 trees."""
    merged: dict[str, Any] = {key: dict(value) if isinstance(value, Mapping) else value for key, value in base.items()}
    for key, value in other.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_fields(merged[key], value)
        else:
            merged[key] = dict(value) if isinstance(value, Mapping) else value
    return merged


def _serialize_time(value: datetime | str | None) -> str | None:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value


def _serialize_entry(entry: client.V1ManagedFieldsEntry) -> dict[str, Any]:
    raw = {
        "manager": entry.manager,
        "operation": entry.operation,
        "apiVersion": entry.api_version,
        "time": _serialize_time(entry.time),
        "fieldsType": entry.fields_type or "FieldsV1",
        "fieldsV1": entry.fields_v1 or {},
        "subresource": entry.subresource,
    }
    return {key: value for key, value in raw.items() if value is not None}


def upgrade_managed_fields(
    managed_fields: Iterable[client.V1ManagedFieldsEntry] | None,
    field_names: Iterable[str],
    field_manager: str = FIELD_MANAGER,
    legacy_managers: frozenset[str] = LEGACY_FIELD_MANAGERS,
) -> list[dict[str, Any]] | None:
    """Move fields owned by legacy Update managers to the Apply manager.

    After the move, a server-side apply by ``field_manager`` is able to
    remove keys that were originally written with Update.

    Args:
        managed_fields: The object's managed field entries.
        field_names: Top-level fields that identify target data.
        field_manager: The manager that takes over ownership.
        legacy_managers: Managers whose Update entries are migrated.

    Returns:
        The serialized replacement managedFields list, or None if no
        entry needs migrating.

    """
    field_names = tuple(field_names)
    entries = list(managed_fields or [])
    legacy = [entry for entry in entries if is_legacy_entry(entry, field_names, legacy_managers)]
    if not legacy:
        return None

    legacy_ids = {id(entry) for entry in legacy}
    apply_entry: dict[str, Any] | None = None
    upgraded: list[dict[str, Any]] = []
    for entry in entries:
        if id(entry) in legacy_ids:
            continue
        serialized = _serialize_entry(entry)
        if entry.manager == field_manager and entry.operation == OPERATION_APPLY and not entry.subresource:
            apply_entry = serialized
        upgraded.append(serialized)

    if apply_entry is None:
        apply_entry = {
            "manager": field_manager,
            "operation": OPERATION_APPLY,
            "apiVersion": legacy[0].api_version or "v1",
            "time": _serialize_time(legacy[0].time),
            "fieldsType": "FieldsV1",
            "fieldsV1": {},
        }
        apply_entry = {key: value for key, value in apply_entry.items() if value is not None}
        upgraded.append(apply_entry)

    for entry in legacy:
        apply_entry["fieldsV1"] = merge_fields(apply_entry["fieldsV1"], entry.fields_v1 or {})

    return upgraded


def managed_fields_patch(resource_version: str, managed_fields: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Build a JSON patch replacing managedFields, guarded by resourceVersion."""
    return [
        {"op": "test", "path": "/metadata/resourceVersion", "value": resource_version},
        {"op": "replace", "path": "/metadata/managedFields", "value": managed_fields},
    ]
