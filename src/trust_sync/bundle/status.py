"""Bundle status condition helpers."""

from dataclasses import replace
from datetime import datetime
from typing import Any

from trust_sync.models import BundleStatus, Condition

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"


def get_condition(status: BundleStatus, condition_type: str) -> Condition | None:
    for condition in status.conditions:
        if condition.type == condition_type:
            return condition
    return None


def bundle_has_condition(status: BundleStatus, condition: Condition) -> bool:
    """Check whether the status already carries an equivalent condition.

    Transition times are ignored; status, reason, message and observed
    generation must all match.

    """
    existing = get_condition(status, condition.type)
    if existing is None:
        return False
    return (
        existing.status == condition.status
        and existing.reason == condition.reason
        and existing.message == condition.message
        and existing.observed_generation == condition.observed_generation
    )


def set_bundle_condition(status: BundleStatus, condition: Condition, now: datetime) -> BundleStatus:
    """Return a status with the condition added or replaced.

    The last transition time only moves when the condition status changes.

    Args:
        status: The current Bundle status.
        condition: The new condition, without a transition time.
        now: The time recorded for a status transition.

    Returns:
        The updated status.

    """
    existing = get_condition(status, condition.type)
    if existing is not None and existing.status == condition.status and existing.last_transition_time is not None:
        condition = replace(condition, last_transition_time=existing.last_transition_time)
    else:
        condition = replace(condition, last_transition_time=now)

    conditions = [c for c in status.conditions if c.type != condition.type]
    conditions.append(condition)
    return replace(status, conditions=tuple(conditions))


def _format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def serialize_condition(condition: Condition) -> dict[str, Any]:
    return {
        "type": condition.type,
        "status": condition.status,
        "reason": condition.reason,
        "message": condition.message,
        "lastTransitionTime": _format_time(condition.last_transition_time),
        "observedGeneration": condition.observed_generation,
    }


def serialize_status(status: BundleStatus) -> dict[str, Any]:
    """Serialize a Bundle status into the camelCase form used by the API.

    An unset default CA version is kept as None so that a merge patch
    removes any previously recorded value.

    """
    return {
        "conditions": [serialize_condition(c) for c in status.conditions],
        "defaultCAVersion": status.default_ca_version,
    }
