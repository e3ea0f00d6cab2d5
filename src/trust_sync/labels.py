"""Kubernetes label selectors.

Selectors are evaluated locally against namespace labels and rendered as
selector strings when listing source objects from the API server.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SelectorOperator(str, Enum):
    """Operators supported in label selector requirements."""

    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


@dataclass(frozen=True, slots=True)
class SelectorRequirement:
    """A single matchExpressions entry.

    Attributes:
        key: The label key the requirement applies to.
        operator: How the label value is compared.
        values: Candidate values, only used by In and NotIn.

    """

    key: str
    operator: SelectorOperator
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        match self.operator:
            case SelectorOperator.IN:
                return self.key in labels and labels[self.key] in self.values
            case SelectorOperator.NOT_IN:
                return self.key not in labels or labels[self.key] not in self.values
            case SelectorOperator.EXISTS:
                return self.key in labels
            case SelectorOperator.DOES_NOT_EXIST:
                return self.key not in labels

    def to_selector_string(self) -> str:
        match self.operator:
            case SelectorOperator.IN:
                return f"{self.key} in ({','.join(sorted(self.values))})"
            case SelectorOperator.NOT_IN:
                return f"{self.key} notin ({','.join(sorted(self.values))})"
            case SelectorOperator.EXISTS:
                return self.key
            case SelectorOperator.DOES_NOT_EXIST:
                return f"!{self.key}"


@dataclass(frozen=True, slots=True)
class LabelSelector:
    """A label selector as found in Kubernetes API objects.

    An empty selector matches everything.

    Attributes:
        match_labels: Labels that must be present with exactly these values.
        match_expressions: Additional set-based requirements.

    """

    match_labels: Mapping[str, str] = field(default_factory=dict)
    match_expressions: tuple[SelectorRequirement, ...] = ()

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        """Check whether a set of labels satisfies the selector.

        Args:
            labels: The object's labels, None is treated as no labels.

        Returns:
            True if every label and expression requirement holds.

        """
        labels = labels or {}
        if any(labels.get(key) != value for key, value in self.match_labels.items()):
            return False
        return all(req.matches(labels) for req in self.match_expressions)

    def to_selector_string(self) -> str:
        """Render the selector in the API server's label_selector syntax."""
        parts = [f"{key}={value}" for key, value in sorted(self.match_labels.items())]
        parts.extend(req.to_selector_string() for req in self.match_expressions)
        return ",".join(parts)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "LabelSelector":
        """Build a selector from its API representation.

        Args:
            raw: A mapping with optional matchLabels and matchExpressions.

        Returns:
            The decoded LabelSelector.

        Raises:
            ValueError: If an expression uses an unknown operator or
                omits values for In/NotIn.

        """
        raw = raw or {}
        expressions = []
        for expr in raw.get("matchExpressions") or []:
            operator = SelectorOperator(expr["operator"])
            values = tuple(expr.get("values") or ())
            if operator in (SelectorOperator.IN, SelectorOperator.NOT_IN) and not values:
                raise ValueError(f"selector requirement on {expr['key']!r} needs values for {operator.value}")
            expressions.append(SelectorRequirement(key=expr["key"], operator=operator, values=values))
        return cls(match_labels=dict(raw.get("matchLabels") or {}), match_expressions=tuple(expressions))
