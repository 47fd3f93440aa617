from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

_NAME_RE = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_DNS_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_INTEGER_RE = re.compile(r"^-?[0-9]+$")


class SelectorError(ValueError):
    """Raised when a label selector expression cannot be parsed."""


class Operator(str, Enum):
    EQUALS = "="
    NOT_EQUALS = "!="
    IN = "in"
    NOT_IN = "notin"
    EXISTS = "exists"
    DOES_NOT_EXIST = "!"
    GREATER_THAN = ">"
    LESS_THAN = "<"


@runtime_checkable
class HasLabels(Protocol):
    """Anything the selector can be evaluated against."""

    @property
    def labels(self) -> Mapping[str, str]: ...


def is_qualified_name(value: str) -> bool:
    """Return True if *value* is a valid label or annotation key (``[prefix/]name``)."""
    prefix, separator, name = value.rpartition("/")
    if separator:
        if not prefix or len(prefix) > 253 or not _DNS_SUBDOMAIN_RE.match(prefix):
            return False
    return 0 < len(name) <= 63 and bool(_NAME_RE.match(name))


def is_label_value(value: str) -> bool:
    return value == "" or (len(value) <= 63 and bool(_NAME_RE.match(value)))


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: Operator
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        value = labels.get(self.key)
        if self.operator is Operator.EXISTS:
            return present
        if self.operator is Operator.DOES_NOT_EXIST:
            return not present
        if self.operator in (Operator.EQUALS, Operator.IN):
            return present and value in self.values
        if self.operator in (Operator.NOT_EQUALS, Operator.NOT_IN):
            return not present or value not in self.values

        # gt / lt only match labels that hold an integer
        if not present or value is None or not _INTEGER_RE.match(value):
            return False
        bound = int(self.values[0])
        if self.operator is Operator.GREATER_THAN:
            return int(value) > bound
        return int(value) < bound

    def __str__(self) -> str:
        if self.operator is Operator.EXISTS:
            return self.key
        if self.operator is Operator.DOES_NOT_EXIST:
            return f"!{self.key}"
        if self.operator in (Operator.IN, Operator.NOT_IN):
            return f"{self.key} {self.operator.value} ({','.join(self.values)})"
        return f"{self.key}{self.operator.value}{self.values[0]}"


@dataclass(frozen=True)
class Selector:
    """A validated, conjunctive set of label requirements.

    Parsed once at startup from the Kubernetes selector syntax and shared by
    the watch layer and the reconciler, so that the events admitted for
    reconciliation and the objects listed during a pass agree on membership.
    An empty requirement tuple matches every label set.
    """

    requirements: tuple[Requirement, ...] = ()

    @classmethod
    def everything(cls) -> Selector:
        return cls()

    @property
    def empty(self) -> bool:
        return not self.requirements

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        label_set = labels or {}
        return all(requirement.matches(label_set) for requirement in self.requirements)

    def matches_object(self, obj: Any) -> bool:
        """Evaluate the selector against a labelled model or a raw API object."""
        if obj is None:
            return False
        return self.matches(labels_of(obj))

    def __str__(self) -> str:
        return ",".join(str(requirement) for requirement in self.requirements)


def labels_of(obj: Any) -> dict[str, str]:
    """Return the label set of *obj*.

    Models implementing :class:`HasLabels` expose ``labels`` directly;
    Kubernetes client objects carry them on ``metadata.labels``.
    """
    if isinstance(obj, HasLabels):
        raw = obj.labels
    else:
        raw = getattr(getattr(obj, "metadata", None), "labels", None)
    if not isinstance(raw, Mapping):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def _split_requirements(text: str) -> list[str]:
    """Split on commas that are not inside a parenthesised value list."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise SelectorError(f"unbalanced ')' in selector {text!r}")
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise SelectorError(f"unbalanced '(' in selector {text!r}")
    parts.append("".join(current))
    return parts


_SET_RE = re.compile(r"^(?P<key>\S+)\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")
_BINARY_RE = re.compile(r"^(?P<key>[^=!<>\s]+)\s*(?P<op>==|!=|=|>|<)\s*(?P<value>\S*)$")


def _validate_key(key: str, text: str) -> str:
    if not is_qualified_name(key):
        raise SelectorError(f"invalid label key {key!r} in selector {text!r}")
    return key


def _validate_value(value: str, text: str) -> str:
    if not is_label_value(value):
        raise SelectorError(f"invalid label value {value!r} in selector {text!r}")
    return value


def _parse_requirement(part: str, text: str) -> Requirement:
    clause = part.strip()
    if not clause:
        raise SelectorError(f"empty requirement in selector {text!r}")

    set_match = _SET_RE.match(clause)
    if set_match:
        key = _validate_key(set_match.group("key"), text)
        values = tuple(
            sorted({_validate_value(v.strip(), text) for v in set_match.group("values").split(",")})
        )
        operator = Operator.IN if set_match.group("op") == "in" else Operator.NOT_IN
        return Requirement(key=key, operator=operator, values=values)

    if clause.startswith("!"):
        return Requirement(key=_validate_key(clause[1:].strip(), text), operator=Operator.DOES_NOT_EXIST)

    binary_match = _BINARY_RE.match(clause)
    if binary_match:
        key = _validate_key(binary_match.group("key"), text)
        op = binary_match.group("op")
        value = binary_match.group("value")
        if op in {">", "<"}:
            if not _INTEGER_RE.match(value):
                raise SelectorError(f"{op} requires an integer value in selector {text!r}")
            operator = Operator.GREATER_THAN if op == ">" else Operator.LESS_THAN
            return Requirement(key=key, operator=operator, values=(value,))
        operator = Operator.NOT_EQUALS if op == "!=" else Operator.EQUALS
        return Requirement(key=key, operator=operator, values=(_validate_value(value, text),))

    if " " not in clause:
        return Requirement(key=_validate_key(clause, text), operator=Operator.EXISTS)

    raise SelectorError(f"cannot parse requirement {clause!r} in selector {text!r}")


def parse_selector(text: str | None) -> Selector:
    """Parse a Kubernetes label selector string into a :class:`Selector`.

    Blank input yields :meth:`Selector.everything`. Requirements are sorted
    by key so that equivalent expressions render identically.
    """
    if text is None or not text.strip():
        return Selector.everything()
    requirements = [_parse_requirement(part, text) for part in _split_requirements(text)]
    requirements.sort(key=lambda r: (r.key, r.operator.value, r.values))
    return Selector(requirements=tuple(requirements))
