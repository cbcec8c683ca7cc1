from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

from cmbump.src.errors import ConfigError

_NAME = r"[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?"
_KEY_RE = re.compile(rf"^([a-z0-9]([-a-z0-9.]*[a-z0-9])?/)?{_NAME}$")
_VALUE_RE = re.compile(rf"^({_NAME})?$")
_SET_RE = re.compile(r"^(?P<key>\S+)\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")
_EQUALITY_RE = re.compile(r"^(?P<key>[^=!\s]+)\s*(?P<op>==|!=|=)\s*(?P<value>\S*)$")


class SelectorError(ConfigError):
    """Raised when a label selector expression cannot be parsed."""


@dataclass(frozen=True)
class Requirement:
    """One AND-ed clause of a label selector."""

    key: str
    operator: str
    values: frozenset[str] = frozenset()

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        if self.operator == "exists":
            return present
        if self.operator == "!exists":
            return not present
        if self.operator in {"=", "in"}:
            return present and labels[self.key] in self.values
        # != and notin also match objects that do not carry the key at all
        return not present or labels[self.key] not in self.values


def _split_clauses(expression: str) -> list[str]:
    """Split on top-level commas, keeping ``in (a,b)`` value lists intact."""
    clauses: list[str] = []
    depth = 0
    current: list[str] = []
    for char in expression:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise SelectorError(f"Unbalanced parenthesis in selector {expression!r}")
        if char == "," and depth == 0:
            clauses.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise SelectorError(f"Unbalanced parenthesis in selector {expression!r}")
    clauses.append("".join(current).strip())
    return clauses


def _check_key(key: str, expression: str) -> str:
    if len(key.rpartition("/")[2]) > 63 or not _KEY_RE.match(key):
        raise SelectorError(f"Invalid label key {key!r} in selector {expression!r}")
    return key


def _check_value(value: str, expression: str) -> str:
    if len(value) > 63 or not _VALUE_RE.match(value):
        raise SelectorError(f"Invalid label value {value!r} in selector {expression!r}")
    return value


def _parse_clause(clause: str, expression: str) -> Requirement:
    if not clause:
        raise SelectorError(f"Empty clause in selector {expression!r}")

    set_match = _SET_RE.match(clause)
    if set_match:
        key = _check_key(set_match.group("key"), expression)
        raw_values = [v.strip() for v in set_match.group("values").split(",")]
        if not any(raw_values):
            raise SelectorError(f"Empty value set for {key!r} in selector {expression!r}")
        values = frozenset(_check_value(v, expression) for v in raw_values)
        return Requirement(key=key, operator=set_match.group("op"), values=values)

    equality_match = _EQUALITY_RE.match(clause)
    if equality_match:
        key = _check_key(equality_match.group("key"), expression)
        value = _check_value(equality_match.group("value"), expression)
        operator = "!=" if equality_match.group("op") == "!=" else "="
        return Requirement(key=key, operator=operator, values=frozenset({value}))

    if clause.startswith("!"):
        return Requirement(key=_check_key(clause[1:].strip(), expression), operator="!exists")

    return Requirement(key=_check_key(clause, expression), operator="exists")


@dataclass(frozen=True)
class LabelSelector:
    """A parsed Kubernetes label selector.

    The raw expression is what gets sent to the API server; the parsed
    requirements let the watch controller re-check labels client-side so an
    object that stops matching is dropped even if the server reports it as
    ``MODIFIED``.
    """

    expression: str
    requirements: tuple[Requirement, ...]

    @classmethod
    def parse(cls, expression: str) -> LabelSelector:
        stripped = expression.strip()
        if not stripped:
            return cls(expression="", requirements=())
        requirements = tuple(_parse_clause(c, stripped) for c in _split_clauses(stripped))
        return cls(expression=stripped, requirements=requirements)

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        current = labels or {}
        return all(requirement.matches(current) for requirement in self.requirements)
