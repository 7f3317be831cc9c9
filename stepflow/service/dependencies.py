"""Extract step references from template expressions.

The scheduler never looks at template text: it consumes the typed id sets
produced here.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, AbstractSet, Any, FrozenSet, Set

from stepflow.service.errors import ExpressionSyntaxError
from stepflow.service.expressions import iter_fragments, iter_tokens

if TYPE_CHECKING:
    from stepflow.models import Step

# Names that never refer to a step: workflow-level scopes, loop variables
# injected per iteration, and language literals.
RESERVED_NAMES: FrozenSet[str] = frozenset(
    {"inputs", "defaults", "item", "index", "true", "false", "null", "undefined"}
)

_STRING_LITERAL_RE = re.compile(r"'[^']*'|\"[^\"]*\"")
_ROOT_IDENTIFIER_RE = re.compile(r"(?<![A-Za-z0-9_.\]])([A-Za-z_][A-Za-z0-9_]*)")


def expression_roots(
    expr: str, reserved: AbstractSet[str] = RESERVED_NAMES
) -> Set[str]:
    """Return the root identifiers referenced by one expression body.

    Works on expressions containing operators, comparisons and negation.
    Identifiers that follow a ``.`` are path segments, not roots.
    """
    roots: Set[str] = set()
    try:
        previous = None
        for token in iter_tokens(expr):
            if token.kind == "NAME" and (previous is None or previous.kind != "DOT"):
                roots.add(token.value)
            previous = token
    except ExpressionSyntaxError:
        # Malformed text is reported by validation; still find what we can
        stripped = _STRING_LITERAL_RE.sub("''", expr)
        roots = set(_ROOT_IDENTIFIER_RE.findall(stripped))
    return {root for root in roots if root not in reserved}


def extract_dependencies(
    value: Any, reserved: AbstractSet[str] = RESERVED_NAMES
) -> Set[str]:
    """Return the distinct root identifiers referenced by ``{{ }}`` fragments.

    ``value`` may be any structured value (step inputs, a condition string,
    a forEach source); every string leaf is scanned.
    """
    deps: Set[str] = set()

    def scan(item: Any) -> None:
        if isinstance(item, str):
            for fragment in iter_fragments(item):
                deps.update(expression_roots(fragment, reserved))
        elif isinstance(item, (list, tuple)):
            for child in item:
                scan(child)
        elif isinstance(item, Mapping):
            for child in item.values():
                scan(child)

    scan(value)
    return deps


def condition_dependencies(
    condition: Any, reserved: AbstractSet[str] = RESERVED_NAMES
) -> Set[str]:
    """Roots referenced by a condition, with or without ``{{ }}`` braces."""
    if isinstance(condition, str) and "{{" not in condition and condition.strip():
        return expression_roots(condition, reserved)
    return extract_dependencies(condition, reserved)


def step_dependencies(
    step: "Step", reserved: AbstractSet[str] = RESERVED_NAMES
) -> Set[str]:
    """Every root a step's inputs, condition and forEach source refer to.

    Loop-local names (``item``/``index`` and a loop step's ``as`` alias)
    are excluded.
    """
    local = set(reserved)
    alias = step.loop_alias
    if alias:
        local.add(alias)
    refs = extract_dependencies(step.inputs, local)
    if step.condition is not None:
        refs |= condition_dependencies(step.condition, local)
    if step.for_each is not None:
        refs |= extract_dependencies(step.for_each, local)
    return refs


__all__ = [
    "RESERVED_NAMES",
    "expression_roots",
    "extract_dependencies",
    "condition_dependencies",
    "step_dependencies",
]
