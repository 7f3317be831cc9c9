"""Dependency graph over step ids, derived from template references."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import AbstractSet, Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

from stepflow.models import Step, WorkflowDefinition
from stepflow.service.dependencies import RESERVED_NAMES, step_dependencies
from stepflow.service.errors import CyclicDependencyError, ValidationError
from stepflow.service.expressions import expression_syntax_errors

# Tools backed by external collaborators (HTTP, database, model APIs)
DATA_TOOLS: FrozenSet[str] = frozenset(
    {
        "http",
        "ingest",
        "aggregate",
        "generate",
        "query",
        "search",
        "collections",
        "rerank",
        "embed",
        "similarity",
        "chunk",
        "models",
        "explain",
        "estimate",
    }
)

CONTROL_FLOW_TOOLS: FrozenSet[str] = frozenset({"merge", "filter", "transform", "loop"})

KNOWN_TOOLS: FrozenSet[str] = DATA_TOOLS | CONTROL_FLOW_TOOLS

INPUT_TYPES = ("string", "number", "boolean", "array", "object")


@dataclass(frozen=True)
class DependencyGraph:
    """Edges point from a step to the steps it must wait for."""

    order: Tuple[str, ...]
    dependencies: Dict[str, FrozenSet[str]]
    dependents: Dict[str, FrozenSet[str]]

    def execution_plan(self) -> List[List[str]]:
        """Group steps into layers that could run in parallel (Kahn)."""
        remaining = {step_id: len(self.dependencies[step_id]) for step_id in self.order}
        layers: List[List[str]] = []
        while remaining:
            ready = [step_id for step_id in self.order if remaining.get(step_id) == 0]
            if not ready:
                break
            layers.append(ready)
            for step_id in ready:
                del remaining[step_id]
                for dependent in self.dependents[step_id]:
                    if dependent in remaining:
                        remaining[dependent] -= 1
        return layers

    def topological_order(self) -> List[str]:
        return [step_id for layer in self.execution_plan() for step_id in layer]


def _tool_errors(prefix: str, tool: object, known_tools: AbstractSet[str]) -> List[str]:
    if not tool or not isinstance(tool, str):
        return [f'{prefix}: must have a string "tool"']
    if tool not in known_tools:
        available = ", ".join(sorted(known_tools))
        return [f'{prefix}: unknown tool "{tool}" (available: {available})']
    return []


def _loop_body_errors(prefix: str, step: Step, known_tools: AbstractSet[str]) -> List[str]:
    inputs = step.inputs if isinstance(step.inputs, Mapping) else {}
    errors: List[str] = []
    if "items" not in inputs:
        errors.append(f'{prefix}: loop step needs an "items" input')
    body = inputs.get("step")
    if not isinstance(body, Mapping):
        errors.append(f'{prefix}: loop step needs a "step" object with "tool" and "inputs"')
        return errors
    if body.get("tool") == "loop":
        errors.append(f"{prefix}: nested loop steps are not supported")
    else:
        errors.extend(_tool_errors(f"{prefix} loop body", body.get("tool"), known_tools))
    return errors


def _structural_errors(
    definition: WorkflowDefinition, known_tools: AbstractSet[str]
) -> List[str]:
    errors: List[str] = []
    if not definition.name or not isinstance(definition.name, str):
        errors.append('Workflow must have a "name" string')
    if not definition.steps:
        errors.append('Workflow must have a non-empty "steps" array')
    if errors:
        return errors

    for key, spec in definition.inputs.items():
        if spec.type not in INPUT_TYPES:
            errors.append(
                f'Input "{key}" has invalid type "{spec.type}" '
                f"(must be one of {', '.join(INPUT_TYPES)})"
            )

    all_ids = {step.id for step in definition.steps if isinstance(step.id, str)}
    seen: Set[str] = set()
    duplicates: List[str] = []

    for position, step in enumerate(definition.steps):
        if not step.id or not isinstance(step.id, str):
            errors.append(f'Step {position}: must have a string "id"')
            continue
        prefix = f'Step "{step.id}"'
        if step.id in RESERVED_NAMES:
            errors.append(f"{prefix}: id is a reserved name")
        if step.id in seen and step.id not in duplicates:
            duplicates.append(step.id)
        seen.add(step.id)

        errors.extend(_tool_errors(prefix, step.tool, known_tools))
        if step.tool == "loop":
            errors.extend(_loop_body_errors(prefix, step, known_tools))

        if step.condition is not None and not isinstance(step.condition, str):
            errors.append(f'{prefix}: "condition" must be a string')
        if step.for_each is not None and not isinstance(step.for_each, str):
            errors.append(f'{prefix}: "forEach" must be a string')
        limit = step.max_iterations
        if limit is not None and (
            not isinstance(limit, int) or isinstance(limit, bool) or limit < 0
        ):
            errors.append(f'{prefix}: "maxIterations" must be a non-negative integer')

        syntax = expression_syntax_errors(step.inputs)
        if isinstance(step.condition, str):
            syntax += expression_syntax_errors(step.condition, bare=True)
        if isinstance(step.for_each, str):
            syntax += expression_syntax_errors(step.for_each)
        errors.extend(f"{prefix}: {message}" for message in syntax)
        if syntax:
            continue

        for ref in sorted(step_dependencies(step)):
            if ref not in all_ids:
                errors.append(f'{prefix}: references unknown step "{ref}"')

    for step_id in duplicates:
        errors.append(f'Duplicate step id: "{step_id}"')
    return errors


def find_cycle(
    order: Sequence[str], dependencies: Mapping[str, AbstractSet[str]]
) -> Optional[List[str]]:
    """Return the first dependency cycle found, closed (``a -> b -> a``)."""
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {step_id: WHITE for step_id in order}
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GRAY
        path.append(node)
        for dep in sorted(dependencies.get(node, ())):
            if dep not in color:
                continue
            if color[dep] == GRAY:
                start = path.index(dep)
                return path[start:] + [dep]
            if color[dep] == WHITE:
                cycle = visit(dep)
                if cycle:
                    return cycle
        path.pop()
        color[node] = BLACK
        return None

    for step_id in order:
        if color[step_id] == WHITE:
            cycle = visit(step_id)
            if cycle:
                return cycle
    return None


def _dependency_map(
    definition: WorkflowDefinition, reserved: AbstractSet[str]
) -> Dict[str, FrozenSet[str]]:
    ids = {step.id for step in definition.steps}
    dependencies: Dict[str, FrozenSet[str]] = {}
    for step in definition.steps:
        refs = step_dependencies(step, reserved)
        dependencies[step.id] = frozenset(ref for ref in refs if ref in ids)
    return dependencies


def validate_workflow(
    definition: WorkflowDefinition,
    known_tools: AbstractSet[str] = KNOWN_TOOLS,
) -> List[str]:
    """Return every problem with a definition (empty list means valid)."""
    errors = _structural_errors(definition, known_tools)
    if errors:
        return errors
    dependencies = _dependency_map(definition, RESERVED_NAMES)
    cycle = find_cycle(definition.step_ids, dependencies)
    if cycle:
        errors.append(f"Circular dependency: {' -> '.join(cycle)}")
    return errors


def build_graph(
    definition: WorkflowDefinition,
    known_tools: AbstractSet[str] = KNOWN_TOOLS,
    reserved: AbstractSet[str] = RESERVED_NAMES,
) -> DependencyGraph:
    """Validate a definition and build its dependency graph.

    Raises:
        ValidationError: duplicate ids, unknown tools, bad expressions,
            unknown references.
        CyclicDependencyError: the references form a cycle.
    """
    errors = _structural_errors(definition, known_tools)
    if errors:
        raise ValidationError("Workflow validation failed", errors)

    dependencies = _dependency_map(definition, reserved)
    order = tuple(definition.step_ids)
    cycle = find_cycle(order, dependencies)
    if cycle:
        raise CyclicDependencyError(cycle)

    dependents: Dict[str, Set[str]] = {step_id: set() for step_id in order}
    for step_id, deps in dependencies.items():
        for dep in deps:
            dependents[dep].add(step_id)
    return DependencyGraph(
        order=order,
        dependencies=dependencies,
        dependents={step_id: frozenset(ids) for step_id, ids in dependents.items()},
    )


__all__ = [
    "DATA_TOOLS",
    "CONTROL_FLOW_TOOLS",
    "KNOWN_TOOLS",
    "INPUT_TYPES",
    "DependencyGraph",
    "find_cycle",
    "validate_workflow",
    "build_graph",
]
