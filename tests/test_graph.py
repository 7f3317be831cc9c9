import pytest

from stepflow.models import WorkflowDefinition
from stepflow.service.errors import CyclicDependencyError, ValidationError
from stepflow.service.graph import KNOWN_TOOLS, build_graph, find_cycle, validate_workflow


def _definition(steps, **extra):
    return WorkflowDefinition.from_dict({"name": "graph-check", "steps": steps, **extra})


def test_build_graph_derives_edges_from_templates():
    definition = _definition(
        [
            {"id": "search", "tool": "search", "inputs": {"query": "{{ inputs.q }}"}},
            {"id": "rerank", "tool": "rerank", "inputs": {"documents": "{{ search.output.results }}"}},
            {"id": "summary", "tool": "generate", "inputs": {"prompt": "{{ rerank.output.results }}"}},
        ]
    )

    graph = build_graph(definition)

    assert graph.dependencies["search"] == frozenset()
    assert graph.dependencies["rerank"] == {"search"}
    assert graph.dependents["search"] == {"rerank"}
    assert graph.execution_plan() == [["search"], ["rerank"], ["summary"]]


def test_authoring_order_does_not_matter():
    definition = _definition(
        [
            {"id": "format", "tool": "transform", "inputs": {"array": "{{ fetch.output.results }}"}},
            {"id": "fetch", "tool": "query", "inputs": {"query": "x"}},
        ]
    )

    assert build_graph(definition).execution_plan() == [["fetch"], ["format"]]


def test_independent_steps_share_a_layer():
    definition = _definition(
        [
            {"id": "cost_large", "tool": "estimate", "inputs": {"model": "large"}},
            {"id": "cost_balanced", "tool": "estimate", "inputs": {"model": "balanced"}},
            {"id": "cost_lite", "tool": "estimate", "inputs": {"model": "lite"}},
            {
                "id": "compare",
                "tool": "merge",
                "inputs": {
                    "arrays": [
                        "{{ cost_large.output.rows }}",
                        "{{ cost_balanced.output.rows }}",
                        "{{ cost_lite.output.rows }}",
                    ]
                },
            },
        ]
    )

    plan = build_graph(definition).execution_plan()

    assert plan == [["cost_large", "cost_balanced", "cost_lite"], ["compare"]]


def test_condition_and_for_each_create_edges():
    definition = _definition(
        [
            {"id": "chunks", "tool": "chunk", "inputs": {"text": "{{ inputs.text }}"}},
            {"id": "gate", "tool": "similarity", "inputs": {"text1": "a", "text2": "b"}},
            {
                "id": "embed_all",
                "tool": "embed",
                "forEach": "{{ chunks.output.chunks }}",
                "condition": "gate.output.similarity < 0.9",
                "inputs": {"text": "{{ item }}"},
            },
        ]
    )

    graph = build_graph(definition)

    assert graph.dependencies["embed_all"] == {"chunks", "gate"}


def test_two_step_cycle_raises_with_path():
    definition = _definition(
        [
            {"id": "a", "tool": "transform", "inputs": {"array": "{{ b.output.results }}"}},
            {"id": "b", "tool": "transform", "inputs": {"array": "{{ a.output.results }}"}},
        ]
    )

    with pytest.raises(CyclicDependencyError) as excinfo:
        build_graph(definition)

    assert excinfo.value.cycle == ["a", "b", "a"]
    assert "Circular dependency: a -> b -> a" in excinfo.value.message
    assert excinfo.value.error_code == "cyclic_dependency"
    assert isinstance(excinfo.value, ValidationError)


def test_self_reference_is_a_cycle():
    definition = _definition(
        [{"id": "again", "tool": "search", "inputs": {"query": "{{ again.output.text }}"}}]
    )

    assert validate_workflow(definition) == ["Circular dependency: again -> again"]


def test_find_cycle_on_longer_path():
    deps = {"a": {"c"}, "b": {"a"}, "c": {"b"}, "d": set()}

    assert find_cycle(["a", "b", "c", "d"], deps) == ["a", "c", "b", "a"]
    assert find_cycle(["d"], {"d": set()}) is None


def test_validation_collects_every_problem():
    definition = _definition(
        [
            {"id": "first", "tool": "teleport", "inputs": {}},
            {"id": "first", "tool": "search", "inputs": {"q": "{{ ghost.output }}"}},
            {"id": "third", "tool": "search", "inputs": {"q": "{{ first.output..x }}"}},
            {"id": "fourth", "tool": "search", "condition": 5},
        ],
        inputs={"limit": {"type": "integer"}},
    )

    errors = validate_workflow(definition)

    assert any('Input "limit" has invalid type "integer"' in e for e in errors)
    assert any('unknown tool "teleport"' in e for e in errors)
    assert any('references unknown step "ghost"' in e for e in errors)
    assert any('Step "third"' in e and "Invalid expression segment" in e for e in errors)
    assert any('"condition" must be a string' in e for e in errors)
    assert 'Duplicate step id: "first"' in errors


def test_missing_name_and_steps():
    errors = validate_workflow(WorkflowDefinition.from_dict({}))

    assert 'Workflow must have a "name" string' in errors
    assert 'Workflow must have a non-empty "steps" array' in errors


def test_build_graph_raises_validation_error_before_cycle_check():
    definition = _definition([{"id": "x", "tool": "nope"}])

    with pytest.raises(ValidationError) as excinfo:
        build_graph(definition)

    assert not isinstance(excinfo.value, CyclicDependencyError)
    assert excinfo.value.errors[0].startswith('Step "x": unknown tool "nope"')


def test_loop_variables_are_not_unknown_references():
    definition = _definition(
        [
            {"id": "docs", "tool": "query", "inputs": {"query": "x"}},
            {
                "id": "each",
                "tool": "loop",
                "inputs": {
                    "items": "{{ docs.output.results }}",
                    "as": "doc",
                    "maxIterations": 50,
                    "step": {"tool": "embed", "inputs": {"text": "{{ doc.text }} {{ item.id }} {{ index }}"}},
                },
            },
        ]
    )

    assert validate_workflow(definition) == []


def test_loop_step_requires_body():
    definition = _definition([{"id": "each", "tool": "loop", "inputs": {"items": []}}])

    errors = validate_workflow(definition)

    assert any('needs a "step" object' in e for e in errors)


def test_custom_tools_can_be_allowed():
    definition = _definition([{"id": "x", "tool": "custom_tool"}])

    assert validate_workflow(definition, KNOWN_TOOLS | {"custom_tool"}) == []


@pytest.mark.parametrize("step_id", ["index", "inputs", "item", "defaults", "null"])
def test_reserved_names_cannot_be_step_ids(step_id):
    definition = _definition(
        [
            {"id": step_id, "tool": "query", "inputs": {}},
            {"id": "use", "tool": "transform", "inputs": {"array": "{{ inputs.rows }}"}},
        ]
    )

    assert f'Step "{step_id}": id is a reserved name' in validate_workflow(definition)
    with pytest.raises(ValidationError):
        build_graph(definition)
