from stepflow.models import Step
from stepflow.service.dependencies import (
    RESERVED_NAMES,
    condition_dependencies,
    expression_roots,
    extract_dependencies,
    step_dependencies,
)


def test_extract_dependencies_finds_root_identifiers():
    inputs = {
        "query": "{{ inputs.query }}",
        "documents": "{{ search.output.results }}",
        "nested": [{"ids": "{{ rerank.output.results[0].id }}"}],
        "limit": 5,
    }

    assert extract_dependencies(inputs) == {"search", "rerank"}


def test_reserved_names_are_never_dependencies():
    value = "{{ inputs.a }} {{ defaults.db }} {{ item.id }} {{ index }} {{ true }} {{ null }}"

    assert extract_dependencies(value) == set()
    assert {"inputs", "defaults", "item", "index"} <= RESERVED_NAMES


def test_operators_and_literals_do_not_leak_identifiers():
    expr = "!check.output || check.output.found === 'search.output' && score.output > 0.85"

    assert expression_roots(expr) == {"check", "score"}


def test_fallback_operands_each_contribute():
    assert extract_dependencies("{{ primary.output.results || fallback.output.results }}") == {
        "primary",
        "fallback",
    }


def test_malformed_expression_still_reports_roots():
    assert "search" in extract_dependencies("{{ search.output[oops }}")


def test_custom_reserved_set():
    assert extract_dependencies("{{ env.region }} {{ a.output }}", reserved={"env"}) == {"a"}


def test_condition_dependencies_accept_bare_expressions():
    assert condition_dependencies("search.output.count > 0 && !other.output") == {"search", "other"}
    assert condition_dependencies("{{ search.output.count > 0 }}") == {"search"}


def test_step_dependencies_unions_inputs_condition_and_for_each():
    step = Step.from_dict(
        {
            "id": "embed_each",
            "tool": "embed",
            "inputs": {"text": "{{ item.text }}", "model": "{{ config.output.model }}"},
            "condition": "{{ gate.output.enabled }}",
            "forEach": "{{ chunks.output.results }}",
        }
    )

    assert step_dependencies(step) == {"config", "gate", "chunks"}


def test_loop_alias_is_local_to_the_loop_step():
    step = Step.from_dict(
        {
            "id": "fan_out",
            "tool": "loop",
            "inputs": {
                "items": "{{ search.output.results }}",
                "as": "doc",
                "maxIterations": 10,
                "step": {"tool": "embed", "inputs": {"text": "{{ doc.text }}", "i": "{{ index }}"}},
            },
        }
    )

    assert step_dependencies(step) == {"search"}
