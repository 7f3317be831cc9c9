"""Declarative workflow test cases (``tests/*.test.json`` in a package).

A case supplies inputs, canned outputs per tool name, and expectations on
step statuses, the shape of the final output and the absence of errors::

    {
      "name": "primary path",
      "inputs": {"query": "vector search"},
      "mocks": {"search": {"results": [{"id": 1}]}},
      "expect": {
        "steps": {"format_primary": {"status": "completed"}},
        "output": {"results": {"type": "array", "minLength": 1}},
        "noErrors": true
      }
    }
"""
from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from stepflow.config import Settings
from stepflow.logging import get_logger
from stepflow.models import StepStatus, WorkflowDefinition
from stepflow.service.errors import WorkflowError
from stepflow.service.tools import ToolContext, ToolRegistry
from stepflow.service.workflow import WorkflowEngine

logger = get_logger(__name__)

CASE_SUFFIX = ".test.json"


@dataclass(frozen=True)
class CaseAssertion:
    passed: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"pass": self.passed, "message": self.message}


@dataclass
class CaseResult:
    name: str
    passed: bool = True
    assertions: List[CaseAssertion] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    file: Optional[str] = None

    def check(self, passed: bool, message: str) -> None:
        self.assertions.append(CaseAssertion(passed, message))
        if not passed:
            self.passed = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "file": self.file,
            "passed": self.passed,
            "assertions": [assertion.to_dict() for assertion in self.assertions],
            "errors": list(self.errors),
        }


def _mock_handler(output: Any):
    def handler(inputs: Any, ctx: ToolContext) -> Any:
        return copy.deepcopy(output)

    return handler


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def _check_output(result: CaseResult, output: Any, expected: Mapping[str, Any]) -> None:
    for key, constraint in expected.items():
        if not isinstance(constraint, Mapping):
            continue
        value = output.get(key) if isinstance(output, Mapping) else None
        expected_type = constraint.get("type")
        min_length = constraint.get("minLength")
        if expected_type and _type_name(value) != expected_type:
            result.check(False, f"output.{key} should be {expected_type}, got {_type_name(value)}")
            continue
        if min_length is not None:
            length = len(value) if isinstance(value, (str, list, tuple, Mapping)) else 0
            if length < min_length:
                result.check(False, f"output.{key} length {length} < {min_length}")
                continue
        if expected_type or min_length is not None:
            result.check(True, f"output.{key} matches expected shape")


async def run_case(
    definition: Union[WorkflowDefinition, Mapping[str, Any]],
    case: Mapping[str, Any],
    *,
    settings: Optional[Settings] = None,
) -> CaseResult:
    """Run one case with its mocks standing in for the named tools."""
    result = CaseResult(name=case.get("name") or case.get("_file") or "unnamed", file=case.get("_file"))
    registry = ToolRegistry()
    for tool, output in (case.get("mocks") or {}).items():
        registry.register(tool, _mock_handler(output))
    engine = WorkflowEngine(registry, settings=settings)
    try:
        run = await engine.run(definition, inputs=case.get("inputs") or {})
    except WorkflowError as exc:
        result.passed = False
        result.errors.append(exc.message)
        return result
    finally:
        engine.shutdown(wait=False)

    expect = case.get("expect") or {}
    for step_id, expected in (expect.get("steps") or {}).items():
        record = run.steps.get(step_id)
        wanted = expected.get("status") if isinstance(expected, Mapping) else None
        if record is None:
            result.check(False, f'Step "{step_id}" not found in results')
        elif wanted == StepStatus.COMPLETED.value:
            if record.status is StepStatus.SKIPPED:
                result.check(False, f'Step "{step_id}" was skipped, expected completed')
            elif record.status is StepStatus.ERROR:
                result.check(False, f'Step "{step_id}" errored: {record.error}')
            else:
                result.check(True, f'Step "{step_id}" completed')
        elif wanted == StepStatus.SKIPPED.value:
            result.check(
                record.status is StepStatus.SKIPPED,
                f'Step "{step_id}" skipped'
                if record.status is StepStatus.SKIPPED
                else f'Step "{step_id}" should have been skipped',
            )

    if isinstance(expect.get("output"), Mapping):
        _check_output(result, run.output, expect["output"])

    if expect.get("noErrors"):
        failed = [
            f"{step_id}: {record.error}"
            for step_id, record in run.steps.items()
            if record.status is StepStatus.ERROR
        ]
        if failed:
            result.check(False, f"Expected no errors but found: {'; '.join(failed)}")
        else:
            result.check(True, "No step errors")

    return result


def load_cases(package_path: Union[str, Path]) -> List[Dict[str, Any]]:
    """Read every ``*.test.json`` under ``<package>/tests``, sorted by file name.

    Unreadable files come back as cases carrying an ``_error``.
    """
    tests_dir = Path(package_path) / "tests"
    if not tests_dir.is_dir():
        return []
    cases: List[Dict[str, Any]] = []
    for path in sorted(tests_dir.glob(f"*{CASE_SUFFIX}")):
        try:
            case = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(case, dict):
                raise ValueError("test case must be a JSON object")
        except (OSError, ValueError) as exc:
            logger.warning("workflow_case_unreadable", file=path.name, error=str(exc))
            cases.append({"name": path.name, "_file": path.name, "_error": f"Failed to load: {exc}"})
            continue
        case["_file"] = path.name
        cases.append(case)
    return cases


async def run_all_cases(
    definition: Union[WorkflowDefinition, Mapping[str, Any]],
    package_path: Union[str, Path],
    *,
    test_name: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    cases = load_cases(package_path)
    if test_name:
        cases = [case for case in cases if case.get("name") == test_name]

    results: List[Dict[str, Any]] = []
    passed = 0
    for case in cases:
        if "_error" in case:
            outcome = CaseResult(name=case["name"], passed=False, errors=[case["_error"]], file=case["_file"])
        else:
            outcome = await run_case(definition, case, settings=settings)
        results.append(outcome.to_dict())
        passed += 1 if outcome.passed else 0

    summary = {"total": len(cases), "passed": passed, "failed": len(cases) - passed, "results": results}
    logger.info("workflow_cases_finished", total=summary["total"], passed=passed, failed=summary["failed"])
    return summary


__all__ = ["CaseAssertion", "CaseResult", "run_case", "load_cases", "run_all_cases"]
