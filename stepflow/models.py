from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class StepStatus(str, Enum):
    """Lifecycle of a step within one run."""

    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({StepStatus.SKIPPED, StepStatus.COMPLETED, StepStatus.ERROR})


class Capability(str, Enum):
    """Coarse-grained effects a workflow can have."""

    NETWORK = "NETWORK"
    READ_DB = "READ_DB"
    WRITE_DB = "WRITE_DB"
    LLM = "LLM"
    LOOP = "LOOP"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


@dataclass(frozen=True)
class SecurityFinding:
    severity: Severity
    message: str
    step_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"severity": self.severity.value, "message": self.message}
        if self.step_id:
            payload["stepId"] = self.step_id
        return payload


@dataclass(frozen=True)
class InputSpec:
    """Declared workflow input."""

    type: str = "string"
    required: bool = False
    default: Any = None
    has_default: bool = False
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "InputSpec":
        return cls(
            type=raw.get("type", "string"),
            required=bool(raw.get("required", False)),
            default=raw.get("default"),
            has_default="default" in raw,
            description=raw.get("description"),
        )


@dataclass(frozen=True)
class Step:
    """A single named unit of work bound to one tool."""

    id: str
    tool: str
    inputs: Any = field(default_factory=dict)
    condition: Optional[str] = None
    for_each: Optional[str] = None
    max_iterations: Optional[int] = None
    continue_on_error: bool = False
    allow_writes: bool = False
    name: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Step":
        return cls(
            id=raw.get("id"),
            tool=raw.get("tool"),
            inputs=raw.get("inputs") if raw.get("inputs") is not None else {},
            condition=raw.get("condition"),
            for_each=raw.get("forEach"),
            max_iterations=raw.get("maxIterations"),
            continue_on_error=bool(raw.get("continueOnError", False)),
            allow_writes=bool(raw.get("allowWrites", False)),
            name=raw.get("name"),
            description=raw.get("description"),
        )

    def _input(self, key: str) -> Any:
        if isinstance(self.inputs, Mapping):
            return self.inputs.get(key)
        return None

    @property
    def is_loop(self) -> bool:
        return self.for_each is not None or self.tool == "loop"

    @property
    def loop_alias(self) -> Optional[str]:
        """Extra name a loop step binds each element to (``inputs.as``)."""
        alias = self._input("as") if self.tool == "loop" else None
        return alias if isinstance(alias, str) and alias else None

    @property
    def iteration_limit(self) -> Optional[int]:
        """``maxIterations`` from the step, or from its inputs."""
        if self.max_iterations is not None:
            return self.max_iterations
        value = self._input("maxIterations")
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return None

    @property
    def writes_allowed(self) -> bool:
        return self.allow_writes or self._input("allowWrites") is True


@dataclass(frozen=True)
class WorkflowDefinition:
    """Parsed workflow document; read-only for the lifetime of a run."""

    name: str
    steps: Tuple[Step, ...]
    version: Optional[str] = None
    description: Optional[str] = None
    inputs: Dict[str, InputSpec] = field(default_factory=dict)
    defaults: Dict[str, Any] = field(default_factory=dict)
    output: Any = None
    branding: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "WorkflowDefinition":
        inputs = {
            key: InputSpec.from_dict(spec if isinstance(spec, Mapping) else {})
            for key, spec in (raw.get("inputs") or {}).items()
        }
        version = raw.get("version")
        return cls(
            name=raw.get("name"),
            version=str(version) if version is not None else None,
            description=raw.get("description"),
            inputs=inputs,
            steps=tuple(Step.from_dict(step) for step in raw.get("steps") or []),
            defaults=dict(raw.get("defaults") or {}),
            output=raw.get("output"),
            branding=raw.get("branding"),
        )

    def step_map(self) -> Dict[str, Step]:
        mapping: Dict[str, Step] = {}
        for step in self.steps:
            mapping.setdefault(step.id, step)
        return mapping

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]


@dataclass
class StepRun:
    """Per-step runtime record, mutated only by the engine."""

    step_id: str
    tool: str
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status.value, "tool": self.tool}
        if self.status is StepStatus.COMPLETED:
            payload["output"] = self.output
        if self.status is StepStatus.ERROR:
            payload["error"] = self.error
        if self.skip_reason:
            payload["skipReason"] = self.skip_reason
        if self.started_at:
            payload["startedAt"] = self.started_at.isoformat()
        if self.finished_at:
            payload["finishedAt"] = self.finished_at.isoformat()
        if self.duration_ms is not None:
            payload["durationMs"] = round(self.duration_ms, 3)
        return payload


@dataclass(frozen=True)
class StepError:
    step_id: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"stepId": self.step_id, "message": self.message}


@dataclass
class RunResult:
    workflow: str
    steps: Dict[str, StepRun]
    errors: List[StepError] = field(default_factory=list)
    no_errors: bool = True
    output: Any = None
    layers: List[List[str]] = field(default_factory=list)
    inputs: Dict[str, Any] = field(default_factory=dict)
    defaults: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0
    cancelled: bool = False
    dry_run: bool = False

    def status_of(self, step_id: str) -> StepStatus:
        return self.steps[step_id].status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow,
            "steps": {step_id: run.to_dict() for step_id, run in self.steps.items()},
            "errors": [error.to_dict() for error in self.errors],
            "noErrors": self.no_errors,
            "output": self.output,
            "layers": self.layers,
            "durationMs": round(self.duration_ms, 3),
            "cancelled": self.cancelled,
            "dryRun": self.dry_run,
        }
