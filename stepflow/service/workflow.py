from __future__ import annotations

import asyncio
import inspect
import time
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Union

from stepflow.config import MAX_CONCURRENCY_HARD_CAP, MAX_LOOP_ITERATIONS_CEILING, Settings, get_settings
from stepflow.logging import get_logger, log_run_summary, run_id_var, set_run_id
from stepflow.models import (
    RunResult,
    Severity,
    Step,
    StepError,
    StepRun,
    StepStatus,
    WorkflowDefinition,
)
from stepflow.service.audit import findings_at_or_above, security_audit
from stepflow.service.definition_validation import document_errors, parse_definition
from stepflow.service.errors import (
    ContextWriteError,
    SecurityPolicyError,
    StepExecutionError,
    ValidationError,
)
from stepflow.service.expressions import (
    UNDEFINED,
    evaluate_condition,
    resolve_string,
    resolve_template,
)
from stepflow.service.graph import KNOWN_TOOLS, DependencyGraph, build_graph, validate_workflow
from stepflow.service.sandbox import policy_from_settings
from stepflow.service.tools import ToolContext, ToolRegistry

SKIP_CONDITION = "condition not met"
SKIP_CANCELLED = "cancelled"
SKIP_TIMEOUT = "timeout"

TOOL_CANCELLED = "tool call was cancelled"


def _cancel_requested() -> bool:
    """Whether the current task itself is being cancelled (Python 3.11+)."""
    cancelling = getattr(asyncio.current_task(), "cancelling", None)
    return bool(cancelling and cancelling())


class ExecutionContext(Mapping):
    """Values visible to expressions during one run.

    ``inputs`` and ``defaults`` are fixed at run start. Every step id is
    written exactly once (completed, skipped or error) by the task that
    owns the step and is read-only afterwards.
    """

    def __init__(self, inputs: Mapping[str, Any], defaults: Mapping[str, Any]) -> None:
        self._scopes: Dict[str, Any] = {"inputs": dict(inputs), "defaults": dict(defaults)}
        self._entries: Dict[str, Dict[str, Any]] = {}

    def publish(self, step_id: str, entry: Dict[str, Any]) -> None:
        if step_id in self._entries:
            raise ContextWriteError(
                f'context entry for step "{step_id}" was already written',
                detail={"step_id": step_id},
            )
        self._entries[step_id] = entry

    def completed(self, step_id: str, output: Any) -> None:
        self.publish(step_id, {"status": StepStatus.COMPLETED.value, "output": output})

    def skipped(self, step_id: str) -> None:
        self.publish(step_id, {"status": StepStatus.SKIPPED.value})

    def failed(self, step_id: str, message: str) -> None:
        self.publish(step_id, {"status": StepStatus.ERROR.value, "error": message})

    def __getitem__(self, key: str) -> Any:
        if key in self._entries:
            return self._entries[key]
        return self._scopes[key]

    def __iter__(self) -> Iterator[str]:
        yield from self._scopes
        yield from self._entries

    def __len__(self) -> int:
        return len(self._scopes) + len(self._entries)

    def snapshot(self) -> Dict[str, Any]:
        return {**self._scopes, **self._entries}


@dataclass(frozen=True)
class RunEvent:
    """Lifecycle notification handed to ``on_event``."""

    name: str
    step_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


EventCallback = Callable[[RunEvent], Any]


def coerce_input(value: Any, input_type: str) -> Any:
    """Convert string values for ``number`` and ``boolean`` inputs."""
    if input_type == "number" and isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return value
    if input_type == "boolean" and isinstance(value, str):
        return value in ("true", "1")
    return value


def resolve_workflow_inputs(
    definition: WorkflowDefinition, provided: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """Apply the declared input schema to caller-provided values.

    Raises:
        ValidationError: a required input has no value and no default.
    """
    provided = dict(provided or {})
    missing = [
        f'Missing required input: "{key}"'
        for key, spec in definition.inputs.items()
        if spec.required and key not in provided and not spec.has_default
    ]
    if missing:
        raise ValidationError(missing[0] if len(missing) == 1 else "Missing required inputs", missing)

    effective: Dict[str, Any] = {}
    for key, spec in definition.inputs.items():
        if key in provided:
            effective[key] = coerce_input(provided[key], spec.type)
        elif spec.has_default:
            effective[key] = spec.default
    for key, value in provided.items():
        effective.setdefault(key, value)
    return effective


class _RunState:
    """Mutable bookkeeping for one ``WorkflowEngine.run`` call."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        graph: DependencyGraph,
        context: ExecutionContext,
        result: RunResult,
        *,
        semaphore: asyncio.Semaphore,
        on_event: Optional[EventCallback],
        cancel_event: Optional[asyncio.Event],
        deadline: Optional[float],
    ) -> None:
        self.definition = definition
        self.graph = graph
        self.context = context
        self.result = result
        self.semaphore = semaphore
        self.on_event = on_event
        self.cancel_event = cancel_event
        self.deadline = deadline
        self.steps = definition.step_map()

    def stop_reason(self) -> Optional[str]:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return SKIP_CANCELLED
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return SKIP_TIMEOUT
        return None

    def time_left(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


class WorkflowEngine:
    """Runs workflow definitions: steps as asyncio tasks in dependency order."""

    def __init__(
        self,
        registry: Optional[ToolRegistry] = None,
        *,
        settings: Optional[Settings] = None,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.settings = settings or get_settings()
        requested = max_concurrency if max_concurrency is not None else self.settings.max_concurrency
        self.max_concurrency = min(max(1, requested), MAX_CONCURRENCY_HARD_CAP)
        self.registry = registry or ToolRegistry(
            network_policy=policy_from_settings(self.settings),
            tool_workers=self.max_concurrency,
        )
        self.logger = get_logger(__name__)

    @property
    def known_tools(self) -> frozenset:
        return KNOWN_TOOLS | self.registry.names

    def shutdown(self, wait: bool = True) -> None:
        self.registry.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def load(self, document: Union[WorkflowDefinition, Mapping[str, Any]]) -> WorkflowDefinition:
        if isinstance(document, WorkflowDefinition):
            return document
        return parse_definition(document)

    def validate(self, document: Union[WorkflowDefinition, Mapping[str, Any]]) -> List[str]:
        """Every structural and semantic problem with a document."""
        if not isinstance(document, WorkflowDefinition):
            errors = document_errors(document)
            if errors:
                return errors
            document = WorkflowDefinition.from_dict(document)
        return validate_workflow(document, self.known_tools)

    def plan(self, document: Union[WorkflowDefinition, Mapping[str, Any]]) -> List[List[str]]:
        """Parallel layers the scheduler could run, without executing anything."""
        definition = self.load(document)
        return build_graph(definition, self.known_tools).execution_plan()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        document: Union[WorkflowDefinition, Mapping[str, Any]],
        *,
        inputs: Optional[Mapping[str, Any]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        dry_run: bool = False,
        on_event: Optional[EventCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout_ms: Optional[int] = None,
        block_on: Optional[Union[Severity, str]] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """Execute a workflow and return per-step outcomes.

        Validation, missing required inputs and a ``block_on`` security
        threshold raise before any step runs. Once execution starts,
        nothing a step does escapes: failures are recorded on the result.

        Raises:
            ValidationError: malformed document, unknown tools or
                references, missing required inputs.
            CyclicDependencyError: step references form a cycle.
            SecurityPolicyError: audit findings at or above ``block_on``.
        """
        token = run_id_var.set(None)
        set_run_id(run_id)
        started = time.perf_counter()
        try:
            definition = self.load(document)
            graph = build_graph(definition, self.known_tools)
            effective_inputs = resolve_workflow_inputs(definition, inputs)
            defaults = {**definition.defaults, **dict(overrides or {})}
            if block_on is not None:
                self._enforce_policy(definition, Severity(block_on))

            result = RunResult(
                workflow=definition.name,
                steps={step.id: StepRun(step.id, step.tool) for step in definition.steps},
                layers=graph.execution_plan(),
                inputs=effective_inputs,
                defaults=defaults,
                dry_run=dry_run,
            )
            if dry_run:
                self.logger.info(
                    "workflow_dry_run", workflow=definition.name, layers=len(result.layers)
                )
                return result

            deadline_ms = timeout_ms if timeout_ms is not None else self.settings.workflow_timeout_ms
            state = _RunState(
                definition,
                graph,
                ExecutionContext(effective_inputs, defaults),
                result,
                semaphore=asyncio.Semaphore(self.max_concurrency),
                on_event=on_event,
                cancel_event=cancel_event,
                deadline=time.monotonic() + deadline_ms / 1000.0 if deadline_ms else None,
            )
            self.logger.info(
                "workflow_run_started",
                workflow=definition.name,
                steps=len(definition.steps),
                max_concurrency=self.max_concurrency,
            )
            await self._schedule(state)
            result.output = self._final_output(definition, state.context)
            result.duration_ms = (time.perf_counter() - started) * 1000.0
            log_run_summary(self._summary(result), logger=self.logger)
            await self._emit(state, "run_done", data={"noErrors": result.no_errors})
            return result
        finally:
            run_id_var.reset(token)

    def _enforce_policy(self, definition: WorkflowDefinition, threshold: Severity) -> None:
        findings = security_audit(definition, blocked_domains=self.settings.blocked_domains)
        blocking = findings_at_or_above(findings, threshold)
        if blocking:
            self.logger.warning(
                "workflow_blocked_by_policy",
                workflow=definition.name,
                threshold=threshold.value,
                findings=len(blocking),
            )
            raise SecurityPolicyError(
                f"workflow blocked: {len(blocking)} finding(s) at or above {threshold.value}",
                [finding.message for finding in blocking],
                detail={"findings": [finding.to_dict() for finding in blocking]},
            )

    async def _schedule(self, state: _RunState) -> None:
        graph = state.graph
        waiting: Dict[str, Set[str]] = {
            step_id: set(graph.dependencies[step_id]) for step_id in graph.order
        }
        pending: List[str] = list(graph.order)
        running: Dict[asyncio.Task, str] = {}
        stop_reason: Optional[str] = None
        cancel_waiter: Optional[asyncio.Task] = None
        if state.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(state.cancel_event.wait())

        try:
            while True:
                stop_reason = stop_reason or state.stop_reason()
                if stop_reason is None:
                    for step_id in [sid for sid in pending if not waiting[sid]]:
                        pending.remove(step_id)
                        task = asyncio.create_task(
                            self._run_step(state, state.steps[step_id]), name=f"step:{step_id}"
                        )
                        running[task] = step_id
                if not running:
                    break

                watched: Set[asyncio.Future] = set(running)
                if stop_reason is None and cancel_waiter is not None:
                    watched.add(cancel_waiter)
                done, _ = await asyncio.wait(
                    watched,
                    timeout=state.time_left() if stop_reason is None else None,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    if task is cancel_waiter:
                        continue
                    step_id = running.pop(task)
                    for dependent in graph.dependents[step_id]:
                        waiting[dependent].discard(step_id)
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if pending:
            reason = stop_reason or state.stop_reason() or SKIP_CANCELLED
            for step_id in pending:
                self._mark_skipped(state, step_id, reason)
                await self._emit(state, "step_skip", step_id, {"reason": reason})
            state.result.cancelled = True
            state.result.no_errors = False
            message = (
                "run timed out before all steps were dispatched"
                if reason == SKIP_TIMEOUT
                else "run cancelled before all steps were dispatched"
            )
            state.result.errors.append(StepError(None, message))
            self.logger.warning(
                "workflow_run_stopped",
                workflow=state.definition.name,
                reason=reason,
                undispatched=len(pending),
            )

    def _mark_skipped(self, state: _RunState, step_id: str, reason: str) -> None:
        record = state.result.steps[step_id]
        record.status = StepStatus.SKIPPED
        record.skip_reason = reason
        state.context.skipped(step_id)

    async def _run_step(self, state: _RunState, step: Step) -> None:
        record = state.result.steps[step.id]
        try:
            should_run = step.condition is None or evaluate_condition(step.condition, state.context)
        except Exception as exc:
            record.started_at = datetime.now(timezone.utc)
            await self._fail_step(state, step, record, exc, time.perf_counter())
            return

        if not should_run:
            self._mark_skipped(state, step.id, SKIP_CONDITION)
            self.logger.info("workflow_step_skipped", step_id=step.id, reason=SKIP_CONDITION)
            await self._emit(state, "step_skip", step.id, {"reason": SKIP_CONDITION})
            return

        async with state.semaphore:
            record.status = StepStatus.RUNNING
            record.started_at = datetime.now(timezone.utc)
            clock = time.perf_counter()
            await self._emit(state, "step_start", step.id, {"tool": step.tool})
            try:
                if step.tool == "loop":
                    output = await self._run_loop_tool(state, step)
                elif step.for_each is not None:
                    output = await self._run_for_each(state, step)
                else:
                    inputs = self._resolve_inputs(step.tool, step.inputs, state.context)
                    output = await self._invoke(state, step, step.tool, inputs, state.context)
            except asyncio.CancelledError:
                if _cancel_requested():
                    raise
                cancelled = StepExecutionError(step.id, TOOL_CANCELLED, tool=step.tool)
                await self._fail_step(state, step, record, cancelled, clock)
                return
            except Exception as exc:
                await self._fail_step(state, step, record, exc, clock)
                return

            record.status = StepStatus.COMPLETED
            record.output = output
            self._finish(record, clock)
            state.context.completed(step.id, output)
            self.logger.info(
                "workflow_step_completed",
                step_id=step.id,
                tool=step.tool,
                duration_ms=record.duration_ms,
            )
            await self._emit(
                state, "step_complete", step.id, {"output": output, "durationMs": record.duration_ms}
            )

    async def _fail_step(
        self, state: _RunState, step: Step, record: StepRun, exc: Exception, clock: float
    ) -> None:
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        record.status = StepStatus.ERROR
        record.error = message
        self._finish(record, clock)
        state.context.failed(step.id, message)
        state.result.errors.append(StepError(step.id, message))
        if not step.continue_on_error:
            state.result.no_errors = False
        self.logger.error(
            "workflow_step_failed",
            step_id=step.id,
            tool=step.tool,
            error=message,
            continue_on_error=step.continue_on_error,
        )
        await self._emit(state, "step_error", step.id, {"error": message})

    @staticmethod
    def _finish(record: StepRun, clock: float) -> None:
        record.finished_at = datetime.now(timezone.utc)
        record.duration_ms = (time.perf_counter() - clock) * 1000.0

    def _resolve_inputs(self, tool: str, inputs: Any, scope: Mapping[str, Any]) -> Any:
        raw = self.registry.raw_inputs(tool)
        if raw and isinstance(inputs, Mapping):
            return {
                key: value if key in raw else resolve_template(value, scope)
                for key, value in inputs.items()
            }
        return resolve_template(inputs, scope)

    async def _invoke(
        self,
        state: _RunState,
        step: Step,
        tool: str,
        inputs: Any,
        scope: Mapping[str, Any],
        index: Optional[int] = None,
    ) -> Any:
        tool_context = ToolContext(
            step_id=step.id,
            tool=tool,
            defaults=state.context["defaults"],
            context=scope,
            index=index,
        )
        return await self.registry.invoke(
            tool, inputs, tool_context, timeout=self.settings.step_timeout_seconds
        )

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def _iteration_limit(self, step: Step) -> int:
        limit = step.iteration_limit
        if limit is None:
            return self.settings.max_loop_iterations
        return min(limit, MAX_LOOP_ITERATIONS_CEILING)

    async def _iterate(
        self,
        state: _RunState,
        step: Step,
        items: Any,
        tool: str,
        inputs: Any,
        alias: Optional[str] = None,
    ) -> Dict[str, Any]:
        if isinstance(items, tuple):
            items = list(items)
        if not isinstance(items, list):
            shown = "undefined" if items is UNDEFINED else type(items).__name__
            raise StepExecutionError(
                step.id, f'loop source in step "{step.id}" is not an array (got {shown})', tool=tool
            )

        limit = self._iteration_limit(step)
        results: List[Any] = []
        errors: List[Dict[str, Any]] = []
        iterations = 0
        for index, item in enumerate(items[:limit]):
            if state.stop_reason() is not None:
                break
            local: Dict[str, Any] = {"item": item, "index": index}
            if alias:
                local[alias] = item
            scope = ChainMap(local, state.context)
            iterations += 1
            try:
                resolved = self._resolve_inputs(tool, inputs, scope)
                results.append(await self._invoke(state, step, tool, resolved, scope, index))
            except asyncio.CancelledError:
                if _cancel_requested():
                    raise
                errors.append({"index": index, "message": TOOL_CANCELLED})
                self.logger.warning(
                    "workflow_iteration_failed", step_id=step.id, index=index, error=TOOL_CANCELLED
                )
            except Exception as exc:
                message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
                errors.append({"index": index, "message": message})
                self.logger.warning(
                    "workflow_iteration_failed", step_id=step.id, index=index, error=message
                )

        return {
            "results": results,
            "errors": errors,
            "count": len(results),
            "iterations": iterations,
            "truncated": len(items) > limit,
        }

    async def _run_for_each(self, state: _RunState, step: Step) -> Dict[str, Any]:
        items = resolve_string(step.for_each, state.context)
        return await self._iterate(state, step, items, step.tool, step.inputs)

    async def _run_loop_tool(self, state: _RunState, step: Step) -> Dict[str, Any]:
        inputs = step.inputs if isinstance(step.inputs, Mapping) else {}
        body = inputs.get("step")
        if not isinstance(body, Mapping) or not isinstance(body.get("tool"), str):
            raise StepExecutionError(
                step.id, 'loop step needs a "step" object with a "tool"', tool="loop"
            )
        items = inputs.get("items")
        if isinstance(items, str):
            items = resolve_string(items, state.context)
        else:
            items = resolve_template(items, state.context)
        return await self._iterate(
            state, step, items, body["tool"], body.get("inputs") or {}, alias=step.loop_alias
        )

    # ------------------------------------------------------------------
    # Results and events
    # ------------------------------------------------------------------

    @staticmethod
    def _final_output(definition: WorkflowDefinition, context: ExecutionContext) -> Any:
        if definition.output is None:
            return context.snapshot()
        try:
            return resolve_template(definition.output, context)
        except Exception as exc:
            get_logger(__name__).warning("workflow_output_unresolved", error=str(exc))
            return None

    @staticmethod
    def _summary(result: RunResult) -> Dict[str, Any]:
        counts = {status.value: 0 for status in StepStatus}
        for record in result.steps.values():
            counts[record.status.value] += 1
        return {
            "workflow": result.workflow,
            "no_errors": result.no_errors,
            "cancelled": result.cancelled,
            "duration_ms": round(result.duration_ms, 3),
            "statuses": counts,
            "errors": len(result.errors),
        }

    async def _emit(
        self,
        state: _RunState,
        name: str,
        step_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if state.on_event is None:
            return
        try:
            outcome = state.on_event(RunEvent(name, step_id, dict(data or {})))
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            self.logger.warning(
                "workflow_event_callback_failed", event_name=name, step_id=step_id, error=str(exc)
            )


__all__ = [
    "ExecutionContext",
    "RunEvent",
    "EventCallback",
    "coerce_input",
    "resolve_workflow_inputs",
    "WorkflowEngine",
    "SKIP_CONDITION",
    "SKIP_CANCELLED",
    "SKIP_TIMEOUT",
]
