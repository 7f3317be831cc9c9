"""Tool registry and the built-in control-flow and http tools.

A tool handler takes the resolved inputs and a ``ToolContext`` and returns
the step output. Handlers may be plain functions (run on the registry's
thread pool) or coroutine functions (awaited on the event loop). Raising
any exception fails the step.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import inspect
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

import httpx

from stepflow.logging import get_logger
from stepflow.service.errors import StepExecutionError, ToolInputError
from stepflow.service.expressions import evaluate_condition
from stepflow.service.sandbox import AllowlistedFetcher, ToolNetworkPolicy

logger = get_logger(__name__)

DEFAULT_TOOL_WORKERS = 8
MAX_TOOL_WORKERS = 16


@dataclass(frozen=True)
class ToolContext:
    """What a handler may know about the step it serves."""

    step_id: str
    tool: str
    defaults: Mapping[str, Any] = field(default_factory=dict)
    context: Mapping[str, Any] = field(default_factory=dict)
    index: Optional[int] = None

    def scope(self, **values: Any) -> Mapping[str, Any]:
        """Context view with extra names layered on top (``item``, ...)."""
        return ChainMap(values, self.context)


ToolHandler = Callable[[Any, ToolContext], Any]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    handler: ToolHandler
    # Input keys handed over verbatim, for expressions the tool evaluates itself
    raw_inputs: FrozenSet[str] = frozenset()

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler) or inspect.iscoroutinefunction(
            getattr(self.handler, "__call__", None)
        )


class ToolRegistry:
    """Maps tool names to handlers and runs them."""

    def __init__(
        self,
        *,
        include_builtins: bool = True,
        network_policy: Optional[ToolNetworkPolicy] = None,
        fetcher: Optional[AllowlistedFetcher] = None,
        tool_workers: int = DEFAULT_TOOL_WORKERS,
    ) -> None:
        self._tools: Dict[str, ToolSpec] = {}
        self.tool_workers = min(max(1, tool_workers), MAX_TOOL_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.tool_workers, thread_name_prefix="stepflow-tool"
        )
        self._executor_shutdown = False
        if include_builtins:
            self.register("merge", merge_tool)
            self.register("filter", filter_tool, raw_inputs=("condition",))
            self.register("transform", transform_tool)
            if fetcher is None:
                fetcher = AllowlistedFetcher(network_policy or ToolNetworkPolicy())
            self.register("http", HttpTool(fetcher))

    def register(
        self, name: str, handler: ToolHandler, *, raw_inputs: Iterable[str] = ()
    ) -> None:
        if not name or not isinstance(name, str):
            raise ValueError("tool name must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"handler for tool {name!r} is not callable")
        self._tools[name] = ToolSpec(name, handler, frozenset(raw_inputs))

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(self._tools)

    def raw_inputs(self, name: str) -> FrozenSet[str]:
        spec = self._tools.get(name)
        return spec.raw_inputs if spec else frozenset()

    async def invoke(
        self,
        name: str,
        inputs: Any,
        context: ToolContext,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """Run one tool call; raises whatever the handler raises.

        Raises:
            StepExecutionError: the tool is not registered, or the call
                exceeded ``timeout`` seconds.
        """
        spec = self._tools.get(name)
        if spec is None:
            raise StepExecutionError(
                context.step_id, f'no handler registered for tool "{name}"', tool=name
            )

        async def _call() -> Any:
            if spec.is_async:
                return await spec.handler(inputs, context)
            if self._executor_shutdown:
                raise StepExecutionError(context.step_id, "tool executor is shut down", tool=name)
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                self._executor, functools.partial(spec.handler, inputs, context)
            )
            if inspect.isawaitable(result):
                result = await result
            return result

        if timeout is None:
            return await _call()
        try:
            return await asyncio.wait_for(_call(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("tool_timeout", tool=name, step_id=context.step_id, timeout=timeout)
            raise StepExecutionError(
                context.step_id, f"tool timed out after {timeout:g}s", tool=name
            ) from exc

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker threads used by sync handlers."""
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("tool_executor_shutdown", wait=wait)


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


def _mapping_inputs(tool: str, inputs: Any) -> Mapping[str, Any]:
    if not isinstance(inputs, Mapping):
        raise ToolInputError(f"{tool}: inputs must be an object")
    return inputs


def merge_tool(inputs: Any, ctx: ToolContext) -> Dict[str, Any]:
    """Concatenate ``arrays``; with ``dedup`` keep the first item per ``dedup_field``."""
    inputs = _mapping_inputs("merge", inputs)
    arrays = inputs.get("arrays")
    if not isinstance(arrays, list):
        raise ToolInputError('merge: "arrays" input must be an array of arrays')

    merged: List[Any] = []
    for array in arrays:
        if isinstance(array, list):
            merged.extend(array)

    dedup_field = inputs.get("dedup_field")
    if inputs.get("dedup") and dedup_field:
        seen: List[Any] = []
        unique: List[Any] = []
        for item in merged:
            key = item.get(dedup_field) if isinstance(item, Mapping) else item
            # keys may be unhashable (lists, dicts)
            if key in seen:
                continue
            seen.append(key)
            unique.append(item)
        merged = unique

    return {"results": merged, "resultCount": len(merged)}


def filter_tool(inputs: Any, ctx: ToolContext) -> Dict[str, Any]:
    """Keep the elements of ``array`` for which ``condition`` holds.

    ``condition`` is evaluated once per element with the element bound to
    ``item`` and its position to ``index``.
    """
    inputs = _mapping_inputs("filter", inputs)
    array = inputs.get("array")
    condition = inputs.get("condition")
    if not isinstance(array, list):
        raise ToolInputError('filter: "array" input must be an array')
    if not condition or not isinstance(condition, str):
        raise ToolInputError('filter: "condition" must be a string expression')

    results = [
        item
        for position, item in enumerate(array)
        if evaluate_condition(condition, ctx.scope(item=item, index=position))
    ]
    return {"results": results, "resultCount": len(results)}


def transform_tool(inputs: Any, ctx: ToolContext) -> Dict[str, Any]:
    """Pick ``fields`` from, or reshape with ``mapping``, every object in ``array``."""
    inputs = _mapping_inputs("transform", inputs)
    array = inputs.get("array")
    if not isinstance(array, list):
        raise ToolInputError('transform: "array" input must be an array')

    fields = inputs.get("fields")
    mapping = inputs.get("mapping")
    if fields:
        results = [
            {name: item[name] for name in fields if name in item}
            if isinstance(item, Mapping)
            else item
            for item in array
        ]
    elif isinstance(mapping, Mapping) and mapping:
        results = []
        for item in array:
            if not isinstance(item, Mapping):
                results.append(item)
                continue
            results.append(
                {
                    new_key: item[old_key]
                    if isinstance(old_key, str) and old_key in item
                    else old_key
                    for new_key, old_key in mapping.items()
                }
            )
    else:
        results = list(array)
    return {"results": results, "resultCount": len(results)}


class HttpTool:
    """Reference ``http`` tool; every request goes through the egress policy."""

    METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD")

    def __init__(self, fetcher: AllowlistedFetcher):
        self.fetcher = fetcher

    def __call__(self, inputs: Any, ctx: ToolContext) -> Dict[str, Any]:
        inputs = _mapping_inputs("http", inputs)
        url = inputs.get("url")
        if not url or not isinstance(url, str):
            raise ToolInputError('http: "url" input must be a non-empty string')
        method = str(inputs.get("method") or "GET").upper()
        if method not in self.METHODS:
            raise ToolInputError(f'http: unsupported method "{method}"')

        headers = inputs.get("headers")
        body = inputs.get("body")
        response = self.fetcher.request(
            method,
            url,
            headers=dict(headers) if isinstance(headers, Mapping) else None,
            params=dict(inputs["query"]) if isinstance(inputs.get("query"), Mapping) else None,
            json=body if isinstance(body, (Mapping, list)) else None,
            content=body if isinstance(body, str) else None,
        )
        logger.info(
            "http_tool_response",
            step_id=ctx.step_id,
            method=method,
            host=response.url.host,
            status=response.status_code,
        )
        if response.status_code >= 400:
            raise StepExecutionError(
                ctx.step_id,
                f"http: {method} {url} returned {response.status_code}",
                tool="http",
            )
        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": _response_body(response),
        }


def _response_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


__all__ = [
    "DEFAULT_TOOL_WORKERS",
    "MAX_TOOL_WORKERS",
    "ToolContext",
    "ToolHandler",
    "ToolSpec",
    "ToolRegistry",
    "merge_tool",
    "filter_tool",
    "transform_tool",
    "HttpTool",
]
