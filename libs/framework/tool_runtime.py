from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from jsonschema import Draft202012Validator

from libs.core import logging as core_logging
from libs.core.cancellation import run_cancellable
from libs.core.errors import RequestCancelledError
from libs.core.models import (
    ToolInvocationRequest,
    ToolInvocationResult,
    ToolSpec,
    ToolValueType,
)

LOGGER = core_logging.get_logger("dayplanner", component="tool_runtime")


class ToolExecutionError(Exception):
    pass


ToolHandler = Callable[
    [dict, Optional[asyncio.Event]], Awaitable[Tuple[ToolValueType, Any]]
]
InvocationFilter = Callable[[ToolInvocationResult], ToolInvocationResult]


@dataclass
class Tool:
    spec: ToolSpec
    handler: ToolHandler


class ToolRegistry:
    def __init__(self, max_output_bytes: int = 200_000) -> None:
        self._tools: dict[str, Tool] = {}
        self._filters: list[InvocationFilter] = []
        self.max_output_bytes = max_output_bytes

    def register(self, tool: Tool) -> None:
        self._tools[tool.spec.name] = tool

    def register_all(self, tools: Iterable[Tool]) -> None:
        """Register every tool or none of them."""
        staged = list(tools)
        names = [tool.spec.name for tool in staged]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate tool names: {', '.join(duplicates)}")
        for tool in staged:
            self._tools[tool.spec.name] = tool

    def add_filter(self, invocation_filter: InvocationFilter) -> None:
        self._filters.append(invocation_filter)

    def list_specs(self) -> List[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def get(self, name: str) -> Tool:
        if name not in self._tools:
            raise KeyError(f"Tool not found: {name}")
        return self._tools[name]

    def __len__(self) -> int:
        return len(self._tools)

    async def invoke(
        self,
        request: ToolInvocationRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ToolInvocationResult:
        started_at = time.monotonic()
        try:
            result = await self._invoke(request, cancel_event)
        except RequestCancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            result = _failed(request, str(exc), "runtime.unhandled")
        result = self._apply_filters(result)
        if result.status == "completed":
            result = self._enforce_output_limit(request, result)
        LOGGER.info(
            "tool_invocation",
            tool=request.tool_name,
            call_id=request.call_id,
            status=result.status,
            error_code=result.error_code,
            duration_ms=int((time.monotonic() - started_at) * 1000),
        )
        return result

    async def _invoke(
        self, request: ToolInvocationRequest, cancel_event: Optional[asyncio.Event]
    ) -> ToolInvocationResult:
        tool = self._tools.get(request.tool_name)
        if tool is None:
            return _failed(request, f"unknown_tool:{request.tool_name}", "contract.tool_not_found")
        try:
            validate_schema(tool.spec.input_schema, request.arguments, "input")
            value_type, value = await run_cancellable(
                tool.handler(dict(request.arguments), cancel_event),
                cancel_event,
                timeout_s=tool.spec.timeout_s if tool.spec.timeout_s > 0 else None,
            )
        except asyncio.TimeoutError:
            raw_error = f"tool_call_timed_out:timed out after {tool.spec.timeout_s}s"
            return _failed(request, raw_error, classify_tool_error(raw_error))
        except ToolExecutionError as exc:
            raw_error = str(exc)
            return _failed(request, raw_error, classify_tool_error(raw_error))
        return ToolInvocationResult(
            call_id=request.call_id,
            tool_name=request.tool_name,
            status="completed",
            value_type=value_type,
            value=value,
        )

    def _enforce_output_limit(
        self, request: ToolInvocationRequest, result: ToolInvocationResult
    ) -> ToolInvocationResult:
        # Measured after filtering: the size of what the model will receive.
        content = json.dumps(result.to_model_content(), ensure_ascii=True, default=str)
        output_bytes = len(content.encode("utf-8"))
        if output_bytes <= self.max_output_bytes:
            return result
        raw_error = f"tool_output_too_large:{output_bytes} bytes exceeds {self.max_output_bytes}"
        return _failed(request, raw_error, classify_tool_error(raw_error))

    def _apply_filters(self, result: ToolInvocationResult) -> ToolInvocationResult:
        status = result.status
        for invocation_filter in self._filters:
            result = invocation_filter(result)
        if result.status != status:
            # Filters shape payloads only.
            result = result.model_copy(update={"status": status})
        return result


def _failed(request: ToolInvocationRequest, error: str, error_code: str) -> ToolInvocationResult:
    return ToolInvocationResult(
        call_id=request.call_id,
        tool_name=request.tool_name,
        status="failed",
        error=error,
        error_code=error_code,
    )


def classify_tool_error(error_text: str) -> str:
    normalized = (error_text or "").strip()
    lowered = normalized.lower()
    if lowered.startswith("contract."):
        return lowered.split(":", 1)[0]
    if normalized.startswith("input schema validation failed"):
        return "contract.input_invalid"
    if normalized.startswith("unknown_tool:"):
        return "contract.tool_not_found"
    if normalized.startswith("tool_output_too_large:"):
        return "runtime.output_too_large"
    if (
        normalized.startswith("tool_call_timed_out:")
        or "timed out" in lowered
        or "timeout" in lowered
    ):
        return "runtime.timeout"
    if normalized.startswith("http_error:"):
        return "runtime.http_error"
    return "runtime.tool_error"


def validate_schema(schema: dict[str, Any] | None, payload: dict[str, Any], label: str) -> None:
    if not schema:
        return
    try:
        validator = Draft202012Validator(schema)
    except Exception as exc:  # noqa: BLE001
        raise ToolExecutionError(f"Invalid {label} schema: {exc}") from exc
    errors = sorted(validator.iter_errors(payload), key=lambda err: "/".join(map(str, err.path)))
    if errors:
        messages = "; ".join(
            f"{'/'.join(map(str, err.path)) or '<root>'}: {err.message}" for err in errors[:5]
        )
        raise ToolExecutionError(f"{label} schema validation failed: {messages}")
