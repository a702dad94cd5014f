from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from pydantic import ValidationError

from libs.framework.tool_runtime import ToolRegistry

from . import logging as core_logging, prompts
from .cancellation import raise_if_cancelled, run_cancellable
from .errors import OrchestrationError, RequestCancelledError, StructuredOutputError
from .llm_provider import LLMProvider, LLMProviderError, ResponseFormat
from .models import (
    DAY_PLAN_RESULT_SCHEMA,
    ChatRole,
    ChatTurn,
    ConversationContext,
    DayPlanResult,
    ToolSpec,
)

LOGGER = core_logging.get_logger("dayplanner", component="orchestrator")

# Graph writes seven fractional digits; datetime.fromisoformat on 3.10 takes three or six.
_FRACTION = re.compile(r"(?<=\d\d:\d\d:\d\d)\.(\d+)")

DAY_PLAN_RESPONSE_FORMAT = ResponseFormat(name="DayPlanResult", schema=DAY_PLAN_RESULT_SCHEMA)


class PromptOrchestrator:
    """Two-phase day plan prompt.

    Phase 1 lets the model call tools freely until it answers in prose.
    Phase 2 feeds that answer back with an ordering instruction and forces
    the reply into the ``DayPlanResult`` schema.
    """

    def __init__(
        self,
        provider: LLMProvider,
        max_tool_iterations: int = 10,
        enforce_meeting_order: bool = True,
    ) -> None:
        self._provider = provider
        self._max_tool_iterations = max(1, max_tool_iterations)
        self._enforce_meeting_order = enforce_meeting_order

    async def run(
        self,
        context: ConversationContext,
        registry: ToolRegistry,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DayPlanResult:
        reasoning = await self.execute(context, registry, cancel_event)
        return await self.execute_structured(reasoning, registry, cancel_event)

    async def execute(
        self,
        context: ConversationContext,
        registry: ToolRegistry,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        context.add(
            ChatTurn(
                role=ChatRole.user,
                content=prompts.day_planner_prompt(context.today, context.user_language),
            )
        )
        text = await self._tool_loop(context.turns, registry, None, cancel_event, phase="reasoning")
        LOGGER.info("orchestration_phase_completed", phase="reasoning", turns=len(context.turns))
        return text

    async def execute_structured(
        self,
        reasoning: str,
        registry: ToolRegistry,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DayPlanResult:
        turns = [ChatTurn(role=ChatRole.user, content=prompts.structured_day_plan_prompt(reasoning))]
        text = await self._tool_loop(
            turns, registry, DAY_PLAN_RESPONSE_FORMAT, cancel_event, phase="structured"
        )
        result = parse_day_plan(text)
        if self._enforce_meeting_order:
            result = sort_meetings(result)
        LOGGER.info(
            "orchestration_phase_completed", phase="structured", meetings=len(result.meetings)
        )
        return result

    async def _tool_loop(
        self,
        turns: List[ChatTurn],
        registry: ToolRegistry,
        response_format: Optional[ResponseFormat],
        cancel_event: Optional[asyncio.Event],
        phase: str,
    ) -> str:
        tools: Sequence[ToolSpec] = registry.list_specs()
        for iteration in range(1, self._max_tool_iterations + 1):
            raise_if_cancelled(cancel_event)
            try:
                response = await run_cancellable(
                    self._provider.complete(turns, tools, response_format), cancel_event
                )
            except (RequestCancelledError, OrchestrationError):
                raise
            except LLMProviderError as exc:
                LOGGER.error("llm_call_failed", phase=phase, iteration=iteration, error=str(exc))
                raise OrchestrationError(f"{phase} phase failed: {exc}") from exc
            if not response.tool_calls:
                return response.content
            LOGGER.info(
                "llm_tool_calls_requested",
                phase=phase,
                iteration=iteration,
                tools=[call.tool_name for call in response.tool_calls],
            )
            turns.append(
                ChatTurn(
                    role=ChatRole.assistant,
                    content=response.content,
                    tool_calls=list(response.tool_calls),
                )
            )
            for call in response.tool_calls:
                result = await registry.invoke(call, cancel_event)
                turns.append(
                    ChatTurn(
                        role=ChatRole.tool,
                        content=json.dumps(result.to_model_content(), ensure_ascii=False, default=str),
                        tool_call_id=call.call_id,
                        name=call.tool_name,
                    )
                )
        LOGGER.error("tool_loop_exhausted", phase=phase, max_iterations=self._max_tool_iterations)
        raise OrchestrationError(
            f"{phase} phase did not produce an answer within {self._max_tool_iterations} iterations"
        )


def parse_day_plan(text: str) -> DayPlanResult:
    try:
        return DayPlanResult.model_validate_json(text)
    except ValidationError as exc:
        LOGGER.error("structured_output_invalid", error_count=exc.error_count())
        raise StructuredOutputError(f"structured output is not a valid DayPlanResult: {exc}") from exc


def parse_start_time(value: str) -> Optional[datetime]:
    raw = (value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    raw = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), raw)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        parsed = _parse_clock_time(raw)
    if parsed is None or parsed.tzinfo is None:
        return parsed
    # Aware values are compared in UTC, naive ones as written.
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_clock_time(raw: str) -> Optional[datetime]:
    for pattern in ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p", "%I %p"):
        try:
            return datetime.combine(datetime.min.date(), datetime.strptime(raw.upper(), pattern).time())
        except ValueError:
            continue
    return None


def sort_meetings(result: DayPlanResult) -> DayPlanResult:
    keys = [parse_start_time(meeting.start_time) for meeting in result.meetings]
    if any(key is None for key in keys):
        LOGGER.warning("meeting_order_not_enforced", reason="unparseable_start_time")
        return result
    ordered = [meeting for _, meeting in sorted(zip(keys, result.meetings), key=lambda item: item[0])]
    return result.model_copy(update={"meetings": ordered})
