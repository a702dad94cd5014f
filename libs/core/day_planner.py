from __future__ import annotations

import asyncio
from datetime import date
from pathlib import Path
from typing import Optional

import httpx

from libs.framework.tool_runtime import ToolRegistry

from . import logging as core_logging
from .config import PlannerSettings
from .llm_provider import LLMProvider
from .models import ConversationContext, DayPlanResult
from .orchestrator import PromptOrchestrator
from .plugin_loader import OperationExecutionParameters, PluginLoader
from .result_filter import ExpectedSchemaFilter
from .schema_sanitizer import SchemaFilter
from .token_exchange import BearerAuthProvider, TokenExchanger

LOGGER = core_logging.get_logger("dayplanner", component="day_planner")


class DayPlanner:
    """Process-wide entry point; every call to ``plan_day`` is independent.

    Holds only read-only collaborators: settings, the token exchanger (and
    through it the identity client config), the LLM provider and the schema
    filter with its denylist.
    """

    def __init__(
        self,
        settings: PlannerSettings,
        exchanger: TokenExchanger,
        provider: LLMProvider,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._exchanger = exchanger
        self._provider = provider
        self._transport = transport
        self._schema_filter = SchemaFilter.create(
            settings.schema_denylist, settings.schema_filter_targets
        )

    async def plan_day(
        self,
        credential: str,
        user_language: str,
        today: Optional[date] = None,
        cancel_event: Optional[asyncio.Event] = None,
        root_dir: Optional[Path] = None,
    ) -> DayPlanResult:
        context = ConversationContext(
            today=today or date.today(),
            user_language=user_language or "en-US",
        )
        registry = ToolRegistry()
        registry.add_filter(ExpectedSchemaFilter())
        auth = BearerAuthProvider(
            self._exchanger, credential, self.settings.graph_scope, cancel_event
        )
        async with httpx.AsyncClient(
            timeout=self.settings.tool_http_timeout_s, transport=self._transport
        ) as client:
            loader = PluginLoader(
                client,
                execution_parameters={
                    self.settings.graph_base_url: OperationExecutionParameters(
                        auth_callback=auth.authenticate_request,
                        parameter_filter=self._schema_filter,
                    )
                },
                plugins_dir_name=self.settings.plugins_dir_name,
                strict_tool_schemas=self.settings.strict_tool_schemas,
                tool_timeout_s=self.settings.tool_http_timeout_s,
            )
            await loader.load_all(root_dir or self.settings.root_dir, registry)
            orchestrator = PromptOrchestrator(
                self._provider,
                max_tool_iterations=self.settings.max_tool_iterations,
                enforce_meeting_order=self.settings.enforce_meeting_order,
            )
            result = await orchestrator.run(context, registry, cancel_event)
        LOGGER.info(
            "day_plan_completed",
            meetings=len(result.meetings),
            user_language=context.user_language,
        )
        return result
