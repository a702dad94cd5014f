from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import httpx

from libs.core import logging as core_logging
from libs.core.models import (
    ApiOperationResponse,
    OperationSchema,
    ParameterLocation,
    ToolValueType,
)
from libs.framework.tool_runtime import ToolExecutionError

LOGGER = core_logging.get_logger("dayplanner", component="rest_operation")

AuthCallback = Callable[[httpx.Request], Awaitable[Any]]

PAYLOAD_ARGUMENT = "payload"


class RestOperationRunner:
    """Executes one declared HTTP operation with the arguments chosen by the model."""

    def __init__(
        self,
        operation: OperationSchema,
        client: httpx.AsyncClient,
        auth_callback: Optional[AuthCallback] = None,
        drop_null_fields: bool = False,
    ) -> None:
        self.operation = operation
        self._client = client
        self._auth_callback = auth_callback
        # Strict tool schemas send omitted optional fields as null.
        self._drop_null_fields = drop_null_fields

    async def __call__(
        self, arguments: Dict[str, Any], cancel_event: Optional[asyncio.Event] = None
    ) -> Tuple[ToolValueType, ApiOperationResponse]:
        request = self.build_request(arguments)
        if self._auth_callback is not None:
            await self._auth_callback(request)
        try:
            response = await self._client.send(request)
        except httpx.HTTPError as exc:
            raise ToolExecutionError(
                f"http_error:{self.operation.method.upper()} {request.url.path}: {exc}"
            ) from exc
        LOGGER.info(
            "rest_operation_completed",
            operation_id=self.operation.operation_id,
            status_code=response.status_code,
        )
        return ToolValueType.api_operation_response, ApiOperationResponse(
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            content=_read_content(response),
            expected_schema=self.operation.expected_schema,
        )

    def build_request(self, arguments: Dict[str, Any]) -> httpx.Request:
        path = self.operation.path
        params: Dict[str, Any] = {}
        headers: Dict[str, str] = {}
        body: Any = None
        for parameter in self.operation.parameters:
            value = arguments.get(parameter.name)
            if value is None:
                if parameter.required and parameter.location != ParameterLocation.body:
                    raise ToolExecutionError(f"missing required argument: {parameter.name}")
                continue
            if parameter.location == ParameterLocation.path:
                path = path.replace("{" + parameter.name + "}", quote(str(value), safe=""))
            elif parameter.location == ParameterLocation.query:
                params[parameter.name] = _query_value(value)
            elif parameter.location == ParameterLocation.header:
                headers[parameter.name] = str(value)
            else:
                body = _coerce_payload(value)
                if self._drop_null_fields:
                    body = _without_nulls(body)
        url = self.operation.server_url.rstrip("/") + "/" + path.lstrip("/")
        request_kwargs: Dict[str, Any] = {"params": params, "headers": headers}
        if body is not None:
            request_kwargs["json"] = body
        return self._client.build_request(self.operation.method.upper(), url, **request_kwargs)


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(str(item) for item in value)
    return value


def _coerce_payload(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _without_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _without_nulls(item) for key, item in value.items() if item is not None}
    if isinstance(value, list):
        return [_without_nulls(item) for item in value]
    return value


def _read_content(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text
