from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import LLMSettings
from .errors import ConfigurationError
from .models import ChatRole, ChatTurn, ToolInvocationRequest, ToolSpec


@dataclass
class LLMResponse:
    content: str
    tool_calls: List[ToolInvocationRequest] = field(default_factory=list)


@dataclass(frozen=True)
class ResponseFormat:
    name: str
    schema: Dict[str, Any]
    strict: bool = True


class LLMProviderError(Exception):
    pass


class LLMProvider:
    async def complete(
        self,
        turns: Sequence[ChatTurn],
        tools: Sequence[ToolSpec] = (),
        response_format: Optional[ResponseFormat] = None,
    ) -> LLMResponse:  # pragma: no cover - interface
        raise NotImplementedError


class MockLLMProvider(LLMProvider):
    async def complete(
        self,
        turns: Sequence[ChatTurn],
        tools: Sequence[ToolSpec] = (),
        response_format: Optional[ResponseFormat] = None,
    ) -> LLMResponse:
        if response_format is not None:
            return LLMResponse(content='{"meetings": []}')
        return LLMResponse(content="Mock response")


class OpenAIProvider(LLMProvider):
    """OpenAI Responses API with function tools and json_schema output."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout_s: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_s = timeout_s
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _url(self) -> str:
        return f"{self.base_url}/responses"

    def build_payload(
        self,
        turns: Sequence[ChatTurn],
        tools: Sequence[ToolSpec] = (),
        response_format: Optional[ResponseFormat] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "input": _responses_input(turns)}
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.input_schema,
                    "strict": spec.strict,
                }
                for spec in tools
            ]
            payload["tool_choice"] = "auto"
        if response_format is not None:
            payload["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": response_format.name,
                    "schema": response_format.schema,
                    "strict": response_format.strict,
                }
            }
        if self.temperature is not None and _model_supports_temperature(self.model):
            payload["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            payload["max_output_tokens"] = self.max_output_tokens
        return payload

    async def complete(
        self,
        turns: Sequence[ChatTurn],
        tools: Sequence[ToolSpec] = (),
        response_format: Optional[ResponseFormat] = None,
    ) -> LLMResponse:
        payload = self.build_payload(turns, tools, response_format)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                response = await client.post(self._url(), json=payload, headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise LLMProviderError(f"OpenAI API error: {exc.response.text}") from exc
        except httpx.HTTPError as exc:
            raise LLMProviderError(f"OpenAI API connection error: {exc}") from exc
        except ValueError as exc:
            raise LLMProviderError(f"OpenAI API returned invalid JSON: {exc}") from exc
        text = _extract_output_text(data)
        tool_calls = _extract_function_calls(data)
        if not text and not tool_calls:
            raise LLMProviderError("OpenAI API returned empty output")
        return LLMResponse(content=text, tool_calls=tool_calls)


class AzureOpenAIProvider(OpenAIProvider):
    def __init__(self, api_key: str, endpoint: str, deployment: str, **kwargs: Any) -> None:
        super().__init__(
            api_key=api_key,
            model=deployment,
            base_url=f"{endpoint.rstrip('/')}/openai/v1",
            **kwargs,
        )

    def _headers(self) -> Dict[str, str]:
        return {"api-key": self.api_key, "Content-Type": "application/json"}


class OllamaProvider(LLMProvider):
    def __init__(
        self,
        model: str,
        endpoint: str = "http://localhost:11434",
        temperature: Optional[float] = None,
        timeout_s: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.endpoint = endpoint.rstrip("/")
        self.temperature = temperature
        self.timeout_s = timeout_s
        self._transport = transport

    def build_payload(
        self,
        turns: Sequence[ChatTurn],
        tools: Sequence[ToolSpec] = (),
        response_format: Optional[ResponseFormat] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [_ollama_message(turn) for turn in turns],
            "stream": False,
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": spec.name,
                        "description": spec.description,
                        "parameters": spec.input_schema,
                    },
                }
                for spec in tools
            ]
        if response_format is not None:
            payload["format"] = response_format.schema
        if self.temperature is not None:
            payload["options"] = {"temperature": self.temperature}
        return payload

    async def complete(
        self,
        turns: Sequence[ChatTurn],
        tools: Sequence[ToolSpec] = (),
        response_format: Optional[ResponseFormat] = None,
    ) -> LLMResponse:
        payload = self.build_payload(turns, tools, response_format)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                response = await client.post(f"{self.endpoint}/api/chat", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise LLMProviderError(f"Ollama API error: {exc.response.text}") from exc
        except httpx.HTTPError as exc:
            raise LLMProviderError(f"Ollama API connection error: {exc}") from exc
        except ValueError as exc:
            raise LLMProviderError(f"Ollama API returned invalid JSON: {exc}") from exc
        message = data.get("message") or {}
        tool_calls = []
        for raw_call in message.get("tool_calls") or []:
            function = raw_call.get("function") or {}
            tool_calls.append(
                ToolInvocationRequest(
                    call_id=raw_call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                    tool_name=str(function.get("name", "")),
                    arguments=_parse_arguments(function.get("arguments")),
                )
            )
        content = str(message.get("content") or "").strip()
        if not content and not tool_calls:
            raise LLMProviderError("Ollama API returned empty output")
        return LLMResponse(content=content, tool_calls=tool_calls)


def resolve_provider(
    settings: LLMSettings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> LLMProvider:
    name = (settings.provider or "mock").lower()
    if name == "openai":
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        if not settings.openai_model:
            raise ConfigurationError("OPENAI_MODEL is required when LLM_PROVIDER=openai")
        return OpenAIProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url or "https://api.openai.com/v1",
            temperature=settings.temperature,
            timeout_s=settings.timeout_s,
            transport=transport,
        )
    if name == "azure_openai":
        if not (settings.azure_api_key and settings.azure_endpoint and settings.azure_deployment):
            raise ConfigurationError(
                "AZURE_OPENAI_API_KEY, AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_DEPLOYMENT are "
                "required when LLM_PROVIDER=azure_openai"
            )
        return AzureOpenAIProvider(
            api_key=settings.azure_api_key,
            endpoint=settings.azure_endpoint,
            deployment=settings.azure_deployment,
            temperature=settings.temperature,
            timeout_s=settings.timeout_s,
            transport=transport,
        )
    if name == "ollama":
        if not (settings.ollama_endpoint and settings.ollama_model):
            raise ConfigurationError(
                "OLLAMA_ENDPOINT and OLLAMA_MODEL are required when LLM_PROVIDER=ollama"
            )
        return OllamaProvider(
            model=settings.ollama_model,
            endpoint=settings.ollama_endpoint,
            temperature=settings.temperature,
            timeout_s=settings.timeout_s,
            transport=transport,
        )
    if name != "mock":
        raise ConfigurationError(f"Unsupported LLM_PROVIDER: {settings.provider}")
    return MockLLMProvider()


def _responses_input(turns: Sequence[ChatTurn]) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for turn in turns:
        if turn.role == ChatRole.tool:
            items.append(
                {"type": "function_call_output", "call_id": turn.tool_call_id, "output": turn.content}
            )
            continue
        if turn.content or not turn.tool_calls:
            items.append({"role": turn.role.value, "content": turn.content})
        for call in turn.tool_calls:
            items.append(
                {
                    "type": "function_call",
                    "call_id": call.call_id,
                    "name": call.tool_name,
                    "arguments": json.dumps(call.arguments, ensure_ascii=False),
                }
            )
    return items


def _ollama_message(turn: ChatTurn) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": turn.role.value, "content": turn.content}
    if turn.tool_calls:
        message["tool_calls"] = [
            {"function": {"name": call.tool_name, "arguments": call.arguments}}
            for call in turn.tool_calls
        ]
    if turn.role == ChatRole.tool and turn.name:
        message["tool_name"] = turn.name
    return message


def _extract_output_text(response: Dict[str, Any]) -> str:
    parts: list[str] = []
    for item in response.get("output", []):
        if item.get("type") != "message":
            continue
        for content in item.get("content", []):
            if content.get("type") == "output_text":
                parts.append(content.get("text", ""))
    return "".join(parts).strip()


def _extract_function_calls(response: Dict[str, Any]) -> List[ToolInvocationRequest]:
    calls: List[ToolInvocationRequest] = []
    for item in response.get("output", []):
        if item.get("type") != "function_call":
            continue
        calls.append(
            ToolInvocationRequest(
                call_id=str(item.get("call_id") or item.get("id") or f"call_{uuid.uuid4().hex[:12]}"),
                tool_name=str(item.get("name", "")),
                arguments=_parse_arguments(item.get("arguments")),
            )
        )
    return calls


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise LLMProviderError(f"tool call arguments are not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise LLMProviderError("tool call arguments must be a JSON object")
    return parsed


def _model_supports_temperature(model: str) -> bool:
    normalized = (model or "").strip().lower()
    # GPT-5 responses currently reject temperature.
    return not normalized.startswith("gpt-5")
