from __future__ import annotations

import os
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_SCHEMA_DENYLIST = (
    "@odata.type",
    "attachments",
    "bccRecipients",
    "bodyPreview",
    "categories",
    "ccRecipients",
    "conversationId",
    "conversationIndex",
    "extensions",
    "flag",
    "from",
    "hasAttachments",
    "id",
    "inferenceClassification",
    "internetMessageHeaders",
    "isDeliveryReceiptRequested",
    "isDraft",
    "isRead",
    "isReadReceiptRequested",
    "multiValueExtendedProperties",
    "parentFolderId",
    "receivedDateTime",
    "replyTo",
    "sender",
    "sentDateTime",
    "singleValueExtendedProperties",
    "uniqueBody",
    "webLink",
)
DEFAULT_SCHEMA_FILTER_TARGETS = (("me_sendMail", "payload"),)
DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_GRAPH_SCOPE = "https://graph.microsoft.com/.default"
DEFAULT_AUTHORITY_HOST = "https://login.microsoftonline.com"
DEFAULT_PLUGINS_DIR_NAME = "CopilotAgentPlugins"


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_optional_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_csv(value: str | None) -> List[str]:
    if not value:
        return []
    return [entry.strip() for entry in value.split(",") if entry.strip()]


def _parse_filter_targets(value: str | None) -> Tuple[Tuple[str, str], ...]:
    targets: List[Tuple[str, str]] = []
    for entry in _parse_csv(value):
        operation_id, sep, parameter = entry.partition(":")
        if not sep or not operation_id.strip() or not parameter.strip():
            continue
        targets.append((operation_id.strip(), parameter.strip()))
    return tuple(targets)


class IdentityClientConfig(BaseModel):
    """Confidential client credentials for the on-behalf-of exchange.

    Read once at startup and shared by every request.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str = ""
    tenant_id: str = ""
    client_secret: str = ""
    authority_host: str = DEFAULT_AUTHORITY_HOST

    @property
    def authority(self) -> str:
        return f"{self.authority_host.rstrip('/')}/{self.tenant_id}"

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id and self.tenant_id and self.client_secret)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "IdentityClientConfig":
        env = os.environ if env is None else env
        return cls(
            client_id=env.get("MSGRAPH_CLIENT_ID", ""),
            tenant_id=env.get("MSGRAPH_TENANT_ID", ""),
            client_secret=env.get("MSGRAPH_CLIENT_SECRET", ""),
            authority_host=env.get("MSGRAPH_AUTHORITY_HOST") or DEFAULT_AUTHORITY_HOST,
        )


class LLMSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str = "mock"
    openai_api_key: Optional[str] = None
    openai_model: Optional[str] = None
    openai_base_url: Optional[str] = None
    azure_api_key: Optional[str] = None
    azure_endpoint: Optional[str] = None
    azure_deployment: Optional[str] = None
    ollama_endpoint: Optional[str] = None
    ollama_model: Optional[str] = None
    temperature: Optional[float] = None
    timeout_s: float = 60.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "LLMSettings":
        env = os.environ if env is None else env
        return cls(
            provider=(env.get("LLM_PROVIDER") or "mock").strip().lower(),
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            openai_model=env.get("OPENAI_MODEL") or None,
            openai_base_url=env.get("OPENAI_BASE_URL") or None,
            azure_api_key=env.get("AZURE_OPENAI_API_KEY") or None,
            azure_endpoint=env.get("AZURE_OPENAI_ENDPOINT") or None,
            azure_deployment=env.get("AZURE_OPENAI_DEPLOYMENT") or None,
            ollama_endpoint=env.get("OLLAMA_ENDPOINT") or None,
            ollama_model=env.get("OLLAMA_MODEL") or None,
            temperature=_parse_optional_float(env.get("LLM_TEMPERATURE")),
            timeout_s=_parse_optional_float(env.get("LLM_TIMEOUT_S")) or 60.0,
        )


class PlannerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    root_dir: Path = Field(default_factory=Path.cwd)
    plugins_dir_name: str = DEFAULT_PLUGINS_DIR_NAME
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    graph_scope: str = DEFAULT_GRAPH_SCOPE
    schema_denylist: Tuple[str, ...] = DEFAULT_SCHEMA_DENYLIST
    schema_filter_targets: Tuple[Tuple[str, str], ...] = DEFAULT_SCHEMA_FILTER_TARGETS
    strict_tool_schemas: bool = True
    max_tool_iterations: int = 10
    enforce_meeting_order: bool = True
    token_exchange_timeout_s: float = 15.0
    tool_http_timeout_s: float = 30.0
    request_timeout_s: float = 120.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "PlannerSettings":
        env = os.environ if env is None else env
        root_dir = env.get("DAYPLANNER_ROOT_DIR")
        denylist = tuple(_parse_csv(env.get("SCHEMA_DENYLIST"))) or DEFAULT_SCHEMA_DENYLIST
        targets = _parse_filter_targets(env.get("SCHEMA_FILTER_TARGETS")) or DEFAULT_SCHEMA_FILTER_TARGETS
        max_iterations = _parse_optional_int(env.get("MAX_TOOL_ITERATIONS"))
        return cls(
            root_dir=Path(root_dir) if root_dir else Path.cwd(),
            plugins_dir_name=env.get("PLUGINS_DIR_NAME") or DEFAULT_PLUGINS_DIR_NAME,
            graph_base_url=env.get("GRAPH_BASE_URL") or DEFAULT_GRAPH_BASE_URL,
            graph_scope=env.get("GRAPH_SCOPE") or DEFAULT_GRAPH_SCOPE,
            schema_denylist=denylist,
            schema_filter_targets=targets,
            strict_tool_schemas=_parse_bool(env.get("STRICT_TOOL_SCHEMAS"), True),
            max_tool_iterations=max(1, max_iterations) if max_iterations is not None else 10,
            enforce_meeting_order=_parse_bool(env.get("ENFORCE_MEETING_ORDER"), True),
            token_exchange_timeout_s=_parse_optional_float(env.get("TOKEN_EXCHANGE_TIMEOUT_S")) or 15.0,
            tool_http_timeout_s=_parse_optional_float(env.get("TOOL_HTTP_TIMEOUT_S")) or 30.0,
            request_timeout_s=_parse_optional_float(env.get("REQUEST_TIMEOUT_S")) or 120.0,
        )
