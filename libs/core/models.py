from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TokenFailure(str, Enum):
    missing_credential = "missing_credential"
    exchange_failed = "exchange_failed"
    cancelled = "cancelled"
    timed_out = "timed_out"


class TokenExchangeOutcome(BaseModel):
    """Result of an on-behalf-of exchange.

    ``access_token`` is always a string; it is empty whenever ``failure`` is
    set, so callers that only care about the bearer value can use it as-is.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = ""
    failure: Optional[TokenFailure] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and bool(self.access_token)

    @classmethod
    def success(cls, access_token: str) -> "TokenExchangeOutcome":
        return cls(access_token=access_token)

    @classmethod
    def failed(cls, failure: TokenFailure, detail: Optional[str] = None) -> "TokenExchangeOutcome":
        return cls(access_token="", failure=failure, detail=detail)


class ParameterLocation(str, Enum):
    path = "path"
    query = "query"
    header = "header"
    body = "body"


class OperationParameter(BaseModel):
    name: str
    location: ParameterLocation
    required: bool = False
    description: Optional[str] = None
    schema_def: Optional[Dict[str, Any]] = None


class OperationSchema(BaseModel):
    operation_id: str
    method: str
    path: str
    server_url: str
    description: str = ""
    parameters: List[OperationParameter] = Field(default_factory=list)
    expected_schema: Optional[Dict[str, Any]] = None
    content_type: str = "application/json"


class PluginManifest(BaseModel):
    name: str
    path: str
    description: str = ""
    operations: List[OperationSchema] = Field(default_factory=list)


class ToolSpec(BaseModel):
    name: str
    description: str
    input_schema: Dict[str, Any]
    strict: bool = False
    timeout_s: float = 30.0
    plugin_name: Optional[str] = None
    operation_id: Optional[str] = None


class ToolInvocationRequest(BaseModel):
    call_id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ApiOperationResponse(BaseModel):
    status_code: int
    content_type: str = ""
    content: Any = None
    expected_schema: Optional[Dict[str, Any]] = None


class ToolValueType(str, Enum):
    api_operation_response = "api_operation_response"
    json = "json"
    none = "none"


class ToolInvocationResult(BaseModel):
    call_id: str
    tool_name: str
    status: str
    value_type: ToolValueType = ToolValueType.none
    value: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_model_content(self) -> Dict[str, Any]:
        if self.status != "completed":
            return {"error": self.error, "error_code": self.error_code}
        if isinstance(self.value, BaseModel):
            return self.value.model_dump(exclude_none=True)
        return {"result": self.value}


class ChatRole(str, Enum):
    system = "system"
    user = "user"
    assistant = "assistant"
    tool = "tool"


class ChatTurn(BaseModel):
    role: ChatRole
    content: str = ""
    tool_calls: List[ToolInvocationRequest] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class ConversationContext(BaseModel):
    today: date
    user_language: str = "en-US"
    turns: List[ChatTurn] = Field(default_factory=list)

    def add(self, turn: ChatTurn) -> None:
        self.turns.append(turn)


class Meeting(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(alias="meetingTitle")
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")
    attendees: List[str] = Field(default_factory=list)
    summary: str = Field(alias="meetingSummary")
    preparation_recommendation: str = Field(alias="preparationRecommendation")


class DayPlanResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    meetings: List[Meeting] = Field(default_factory=list)


DAY_PLAN_RESULT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "meetings": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "meetingTitle": {"type": "string"},
                    "startTime": {"type": "string"},
                    "endTime": {"type": "string"},
                    "attendees": {"type": "array", "items": {"type": "string"}},
                    "meetingSummary": {"type": "string"},
                    "preparationRecommendation": {"type": "string"},
                },
                "required": [
                    "meetingTitle",
                    "startTime",
                    "endTime",
                    "attendees",
                    "meetingSummary",
                    "preparationRecommendation",
                ],
                "additionalProperties": False,
            },
        }
    },
    "required": ["meetings"],
    "additionalProperties": False,
}
