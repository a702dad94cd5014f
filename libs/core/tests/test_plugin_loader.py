import asyncio
import json
import shutil
from pathlib import Path

import httpx
import pytest

from libs.core.config import DEFAULT_SCHEMA_DENYLIST, DEFAULT_SCHEMA_FILTER_TARGETS
from libs.core.errors import PluginLoadError
from libs.core.models import ToolInvocationRequest
from libs.core.plugin_loader import (
    OperationExecutionParameters,
    PluginLoader,
    manifest_file_name,
    parse_openapi_operations,
    read_plugin_manifest,
    tool_name,
)
from libs.core.schema_sanitizer import SchemaFilter
from libs.framework.tool_runtime import ToolRegistry

SERVICE_ROOT = Path(__file__).resolve().parents[3] / "services" / "api"
PLUGINS = "CopilotAgentPlugins"
GRAPH = "https://graph.microsoft.com/v1.0"
CALENDAR_TOOL = "CalendarPlugin-me_ListCalendarView"
SEND_MAIL_TOOL = "MessagesPlugin-me_sendMail"


def _copy_plugins(tmp_path: Path) -> Path:
    shutil.copytree(SERVICE_ROOT / PLUGINS, tmp_path / PLUGINS)
    return tmp_path


def _load(root_dir: Path, loader_kwargs=None, client=None):
    registry = ToolRegistry()

    async def _run():
        async with (client or httpx.AsyncClient()) as http_client:
            loader = PluginLoader(http_client, **(loader_kwargs or {}))
            return await loader.load_all(root_dir, registry)

    return asyncio.run(_run()), registry


def _write_plugin(plugins_dir: Path, name: str, manifest, openapi_name="api-openapi.json", openapi=None) -> Path:
    plugin_dir = plugins_dir / name
    plugin_dir.mkdir(parents=True)
    (plugin_dir / manifest_file_name(name)).write_text(
        manifest if isinstance(manifest, str) else json.dumps(manifest), encoding="utf-8"
    )
    if openapi is not None:
        (plugin_dir / openapi_name).write_text(json.dumps(openapi), encoding="utf-8")
    return plugin_dir


def test_manifest_file_name() -> None:
    assert manifest_file_name("CalendarPlugin") == "calendar-apiplugin.json"
    assert manifest_file_name("MessagesPlugin") == "messages-apiplugin.json"
    with pytest.raises(ValueError):
        manifest_file_name("Plugin")


def test_tool_name_is_sanitized_and_bounded() -> None:
    assert tool_name("CalendarPlugin", "me_ListCalendarView") == CALENDAR_TOOL
    assert tool_name("My Plugin", "op.with.dots") == "My_Plugin-op_with_dots"
    assert len(tool_name("P" * 40, "o" * 40)) == 64


def test_load_all_registers_every_operation() -> None:
    manifests, registry = _load(SERVICE_ROOT, {"strict_tool_schemas": False})

    assert [manifest.name for manifest in manifests] == ["CalendarPlugin", "MessagesPlugin"]
    assert sorted(spec.name for spec in registry.list_specs()) == [CALENDAR_TOOL, SEND_MAIL_TOOL]

    calendar = registry.get(CALENDAR_TOOL).spec
    assert calendar.plugin_name == "CalendarPlugin"
    assert calendar.operation_id == "me_ListCalendarView"
    assert calendar.strict is False
    assert calendar.input_schema["required"] == ["startDateTime", "endDateTime"]
    assert calendar.input_schema["properties"]["$top"]["type"] == "integer"

    operation = registry.get(CALENDAR_TOOL).handler.operation
    assert operation.server_url == GRAPH
    event = operation.expected_schema["properties"]["value"]["items"]
    assert event["properties"]["start"]["properties"]["dateTime"] == {"type": "string"}


def test_load_all_builds_strict_schemas_by_default() -> None:
    _, registry = _load(SERVICE_ROOT)
    schema = registry.get(CALENDAR_TOOL).spec.input_schema
    assert registry.get(CALENDAR_TOOL).spec.strict is True
    assert schema["additionalProperties"] is False
    assert set(schema["required"]) == {"startDateTime", "endDateTime", "$select", "$orderby", "$top"}
    assert schema["properties"]["$top"]["type"] == ["integer", "null"]


def test_send_mail_payload_is_trimmed_by_schema_filter() -> None:
    schema_filter = SchemaFilter.create(DEFAULT_SCHEMA_DENYLIST, DEFAULT_SCHEMA_FILTER_TARGETS)
    _, registry = _load(
        SERVICE_ROOT,
        {
            "strict_tool_schemas": False,
            "execution_parameters": {
                GRAPH + "/": OperationExecutionParameters(parameter_filter=schema_filter)
            },
        },
    )
    payload = registry.get(SEND_MAIL_TOOL).spec.input_schema["properties"]["payload"]
    message = payload["properties"]["Message"]
    assert sorted(message["properties"]) == ["body", "subject", "toRecipients"]
    assert message["required"] == ["subject", "toRecipients"]
    assert registry.get(SEND_MAIL_TOOL).spec.input_schema["required"] == ["payload"]


def test_send_mail_payload_is_untouched_without_filter() -> None:
    _, registry = _load(SERVICE_ROOT, {"strict_tool_schemas": False})
    message = registry.get(SEND_MAIL_TOOL).spec.input_schema["properties"]["payload"]["properties"]["Message"]
    assert "attachments" in message["properties"]
    assert "attachments" in message["required"]


def test_one_malformed_plugin_aborts_the_whole_load(tmp_path: Path) -> None:
    root = _copy_plugins(tmp_path)
    _write_plugin(root / PLUGINS, "BrokenPlugin", "{not json")

    with pytest.raises(PluginLoadError) as excinfo:
        _load(root)

    assert excinfo.value.plugin_name == "BrokenPlugin"
    assert excinfo.value.detail.startswith("Plugin creation failed for BrokenPlugin:")
    assert isinstance(excinfo.value.__cause__, json.JSONDecodeError)


def test_failed_load_registers_nothing(tmp_path: Path) -> None:
    root = _copy_plugins(tmp_path)
    _write_plugin(root / PLUGINS, "ZebraPlugin", {"functions": [], "runtimes": []})
    registry = ToolRegistry()

    async def _run():
        async with httpx.AsyncClient() as client:
            await PluginLoader(client).load_all(root, registry)

    with pytest.raises(PluginLoadError, match="ZebraPlugin"):
        asyncio.run(_run())
    assert len(registry) == 0


def test_missing_plugins_directory(tmp_path: Path) -> None:
    with pytest.raises(PluginLoadError, match="plugins directory not found"):
        _load(tmp_path)


def test_missing_function_operation_is_rejected(tmp_path: Path) -> None:
    plugin_dir = _write_plugin(
        tmp_path,
        "GhostPlugin",
        {
            "functions": [{"name": "me_missing"}],
            "runtimes": [{"type": "OpenApi", "spec": {"url": "api-openapi.json"}}],
        },
        openapi={"openapi": "3.0.1", "servers": [{"url": GRAPH}], "paths": {}},
    )
    with pytest.raises(ValueError, match="me_missing"):
        read_plugin_manifest(plugin_dir)


def test_openapi_document_must_live_in_plugin_directory(tmp_path: Path) -> None:
    plugin_dir = _write_plugin(
        tmp_path,
        "EscapePlugin",
        {"functions": [], "runtimes": [{"type": "OpenApi", "spec": {"url": "../secrets.json"}}]},
    )
    with pytest.raises(ValueError, match="outside plugin directory"):
        read_plugin_manifest(plugin_dir)


def test_cyclic_refs_collapse_to_open_object() -> None:
    document = {
        "servers": [{"url": GRAPH}],
        "paths": {
            "/me/mailFolders": {
                "get": {
                    "operationId": "me_ListMailFolders",
                    "responses": {
                        "200": {
                            "content": {
                                "application/json": {"schema": {"$ref": "#/components/schemas/folder"}}
                            }
                        }
                    },
                }
            }
        },
        "components": {
            "schemas": {
                "folder": {
                    "type": "object",
                    "properties": {
                        "displayName": {"type": "string"},
                        "childFolders": {"type": "array", "items": {"$ref": "#/components/schemas/folder"}},
                    },
                }
            }
        },
    }
    [operation] = parse_openapi_operations(document)
    folder = operation.expected_schema
    assert folder["properties"]["displayName"] == {"type": "string"}
    assert folder["properties"]["childFolders"]["items"] == {"type": "object"}


def test_path_parameters_are_always_required() -> None:
    document = {
        "servers": [{"url": GRAPH}],
        "paths": {
            "/me/events/{event-id}": {
                "parameters": [{"name": "event-id", "in": "path", "schema": {"type": "string"}}],
                "get": {
                    "operationId": "me_GetEvent",
                    "parameters": [{"name": "session", "in": "cookie"}],
                    "servers": [{"url": "https://graph.microsoft.com/beta"}],
                },
            }
        },
    }
    [operation] = parse_openapi_operations(document)
    assert operation.server_url == "https://graph.microsoft.com/beta"
    assert [(p.name, p.required) for p in operation.parameters] == [("event-id", True)]


def test_loaded_tool_calls_api_with_auth_callback() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["authorization"] = request.headers.get("Authorization")
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"value": [{"subject": "Standup"}]})

    async def _auth(request: httpx.Request):
        request.headers["Authorization"] = "Bearer graph-token"

    registry = ToolRegistry()

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            loader = PluginLoader(
                client,
                execution_parameters={GRAPH: OperationExecutionParameters(auth_callback=_auth)},
                strict_tool_schemas=False,
            )
            await loader.load_all(SERVICE_ROOT, registry)
            return await registry.invoke(
                ToolInvocationRequest(
                    call_id="call_1",
                    tool_name=CALENDAR_TOOL,
                    arguments={
                        "startDateTime": "2024-05-01T00:00:00",
                        "endDateTime": "2024-05-01T23:59:59",
                    },
                )
            )

    result = asyncio.run(_run())
    assert result.status == "completed"
    assert result.value.status_code == 200
    assert result.value.content == {"value": [{"subject": "Standup"}]}
    assert result.value.expected_schema is not None
    assert seen["authorization"] == "Bearer graph-token"
    assert seen["params"] == {
        "startDateTime": "2024-05-01T00:00:00",
        "endDateTime": "2024-05-01T23:59:59",
    }


def test_strict_send_mail_accepts_nulls_and_omits_them_from_request() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(202)

    registry = ToolRegistry()

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await PluginLoader(client).load_all(SERVICE_ROOT, registry)
            schema = registry.get(SEND_MAIL_TOOL).spec.input_schema
            message_fields = schema["properties"]["payload"]["properties"]["Message"]["properties"]
            message = {name: None for name in message_fields}
            message.update(
                subject="Agenda",
                attachments=[],
                body={"contentType": None, "content": "See you at nine."},
                toRecipients=[{"emailAddress": {"name": None, "address": "ana@contoso.com"}}],
            )
            return await registry.invoke(
                ToolInvocationRequest(
                    call_id="call_1",
                    tool_name=SEND_MAIL_TOOL,
                    arguments={"payload": {"Message": message, "SaveToSentItems": None}},
                )
            )

    result = asyncio.run(_run())
    assert result.status == "completed", result.error
    assert result.value.status_code == 202
    assert seen["body"] == {
        "Message": {
            "subject": "Agenda",
            "attachments": [],
            "body": {"content": "See you at nine."},
            "toRecipients": [{"emailAddress": {"address": "ana@contoso.com"}}],
        }
    }
