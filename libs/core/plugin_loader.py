from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import httpx
import yaml

from libs.framework.tool_runtime import Tool, ToolRegistry
from libs.tools.rest_operation import PAYLOAD_ARGUMENT, AuthCallback, RestOperationRunner

from . import logging as core_logging
from .config import DEFAULT_PLUGINS_DIR_NAME
from .errors import PluginLoadError
from .models import (
    OperationParameter,
    OperationSchema,
    ParameterLocation,
    PluginManifest,
    ToolSpec,
)
from .schema_sanitizer import to_strict_schema

LOGGER = core_logging.get_logger("dayplanner", component="plugin_loader")

MANIFEST_SUFFIX = "-apiplugin.json"
PLUGIN_DIR_SUFFIX_LENGTH = 6
MAX_TOOL_NAME_LENGTH = 64
_HTTP_METHODS = ("get", "put", "post", "delete", "patch", "head", "options")
_SUCCESS_RESPONSE_KEYS = ("200", "201", "202", "2XX", "2xx", "default")
_MAX_REF_DEPTH = 16
_TOOL_NAME_INVALID = re.compile(r"[^A-Za-z0-9_-]")

ParameterFilter = Callable[[OperationSchema, OperationParameter], OperationParameter]


@dataclass(frozen=True)
class OperationExecutionParameters:
    auth_callback: Optional[AuthCallback] = None
    parameter_filter: Optional[ParameterFilter] = None


def manifest_file_name(plugin_dir_name: str) -> str:
    """``CalendarPlugin`` -> ``calendar-apiplugin.json``."""
    if len(plugin_dir_name) <= PLUGIN_DIR_SUFFIX_LENGTH:
        raise ValueError(f"plugin directory name too short: {plugin_dir_name!r}")
    return f"{plugin_dir_name[:-PLUGIN_DIR_SUFFIX_LENGTH].lower()}{MANIFEST_SUFFIX}"


def tool_name(plugin_name: str, operation_id: str) -> str:
    return _TOOL_NAME_INVALID.sub("_", f"{plugin_name}-{operation_id}")[:MAX_TOOL_NAME_LENGTH]


def _normalize_server_url(url: str) -> str:
    return url.strip().rstrip("/").lower()


class PluginLoader:
    def __init__(
        self,
        client: httpx.AsyncClient,
        execution_parameters: Mapping[str, OperationExecutionParameters] | None = None,
        plugins_dir_name: str = DEFAULT_PLUGINS_DIR_NAME,
        strict_tool_schemas: bool = True,
        tool_timeout_s: float = 30.0,
    ) -> None:
        self._client = client
        self._execution_parameters = {
            _normalize_server_url(url): params for url, params in (execution_parameters or {}).items()
        }
        self._plugins_dir_name = plugins_dir_name
        self._strict_tool_schemas = strict_tool_schemas
        self._tool_timeout_s = tool_timeout_s

    async def load_all(self, root_dir: Path | str, registry: ToolRegistry) -> List[PluginManifest]:
        """Load every plugin under ``root_dir`` into ``registry``.

        Either every plugin loads and all of their tools are registered, or
        ``PluginLoadError`` is raised naming the first plugin that failed and
        nothing is registered.
        """
        plugins_dir = Path(root_dir) / self._plugins_dir_name
        if not plugins_dir.is_dir():
            raise PluginLoadError(self._plugins_dir_name, f"plugins directory not found: {plugins_dir}")
        plugin_dirs = sorted((p for p in plugins_dir.iterdir() if p.is_dir()), key=lambda p: p.name)
        manifests: List[PluginManifest] = []
        staged: List[Tool] = []
        for plugin_dir in plugin_dirs:
            try:
                manifest = await asyncio.to_thread(read_plugin_manifest, plugin_dir)
                staged.extend(self._build_tool(manifest, operation) for operation in manifest.operations)
            except Exception as exc:  # noqa: BLE001
                LOGGER.error(
                    "plugin_load_failed",
                    plugin=plugin_dir.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise PluginLoadError(plugin_dir.name, exc) from exc
            manifests.append(manifest)
        try:
            registry.register_all(staged)
        except ValueError as exc:
            raise PluginLoadError(self._plugins_dir_name, exc) from exc
        LOGGER.info(
            "plugins_loaded",
            plugins=[manifest.name for manifest in manifests],
            tool_count=len(staged),
        )
        return manifests

    def _build_tool(self, manifest: PluginManifest, operation: OperationSchema) -> Tool:
        params = self._execution_parameters.get(_normalize_server_url(operation.server_url))
        if params is not None and params.parameter_filter is not None:
            operation = operation.model_copy(
                update={
                    "parameters": [
                        params.parameter_filter(operation, parameter)
                        for parameter in operation.parameters
                    ]
                }
            )
        input_schema = build_input_schema(operation)
        if self._strict_tool_schemas:
            input_schema = to_strict_schema(input_schema)
        spec = ToolSpec(
            name=tool_name(manifest.name, operation.operation_id),
            description=operation.description or operation.operation_id,
            input_schema=input_schema,
            strict=self._strict_tool_schemas,
            timeout_s=self._tool_timeout_s,
            plugin_name=manifest.name,
            operation_id=operation.operation_id,
        )
        runner = RestOperationRunner(
            operation,
            self._client,
            auth_callback=params.auth_callback if params is not None else None,
            drop_null_fields=self._strict_tool_schemas,
        )
        return Tool(spec=spec, handler=runner)


def build_input_schema(operation: OperationSchema) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for parameter in operation.parameters:
        schema = dict(parameter.schema_def or {"type": "string"})
        if parameter.description and "description" not in schema:
            schema["description"] = parameter.description
        properties[parameter.name] = schema
        if parameter.required:
            required.append(parameter.name)
    return {"type": "object", "properties": properties, "required": required}


def read_plugin_manifest(plugin_dir: Path) -> PluginManifest:
    name = plugin_dir.name
    manifest_path = plugin_dir / manifest_file_name(name)
    document = json.loads(manifest_path.read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        raise ValueError(f"manifest must be a JSON object: {manifest_path.name}")

    descriptions: Dict[str, str] = {}
    for function in document.get("functions") or []:
        if isinstance(function, dict) and isinstance(function.get("name"), str):
            descriptions[function["name"]] = str(function.get("description") or "")

    runtimes = [
        runtime
        for runtime in document.get("runtimes") or []
        if isinstance(runtime, dict) and str(runtime.get("type", "")).lower() == "openapi"
    ]
    if not runtimes:
        raise ValueError(f"manifest declares no OpenApi runtime: {manifest_path.name}")

    operations: List[OperationSchema] = []
    for runtime in runtimes:
        spec = runtime.get("spec") or {}
        spec_url = spec.get("url") if isinstance(spec, dict) else None
        if not isinstance(spec_url, str) or not spec_url:
            raise ValueError("OpenApi runtime is missing spec.url")
        openapi_path = (plugin_dir / spec_url).resolve()
        if plugin_dir.resolve() not in openapi_path.parents:
            raise ValueError(f"OpenAPI document outside plugin directory: {spec_url}")
        selected = runtime.get("run_for_functions") or list(descriptions)
        selected_ids = {str(item) for item in selected} or None
        found = parse_openapi_operations(load_openapi_document(openapi_path), selected_ids, descriptions)
        if selected_ids is not None:
            missing = selected_ids - {operation.operation_id for operation in found}
            if missing:
                raise ValueError(f"functions without matching operation: {', '.join(sorted(missing))}")
        operations.extend(found)

    return PluginManifest(
        name=name,
        path=str(manifest_path),
        description=str(document.get("description_for_model") or document.get("description_for_human") or ""),
        operations=operations,
    )


def load_openapi_document(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml"}:
        document = yaml.safe_load(text)
    else:
        document = json.loads(text)
    if not isinstance(document, dict):
        raise ValueError(f"OpenAPI document must be an object: {path.name}")
    return document


def parse_openapi_operations(
    document: Dict[str, Any],
    selected_ids: Optional[Set[str]] = None,
    descriptions: Optional[Mapping[str, str]] = None,
) -> List[OperationSchema]:
    descriptions = descriptions or {}
    resolver = _RefResolver(document)
    default_server = _first_server_url(document.get("servers"))
    operations: List[OperationSchema] = []
    for path, path_item in (document.get("paths") or {}).items():
        if not isinstance(path_item, dict):
            continue
        path_item = resolver.resolve(path_item)
        for method in _HTTP_METHODS:
            raw_operation = path_item.get(method)
            if not isinstance(raw_operation, dict):
                continue
            operation_id = raw_operation.get("operationId")
            if not operation_id or (selected_ids is not None and operation_id not in selected_ids):
                continue
            server_url = (
                _first_server_url(raw_operation.get("servers"))
                or _first_server_url(path_item.get("servers"))
                or default_server
            )
            if not server_url:
                raise ValueError(f"no server url declared for operation {operation_id}")
            parameters = _collect_parameters(
                resolver, path_item.get("parameters"), raw_operation.get("parameters")
            )
            payload = _payload_parameter(resolver, raw_operation.get("requestBody"))
            if payload is not None:
                parameters.append(payload)
            operations.append(
                OperationSchema(
                    operation_id=operation_id,
                    method=method,
                    path=path,
                    server_url=server_url,
                    description=str(
                        raw_operation.get("description")
                        or raw_operation.get("summary")
                        or descriptions.get(operation_id, "")
                    ),
                    parameters=parameters,
                    expected_schema=_expected_schema(resolver, raw_operation.get("responses")),
                )
            )
    return operations


def _first_server_url(servers: Any) -> Optional[str]:
    if isinstance(servers, list) and servers and isinstance(servers[0], dict):
        url = servers[0].get("url")
        if isinstance(url, str) and url:
            return url
    return None


def _collect_parameters(
    resolver: "_RefResolver", path_level: Any, operation_level: Any
) -> List[OperationParameter]:
    merged: Dict[tuple, OperationParameter] = {}
    for raw in [*(path_level or []), *(operation_level or [])]:
        raw = resolver.resolve(raw)
        if not isinstance(raw, dict) or not raw.get("name"):
            raise ValueError(f"invalid parameter declaration: {raw!r}")
        location = raw.get("in")
        if location == "cookie":
            continue
        if location not in {"path", "query", "header"}:
            raise ValueError(f"unsupported parameter location: {location!r}")
        parameter = OperationParameter(
            name=raw["name"],
            location=ParameterLocation(location),
            required=bool(raw.get("required")) or location == "path",
            description=raw.get("description"),
            schema_def=raw.get("schema") or {"type": "string"},
        )
        merged[(parameter.name, parameter.location)] = parameter
    return list(merged.values())


def _json_media_schema(content: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(content, dict):
        return None
    for media_type, media in content.items():
        if "json" in media_type and isinstance(media, dict) and isinstance(media.get("schema"), dict):
            return media["schema"]
    return None


def _payload_parameter(resolver: "_RefResolver", request_body: Any) -> Optional[OperationParameter]:
    if not isinstance(request_body, dict):
        return None
    request_body = resolver.resolve(request_body)
    schema = _json_media_schema(request_body.get("content"))
    if schema is None:
        return None
    return OperationParameter(
        name=PAYLOAD_ARGUMENT,
        location=ParameterLocation.body,
        required=bool(request_body.get("required")),
        description=request_body.get("description") or "JSON request body",
        schema_def=schema,
    )


def _expected_schema(resolver: "_RefResolver", responses: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(responses, dict):
        return None
    for key in _SUCCESS_RESPONSE_KEYS:
        response = responses.get(key)
        if isinstance(response, dict):
            return _json_media_schema(resolver.resolve(response).get("content"))
    return None


class _RefResolver:
    """Inlines local ``#/...`` references; cycles collapse to an open object."""

    def __init__(self, document: Dict[str, Any]) -> None:
        self._document = document

    def resolve(self, node: Any) -> Any:
        return self._resolve(node, (), 0)

    def _resolve(self, node: Any, seen: tuple, depth: int) -> Any:
        if isinstance(node, list):
            return [self._resolve(item, seen, depth) for item in node]
        if not isinstance(node, dict):
            return node
        ref = node.get("$ref")
        if isinstance(ref, str):
            if ref in seen or depth >= _MAX_REF_DEPTH:
                return {"type": "object"}
            target = self._lookup(ref)
            siblings = {key: value for key, value in node.items() if key != "$ref"}
            resolved = self._resolve(target, (*seen, ref), depth + 1)
            if isinstance(resolved, dict) and siblings:
                return {**resolved, **self._resolve(siblings, seen, depth)}
            return resolved
        return {key: self._resolve(value, seen, depth) for key, value in node.items()}

    def _lookup(self, ref: str) -> Any:
        if not ref.startswith("#/"):
            raise ValueError(f"unsupported $ref: {ref}")
        node: Any = self._document
        for token in ref[2:].split("/"):
            token = token.replace("~1", "/").replace("~0", "~")
            if not isinstance(node, dict) or token not in node:
                raise ValueError(f"unresolvable $ref: {ref}")
            node = node[token]
        return node

