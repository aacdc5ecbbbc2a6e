"""
Turns an OpenAPI 3.x or Swagger 2.0 document into a bridge configuration draft:
endpoints, an auth template, and generated MCP tools, prompts and resources.

Parsing is pure. The result is returned to the caller, who decides whether to
apply it to a bridge; nothing here touches stored state.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx
import yaml
from pydantic import ValidationError

from mcpbridge.schemas.bridge import (
    EndpointDefinition,
    EndpointParameter,
    McpPrompt,
    McpResource,
    McpTool,
    PromptArgument,
)
from mcpbridge.schemas.openapi import (
    ImportResult,
    OpenAPIDocument,
    ParsedAuthentication,
    ParsedBridgeSpec,
)
from mcpbridge.services.tool_builder import build_input_schema, sanitize_tool_name, standard_tool_name

logger = logging.getLogger(__name__)

HTTP_METHODS = ("get", "post", "put", "delete", "patch")

Source = Union[str, bytes, Dict[str, Any]]


def map_type(openapi_type: Any) -> str:
    if openapi_type in ("integer", "number"):
        return "number"
    if openapi_type in ("boolean", "array", "object"):
        return openapi_type
    return "string"


class _RefResolver:
    def __init__(self, document: Dict[str, Any]) -> None:
        self.document = document

    def resolve(self, node: Any, _seen: Tuple[str, ...] = ()) -> Any:
        """Follow local ``$ref`` pointers at the top of `node` (not recursively inside it)."""
        while isinstance(node, dict) and isinstance(node.get("$ref"), str):
            ref = node["$ref"]
            if ref in _seen or not ref.startswith("#/"):
                return {}
            _seen = _seen + (ref,)
            target: Any = self.document
            for part in ref[2:].split("/"):
                part = part.replace("~1", "/").replace("~0", "~")
                if not isinstance(target, dict) or part not in target:
                    return {}
                target = target[part]
            node = target
        return node


class OpenAPISpecMapper:
    def __init__(
        self,
        *,
        fetch_timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.fetch_timeout = fetch_timeout
        self._transport = transport

    # ---------- Entry points ----------

    async def parse(self, source: Source) -> ImportResult:
        """Accepts a URL, pasted JSON/YAML text, raw file bytes, or an already-loaded mapping."""
        if isinstance(source, dict):
            return self.parse_object(source)
        if isinstance(source, bytes):
            return self.parse_bytes(source)
        stripped = source.strip()
        if stripped.startswith(("http://", "https://")) and "\n" not in stripped:
            return await self.parse_url(stripped)
        return self.parse_text(source)

    async def parse_url(self, url: str) -> ImportResult:
        try:
            async with httpx.AsyncClient(
                timeout=self.fetch_timeout, transport=self._transport, follow_redirects=True
            ) as client:
                resp = await client.get(url, headers={"Accept": "application/json, application/yaml, */*"})
        except httpx.HTTPError as e:
            logger.warning("Fetching OpenAPI document from %s failed: %s", url, e)
            return ImportResult(success=False, error=f"Failed to fetch OpenAPI specification from URL: {e}")
        if resp.status_code >= 400:
            return ImportResult(
                success=False,
                error=f"Failed to fetch OpenAPI spec from URL: HTTP {resp.status_code}",
            )
        return self.parse_text(resp.text)

    def parse_bytes(self, data: bytes) -> ImportResult:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            return ImportResult(success=False, error="File is not valid UTF-8 text")
        return self.parse_text(text)

    def parse_text(self, text: str) -> ImportResult:
        if not text or not text.strip():
            return ImportResult(success=False, error="Empty document")
        try:
            document = json.loads(text)
        except ValueError:
            try:
                document = yaml.safe_load(text)
            except yaml.YAMLError:
                return ImportResult(
                    success=False,
                    error="Invalid document format. Please provide a valid JSON or YAML OpenAPI specification.",
                )
        if not isinstance(document, dict):
            return ImportResult(
                success=False,
                error="Invalid document format. Please provide a valid JSON or YAML OpenAPI specification.",
            )
        return self.parse_object(document)

    def parse_object(self, document: Dict[str, Any]) -> ImportResult:
        try:
            spec = OpenAPIDocument.model_validate(document)
        except ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            return ImportResult(
                success=False,
                error="Invalid OpenAPI specification format. Missing or invalid: " + ", ".join(fields),
            )
        if not spec.openapi and not spec.swagger:
            return ImportResult(
                success=False,
                error="Invalid OpenAPI specification format. Expected an 'openapi' or 'swagger' version field.",
            )
        try:
            return self._map(spec, document)
        except Exception as e:  # a malformed corner of the document must not escape as a 500
            logger.exception("Unexpected failure mapping OpenAPI document")
            return ImportResult(success=False, error=f"Failed to parse OpenAPI specification: {e}")

    # ---------- Mapping ----------

    def _map(self, spec: OpenAPIDocument, document: Dict[str, Any]) -> ImportResult:
        warnings: List[str] = []
        resolver = _RefResolver(document)

        base_url = self._base_url(spec, warnings)
        if not base_url:
            return ImportResult(
                success=False,
                error="No server URLs found in the OpenAPI spec. Please add at least one server URL.",
            )

        authentication = self._authentication(spec, warnings)
        endpoints, tags_by_endpoint = self._endpoints(spec, resolver, warnings)
        if not endpoints:
            warnings.append("No valid endpoints found in the OpenAPI spec")

        tools = self._tools(endpoints, warnings)
        prompts = self._prompts(endpoints, tags_by_endpoint, spec)
        resources = self._resources(spec)

        data = ParsedBridgeSpec(
            name=spec.info.title,
            base_url=base_url,
            description=spec.info.description or "",
            endpoints=endpoints,
            authentication=authentication,
            mcp_tools=tools,
            mcp_prompts=prompts,
            mcp_resources=resources,
        )
        return ImportResult(success=True, data=data, warnings=warnings or None)

    def _base_url(self, spec: OpenAPIDocument, warnings: List[str]) -> str:
        if spec.servers:
            url = spec.servers[0].url
            if not url.startswith(("http://", "https://")):
                warnings.append(f"Server URL '{url}' is relative; set an absolute base URL before saving")
            return url
        if spec.host:
            scheme = (spec.schemes or ["https"])[0]
            return f"{scheme}://{spec.host}{spec.base_path or ''}"
        return ""

    def _authentication(self, spec: OpenAPIDocument, warnings: List[str]) -> ParsedAuthentication:
        requirement = spec.security[0] if spec.security else {}
        if not requirement:
            return ParsedAuthentication(type="none")

        scheme_name = next(iter(requirement))
        schemes = (spec.components or {}).get("securitySchemes") or spec.security_definitions or {}
        scheme = schemes.get(scheme_name)
        if not isinstance(scheme, dict):
            warnings.append(f"Security scheme '{scheme_name}' is referenced but not defined")
            return ParsedAuthentication(type="none")

        kind = scheme.get("type")
        if kind == "http":
            http_scheme = str(scheme.get("scheme", "")).lower()
            if http_scheme == "bearer":
                return ParsedAuthentication(type="bearer")
            if http_scheme == "basic":
                return ParsedAuthentication(type="basic")
        elif kind == "basic":
            return ParsedAuthentication(type="basic")
        elif kind == "apiKey":
            location = scheme.get("in", "header")
            name = scheme.get("name") or "X-API-Key"
            if location == "query":
                return ParsedAuthentication(type="apikey", location="query", param_name=name, header_name=name)
            if location == "cookie":
                warnings.append(f"Cookie API keys are not supported; '{name}' will be sent as a header")
            return ParsedAuthentication(type="apikey", location="header", header_name=name)

        warnings.append(f"Security scheme '{scheme_name}' of type '{kind}' is not supported; configure auth manually")
        return ParsedAuthentication(type="none")

    def _endpoints(
        self,
        spec: OpenAPIDocument,
        resolver: _RefResolver,
        warnings: List[str],
    ) -> Tuple[List[EndpointDefinition], Dict[int, List[str]]]:
        endpoints: List[EndpointDefinition] = []
        tags_by_endpoint: Dict[int, List[str]] = {}

        for path, path_item in spec.paths.items():
            path_item = resolver.resolve(path_item)
            if not isinstance(path_item, dict):
                continue
            shared_params = path_item.get("parameters") or []

            for method, operation in path_item.items():
                if method.lower() not in HTTP_METHODS or not isinstance(operation, dict):
                    continue
                http_method = method.upper()
                label = f"{http_method} {path}"

                description = operation.get("summary") or operation.get("description") or ""
                if not description:
                    warnings.append(f"Operation {label} has no summary or description")

                params = self._parameters(shared_params, operation, resolver, label, warnings)
                try:
                    endpoint = EndpointDefinition(
                        name=operation.get("operationId"),
                        method=http_method,
                        path=path,
                        description=description,
                        parameters=params,
                    )
                except ValidationError as e:
                    warnings.append(f"Skipped {label}: {e.errors()[0]['msg']}")
                    continue

                tags_by_endpoint[len(endpoints)] = list(operation.get("tags") or [])
                endpoints.append(endpoint)

        return endpoints, tags_by_endpoint

    def _parameters(
        self,
        shared: List[Any],
        operation: Dict[str, Any],
        resolver: _RefResolver,
        label: str,
        warnings: List[str],
    ) -> List[EndpointParameter]:
        merged: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for raw in list(shared) + list(operation.get("parameters") or []):
            param = resolver.resolve(raw)
            if isinstance(param, dict) and param.get("name") and param.get("in"):
                merged[(param["name"], param["in"])] = param

        result: List[EndpointParameter] = []
        body_schema: Optional[Dict[str, Any]] = None

        for (name, location), param in merged.items():
            if location in ("header", "cookie"):
                warnings.append(f"{label}: {location} parameter '{name}' is not forwarded")
                continue
            if location == "body":
                body_schema = resolver.resolve(param.get("schema") or {})
                continue
            if location == "formData":
                location = "body"

            schema = resolver.resolve(param.get("schema") or {})
            raw_type = schema.get("type") if isinstance(schema, dict) else None
            raw_type = raw_type or param.get("type")
            if raw_type is None:
                warnings.append(f"{label}: parameter '{name}' has no type; treating it as string")

            result.append(
                EndpointParameter(
                    name=name,
                    type=map_type(raw_type),
                    required=location == "path" or param.get("required") is True,
                    description=param.get("description") or "",
                    default_value=(schema or {}).get("default", param.get("default")),
                    location=location,
                    enum=(schema or {}).get("enum") or param.get("enum"),
                )
            )

        request_body = resolver.resolve(operation.get("requestBody") or {})
        if isinstance(request_body, dict) and request_body.get("content"):
            content = request_body["content"]
            content_type = next((ct for ct in content if "json" in ct), next(iter(content), None))
            if content_type:
                body_schema = resolver.resolve((content.get(content_type) or {}).get("schema") or {})

        if isinstance(body_schema, dict) and isinstance(body_schema.get("properties"), dict):
            taken = {p.name for p in result}
            for prop_name, prop in body_schema["properties"].items():
                prop = resolver.resolve(prop)
                if not isinstance(prop, dict):
                    continue
                if prop_name in taken:
                    warnings.append(f"{label}: body field '{prop_name}' clashes with a parameter and is skipped")
                    continue
                if "type" not in prop:
                    warnings.append(f"{label}: body field '{prop_name}' has no type; treating it as string")
                result.append(
                    EndpointParameter(
                        name=prop_name,
                        type=map_type(prop.get("type")),
                        # The field's own flag, not the schema-level `required` list.
                        required=prop.get("required") is True,
                        description=prop.get("description") or "",
                        default_value=prop.get("default"),
                        location="body",
                        enum=prop.get("enum"),
                    )
                )
        return result

    def _tools(self, endpoints: List[EndpointDefinition], warnings: List[str]) -> List[McpTool]:
        tools: List[McpTool] = []
        used: Dict[str, int] = {}
        for endpoint in endpoints:
            if endpoint.name:
                base = sanitize_tool_name(endpoint.name)[:64]
            else:
                base = standard_tool_name(endpoint.method, endpoint.path)
            name = base
            if base in used:
                used[base] += 1
                name = f"{base}_{used[base]}"
                warnings.append(f"Tool name '{base}' is used more than once; renamed to '{name}'")
            else:
                used[base] = 1
            # The endpoint carries the final tool name so calls resolve back to it.
            endpoint.name = name
            tools.append(
                McpTool(
                    name=name,
                    description=endpoint.description or f"{endpoint.method} {endpoint.path}",
                    input_schema=build_input_schema(endpoint),
                )
            )
        return tools

    def _prompts(
        self,
        endpoints: List[EndpointDefinition],
        tags_by_endpoint: Dict[int, List[str]],
        spec: OpenAPIDocument,
    ) -> List[McpPrompt]:
        tag_descriptions = {
            t.get("name"): t.get("description") for t in (spec.tags or []) if isinstance(t, dict)
        }
        groups: Dict[str, List[EndpointDefinition]] = {}
        for index, endpoint in enumerate(endpoints):
            tags = tags_by_endpoint.get(index) or []
            segments = [s for s in endpoint.path.split("/") if s and not s.startswith("{")]
            group = tags[0] if tags else (segments[0] if segments else "root")
            groups.setdefault(group, []).append(endpoint)

        prompts = []
        for group, members in groups.items():
            prompts.append(
                McpPrompt(
                    name=sanitize_tool_name(f"{group}_operations").lower(),
                    description=tag_descriptions.get(group) or f"Guide for performing operations on {group}",
                    arguments=[
                        PromptArgument(
                            name="operation",
                            description="Choose from: " + ", ".join(f"{e.method} {e.path}" for e in members),
                            required=True,
                        ),
                        PromptArgument(name="parameters", description="Operation parameters", required=False),
                    ],
                )
            )
        return prompts

    def _resources(self, spec: OpenAPIDocument) -> List[McpResource]:
        title = spec.info.title
        resources = [
            McpResource(
                uri="openapi://spec/full",
                name=f"{title} API Specification",
                description=f"Complete OpenAPI specification for {title}",
                mime_type="application/json",
            )
        ]
        schemas = (spec.components or {}).get("schemas") or spec.definitions or {}
        if schemas:
            resources.append(
                McpResource(
                    uri="openapi://schemas/all",
                    name="API Data Schemas",
                    description="Data type definitions used by the API",
                    mime_type="application/json",
                )
            )
            for schema_name in schemas:
                resources.append(
                    McpResource(
                        uri=f"openapi://schema/{schema_name}",
                        name=f"{schema_name} Schema Definition",
                        description=f"Schema definition for {schema_name} data type",
                        mime_type="application/json",
                    )
                )
        return resources
