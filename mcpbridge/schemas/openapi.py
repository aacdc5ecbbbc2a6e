from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from mcpbridge.schemas.bridge import CamelModel, EndpointDefinition, McpPrompt, McpResource, McpTool


class ParsedAuthentication(CamelModel):
    """
    Auth scheme found in a document. Secrets are never part of a spec, so this is a
    template for the owner to complete before it becomes a bridge's AuthConfig.
    """

    type: Literal["none", "bearer", "apikey", "basic"] = "none"
    header_name: Optional[str] = None
    location: Literal["header", "query"] = "header"
    param_name: Optional[str] = None


class ParsedBridgeSpec(CamelModel):
    name: str
    base_url: str
    description: str = ""
    endpoints: List[EndpointDefinition] = Field(default_factory=list)
    authentication: ParsedAuthentication = Field(default_factory=ParsedAuthentication)
    headers: Dict[str, str] = Field(default_factory=dict)
    mcp_tools: List[McpTool] = Field(default_factory=list)
    mcp_prompts: List[McpPrompt] = Field(default_factory=list)
    mcp_resources: List[McpResource] = Field(default_factory=list)


class ImportResult(CamelModel):
    success: bool
    data: Optional[ParsedBridgeSpec] = None
    warnings: Optional[List[str]] = None
    error: Optional[str] = None


class OpenAPIImportRequest(CamelModel):
    url: Optional[str] = None
    content: Optional[str] = Field(default=None, description="Pasted JSON or YAML document")


# ---------- Document shape (only what the mapper reads) ----------


class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow")


class OpenAPIInfo(_Loose):
    title: str
    version: str
    description: Optional[str] = None


class OpenAPIServer(_Loose):
    url: str
    description: Optional[str] = None


class OpenAPIDocument(_Loose):
    openapi: Optional[str] = None
    swagger: Optional[str] = None
    info: OpenAPIInfo
    servers: Optional[List[OpenAPIServer]] = None
    paths: Dict[str, Dict[str, Any]]
    components: Optional[Dict[str, Any]] = None
    security: Optional[List[Dict[str, List[str]]]] = None
    tags: Optional[List[Dict[str, Any]]] = None
    # Swagger 2.0
    host: Optional[str] = None
    base_path: Optional[str] = Field(default=None, alias="basePath")
    schemes: Optional[List[str]] = None
    security_definitions: Optional[Dict[str, Any]] = Field(default=None, alias="securityDefinitions")
    definitions: Optional[Dict[str, Any]] = None
