import re
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH"]
ParamType = Literal["string", "number", "boolean", "object", "array"]

BODY_METHODS = ("POST", "PUT", "PATCH")

_PLACEHOLDER_RE = re.compile(r"\{([^}/]+)\}")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Upstream authentication (tagged union) ----------


class NoAuth(CamelModel):
    type: Literal["none"] = "none"


class BearerAuth(CamelModel):
    type: Literal["bearer"] = "bearer"
    token: str = Field(..., min_length=1)


class ApiKeyAuth(CamelModel):
    type: Literal["apikey"] = "apikey"
    token: str = Field(..., min_length=1)
    header_name: str = "X-API-Key"
    location: Literal["header", "query"] = "header"
    param_name: Optional[str] = None


class BasicAuth(CamelModel):
    type: Literal["basic"] = "basic"
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


AuthConfig = Annotated[
    Union[NoAuth, BearerAuth, ApiKeyAuth, BasicAuth],
    Field(discriminator="type"),
]


# ---------- Endpoints ----------


class EndpointParameter(CamelModel):
    name: str = Field(..., min_length=1)
    type: ParamType = "string"
    required: bool = False
    description: str = ""
    default_value: Any = None
    location: Literal["path", "query", "body"] = "query"
    enum: Optional[List[Any]] = None


def path_placeholders(path: str) -> List[str]:
    return _PLACEHOLDER_RE.findall(path.split("?", 1)[0])


class EndpointDefinition(CamelModel):
    id: Optional[str] = None
    name: Optional[str] = None
    method: HttpMethod
    path: str = Field(..., min_length=1)
    description: str = ""
    parameters: List[EndpointParameter] = Field(default_factory=list)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, v: str) -> str:
        return v if v.startswith("/") else "/" + v

    @model_validator(mode="after")
    def _placeholders_match_path_params(self) -> "EndpointDefinition":
        placeholders = path_placeholders(self.path)
        declared = {p.name for p in self.parameters if p.location == "path"}
        stray = declared - set(placeholders)
        if stray:
            raise ValueError(
                f"Path parameters {sorted(stray)} are not placeholders in '{self.path}'"
            )
        # Undeclared placeholders become required string path parameters.
        for name in placeholders:
            if name not in declared:
                self.parameters.append(
                    EndpointParameter(name=name, type="string", required=True, location="path")
                )
        return self

    @property
    def accepts_body(self) -> bool:
        return self.method in BODY_METHODS


# ---------- MCP definitions ----------


class McpTool(CamelModel):
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class PromptArgument(CamelModel):
    name: str
    description: Optional[str] = None
    required: bool = False


class McpPrompt(CamelModel):
    name: str
    description: Optional[str] = None
    arguments: List[PromptArgument] = Field(default_factory=list)


class McpResource(CamelModel):
    uri: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = None


# ---------- Bridges ----------


class BridgeCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(default=None, pattern=r"^[a-z0-9][a-z0-9-]*$")
    description: str = Field(default="", max_length=500)
    base_url: str
    authentication: AuthConfig = Field(default_factory=NoAuth)
    headers: Dict[str, str] = Field(default_factory=dict)
    endpoints: List[EndpointDefinition] = Field(default_factory=list)
    mcp_tools: List[McpTool] = Field(default_factory=list)
    mcp_prompts: List[McpPrompt] = Field(default_factory=list)
    mcp_resources: List[McpResource] = Field(default_factory=list)
    enabled: bool = True
    auth_required: bool = False
    api_key: Optional[str] = None
    is_public: bool = True

    @field_validator("base_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("baseUrl must be an http:// or https:// URL")
        return v

    @model_validator(mode="after")
    def _check_access_and_endpoints(self) -> "BridgeCreate":
        if self.auth_required and not self.api_key:
            raise ValueError("authRequired is set but no apiKey is configured")
        seen = set()
        for ep in self.endpoints:
            key = (ep.method, ep.path)
            if key in seen:
                raise ValueError(f"Duplicate endpoint {ep.method} {ep.path}")
            seen.add(key)
        return self


class BridgeUpdate(CamelModel):
    """Partial edit of bridge-level settings; unset fields stay as they are."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    base_url: Optional[str] = None
    authentication: Optional[AuthConfig] = None
    headers: Optional[Dict[str, str]] = None
    auth_required: Optional[bool] = None
    api_key: Optional[str] = None
    is_public: Optional[bool] = None

    @field_validator("base_url")
    @classmethod
    def _http_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("baseUrl must be an http:// or https:// URL")
        return v


class BridgeInfo(CamelModel):
    id: str
    slug: str
    user_id: str
    name: str
    description: str
    base_url: str
    enabled: bool
    auth_required: bool
    api_key: Optional[str] = None
    is_public: bool
    authentication: AuthConfig
    headers: Dict[str, str]
    endpoints: List[EndpointDefinition]
    mcp_tools: List[McpTool]
    mcp_prompts: List[McpPrompt]
    mcp_resources: List[McpResource]
    created_at: datetime
    updated_at: datetime
