from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

SUPPORTED_GRANT_TYPES = ["authorization_code", "refresh_token"]
SUPPORTED_AUTH_METHODS = ["none", "client_secret_post", "client_secret_basic"]


def is_valid_redirect_uri(uri: str) -> bool:
    """Validate redirect URI according to OAuth 2.1 security requirements"""
    if not uri or "://" not in uri:
        return False

    # HTTPS required except for loopback
    if uri.startswith("https://"):
        return True
    if uri.startswith("http://localhost") or uri.startswith("http://127.0.0.1"):
        return True

    # Private-use schemes for native apps
    return not uri.startswith("http://")


def parse_scopes(scope: Optional[str]) -> List[str]:
    """Split a space-delimited scope string, dropping duplicates but keeping order"""
    if not scope:
        return []
    return list(dict.fromkeys(scope.split()))


# OAuth Models
class ClientRegistrationRequest(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Request"""
    client_name: Optional[str] = Field(None, description="Human-readable client name")
    redirect_uris: List[str] = Field(..., description="Array of redirection URI strings")
    token_endpoint_auth_method: Optional[str] = Field(None, description="Authentication method")
    grant_types: Optional[List[str]] = Field(None, description="Grant types")
    response_types: Optional[List[str]] = Field(None, description="Response types")
    scope: Optional[str] = Field(None, description="Requested scope")
    client_uri: Optional[str] = Field(None, description="Client homepage URI")
    logo_uri: Optional[str] = Field(None, description="Logo URI")

    @field_validator('redirect_uris')
    @classmethod
    def validate_redirect_uris(cls, v):
        if not v:
            raise ValueError('At least one redirect URI is required')
        for uri in v:
            if not is_valid_redirect_uri(uri):
                raise ValueError(f'Invalid redirect URI: {uri}')
        return v

    @field_validator('grant_types')
    @classmethod
    def validate_grant_types(cls, v):
        if v is None:
            return v
        unsupported = [grant for grant in v if grant not in SUPPORTED_GRANT_TYPES]
        if unsupported:
            raise ValueError(f'Unsupported grant types: {", ".join(unsupported)}')
        return v

    @field_validator('response_types')
    @classmethod
    def validate_response_types(cls, v):
        if v is not None and any(response_type != "code" for response_type in v):
            raise ValueError('Only the "code" response type is supported')
        return v

    @field_validator('token_endpoint_auth_method')
    @classmethod
    def validate_auth_method(cls, v):
        if v is not None and v not in SUPPORTED_AUTH_METHODS:
            raise ValueError(f'Unsupported token_endpoint_auth_method: {v}')
        return v


class OAuthClient(BaseModel):
    """Registered OAuth client, immutable once stored"""
    client_id: str
    client_secret: Optional[str] = None
    client_name: Optional[str] = None
    redirect_uris: List[str]
    grant_types: List[str] = Field(default_factory=lambda: list(SUPPORTED_GRANT_TYPES))
    response_types: List[str] = Field(default_factory=lambda: ["code"])
    scope: Optional[str] = None
    token_endpoint_auth_method: str = "client_secret_post"
    client_id_issued_at: int
    client_secret_expires_at: int = 0

    model_config = ConfigDict(frozen=True)


class ClientRegistrationResponse(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Response"""
    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: int
    client_secret_expires_at: int
    client_name: Optional[str] = None
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    token_endpoint_auth_method: str
    scope: Optional[str] = None


class AuthorizationRequest(BaseModel):
    """Validated parameters of a GET /authorize request"""
    client_id: str
    redirect_uri: Optional[str] = None
    response_type: str = "code"
    scopes: List[str] = Field(default_factory=list)
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: str = "S256"
    resource: Optional[str] = None


class AuthorizationCode(BaseModel):
    """Single-use authorization code bound to a PKCE challenge"""
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str = "S256"
    scopes: List[str] = Field(default_factory=list)
    resource: Optional[str] = None
    expires_at: float


class AccessToken(BaseModel):
    """Opaque bearer token record"""
    token: str
    client_id: str
    scopes: List[str] = Field(default_factory=list)
    resource: Optional[str] = None
    issued_at: float
    expires_at: float


class RefreshToken(BaseModel):
    """Refresh token record, rotated on every use"""
    token: str
    client_id: str
    scopes: List[str] = Field(default_factory=list)
    resource: Optional[str] = None
    expires_at: float


class AuthInfo(BaseModel):
    """Result of bearer verification, attached to the protected request"""
    token: str
    client_id: str
    scopes: List[str]
    expires_at: int
    resource: Optional[str] = None


class TokenResponse(BaseModel):
    """OAuth 2.1 Token Response"""
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class TokenIntrospectionResponse(BaseModel):
    """OAuth 2.1 Token Introspection Response"""
    active: bool
    client_id: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    aud: Optional[str] = None


# MCP Models
class MCPError(BaseModel):
    """MCP JSON-RPC Error"""
    code: int
    message: str
    data: Optional[Any] = None


class MCPRequest(BaseModel):
    """MCP JSON-RPC Request"""
    jsonrpc: str = Field("2.0", description="JSON-RPC version")
    method: str = Field(..., description="Method name")
    params: Optional[Dict[str, Any]] = Field(None, description="Method parameters")
    id: Optional[Union[str, int]] = Field(None, description="Request identifier")


class MCPResponse(BaseModel):
    """MCP JSON-RPC Response"""
    jsonrpc: str = Field("2.0", description="JSON-RPC version")
    id: Optional[Union[str, int]] = Field(None, description="Request identifier")
    result: Optional[Any] = Field(None, description="Method result")
    error: Optional[MCPError] = Field(None, description="Error information")


# API Response Models
class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, str]
    environment: str
