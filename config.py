import os
from typing import List, Optional
from urllib.parse import urlparse

TRUE_VALUES = ("true", "1", "yes", "y")
FALSE_VALUES = ("false", "0", "no", "n")


def parse_bool(value: Optional[str], default: bool) -> bool:
    """Parse a boolean environment value, falling back to default when unset or unrecognised"""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    return default


def parse_list(value: Optional[str]) -> List[str]:
    """Parse a comma-separated environment value"""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Configuration management for the MCP authorization server"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 8000))
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.allowed_origins = self._parse_allowed_origins()

        # Protected resource configuration
        self.public_url = os.getenv("PUBLIC_URL", "http://localhost:8000/mcp")
        self.issuer_url = os.getenv("OAUTH_ISSUER_URL") or self._origin(self.public_url)
        self.resource_name = os.getenv("OAUTH_RESOURCE_NAME")
        self.docs_url = os.getenv("OAUTH_DOCS_URL")

        # OAuth configuration
        self.oauth_scopes = parse_list(os.getenv("OAUTH_SCOPES")) or ["mcp:tools"]
        self.oauth_code_expiry = int(os.getenv("OAUTH_CODE_TTL", 300))  # 5 minutes
        self.oauth_token_expiry = int(os.getenv("OAUTH_ACCESS_TOKEN_TTL", 3600))  # 1 hour
        self.oauth_refresh_token_expiry = int(os.getenv("OAUTH_REFRESH_TOKEN_TTL", 86400))  # 24 hours
        self.strict_resource = parse_bool(os.getenv("OAUTH_STRICT_RESOURCE"), True)

        # Pre-registered client for deployments without dynamic registration
        self.static_client_id = os.getenv("OAUTH_STATIC_CLIENT_ID")
        self.static_client_secret = os.getenv("OAUTH_STATIC_CLIENT_SECRET")
        self.static_client_redirect_uris = parse_list(os.getenv("OAUTH_STATIC_CLIENT_REDIRECT_URIS"))

        # Cleanup configuration
        self.cleanup_interval = int(os.getenv("CLEANUP_INTERVAL", 300))  # 5 minutes, 0 disables

        # MCP configuration
        self.mcp_server_name = os.getenv("MCP_SERVER_NAME", "firefly-remote-mcp")
        self.mcp_server_version = os.getenv("MCP_SERVER_VERSION", "1.0.0")

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return parse_list(origins_str)

    @staticmethod
    def _origin(url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    def _validate_config(self):
        """Validate configuration values"""
        parsed = urlparse(self.public_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"PUBLIC_URL must be an absolute URL, got {self.public_url!r}")

        if self.environment == "production":
            if not self.public_url.startswith("https://"):
                raise ValueError("PUBLIC_URL must use HTTPS in production")
            if not self.issuer_url.startswith("https://"):
                raise ValueError("OAUTH_ISSUER_URL must use HTTPS in production")

        if self.oauth_code_expiry < 30 or self.oauth_code_expiry > 600:
            raise ValueError("OAUTH_CODE_TTL must be between 30 and 600 seconds")

        if self.oauth_token_expiry <= 0 or self.oauth_refresh_token_expiry <= 0:
            raise ValueError("Token lifetimes must be positive")

        if self.static_client_id and not self.static_client_redirect_uris:
            raise ValueError("OAUTH_STATIC_CLIENT_REDIRECT_URIS is required with OAUTH_STATIC_CLIENT_ID")

        if self.cleanup_interval < 0:
            raise ValueError("CLEANUP_INTERVAL must not be negative")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"

    @property
    def resource_metadata_url(self) -> str:
        """URL of the protected resource metadata document advertised in WWW-Authenticate"""
        path = urlparse(self.public_url).path.rstrip("/")
        return f"{self._origin(self.public_url)}/.well-known/oauth-protected-resource{path}"
