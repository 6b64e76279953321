"""OAuth 2.1 error taxonomy shared by the authorization core and the HTTP layer"""

from typing import Any, Dict


class OAuthError(Exception):
    """Base class for errors surfaced to OAuth clients as {error, error_description}"""

    error_code = "server_error"
    status_code = 400

    def __init__(self, description: str = ""):
        super().__init__(description)
        self.description = description

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error_code}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidClientError(OAuthError):
    """Unknown client id or failed client authentication"""
    error_code = "invalid_client"


class InvalidClientMetadataError(OAuthError):
    """Rejected dynamic client registration metadata (RFC 7591)"""
    error_code = "invalid_client_metadata"


class InvalidRequestError(OAuthError):
    """Malformed or policy-violating request parameters"""
    error_code = "invalid_request"


class InvalidGrantError(OAuthError):
    """Expired, consumed or mismatched code or refresh token, or failed PKCE"""
    error_code = "invalid_grant"


class UnsupportedGrantTypeError(OAuthError):
    error_code = "unsupported_grant_type"


class InvalidTokenError(OAuthError):
    """Unknown, expired or wrongly bound access token"""
    error_code = "invalid_token"
    status_code = 401
