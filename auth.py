import asyncio
import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from config import Config
from errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidTokenError,
    UnsupportedGrantTypeError,
)
from models import (
    AuthInfo,
    AuthorizationCode,
    AuthorizationRequest,
    ClientRegistrationRequest,
    OAuthClient,
    RefreshToken,
    TokenIntrospectionResponse,
    TokenResponse,
)
from stores import AuthorizationCodeStore, ClientRegistry, Clock, TokenStore

logger = logging.getLogger(__name__)

SUPPORTED_CHALLENGE_METHODS = ("S256", "plain")


def compute_code_challenge(code_verifier: str, method: str = "S256") -> str:
    """Derive the PKCE code challenge for a verifier (RFC 7636)"""
    if method == "plain":
        return code_verifier
    if method == "S256":
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode().rstrip("=")
    raise InvalidRequestError(f"Unsupported code_challenge_method: {method}")


def verify_pkce(code_verifier: Optional[str], code_challenge: str, method: str = "S256") -> bool:
    """Verify PKCE code challenge using constant-time comparison"""
    if not code_verifier:
        return False
    try:
        challenge = compute_code_challenge(code_verifier, method)
    except (InvalidRequestError, UnicodeEncodeError):
        return False
    return hmac.compare_digest(challenge.encode(), code_challenge.encode())


def build_redirect_url(redirect_uri: str, **params: Optional[str]) -> str:
    """Append query parameters to a redirect URI, keeping any query it already has"""
    parts = urlsplit(redirect_uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class AuthManager:
    """
    OAuth 2.1 authorization server core.

    Implements dynamic client registration, the authorization-code grant with
    mandatory PKCE, refresh-token rotation, bearer verification with resource
    binding (RFC 8707), revocation and introspection. Authorization requests
    are approved automatically once the client and redirect URI check out;
    this server is meant for single-tenant deployments.
    """

    def __init__(self, config: Config, clock: Clock = time.time):
        self.config = config
        self.clock = clock
        self.clients = ClientRegistry(clock)
        self.codes = AuthorizationCodeStore(clock)
        self.tokens = TokenStore(clock)

        if config.static_client_id:
            self.clients.pre_register(OAuthClient(
                client_id=config.static_client_id,
                client_secret=config.static_client_secret,
                redirect_uris=config.static_client_redirect_uris,
                token_endpoint_auth_method="client_secret_post" if config.static_client_secret else "none",
                client_id_issued_at=int(clock()),
            ))

    @property
    def canonical_resource(self) -> str:
        return self.config.public_url

    def _resolve_resource(self, requested: Optional[str]) -> str:
        """Bind a request to the canonical resource, rejecting others in strict mode"""
        if not requested:
            return self.canonical_resource
        if self.config.strict_resource and requested != self.canonical_resource:
            raise InvalidRequestError(f"Invalid resource parameter. Expected {self.canonical_resource}")
        return requested

    async def register_client(self, metadata: ClientRegistrationRequest) -> OAuthClient:
        """Dynamic Client Registration (RFC 7591)"""
        client = self.clients.register(metadata)
        logger.info(f"Registered client {client.client_id} ({client.client_name or 'unnamed'})")
        return client

    async def create_authorization(self, request: AuthorizationRequest) -> str:
        """Validate an authorization request, mint a code and return the redirect URL"""
        client = self.clients.get_client(request.client_id)
        if client is None:
            raise InvalidClientError("Unknown client_id")

        redirect_uri = request.redirect_uri
        if not redirect_uri:
            if len(client.redirect_uris) != 1:
                raise InvalidRequestError("redirect_uri is required")
            redirect_uri = client.redirect_uris[0]

        # Never redirect anywhere the client did not register
        if redirect_uri not in client.redirect_uris:
            raise InvalidRequestError("Unregistered redirect_uri")

        resource = self._resolve_resource(request.resource)

        if request.response_type != "code":
            raise InvalidRequestError("response_type must be 'code'")
        if not request.code_challenge:
            raise InvalidRequestError("code_challenge is required")
        if request.code_challenge_method not in SUPPORTED_CHALLENGE_METHODS:
            raise InvalidRequestError(f"Unsupported code_challenge_method: {request.code_challenge_method}")

        scopes = request.scopes or list(self.config.oauth_scopes)
        record = self.codes.create(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
            scopes=scopes,
            resource=resource,
            ttl=self.config.oauth_code_expiry,
        )

        logger.info(f"Authorization code created for client {client.client_id}")
        return build_redirect_url(redirect_uri, code=record.code, state=request.state)

    async def exchange_token(self, form_data: Dict[str, Any], client_secret: Optional[str] = None) -> TokenResponse:
        """Token endpoint dispatch on grant_type"""
        grant_type = form_data.get("grant_type")
        if not grant_type:
            raise InvalidRequestError("Missing grant_type")
        if grant_type not in ("authorization_code", "refresh_token"):
            raise UnsupportedGrantTypeError(f"Unsupported grant_type: {grant_type}")

        client_id = form_data.get("client_id")
        if not client_id:
            raise InvalidRequestError("Missing client_id")
        client = self.clients.authenticate(client_id, client_secret or form_data.get("client_secret"))

        if grant_type not in client.grant_types:
            raise InvalidGrantError(f"Client is not allowed to use grant_type {grant_type}")

        if grant_type == "authorization_code":
            return await self._exchange_authorization_code(client, form_data)
        return await self._exchange_refresh_token(client, form_data)

    async def _exchange_authorization_code(self, client: OAuthClient, form_data: Dict[str, Any]) -> TokenResponse:
        """Exchange authorization code for tokens with PKCE verification"""
        code = form_data.get("code")
        if not code:
            raise InvalidRequestError("Missing code")

        redirect_uri = form_data.get("redirect_uri")
        code_verifier = form_data.get("code_verifier")
        requested_resource = form_data.get("resource")
        resolved = {}

        def validate(record: AuthorizationCode):
            if record.client_id != client.client_id:
                raise InvalidGrantError("Authorization code was not issued to this client")
            if redirect_uri and redirect_uri != record.redirect_uri:
                raise InvalidGrantError("Redirect URI mismatch")
            if not verify_pkce(code_verifier, record.code_challenge, record.code_challenge_method):
                raise InvalidGrantError("Invalid code_verifier")
            resolved["resource"] = self._resolve_resource(requested_resource or record.resource)

        try:
            record = self.codes.consume(code, validate)
        except InvalidGrantError as e:
            logger.warning(f"Rejected authorization code for client {client.client_id}: {e.description}")
            raise

        return self._issue_tokens(client.client_id, record.scopes, resolved["resource"])

    async def _exchange_refresh_token(self, client: OAuthClient, form_data: Dict[str, Any]) -> TokenResponse:
        """Rotate a refresh token into a new access/refresh pair"""
        refresh_token = form_data.get("refresh_token")
        if not refresh_token:
            raise InvalidRequestError("Missing refresh_token")

        requested_scopes = form_data.get("scope", "").split()
        requested_resource = form_data.get("resource")
        resolved = {}

        def validate(record: RefreshToken):
            scopes = list(dict.fromkeys(requested_scopes)) or list(record.scopes)
            # Never widen scope on refresh
            if any(scope not in record.scopes for scope in scopes):
                raise InvalidGrantError("Refresh token not authorized for requested scopes")
            resolved["scopes"] = scopes
            resolved["resource"] = self._resolve_resource(requested_resource or record.resource)

        try:
            self.tokens.consume_refresh_token(refresh_token, client.client_id, validate)
        except InvalidGrantError as e:
            logger.warning(f"Rejected refresh token for client {client.client_id}: {e.description}")
            raise

        logger.info(f"Refresh token {refresh_token[:8]}... rotated for client {client.client_id}")
        return self._issue_tokens(client.client_id, resolved["scopes"], resolved["resource"])

    def _issue_tokens(self, client_id: str, scopes, resource: Optional[str]) -> TokenResponse:
        access_token, refresh_token = self.tokens.issue(
            client_id=client_id,
            scopes=scopes,
            resource=resource,
            access_ttl=self.config.oauth_token_expiry,
            refresh_ttl=self.config.oauth_refresh_token_expiry,
        )

        logger.info(f"Access token issued for client {client_id}")
        return TokenResponse(
            access_token=access_token.token,
            token_type="bearer",
            expires_in=self.config.oauth_token_expiry,
            refresh_token=refresh_token.token,
            scope=" ".join(scopes),
        )

    async def verify_token(self, token: Optional[str]) -> AuthInfo:
        """Verify an access token for the protected resource"""
        if not token:
            raise InvalidTokenError("Missing access token")

        record = self.tokens.get_access_token(token)
        if record is None:
            raise InvalidTokenError("Invalid or expired access token")

        if self.config.strict_resource and record.resource and record.resource != self.canonical_resource:
            raise InvalidTokenError("Token not issued for this resource")

        return AuthInfo(
            token=record.token,
            client_id=record.client_id,
            scopes=list(record.scopes),
            expires_at=int(record.expires_at),
            resource=record.resource or self.canonical_resource,
        )

    async def introspect_token(self, token: str) -> TokenIntrospectionResponse:
        """OAuth 2.0 Token Introspection (RFC 7662)"""
        try:
            info = await self.verify_token(token)
        except InvalidTokenError:
            return TokenIntrospectionResponse(active=False)

        record = self.tokens.get_access_token(token)
        return TokenIntrospectionResponse(
            active=True,
            client_id=info.client_id,
            scope=" ".join(info.scopes),
            token_type="bearer",
            exp=info.expires_at,
            iat=int(record.issued_at) if record else None,
            aud=info.resource,
        )

    async def revoke_token(self, token: Optional[str]) -> None:
        """Revoke an access or refresh token; unknown tokens are not an error (RFC 7009)"""
        if not token:
            return
        if self.tokens.revoke(token):
            logger.info(f"Token revoked: {token[:8]}...")

    def cleanup_expired(self) -> Dict[str, int]:
        """Drop expired codes and tokens from every store"""
        codes = self.codes.purge_expired()
        access, refresh = self.tokens.purge_expired()
        return {"codes": codes, "access_tokens": access, "refresh_tokens": refresh}

    async def cleanup_expired_tokens(self):
        """Background task bounding memory; expiry is enforced on read regardless"""
        while True:
            try:
                await asyncio.sleep(self.config.cleanup_interval)
                removed = self.cleanup_expired()
                if any(removed.values()):
                    logger.info(
                        f"Cleaned up {removed['codes']} codes, {removed['access_tokens']} tokens, "
                        f"{removed['refresh_tokens']} refresh tokens"
                    )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}")
