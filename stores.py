"""
In-memory OAuth stores.

Each store owns its maps exclusively and performs every check-and-mutate
sequence under its own lock, so consuming a code or rotating a refresh token
is atomic even when many requests are in flight. Expiry is evaluated lazily
on access; a record is expired once the clock reaches its expires_at.
"""

import hmac
import logging
import secrets
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from errors import InvalidClientError, InvalidGrantError
from models import (
    AccessToken,
    AuthorizationCode,
    ClientRegistrationRequest,
    OAuthClient,
    RefreshToken,
    SUPPORTED_GRANT_TYPES,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class ClientRegistry:
    """Registered OAuth clients keyed by client_id"""

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self._clients: Dict[str, OAuthClient] = {}
        self._lock = threading.Lock()

    def register(self, metadata: ClientRegistrationRequest) -> OAuthClient:
        """Create a new distinct client for every call (RFC 7591)"""
        client = OAuthClient(
            client_id=str(uuid.uuid4()),
            client_secret=secrets.token_hex(32),
            client_name=metadata.client_name,
            redirect_uris=list(metadata.redirect_uris),
            grant_types=metadata.grant_types or list(SUPPORTED_GRANT_TYPES),
            response_types=metadata.response_types or ["code"],
            scope=metadata.scope,
            token_endpoint_auth_method=metadata.token_endpoint_auth_method or "client_secret_post",
            client_id_issued_at=int(self.clock()),
        )
        with self._lock:
            self._clients[client.client_id] = client
        return client

    def pre_register(self, client: OAuthClient):
        """Seed a client whose credentials were issued out of band"""
        with self._lock:
            self._clients[client.client_id] = client
        logger.info(f"Pre-registered client {client.client_id}")

    def get_client(self, client_id: Optional[str]) -> Optional[OAuthClient]:
        if not client_id:
            return None
        with self._lock:
            return self._clients.get(client_id)

    def authenticate(self, client_id: Optional[str], client_secret: Optional[str]) -> OAuthClient:
        """Resolve and authenticate the client presenting a token request"""
        client = self.get_client(client_id)
        if client is None:
            raise InvalidClientError("Unknown client_id")

        if client.token_endpoint_auth_method == "none" or not client.client_secret:
            return client

        if not client_secret:
            raise InvalidClientError("Client secret is required")
        if not hmac.compare_digest(client_secret.encode(), client.client_secret.encode()):
            raise InvalidClientError("Invalid client secret")
        return client

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)


class AuthorizationCodeStore:
    """Short-lived, single-use authorization codes"""

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self._codes: Dict[str, AuthorizationCode] = {}
        self._lock = threading.Lock()

    def create(
        self,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
        scopes: List[str],
        resource: Optional[str],
        ttl: int,
    ) -> AuthorizationCode:
        record = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            scopes=scopes,
            resource=resource,
            expires_at=self.clock() + ttl,
        )
        with self._lock:
            self._codes[record.code] = record
        return record

    def consume(self, code: str, validate: Callable[[AuthorizationCode], None]) -> AuthorizationCode:
        """
        Atomically validate and remove an authorization code.

        validate runs while the lock is held and rejects the code by raising;
        a rejected code stays in the store unless it has expired. Only one
        caller can ever receive a given code back from this method.
        """
        with self._lock:
            record = self._codes.get(code)
            if record is None:
                raise InvalidGrantError("Invalid authorization code")

            if self.clock() >= record.expires_at:
                del self._codes[code]
                raise InvalidGrantError("Authorization code expired")

            validate(record)
            del self._codes[code]
            return record

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [code for code, record in self._codes.items() if now >= record.expires_at]
            for code in expired:
                del self._codes[code]
        return len(expired)

    def __contains__(self, code: str) -> bool:
        with self._lock:
            return code in self._codes

    def __len__(self) -> int:
        with self._lock:
            return len(self._codes)


class TokenStore:
    """Access and refresh tokens, minted together but stored independently"""

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self._access_tokens: Dict[str, AccessToken] = {}
        self._refresh_tokens: Dict[str, RefreshToken] = {}
        self._lock = threading.Lock()

    def issue(
        self,
        client_id: str,
        scopes: List[str],
        resource: Optional[str],
        access_ttl: int,
        refresh_ttl: int,
    ) -> Tuple[AccessToken, RefreshToken]:
        now = self.clock()
        access_token = AccessToken(
            token=secrets.token_urlsafe(32),
            client_id=client_id,
            scopes=list(scopes),
            resource=resource,
            issued_at=now,
            expires_at=now + access_ttl,
        )
        refresh_token = RefreshToken(
            token=secrets.token_urlsafe(32),
            client_id=client_id,
            scopes=list(scopes),
            resource=resource,
            expires_at=now + refresh_ttl,
        )
        with self._lock:
            self._access_tokens[access_token.token] = access_token
            self._refresh_tokens[refresh_token.token] = refresh_token
        return access_token, refresh_token

    def get_access_token(self, token: str) -> Optional[AccessToken]:
        """Look up an access token, evicting it if it has expired"""
        with self._lock:
            record = self._access_tokens.get(token)
            if record is None:
                return None
            if self.clock() >= record.expires_at:
                del self._access_tokens[token]
                return None
            return record

    def consume_refresh_token(
        self,
        token: str,
        client_id: str,
        validate: Callable[[RefreshToken], None],
    ) -> RefreshToken:
        """
        Atomically validate and remove a refresh token for rotation.

        Only the refresh token is removed; access tokens live until they expire
        or are revoked. validate runs under the lock and rejects by raising,
        leaving the refresh token in place.
        """
        with self._lock:
            record = self._refresh_tokens.get(token)
            if record is None:
                raise InvalidGrantError("Invalid refresh token")

            if record.client_id != client_id:
                raise InvalidGrantError("Refresh token was not issued to this client")

            if self.clock() >= record.expires_at:
                del self._refresh_tokens[token]
                raise InvalidGrantError("Refresh token expired")

            validate(record)

            del self._refresh_tokens[token]
            return record

    def revoke(self, token: str) -> bool:
        """Remove a token from whichever map holds it, returning whether anything was removed"""
        with self._lock:
            removed_access = self._access_tokens.pop(token, None) is not None
            removed_refresh = self._refresh_tokens.pop(token, None) is not None
            return removed_access or removed_refresh

    def purge_expired(self) -> Tuple[int, int]:
        now = self.clock()
        with self._lock:
            expired_access = [t for t, record in self._access_tokens.items() if now >= record.expires_at]
            for token in expired_access:
                del self._access_tokens[token]

            expired_refresh = [t for t, record in self._refresh_tokens.items() if now >= record.expires_at]
            for token in expired_refresh:
                del self._refresh_tokens[token]
        return len(expired_access), len(expired_refresh)

    def has_refresh_token(self, token: str) -> bool:
        with self._lock:
            return token in self._refresh_tokens

    @property
    def access_token_count(self) -> int:
        with self._lock:
            return len(self._access_tokens)

    @property
    def refresh_token_count(self) -> int:
        with self._lock:
            return len(self._refresh_tokens)
