#!/usr/bin/env python3

import asyncio
import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import unquote_plus, urlparse

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError

from auth import AuthManager
from config import Config
from errors import InvalidClientError, InvalidClientMetadataError, InvalidTokenError, OAuthError
from models import (
    AuthorizationRequest,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    HealthCheckResponse,
    MCPError,
    MCPRequest,
    MCPResponse,
    parse_scopes,
)

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def oauth_error_response(
    error: OAuthError,
    headers: Optional[Dict[str, str]] = None,
    status_code: Optional[int] = None,
) -> JSONResponse:
    """Render an OAuth error as {error, error_description}"""
    return JSONResponse(
        status_code=status_code or error.status_code,
        content=error.to_dict(),
        headers={**NO_STORE_HEADERS, **(headers or {})},
    )


def server_error_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": "server_error", "error_description": message},
        headers=NO_STORE_HEADERS,
    )


def parse_basic_credentials(header: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Extract client_secret_basic credentials from an Authorization header

    Both halves are form-urlencoded before base64 (RFC 6749 section 2.3.1).
    """
    if not header or not header.lower().startswith("basic "):
        return None, None
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidClientError("Malformed Basic credentials")
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise InvalidClientError("Malformed Basic credentials")
    return unquote_plus(client_id), unquote_plus(client_secret)


def bearer_challenge(config: Config, error: InvalidTokenError) -> str:
    """WWW-Authenticate value pointing clients at the protected resource metadata"""
    description = error.description.replace('"', "'")
    return (
        f'Bearer error="{error.error_code}", error_description="{description}", '
        f'resource_metadata="{config.resource_metadata_url}"'
    )


def create_app(config: Optional[Config] = None, auth_manager: Optional[AuthManager] = None) -> FastAPI:
    """Build the FastAPI application around an AuthManager"""
    config = config or Config()
    auth_manager = auth_manager or AuthManager(config)

    app = FastAPI(
        title="Firefly Remote MCP Server",
        description="OAuth 2.1 authorization server protecting a remote MCP endpoint",
        version=config.mcp_server_version,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
    )
    app.state.config = config
    app.state.auth_manager = auth_manager

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # HTTPS enforcement in production
        if config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=config.allowed_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate"],
    )

    # Health and discovery endpoints
    @app.get("/health")
    async def health_check():
        """Health check endpoint with store status"""
        return HealthCheckResponse(
            status="healthy",
            service=config.mcp_server_name,
            version=config.mcp_server_version,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={
                "auth": "ready",
                "registered_clients": str(len(auth_manager.clients)),
                "strict_resource": str(config.strict_resource).lower(),
            },
            environment=config.environment,
        ).model_dump()

    # OAuth 2.1 Authorization Server Metadata (RFC 8414)
    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server_metadata():
        """OAuth 2.1 Authorization Server Metadata for Dynamic Client Registration"""
        metadata = {
            "issuer": config.issuer_url,
            "authorization_endpoint": f"{config.issuer_url}/authorize",
            "token_endpoint": f"{config.issuer_url}/token",
            "registration_endpoint": f"{config.issuer_url}/register",
            "revocation_endpoint": f"{config.issuer_url}/revoke",
            "introspection_endpoint": f"{config.issuer_url}/introspect",
            "scopes_supported": config.oauth_scopes,
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic", "none"],
            "revocation_endpoint_auth_methods_supported": ["client_secret_post", "none"],
            "introspection_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
        }
        if config.docs_url:
            metadata["service_documentation"] = config.docs_url
        return metadata

    # OAuth 2.0 Protected Resource Metadata (RFC 9728)
    async def oauth_protected_resource_metadata():
        """OAuth 2.0 Protected Resource Metadata"""
        metadata = {
            "resource": config.public_url,
            "authorization_servers": [config.issuer_url],
            "scopes_supported": config.oauth_scopes,
            "bearer_methods_supported": ["header"],
        }
        if config.resource_name:
            metadata["resource_name"] = config.resource_name
        if config.docs_url:
            metadata["resource_documentation"] = config.docs_url
        return metadata

    app.add_api_route("/.well-known/oauth-protected-resource", oauth_protected_resource_metadata, methods=["GET"])
    resource_path = urlparse(config.public_url).path.rstrip("/")
    if resource_path:
        app.add_api_route(
            f"/.well-known/oauth-protected-resource{resource_path}",
            oauth_protected_resource_metadata,
            methods=["GET"],
        )

    # Dynamic Client Registration (RFC 7591)
    @app.post("/register")
    async def dynamic_client_registration(request: Request):
        """Dynamic Client Registration endpoint"""
        try:
            try:
                body = await request.json()
            except json.JSONDecodeError:
                raise InvalidClientMetadataError("Request body must be JSON")
            if not isinstance(body, dict):
                raise InvalidClientMetadataError("Request body must be a JSON object")

            try:
                metadata = ClientRegistrationRequest(**body)
            except ValidationError as e:
                messages = "; ".join(str(err.get("msg")) for err in e.errors())
                raise InvalidClientMetadataError(messages)

            client = await auth_manager.register_client(metadata)
            response = ClientRegistrationResponse(**client.model_dump())
            return JSONResponse(status_code=201, content=response.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

        except OAuthError as e:
            logger.warning(f"Client registration rejected: {e.description}")
            return oauth_error_response(e)
        except Exception as e:
            logger.error(f"Client registration error: {e}")
            return server_error_response("Registration failed")

    # OAuth Authorization endpoint
    @app.get("/authorize")
    async def oauth_authorize(
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        response_type: Optional[str] = None,
        scope: Optional[str] = None,
        state: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: str = "S256",
        resource: Optional[str] = None,
    ):
        """OAuth 2.1 Authorization endpoint with PKCE, approved without a consent step"""
        try:
            if not client_id:
                raise InvalidClientError("Missing client_id")

            redirect_url = await auth_manager.create_authorization(AuthorizationRequest(
                client_id=client_id,
                redirect_uri=redirect_uri,
                response_type=response_type or "",
                scopes=parse_scopes(scope),
                state=state,
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method,
                resource=resource,
            ))
            return RedirectResponse(url=redirect_url, status_code=302)

        except OAuthError as e:
            logger.warning(f"Authorization rejected for client {client_id}: {e.description}")
            return oauth_error_response(e)
        except Exception as e:
            logger.error(f"Authorization error: {e}")
            return server_error_response("Authorization failed")

    # OAuth Token endpoint
    @app.post("/token")
    async def oauth_token(request: Request):
        """OAuth 2.1 Token endpoint for authorization_code and refresh_token grants"""
        client_id = None
        try:
            form = await request.form()
            form_data = {key: value for key, value in form.items() if isinstance(value, str)}

            basic_id, basic_secret = parse_basic_credentials(request.headers.get("Authorization"))
            if basic_id:
                if form_data.get("client_id") and form_data["client_id"] != basic_id:
                    raise InvalidClientError("client_id does not match Basic credentials")
                form_data["client_id"] = basic_id
            client_id = form_data.get("client_id")

            token_response = await auth_manager.exchange_token(form_data, client_secret=basic_secret)
            return JSONResponse(content=token_response.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

        except OAuthError as e:
            logger.warning(f"Token request rejected for client {client_id}: {e.error_code} {e.description}")
            return oauth_error_response(e)
        except Exception as e:
            logger.error(f"Token exchange error: {e}")
            return server_error_response("Token exchange failed")

    # Token introspection endpoint
    @app.post("/introspect")
    async def token_introspection(request: Request):
        """OAuth 2.0 Token Introspection (RFC 7662), restricted to registered clients"""
        client_id = None
        try:
            form = await request.form()
            client_id, client_secret = parse_basic_credentials(request.headers.get("Authorization"))
            if not client_id:
                client_id = form.get("client_id") if isinstance(form.get("client_id"), str) else None
                client_secret = form.get("client_secret") if isinstance(form.get("client_secret"), str) else None
            caller = auth_manager.clients.authenticate(client_id, client_secret)
            if caller.token_endpoint_auth_method == "none" or not caller.client_secret:
                raise InvalidClientError("Public clients cannot introspect tokens")

            token = form.get("token")
            if not isinstance(token, str) or not token:
                return {"active": False}

            result = await auth_manager.introspect_token(token)
            return result.model_dump(exclude_none=True)

        except InvalidClientError as e:
            logger.warning(f"Introspection rejected for client {client_id}: {e.description}")
            return oauth_error_response(e, headers={"WWW-Authenticate": 'Basic realm="introspect"'}, status_code=401)
        except Exception as e:
            logger.error(f"Token introspection error: {e}")
            return {"active": False}

    # Token revocation endpoint
    @app.post("/revoke")
    async def token_revocation(request: Request):
        """OAuth 2.0 Token Revocation (RFC 7009), always 200"""
        try:
            form = await request.form()
            token = form.get("token")
            await auth_manager.revoke_token(token if isinstance(token, str) else None)
        except Exception as e:
            logger.error(f"Token revocation error: {e}")
        return JSONResponse(content={}, headers=NO_STORE_HEADERS)

    # Protected MCP endpoint
    @app.post("/mcp")
    async def mcp_endpoint(request: Request):
        """Bearer-protected MCP endpoint; the tool catalog is served elsewhere"""
        try:
            auth_header = request.headers.get("Authorization", "")
            scheme, _, token = auth_header.partition(" ")
            if scheme.lower() != "bearer" or not token.strip():
                raise InvalidTokenError("Missing Authorization header")

            request.state.auth = await auth_manager.verify_token(token.strip())

        except InvalidTokenError as e:
            return oauth_error_response(e, headers={"WWW-Authenticate": bearer_challenge(config, e)})
        except Exception as e:
            logger.error(f"MCP authentication error: {e}")
            return server_error_response("Internal server error")

        try:
            message = MCPRequest(**(await request.json()))
        except (json.JSONDecodeError, ValidationError, TypeError):
            error = MCPError(code=-32700, message="Parse error")
            return JSONResponse(status_code=400, content=MCPResponse(error=error).model_dump(exclude_none=True))

        if message.method == "ping":
            return MCPResponse(id=message.id, result={}).model_dump(exclude_none=True)
        error = MCPError(code=-32601, message="Method not found", data=message.method)
        return MCPResponse(id=message.id, error=error).model_dump(exclude_none=True)

    # Cleanup task for expired tokens and codes
    @app.on_event("startup")
    async def startup_event():
        """Start the expired-record sweep"""
        logger.info(f"Starting {config.mcp_server_name} v{config.mcp_server_version}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Protected resource: {config.public_url} (strict: {config.strict_resource})")
        logger.info(f"Issuer: {config.issuer_url}")

        if config.cleanup_interval > 0:
            app.state.cleanup_task = asyncio.create_task(auth_manager.cleanup_expired_tokens())

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the expired-record sweep"""
        logger.info(f"Shutting down {config.mcp_server_name}")
        task = getattr(app.state, "cleanup_task", None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    return app


if __name__ == "__main__":
    config = Config()

    # Configure logging
    logging.basicConfig(level=config.log_level, format=config.log_format)

    print(f"🚀 Starting {config.mcp_server_name} v{config.mcp_server_version}")
    print(f"📊 Environment: {config.environment}")
    print(f"🌐 Protected resource: {config.public_url}")
    print(f"🔧 OAuth 2.1 with Dynamic Client Registration at {config.issuer_url}")

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=True,
    )
