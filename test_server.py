#!/usr/bin/env python3

"""
Smoke test for a running Firefly Remote MCP Server
Walks discovery, registration and the full authorization-code + PKCE flow
"""

import asyncio
import base64
import hashlib
import secrets
import sys
from urllib.parse import parse_qs, urlparse

import httpx

REDIRECT_URI = "http://localhost:9999/callback"


class MCPServerTester:
    def __init__(self, base_url: str = "http://localhost:8000"):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=30.0, follow_redirects=False)
        self.client_id = None
        self.client_secret = None
        self.resource = None
        self.code_verifier = secrets.token_urlsafe(48)
        self.access_token = None
        self.refresh_token = None

    async def close(self):
        await self.client.aclose()

    def _code_challenge(self) -> str:
        digest = hashlib.sha256(self.code_verifier.encode()).digest()
        return base64.urlsafe_b64encode(digest).decode().rstrip("=")

    async def test_health_check(self) -> bool:
        """Test health check endpoint"""
        print("🏥 Testing health check...")
        response = await self.client.get(f"{self.base_url}/health")
        if response.status_code != 200:
            print(f"   ❌ Health check failed: {response.status_code}")
            return False
        data = response.json()
        print(f"   ✅ Health check passed: {data['status']}")
        return True

    async def test_oauth_metadata(self) -> bool:
        """Test OAuth authorization server metadata"""
        print("🔍 Testing OAuth metadata...")
        response = await self.client.get(f"{self.base_url}/.well-known/oauth-authorization-server")
        if response.status_code != 200:
            print(f"   ❌ OAuth metadata failed: {response.status_code}")
            return False
        data = response.json()
        required_fields = ["issuer", "authorization_endpoint", "token_endpoint", "registration_endpoint"]
        missing = [field for field in required_fields if field not in data]
        if missing:
            print(f"   ⚠️  Missing fields: {missing}")
            return False
        print(f"   ✅ OAuth metadata available ({len(data)} fields)")
        return True

    async def test_protected_resource_metadata(self) -> bool:
        """Test protected resource metadata"""
        print("🛡️  Testing protected resource metadata...")
        response = await self.client.get(f"{self.base_url}/.well-known/oauth-protected-resource")
        if response.status_code != 200:
            print(f"   ❌ Protected resource metadata failed: {response.status_code}")
            return False
        data = response.json()
        self.resource = data["resource"]
        print(f"   ✅ Resource: {self.resource}")
        print(f"   🔒 Scopes: {data.get('scopes_supported', [])}")
        return True

    async def test_client_registration(self) -> bool:
        """Test dynamic client registration"""
        print("📝 Testing dynamic client registration...")
        response = await self.client.post(
            f"{self.base_url}/register",
            json={"client_name": "MCP Smoke Test Client", "redirect_uris": [REDIRECT_URI]},
        )
        if response.status_code != 201:
            print(f"   ❌ Client registration failed: {response.status_code}")
            print(f"   📄 Response: {response.text}")
            return False
        data = response.json()
        self.client_id = data["client_id"]
        self.client_secret = data["client_secret"]
        print(f"   ✅ Client registered: {self.client_id}")
        return True

    async def test_unauthorized_mcp_access(self) -> bool:
        """Test that MCP endpoint requires authentication"""
        print("🚫 Testing unauthorized MCP access...")
        response = await self.client.post(
            f"{self.base_url}/mcp",
            json={"jsonrpc": "2.0", "method": "ping", "id": "test-1"},
        )
        if response.status_code != 401:
            print(f"   ❌ MCP endpoint should return 401, got {response.status_code}")
            return False
        if "resource_metadata=" not in response.headers.get("WWW-Authenticate", ""):
            print("   ❌ WWW-Authenticate header lacks resource_metadata")
            return False
        print("   ✅ MCP endpoint properly requires authentication")
        return True

    async def test_authorization_code_flow(self) -> bool:
        """Test authorize, code exchange and an authenticated MCP ping"""
        print("🔑 Testing authorization code flow...")
        response = await self.client.get(
            f"{self.base_url}/authorize",
            params={
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": REDIRECT_URI,
                "state": "smoke-state",
                "code_challenge": self._code_challenge(),
                "code_challenge_method": "S256",
                "resource": self.resource,
            },
        )
        if response.status_code != 302:
            print(f"   ❌ Authorization failed: {response.status_code} {response.text}")
            return False
        query = parse_qs(urlparse(response.headers["location"]).query)
        code = query["code"][0]

        token_request = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": self.code_verifier,
        }
        response = await self.client.post(f"{self.base_url}/token", data=token_request)
        if response.status_code != 200:
            print(f"   ❌ Code exchange failed: {response.status_code} {response.text}")
            return False
        tokens = response.json()
        self.access_token = tokens["access_token"]
        self.refresh_token = tokens["refresh_token"]
        print(f"   ✅ Tokens issued (scope: {tokens.get('scope')})")

        replay = await self.client.post(f"{self.base_url}/token", data=token_request)
        if replay.status_code != 400 or replay.json().get("error") != "invalid_grant":
            print(f"   ❌ Code replay should fail with invalid_grant, got {replay.status_code}")
            return False
        print("   ✅ Code replay rejected")

        response = await self.client.post(
            f"{self.base_url}/mcp",
            json={"jsonrpc": "2.0", "method": "ping", "id": "test-2"},
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        if response.status_code != 200:
            print(f"   ❌ Authenticated ping failed: {response.status_code}")
            return False
        print("   ✅ Authenticated MCP ping succeeded")
        return True

    async def test_refresh_rotation(self) -> bool:
        """Test refresh token rotation"""
        print("🔄 Testing refresh token rotation...")
        refresh_request = {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        response = await self.client.post(f"{self.base_url}/token", data=refresh_request)
        if response.status_code != 200:
            print(f"   ❌ Refresh failed: {response.status_code} {response.text}")
            return False
        tokens = response.json()

        replay = await self.client.post(f"{self.base_url}/token", data=refresh_request)
        if replay.status_code != 400:
            print(f"   ❌ Old refresh token should be rejected, got {replay.status_code}")
            return False

        self.access_token = tokens["access_token"]
        self.refresh_token = tokens["refresh_token"]
        print("   ✅ Refresh token rotated and old token rejected")
        return True

    async def test_revocation(self) -> bool:
        """Test token revocation"""
        print("🗑️  Testing token revocation...")
        response = await self.client.post(f"{self.base_url}/revoke", data={"token": self.access_token})
        if response.status_code != 200:
            print(f"   ❌ Revocation failed: {response.status_code}")
            return False

        response = await self.client.post(
            f"{self.base_url}/mcp",
            json={"jsonrpc": "2.0", "method": "ping", "id": "test-3"},
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        if response.status_code != 401:
            print(f"   ❌ Revoked token should be rejected, got {response.status_code}")
            return False
        print("   ✅ Revoked token rejected")
        return True

    async def run_all_tests(self) -> bool:
        """Run all tests and return overall success"""
        print("🧪 Starting MCP Server Tests...")
        print(f"🎯 Target: {self.base_url}")
        print("=" * 50)

        tests = [
            ("Health Check", self.test_health_check),
            ("OAuth Metadata", self.test_oauth_metadata),
            ("Protected Resource Metadata", self.test_protected_resource_metadata),
            ("Client Registration", self.test_client_registration),
            ("Unauthorized MCP Access", self.test_unauthorized_mcp_access),
            ("Authorization Code Flow", self.test_authorization_code_flow),
            ("Refresh Rotation", self.test_refresh_rotation),
            ("Revocation", self.test_revocation),
        ]

        results = []

        for test_name, test_func in tests:
            try:
                result = await test_func()
            except (httpx.HTTPError, KeyError) as e:
                print(f"   ❌ {test_name} failed with exception: {e}")
                result = False
            results.append(result)
            print()
            # Later steps depend on earlier ones
            if not result:
                break

        passed = sum(results)
        total = len(tests)

        print("=" * 50)
        print(f"📊 Test Results: {passed}/{total} passed")

        if passed == total:
            print("🎉 All tests passed!")
            return True
        print("⚠️  Some tests failed. Please check the configuration.")
        return False


async def main():
    """Main test function"""
    import argparse

    parser = argparse.ArgumentParser(description="Smoke test a running Firefly Remote MCP Server")
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Base URL of the server (default: http://localhost:8000)"
    )

    args = parser.parse_args()

    tester = MCPServerTester(args.url)

    try:
        success = await tester.run_all_tests()
        sys.exit(0 if success else 1)
    finally:
        await tester.close()


if __name__ == "__main__":
    asyncio.run(main())
