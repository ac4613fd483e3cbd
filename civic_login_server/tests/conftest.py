"""
Shared fixtures: an in-process stand-in for Civic's auth server (served
through httpx.MockTransport) and apps wired to it.
"""

from __future__ import annotations

import time
import typing
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt

from civic_login_server.auth_utils import build_civic_auth_config
from civic_login_server.civic_auth import CivicAuth
from civic_login_server.config import Settings
from civic_login_server.cookie_storage import CookieStorage
from civic_login_server.main import create_app

OAUTH_SERVER = "https://auth.civic.com/oauth"
ISSUER = "https://auth.civic.com/oauth/"
CLIENT_ID = "test-client-id"
REDIRECT_URL = "http://localhost:4000/auth/callback"
LANDING_URL = "http://localhost/rs2.cgi"
ALLOWED_ORIGIN = "http://localhost"


def _private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


# Key generation is slow; one pair per test session is plenty.
SIGNING_KEY_PEM = _private_key_pem()
FOREIGN_KEY_PEM = _private_key_pem()


class FakeCivicServer:
    """Just enough of an OIDC provider: discovery, JWKS, authorize and token."""

    def __init__(self) -> None:
        public_jwk = jwk.construct(SIGNING_KEY_PEM, "RS256").public_key().to_dict()
        public_jwk.update({"kid": "test-key", "use": "sig"})
        self.jwks = {"keys": [public_jwk]}
        self.discovery = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{OAUTH_SERVER}/auth",
            "token_endpoint": f"{OAUTH_SERVER}/token",
            "jwks_uri": f"{OAUTH_SERVER}/jwks",
            "end_session_endpoint": f"{OAUTH_SERVER}/session/end",
            "id_token_signing_alg_values_supported": ["RS256"],
        }
        self.user_claims: typing.Dict[str, typing.Any] = {
            "sub": "user-123",
            "email": "ada@example.com",
            "name": "Ada Lovelace",
            "picture": "https://example.com/ada.png",
            "wallet_address": "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU",
        }
        self.pending_codes: typing.Dict[str, dict] = {}
        self.valid_refresh_tokens: typing.Set[str] = set()
        self.requests: typing.List[httpx.Request] = []
        self.token_requests: typing.List[dict] = []
        self.down = False
        self.token_endpoint_status: typing.Optional[int] = None
        self.nonce_override: typing.Optional[str] = None
        self._counter = 0

    def mint_id_token(self, nonce: typing.Optional[str] = None, expires_in: int = 3600,
                      key_pem: str = SIGNING_KEY_PEM, **overrides) -> str:
        now = int(time.time())
        claims = dict(self.user_claims)
        claims.update({"iss": ISSUER, "aud": CLIENT_ID, "iat": now, "exp": now + expires_in})
        if nonce is not None:
            claims["nonce"] = nonce
        claims.update(overrides)
        return jwt.encode(claims, key_pem, algorithm="RS256", headers={"kid": "test-key"})

    def authorize(self, login_url: str) -> str:
        """Plays the user signing in at Civic; returns the code sent to the callback."""
        query = {k: v[0] for k, v in parse_qs(urlparse(login_url).query).items()}
        self._counter += 1
        code = f"code-{self._counter}"
        self.pending_codes[code] = query
        return code

    def _issue_tokens(self, nonce: typing.Optional[str]) -> dict:
        self._counter += 1
        refresh_token = f"refresh-{self._counter}"
        self.valid_refresh_tokens.add(refresh_token)
        return {
            "id_token": self.mint_id_token(nonce=nonce),
            "access_token": f"access-{self._counter}",
            "refresh_token": refresh_token,
            "expires_in": 3600,
            "token_type": "Bearer",
        }

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.token_requests.append(form)
        if self.token_endpoint_status is not None:
            return httpx.Response(self.token_endpoint_status, json={"error": "server_error"})

        if form.get("grant_type") == "authorization_code":
            attempt = self.pending_codes.pop(form.get("code", ""), None)
            if (
                attempt is None
                or attempt["client_id"] != form.get("client_id")
                or attempt["redirect_uri"] != form.get("redirect_uri")
                or attempt["code_challenge"] != create_s256_code_challenge(form.get("code_verifier", ""))
            ):
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=self._issue_tokens(self.nonce_override or attempt.get("nonce")))

        if form.get("grant_type") == "refresh_token":
            if form.get("refresh_token") not in self.valid_refresh_tokens:
                return httpx.Response(400, json={"error": "invalid_grant"})
            self.valid_refresh_tokens.discard(form["refresh_token"])
            return httpx.Response(200, json=self._issue_tokens(None))

        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if path == "/oauth/.well-known/openid-configuration":
            return httpx.Response(200, json=self.discovery)
        if path == "/oauth/jwks":
            return httpx.Response(200, json=self.jwks)
        if path == "/oauth/token" and request.method == "POST":
            return self._token(request)
        return httpx.Response(404)


class InMemoryStorage(CookieStorage):
    def __init__(self, values: typing.Optional[dict] = None):
        self.values: typing.Dict[str, str] = dict(values or {})

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value

    async def delete(self, key):
        self.values.pop(key, None)


@pytest.fixture
def civic_server() -> FakeCivicServer:
    return FakeCivicServer()


@pytest.fixture
def http_client(civic_server: FakeCivicServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(civic_server.handler))


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        CIVIC_CLIENT_ID=CLIENT_ID,
        CIVIC_OAUTH_SERVER=OAUTH_SERVER,
        CIVIC_REDIRECT_URL=REDIRECT_URL,
        CIVIC_POST_LOGOUT_REDIRECT_URL="http://localhost:4000/",
        LOGIN_SUCCESS_URL=LANDING_URL,
        CORS_ALLOWED_ORIGIN=ALLOWED_ORIGIN,
    )


@pytest.fixture
def make_civic_auth(test_settings: Settings, http_client: httpx.AsyncClient):
    config = build_civic_auth_config(test_settings)

    def _make(storage: CookieStorage) -> CivicAuth:
        return CivicAuth(storage, config, http_client)

    return _make


@pytest.fixture
def client(test_settings: Settings, make_civic_auth) -> TestClient:
    return TestClient(create_app(test_settings, gateway_factory=make_civic_auth))


def log_in(client: TestClient, civic_server: FakeCivicServer) -> httpx.Response:
    """Runs the whole browser round trip and returns the callback response."""
    r = client.get("/", follow_redirects=False)
    assert r.status_code == 302
    login_url = r.headers["location"]
    code = civic_server.authorize(login_url)
    state = parse_qs(urlparse(login_url).query)["state"][0]
    return client.get("/auth/callback", params={"code": code, "state": state}, follow_redirects=False)
