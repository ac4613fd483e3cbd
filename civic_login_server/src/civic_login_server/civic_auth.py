# src/civic_login_server/civic_auth.py

import time
import typing

import httpx
from authlib.common.security import generate_token
from authlib.common.urls import add_params_to_uri
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from .cookie_storage import CookieStorage
from .errors import AuthExchangeError, CivicAuthError, NotLoggedInError, ProviderTransportError
from .session_data import CivicAuthConfig, TokenSet

# --- Cookie names owned by CivicAuth ---
ID_TOKEN = "id_token"
ACCESS_TOKEN = "access_token"
REFRESH_TOKEN = "refresh_token"
ACCESS_TOKEN_EXPIRES_AT = "access_token_expires_at"
CODE_VERIFIER = "code_verifier"
OAUTH_STATE = "oauth_state"
OAUTH_NONCE = "oauth_nonce"

TOKEN_KEYS = (ID_TOKEN, ACCESS_TOKEN, REFRESH_TOKEN, ACCESS_TOKEN_EXPIRES_AT)
LOGIN_ATTEMPT_KEYS = (CODE_VERIFIER, OAUTH_STATE, OAUTH_NONCE)

REQUIRED_DISCOVERY_KEYS = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")

# Claims that describe the token, not the user
PROTOCOL_CLAIMS = {"iss", "aud", "exp", "iat", "nbf", "nonce", "at_hash", "auth_time", "azp", "jti", "sid"}


class CivicAuth:
    """
    Civic Auth OIDC client for a single request.

    All session state lives in the given CookieStorage. The discovery document
    and JWKS are fetched lazily and only kept for the lifetime of the instance.
    """

    def __init__(self, storage: CookieStorage, config: CivicAuthConfig, http_client: httpx.AsyncClient):
        self.storage = storage
        self.config = config
        self.http_client = http_client
        self._discovery: typing.Optional[dict] = None
        self._jwks: typing.Optional[dict] = None

    # --- Provider metadata ---

    async def _get_json(self, url: str) -> dict:
        try:
            response = await self.http_client.get(url, timeout=self.config.timeout_seconds)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            print(f"CIVIC_AUTH: Error fetching {url}: {e}")
            raise ProviderTransportError(f"Could not load {url} from Civic auth server.") from e

    async def get_discovery(self) -> dict:
        if self._discovery is None:
            url = f"{self.config.oauth_server.rstrip('/')}/.well-known/openid-configuration"
            discovery = await self._get_json(url)
            missing = [key for key in REQUIRED_DISCOVERY_KEYS
                       if not isinstance(discovery, dict) or not discovery.get(key)]
            if missing:
                print(f"CIVIC_AUTH: Discovery document at {url} lacks {missing}")
                raise ProviderTransportError(f"Civic discovery document is missing {missing}.")
            self._discovery = discovery
        return self._discovery

    async def get_jwks(self) -> dict:
        if self._jwks is None:
            discovery = await self.get_discovery()
            self._jwks = await self._get_json(discovery["jwks_uri"])
        return self._jwks

    async def _get_signing_key(self, token: str) -> dict:
        jwks = await self.get_jwks()
        unverified_header = jwt.get_unverified_header(token)
        kid = unverified_header.get("kid")
        for key in (jwks.get("keys", []) if isinstance(jwks, dict) else []):
            if kid is None or key.get("kid") == kid:
                return key
        raise JWTError(f"Unable to find appropriate signing key for kid: {kid}")

    async def _decode_id_token(self, id_token: str, nonce: typing.Optional[str] = None) -> dict:
        """
        Verifies signature, issuer, audience and expiry. Raises JWTError
        (ExpiredSignatureError for an expired token) when the token is bad.
        """
        discovery = await self.get_discovery()
        signing_key = await self._get_signing_key(id_token)
        claims = jwt.decode(
            id_token,
            signing_key,
            algorithms=discovery.get("id_token_signing_alg_values_supported", ["RS256"]),
            audience=self.config.client_id,
            issuer=discovery["issuer"],
            # the access token is never sent alongside the ID token here
            options={"verify_at_hash": False},
        )
        if nonce is not None and claims.get("nonce") != nonce:
            raise JWTError("ID token nonce does not match the login attempt.")
        return claims

    # --- Token endpoint ---

    async def _request_tokens(self, data: typing.Dict[str, str]) -> TokenSet:
        discovery = await self.get_discovery()
        try:
            response = await self.http_client.post(
                discovery["token_endpoint"],
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            print(f"CIVIC_AUTH: Token endpoint unreachable: {e}")
            raise ProviderTransportError("Could not reach Civic token endpoint.") from e

        if response.status_code >= 500:
            print(f"CIVIC_AUTH: Token endpoint failed: {response.status_code} - {response.text}")
            raise ProviderTransportError(f"Civic token endpoint returned {response.status_code}.")
        if response.status_code >= 400:
            print(f"CIVIC_AUTH: Token endpoint rejected {data.get('grant_type')}: {response.status_code} - {response.text}")
            raise AuthExchangeError(f"Civic rejected the {data.get('grant_type')} grant.")

        try:
            return TokenSet(**response.json())
        except (ValueError, TypeError) as e:
            raise AuthExchangeError("Malformed token response from Civic.") from e

    async def _store_tokens(self, token_set: TokenSet) -> None:
        if token_set.id_token:
            await self.storage.set(ID_TOKEN, token_set.id_token)
        await self.storage.set(ACCESS_TOKEN, token_set.access_token)
        if token_set.refresh_token:
            await self.storage.set(REFRESH_TOKEN, token_set.refresh_token)
        if token_set.expires_in is not None:
            await self.storage.set(ACCESS_TOKEN_EXPIRES_AT, str(int(time.time()) + token_set.expires_in))

    # --- Public API ---

    async def build_login_url(self, scopes: typing.Iterable[str]) -> str:
        scopes = list(scopes)
        if "openid" not in scopes:
            raise ValueError("Civic Auth needs the 'openid' scope to establish a session.")

        discovery = await self.get_discovery()
        state = generate_token(32)
        nonce = generate_token(32)
        code_verifier = generate_token(64)

        await self.storage.set(OAUTH_STATE, state)
        await self.storage.set(OAUTH_NONCE, nonce)
        await self.storage.set(CODE_VERIFIER, code_verifier)

        login_url = add_params_to_uri(discovery["authorization_endpoint"], [
            ("response_type", "code"),
            ("client_id", self.config.client_id),
            ("redirect_uri", self.config.redirect_url),
            ("scope", " ".join(scopes)),
            ("state", state),
            ("nonce", nonce),
            ("code_challenge", create_s256_code_challenge(code_verifier)),
            ("code_challenge_method", "S256"),
        ])
        print(f"CIVIC_AUTH: build_login_url - Scopes: {scopes}, Redirect URI: {self.config.redirect_url}")
        return login_url

    async def resolve_oauth_access_code(self, code: typing.Optional[str], state: typing.Optional[str]) -> None:
        """
        Exchanges the authorization code for tokens and stores them.
        Raises AuthExchangeError for anything the caller should treat as a
        failed login.
        """
        expected_state = await self.storage.get(OAUTH_STATE)
        code_verifier = await self.storage.get(CODE_VERIFIER)
        nonce = await self.storage.get(OAUTH_NONCE)

        if not code or not state:
            raise AuthExchangeError("Authorization code or state missing from callback.")
        if not expected_state:
            raise AuthExchangeError("No login attempt in progress for this session.")
        if state != expected_state:
            raise AuthExchangeError("Authentication state mismatch.")
        if not code_verifier:
            raise AuthExchangeError("PKCE code verifier missing from session.")
        if not nonce:
            raise AuthExchangeError("Login nonce missing from session.")

        # A state is good for exactly one exchange attempt
        for key in LOGIN_ATTEMPT_KEYS:
            await self.storage.delete(key)

        token_set = await self._request_tokens({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_url,
            "client_id": self.config.client_id,
            "code_verifier": code_verifier,
        })
        if not token_set.id_token:
            raise AuthExchangeError("Civic did not return an ID token; is the 'openid' scope requested?")
        try:
            await self._decode_id_token(token_set.id_token, nonce=nonce)
        except JWTError as e:
            raise AuthExchangeError(f"ID token failed validation: {e}") from e

        await self._store_tokens(token_set)
        print("CIVIC_AUTH: resolve_oauth_access_code - Tokens stored.")

    async def is_logged_in(self) -> bool:
        id_token = await self.storage.get(ID_TOKEN)
        if not id_token:
            return False
        try:
            await self._decode_id_token(id_token)
            return True
        except ExpiredSignatureError:
            print("CIVIC_AUTH: is_logged_in - ID token expired, trying refresh.")
            return await self._refresh()
        except JWTError as e:
            print(f"CIVIC_AUTH: is_logged_in - Stored ID token is invalid: {e}")
            return False

    async def _refresh(self) -> bool:
        refresh_token = await self.storage.get(REFRESH_TOKEN)
        if not refresh_token:
            await self.clear_tokens()
            return False
        try:
            token_set = await self._request_tokens({
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
            })
            if not token_set.id_token:
                raise AuthExchangeError("Refresh response carried no ID token.")
            await self._decode_id_token(token_set.id_token)
        except (AuthExchangeError, JWTError) as e:
            print(f"CIVIC_AUTH: Token refresh failed: {e}")
            await self.clear_tokens()
            return False

        if not token_set.refresh_token:
            token_set.refresh_token = refresh_token
        await self._store_tokens(token_set)
        print("CIVIC_AUTH: Token refresh succeeded.")
        return True

    async def get_user(self) -> typing.Dict[str, typing.Any]:
        id_token = await self.storage.get(ID_TOKEN)
        if not id_token:
            raise NotLoggedInError("No active Civic session.")
        try:
            claims = await self._decode_id_token(id_token)
        except JWTError as e:
            raise NotLoggedInError("The session's ID token is not valid.") from e

        user: typing.Dict[str, typing.Any] = {"id": claims.get("sub")}
        for claim, value in claims.items():
            if claim != "sub" and claim not in PROTOCOL_CLAIMS:
                user[claim] = value
        return user

    async def build_logout_redirect_url(self) -> str:
        discovery = await self.get_discovery()
        end_session_endpoint = discovery.get("end_session_endpoint")
        if not end_session_endpoint:
            raise CivicAuthError("Civic auth server does not advertise an end_session_endpoint.")

        params = [
            ("client_id", self.config.client_id),
            ("post_logout_redirect_uri", self.config.post_logout_redirect_url),
            ("state", generate_token(32)),
        ]
        id_token = await self.storage.get(ID_TOKEN)
        if id_token:
            params.append(("id_token_hint", id_token))
        return add_params_to_uri(end_session_endpoint, params)

    async def clear_tokens(self) -> None:
        for key in TOKEN_KEYS:
            await self.storage.delete(key)
