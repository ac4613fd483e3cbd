# src/civic_login_server/auth_utils.py

import traceback
import typing

from fastapi import FastAPI, Request, HTTPException, Depends, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .civic_auth import CivicAuth
from .config import Settings
from .cookie_storage import FastAPICookieStorage
from .session_data import CivicAuthConfig

GatewayFactory = typing.Callable[[FastAPICookieStorage], CivicAuth]


class AuthContext:
    """Per-request pair of cookie storage and Civic Auth client."""

    def __init__(self, storage: typing.Optional[FastAPICookieStorage] = None,
                 civic_auth: typing.Optional[CivicAuth] = None):
        self.storage = storage
        self.civic_auth = civic_auth


def build_civic_auth_config(settings: Settings) -> CivicAuthConfig:
    return CivicAuthConfig(
        client_id=settings.CIVIC_CLIENT_ID,
        redirect_url=str(settings.CIVIC_REDIRECT_URL),
        post_logout_redirect_url=str(settings.CIVIC_POST_LOGOUT_REDIRECT_URL),
        oauth_server=settings.civic_oauth_server,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
    )


def default_gateway_factory(app: FastAPI, settings: Settings) -> GatewayFactory:
    """CivicAuth bound to the app-wide HTTP client opened on startup."""
    config = build_civic_auth_config(settings)

    def factory(storage: FastAPICookieStorage) -> CivicAuth:
        http_client = getattr(app.state, "http_client", None)
        if http_client is None:
            raise RuntimeError("HTTP client is not started; was the startup hook run?")
        return CivicAuth(storage, config, http_client)

    return factory


# --- Per-request middleware ---

class CivicAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, settings: Settings, gateway_factory: GatewayFactory):
        super().__init__(app)
        self.settings = settings
        self.gateway_factory = gateway_factory

    async def dispatch(self, request, call_next):
        storage = FastAPICookieStorage(
            request,
            secure=self.settings.COOKIE_SECURE,
            max_age=self.settings.COOKIE_MAX_AGE_SECONDS,
        )
        civic_auth = None
        try:
            civic_auth = self.gateway_factory(storage)
        except Exception as e:
            # Handlers see civic_auth=None and answer 500 (gated routes: 401)
            print(f"AUTH_UTILS: Could not initialise CivicAuth for {request.url.path}: {e}")
            traceback.print_exc()
        request.state.auth_context = AuthContext(storage=storage, civic_auth=civic_auth)

        response: StarletteResponse = await call_next(request)
        storage.apply(response)
        return response


# --- Dependencies ---

def get_auth_context(request: Request) -> AuthContext:
    return getattr(request.state, "auth_context", None) or AuthContext()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def require_login(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> None:
    """Gate for everything on the protected /auth router."""
    if ctx.civic_auth is None:
        print(f"AUTH_UTILS: require_login - CivicAuth not initialised for {request.url.path}.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not await ctx.civic_auth.is_logged_in():
        print(f"AUTH_UTILS: require_login - Not logged in, rejecting {request.url.path}.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
