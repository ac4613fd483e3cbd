# src/civic_login_server/main.py

import typing

import httpx
import uvicorn
from fastapi import FastAPI, APIRouter, Depends, Request, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, RedirectResponse

from .auth_utils import (
    AuthContext,
    CivicAuthMiddleware,
    GatewayFactory,
    default_gateway_factory,
    get_auth_context,
    get_settings,
    require_login,
)
from .config import Settings, settings as default_settings
from .errors import CivicAuthError
from .session_data import ProfileResponse

NOT_INITIALIZED = "CivicAuth is not initialized."

# --- Public routes ---
router = APIRouter()

# --- Routes behind the login gate ---
protected_router = APIRouter(prefix="/auth", dependencies=[Depends(require_login)])


@router.get("/")
async def login(ctx: AuthContext = Depends(get_auth_context), settings: Settings = Depends(get_settings)):
    if ctx.civic_auth is None:
        return PlainTextResponse(NOT_INITIALIZED, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    login_url = await ctx.civic_auth.build_login_url(scopes=settings.LOGIN_SCOPES)
    print("MAIN: / - Redirecting to Civic login.")
    return RedirectResponse(url=login_url, status_code=status.HTTP_302_FOUND)


@router.get("/auth/callback")
async def auth_callback(
        code: typing.Optional[str] = None,
        state: typing.Optional[str] = None,
        error: typing.Optional[str] = None,
        error_description: typing.Optional[str] = None,
        ctx: AuthContext = Depends(get_auth_context),
        settings: Settings = Depends(get_settings),
):
    if ctx.civic_auth is None:
        return PlainTextResponse(NOT_INITIALIZED, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if error:
        # Cancelled logins and provider-side failures get the same answer as bad codes
        print(f"MAIN: /auth/callback - Civic returned an error: {error} - {error_description}")

    try:
        await ctx.civic_auth.resolve_oauth_access_code(code, state)
    except CivicAuthError as e:
        print(f"MAIN: Auth callback error: {e!r}")
        return PlainTextResponse("Failed to complete login.", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    print(f"MAIN: /auth/callback - Login complete, redirecting to {settings.LOGIN_SUCCESS_URL}")
    return RedirectResponse(url=settings.LOGIN_SUCCESS_URL, status_code=status.HTTP_302_FOUND)


@router.get("/auth/logout")
async def logout(ctx: AuthContext = Depends(get_auth_context)):
    if ctx.civic_auth is None or ctx.storage is None:
        return PlainTextResponse("CivicAuth or storage not initialized.",
                                 status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    # Clear every cookie the browser sent, not just Civic's
    cookie_names = ctx.storage.request_cookie_names()
    for key in cookie_names:
        await ctx.storage.delete(key)

    print(f"MAIN: /auth/logout - Cleared {len(cookie_names)} cookie(s).")
    return PlainTextResponse("Logout successfully.", status_code=status.HTTP_200_OK)


@protected_router.get("/profile", response_model=ProfileResponse)
async def profile(ctx: AuthContext = Depends(get_auth_context)):
    if ctx.civic_auth is None:
        return PlainTextResponse(NOT_INITIALIZED, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if not await ctx.civic_auth.is_logged_in():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not logged in.")

    user = await ctx.civic_auth.get_user()
    print(f"MAIN: /auth/profile - Profile served for user id {user.get('id')}")
    return ProfileResponse(
        user={
            "email": user.get("email"),
            "id": user.get("id"),
            "name": user.get("name"),
            **user,
        }
    )


@protected_router.get("/logout-url")
async def logout_url(ctx: AuthContext = Depends(get_auth_context)):
    """Civic's end-session URL for a browser-driven logout at the provider."""
    if ctx.civic_auth is None:
        return PlainTextResponse(NOT_INITIALIZED, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return {"logoutUrl": await ctx.civic_auth.build_logout_redirect_url()}


# Must stay the last protected route: anything else under /auth is gated before it 404s
@protected_router.api_route("/{rest:path}", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
                            include_in_schema=False)
async def unknown_auth_route(rest: str):
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")


# --- App factory ---

def create_app(settings: Settings = default_settings,
               gateway_factory: typing.Optional[GatewayFactory] = None) -> FastAPI:
    app = FastAPI(
        title="Civic Login Server",
        description="Delegates login to Civic Auth and keeps the session in HTTP cookies.",
        version="0.1.0"
    )
    app.state.settings = settings

    app.add_middleware(
        CivicAuthMiddleware,
        settings=settings,
        gateway_factory=gateway_factory or default_gateway_factory(app, settings),
    )
    # Added last so it wraps everything and answers preflights first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.CORS_ALLOWED_ORIGIN],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        max_age=settings.CORS_MAX_AGE_SECONDS,
    )

    app.include_router(router)
    app.include_router(protected_router)

    @app.exception_handler(CivicAuthError)
    async def civic_auth_error_handler(request: Request, exc: CivicAuthError):
        print(f"MAIN: Civic Auth error on {request.url.path}: {exc!r}")
        return PlainTextResponse("Authentication service error.", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    @app.on_event("startup")
    async def startup_event():
        app.state.http_client = httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        print("--- Civic Login Server (FastAPI) Starting Up ---")
        print(f"Civic Client ID: {settings.CIVIC_CLIENT_ID}")
        print(f"Civic OAuth Server: {settings.civic_oauth_server}")
        print(f"Redirect URL: {settings.CIVIC_REDIRECT_URL}")
        print(f"Post-logout Redirect URL: {settings.CIVIC_POST_LOGOUT_REDIRECT_URL}")
        print(f"CORS Allowed Origin: {settings.CORS_ALLOWED_ORIGIN}")
        if not settings.COOKIE_SECURE:
            print("WARNING: Session cookies are not Secure. Set COOKIE_SECURE=true before serving over TLS.")
        print(f'Server is running at: "http://localhost:{settings.SERVER_PORT}"')
        print("-------------------------------------------")

    @app.on_event("shutdown")
    async def shutdown_event():
        http_client = getattr(app.state, "http_client", None)
        if http_client is not None:
            await http_client.aclose()

    return app


app = create_app()


def run() -> None:
    uvicorn.run(app, host=default_settings.SERVER_HOST, port=default_settings.SERVER_PORT)


if __name__ == "__main__":
    run()
