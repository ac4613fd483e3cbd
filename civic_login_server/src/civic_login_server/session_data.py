# src/civic_login_server/session_data.py

from pydantic import BaseModel
from typing import Dict, Any, Optional


class CivicAuthConfig(BaseModel):
    """Client configuration handed to every per-request CivicAuth instance."""
    client_id: str
    redirect_url: str
    post_logout_redirect_url: str
    oauth_server: str = "https://auth.civic.com/oauth"
    timeout_seconds: float = 10.0


class TokenSet(BaseModel):
    """
    Token endpoint response. Only the tokens themselves are kept in cookies;
    the browser holds the whole session.
    """
    id_token: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


class ProfileResponse(BaseModel):
    message: str = "Authenticated profile"
    user: Dict[str, Any]
