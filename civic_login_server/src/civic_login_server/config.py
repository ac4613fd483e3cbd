# src/civic_login_server/config.py

from pydantic import field_validator, AnyHttpUrl, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Union, Any
from pathlib import Path
from dotenv import load_dotenv

# .env is at the service root, two levels up from src/civic_login_server/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    print(f"CONFIG: Loaded .env file from: {ENV_FILE_PATH}")
else:
    print(f"CONFIG: No .env file at {ENV_FILE_PATH}. Relying on environment variables and defaults.")


class Settings(BaseSettings):
    # === Civic Auth client details (auth.civic.com) ===
    CIVIC_CLIENT_ID: str = "e79e68ce-48e0-47e5-83b4-73b316d8fa35"
    CIVIC_OAUTH_SERVER: AnyHttpUrl = "https://auth.civic.com/oauth"
    CIVIC_REDIRECT_URL: AnyHttpUrl = "http://localhost:4000/auth/callback"
    # Where Civic's auth server sends the user after logging out there
    CIVIC_POST_LOGOUT_REDIRECT_URL: AnyHttpUrl = "http://localhost:4000/"
    # Landing page after a completed login
    LOGIN_SUCCESS_URL: str = "http://localhost/rs2.cgi"
    LOGIN_SCOPES: Union[str, List[str]] = ["openid", "wallet", "email", "profile"]

    # === HTTP surface ===
    CORS_ALLOWED_ORIGIN: str = "http://localhost"
    CORS_MAX_AGE_SECONDS: int = 3600
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 4000

    # === Session cookies ===
    # Must be True before serving over TLS in production.
    COOKIE_SECURE: bool = False
    COOKIE_MAX_AGE_SECONDS: int = 7 * 24 * 60 * 60

    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator("LOGIN_SCOPES", mode='before')
    @classmethod
    def parse_comma_separated_scopes(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            return [scope.strip() for scope in v.split(',') if scope.strip()]
        if isinstance(v, list):
            return v
        raise TypeError('LOGIN_SCOPES: Expected a comma-separated string or a list.')

    @model_validator(mode='after')
    def check_openid_scope(self) -> 'Settings':
        if "openid" not in self.LOGIN_SCOPES:
            raise ValueError("LOGIN_SCOPES must include 'openid' to obtain an ID token.")
        return self

    @property
    def civic_oauth_server(self) -> str:
        return str(self.CIVIC_OAUTH_SERVER).rstrip("/")


try:
    settings = Settings()
    print(f"CONFIG: Civic OAuth server: {settings.civic_oauth_server}")
    print(f"CONFIG: Civic redirect URL: {settings.CIVIC_REDIRECT_URL}")
    print(f"CONFIG: Login scopes: {settings.LOGIN_SCOPES}")
except Exception as e:
    print(f"CONFIG: Error instantiating Settings: {e}")
    import traceback
    traceback.print_exc()
    raise
