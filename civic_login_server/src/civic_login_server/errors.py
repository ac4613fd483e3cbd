# src/civic_login_server/errors.py


class CivicAuthError(Exception):
    """Base class for failures talking to, or reasoning about, Civic Auth."""


class AuthExchangeError(CivicAuthError):
    """
    The authorization code or state could not be turned into a session:
    missing, expired, mismatched or already used. Never retried.
    """


class ProviderTransportError(CivicAuthError):
    """Civic's auth server could not be reached or answered with a 5xx."""


class NotLoggedInError(CivicAuthError):
    pass
