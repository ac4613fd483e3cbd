# src/civic_login_server/cookie_storage.py

import typing

from fastapi import Request
from starlette.responses import Response


class CookieStorage:
    """
    Key/value storage the Civic Auth client keeps its session in.
    Subclasses decide where the values live; everything here is async so a
    storage may sit on top of I/O.
    """

    async def get(self, key: str) -> typing.Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError


class FastAPICookieStorage(CookieStorage):
    """
    Reads cookies from the current request and queues Set-Cookie headers for
    the current response. One instance per request.

    Writes are applied by `apply()` once the route has produced its response,
    and are visible to `get()` straight away.
    """

    def __init__(self, request: Request, secure: bool = False, max_age: int = 7 * 24 * 60 * 60):
        self.request = request
        self.settings = {
            "secure": secure,
            "httponly": True,
            "samesite": "lax",
            "path": "/",
        }
        self.max_age = max_age
        # None marks a pending delete
        self._pending: typing.Dict[str, typing.Optional[str]] = {}

    def request_cookie_names(self) -> typing.List[str]:
        return list(self.request.cookies.keys())

    async def get(self, key: str) -> typing.Optional[str]:
        if key in self._pending:
            return self._pending[key]
        return self.request.cookies.get(key)

    async def set(self, key: str, value: str) -> None:
        self._pending[key] = value

    async def delete(self, key: str) -> None:
        self._pending[key] = None

    def apply(self, response: Response) -> None:
        for key, value in self._pending.items():
            if value is None:
                response.delete_cookie(key, **self.settings)
            else:
                response.set_cookie(
                    key,
                    value,
                    max_age=self.max_age,
                    expires=self.max_age,
                    **self.settings,
                )
        self._pending.clear()
