# samlsp/auth/session.py
"""
Server-side sessions with a sliding TTL.

The browser only holds a signed, random session id. The session data lives in
a TTL store; every guarded access refreshes the TTL, so regular users rarely
need to re-authenticate while idle sessions disappear after `max_age`.

The cookie itself does not expire (unless the user opted out of staying
signed in via the consent page); expiry is a property of the store.
"""

import copy
import logging
import secrets
import threading
import time
from collections.abc import Callable

from cachetools import TTLCache
from itsdangerous import BadSignature, Signer
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

# Expiry used for "never expiring" cookies.
NEVER = "Tue, 19 Jan 2038 03:14:07 GMT"

SESSION_ID_KEY = "session_id"


class TTLSessionStore:
    """
    Thread-safe in-memory session store.

    Entries expire `ttl` seconds after they were last written; `touch`
    rewrites an entry to reset its TTL.
    """

    def __init__(self, ttl: int, maxsize: int = 10000, timer: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._lock = threading.Lock()
        self._data = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)

    def get(self, key: str) -> dict | None:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, session: dict) -> None:
        with self._lock:
            self._data[key] = session

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def touch(self, key: str) -> bool:
        """Reset the TTL of `key`. Returns False if it has already expired."""
        with self._lock:
            session = self._data.get(key)
            if session is None:
                return False
            self._data[key] = session
            return True


class SessionCookie:
    """Signing and attributes for the session id cookie."""

    def __init__(
        self,
        secret_key: str,
        name: str = "saml-sp",
        path: str = "/",
        secure: bool = True,
        http_only: bool = True,
        same_site: str | None = None,
    ):
        self.signer = Signer(secret_key, salt="samlsp.session")
        self.name = name
        self.path = path
        self.secure = secure
        self.http_only = http_only
        # The IdP POSTs the SAML response cross-site, so a Lax cookie would not
        # be sent back to the ACS endpoint.
        self.same_site = same_site or ("none" if secure else "lax")

    def sign(self, session_id: str) -> str:
        return self.signer.sign(session_id).decode("utf-8")

    def unsign(self, value: str) -> str | None:
        try:
            return self.signer.unsign(value).decode("utf-8")
        except BadSignature:
            return None

    def set(self, response: Response, session_id: str, persistent: bool = True) -> None:
        """Set the cookie on `response`; session-only when not `persistent`."""
        response.set_cookie(
            self.name,
            self.sign(session_id),
            expires=NEVER if persistent else None,
            path=self.path,
            secure=self.secure,
            httponly=self.http_only,
            samesite=self.same_site,
        )

    def header(self, session_id: str | None) -> str:
        """Raw Set-Cookie value, for use from the ASGI middleware."""
        if session_id is None:
            value, expires = "null", "Thu, 01 Jan 1970 00:00:00 GMT"
        else:
            value, expires = self.sign(session_id), NEVER
        parts = [f"{self.name}={value}", f"path={self.path}", f"expires={expires}"]
        if self.secure:
            parts.append("secure")
        if self.http_only:
            parts.append("httponly")
        parts.append(f"samesite={self.same_site}")
        return "; ".join(parts)


def session_id(request: HTTPConnection) -> str | None:
    return request.scope.get(SESSION_ID_KEY)


def regenerate_session_id(request: HTTPConnection) -> None:
    """Move the session to a fresh id when the response is sent; the old id is dropped."""
    request.scope[SESSION_ID_KEY] = None


class SessionMiddleware:
    """
    Load `request.session` from the store and write it back when it changed.

    Follows the shape of Starlette's cookie-based SessionMiddleware, but only
    the session id travels in the cookie.
    """

    def __init__(self, app: ASGIApp, store: TTLSessionStore, cookie: SessionCookie):
        self.app = app
        self.store = store
        self.cookie = cookie

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        connection = HTTPConnection(scope)
        loaded_id = None
        data = None

        if self.cookie.name in connection.cookies:
            loaded_id = self.cookie.unsign(connection.cookies[self.cookie.name])
            if loaded_id is not None:
                data = self.store.get(loaded_id)
        if data is None:
            loaded_id = None

        scope["session"] = dict(data or {})
        scope[SESSION_ID_KEY] = loaded_id
        initial = copy.deepcopy(scope["session"])

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                session = scope["session"]
                known_id = scope[SESSION_ID_KEY]
                regenerated = loaded_id is not None and known_id != loaded_id
                if session != initial or regenerated:
                    headers = MutableHeaders(scope=message)
                    if regenerated:
                        self.store.delete(loaded_id)
                    if session:
                        if known_id is None:
                            known_id = secrets.token_urlsafe(32)
                            scope[SESSION_ID_KEY] = known_id
                            headers.append("Set-Cookie", self.cookie.header(known_id))
                        self.store.put(known_id, session)
                    elif loaded_id is not None:
                        self.store.delete(loaded_id)
                        headers.append("Set-Cookie", self.cookie.header(None))
            await send(message)

        await self.app(scope, receive, send_wrapper)
