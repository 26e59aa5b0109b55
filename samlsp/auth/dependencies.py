# samlsp/auth/dependencies.py
"""
FastAPI dependencies for SAML authorization.

Every protected route runs an auth chain:

    [error handler, session loader, (override injector), guard]

The error handler is registered on the app (see ServiceProvider.install) so it
wraps everything downstream. The remaining steps run inside the AuthChain
dependency. The guard itself returns an outcome; the chain is the only place
where a denial is turned into an exception for FastAPI to unwind.
"""

import html
import logging
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from starlette.routing import Match, NoMatchFound

from samlsp.auth.conditions import ALL, AssertionSet, Condition, permitted, require
from samlsp.auth.errors import AuthorizationDenied, ValidationError
from samlsp.auth.session import TTLSessionStore, session_id
from samlsp.auth.utils import build_query_string, safe_encode

logger = logging.getLogger(__name__)


def get_assertions(request: Request) -> AssertionSet | None:
    """Assertions stored in the session by a successful login, if any."""
    saml = request.session.get("saml") or {}
    return saml.get("assertions")


def authenticated(request: Request) -> bool:
    """Has the user making this request authenticated via SAML?"""
    return get_assertions(request) is not None


class AuthChain:
    """
    Session loader, optional override injector and guard for one route.

    Used as a FastAPI dependency; returns the (possibly overridden) assertions.
    """

    def __init__(self, store: TTLSessionStore, condition: Any, override: Any = None):
        self.store = store
        self.condition = Condition.parse(condition)
        self.override = Condition.parse(override) if override is not None else None

    def __call__(self, request: Request) -> AssertionSet | None:
        assertions = self.load_session(request)
        if self.override is not None:
            assertions = self.inject_override(assertions)

        denied = require(self.condition, assertions)
        if denied is not None:
            logger.warning(f"Denied {request.method} {request.url.path}: {self.condition}")
            raise denied

        request.state.assertions = assertions
        return assertions

    def load_session(self, request: Request) -> AssertionSet | None:
        """Reset the TTL of the current session and return its assertions."""
        key = session_id(request)
        if key is not None:
            self.store.touch(key)
        return get_assertions(request)

    def inject_override(self, assertions: AssertionSet | None) -> AssertionSet:
        return (assertions or AssertionSet()).with_condition(self.override)


class RouteRegistry:
    """Explicit (endpoint, method) -> Condition bindings for guarded routes."""

    def __init__(self):
        self._conditions: dict[tuple[Callable, str], Condition] = {}

    def bind(self, endpoint: Callable, methods: Sequence[str], condition: Condition) -> None:
        for method in methods:
            self._conditions[(endpoint, method.upper())] = condition

    def condition_for(self, endpoint: Callable, method: str) -> Condition:
        """Routes declared without a guard are unrestricted."""
        return self._conditions.get((endpoint, method.upper()), ALL)


class Permission(str, Enum):
    PERMITTED = "permitted"
    DENIED = "denied"
    NOT_FOUND = "not-found"


def resolve_route(app, path: str, method: str = "GET"):
    """Find the route in `app` that would serve `method path`, without calling it."""
    scope = {"type": "http", "path": path, "root_path": "", "method": method.upper()}
    for route in app.router.routes:
        match, _ = route.matches(scope)
        if match == Match.FULL:
            return route
    return None


def permit(request: Request, route_or_path: str, method: str = "GET") -> Permission:
    """
    Could the current user access `route_or_path` with `method`?

    A value not starting with "/" is treated as a route name. Unresolvable
    targets give Permission.NOT_FOUND rather than a denial.
    """
    path = route_or_path
    if not path.startswith("/"):
        try:
            path = request.app.url_path_for(route_or_path)
        except NoMatchFound:
            return Permission.NOT_FOUND

    route = resolve_route(request.app, path, method)
    if route is None:
        return Permission.NOT_FOUND

    sp = request.app.state.saml_sp
    condition = sp.registry.condition_for(getattr(route, "endpoint", None), method)
    assertions = get_assertions(request)
    if sp.override is not None:
        assertions = (assertions or AssertionSet()).with_condition(sp.override)

    return Permission.PERMITTED if permitted(condition, assertions) else Permission.DENIED


class SamlRouter(APIRouter):
    """APIRouter whose guarded routes are registered with the service provider."""

    def __init__(self, sp, **kwargs):
        super().__init__(**kwargs)
        self.sp = sp

    def guarded(self, path: str, condition: Any, *, methods: Sequence[str] = ("GET",), **kwargs):
        """Declare a route behind an auth chain for `condition`."""
        chain = self.sp.chain(condition)
        dependencies = [Depends(chain)] + list(kwargs.pop("dependencies", []))

        def decorator(func):
            self.add_api_route(path, func, methods=list(methods), dependencies=dependencies, **kwargs)
            self.sp.registry.bind(func, methods, chain.condition)
            return func

        return decorator


_PAGE = """<!DOCTYPE html>
<html>
    <head>
        <meta charset="utf-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{title}</title>
    </head>
    <body style="font-family: sans-serif;">
        <h1>{title}</h1>
        <p>{message}</p>
    </body>
</html>"""


def login_link(login_path: str, target: str) -> str:
    return f"{login_path}?{build_query_string({'RelayState': safe_encode(target)})}"


async def authorization_denied_handler(request: Request, exc: AuthorizationDenied) -> HTMLResponse:
    """Forbidden for authenticated users, a login prompt for everyone else."""
    if authenticated(request):
        return HTMLResponse(
            _PAGE.format(title="Forbidden", message="You do not have permission to access this resource."),
            status_code=403,
        )

    login_path = request.app.state.saml_sp.settings.paths.login
    href = html.escape(login_link(login_path, request.url.path))
    return HTMLResponse(
        _PAGE.format(
            title="Login required",
            message=f'You must <a href="{href}">log in</a> before you can access this resource.',
        ),
        status_code=403,
    )


async def validation_error_handler(request: Request, exc: ValidationError) -> HTMLResponse:
    """A rejected SAML response: log the reasons, show a generic page."""
    logger.warning(f"SAML response rejected: {exc} {exc.reasons}")
    login_path = request.app.state.saml_sp.settings.paths.login
    return HTMLResponse(
        _PAGE.format(
            title="Login failed",
            message=f'The login could not be completed. <a href="{html.escape(login_path)}">Try again</a>.',
        ),
        status_code=400,
    )
