# samlsp/auth/provider.py
"""
The service provider context: settings, session store, SAML toolkit and the
route registry, wired into a FastAPI app by `install`.
"""

import logging
from typing import Any

from fastapi import FastAPI

from samlsp.auth.conditions import Condition
from samlsp.auth.dependencies import (
    AuthChain,
    RouteRegistry,
    SamlRouter,
    authorization_denied_handler,
    validation_error_handler,
)
from samlsp.auth.errors import AuthorizationDenied, ValidationError
from samlsp.auth.saml import RequestTracker, SamlToolkit
from samlsp.auth.session import SessionCookie, SessionMiddleware, TTLSessionStore
from samlsp.config import Settings, build_saml_settings

logger = logging.getLogger(__name__)


class ServiceProvider:
    """Everything the SAML routes and auth chains share for one application."""

    def __init__(
        self,
        settings: Settings,
        toolkit: SamlToolkit | None = None,
        store: TTLSessionStore | None = None,
    ):
        self.settings = settings
        self.toolkit = toolkit or SamlToolkit(build_saml_settings(settings))
        self.store = store or TTLSessionStore(
            ttl=settings.session.max_age, maxsize=settings.session.max_sessions
        )
        self.tracker = RequestTracker(ttl=settings.request_ttl)
        self.cookie = SessionCookie(
            settings.session.secret_key,
            name=settings.session.cookie_name,
            path=settings.session.path,
            secure=settings.session.secure,
            http_only=settings.session.http_only,
            same_site=settings.session.same_site,
        )
        self.registry = RouteRegistry()

        self.override = None
        if settings.auth_override is not None:
            self.override = Condition.parse(settings.auth_override)
            logger.warning(f"Authorization override active: {self.override}. Do not use in production.")

    def chain(self, condition: Any) -> AuthChain:
        """Auth chain for routes guarded by `condition`."""
        return AuthChain(self.store, condition, override=self.override)

    def router(self, **kwargs) -> SamlRouter:
        return SamlRouter(self, **kwargs)

    def install(self, app: FastAPI) -> FastAPI:
        """Add session handling, error handlers and the SAML routes to `app`."""
        from samlsp.auth.saml_routes import build_router

        app.state.saml_sp = self
        app.add_middleware(SessionMiddleware, store=self.store, cookie=self.cookie)
        app.add_exception_handler(AuthorizationDenied, authorization_denied_handler)
        app.add_exception_handler(ValidationError, validation_error_handler)
        app.include_router(build_router(self))
        return app
