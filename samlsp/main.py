# samlsp/main.py
"""
Example SAML Service Provider — FastAPI app demoing the SAML SP routes,
route-level guards and inline permission checks.

Run with: uvicorn samlsp.main:create_app --factory
"""

import html
import logging
import threading

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from samlsp.auth.conditions import ALL, AUTHENTICATED, NONE, evaluate, require
from samlsp.auth.dependencies import Permission, authenticated, permit
from samlsp.auth.provider import ServiceProvider
from samlsp.auth.saml import SamlToolkit
from samlsp.config import Settings, load_settings

logger = logging.getLogger(__name__)

VERSION = "0.3.0"


def _resource(request: Request, path: str, description: str) -> str:
    """List item for `path`, marked up according to the viewer's permission."""
    href = html.escape(path)
    permission = permit(request, path)
    if permission is Permission.NOT_FOUND:
        return f'<li>⚠️ <a href="{href}"><del>{description}</del></a></li>'
    if permission is Permission.DENIED:
        return f'<li>🚫 <a href="{href}"><del>{description}</del></a></li>'
    return f'<li><a href="{href}">{description}</a></li>'


def create_app(settings: Settings | None = None, toolkit: SamlToolkit | None = None) -> FastAPI:
    """Build the example app around a ServiceProvider."""
    settings = settings or load_settings()
    sp = ServiceProvider(settings, toolkit=toolkit)

    app = FastAPI(title=settings.entity_id, version=VERSION)
    sp.install(app)

    router = sp.router()
    paths = settings.paths

    @router.guarded("/", ALL, response_class=HTMLResponse)
    def home(request: Request):
        """
        Public landing page. A RelayState query param is passed on to the
        login endpoint so the user returns there after authentication.
        """
        relay_state = request.query_params.get("RelayState")

        if authenticated(request):
            form = f"""
            <form action="{html.escape(paths.logout)}" method="post">
                <input type="hidden" name="RelayState" value="/">
                <button type="submit">Log out</button>
            </form>"""
        else:
            hidden = (
                f'<input type="hidden" name="RelayState" value="{html.escape(relay_state)}">'
                if relay_state else ""
            )
            form = f"""
            <form action="{html.escape(paths.login)}">
                {hidden}
                <button type="submit">Log in</button>
            </form>"""

        resources = "".join([
            _resource(request, paths.meta, "SAML metadata"),
            _resource(request, paths.request, "SP request"),
            _resource(request, paths.response, "IdP response"),
            _resource(request, paths.assertions, "User assertions"),
            _resource(request, paths.consent, "Consent"),
            _resource(request, "/api", "Fake API"),
            _resource(request, "/forbidden", "Always forbidden"),
            _resource(request, "/missing", "Missing resource"),
        ])

        return f"""
        <html>
            <head><title>{html.escape(settings.entity_id)}</title></head>
            <body style="font-family: sans-serif; padding: 2rem;">
                <h1>{html.escape(settings.entity_id)}</h1>
                <p>Example login form for logging in through an IdP.</p>
                {form}
                <h2>Available resources:</h2>
                <ul>{resources}</ul>
            </body>
        </html>
        """

    @router.guarded("/api", AUTHENTICATED, methods=["GET", "POST"])
    def api(request: Request):
        """Example API endpoint using inline permission checks."""
        assertions = request.state.assertions
        denied = require({"lastName": {"Jackson"}}, assertions)
        if denied is not None:
            raise denied
        return {"glen": evaluate({"firstName": {"Glen"}}, assertions, "is the way", "is NOT the way")}

    @router.guarded("/forbidden", NONE, methods=["GET", "POST"])
    def forbidden():
        """Never reachable; demonstrates the 403 pages."""
        return {"status": "unreachable"}

    @router.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "version": VERSION}

    app.include_router(router)
    return app


class ExampleServer:
    """Start, stop and restart the example app in a background thread."""

    def __init__(self, settings: Settings, host: str = "127.0.0.1", port: int = 9876):
        self.settings = settings
        self.host = host
        self.port = port
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        config = uvicorn.Config(create_app(self.settings), host=self.host, port=self.port)
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self._server.run, daemon=True)
        self._thread.start()
        logger.info(f"Example SP listening on http://{self.host}:{self.port}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        self._thread.join()
        self._server = None
        self._thread = None

    def restart(self) -> None:
        self.stop()
        self.start()
