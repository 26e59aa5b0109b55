# samlsp/auth/saml.py
"""
SAML 2.0 protocol operations via python3-saml.

SP-initiated flow:
1. SP generates an AuthnRequest and redirects the user to the IdP
2. User authenticates at the IdP
3. IdP POSTs a signed SAML Response back to the login (ACS) endpoint
4. SP validates signature, audience, destination and InResponseTo
5. Assertions are normalized and stored in the session

All XML handling and cryptography stays inside python3-saml; this module only
adapts its API to the flow and keeps track of outstanding requests.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from cachetools import TTLCache
from fastapi import Request

from samlsp.auth.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthnRequest:
    """An AuthnRequest as issued to the IdP."""

    id: str
    xml: str
    redirect_url: str


@dataclass(frozen=True)
class PendingRequest:
    """An AuthnRequest still waiting for its response."""

    id: str
    xml: str = ""
    relay_state: str | None = None


@dataclass(frozen=True)
class SamlResponse:
    """A SAML Response that passed validation."""

    xml: str
    message_id: str | None
    attributes: dict = field(default_factory=dict)
    name_id: str | None = None
    name_id_format: str | None = None
    session_index: str | None = None
    request: PendingRequest | None = None


class RequestTracker:
    """
    Correlates SAML responses with the requests this SP issued.

    Any number of requests may be pending at once. A request is answered
    through the InResponseTo of its response, at most once and within `ttl`
    seconds of being issued. Response message ids are remembered for the same
    period so a captured response cannot be posted twice.
    """

    def __init__(self, ttl: int = 300, maxsize: int = 10000, timer: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._pending = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._seen = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)

    def issue(self, request_id: str, xml: str = "", relay_state: str | None = None) -> PendingRequest:
        pending = PendingRequest(request_id, xml, relay_state)
        with self._lock:
            self._pending[request_id] = pending
        return pending

    def is_pending(self, request_id: str | None) -> bool:
        if not request_id:
            return False
        with self._lock:
            return request_id in self._pending

    def consume(self, request_id: str) -> PendingRequest | None:
        with self._lock:
            return self._pending.pop(request_id, None)

    def first_use(self, message_id: str | None) -> bool:
        if not message_id:
            return True
        with self._lock:
            if message_id in self._seen:
                return False
            self._seen[message_id] = True
            return True


class SamlToolkit:
    """Adapter around python3-saml's OneLogin_Saml2_Auth."""

    def __init__(self, settings_data: dict):
        self._settings_data = settings_data

    def build_request(self, request_data: dict, relay_state: str) -> AuthnRequest:
        """Create an AuthnRequest and the IdP redirect URL carrying it."""
        auth = self._build_auth(request_data)
        redirect_url = auth.login(return_to=relay_state)
        return AuthnRequest(
            id=auth.get_last_request_id(),
            xml=_as_text(auth.get_last_request_xml()),
            redirect_url=redirect_url,
        )

    def validate(self, request_data: dict, tracker: RequestTracker) -> SamlResponse:
        """
        Validate the SAMLResponse in `request_data["post_data"]`.

        The response is matched to a pending request by its own InResponseTo,
        so neither the session nor the order of concurrent logins matters.
        The request is only consumed once the response has passed the
        toolkit's checks.

        Raises ValidationError when the response is malformed, fails the
        toolkit's checks, or cannot be correlated with a pending request.
        """
        try:
            request_id = self._read_in_response_to(request_data)
        except Exception as e:
            raise ValidationError("Malformed SAML response", [type(e).__name__]) from e

        if not tracker.is_pending(request_id):
            raise ValidationError("No pending authentication request", ["unknown_request"])

        auth = self._build_auth(request_data)
        try:
            auth.process_response(request_id=request_id)
        except Exception as e:
            raise ValidationError("Malformed SAML response", [type(e).__name__]) from e

        errors = auth.get_errors()
        if errors or not auth.is_authenticated():
            reason = auth.get_last_error_reason()
            raise ValidationError("SAML response rejected", errors + ([reason] if reason else []))

        # Another response to the same request may have won the race.
        pending = tracker.consume(request_id)
        if pending is None:
            raise ValidationError("No pending authentication request", ["unknown_request"])

        message_id = auth.get_last_message_id()
        if not tracker.first_use(message_id):
            raise ValidationError("SAML response replayed", ["replayed_response"])

        return SamlResponse(
            xml=_as_text(auth.get_last_response_xml()),
            message_id=message_id,
            attributes=auth.get_attributes(),
            name_id=auth.get_nameid(),
            name_id_format=auth.get_nameid_format(),
            session_index=auth.get_session_index(),
            request=pending,
        )

    @staticmethod
    def extract_assertions(response: SamlResponse) -> dict:
        """Nested assertion structure as delivered by the toolkit."""
        return {
            "attributes": response.attributes,
            "name_id": {"value": response.name_id, "format": response.name_id_format},
            "session_index": response.session_index,
        }

    def render_metadata(self) -> str:
        """Generate SP metadata XML from the current settings."""
        settings = self._build_settings()
        metadata = settings.get_sp_metadata()
        errors = settings.validate_metadata(metadata)
        if errors:
            raise ValueError(f"Invalid SP metadata: {', '.join(errors)}")
        return _as_text(metadata)

    def _build_auth(self, request_data: dict):
        from onelogin.saml2.auth import OneLogin_Saml2_Auth

        return OneLogin_Saml2_Auth(request_data, old_settings=self._settings_data)

    def _read_in_response_to(self, request_data: dict) -> str | None:
        """InResponseTo of the posted response, read before it is validated."""
        from onelogin.saml2.response import OneLogin_Saml2_Response
        from onelogin.saml2.settings import OneLogin_Saml2_Settings

        payload = request_data["post_data"].get("SAMLResponse")
        if not payload:
            raise ValueError("SAML Response not found")
        response = OneLogin_Saml2_Response(OneLogin_Saml2_Settings(settings=self._settings_data), payload)
        return response.document.get("InResponseTo")

    def _build_settings(self):
        from onelogin.saml2.settings import OneLogin_Saml2_Settings

        return OneLogin_Saml2_Settings(settings=self._settings_data, sp_validation_only=True)


def _as_text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value or ""


def prepare_request_data(request: Request, post_data: dict | None = None) -> dict:
    """Convert a FastAPI request to python3-saml's request format."""
    scheme = request.url.scheme
    port = request.url.port or (443 if scheme == "https" else 80)
    return {
        "https": "on" if scheme == "https" else "off",
        "http_host": request.url.hostname,
        "script_name": request.url.path,
        "server_port": str(port),
        "get_data": dict(request.query_params),
        "post_data": post_data or {},
        "query_string": request.url.query,
    }
