# tests/conftest.py
"""
Shared fixtures: settings for an SP at http://testserver and a fake IdP.

The fake IdP stands in for python3-saml's OneLogin_Saml2_Auth object so the
real SamlToolkit logic (request tracking, error mapping, replay checks) runs
without XML signatures.
"""

import base64
import itertools
import json
from urllib.parse import parse_qs, quote, urlsplit

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from samlsp.auth.dependencies import permit
from samlsp.auth.saml import SamlToolkit
from samlsp.config import Settings
from samlsp.main import create_app

IDP_URL = "https://idp.example.org/sso"

FAKE_CERT = """-----BEGIN CERTIFICATE-----
MIICajCCAdOgAwIBAgIBADANBgkqhkiG9w0BAQ0FADBSMQswCQYDVQQGEwJ1czET
-----END CERTIFICATE-----"""


class FakeClock:
    """Manually advanced timer for TTL caches."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeIdP:
    """Issues JSON 'responses' in place of signed XML."""

    def __init__(self):
        self._ids = itertools.count(1)

    def respond(self, in_response_to, attributes=None, name_id="glen@example.org", signed=True, response_id=None):
        document = {
            "id": response_id or f"_response{next(self._ids)}",
            "in_response_to": in_response_to,
            "signed": signed,
            "name_id": name_id,
            "attributes": attributes or {},
        }
        return base64.b64encode(json.dumps(document).encode()).decode()


class FakeAuth:
    """The subset of OneLogin_Saml2_Auth used by SamlToolkit."""

    _request_ids = itertools.count(1)

    def __init__(self, request_data):
        self.request_data = request_data
        self._request_id = None
        self._document = None
        self._errors = []
        self._reason = None

    # Request side
    def login(self, return_to=None):
        self._request_id = f"_request{next(self._request_ids)}"
        return f"{IDP_URL}?SAMLRequest={self._request_id}&RelayState={quote(return_to or '', safe='')}"

    def get_last_request_id(self):
        return self._request_id

    def get_last_request_xml(self):
        return f'<samlp:AuthnRequest ID="{self._request_id}"/>'

    # Response side
    def process_response(self, request_id=None):
        payload = self.request_data["post_data"].get("SAMLResponse")
        if payload is None:
            raise ValueError("SAML Response not found")
        self._document = json.loads(base64.b64decode(payload))
        if not self._document["signed"]:
            self._errors = ["invalid_response"]
            self._reason = "Signature validation failed"
        elif self._document["in_response_to"] != request_id:
            self._errors = ["invalid_response"]
            self._reason = "The InResponseTo of the Response does not match"

    def get_errors(self):
        return self._errors

    def get_last_error_reason(self):
        return self._reason

    def is_authenticated(self):
        return not self._errors

    def get_last_message_id(self):
        return self._document["id"]

    def get_last_response_xml(self):
        return f'<samlp:Response ID="{self._document["id"]}"/>'

    def get_attributes(self):
        return self._document["attributes"]

    def get_nameid(self):
        return self._document["name_id"]

    def get_nameid_format(self):
        return "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"

    def get_session_index(self):
        return "_session1"


class FakeMetadataSettings:
    def get_sp_metadata(self):
        return b'<md:EntityDescriptor entityID="http://testserver"/>'

    def validate_metadata(self, metadata):
        return []


class FakeToolkit(SamlToolkit):
    def __init__(self):
        super().__init__({})

    def _build_auth(self, request_data):
        return FakeAuth(request_data)

    def _read_in_response_to(self, request_data):
        payload = request_data["post_data"].get("SAMLResponse")
        if not payload:
            raise ValueError("SAML Response not found")
        return json.loads(base64.b64decode(payload))["in_response_to"]

    def _build_settings(self):
        return FakeMetadataSettings()


def make_settings(**overrides) -> Settings:
    values = {
        "sp_url": "http://testserver",
        "idp_url": IDP_URL,
        "idp_cert": FAKE_CERT,
        "session": {"secure": False, "secret_key": "test-secret"},
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


def make_client(settings: Settings) -> TestClient:
    app = create_app(settings, toolkit=FakeToolkit())

    @app.get("/probe")
    def probe(request: Request, target: str, method: str = "GET"):
        return {"permission": permit(request, target, method).value}

    @app.post("/remember")
    def remember(request: Request):
        request.session["theme"] = "dark"
        return {"ok": True}

    @app.get("/theme")
    def theme(request: Request):
        return {"theme": request.session.get("theme")}

    return TestClient(app)


def start_login(client: TestClient, relay_state: str | None = None):
    """GET the login endpoint; returns (response, request id sent to the IdP)."""
    params = {"RelayState": relay_state} if relay_state is not None else {}
    response = client.get("/saml/login", params=params, follow_redirects=False)
    query = parse_qs(urlsplit(response.headers["location"]).query)
    return response, query["SAMLRequest"][0]


def login(client: TestClient, idp: FakeIdP, relay_state: str = "/", attributes=None, **kwargs):
    """Complete a login; returns the ACS response."""
    _, request_id = start_login(client, relay_state)
    return client.post(
        "/saml/login",
        data={"SAMLResponse": idp.respond(request_id, attributes, **kwargs), "RelayState": relay_state},
        follow_redirects=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def idp():
    return FakeIdP()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def client(settings):
    return make_client(settings)
