# samlsp/auth/saml_routes.py
"""
SAML 2.0 Service Provider (SP) endpoints.

Standard endpoints for an SP-initiated login flow:
- GET  login: build an AuthnRequest, redirect to the IdP
- POST login: Assertion Consumer Service, validates the IdP's response
- GET  meta:  SP metadata for the IdP admin

Plus logout, the consent page and user-centric echo endpoints for inspecting
what the IdP sent. All paths come from `Settings.paths`.

The RelayState is treated as an opaque token produced by `safe_encode`;
it is only decoded (and sanitized) when used as a redirect Location.
"""

import logging

from fastapi import Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from samlsp.auth.conditions import ALL, AUTHENTICATED, AssertionSet
from samlsp.auth.consent import (
    RELAY_STATE,
    STAY_SIGNED_IN,
    ConsentState,
    consent_state,
    current_consent,
    render_consent_form,
    set_consent_cookie,
    stays_signed_in,
)
from samlsp.auth.dependencies import SamlRouter
from samlsp.auth.saml import prepare_request_data
from samlsp.auth.session import regenerate_session_id, session_id
from samlsp.auth.utils import build_query_string, relay_target, safe_encode

logger = logging.getLogger(__name__)


def _jsonable_session(saml: dict) -> dict:
    return {
        k: v.to_dict() if isinstance(v, AssertionSet) else v
        for k, v in saml.items()
    }


def build_router(sp) -> SamlRouter:
    """Create the SAML routes for a ServiceProvider `sp`."""
    router = sp.router(tags=["SAML"])
    settings = sp.settings
    paths = settings.paths

    @router.get(paths.meta)
    def saml_metadata():
        """
        SP Metadata endpoint — returns XML describing this Service Provider.

        An IdP admin imports this metadata to configure the trust relationship.
        Contains: entity ID, ACS URL, certificate.
        """
        return Response(content=sp.toolkit.render_metadata(), media_type="text/xml")

    @router.guarded(paths.login, ALL)
    def saml_login(request: Request):
        """
        Initiate SAML authentication (SP-Initiated SSO).

        A custom RelayState (a safe-encoded URL) can be given as query param;
        otherwise the configured fallback is used.
        """
        relay_state = request.query_params.get(RELAY_STATE) or settings.relay_state or "/"
        authn_request = sp.toolkit.build_request(prepare_request_data(request), relay_state)
        sp.tracker.issue(authn_request.id, authn_request.xml, relay_state)

        request.session.clear()
        regenerate_session_id(request)
        request.session["saml"] = {
            "request": authn_request.xml,
            "request_id": authn_request.id,
            "relay_state": relay_state,
        }
        logger.info(f"Redirecting to IdP with AuthnRequest {authn_request.id}")
        return RedirectResponse(url=authn_request.redirect_url, status_code=302)

    @router.guarded(paths.login, ALL, methods=["POST"])
    async def saml_acs(request: Request):
        """
        Assertion Consumer Service — receives the SAML Response from the IdP.

        The response is matched to its AuthnRequest through the request
        tracker, so the session cookie need not survive the IdP's cross-site
        POST. Redirects to the consent page unless the user opted to stay
        signed in, otherwise to the RelayState.
        """
        form = await request.form()
        post_data = {k: v for k, v in form.items() if isinstance(v, str)}

        saml_response = await run_in_threadpool(
            sp.toolkit.validate, prepare_request_data(request, post_data), sp.tracker
        )
        pending = saml_response.request
        relay_state = post_data.get(RELAY_STATE) or pending.relay_state or "/"
        assertions = AssertionSet.from_structure(sp.toolkit.extract_assertions(saml_response))

        regenerate_session_id(request)
        request.session["saml"] = {
            "request": pending.xml,
            "request_id": pending.id,
            "relay_state": relay_state,
            "assertions": assertions,
            "response": saml_response.xml,
        }
        logger.info(f"SAML login validated for {assertions.name_id}")

        if settings.consent is not None and not stays_signed_in(request):
            location = f"{paths.consent}?{build_query_string({RELAY_STATE: relay_state})}"
        else:
            location = relay_target(relay_state, settings.sp_url)
        return RedirectResponse(url=location, status_code=303)

    @router.guarded(paths.logout, ALL, methods=["POST"])
    async def saml_logout(request: Request):
        """
        Delete the SAML-related session info, i.e. log out.

        An API endpoint by default (204). Providing a RelayState makes it
        redirect with 303 instead, for plain HTML forms.
        """
        form = await request.form()
        relay_state = form.get(RELAY_STATE) or request.query_params.get(RELAY_STATE)
        request.session.pop("saml", None)
        logger.info("SAML session cleared")

        if relay_state:
            return RedirectResponse(url=relay_target(relay_state, settings.sp_url), status_code=303)
        return Response(status_code=204)

    @router.guarded(paths.consent, AUTHENTICATED)
    def saml_consent(request: Request):
        """Consent page: initial, redirect or edit state."""
        params = dict(request.query_params)
        state = consent_state(params)
        consent = current_consent(request, settings.consent)

        if state is ConsentState.INITIAL:
            return HTMLResponse(render_consent_form(paths.consent, consent, params[RELAY_STATE]))

        if state is ConsentState.REDIRECT:
            response = RedirectResponse(
                url=relay_target(params[RELAY_STATE], settings.sp_url), status_code=303
            )
            set_consent_cookie(response, sp.cookie, params)

            # Client-side expiry of the session cookie; the server-side TTL
            # is a property of the session store.
            key = session_id(request)
            if key is not None:
                sp.cookie.set(response, key, persistent=params.get(STAY_SIGNED_IN) == "on")
            logger.info("Consent stored")
            return response

        referer = request.headers.get("referer")
        return HTMLResponse(
            render_consent_form(paths.consent, consent, safe_encode(referer) if referer else None)
        )

    @router.guarded(paths.session, ALL)
    def saml_session(request: Request):
        """Echo all SAML-related information in the session."""
        saml = request.session.get("saml")
        if not saml:
            return Response(status_code=404)
        return JSONResponse(
            _jsonable_session(saml),
            headers={"Content-Disposition": 'filename="session.json"'},
        )

    @router.guarded(paths.request, AUTHENTICATED)
    def saml_request(request: Request):
        """Echo the SAML AuthnRequest sent to the IdP."""
        xml = (request.session.get("saml") or {}).get("request")
        if not xml:
            return Response(status_code=404)
        return Response(content=xml, media_type="text/xml")

    @router.guarded(paths.response, AUTHENTICATED)
    def saml_response(request: Request):
        """Echo the full SAML Response (including assertions)."""
        xml = (request.session.get("saml") or {}).get("response") or ""
        return Response(content=xml, media_type="text/xml")

    @router.guarded(paths.assertions, AUTHENTICATED)
    def saml_assertions(request: Request):
        """Echo the assertions of the SAML Response."""
        assertions = (request.session.get("saml") or {}).get("assertions")
        if assertions is None:
            return Response(status_code=404)
        return JSONResponse(
            assertions.to_dict(),
            headers={"Content-Disposition": 'filename="assertions.json"'},
        )

    return router
