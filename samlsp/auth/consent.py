# samlsp/auth/consent.py
"""
Consent requested from authenticated users, e.g. for GDPR.

By default it only covers staying signed in. The consent page has 3 states:

- initial:  shown as part of the login flow (only RelayState is given)
- redirect: the form was submitted; persist choices in the consent cookie
            and redirect to the RelayState
- edit:     any later visit, pre-filled from the consent cookie

Choices are kept client-side in the `consent` cookie as form-encoded pairs.
"""

import html
from dataclasses import dataclass, replace
from enum import Enum
from urllib.parse import parse_qsl, urlencode

from fastapi import Request, Response

from samlsp.auth.session import NEVER, SessionCookie
from samlsp.config import ConsentSettings

CONSENT_COOKIE = "consent"
STAY_SIGNED_IN = "stay_signed_in"
AGREED = "agreed"
RELAY_STATE = "RelayState"


@dataclass(frozen=True)
class ConsentCheckbox:
    name: str
    label: str
    checked: bool = False


@dataclass(frozen=True)
class Consent:
    summary: str | None = None
    checkboxes: tuple[ConsentCheckbox, ...] = ()
    agreed: bool = False
    stay_signed_in: bool = True

    @classmethod
    def from_settings(cls, settings: ConsentSettings | None) -> "Consent":
        if settings is None:
            return cls()
        return cls(
            summary=settings.summary,
            checkboxes=tuple(ConsentCheckbox(c.name, c.label, c.checked) for c in settings.checkboxes),
        )

    def merge(self, params: dict) -> "Consent":
        """Apply submitted form values; unchecked boxes are simply absent."""
        return replace(
            self,
            agreed=params.get(AGREED) == "on",
            stay_signed_in=params.get(STAY_SIGNED_IN) == "on",
            checkboxes=tuple(replace(c, checked=bool(params.get(c.name))) for c in self.checkboxes),
        )


class ConsentState(Enum):
    INITIAL = "initial"
    REDIRECT = "redirect"
    EDIT = "edit"


def consent_state(query_params: dict) -> ConsentState:
    relay_state = query_params.get(RELAY_STATE)
    submitted = {k: v for k, v in query_params.items() if k != RELAY_STATE}
    if relay_state and not submitted:
        return ConsentState.INITIAL
    if relay_state:
        return ConsentState.REDIRECT
    return ConsentState.EDIT


def read_consent_cookie(request: Request) -> dict | None:
    value = request.cookies.get(CONSENT_COOKIE)
    if not value:
        return None
    return dict(parse_qsl(value, keep_blank_values=True))


def encode_consent_cookie(params: dict) -> str:
    return urlencode({k: v for k, v in params.items() if k != RELAY_STATE})


def set_consent_cookie(response: Response, cookie: SessionCookie, params: dict) -> None:
    """Persist submitted consent; same attributes as the session cookie."""
    response.set_cookie(
        CONSENT_COOKIE,
        encode_consent_cookie(params),
        expires=NEVER,
        path=cookie.path,
        secure=cookie.secure,
        httponly=cookie.http_only,
        samesite=cookie.same_site,
    )


def stays_signed_in(request: Request) -> bool:
    """Has the user opted to stay signed in on the consent page?"""
    return (read_consent_cookie(request) or {}).get(STAY_SIGNED_IN) == "on"


def current_consent(request: Request, settings: ConsentSettings | None) -> Consent:
    """Consent as stored in the cookie, or the configured defaults."""
    consent = Consent.from_settings(settings)
    stored = read_consent_cookie(request)
    return consent.merge(stored) if stored is not None else consent


def _checked(value: bool) -> str:
    return " checked" if value else ""


def render_consent_form(action: str, consent: Consent, relay_state: str | None) -> str:
    """Build the consent form, submitting back to `action` via GET."""
    parts = []
    if consent.checkboxes:
        items = "".join(
            f'<li><label style="display: flex; justify-content: space-between;">{html.escape(c.label)}'
            f'<input type="checkbox" name="{html.escape(c.name)}"{_checked(c.checked)}></label></li>'
            for c in consent.checkboxes
        )
        open_attr = "" if consent.agreed else " open"
        parts.append(
            f"<details{open_attr}><summary>{html.escape(consent.summary or '')}</summary>"
            f"<ul>{items}</ul></details>"
        )
    elif consent.summary:
        parts.append(f"<p>{html.escape(consent.summary)}</p>")

    if parts:
        parts.append("<hr>")

    parts.append(
        '<label style="display: flex; justify-content: space-between;">Stay signed in?'
        f'<input type="checkbox" name="{STAY_SIGNED_IN}"{_checked(consent.stay_signed_in)}></label>'
    )
    parts.append(f'<input type="hidden" name="{AGREED}" value="on">')
    if relay_state:
        parts.append(f'<input type="hidden" name="{RELAY_STATE}" value="{html.escape(relay_state)}">')

    button = "Update" if consent.agreed else "Confirm"
    parts.append(f'<p style="text-align: right;"><input type="submit" value="{button}"></p>')
    fields = "".join(parts)

    return f"""<!DOCTYPE html>
<html>
    <head>
        <meta charset="utf-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>Consent</title>
    </head>
    <body style="font-family: sans-serif; display: flex; align-items: center;
                 justify-content: center; height: 100vh;">
        <form action="{html.escape(action)}" method="get">
            <fieldset style="min-width: 200px; max-width: 400px">
                <legend><strong>Consent</strong></legend>
                {fields}
            </fieldset>
        </form>
    </body>
</html>"""
