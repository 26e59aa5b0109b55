# samlsp/auth/utils.py
"""Shared utilities for the SAML flow: query strings and RelayState tokens."""

import base64
from urllib.parse import quote, quote_plus, unquote_plus, urlsplit

# Substitutions applied on top of standard base64 so that a token can be used
# as a query-string value without further escaping.
_ENCODE_TABLE = str.maketrans({"/": "_", "+": "-", "=": "."})
_DECODE_TABLE = str.maketrans({"_": "/", "-": "+", ".": "="})


def build_query_string(params: dict) -> str:
    """
    Build a URL query string from a dictionary of parameters.
    Shared by the login page, consent redirects and the troubleshooter.
    """
    return "&".join(f"{k}={quote(str(v), safe='')}" for k, v in params.items())


def safe_encode(value: str) -> str:
    """
    Encode an arbitrary string (typically a URL) as an opaque RelayState token.

    The result only contains [A-Za-z0-9_.-] so it survives repeated passes
    through URL-encoding layers unchanged.
    """
    encoded = base64.b64encode(quote_plus(value).encode("utf-8")).decode("ascii")
    return encoded.translate(_ENCODE_TABLE)


def safe_decode(token: str) -> str:
    """Reverse `safe_encode`. Raises ValueError for malformed tokens."""
    try:
        raw = base64.b64decode(token.translate(_DECODE_TABLE), validate=True)
        return unquote_plus(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"not a RelayState token: {token!r}") from e


def is_safe_token(value: str) -> bool:
    """Tokens never contain '/', plain paths always do."""
    return bool(value) and "/" not in value


def relay_target(relay_state: str | None, sp_url: str = "", default: str = "/") -> str:
    """
    Turn an untrusted RelayState into a redirect target.

    Only local paths and absolute URLs on the SP's own origin are accepted;
    anything else falls back to `default`.
    """
    if not relay_state:
        return default

    if is_safe_token(relay_state):
        try:
            target = safe_decode(relay_state)
        except ValueError:
            return default
    else:
        target = relay_state

    if target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return target

    if sp_url:
        parsed, own = urlsplit(target), urlsplit(sp_url)
        if parsed.scheme in ("http", "https") and (parsed.scheme, parsed.netloc) == (own.scheme, own.netloc):
            return target

    return default
