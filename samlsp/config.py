# samlsp/config.py
"""
Service provider configuration.
Supports loading the SP private key from either .env or HashiCorp Vault.
"""

import os
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError
from pydantic_settings import BaseSettings

from samlsp.auth.errors import ConfigurationError

logger = logging.getLogger(__name__)

HTTP_POST_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
HTTP_REDIRECT_BINDING = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"


def get_secret_from_vault(secret_path: str, key: str) -> str | None:
    """
    Fetch a secret from HashiCorp Vault (KV v2 secrets engine).
    Returns None if Vault is unavailable — the .env value is kept.
    """
    try:
        import hvac

        vault_addr = os.getenv("VAULT_ADDR", "http://127.0.0.1:8200")
        vault_token = os.getenv("VAULT_TOKEN")

        if not vault_token:
            logger.info("No VAULT_TOKEN set, skipping Vault")
            return None

        client = hvac.Client(url=vault_addr, token=vault_token)

        if not client.is_authenticated():
            logger.warning("Vault authentication failed")
            return None

        secret = client.secrets.kv.v2.read_secret_version(path=secret_path)
        value = secret["data"]["data"].get(key)
        logger.info(f"Loaded '{key}' from Vault path '{secret_path}'")
        return value

    except Exception as e:
        logger.warning(f"Vault error: {e}")
        return None


class PathSettings(BaseModel):
    meta: str = "/saml/meta"
    login: str = "/saml/login"
    logout: str = "/saml/logout"
    consent: str = "/saml/consent"
    session: str = "/saml/session"
    request: str = "/saml/session/request"
    response: str = "/saml/session/response"
    assertions: str = "/saml/session/assertions"


class SessionSettings(BaseModel):
    cookie_name: str = "saml-sp"
    secret_key: str = "change-me-in-production"
    # Server-side TTL, reset whenever a guarded route is accessed.
    max_age: int = 60 * 60 * 36
    max_sessions: int = 10000
    path: str = "/"
    # Secure cookies by default; set to false when testing over plain HTTP.
    secure: bool = True
    http_only: bool = True
    same_site: str | None = None


class Checkbox(BaseModel):
    name: str
    label: str
    checked: bool = False


class ConsentSettings(BaseModel):
    summary: str | None = None
    checkboxes: list[Checkbox] = []


class Settings(BaseSettings):
    """SP settings. Priority: Vault > environment variables > .env file."""

    # EntityId in metadata, ProviderName in requests; defaults to sp_url
    app_name: str = ""
    sp_url: str
    idp_url: str
    idp_entity_id: str = ""
    idp_cert: str

    # PEM text or path to a PEM file
    sp_cert: str = ""
    sp_private_key: str = ""

    # Fallback post-login target when no RelayState is given
    relay_state: str = "/"
    strict: bool = True
    request_ttl: int = 300

    paths: PathSettings = PathSettings()
    session: SessionSettings = SessionSettings()
    consent: ConsentSettings | None = None

    # Development only: replaces every route condition, e.g. "all"
    auth_override: Any = None

    # Vault
    vault_enabled: bool = False
    vault_addr: str = "http://127.0.0.1:8200"
    vault_token: str = ""
    vault_secret_path: str = "samlsp/sp"

    class Config:
        env_file = ".env"
        env_prefix = "SAML_SP_"
        env_nested_delimiter = "__"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)

        if self.vault_enabled:
            vault_secret = get_secret_from_vault(
                self.vault_secret_path, "sp_private_key"
            )
            if vault_secret:
                self.sp_private_key = vault_secret
                logger.info("Using sp_private_key from Vault")

    @property
    def entity_id(self) -> str:
        return self.app_name or self.sp_url

    @property
    def acs_url(self) -> str:
        return self.sp_url.rstrip("/") + self.paths.login


def read_pem(value: str) -> str:
    """Return PEM text given either the text itself or a path to it."""
    if not value or "-----BEGIN" in value:
        return value
    path = Path(value).expanduser()
    try:
        return path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read PEM file {path}: {e.strerror}") from e


def load_settings(**overrides) -> Settings:
    """Build Settings, turning any validation problem into a ConfigurationError."""
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"invalid config: {e}") from e

    read_pem(settings.idp_cert)
    read_pem(settings.sp_cert)
    read_pem(settings.sp_private_key)
    return settings


def build_saml_settings(settings: Settings) -> dict:
    """Build the python3-saml settings structure."""
    return {
        "strict": settings.strict,
        "debug": False,
        "sp": {
            "entityId": settings.entity_id,
            "assertionConsumerService": {
                "url": settings.acs_url,
                "binding": HTTP_POST_BINDING,
            },
            "x509cert": read_pem(settings.sp_cert),
            "privateKey": read_pem(settings.sp_private_key),
        },
        "idp": {
            "entityId": settings.idp_entity_id or settings.idp_url,
            "singleSignOnService": {
                "url": settings.idp_url,
                "binding": HTTP_REDIRECT_BINDING,
            },
            "x509cert": read_pem(settings.idp_cert),
        },
        "security": {
            "authnRequestsSigned": False,
            "wantAssertionsSigned": True,
            "wantMessagesSigned": False,
            "wantNameId": False,
            "wantAttributeStatement": False,
            "rejectUnsolicitedResponsesWithInResponseTo": True,
        },
    }
