# tests/test_troubleshoot.py
"""Tests for scripts/troubleshoot_auth.py."""

import importlib.util
from pathlib import Path

import pytest

from conftest import make_settings

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "troubleshoot_auth.py"


@pytest.fixture(scope="module")
def troubleshoot():
    spec = importlib.util.spec_from_file_location("troubleshoot_auth", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestTroubleshooter:
    """Test the diagnostic checks."""

    def test_config_ok(self, troubleshoot):
        """A custom secret and strict mode pass the config check."""
        assert troubleshoot.check_config(make_settings()) == 0

    def test_default_secret_flagged(self, troubleshoot):
        """The shipped session secret is reported."""
        settings = make_settings(session={"secure": False})
        assert troubleshoot.check_config(settings) == 1

    def test_override_and_lax_mode_flagged(self, troubleshoot, capsys):
        """An auth override and non-strict validation are both issues."""
        settings = make_settings(auth_override="all", strict=False)
        assert troubleshoot.check_config(settings) == 2
        assert "auth_override" in capsys.readouterr().out

    def test_missing_settings(self, troubleshoot):
        """Checks count unloadable settings as an issue."""
        assert troubleshoot.check_config(None) == 1
        assert troubleshoot.check_certs(None) == 1

    def test_certs(self, troubleshoot):
        """The inline IdP certificate is accepted; SP material is optional."""
        assert troubleshoot.check_certs(make_settings()) == 0
        assert troubleshoot.check_certs(make_settings(sp_cert="not a pem -----BEGIN")) == 1

    def test_vault_disabled(self, troubleshoot):
        """A disabled Vault is not an error."""
        assert troubleshoot.check_vault(make_settings()) == 0

    def test_reference_only(self, troubleshoot, capsys):
        """The reference guide needs no configuration."""
        assert troubleshoot.main(["--check", "reference"]) == 0
        assert "Signature validation failed" in capsys.readouterr().out
