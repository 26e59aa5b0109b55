"""
SAML service provider troubleshooting tool.

Systematically diagnoses common SAML login failures: incomplete
configuration, unreadable certificates, invalid SP metadata and an
unreachable IdP. Designed for platform engineers supporting development teams.

Usage:
    python scripts/troubleshoot_auth.py --check all
    python scripts/troubleshoot_auth.py --check config
    python scripts/troubleshoot_auth.py --check metadata
    python scripts/troubleshoot_auth.py --check connectivity
"""

import argparse
import sys
import time

# Colors for terminal output
RED = "\033[91m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
CYAN = "\033[96m"
RESET = "\033[0m"
BOLD = "\033[1m"


def header(text: str):
    print(f"\n{BOLD}{CYAN}{'='*60}")
    print(f"  {text}")
    print(f"{'='*60}{RESET}\n")


def ok(text: str):
    print(f"  {GREEN}✓{RESET} {text}")


def warn(text: str):
    print(f"  {YELLOW}⚠{RESET} {text}")


def fail(text: str):
    print(f"  {RED}✗{RESET} {text}")


def hint(text: str):
    print(f"    {CYAN}→ {text}{RESET}")


def load():
    """Load settings, or None (after reporting why) if they are invalid."""
    from samlsp.auth.errors import ConfigurationError
    from samlsp.config import load_settings

    try:
        return load_settings()
    except ConfigurationError as e:
        fail(f"Configuration invalid: {e}")
        hint("Set SAML_SP_SP_URL, SAML_SP_IDP_URL and SAML_SP_IDP_CERT in .env or the environment")
        return None


# ──────────────────────────────────────────────
# CHECK 1: Configuration
# ──────────────────────────────────────────────
def check_config(settings):
    """Verify the configuration is complete and production-safe."""
    header("Check 1: Configuration")
    if settings is None:
        return 1
    issues = 0

    ok(f"Entity ID = {settings.entity_id}")
    ok(f"ACS URL = {settings.acs_url}")
    ok(f"IdP SSO URL = {settings.idp_url}")

    if not settings.sp_url.startswith("https://"):
        warn("SP URL is not HTTPS — IdPs usually refuse plain HTTP ACS endpoints")

    if settings.session.secret_key == "change-me-in-production":
        fail("Session secret_key has its default value")
        hint("Set SAML_SP_SESSION__SECRET_KEY to a long random string")
        issues += 1

    if not settings.session.secure:
        warn("Session cookies are not marked secure (development setting)")

    if settings.auth_override is not None:
        fail(f"auth_override is set ({settings.auth_override}) — every route guard is replaced")
        hint("Only use SAML_SP_AUTH_OVERRIDE during development")
        issues += 1

    if settings.strict:
        ok("python3-saml strict mode enabled")
    else:
        fail("python3-saml strict mode disabled — responses are not fully validated")
        issues += 1

    return issues


# ──────────────────────────────────────────────
# CHECK 2: Certificates
# ──────────────────────────────────────────────
def check_certs(settings):
    """Verify that the PEM material can be read."""
    header("Check 2: Certificates")
    if settings is None:
        return 1
    from samlsp.config import read_pem

    issues = 0
    for label, value, marker, required in (
        ("IdP certificate", settings.idp_cert, "CERTIFICATE", True),
        ("SP certificate", settings.sp_cert, "CERTIFICATE", False),
        ("SP private key", settings.sp_private_key, "PRIVATE KEY", False),
    ):
        pem = read_pem(value)
        if not pem:
            if required:
                fail(f"{label} missing")
                issues += 1
            else:
                warn(f"{label} not configured")
        elif marker not in pem:
            fail(f"{label} does not look like PEM ({marker} block not found)")
            issues += 1
        else:
            ok(f"{label} loaded")

    return issues


# ──────────────────────────────────────────────
# CHECK 3: Metadata
# ──────────────────────────────────────────────
def check_metadata(settings):
    """Render SP metadata the way the meta endpoint does."""
    header("Check 3: SP Metadata")
    if settings is None:
        return 1
    from samlsp.auth.saml import SamlToolkit
    from samlsp.config import build_saml_settings

    try:
        metadata = SamlToolkit(build_saml_settings(settings)).render_metadata()
    except ImportError:
        fail("python3-saml not installed — run: pip install python3-saml")
        return 1
    except Exception as e:
        fail(f"Metadata generation failed: {e}")
        hint("Check the SP certificate and entity ID")
        return 1

    ok(f"Metadata valid ({len(metadata)} bytes)")
    return 0


# ──────────────────────────────────────────────
# CHECK 4: Connectivity to the IdP
# ──────────────────────────────────────────────
def check_connectivity(settings):
    """Test that the IdP SSO endpoint answers."""
    header("Check 4: Connectivity")
    if settings is None:
        return 1

    try:
        import httpx

        print("  Testing IdP SSO endpoint...")
        start = time.time()
        response = httpx.get(settings.idp_url, timeout=10, follow_redirects=False)
        elapsed = time.time() - start

        # Without a SAMLRequest most IdPs answer with an error page or a
        # redirect; anything below 500 means the endpoint is there.
        if response.status_code < 500:
            ok(f"IdP reachable ({elapsed:.1f}s, HTTP {response.status_code})")
            return 0
        fail(f"IdP returned {response.status_code}")
        return 1

    except Exception as e:
        fail(f"Connection error: {e}")
        hint("Check network connectivity and firewall rules")
        return 1


# ──────────────────────────────────────────────
# CHECK 5: Vault connectivity
# ──────────────────────────────────────────────
def check_vault(settings):
    """Test Vault connectivity and access to the SP private key."""
    header("Check 5: Vault")
    if settings is None:
        return 1

    if not settings.vault_enabled:
        warn("Vault is disabled (SAML_SP_VAULT_ENABLED=false)")
        hint("The SP private key is read from the environment or .env")
        return 0

    from samlsp.config import get_secret_from_vault

    if get_secret_from_vault(settings.vault_secret_path, "sp_private_key"):
        ok(f"sp_private_key readable at '{settings.vault_secret_path}'")
        return 0

    fail(f"Cannot read sp_private_key at '{settings.vault_secret_path}'")
    hint(f"Store it: vault kv put secret/{settings.vault_secret_path} sp_private_key=@sp.key")
    return 1


# ──────────────────────────────────────────────
# CHECK 6: Common root causes
# ──────────────────────────────────────────────
def print_common_issues():
    """Print a reference guide for common SAML login failures."""
    header("Reference: Common SAML Failures")

    problems = [
        (
            "invalid_response: Signature validation failed",
            "IdP certificate has changed, or the wrong one is configured",
            "Download the current signing certificate from the IdP and update SAML_SP_IDP_CERT",
        ),
        (
            "The response was received at ... instead of ...",
            "ACS URL seen by the SP differs from the Destination in the response",
            "Check SAML_SP_SP_URL and proxy headers (scheme, host, port)",
        ),
        (
            "No pending authentication request",
            "Session cookie was not sent back with the IdP's POST, or the login took too long",
            "Serve over HTTPS (SameSite=None cookies) and check SAML_SP_REQUEST_TTL",
        ),
        (
            "The InResponseTo of the Response does not match",
            "Response belongs to another login attempt (e.g. two tabs)",
            "Start the login again from a single tab",
        ),
        (
            "Could not validate timestamp: expired",
            "Clock skew between SP and IdP",
            "Sync server time with NTP. Check: date -u vs actual UTC time",
        ),
        (
            "Login loop after consent",
            "Consent cookie cannot be stored",
            "Check that the browser accepts cookies for the SP domain",
        ),
    ]

    for problem, cause, fix in problems:
        print(f"  {RED}{BOLD}{problem}{RESET}")
        print(f"    Root cause: {cause}")
        print(f"    {CYAN}→ Fix: {fix}{RESET}")
        print()


# ──────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────
def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Diagnose SAML login issues for a samlsp service provider",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/troubleshoot_auth.py --check all
  python scripts/troubleshoot_auth.py --check certs
  python scripts/troubleshoot_auth.py --check connectivity
  python scripts/troubleshoot_auth.py --check reference
        """,
    )
    parser.add_argument(
        "--check",
        choices=["all", "config", "certs", "metadata", "connectivity", "vault", "reference"],
        default="all",
        help="Which check to run (default: all)",
    )

    args = parser.parse_args(argv)

    print(f"\n{BOLD}SAML SP — Login Troubleshooter{RESET}")
    print(f"{'─'*50}")

    total_issues = 0
    settings = load() if args.check != "reference" else None

    if args.check in ("all", "config"):
        total_issues += check_config(settings)

    if args.check in ("all", "certs"):
        total_issues += check_certs(settings)

    if args.check in ("all", "metadata"):
        total_issues += check_metadata(settings)

    if args.check in ("all", "connectivity"):
        total_issues += check_connectivity(settings)

    if args.check in ("all", "vault"):
        total_issues += check_vault(settings)

    if args.check in ("all", "reference"):
        print_common_issues()

    # Summary
    header("Summary")
    if total_issues == 0:
        ok("All checks passed — no issues detected")
    else:
        fail(f"{total_issues} issue(s) found — review the hints above")

    return total_issues


if __name__ == "__main__":
    sys.exit(main())
