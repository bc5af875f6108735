"""Configuration loading and relying-party setup for the passkey service."""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from fido2.server import Fido2Server
from fido2.webauthn import PublicKeyCredentialRpEntity

from .attestation import AttestationPolicy, credential_parameters
from .models import Application

__all__ = [
    "DEFAULTS",
    "build_rp_entity",
    "create_fido_server",
    "load_applications",
    "load_settings",
]

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "PASSKEYME_ISSUER": "https://auth.passkeyme.com",
    "PASSKEYME_HOSTED_AUTH_URL": "https://auth.passkeyme.com",
    "PASSKEYME_CHALLENGE_TTL": 120,
    "PASSKEYME_ACCESS_TOKEN_TTL": 3600,
    "PASSKEYME_REFRESH_TOKEN_TTL": 30 * 24 * 3600,
    "PASSKEYME_AUTH_SESSION_TTL": 600,
    "PASSKEYME_TOKEN_LEEWAY": 0,
    "PASSKEYME_ATTESTATION": "none",
    "PASSKEYME_APPLICATIONS_FILE": None,
    "PASSKEYME_APPLICATIONS": None,
    "PASSKEYME_SIGNING_KEY_FILE": None,
    "PASSKEYME_DATA_DIR": None,
    "PASSKEYME_TRUST_PROXY_HEADERS": False,
}

_INT_SETTINGS = (
    "PASSKEYME_CHALLENGE_TTL",
    "PASSKEYME_ACCESS_TOKEN_TTL",
    "PASSKEYME_REFRESH_TOKEN_TTL",
    "PASSKEYME_AUTH_SESSION_TTL",
    "PASSKEYME_TOKEN_LEEWAY",
)


def _env_flag(name: str) -> Optional[bool]:
    """Return ``True`` or ``False`` when the named env var is explicitly set."""

    raw_value = os.environ.get(name)
    if raw_value is None:
        return None

    normalised = raw_value.strip().lower()
    if normalised in {"", "0", "false", "off", "no"}:
        return False
    return True


def _env_int(name: str) -> Optional[int]:
    raw_value = os.environ.get(name)
    if raw_value is None or not raw_value.strip():
        return None
    try:
        value = int(raw_value.strip())
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, raw_value)
        return None
    if value < 0:
        logger.warning("Ignoring negative value for %s: %d", name, value)
        return None
    return value


def load_settings(overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Merge defaults, ``PASSKEYME_*`` environment variables and overrides."""

    settings = dict(DEFAULTS)

    for name in _INT_SETTINGS:
        value = _env_int(name)
        if value is not None:
            settings[name] = value

    for name in (
        "PASSKEYME_ISSUER",
        "PASSKEYME_HOSTED_AUTH_URL",
        "PASSKEYME_ATTESTATION",
        "PASSKEYME_APPLICATIONS_FILE",
        "PASSKEYME_SIGNING_KEY_FILE",
        "PASSKEYME_DATA_DIR",
    ):
        raw_value = os.environ.get(name)
        if raw_value is not None and raw_value.strip():
            settings[name] = raw_value.strip()

    proxy_flag = _env_flag("PASSKEYME_TRUST_PROXY_HEADERS")
    if proxy_flag is not None:
        settings["PASSKEYME_TRUST_PROXY_HEADERS"] = proxy_flag

    if overrides:
        settings.update(overrides)
    return settings


def load_applications(settings: Mapping[str, Any]) -> List[Application]:
    """Build tenant applications from inline settings or the JSON config file.

    The file holds either a list of application objects or an object with an
    ``applications`` list. Entries without an explicit attestation policy use
    ``PASSKEYME_ATTESTATION``.
    """

    raw_entries: Any = settings.get("PASSKEYME_APPLICATIONS")
    path = settings.get("PASSKEYME_APPLICATIONS_FILE")
    if raw_entries is None and path:
        with open(path, "r", encoding="utf-8") as config_file:
            raw_entries = json.load(config_file)
        logger.info("Loaded application config from %s", path)

    if isinstance(raw_entries, Mapping):
        raw_entries = raw_entries.get("applications", [])
    if not raw_entries:
        logger.warning("No applications configured; every app_id will be rejected.")
        return []

    default_attestation = settings.get("PASSKEYME_ATTESTATION") or "none"
    applications: List[Application] = []
    for entry in raw_entries:
        if isinstance(entry, Application):
            applications.append(entry)
            continue
        merged = dict(entry)
        merged.setdefault("attestation", default_attestation)
        applications.append(Application.from_dict(merged))
    return applications


def build_rp_entity(application: Application) -> PublicKeyCredentialRpEntity:
    return PublicKeyCredentialRpEntity(
        name=application.rp_name or application.name,
        id=application.rp_id,
    )


def create_fido_server(application: Application, timeout_ms: Optional[int] = None) -> Fido2Server:
    """Instantiate a :class:`Fido2Server` bound to ``application``.

    Origins are checked against the application's allow-list exactly rather
    than by RP ID suffix.
    """

    policy = AttestationPolicy(application.attestation)
    server = Fido2Server(
        build_rp_entity(application),
        attestation=policy.conveyance,
        verify_origin=application.allows_origin,
        verify_attestation=policy,
    )
    server.allowed_algorithms = credential_parameters()
    if timeout_ms is not None:
        server.timeout = timeout_ms
    return server
