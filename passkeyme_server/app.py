"""Application entry point for the passkey ceremony and token service."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from flask import Flask, current_app
from werkzeug.middleware.proxy_fix import ProxyFix

from .ceremony import CeremonyService
from .config import load_applications, load_settings
from .errors import register_error_handlers
from .hosted import HostedAuthService
from .storage import (
    ApplicationRegistry,
    AuthSessionStore,
    ChallengeStore,
    CredentialStore,
    RefreshTokenStore,
    UserStore,
)
from .tokens import SigningKeyRing, TokenService

__all__ = ["Services", "create_app", "get_services", "main"]

_EXTENSION_KEY = "passkeyme"


@dataclass
class Services:
    applications: ApplicationRegistry
    users: UserStore
    credentials: CredentialStore
    challenges: ChallengeStore
    refresh_tokens: RefreshTokenStore
    auth_sessions: AuthSessionStore
    ceremonies: CeremonyService
    tokens: TokenService
    hosted: HostedAuthService


def _load_keyring(settings: Mapping[str, Any]) -> SigningKeyRing:
    path = settings.get("PASSKEYME_SIGNING_KEY_FILE")
    if not path:
        return SigningKeyRing()
    with open(path, "rb") as key_file:
        return SigningKeyRing.from_pem(key_file.read())


def build_services(settings: Mapping[str, Any]) -> Services:
    clock = settings.get("PASSKEYME_CLOCK") or time.time
    data_dir = settings.get("PASSKEYME_DATA_DIR")
    if data_dir:
        os.makedirs(data_dir, exist_ok=True)

    applications = ApplicationRegistry(load_applications(settings))
    users = UserStore(data_dir)
    credentials = CredentialStore(data_dir)
    challenges = ChallengeStore()
    refresh_tokens = RefreshTokenStore()
    auth_sessions = AuthSessionStore()

    return Services(
        applications=applications,
        users=users,
        credentials=credentials,
        challenges=challenges,
        refresh_tokens=refresh_tokens,
        auth_sessions=auth_sessions,
        ceremonies=CeremonyService(
            applications,
            users,
            credentials,
            challenges,
            auth_sessions,
            challenge_ttl=settings["PASSKEYME_CHALLENGE_TTL"],
            clock=clock,
        ),
        tokens=TokenService(
            _load_keyring(settings),
            refresh_tokens,
            users,
            credentials,
            applications,
            issuer=settings["PASSKEYME_ISSUER"],
            access_ttl=settings["PASSKEYME_ACCESS_TOKEN_TTL"],
            refresh_ttl=settings["PASSKEYME_REFRESH_TOKEN_TTL"],
            leeway=settings["PASSKEYME_TOKEN_LEEWAY"],
            clock=clock,
        ),
        hosted=HostedAuthService(
            applications,
            users,
            auth_sessions,
            hosted_base_url=settings["PASSKEYME_HOSTED_AUTH_URL"],
            session_ttl=settings["PASSKEYME_AUTH_SESSION_TTL"],
            clock=clock,
        ),
    )


def create_app(test_config: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    settings = load_settings(test_config)
    app.config.update(settings)

    if settings.get("PASSKEYME_TRUST_PROXY_HEADERS"):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    services = build_services(settings)
    app.extensions[_EXTENSION_KEY] = services

    register_error_handlers(app)

    # Imported here so the blueprints can import ``get_services`` from this module.
    from .routes import auth, general, passkey

    app.register_blueprint(passkey.bp)
    app.register_blueprint(auth.bp)
    app.register_blueprint(general.bp)

    app.logger.info(
        "Passkey service ready with %d application(s); issuer %s",
        len(services.applications),
        settings["PASSKEYME_ISSUER"],
    )
    return app


def get_services() -> Services:
    return current_app.extensions[_EXTENSION_KEY]


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("PASSKEYME_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app()
    app.run(
        host=os.environ.get("PASSKEYME_HOST", "127.0.0.1"),
        port=int(os.environ.get("PASSKEYME_PORT", "5000")),
        threaded=True,
    )


if __name__ == "__main__":  # pragma: no cover - convenience script entry point.
    main()
