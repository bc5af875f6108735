import time

import pytest

from passkeyme_server import create_app

from .software_authenticator import SoftwareAuthenticator

ORIGIN = "https://example.com"
REDIRECT_URI = "https://example.com/auth/callback"

APPLICATIONS = [
    {
        "app_id": "app_1",
        "name": "Example Store",
        "rp_id": "example.com",
        "allowed_origins": [ORIGIN, "https://www.example.com"],
        "redirect_uris": [REDIRECT_URI],
        "auth_methods": ["passkey", "oauth"],
        "oauth_providers": {
            "google": {
                "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
                "client_id": "google-client",
            },
        },
    },
    {
        "app_id": "app_oauth_only",
        "name": "OAuth Only",
        "rp_id": "example.com",
        "allowed_origins": [ORIGIN],
        "redirect_uris": [REDIRECT_URI],
        "auth_methods": ["oauth"],
    },
    {
        "app_id": "app_direct",
        "name": "Attested",
        "rp_id": "example.com",
        "allowed_origins": [ORIGIN],
        "attestation": "direct",
    },
    {
        "app_id": "app_disabled",
        "name": "Disabled",
        "rp_id": "example.com",
        "allowed_origins": [ORIGIN],
        "enabled": False,
    },
]


class FakeClock:
    """Manually advanced clock handed to the services in place of ``time.time``."""

    def __init__(self, start=None):
        self.now = time.time() if start is None else start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(clock):
    return create_app(
        {
            "TESTING": True,
            "PASSKEYME_APPLICATIONS": APPLICATIONS,
            "PASSKEYME_ISSUER": "https://auth.test",
            "PASSKEYME_HOSTED_AUTH_URL": "https://auth.test",
            "PASSKEYME_CLOCK": clock,
        }
    )


@pytest.fixture
def client(app):
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def services(app):
    return app.extensions["passkeyme"]


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()
