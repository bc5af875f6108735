import json

import pytest
from fido2.webauthn import AttestationConveyancePreference

from passkeyme_server import create_app
from passkeyme_server.attestation import (
    ALLOWED_ALGORITHMS,
    ATTESTATION_FORMATS,
    AttestationPolicy,
    credential_parameters,
    is_allowed_algorithm,
)
from passkeyme_server.config import (
    DEFAULTS,
    build_rp_entity,
    create_fido_server,
    load_applications,
    load_settings,
)
from passkeyme_server.models import Application, User


def test_defaults(monkeypatch):
    for name in DEFAULTS:
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings["PASSKEYME_ISSUER"] == "https://auth.passkeyme.com"
    assert settings["PASSKEYME_CHALLENGE_TTL"] == 120
    assert settings["PASSKEYME_ACCESS_TOKEN_TTL"] == 3600
    assert settings["PASSKEYME_TRUST_PROXY_HEADERS"] is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PASSKEYME_ISSUER", " https://id.example ")
    monkeypatch.setenv("PASSKEYME_CHALLENGE_TTL", "30")
    monkeypatch.setenv("PASSKEYME_ACCESS_TOKEN_TTL", "soon")
    monkeypatch.setenv("PASSKEYME_TRUST_PROXY_HEADERS", "yes")
    settings = load_settings({"PASSKEYME_TOKEN_LEEWAY": 5})

    assert settings["PASSKEYME_ISSUER"] == "https://id.example"
    assert settings["PASSKEYME_CHALLENGE_TTL"] == 30
    assert settings["PASSKEYME_ACCESS_TOKEN_TTL"] == 3600
    assert settings["PASSKEYME_TRUST_PROXY_HEADERS"] is True
    assert settings["PASSKEYME_TOKEN_LEEWAY"] == 5


def test_applications_file(tmp_path):
    path = tmp_path / "applications.json"
    path.write_text(
        json.dumps(
            {
                "applications": [
                    {"app_id": "app_1", "rp_id": "example.com", "allowed_origins": "https://example.com"},
                    {"app_id": "app_2", "rp_id": "example.org", "attestation": "direct"},
                ]
            }
        )
    )
    applications = load_applications(
        {"PASSKEYME_APPLICATIONS_FILE": str(path), "PASSKEYME_ATTESTATION": "indirect"}
    )
    assert [app.app_id for app in applications] == ["app_1", "app_2"]
    assert applications[0].attestation == "indirect"
    assert applications[0].allowed_origins == frozenset({"https://example.com"})
    assert applications[1].attestation == "direct"


def test_no_applications():
    assert load_applications({}) == []


@pytest.mark.parametrize(
    "entry",
    [
        {"rp_id": "example.com"},
        {"app_id": "app_1"},
        {"app_id": "app_1", "rp_id": "example.com", "attestation": "enterprise"},
    ],
)
def test_invalid_application_entries(entry):
    with pytest.raises(ValueError):
        Application.from_dict(entry)


def test_application_defaults():
    application = Application.from_dict({"app_id": "app_1", "rp_id": "example.com"})
    assert application.name == "app_1"
    assert application.supports("passkey")
    assert not application.supports("oauth")
    assert application.scopes == ("openid", "profile", "email")
    assert not application.allows_origin("https://example.com")


def test_fido_server_uses_application_origins():
    application = Application.from_dict(
        {"app_id": "app_1", "rp_id": "example.com", "allowed_origins": ["https://login.example.com"]}
    )
    server = create_fido_server(application, timeout_ms=60000)
    assert server.rp.id == "example.com"
    assert server.timeout == 60000
    assert [param.alg for param in server.allowed_algorithms] == list(ALLOWED_ALGORITHMS)


def test_algorithm_allow_list():
    assert ALLOWED_ALGORITHMS[0] == -7
    assert is_allowed_algorithm(-257)
    assert not is_allowed_algorithm(-65535)
    assert not is_allowed_algorithm(None)
    assert len(credential_parameters()) == len(ALLOWED_ALGORITHMS)


def test_attestation_policy_conveyance():
    assert AttestationPolicy("none").conveyance is None
    assert AttestationPolicy("indirect").conveyance == AttestationConveyancePreference.INDIRECT
    assert AttestationPolicy("direct").conveyance == AttestationConveyancePreference.DIRECT
    with pytest.raises(ValueError):
        AttestationPolicy("sometimes")
    with pytest.raises(ValueError):
        AttestationPolicy("enterprise")


def test_attestation_formats_are_known_to_fido2():
    assert set(ATTESTATION_FORMATS) == {"none", "packed", "fido-u2f", "tpm", "android-safetynet", "apple"}
    for fmt, verifier_cls in ATTESTATION_FORMATS.items():
        assert verifier_cls.FORMAT == fmt


def test_package_exports():
    import passkeyme_server

    assert passkeyme_server.create_app is create_app
    assert passkeyme_server.__all__ == ["__version__", "create_app", "main"]
    assert passkeyme_server.__version__ == "0.1.0"


def test_rp_entity_uses_configured_rp_id():
    application = Application.from_dict(
        {"app_id": "app_1", "rp_id": "login.example.com", "rp_name": "Example Login"}
    )
    rp = build_rp_entity(application)
    assert rp.id == "login.example.com"
    assert rp.name == "Example Login"


def test_proxy_headers():
    app = create_app(
        {
            "PASSKEYME_APPLICATIONS": [{"app_id": "app_1", "rp_id": "example.com"}],
            "PASSKEYME_TRUST_PROXY_HEADERS": True,
        }
    )
    assert type(app.wsgi_app).__name__ == "ProxyFix"


def test_data_dir_persists_users(tmp_path):
    config = {
        "PASSKEYME_APPLICATIONS": [{"app_id": "app_1", "rp_id": "example.com"}],
        "PASSKEYME_DATA_DIR": str(tmp_path / "data"),
    }
    first = create_app(config)
    first.extensions["passkeyme"].users.add(User.create("app_1", "alice"))

    second = create_app(config)
    assert second.extensions["passkeyme"].users.find_by_username("app_1", "alice") is not None
