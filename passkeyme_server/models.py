"""Domain records for applications, users, credentials and pending ceremonies."""
from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from fido2.webauthn import AttestedCredentialData

__all__ = [
    "ATTESTATION_PREFERENCES",
    "AUTH_METHOD_OAUTH",
    "AUTH_METHOD_PASSKEY",
    "CEREMONY_AUTHENTICATION",
    "CEREMONY_REGISTRATION",
    "Application",
    "AuthSession",
    "OAuthProvider",
    "PendingCeremony",
    "RefreshTokenRecord",
    "StoredCredential",
    "User",
]

AUTH_METHOD_PASSKEY = "passkey"
AUTH_METHOD_OAUTH = "oauth"

CEREMONY_REGISTRATION = "registration"
CEREMONY_AUTHENTICATION = "authentication"

ATTESTATION_PREFERENCES = ("none", "indirect", "direct")
_DEFAULT_SCOPES = ("openid", "profile", "email")


def _string_tuple(raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    return tuple(str(item).strip() for item in raw if str(item).strip())


@dataclass(frozen=True)
class OAuthProvider:
    name: str
    authorize_url: str
    client_id: str
    scope: str = "openid email profile"

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "OAuthProvider":
        return cls(
            name=name,
            authorize_url=str(data["authorize_url"]),
            client_id=str(data["client_id"]),
            scope=str(data.get("scope") or "openid email profile"),
        )


@dataclass(frozen=True)
class Application:
    """A tenant. Every challenge, credential and token belongs to exactly one."""

    app_id: str
    name: str
    rp_id: str
    allowed_origins: FrozenSet[str]
    redirect_uris: Tuple[str, ...] = ()
    auth_methods: FrozenSet[str] = frozenset({AUTH_METHOD_PASSKEY})
    oauth_providers: Mapping[str, OAuthProvider] = field(default_factory=dict)
    attestation: str = "none"
    scopes: Tuple[str, ...] = _DEFAULT_SCOPES
    rp_name: Optional[str] = None
    enabled: bool = True

    def supports(self, method: str) -> bool:
        return self.enabled and method in self.auth_methods

    def allows_origin(self, origin: str) -> bool:
        return origin in self.allowed_origins

    def allows_redirect(self, redirect_uri: str) -> bool:
        return redirect_uri in self.redirect_uris

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Application":
        app_id = str(data.get("app_id") or data.get("id") or "").strip()
        if not app_id:
            raise ValueError("application entry is missing 'app_id'")
        rp_id = str(data.get("rp_id") or "").strip()
        if not rp_id:
            raise ValueError(f"application {app_id!r} is missing 'rp_id'")

        attestation = str(data.get("attestation") or "none").strip().lower()
        if attestation not in ATTESTATION_PREFERENCES:
            raise ValueError(f"application {app_id!r} has unknown attestation policy {attestation!r}")

        providers = {
            name: OAuthProvider.from_dict(name, provider)
            for name, provider in (data.get("oauth_providers") or {}).items()
        }

        methods = _string_tuple(data.get("auth_methods")) or (AUTH_METHOD_PASSKEY,)
        scopes = _string_tuple(data.get("scopes")) or _DEFAULT_SCOPES

        return cls(
            app_id=app_id,
            name=str(data.get("name") or app_id),
            rp_id=rp_id,
            rp_name=data.get("rp_name"),
            allowed_origins=frozenset(_string_tuple(data.get("allowed_origins"))),
            redirect_uris=_string_tuple(data.get("redirect_uris")),
            auth_methods=frozenset(methods),
            oauth_providers=providers,
            attestation=attestation,
            scopes=scopes,
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class User:
    user_id: str
    app_id: str
    username: str
    display_name: str
    email: Optional[str] = None
    email_verified: bool = False
    user_handle: bytes = field(default_factory=lambda: os.urandom(32))
    oauth_identities: Dict[str, str] = field(default_factory=dict)
    created_at: float = 0.0

    @classmethod
    def create(
        cls,
        app_id: str,
        username: str,
        *,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
        user_handle: Optional[bytes] = None,
        now: float = 0.0,
    ) -> "User":
        return cls(
            user_id=f"usr_{uuid.uuid4().hex}",
            app_id=app_id,
            username=username,
            display_name=display_name or username,
            email=email,
            user_handle=user_handle or os.urandom(32),
            created_at=now,
        )

    def to_public_dict(self, has_passkey: bool = False) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "username": self.username,
            "displayName": self.display_name,
            "email": self.email,
            "emailVerified": self.email_verified,
            "hasPasskey": has_passkey,
        }


@dataclass
class StoredCredential:
    credential_id: bytes
    app_id: str
    user_id: str
    credential_data: AttestedCredentialData
    sign_count: int = 0
    transports: Tuple[str, ...] = ()
    attestation_format: str = "none"
    created_at: float = 0.0
    last_used_at: Optional[float] = None

    @property
    def public_key(self):
        return self.credential_data.public_key

    @property
    def algorithm(self) -> Optional[int]:
        return self.credential_data.public_key.get(3)


@dataclass
class PendingCeremony:
    session_id: str
    app_id: str
    ceremony: str
    state: Dict[str, Any]
    expires_at: float
    user_id: Optional[str] = None
    allowed_credential_ids: Optional[FrozenSet[bytes]] = None
    auth_session_id: Optional[str] = None
    user_profile: Optional[Dict[str, Any]] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class RefreshTokenRecord:
    token_hash: str
    user_id: str
    app_id: str
    family_id: str
    expires_at: float
    scopes: Tuple[str, ...] = ()
    consumed: bool = False
    revoked: bool = False


@dataclass
class AuthSession:
    """A hosted-login session created by ``/auth/initiate``."""

    session_id: str
    app_id: str
    redirect_uri: str
    expires_at: float
    state: Optional[str] = None
    provider: Optional[str] = None
    user_id: Optional[str] = None
    code: Optional[str] = None
    code_expires_at: Optional[float] = None
    scopes: List[str] = field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
