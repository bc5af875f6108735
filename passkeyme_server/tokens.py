"""Access token issuance and verification.

Access tokens are ES256 JWTs carrying a ``kid`` header so verification keeps
working across signing key rotation. Refresh tokens are opaque random
strings; the store only ever sees their SHA-256 hash.
"""
from __future__ import annotations

import hashlib
import json
import logging
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Sequence

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jwt.algorithms import ECAlgorithm

from .encoding import encode_base64url
from .errors import AuthenticationError, PasskeyError
from .models import RefreshTokenRecord, User
from .storage import ApplicationRegistry, CredentialStore, RefreshTokenStore, UserStore

__all__ = [
    "SigningKey",
    "SigningKeyRing",
    "TokenService",
    "TokenSet",
]

logger = logging.getLogger(__name__)

ALGORITHM = "ES256"
_REQUIRED_CLAIMS = ["sub", "aud", "iss", "iat", "exp", "jti"]


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class SigningKey:
    kid: str
    private_key: ec.EllipticCurvePrivateKey
    created_at: float

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self.private_key.public_key()

    @classmethod
    def from_private_key(cls, private_key: ec.EllipticCurvePrivateKey, created_at: float) -> "SigningKey":
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise ValueError("signing keys must use the P-256 curve")
        public_der = private_key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        kid = encode_base64url(hashlib.sha256(public_der).digest()[:12])
        return cls(kid=kid, private_key=private_key, created_at=created_at)

    def to_jwk(self) -> Dict[str, Any]:
        jwk = json.loads(ECAlgorithm.to_jwk(self.public_key))
        jwk.update({"kid": self.kid, "use": "sig", "alg": ALGORITHM})
        return jwk


class SigningKeyRing:
    """The current signing key plus older keys still accepted for verification."""

    def __init__(self, keys: Iterable[SigningKey] = ()) -> None:
        self._lock = threading.Lock()
        self._keys: "OrderedDict[str, SigningKey]" = OrderedDict()
        for key in keys:
            self._keys[key.kid] = key
        if not self._keys:
            self._add_generated()

    def _add_generated(self) -> SigningKey:
        key = SigningKey.from_private_key(ec.generate_private_key(ec.SECP256R1()), time.time())
        self._keys[key.kid] = key
        return key

    @classmethod
    def from_pem(cls, pem_data: bytes, password: Optional[bytes] = None) -> "SigningKeyRing":
        private_key = serialization.load_pem_private_key(pem_data, password=password)
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise ValueError("signing key file must contain an EC private key")
        return cls([SigningKey.from_private_key(private_key, time.time())])

    @property
    def current(self) -> SigningKey:
        with self._lock:
            return next(reversed(self._keys.values()))

    def get(self, kid: Any) -> Optional[SigningKey]:
        if not isinstance(kid, str):
            return None
        with self._lock:
            return self._keys.get(kid)

    def rotate(self) -> SigningKey:
        """Make a freshly generated key current; older keys keep verifying."""
        with self._lock:
            key = self._add_generated()
        logger.info("Rotated token signing key; new kid %s", key.kid)
        return key

    def retire(self, kid: str) -> bool:
        with self._lock:
            if kid not in self._keys or len(self._keys) == 1:
                return False
            if next(reversed(self._keys)) == kid:
                return False
            del self._keys[kid]
        logger.info("Retired token signing key %s", kid)
        return True

    def jwks(self) -> Dict[str, Any]:
        with self._lock:
            keys = list(self._keys.values())
        return {"keys": [key.to_jwk() for key in keys]}


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: int
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
            "tokenType": self.token_type,
        }


class TokenService:
    def __init__(
        self,
        keyring: SigningKeyRing,
        refresh_tokens: RefreshTokenStore,
        users: UserStore,
        credentials: CredentialStore,
        applications: ApplicationRegistry,
        *,
        issuer: str,
        access_ttl: int = 3600,
        refresh_ttl: int = 30 * 24 * 3600,
        leeway: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keyring = keyring
        self.refresh_tokens = refresh_tokens
        self.users = users
        self.credentials = credentials
        self.applications = applications
        self.issuer = issuer
        self.access_ttl = int(access_ttl)
        self.refresh_ttl = int(refresh_ttl)
        self.leeway = leeway
        self.clock = clock
        self._denylist_lock = threading.Lock()
        self._revoked_jtis: Dict[str, float] = {}

    def _has_passkey(self, user: User) -> bool:
        return bool(self.credentials.list_for_user(user.app_id, user.user_id))

    def _encode_access_token(self, user: User, app_id: str, scopes: Sequence[str], now: float) -> tuple:
        issued_at = int(now)
        expires_at = issued_at + self.access_ttl
        claims = {
            "sub": user.user_id,
            "email": user.email,
            "aud": app_id,
            "iss": self.issuer,
            "iat": issued_at,
            "exp": expires_at,
            "jti": secrets.token_urlsafe(16),
            "user_id": user.user_id,
            "app_id": app_id,
            "has_passkey": self._has_passkey(user),
            "email_verified": user.email_verified,
            "scope": " ".join(scopes),
        }
        key = self.keyring.current
        token = jwt.encode(claims, key.private_key, algorithm=ALGORITHM, headers={"kid": key.kid})
        return token, expires_at

    def issue_tokens(self, user: User, app_id: str, scopes: Sequence[str] = ()) -> TokenSet:
        """Mint an access token and start a new refresh token family."""
        if user.app_id != app_id:
            raise AuthenticationError("INVALID_TOKEN")
        now = self.clock()
        self.refresh_tokens.purge_expired(now)
        access_token, expires_at = self._encode_access_token(user, app_id, scopes, now)

        refresh_token = secrets.token_urlsafe(48)
        self.refresh_tokens.add(
            refresh_token,
            RefreshTokenRecord(
                token_hash="",
                user_id=user.user_id,
                app_id=app_id,
                family_id=secrets.token_hex(16),
                expires_at=now + self.refresh_ttl,
                scopes=tuple(scopes),
            ),
        )
        logger.info("Issued tokens for user %s in application %s", user.user_id, app_id)
        return TokenSet(access_token, refresh_token, self.access_ttl, expires_at)

    def refresh(self, refresh_token: Any, app_id: Optional[str] = None) -> TokenSet:
        """Exchange a refresh token for a new token set, invalidating the old one."""
        if not isinstance(refresh_token, str) or not refresh_token:
            raise AuthenticationError("INVALID_TOKEN")

        existing = self.refresh_tokens.lookup(refresh_token)
        if existing is None or (app_id is not None and existing.app_id != app_id):
            logger.info("Rejected unknown refresh token")
            raise AuthenticationError("INVALID_TOKEN")

        try:
            self.applications.get(existing.app_id)
        except PasskeyError as exc:
            logger.warning(
                "Rejected refresh token for application %s (%s); revoking family",
                existing.app_id,
                exc.code,
            )
            self.refresh_tokens.revoke_family(existing.family_id)
            raise AuthenticationError("INVALID_TOKEN") from None

        now = self.clock()
        new_refresh_token = secrets.token_urlsafe(48)
        record = self.refresh_tokens.rotate(refresh_token, new_refresh_token, now, self.refresh_ttl)
        if record is None:
            logger.info("Rejected refresh token for user %s", existing.user_id)
            raise AuthenticationError("INVALID_TOKEN")

        user = self.users.get(record.user_id)
        if user is None:
            self.refresh_tokens.revoke_family(record.family_id)
            raise AuthenticationError("INVALID_TOKEN")

        access_token, expires_at = self._encode_access_token(user, record.app_id, record.scopes, now)
        logger.info("Refreshed tokens for user %s in application %s", user.user_id, record.app_id)
        return TokenSet(access_token, new_refresh_token, self.access_ttl, expires_at)

    def verify(self, token: Any, audience: Optional[str] = None) -> Dict[str, Any]:
        """Return the claims of a valid access token.

        Every failure (malformed, unknown ``kid``, bad signature, expired,
        wrong issuer or audience, revoked) raises ``INVALID_TOKEN``.
        """
        if not isinstance(token, str) or not token:
            raise AuthenticationError("INVALID_TOKEN")
        try:
            header = jwt.get_unverified_header(token)
            key = self.keyring.get(header.get("kid"))
            if key is None:
                raise jwt.InvalidKeyError("unknown kid")
            claims = jwt.decode(
                token,
                key.public_key,
                algorithms=[ALGORITHM],
                audience=audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={
                    "require": _REQUIRED_CLAIMS,
                    "verify_aud": audience is not None,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.PyJWTError as exc:
            logger.info("Rejected access token: %s", exc)
            raise AuthenticationError("INVALID_TOKEN") from None

        # iat and exp come from self.clock, so the lifetime is checked against it too.
        now = self.clock()
        issued_at, expires_at = claims["iat"], claims["exp"]
        if not (_is_timestamp(issued_at) and _is_timestamp(expires_at)):
            logger.info("Rejected access token with non-numeric iat/exp")
            raise AuthenticationError("INVALID_TOKEN")
        if expires_at <= now - self.leeway:
            logger.info("Rejected expired access token %s", claims["jti"])
            raise AuthenticationError("INVALID_TOKEN")
        if issued_at > now + self.leeway:
            logger.info("Rejected access token %s issued in the future", claims["jti"])
            raise AuthenticationError("INVALID_TOKEN")

        if self.is_revoked(claims["jti"]):
            logger.info("Rejected revoked access token %s", claims["jti"])
            raise AuthenticationError("INVALID_TOKEN")
        return claims

    def is_revoked(self, jti: str) -> bool:
        with self._denylist_lock:
            return jti in self._revoked_jtis

    def revoke(self, claims: Dict[str, Any], refresh_token: Optional[str] = None) -> None:
        """Deny the access token until it expires and end its refresh family."""
        now = self.clock()
        with self._denylist_lock:
            self._revoked_jtis = {
                jti: expiry for jti, expiry in self._revoked_jtis.items() if expiry > now
            }
            self._revoked_jtis[claims["jti"]] = float(claims["exp"])

        if refresh_token:
            record = self.refresh_tokens.lookup(refresh_token)
            if record is not None and record.user_id == claims["sub"] and record.app_id == claims["aud"]:
                self.refresh_tokens.revoke_family(record.family_id)
        logger.info("Revoked tokens for user %s in application %s", claims["sub"], claims["aud"])
