"""In-process stores for applications, users, credentials, challenges and tokens."""
from __future__ import annotations

import hashlib
import logging
import os
import pickle
import threading
from dataclasses import asdict, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

import cbor2
from fido2.webauthn import AttestedCredentialData

from .encoding import encode_base64url
from .errors import CounterRegression, NotFoundError, ValidationError
from .models import (
    Application,
    AuthSession,
    PendingCeremony,
    RefreshTokenRecord,
    StoredCredential,
    User,
)

__all__ = [
    "ApplicationRegistry",
    "AuthSessionStore",
    "ChallengeStore",
    "CredentialStore",
    "RefreshTokenStore",
    "UserStore",
    "hash_token",
    "public_key_cbor",
    "readkey",
    "savekey",
]

logger = logging.getLogger(__name__)


def savekey(basepath: str, name: str, data: Any) -> None:
    filename = os.path.join(basepath, f"{name}.pkl")
    tmp_name = f"{filename}.tmp"
    with open(tmp_name, "wb") as f:
        f.write(pickle.dumps(data))
    os.replace(tmp_name, filename)


def readkey(basepath: str, name: str) -> Optional[Any]:
    filename = os.path.join(basepath, f"{name}.pkl")
    try:
        with open(filename, "rb") as f:
            return pickle.loads(f.read())
    except FileNotFoundError:
        return None


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def public_key_cbor(credential: StoredCredential) -> bytes:
    """Return the credential's COSE public key as canonical CBOR."""
    return cbor2.dumps(dict(credential.public_key), canonical=True)


class ApplicationRegistry:
    def __init__(self, applications: Iterable[Application] = ()) -> None:
        self._lock = threading.Lock()
        self._apps: Dict[str, Application] = {}
        for application in applications:
            self.register(application)

    def register(self, application: Application) -> None:
        with self._lock:
            self._apps[application.app_id] = application

    def get(self, app_id: Any) -> Application:
        if not isinstance(app_id, str) or not app_id.strip():
            raise ValidationError("INVALID_APP_ID")
        with self._lock:
            application = self._apps.get(app_id.strip())
        if application is None or not application.enabled:
            raise NotFoundError("APP_NOT_FOUND", details={"appId": app_id})
        return application

    def __len__(self) -> int:
        with self._lock:
            return len(self._apps)


class _SnapshotMixin:
    """Writes a pickle snapshot after each mutation when a data dir is configured."""

    _snapshot_name = ""

    def __init__(self, basepath: Optional[str] = None) -> None:
        self._basepath = basepath

    def _persist(self, payload: Any) -> None:
        if not self._basepath:
            return
        savekey(self._basepath, self._snapshot_name, payload)

    def _restore(self) -> Optional[Any]:
        if not self._basepath:
            return None
        return readkey(self._basepath, self._snapshot_name)


class UserStore(_SnapshotMixin):
    _snapshot_name = "users"

    def __init__(self, basepath: Optional[str] = None) -> None:
        super().__init__(basepath)
        self._lock = threading.RLock()
        self._users: Dict[str, User] = {}
        self._by_username: Dict[Tuple[str, str], str] = {}
        restored = self._restore()
        if restored:
            for entry in restored:
                self._index(User(**entry))
            logger.info("Restored %d users from %s", len(self._users), basepath)

    def _index(self, user: User) -> None:
        self._users[user.user_id] = user
        self._by_username[(user.app_id, user.username.lower())] = user.user_id

    def _snapshot(self) -> None:
        self._persist([asdict(user) for user in self._users.values()])

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def find_by_username(self, app_id: str, username: str) -> Optional[User]:
        with self._lock:
            user_id = self._by_username.get((app_id, username.lower()))
            return self._users.get(user_id) if user_id else None

    def add(self, user: User) -> None:
        """Store a new user; the username must still be free in its application."""
        with self._lock:
            if self.find_by_username(user.app_id, user.username) is not None:
                raise ValidationError("REGISTRATION_FAILED")
            self._index(user)
            self._snapshot()
        logger.info("Created user %s for application %s", user.user_id, user.app_id)


class CredentialStore(_SnapshotMixin):
    """Credentials keyed by ``(app_id, credential_id)``.

    Counter updates take a per-credential lock so concurrent assertions for
    the same credential cannot both pass the counter check on a stale read.
    """

    _snapshot_name = "credentials"

    def __init__(self, basepath: Optional[str] = None) -> None:
        super().__init__(basepath)
        self._lock = threading.Lock()
        self._credentials: Dict[Tuple[str, bytes], StoredCredential] = {}
        self._counter_locks: Dict[Tuple[str, bytes], threading.Lock] = {}
        restored = self._restore()
        if restored:
            for entry in restored:
                entry = dict(entry)
                entry["credential_data"] = AttestedCredentialData(entry["credential_data"])
                credential = StoredCredential(**entry)
                self._credentials[(credential.app_id, credential.credential_id)] = credential
            logger.info("Restored %d credentials from %s", len(self._credentials), basepath)

    def _snapshot(self) -> None:
        payload: List[Dict[str, Any]] = []
        for credential in self._credentials.values():
            entry = asdict(replace(credential, credential_data=None))
            entry["credential_data"] = bytes(credential.credential_data)
            payload.append(entry)
        self._persist(payload)

    def add(self, credential: StoredCredential) -> None:
        key = (credential.app_id, credential.credential_id)
        with self._lock:
            if key in self._credentials:
                raise ValidationError("REGISTRATION_FAILED")
            self._credentials[key] = credential
            self._snapshot()

    def get(self, app_id: str, credential_id: bytes) -> Optional[StoredCredential]:
        with self._lock:
            return self._credentials.get((app_id, bytes(credential_id)))

    def list_for_user(self, app_id: str, user_id: str) -> List[StoredCredential]:
        with self._lock:
            return [
                credential
                for (cred_app, _), credential in self._credentials.items()
                if cred_app == app_id and credential.user_id == user_id
            ]

    def delete(self, app_id: str, user_id: str, credential_id: bytes) -> None:
        key = (app_id, bytes(credential_id))
        with self._lock:
            credential = self._credentials.get(key)
            if credential is None or credential.user_id != user_id:
                raise NotFoundError("CREDENTIAL_NOT_FOUND")
            del self._credentials[key]
            self._counter_locks.pop(key, None)
            self._snapshot()

    def _counter_lock(self, key: Tuple[str, bytes]) -> threading.Lock:
        with self._lock:
            lock = self._counter_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._counter_locks[key] = lock
            return lock

    def check_and_update_counter(
        self,
        app_id: str,
        credential_id: bytes,
        new_counter: int,
        now: float,
    ) -> StoredCredential:
        """Apply the sign counter rule and record the use of a credential.

        Both counters at zero means the authenticator does not implement a
        counter. Otherwise ``new_counter`` must exceed the stored value.
        """
        key = (app_id, bytes(credential_id))
        with self._counter_lock(key):
            with self._lock:
                credential = self._credentials.get(key)
            if credential is None:
                raise NotFoundError("CREDENTIAL_NOT_FOUND")

            stored = credential.sign_count
            if not (stored == 0 and new_counter == 0) and new_counter <= stored:
                raise CounterRegression(stored, new_counter)

            updated = replace(credential, sign_count=new_counter, last_used_at=now)
            with self._lock:
                self._credentials[key] = updated
                self._snapshot()
            return updated

    def describe(self, credential: StoredCredential) -> Dict[str, Any]:
        return {
            "credentialId": encode_base64url(credential.credential_id),
            "publicKeyAlgorithm": credential.algorithm,
            "publicKeyCose": encode_base64url(public_key_cbor(credential)),
            "aaguid": str(credential.credential_data.aaguid),
            "signCount": credential.sign_count,
            "transports": list(credential.transports),
            "attestationFormat": credential.attestation_format,
            "createdAt": credential.created_at,
            "lastUsedAt": credential.last_used_at,
        }


class ChallengeStore:
    """Pending ceremonies keyed by session id, each consumable exactly once."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingCeremony] = {}

    def put(self, pending: PendingCeremony) -> None:
        with self._lock:
            self._pending[pending.session_id] = pending

    def consume(self, session_id: Any, now: float) -> Optional[PendingCeremony]:
        """Atomically remove and return the pending ceremony.

        Returns ``None`` when the session is unknown, already consumed or
        expired. An expired entry is discarded as a side effect.
        """
        if not isinstance(session_id, str) or not session_id:
            return None
        with self._lock:
            pending = self._pending.pop(session_id, None)
        if pending is None or pending.is_expired(now):
            return None
        return pending

    def purge_expired(self, now: float) -> int:
        with self._lock:
            expired = [key for key, value in self._pending.items() if value.is_expired(now)]
            for key in expired:
                del self._pending[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class RefreshTokenStore:
    """Opaque refresh tokens, stored only as SHA-256 hashes.

    Rotation marks the presented token consumed and stores its successor in
    one critical section. Presenting a consumed token again revokes every
    token in its family.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, RefreshTokenRecord] = {}

    def add(self, token: str, record: RefreshTokenRecord) -> None:
        record.token_hash = hash_token(token)
        with self._lock:
            self._records[record.token_hash] = record

    def rotate(
        self,
        old_token: str,
        new_token: str,
        now: float,
        ttl: float,
    ) -> Optional[RefreshTokenRecord]:
        """Swap ``old_token`` for ``new_token``; return the new record or ``None``."""
        old_hash = hash_token(old_token)
        with self._lock:
            record = self._records.get(old_hash)
            if record is None:
                return None
            if record.consumed and not record.revoked:
                logger.warning(
                    "Refresh token reuse detected for user %s (family %s); revoking family.",
                    record.user_id,
                    record.family_id,
                )
                self._revoke_family_locked(record.family_id)
                return None
            if record.revoked or now >= record.expires_at:
                return None

            record.consumed = True
            successor = RefreshTokenRecord(
                token_hash=hash_token(new_token),
                user_id=record.user_id,
                app_id=record.app_id,
                family_id=record.family_id,
                expires_at=now + ttl,
                scopes=record.scopes,
            )
            self._records[successor.token_hash] = successor
            return successor

    def lookup(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            return self._records.get(hash_token(token))

    def _revoke_family_locked(self, family_id: str) -> int:
        revoked = 0
        for record in self._records.values():
            if record.family_id == family_id and not record.revoked:
                record.revoked = True
                revoked += 1
        return revoked

    def revoke_family(self, family_id: str) -> int:
        with self._lock:
            return self._revoke_family_locked(family_id)

    def purge_expired(self, now: float) -> int:
        with self._lock:
            expired = [key for key, record in self._records.items() if now >= record.expires_at]
            for key in expired:
                del self._records[key]
        return len(expired)


class AuthSessionStore:
    """Hosted-login sessions and their one-time authorization codes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, AuthSession] = {}
        self._codes: Dict[str, str] = {}

    def put(self, session: AuthSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: Any, now: float) -> Optional[AuthSession]:
        if not isinstance(session_id, str) or not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.is_expired(now):
                del self._sessions[session_id]
                return None
            return session

    def attach_code(
        self,
        session_id: str,
        user_id: str,
        code: str,
        code_expires_at: float,
    ) -> Optional[AuthSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.code is not None:
                return None
            session.user_id = user_id
            session.code = code
            session.code_expires_at = code_expires_at
            self._codes[hash_token(code)] = session_id
            return session

    def consume_code(self, code: Any, now: float) -> Optional[AuthSession]:
        """Atomically exchange ``code`` for its session; codes work once."""
        if not isinstance(code, str) or not code:
            return None
        with self._lock:
            session_id = self._codes.pop(hash_token(code), None)
            if session_id is None:
                return None
            session = self._sessions.pop(session_id, None)
        if session is None or session.code_expires_at is None or now >= session.code_expires_at:
            return None
        return session

    def purge_expired(self, now: float) -> int:
        with self._lock:
            expired = [key for key, session in self._sessions.items() if session.is_expired(now)]
            for key in expired:
                session = self._sessions.pop(key)
                if session.code:
                    self._codes.pop(hash_token(session.code), None)
        return len(expired)
