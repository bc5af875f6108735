"""Passkey registration and authentication ceremonies.

A ceremony starts with a challenge that is held server-side under a random
session id and ends when the client returns the authenticator's response
for that session. The pending state is removed on lookup, so each challenge
can be completed at most once even when two completion requests race.

Verification failures are reported with one generic code per
ceremony (``REGISTRATION_FAILED`` / ``AUTHENTICATION_FAILED``); the specific
cause is only written to the log.
"""
from __future__ import annotations

import logging
import os
import secrets
import struct
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from fido2.attestation.base import InvalidAttestation
from fido2.webauthn import (
    AuthenticationResponse,
    PublicKeyCredentialUserEntity,
    RegistrationResponse,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .attestation import is_allowed_algorithm
from .config import create_fido_server
from .encoding import encode_base64url, make_json_safe
from .errors import (
    AuthenticationError,
    AuthorizationError,
    CounterRegression,
    NotFoundError,
    PasskeyError,
    ValidationError,
)
from .models import (
    AUTH_METHOD_PASSKEY,
    CEREMONY_AUTHENTICATION,
    CEREMONY_REGISTRATION,
    Application,
    PendingCeremony,
    StoredCredential,
    User,
)
from .storage import (
    ApplicationRegistry,
    AuthSessionStore,
    ChallengeStore,
    CredentialStore,
    UserStore,
)

__all__ = ["CeremonyService"]

logger = logging.getLogger(__name__)

# Errors python-fido2 raises while parsing or verifying a client response.
_VERIFICATION_ERRORS = (
    ValueError,
    KeyError,
    TypeError,
    IndexError,
    struct.error,
    InvalidAttestation,
)


class CeremonyService:
    def __init__(
        self,
        applications: ApplicationRegistry,
        users: UserStore,
        credentials: CredentialStore,
        challenges: ChallengeStore,
        auth_sessions: AuthSessionStore,
        *,
        challenge_ttl: float = 120,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.applications = applications
        self.users = users
        self.credentials = credentials
        self.challenges = challenges
        self.auth_sessions = auth_sessions
        self.challenge_ttl = challenge_ttl
        self.clock = clock

    def _passkey_application(self, app_id: Any) -> Application:
        application = self.applications.get(app_id)
        if not application.supports(AUTH_METHOD_PASSKEY):
            raise AuthorizationError("METHOD_DISABLED", details={"method": AUTH_METHOD_PASSKEY})
        return application

    def _new_pending(self, application: Application, ceremony: str, state: Dict[str, Any], **extra) -> PendingCeremony:
        now = self.clock()
        self.challenges.purge_expired(now)
        pending = PendingCeremony(
            session_id=secrets.token_urlsafe(32),
            app_id=application.app_id,
            ceremony=ceremony,
            state=dict(state),
            expires_at=now + self.challenge_ttl,
            **extra,
        )
        self.challenges.put(pending)
        return pending

    def _options_payload(self, options: Any) -> Dict[str, Any]:
        return make_json_safe(dict(options)).get("publicKey", {})

    def _consume(self, session_id: Any, ceremony: str) -> PendingCeremony:
        pending = self.challenges.consume(session_id, self.clock())
        if pending is None or pending.ceremony != ceremony:
            raise ValidationError("INVALID_CHALLENGE")
        return pending

    def has_passkey(self, user: User) -> bool:
        return bool(self.credentials.list_for_user(user.app_id, user.user_id))

    def start_registration(
        self,
        app_id: Any,
        username: Any,
        *,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
        authenticated_user_id: Optional[str] = None,
    ) -> Tuple[PendingCeremony, Dict[str, Any]]:
        """Begin registering a new passkey for ``username``.

        The user record itself is only created once a registration
        completes; until then the profile travels with the pending ceremony.
        Adding a passkey to an existing account requires that account's
        access token, passed in as ``authenticated_user_id``.
        """
        application = self._passkey_application(app_id)
        if not isinstance(username, str) or not username.strip():
            raise ValidationError("INVALID_REQUEST", "A username is required.")
        username = username.strip()

        existing_user = self.users.find_by_username(application.app_id, username)
        if existing_user is not None and authenticated_user_id != existing_user.user_id:
            logger.warning(
                "Refused registration for existing user %s in application %s: not signed in as that user",
                existing_user.user_id,
                application.app_id,
            )
            raise AuthenticationError("AUTHENTICATION_FAILED")
        if existing_user is not None:
            user_handle = existing_user.user_handle
            display = existing_user.display_name
            existing = [
                credential.credential_data
                for credential in self.credentials.list_for_user(application.app_id, existing_user.user_id)
            ]
        else:
            user_handle = os.urandom(32)
            display = display_name or username
            existing = []

        server = create_fido_server(application, timeout_ms=int(self.challenge_ttl * 1000))
        options, state = server.register_begin(
            PublicKeyCredentialUserEntity(name=username, id=user_handle, display_name=display),
            existing,
            resident_key_requirement=ResidentKeyRequirement.PREFERRED,
            user_verification=UserVerificationRequirement.PREFERRED,
        )

        pending = self._new_pending(
            application,
            CEREMONY_REGISTRATION,
            state,
            user_id=existing_user.user_id if existing_user else None,
            user_profile={
                "username": username,
                "display_name": display,
                "email": email,
                "user_handle": user_handle,
            },
        )
        logger.info(
            "Started registration ceremony for application %s (existing user: %s)",
            application.app_id,
            existing_user is not None,
        )
        return pending, self._options_payload(options)

    def complete_registration(self, session_id: Any, payload: Any) -> Tuple[User, StoredCredential]:
        pending = self._consume(session_id, CEREMONY_REGISTRATION)
        application = self.applications.get(pending.app_id)

        try:
            if not isinstance(payload, Mapping):
                raise ValueError("credential payload must be an object")
            response = RegistrationResponse.from_dict(payload)
            server = create_fido_server(application)
            auth_data = server.register_complete(pending.state, response)
            credential_data = auth_data.credential_data
            if credential_data is None:
                raise ValueError("attested credential data missing")
            if not is_allowed_algorithm(credential_data.public_key.get(3)):
                raise ValueError(f"algorithm {credential_data.public_key.get(3)} is not allowed")
        except _VERIFICATION_ERRORS as exc:
            logger.warning("Registration failed for application %s: %s", application.app_id, exc)
            raise ValidationError("REGISTRATION_FAILED") from None

        now = self.clock()
        credential_id = bytes(credential_data.credential_id)
        profile = pending.user_profile or {}
        if pending.user_id:
            user = self.users.get(pending.user_id)
            if user is None:
                logger.warning(
                    "Registration failed for application %s: user %s no longer exists",
                    application.app_id,
                    pending.user_id,
                )
                raise ValidationError("REGISTRATION_FAILED")
            new_user = False
        else:
            user = User.create(
                application.app_id,
                profile["username"],
                display_name=profile.get("display_name"),
                email=profile.get("email"),
                user_handle=profile.get("user_handle"),
                now=now,
            )
            new_user = True

        transports = tuple(
            str(getattr(transport, "value", transport))
            for transport in (getattr(response.response, "transports", None) or ())
        )
        credential = StoredCredential(
            credential_id=credential_id,
            app_id=application.app_id,
            user_id=user.user_id,
            credential_data=credential_data,
            sign_count=auth_data.counter,
            transports=transports,
            attestation_format=response.response.attestation_object.fmt,
            created_at=now,
        )
        try:
            self.credentials.add(credential)
        except PasskeyError:
            logger.warning(
                "Registration failed for application %s: credential %s already registered",
                application.app_id,
                encode_base64url(credential_id),
            )
            raise

        # A new user is stored only once its credential is in place.
        if new_user:
            try:
                self.users.add(user)
            except PasskeyError:
                self.credentials.delete(application.app_id, user.user_id, credential_id)
                logger.warning(
                    "Registration failed for application %s: username %r was registered concurrently",
                    application.app_id,
                    user.username,
                )
                raise

        logger.info(
            "Registered credential %s for user %s in application %s",
            encode_base64url(credential_id),
            user.user_id,
            application.app_id,
        )
        return user, credential

    def start_authentication(
        self,
        app_id: Any,
        username: Optional[str] = None,
        *,
        auth_session_id: Optional[str] = None,
    ) -> Tuple[PendingCeremony, Dict[str, Any]]:
        """Begin an assertion ceremony.

        With a username the request lists that user's credentials; without
        one it asks for any discoverable credential for the RP.
        """
        application = self._passkey_application(app_id)

        if auth_session_id is not None:
            auth_session = self.auth_sessions.get(auth_session_id, self.clock())
            if auth_session is None or auth_session.app_id != application.app_id:
                raise ValidationError("INVALID_REQUEST", "Unknown or expired auth session.")

        user: Optional[User] = None
        credentials: List[StoredCredential] = []
        if username:
            if not isinstance(username, str):
                raise ValidationError("INVALID_REQUEST", "The username must be a string.")
            user = self.users.find_by_username(application.app_id, username.strip())
            if user is not None:
                credentials = self.credentials.list_for_user(application.app_id, user.user_id)
            if user is None or not credentials:
                raise NotFoundError("USER_NOT_FOUND")

        server = create_fido_server(application, timeout_ms=int(self.challenge_ttl * 1000))
        options, state = server.authenticate_begin(
            [credential.credential_data for credential in credentials] or None,
            user_verification=UserVerificationRequirement.PREFERRED,
        )

        pending = self._new_pending(
            application,
            CEREMONY_AUTHENTICATION,
            state,
            user_id=user.user_id if user else None,
            allowed_credential_ids=(
                frozenset(credential.credential_id for credential in credentials) if credentials else None
            ),
            auth_session_id=auth_session_id,
        )
        logger.info(
            "Started authentication ceremony for application %s (%s)",
            application.app_id,
            "username" if user else "discoverable",
        )
        return pending, self._options_payload(options)

    def _reject_assertion(self, application: Application, reason: str, *args) -> AuthenticationError:
        logger.warning("Authentication failed for application %s: " + reason, application.app_id, *args)
        return AuthenticationError("AUTHENTICATION_FAILED")

    def complete_authentication(
        self,
        session_id: Any,
        payload: Any,
    ) -> Tuple[User, StoredCredential, PendingCeremony]:
        pending = self._consume(session_id, CEREMONY_AUTHENTICATION)
        application = self.applications.get(pending.app_id)

        try:
            if not isinstance(payload, Mapping):
                raise ValueError("credential payload must be an object")
            response = AuthenticationResponse.from_dict(payload)
        except _VERIFICATION_ERRORS as exc:
            raise self._reject_assertion(application, "malformed assertion: %s", exc) from None

        credential_id = bytes(response.raw_id)
        if pending.allowed_credential_ids is not None and credential_id not in pending.allowed_credential_ids:
            raise self._reject_assertion(application, "credential not in allow list")

        stored = self.credentials.get(application.app_id, credential_id)
        if stored is None:
            raise self._reject_assertion(application, "unknown credential %s", encode_base64url(credential_id))

        try:
            server = create_fido_server(application)
            server.authenticate_complete(pending.state, [stored.credential_data], response)
        except _VERIFICATION_ERRORS as exc:
            raise self._reject_assertion(application, "%s", exc) from None

        user = self.users.get(stored.user_id)
        if user is None:
            raise self._reject_assertion(application, "credential owner %s missing", stored.user_id)

        user_handle = response.response.user_handle
        if user_handle is not None and bytes(user_handle) != user.user_handle:
            raise self._reject_assertion(application, "user handle mismatch for %s", user.user_id)

        new_counter = response.response.authenticator_data.counter
        try:
            updated = self.credentials.check_and_update_counter(
                application.app_id,
                credential_id,
                new_counter,
                self.clock(),
            )
        except CounterRegression as exc:
            raise self._reject_assertion(
                application,
                "POSSIBLE_CLONED_AUTHENTICATOR credential %s: %s",
                encode_base64url(credential_id),
                exc,
            ) from None
        except NotFoundError:
            raise self._reject_assertion(application, "credential removed during ceremony") from None

        logger.info(
            "Authenticated user %s with credential %s in application %s",
            user.user_id,
            encode_base64url(credential_id),
            application.app_id,
        )
        return user, updated, pending
