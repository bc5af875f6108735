"""Hosted login sessions, authorization codes and OAuth provider redirects."""
from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import AuthenticationError, AuthorizationError, ValidationError
from .models import AUTH_METHOD_OAUTH, AUTH_METHOD_PASSKEY, Application, AuthSession, User
from .storage import ApplicationRegistry, AuthSessionStore, UserStore

__all__ = ["HostedAuthService", "append_query"]

logger = logging.getLogger(__name__)


def append_query(url: str, params: Dict[str, Any]) -> str:
    """Add ``params`` to ``url`` while keeping its existing query string."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, str(value)) for key, value in params.items() if value is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class HostedAuthService:
    def __init__(
        self,
        applications: ApplicationRegistry,
        users: UserStore,
        sessions: AuthSessionStore,
        *,
        hosted_base_url: str,
        session_ttl: float = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.applications = applications
        self.users = users
        self.sessions = sessions
        self.hosted_base_url = hosted_base_url.rstrip("/")
        self.session_ttl = session_ttl
        self.clock = clock

    def _checked_redirect(self, application: Application, redirect_uri: Any) -> str:
        if not isinstance(redirect_uri, str) or not application.allows_redirect(redirect_uri):
            raise ValidationError("INVALID_REDIRECT_URI", details={"redirectUri": redirect_uri})
        return redirect_uri

    def _new_session(
        self,
        application: Application,
        redirect_uri: str,
        state: Optional[str],
        provider: Optional[str] = None,
    ) -> AuthSession:
        now = self.clock()
        self.sessions.purge_expired(now)
        session = AuthSession(
            session_id=secrets.token_urlsafe(24),
            app_id=application.app_id,
            redirect_uri=redirect_uri,
            expires_at=now + self.session_ttl,
            state=state,
            provider=provider,
            scopes=list(application.scopes),
        )
        self.sessions.put(session)
        return session

    def initiate(self, app_id: Any, redirect_uri: Any, state: Optional[str] = None) -> Tuple[AuthSession, str]:
        """Open a hosted login session and return it with the login page URL."""
        application = self.applications.get(app_id)
        redirect_uri = self._checked_redirect(application, redirect_uri)
        session = self._new_session(application, redirect_uri, state)
        auth_url = append_query(
            f"{self.hosted_base_url}/login",
            {"session_id": session.session_id, "app_id": application.app_id},
        )
        logger.info("Initiated hosted auth session for application %s", application.app_id)
        return session, auth_url

    def complete(self, session_id: str, user: User) -> Tuple[str, str]:
        """Bind an authenticated user to the session and mint its one-time code."""
        now = self.clock()
        session = self.sessions.get(session_id, now)
        if session is None or session.app_id != user.app_id:
            raise ValidationError("INVALID_REQUEST", "Unknown or expired auth session.")
        code = secrets.token_urlsafe(32)
        attached = self.sessions.attach_code(session_id, user.user_id, code, now + self.session_ttl)
        if attached is None:
            raise ValidationError("INVALID_REQUEST", "The auth session has already been completed.")
        redirect_url = append_query(session.redirect_uri, {"code": code, "state": session.state})
        return code, redirect_url

    def exchange(self, code: Any, redirect_uri: Optional[str] = None) -> Tuple[User, AuthSession]:
        session = self.sessions.consume_code(code, self.clock())
        if session is None:
            logger.info("Rejected unknown or expired authorization code")
            raise AuthenticationError("AUTHENTICATION_FAILED")
        if redirect_uri is not None and redirect_uri != session.redirect_uri:
            logger.warning("Authorization code presented with a different redirect URI")
            raise ValidationError("INVALID_REDIRECT_URI")
        user = self.users.get(session.user_id) if session.user_id else None
        if user is None:
            raise AuthenticationError("AUTHENTICATION_FAILED")
        return user, session

    def provider_redirect(self, provider_name: str, app_id: Any, redirect_uri: Any) -> str:
        """Build the provider's authorize URL for a new hosted session.

        The provider's callback and code exchange happen outside this
        service; the session id travels as the OAuth ``state``.
        """
        application = self.applications.get(app_id)
        if not application.supports(AUTH_METHOD_OAUTH):
            raise AuthorizationError("METHOD_DISABLED", details={"method": AUTH_METHOD_OAUTH})
        provider = application.oauth_providers.get(provider_name)
        if provider is None:
            raise ValidationError("PROVIDER_NOT_ENABLED", details={"provider": provider_name})
        redirect_uri = self._checked_redirect(application, redirect_uri)

        session = self._new_session(application, redirect_uri, None, provider=provider.name)
        logger.info("Redirecting to %s for application %s", provider.name, application.app_id)
        return append_query(
            provider.authorize_url,
            {
                "client_id": provider.client_id,
                "redirect_uri": f"{self.hosted_base_url}/oauth/{provider.name}/callback",
                "response_type": "code",
                "scope": provider.scope,
                "state": session.session_id,
            },
        )

    def public_config(self, app_id: Any) -> Dict[str, Any]:
        application = self.applications.get(app_id)
        providers = (
            sorted(application.oauth_providers) if application.supports(AUTH_METHOD_OAUTH) else []
        )
        return {
            "appId": application.app_id,
            "appName": application.name,
            "redirectUri": application.redirect_uris[0] if application.redirect_uris else None,
            "redirectUris": list(application.redirect_uris),
            "oauthProviders": providers,
            "passkeyEnabled": application.supports(AUTH_METHOD_PASSKEY),
            "rpId": application.rp_id,
        }
