"""Routes for hosted login, token refresh, validation and logout."""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..app import get_services
from ..errors import AuthenticationError, PasskeyError, error_envelope
from . import bearer_token, first_value, isoformat_timestamp, json_body

bp = Blueprint("auth", __name__)


def _user_for_claims(services, claims):
    user = services.users.get(claims["sub"])
    if user is None or user.app_id != claims["aud"]:
        raise AuthenticationError("INVALID_TOKEN")
    return user


def _invalid_response(exc: PasskeyError):
    body = {"valid": False}
    body.update(error_envelope(exc.code, exc.message, exc.details))
    response = jsonify(body)
    response.status_code = exc.status
    return response


@bp.route("/auth/initiate", methods=["POST"])
def initiate():
    payload = json_body()
    session, auth_url = get_services().hosted.initiate(
        first_value(payload, "app_id", "appId"),
        first_value(payload, "redirect_uri", "redirectUri"),
        state=payload.get("state"),
    )
    return jsonify(
        {
            "authUrl": auth_url,
            "sessionId": session.session_id,
            "expiresAt": isoformat_timestamp(session.expires_at),
        }
    )


@bp.route("/auth/callback", methods=["POST"])
def callback():
    payload = json_body()
    services = get_services()
    user, session = services.hosted.exchange(
        payload.get("code"),
        first_value(payload, "redirect_uri", "redirectUri"),
    )
    tokens = services.tokens.issue_tokens(user, session.app_id, session.scopes)
    body = tokens.to_dict()
    body["user"] = user.to_public_dict(has_passkey=services.ceremonies.has_passkey(user))
    return jsonify(body)


@bp.route("/auth/refresh", methods=["POST"])
def refresh():
    payload = json_body()
    tokens = get_services().tokens.refresh(
        first_value(payload, "refreshToken", "refresh_token"),
        first_value(payload, "app_id", "appId"),
    )
    return jsonify(tokens.to_dict())


@bp.route("/auth/validate", methods=["GET"])
def validate():
    services = get_services()
    audience = request.headers.get("X-App-ID") or request.args.get("app_id")
    try:
        claims = services.tokens.verify(bearer_token(), audience=audience)
        user = _user_for_claims(services, claims)
    except PasskeyError as exc:
        return _invalid_response(exc)

    return jsonify(
        {
            "valid": True,
            "user": user.to_public_dict(has_passkey=claims["has_passkey"]),
            "scopes": claims.get("scope", "").split(),
            "expiresAt": isoformat_timestamp(claims["exp"]),
        }
    )


@bp.route("/auth/logout", methods=["POST"])
def logout():
    payload = json_body()
    services = get_services()
    claims = services.tokens.verify(bearer_token())
    services.tokens.revoke(claims, first_value(payload, "refreshToken", "refresh_token"))
    current_app.logger.info("User %s logged out of application %s", claims["sub"], claims["aud"])
    return jsonify({"success": True, "message": "Logged out successfully."})


@bp.route("/api/auth/verify-token", methods=["GET"])
def verify_token():
    services = get_services()
    application = services.applications.get(request.args.get("app_id"))
    try:
        claims = services.tokens.verify(request.args.get("token"), audience=application.app_id)
        user = _user_for_claims(services, claims)
    except PasskeyError as exc:
        return _invalid_response(exc)

    return jsonify(
        {
            "valid": True,
            "user": user.to_public_dict(has_passkey=claims["has_passkey"]),
            "expires": isoformat_timestamp(claims["exp"]),
        }
    )
