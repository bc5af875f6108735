"""Routes for passkey registration and authentication ceremonies."""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from ..app import get_services
from ..encoding import decode_binary_value, encode_base64url
from ..errors import NotFoundError
from . import bearer_token, first_value, isoformat_timestamp, json_body, optional_bearer_token

bp = Blueprint("passkey", __name__, url_prefix="/api/passkey")


def _challenge_response(pending, options):
    return jsonify(
        {
            "sessionId": pending.session_id,
            "publicKey": options,
            "expiresAt": isoformat_timestamp(pending.expires_at),
        }
    )


@bp.route("/register/challenge", methods=["POST"])
def register_challenge():
    payload = json_body()
    services = get_services()
    app_id = first_value(payload, "app_id", "appId")
    token = optional_bearer_token()
    user_id = None
    if token is not None:
        claims = services.tokens.verify(token, audience=app_id if isinstance(app_id, str) else None)
        user_id = claims["sub"]
    pending, options = services.ceremonies.start_registration(
        app_id,
        first_value(payload, "username", "userName"),
        display_name=first_value(payload, "displayName", "display_name"),
        email=payload.get("email"),
        authenticated_user_id=user_id,
    )
    return _challenge_response(pending, options)


@bp.route("/register/complete", methods=["POST"])
def register_complete():
    payload = json_body()
    services = get_services()
    user, credential = services.ceremonies.complete_registration(
        first_value(payload, "sessionId", "session_id"),
        payload.get("credential"),
    )
    return jsonify(
        {
            "success": True,
            "credentialId": encode_base64url(credential.credential_id),
            "user": user.to_public_dict(has_passkey=True),
        }
    )


@bp.route("/auth/challenge", methods=["POST"])
def auth_challenge():
    payload = json_body()
    pending, options = get_services().ceremonies.start_authentication(
        first_value(payload, "app_id", "appId"),
        first_value(payload, "username", "userName"),
        auth_session_id=first_value(payload, "authSessionId", "auth_session_id"),
    )
    return _challenge_response(pending, options)


@bp.route("/auth/complete", methods=["POST"])
def auth_complete():
    payload = json_body()
    services = get_services()
    user, _, pending = services.ceremonies.complete_authentication(
        first_value(payload, "sessionId", "session_id"),
        payload.get("credential"),
    )

    if pending.auth_session_id:
        code, redirect_url = services.hosted.complete(pending.auth_session_id, user)
        return jsonify({"success": True, "code": code, "redirectUrl": redirect_url})

    application = services.applications.get(pending.app_id)
    tokens = services.tokens.issue_tokens(user, application.app_id, application.scopes)
    body = tokens.to_dict()
    body["user"] = user.to_public_dict(has_passkey=True)
    return jsonify(body)


@bp.route("/credentials", methods=["GET"])
def list_credentials():
    services = get_services()
    claims = services.tokens.verify(bearer_token())
    credentials = services.credentials.list_for_user(claims["app_id"], claims["sub"])
    return jsonify({"credentials": [services.credentials.describe(item) for item in credentials]})


@bp.route("/credentials/<credential_id>", methods=["DELETE"])
def delete_credential(credential_id: str):
    services = get_services()
    claims = services.tokens.verify(bearer_token())
    try:
        raw_id = decode_binary_value(credential_id)
    except ValueError:
        raise NotFoundError("CREDENTIAL_NOT_FOUND") from None
    services.credentials.delete(claims["app_id"], claims["sub"], raw_id)
    current_app.logger.info("User %s deleted credential %s", claims["sub"], credential_id)
    return jsonify({"success": True})
