"""General application routes."""
from __future__ import annotations

from flask import Blueprint, jsonify, redirect, request

from ..app import get_services

bp = Blueprint("general", __name__)


@bp.route("/api/config", methods=["GET"])
def app_config():
    return jsonify(get_services().hosted.public_config(request.args.get("app_id")))


@bp.route("/oauth/<provider>/authorize", methods=["GET"])
def oauth_authorize(provider: str):
    location = get_services().hosted.provider_redirect(
        provider,
        request.args.get("app_id"),
        request.args.get("redirect_uri"),
    )
    return redirect(location, code=302)


@bp.route("/.well-known/jwks.json", methods=["GET"])
def jwks():
    return jsonify(get_services().tokens.keyring.jwks())


@bp.route("/api/health", methods=["GET"])
def health_check():
    services = get_services()
    return jsonify(
        {
            "status": "healthy",
            "applications": len(services.applications),
            "pendingCeremonies": len(services.challenges),
        }
    )
