"""Request helpers that walk a client through whole ceremonies."""

from .conftest import ORIGIN


def register_passkey(client, authenticator, username="alice", app_id="app_1", headers=None, **extra):
    challenge = client.post(
        "/api/passkey/register/challenge",
        json={"app_id": app_id, "username": username, **extra},
        headers=headers,
    )
    assert challenge.status_code == 200, challenge.get_json()
    body = challenge.get_json()
    credential = authenticator.make_credential(body["publicKey"], ORIGIN)
    return client.post(
        "/api/passkey/register/complete",
        json={"sessionId": body["sessionId"], "credential": credential},
    )


def start_authentication(client, username="alice", app_id="app_1", **extra):
    payload = {"app_id": app_id, **extra}
    if username is not None:
        payload["username"] = username
    response = client.post("/api/passkey/auth/challenge", json=payload)
    assert response.status_code == 200, response.get_json()
    return response.get_json()


def complete_authentication(client, session_id, credential):
    return client.post(
        "/api/passkey/auth/complete",
        json={"sessionId": session_id, "credential": credential},
    )


def authenticate_passkey(client, authenticator, username="alice", app_id="app_1", **assertion_kwargs):
    challenge = start_authentication(client, username, app_id)
    credential = authenticator.get_assertion(challenge["publicKey"], ORIGIN, **assertion_kwargs)
    return complete_authentication(client, challenge["sessionId"], credential)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}
