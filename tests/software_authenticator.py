"""Software WebAuthn authenticator for exercising the ceremony endpoints.

Builds ``none`` or self-signed ``packed`` attestation objects and ES256
assertions from the options the server returns, so the tests drive the real
python-fido2 verification path without hardware.
"""
from __future__ import annotations

import hashlib
import json
import os
import struct
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass, field
from typing import Dict, Optional

import cbor2
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.hashes import SHA256

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_AT = 0x40


def b64url_encode(data: bytes) -> str:
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    return urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _cose_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    numbers = public_key.public_numbers()
    return cbor2.dumps(
        {
            1: 2,  # kty: EC2
            3: -7,  # alg: ES256
            -1: 1,  # crv: P-256
            -2: numbers.x.to_bytes(32, "big"),
            -3: numbers.y.to_bytes(32, "big"),
        }
    )


@dataclass
class SoftwareCredential:
    credential_id: bytes
    private_key: ec.EllipticCurvePrivateKey
    rp_id: str
    user_handle: bytes
    sign_count: int = 0


@dataclass
class SoftwareAuthenticator:
    credentials: Dict[bytes, SoftwareCredential] = field(default_factory=dict)
    aaguid: bytes = b"\x00" * 16
    counter_step: int = 1
    attestation_format: str = "none"

    def _client_data(self, ceremony_type: str, challenge: str, origin: str) -> bytes:
        return json.dumps(
            {
                "type": ceremony_type,
                "challenge": challenge,
                "origin": origin,
                "crossOrigin": False,
            },
            separators=(",", ":"),
        ).encode("utf-8")

    def make_credential(self, options: dict, origin: str, *, rp_id: Optional[str] = None) -> dict:
        """Answer ``navigator.credentials.create`` for the given creation options."""
        rp_id = rp_id or options["rp"]["id"]
        private_key = ec.generate_private_key(ec.SECP256R1())
        credential_id = os.urandom(32)
        user_handle = b64url_decode(options["user"]["id"])
        self.credentials[credential_id] = SoftwareCredential(
            credential_id=credential_id,
            private_key=private_key,
            rp_id=rp_id,
            user_handle=user_handle,
        )

        client_data = self._client_data("webauthn.create", options["challenge"], origin)
        auth_data = (
            hashlib.sha256(rp_id.encode("utf-8")).digest()
            + struct.pack(">BI", FLAG_UP | FLAG_UV | FLAG_AT, 0)
            + self.aaguid
            + struct.pack(">H", len(credential_id))
            + credential_id
            + _cose_public_key(private_key.public_key())
        )

        if self.attestation_format == "packed":
            signature = private_key.sign(
                auth_data + hashlib.sha256(client_data).digest(),
                ec.ECDSA(SHA256()),
            )
            att_stmt = {"alg": -7, "sig": signature}
        else:
            att_stmt = {}

        attestation_object = cbor2.dumps(
            {"fmt": self.attestation_format, "attStmt": att_stmt, "authData": auth_data}
        )
        return {
            "id": b64url_encode(credential_id),
            "rawId": b64url_encode(credential_id),
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(client_data),
                "attestationObject": b64url_encode(attestation_object),
                "transports": ["internal"],
            },
            "authenticatorAttachment": "platform",
            "clientExtensionResults": {},
        }

    def get_assertion(
        self,
        options: dict,
        origin: str,
        *,
        credential_id: Optional[bytes] = None,
        signing_key: Optional[ec.EllipticCurvePrivateKey] = None,
        include_user_handle: bool = True,
    ) -> dict:
        """Answer ``navigator.credentials.get`` for the given request options."""
        if credential_id is None:
            for descriptor in options.get("allowCredentials") or []:
                candidate = b64url_decode(descriptor["id"])
                if candidate in self.credentials:
                    credential_id = candidate
                    break
        if credential_id is None and not options.get("allowCredentials") and self.credentials:
            credential_id = next(iter(self.credentials))
        if credential_id is None or credential_id not in self.credentials:
            raise ValueError("No matching credential found for assertion")

        stored = self.credentials[credential_id]
        stored.sign_count += self.counter_step

        client_data = self._client_data("webauthn.get", options["challenge"], origin)
        auth_data = hashlib.sha256(stored.rp_id.encode("utf-8")).digest() + struct.pack(
            ">BI", FLAG_UP | FLAG_UV, stored.sign_count
        )
        key = signing_key or stored.private_key
        signature = key.sign(auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(SHA256()))

        response = {
            "clientDataJSON": b64url_encode(client_data),
            "authenticatorData": b64url_encode(auth_data),
            "signature": b64url_encode(signature),
        }
        if include_user_handle:
            response["userHandle"] = b64url_encode(stored.user_handle)
        return {
            "id": b64url_encode(credential_id),
            "rawId": b64url_encode(credential_id),
            "type": "public-key",
            "response": response,
            "authenticatorAttachment": "platform",
            "clientExtensionResults": {},
        }
