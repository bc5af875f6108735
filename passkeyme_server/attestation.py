"""Attestation policy and COSE algorithm allow-list for passkey registration."""
from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple, Type

from fido2.attestation import (
    AndroidSafetynetAttestation,
    AppleAttestation,
    Attestation,
    AttestationResult,
    FidoU2FAttestation,
    NoneAttestation,
    PackedAttestation,
    TpmAttestation,
)
from fido2.attestation.base import InvalidAttestation, UnsupportedType
from fido2.cose import CoseKey
from fido2.webauthn import (
    AttestationConveyancePreference,
    AttestationObject,
    PublicKeyCredentialParameters,
    PublicKeyCredentialType,
)

from .models import ATTESTATION_PREFERENCES

__all__ = [
    "ALLOWED_ALGORITHMS",
    "ATTESTATION_FORMATS",
    "AttestationPolicy",
    "AttestationRejected",
    "credential_parameters",
    "is_allowed_algorithm",
]

logger = logging.getLogger(__name__)


# ES256, EdDSA, ES384, ES512, PS256, RS256 in order of preference.
_PREFERRED_ALGORITHMS: Tuple[int, ...] = (-7, -8, -35, -36, -37, -257)

ALLOWED_ALGORITHMS: Tuple[int, ...] = tuple(
    alg for alg in _PREFERRED_ALGORITHMS if alg in set(CoseKey.supported_algorithms())
)

ATTESTATION_FORMATS: Dict[str, Type[Attestation]] = {
    "none": NoneAttestation,
    "packed": PackedAttestation,
    "fido-u2f": FidoU2FAttestation,
    "tpm": TpmAttestation,
    "android-safetynet": AndroidSafetynetAttestation,
    "apple": AppleAttestation,
}


class AttestationRejected(InvalidAttestation):
    """The attestation statement does not satisfy the application's policy."""


def credential_parameters() -> list:
    return [
        PublicKeyCredentialParameters(type=PublicKeyCredentialType.PUBLIC_KEY, alg=alg)
        for alg in ALLOWED_ALGORITHMS
    ]


def is_allowed_algorithm(alg: Optional[int]) -> bool:
    return alg in ALLOWED_ALGORITHMS


class AttestationPolicy:
    """Decides which attestation statements a registration may carry.

    ``none`` ignores the statement entirely. ``indirect`` verifies any
    statement that is present but accepts ``none``. ``direct`` requires a
    verifiable, non-``none`` statement.
    """

    def __init__(self, preference: str = "none") -> None:
        if preference not in ATTESTATION_PREFERENCES:
            raise ValueError(f"unknown attestation preference {preference!r}")
        self.preference = AttestationConveyancePreference(preference)

    @property
    def conveyance(self) -> Optional[AttestationConveyancePreference]:
        if self.preference == AttestationConveyancePreference.NONE:
            return None
        return self.preference

    def __call__(self, attestation_object: AttestationObject, client_data_hash: bytes) -> None:
        self.verify(attestation_object, client_data_hash)

    def verify(
        self,
        attestation_object: AttestationObject,
        client_data_hash: bytes,
    ) -> Optional[AttestationResult]:
        fmt = attestation_object.fmt
        if self.preference == AttestationConveyancePreference.NONE:
            return None

        verifier_cls = ATTESTATION_FORMATS.get(fmt)
        if verifier_cls is None:
            raise UnsupportedType(attestation_object.auth_data, fmt)

        if fmt == "none":
            if self.preference == AttestationConveyancePreference.DIRECT:
                raise AttestationRejected("direct attestation requires a signed statement")
            return None

        result = verifier_cls().verify(
            attestation_object.att_stmt,
            attestation_object.auth_data,
            client_data_hash,
        )
        logger.debug("Verified %s attestation (type %s)", fmt, result.attestation_type.name)
        return result
