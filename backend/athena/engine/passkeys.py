"""
Passkey (WebAuthn) ceremonies on top of py_webauthn.

Registration and discoverable-credential login. Verification failures are
collapsed into RegistrationFailed / AuthenticationFailed so callers cannot
tell which check tripped; the real reason only goes to the log.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url, options_to_json
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from ..config import Settings

logger = logging.getLogger(__name__)

CEREMONY_TIMEOUT_MS = 60_000


class PasskeyError(Exception):
    pass


class RegistrationFailed(PasskeyError):
    pass


class AuthenticationFailed(PasskeyError):
    pass


@dataclass
class StoredCredential:
    """One registered authenticator as kept on the user row (base64url strings)."""
    credential_id: str
    public_key: str
    sign_count: int = 0
    transports: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "StoredCredential":
        return cls(
            credential_id=row["credential_id"],
            public_key=row["public_key"],
            sign_count=int(row.get("sign_count") or 0),
            transports=list(row.get("transports") or []),
        )

    def to_row(self) -> dict:
        return {
            "credential_id": self.credential_id,
            "public_key": self.public_key,
            "sign_count": self.sign_count,
            "transports": self.transports,
        }


def _options_to_dict(options: Any) -> dict[str, Any]:
    return json.loads(options_to_json(options))


# ── Registration ──────────────────────────────────────────────────────────────

def registration_options(
    settings: Settings,
    username: str,
    user_handle: bytes,
) -> tuple[dict[str, Any], bytes]:
    """Returns (options for navigator.credentials.create(), raw challenge)."""
    options = generate_registration_options(
        rp_id=settings.rp_id,
        rp_name=settings.rp_name,
        user_id=user_handle,
        user_name=username,
        user_display_name=username,
        attestation=AttestationConveyancePreference.NONE,
        authenticator_selection=AuthenticatorSelectionCriteria(
            authenticator_attachment=AuthenticatorAttachment.PLATFORM,
            resident_key=ResidentKeyRequirement.PREFERRED,
            user_verification=UserVerificationRequirement.PREFERRED,
        ),
        timeout=CEREMONY_TIMEOUT_MS,
    )
    return _options_to_dict(options), options.challenge


def verify_registration(settings: Settings, credential: dict, expected_challenge: bytes) -> StoredCredential:
    try:
        verification = verify_registration_response(
            credential=credential,
            expected_challenge=expected_challenge,
            expected_rp_id=settings.rp_id,
            expected_origin=settings.origin,
            require_user_verification=False,
        )
    except Exception as e:
        logger.warning("Passkey registration verification failed: %s", e)
        raise RegistrationFailed("Registration verification failed") from None

    response = credential.get("response") or {}
    return StoredCredential(
        credential_id=bytes_to_base64url(verification.credential_id),
        public_key=bytes_to_base64url(verification.credential_public_key),
        sign_count=verification.sign_count,
        transports=list(response.get("transports") or []),
    )


# ── Authentication ────────────────────────────────────────────────────────────

def authentication_options(settings: Settings) -> tuple[dict[str, Any], bytes]:
    """Empty allow-list: the authenticator picks the discoverable credential."""
    options = generate_authentication_options(
        rp_id=settings.rp_id,
        allow_credentials=[],
        user_verification=UserVerificationRequirement.PREFERRED,
        timeout=CEREMONY_TIMEOUT_MS,
    )
    return _options_to_dict(options), options.challenge


def credential_id_from_response(credential: dict) -> str:
    """Canonical base64url id of the credential the authenticator used."""
    raw_id = credential.get("rawId") or credential.get("id")
    if not raw_id or not isinstance(raw_id, str):
        raise AuthenticationFailed("Authentication failed")
    try:
        return bytes_to_base64url(base64url_to_bytes(raw_id))
    except Exception:
        raise AuthenticationFailed("Authentication failed") from None


def check_sign_count(stored_count: int, new_count: int) -> None:
    """
    The authenticator's counter must move strictly forward. Authenticators
    that never count (0 before and after) are exempt; their replays are
    stopped by the single-use challenge instead.
    """
    if stored_count == 0 and new_count == 0:
        return
    if new_count <= stored_count:
        logger.warning("Sign count did not advance (stored=%d, got=%d)", stored_count, new_count)
        raise AuthenticationFailed("Authentication failed")


def verify_authentication(
    settings: Settings,
    credential: dict,
    expected_challenge: bytes,
    stored: StoredCredential,
) -> int:
    """Verify an assertion against a stored credential. Returns the new sign count."""
    try:
        verification = verify_authentication_response(
            credential=credential,
            expected_challenge=expected_challenge,
            expected_rp_id=settings.rp_id,
            expected_origin=settings.origin,
            credential_public_key=base64url_to_bytes(stored.public_key),
            credential_current_sign_count=stored.sign_count,
            require_user_verification=False,
        )
    except Exception as e:
        logger.warning("Passkey authentication failed: %s", e)
        raise AuthenticationFailed("Authentication failed") from None

    check_sign_count(stored.sign_count, verification.new_sign_count)
    return verification.new_sign_count
