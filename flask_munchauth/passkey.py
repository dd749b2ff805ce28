"""
passkey.py: WebAuthn ceremonies for flask-munchauth

Design goals:
- Passkeys are added to an existing account, never used to create one.
- One pending challenge per user, taken (read and cleared) before
  verification so it is gone whether verification succeeds or not.
- Every verification failure looks the same to the client.
- Both ceremonies end by minting a bridge token; no session is created here.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from flask import current_app
from webauthn import (
    generate_registration_options,
    verify_registration_response,
    generate_authentication_options,
    verify_authentication_response,
    options_to_json,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .errors import AuthError, NO_CHALLENGE, NO_PASSKEYS, VERIFY_FAILED, INVALID_REQUEST
from .tokens import BridgeTokens
from .utils import utcnow


_KNOWN_TRANSPORTS = {t.value for t in AuthenticatorTransport}


def _descriptors(passkeys: List[Dict[str, Any]]) -> List[PublicKeyCredentialDescriptor]:
    return [
        PublicKeyCredentialDescriptor(
            id=pk['credential_id'],
            transports=[
                AuthenticatorTransport(t) for t in pk.get('transports') or []
                if t in _KNOWN_TRANSPORTS
            ] or None,
        )
        for pk in passkeys
    ]


def _credential_id(credential: Dict[str, Any]) -> Optional[bytes]:
    raw_id = credential.get('rawId') or credential.get('id')
    if not raw_id or not isinstance(raw_id, str):
        return None
    try:
        return base64url_to_bytes(raw_id)
    except (ValueError, TypeError):
        return None


class PasskeyAuth:
    """
    Passkey registration and login.

    Typical flow:
      1) begin_registration(user) -> PublicKeyCredentialCreationOptions JSON
      2) browser: navigator.credentials.create({publicKey})
      3) finish_registration(user, credential) -> {registered, loginToken}

      1) begin_authentication(email) -> PublicKeyCredentialRequestOptions JSON
      2) browser: navigator.credentials.get({publicKey})
      3) finish_authentication(email, credential) -> {authenticated, loginToken}

    ``origin`` and ``rp_id`` come from utils.origin_and_rp_id() for the
    request being handled.
    """

    def __init__(self, storage, bridge: Optional[BridgeTokens] = None, *, timeout_ms: int = 60000):
        self.storage = storage
        self.bridge = bridge or BridgeTokens()
        self.timeout_ms = int(timeout_ms)

    def _require_uv(self) -> bool:
        return bool(current_app.config.get('MUNCH_REQUIRE_USER_VERIFICATION', True))

    # ==================== Registration ====================

    def begin_registration(self, user: Dict[str, Any], *, rp_id: str) -> Dict[str, Any]:
        existing = self.storage.get_passkeys(user['id'])

        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=current_app.config.get('MUNCH_RP_NAME', 'MunchAI'),
            user_id=str(user['id']).encode(),
            user_name=user['email'],
            user_display_name=user.get('name') or user['email'],
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=_descriptors(existing),
            timeout=self.timeout_ms,
        )

        # Overwrites any earlier, unfinished ceremony for this user
        self.storage.set_challenge(user['id'], bytes_to_base64url(options.challenge))
        return json.loads(options_to_json(options))

    def finish_registration(self, user: Dict[str, Any], credential: Dict[str, Any], *,
                            origin: str, rp_id: str) -> Dict[str, Any]:
        challenge = self.storage.take_challenge(user['id'])
        if not challenge:
            raise AuthError(400, "No pending challenge", NO_CHALLENGE)
        if not credential or not isinstance(credential, dict):
            raise AuthError(400, "Credential required", INVALID_REQUEST)

        try:
            verification = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge),
                expected_origin=origin,
                expected_rp_id=rp_id,
                require_user_verification=self._require_uv(),
            )
        except Exception as e:
            current_app.logger.warning(
                "Passkey registration failed for user %s: %s", user['id'], type(e).__name__
            )
            raise AuthError(400, "Registration verification failed", VERIFY_FAILED)

        transports = credential.get('transports') or (credential.get('response') or {}).get('transports')
        added = self.storage.add_passkey(user['id'], {
            'credential_id': bytes(verification.credential_id),
            'public_key': bytes(verification.credential_public_key),
            'sign_count': verification.sign_count,
            'transports': [t for t in transports or [] if t in _KNOWN_TRANSPORTS],
        })

        # Completing a ceremony bound to this account proves control of it
        self.storage.mark_email_verified(user['id'], utcnow())

        current_app.logger.info(
            "Passkey %s for user %s", "registered" if added else "already registered", user['id']
        )
        return {'registered': True, 'loginToken': self.bridge.mint(user['id'])}

    # ==================== Authentication ====================

    def begin_authentication(self, email: str, *, rp_id: str) -> Dict[str, Any]:
        user = self.storage.get_user_by_email(email)
        passkeys = self.storage.get_passkeys(user['id']) if user else []
        if not passkeys:
            raise AuthError(404, "No passkeys registered", NO_PASSKEYS)

        options = generate_authentication_options(
            rp_id=rp_id,
            timeout=self.timeout_ms,
            allow_credentials=_descriptors(passkeys),
            user_verification=UserVerificationRequirement.PREFERRED,
        )

        self.storage.set_challenge(user['id'], bytes_to_base64url(options.challenge))
        return json.loads(options_to_json(options))

    def finish_authentication(self, email: str, credential: Dict[str, Any], *,
                              origin: str, rp_id: str) -> Dict[str, Any]:
        user = self.storage.get_user_by_email(email)
        challenge = self.storage.take_challenge(user['id']) if user else None
        if not challenge:
            raise AuthError(400, "No pending challenge", NO_CHALLENGE)
        if not credential or not isinstance(credential, dict):
            raise AuthError(400, "Credential required", INVALID_REQUEST)

        passkeys = self.storage.get_passkeys(user['id'])
        if not passkeys:
            raise AuthError(404, "No passkeys", NO_PASSKEYS)

        credential_id = _credential_id(credential)
        stored = next((pk for pk in passkeys if pk['credential_id'] == credential_id), None)
        if stored is None:
            current_app.logger.warning("Passkey login with unknown credential for user %s", user['id'])
            raise AuthError(400, "Authentication failed", VERIFY_FAILED)

        try:
            verification = verify_authentication_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge),
                expected_origin=origin,
                expected_rp_id=rp_id,
                credential_public_key=stored['public_key'],
                credential_current_sign_count=stored['sign_count'],
                require_user_verification=self._require_uv(),
            )
        except Exception as e:
            current_app.logger.warning(
                "Passkey login failed for user %s: %s", user['id'], type(e).__name__
            )
            raise AuthError(400, "Authentication failed", VERIFY_FAILED)

        new_count = verification.new_sign_count
        # Authenticators without a counter always report 0; anything else must grow
        if (new_count or stored['sign_count']) and new_count <= stored['sign_count']:
            current_app.logger.warning(
                "Passkey sign counter did not increase for user %s (%s -> %s)",
                user['id'], stored['sign_count'], new_count,
            )
            raise AuthError(400, "Authentication failed", VERIFY_FAILED)

        self.storage.update_passkey_sign_count(user['id'], stored['credential_id'], new_count)

        current_app.logger.info("Passkey login for user %s", user['id'])
        return {'authenticated': True, 'loginToken': self.bridge.mint(user['id'])}
