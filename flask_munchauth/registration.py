"""
Sign-up by email verification.

A Pending Registration holds the name and email until the verification link
is followed; only then is the permanent identity created. States per email:
no registration -> pending -> promoted, or pending -> expired (TTL).
"""

import math

from flask import current_app

from .errors import (
    AuthError, EMAIL_EXISTS, RESEND_COOLDOWN, NOT_FOUND, INVALID_TOKEN, TOKEN_EXPIRED,
)
from .magic_link import issue_magic_link
from .storage import EMAIL_VERIFICATION
from .utils import utcnow


def _cooldown_remaining(pending, now=None):
    """Seconds left before another verification email may be sent (0 if none)."""
    cooldown = current_app.config.get('MUNCH_RESEND_COOLDOWN', 60)
    last_sent = pending.get('last_resend_at') or pending['created_at']
    elapsed = ((now or utcnow()) - last_sent).total_seconds()
    if elapsed >= cooldown:
        return 0
    return math.ceil(cooldown - elapsed)


def _raise_cooldown(remaining):
    raise AuthError(
        429,
        f"Please wait {remaining} seconds before resending",
        RESEND_COOLDOWN,
        remainingSeconds=remaining,
    )


def start_registration(name, email, storage):
    """Create (or restart) a Pending Registration and send the verification link."""
    if storage.get_user_by_email(email):
        raise AuthError(400, "Email already registered", EMAIL_EXISTS)

    pending = storage.get_pending_registration(email)
    if pending:
        remaining = _cooldown_remaining(pending)
        if remaining:
            _raise_cooldown(remaining)

    issued = issue_magic_link(email, purpose=EMAIL_VERIFICATION, storage=storage)
    entry = storage.get_token(issued['token'])

    # Restart semantics: the fresh record replaces any earlier one
    pending = storage.create_pending_registration(email, name, entry['expires_at'])
    current_app.logger.info("Pending registration created")

    return {'pending': pending, 'link': issued['link']}


def resend_verification(email, storage):
    """Send a new verification link for an existing Pending Registration."""
    pending = storage.get_pending_registration(email)
    if not pending:
        raise AuthError(404, "Registration not found", NOT_FOUND)

    remaining = _cooldown_remaining(pending)
    if remaining:
        _raise_cooldown(remaining)

    issued = issue_magic_link(email, purpose=EMAIL_VERIFICATION, storage=storage)
    entry = storage.get_token(issued['token'])
    pending = storage.record_resend(email, entry['expires_at'])

    return {'pending': pending, 'link': issued['link']}


def promote_registration(email, storage):
    """Turn the Pending Registration for ``email`` into a permanent identity.

    Idempotent: when the identity already exists (another request promoted
    first) it is returned as is.
    """
    existing = storage.get_user_by_email(email)
    if existing:
        storage.delete_pending_registration(email)
        return existing

    pending = storage.get_pending_registration(email)
    if not pending:
        raise AuthError(404, "Registration not found", NOT_FOUND)

    user = storage.get_or_create_user(email, name=pending['name'], email_verified=utcnow())
    storage.delete_pending_registration(email)
    current_app.logger.info("Promoted pending registration to user %s", user['id'])
    return user


def verify_registration(token, email, storage):
    """Confirm an email-verification token and promote its registration.

    Registration tokens are single-shot: the ledger entry is deleted once the
    identity exists, with no grace window.
    """
    entry = storage.get_token(token)
    if not entry or entry['purpose'] != EMAIL_VERIFICATION or entry['email'] != email:
        raise AuthError(400, "Invalid or expired token", INVALID_TOKEN)

    if entry['expires_at'] <= utcnow():
        storage.delete_token(token)
        raise AuthError(400, "Token has expired", TOKEN_EXPIRED)

    if entry['used_at'] is not None:
        raise AuthError(400, "Invalid or expired token", INVALID_TOKEN)

    user = storage.get_user_by_email(email)
    if not user and not storage.get_pending_registration(email):
        raise AuthError(404, "Registration not found", NOT_FOUND)

    # Only one concurrent request gets to delete the entry
    if not storage.delete_token(token):
        raise AuthError(400, "Invalid or expired token", INVALID_TOKEN)

    return promote_registration(email, storage)
