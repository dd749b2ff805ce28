import secrets
from urllib.parse import urlencode
from datetime import timedelta
from flask import url_for, current_app
from flask_mail import Mail, Message

from .errors import AuthError, NOT_FOUND, TOKEN_EXPIRED, EMAIL_DELIVERY_FAILED
from .storage import LOGIN, EMAIL_VERIFICATION
from .tokens import BridgeTokens
from .utils import utcnow


def within_grace(entry, now=None):
    """True if a used ledger entry may still stand in as proof of login."""
    if not entry or entry.get('used_at') is None:
        return False
    now = now or utcnow()
    if entry['expires_at'] <= now:
        return False
    grace = current_app.config.get('MUNCH_LOGIN_GRACE', 300)
    return now - entry['used_at'] <= timedelta(seconds=grace)


def _link_for(token, email, purpose):
    if purpose == EMAIL_VERIFICATION:
        base = current_app.config.get('MUNCH_VERIFY_URL')
        if base:
            # Host app renders its own verification page and calls the API
            return f"{base}?{urlencode({'token': token, 'email': email})}"
        return url_for('munchauth.verify_registration', token=token, email=email, _external=True)
    return url_for('munchauth.magic_link_verify', token=token, _external=True)


def issue_magic_link(email, purpose=LOGIN, storage=None):
    """Mint a ledger entry for ``email`` and send the link.

    Args:
        email (str): Normalized email address.
        purpose (str): ``login`` or ``email-verification``.
        storage (StorageAdapter): Storage adapter instance.

    Returns:
        dict: ``token``, ``request_id`` and ``link``. The request id is what a
        waiting browser tab polls with; the token only travels by email.
    """
    # 256-bit tokens; only their HMAC is persisted
    token = secrets.token_urlsafe(32)
    request_id = secrets.token_urlsafe(32)

    storage.store_token(token, {
        'email': email,
        'purpose': purpose,
        'request_id': request_id,
    })

    link = _link_for(token, email, purpose)

    if not current_app.config.get('MUNCH_DEV_MODE', False):
        try:
            send_magic_link_email(email, link, purpose)
        except Exception:
            current_app.logger.exception("Failed to send %s email", purpose)
            raise AuthError(500, "Failed to send email", EMAIL_DELIVERY_FAILED)
    else:
        # DEV MODE: log the link instead of sending email
        current_app.logger.info(f"MAGIC LINK ({purpose}) for {email}: {link}")

    return {'token': token, 'request_id': request_id, 'link': link}


def send_magic_link_email(email, link, purpose=LOGIN):
    """Send a sign-in or verification link via Flask-Mail."""
    app_name = current_app.config.get('MUNCH_APP_NAME', 'MunchAI')
    expiry_minutes = current_app.config.get('MUNCH_TOKEN_EXPIRY', 15)

    if purpose == EMAIL_VERIFICATION:
        subject = f"Verify your {app_name} email"
        action = "verify your email and finish creating your account"
        button = "Verify email"
    else:
        subject = f"Your {app_name} sign-in link"
        action = f"sign in to {app_name}"
        button = "Sign in"

    text = (
        f"Click this link to {action}: {link}\n\n"
        f"This link will expire in {expiry_minutes} minutes."
    )

    html = f"""
    <html>
        <body style="font-family: system-ui, -apple-system, Segoe UI, Roboto, Helvetica, Arial, sans-serif;">
            <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
                <h2>{subject}</h2>
                <p>Click the button below to {action}.</p>
                <p>
                    <a href="{link}"
                       style="display: inline-block; padding: 10px 16px;
                              background: #ea580c; color: #fff;
                              text-decoration: none; border-radius: 6px;">
                        {button}
                    </a>
                </p>
                <p>Or copy and paste this URL into your browser:</p>
                <p style="word-break: break-all; color: #666;">{link}</p>
                <p><em>This link will expire in {expiry_minutes} minutes.</em></p>
                <p>If you did not request this, you can safely ignore this email.</p>
            </div>
        </body>
    </html>
    """

    # Get or create Mail instance
    if not hasattr(current_app, '_munch_mail'):
        current_app._munch_mail = Mail(current_app)

    mail = current_app._munch_mail

    msg = Message(
        subject=subject,
        recipients=[email],
        body=text,
        html=html,
        sender=current_app.config.get('MAIL_DEFAULT_SENDER'),
    )

    mail.send(msg)


def follow_magic_link(token, storage=None, bridge=None):
    """Handle a clicked link. Returns a result dict; never raises for bad tokens.

    The entry is consumed before any identity work happens, so when two tabs
    open the same link only one of them gets past this point.
    """
    bridge = bridge or BridgeTokens()

    entry = storage.get_token(token) if token else None
    if not entry:
        return {'success': False, 'error': 'invalid_token'}
    if entry['used_at'] is not None:
        return {'success': False, 'error': 'used_token'}
    if entry['expires_at'] <= utcnow():
        return {'success': False, 'error': 'expired_token'}

    consumed = storage.consume_token(token)
    if not consumed:
        current_app.logger.warning("Magic link lost the race to another request")
        latest = storage.get_token(token)
        if latest and latest['used_at'] is not None:
            return {'success': False, 'error': 'used_token'}
        return {'success': False, 'error': 'expired_token'}

    email = consumed['email']
    user = storage.get_user_by_email(email)

    if consumed['purpose'] == EMAIL_VERIFICATION and not user:
        from .registration import promote_registration
        try:
            user = promote_registration(email, storage)
        except AuthError:
            return {'success': False, 'error': 'registration_not_found'}
    elif not user and current_app.config.get('MUNCH_AUTO_CREATE_USERS', True):
        user = storage.get_or_create_user(email)
        current_app.logger.info("Created account on first sign-in link (user %s)", user['id'])

    if not user:
        return {'success': False, 'error': 'invalid_user'}

    if consumed['purpose'] == EMAIL_VERIFICATION:
        # Registration tokens have no grace window
        storage.delete_token(token)

    storage.mark_email_verified(user['id'], utcnow())

    return {'success': True, 'user': user, 'login_token': bridge.mint(user['id'])}


def poll_magic_link(request_id, storage=None, bridge=None):
    """Read-only check made by the tab waiting for the link to be clicked."""
    bridge = bridge or BridgeTokens()

    entry = storage.get_token_by_request_id(request_id)
    if not entry or entry['purpose'] != LOGIN:
        raise AuthError(404, "Request not found", NOT_FOUND)

    now = utcnow()
    if entry['used_at'] is None:
        if entry['expires_at'] <= now:
            raise AuthError(400, "Request expired", TOKEN_EXPIRED)
        return {'pending': True}

    if not within_grace(entry, now):
        raise AuthError(400, "Request expired", TOKEN_EXPIRED)

    user = storage.get_user_by_email(entry['email'])
    if not user:
        raise AuthError(404, "Request not found", NOT_FOUND)

    return {'success': True, 'token': bridge.mint(user['id'])}
