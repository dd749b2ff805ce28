from functools import wraps
from datetime import datetime, timezone
from urllib.parse import urlparse

from flask import current_app, session, redirect, g, request


def utcnow():
    """Timezone-aware current UTC time. All stored timestamps use this."""
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes read back from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def normalize_email(email):
    """Trim and lower-case an email address. Returns '' for empty input."""
    return str(email or '').strip().lower()


def origin_and_rp_id():
    """Resolve the expected WebAuthn origin and relying-party id.

    The origin is scheme://host[:port]; the RP ID is the bare hostname.
    MUNCH_ORIGIN pins the origin; otherwise the request's Origin header is
    used, falling back to the URL the request was made against.
    """
    raw = (
        current_app.config.get('MUNCH_ORIGIN')
        or request.headers.get('Origin')
        or request.host_url
    )
    parsed = urlparse(raw)
    if not parsed.scheme or not parsed.hostname:
        parsed = urlparse(request.host_url)

    origin = f"{parsed.scheme}://{parsed.netloc}"
    return origin, parsed.hostname


def login_required(f):
    """Decorator to require login for a host-app view.

    Example:
        @app.route('/pantry')
        @login_required
        def pantry():
            return 'Protected page'
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        munch = current_app.extensions.get('munchauth')

        if not munch or not munch.is_authenticated():
            return redirect(current_app.config.get('MUNCH_LOGIN_URL', '/login'))

        # Add the current user to flask.g for easy access
        g.user = munch.get_current_user()

        return f(*args, **kwargs)
    return decorated_function

def get_current_user():
    """Get the current authenticated user.

    Returns:
        dict or None: The current user if authenticated, None otherwise
    """
    munch = current_app.extensions.get('munchauth')

    if not munch or not munch.is_authenticated():
        return None

    return munch.get_current_user()

def is_authenticated():
    """Check if the current user is authenticated."""
    munch = current_app.extensions.get('munchauth')

    if not munch:
        return False

    return munch.is_authenticated()

def logout():
    """Clear the session and redirect to the login page."""
    session.clear()
    return redirect(current_app.config.get('MUNCH_LOGIN_URL', '/login'))
