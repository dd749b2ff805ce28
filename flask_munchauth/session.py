from datetime import datetime, timedelta
from flask import session, current_app, g

from .magic_link import within_grace
from .storage import LOGIN
from .tokens import BridgeTokens
from .utils import utcnow, as_utc


class SessionManager:
    """Issues the long-lived session and re-checks it on every request.

    The session cookie only binds an identity id. Anything that needs the
    user goes through current_user(), which re-reads the store.
    """

    def __init__(self, storage, bridge=None):
        self.storage = storage
        self.bridge = bridge or BridgeTokens()

    def authorize(self, token):
        """Resolve a login token to a user, or None.

        Accepts a bridge token, or (when MUNCH_ACCEPT_LEDGER_TOKENS is on) a
        raw login-link token that was followed within the grace window.
        """
        if not token:
            return None

        user_id = self.bridge.load(token)
        if user_id is not None:
            user = self.storage.get_user_by_id(user_id)
            if not user:
                current_app.logger.warning("Bridge token for a user that no longer exists")
            return user

        if not current_app.config.get('MUNCH_ACCEPT_LEDGER_TOKENS', True):
            return None

        entry = self.storage.get_token(token)
        if not entry or entry['purpose'] != LOGIN or not within_grace(entry):
            return None
        return self.storage.get_user_by_email(entry['email'])

    def login(self, user):
        now = utcnow().isoformat()
        session.clear()
        session.permanent = True
        session['user_id'] = user['id']
        session['logged_in_at'] = now
        session['refreshed_at'] = now
        g.munch_user = user

    def logout(self):
        session.clear()
        g.munch_user = None

    def validate(self):
        """Session validity guard. Runs before every request.

        Clears sessions that are past their lifetime or whose user has been
        deleted; the request then continues as anonymous. Slides the expiry
        forward at most once per MUNCH_SESSION_REFRESH seconds.
        """
        g.munch_user = None
        user_id = session.get('user_id')
        if user_id is None:
            return None

        try:
            refreshed_at = as_utc(datetime.fromisoformat(
                session.get('refreshed_at') or session.get('logged_in_at')
            ))
        except (ValueError, TypeError):
            session.clear()
            return None

        now = utcnow()
        duration = current_app.config.get('MUNCH_SESSION_DURATION', 7 * 24 * 60 * 60)
        if now - refreshed_at > timedelta(seconds=duration):
            session.clear()
            return None

        user = self.storage.get_user_by_id(user_id)
        if not user:
            current_app.logger.warning("Session user %s no longer exists, clearing session", user_id)
            session.clear()
            return None

        refresh = current_app.config.get('MUNCH_SESSION_REFRESH', 24 * 60 * 60)
        if now - refreshed_at >= timedelta(seconds=refresh):
            session.permanent = True
            session['refreshed_at'] = now.isoformat()

        g.munch_user = user
        return user

    def current_user(self):
        if 'munch_user' not in g:
            self.validate()
        return g.munch_user
