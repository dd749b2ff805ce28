from datetime import datetime, timedelta
from urllib.parse import urlencode

from flask import Blueprint, redirect, request, current_app
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from .errors import (
    AuthError, success_response, error_response,
    INVALID_REQUEST, UNAUTHORIZED, NOT_FOUND, RATE_LIMIT,
)
from .magic_link import issue_magic_link, follow_magic_link, poll_magic_link
from .passkey import PasskeyAuth
from .registration import (
    start_registration, resend_verification, verify_registration as confirm_registration,
)
from .session import SessionManager
from .storage import InMemoryStorageAdapter, LOGIN
from .tokens import BridgeTokens
from .utils import normalize_email, origin_and_rp_id


def _json_body():
    return request.get_json(silent=True) or {}


def _require_email(value):
    email = normalize_email(value)
    if not email or '@' not in email:
        raise AuthError(400, "Email is required", INVALID_REQUEST)
    return email


def _default_flask_config(app, key, value):
    if app.config.get(key) == app.default_config.get(key):
        app.config[key] = value


def _public_user(user):
    if not user:
        return {}
    verified = user.get('email_verified')
    if isinstance(verified, datetime):
        verified = verified.isoformat()
    return {
        'id': user['id'],
        'email': user['email'],
        'name': user.get('name'),
        'emailVerified': verified,
    }


class MunchAuth:
    """Passwordless authentication (passkeys + magic links) for Flask."""

    def __init__(self, app=None, storage_adapter=None):
        self.app = app
        self.blueprint = Blueprint('munchauth', __name__)

        self.storage = storage_adapter or InMemoryStorageAdapter()
        self.bridge = BridgeTokens()
        self.passkey = PasskeyAuth(self.storage, self.bridge)
        self.sessions = SessionManager(self.storage, self.bridge)
        self.limiter = Limiter(key_func=get_remote_address)

        self._register_routes()

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        """Initialize the extension with Flask app."""
        app.config.setdefault('MUNCH_TOKEN_EXPIRY', 15)
        app.config.setdefault('MUNCH_LOGIN_GRACE', 300)
        app.config.setdefault('MUNCH_BRIDGE_TOKEN_MAX_AGE', 300)
        app.config.setdefault('MUNCH_SESSION_DURATION', 7 * 24 * 60 * 60)
        app.config.setdefault('MUNCH_SESSION_REFRESH', 24 * 60 * 60)
        app.config.setdefault('MUNCH_RESEND_COOLDOWN', 60)
        app.config.setdefault('MUNCH_PENDING_REGISTRATION_TTL', 60 * 60)
        app.config.setdefault('MUNCH_RP_NAME', 'MunchAI')
        app.config.setdefault('MUNCH_ORIGIN', None)
        app.config.setdefault('MUNCH_REQUIRE_USER_VERIFICATION', True)
        app.config.setdefault('MUNCH_DEV_MODE', False)
        app.config.setdefault('MUNCH_AUTO_CREATE_USERS', True)
        app.config.setdefault('MUNCH_ACCEPT_LEDGER_TOKENS', True)
        app.config.setdefault('MUNCH_LOGIN_URL', '/login')
        app.config.setdefault('MUNCH_VERIFY_URL', None)
        app.config.setdefault('MUNCH_URL_PREFIX', '/api/auth')
        app.config.setdefault('MUNCH_APP_NAME', 'MunchAI')
        app.config.setdefault('MUNCH_POLL_RATE_LIMIT', '30 per 10 seconds')

        # Session cookie: HttpOnly (Flask default), SameSite=Lax, Secure outside dev.
        # Flask pre-fills these keys, so only values still at Flask's default are replaced.
        _default_flask_config(app, 'SESSION_COOKIE_SAMESITE', 'Lax')
        if not app.config['MUNCH_DEV_MODE'] and not app.testing:
            _default_flask_config(app, 'SESSION_COOKIE_SECURE', True)
        _default_flask_config(app, 'SESSION_REFRESH_EACH_REQUEST', False)
        app.permanent_session_lifetime = timedelta(seconds=app.config['MUNCH_SESSION_DURATION'])

        app.extensions['munchauth'] = self
        self.limiter.init_app(app)

        if hasattr(self.storage, 'init_app'):
            self.storage.init_app(app)

        app.register_blueprint(self.blueprint, url_prefix=app.config['MUNCH_URL_PREFIX'])

    def is_authenticated(self):
        """Check if the current user is authenticated."""
        return self.sessions.current_user() is not None

    def get_current_user(self):
        """Get the current authenticated user."""
        return self.sessions.current_user()

    def login(self, user):
        self.sessions.login(user)

    def logout(self):
        self.sessions.logout()

    def _require_user(self):
        user = self.sessions.current_user()
        if not user:
            raise AuthError(401, "Unauthorized", UNAUTHORIZED)
        return user

    def _dev_extras(self, issued):
        # The link carries a live token; only expose it in dev mode
        if current_app.config.get('MUNCH_DEV_MODE', False):
            return {'link': issued['link']}
        return {}

    def _register_routes(self):
        """Register authentication routes on the blueprint."""

        @self.blueprint.before_app_request
        def guard_session():
            self.sessions.validate()

        self.blueprint.register_error_handler(AuthError, error_response)

        @self.blueprint.errorhandler(RateLimitExceeded)
        def handle_rate_limit(e):
            current_app.logger.warning("Rate limit hit on %s: %s", request.path, e.description)
            return error_response(AuthError(429, "Too many requests", RATE_LIMIT))

        @self.blueprint.errorhandler(Exception)
        def handle_unexpected(e):
            if isinstance(e, HTTPException):
                return e
            current_app.logger.exception("Unhandled error in auth endpoint")
            return error_response(e)

        # ==================== Passkey Routes ====================

        @self.blueprint.route('/passkey/generate-registration-options', methods=['POST'])
        def passkey_registration_options():
            user = self._require_user()
            _, rp_id = origin_and_rp_id()
            return success_response(self.passkey.begin_registration(user, rp_id=rp_id))

        @self.blueprint.route('/passkey/verify-registration', methods=['POST'])
        def passkey_verify_registration():
            user = self._require_user()
            origin, rp_id = origin_and_rp_id()
            credential = _json_body().get('credential')
            result = self.passkey.finish_registration(user, credential, origin=origin, rp_id=rp_id)
            return success_response(result)

        @self.blueprint.route('/passkey/generate-authentication-options', methods=['POST'])
        def passkey_authentication_options():
            email = _require_email(_json_body().get('email'))
            _, rp_id = origin_and_rp_id()
            return success_response(self.passkey.begin_authentication(email, rp_id=rp_id))

        @self.blueprint.route('/passkey/verify-authentication', methods=['POST'])
        def passkey_verify_authentication():
            data = _json_body()
            email = _require_email(data.get('email'))

            origin, rp_id = origin_and_rp_id()
            result = self.passkey.finish_authentication(
                email, data.get('credential'), origin=origin, rp_id=rp_id
            )
            return success_response(result)

        # ==================== Magic Link Routes ====================

        @self.blueprint.route('/magic-link/start', methods=['POST'])
        def magic_link_start():
            email = _require_email(_json_body().get('email'))
            issued = issue_magic_link(email, purpose=LOGIN, storage=self.storage)

            data = {'sent': True, 'requestId': issued['request_id']}
            data.update(self._dev_extras(issued))
            return success_response(data)

        @self.blueprint.route('/magic-link/verify')
        def magic_link_verify():
            """Browser-clicked link. Always redirects to the login page."""
            token = request.args.get('token', '')
            result = follow_magic_link(token, storage=self.storage, bridge=self.bridge)

            login_url = current_app.config.get('MUNCH_LOGIN_URL', '/login')
            if not result['success']:
                current_app.logger.warning("Magic link rejected: %s", result['error'])
                return redirect(f"{login_url}?{urlencode({'error': result['error']})}")

            params = urlencode({'loginToken': result['login_token'], 'verified': 1})
            return redirect(f"{login_url}?{params}")

        @self.blueprint.route('/magic-link/poll')
        @self.limiter.limit(lambda: current_app.config['MUNCH_POLL_RATE_LIMIT'])
        def magic_link_poll():
            request_id = request.args.get('requestId')
            if not request_id:
                raise AuthError(400, "Request ID is required", INVALID_REQUEST)
            return success_response(poll_magic_link(request_id, storage=self.storage, bridge=self.bridge))

        # ==================== Registration Routes ====================

        @self.blueprint.route('/register', methods=['POST'])
        def register():
            data = _json_body()
            name = str(data.get('name') or '').strip()
            email = normalize_email(data.get('email'))
            if not name or not email or '@' not in email:
                raise AuthError(400, "Name and email are required", INVALID_REQUEST)

            started = start_registration(name, email, self.storage)

            payload = {
                'email': email,
                'sent': True,
                'message': "Verification email sent. Please check your email.",
            }
            payload.update(self._dev_extras(started))
            return success_response(payload, 201)

        @self.blueprint.route('/resend-verification', methods=['POST'])
        def resend_verification_email():
            email = _require_email(_json_body().get('email'))
            resent = resend_verification(email, self.storage)

            payload = {'sent': True, 'message': "Verification email resent successfully"}
            payload.update(self._dev_extras(resent))
            return success_response(payload)

        @self.blueprint.route('/verify-registration')
        def verify_registration():
            token = request.args.get('token')
            email = normalize_email(request.args.get('email'))
            if not token or not email:
                raise AuthError(400, "Token and email are required", INVALID_REQUEST)

            user = confirm_registration(token, email, self.storage)
            return success_response({
                'message': "Email verified successfully.",
                'verified': True,
                'loginToken': self.bridge.mint(user['id']),
            })

        # ==================== Session Routes ====================

        @self.blueprint.route('/session', methods=['POST'])
        def create_session():
            """Exchange a login token from any ceremony for a session."""
            user = self.sessions.authorize(_json_body().get('loginToken'))
            if not user:
                raise AuthError(401, "Invalid or expired login token", UNAUTHORIZED)

            self.sessions.login(user)
            current_app.logger.info("Session issued for user %s", user['id'])
            return success_response({'user': _public_user(user)})

        @self.blueprint.route('/session', methods=['GET'])
        def get_session():
            return success_response({'user': _public_user(self.sessions.current_user())})

        @self.blueprint.route('/check-email', methods=['POST'])
        def check_email():
            email = _require_email(_json_body().get('email'))
            user = self.storage.get_user_by_email(email)
            if not user:
                raise AuthError(404, "Email not found. Please sign up first.", NOT_FOUND)

            return success_response({
                'email': user['email'],
                'hasPasskey': bool(self.storage.get_passkeys(user['id'])),
            })

        @self.blueprint.route('/account', methods=['DELETE'])
        def delete_account():
            user = self._require_user()
            if not self.storage.delete_user(user['id']):
                raise AuthError(404, "User not found", NOT_FOUND)

            self.sessions.logout()
            current_app.logger.info("Deleted user %s", user['id'])
            return success_response({'message': "Account deleted successfully"})

        @self.blueprint.route('/logout')
        def logout():
            """Log the user out by clearing the session."""
            self.sessions.logout()
            return redirect(current_app.config.get('MUNCH_LOGIN_URL', '/login'))
