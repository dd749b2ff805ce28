from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from flask import current_app


class BridgeTokens:
    """Short-lived signed assertion that an identity just authenticated.

    Passkey and magic-link ceremonies both end by minting one of these; the
    session issuer is the only consumer. The token carries nothing but the
    identity id, and the itsdangerous timestamp doubles as issued-at.
    """

    salt = 'munchauth-bridge'

    def __init__(self, secret_key=None, max_age=None):
        self.secret_key = secret_key
        self.max_age = max_age

    def _serializer(self):
        secret = self.secret_key or current_app.config['SECRET_KEY']
        return URLSafeTimedSerializer(secret, salt=self.salt)

    def _max_age(self):
        if self.max_age is not None:
            return self.max_age
        return current_app.config.get('MUNCH_BRIDGE_TOKEN_MAX_AGE', 300)

    def mint(self, user_id):
        return self._serializer().dumps({'uid': user_id})

    def load(self, token):
        """Return the embedded identity id, or None if the token is bad or stale."""
        if not token:
            return None
        try:
            payload = self._serializer().loads(token, max_age=self._max_age())
        except SignatureExpired:
            current_app.logger.info("Rejected expired bridge token")
            return None
        except BadSignature:
            return None

        if not isinstance(payload, dict):
            return None
        return payload.get('uid')
