"""
Flask-MunchAuth Storage Adapters
================================
Every adapter provides:
- Identities with a single-slot pending WebAuthn challenge
- Passkey credentials (append-only, sign counter updates)
- Token ledger: hashed (HMAC-SHA256), purpose-scoped, atomic single-use
- Pending registrations with a hard TTL
"""

import hmac
import hashlib
import itertools
import secrets
from abc import ABC, abstractmethod
from datetime import timedelta

from .utils import utcnow, as_utc


LOGIN = 'login'
EMAIL_VERIFICATION = 'email-verification'
PURPOSES = (LOGIN, EMAIL_VERIFICATION)


class StorageAdapter(ABC):
    """Base storage adapter interface"""

    secret_key = None
    token_expiry = None
    registration_ttl = None

    def init_app(self, app):
        """Fill unset adapter settings from the Flask config."""
        if self.secret_key is None:
            self.secret_key = app.config.get('SECRET_KEY') or secrets.token_hex(32)
        if self.token_expiry is None:
            self.token_expiry = app.config.get('MUNCH_TOKEN_EXPIRY', 15)
        if self.registration_ttl is None:
            self.registration_ttl = app.config.get('MUNCH_PENDING_REGISTRATION_TTL', 3600)

    def _hash_token(self, token):
        """Hash token using HMAC-SHA256"""
        key = self.secret_key
        if isinstance(key, str):
            key = key.encode()
        return hmac.new(key, token.encode(), hashlib.sha256).hexdigest()

    def _token_lifetime(self):
        return timedelta(minutes=self.token_expiry or 15)

    def _registration_lifetime(self):
        return timedelta(seconds=self.registration_ttl or 3600)

    # ---- identities ----

    @abstractmethod
    def get_user_by_email(self, email):
        """Retrieve user by (normalized) email address"""

    @abstractmethod
    def get_user_by_id(self, user_id):
        """Retrieve user by ID"""

    @abstractmethod
    def get_or_create_user(self, email, name=None, email_verified=None):
        """Get existing user or create new one. Never creates a duplicate."""

    @abstractmethod
    def mark_email_verified(self, user_id, verified_at):
        """Set email_verified if it is not already set"""

    @abstractmethod
    def delete_user(self, user_id):
        """Delete user with its passkeys and pending challenge"""

    # ---- single-slot challenge ----

    @abstractmethod
    def set_challenge(self, user_id, challenge):
        """Store the pending challenge, replacing any previous one"""

    @abstractmethod
    def take_challenge(self, user_id):
        """Return the pending challenge and clear it in the same step"""

    # ---- passkeys ----

    @abstractmethod
    def get_passkeys(self, user_id):
        """List passkey credentials for a user"""

    @abstractmethod
    def add_passkey(self, user_id, credential):
        """Append a credential. Returns False if the credential id is already known."""

    @abstractmethod
    def update_passkey_sign_count(self, user_id, credential_id, sign_count):
        """Record the counter reported by the authenticator"""

    # ---- token ledger ----

    @abstractmethod
    def store_token(self, token, token_data):
        """Store token securely (hashed)"""

    @abstractmethod
    def get_token(self, token):
        """Read a token entry without consuming it"""

    @abstractmethod
    def get_token_by_request_id(self, request_id):
        """Read a token entry by the poller's request id"""

    @abstractmethod
    def consume_token(self, token):
        """Atomically mark an unused, unexpired token as used. None if that fails."""

    @abstractmethod
    def delete_token(self, token):
        """Delete token"""

    # ---- pending registrations ----

    @abstractmethod
    def get_pending_registration(self, email):
        """Pending registration for email, or None if missing or past its TTL"""

    @abstractmethod
    def create_pending_registration(self, email, name, verification_expires_at):
        """Replace any pending registration for email with a fresh one"""

    @abstractmethod
    def record_resend(self, email, verification_expires_at):
        """Bump the resend counter and cooldown clock"""

    @abstractmethod
    def delete_pending_registration(self, email):
        """Delete pending registration. Returns True if one existed."""


class InMemoryStorageAdapter(StorageAdapter):
    """
    In-memory storage for development only.
    DO NOT USE IN PRODUCTION - data lost on restart, no cross-process atomicity.
    """

    def __init__(self, secret_key=None, token_expiry_minutes=None, registration_ttl_seconds=None):
        self.users = {}
        self.passkey_credentials = {}
        self.challenges = {}
        self.tokens = {}
        self.pending_registrations = {}
        self.secret_key = secret_key
        self.token_expiry = token_expiry_minutes
        self.registration_ttl = registration_ttl_seconds
        self._ids = itertools.count(1)

    # ---- identities ----

    def get_user_by_email(self, email):
        return self.users.get(email)

    def get_user_by_id(self, user_id):
        for user in self.users.values():
            if user.get('id') == user_id:
                return user
        return None

    def get_or_create_user(self, email, name=None, email_verified=None):
        if email not in self.users:
            user_id = next(self._ids)
            while self.get_user_by_id(user_id):
                user_id = next(self._ids)
            self.users[email] = {
                'id': user_id,
                'email': email,
                'name': name,
                'email_verified': email_verified,
                'created_at': utcnow(),
            }
        return self.users[email]

    def mark_email_verified(self, user_id, verified_at):
        user = self.get_user_by_id(user_id)
        if user and not user.get('email_verified'):
            user['email_verified'] = verified_at

    def delete_user(self, user_id):
        user = self.get_user_by_id(user_id)
        if not user:
            return False
        del self.users[user['email']]
        self.passkey_credentials.pop(user_id, None)
        self.challenges.pop(user_id, None)
        return True

    # ---- single-slot challenge ----

    def set_challenge(self, user_id, challenge):
        self.challenges[user_id] = challenge

    def take_challenge(self, user_id):
        return self.challenges.pop(user_id, None)

    # ---- passkeys ----

    def get_passkeys(self, user_id):
        return [dict(c) for c in self.passkey_credentials.get(user_id, [])]

    def add_passkey(self, user_id, credential):
        existing = self.passkey_credentials.setdefault(user_id, [])
        if any(c['credential_id'] == credential['credential_id'] for c in existing):
            return False
        existing.append({
            'credential_id': credential['credential_id'],
            'public_key': credential['public_key'],
            'sign_count': credential.get('sign_count', 0),
            'transports': list(credential.get('transports') or []),
            'created_at': utcnow(),
            'last_used_at': None,
        })
        return True

    def update_passkey_sign_count(self, user_id, credential_id, sign_count):
        for cred in self.passkey_credentials.get(user_id, []):
            if cred['credential_id'] == credential_id:
                cred['sign_count'] = sign_count
                cred['last_used_at'] = utcnow()

    # ---- token ledger ----

    def store_token(self, token, token_data):
        """Store hashed token with expiry"""
        token_hash = self._hash_token(token)
        request_id = token_data.get('request_id')
        now = utcnow()

        self.tokens[token_hash] = {
            'email': token_data.get('email'),
            'purpose': token_data.get('purpose', LOGIN),
            'request_id_hash': self._hash_token(request_id) if request_id else None,
            'created_at': now,
            'expires_at': now + self._token_lifetime(),
            'used_at': None,
        }

    def _entry(self, token_hash):
        data = self.tokens.get(token_hash)
        if data is None:
            return None
        entry = dict(data)
        entry['token_hash'] = token_hash
        return entry

    def get_token(self, token):
        return self._entry(self._hash_token(token))

    def get_token_by_request_id(self, request_id):
        request_id_hash = self._hash_token(request_id)
        for token_hash, data in self.tokens.items():
            if data.get('request_id_hash') == request_id_hash:
                return self._entry(token_hash)
        return None

    def consume_token(self, token):
        """Verify and consume token (single-use)"""
        token_hash = self._hash_token(token)
        data = self.tokens.get(token_hash)
        if not data or data['used_at'] is not None:
            return None
        if data['expires_at'] <= utcnow():
            return None

        data['used_at'] = utcnow()
        return self._entry(token_hash)

    def delete_token(self, token):
        return self.tokens.pop(self._hash_token(token), None) is not None

    def cleanup_expired_tokens(self):
        """Remove expired tokens"""
        now = utcnow()
        expired = [k for k, v in self.tokens.items() if v['expires_at'] < now]
        for k in expired:
            del self.tokens[k]

    # ---- pending registrations ----

    def get_pending_registration(self, email):
        pending = self.pending_registrations.get(email)
        if not pending:
            return None
        if pending['created_at'] + self._registration_lifetime() <= utcnow():
            del self.pending_registrations[email]
            return None
        return dict(pending)

    def create_pending_registration(self, email, name, verification_expires_at):
        self.pending_registrations[email] = {
            'email': email,
            'name': name,
            'created_at': utcnow(),
            'verification_expires_at': verification_expires_at,
            'resend_attempts': 0,
            'last_resend_at': None,
        }
        return dict(self.pending_registrations[email])

    def record_resend(self, email, verification_expires_at):
        pending = self.pending_registrations.get(email)
        if not pending:
            return None
        pending['resend_attempts'] += 1
        pending['last_resend_at'] = utcnow()
        pending['verification_expires_at'] = verification_expires_at
        return dict(pending)

    def delete_pending_registration(self, email):
        return self.pending_registrations.pop(email, None) is not None

    def cleanup_expired_registrations(self):
        cutoff = utcnow() - self._registration_lifetime()
        expired = [k for k, v in self.pending_registrations.items() if v['created_at'] <= cutoff]
        for k in expired:
            del self.pending_registrations[k]


class SQLAlchemyStorageAdapter(StorageAdapter):
    """
    SQLAlchemy-based storage.

    The host app owns the user model; it needs ``id`` and ``email`` columns and
    may add ``name`` and ``email_verified``. Ledger, passkey, challenge and
    pending-registration tables are created by the adapter.

    Single-use guarantees rely on conditional UPDATE/DELETE statements and
    their rowcount, so they hold across processes sharing one database.
    """

    def __init__(self, user_model, session, secret_key=None, token_expiry_minutes=None,
                 registration_ttl_seconds=None):
        self.user_model = user_model
        self.session = session
        self.secret_key = secret_key
        self.token_expiry = token_expiry_minutes
        self.registration_ttl = registration_ttl_seconds

        self._ensure_tables()

    def _ensure_tables(self):
        """Create auth tables"""
        from sqlalchemy import (
            Table, Column, Integer, String, DateTime, LargeBinary, JSON, MetaData,
            UniqueConstraint,
        )

        metadata = MetaData()
        self.tokens_table = Table(
            'munch_tokens',
            metadata,
            Column('id', Integer, primary_key=True),
            Column('token_hash', String(64), unique=True, nullable=False, index=True),
            Column('request_id_hash', String(64), index=True),
            Column('email', String(255), nullable=False, index=True),
            Column('purpose', String(32), nullable=False),
            Column('created_at', DateTime, nullable=False),
            Column('expires_at', DateTime, nullable=False, index=True),
            Column('used_at', DateTime),
            extend_existing=True
        )
        self.passkeys_table = Table(
            'munch_passkeys',
            metadata,
            Column('id', Integer, primary_key=True),
            Column('user_id', Integer, nullable=False, index=True),
            Column('credential_id', LargeBinary, nullable=False),
            Column('public_key', LargeBinary, nullable=False),
            Column('sign_count', Integer, nullable=False, default=0),
            Column('transports', JSON),
            Column('created_at', DateTime, nullable=False),
            Column('last_used_at', DateTime),
            UniqueConstraint('user_id', 'credential_id', name='uq_munch_passkey'),
            extend_existing=True
        )
        self.challenges_table = Table(
            'munch_challenges',
            metadata,
            Column('user_id', Integer, primary_key=True),
            Column('challenge', String(255), nullable=False),
            Column('created_at', DateTime, nullable=False),
            extend_existing=True
        )
        self.pending_table = Table(
            'munch_pending_registrations',
            metadata,
            Column('id', Integer, primary_key=True),
            Column('email', String(255), unique=True, nullable=False, index=True),
            Column('name', String(255), nullable=False),
            Column('created_at', DateTime, nullable=False, index=True),
            Column('verification_expires_at', DateTime, nullable=False),
            Column('resend_attempts', Integer, nullable=False, default=0),
            Column('last_resend_at', DateTime),
            extend_existing=True
        )

        metadata.create_all(self.session.get_bind(), checkfirst=True)

    @staticmethod
    def _now():
        # Columns are naive UTC; as_utc() restores tzinfo on the way out
        return utcnow().replace(tzinfo=None)

    @staticmethod
    def _naive(value):
        return value.replace(tzinfo=None) if value is not None and value.tzinfo else value

    # ---- identities ----

    def _user_dict(self, user):
        if user is None:
            return None
        if hasattr(user, 'to_dict'):
            data = user.to_dict()
        else:
            data = {'id': user.id, 'email': user.email}
        data.setdefault('name', getattr(user, 'name', None))
        data.setdefault('email_verified', as_utc(getattr(user, 'email_verified', None)))
        return data

    def get_user_by_email(self, email):
        user = self.session.query(self.user_model).filter_by(email=email).first()
        return self._user_dict(user)

    def get_user_by_id(self, user_id):
        user = self.session.query(self.user_model).filter_by(id=user_id).first()
        return self._user_dict(user)

    def get_or_create_user(self, email, name=None, email_verified=None):
        from sqlalchemy.exc import IntegrityError

        user = self.session.query(self.user_model).filter_by(email=email).first()

        if not user:
            fields = {'email': email}
            if hasattr(self.user_model, 'name'):
                fields['name'] = name
            if hasattr(self.user_model, 'email_verified'):
                fields['email_verified'] = self._naive(email_verified)
            user = self.user_model(**fields)
            self.session.add(user)
            try:
                self.session.commit()
            except IntegrityError:
                # A concurrent request created the same email first
                self.session.rollback()
                user = self.session.query(self.user_model).filter_by(email=email).one()

        return self._user_dict(user)

    def mark_email_verified(self, user_id, verified_at):
        if not hasattr(self.user_model, 'email_verified'):
            return
        self.session.query(self.user_model).filter(
            self.user_model.id == user_id,
            self.user_model.email_verified.is_(None),
        ).update({'email_verified': self._naive(verified_at)}, synchronize_session=False)
        self.session.commit()

    def delete_user(self, user_id):
        deleted = self.session.query(self.user_model).filter_by(id=user_id).delete()
        self.session.execute(
            self.passkeys_table.delete().where(self.passkeys_table.c.user_id == user_id)
        )
        self.session.execute(
            self.challenges_table.delete().where(self.challenges_table.c.user_id == user_id)
        )
        self.session.commit()
        return deleted > 0

    # ---- single-slot challenge ----

    def set_challenge(self, user_id, challenge):
        self.session.execute(
            self.challenges_table.delete().where(self.challenges_table.c.user_id == user_id)
        )
        self.session.execute(
            self.challenges_table.insert().values(
                user_id=user_id, challenge=challenge, created_at=self._now()
            )
        )
        self.session.commit()

    def take_challenge(self, user_id):
        table = self.challenges_table
        row = self.session.execute(
            table.select().where(table.c.user_id == user_id)
        ).fetchone()
        if not row:
            return None

        result = self.session.execute(
            table.delete().where(
                table.c.user_id == user_id,
                table.c.challenge == row.challenge,
            )
        )
        self.session.commit()
        # Another request took (or replaced) it between the read and the delete
        if result.rowcount != 1:
            return None
        return row.challenge

    # ---- passkeys ----

    def _passkey_dict(self, row):
        return {
            'credential_id': bytes(row.credential_id),
            'public_key': bytes(row.public_key),
            'sign_count': row.sign_count,
            'transports': list(row.transports or []),
            'created_at': as_utc(row.created_at),
            'last_used_at': as_utc(row.last_used_at),
        }

    def get_passkeys(self, user_id):
        rows = self.session.execute(
            self.passkeys_table.select()
            .where(self.passkeys_table.c.user_id == user_id)
            .order_by(self.passkeys_table.c.id)
        ).fetchall()
        return [self._passkey_dict(r) for r in rows]

    def add_passkey(self, user_id, credential):
        from sqlalchemy.exc import IntegrityError

        table = self.passkeys_table
        existing = self.session.execute(
            table.select().where(
                table.c.user_id == user_id,
                table.c.credential_id == credential['credential_id'],
            )
        ).fetchone()
        if existing:
            return False

        try:
            self.session.execute(
                table.insert().values(
                    user_id=user_id,
                    credential_id=credential['credential_id'],
                    public_key=credential['public_key'],
                    sign_count=credential.get('sign_count', 0),
                    transports=list(credential.get('transports') or []),
                    created_at=self._now(),
                )
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return False
        return True

    def update_passkey_sign_count(self, user_id, credential_id, sign_count):
        table = self.passkeys_table
        self.session.execute(
            table.update().where(
                table.c.user_id == user_id,
                table.c.credential_id == credential_id,
            ).values(sign_count=sign_count, last_used_at=self._now())
        )
        self.session.commit()

    # ---- token ledger ----

    def _token_dict(self, row):
        if not row:
            return None
        return {
            'token_hash': row.token_hash,
            'request_id_hash': row.request_id_hash,
            'email': row.email,
            'purpose': row.purpose,
            'created_at': as_utc(row.created_at),
            'expires_at': as_utc(row.expires_at),
            'used_at': as_utc(row.used_at),
        }

    def store_token(self, token, token_data):
        """Store hashed token with expiry"""
        request_id = token_data.get('request_id')
        now = self._now()

        self.session.execute(
            self.tokens_table.insert().values(
                token_hash=self._hash_token(token),
                request_id_hash=self._hash_token(request_id) if request_id else None,
                email=token_data.get('email'),
                purpose=token_data.get('purpose', LOGIN),
                created_at=now,
                expires_at=now + self._token_lifetime(),
            )
        )
        self.session.commit()

    def get_token(self, token):
        row = self.session.execute(
            self.tokens_table.select().where(
                self.tokens_table.c.token_hash == self._hash_token(token)
            )
        ).fetchone()
        return self._token_dict(row)

    def get_token_by_request_id(self, request_id):
        row = self.session.execute(
            self.tokens_table.select().where(
                self.tokens_table.c.request_id_hash == self._hash_token(request_id)
            )
        ).fetchone()
        return self._token_dict(row)

    def consume_token(self, token):
        """Verify and consume token atomically (single-use)"""
        table = self.tokens_table
        token_hash = self._hash_token(token)
        now = self._now()

        result = self.session.execute(
            table.update().where(
                table.c.token_hash == token_hash,
                table.c.used_at.is_(None),
                table.c.expires_at > now,
            ).values(used_at=now)
        )
        self.session.commit()

        if result.rowcount != 1:
            return None
        return self.get_token(token)

    def delete_token(self, token):
        result = self.session.execute(
            self.tokens_table.delete().where(
                self.tokens_table.c.token_hash == self._hash_token(token)
            )
        )
        self.session.commit()
        return result.rowcount > 0

    def cleanup_expired_tokens(self):
        """Remove expired tokens - call periodically via cron"""
        self.session.execute(
            self.tokens_table.delete().where(self.tokens_table.c.expires_at < self._now())
        )
        self.session.commit()

    # ---- pending registrations ----

    def _pending_dict(self, row):
        return {
            'email': row.email,
            'name': row.name,
            'created_at': as_utc(row.created_at),
            'verification_expires_at': as_utc(row.verification_expires_at),
            'resend_attempts': row.resend_attempts,
            'last_resend_at': as_utc(row.last_resend_at),
        }

    def get_pending_registration(self, email):
        table = self.pending_table
        row = self.session.execute(
            table.select().where(table.c.email == email)
        ).fetchone()
        if not row:
            return None
        if as_utc(row.created_at) + self._registration_lifetime() <= utcnow():
            self.delete_pending_registration(email)
            return None
        return self._pending_dict(row)

    def create_pending_registration(self, email, name, verification_expires_at):
        table = self.pending_table
        self.session.execute(table.delete().where(table.c.email == email))
        self.session.execute(
            table.insert().values(
                email=email,
                name=name,
                created_at=self._now(),
                verification_expires_at=self._naive(verification_expires_at),
                resend_attempts=0,
            )
        )
        self.session.commit()
        return self.get_pending_registration(email)

    def record_resend(self, email, verification_expires_at):
        table = self.pending_table
        result = self.session.execute(
            table.update().where(table.c.email == email).values(
                resend_attempts=table.c.resend_attempts + 1,
                last_resend_at=self._now(),
                verification_expires_at=self._naive(verification_expires_at),
            )
        )
        self.session.commit()
        if result.rowcount != 1:
            return None
        return self.get_pending_registration(email)

    def delete_pending_registration(self, email):
        result = self.session.execute(
            self.pending_table.delete().where(self.pending_table.c.email == email)
        )
        self.session.commit()
        return result.rowcount > 0

    def cleanup_expired_registrations(self):
        cutoff = self._now() - self._registration_lifetime()
        self.session.execute(
            self.pending_table.delete().where(self.pending_table.c.created_at <= cutoff)
        )
        self.session.commit()
