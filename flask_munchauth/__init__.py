from .auth import MunchAuth
from .errors import AuthError
from .storage import InMemoryStorageAdapter, SQLAlchemyStorageAdapter
from .utils import login_required, get_current_user, is_authenticated, logout

__version__ = '0.1.0'

__all__ = [
    'MunchAuth',
    'AuthError',
    'InMemoryStorageAdapter',
    'SQLAlchemyStorageAdapter',
    'login_required',
    'get_current_user',
    'is_authenticated',
    'logout',
]
