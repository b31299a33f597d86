"""
Authentication Helpers
Bearer token issuing and verification, Flask-Login request loading and
role checks for the JSON API
"""

from flask import current_app, g
from flask_login import LoginManager, current_user
from itsdangerous import TimestampSigner, BadSignature, SignatureExpired
from functools import wraps
from datetime import datetime, timedelta
import secrets
import time
import logging

from api_helpers import api_error
from db_single import get_session
from models import User, RefreshToken, RevokedToken, AccountStatusEnum, generate_user_id

logger = logging.getLogger(__name__)

ACCESS_TOKEN_PREFIX = 'auth-token'
ACCESS_TOKEN_SALT = 'gce-access-token'


# ===== TOKENS =====

def _signer():
    return TimestampSigner(current_app.config['SECRET_KEY'], salt=ACCESS_TOKEN_SALT)


def issue_access_token(user_id: str) -> str:
    """Signed token whose payload reads auth-token-<userId>-<timestamp>"""
    raw = f"{ACCESS_TOKEN_PREFIX}-{user_id}-{int(time.time() * 1000)}"
    return _signer().sign(raw).decode('utf-8')


def user_id_from_raw_token(raw: str):
    """Recover the user id from auth-token-<userId>-<timestamp>"""
    if not raw.startswith(f"{ACCESS_TOKEN_PREFIX}-"):
        return None
    parts = raw.split('-')
    if len(parts) < 4:
        return None
    return '-'.join(parts[2:-1]) or None


def verify_access_token(token: str):
    """
    Check signature and age of an access token.
    Returns:
        (user_id, error_message) with exactly one of them set
    """
    try:
        raw = _signer().unsign(token, max_age=current_app.config['ACCESS_TOKEN_TTL']).decode('utf-8')
    except SignatureExpired:
        return None, 'Token has expired'
    except BadSignature:
        return None, 'Invalid token'

    user_id = user_id_from_raw_token(raw)
    if not user_id:
        return None, 'Invalid token format'
    return user_id, None


def bearer_token(req):
    header = req.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


def issue_refresh_token(session_db, user_id: str) -> str:
    token = f"refresh-{secrets.token_urlsafe(32)}"
    ttl_days = current_app.config['REFRESH_TOKEN_TTL_DAYS']
    session_db.add(RefreshToken(
        token=token,
        user_id=user_id,
        expires_at=datetime.utcnow() + timedelta(days=ttl_days)
    ))
    return token


def revoke_tokens(session_db, user_id: str, access_token=None):
    """Revoke one access token and every refresh token of the user"""
    if access_token and not session_db.get(RevokedToken, access_token):
        session_db.add(RevokedToken(token=access_token, user_id=user_id))
    session_db.query(RefreshToken).filter_by(user_id=user_id).delete()


# ===== FLASK-LOGIN =====

def init_login_manager(app):
    """Resolve the bearer token to a User on every request"""
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.request_loader
    def load_user_from_request(req):
        token = bearer_token(req)
        if not token:
            g.auth_error = 'Authentication required'
            return None

        user_id, error = verify_access_token(token)
        if error:
            g.auth_error = error
            return None

        s = get_session()
        try:
            if s.get(RevokedToken, token):
                g.auth_error = 'Token has been revoked'
                return None
            user = s.get(User, user_id)
            if not user:
                g.auth_error = 'Invalid token'
                return None
            if user.registration_status == AccountStatusEnum.SUSPENDED:
                g.auth_error = 'Account is suspended'
                return None
            g.access_token = token
            return user
        except Exception as e:
            logger.error(f"request_loader error: {e}")
            g.auth_error = 'Authentication failed'
            return None
        finally:
            s.close()

    return login_manager


def require_roles(*user_types, message=None):
    """
    Decorator requiring an authenticated caller, optionally of given types.
    401 when unauthenticated, 403 when the type is not allowed.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return api_error(g.get('auth_error', 'Authentication required'), 401)
            if user_types and current_user.user_type.value not in user_types:
                return api_error(message or 'Access denied', 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def optional_user():
    """The authenticated user, or None on public endpoints"""
    return current_user if current_user.is_authenticated else None


def caller_type():
    return current_user.user_type.value


# ===== ACCOUNTS =====

def new_account(data, user_type, registration_status, email_verified=False):
    """Build a User from a registration body (email already validated)"""
    user = User(
        id=generate_user_id(user_type),
        full_name=data['fullName'].strip(),
        email=data['email'],
        user_type=user_type,
        registration_status=registration_status,
        email_verified=email_verified,
        school=data.get('school'),
        school_id=data.get('schoolId'),
        date_of_birth=data.get('dateOfBirth'),
        phone_number=data.get('phoneNumber'),
        candidate_number=data.get('candidateNumber') or None,
        exam_level=data.get('examLevel'),
        exam_center=data.get('examCenter'),
        center_code=data.get('centerCode'),
        subjects=data.get('subjects') or [],
    )
    user.set_password(data['password'])
    return user
