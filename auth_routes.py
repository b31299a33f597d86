"""
Authentication Routes
Registration, login, token refresh, logout, password reset and email verification
"""
from flask import request, current_app, g
from flask_login import current_user
from datetime import datetime
import logging

from db_single import get_session
from models import User, RefreshToken, UserTypeEnum, AccountStatusEnum
from validators import AccountValidator, ValidationError
from api_helpers import api_success, api_error, server_error, get_json_body
from auth_helpers import issue_access_token, issue_refresh_token, revoke_tokens, new_account
from admin_helpers import record_audit
from notification_email import send_verification_email, send_password_reset_email

logger = logging.getLogger(__name__)

USER_TYPES = [t.value for t in UserTypeEnum]
RESET_REQUEST_MESSAGE = 'If an account with this email exists, you will receive a password reset link.'


def _login_payload(user, token, refresh_token):
    return {
        'id': user.id,
        'email': user.email,
        'userType': user.user_type.value,
        'name': user.full_name,
        'examLevel': user.exam_level,
        'token': token,
        'refreshToken': refresh_token,
        'expiresIn': current_app.config['ACCESS_TOKEN_TTL'],
        'tokenType': 'Bearer',
        'permissions': ['read', 'write'],
        'lastLogin': user.last_login.isoformat() if user.last_login else None,
        'emailVerified': bool(user.email_verified),
        'registrationStatus': user.registration_status.value,
    }


def register_auth_routes(bp, require_roles):
    """Register authentication routes on the API blueprint"""

    # ==================== REGISTER ====================
    @bp.route('/auth/register', methods=['POST'])
    def auth_register():
        """Self-service account creation; accounts wait for approval"""
        data = get_json_body()
        if not all(data.get(f) for f in ('fullName', 'email', 'password', 'userType')):
            return api_error('Missing required fields')
        if data['userType'] not in USER_TYPES:
            return api_error('Invalid user type')
        try:
            data['email'] = AccountValidator.validate_email(data['email'])
        except ValidationError as e:
            return api_error(e.message)
        if len(data['password']) < 8:
            return api_error('Password must be at least 8 characters long')

        session_db = get_session()
        try:
            existing = session_db.query(User).filter_by(email=data['email']).first()
            if existing:
                if existing.user_type.value == data['userType']:
                    return api_error(f"A {data['userType']} account with this email already exists", 409)
                return api_error(
                    f"This email is already registered as a {existing.user_type.value} account. "
                    "Please use a different email or login with the correct account type.", 409)

            candidate_number = data.get('candidateNumber')
            if data['userType'] == 'student' and candidate_number:
                if session_db.query(User).filter_by(candidate_number=candidate_number).first():
                    return api_error('Candidate number already exists', 409)

            user = new_account(data, UserTypeEnum(data['userType']), AccountStatusEnum.PENDING)
            token = user.generate_verification_token(current_app.config['EMAIL_VERIFICATION_TTL'])
            session_db.add(user)
            record_audit(session_db, user, 'USER_REGISTERED', 'user_management',
                         'New account registered', resource={'type': 'user', 'id': user.id})
            session_db.commit()

            sent, info = send_verification_email(
                user.email, token, user.full_name, current_app.config['FRONTEND_BASE_URL'])
            logger.info(f"✅ Registered {user.user_type.value} {user.email} (verification email: {info})")

            payload = user.to_dict()
            payload['emailVerificationSent'] = sent
            return api_success(payload, 'Registration successful. Please check your email to verify your account.', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Registration error', e)
        finally:
            session_db.close()

    # ==================== LOGIN ====================
    @bp.route('/auth/login', methods=['POST'])
    def auth_login():
        data = get_json_body()
        email = (data.get('email') or '').strip().lower()
        password = data.get('password')
        user_type = data.get('userType')

        if not email or not password or not user_type:
            return api_error('Email, password, and user type are required')
        if user_type not in USER_TYPES:
            return api_error('Invalid user type')

        invalid_message = (f"Invalid credentials for {user_type} account. Please check your email, "
                           "password, and selected account type.")
        session_db = get_session()
        try:
            user = session_db.query(User).filter_by(email=email).first()
            if not user or not user.check_password(password):
                record_audit(session_db, user, 'LOGIN_FAILED', 'authentication',
                             f"Failed login attempt for {email}", severity='medium', status='failure')
                session_db.commit()
                return api_error(invalid_message, 401)
            if user.user_type.value != user_type:
                return api_error(f"This email is not registered as a {user_type} account. "
                                 "Please select the correct account type.", 401)
            if user.registration_status == AccountStatusEnum.SUSPENDED:
                return api_error('Account has been suspended. Please contact support.', 403)
            if user.registration_status == AccountStatusEnum.PENDING:
                return api_error('Account is pending approval. Please wait for confirmation.', 403)

            user.last_login = datetime.utcnow()
            token = issue_access_token(user.id)
            refresh_token = issue_refresh_token(session_db, user.id)
            record_audit(session_db, user, 'LOGIN_SUCCESS', 'authentication', 'User logged in successfully')
            session_db.commit()

            logger.info(f"✅ Login successful for {user_type}: {user.email}")
            return api_success(_login_payload(user, token, refresh_token), 'Login successful')
        except Exception as e:
            session_db.rollback()
            return server_error('Login error', e)
        finally:
            session_db.close()

    # ==================== LOGOUT ====================
    @bp.route('/auth/logout', methods=['POST'])
    @require_roles()
    def auth_logout():
        session_db = get_session()
        try:
            revoke_tokens(session_db, current_user.id, g.get('access_token'))
            session_db.commit()
            return api_success(message='Logged out successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Logout error', e)
        finally:
            session_db.close()

    # ==================== REFRESH TOKEN ====================
    @bp.route('/auth/refresh-token', methods=['POST'])
    def auth_refresh_token():
        data = get_json_body()
        token_value = data.get('refreshToken')
        if not token_value:
            return api_error('Refresh token is required')

        session_db = get_session()
        try:
            stored = session_db.get(RefreshToken, token_value)
            if not stored:
                return api_error('Invalid refresh token', 401)
            if stored.is_expired:
                session_db.delete(stored)
                session_db.commit()
                return api_error('Refresh token expired', 401)

            user = session_db.get(User, stored.user_id)
            if not user:
                return api_error('User not found', 401)
            if user.registration_status != AccountStatusEnum.CONFIRMED:
                return api_error('Account is not active', 403)

            # Rotate
            session_db.delete(stored)
            new_refresh = issue_refresh_token(session_db, user.id)
            session_db.commit()

            return api_success({
                'token': issue_access_token(user.id),
                'refreshToken': new_refresh,
                'expiresIn': current_app.config['ACCESS_TOKEN_TTL'],
                'tokenType': 'Bearer',
            }, 'Token refreshed successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Refresh token error', e)
        finally:
            session_db.close()

    # ==================== FORGOT PASSWORD ====================
    @bp.route('/auth/forgot-password', methods=['POST'])
    def auth_forgot_password():
        data = get_json_body()
        email = (data.get('email') or '').strip().lower()
        if not email:
            return api_error('Email address is required')

        session_db = get_session()
        try:
            user = session_db.query(User).filter_by(email=email).first()
            if user:
                token = user.generate_reset_token(current_app.config['PASSWORD_RESET_TTL'])
                session_db.commit()
                sent, info = send_password_reset_email(
                    user.email, token, user.full_name, current_app.config['FRONTEND_BASE_URL'])
                logger.info(f"Password reset requested for {email} (email: {info})")
            # Same answer whether or not the account exists
            return api_success(message=RESET_REQUEST_MESSAGE)
        except Exception as e:
            session_db.rollback()
            logger.error(f"Forgot password error: {e}")
            return api_error('Failed to process password reset request', 500)
        finally:
            session_db.close()

    @bp.route('/auth/forgot-password', methods=['GET'])
    def auth_check_reset_token():
        token = request.args.get('token')
        if not token:
            return api_error('Reset token is required')

        session_db = get_session()
        try:
            user = session_db.query(User).filter_by(reset_token=token).first()
            if not user:
                return api_error('Invalid or expired reset token')
            if not user.reset_token_expires or user.reset_token_expires < datetime.utcnow():
                return api_error('Reset token has expired')
            return api_success({'email': user.email, 'expiresAt': user.reset_token_expires.isoformat()},
                               'Reset token is valid')
        except Exception as e:
            logger.error(f"Reset token check error: {e}")
            return api_error('Token verification failed', 500)
        finally:
            session_db.close()

    # ==================== RESET PASSWORD ====================
    @bp.route('/auth/reset-password', methods=['POST'])
    def auth_reset_password():
        data = get_json_body()
        token = data.get('token')
        new_password = data.get('newPassword')
        confirm_password = data.get('confirmPassword')

        if not token or not new_password or not confirm_password:
            return api_error('All fields are required')
        if new_password != confirm_password:
            return api_error('Passwords do not match')
        try:
            AccountValidator.validate_reset_password(new_password)
        except ValidationError as e:
            return api_error(e.message)

        session_db = get_session()
        try:
            user = session_db.query(User).filter_by(reset_token=token).first()
            if not user:
                return api_error('Invalid or expired reset token')
            if not user.reset_token_expires or user.reset_token_expires < datetime.utcnow():
                return api_error('Reset token has expired')

            user.set_password(new_password)
            user.clear_reset_token()
            revoke_tokens(session_db, user.id)
            record_audit(session_db, user, 'PASSWORD_RESET', 'security', 'Password reset with emailed token',
                         severity='medium')
            session_db.commit()
            logger.info(f"✅ Password reset for {user.email}")
            return api_success(message='Password reset successfully. You can now login with your new password.')
        except Exception as e:
            session_db.rollback()
            logger.error(f"Reset password error: {e}")
            return api_error('Failed to reset password', 500)
        finally:
            session_db.close()

    # ==================== EMAIL VERIFICATION ====================
    @bp.route('/auth/verify-email', methods=['POST'])
    def auth_send_verification():
        data = get_json_body()
        email = (data.get('email') or '').strip().lower()
        if not email:
            return api_error('Email is required')

        session_db = get_session()
        try:
            user = session_db.query(User).filter_by(email=email).first()
            if not user:
                return api_error('User not found', 404)
            if user.email_verified:
                return api_error('Email already verified')

            token = user.generate_verification_token(current_app.config['EMAIL_VERIFICATION_TTL'])
            session_db.commit()
            sent, info = send_verification_email(
                user.email, token, user.full_name, current_app.config['FRONTEND_BASE_URL'])
            return api_success({'email': user.email, 'emailSent': sent, 'delivery': info},
                               'Verification email sent successfully')
        except Exception as e:
            session_db.rollback()
            logger.error(f"Send verification error: {e}")
            return api_error('Failed to send verification email', 500)
        finally:
            session_db.close()

    @bp.route('/auth/verify-email', methods=['GET'])
    def auth_verify_email():
        token = request.args.get('token')
        if not token:
            return api_error('Verification token is required')

        session_db = get_session()
        try:
            user = session_db.query(User).filter_by(verification_token=token).first()
            if not user:
                return api_error('Invalid verification token')
            if not user.verification_token_expires or user.verification_token_expires < datetime.utcnow():
                return api_error('Verification token has expired')
            if user.email_verified:
                return api_error('Email already verified')

            user.email_verified = True
            user.verification_token = None
            user.verification_token_expires = None
            session_db.commit()
            logger.info(f"✅ Email verified for {user.email}")
            return api_success({'email': user.email, 'emailVerified': True}, 'Email verified successfully')
        except Exception as e:
            session_db.rollback()
            logger.error(f"Email verification error: {e}")
            return api_error('Email verification failed', 500)
        finally:
            session_db.close()
