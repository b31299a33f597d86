"""
User Routes
Profile, password changes and admin account management
"""
from flask import request
from flask_login import current_user
from sqlalchemy import or_
import logging

from db_single import get_session
from models import User, UserTypeEnum, AccountStatusEnum, generate_user_id
from validators import AccountValidator, ValidationError, parse_bool, parse_int
from api_helpers import api_success, api_error, server_error, get_json_body, paginate, count_by
from auth_helpers import new_account
from admin_helpers import record_audit

logger = logging.getLogger(__name__)

USER_TYPES = [t.value for t in UserTypeEnum]
ACCOUNT_STATUSES = [s.value for s in AccountStatusEnum]
BULK_CREATE_LIMIT = 1000
SORT_FIELDS = {
    'fullName': User.full_name,
    'email': User.email,
    'userType': User.user_type,
    'registrationStatus': User.registration_status,
    'createdAt': User.created_at,
}

# body key -> column
PROFILE_FIELDS = {
    'fullName': 'full_name',
    'school': 'school',
    'schoolId': 'school_id',
    'dateOfBirth': 'date_of_birth',
    'phoneNumber': 'phone_number',
    'candidateNumber': 'candidate_number',
    'examLevel': 'exam_level',
    'examCenter': 'exam_center',
    'centerCode': 'center_code',
    'subjects': 'subjects',
}


def _candidate_number_taken(session_db, candidate_number, user_id):
    if not candidate_number:
        return False
    other = session_db.query(User).filter(User.candidate_number == candidate_number,
                                          User.id != user_id).first()
    return other is not None


def _apply_profile(user, data):
    for key, column in PROFILE_FIELDS.items():
        if key in data:
            value = data[key]
            if key == 'fullName':
                value = (value or '').strip() or user.full_name
            if key == 'subjects':
                value = list(value or [])
            setattr(user, column, value)


def _row_errors(row):
    """Field problems of one bulk-create row"""
    errors = []
    if not isinstance(row.get('fullName'), str) or not row['fullName'].strip():
        errors.append('Full name is required')
    if not row.get('email'):
        errors.append('Email is required')
    else:
        try:
            row['email'] = AccountValidator.validate_email(str(row['email']))
        except ValidationError as e:
            errors.append(e.message)
    if not row.get('password'):
        errors.append('Password is required')
    elif not isinstance(row['password'], str) or len(row['password']) < 8:
        errors.append('Password must be at least 8 characters long')
    if row.get('userType') not in USER_TYPES:
        errors.append('Invalid user type')
    elif row['userType'] == 'student' and not row.get('candidateNumber'):
        errors.append('Candidate number is required for students')
    elif row['userType'] == 'teacher' and not row.get('school'):
        errors.append('School is required for teachers')
    if row.get('registrationStatus') and row['registrationStatus'] not in ACCOUNT_STATUSES:
        errors.append('Invalid registration status')
    return errors


def _validate_bulk_rows(session_db, rows):
    """
    Check every row on its own, then against the rest of the batch and the
    accounts already stored.
    Returns:
        (cleaned rows, [{row, message}])
    """
    errors = []
    prepared = []
    seen_emails = set()
    seen_candidates = set()
    for number, raw in enumerate(rows, 1):
        if not isinstance(raw, dict):
            errors.append({'row': number, 'message': f"Row {number}: User data must be an object"})
            continue
        row = dict(raw)
        problems = _row_errors(row)

        email = row.get('email')
        if email and not any(p == 'Invalid email format' for p in problems):
            if email in seen_emails:
                problems.append('Duplicate email in batch')
            elif session_db.query(User).filter_by(email=email).first():
                problems.append('Email already exists in system')
            seen_emails.add(email)

        candidate = row.get('candidateNumber')
        if candidate:
            candidate = row['candidateNumber'] = str(candidate)
            if candidate in seen_candidates:
                problems.append('Duplicate candidate number in batch')
            elif _candidate_number_taken(session_db, candidate, None):
                problems.append('Candidate number already exists in system')
            seen_candidates.add(candidate)

        errors.extend({'row': number, 'message': f"Row {number}: {p}"} for p in problems)
        prepared.append(row)
    return prepared, errors


def register_user_routes(bp, require_roles):
    """Register user management routes"""

    # ==================== PROFILE ====================
    @bp.route('/users/profile', methods=['GET'])
    @require_roles()
    def users_get_profile():
        session_db = get_session()
        try:
            user = session_db.get(User, current_user.id)
            if not user:
                return api_error('User not found', 404)
            return api_success(user.to_dict(), 'Profile retrieved successfully')
        except Exception as e:
            return server_error('Get profile error', e)
        finally:
            session_db.close()

    @bp.route('/users/profile', methods=['PUT'])
    @require_roles()
    def users_update_profile():
        data = get_json_body()
        session_db = get_session()
        try:
            user = session_db.get(User, current_user.id)
            if not user:
                return api_error('User not found', 404)

            if user.user_type == UserTypeEnum.STUDENT and data.get('candidateNumber'):
                if _candidate_number_taken(session_db, data['candidateNumber'], user.id):
                    return api_error('Candidate number already exists', 409)

            _apply_profile(user, data)
            session_db.commit()
            logger.info(f"Profile updated for {user.email}")
            return api_success(user.to_dict(), 'Profile updated successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Update profile error', e)
        finally:
            session_db.close()

    # ==================== CHANGE PASSWORD ====================
    @bp.route('/users/change-password', methods=['PUT'])
    @require_roles()
    def users_change_password():
        data = get_json_body()
        current_password = data.get('currentPassword')
        new_password = data.get('newPassword')
        confirm_password = data.get('confirmPassword')

        if not current_password or not new_password or not confirm_password:
            return api_error('Current password, new password, and confirmation are required')

        session_db = get_session()
        try:
            user = session_db.get(User, current_user.id)
            if not user:
                return api_error('User not found', 404)
            if not user.check_password(current_password):
                return api_error('Current password is incorrect', 401)
            if new_password != confirm_password:
                return api_error('New password and confirmation do not match')
            if new_password == current_password:
                return api_error('New password must be different from current password')

            errors = AccountValidator.password_strength_errors(new_password)
            if errors:
                return api_error('Password does not meet security requirements', errors=errors)

            user.set_password(new_password)
            record_audit(session_db, user, 'PASSWORD_CHANGED', 'security', 'User changed password',
                         severity='medium', resource={'type': 'user', 'id': user.id})
            session_db.commit()
            logger.info(f"✅ Password changed for {user.email}")
            return api_success(message='Password changed successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Change password error', e)
        finally:
            session_db.close()

    # ==================== CREATE (ADMIN) ====================
    @bp.route('/users/create', methods=['POST'])
    @require_roles('admin', message='Admin access required')
    def users_create():
        data = get_json_body()
        if not all(data.get(f) for f in ('fullName', 'email', 'password', 'userType')):
            return api_error('Missing required fields: fullName, email, password, userType')
        if data['userType'] not in USER_TYPES:
            return api_error('Invalid user type')
        try:
            data['email'] = AccountValidator.validate_email(data['email'])
        except ValidationError:
            return api_error('Invalid email format')

        status = data.get('registrationStatus', AccountStatusEnum.CONFIRMED.value)
        if status not in ACCOUNT_STATUSES:
            return api_error('Invalid registration status')

        session_db = get_session()
        try:
            if session_db.query(User).filter_by(email=data['email']).first():
                return api_error('User with this email already exists', 409)

            if data['userType'] == 'student':
                if not data.get('candidateNumber'):
                    return api_error('Candidate number is required for students')
                if _candidate_number_taken(session_db, data['candidateNumber'], None):
                    return api_error('Candidate number already exists', 409)
            if data['userType'] == 'teacher' and not data.get('school'):
                return api_error('School is required for teachers')
            if len(data['password']) < 8:
                return api_error('Password must be at least 8 characters long')

            admin = session_db.get(User, current_user.id)
            user = new_account(data, UserTypeEnum(data['userType']), AccountStatusEnum(status),
                               email_verified=parse_bool(data.get('emailVerified')))
            session_db.add(user)
            record_audit(session_db, admin, 'USER_CREATED', 'user_management',
                         f"Created {user.user_type.value} account {user.email}",
                         resource={'type': 'user', 'id': user.id})
            session_db.commit()
            logger.info(f"✅ Admin {admin.email} created {user.user_type.value} {user.email}")
            return api_success(user.to_dict(), 'User created successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Create user error', e)
        finally:
            session_db.close()

    # ==================== BULK CREATE (ADMIN) ====================
    @bp.route('/users/bulk-create', methods=['POST'])
    @require_roles('admin', message='Admin access required')
    def users_bulk_create():
        data = get_json_body()
        rows = data.get('users')
        validate_only = parse_bool(data.get('validateOnly'))
        if not isinstance(rows, list) or not rows:
            return api_error('Users array is required and must not be empty')
        if len(rows) > BULK_CREATE_LIMIT:
            return api_error(f"Maximum {BULK_CREATE_LIMIT} users can be created at once")

        session_db = get_session()
        try:
            prepared, errors = _validate_bulk_rows(session_db, rows)

            if validate_only:
                return api_success({
                    'totalUsers': len(rows),
                    'validUsers': len(rows) - len({e['row'] for e in errors}),
                    'errors': errors,
                }, 'Validation completed with errors' if errors else 'All users are valid')

            if errors:
                return api_error('Validation failed. Please fix errors before proceeding.',
                                 data={'errors': errors})

            admin = session_db.get(User, current_user.id)
            taken_ids = set()
            created = []
            for row in prepared:
                user = new_account(row, UserTypeEnum(row['userType']),
                                   AccountStatusEnum(row.get('registrationStatus') or 'confirmed'),
                                   email_verified=parse_bool(row.get('emailVerified')))
                while user.id in taken_ids or session_db.get(User, user.id):
                    user.id = generate_user_id(user.user_type)
                taken_ids.add(user.id)
                session_db.add(user)
                created.append(user)

            record_audit(session_db, admin, 'USERS_BULK_CREATED', 'user_management',
                         f"Bulk created {len(created)} accounts", severity='medium',
                         resource={'type': 'user', 'ids': [u.id for u in created]})
            session_db.commit()
            logger.info(f"✅ Admin {admin.email} bulk created {len(created)} accounts")
            return api_success({
                'totalRequested': len(rows),
                'successfullyCreated': len(created),
                'failed': 0,
                'createdUsers': [u.to_dict() for u in created],
                'errors': [],
            }, f"Bulk creation completed. {len(created)} users created successfully", 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Bulk create users error', e)
        finally:
            session_db.close()

    # ==================== SEARCH (ADMIN) ====================
    @bp.route('/users/search', methods=['GET'])
    @require_roles('admin', message='Admin access required')
    def users_search():
        q = request.args.get('q', '').strip()
        user_type = request.args.get('userType')
        status = request.args.get('status')
        email_verified = request.args.get('emailVerified')
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)
        sort_by = request.args.get('sortBy', 'createdAt')
        sort_order = request.args.get('sortOrder', 'desc')

        if page < 1 or limit < 1 or limit > 100:
            return api_error('Invalid pagination parameters')
        if sort_by not in SORT_FIELDS:
            sort_by = 'createdAt'

        session_db = get_session()
        try:
            everyone = session_db.query(User).all()

            query = session_db.query(User)
            if q:
                pattern = f"%{q}%"
                query = query.filter(or_(
                    User.full_name.ilike(pattern),
                    User.email.ilike(pattern),
                    User.id.ilike(pattern),
                    User.candidate_number.ilike(pattern),
                    User.school.ilike(pattern),
                ))
            if user_type in USER_TYPES:
                query = query.filter(User.user_type == UserTypeEnum(user_type))
            if status in ACCOUNT_STATUSES:
                query = query.filter(User.registration_status == AccountStatusEnum(status))
            if email_verified is not None:
                query = query.filter(User.email_verified == parse_bool(email_verified))

            column = SORT_FIELDS[sort_by]
            query = query.order_by(column.asc() if sort_order == 'asc' else column.desc())
            matches = query.all()

            page_items, pagination = paginate(matches, page, limit, 'totalUsers')
            statistics = {
                'total': len(everyone),
                'byType': count_by(everyone, lambda u: u.user_type.value),
                'byStatus': count_by(everyone, lambda u: u.registration_status.value),
                'emailVerified': sum(1 for u in everyone if u.email_verified),
                'emailUnverified': sum(1 for u in everyone if not u.email_verified),
            }
            return api_success({
                'users': [u.to_dict() for u in page_items],
                'pagination': pagination,
                'filters': {
                    'query': q,
                    'userType': user_type,
                    'status': status,
                    'emailVerified': email_verified,
                    'sortBy': sort_by,
                    'sortOrder': sort_order,
                },
                'statistics': statistics,
            }, 'Users retrieved successfully')
        except Exception as e:
            return server_error('Search users error', e)
        finally:
            session_db.close()

    # ==================== SINGLE USER ====================
    @bp.route('/users/<user_id>', methods=['GET'])
    @require_roles()
    def users_get(user_id):
        if not current_user.is_admin and current_user.id != user_id:
            return api_error('Access denied', 403)

        session_db = get_session()
        try:
            user = session_db.get(User, user_id)
            if not user:
                return api_error('User not found', 404)
            return api_success(user.to_dict(), 'User retrieved successfully')
        except Exception as e:
            return server_error('Get user error', e)
        finally:
            session_db.close()

    @bp.route('/users/<user_id>', methods=['PUT'])
    @require_roles()
    def users_update(user_id):
        if not current_user.is_admin and current_user.id != user_id:
            return api_error('Access denied', 403)

        data = get_json_body()
        session_db = get_session()
        try:
            user = session_db.get(User, user_id)
            if not user:
                return api_error('User not found', 404)

            if data.get('candidateNumber') and _candidate_number_taken(session_db, data['candidateNumber'], user.id):
                return api_error('Candidate number already exists', 409)

            _apply_profile(user, data)

            # Only admins manage account state
            if current_user.is_admin:
                if 'registrationStatus' in data:
                    if data['registrationStatus'] not in ACCOUNT_STATUSES:
                        return api_error('Invalid registration status')
                    user.registration_status = AccountStatusEnum(data['registrationStatus'])
                if 'emailVerified' in data:
                    user.email_verified = parse_bool(data['emailVerified'])
                actor = session_db.get(User, current_user.id)
                record_audit(session_db, actor, 'USER_UPDATED', 'user_management',
                             f"Updated account {user.email}", resource={'type': 'user', 'id': user.id},
                             changes={k: v for k, v in data.items() if k != 'password'})

            session_db.commit()
            return api_success(user.to_dict(), 'User updated successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Update user error', e)
        finally:
            session_db.close()

    @bp.route('/users/<user_id>', methods=['DELETE'])
    @require_roles('admin', message='Admin access required')
    def users_delete(user_id):
        if current_user.id == user_id:
            return api_error('Cannot delete your own account')

        session_db = get_session()
        try:
            user = session_db.get(User, user_id)
            if not user:
                return api_error('User not found', 404)

            admin = session_db.get(User, current_user.id)
            record_audit(session_db, admin, 'USER_DELETED', 'user_management',
                         f"Deleted account {user.email}", severity='high',
                         resource={'type': 'user', 'id': user.id})
            session_db.delete(user)
            session_db.commit()
            logger.info(f"User {user_id} deleted by {admin.email}")
            return api_success({'id': user_id}, 'User deleted successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Delete user error', e)
        finally:
            session_db.close()
