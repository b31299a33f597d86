"""
Registration Routes
Subject catalogue, candidate and school registrations, payments and
confirmation slips
"""
from flask import request, current_app
from flask_login import current_user
from sqlalchemy import func
from datetime import datetime
import time
import logging

from db_single import get_session
from models import User, generate_id
from registration_models import (
    Subject, StudentRegistration, Payment, SchoolRegistration, PAYMENT_TYPES, PAYMENT_METHODS, PAYMENT_PROVIDERS,
    SCHOOL_TYPES
)
from registration_helpers import (
    generate_registration_id, generate_payment_reference, calculate_fees, registration_subjects,
    check_subject_count, non_object_fields, amount_paid, process_payment, verify_with_gateway,
    mark_payment_status, confirmation_document, school_code, calculate_school_fees, school_statistics,
    registration_statistics, as_number
)
from status_workflow import check_transition, REGISTRATION_TRANSITIONS, SCHOOL_TRANSITIONS, PAYMENT_STATUSES
from validators import ValidationError, LEVELS, missing_fields, parse_bool, parse_int
from api_helpers import api_success, api_error, server_error, get_json_body, paginate, client_ip
from admin_helpers import record_audit

logger = logging.getLogger(__name__)

SUBJECT_LEVELS = ('O Level', 'A Level', 'Both')
SUBJECT_CATEGORIES = ('core', 'elective')
ADMIN_ONLY_STATUSES = ('approved', 'rejected')
INFO_SECTIONS = ('personalInfo', 'guardianInfo', 'schoolInfo')

SCHOOL_REQUIRED_SECTIONS = ('schoolInfo', 'contactInfo', 'principalInfo', 'registrarInfo', 'academicInfo')
SCHOOL_SECTIONS = SCHOOL_REQUIRED_SECTIONS + ('examCenterInfo',)
LOCKED_SCHOOL_STATUSES = ('approved', 'rejected', 'suspended')
# body key -> column
SCHOOL_COLUMNS = {
    'schoolInfo': 'school_info',
    'contactInfo': 'contact_info',
    'principalInfo': 'principal_info',
    'registrarInfo': 'registrar_info',
    'academicInfo': 'academic_info',
    'examCenterInfo': 'exam_center_info',
    'documents': 'documents',
}
SCHOOL_SORT_KEYS = {
    'name': lambda s: s.name.lower(),
    'type': lambda s: s.school_type or '',
    'region': lambda s: s.region or '',
    'status': lambda s: s.status or '',
    'totalStudents': lambda s: as_number((s.academic_info or {}).get('totalStudents')),
    'submittedAt': lambda s: s.submitted_at or datetime.min,
    'createdAt': lambda s: s.created_at or datetime.min,
}
REGISTRATION_SORT_KEYS = {
    'fullName': lambda r: str((r.personal_info or {}).get('fullName') or '').lower(),
    'examLevel': lambda r: r.exam_level or '',
    'examSession': lambda r: r.exam_session or '',
    'status': lambda r: r.status or '',
    'totalAmount': lambda r: as_number((r.fees or {}).get('totalAmount')),
    'submittedAt': lambda r: r.submitted_at or datetime.min,
    'createdAt': lambda r: r.created_at or datetime.min,
}


def _subject_statistics(subjects):
    return {
        'total': len(subjects),
        'byLevel': {
            'oLevel': sum(1 for s in subjects if s.level in ('O Level', 'Both')),
            'aLevel': sum(1 for s in subjects if s.level in ('A Level', 'Both')),
        },
        'byCategory': {
            'core': sum(1 for s in subjects if s.category == 'core'),
            'elective': sum(1 for s in subjects if s.category == 'elective'),
        },
        'active': sum(1 for s in subjects if s.is_active),
        'inactive': sum(1 for s in subjects if not s.is_active),
    }


def _code_taken(session_db, code, level, exclude_id=None):
    """A code may be reused only at a different level"""
    query = session_db.query(Subject).filter(Subject.code == code)
    if exclude_id:
        query = query.filter(Subject.id != exclude_id)
    return any(s.level == level or 'Both' in (s.level, level) for s in query.all())


def _can_access(registration):
    return current_user.is_admin or registration.student_id == current_user.id


def _refresh_payment_status(session_db, registration_id):
    """Mark the registration paid once completed payments cover the total"""
    registration = session_db.get(StudentRegistration, registration_id)
    if not registration:
        return
    payments = session_db.query(Payment).filter_by(registration_id=registration_id).all()
    paid = amount_paid(payments)
    total = (registration.fees or {}).get('totalAmount', 0)
    if paid <= 0:
        return
    registration.payment_status = 'completed' if paid >= total else 'partial'


def register_registration_routes(bp, require_roles):
    """Register subject, registration, school and payment routes"""

    # ==================== SUBJECTS ====================
    @bp.route('/registration/subjects', methods=['GET'])
    def registration_list_subjects():
        level = request.args.get('level', '')
        category = request.args.get('category', '')
        department = request.args.get('department', '').lower()
        is_active = request.args.get('isActive', '')
        q = request.args.get('q', '').lower()

        session_db = get_session()
        try:
            subjects = session_db.query(Subject).all()
            if level:
                subjects = [s for s in subjects if s.level in (level, 'Both')]
            if category:
                subjects = [s for s in subjects if s.category == category]
            if department:
                subjects = [s for s in subjects if department in (s.department or '').lower()]
            if is_active:
                active = is_active == 'true'
                subjects = [s for s in subjects if bool(s.is_active) == active]
            if q:
                subjects = [s for s in subjects
                            if q in s.name.lower() or q in s.code.lower() or q in (s.department or '').lower()]
            subjects.sort(key=lambda s: s.name)

            return api_success({
                'subjects': [s.to_dict() for s in subjects],
                'statistics': _subject_statistics(subjects),
            }, 'Subjects retrieved successfully')
        except Exception as e:
            return server_error('Get subjects error', e)
        finally:
            session_db.close()

    @bp.route('/registration/subjects', methods=['POST'])
    @require_roles('admin', message='Admin access required')
    def registration_create_subject():
        data = get_json_body()
        if missing_fields(data, 'code', 'name', 'level', 'category', 'department', 'duration', 'fee', 'examFormat'):
            return api_error('Missing required fields')
        if non_object_fields(data, 'examFormat'):
            return api_error('examFormat must be an object')
        if data['level'] not in SUBJECT_LEVELS:
            return api_error('Invalid level. Must be "O Level", "A Level", or "Both"')
        if data['category'] not in SUBJECT_CATEGORIES:
            return api_error('Invalid category. Must be "core" or "elective"')

        session_db = get_session()
        try:
            if _code_taken(session_db, data['code'], data['level']):
                return api_error('Subject code already exists', 409)

            subject = Subject(
                id=f"{data['level'].replace(' ', '').upper()}-{data['code']}-{int(time.time() * 1000)}",
                code=data['code'],
                name=data['name'],
                level=data['level'],
                category=data['category'],
                department=data['department'],
                description=data.get('description'),
                prerequisites=data.get('prerequisites') or [],
                duration=data['duration'],
                fee=data['fee'],
                currency=data.get('currency', 'XAF'),
                is_active=parse_bool(data.get('isActive'), True),
                exam_format=data['examFormat'],
            )
            session_db.add(subject)
            session_db.commit()
            logger.info(f"✅ Subject {subject.code} ({subject.level}) created")
            return api_success(subject.to_dict(), 'Subject created successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Create subject error', e)
        finally:
            session_db.close()

    @bp.route('/registration/subjects/<subject_id>', methods=['GET'])
    def registration_get_subject(subject_id):
        session_db = get_session()
        try:
            subject = session_db.get(Subject, subject_id)
            if not subject:
                return api_error('Subject not found', 404)
            return api_success(subject.to_dict(), 'Subject retrieved successfully')
        except Exception as e:
            return server_error('Get subject error', e)
        finally:
            session_db.close()

    @bp.route('/registration/subjects/<subject_id>', methods=['PUT'])
    @require_roles('admin', message='Admin access required')
    def registration_update_subject(subject_id):
        data = get_json_body()
        if non_object_fields(data, 'examFormat'):
            return api_error('examFormat must be an object')
        session_db = get_session()
        try:
            subject = session_db.get(Subject, subject_id)
            if not subject:
                return api_error('Subject not found', 404)

            level = data.get('level', subject.level)
            if level not in SUBJECT_LEVELS:
                return api_error('Invalid level. Must be "O Level", "A Level", or "Both"')
            if 'category' in data and data['category'] not in SUBJECT_CATEGORIES:
                return api_error('Invalid category. Must be "core" or "elective"')
            code = data.get('code', subject.code)
            if ('code' in data or 'level' in data) and _code_taken(session_db, code, level, subject.id):
                return api_error('Subject code already exists', 409)

            subject.code = code
            subject.level = level
            for key, column in (('name', 'name'), ('category', 'category'), ('department', 'department'),
                                ('description', 'description'), ('duration', 'duration'), ('fee', 'fee')):
                if key in data:
                    setattr(subject, column, data[key])
            if 'prerequisites' in data:
                subject.prerequisites = list(data['prerequisites'] or [])
            if 'examFormat' in data:
                subject.exam_format = dict(data['examFormat'] or {})
            if 'isActive' in data:
                subject.is_active = parse_bool(data['isActive'])

            session_db.commit()
            return api_success(subject.to_dict(), 'Subject updated successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Update subject error', e)
        finally:
            session_db.close()

    @bp.route('/registration/subjects/<subject_id>', methods=['DELETE'])
    @require_roles('admin', message='Admin access required')
    def registration_delete_subject(subject_id):
        """Subjects may be referenced by registrations, so they are deactivated"""
        session_db = get_session()
        try:
            subject = session_db.get(Subject, subject_id)
            if not subject:
                return api_error('Subject not found', 404)
            subject.is_active = False
            session_db.commit()
            return api_success(subject.to_dict(), 'Subject deactivated successfully (cannot delete subjects in use)')
        except Exception as e:
            session_db.rollback()
            return server_error('Delete subject error', e)
        finally:
            session_db.close()

    # ==================== STUDENT REGISTRATIONS ====================
    @bp.route('/registration/student', methods=['POST'])
    @require_roles('student', 'admin')
    def registration_create():
        data = get_json_body()
        if missing_fields(data, 'examSession', 'examLevel', 'subjects', 'personalInfo', 'guardianInfo', 'schoolInfo'):
            return api_error('Missing required fields')
        malformed = non_object_fields(data, *INFO_SECTIONS)
        if malformed:
            return api_error(f"{', '.join(malformed)} must be an object")
        exam_level = data['examLevel']
        if exam_level not in LEVELS:
            return api_error('Invalid exam level. Must be "O Level" or "A Level"')
        subject_error = check_subject_count(data['subjects'], exam_level)
        if subject_error:
            return api_error(subject_error)

        status = data.get('status', 'draft')
        if status not in ('draft', 'submitted', 'payment_pending'):
            return api_error('Invalid registration status')

        session_db = get_session()
        try:
            caller = session_db.get(User, current_user.id)
            student_id = data.get('studentId') if caller.is_admin and data.get('studentId') else caller.id
            student = session_db.get(User, student_id)
            if not student:
                return api_error('Student not found', 404)

            duplicate = session_db.query(StudentRegistration).filter_by(
                student_id=student_id, exam_session=data['examSession'], exam_level=exam_level
            ).first()
            if duplicate:
                return api_error('Student is already registered for this exam session and level', 409)

            personal = dict(data['personalInfo'])
            personal.setdefault('nationality', 'Cameroonian')
            personal['email'] = personal.get('email') or student.email

            registration_id = generate_registration_id(exam_level)
            while session_db.get(StudentRegistration, registration_id):
                time.sleep(0.001)
                registration_id = generate_registration_id(exam_level)

            now = datetime.utcnow()
            registration = StudentRegistration(
                id=registration_id,
                student_id=student_id,
                exam_session=data['examSession'],
                exam_level=exam_level,
                exam_center=data.get('examCenter') or 'Default Examination Center',
                center_code=data.get('centerCode') or 'DEC-001',
                subjects=registration_subjects(data['subjects'], exam_level),
                personal_info=personal,
                guardian_info=dict(data['guardianInfo']),
                school_info=dict(data['schoolInfo']),
                documents={},
                fees=calculate_fees(len(data['subjects']), exam_level),
                status=status,
                payment_status='pending',
                submitted_at=now if status == 'submitted' else None,
            )
            session_db.add(registration)
            record_audit(session_db, caller, 'REGISTRATION_CREATED', 'examination',
                         f"Registration {registration_id} created",
                         resource={'type': 'registration', 'id': registration_id})
            session_db.commit()
            logger.info(f"✅ Registration {registration_id} created for {student_id}")
            return api_success(registration.to_dict(), 'Student registration created successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Create student registration error', e)
        finally:
            session_db.close()

    @bp.route('/registration/student', methods=['GET'])
    @require_roles()
    def registration_list():
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)
        session_db = get_session()
        try:
            query = session_db.query(StudentRegistration)
            if not current_user.is_admin:
                query = query.filter(StudentRegistration.student_id == current_user.id)
            elif request.args.get('studentId'):
                query = query.filter(StudentRegistration.student_id == request.args['studentId'])
            for arg, column in (('examSession', StudentRegistration.exam_session),
                                ('examLevel', StudentRegistration.exam_level),
                                ('status', StudentRegistration.status),
                                ('paymentStatus', StudentRegistration.payment_status)):
                if request.args.get(arg):
                    query = query.filter(column == request.args[arg])

            registrations = query.order_by(StudentRegistration.created_at.desc()).all()
            page_items, pagination = paginate(registrations, page, limit, 'totalRegistrations')
            return api_success({
                'registrations': [r.to_dict() for r in page_items],
                'pagination': pagination,
            }, 'Registrations retrieved successfully')
        except Exception as e:
            return server_error('List registrations error', e)
        finally:
            session_db.close()

    @bp.route('/registration/student/<registration_id>', methods=['GET'])
    @require_roles()
    def registration_get(registration_id):
        session_db = get_session()
        try:
            registration = session_db.get(StudentRegistration, registration_id)
            if not registration:
                return api_error('Registration not found', 404)
            if not _can_access(registration):
                return api_error('Access denied', 403)
            return api_success(registration.to_dict(), 'Registration retrieved successfully')
        except Exception as e:
            return server_error('Get registration error', e)
        finally:
            session_db.close()

    @bp.route('/registration/student/<registration_id>', methods=['PUT'])
    @require_roles()
    def registration_update(registration_id):
        data = get_json_body()
        session_db = get_session()
        try:
            registration = session_db.get(StudentRegistration, registration_id)
            if not registration:
                return api_error('Registration not found', 404)
            if not _can_access(registration):
                return api_error('Access denied', 403)
            is_admin = current_user.is_admin
            if not is_admin and registration.status in ADMIN_ONLY_STATUSES:
                return api_error('Cannot modify approved or rejected registration')

            malformed = non_object_fields(data, *INFO_SECTIONS, 'documents')
            if malformed:
                return api_error(f"{', '.join(malformed)} must be an object")
            if 'examLevel' in data and data['examLevel'] not in LEVELS:
                return api_error('Invalid exam level. Must be "O Level" or "A Level"')
            exam_level = data.get('examLevel', registration.exam_level)

            if 'subjects' in data:
                subject_error = check_subject_count(data['subjects'], exam_level)
                if subject_error:
                    return api_error(subject_error)

            new_status = data.get('status')
            if new_status is not None:
                if new_status in ADMIN_ONLY_STATUSES and not is_admin:
                    return api_error('Only administrators can approve or reject registrations', 403)
                check_transition(REGISTRATION_TRANSITIONS, registration.status, new_status, 'registration')

            for key, column in (('examSession', 'exam_session'), ('examCenter', 'exam_center'),
                                ('centerCode', 'center_code')):
                if key in data:
                    setattr(registration, column, data[key])
            registration.exam_level = exam_level
            for key, column in (('personalInfo', 'personal_info'), ('guardianInfo', 'guardian_info'),
                                ('schoolInfo', 'school_info'), ('documents', 'documents')):
                if key in data:
                    merged = dict(getattr(registration, column) or {})
                    merged.update(data[key] or {})
                    setattr(registration, column, merged)

            if 'subjects' in data:
                registration.subjects = registration_subjects(data['subjects'], exam_level)
                registration.fees = calculate_fees(len(data['subjects']), exam_level)

            if new_status is not None and new_status != registration.status:
                registration.status = new_status
                if new_status == 'submitted':
                    registration.submitted_at = datetime.utcnow()
                elif new_status == 'approved':
                    registration.approved_at = datetime.utcnow()
                caller = session_db.get(User, current_user.id)
                record_audit(session_db, caller, 'REGISTRATION_STATUS_CHANGED', 'examination',
                             f"Registration {registration.id} moved to {new_status}",
                             resource={'type': 'registration', 'id': registration.id})

            session_db.commit()
            return api_success(registration.to_dict(), 'Registration updated successfully')
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update registration error', e)
        finally:
            session_db.close()

    @bp.route('/registration/student/<registration_id>', methods=['DELETE'])
    @require_roles()
    def registration_delete(registration_id):
        session_db = get_session()
        try:
            registration = session_db.get(StudentRegistration, registration_id)
            if not registration:
                return api_error('Registration not found', 404)
            if not _can_access(registration):
                return api_error('Access denied', 403)
            if not current_user.is_admin and registration.status != 'draft':
                return api_error('Can only delete draft registrations')

            session_db.delete(registration)
            session_db.commit()
            return api_success(message='Registration deleted successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Delete registration error', e)
        finally:
            session_db.close()

    # ==================== PAYMENTS ====================
    @bp.route('/registration/payment', methods=['POST'])
    @require_roles()
    def registration_create_payment():
        data = get_json_body()
        if missing_fields(data, 'registrationId', 'paymentType', 'amount', 'paymentMethod'):
            return api_error('Missing required payment information')
        if data['paymentType'] not in PAYMENT_TYPES:
            return api_error('Invalid payment type')
        if data['paymentMethod'] not in PAYMENT_METHODS:
            return api_error('Invalid payment method')
        amount = data['amount']
        if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount <= 0:
            return api_error('Payment amount must be greater than zero')

        session_db = get_session()
        try:
            registration = session_db.get(StudentRegistration, data['registrationId'])
            if not registration:
                return api_error('Registration not found', 404)
            if not _can_access(registration):
                return api_error('Access denied', 403)

            caller = session_db.get(User, current_user.id)
            details = data.get('paymentDetails') or {}
            payment_type = data['paymentType']
            payment = Payment(
                id=generate_id('PAY'),
                registration_id=registration.id,
                student_id=registration.student_id,
                reference_number=generate_payment_reference(),
                amount=amount,
                currency=data.get('currency', 'XAF'),
                payment_type=payment_type,
                payment_method=data['paymentMethod'],
                payment_provider=data.get('paymentProvider') or PAYMENT_PROVIDERS[data['paymentMethod']],
                payer_info={
                    'payerName': details.get('payerName') or caller.full_name,
                    'payerPhone': details.get('payerPhone'),
                    'payerEmail': details.get('payerEmail') or caller.email,
                    'breakdown': details.get('breakdown') or [{
                        'item': payment_type.replace('_', ' ').upper(),
                        'quantity': 1,
                        'unitPrice': amount,
                        'totalPrice': amount,
                    }],
                    'ipAddress': client_ip(),
                    'userAgent': request.headers.get('User-Agent', 'unknown'),
                },
                description=details.get('description') or f"Payment for {payment_type}",
                status='pending',
            )
            session_db.add(payment)

            if not parse_bool(data.get('processImmediately')):
                session_db.commit()
                return api_success(payment.to_dict(), 'Payment created successfully', 201)

            mark_payment_status(payment, 'processing')
            success, transaction_id, message = process_payment(
                payment, current_app.config['PAYMENT_SIMULATION_SUCCESS_RATE'])
            if success:
                payment.transaction_id = transaction_id
                mark_payment_status(payment, 'completed')
                session_db.flush()
                _refresh_payment_status(session_db, registration.id)
            else:
                mark_payment_status(payment, 'failed')
            session_db.commit()
            logger.info(f"Payment {payment.reference_number} {payment.status}")

            if success:
                return api_success(payment.to_dict(), message, 201)
            return api_error(message, 400, data=payment.to_dict())
        except Exception as e:
            session_db.rollback()
            return server_error('Create payment error', e)
        finally:
            session_db.close()

    @bp.route('/registration/payment', methods=['GET'])
    @require_roles()
    def registration_list_payments():
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 20)
        session_db = get_session()
        try:
            query = session_db.query(Payment)
            if not current_user.is_admin:
                query = query.filter(Payment.student_id == current_user.id)
            for arg, column in (('registrationId', Payment.registration_id),
                                ('status', Payment.status),
                                ('paymentType', Payment.payment_type)):
                if request.args.get(arg):
                    query = query.filter(column == request.args[arg])

            payments = query.order_by(Payment.created_at.desc()).all()
            page_items, pagination = paginate(payments, page, limit, 'totalPayments')
            return api_success({
                'payments': [p.to_dict() for p in page_items],
                'pagination': pagination,
                'summary': {
                    'totalPaid': amount_paid(payments),
                    'completed': sum(1 for p in payments if p.status == 'completed'),
                    'pending': sum(1 for p in payments if p.status in ('pending', 'processing')),
                    'failed': sum(1 for p in payments if p.status == 'failed'),
                },
            }, 'Payments retrieved successfully')
        except Exception as e:
            return server_error('List payments error', e)
        finally:
            session_db.close()

    @bp.route('/registration/payment/status/<payment_id>', methods=['GET'])
    @require_roles()
    def registration_payment_status(payment_id):
        session_db = get_session()
        try:
            payment = session_db.get(Payment, payment_id)
            if not payment:
                return api_error('Payment not found', 404)
            if not current_user.is_admin and payment.student_id != current_user.id:
                return api_error('Access denied', 403)

            if parse_bool(request.args.get('verify')) and payment.status == 'processing':
                verified, status = verify_with_gateway(payment)
                if verified:
                    mark_payment_status(payment, status)
                    session_db.flush()
                    _refresh_payment_status(session_db, payment.registration_id)
                    session_db.commit()

            return api_success({'payment': payment.to_dict(), 'summary': payment.summary()},
                               'Payment status retrieved successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Get payment status error', e)
        finally:
            session_db.close()

    @bp.route('/registration/payment/status/<payment_id>', methods=['PUT'])
    def registration_update_payment_status(payment_id):
        """Admins and the payment gateway webhook may set a payment status"""
        is_webhook = request.headers.get('X-Webhook-Source') == 'payment-gateway'
        admin_id = None
        if not is_webhook:
            if not current_user.is_authenticated:
                return api_error('Authentication required', 401)
            if not current_user.is_admin:
                return api_error('Access denied', 403)
            admin_id = current_user.id

        data = get_json_body()
        status = data.get('status')
        if status is not None and status not in PAYMENT_STATUSES:
            return api_error('Invalid payment status')

        session_db = get_session()
        try:
            payment = session_db.get(Payment, payment_id)
            if not payment:
                return api_error('Payment not found', 404)

            if status is not None:
                mark_payment_status(payment, status)
                if status == 'failed' and data.get('failureReason'):
                    payment.verification_notes = data['failureReason']
            if 'transactionId' in data:
                payment.transaction_id = data['transactionId']
            if 'verificationNotes' in data:
                payment.verification_notes = data['verificationNotes']
            if admin_id:
                payment.verified_by = admin_id
                payment.verified_at = datetime.utcnow()

            session_db.flush()
            if status == 'completed':
                _refresh_payment_status(session_db, payment.registration_id)
            session_db.commit()
            logger.info(f"Payment {payment.reference_number} set to {payment.status} "
                        f"by {'gateway' if is_webhook else admin_id}")
            return api_success(payment.to_dict(), 'Payment status updated successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Update payment status error', e)
        finally:
            session_db.close()

    # ==================== CONFIRMATION ====================
    def _load_for_confirmation(session_db, registration_id):
        registration = session_db.get(StudentRegistration, registration_id)
        if not registration:
            return None, None, api_error('Registration not found', 404)
        if not _can_access(registration):
            return None, None, api_error('Access denied', 403)
        student = session_db.get(User, registration.student_id)
        if not student:
            return None, None, api_error('Student not found', 404)
        return registration, student, None

    @bp.route('/registration/confirmation/<registration_id>', methods=['GET'])
    @require_roles()
    def registration_confirmation(registration_id):
        session_db = get_session()
        try:
            registration, student, error = _load_for_confirmation(session_db, registration_id)
            if error:
                return error

            payments = session_db.query(Payment).filter_by(registration_id=registration_id).all()
            has_payment = any(p.status == 'completed' for p in payments)
            if registration.status != 'approved':
                return api_error('Registration is not yet approved', 400, data={
                    'registrationId': registration_id,
                    'status': registration.status,
                    'requirements': {'approval': False, 'payment': has_payment},
                })

            return api_success({
                'registration': registration.to_dict(),
                'confirmation': confirmation_document(registration, student, payments),
                'completionStatus': {
                    'isComplete': True,
                    'requirements': {
                        'registration': True,
                        'approval': True,
                        'payment': has_payment,
                        'documentation': True,
                    },
                    'completionPercentage': 100,
                },
                'payments': [p.to_dict() for p in payments],
            }, 'Registration confirmation retrieved successfully')
        except Exception as e:
            return server_error('Get confirmation error', e)
        finally:
            session_db.close()

    @bp.route('/registration/confirmation/<registration_id>', methods=['POST'])
    @require_roles()
    def registration_generate_confirmation(registration_id):
        session_db = get_session()
        try:
            registration, student, error = _load_for_confirmation(session_db, registration_id)
            if error:
                return error
            if not current_user.is_admin and registration.status != 'approved':
                return api_error('Registration must be approved before generating confirmation')

            payments = session_db.query(Payment).filter_by(registration_id=registration_id).all()
            document = confirmation_document(registration, student, payments)
            registration.confirmation_number = document['confirmationNumber']
            registration.confirmed_at = datetime.utcnow()
            session_db.commit()
            return api_success({'confirmation': document, 'registration': registration.to_dict()},
                               'Confirmation document generated successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Generate confirmation error', e)
        finally:
            session_db.close()

    # ==================== SCHOOL REGISTRATIONS ====================
    @bp.route('/registration/school', methods=['POST'])
    @require_roles('admin', 'teacher', message='Only admins and teachers can register schools')
    def registration_create_school():
        data = get_json_body()
        if missing_fields(data, *SCHOOL_REQUIRED_SECTIONS):
            return api_error('Missing required school information')
        malformed = non_object_fields(data, *SCHOOL_SECTIONS)
        if malformed:
            return api_error(f"{', '.join(malformed)} must be an object")
        school_info = data['schoolInfo']
        if school_info.get('type') not in tuple(SCHOOL_TYPES):
            return api_error('Invalid school type')
        name = str(school_info.get('name') or '').strip()
        if not name:
            return api_error('School name is required')
        status = data.get('status', 'draft')
        if status not in ('draft', 'submitted'):
            return api_error('Invalid school registration status')

        session_db = get_session()
        try:
            duplicate = session_db.query(SchoolRegistration).filter(
                func.lower(SchoolRegistration.name) == name.lower()).first()
            if duplicate:
                return api_error('School with this name already exists', 409)

            registration_id = f"SCH-REG-{int(time.time() * 1000)}"
            while session_db.get(SchoolRegistration, registration_id):
                time.sleep(0.001)
                registration_id = f"SCH-REG-{int(time.time() * 1000)}"

            exam_center_info = data.get('examCenterInfo') or {'isExamCenter': False, 'examTypes': [],
                                                             'facilities': []}
            region = data['contactInfo'].get('region')
            region = str(region) if region else None
            now = datetime.utcnow()
            school = SchoolRegistration(
                id=registration_id,
                school_code=school_code(region, school_info['type']),
                name=name,
                school_type=school_info['type'],
                region=region,
                school_info=dict(school_info, name=name, level=school_info.get('level') or 'Secondary'),
                contact_info=data['contactInfo'],
                principal_info=data['principalInfo'],
                registrar_info=data['registrarInfo'],
                academic_info=data['academicInfo'],
                exam_center_info=exam_center_info,
                documents={},
                fees=calculate_school_fees(school_info['type'], bool(exam_center_info.get('isExamCenter'))),
                status=status,
                payment_status='pending',
                registered_by=current_user.id,
                submitted_at=now if status == 'submitted' else None,
            )
            session_db.add(school)
            caller = session_db.get(User, current_user.id)
            record_audit(session_db, caller, 'SCHOOL_REGISTERED', 'examination',
                         f"School {name} registered as {school.school_code}",
                         resource={'type': 'school_registration', 'id': registration_id})
            session_db.commit()
            logger.info(f"✅ School registration {registration_id} ({school.school_code}) created")
            return api_success(school.to_dict(), 'School registration created successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Create school registration error', e)
        finally:
            session_db.close()

    @bp.route('/registration/school/<registration_id>', methods=['GET'])
    @require_roles('admin', 'teacher', 'examiner', message='Access denied')
    def registration_get_school(registration_id):
        session_db = get_session()
        try:
            school = session_db.get(SchoolRegistration, registration_id)
            if not school:
                return api_error('School registration not found', 404)
            return api_success(school.to_dict(), 'School registration retrieved successfully')
        except Exception as e:
            return server_error('Get school registration error', e)
        finally:
            session_db.close()

    @bp.route('/registration/school/<registration_id>', methods=['PUT'])
    @require_roles('admin', 'teacher', 'examiner', message='Access denied')
    def registration_update_school(registration_id):
        data = get_json_body()
        malformed = non_object_fields(data, *SCHOOL_SECTIONS, 'documents')
        if malformed:
            return api_error(f"{', '.join(malformed)} must be an object")

        session_db = get_session()
        try:
            school = session_db.get(SchoolRegistration, registration_id)
            if not school:
                return api_error('School registration not found', 404)
            is_admin = current_user.is_admin
            if not is_admin and school.status in LOCKED_SCHOOL_STATUSES:
                return api_error('Cannot modify approved, rejected, or suspended registration')

            school_type = (data.get('schoolInfo') or {}).get('type', school.school_type)
            if school_type not in tuple(SCHOOL_TYPES):
                return api_error('Invalid school type')
            new_status = data.get('status') if is_admin else None
            if new_status is not None:
                check_transition(SCHOOL_TRANSITIONS, school.status, new_status, 'school registration')

            was_exam_center = school.is_exam_center
            for key, column in SCHOOL_COLUMNS.items():
                if key in data:
                    merged = dict(getattr(school, column) or {})
                    merged.update(data[key] or {})
                    setattr(school, column, merged)

            name = str((school.school_info or {}).get('name') or school.name).strip()
            if not name:
                session_db.rollback()
                return api_error('School name is required')
            if name.lower() != school.name.lower():
                duplicate = session_db.query(SchoolRegistration).filter(
                    func.lower(SchoolRegistration.name) == name.lower(),
                    SchoolRegistration.id != school.id).first()
                if duplicate:
                    session_db.rollback()
                    return api_error('School with this name already exists', 409)
            school.name = name
            region = (school.contact_info or {}).get('region')
            school.region = str(region) if region else school.region
            if school_type != school.school_type or school.is_exam_center != was_exam_center:
                school.school_type = school_type
                school.fees = calculate_school_fees(school_type, school.is_exam_center)

            if new_status is not None and new_status != school.status:
                school.status = new_status
                if new_status == 'approved':
                    school.approved_at = datetime.utcnow()
                elif new_status == 'submitted':
                    school.submitted_at = datetime.utcnow()
                caller = session_db.get(User, current_user.id)
                record_audit(session_db, caller, 'SCHOOL_STATUS_CHANGED', 'examination',
                             f"School registration {school.id} moved to {new_status}",
                             resource={'type': 'school_registration', 'id': school.id})

            session_db.commit()
            return api_success(school.to_dict(), 'School registration updated successfully')
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update school registration error', e)
        finally:
            session_db.close()

    @bp.route('/registration/school/<registration_id>', methods=['DELETE'])
    @require_roles('admin', message='Admin access required')
    def registration_delete_school(registration_id):
        session_db = get_session()
        try:
            school = session_db.get(SchoolRegistration, registration_id)
            if not school:
                return api_error('School registration not found', 404)
            caller = session_db.get(User, current_user.id)
            record_audit(session_db, caller, 'SCHOOL_DELETED', 'examination',
                         f"School registration {school.id} ({school.name}) deleted", severity='medium',
                         resource={'type': 'school_registration', 'id': school.id})
            session_db.delete(school)
            session_db.commit()
            return api_success({'id': registration_id}, 'School registration deleted successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Delete school registration error', e)
        finally:
            session_db.close()

    @bp.route('/registration/schools', methods=['GET'])
    @require_roles('admin', 'teacher', 'examiner', message='Access denied')
    def registration_list_schools():
        q = request.args.get('q', '').strip().lower()
        school_type = request.args.get('type', '')
        region = request.args.get('region', '').lower()
        status = request.args.get('status', '')
        is_exam_center = request.args.get('isExamCenter', '')
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 20)
        sort_by = request.args.get('sortBy', 'createdAt')
        sort_order = request.args.get('sortOrder', 'desc')
        if page < 1 or limit < 1 or limit > 100:
            return api_error('Invalid pagination parameters')
        if sort_by not in SCHOOL_SORT_KEYS:
            sort_by = 'createdAt'

        session_db = get_session()
        try:
            schools = session_db.query(SchoolRegistration).all()
            if q:
                schools = [s for s in schools if q in s.name.lower() or q in s.school_code.lower()
                           or q in str((s.contact_info or {}).get('address') or '').lower()
                           or q in str((s.principal_info or {}).get('fullName') or '').lower()]
            if school_type:
                schools = [s for s in schools if s.school_type == school_type]
            if region:
                schools = [s for s in schools if region in (s.region or '').lower()]
            if status:
                schools = [s for s in schools if s.status == status]
            if is_exam_center:
                wanted = parse_bool(is_exam_center)
                schools = [s for s in schools if s.is_exam_center == wanted]
            schools.sort(key=SCHOOL_SORT_KEYS[sort_by], reverse=sort_order != 'asc')

            page_items, pagination = paginate(schools, page, limit, 'totalSchools')
            return api_success({
                'schools': [s.to_dict() for s in page_items],
                'pagination': pagination,
                'statistics': school_statistics(schools),
                'filters': {
                    'query': q,
                    'type': school_type,
                    'region': region,
                    'status': status,
                    'isExamCenter': is_exam_center,
                    'sortBy': sort_by,
                    'sortOrder': sort_order,
                },
            }, 'Schools retrieved successfully')
        except Exception as e:
            return server_error('List schools error', e)
        finally:
            session_db.close()

    # ==================== REGISTRATION SEARCH ====================
    @bp.route('/registration/students/search', methods=['GET'])
    @require_roles('admin', 'examiner', message='Admin or examiner access required')
    def registration_search():
        q = request.args.get('q', '').strip().lower()
        exam_center = request.args.get('examCenter', '').lower()
        region = request.args.get('region', '').lower()
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 20)
        sort_by = request.args.get('sortBy', 'createdAt')
        sort_order = request.args.get('sortOrder', 'desc')
        if page < 1 or limit < 1 or limit > 100:
            return api_error('Invalid pagination parameters')
        if sort_by not in REGISTRATION_SORT_KEYS:
            sort_by = 'createdAt'

        session_db = get_session()
        try:
            query = session_db.query(StudentRegistration)
            for arg, column in (('examLevel', StudentRegistration.exam_level),
                                ('examSession', StudentRegistration.exam_session),
                                ('status', StudentRegistration.status),
                                ('paymentStatus', StudentRegistration.payment_status)):
                if request.args.get(arg):
                    query = query.filter(column == request.args[arg])
            registrations = query.all()

            if q:
                registrations = [r for r in registrations if any(q in value.lower() for value in (
                    str((r.personal_info or {}).get('fullName') or ''),
                    str((r.personal_info or {}).get('email') or ''),
                    r.id,
                    r.student_id,
                    str((r.school_info or {}).get('name') or ''),
                ))]
            if exam_center:
                registrations = [r for r in registrations if exam_center in (r.exam_center or '').lower()]
            if region:
                registrations = [r for r in registrations
                                 if region in str((r.personal_info or {}).get('region') or '').lower()]
            registrations.sort(key=REGISTRATION_SORT_KEYS[sort_by], reverse=sort_order != 'asc')

            page_items, pagination = paginate(registrations, page, limit, 'totalRegistrations')
            return api_success({
                'registrations': [r.to_dict() for r in page_items],
                'pagination': pagination,
                'statistics': registration_statistics(registrations),
            }, 'Student registrations retrieved successfully')
        except Exception as e:
            return server_error('Search registrations error', e)
        finally:
            session_db.close()
