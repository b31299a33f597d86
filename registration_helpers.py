"""
Registration Helper Functions
Fee calculation, registration and payment references, the simulated
payment gateway, confirmation slips and school registration figures
"""

from datetime import datetime, timedelta
import random
import string
import time

from registration_models import LEVEL_FEES, SCHOOL_TYPES, EXAM_CENTRE_SURCHARGE, Payment
from models import random_code
from api_helpers import round_half_up

CONFIRMATION_INSTRUCTIONS = [
    'Keep this confirmation slip safe as it will be required during examination',
    'Arrive at the examination center 30 minutes before the exam starts',
    'Bring a valid ID card and this confirmation slip',
    'Mobile phones and electronic devices are not allowed in the examination hall',
    'Contact the examination board for any queries or changes',
]


# ===== REFERENCES =====

def generate_registration_id(exam_level: str) -> str:
    """REG-{year}-{OL|AL}-{last 6 digits of the timestamp}"""
    level = 'OL' if exam_level == 'O Level' else 'AL'
    stamp = str(int(time.time() * 1000))[-6:]
    return f"REG-{datetime.utcnow().year}-{level}-{stamp}"


def generate_payment_reference() -> str:
    stamp = str(int(time.time() * 1000))[-8:]
    return f"PAY-{stamp}-{random_code(6)}"


def generate_transaction_id() -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"TXN-{int(time.time() * 1000)}-{suffix}"


# ===== FEES =====

def calculate_fees(subject_count: int, exam_level: str) -> dict:
    """Registration fee plus a flat fee per subject, in XAF"""
    table = LEVEL_FEES[exam_level]
    subject_fees = subject_count * table['per_subject']
    return {
        'registrationFee': table['registration'],
        'subjectFees': subject_fees,
        'totalAmount': table['registration'] + subject_fees,
        'currency': 'XAF',
    }


def registration_subjects(subjects, exam_level):
    fee = LEVEL_FEES[exam_level]['per_subject']
    return [{
        'code': s.get('code'),
        'name': s.get('name'),
        'type': s.get('type') or 'elective',
        'fee': fee,
    } for s in subjects]


def non_object_fields(data, *fields):
    """Names of the given fields whose values are present but not JSON objects"""
    return [f for f in fields if f in data and data[f] is not None and not isinstance(data[f], dict)]


def check_subject_count(subjects, exam_level):
    """Error message when the subject list is empty or too long, else None"""
    if not isinstance(subjects, list) or not subjects:
        return 'At least one subject is required'
    if not all(isinstance(s, dict) for s in subjects):
        return 'Each subject must be an object with a code and name'
    maximum = LEVEL_FEES[exam_level]['max_subjects']
    if len(subjects) > maximum:
        return f"Maximum {maximum} subjects allowed for {exam_level}"
    return None


# ===== SCHOOLS AND SEARCH STATISTICS =====

def school_code(region, school_type):
    """{region prefix}-{GS|PS|MS}-{last 4 digits of the timestamp}"""
    prefix = str(region or 'XX')[:2].upper()
    return f"{prefix}-{SCHOOL_TYPES[school_type]['code']}-{str(int(time.time() * 1000))[-4:]}"


def calculate_school_fees(school_type, is_exam_center):
    table = SCHOOL_TYPES[school_type]
    registration_fee = table['registration']
    annual_fee = table['annual']
    if is_exam_center:
        registration_fee += EXAM_CENTRE_SURCHARGE['registration']
        annual_fee += EXAM_CENTRE_SURCHARGE['annual']
    return {
        'registrationFee': registration_fee,
        'annualFee': annual_fee,
        'totalAmount': registration_fee + annual_fee,
        'currency': 'XAF',
    }


def as_number(value):
    """Numeric JSON values, 0 for anything else"""
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


def school_statistics(schools):
    students = sum(as_number((s.academic_info or {}).get('totalStudents')) for s in schools)
    by_region = {}
    for school in schools:
        by_region[school.region or 'Unknown'] = by_region.get(school.region or 'Unknown', 0) + 1
    return {
        'total': len(schools),
        'byType': {t.lower(): sum(1 for s in schools if s.school_type == t) for t in SCHOOL_TYPES},
        'byStatus': {
            'draft': sum(1 for s in schools if s.status == 'draft'),
            'submitted': sum(1 for s in schools if s.status == 'submitted'),
            'underReview': sum(1 for s in schools if s.status == 'under_review'),
            'approved': sum(1 for s in schools if s.status == 'approved'),
            'rejected': sum(1 for s in schools if s.status == 'rejected'),
            'suspended': sum(1 for s in schools if s.status == 'suspended'),
        },
        'examCenters': sum(1 for s in schools if s.is_exam_center),
        'totalStudents': students,
        'totalTeachers': sum(as_number((s.academic_info or {}).get('teachingStaff')) for s in schools),
        'averageStudentsPerSchool': round_half_up(students / len(schools)) if schools else 0,
        'byRegion': by_region,
    }


def registration_statistics(registrations):
    """Counts and fee totals over a set of candidate registrations"""
    total_fees = sum(as_number((r.fees or {}).get('totalAmount')) for r in registrations)
    return {
        'total': len(registrations),
        'byLevel': {
            'oLevel': sum(1 for r in registrations if r.exam_level == 'O Level'),
            'aLevel': sum(1 for r in registrations if r.exam_level == 'A Level'),
        },
        'byStatus': {
            'draft': sum(1 for r in registrations if r.status == 'draft'),
            'submitted': sum(1 for r in registrations if r.status == 'submitted'),
            'approved': sum(1 for r in registrations if r.status == 'approved'),
            'rejected': sum(1 for r in registrations if r.status == 'rejected'),
            'paymentPending': sum(1 for r in registrations if r.status == 'payment_pending'),
        },
        'byPaymentStatus': {s: sum(1 for r in registrations if r.payment_status == s)
                            for s in ('pending', 'partial', 'completed', 'failed')},
        'totalFees': total_fees,
        'averageFees': round_half_up(total_fees / len(registrations)) if registrations else 0,
    }


def amount_paid(payments):
    return sum(p.amount for p in payments if p.status == 'completed')


# ===== PAYMENT GATEWAY =====

def process_payment(payment: Payment, success_rate: float):
    """
    Simulated gateway call.
    Returns:
        (success, transaction_id, message)
    """
    if random.random() < success_rate:
        return True, generate_transaction_id(), 'Payment processed successfully'
    return False, None, 'Payment failed. Please try again or contact support.'


def verify_with_gateway(payment: Payment):
    """A processing payment is confirmed once the gateway has issued a transaction"""
    if payment.transaction_id:
        return True, 'completed'
    return False, 'pending'


def mark_payment_status(payment: Payment, status: str, now=None):
    """Set a payment status and stamp the matching timestamp"""
    now = now or datetime.utcnow()
    payment.status = status
    if status == 'processing':
        payment.initiated_at = now
    elif status == 'completed':
        payment.completed_at = now
        payment.is_verified = True
        payment.verified_at = now
    elif status == 'failed':
        payment.failed_at = now
    elif status == 'cancelled':
        payment.cancelled_at = now


# ===== CONFIRMATION =====

def confirmation_document(registration, student, payments, now=None):
    """Confirmation slip for an approved registration"""
    now = now or datetime.utcnow()
    fees = registration.fees or {}
    total = fees.get('totalAmount', 0)
    paid = amount_paid(payments)
    personal = registration.personal_info or {}
    return {
        'confirmationNumber': f"CONF-{registration.id}-{str(int(now.timestamp() * 1000))[-6:]}",
        'examSession': registration.exam_session,
        'examLevel': registration.exam_level,
        'examCenter': registration.exam_center,
        'centerCode': registration.center_code,
        'student': {
            'id': student.id,
            'fullName': personal.get('fullName') or student.full_name,
            'dateOfBirth': personal.get('dateOfBirth') or student.date_of_birth,
            'gender': personal.get('gender'),
            'candidateNumber': student.candidate_number,
        },
        'subjects': registration.subjects or [],
        'fees': {
            'totalAmount': total,
            'paidAmount': paid,
            'balance': total - paid,
            'currency': fees.get('currency', 'XAF'),
        },
        'status': registration.status,
        'confirmedAt': now.isoformat(),
        'validUntil': (now + timedelta(days=365)).isoformat(),
        'instructions': CONFIRMATION_INSTRUCTIONS,
    }
