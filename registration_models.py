"""
Registration Models
Subject catalogue, candidate registrations, registration payments and school registrations
"""
from sqlalchemy import Column, Integer, String, DateTime, Float, Text, Boolean, JSON
from datetime import datetime
from models import Base, isoformat

# Fees in XAF per level
LEVEL_FEES = {
    'O Level': {'registration': 5000, 'per_subject': 2000, 'max_subjects': 9},
    'A Level': {'registration': 7500, 'per_subject': 3000, 'max_subjects': 4},
}

PAYMENT_TYPES = ('registration', 'subject_fees', 'late_fee', 'penalty')
PAYMENT_METHODS = ('mobile_money', 'bank_transfer', 'cash', 'card', 'online')
PAYMENT_PROVIDERS = {
    'mobile_money': 'MTN Mobile Money',
    'bank_transfer': 'Bank Transfer',
    'cash': 'Cash Office',
    'card': 'Card Processor',
    'online': 'Online Gateway',
}


class Subject(Base):
    """Examinable subject in the catalogue"""
    __tablename__ = 'subjects'

    id = Column(String(64), primary_key=True)
    code = Column(String(20), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    level = Column(String(20), nullable=False)  # O Level, A Level, Both
    category = Column(String(20), default='elective')  # core, elective
    department = Column(String(100), default='')
    description = Column(Text)
    prerequisites = Column(JSON, default=list)
    duration = Column(Integer, default=120)  # minutes
    fee = Column(Float, default=0)
    currency = Column(String(5), default='XAF')
    is_active = Column(Boolean, default=True)
    exam_format = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'name': self.name,
            'level': self.level,
            'category': self.category,
            'department': self.department,
            'description': self.description,
            'prerequisites': self.prerequisites or [],
            'duration': self.duration,
            'fee': self.fee,
            'currency': self.currency,
            'isActive': bool(self.is_active),
            'examFormat': self.exam_format or {},
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<Subject {self.code} {self.name} ({self.level})>"


class StudentRegistration(Base):
    """A candidate's registration for one exam session and level"""
    __tablename__ = 'student_registrations'

    id = Column(String(64), primary_key=True)  # REG-2025-OL-123456
    student_id = Column(String(64), nullable=False, index=True)
    exam_session = Column(String(20), nullable=False)
    exam_level = Column(String(20), nullable=False)
    exam_center = Column(String(200))
    center_code = Column(String(50))

    subjects = Column(JSON, default=list)
    personal_info = Column(JSON, default=dict)
    guardian_info = Column(JSON, default=dict)
    school_info = Column(JSON, default=dict)
    documents = Column(JSON, default=dict)
    fees = Column(JSON, default=dict)

    status = Column(String(20), default='draft')
    payment_status = Column(String(20), default='pending')

    submitted_at = Column(DateTime)
    approved_at = Column(DateTime)
    confirmation_number = Column(String(80))
    confirmed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'studentId': self.student_id,
            'examSession': self.exam_session,
            'examLevel': self.exam_level,
            'examCenter': self.exam_center,
            'centerCode': self.center_code,
            'subjects': self.subjects or [],
            'personalInfo': self.personal_info or {},
            'guardianInfo': self.guardian_info or {},
            'schoolInfo': self.school_info or {},
            'documents': self.documents or {},
            'fees': self.fees or {},
            'status': self.status,
            'paymentStatus': self.payment_status,
            'submittedAt': isoformat(self.submitted_at),
            'approvedAt': isoformat(self.approved_at),
            'confirmationNumber': self.confirmation_number,
            'confirmedAt': isoformat(self.confirmed_at),
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<StudentRegistration {self.id} {self.status}>"


class Payment(Base):
    """Registration payment"""
    __tablename__ = 'payments'

    id = Column(String(64), primary_key=True)
    registration_id = Column(String(64), nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    reference_number = Column(String(40), unique=True, nullable=False)

    amount = Column(Float, nullable=False)
    currency = Column(String(5), default='XAF')
    payment_type = Column(String(20), nullable=False)
    payment_method = Column(String(20), nullable=False)
    payment_provider = Column(String(100))
    payer_info = Column(JSON, default=dict)
    description = Column(Text)

    status = Column(String(20), default='pending')
    transaction_id = Column(String(64))

    # Verification
    is_verified = Column(Boolean, default=False)
    verified_by = Column(String(64))
    verified_at = Column(DateTime)
    verification_notes = Column(Text)

    # Timestamps for each stage
    initiated_at = Column(DateTime)
    completed_at = Column(DateTime)
    failed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def summary(self):
        return {
            'paymentId': self.id,
            'referenceNumber': self.reference_number,
            'amount': self.amount,
            'currency': self.currency,
            'status': self.status,
            'paymentMethod': self.payment_method,
            'paymentProvider': self.payment_provider,
            'transactionId': self.transaction_id,
            'createdAt': isoformat(self.created_at),
            'completedAt': isoformat(self.completed_at),
            'isVerified': bool(self.is_verified),
            'canRetry': self.status in ('failed', 'cancelled'),
            'canCancel': self.status in ('pending', 'processing'),
        }

    def to_dict(self):
        return {
            'id': self.id,
            'registrationId': self.registration_id,
            'studentId': self.student_id,
            'referenceNumber': self.reference_number,
            'amount': self.amount,
            'currency': self.currency,
            'paymentType': self.payment_type,
            'paymentMethod': self.payment_method,
            'paymentProvider': self.payment_provider,
            'payerInfo': self.payer_info or {},
            'description': self.description,
            'status': self.status,
            'transactionId': self.transaction_id,
            'verification': {
                'isVerified': bool(self.is_verified),
                'verifiedBy': self.verified_by,
                'verifiedAt': isoformat(self.verified_at),
                'verificationNotes': self.verification_notes,
            },
            'timestamps': {
                'createdAt': isoformat(self.created_at),
                'initiatedAt': isoformat(self.initiated_at),
                'completedAt': isoformat(self.completed_at),
                'failedAt': isoformat(self.failed_at),
                'cancelledAt': isoformat(self.cancelled_at),
            },
        }

    def __repr__(self):
        return f"<Payment {self.reference_number} {self.amount} {self.status}>"


# School fees in XAF per school type; exam centres pay the surcharge on top
SCHOOL_TYPES = {
    'Government': {'code': 'GS', 'registration': 50000, 'annual': 25000},
    'Private': {'code': 'PS', 'registration': 75000, 'annual': 35000},
    'Mission': {'code': 'MS', 'registration': 60000, 'annual': 30000},
}
EXAM_CENTRE_SURCHARGE = {'registration': 25000, 'annual': 15000}


class SchoolRegistration(Base):
    """A school's registration with the examination board"""
    __tablename__ = 'school_registrations'

    id = Column(String(64), primary_key=True)  # SCH-REG-{ts}
    school_code = Column(String(20), nullable=False, index=True)
    name = Column(String(200), nullable=False, index=True)
    school_type = Column(String(20), nullable=False)
    region = Column(String(100))

    school_info = Column(JSON, default=dict)
    contact_info = Column(JSON, default=dict)
    principal_info = Column(JSON, default=dict)
    registrar_info = Column(JSON, default=dict)
    academic_info = Column(JSON, default=dict)
    exam_center_info = Column(JSON, default=dict)
    documents = Column(JSON, default=dict)
    fees = Column(JSON, default=dict)

    status = Column(String(20), default='draft')
    payment_status = Column(String(20), default='pending')
    registered_by = Column(String(64))

    submitted_at = Column(DateTime)
    approved_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_exam_center(self):
        return bool((self.exam_center_info or {}).get('isExamCenter'))

    def to_dict(self):
        return {
            'id': self.id,
            'schoolCode': self.school_code,
            'schoolInfo': self.school_info or {},
            'contactInfo': self.contact_info or {},
            'principalInfo': self.principal_info or {},
            'registrarInfo': self.registrar_info or {},
            'academicInfo': self.academic_info or {},
            'examCenterInfo': self.exam_center_info or {},
            'documents': self.documents or {},
            'fees': self.fees or {},
            'status': self.status,
            'paymentStatus': self.payment_status,
            'registeredBy': self.registered_by,
            'submittedAt': isoformat(self.submitted_at),
            'approvedAt': isoformat(self.approved_at),
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<SchoolRegistration {self.school_code} {self.name} {self.status}>"
