"""
Results Models
Candidate results, publication batches, certificates, verification logs
and result notifications
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON
from datetime import datetime
from models import Base, isoformat


class ExamResult(Base):
    """A candidate's result for one exam"""
    __tablename__ = 'exam_results'

    id = Column(String(200), primary_key=True)  # RESULT-{examId}-{studentId}-{ts}
    exam_id = Column(String(80), nullable=False, index=True)
    exam_session = Column(String(20), nullable=False)
    exam_level = Column(String(20), nullable=False)
    exam_year = Column(String(4))

    student_id = Column(String(120), nullable=False, index=True)
    student_number = Column(String(40))
    student_name = Column(String(200))
    school_id = Column(String(64), index=True)
    school_name = Column(String(200))
    centre_code = Column(String(40))
    centre_name = Column(String(200))

    subjects = Column(JSON, default=list)
    overall_performance = Column(JSON, default=dict)
    special_considerations = Column(JSON, default=list)
    verification = Column(JSON, default=dict)
    publication = Column(JSON, default=dict)
    certificates = Column(JSON, default=dict)
    audit = Column(JSON, default=dict)

    status = Column(String(20), default='generated')
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_published(self):
        return bool((self.publication or {}).get('isPublished'))

    @property
    def verification_code(self):
        return (self.verification or {}).get('verificationCode')

    @property
    def average_percentage(self):
        return (self.overall_performance or {}).get('averagePercentage', 0)

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'examSession': self.exam_session,
            'examLevel': self.exam_level,
            'examYear': self.exam_year,
            'studentId': self.student_id,
            'studentNumber': self.student_number,
            'studentName': self.student_name,
            'schoolId': self.school_id,
            'schoolName': self.school_name,
            'centerCode': self.centre_code,
            'centerName': self.centre_name,
            'subjects': self.subjects or [],
            'overallPerformance': self.overall_performance or {},
            'specialConsiderations': self.special_considerations or [],
            'verification': self.verification or {},
            'publication': self.publication or {},
            'certificates': self.certificates or {},
            'audit': self.audit or {},
            'status': self.status,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ExamResult {self.student_id} {self.exam_id} {self.status}>"


class PublicationBatch(Base):
    """Results published together"""
    __tablename__ = 'publication_batches'

    id = Column(String(160), primary_key=True)  # BATCH-{examId}-{ts}
    exam_id = Column(String(80), nullable=False, index=True)
    exam_session = Column(String(20))
    exam_level = Column(String(20))
    batch_name = Column(String(200))
    result_ids = Column(JSON, default=list)
    publication_type = Column(String(20), default='final')  # full, partial, provisional, final
    access_level = Column(String(20), default='public')  # private, school, public
    release_date = Column(String(40))

    statistics = Column(JSON, default=dict)
    notifications = Column(JSON, default=dict)
    verification = Column(JSON, default=dict)

    status = Column(String(20), default='published')  # draft, scheduled, published, withdrawn
    published_by = Column(String(64))
    published_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'examSession': self.exam_session,
            'examLevel': self.exam_level,
            'batchName': self.batch_name,
            'resultIds': self.result_ids or [],
            'publicationType': self.publication_type,
            'accessLevel': self.access_level,
            'releaseDate': self.release_date,
            'statistics': self.statistics or {},
            'notifications': self.notifications or {},
            'verification': self.verification or {},
            'status': self.status,
            'publishedBy': self.published_by,
            'publishedAt': isoformat(self.published_at),
        }

    def __repr__(self):
        return f"<PublicationBatch {self.id} {self.status}>"


class Certificate(Base):
    """Certificate issued from a published result"""
    __tablename__ = 'certificates'

    id = Column(String(200), primary_key=True)  # CERT-{examId}-{studentId}-{ts}
    certificate_number = Column(String(20), unique=True, nullable=False)
    result_id = Column(String(200))
    student_id = Column(String(120), nullable=False, index=True)
    student_name = Column(String(200))
    student_number = Column(String(40))
    exam_id = Column(String(80), nullable=False)
    exam_session = Column(String(20))
    exam_level = Column(String(20))
    exam_year = Column(String(4))
    school_name = Column(String(200))
    centre_name = Column(String(200))

    subjects = Column(JSON, default=list)
    overall_performance = Column(JSON, default=dict)
    certificate_type = Column(String(20), default='original')  # original, duplicate, replacement, provisional
    issuance_details = Column(JSON, default=dict)
    security = Column(JSON, default=dict)
    delivery = Column(JSON, default=dict)
    downloads = Column(JSON, default=list)
    prints = Column(JSON, default=list)

    status = Column(String(20), default='generated')  # draft, generated, issued, delivered, revoked
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def print_count(self):
        return sum(p.get('copies', 0) for p in self.prints or [])

    def to_dict(self):
        return {
            'id': self.id,
            'certificateNumber': self.certificate_number,
            'resultId': self.result_id,
            'studentId': self.student_id,
            'studentName': self.student_name,
            'studentNumber': self.student_number,
            'examId': self.exam_id,
            'examSession': self.exam_session,
            'examLevel': self.exam_level,
            'examYear': self.exam_year,
            'schoolName': self.school_name,
            'centerName': self.centre_name,
            'subjects': self.subjects or [],
            'overallPerformance': self.overall_performance or {},
            'certificateType': self.certificate_type,
            'issuanceDetails': self.issuance_details or {},
            'security': self.security or {},
            'delivery': self.delivery or {},
            'downloads': self.downloads or [],
            'prints': self.prints or [],
            'status': self.status,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<Certificate {self.certificate_number} {self.status}>"


class VerificationLog(Base):
    """Public verification attempt of a result or certificate"""
    __tablename__ = 'verification_logs'

    id = Column(String(64), primary_key=True)
    verification_type = Column(String(20), default='result')  # result, certificate
    verification_method = Column(String(20), default='code')
    search_criteria = Column(JSON, default=dict)
    is_valid = Column(Boolean, default=False)
    confidence = Column(Integer, default=0)
    matched_records = Column(Integer, default=0)
    verification_status = Column(String(20))  # verified, invalid, partial, suspicious
    security_checks = Column(JSON, default=list)
    fraud_indicators = Column(JSON, default=list)
    ip_address = Column(String(64), index=True)
    user_agent = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<VerificationLog {self.id} {self.verification_status}>"


class ResultNotification(Base):
    """Message about results or certificates sent to a set of recipients"""
    __tablename__ = 'result_notifications'

    id = Column(String(64), primary_key=True)  # NOTIF-{ts}-{rand}
    notification_type = Column(String(30), nullable=False)
    priority = Column(String(10), default='normal')  # low, normal, high, urgent
    recipients = Column(JSON, default=list)
    content = Column(JSON, default=dict)
    delivery = Column(JSON, default=dict)
    tracking = Column(JSON, default=dict)
    context = Column(JSON, default=dict)  # examId, resultIds, certificateIds, batchId
    created_by = Column(String(64))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def delivery_status(self):
        return (self.delivery or {}).get('deliveryStatus')

    def is_addressed_to(self, user_id):
        return any(r.get('identifier') == user_id for r in self.recipients or [])

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.notification_type,
            'priority': self.priority,
            'recipients': self.recipients or [],
            'content': self.content or {},
            'delivery': self.delivery or {},
            'tracking': self.tracking or {},
            'metadata': self.context or {},
            'createdBy': self.created_by,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ResultNotification {self.id} {self.notification_type} {self.delivery_status}>"
