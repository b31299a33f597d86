"""
Marking Models
Examiner profiles, script allocations, marking scores, double-marking
verifications and chief examiner reviews
"""
from sqlalchemy import Column, Integer, String, DateTime, Float, Text, JSON
from datetime import datetime
from models import Base, isoformat


class ExaminerProfile(Base):
    """Examiner in the marking pool, with track record and current workload"""
    __tablename__ = 'examiner_profiles'

    id = Column(String(64), primary_key=True)  # EXM-001
    user_id = Column(String(64), index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(120))
    qualifications = Column(JSON, default=list)
    specializations = Column(JSON, default=list)
    experience = Column(Integer, default=0)

    # Marking history
    total_scripts_marked = Column(Integer, default=0)
    average_marking_time = Column(Float, default=0)  # minutes per script
    quality_rating = Column(Float, default=0)  # 1-5
    reliability = Column(Float, default=0)  # 1-5

    # Availability
    max_scripts_per_session = Column(Integer, default=100)
    preferred_subjects = Column(JSON, default=list)
    available_dates = Column(JSON, default=list)
    working_hours = Column(JSON, default=dict)

    # Current workload
    active_allocations = Column(Integer, default=0)
    scripts_in_progress = Column(Integer, default=0)
    upcoming_deadlines = Column(Integer, default=0)

    status = Column(String(20), default='available')  # available, busy, unavailable
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def remaining_capacity(self):
        return (self.max_scripts_per_session or 0) - (self.scripts_in_progress or 0)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'name': self.name,
            'email': self.email,
            'qualifications': self.qualifications or [],
            'specializations': self.specializations or [],
            'experience': self.experience,
            'markingHistory': {
                'totalScriptsMarked': self.total_scripts_marked,
                'averageMarkingTime': self.average_marking_time,
                'qualityRating': self.quality_rating,
                'reliability': self.reliability,
            },
            'availability': {
                'maxScriptsPerSession': self.max_scripts_per_session,
                'preferredSubjects': self.preferred_subjects or [],
                'availableDates': self.available_dates or [],
                'workingHours': self.working_hours or {},
            },
            'currentWorkload': {
                'activeAllocations': self.active_allocations,
                'scriptsInProgress': self.scripts_in_progress,
                'upcomingDeadlines': self.upcoming_deadlines,
            },
            'status': self.status,
        }

    def __repr__(self):
        return f"<ExaminerProfile {self.id} {self.name}>"


class ScriptAllocation(Base):
    """Scripts of one exam paper shared out between examiners"""
    __tablename__ = 'script_allocations'

    id = Column(String(160), primary_key=True)  # ALLOC-{examId}-P{n}-{ts}
    exam_id = Column(String(80), nullable=False, index=True)
    exam_title = Column(String(255))
    subject_code = Column(String(20), nullable=False)
    subject_name = Column(String(200))
    paper_number = Column(Integer, nullable=False)
    exam_level = Column(String(20))

    total_scripts = Column(Integer, nullable=False)
    allocated_scripts = Column(Integer, default=0)
    remaining_scripts = Column(Integer, default=0)

    # One entry per examiner, each holding its scripts
    allocations = Column(JSON, default=list)
    marking_scheme = Column(JSON, default=dict)
    quality_assurance = Column(JSON, default=dict)
    deadlines = Column(JSON, default=dict)

    created_by = Column(String(64))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def examiner_allocation(self, examiner_id):
        for allocation in self.allocations or []:
            if allocation.get('examinerId') == examiner_id:
                return allocation
        return None

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'examTitle': self.exam_title,
            'subjectCode': self.subject_code,
            'subjectName': self.subject_name,
            'paperNumber': self.paper_number,
            'examLevel': self.exam_level,
            'totalScripts': self.total_scripts,
            'allocatedScripts': self.allocated_scripts,
            'remainingScripts': self.remaining_scripts,
            'allocations': self.allocations or [],
            'markingScheme': self.marking_scheme or {},
            'qualityAssurance': self.quality_assurance or {},
            'deadlines': self.deadlines or {},
            'createdBy': self.created_by,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ScriptAllocation {self.exam_id} P{self.paper_number}>"


class MarkingScore(Base):
    """One examiner's marking of one script"""
    __tablename__ = 'marking_scores'

    id = Column(String(200), primary_key=True)  # MARK-{scriptId}-{type}-{ts}
    script_id = Column(String(120), nullable=False, index=True)
    candidate_number = Column(String(40), nullable=False)
    candidate_id = Column(String(64))
    candidate_name = Column(String(200))
    school_id = Column(String(64))
    school_name = Column(String(200))
    centre_code = Column(String(40))
    centre_name = Column(String(200))

    exam_id = Column(String(80), nullable=False, index=True)
    exam_level = Column(String(20))
    subject_code = Column(String(20))
    subject_name = Column(String(200))
    paper_number = Column(Integer)

    examiner_id = Column(String(64), nullable=False, index=True)
    examiner_name = Column(String(200))
    marking_type = Column(String(20), default='first')  # first, second, moderation, chief_review

    scores = Column(JSON, default=list)
    total_marks = Column(Float, default=0)
    total_max_marks = Column(Float, default=0)
    percentage = Column(Integer, default=0)
    grade = Column(String(5))

    quality_indicators = Column(JSON, default=dict)
    marking_time = Column(JSON, default=dict)
    flags = Column(JSON, default=list)
    verification = Column(JSON, default=dict)
    moderation = Column(JSON, default=dict)
    normalization = Column(JSON)

    status = Column(String(20), default='draft')
    submitted_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def result_candidate_id(self):
        """Key under which results group this marking"""
        return self.candidate_id or self.script_id

    @property
    def final_marks(self):
        moderation = self.moderation or {}
        return moderation.get('finalMarks') or self.total_marks

    def to_dict(self):
        return {
            'id': self.id,
            'scriptId': self.script_id,
            'candidateNumber': self.candidate_number,
            'candidateId': self.candidate_id,
            'candidateName': self.candidate_name,
            'schoolId': self.school_id,
            'schoolName': self.school_name,
            'centerCode': self.centre_code,
            'centerName': self.centre_name,
            'examId': self.exam_id,
            'examLevel': self.exam_level,
            'subjectCode': self.subject_code,
            'subjectName': self.subject_name,
            'paperNumber': self.paper_number,
            'examinerId': self.examiner_id,
            'examinerName': self.examiner_name,
            'markingType': self.marking_type,
            'scores': self.scores or [],
            'totalMarks': self.total_marks,
            'totalMaxMarks': self.total_max_marks,
            'percentage': self.percentage,
            'grade': self.grade,
            'qualityIndicators': self.quality_indicators or {},
            'markingTime': self.marking_time or {},
            'flags': self.flags or [],
            'verification': self.verification or {'isVerified': False},
            'moderation': self.moderation or {'isModerated': False},
            'normalization': self.normalization,
            'status': self.status,
            'submittedAt': isoformat(self.submitted_at),
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<MarkingScore {self.script_id} {self.marking_type} {self.status}>"


class DoubleMarkingVerification(Base):
    """Comparison of the first and second marking of a script"""
    __tablename__ = 'double_marking_verifications'

    id = Column(String(200), primary_key=True)  # VERIFY-{scriptId}-{ts}
    script_id = Column(String(120), nullable=False, unique=True)
    candidate_number = Column(String(40))
    exam_id = Column(String(80), index=True)
    subject_code = Column(String(20))
    paper_number = Column(Integer)

    first_marking_id = Column(String(200), nullable=False)
    second_marking_id = Column(String(200), nullable=False)
    first_marker = Column(JSON, default=dict)
    second_marker = Column(JSON, default=dict)

    discrepancy = Column(JSON, default=dict)
    question_discrepancies = Column(JSON, default=list)
    verification = Column(JSON, default=dict)
    escalation = Column(JSON, default=dict)
    quality_metrics = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_significant(self):
        return bool((self.discrepancy or {}).get('isSignificant'))

    @property
    def is_escalated(self):
        return bool((self.escalation or {}).get('isEscalated'))

    def to_dict(self):
        return {
            'id': self.id,
            'scriptId': self.script_id,
            'candidateNumber': self.candidate_number,
            'examId': self.exam_id,
            'subjectCode': self.subject_code,
            'paperNumber': self.paper_number,
            'firstMarkingId': self.first_marking_id,
            'secondMarkingId': self.second_marking_id,
            'firstMarker': self.first_marker or {},
            'secondMarker': self.second_marker or {},
            'discrepancy': self.discrepancy or {},
            'questionDiscrepancies': self.question_discrepancies or [],
            'verification': self.verification or {},
            'escalation': self.escalation or {},
            'qualityMetrics': self.quality_metrics or {},
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<DoubleMarkingVerification {self.script_id}>"


class ChiefExaminerReview(Base):
    """Chief examiner's review of a sample of scripts for one paper"""
    __tablename__ = 'chief_examiner_reviews'

    id = Column(String(200), primary_key=True)
    exam_id = Column(String(80), nullable=False, index=True)
    subject_code = Column(String(20), nullable=False)
    paper_number = Column(Integer, nullable=False)
    review_type = Column(String(30), nullable=False)  # sample_review, discrepancy_review, quality_review, final_moderation

    chief_examiner_id = Column(String(64))
    chief_examiner_name = Column(String(200))
    scripts_reviewed = Column(JSON, default=list)
    overall_assessment = Column(JSON, default=dict)
    recommendations = Column(JSON, default=dict)
    statistics = Column(JSON, default=dict)

    status = Column(String(20), default='in_progress')  # in_progress, completed, approved
    completed_at = Column(DateTime)
    approved_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'subjectCode': self.subject_code,
            'paperNumber': self.paper_number,
            'reviewType': self.review_type,
            'chiefExaminerId': self.chief_examiner_id,
            'chiefExaminerName': self.chief_examiner_name,
            'scriptsReviewed': self.scripts_reviewed or [],
            'overallAssessment': self.overall_assessment or {},
            'recommendations': self.recommendations or {},
            'statistics': self.statistics or {},
            'status': self.status,
            'completedAt': isoformat(self.completed_at),
            'approvedAt': isoformat(self.approved_at),
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ChiefExaminerReview {self.exam_id} {self.subject_code} P{self.paper_number}>"
