"""
Grading Models
Grade boundaries, grade calculations and score normalisations
"""
from sqlalchemy import Column, String, DateTime, Boolean, Text, JSON
from datetime import datetime
from models import Base, isoformat


class GradeBoundary(Base):
    """Minimum percentage per grade for one subject of one exam"""
    __tablename__ = 'grade_boundaries'

    id = Column(String(160), primary_key=True)  # BOUNDARIES-{examId}-{code}-{ts}
    exam_id = Column(String(80), nullable=False, index=True)
    subject_code = Column(String(20), nullable=False)
    subject_name = Column(String(200))
    exam_level = Column(String(20), nullable=False)
    exam_session = Column(String(20))

    boundaries = Column(JSON, default=dict)
    previous_boundaries = Column(JSON)
    adjustment_history = Column(JSON, default=list)
    statistics = Column(JSON, default=dict)
    quality_metrics = Column(JSON, default=dict)
    approval_workflow = Column(JSON, default=dict)

    effective_date = Column(String(40))
    expiry_date = Column(String(40))
    is_active = Column(Boolean, default=True)

    created_by = Column(String(64))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def approval_status(self):
        return (self.approval_workflow or {}).get('status', 'draft')

    def to_dict(self, history_limit=None):
        history = self.adjustment_history or []
        if history_limit is not None:
            history = history[-history_limit:]
        return {
            'id': self.id,
            'examId': self.exam_id,
            'subjectCode': self.subject_code,
            'subjectName': self.subject_name,
            'examLevel': self.exam_level,
            'examSession': self.exam_session,
            'boundaries': self.boundaries or {},
            'previousBoundaries': self.previous_boundaries,
            'adjustmentHistory': history,
            'statistics': self.statistics or {},
            'qualityMetrics': self.quality_metrics or {},
            'approvalWorkflow': self.approval_workflow or {'status': 'draft'},
            'effectiveDate': self.effective_date,
            'expiryDate': self.expiry_date,
            'isActive': bool(self.is_active),
            'createdBy': self.created_by,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<GradeBoundary {self.exam_id} {self.subject_code} {self.approval_status}>"


class GradeCalculation(Base):
    """Grades assigned to every candidate of one subject"""
    __tablename__ = 'grade_calculations'

    id = Column(String(160), primary_key=True)  # GRADE-CALC-{examId}-{code}-{ts}
    exam_id = Column(String(80), nullable=False, index=True)
    subject_code = Column(String(20), nullable=False)
    exam_level = Column(String(20), nullable=False)
    calculation_type = Column(String(20), default='standard')  # standard, normalized, curved, custom

    grade_boundaries = Column(JSON, default=dict)
    statistics = Column(JSON, default=dict)
    grade_distribution = Column(JSON, default=dict)
    candidate_grades = Column(JSON, default=list)
    quality_indicators = Column(JSON, default=dict)
    adjustments = Column(JSON, default=list)

    status = Column(String(20), default='draft')
    calculated_by = Column(String(64))
    calculated_at = Column(DateTime, default=datetime.utcnow)
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime)
    review_comments = Column(Text)
    approved_by = Column(String(64))
    approved_at = Column(DateTime)
    published_at = Column(DateTime)

    def grade_for(self, candidate_id):
        for candidate in self.candidate_grades or []:
            if candidate.get('candidateId') == candidate_id:
                return candidate.get('grade')
        return None

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'subjectCode': self.subject_code,
            'examLevel': self.exam_level,
            'calculationType': self.calculation_type,
            'gradeBoundaries': self.grade_boundaries or {},
            'statistics': self.statistics or {},
            'gradeDistribution': self.grade_distribution or {},
            'candidateGrades': self.candidate_grades or [],
            'qualityIndicators': self.quality_indicators or {},
            'adjustments': self.adjustments or [],
            'status': self.status,
            'calculatedBy': self.calculated_by,
            'calculatedAt': isoformat(self.calculated_at),
            'reviewedBy': self.reviewed_by,
            'reviewedAt': isoformat(self.reviewed_at),
            'reviewComments': self.review_comments,
            'approvedBy': self.approved_by,
            'approvedAt': isoformat(self.approved_at),
            'publishedAt': isoformat(self.published_at),
        }

    def __repr__(self):
        return f"<GradeCalculation {self.exam_id} {self.subject_code} {self.status}>"


class ScoreNormalization(Base):
    """Statistical adjustment of the scores of one subject"""
    __tablename__ = 'score_normalizations'

    id = Column(String(160), primary_key=True)  # NORM-{examId}-{code}-{ts}
    exam_id = Column(String(80), nullable=False, index=True)
    subject_code = Column(String(20), nullable=False)
    subject_name = Column(String(200))
    exam_level = Column(String(20), nullable=False)
    normalization_type = Column(String(20), nullable=False)
    parameters = Column(JSON, default=dict)

    original_statistics = Column(JSON, default=dict)
    normalized_statistics = Column(JSON, default=dict)
    candidate_adjustments = Column(JSON, default=list)
    quality_metrics = Column(JSON, default=dict)
    justification = Column(JSON, nullable=False)
    approval_workflow = Column(JSON, default=dict)
    impact_analysis = Column(JSON, default=dict)

    created_by = Column(String(64))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def approval_status(self):
        return (self.approval_workflow or {}).get('status', 'draft')

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'subjectCode': self.subject_code,
            'subjectName': self.subject_name,
            'examLevel': self.exam_level,
            'normalizationType': self.normalization_type,
            'parameters': self.parameters or {},
            'originalStatistics': self.original_statistics or {},
            'normalizedStatistics': self.normalized_statistics or {},
            'candidateAdjustments': self.candidate_adjustments or [],
            'qualityMetrics': self.quality_metrics or {},
            'justification': self.justification,
            'approvalWorkflow': self.approval_workflow or {'status': 'draft'},
            'impactAnalysis': self.impact_analysis or {},
            'createdBy': self.created_by,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ScoreNormalization {self.exam_id} {self.subject_code} {self.approval_status}>"
