"""
Examination Models
Centres, exam schedules, invigilation, materials, attendance and incidents
"""
from sqlalchemy import Column, Integer, String, DateTime, Float, Text, Boolean, JSON
from datetime import datetime
from models import Base, isoformat


DEFAULT_PROHIBITED_MATERIALS = ['Mobile phones', 'Smart watches', 'Calculators (unless specified)']
DEFAULT_PROVIDED_MATERIALS = ['Answer booklet', 'Question paper']

INCIDENT_TYPES = ('cheating', 'misconduct', 'technical', 'medical', 'security', 'disruption', 'other')
INCIDENT_SEVERITIES = ('low', 'medium', 'high', 'critical')
INCIDENT_PRIORITY_ORDER = {'urgent': 4, 'high': 3, 'normal': 2, 'low': 1}
ATTENDANCE_STATUSES = ('present', 'absent', 'late', 'excused', 'disqualified')


class ExamCentre(Base):
    """Examination centre"""
    __tablename__ = 'exam_centres'

    id = Column(String(64), primary_key=True)
    centre_code = Column(String(20), unique=True, nullable=False)
    centre_name = Column(String(200), nullable=False)
    centre_type = Column(String(20), default='secondary')  # primary, secondary, both
    address = Column(JSON, default=dict)
    contact_info = Column(JSON, default=dict)
    centre_head = Column(JSON, default=dict)
    facilities = Column(JSON, default=dict)
    exam_types = Column(JSON, default=list)
    status = Column(String(20), default='active')

    created_by = Column(String(64))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def region(self):
        return (self.address or {}).get('region', '')

    def to_dict(self):
        return {
            'id': self.id,
            'centerCode': self.centre_code,
            'centerName': self.centre_name,
            'centerType': self.centre_type,
            'address': self.address or {},
            'contactInfo': self.contact_info or {},
            'centerHead': self.centre_head or {},
            'facilities': self.facilities or {},
            'examTypes': self.exam_types or [],
            'status': self.status,
            'createdBy': self.created_by,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ExamCentre {self.centre_code} {self.centre_name}>"


class ExamSchedule(Base):
    """One paper of one subject in an exam session"""
    __tablename__ = 'exam_schedules'

    id = Column(String(80), primary_key=True)  # EXAM-2025-OL-ENG-P1
    exam_session = Column(String(20), nullable=False)
    level = Column(String(20), nullable=False)
    subject_code = Column(String(20), nullable=False)
    subject_name = Column(String(200), nullable=False)
    paper_number = Column(Integer, nullable=False)
    paper_title = Column(String(255))

    exam_date = Column(DateTime, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    duration = Column(Integer, nullable=False)  # minutes
    exam_type = Column(String(20), default='written')  # written, practical, oral, coursework

    total_marks = Column(Float, default=100)
    passing_marks = Column(Float)
    instructions = Column(JSON, default=list)
    materials = Column(JSON, default=dict)
    venues = Column(JSON, default=list)
    invigilators = Column(JSON, default=list)

    status = Column(String(20), default='draft')
    published_at = Column(DateTime)
    created_by = Column(String(64))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def centre_ids(self):
        return [v.get('centerId') for v in (self.venues or []) if isinstance(v, dict)]

    def to_dict(self):
        return {
            'id': self.id,
            'examSession': self.exam_session,
            'level': self.level,
            'subjectCode': self.subject_code,
            'subjectName': self.subject_name,
            'paperNumber': self.paper_number,
            'paperTitle': self.paper_title,
            'examDate': isoformat(self.exam_date),
            'startTime': self.start_time,
            'endTime': self.end_time,
            'duration': self.duration,
            'examType': self.exam_type,
            'totalMarks': self.total_marks,
            'passingMarks': self.passing_marks,
            'instructions': self.instructions or [],
            'materials': self.materials or {},
            'venues': self.venues or [],
            'invigilators': self.invigilators or [],
            'status': self.status,
            'publishedAt': isoformat(self.published_at),
            'createdBy': self.created_by,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ExamSchedule {self.id} {self.status}>"


class InvigilatorAssignment(Base):
    """Invigilators placed at a centre for one exam"""
    __tablename__ = 'invigilator_assignments'

    id = Column(String(160), primary_key=True)
    exam_id = Column(String(80), nullable=False, index=True)
    centre_id = Column(String(64), nullable=False)
    centre_name = Column(String(200))
    exam_date = Column(String(30))
    exam_session = Column(String(20))
    assignments = Column(JSON, default=list)
    requirements = Column(JSON, default=dict)
    emergency_contacts = Column(JSON, default=list)
    notes = Column(Text)

    status = Column(String(20), default='assigned')
    assigned_by = Column(String(64))
    assigned_at = Column(DateTime, default=datetime.utcnow)
    confirmed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'centerId': self.centre_id,
            'centerName': self.centre_name,
            'examDate': self.exam_date,
            'examSession': self.exam_session,
            'assignments': self.assignments or [],
            'requirements': self.requirements or {},
            'emergencyContacts': self.emergency_contacts or [],
            'notes': self.notes,
            'status': self.status,
            'assignedBy': self.assigned_by,
            'assignedAt': isoformat(self.assigned_at),
            'confirmedAt': isoformat(self.confirmed_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<InvigilatorAssignment {self.exam_id}@{self.centre_id} {self.status}>"


class ExamMaterial(Base):
    """Question papers, answer sheets and their distribution for one paper"""
    __tablename__ = 'exam_materials'

    id = Column(String(120), primary_key=True)
    exam_id = Column(String(80), nullable=False, index=True)
    exam_title = Column(String(255))
    exam_date = Column(String(30))
    exam_level = Column(String(20))
    subject_code = Column(String(20))
    subject_name = Column(String(200))
    paper_number = Column(Integer)

    materials = Column(JSON, default=dict)
    distribution = Column(JSON, default=dict)
    security = Column(JSON, default=dict)

    status = Column(String(20), default='preparation')
    approved_by = Column(String(64))
    approved_at = Column(DateTime)
    created_by = Column(String(64))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'examTitle': self.exam_title,
            'examDate': self.exam_date,
            'examLevel': self.exam_level,
            'subjectCode': self.subject_code,
            'subjectName': self.subject_name,
            'paperNumber': self.paper_number,
            'materials': self.materials or {},
            'distribution': self.distribution or {},
            'security': self.security or {},
            'status': self.status,
            'approvedBy': self.approved_by,
            'approvedAt': isoformat(self.approved_at),
            'createdBy': self.created_by,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ExamMaterial {self.exam_id} P{self.paper_number} {self.status}>"


class AttendanceRecord(Base):
    """Candidate attendance for one exam room"""
    __tablename__ = 'attendance_records'

    id = Column(String(160), primary_key=True)
    exam_id = Column(String(80), nullable=False, index=True)
    exam_title = Column(String(255))
    exam_date = Column(String(30))
    exam_session = Column(String(20))
    centre_id = Column(String(64), nullable=False)
    centre_name = Column(String(200))
    room_number = Column(String(30))
    invigilator_id = Column(String(64))
    invigilator_name = Column(String(200))

    candidates = Column(JSON, default=list)
    statistics = Column(JSON, default=dict)
    session_info = Column(JSON, default=dict)

    status = Column(String(20), default='preparation')
    recorded_by = Column(String(64))
    recorded_at = Column(DateTime, default=datetime.utcnow)
    submitted_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'examTitle': self.exam_title,
            'examDate': self.exam_date,
            'examSession': self.exam_session,
            'centerId': self.centre_id,
            'centerName': self.centre_name,
            'roomNumber': self.room_number,
            'invigilatorId': self.invigilator_id,
            'invigilatorName': self.invigilator_name,
            'candidates': self.candidates or [],
            'statistics': self.statistics or {},
            'sessionInfo': self.session_info or {},
            'status': self.status,
            'recordedBy': self.recorded_by,
            'recordedAt': isoformat(self.recorded_at),
            'submittedAt': isoformat(self.submitted_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<AttendanceRecord {self.exam_id} {self.centre_id}/{self.room_number}>"


class IncidentReport(Base):
    """Incident reported during an exam"""
    __tablename__ = 'incident_reports'

    id = Column(String(120), primary_key=True)  # INC-{examId}-{ts}
    exam_id = Column(String(80), nullable=False, index=True)
    exam_title = Column(String(255))
    exam_date = Column(String(30))
    exam_session = Column(String(20))
    centre_id = Column(String(64))
    centre_name = Column(String(200))
    room_number = Column(String(30))

    incident_type = Column(String(20), nullable=False)
    severity = Column(String(10), nullable=False)
    priority = Column(String(10), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    time_occurred = Column(String(40))
    time_reported = Column(DateTime, default=datetime.utcnow)

    involved_persons = Column(JSON, default=list)
    witnesses = Column(JSON, default=list)
    evidence = Column(JSON, default=list)
    actions_taken = Column(JSON, default=list)
    follow_up_required = Column(Boolean, default=False)
    follow_up_actions = Column(JSON, default=list)
    impact = Column(JSON, default=dict)
    resolution = Column(JSON, default=dict)
    tags = Column(JSON, default=list)

    reported_by = Column(String(64))
    reporter_role = Column(String(20))
    reporter_contact = Column(String(120))
    assigned_reviewer = Column(String(64))
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def resolution_status(self):
        return (self.resolution or {}).get('status', 'open')

    def to_dict(self):
        return {
            'id': self.id,
            'examId': self.exam_id,
            'examTitle': self.exam_title,
            'examDate': self.exam_date,
            'examSession': self.exam_session,
            'centerId': self.centre_id,
            'centerName': self.centre_name,
            'roomNumber': self.room_number,
            'incidentType': self.incident_type,
            'severity': self.severity,
            'priority': self.priority,
            'title': self.title,
            'description': self.description,
            'timeOccurred': self.time_occurred,
            'timeReported': isoformat(self.time_reported),
            'involvedPersons': self.involved_persons or [],
            'witnesses': self.witnesses or [],
            'evidence': self.evidence or [],
            'actionsTaken': self.actions_taken or [],
            'followUpRequired': bool(self.follow_up_required),
            'followUpActions': self.follow_up_actions or [],
            'impact': self.impact or {},
            'resolution': self.resolution or {'status': 'open'},
            'tags': self.tags or [],
            'reportedBy': self.reported_by,
            'reporterRole': self.reporter_role,
            'reporterContact': self.reporter_contact,
            'assignedReviewer': self.assigned_reviewer,
            'reviewedBy': self.reviewed_by,
            'reviewedAt': isoformat(self.reviewed_at),
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<IncidentReport {self.id} {self.incident_type}/{self.severity}>"
