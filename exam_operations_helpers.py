"""
Exam Operations Helper Functions
Invigilator requirements and auto-assignment, material bookkeeping,
attendance statistics and incident triage
"""

from datetime import datetime, timedelta
import math
import time

from api_helpers import round_half_up, count_by
from models import random_code

CANDIDATES_PER_INVIGILATOR = 30
INVIGILATOR_ROLES = ('chief', 'assistant', 'observer', 'special_needs')

ROLE_RESPONSIBILITIES = {
    'chief': [
        'Overall supervision of examination room',
        'Distribute and collect question papers',
        'Ensure examination rules are followed',
        'Handle emergencies and irregularities',
        'Submit examination reports',
    ],
    'assistant': [
        'Assist chief invigilator',
        'Monitor candidates during examination',
        'Help with seating arrangements',
        'Collect answer scripts',
        'Report any irregularities',
    ],
    'observer': [
        'Observe examination procedures',
        'Ensure fair conduct',
        'Report any violations',
        'Assist with crowd control',
        'Document examination process',
    ],
    'special_needs': [
        'Assist candidates with special needs',
        'Provide necessary accommodations',
        'Ensure accessibility compliance',
        'Coordinate with medical staff if needed',
        'Maintain confidentiality',
    ],
}

# Invigilators available for automatic assignment
INVIGILATOR_POOL = [
    {
        'id': 'INV-001',
        'name': 'Dr. Paul Mbeki',
        'email': 'paul.mbeki@education.cm',
        'phoneNumber': '+237222111222',
        'qualifications': ['PhD Education', 'TESOL Certificate'],
        'experience': 15,
        'specializations': ['Mathematics', 'Sciences', 'Special Needs'],
        'availability': {
            'dates': ['2025-06-01', '2025-06-02', '2025-06-03'],
            'regions': ['Centre', 'Littoral'],
        },
        'rating': 4.8,
        'status': 'active',
    },
    {
        'id': 'INV-002',
        'name': 'Mrs. Sarah Fon',
        'email': 'sarah.fon@education.cm',
        'phoneNumber': '+237233222333',
        'qualifications': ['Masters in English', 'Examination Certification'],
        'experience': 8,
        'specializations': ['Languages', 'Literature'],
        'availability': {
            'dates': ['2025-06-01', '2025-06-02'],
            'regions': ['Centre'],
        },
        'rating': 4.6,
        'status': 'active',
    },
]

EMERGENCY_CONTACTS = [{
    'name': 'Examination Board Emergency',
    'role': 'Emergency Coordinator',
    'phoneNumber': '+237222000111',
    'email': 'emergency@gce.cm',
}]

INCIDENT_PRIORITY_MATRIX = {
    'cheating': {'low': 'normal', 'medium': 'high', 'high': 'urgent', 'critical': 'urgent'},
    'security': {'low': 'normal', 'medium': 'high', 'high': 'urgent', 'critical': 'urgent'},
    'medical': {'low': 'normal', 'medium': 'high', 'high': 'urgent', 'critical': 'urgent'},
    'technical': {'low': 'low', 'medium': 'normal', 'high': 'high', 'critical': 'urgent'},
    'misconduct': {'low': 'low', 'medium': 'normal', 'high': 'high', 'critical': 'urgent'},
    'disruption': {'low': 'low', 'medium': 'normal', 'high': 'high', 'critical': 'high'},
    'other': {'low': 'low', 'medium': 'normal', 'high': 'normal', 'critical': 'high'},
}
INCIDENT_PRIORITIES = ('low', 'normal', 'high', 'urgent')


# ===== INVIGILATION =====

def invigilator_requirements(exam_details):
    """Head count per role, one invigilator per 30 candidates (100 assumed)"""
    exam_details = exam_details or {}
    total_candidates = exam_details.get('totalCandidates') or 100
    total = math.ceil(total_candidates / CANDIDATES_PER_INVIGILATOR)
    return {
        'chiefInvigilators': max(1, math.ceil(total * 0.2)),
        'assistantInvigilators': max(2, math.ceil(total * 0.7)),
        'observers': max(1, math.ceil(total * 0.1)),
        'specialNeedsSupport': 1 if exam_details.get('hasSpecialNeeds') else 0,
    }


def auto_assign_invigilators(requirements, exam_date, centre_name, pool=None):
    """Fill roles in order chief, assistant, observer, special needs from the best-rated invigilators"""
    candidates = [
        inv for inv in (pool if pool is not None else INVIGILATOR_POOL)
        if inv['status'] == 'active'
        and exam_date in inv['availability']['dates']
        and any(region in (centre_name or '') for region in inv['availability']['regions'])
    ]
    candidates.sort(key=lambda inv: inv['rating'] * inv['experience'], reverse=True)

    quotas = [
        ('chief', requirements['chiefInvigilators']),
        ('assistant', requirements['assistantInvigilators']),
        ('observer', requirements['observers']),
        ('special_needs', requirements['specialNeedsSupport']),
    ]
    wanted = sum(q for _, q in quotas)
    filled = {role: 0 for role, _ in quotas}
    assignments = []
    for inv in candidates:
        role = next((r for r, quota in quotas if filled[r] < quota), None)
        if role is None:
            break
        filled[role] += 1
        assignments.append({
            'invigilatorId': inv['id'],
            'invigilatorName': inv['name'],
            'invigilatorEmail': inv['email'],
            'role': role,
            'roomNumber': f"Room-{len(assignments) + 1}",
            'startTime': '08:00',
            'endTime': '12:00',
            'responsibilities': ROLE_RESPONSIBILITIES[role],
            'contactNumber': inv['phoneNumber'],
            'qualifications': inv['qualifications'],
            'experience': inv['experience'],
            'specializations': inv['specializations'],
        })
        if len(assignments) >= wanted:
            break
    return assignments


def assignment_statistics(assignments, requirements):
    by_role = {role: sum(1 for a in assignments if a.get('role') == role) for role in INVIGILATOR_ROLES}

    def fulfilment(role, key):
        needed = requirements.get(key) or 0
        return min(100, round_half_up(by_role[role] / needed * 100)) if needed else 100

    return {
        'totalInvigilators': len(assignments),
        'byRole': {
            'chief': by_role['chief'],
            'assistant': by_role['assistant'],
            'observer': by_role['observer'],
            'specialNeeds': by_role['special_needs'],
        },
        'averageExperience': round_half_up(
            sum(a.get('experience') or 0 for a in assignments) / len(assignments)) if assignments else 0,
        'fulfillmentRate': {
            'chief': fulfilment('chief', 'chiefInvigilators'),
            'assistant': fulfilment('assistant', 'assistantInvigilators'),
            'observer': fulfilment('observer', 'observers'),
        },
    }


# ===== MATERIALS =====

def _item_id(prefix):
    return f"{prefix}-{int(time.time() * 1000)}-{random_code(4).lower()}"


def material_checksum():
    return f"checksum-{int(time.time() * 1000)}-{random_code(6).lower()}"


def question_paper_entry(paper, subject_code, paper_number, user_id, now):
    language = paper.get('language') or 'English'
    return {
        'id': _item_id('QP'),
        'type': paper.get('type') or 'main',
        'language': language,
        'fileUrl': paper.get('fileUrl') or '',
        'fileName': paper.get('fileName') or f"{subject_code}_P{paper_number}_{language[:2].upper()}.pdf",
        'fileSize': paper.get('fileSize') or 0,
        'checksum': material_checksum(),
        'uploadedAt': now.isoformat(),
        'uploadedBy': user_id,
    }


def answer_sheet_entry(sheet):
    return {
        'id': _item_id('AS'),
        'type': sheet.get('type') or 'standard',
        'quantity': sheet.get('quantity') or 100,
        'barcoded': sheet.get('barcoded', True),
        'serialNumbers': sheet.get('serialNumbers') or [],
    }


def additional_material_entry(material):
    return {
        'id': _item_id('AM'),
        'name': material.get('name'),
        'type': material.get('type') or 'other',
        'description': material.get('description') or '',
        'quantity': material.get('quantity') or 0,
        'mandatory': bool(material.get('mandatory')),
    }


def material_totals(materials):
    return {
        'questionPapers': len(materials.get('questionPapers') or []),
        'answerSheets': sum(s.get('quantity') or 0 for s in materials.get('answerSheets') or []),
        'additionalMaterials': {m.get('name'): m.get('quantity') or 0
                                for m in materials.get('additionalMaterials') or []},
    }


def distribution_centres(centres, totals):
    share = max(1, len(centres or []))
    return [{
        'centerId': c.get('centerId'),
        'centerName': c.get('centerName'),
        'quantities': c.get('quantities') or {
            'questionPapers': math.ceil(totals['questionPapers'] / share),
            'answerSheets': math.ceil(totals['answerSheets'] / share),
            'additionalMaterials': {},
        },
        'deliveryStatus': 'pending',
        'notes': c.get('notes'),
    } for c in centres or []]


def audit_entry(action, user_id, details, now=None):
    return {
        'action': action,
        'performedBy': user_id,
        'timestamp': (now or datetime.utcnow()).isoformat(),
        'details': details,
    }


def materials_summary(records):
    statuses = ('pending', 'dispatched', 'delivered', 'confirmed')
    centres = [c for r in records for c in (r.distribution or {}).get('centers', [])]
    return {
        'totalMaterials': len(records),
        'totalQuestionPapers': sum(len((r.materials or {}).get('questionPapers') or []) for r in records),
        'totalAnswerSheets': sum(material_totals(r.materials or {})['answerSheets'] for r in records),
        'distributionStatus': {s: sum(1 for c in centres if c.get('deliveryStatus') == s) for s in statuses},
    }


# ===== ATTENDANCE =====

def attendance_candidate(candidate):
    return {
        'candidateId': candidate.get('candidateId'),
        'candidateNumber': candidate.get('candidateNumber'),
        'fullName': candidate.get('fullName'),
        'seatNumber': candidate.get('seatNumber'),
        'arrivalTime': candidate.get('arrivalTime'),
        'attendanceStatus': candidate.get('attendanceStatus') or 'absent',
        'entryTime': candidate.get('entryTime'),
        'exitTime': candidate.get('exitTime'),
        'specialAccommodations': candidate.get('specialAccommodations') or [],
        'notes': candidate.get('notes'),
        'verificationStatus': candidate.get('verificationStatus') or 'pending',
        'identityDocuments': candidate.get('identityDocuments') or [],
    }


def set_attendance(candidate, status, now=None):
    """Apply an attendance status to a candidate entry in place"""
    now = now or datetime.utcnow()
    candidate['attendanceStatus'] = status
    if status == 'present':
        candidate['entryTime'] = now.isoformat()
        candidate['verificationStatus'] = 'verified'
    elif status == 'absent':
        candidate['entryTime'] = None
        candidate['verificationStatus'] = 'pending'
    elif status == 'late':
        candidate['entryTime'] = now.isoformat()
        candidate['arrivalTime'] = candidate.get('arrivalTime') or now.isoformat()


def attendance_statistics(candidates):
    counts = {s: sum(1 for c in candidates if c.get('attendanceStatus') == s)
              for s in ('present', 'absent', 'late', 'excused', 'disqualified')}
    total = len(candidates)
    return {
        'totalCandidates': total,
        **counts,
        'attendanceRate': round_half_up((counts['present'] + counts['late']) / total * 100) if total else 0,
    }


def attendance_overview(records):
    total = len(records)
    return {
        'totalRecords': total,
        'totalCandidates': sum((r.statistics or {}).get('totalCandidates', 0) for r in records),
        'totalPresent': sum((r.statistics or {}).get('present', 0) for r in records),
        'totalAbsent': sum((r.statistics or {}).get('absent', 0) for r in records),
        'averageAttendanceRate': round_half_up(
            sum((r.statistics or {}).get('attendanceRate', 0) for r in records) / total) if total else 0,
        'byStatus': {
            'preparation': sum(1 for r in records if r.status == 'preparation'),
            'inProgress': sum(1 for r in records if r.status == 'in_progress'),
            'completed': sum(1 for r in records if r.status == 'completed'),
            'submitted': sum(1 for r in records if r.status == 'submitted'),
        },
    }


# ===== INCIDENTS =====

def incident_priority(incident_type, severity):
    return INCIDENT_PRIORITY_MATRIX.get(incident_type, {}).get(severity, 'normal')


def needs_follow_up(incident_type, severity):
    return severity in ('high', 'critical') or incident_type == 'cheating'


def follow_up_actions(incident_type, now=None):
    now = now or datetime.utcnow()
    actions = [{
        'action': 'Investigate incident thoroughly',
        'assignedTo': 'Investigation Team',
        'dueDate': (now + timedelta(hours=24)).isoformat(),
        'status': 'pending',
        'notes': 'High priority incident requires immediate investigation',
    }]
    if incident_type == 'cheating':
        actions.append({
            'action': 'Review candidate examination materials',
            'assignedTo': 'Examination Board',
            'dueDate': (now + timedelta(hours=48)).isoformat(),
            'status': 'pending',
            'notes': 'Potential academic misconduct requires material review',
        })
    return actions


def incident_statistics(incidents):
    total = len(incidents)
    resolved = sum(1 for i in incidents if i.resolution_status in ('resolved', 'closed'))
    return {
        'total': total,
        'byType': count_by(incidents, lambda i: i.incident_type),
        'bySeverity': count_by(incidents, lambda i: i.severity),
        'byStatus': count_by(incidents, lambda i: i.resolution_status),
        'byPriority': count_by(incidents, lambda i: i.priority),
        'byCenter': count_by(incidents, lambda i: i.centre_name),
        'totalCandidatesAffected': sum((i.impact or {}).get('candidatesAffected', 0) for i in incidents),
        'totalTimeDelayed': sum((i.impact or {}).get('timeDelayed', 0) for i in incidents),
        'resolutionRate': round_half_up(resolved / total * 100) if total else 0,
    }


def average_resolution_hours(incidents):
    resolved = []
    for incident in incidents:
        resolution_date = (incident.resolution or {}).get('resolutionDate')
        if resolution_date and incident.created_at:
            resolved.append(datetime.fromisoformat(resolution_date) - incident.created_at)
    if not resolved:
        return 0
    total_seconds = sum(delta.total_seconds() for delta in resolved)
    return round_half_up(total_seconds / (len(resolved) * 3600))


def incident_trends(incidents, statistics, now=None):
    since = (now or datetime.utcnow()) - timedelta(days=7)
    recent = [i for i in incidents if i.created_at and i.created_at >= since]
    by_type = statistics['byType']
    return {
        'recentIncidents': len(recent),
        'trendDirection': 'increasing' if len(recent) > len(incidents) - len(recent) else 'decreasing',
        'mostCommonType': max(by_type, key=by_type.get) if by_type else 'none',
        'averageResolutionTime': average_resolution_hours(incidents),
    }
