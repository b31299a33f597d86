"""
Exam Operations Routes
Invigilator assignments, exam materials, attendance and incident reports
"""
from flask import request
from flask_login import current_user
from datetime import datetime
import time
import logging

from db_single import get_session
from models import User
from examination_models import (InvigilatorAssignment, ExamMaterial, AttendanceRecord, IncidentReport,
                                INCIDENT_TYPES, INCIDENT_SEVERITIES, INCIDENT_PRIORITY_ORDER, ATTENDANCE_STATUSES)
from status_workflow import (check_transition, INVIGILATOR_TRANSITIONS, MATERIAL_TRANSITIONS,
                             ATTENDANCE_TRANSITIONS, INCIDENT_TRANSITIONS)
from validators import ValidationError, missing_fields, parse_int
from api_helpers import api_success, api_error, server_error, get_json_body, paginate
from admin_helpers import record_audit
from exam_operations_helpers import (
    invigilator_requirements, auto_assign_invigilators, assignment_statistics, EMERGENCY_CONTACTS,
    question_paper_entry, answer_sheet_entry, additional_material_entry, material_totals,
    distribution_centres, audit_entry, materials_summary,
    attendance_candidate, set_attendance, attendance_statistics, attendance_overview,
    incident_priority, needs_follow_up, follow_up_actions, incident_statistics, incident_trends,
    INCIDENT_PRIORITIES,
)

logger = logging.getLogger(__name__)

STAFF_MESSAGE = 'Admin or examiner access required'
ATTENDANCE_MESSAGE = 'Insufficient permissions to manage attendance'
INCIDENT_MESSAGE = 'Insufficient permissions to manage incidents'


def _stamp():
    return int(time.time() * 1000)


def register_exam_operations_routes(bp, require_roles):
    """Register invigilation, materials, attendance and incident routes"""

    # ==================== INVIGILATOR ASSIGNMENTS ====================
    @bp.route('/examinations/assign-invigilators', methods=['POST'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def ops_assign_invigilators():
        data = get_json_body()
        if missing_fields(data, 'examId', 'centerId', 'examDate', 'examSession'):
            return api_error('Missing required assignment information')

        session_db = get_session()
        try:
            existing = session_db.query(InvigilatorAssignment).filter_by(
                exam_id=data['examId'], centre_id=data['centerId']).first()
            if existing:
                return api_error('Invigilator assignment already exists for this exam and center', 409)

            requirements = invigilator_requirements(data.get('examDetails'))
            if data.get('autoAssign'):
                assignments = auto_assign_invigilators(requirements, data['examDate'], data.get('centerName'))
            else:
                assignments = list(data.get('assignments') or [])
                for assignment in assignments:
                    if missing_fields(assignment, 'invigilatorId', 'role', 'roomNumber'):
                        return api_error('Invalid assignment data. Missing required fields.')

            record = InvigilatorAssignment(
                id=f"ASSIGN-{data['examId']}-{data['centerId']}-{_stamp()}",
                exam_id=data['examId'],
                centre_id=data['centerId'],
                centre_name=data.get('centerName'),
                exam_date=data['examDate'],
                exam_session=data['examSession'],
                assignments=assignments,
                requirements=requirements,
                emergency_contacts=list(EMERGENCY_CONTACTS),
                notes=data.get('notes'),
                status='assigned',
                assigned_by=current_user.id,
            )
            session_db.add(record)
            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'INVIGILATORS_ASSIGNED', 'examination',
                         f"Assigned {len(assignments)} invigilators to {data['examId']} at {data['centerId']}",
                         resource={'type': 'invigilator_assignment', 'id': record.id})
            session_db.commit()
            logger.info(f"✅ Invigilators assigned for {data['examId']} at {data['centerId']}")
            return api_success(record.to_dict(), 'Invigilators assigned successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Assign invigilators error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/assign-invigilators', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher')
    def ops_list_assignments():
        exam_id = request.args.get('examId')
        centre_id = request.args.get('centerId')
        status = request.args.get('status')
        exam_date = request.args.get('examDate')
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)

        session_db = get_session()
        try:
            query = session_db.query(InvigilatorAssignment)
            if exam_id:
                query = query.filter(InvigilatorAssignment.exam_id == exam_id)
            if centre_id:
                query = query.filter(InvigilatorAssignment.centre_id == centre_id)
            if status:
                query = query.filter(InvigilatorAssignment.status == status)
            if exam_date:
                query = query.filter(InvigilatorAssignment.exam_date == exam_date)
            records = query.order_by(InvigilatorAssignment.assigned_at.desc()).all()

            page_items, pagination = paginate(records, page, limit, 'totalAssignments')
            return api_success({
                'assignments': [r.to_dict() for r in page_items],
                'pagination': pagination,
                'statistics': {
                    'total': len(records),
                    'byStatus': {s: sum(1 for r in records if r.status == s) for s in INVIGILATOR_TRANSITIONS},
                    'totalInvigilators': sum(len(r.assignments or []) for r in records),
                },
            }, 'Invigilator assignments retrieved successfully')
        except Exception as e:
            return server_error('Get invigilator assignments error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/assign-invigilators/<assignment_id>', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher')
    def ops_get_assignment(assignment_id):
        session_db = get_session()
        try:
            record = session_db.get(InvigilatorAssignment, assignment_id)
            if not record:
                return api_error('Invigilator assignment not found', 404)
            payload = record.to_dict()
            payload['statistics'] = assignment_statistics(record.assignments or [], record.requirements or {})
            return api_success(payload, 'Invigilator assignment retrieved successfully')
        except Exception as e:
            return server_error('Get invigilator assignment error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/assign-invigilators/<assignment_id>', methods=['PUT'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def ops_update_assignment(assignment_id):
        data = get_json_body()
        session_db = get_session()
        try:
            record = session_db.get(InvigilatorAssignment, assignment_id)
            if not record:
                return api_error('Invigilator assignment not found', 404)
            if record.status == 'completed':
                return api_error('Cannot modify completed assignment')

            assignments = list(record.assignments or [])
            if 'assignments' in data:
                assignments = list(data['assignments'] or [])
                for assignment in assignments:
                    if missing_fields(assignment, 'invigilatorId', 'role', 'roomNumber'):
                        return api_error('Invalid assignment data. Missing required fields.')

            action = data.get('action')
            if action == 'add_invigilator':
                newcomer = data.get('newInvigilator') or {}
                if missing_fields(newcomer, 'invigilatorId', 'role', 'roomNumber'):
                    return api_error('Invalid assignment data. Missing required fields.')
                if any(a.get('invigilatorId') == newcomer['invigilatorId'] for a in assignments):
                    return api_error('Invigilator already assigned', 409)
                assignments.append(newcomer)
            elif action == 'remove_invigilator':
                invigilator_id = data.get('invigilatorId')
                remaining = [a for a in assignments if a.get('invigilatorId') != invigilator_id]
                if len(remaining) == len(assignments):
                    return api_error('Invigilator not found in assignment', 404)
                assignments = remaining
            elif action == 'swap_invigilators':
                swap = data.get('swapData') or {}
                first = next((a for a in assignments if a.get('invigilatorId') == swap.get('invigilator1Id')), None)
                second = next((a for a in assignments if a.get('invigilatorId') == swap.get('invigilator2Id')), None)
                if not first or not second:
                    return api_error('Both invigilators must be part of the assignment', 404)
                swapped = []
                for a in assignments:
                    a = dict(a)
                    if a['invigilatorId'] == first['invigilatorId']:
                        a['roomNumber'] = second.get('roomNumber')
                    elif a['invigilatorId'] == second['invigilatorId']:
                        a['roomNumber'] = first.get('roomNumber')
                    swapped.append(a)
                assignments = swapped
            elif action:
                return api_error('Invalid action')

            new_status = data.get('status')
            if new_status is not None:
                check_transition(INVIGILATOR_TRANSITIONS, record.status, new_status, 'assignment')
                if new_status == 'confirmed' and record.status != 'confirmed':
                    record.confirmed_at = datetime.utcnow()
                    for a in assignments:
                        logger.info(f"Notify {a.get('invigilatorEmail') or a.get('invigilatorId')}: "
                                    f"assignment confirmed for {record.exam_id} in {a.get('roomNumber')}")
                record.status = new_status

            if 'notes' in data:
                record.notes = data['notes']
            if 'emergencyContacts' in data:
                record.emergency_contacts = list(data['emergencyContacts'] or [])
            record.assignments = assignments

            session_db.commit()
            payload = record.to_dict()
            payload['statistics'] = assignment_statistics(assignments, record.requirements or {})
            return api_success(payload, 'Invigilator assignment updated successfully')
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update invigilator assignment error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/assign-invigilators/<assignment_id>', methods=['DELETE'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def ops_delete_assignment(assignment_id):
        session_db = get_session()
        try:
            record = session_db.get(InvigilatorAssignment, assignment_id)
            if not record:
                return api_error('Invigilator assignment not found', 404)
            if record.status in ('confirmed', 'completed'):
                return api_error('Cannot delete confirmed or completed assignment')
            session_db.delete(record)
            session_db.commit()
            return api_success(message='Invigilator assignment deleted successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Delete invigilator assignment error', e)
        finally:
            session_db.close()

    # ==================== MATERIALS ====================
    @bp.route('/examinations/materials', methods=['POST'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def ops_create_materials():
        data = get_json_body()
        if missing_fields(data, 'examId', 'examTitle', 'examDate', 'examLevel', 'subjectCode', 'paperNumber'):
            return api_error('Missing required examination information')

        session_db = get_session()
        try:
            existing = session_db.query(ExamMaterial).filter_by(
                exam_id=data['examId'], paper_number=data['paperNumber']).first()
            if existing:
                return api_error('Materials already exist for this exam and paper', 409)

            now = datetime.utcnow()
            body = data.get('materials') or {}
            materials = {
                'questionPapers': [question_paper_entry(p, data['subjectCode'], data['paperNumber'],
                                                        current_user.id, now)
                                   for p in body.get('questionPapers') or []],
                'answerSheets': [answer_sheet_entry(s) for s in body.get('answerSheets') or []],
                'additionalMaterials': [additional_material_entry(m) for m in body.get('additionalMaterials') or []],
            }
            totals = material_totals(materials)
            distribution = data.get('distribution') or {}
            security = data.get('security') or {}

            record = ExamMaterial(
                id=f"MAT-{data['examId']}-{_stamp()}",
                exam_id=data['examId'],
                exam_title=data['examTitle'],
                exam_date=data['examDate'],
                exam_level=data['examLevel'],
                subject_code=data['subjectCode'],
                subject_name=data.get('subjectName'),
                paper_number=data['paperNumber'],
                materials=materials,
                distribution={
                    'totalQuantity': totals,
                    'centers': distribution_centres(distribution.get('centers'), totals),
                },
                security={
                    'encryptionLevel': security.get('securityLevel') or 'standard',
                    'accessLevel': 'confidential',
                    'authorizedPersonnel': security.get('authorizedPersonnel') or [current_user.id],
                    'auditTrail': [audit_entry('Materials Created', current_user.id,
                                               'Initial materials preparation', now)],
                },
                status='preparation',
                created_by=current_user.id,
            )
            session_db.add(record)
            session_db.commit()
            logger.info(f"✅ Materials {record.id} created")
            return api_success(record.to_dict(), 'Examination materials created successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Create materials error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/materials', methods=['GET'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def ops_list_materials():
        exam_id = request.args.get('examId')
        status = request.args.get('status')
        subject_code = request.args.get('subjectCode')
        exam_level = request.args.get('examLevel')
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)

        session_db = get_session()
        try:
            query = session_db.query(ExamMaterial)
            if exam_id:
                query = query.filter(ExamMaterial.exam_id == exam_id)
            if status:
                query = query.filter(ExamMaterial.status == status)
            if subject_code:
                query = query.filter(ExamMaterial.subject_code == subject_code)
            if exam_level:
                query = query.filter(ExamMaterial.exam_level == exam_level)
            records = query.order_by(ExamMaterial.created_at.desc()).all()

            page_items, pagination = paginate(records, page, limit, 'totalMaterials')
            return api_success({
                'materials': [r.to_dict() for r in page_items],
                'pagination': pagination,
                'summary': materials_summary(records),
            }, 'Examination materials retrieved successfully')
        except Exception as e:
            return server_error('Get materials error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/materials/<material_id>', methods=['GET'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def ops_get_materials(material_id):
        session_db = get_session()
        try:
            # An exam id returns every paper prepared for that exam
            if material_id.startswith('EXAM-'):
                records = session_db.query(ExamMaterial).filter_by(exam_id=material_id).all()
                if not records:
                    return api_error('No materials found for this exam', 404)
                return api_success({
                    'examId': material_id,
                    'materials': [r.to_dict() for r in records],
                    'summary': materials_summary(records),
                }, 'Examination materials retrieved successfully')

            record = session_db.get(ExamMaterial, material_id)
            if not record:
                return api_error('Materials not found', 404)
            return api_success(record.to_dict(), 'Examination materials retrieved successfully')
        except Exception as e:
            return server_error('Get materials error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/materials/<material_id>', methods=['PUT'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def ops_update_materials(material_id):
        data = get_json_body()
        session_db = get_session()
        try:
            record = session_db.get(ExamMaterial, material_id)
            if not record:
                return api_error('Materials not found', 404)
            if record.status == 'archived':
                return api_error('Cannot modify archived materials')

            now = datetime.utcnow()
            materials = dict(record.materials or {})
            distribution = dict(record.distribution or {})
            security = dict(record.security or {})
            trail = list(security.get('auditTrail') or [])

            action = data.get('action')
            if action == 'add_question_paper':
                paper = data.get('questionPaper') or {}
                papers = list(materials.get('questionPapers') or [])
                papers.append(question_paper_entry(paper, record.subject_code, record.paper_number,
                                                   current_user.id, now))
                materials['questionPapers'] = papers
                trail.append(audit_entry('Question Paper Added', current_user.id,
                                         f"Added {paper.get('language') or 'English'} question paper", now))
            elif action == 'remove_question_paper':
                paper_id = data.get('questionPaperId')
                papers = [p for p in materials.get('questionPapers') or [] if p.get('id') != paper_id]
                if len(papers) == len(materials.get('questionPapers') or []):
                    return api_error('Question paper not found', 404)
                materials['questionPapers'] = papers
                trail.append(audit_entry('Question Paper Removed', current_user.id,
                                         f"Removed question paper {paper_id}", now))
            elif action == 'update_distribution':
                update = data.get('distributionUpdate') or {}
                centres = [dict(c) for c in distribution.get('centers') or []]
                centre = next((c for c in centres if c.get('centerId') == update.get('centerId')), None)
                if not centre:
                    return api_error('Distribution center not found', 404)
                for key in ('deliveryStatus', 'deliveryDate', 'receivedBy'):
                    if key in update:
                        centre[key] = update[key]
                distribution['centers'] = centres
                trail.append(audit_entry('Distribution Updated', current_user.id,
                                         f"{centre['centerId']} marked {centre.get('deliveryStatus')}", now))
            elif action == 'approve_materials':
                check_transition(MATERIAL_TRANSITIONS, record.status, 'ready', 'materials')
                record.status = 'ready'
                record.approved_by = current_user.id
                record.approved_at = now
                trail.append(audit_entry('Materials Approved', current_user.id,
                                         'Materials approved for distribution', now))
            elif action:
                return api_error('Invalid action')

            updated = [k for k in ('examTitle', 'examDate', 'subjectName') if k in data]
            for key, column in (('examTitle', 'exam_title'), ('examDate', 'exam_date'),
                                ('subjectName', 'subject_name')):
                if key in data:
                    setattr(record, column, data[key])
            if updated:
                trail.append(audit_entry('Materials Updated', current_user.id,
                                         f"Updated fields: {', '.join(updated)}", now))

            new_status = data.get('status')
            if new_status is not None and new_status != record.status:
                check_transition(MATERIAL_TRANSITIONS, record.status, new_status, 'materials')
                trail.append(audit_entry('Status Changed', current_user.id,
                                         f"Status changed from {record.status} to {new_status}", now))
                record.status = new_status

            materials_totals = material_totals(materials)
            distribution['totalQuantity'] = materials_totals
            security['auditTrail'] = trail
            record.materials = materials
            record.distribution = distribution
            record.security = security

            session_db.commit()
            return api_success(record.to_dict(), 'Examination materials updated successfully')
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update materials error', e)
        finally:
            session_db.close()

    # ==================== ATTENDANCE ====================
    @bp.route('/examinations/attendance', methods=['POST'])
    @require_roles('admin', 'examiner', 'teacher', message=ATTENDANCE_MESSAGE)
    def ops_create_attendance():
        data = get_json_body()
        if missing_fields(data, 'examId', 'centerId', 'examDate', 'candidates', 'sessionInfo') \
                or not isinstance(data.get('candidates'), list):
            return api_error('Missing required attendance information')

        room_number = data.get('roomNumber') or 'Room 1'
        session_db = get_session()
        try:
            existing = session_db.query(AttendanceRecord).filter_by(
                exam_id=data['examId'], centre_id=data['centerId'], room_number=room_number).first()
            if existing:
                return api_error('Attendance record already exists for this exam, center and room', 409)

            candidates = [attendance_candidate(c) for c in data['candidates']]
            bulk = data.get('bulkAttendance') or {}
            if bulk.get('status') in ATTENDANCE_STATUSES:
                wanted = set(bulk.get('candidateIds') or [])
                for candidate in candidates:
                    if candidate['candidateId'] in wanted:
                        set_attendance(candidate, bulk['status'])

            session_info = data.get('sessionInfo') or {}
            record = AttendanceRecord(
                id=f"ATT-{data['examId']}-{data['centerId']}-{_stamp()}",
                exam_id=data['examId'],
                exam_title=data.get('examTitle'),
                exam_date=data['examDate'],
                exam_session=data.get('examSession') or 'Morning',
                centre_id=data['centerId'],
                centre_name=data.get('centerName'),
                room_number=room_number,
                invigilator_id=data.get('invigilatorId') or current_user.id,
                invigilator_name=data.get('invigilatorName') or current_user.full_name,
                candidates=candidates,
                statistics=attendance_statistics(candidates),
                session_info={
                    'startTime': session_info.get('startTime'),
                    'endTime': session_info.get('endTime'),
                    'actualStartTime': None,
                    'actualEndTime': None,
                    'duration': session_info.get('duration') or 180,
                    'breaks': [],
                    'incidents': [],
                },
                status='preparation',
                recorded_by=current_user.id,
            )
            session_db.add(record)
            session_db.commit()
            logger.info(f"✅ Attendance {record.id} created with {len(candidates)} candidates")
            return api_success(record.to_dict(), 'Attendance record created successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Create attendance error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/attendance', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher', message=ATTENDANCE_MESSAGE)
    def ops_list_attendance():
        exam_id = request.args.get('examId')
        centre_id = request.args.get('centerId')
        exam_date = request.args.get('examDate')
        status = request.args.get('status')
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)

        session_db = get_session()
        try:
            query = session_db.query(AttendanceRecord)
            if exam_id:
                query = query.filter(AttendanceRecord.exam_id == exam_id)
            if centre_id:
                query = query.filter(AttendanceRecord.centre_id == centre_id)
            if exam_date:
                query = query.filter(AttendanceRecord.exam_date == exam_date)
            if status:
                query = query.filter(AttendanceRecord.status == status)
            records = query.order_by(AttendanceRecord.recorded_at.desc()).all()

            page_items, pagination = paginate(records, page, limit, 'totalRecords')
            return api_success({
                'attendance': [r.to_dict() for r in page_items],
                'pagination': pagination,
                'statistics': attendance_overview(records),
            }, 'Attendance records retrieved successfully')
        except Exception as e:
            return server_error('Get attendance error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/attendance/<record_id>', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher', message=ATTENDANCE_MESSAGE)
    def ops_get_attendance(record_id):
        session_db = get_session()
        try:
            if record_id.startswith('EXAM-'):
                records = session_db.query(AttendanceRecord).filter_by(exam_id=record_id).all()
                if not records:
                    return api_error('No attendance records found for this exam', 404)
                by_centre = {}
                for r in records:
                    entry = by_centre.setdefault(r.centre_id, {
                        'centerName': r.centre_name, 'rooms': 0, 'totalCandidates': 0, 'present': 0, 'absent': 0,
                    })
                    entry['rooms'] += 1
                    entry['totalCandidates'] += (r.statistics or {}).get('totalCandidates', 0)
                    entry['present'] += (r.statistics or {}).get('present', 0)
                    entry['absent'] += (r.statistics or {}).get('absent', 0)
                summary = attendance_overview(records)
                summary['byCenter'] = by_centre
                return api_success({
                    'examId': record_id,
                    'records': [r.to_dict() for r in records],
                    'summary': summary,
                }, 'Exam attendance retrieved successfully')

            record = session_db.get(AttendanceRecord, record_id)
            if not record:
                return api_error('Attendance record not found', 404)
            return api_success(record.to_dict(), 'Attendance record retrieved successfully')
        except Exception as e:
            return server_error('Get attendance error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/attendance/<record_id>', methods=['PUT'])
    @require_roles('admin', 'examiner', 'teacher', message=ATTENDANCE_MESSAGE)
    def ops_update_attendance(record_id):
        data = get_json_body()
        session_db = get_session()
        try:
            now = datetime.utcnow()

            # Bulk status change across every room of an exam
            if record_id.startswith('EXAM-'):
                if data.get('action') != 'bulk_update':
                    return api_error('Invalid bulk action')
                new_status = data.get('status')
                records = session_db.query(AttendanceRecord).filter_by(exam_id=record_id).all()
                if not records:
                    return api_error('No attendance records found for this exam', 404)
                for r in records:
                    check_transition(ATTENDANCE_TRANSITIONS, r.status, new_status, 'attendance')
                    r.status = new_status
                    if new_status == 'submitted':
                        r.submitted_at = now
                session_db.commit()
                return api_success({'updatedCount': len(records)},
                                   f"Updated {len(records)} attendance records")

            record = session_db.get(AttendanceRecord, record_id)
            if not record:
                return api_error('Attendance record not found', 404)
            if record.status == 'submitted':
                return api_error('Cannot modify submitted attendance record')

            candidates = [dict(c) for c in record.candidates or []]
            session_info = dict(record.session_info or {})

            action = data.get('action')
            if action in ('mark_present', 'mark_absent', 'mark_late', 'verify_identity'):
                candidate = next((c for c in candidates if c.get('candidateId') == data.get('candidateId')), None)
                if not candidate:
                    return api_error('Candidate not found in attendance record', 404)
                if action == 'verify_identity':
                    candidate['verificationStatus'] = 'verified'
                    candidate['identityDocuments'] = list(data.get('identityDocuments') or
                                                          candidate.get('identityDocuments') or [])
                else:
                    set_attendance(candidate, action.replace('mark_', ''), now)
                if data.get('notes'):
                    candidate['notes'] = data['notes']
            elif action == 'start_session':
                session_info['actualStartTime'] = now.isoformat()
                check_transition(ATTENDANCE_TRANSITIONS, record.status, 'in_progress', 'attendance')
                record.status = 'in_progress'
            elif action == 'end_session':
                session_info['actualEndTime'] = now.isoformat()
                check_transition(ATTENDANCE_TRANSITIONS, record.status, 'completed', 'attendance')
                record.status = 'completed'
            elif action == 'add_break':
                pause = data.get('breakInfo') or {}
                breaks = list(session_info.get('breaks') or [])
                breaks.append({
                    'startTime': pause.get('startTime') or now.isoformat(),
                    'endTime': pause.get('endTime'),
                    'reason': pause.get('reason') or 'Scheduled break',
                })
                session_info['breaks'] = breaks
            elif action:
                return api_error('Invalid action')

            bulk = data.get('bulkAction') or {}
            if bulk.get('actionType') == 'bulk_status_change':
                if bulk.get('newStatus') not in ATTENDANCE_STATUSES:
                    return api_error('Invalid attendance status')
                wanted = set(bulk.get('candidateIds') or [])
                for candidate in candidates:
                    if candidate.get('candidateId') in wanted:
                        set_attendance(candidate, bulk['newStatus'], now)

            new_status = data.get('status')
            if new_status is not None and new_status != record.status:
                check_transition(ATTENDANCE_TRANSITIONS, record.status, new_status, 'attendance')
                record.status = new_status
                if new_status == 'submitted':
                    record.submitted_at = now

            if 'roomNumber' in data:
                record.room_number = data['roomNumber']
            record.candidates = candidates
            record.session_info = session_info
            record.statistics = attendance_statistics(candidates)

            session_db.commit()
            return api_success(record.to_dict(), 'Attendance record updated successfully')
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update attendance error', e)
        finally:
            session_db.close()

    # ==================== INCIDENTS ====================
    @bp.route('/examinations/incidents', methods=['POST'])
    @require_roles('admin', 'examiner', 'teacher', message=INCIDENT_MESSAGE)
    def ops_report_incident():
        data = get_json_body()
        if missing_fields(data, 'examId', 'incidentType', 'severity', 'title', 'description', 'timeOccurred'):
            return api_error('Missing required incident information')
        if data['incidentType'] not in INCIDENT_TYPES:
            return api_error('Invalid incident type')
        if data['severity'] not in INCIDENT_SEVERITIES:
            return api_error('Invalid severity level')

        session_db = get_session()
        try:
            now = datetime.utcnow()
            follow_up = needs_follow_up(data['incidentType'], data['severity'])
            impact = data.get('impact') or {}
            incident = IncidentReport(
                id=f"INC-{data['examId']}-{_stamp()}",
                exam_id=data['examId'],
                exam_title=data.get('examTitle'),
                exam_date=data.get('examDate'),
                exam_session=data.get('examSession'),
                centre_id=data.get('centerId'),
                centre_name=data.get('centerName'),
                room_number=data.get('roomNumber'),
                incident_type=data['incidentType'],
                severity=data['severity'],
                priority=incident_priority(data['incidentType'], data['severity']),
                title=data['title'],
                description=data['description'],
                time_occurred=data['timeOccurred'],
                time_reported=now,
                involved_persons=list(data.get('involvedPersons') or []),
                witnesses=list(data.get('witnesses') or []),
                evidence=list(data.get('evidence') or []),
                actions_taken=list(data.get('actionsTaken') or []),
                follow_up_required=follow_up,
                follow_up_actions=follow_up_actions(data['incidentType'], now) if follow_up else [],
                impact={
                    'candidatesAffected': impact.get('candidatesAffected') or 0,
                    'timeDelayed': impact.get('timeDelayed') or 0,
                    'examDisrupted': bool(impact.get('examDisrupted')),
                    'securityCompromised': bool(impact.get('securityCompromised')),
                },
                resolution={'status': 'open'},
                tags=list(data.get('tags') or []),
                reported_by=current_user.id,
                reporter_role=current_user.user_type.value,
                reporter_contact=current_user.email,
            )
            session_db.add(incident)
            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'INCIDENT_REPORTED', 'examination',
                         f"{incident.incident_type} incident reported for {incident.exam_id}",
                         resource={'type': 'incident', 'id': incident.id},
                         severity='high' if incident.priority == 'urgent' else 'medium')
            session_db.commit()
            logger.warning(f"Incident {incident.id} reported ({incident.severity}, priority {incident.priority})")
            return api_success(incident.to_dict(), 'Incident reported successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Report incident error', e)
        finally:
            session_db.close()

    def _filtered_incidents(session_db, exam_id=None):
        query = session_db.query(IncidentReport)
        if exam_id:
            query = query.filter(IncidentReport.exam_id == exam_id)
        for arg, column in (('incidentType', IncidentReport.incident_type), ('severity', IncidentReport.severity),
                            ('priority', IncidentReport.priority), ('centerId', IncidentReport.centre_id)):
            value = request.args.get(arg)
            if value:
                query = query.filter(column == value)
        incidents = query.all()
        status = request.args.get('status')
        if status:
            incidents = [i for i in incidents if i.resolution_status == status]
        # Most urgent first, newest first within a priority
        incidents.sort(key=lambda i: i.created_at or datetime.min, reverse=True)
        incidents.sort(key=lambda i: INCIDENT_PRIORITY_ORDER.get(i.priority, 0), reverse=True)
        return incidents

    @bp.route('/examinations/incidents', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher', message=INCIDENT_MESSAGE)
    def ops_list_incidents():
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)
        session_db = get_session()
        try:
            incidents = _filtered_incidents(session_db, request.args.get('examId'))
            page_items, pagination = paginate(incidents, page, limit, 'totalIncidents')
            return api_success({
                'incidents': [i.to_dict() for i in page_items],
                'pagination': pagination,
                'statistics': incident_statistics(incidents),
            }, 'Incidents retrieved successfully')
        except Exception as e:
            return server_error('Get incidents error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/incidents/<exam_id>', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher', message=INCIDENT_MESSAGE)
    def ops_exam_incidents(exam_id):
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)
        session_db = get_session()
        try:
            incidents = _filtered_incidents(session_db, exam_id)
            if not incidents:
                return api_success({
                    'examId': exam_id,
                    'incidents': [],
                    'pagination': paginate([], page, limit, 'totalIncidents')[1],
                    'statistics': incident_statistics([]),
                }, 'No incidents found for this exam')

            page_items, pagination = paginate(incidents, page, limit, 'totalIncidents')
            statistics = incident_statistics(incidents)
            return api_success({
                'examId': exam_id,
                'incidents': [i.to_dict() for i in page_items],
                'pagination': pagination,
                'statistics': statistics,
                'trends': incident_trends(incidents, statistics),
            }, 'Exam incidents retrieved successfully')
        except Exception as e:
            return server_error('Get exam incidents error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/incidents/<exam_id>', methods=['PUT'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def ops_bulk_update_incidents(exam_id):
        data = get_json_body()
        action = data.get('action')
        session_db = get_session()
        try:
            query = session_db.query(IncidentReport).filter(IncidentReport.exam_id == exam_id)
            if data.get('incidentIds'):
                query = query.filter(IncidentReport.id.in_(data['incidentIds']))
            incidents = query.all()
            if not incidents:
                return api_error('No incidents found for this exam', 404)

            now = datetime.utcnow()
            if action == 'bulk_status_update':
                status = data.get('status')
                if not status:
                    return api_error('Status is required for bulk status update')
                for incident in incidents:
                    check_transition(INCIDENT_TRANSITIONS, incident.resolution_status, status, 'incident')
                    resolution = dict(incident.resolution or {})
                    resolution['status'] = status
                    if status in ('resolved', 'closed'):
                        resolution['resolutionDate'] = now.isoformat()
                        resolution['resolutionSummary'] = data.get('resolutionSummary') or 'Bulk resolution'
                        incident.reviewed_by = current_user.id
                        incident.reviewed_at = now
                    incident.resolution = resolution
            elif action == 'bulk_priority_update':
                priority = data.get('priority')
                if priority not in INCIDENT_PRIORITIES:
                    return api_error('Valid priority is required for bulk priority update')
                for incident in incidents:
                    incident.priority = priority
            elif action == 'bulk_assign_reviewer':
                reviewer_id = data.get('reviewerId')
                if not reviewer_id:
                    return api_error('Reviewer ID is required for bulk reviewer assignment')
                for incident in incidents:
                    incident.assigned_reviewer = reviewer_id
                    if incident.resolution_status == 'open':
                        resolution = dict(incident.resolution or {})
                        resolution['status'] = 'investigating'
                        incident.resolution = resolution
            else:
                return api_error('Invalid bulk action')

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'INCIDENTS_BULK_UPDATED', 'examination',
                         f"{action} applied to {len(incidents)} incidents of {exam_id}",
                         resource={'type': 'exam_schedule', 'id': exam_id})
            session_db.commit()
            return api_success({
                'updatedCount': len(incidents),
                'incidents': [i.to_dict() for i in incidents],
            }, f"Bulk {action} completed successfully")
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Bulk update incidents error', e)
        finally:
            session_db.close()
