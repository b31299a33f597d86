"""
Examination Routes
Exam schedules and examination centres
"""
from flask import request
from flask_login import current_user
from dateutil import parser as date_parser
from datetime import datetime
import time
import logging

from db_single import get_session
from models import User
from examination_models import ExamSchedule, ExamCentre, DEFAULT_PROHIBITED_MATERIALS, DEFAULT_PROVIDED_MATERIALS
from status_workflow import check_transition, SCHEDULE_TRANSITIONS, CENTRE_STATUSES
from validators import ValidationError, ExamValidator, validate_schedule, missing_fields, parse_int
from api_helpers import api_success, api_error, server_error, get_json_body, paginate
from admin_helpers import record_audit

logger = logging.getLogger(__name__)

STAFF_MESSAGE = 'Admin or examiner access required'
EXAM_TYPES = ('written', 'practical', 'oral', 'coursework')
CENTRE_TYPES = ('primary', 'secondary', 'both')


# ===== HELPERS =====

def exam_id_for(level, subject_code, paper_number):
    """EXAM-{year}-{OL|AL}-{subjectCode}-P{paperNumber}"""
    level_code = 'OL' if level == 'O Level' else 'AL'
    return f"EXAM-{datetime.utcnow().year}-{level_code}-{subject_code}-P{paper_number}"


def _parse_day(value):
    try:
        return date_parser.parse(value).replace(tzinfo=None)
    except (ValueError, TypeError, OverflowError):
        return None


def _schedule_statistics(schedules):
    return {
        'total': len(schedules),
        'byLevel': {
            'oLevel': sum(1 for s in schedules if s.level == 'O Level'),
            'aLevel': sum(1 for s in schedules if s.level == 'A Level'),
        },
        'byStatus': {
            'draft': sum(1 for s in schedules if s.status == 'draft'),
            'scheduled': sum(1 for s in schedules if s.status == 'scheduled'),
            'inProgress': sum(1 for s in schedules if s.status == 'in_progress'),
            'completed': sum(1 for s in schedules if s.status == 'completed'),
            'cancelled': sum(1 for s in schedules if s.status == 'cancelled'),
        },
        'byType': {t: sum(1 for s in schedules if s.exam_type == t) for t in EXAM_TYPES},
    }


def _centre_facilities(facilities):
    rooms = (facilities or {}).get('rooms') or []
    return {
        'totalRooms': len(rooms),
        'totalCapacity': sum(room.get('capacity') or 0 for room in rooms),
        'rooms': rooms,
        'amenities': (facilities or {}).get('amenities') or [],
    }


def _centre_statistics(centres):
    return {
        'total': len(centres),
        'byType': {t: sum(1 for c in centres if c.centre_type == t) for t in CENTRE_TYPES},
        'byStatus': {s: sum(1 for c in centres if c.status == s) for s in CENTRE_STATUSES},
        'totalCapacity': sum((c.facilities or {}).get('totalCapacity', 0) for c in centres),
        'totalRooms': sum((c.facilities or {}).get('totalRooms', 0) for c in centres),
    }


def register_examination_routes(bp, require_roles):
    """Register schedule and centre routes"""

    # ==================== SCHEDULES ====================
    @bp.route('/examinations/schedule', methods=['POST'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def exams_create_schedule():
        data = get_json_body()
        # Both spellings of the level field are accepted
        if 'level' not in data and 'examLevel' in data:
            data['level'] = data['examLevel']

        errors = validate_schedule(data)
        if errors:
            return api_error('Validation failed', errors=errors)
        exam_type = data.get('examType', 'written')
        if exam_type not in EXAM_TYPES:
            return api_error('Invalid exam type')
        status = data.get('status', 'draft')
        if status not in SCHEDULE_TRANSITIONS:
            return api_error(f"Invalid exam status: {status}")

        level = data['level']
        exam_id = exam_id_for(level, data['subjectCode'], data['paperNumber'])

        session_db = get_session()
        try:
            if session_db.get(ExamSchedule, exam_id):
                return api_error('Exam schedule already exists for this subject and paper', 409)

            materials = data.get('materials') or {}
            schedule = ExamSchedule(
                id=exam_id,
                exam_session=data['examSession'],
                level=level,
                subject_code=data['subjectCode'],
                subject_name=data['subjectName'],
                paper_number=data['paperNumber'],
                paper_title=data.get('paperTitle') or f"{data['subjectName']} Paper {data['paperNumber']}",
                exam_date=ExamValidator.validate_exam_date(data['examDate']),
                start_time=data['startTime'],
                end_time=data['endTime'],
                duration=data['duration'],
                exam_type=exam_type,
                total_marks=data.get('totalMarks') or 100,
                passing_marks=data.get('passingMarks') or (50 if level == 'O Level' else 40),
                instructions=data['instructions'] if isinstance(data.get('instructions'), list) else [],
                materials={
                    'allowed': materials.get('allowed') or [],
                    'prohibited': materials.get('prohibited') or list(DEFAULT_PROHIBITED_MATERIALS),
                    'provided': materials.get('provided') or list(DEFAULT_PROVIDED_MATERIALS),
                },
                venues=data.get('venues') or [],
                invigilators=[],
                status=status,
                published_at=datetime.utcnow() if status == 'scheduled' else None,
                created_by=current_user.id,
            )
            session_db.add(schedule)
            creator = session_db.get(User, current_user.id)
            record_audit(session_db, creator, 'EXAM_SCHEDULED', 'examination',
                         f"Exam schedule {exam_id} created", resource={'type': 'exam_schedule', 'id': exam_id})
            session_db.commit()
            logger.info(f"✅ Exam schedule {exam_id} created")
            return api_success(schedule.to_dict(), 'Exam schedule created successfully', 201)
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Create exam schedule error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/schedule', methods=['GET'])
    def exams_list_schedules():
        args = request.args
        page = parse_int(args.get('page'), 1)
        limit = parse_int(args.get('limit'), 20)
        centre_id = args.get('centreId') or args.get('centerId')
        date_from = _parse_day(args['dateFrom']) if args.get('dateFrom') else None
        date_to = _parse_day(args['dateTo']) if args.get('dateTo') else None
        sort_by = args.get('sortBy', 'examDate')
        sort_order = args.get('sortOrder', 'asc')

        session_db = get_session()
        try:
            schedules = session_db.query(ExamSchedule).all()
            if args.get('examSession'):
                schedules = [s for s in schedules if s.exam_session == args['examSession']]
            level = args.get('level') or args.get('examLevel')
            if level:
                schedules = [s for s in schedules if s.level == level]
            if args.get('subjectCode'):
                code = args['subjectCode'].lower()
                schedules = [s for s in schedules if code in s.subject_code.lower()]
            if args.get('status'):
                schedules = [s for s in schedules if s.status == args['status']]
            if args.get('examDate'):
                schedules = [s for s in schedules if s.exam_date.isoformat().startswith(args['examDate'])]
            if date_from:
                schedules = [s for s in schedules if s.exam_date >= date_from]
            if date_to:
                schedules = [s for s in schedules if s.exam_date.date() <= date_to.date()]
            if centre_id:
                schedules = [s for s in schedules if centre_id in s.centre_ids]

            sort_keys = {
                'examDate': lambda s: (s.exam_date, s.start_time),
                'subjectCode': lambda s: (s.subject_code, s.paper_number),
                'createdAt': lambda s: s.created_at or datetime.min,
                'status': lambda s: s.status,
            }
            schedules.sort(key=sort_keys.get(sort_by, sort_keys['examDate']), reverse=sort_order == 'desc')

            page_items, pagination = paginate(schedules, page, limit, 'totalSchedules')
            return api_success({
                'schedules': [s.to_dict() for s in page_items],
                'pagination': pagination,
                'statistics': _schedule_statistics(schedules),
            }, 'Exam schedules retrieved successfully')
        except Exception as e:
            return server_error('Get exam schedules error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/schedule/<exam_id>', methods=['GET'])
    def exams_get_schedule(exam_id):
        session_db = get_session()
        try:
            schedule = session_db.get(ExamSchedule, exam_id)
            if not schedule:
                return api_error('Exam schedule not found', 404)
            return api_success(schedule.to_dict(), 'Exam schedule retrieved successfully')
        except Exception as e:
            return server_error('Get exam schedule error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/schedule/<exam_id>', methods=['PUT'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def exams_update_schedule(exam_id):
        data = get_json_body()
        session_db = get_session()
        try:
            schedule = session_db.get(ExamSchedule, exam_id)
            if not schedule:
                return api_error('Exam schedule not found', 404)
            if schedule.status == 'completed':
                return api_error('Cannot modify completed exam')

            if 'examDate' in data:
                schedule.exam_date = ExamValidator.validate_exam_date(data['examDate'])
            if 'startTime' in data or 'endTime' in data:
                start = ExamValidator.validate_time(data.get('startTime', schedule.start_time), 'Start time')
                end = ExamValidator.validate_time(data.get('endTime', schedule.end_time), 'End time')
                if start >= end:
                    return api_error('End time must be after start time')
            if 'duration' in data:
                ExamValidator.validate_positive_number(data['duration'], 'Duration', 30, allow_equal=True)
            if 'examType' in data and data['examType'] not in EXAM_TYPES:
                return api_error('Invalid exam type')

            new_status = data.get('status')
            if new_status is not None:
                check_transition(SCHEDULE_TRANSITIONS, schedule.status, new_status, 'exam')

            for key, column in (('examSession', 'exam_session'), ('subjectName', 'subject_name'),
                                ('paperTitle', 'paper_title'), ('startTime', 'start_time'),
                                ('endTime', 'end_time'), ('duration', 'duration'), ('examType', 'exam_type'),
                                ('totalMarks', 'total_marks'), ('passingMarks', 'passing_marks')):
                if key in data:
                    setattr(schedule, column, data[key])
            if 'instructions' in data:
                schedule.instructions = list(data['instructions'] or [])
            if 'materials' in data:
                materials = dict(schedule.materials or {})
                materials.update(data['materials'] or {})
                schedule.materials = materials
            if 'venues' in data:
                schedule.venues = list(data['venues'] or [])
            if 'invigilators' in data:
                schedule.invigilators = list(data['invigilators'] or [])

            if new_status is not None and new_status != schedule.status:
                if new_status == 'scheduled' and not schedule.published_at:
                    schedule.published_at = datetime.utcnow()
                schedule.status = new_status
                actor = session_db.get(User, current_user.id)
                record_audit(session_db, actor, 'EXAM_STATUS_CHANGED', 'examination',
                             f"Exam {exam_id} moved to {new_status}",
                             resource={'type': 'exam_schedule', 'id': exam_id})

            session_db.commit()
            return api_success(schedule.to_dict(), 'Exam schedule updated successfully')
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update exam schedule error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/schedule/<exam_id>', methods=['DELETE'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def exams_delete_schedule(exam_id):
        session_db = get_session()
        try:
            schedule = session_db.get(ExamSchedule, exam_id)
            if not schedule:
                return api_error('Exam schedule not found', 404)
            if schedule.status not in ('draft', 'cancelled'):
                return api_error('Only draft or cancelled exams can be deleted. Cancel the exam instead.')

            session_db.delete(schedule)
            session_db.commit()
            logger.info(f"Exam schedule {exam_id} deleted")
            return api_success(message='Exam schedule deleted successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Delete exam schedule error', e)
        finally:
            session_db.close()

    # ==================== CENTRES ====================
    @bp.route('/examinations/centers', methods=['POST'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def exams_create_centre():
        data = get_json_body()
        if missing_fields(data, 'centerName', 'centerType', 'address', 'contactInfo', 'centerHead', 'facilities'):
            return api_error('Missing required center information')
        if data['centerType'] not in CENTRE_TYPES:
            return api_error('Invalid center type')
        status = data.get('status', 'active')
        if status not in CENTRE_STATUSES:
            return api_error('Invalid center status')
        region = (data['address'] or {}).get('region') or ''
        if len(region) < 2:
            return api_error('Center address must include a region')

        session_db = get_session()
        try:
            name = data['centerName'].strip()
            taken = session_db.query(ExamCentre).filter(ExamCentre.centre_name.ilike(name)).first()
            if taken:
                return api_error('Examination center with this name already exists', 409)

            stamp = str(int(time.time() * 1000))
            code = f"{region[:2].upper()}{data['centerType'][0].upper()}{stamp[-3:]}"
            while session_db.query(ExamCentre).filter_by(centre_code=code).first():
                stamp = str(int(stamp) + 1)
                code = f"{region[:2].upper()}{data['centerType'][0].upper()}{stamp[-3:]}"

            centre = ExamCentre(
                id=f"CENTER-{stamp}",
                centre_code=code,
                centre_name=name,
                centre_type=data['centerType'],
                address=data['address'],
                contact_info=data['contactInfo'],
                centre_head=data['centerHead'],
                facilities=_centre_facilities(data['facilities']),
                exam_types=data.get('examTypes') or ['O Level', 'A Level'],
                status=status,
                created_by=current_user.id,
            )
            session_db.add(centre)
            session_db.commit()
            logger.info(f"✅ Examination centre {code} created")
            return api_success(centre.to_dict(), 'Examination center created successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Create exam center error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/centers', methods=['GET'])
    def exams_list_centres():
        region = request.args.get('region', '').lower()
        centre_type = request.args.get('centerType', '')
        status = request.args.get('status', '')
        exam_type = request.args.get('examType', '')
        q = request.args.get('q', '').lower()

        session_db = get_session()
        try:
            centres = session_db.query(ExamCentre).all()
            if region:
                centres = [c for c in centres if region in c.region.lower()]
            if centre_type:
                centres = [c for c in centres if c.centre_type == centre_type]
            if status:
                centres = [c for c in centres if c.status == status]
            if exam_type:
                centres = [c for c in centres if exam_type in (c.exam_types or [])]
            if q:
                centres = [c for c in centres
                           if q in c.centre_name.lower() or q in c.centre_code.lower()
                           or q in (c.address or {}).get('city', '').lower()]
            centres.sort(key=lambda c: c.centre_name)

            return api_success({
                'centers': [c.to_dict() for c in centres],
                'statistics': _centre_statistics(centres),
            }, 'Examination centers retrieved successfully')
        except Exception as e:
            return server_error('Get exam centers error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/centers/<centre_id>', methods=['GET'])
    def exams_get_centre(centre_id):
        session_db = get_session()
        try:
            centre = session_db.get(ExamCentre, centre_id)
            if not centre:
                return api_error('Examination center not found', 404)
            return api_success(centre.to_dict(), 'Examination center retrieved successfully')
        except Exception as e:
            return server_error('Get exam center error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/centers/<centre_id>', methods=['PUT'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def exams_update_centre(centre_id):
        data = get_json_body()
        session_db = get_session()
        try:
            centre = session_db.get(ExamCentre, centre_id)
            if not centre:
                return api_error('Examination center not found', 404)

            if 'centerName' in data:
                name = (data['centerName'] or '').strip()
                other = session_db.query(ExamCentre).filter(ExamCentre.centre_name.ilike(name),
                                                            ExamCentre.id != centre.id).first()
                if other:
                    return api_error('Center name already exists', 409)
                centre.centre_name = name
            if 'centerType' in data:
                if data['centerType'] not in CENTRE_TYPES:
                    return api_error('Invalid center type')
                centre.centre_type = data['centerType']
            if 'status' in data:
                if data['status'] not in CENTRE_STATUSES:
                    return api_error('Invalid center status')
                centre.status = data['status']
            for key, column in (('address', 'address'), ('contactInfo', 'contact_info'),
                                ('centerHead', 'centre_head')):
                if key in data:
                    merged = dict(getattr(centre, column) or {})
                    merged.update(data[key] or {})
                    setattr(centre, column, merged)
            if 'facilities' in data:
                centre.facilities = _centre_facilities(data['facilities'])
            if 'examTypes' in data:
                centre.exam_types = list(data['examTypes'] or [])

            session_db.commit()
            return api_success(centre.to_dict(), 'Examination center updated successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Update exam center error', e)
        finally:
            session_db.close()

    @bp.route('/examinations/centers/<centre_id>', methods=['DELETE'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def exams_delete_centre(centre_id):
        session_db = get_session()
        try:
            centre = session_db.get(ExamCentre, centre_id)
            if not centre:
                return api_error('Examination center not found', 404)
            if centre.status == 'active':
                return api_error('Cannot delete active examination center. Deactivate it first.')

            session_db.delete(centre)
            session_db.commit()
            return api_success(message='Examination center deleted successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Delete exam center error', e)
        finally:
            session_db.close()
