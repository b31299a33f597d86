"""
Marking Routes
Script allocation, examiner script queues, marking scores, double-marking
verification, chief examiner reviews and marking analytics
"""
from flask import request, current_app
from flask_login import current_user
from datetime import datetime, timedelta
import time
import logging

from db_single import get_session
from models import User
from marking_models import (ExaminerProfile, ScriptAllocation, MarkingScore,
                            DoubleMarkingVerification, ChiefExaminerReview)
from status_workflow import check_transition, SCRIPT_TRANSITIONS, MARKING_STATUS_ORDER, MARKING_TYPE_ORDER, highest_status
from validators import ValidationError, missing_fields, parse_bool, parse_int
from api_helpers import api_success, api_error, server_error, get_json_body, paginate, count_by, round_half_up, round2
from admin_helpers import record_audit
from grading_helpers import grade_for_percentage, mean, population_sd
from marking_helpers import (
    process_scores, percentage_of, suitable_examiners, plan_allocation, build_scripts, allocation_deadlines,
    is_overdue, calculate_discrepancy, question_discrepancies, double_marking_quality, marking_consistency,
    final_marks, review_quality, PRIORITY_RANK, REVIEW_QUALITY_SCORES, DEFAULT_QUALITY_INDICATORS,
)

logger = logging.getLogger(__name__)

STAFF_MESSAGE = 'Admin or examiner access required'
REVIEW_TYPES = ('sample_review', 'discrepancy_review', 'quality_review', 'final_moderation')
EXPECTED_SCRIPTS_PER_PERIOD = 20 * 30
AVERAGE_MINUTES_PER_SCRIPT = 25
SCRIPT_TIMESTAMPS = {'in_progress': 'startedAt', 'marked': 'markedAt', 'verified': 'verifiedAt'}


def _stamp():
    return int(time.time() * 1000)


def _own_examiner_ids(session_db, user):
    """Ids under which a user's allocations may be filed"""
    ids = {user.id}
    for profile in session_db.query(ExaminerProfile).filter_by(user_id=user.id).all():
        ids.add(profile.id)
    return ids


def _refresh_examiner_allocation(entry):
    """Recount marked scripts and derive the examiner's allocation status"""
    scripts = entry.get('scripts') or []
    entry['scriptsMarked'] = sum(1 for s in scripts if s.get('markingStatus') in ('marked', 'verified'))
    entry['scriptsRemaining'] = (entry.get('scriptsAllocated') or 0) - entry['scriptsMarked']
    if entry['scriptsRemaining'] <= 0:
        entry['status'] = 'completed'
    elif entry['scriptsMarked'] > 0 or any(s.get('markingStatus') == 'in_progress' for s in scripts):
        entry['status'] = 'in_progress'


def _mark_script_marked(session_db, exam_id, script_id, now):
    """Flag an allocated script as marked once a marking for it is submitted"""
    for allocation in session_db.query(ScriptAllocation).filter_by(exam_id=exam_id).all():
        entries = []
        changed = False
        for entry in allocation.allocations or []:
            entry = dict(entry)
            scripts = []
            for script in entry.get('scripts') or []:
                if script.get('scriptId') == script_id and script.get('markingStatus') in ('allocated', 'in_progress'):
                    script = dict(script, markingStatus='marked', markedAt=now.isoformat())
                    changed = True
                scripts.append(script)
            entry['scripts'] = scripts
            _refresh_examiner_allocation(entry)
            entries.append(entry)
        if changed:
            allocation.allocations = entries


def _markings_for(session_db, script_id):
    markings = session_db.query(MarkingScore).filter_by(script_id=script_id).all()
    markings.sort(key=lambda m: (MARKING_TYPE_ORDER.index(m.marking_type) if m.marking_type in MARKING_TYPE_ORDER
                                 else len(MARKING_TYPE_ORDER), m.created_at or datetime.min))
    return markings


def _examiner_performance(examiner_id, markings, verifications, reviews):
    mine = [m for m in markings if m.examiner_id == examiner_id]
    if not mine:
        return {
            'examinerId': examiner_id,
            'totalScriptsMarked': 0,
            'averageMarkingTime': 0,
            'consistencyScore': 0,
            'qualityRating': 0,
            'productivityScore': 0,
        }
    completed = [m for m in mine if m.status in ('submitted', 'verified')]
    times = [(m.marking_time or {}).get('totalMinutes') or 30 for m in completed]
    checks = [v for v in verifications
              if (v.first_marker or {}).get('examinerId') == examiner_id
              or (v.second_marker or {}).get('examinerId') == examiner_id]
    scripts = {m.script_id for m in mine}
    reviewed = [s for r in reviews for s in r.scripts_reviewed or [] if s.get('scriptId') in scripts]
    return {
        'examinerId': examiner_id,
        'examinerName': mine[0].examiner_name,
        'totalScriptsMarked': len(mine),
        'averageMarkingTime': round_half_up(mean(times)) if times else 0,
        'consistencyScore': round_half_up(mean([(v.quality_metrics or {}).get('consistencyScore', 0)
                                                for v in checks])) if checks else 85,
        'qualityRating': round_half_up(mean([REVIEW_QUALITY_SCORES.get(s.get('markingQuality'), 3)
                                             for s in reviewed]), 1) if reviewed else 4.0,
        'productivityScore': min(100, round_half_up(len(mine) / EXPECTED_SCRIPTS_PER_PERIOD * 100)),
        'completionRate': round_half_up(len(completed) / len(mine) * 100),
        'flaggedScripts': sum(1 for m in mine if m.flags),
    }


def _subject_performance(subject_code, markings, verifications):
    mine = [m for m in markings if m.subject_code == subject_code]
    if not mine:
        return {
            'subjectCode': subject_code,
            'totalScripts': 0,
            'averageMarks': 0,
            'standardDeviation': 0,
            'gradeDistribution': {},
            'markingConsistency': 0,
        }
    marks = [m.total_marks or 0 for m in mine]
    checks = [v for v in verifications if v.subject_code == subject_code]
    return {
        'subjectCode': subject_code,
        'totalScripts': len(mine),
        'averageMarks': round2(mean(marks)),
        'standardDeviation': round2(population_sd(marks)),
        'gradeDistribution': count_by(mine, lambda m: m.grade or 'Unknown'),
        'markingConsistency': round_half_up(mean([(v.quality_metrics or {}).get('consistencyScore', 0)
                                                  for v in checks])) if checks else 85,
        'completedScripts': sum(1 for m in mine if m.status in ('submitted', 'verified')),
    }


def _overdue_allocations(allocations, now):
    return [entry for a in allocations for entry in a.allocations or []
            if is_overdue(entry.get('deadline'), entry.get('status'), now)]


def register_marking_routes(bp, require_roles):
    """Register marking routes"""

    # ==================== SCRIPT ALLOCATION ====================
    @bp.route('/marking/allocate-scripts', methods=['POST'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def marking_allocate_scripts():
        data = get_json_body()
        if missing_fields(data, 'examId', 'subjectCode', 'paperNumber', 'totalScripts', 'markingScheme'):
            return api_error('Missing required allocation information')
        total_scripts = parse_int(data['totalScripts'], 0)
        if total_scripts < 1:
            return api_error('Total scripts must be a positive number')

        method = data.get('allocationMethod', 'auto')
        session_db = get_session()
        try:
            existing = session_db.query(ScriptAllocation).filter_by(
                exam_id=data['examId'], paper_number=data['paperNumber']).first()
            if existing:
                return api_error('Script allocation already exists for this exam and paper', 409)

            now = datetime.utcnow()
            deadlines = allocation_deadlines(now)
            deadlines.update({k: v for k, v in (data.get('deadlines') or {}).items() if v})

            entries = []
            if method == 'auto':
                pool = session_db.query(ExaminerProfile).all()
                if data.get('selectedExaminers'):
                    pool = [e for e in pool if e.id in data['selectedExaminers']]
                ranked = suitable_examiners(pool, data.get('subjectName') or data['subjectCode'])
                if not ranked:
                    return api_error('No suitable examiners available for this subject')
                for examiner, count in plan_allocation(total_scripts, ranked):
                    entries.append({
                        'examinerId': examiner.id,
                        'examinerName': examiner.name,
                        'examinerEmail': examiner.email,
                        'specialization': examiner.specializations or [],
                        'experience': examiner.experience,
                        'scriptsAllocated': count,
                    })
                    examiner.active_allocations = (examiner.active_allocations or 0) + 1
                    examiner.scripts_in_progress = (examiner.scripts_in_progress or 0) + count
                    examiner.upcoming_deadlines = (examiner.upcoming_deadlines or 0) + 1
            elif method == 'manual' and data.get('manualAllocations'):
                for manual in data['manualAllocations']:
                    if not manual.get('examinerId') or parse_int(manual.get('scriptsAllocated'), 0) < 1:
                        return api_error('Each manual allocation needs an examinerId and scriptsAllocated')
                    entries.append(dict(manual, scriptsAllocated=parse_int(manual['scriptsAllocated'], 0)))
            else:
                return api_error('Invalid allocation method or missing manual allocations')

            qa = data.get('qualityAssurance') or {}
            double_pct = qa.get('doubleMarkingPercentage') or 20
            # Every n-th script is second-marked to reach the requested share
            double_every = max(1, round_half_up(100 / double_pct))

            counter = 1
            for entry in entries:
                scripts = build_scripts(data['examId'], data['paperNumber'], counter, entry['scriptsAllocated'], now)
                for script in scripts:
                    number = int(script['scriptId'].rsplit('-', 1)[1])
                    script['requiresDoubleMarking'] = number % double_every == 0
                counter += entry['scriptsAllocated']
                entry.update({
                    'scriptsMarked': 0,
                    'scriptsRemaining': entry['scriptsAllocated'],
                    'allocationDate': now.isoformat(),
                    'deadline': entry.get('deadline') or deadlines['firstMarking'],
                    'status': 'allocated',
                    'scripts': scripts,
                })

            allocated = sum(e['scriptsAllocated'] for e in entries)
            allocation = ScriptAllocation(
                id=f"ALLOC-{data['examId']}-P{data['paperNumber']}-{_stamp()}",
                exam_id=data['examId'],
                exam_title=data.get('examTitle') or f"{data.get('subjectName') or data['subjectCode']} Paper {data['paperNumber']}",
                subject_code=data['subjectCode'],
                subject_name=data.get('subjectName'),
                paper_number=data['paperNumber'],
                exam_level=data.get('examLevel'),
                total_scripts=total_scripts,
                allocated_scripts=allocated,
                remaining_scripts=total_scripts - allocated,
                allocations=entries,
                marking_scheme=data['markingScheme'],
                quality_assurance={
                    'doubleMarkingRequired': parse_bool(qa.get('doubleMarkingRequired'), True),
                    'doubleMarkingPercentage': double_pct,
                    'chiefExaminerReview': parse_bool(qa.get('chiefExaminerReview'), True),
                    'moderationRequired': parse_bool(qa.get('moderationRequired'), True),
                },
                deadlines=deadlines,
                created_by=current_user.id,
            )
            session_db.add(allocation)
            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'SCRIPTS_ALLOCATED', 'marking',
                         f"Allocated {allocated} of {total_scripts} scripts for {data['examId']} P{data['paperNumber']}",
                         resource={'type': 'script_allocation', 'id': allocation.id})
            session_db.commit()
            logger.info(f"✅ {allocated} scripts allocated to {len(entries)} examiners for {data['examId']}")
            return api_success(allocation.to_dict(), 'Scripts allocated successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Allocate scripts error', e)
        finally:
            session_db.close()

    @bp.route('/marking/allocate-scripts', methods=['GET'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def marking_list_allocations():
        exam_id = request.args.get('examId')
        subject_code = request.args.get('subjectCode')
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)

        session_db = get_session()
        try:
            query = session_db.query(ScriptAllocation)
            if exam_id:
                query = query.filter(ScriptAllocation.exam_id == exam_id)
            if subject_code:
                query = query.filter(ScriptAllocation.subject_code == subject_code)
            allocations = query.order_by(ScriptAllocation.created_at.desc()).all()

            page_items, pagination = paginate(allocations, page, limit, 'totalAllocations')
            examiners = session_db.query(ExaminerProfile).order_by(ExaminerProfile.id).all()
            return api_success({
                'allocations': [a.to_dict() for a in page_items],
                'pagination': pagination,
                'examiners': [e.to_dict() for e in examiners],
                'summary': {
                    'totalAllocations': len(allocations),
                    'totalScripts': sum(a.total_scripts or 0 for a in allocations),
                    'allocatedScripts': sum(a.allocated_scripts or 0 for a in allocations),
                    'unallocatedScripts': sum(a.remaining_scripts or 0 for a in allocations),
                },
            }, 'Script allocations retrieved successfully')
        except Exception as e:
            return server_error('Get script allocations error', e)
        finally:
            session_db.close()

    # ==================== EXAMINER SCRIPTS ====================
    @bp.route('/marking/scripts/<examiner_id>', methods=['GET'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def marking_examiner_scripts(examiner_id):
        status = request.args.get('status')
        exam_id = request.args.get('examId')
        priority = request.args.get('priority')
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 50)

        session_db = get_session()
        try:
            if not current_user.is_admin and examiner_id not in _own_examiner_ids(session_db, current_user):
                return api_error('Access denied', 403)

            now = datetime.utcnow()
            scripts = []
            summaries = []
            for allocation in session_db.query(ScriptAllocation).order_by(ScriptAllocation.created_at).all():
                entry = allocation.examiner_allocation(examiner_id)
                if not entry:
                    continue
                for script in entry.get('scripts') or []:
                    if status and script.get('markingStatus') != status:
                        continue
                    if exam_id and allocation.exam_id != exam_id:
                        continue
                    if priority and script.get('priority') != priority:
                        continue
                    scripts.append(dict(script,
                                        examId=allocation.exam_id,
                                        examTitle=allocation.exam_title,
                                        subjectCode=allocation.subject_code,
                                        subjectName=allocation.subject_name,
                                        paperNumber=allocation.paper_number,
                                        examLevel=allocation.exam_level,
                                        markingScheme=allocation.marking_scheme or {},
                                        deadline=entry.get('deadline'),
                                        allocationId=allocation.id))
                allocated = entry.get('scriptsAllocated') or 0
                marked = entry.get('scriptsMarked') or 0
                summaries.append({
                    'allocationId': allocation.id,
                    'examId': allocation.exam_id,
                    'examTitle': allocation.exam_title,
                    'subjectCode': allocation.subject_code,
                    'subjectName': allocation.subject_name,
                    'paperNumber': allocation.paper_number,
                    'examLevel': allocation.exam_level,
                    'scriptsAllocated': allocated,
                    'scriptsMarked': marked,
                    'scriptsRemaining': entry.get('scriptsRemaining', allocated - marked),
                    'deadline': entry.get('deadline'),
                    'status': entry.get('status'),
                    'progress': round_half_up(marked / allocated * 100) if allocated else 0,
                })

            if not summaries:
                return api_success({
                    'scripts': [],
                    'allocations': [],
                    'summary': {'totalScripts': 0, 'allocated': 0, 'inProgress': 0,
                                'marked': 0, 'verified': 0, 'overdue': 0},
                    'workload': {'totalAllocated': 0, 'totalMarked': 0, 'totalRemaining': 0,
                                 'averageTimePerScript': 0, 'estimatedCompletionTime': 0},
                }, 'No scripts allocated to this examiner')

            # Highest priority first, then nearest deadline
            scripts.sort(key=lambda s: s.get('deadline') or '')
            scripts.sort(key=lambda s: PRIORITY_RANK.get(s.get('priority'), 0), reverse=True)

            page_items, pagination = paginate(scripts, page, limit, 'totalScripts')
            total_allocated = sum(s['scriptsAllocated'] for s in summaries)
            total_marked = sum(s['scriptsMarked'] for s in summaries)
            remaining = total_allocated - total_marked
            return api_success({
                'scripts': page_items,
                'allocations': summaries,
                'pagination': pagination,
                'summary': {
                    'totalScripts': len(scripts),
                    'allocated': sum(1 for s in scripts if s.get('markingStatus') == 'allocated'),
                    'inProgress': sum(1 for s in scripts if s.get('markingStatus') == 'in_progress'),
                    'marked': sum(1 for s in scripts if s.get('markingStatus') == 'marked'),
                    'verified': sum(1 for s in scripts if s.get('markingStatus') == 'verified'),
                    'overdue': sum(1 for s in scripts
                                   if is_overdue(s.get('deadline'), s.get('markingStatus'), now)),
                },
                'workload': {
                    'totalAllocated': total_allocated,
                    'totalMarked': total_marked,
                    'totalRemaining': remaining,
                    'averageTimePerScript': AVERAGE_MINUTES_PER_SCRIPT,
                    'estimatedCompletionTime': remaining * AVERAGE_MINUTES_PER_SCRIPT,
                    'overallProgress': round_half_up(total_marked / total_allocated * 100) if total_allocated else 0,
                },
                'upcomingDeadlines': sorted([s for s in summaries if s['status'] != 'completed'],
                                            key=lambda s: s['deadline'] or '')[:5],
            }, 'Examiner scripts retrieved successfully')
        except Exception as e:
            return server_error('Get examiner scripts error', e)
        finally:
            session_db.close()

    @bp.route('/marking/scripts/<examiner_id>', methods=['PUT'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def marking_update_scripts(examiner_id):
        data = get_json_body()
        action = data.get('action')
        script_ids = data.get('scriptIds') or ([data['scriptId']] if data.get('scriptId') else [])

        session_db = get_session()
        try:
            if not current_user.is_admin and examiner_id not in _own_examiner_ids(session_db, current_user):
                return api_error('Access denied', 403)

            allocation = session_db.get(ScriptAllocation, data.get('allocationId') or '')
            if not allocation:
                return api_error('Allocation not found', 404)
            entries = [dict(e) for e in allocation.allocations or []]
            entry = next((e for e in entries if e.get('examinerId') == examiner_id), None)
            if not entry:
                return api_error('Examiner allocation not found', 404)

            now = datetime.utcnow()
            scripts = [dict(s) for s in entry.get('scripts') or []]
            updated = 0
            if action == 'bulk_status_update':
                new_status = data.get('newStatus')
                if not new_status or not script_ids:
                    return api_error('Status and script IDs are required')
                for script in scripts:
                    if script['scriptId'] in script_ids:
                        check_transition(SCRIPT_TRANSITIONS, script.get('markingStatus'), new_status, 'script')
                        script['markingStatus'] = new_status
                        stamp = SCRIPT_TIMESTAMPS.get(new_status)
                        if stamp:
                            script[stamp] = now.isoformat()
                        updated += 1
            elif action == 'bulk_priority_update':
                new_priority = data.get('priority')
                if new_priority not in PRIORITY_RANK or not script_ids:
                    return api_error('Priority and script IDs are required')
                for script in scripts:
                    if script['scriptId'] in script_ids:
                        script['priority'] = new_priority
                        updated += 1
            elif action == 'start_marking_session':
                for script in scripts:
                    if script.get('markingStatus') == 'allocated':
                        script['markingStatus'] = 'in_progress'
                        script['startedAt'] = now.isoformat()
                        updated += 1
            else:
                return api_error('Invalid action')

            entry['scripts'] = scripts
            _refresh_examiner_allocation(entry)
            allocation.allocations = entries
            session_db.commit()
            return api_success({'updatedScripts': updated, 'allocation': entry},
                               f"Bulk {action} completed successfully")
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update examiner scripts error', e)
        finally:
            session_db.close()

    # ==================== MARKING SCORES ====================
    @bp.route('/marking/scores', methods=['POST'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to mark scripts')
    def marking_submit_scores():
        data = get_json_body()
        if missing_fields(data, 'scriptId', 'candidateNumber', 'examId', 'scores') \
                or not isinstance(data.get('scores'), list):
            return api_error('Missing required marking information')
        marking_type = data.get('markingType', 'first')
        if marking_type not in MARKING_TYPE_ORDER:
            return api_error('Invalid marking type')
        auto_submit = parse_bool(data.get('autoSubmit'))

        session_db = get_session()
        try:
            existing = session_db.query(MarkingScore).filter_by(
                script_id=data['scriptId'], marking_type=marking_type, examiner_id=current_user.id).first()
            if existing and existing.status != 'draft':
                return api_error('Marking already submitted for this script', 409)

            now = datetime.utcnow()
            sections, total, maximum = process_scores(data['scores'])
            percentage = percentage_of(total, maximum)
            exam_level = data.get('examLevel') or 'O Level'
            timing = data.get('markingTime') or {}

            marking = existing or MarkingScore(
                id=f"MARK-{data['scriptId']}-{marking_type}-{_stamp()}",
                script_id=data['scriptId'],
                examiner_id=current_user.id,
                marking_type=marking_type,
            )
            marking.candidate_number = data['candidateNumber']
            for key, column in (('candidateId', 'candidate_id'), ('candidateName', 'candidate_name'),
                                ('schoolId', 'school_id'), ('schoolName', 'school_name'),
                                ('centerCode', 'centre_code'), ('centerName', 'centre_name'),
                                ('subjectCode', 'subject_code'), ('subjectName', 'subject_name'),
                                ('paperNumber', 'paper_number')):
                if key in data:
                    setattr(marking, column, data[key])
            marking.exam_id = data['examId']
            marking.exam_level = exam_level
            marking.examiner_name = current_user.full_name or 'Unknown Examiner'
            marking.scores = sections
            marking.total_marks = total
            marking.total_max_marks = maximum
            marking.percentage = percentage
            marking.grade = grade_for_percentage(percentage, exam_level)
            marking.quality_indicators = dict(DEFAULT_QUALITY_INDICATORS)
            marking.marking_time = {
                'startTime': timing.get('startTime') or now.isoformat(),
                'endTime': timing.get('endTime'),
                'totalMinutes': timing.get('totalMinutes'),
                'pausedTime': timing.get('pausedTime') or 0,
            }
            marking.flags = [dict(flag, flaggedAt=now.isoformat()) for flag in data.get('flags') or []]
            marking.verification = {'isVerified': False}
            marking.moderation = {'isModerated': False}
            marking.status = 'submitted' if auto_submit else 'draft'
            marking.submitted_at = now if auto_submit else None
            if not existing:
                session_db.add(marking)
            if auto_submit:
                _mark_script_marked(session_db, marking.exam_id, marking.script_id, now)

            session_db.commit()
            message = 'Marking submitted successfully' if auto_submit else 'Marking saved as draft'
            return api_success(marking.to_dict(), message, 200 if existing else 201)
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Submit marking scores error', e)
        finally:
            session_db.close()

    @bp.route('/marking/scores', methods=['GET'])
    @require_roles('admin', 'examiner', message=STAFF_MESSAGE)
    def marking_list_scores():
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 20)
        session_db = get_session()
        try:
            query = session_db.query(MarkingScore)
            for arg, column in (('examId', MarkingScore.exam_id), ('scriptId', MarkingScore.script_id),
                                ('subjectCode', MarkingScore.subject_code), ('status', MarkingScore.status),
                                ('markingType', MarkingScore.marking_type),
                                ('examinerId', MarkingScore.examiner_id)):
                value = request.args.get(arg)
                if value:
                    query = query.filter(column == value)
            if not current_user.is_admin:
                query = query.filter(MarkingScore.examiner_id == current_user.id)
            markings = query.order_by(MarkingScore.created_at.desc()).all()

            page_items, pagination = paginate(markings, page, limit, 'totalMarkings')
            return api_success({
                'markings': [m.to_dict() for m in page_items],
                'pagination': pagination,
                'statistics': {
                    'total': len(markings),
                    'byStatus': {s: sum(1 for m in markings if m.status == s) for s in MARKING_STATUS_ORDER},
                    'byType': {t: sum(1 for m in markings if m.marking_type == t) for t in MARKING_TYPE_ORDER},
                    'averagePercentage': round_half_up(mean([m.percentage or 0 for m in markings])) if markings else 0,
                },
            }, 'Marking scores retrieved successfully')
        except Exception as e:
            return server_error('Get marking scores error', e)
        finally:
            session_db.close()

    @bp.route('/marking/scores/<marking_id>', methods=['GET'])
    @require_roles('admin', 'examiner', message='Access denied')
    def marking_get_score(marking_id):
        session_db = get_session()
        try:
            if marking_id.startswith('SCRIPT-'):
                markings = _markings_for(session_db, marking_id)
                if not markings:
                    return api_error('No markings found for this script', 404)
                return api_success({
                    'markings': [m.to_dict() for m in markings],
                    'summary': {
                        'scriptId': marking_id,
                        'totalMarkings': len(markings),
                        'markingTypes': [m.marking_type for m in markings],
                        'averageMarks': round_half_up(mean([m.total_marks or 0 for m in markings])),
                        'markingConsistency': marking_consistency(markings),
                        'finalMarks': final_marks(markings),
                        'status': highest_status([m.status for m in markings]),
                        'flags': [flag for m in markings for flag in m.flags or []],
                    },
                }, 'Script markings retrieved successfully')

            marking = session_db.get(MarkingScore, marking_id)
            if not marking:
                return api_error('Marking not found', 404)
            return api_success(marking.to_dict(), 'Marking retrieved successfully')
        except Exception as e:
            return server_error('Get marking scores error', e)
        finally:
            session_db.close()

    @bp.route('/marking/scores/<marking_id>', methods=['PUT'])
    @require_roles('admin', 'examiner', message='Access denied')
    def marking_update_score(marking_id):
        data = get_json_body()
        action = data.get('action')
        session_db = get_session()
        try:
            now = datetime.utcnow()
            if marking_id.startswith('SCRIPT-'):
                markings = _markings_for(session_db, marking_id)
                if not markings:
                    return api_error('No markings found for this script', 404)
                if action != 'verify_markings':
                    return api_error('Invalid action for script markings update')
                if data.get('markingType'):
                    markings = [m for m in markings if m.marking_type == data['markingType']]
                if any(m.status == 'finalized' for m in markings):
                    return api_error('Cannot modify finalized marking')
                details = data.get('data') or {}
                updated = []
                for marking in markings:
                    verification = dict(marking.verification or {})
                    verification.update({
                        'isVerified': True,
                        'verifiedBy': current_user.id,
                        'verifiedAt': now.isoformat(),
                        'verificationComments': details.get('verificationComments') or '',
                        'discrepancies': details.get('discrepancies') or [],
                    })
                    marking.verification = verification
                    marking.status = 'verified'
                    updated.append(marking)
                session_db.commit()
                return api_success([m.to_dict() for m in updated], 'Markings verified successfully')

            marking = session_db.get(MarkingScore, marking_id)
            if not marking:
                return api_error('Marking not found', 404)
            if not current_user.is_admin and marking.examiner_id != current_user.id \
                    and action not in ('verify_marking', 'moderate_marking'):
                return api_error('Access denied', 403)
            if marking.status == 'finalized':
                return api_error('Cannot modify finalized marking')

            timing = dict(marking.marking_time or {})
            flags = list(marking.flags or [])
            if action == 'submit_marking':
                marking.status = 'submitted'
                marking.submitted_at = now
                submitted_time = data.get('markingTime') or {}
                if submitted_time.get('endTime'):
                    timing['endTime'] = submitted_time['endTime']
                    timing['totalMinutes'] = submitted_time.get('totalMinutes')
                _mark_script_marked(session_db, marking.exam_id, marking.script_id, now)
            elif action == 'verify_marking':
                details = data.get('verification') or {}
                verification = dict(marking.verification or {})
                verification.update({
                    'isVerified': True,
                    'verifiedBy': current_user.id,
                    'verifiedAt': now.isoformat(),
                    'verificationComments': details.get('verificationComments') or '',
                    'discrepancies': details.get('discrepancies') or [],
                })
                marking.verification = verification
                marking.status = 'verified'
            elif action == 'moderate_marking':
                details = data.get('moderation') or {}
                moderated_marks = details.get('finalMarks') or marking.total_marks
                marking.moderation = {
                    'isModerated': True,
                    'moderatedBy': current_user.id,
                    'moderatedAt': now.isoformat(),
                    'moderationComments': details.get('moderationComments') or '',
                    'finalMarks': moderated_marks,
                    'adjustments': details.get('adjustments') or [],
                }
                marking.status = 'moderated'
                if moderated_marks != marking.total_marks:
                    marking.total_marks = moderated_marks
                    marking.percentage = percentage_of(moderated_marks, marking.total_max_marks or 0)
                    marking.grade = grade_for_percentage(marking.percentage, marking.exam_level or 'O Level')
            elif action == 'finalize_marking':
                marking.status = 'finalized'
            elif action == 'add_flag':
                if data.get('flag'):
                    flags.append(dict(data['flag'], flaggedAt=now.isoformat()))
            elif action == 'remove_flag':
                index = parse_int(data.get('flagIndex'), -1)
                if 0 <= index < len(flags):
                    flags.pop(index)
            elif action:
                return api_error('Invalid action')

            if 'scores' in data:
                sections, total, maximum = process_scores(data['scores'])
                marking.scores = sections
                marking.total_marks = total
                marking.total_max_marks = maximum
                marking.percentage = percentage_of(total, maximum)
                marking.grade = grade_for_percentage(marking.percentage, marking.exam_level or 'O Level')
            if 'flags' in data:
                flags = list(data['flags'] or [])
            if 'markingTime' in data and action != 'submit_marking':
                timing.update(data['markingTime'] or {})
            if 'status' in data:
                if data['status'] not in MARKING_STATUS_ORDER:
                    return api_error('Invalid marking status')
                marking.status = data['status']
            marking.marking_time = timing
            marking.flags = flags

            session_db.commit()
            return api_success(marking.to_dict(), 'Marking updated successfully')
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update marking scores error', e)
        finally:
            session_db.close()

    # ==================== DOUBLE MARKING ====================
    @bp.route('/marking/verify-double-marking', methods=['POST'])
    @require_roles('admin', 'examiner', message='Insufficient permissions for double marking verification')
    def marking_verify_double():
        data = get_json_body()
        if missing_fields(data, 'scriptId', 'firstMarkingId', 'secondMarkingId'):
            return api_error('Missing required verification information')
        threshold = data.get('discrepancyThreshold')
        if threshold is None:
            threshold = current_app.config['DOUBLE_MARKING_THRESHOLD']
        elif isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold < 0:
            return api_error('Discrepancy threshold must be a non-negative number')
        auto_resolve = parse_bool(data.get('autoResolve'))

        session_db = get_session()
        try:
            first = session_db.get(MarkingScore, data['firstMarkingId'])
            second = session_db.get(MarkingScore, data['secondMarkingId'])
            if not first or not second:
                return api_error('One or both markings not found', 404)
            if first.script_id != data['scriptId'] or second.script_id != data['scriptId']:
                return api_error('Markings do not belong to the specified script')
            if session_db.query(DoubleMarkingVerification).filter_by(script_id=data['scriptId']).first():
                return api_error('Double marking verification already exists for this script', 409)

            discrepancy = calculate_discrepancy(first.total_marks or 0, second.total_marks or 0,
                                                first.total_max_marks or 0, threshold)
            questions = question_discrepancies(first.scores, second.scores, threshold)
            quality = double_marking_quality(discrepancy, questions)

            verification = {'status': 'pending'}
            if auto_resolve and not discrepancy['isSignificant']:
                verification = {
                    'status': 'resolved',
                    'resolution': 'average',
                    'finalMarks': round_half_up(((first.total_marks or 0) + (second.total_marks or 0)) / 2),
                    'finalPercentage': round_half_up(((first.percentage or 0) + (second.percentage or 0)) / 2),
                    'comments': 'Auto-resolved: Discrepancy within acceptable threshold',
                    'justification': 'Marks difference is within the acceptable threshold, averaged automatically',
                }
            escalate = discrepancy['isSignificant'] and quality['markingQuality'] == 'poor'

            def marker(m):
                submitted = m.submitted_at or m.created_at
                return {
                    'examinerId': m.examiner_id,
                    'examinerName': m.examiner_name,
                    'totalMarks': m.total_marks,
                    'percentage': m.percentage,
                    'submittedAt': submitted.isoformat() if submitted else None,
                }

            record = DoubleMarkingVerification(
                id=f"VERIFY-{data['scriptId']}-{_stamp()}",
                script_id=data['scriptId'],
                candidate_number=first.candidate_number,
                exam_id=first.exam_id,
                subject_code=first.subject_code,
                paper_number=first.paper_number,
                first_marking_id=first.id,
                second_marking_id=second.id,
                first_marker=marker(first),
                second_marker=marker(second),
                discrepancy=discrepancy,
                question_discrepancies=questions,
                verification=verification,
                escalation={
                    'isEscalated': escalate,
                    'escalationReason': 'Significant discrepancy with poor marking quality' if escalate else None,
                },
                quality_metrics=quality,
            )
            session_db.add(record)
            if escalate:
                logger.warning(f"Double marking of {data['scriptId']} escalated "
                               f"({discrepancy['percentageDifference']}% apart)")
            session_db.commit()
            return api_success(record.to_dict(), 'Double marking verification created successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Create double marking verification error', e)
        finally:
            session_db.close()

    @bp.route('/marking/verify-double-marking', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions for double marking verification')
    def marking_list_verifications():
        status = request.args.get('status')
        exam_id = request.args.get('examId')
        subject_code = request.args.get('subjectCode')
        significant_only = parse_bool(request.args.get('significantOnly'))
        escalated_only = parse_bool(request.args.get('escalatedOnly'))
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 20)

        session_db = get_session()
        try:
            query = session_db.query(DoubleMarkingVerification)
            if exam_id:
                query = query.filter(DoubleMarkingVerification.exam_id == exam_id)
            if subject_code:
                query = query.filter(DoubleMarkingVerification.subject_code == subject_code)
            records = query.order_by(DoubleMarkingVerification.created_at.desc()).all()
            if status:
                records = [r for r in records if (r.verification or {}).get('status') == status]
            if significant_only:
                records = [r for r in records if r.is_significant]
            if escalated_only:
                records = [r for r in records if r.is_escalated]
            # Significant discrepancies first, newest first within each group
            records.sort(key=lambda r: not r.is_significant)

            page_items, pagination = paginate(records, page, limit, 'totalVerifications')
            qualities = [(r.quality_metrics or {}).get('markingQuality') for r in records]
            return api_success({
                'verifications': [r.to_dict() for r in page_items],
                'pagination': pagination,
                'statistics': {
                    'total': len(records),
                    'byStatus': {s: sum(1 for r in records if (r.verification or {}).get('status') == s)
                                 for s in ('pending', 'reviewed', 'resolved', 'escalated')},
                    'significantDiscrepancies': sum(1 for r in records if r.is_significant),
                    'escalatedCases': sum(1 for r in records if r.is_escalated),
                    'averageDiscrepancy': round_half_up(mean([(r.discrepancy or {}).get('percentageDifference', 0)
                                                              for r in records])) if records else 0,
                    'qualityDistribution': {q: qualities.count(q) for q in REVIEW_QUALITY_SCORES},
                },
            }, 'Double marking verifications retrieved successfully')
        except Exception as e:
            return server_error('Get double marking verifications error', e)
        finally:
            session_db.close()

    # ==================== CHIEF EXAMINER REVIEW ====================
    @bp.route('/marking/chief-examiner-review', methods=['PUT'])
    @require_roles('admin', 'examiner', message='Chief examiner access required')
    def marking_chief_review():
        data = get_json_body()
        if missing_fields(data, 'examId', 'subjectCode', 'paperNumber', 'reviewType', 'scriptsReviewed') \
                or not isinstance(data.get('scriptsReviewed'), list):
            return api_error('Missing required review information')
        if data['reviewType'] not in REVIEW_TYPES:
            return api_error('Invalid review type')
        action = data.get('action', 'create')

        session_db = get_session()
        try:
            if action == 'update' and data.get('reviewId'):
                review = session_db.get(ChiefExaminerReview, data['reviewId'])
                if not review:
                    return api_error('Review not found', 404)
            else:
                review = session_db.query(ChiefExaminerReview).filter_by(
                    exam_id=data['examId'], subject_code=data['subjectCode'],
                    paper_number=data['paperNumber'], review_type=data['reviewType']).first()
            is_new = review is None
            if is_new:
                review = ChiefExaminerReview(
                    id=f"CHIEF-REVIEW-{data['examId']}-{data['subjectCode']}-P{data['paperNumber']}-{_stamp()}",
                    exam_id=data['examId'],
                    subject_code=data['subjectCode'],
                    paper_number=data['paperNumber'],
                    review_type=data['reviewType'],
                )
                session_db.add(review)

            now = datetime.utcnow()
            scripts = []
            for script in data['scriptsReviewed']:
                original = script.get('originalMarks') or 0
                reviewed = script.get('reviewedMarks') or 0
                scripts.append({
                    'scriptId': script.get('scriptId'),
                    'candidateNumber': script.get('candidateNumber'),
                    'originalMarks': original,
                    'reviewedMarks': reviewed,
                    'adjustment': reviewed - original,
                    'adjustmentReason': script.get('adjustmentReason') or '',
                    'markingQuality': review_quality(original, reviewed, script.get('maxMarks') or 100),
                    'examinerFeedback': script.get('examinerFeedback') or '',
                    'recommendations': script.get('recommendations') or [],
                })
            adjustments = [s['adjustment'] for s in scripts]
            qualities = [s['markingQuality'] for s in scripts]

            review.chief_examiner_id = current_user.id
            review.chief_examiner_name = current_user.full_name or 'Chief Examiner'
            review.scripts_reviewed = scripts
            review.overall_assessment = data.get('overallAssessment') or {
                'markingStandard': 'appropriate',
                'consistency': 4,
                'accuracy': 4,
                'adherenceToScheme': 4,
                'overallQuality': 4,
            }
            review.recommendations = data.get('recommendations') or {
                'gradeBoundaryAdjustment': False,
                'additionalModeration': False,
                'examinerRetraining': False,
                'markingSchemeRevision': False,
                'specificActions': [],
            }
            review.statistics = {
                'totalScriptsReviewed': len(scripts),
                'scriptsAdjusted': sum(1 for a in adjustments if a != 0),
                'averageAdjustment': round2(mean(adjustments)) if adjustments else 0,
                'adjustmentRange': {'min': min(adjustments) if adjustments else 0,
                                    'max': max(adjustments) if adjustments else 0},
                'qualityDistribution': {q: qualities.count(q) for q in REVIEW_QUALITY_SCORES},
            }
            review.status = data.get('status') or review.status or 'in_progress'
            if data.get('status') == 'completed':
                review.completed_at = now
            if data.get('status') == 'approved':
                review.approved_at = now

            # Adjusted scripts moderate the first marking on record
            for script in scripts:
                if script['adjustment'] == 0:
                    continue
                marking = session_db.query(MarkingScore).filter_by(script_id=script['scriptId']) \
                    .order_by(MarkingScore.created_at).first()
                if not marking:
                    continue
                marking.moderation = {
                    'isModerated': True,
                    'moderatedBy': current_user.id,
                    'moderatedAt': now.isoformat(),
                    'moderationComments': script['adjustmentReason'],
                    'finalMarks': script['reviewedMarks'],
                    'adjustments': [{
                        'questionId': 'overall',
                        'originalMarks': script['originalMarks'],
                        'adjustedMarks': script['reviewedMarks'],
                        'reason': script['adjustmentReason'],
                    }],
                }
                marking.total_marks = script['reviewedMarks']
                marking.percentage = percentage_of(script['reviewedMarks'], marking.total_max_marks or 0)
                marking.grade = grade_for_percentage(marking.percentage, marking.exam_level or 'O Level')
                marking.status = 'moderated'

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'CHIEF_REVIEW_SUBMITTED', 'marking',
                         f"{data['reviewType']} of {len(scripts)} scripts for {data['examId']}",
                         resource={'type': 'chief_examiner_review', 'id': review.id})
            session_db.commit()
            message = ('Chief examiner review created successfully' if is_new
                       else 'Chief examiner review updated successfully')
            return api_success(review.to_dict(), message)
        except Exception as e:
            session_db.rollback()
            return server_error('Chief examiner review error', e)
        finally:
            session_db.close()

    @bp.route('/marking/chief-examiner-review', methods=['GET'])
    @require_roles('admin', 'examiner', message='Chief examiner access required')
    def marking_list_reviews():
        session_db = get_session()
        try:
            query = session_db.query(ChiefExaminerReview)
            for arg, column in (('examId', ChiefExaminerReview.exam_id),
                                ('subjectCode', ChiefExaminerReview.subject_code),
                                ('reviewType', ChiefExaminerReview.review_type),
                                ('status', ChiefExaminerReview.status)):
                value = request.args.get(arg)
                if value:
                    query = query.filter(column == value)
            reviews = query.order_by(ChiefExaminerReview.created_at.desc()).all()

            return api_success({
                'reviews': [r.to_dict() for r in reviews],
                'summary': {
                    'totalReviews': len(reviews),
                    'byType': {
                        'sampleReview': sum(1 for r in reviews if r.review_type == 'sample_review'),
                        'discrepancyReview': sum(1 for r in reviews if r.review_type == 'discrepancy_review'),
                        'qualityReview': sum(1 for r in reviews if r.review_type == 'quality_review'),
                        'finalModeration': sum(1 for r in reviews if r.review_type == 'final_moderation'),
                    },
                    'byStatus': {
                        'inProgress': sum(1 for r in reviews if r.status == 'in_progress'),
                        'completed': sum(1 for r in reviews if r.status == 'completed'),
                        'approved': sum(1 for r in reviews if r.status == 'approved'),
                    },
                    'totalScriptsReviewed': sum((r.statistics or {}).get('totalScriptsReviewed', 0) for r in reviews),
                    'totalAdjustments': sum((r.statistics or {}).get('scriptsAdjusted', 0) for r in reviews),
                    'averageQuality': round_half_up(mean([(r.overall_assessment or {}).get('overallQuality', 0)
                                                          for r in reviews]), 1) if reviews else 0,
                },
            }, 'Chief examiner reviews retrieved successfully')
        except Exception as e:
            return server_error('Get chief examiner reviews error', e)
        finally:
            session_db.close()

    # ==================== PERFORMANCE ANALYTICS ====================
    @bp.route('/marking/performance-analytics', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view analytics')
    def marking_performance_analytics():
        analytics_type = request.args.get('type', 'overview')
        examiner_id = request.args.get('examinerId')
        subject_code = request.args.get('subjectCode')
        exam_id = request.args.get('examId')

        session_db = get_session()
        try:
            marking_query = session_db.query(MarkingScore)
            if exam_id:
                marking_query = marking_query.filter(MarkingScore.exam_id == exam_id)
            markings = marking_query.all()
            verifications = session_db.query(DoubleMarkingVerification).all()
            reviews = session_db.query(ChiefExaminerReview).all()
            allocations = session_db.query(ScriptAllocation).all()
            completed = [m for m in markings if m.status in ('submitted', 'verified')]
            total_allocated = sum(a.total_scripts or 0 for a in allocations)
            now = datetime.utcnow()

            if analytics_type == 'examiner':
                if examiner_id:
                    examiner = session_db.get(User, examiner_id)
                    result = {
                        'examinerPerformance': _examiner_performance(examiner_id, markings, verifications, reviews),
                        'examinerDetails': examiner.to_dict() if examiner else None,
                    }
                else:
                    ids = sorted({m.examiner_id for m in markings})
                    performance = [_examiner_performance(i, markings, verifications, reviews) for i in ids]
                    result = {'examinersPerformance': sorted(performance, key=lambda p: p['qualityRating'],
                                                             reverse=True)}
            elif analytics_type == 'subject':
                if subject_code:
                    result = {'subjectPerformance': _subject_performance(subject_code, markings, verifications)}
                else:
                    codes = sorted({m.subject_code for m in markings if m.subject_code})
                    result = {'subjectsPerformance': [_subject_performance(c, markings, verifications)
                                                      for c in codes]}
            elif analytics_type == 'quality':
                result = {'qualityMetrics': {
                    'totalVerifications': len(verifications),
                    'significantDiscrepancies': sum(1 for v in verifications if v.is_significant),
                    'averageConsistency': round_half_up(mean([(v.quality_metrics or {}).get('consistencyScore', 0)
                                                              for v in verifications])) if verifications else 0,
                    'escalatedCases': sum(1 for v in verifications if v.is_escalated),
                    'chiefExaminerReviews': len(reviews),
                    'averageQualityRating': round_half_up(mean([(r.overall_assessment or {}).get('overallQuality', 0)
                                                                for r in reviews]), 1) if reviews else 0,
                }}
            elif analytics_type == 'productivity':
                timed = [(m.marking_time or {}).get('totalMinutes') for m in markings
                         if m.status == 'submitted' and (m.marking_time or {}).get('totalMinutes')]
                days = [(now - timedelta(days=i)).date() for i in range(7)]
                bottlenecks = []
                overdue = _overdue_allocations(allocations, now)
                if overdue:
                    bottlenecks.append(f"{len(overdue)} overdue script allocations")
                significant = sum(1 for v in verifications if v.is_significant)
                if verifications and significant / len(verifications) > 0.2:
                    bottlenecks.append('High discrepancy rate in double marking')
                result = {'productivityMetrics': {
                    'totalScriptsAllocated': total_allocated,
                    'totalScriptsMarked': len(completed),
                    'completionRate': round_half_up(len(completed) / total_allocated * 100) if total_allocated else 0,
                    'averageMarkingTime': round_half_up(mean(timed)) if timed else 0,
                    'dailyProductivity': [{
                        'date': day.isoformat(),
                        'scriptsMarked': sum(1 for m in markings if m.submitted_at and m.submitted_at.date() == day),
                    } for day in days],
                    'bottlenecks': bottlenecks,
                }}
            else:
                recent = sorted([m for m in markings if m.submitted_at], key=lambda m: m.submitted_at,
                                reverse=True)[:10]
                alerts = []
                overdue = _overdue_allocations(allocations, now)
                if overdue:
                    alerts.append({'type': 'warning', 'priority': 'high',
                                   'message': f"{len(overdue)} script allocations are overdue"})
                poor = sum(1 for v in verifications if (v.quality_metrics or {}).get('markingQuality') == 'poor')
                if poor:
                    alerts.append({'type': 'error', 'priority': 'urgent',
                                   'message': f"{poor} scripts have poor marking quality"})
                result = {
                    'overview': {
                        'totalScripts': len(markings),
                        'completedScripts': len(completed),
                        'activeExaminers': len({m.examiner_id for m in markings}),
                        'averageMarks': round2(mean([m.total_marks or 0 for m in markings])) if markings else 0,
                        'qualityScore': round_half_up(mean([(v.quality_metrics or {}).get('consistencyScore', 0)
                                                            for v in verifications])) if verifications else 85,
                        'productivityScore': round_half_up(len(completed) / total_allocated * 100)
                        if total_allocated else 0,
                    },
                    'recentActivity': [{
                        'type': 'marking_submitted',
                        'examiner': m.examiner_name,
                        'script': m.candidate_number,
                        'subject': m.subject_code,
                        'timestamp': m.submitted_at.isoformat(),
                    } for m in recent],
                    'alerts': alerts,
                }

            return api_success(result, 'Performance analytics retrieved successfully')
        except Exception as e:
            return server_error('Get performance analytics error', e)
        finally:
            session_db.close()
