"""
Grading Routes
Grade boundaries, grade calculation, score normalisation and the quality
assurance dashboard
"""
from flask import request
from flask_login import current_user
from datetime import datetime, timedelta
import time
import logging

from db_single import get_session
from models import User
from grading_models import GradeBoundary, GradeCalculation, ScoreNormalization
from marking_models import MarkingScore, DoubleMarkingVerification, ScriptAllocation
from status_workflow import (check_transition, BOUNDARY_APPROVAL_TRANSITIONS, GRADE_CALCULATION_TRANSITIONS,
                             NORMALIZATION_TRANSITIONS, MARKING_STATUS_ORDER)
from validators import ValidationError, missing_fields, parse_bool, parse_int
from api_helpers import api_success, api_error, server_error, get_json_body, paginate, count_by, round_half_up, round2
from admin_helpers import record_audit
from marking_helpers import COUNTABLE_MARKING_STATUSES, is_overdue
from grading_helpers import (
    O_LEVEL, A_LEVEL, grade_names, grade_for_percentage, default_boundaries, grade_from_boundaries,
    validate_boundaries, is_pass, mean, score_statistics, normalization_statistics, reliability_index,
    discrimination_index, grade_distribution, correlation, normalize_to_target, apply_curve,
    NORMALIZATION_TYPES, normalize_scores,
)

logger = logging.getLogger(__name__)

EXAM_LEVELS = (O_LEVEL, A_LEVEL)
CALCULATION_TYPES = ('standard', 'normalized', 'curved', 'custom')
DEFAULT_BOUNDARY_QUALITY = {'reliability': 0.85, 'validity': 0.90, 'fairness': 0.88, 'consistency': 0.92}
DEFAULT_NORMALIZATION_QUALITY = {'reliabilityIndex': 0.92, 'fairnessIndex': 0.88, 'validityMeasure': 0.90}
BOUNDARY_STAMPS = {
    'pending_review': ('submittedBy', 'submittedAt'),
    'reviewed': ('reviewedBy', 'reviewedAt'),
    'approved': ('approvedBy', 'approvedAt'),
    'published': ('publishedBy', 'publishedAt'),
}
NORMALIZATION_STAMPS = {
    'pending_review': ('submittedBy', 'submittedAt'),
    'reviewed': ('reviewedBy', 'reviewedAt'),
    'approved': ('approvedBy', 'approvedAt'),
    'applied': ('appliedBy', 'appliedAt'),
}
RECENT_ADJUSTMENT_DAYS = 7


def _stamp():
    return int(time.time() * 1000)


def _parse_iso(value):
    try:
        return datetime.fromisoformat(value) if value else None
    except ValueError:
        return None


def _countable_markings(session_db, exam_id, subject_code):
    return session_db.query(MarkingScore).filter(
        MarkingScore.exam_id == exam_id,
        MarkingScore.subject_code == subject_code,
        MarkingScore.status.in_(COUNTABLE_MARKING_STATUSES),
    ).all()


def _marking_per_candidate(markings):
    """The most advanced marking of every candidate, latest first on ties"""
    chosen = {}
    for marking in markings:
        key = marking.result_candidate_id
        rank = (MARKING_STATUS_ORDER.index(marking.status), marking.created_at or datetime.min)
        if key not in chosen or rank > chosen[key][0]:
            chosen[key] = (rank, marking)
    return [marking for _, marking in sorted(chosen.values(), key=lambda item: item[1].result_candidate_id)]


def _ordered_boundaries(boundaries, exam_level):
    """
    Put submitted boundaries in grade order and validate them.
    Raises:
        ValidationError carrying the list of problems in `errors`
    """
    if not isinstance(boundaries, dict) or not boundaries:
        error = ValidationError('boundaries', 'Invalid boundaries')
        error.errors = ['Boundaries must be a non-empty object of grade to minimum percentage']
        raise error
    names = grade_names(exam_level)
    ordered = {grade: boundaries[grade] for grade in names if grade in boundaries}
    errors = [f"Unknown grade {grade} for {exam_level}" for grade in boundaries if grade not in names]
    errors.extend(validate_boundaries(ordered))
    if errors:
        error = ValidationError('boundaries', 'Invalid boundaries')
        error.errors = errors
        raise error
    return ordered


def _boundary_impact(markings, old, new, exam_level):
    """How candidates' grades would move between two boundary sets"""
    improved = declined = unchanged = 0
    names = grade_names(exam_level)
    for marking in _marking_per_candidate(markings):
        score = marking.final_marks or 0
        before = names.index(grade_from_boundaries(score, old, exam_level))
        after = names.index(grade_from_boundaries(score, new, exam_level))
        if after < before:
            improved += 1
        elif after > before:
            declined += 1
        else:
            unchanged += 1
    return {
        'candidatesAffected': improved + declined,
        'gradeChanges': {'improved': improved, 'declined': declined, 'unchanged': unchanged},
    }


def _advance_workflow(workflow, stamps, new_status, user_id, now, comments=None):
    workflow = dict(workflow or {'status': 'draft'})
    workflow['status'] = new_status
    if new_status in stamps:
        by_key, at_key = stamps[new_status]
        workflow[by_key] = user_id
        workflow[at_key] = now.isoformat()
    if new_status == 'reviewed' and comments:
        workflow['reviewComments'] = comments
    return workflow


def _recent_adjustments(boundaries, now):
    cutoff = now - timedelta(days=RECENT_ADJUSTMENT_DAYS)
    count = 0
    for boundary in boundaries:
        for adjustment in boundary.adjustment_history or []:
            adjusted_at = _parse_iso(adjustment.get('adjustedAt'))
            if adjusted_at and adjusted_at >= cutoff:
                count += 1
    return count


def _boundary_comparison(session_db, boundary):
    """Grade-by-grade changes against the latest approved boundaries of another exam"""
    others = session_db.query(GradeBoundary).filter(
        GradeBoundary.subject_code == boundary.subject_code,
        GradeBoundary.exam_level == boundary.exam_level,
        GradeBoundary.exam_id != boundary.exam_id,
    ).order_by(GradeBoundary.updated_at.desc()).all()
    reference = next((b for b in others if b.approval_status in ('approved', 'published')), None)
    if not reference:
        return None
    changes = []
    for grade, current in (boundary.boundaries or {}).items():
        previous = (reference.boundaries or {}).get(grade)
        if previous is None or previous == current:
            continue
        changes.append({
            'grade': grade,
            'previousValue': previous,
            'currentValue': current,
            'change': current - previous,
            'changeType': 'increase' if current > previous else 'decrease',
        })
    return {
        'subjectCode': boundary.subject_code,
        'comparedWith': reference.exam_id,
        'comparedSession': reference.exam_session,
        'changes': changes,
    }


def _apply_normalization(session_db, normalization, now):
    """Write normalised scores back onto the markings they came from"""
    applied = 0
    for adjustment in normalization.candidate_adjustments or []:
        marking = session_db.get(MarkingScore, adjustment.get('markingId'))
        if not marking:
            continue
        score = adjustment['normalizedScore']
        marking.total_marks = score
        marking.percentage = score
        marking.grade = adjustment['normalizedGrade']
        if (marking.moderation or {}).get('finalMarks'):
            marking.moderation = dict(marking.moderation, finalMarks=score)
        marking.normalization = {
            'isNormalized': True,
            'normalizationId': normalization.id,
            'originalScore': adjustment['originalScore'],
            'adjustment': adjustment['adjustment'],
            'appliedAt': now.isoformat(),
        }
        applied += 1
    return applied


# ===== QUALITY ASSURANCE =====

def _marking_quality(markings, verifications):
    completed = [m for m in markings if m.status in COUNTABLE_MARKING_STATUSES]
    if not completed:
        return {
            'totalScripts': len(markings),
            'completedScripts': 0,
            'completionRate': 0,
            'averageMarkingTime': 0,
            'qualityDistribution': {'excellent': 0, 'good': 0, 'acceptable': 0, 'poor': 0},
            'flaggedScripts': 0,
            'consistencyScore': 0,
        }
    times = [(m.marking_time or {}).get('totalMinutes') for m in completed]
    times = [t for t in times if t]
    qualities = [(v.quality_metrics or {}).get('markingQuality') for v in verifications]
    return {
        'totalScripts': len(markings),
        'completedScripts': len(completed),
        'completionRate': round_half_up(len(completed) / len(markings) * 100),
        'averageMarkingTime': round_half_up(mean(times)) if times else 0,
        'qualityDistribution': {q: qualities.count(q) for q in ('excellent', 'good', 'acceptable', 'poor')},
        'flaggedScripts': sum(1 for m in completed if m.flags),
        'consistencyScore': round_half_up(mean([(v.quality_metrics or {}).get('consistencyScore', 0)
                                                for v in verifications])) if verifications else 85,
    }


def _double_marking_metrics(verifications):
    if not verifications:
        return {
            'totalVerifications': 0,
            'significantDiscrepancies': 0,
            'discrepancyRate': 0,
            'averageDiscrepancy': 0,
            'escalatedCases': 0,
            'resolvedCases': 0,
            'averageResolutionTime': 0,
        }
    significant = sum(1 for v in verifications if v.is_significant)
    resolved = [v for v in verifications if (v.verification or {}).get('status') == 'resolved']
    hours = [((v.updated_at or v.created_at) - v.created_at).total_seconds() / 3600
             for v in resolved if v.created_at]
    return {
        'totalVerifications': len(verifications),
        'significantDiscrepancies': significant,
        'discrepancyRate': round_half_up(significant / len(verifications) * 100),
        'averageDiscrepancy': round_half_up(mean([(v.discrepancy or {}).get('percentageDifference', 0)
                                                  for v in verifications])),
        'escalatedCases': sum(1 for v in verifications if v.is_escalated),
        'resolvedCases': len(resolved),
        'averageResolutionTime': round_half_up(mean(hours)) if hours else 0,
    }


def _examiner_metrics(markings, verifications):
    examiner_ids = sorted({m.examiner_id for m in markings})
    metrics = []
    for examiner_id in examiner_ids:
        mine = [m for m in markings if m.examiner_id == examiner_id]
        completed = [m for m in mine if m.status in ('submitted', 'verified')]
        checks = [v for v in verifications
                  if (v.first_marker or {}).get('examinerId') == examiner_id
                  or (v.second_marker or {}).get('examinerId') == examiner_id]
        metrics.append({
            'examinerId': examiner_id,
            'examinerName': mine[0].examiner_name,
            'totalScripts': len(mine),
            'completedScripts': len(completed),
            'completionRate': round_half_up(len(completed) / len(mine) * 100),
            'consistencyScore': round_half_up(mean([(v.quality_metrics or {}).get('consistencyScore', 0)
                                                    for v in checks])) if checks else 85,
            'averageMarkingTime': round_half_up(mean([(m.marking_time or {}).get('totalMinutes') or 30
                                                      for m in completed])) if completed else 0,
            'flaggedScripts': sum(1 for m in mine if m.flags),
        })
    total = sum(e['totalScripts'] for e in metrics)
    completed = sum(e['completedScripts'] for e in metrics)
    return {
        'totalExaminers': len(metrics),
        'totalScripts': total,
        'totalCompleted': completed,
        'overallCompletionRate': round_half_up(completed / total * 100) if total else 0,
        'averageConsistency': round_half_up(mean([e['consistencyScore'] for e in metrics])) if metrics else 0,
        'topPerformers': sorted(metrics, key=lambda e: e['consistencyScore'], reverse=True)[:5],
        'underPerformers': [e for e in metrics if e['consistencyScore'] < 70 or e['completionRate'] < 80],
    }


def _pass_rate(calculation):
    distribution = calculation.grade_distribution or {}
    return round2(sum(entry.get('percentage', 0) for grade, entry in distribution.items()
                      if is_pass(grade, calculation.exam_level)))


def _grade_distribution_analysis(calculations):
    if not calculations:
        return {
            'totalSubjects': 0,
            'averagePassRate': 0,
            'gradeDistribution': {},
            'outlierSubjects': [],
            'qualityIndicators': {'reliability': 0, 'validity': 0, 'discrimination': 0},
        }
    overall = {}
    candidates = passed = 0
    for calculation in calculations:
        candidates += (calculation.statistics or {}).get('totalCandidates', 0)
        for grade, entry in (calculation.grade_distribution or {}).items():
            overall.setdefault(grade, {'count': 0, 'percentage': 0})
            overall[grade]['count'] += entry.get('count', 0)
            if is_pass(grade, calculation.exam_level):
                passed += entry.get('count', 0)
    for entry in overall.values():
        entry['percentage'] = round2(entry['count'] / candidates * 100) if candidates else 0

    average_pass_rate = round_half_up(passed / candidates * 100) if candidates else 0
    outliers = []
    for calculation in calculations:
        rate = _pass_rate(calculation)
        if abs(rate - average_pass_rate) > 20:
            outliers.append({
                'subjectCode': calculation.subject_code,
                'examId': calculation.exam_id,
                'passRate': rate,
                'deviation': round2(rate - average_pass_rate),
            })

    def indicator(key):
        return round2(mean([(c.quality_indicators or {}).get(key, 0) for c in calculations]))

    return {
        'totalSubjects': len(calculations),
        'averagePassRate': average_pass_rate,
        'gradeDistribution': overall,
        'outlierSubjects': outliers,
        'qualityIndicators': {
            'reliability': indicator('reliability'),
            'validity': indicator('validity'),
            'discrimination': indicator('discrimination'),
        },
    }


def _quality_issues(verifications, allocations, calculations, now):
    issues = []
    if verifications:
        rate = sum(1 for v in verifications if v.is_significant) / len(verifications) * 100
        if rate > 25:
            issues.append({
                'type': 'high_discrepancy_rate',
                'severity': 'high',
                'message': f"High discrepancy rate: {round_half_up(rate)}% of double markings have significant discrepancies",
                'recommendation': 'Review marking guidelines and provide additional examiner training',
            })

    overdue = [entry for a in allocations for entry in a.allocations or []
               if is_overdue(entry.get('deadline'), entry.get('status'), now)]
    if overdue:
        issues.append({
            'type': 'overdue_markings',
            'severity': 'medium',
            'message': f"{len(overdue)} marking allocations are overdue",
            'recommendation': 'Contact examiners and consider reassigning scripts if necessary',
        })

    poor = sum(1 for v in verifications if (v.quality_metrics or {}).get('markingQuality') == 'poor')
    if poor:
        issues.append({
            'type': 'poor_marking_quality',
            'severity': 'high',
            'message': f"{poor} scripts have poor marking quality",
            'recommendation': 'Investigate marking standards and provide immediate feedback to examiners',
        })

    failing = [c for c in calculations if 100 - _pass_rate(c) > 50]
    if failing:
        issues.append({
            'type': 'unusual_grade_distribution',
            'severity': 'medium',
            'message': f"{len(failing)} subjects have unusually high failure rates",
            'recommendation': 'Review exam difficulty and consider grade boundary adjustments',
        })
    return issues


def _recommendations(issues, marking_quality, double_marking):
    recommendations = []
    if any(i['type'] == 'high_discrepancy_rate' for i in issues):
        recommendations.append('Conduct additional examiner training sessions')
        recommendations.append('Review and clarify marking schemes')
    if marking_quality['completionRate'] < 90:
        recommendations.append('Monitor marking progress more closely')
        recommendations.append('Consider additional examiner recruitment')
    if double_marking['escalatedCases'] > 0:
        recommendations.append('Prioritize resolution of escalated marking cases')
    if not recommendations:
        recommendations.append('Continue current quality assurance practices')
        recommendations.append('Monitor trends for any emerging issues')
    return recommendations


def register_grading_routes(bp, require_roles):
    """Register grading routes"""

    # ==================== GRADE BOUNDARIES ====================
    @bp.route('/grading/grade-boundaries', methods=['PUT'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to manage grade boundaries')
    def grading_save_boundaries():
        data = get_json_body()
        if missing_fields(data, 'examId', 'subjectCode', 'examLevel', 'boundaries'):
            return api_error('Missing required boundary information')
        exam_level = data['examLevel']
        if exam_level not in EXAM_LEVELS:
            return api_error('Invalid exam level')

        session_db = get_session()
        try:
            boundaries = _ordered_boundaries(data['boundaries'], exam_level)
            exam_session = str(data.get('examSession') or '2025')
            now = datetime.utcnow()

            if data.get('action') == 'update' and data.get('boundaryId'):
                record = session_db.get(GradeBoundary, data['boundaryId'])
                if not record:
                    return api_error('Boundary record not found', 404)
            else:
                record = session_db.query(GradeBoundary).filter_by(
                    exam_id=data['examId'], subject_code=data['subjectCode'], exam_session=exam_session).first()

            markings = _countable_markings(session_db, data['examId'], data['subjectCode'])
            scores = [m.final_marks or 0 for m in _marking_per_candidate(markings)]

            if record:
                if record.approval_status == 'published':
                    return api_error('Cannot modify published grade boundaries')
                if boundaries != (record.boundaries or {}):
                    history = list(record.adjustment_history or [])
                    history.append({
                        'id': f"ADJ-{_stamp()}",
                        'previousBoundaries': record.boundaries or {},
                        'newBoundaries': boundaries,
                        'reason': data.get('adjustmentReason') or 'Boundary adjustment',
                        'justification': data.get('justification') or 'Administrative adjustment',
                        'adjustedBy': current_user.id,
                        'adjustedAt': now.isoformat(),
                        'impactAnalysis': _boundary_impact(markings, record.boundaries or {}, boundaries, exam_level),
                    })
                    record.previous_boundaries = record.boundaries
                    record.boundaries = boundaries
                    record.adjustment_history = history
                for field, attr in (('subjectName', 'subject_name'), ('effectiveDate', 'effective_date'),
                                    ('expiryDate', 'expiry_date')):
                    if data.get(field):
                        setattr(record, attr, data[field])
                if 'isActive' in data:
                    record.is_active = parse_bool(data['isActive'], True)
                if data.get('status'):
                    new_status = check_transition(BOUNDARY_APPROVAL_TRANSITIONS, record.approval_status,
                                                  data['status'], 'boundary approval')
                    record.approval_workflow = _advance_workflow(record.approval_workflow, BOUNDARY_STAMPS,
                                                                 new_status, current_user.id, now,
                                                                 data.get('reviewComments'))
                record.statistics = dict(record.statistics or {}, **(score_statistics(scores) or {}))
                message = 'Grade boundaries updated successfully'
                status_code = 200
            else:
                record = GradeBoundary(
                    id=f"BOUNDARIES-{data['examId']}-{data['subjectCode']}-{_stamp()}",
                    exam_id=data['examId'],
                    subject_code=data['subjectCode'],
                    subject_name=data.get('subjectName') or data['subjectCode'],
                    exam_level=exam_level,
                    exam_session=exam_session,
                    boundaries=boundaries,
                    adjustment_history=[],
                    statistics=score_statistics(scores) or {'totalCandidates': 0},
                    quality_metrics=dict(DEFAULT_BOUNDARY_QUALITY),
                    approval_workflow={'status': 'draft', 'submittedBy': current_user.id,
                                       'submittedAt': now.isoformat()},
                    effective_date=data.get('effectiveDate') or now.date().isoformat(),
                    expiry_date=data.get('expiryDate'),
                    is_active=True,
                    created_by=current_user.id,
                )
                session_db.add(record)
                message = 'Grade boundaries created successfully'
                status_code = 201

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'GRADE_BOUNDARIES_SAVED', 'grading',
                         f"Grade boundaries saved for {record.exam_id} {record.subject_code}",
                         resource={'type': 'grade_boundary', 'id': record.id}, severity='medium',
                         changes={'boundaries': boundaries})
            session_db.commit()
            logger.info(f"✅ Grade boundaries {record.id} saved")
            return api_success(record.to_dict(), message, status_code)
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message, errors=getattr(e, 'errors', [e.message]))
        except Exception as e:
            session_db.rollback()
            return server_error('Save grade boundaries error', e)
        finally:
            session_db.close()

    @bp.route('/grading/grade-boundaries', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher', message='Insufficient permissions to view grade boundaries')
    def grading_list_boundaries():
        status = request.args.get('status')
        active_only = parse_bool(request.args.get('activeOnly'))
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 20)

        session_db = get_session()
        try:
            query = session_db.query(GradeBoundary)
            for arg, column in (('examId', GradeBoundary.exam_id), ('subjectCode', GradeBoundary.subject_code),
                                ('examLevel', GradeBoundary.exam_level), ('examSession', GradeBoundary.exam_session)):
                if request.args.get(arg):
                    query = query.filter(column == request.args[arg])
            if active_only:
                query = query.filter(GradeBoundary.is_active.is_(True))
            records = query.order_by(GradeBoundary.updated_at.desc()).all()
            if status:
                records = [r for r in records if r.approval_status == status]

            page_items, pagination = paginate(records, page, limit, 'totalBoundaries')
            return api_success({
                'boundaries': [r.to_dict() for r in page_items],
                'pagination': pagination,
                'summary': {
                    'totalBoundaries': len(records),
                    'byLevel': count_by(records, lambda r: r.exam_level),
                    'byStatus': count_by(records, lambda r: r.approval_status),
                    'activeBoundaries': sum(1 for r in records if r.is_active),
                    'recentAdjustments': _recent_adjustments(records, datetime.utcnow()),
                },
            }, 'Grade boundaries retrieved successfully')
        except Exception as e:
            return server_error('Get grade boundaries error', e)
        finally:
            session_db.close()

    @bp.route('/grading/grade-boundaries/<exam_id>', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher', message='Insufficient permissions to view grade boundaries')
    def grading_exam_boundaries(exam_id):
        subject_code = request.args.get('subjectCode')
        include_history = parse_bool(request.args.get('includeHistory'))

        session_db = get_session()
        try:
            query = session_db.query(GradeBoundary).filter(GradeBoundary.exam_id == exam_id)
            if subject_code:
                query = query.filter(GradeBoundary.subject_code == subject_code)
            records = query.order_by(GradeBoundary.subject_code).all()
            if not records:
                return api_success({'examId': exam_id, 'boundaries': [], 'summary': {'totalSubjects': 0}},
                                   'No grade boundaries found for this exam')

            comparisons = [c for c in (_boundary_comparison(session_db, r) for r in records) if c]
            metrics = [r.quality_metrics or {} for r in records]
            return api_success({
                'examId': exam_id,
                'boundaries': [r.to_dict(history_limit=None if include_history else 3) for r in records],
                'summary': {
                    'totalSubjects': len(records),
                    'approvedBoundaries': sum(1 for r in records if r.approval_status in ('approved', 'published')),
                    'pendingApproval': sum(1 for r in records if r.approval_status in ('pending_review', 'reviewed')),
                    'recentChanges': _recent_adjustments(records, datetime.utcnow()),
                    'byLevel': count_by(records, lambda r: r.exam_level),
                    'qualityMetrics': {
                        key: round2(mean([m.get(key, 0) for m in metrics]))
                        for key in DEFAULT_BOUNDARY_QUALITY
                    },
                },
                'comparisons': comparisons,
            }, 'Grade boundaries retrieved successfully')
        except Exception as e:
            return server_error('Get exam grade boundaries error', e)
        finally:
            session_db.close()

    @bp.route('/grading/grade-boundaries/<exam_id>', methods=['PUT'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to manage grade boundaries')
    def grading_bulk_update_boundaries(exam_id):
        data = get_json_body()
        action = data.get('action')

        session_db = get_session()
        try:
            query = session_db.query(GradeBoundary).filter(GradeBoundary.exam_id == exam_id)
            if data.get('boundaryIds'):
                query = query.filter(GradeBoundary.id.in_(data['boundaryIds']))
            records = query.all()
            if not records:
                return api_error('No grade boundaries found for this exam', 404)

            now = datetime.utcnow()
            updated = []
            if action == 'bulk_status_update':
                new_status = data.get('newStatus')
                if not new_status:
                    return api_error('New status is required for bulk status update')
                for record in records:
                    check_transition(BOUNDARY_APPROVAL_TRANSITIONS, record.approval_status, new_status,
                                     'boundary approval')
                for record in records:
                    record.approval_workflow = _advance_workflow(
                        record.approval_workflow, BOUNDARY_STAMPS, new_status, current_user.id, now,
                        data.get('adjustmentReason') or 'Bulk review')
                    updated.append(record)
            elif action in ('bulk_activate', 'bulk_deactivate'):
                for record in records:
                    record.is_active = action == 'bulk_activate'
                    updated.append(record)
            elif action == 'publish_all_approved':
                for record in records:
                    if record.approval_status == 'approved':
                        record.approval_workflow = _advance_workflow(
                            record.approval_workflow, BOUNDARY_STAMPS, 'published', current_user.id, now)
                        updated.append(record)
            else:
                return api_error('Invalid bulk action')

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'GRADE_BOUNDARIES_BULK_UPDATE', 'grading',
                         f"{action} applied to {len(updated)} boundary records of {exam_id}",
                         resource={'type': 'grade_boundary', 'id': exam_id}, severity='medium')
            session_db.commit()
            return api_success({
                'updatedBoundaries': [r.to_dict(history_limit=3) for r in updated],
                'totalUpdated': len(updated),
            }, f"Bulk {action} completed successfully")
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Bulk update grade boundaries error', e)
        finally:
            session_db.close()

    # ==================== GRADE CALCULATION ====================
    @bp.route('/grading/calculate-grades', methods=['POST'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to calculate grades')
    def grading_calculate_grades():
        data = get_json_body()
        if missing_fields(data, 'examId', 'subjectCode', 'examLevel'):
            return api_error('Missing required calculation information')
        exam_level = data['examLevel']
        if exam_level not in EXAM_LEVELS:
            return api_error('Invalid exam level')
        calculation_type = data.get('calculationType') or 'standard'
        if calculation_type not in CALCULATION_TYPES:
            return api_error('Invalid calculation type')

        session_db = get_session()
        try:
            markings = _countable_markings(session_db, data['examId'], data['subjectCode'])
            if not markings:
                return api_error('No completed markings found for this exam and subject', 404)

            existing = session_db.query(GradeCalculation).filter_by(
                exam_id=data['examId'], subject_code=data['subjectCode']).first()
            if existing and existing.status != 'draft':
                return api_error('Grade calculation already exists and is not in draft status', 409)

            chosen = _marking_per_candidate(markings)
            raw_scores = [m.final_marks or 0 for m in chosen]
            adjusted_scores = list(raw_scores)
            adjustments = []
            now = datetime.utcnow()

            if calculation_type == 'normalized':
                params = data.get('normalizationParameters') or {}
                target_mean = params.get('targetMean', 50)
                target_sd = params.get('targetStdDev', 15)
                adjusted_scores = normalize_to_target(raw_scores, target_mean, target_sd)
                adjustments.append({'type': 'normalization', 'targetMean': target_mean,
                                    'targetStdDev': target_sd, 'appliedAt': now.isoformat()})
            elif calculation_type == 'curved':
                params = data.get('curveParameters') or {}
                amount = params.get('adjustment', 5)
                cap = params.get('cap', 100)
                adjusted_scores = [min(cap, s) for s in apply_curve(raw_scores, amount)]
                adjustments.append({'type': 'curve', 'adjustment': amount, 'cap': cap,
                                    'appliedAt': now.isoformat()})

            if data.get('customBoundaries'):
                boundaries = _ordered_boundaries(data['customBoundaries'], exam_level)
            else:
                stored = session_db.query(GradeBoundary).filter_by(
                    exam_id=data['examId'], subject_code=data['subjectCode'], is_active=True).all()
                stored = [b for b in stored if b.approval_status in ('approved', 'published')]
                boundaries = stored[0].boundaries if stored else default_boundaries(exam_level)

            candidates = []
            for marking, raw, adjusted in zip(chosen, raw_scores, adjusted_scores):
                candidates.append({
                    'candidateId': marking.result_candidate_id,
                    'candidateNumber': marking.candidate_number,
                    'candidateName': marking.candidate_name,
                    'schoolId': marking.school_id,
                    'markingId': marking.id,
                    'rawScore': raw,
                    'adjustedScore': adjusted,
                    'grade': grade_from_boundaries(adjusted, boundaries, exam_level),
                    'percentage': round_half_up(raw),
                })
            candidates.sort(key=lambda c: c['adjustedScore'], reverse=True)
            for index, candidate in enumerate(candidates):
                if index and candidate['adjustedScore'] == candidates[index - 1]['adjustedScore']:
                    candidate['position'] = candidates[index - 1]['position']
                else:
                    candidate['position'] = index + 1

            statistics = score_statistics(raw_scores)
            if calculation_type in ('normalized', 'curved'):
                statistics['adjustedMean'] = round2(mean(adjusted_scores))
            quality = {
                'reliability': round2(reliability_index(raw_scores)),
                'validity': 0.85,
                'discrimination': discrimination_index(candidates),
                'difficulty': round2(mean(raw_scores) / 100),
            }

            calculation = existing or GradeCalculation(
                id=f"GRADE-CALC-{data['examId']}-{data['subjectCode']}-{_stamp()}",
                exam_id=data['examId'],
                subject_code=data['subjectCode'],
            )
            calculation.exam_level = exam_level
            calculation.calculation_type = calculation_type
            calculation.grade_boundaries = boundaries
            calculation.statistics = statistics
            calculation.grade_distribution = grade_distribution(candidates, exam_level)
            calculation.candidate_grades = candidates
            calculation.quality_indicators = quality
            calculation.adjustments = adjustments
            calculation.status = 'calculated'
            calculation.calculated_by = current_user.id
            calculation.calculated_at = now
            if not existing:
                session_db.add(calculation)

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'GRADES_CALCULATED', 'grading',
                         f"Grades calculated for {len(candidates)} candidates in {data['examId']} {data['subjectCode']}",
                         resource={'type': 'grade_calculation', 'id': calculation.id}, severity='medium')
            session_db.commit()
            logger.info(f"✅ Grades calculated for {data['examId']} {data['subjectCode']} ({len(candidates)} candidates)")
            return api_success(calculation.to_dict(), 'Grades calculated successfully', 200 if existing else 201)
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message, errors=getattr(e, 'errors', [e.message]))
        except Exception as e:
            session_db.rollback()
            return server_error('Calculate grades error', e)
        finally:
            session_db.close()

    @bp.route('/grading/calculate-grades', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view grade calculations')
    def grading_list_calculations():
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)

        session_db = get_session()
        try:
            query = session_db.query(GradeCalculation)
            for arg, column in (('examId', GradeCalculation.exam_id), ('subjectCode', GradeCalculation.subject_code),
                                ('examLevel', GradeCalculation.exam_level), ('status', GradeCalculation.status)):
                if request.args.get(arg):
                    query = query.filter(column == request.args[arg])
            calculations = query.order_by(GradeCalculation.calculated_at.desc()).all()

            page_items, pagination = paginate(calculations, page, limit, 'totalCalculations')
            return api_success({
                'calculations': [c.to_dict() for c in page_items],
                'pagination': pagination,
                'summary': {
                    'totalCalculations': len(calculations),
                    'byStatus': count_by(calculations, lambda c: c.status),
                    'totalCandidates': sum((c.statistics or {}).get('totalCandidates', 0) for c in calculations),
                },
            }, 'Grade calculations retrieved successfully')
        except Exception as e:
            return server_error('Get grade calculations error', e)
        finally:
            session_db.close()

    @bp.route('/grading/calculate-grades', methods=['PUT'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to update grade calculations')
    def grading_update_calculation():
        data = get_json_body()
        if missing_fields(data, 'calculationId', 'status'):
            return api_error('Calculation ID and status are required')
        new_status = data['status']
        if new_status in ('approved', 'published') and not current_user.is_admin:
            return api_error('Only administrators can approve or publish grades', 403)

        session_db = get_session()
        try:
            calculation = session_db.get(GradeCalculation, data['calculationId'])
            if not calculation:
                return api_error('Grade calculation not found', 404)
            previous = calculation.status
            check_transition(GRADE_CALCULATION_TRANSITIONS, previous, new_status, 'grade calculation')

            now = datetime.utcnow()
            calculation.status = new_status
            if new_status == 'reviewed':
                calculation.reviewed_by = current_user.id
                calculation.reviewed_at = now
                calculation.review_comments = data.get('reviewComments') or calculation.review_comments
            elif new_status == 'approved':
                calculation.approved_by = current_user.id
                calculation.approved_at = now
            elif new_status == 'published':
                calculation.published_at = now

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'GRADE_CALCULATION_STATUS', 'grading',
                         f"Grade calculation {calculation.id} moved from {previous} to {new_status}",
                         resource={'type': 'grade_calculation', 'id': calculation.id}, severity='medium',
                         changes={'status': {'from': previous, 'to': new_status}})
            session_db.commit()
            return api_success(calculation.to_dict(), 'Grade calculation updated successfully')
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update grade calculation error', e)
        finally:
            session_db.close()

    # ==================== SCORE NORMALIZATION ====================
    @bp.route('/grading/normalize-scores', methods=['POST'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to normalize scores')
    def grading_normalize_scores():
        data = get_json_body()
        if missing_fields(data, 'examId', 'subjectCode', 'examLevel', 'normalizationType', 'justification'):
            return api_error('Missing required normalization information')
        exam_level = data['examLevel']
        normalization_type = data['normalizationType']
        if exam_level not in EXAM_LEVELS:
            return api_error('Invalid exam level')
        if normalization_type not in NORMALIZATION_TYPES:
            return api_error('Invalid normalization type')
        apply_now = parse_bool(data.get('applyImmediately'))
        parameters = data.get('parameters') or {}

        session_db = get_session()
        try:
            markings = _countable_markings(session_db, data['examId'], data['subjectCode'])
            if not markings:
                return api_error('No completed markings found for this exam and subject', 404)

            existing = session_db.query(ScoreNormalization).filter_by(
                exam_id=data['examId'], subject_code=data['subjectCode']).first()
            if existing and existing.approval_status == 'applied':
                return api_error('Score normalization already applied for this exam and subject', 409)

            chosen = _marking_per_candidate(markings)
            original = [m.final_marks or 0 for m in chosen]
            normalized = normalize_scores(original, normalization_type, parameters)

            adjustments = []
            for marking, before, after in zip(chosen, original, normalized):
                original_grade = grade_for_percentage(before, exam_level)
                new_grade = grade_for_percentage(after, exam_level)
                adjustments.append({
                    'candidateId': marking.result_candidate_id,
                    'candidateNumber': marking.candidate_number,
                    'markingId': marking.id,
                    'originalScore': before,
                    'normalizedScore': after,
                    'adjustment': after - before,
                    'originalGrade': original_grade,
                    'normalizedGrade': new_grade,
                    'gradeChanged': original_grade != new_grade,
                })

            original_stats = normalization_statistics(original)
            normalized_stats = normalization_statistics(normalized)
            changed = [a for a in adjustments if a['gradeChanged']]
            now = datetime.utcnow()
            workflow = {'status': 'applied' if apply_now else 'draft',
                        'submittedBy': current_user.id, 'submittedAt': now.isoformat()}
            if apply_now:
                workflow.update({'appliedBy': current_user.id, 'appliedAt': now.isoformat()})

            normalization = existing or ScoreNormalization(
                id=f"NORM-{data['examId']}-{data['subjectCode']}-{_stamp()}",
                exam_id=data['examId'],
                subject_code=data['subjectCode'],
                created_by=current_user.id,
            )
            normalization.subject_name = data.get('subjectName') or data['subjectCode']
            normalization.exam_level = exam_level
            normalization.normalization_type = normalization_type
            normalization.parameters = parameters
            normalization.original_statistics = original_stats
            normalization.normalized_statistics = normalized_stats
            normalization.candidate_adjustments = adjustments
            normalization.quality_metrics = dict(DEFAULT_NORMALIZATION_QUALITY,
                                                 correlationCoefficient=correlation(original, normalized))
            normalization.justification = data['justification']
            normalization.approval_workflow = workflow
            normalization.impact_analysis = {
                'candidatesAffected': sum(1 for a in adjustments if a['adjustment'] != 0),
                'gradeChanges': {
                    'improved': sum(1 for a in changed if a['normalizedScore'] > a['originalScore']),
                    'declined': sum(1 for a in changed if a['normalizedScore'] < a['originalScore']),
                    'unchanged': len(adjustments) - len(changed),
                },
                'distributionShift': {
                    'meanChange': round2(normalized_stats['mean'] - original_stats['mean']),
                    'stdDevChange': round2(normalized_stats['standardDeviation'] - original_stats['standardDeviation']),
                },
            }
            if not existing:
                session_db.add(normalization)
            if apply_now:
                _apply_normalization(session_db, normalization, now)

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'SCORES_NORMALIZED' if apply_now else 'NORMALIZATION_CREATED', 'grading',
                         f"{normalization_type} normalization for {data['examId']} {data['subjectCode']}",
                         resource={'type': 'score_normalization', 'id': normalization.id},
                         severity='high' if apply_now else 'medium')
            session_db.commit()
            logger.info(f"✅ Normalization {normalization.id} {'applied' if apply_now else 'created'}")
            message = 'Score normalization applied successfully' if apply_now else 'Score normalization created successfully'
            return api_success(normalization.to_dict(), message)
        except Exception as e:
            session_db.rollback()
            return server_error('Normalize scores error', e)
        finally:
            session_db.close()

    @bp.route('/grading/normalize-scores', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to normalize scores')
    def grading_list_normalizations():
        status = request.args.get('status')
        page = parse_int(request.args.get('page'), 1)
        limit = parse_int(request.args.get('limit'), 10)

        session_db = get_session()
        try:
            query = session_db.query(ScoreNormalization)
            for arg, column in (('examId', ScoreNormalization.exam_id),
                                ('subjectCode', ScoreNormalization.subject_code),
                                ('normalizationType', ScoreNormalization.normalization_type)):
                if request.args.get(arg):
                    query = query.filter(column == request.args[arg])
            records = query.order_by(ScoreNormalization.updated_at.desc()).all()
            if status:
                records = [r for r in records if r.approval_status == status]

            page_items, pagination = paginate(records, page, limit, 'totalNormalizations')
            return api_success({
                'normalizations': [r.to_dict() for r in page_items],
                'pagination': pagination,
                'summary': {
                    'totalNormalizations': len(records),
                    'byType': count_by(records, lambda r: r.normalization_type),
                    'byStatus': count_by(records, lambda r: r.approval_status),
                    'candidatesAffected': sum((r.impact_analysis or {}).get('candidatesAffected', 0) for r in records),
                },
            }, 'Score normalizations retrieved successfully')
        except Exception as e:
            return server_error('Get score normalizations error', e)
        finally:
            session_db.close()

    @bp.route('/grading/normalize-scores', methods=['PUT'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to normalize scores')
    def grading_update_normalization():
        data = get_json_body()
        if missing_fields(data, 'normalizationId', 'status'):
            return api_error('Normalization ID and status are required')
        new_status = data['status']
        if new_status in ('approved', 'applied') and not current_user.is_admin:
            return api_error('Only administrators can approve or apply score normalizations', 403)

        session_db = get_session()
        try:
            normalization = session_db.get(ScoreNormalization, data['normalizationId'])
            if not normalization:
                return api_error('Score normalization not found', 404)
            previous = normalization.approval_status
            check_transition(NORMALIZATION_TRANSITIONS, previous, new_status, 'normalization')

            now = datetime.utcnow()
            normalization.approval_workflow = _advance_workflow(
                normalization.approval_workflow, NORMALIZATION_STAMPS, new_status, current_user.id, now,
                data.get('reviewComments'))
            applied = 0
            if new_status == 'applied' and previous != 'applied':
                applied = _apply_normalization(session_db, normalization, now)

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'NORMALIZATION_STATUS', 'grading',
                         f"Normalization {normalization.id} moved from {previous} to {new_status}",
                         resource={'type': 'score_normalization', 'id': normalization.id},
                         severity='high' if applied else 'medium',
                         changes={'status': {'from': previous, 'to': new_status}})
            session_db.commit()
            if applied:
                logger.info(f"✅ Normalization {normalization.id} applied to {applied} markings")
            return api_success(normalization.to_dict(), 'Score normalization updated successfully',
                               markingsUpdated=applied)
        except ValidationError as e:
            session_db.rollback()
            return api_error(e.message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update score normalization error', e)
        finally:
            session_db.close()

    # ==================== QUALITY ASSURANCE ====================
    @bp.route('/grading/quality-assurance', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view quality assurance data')
    def grading_quality_assurance():
        exam_id = request.args.get('examId')
        subject_code = request.args.get('subjectCode')
        dashboard_type = request.args.get('type') or 'overview'

        session_db = get_session()
        try:
            markings_q = session_db.query(MarkingScore)
            verifications_q = session_db.query(DoubleMarkingVerification)
            calculations_q = session_db.query(GradeCalculation)
            allocations_q = session_db.query(ScriptAllocation)
            if exam_id:
                markings_q = markings_q.filter(MarkingScore.exam_id == exam_id)
                verifications_q = verifications_q.filter(DoubleMarkingVerification.exam_id == exam_id)
                calculations_q = calculations_q.filter(GradeCalculation.exam_id == exam_id)
                allocations_q = allocations_q.filter(ScriptAllocation.exam_id == exam_id)
            if subject_code:
                markings_q = markings_q.filter(MarkingScore.subject_code == subject_code)
                verifications_q = verifications_q.filter(DoubleMarkingVerification.subject_code == subject_code)
                calculations_q = calculations_q.filter(GradeCalculation.subject_code == subject_code)
                allocations_q = allocations_q.filter(ScriptAllocation.subject_code == subject_code)
            markings = markings_q.all()
            verifications = verifications_q.all()
            calculations = calculations_q.all()
            allocations = allocations_q.all()

            now = datetime.utcnow()
            marking_quality = _marking_quality(markings, verifications)
            double_marking = _double_marking_metrics(verifications)
            examiners = _examiner_metrics(markings, verifications)
            distribution = _grade_distribution_analysis(calculations)
            issues = _quality_issues(verifications, allocations, calculations, now)

            overall = round_half_up(
                marking_quality['consistencyScore'] * 0.3
                + (100 - double_marking['discrepancyRate']) * 0.3
                + examiners['averageConsistency'] * 0.2
                + distribution['qualityIndicators']['reliability'] * 100 * 0.2
            )
            dashboard = {
                'overview': {
                    'overallQualityScore': overall,
                    'totalScripts': marking_quality['totalScripts'],
                    'completionRate': marking_quality['completionRate'],
                    'qualityIssuesCount': len(issues),
                    'lastUpdated': now.isoformat(),
                },
                'markingQuality': marking_quality,
                'doubleMarkingMetrics': double_marking,
                'examinerPerformance': examiners,
                'gradeDistributionAnalysis': distribution,
                'qualityIssues': issues,
                'recommendations': _recommendations(issues, marking_quality, double_marking),
            }
            if dashboard_type != 'overview' and dashboard_type in dashboard:
                dashboard = {'overview': dashboard['overview'], dashboard_type: dashboard[dashboard_type]}
            return api_success(dashboard, 'Quality assurance data retrieved successfully')
        except Exception as e:
            return server_error('Get quality assurance error', e)
        finally:
            session_db.close()
