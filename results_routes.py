"""
Results Routes
Result generation, publication, student and school views, statistics,
public verification, certificates and result notifications
"""
from flask import request, current_app
from flask_login import current_user
from itsdangerous import URLSafeTimedSerializer
from datetime import datetime
import time
import logging

from db_single import get_session
from models import User, generate_id, random_code
from grading_models import GradeCalculation
from marking_models import MarkingScore
from results_models import ExamResult, PublicationBatch, Certificate, VerificationLog, ResultNotification
from status_workflow import MARKING_STATUS_ORDER
from validators import missing_fields, parse_bool, parse_int
from api_helpers import (api_success, api_error, server_error, get_json_body, query_arg, client_ip, paginate,
                         count_by, round_half_up)
from admin_helpers import record_audit
from auth_helpers import caller_type
from notification_email import send_email, send_results_published_email
from results_helpers import (
    O_LEVEL, subject_entry, overall_performance, verification_code, best_classification,
    publication_checks, publication_statistics, certificate_prefix, certificate_number, certificate_security,
    security_checks, fraud_indicators, verification_confidence, verification_status, verification_message,
    recent_window, VERIFICATION_INSTRUCTIONS, MAX_DUPLICATE_CERTIFICATES, DUPLICATE_CERTIFICATE_FEE,
    VALID_CERTIFICATE_STATUSES, CERTIFICATE_TYPES, results_overview, subject_grade_distribution,
    subject_performance, regional_performance, session_trends, school_rankings, performance_distribution,
    school_statistics, school_insights, session_summary, student_trends, student_subject_analysis,
    strengths_and_weaknesses, student_recommendations, certificate_statistics, certificate_template,
    NOTIFICATION_TYPES, NOTIFICATION_PRIORITIES, CONTACT_METHODS, notification_content, student_recipient,
    unique_recipients, notification_summary,
)

logger = logging.getLogger(__name__)

PUBLICATION_TYPES = ('full', 'partial', 'provisional', 'final')
ACCESS_LEVELS = ('private', 'school', 'public')
CERTIFICATE_ACTIONS = ('download', 'print', 'request_duplicate', 'verify')
STAFF_TYPES = ('admin', 'examiner')


def _stamp():
    return int(time.time() * 1000)


def _is_staff():
    return caller_type() in STAFF_TYPES


def _student_access_error(student_id):
    """403 response when the caller may not see this student's records"""
    if caller_type() == 'student' and current_user.id != student_id:
        return api_error('Access denied', 403)
    return None


def _teacher_school():
    """School a teacher is limited to (None for everyone else)"""
    if caller_type() == 'teacher':
        return current_user.school_id
    return None


def _completed_marking_per_paper(markings):
    """The most advanced marking of every (candidate, subject, paper)"""
    chosen = {}
    for marking in markings:
        key = (marking.result_candidate_id, marking.subject_code, marking.paper_number or 1)
        rank = (MARKING_STATUS_ORDER.index(marking.status), marking.created_at or datetime.min)
        if key not in chosen or rank > chosen[key][0]:
            chosen[key] = (rank, marking)
    return [marking for _, marking in chosen.values()]


def _exam_year(data, now):
    if data.get('examYear'):
        return str(data['examYear'])
    session = str(data.get('examSession') or '')
    return session[:4] if session[:4].isdigit() else str(now.year)


def _download_url(certificate):
    serializer = URLSafeTimedSerializer(current_app.config['SECRET_KEY'], salt='certificate-download')
    token = serializer.dumps({'certificateId': certificate.id, 'studentId': certificate.student_id})
    base_url = current_app.config.get('FRONTEND_BASE_URL', '').rstrip('/')
    return f"{base_url}/certificates/download?token={token}"


def _next_sequences(session_db, prefix):
    numbers = session_db.query(Certificate.certificate_number).filter(
        Certificate.certificate_number.like(f"{prefix}%")).all()
    highest = 0
    for (number,) in numbers:
        tail = number[len(prefix):]
        if tail.isdigit():
            highest = max(highest, int(tail))
    return highest + 1


def _verified_result_data(result):
    overall = result.overall_performance or {}
    return {
        'studentName': result.student_name,
        'studentNumber': result.student_number,
        'examSession': result.exam_session,
        'examLevel': result.exam_level,
        'schoolName': result.school_name,
        'subjects': [{'subjectCode': s.get('subjectCode'), 'subjectName': s.get('subjectName'),
                      'grade': s.get('grade')} for s in result.subjects or []],
        'classification': overall.get('classification'),
        'subjectsPassed': overall.get('subjectsPassed'),
        'publishedAt': (result.publication or {}).get('publishedAt'),
    }


def _verified_certificate_data(certificate):
    return {
        'certificateNumber': certificate.certificate_number,
        'studentName': certificate.student_name,
        'studentNumber': certificate.student_number,
        'examSession': certificate.exam_session,
        'examLevel': certificate.exam_level,
        'schoolName': certificate.school_name,
        'issuedDate': (certificate.issuance_details or {}).get('issuedDate'),
        'status': certificate.status,
        'subjects': [{'subjectCode': s.get('subjectCode'), 'grade': s.get('grade')}
                     for s in certificate.subjects or []],
    }


def _find_verification_matches(session_db, verification_type, criteria):
    if verification_type == 'certificate':
        matches = session_db.query(Certificate).filter_by(
            certificate_number=criteria['certificateNumber']).all()
        if criteria.get('securityCode'):
            matches = [c for c in matches if (c.security or {}).get('securityCode') == criteria['securityCode']]
        return matches

    query = session_db.query(ExamResult)
    if criteria.get('studentNumber'):
        query = query.filter(ExamResult.student_number == criteria['studentNumber'])
    if criteria.get('examSession'):
        query = query.filter(ExamResult.exam_session == str(criteria['examSession']))
    if criteria.get('examLevel'):
        query = query.filter(ExamResult.exam_level == criteria['examLevel'])
    matches = [r for r in query.all() if r.is_published]
    if criteria.get('verificationCode'):
        matches = [r for r in matches if r.verification_code == criteria['verificationCode']]
    if criteria.get('studentName'):
        name = criteria['studentName'].lower()
        matches = [r for r in matches if name in (r.student_name or '').lower()]
    return matches


def _deliver_notification(notification, now):
    """Email recipients are sent the message over SMTP, everyone else reads it in the portal"""
    content = notification.content
    recipients = notification.recipients or []
    emails = [str(r.get('contactDetails')) for r in recipients if r.get('contactMethod') == 'email']
    delivered = len(recipients) - len(emails)
    failure = None
    if emails:
        body = content['message']
        if content.get('actionUrl'):
            body += f"\n\n{content.get('actionText') or 'Open'}: {content['actionUrl']}"
        ok, message = send_email(emails, content['title'], body)
        if ok:
            delivered += len(emails)
        else:
            failure = message
            logger.warning(f"Notification {notification.id} email delivery failed: {message}")

    status = 'sent' if delivered else 'failed'
    notification.delivery = dict(notification.delivery or {}, deliveryStatus=status, deliveryAttempts=1,
                                 sentAt=now.isoformat() if delivered else None, lastAttemptAt=now.isoformat(),
                                 deliveredCount=delivered, failureReason=failure)
    return {
        'notificationId': notification.id,
        'success': bool(delivered),
        'recipientCount': len(recipients),
        'deliveredCount': delivered,
        'deliveryStatus': status,
    }


def register_results_routes(bp, require_roles):
    """Register results routes"""

    # ==================== GENERATION ====================
    @bp.route('/results/generate', methods=['POST'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to generate results')
    def results_generate():
        data = get_json_body()
        if missing_fields(data, 'examId', 'examSession', 'examLevel'):
            return api_error('Missing required generation parameters')

        session_db = get_session()
        try:
            exam_id = data['examId']
            exam_level = data['examLevel']
            now = datetime.utcnow()

            calculations = session_db.query(GradeCalculation).filter(
                GradeCalculation.exam_id == exam_id,
                GradeCalculation.status.in_(('approved', 'published')),
            ).order_by(GradeCalculation.calculated_at).all()
            if not calculations:
                return api_error('No approved grade calculations found for this exam', 404)
            calculation_by_subject = {c.subject_code: c for c in calculations}

            statuses = ['verified', 'moderated']
            if parse_bool(data.get('includeUnverified')):
                statuses.append('submitted')
            markings = session_db.query(MarkingScore).filter(
                MarkingScore.exam_id == exam_id, MarkingScore.status.in_(statuses)).all()

            if not parse_bool(data.get('generateAll')):
                if data.get('studentIds'):
                    markings = [m for m in markings if m.result_candidate_id in data['studentIds']]
                if data.get('schoolIds'):
                    markings = [m for m in markings if m.school_id in data['schoolIds']]
                if data.get('centerCodes'):
                    markings = [m for m in markings if m.centre_code in data['centerCodes']]
            if not markings:
                return api_error('No completed markings found for this exam', 404)

            by_student = {}
            for marking in _completed_marking_per_paper(markings):
                by_student.setdefault(marking.result_candidate_id, []).append(marking)

            generated = []
            errors = []
            for student_id, student_markings in sorted(by_student.items()):
                existing = session_db.query(ExamResult).filter_by(exam_id=exam_id, student_id=student_id).first()
                if existing is not None and existing.is_published:
                    errors.append({'studentId': student_id, 'error': 'Results already published'})
                    continue

                student_markings.sort(key=lambda m: (m.subject_code or '', m.paper_number or 1))
                subjects = [subject_entry(m, exam_level, calculation_by_subject.get(m.subject_code))
                            for m in student_markings]
                first = student_markings[0]
                student = session_db.get(User, student_id)

                result = existing or ExamResult(id=f"RESULT-{exam_id}-{student_id}-{_stamp()}",
                                                exam_id=exam_id, student_id=student_id)
                result.exam_session = str(data['examSession'])
                result.exam_level = exam_level
                result.exam_year = _exam_year(data, now)
                result.student_number = first.candidate_number or (student.candidate_number if student else None)
                result.student_name = first.candidate_name or (student.full_name if student else 'Unknown Student')
                result.school_id = first.school_id or (student.school_id if student else None)
                result.school_name = first.school_name or (student.school if student else None) or 'Unknown School'
                result.centre_code = first.centre_code or (student.center_code if student else None)
                result.centre_name = first.centre_name or 'Unknown Centre'
                result.subjects = subjects
                result.overall_performance = overall_performance(subjects, exam_level)
                result.special_considerations = list(data.get('specialConsiderations') or [])
                result.verification = {'isVerified': False, 'verificationCode': verification_code(now)}
                result.publication = {'isPublished': False, 'accessLevel': 'private'}
                result.certificates = {'isGenerated': False, 'printedCopies': 0}
                modifications = list((existing.audit or {}).get('modifications', [])) if existing else []
                if existing is not None:
                    modifications.append({'action': 'regenerated', 'by': current_user.id, 'at': now.isoformat()})
                result.audit = {'generatedBy': current_user.id, 'generatedAt': now.isoformat(),
                                'modifications': modifications}
                result.status = 'generated'
                if existing is None:
                    session_db.add(result)
                generated.append(result)

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'RESULTS_GENERATED', 'results',
                         f"Results generated for {len(generated)} students in {exam_id}",
                         resource={'type': 'exam', 'id': exam_id}, severity='medium')
            session_db.commit()
            logger.info(f"Generated {len(generated)} results for {exam_id}")

            return api_success({
                'generatedResults': [r.to_dict() for r in generated],
                'totalGenerated': len(generated),
                'errors': errors,
                'summary': {
                    'totalStudents': len(by_student),
                    'successfulGenerations': len(generated),
                    'failedGenerations': len(errors),
                },
            }, f"Results generated successfully for {len(generated)} students")
        except Exception as e:
            session_db.rollback()
            return server_error('Generate results error', e)
        finally:
            session_db.close()

    @bp.route('/results/generate', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view results')
    def results_list_generated():
        session_db = get_session()
        try:
            query = session_db.query(ExamResult)
            if query_arg('examId'):
                query = query.filter(ExamResult.exam_id == query_arg('examId'))
            if query_arg('examSession'):
                query = query.filter(ExamResult.exam_session == query_arg('examSession'))
            if query_arg('examLevel'):
                query = query.filter(ExamResult.exam_level == query_arg('examLevel'))
            if query_arg('schoolId'):
                query = query.filter(ExamResult.school_id == query_arg('schoolId'))
            if query_arg('status'):
                query = query.filter(ExamResult.status == query_arg('status'))
            results = query.order_by(ExamResult.created_at.desc()).all()

            page_items, pagination = paginate(results, parse_int(query_arg('page'), 1),
                                              parse_int(query_arg('limit'), 50), 'totalResults')
            return api_success({
                'results': [r.to_dict() for r in page_items],
                'pagination': pagination,
                'summary': {
                    'totalResults': len(results),
                    'byStatus': count_by(results, lambda r: r.status),
                    'published': sum(1 for r in results if r.is_published),
                },
            }, 'Results retrieved successfully')
        except Exception as e:
            return server_error('Get results error', e)
        finally:
            session_db.close()

    # ==================== PUBLICATION ====================
    @bp.route('/results/publish', methods=['PUT'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to publish results')
    def results_publish():
        data = get_json_body()
        if missing_fields(data, 'examId', 'resultIds') or not isinstance(data['resultIds'], list):
            return api_error('Missing required publication information')
        action = data.get('action', 'publish')
        if action not in ('publish', 'withdraw'):
            return api_error('Invalid action')

        session_db = get_session()
        try:
            result_ids = list(dict.fromkeys(data['resultIds']))
            results = session_db.query(ExamResult).filter(
                ExamResult.id.in_(result_ids), ExamResult.exam_id == data['examId']).all()
            if len(results) != len(result_ids):
                return api_error('Some result IDs are invalid')
            now = datetime.utcnow()
            actor = session_db.get(User, current_user.id)

            if action == 'withdraw':
                for result in results:
                    result.publication = dict(result.publication or {}, isPublished=False, accessLevel='private',
                                              withdrawnAt=now.isoformat(), withdrawnBy=current_user.id,
                                              withdrawalReason=data.get('reason') or 'Administrative withdrawal')
                    audit = dict(result.audit or {})
                    audit['modifications'] = list(audit.get('modifications', [])) + [{
                        'action': 'withdrawn', 'by': current_user.id, 'at': now.isoformat(),
                        'reason': data.get('reason'),
                    }]
                    result.audit = audit
                    result.status = 'verified'
                record_audit(session_db, actor, 'RESULTS_WITHDRAWN', 'results',
                             f"{len(results)} results withdrawn for {data['examId']}",
                             resource={'type': 'exam', 'id': data['examId']}, severity='high')
                session_db.commit()
                logger.info(f"Withdrew {len(results)} results of {data['examId']}")
                return api_success({'withdrawnResults': result_ids, 'count': len(results)},
                                   'Results withdrawn successfully')

            publication_type = data.get('publicationType', 'final')
            if publication_type not in PUBLICATION_TYPES:
                return api_error('Invalid publication type')
            access_level = data.get('accessLevel', 'public')
            if access_level not in ACCESS_LEVELS:
                return api_error('Invalid access level')
            scheduled = parse_bool(data.get('schedulePublication'))
            if scheduled and not data.get('releaseDate'):
                return api_error('Release date is required for scheduled publication')

            checks = publication_checks(results)
            if publication_type == 'final' and any(c['status'] == 'failed' for c in checks):
                return api_error('Cannot publish final results with failed verification checks',
                                 verificationChecks=checks)

            release_date = data.get('releaseDate') or now.isoformat()
            batch_id = f"BATCH-{data['examId']}-{_stamp()}"
            notify = parse_bool(data.get('notifyStudents'), True)
            schools = {r.school_id for r in results}
            for result in results:
                result.publication = {
                    'isPublished': not scheduled,
                    'publishedAt': None if scheduled else now.isoformat(),
                    'publishedBy': current_user.id,
                    'accessLevel': access_level,
                    'publicationType': publication_type,
                    'releaseDate': release_date,
                    'batchId': batch_id,
                }
                result.verification = dict(result.verification or {}, isVerified=True,
                                           verifiedBy=current_user.id, verifiedAt=now.isoformat())
                result.status = 'verified' if scheduled else 'published'

            first = results[0]
            batch = PublicationBatch(
                id=batch_id,
                exam_id=data['examId'],
                exam_session=first.exam_session,
                exam_level=first.exam_level,
                batch_name=data.get('batchName') or f"{first.exam_level} {first.exam_session} results",
                result_ids=result_ids,
                publication_type=publication_type,
                access_level=access_level,
                release_date=release_date,
                statistics=publication_statistics(results),
                notifications={
                    'notifyStudents': notify,
                    'notificationsSent': len(results) + len(schools) if notify and not scheduled else 0,
                },
                verification={'checks': checks, 'verifiedBy': current_user.id, 'verifiedAt': now.isoformat()},
                status='scheduled' if scheduled else 'published',
                published_by=current_user.id,
                published_at=now,
            )
            session_db.add(batch)
            record_audit(session_db, actor, 'RESULTS_PUBLISHED', 'results',
                         f"{len(results)} results {'scheduled' if scheduled else 'published'} for {data['examId']}",
                         resource={'type': 'publication_batch', 'id': batch_id}, severity='high')
            session_db.commit()
            logger.info(f"Publication batch {batch_id} saved with {len(results)} results")

            if notify and not scheduled:
                student_ids = [r.student_id for r in results]
                emails = [u.email for u in session_db.query(User).filter(User.id.in_(student_ids)).all() if u.email]
                if emails:
                    _, email_message = send_results_published_email(emails, first.exam_session, first.exam_level)
                    logger.info(f"Results notification for {batch_id}: {email_message}")

            message = (f"Results scheduled for publication on {release_date}" if scheduled
                       else f"{len(results)} results published successfully")
            return api_success(batch.to_dict(), message, verificationChecks=checks)
        except Exception as e:
            session_db.rollback()
            return server_error('Publish results error', e)
        finally:
            session_db.close()

    @bp.route('/results/publish', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view publications')
    def results_list_publications():
        session_db = get_session()
        try:
            query = session_db.query(PublicationBatch)
            if query_arg('examId'):
                query = query.filter(PublicationBatch.exam_id == query_arg('examId'))
            if query_arg('status'):
                query = query.filter(PublicationBatch.status == query_arg('status'))
            batches = query.order_by(PublicationBatch.published_at.desc()).all()
            return api_success({
                'batches': [b.to_dict() for b in batches],
                'summary': {
                    'totalBatches': len(batches),
                    'byStatus': count_by(batches, lambda b: b.status),
                    'byType': count_by(batches, lambda b: b.publication_type),
                    'totalResultsPublished': sum(len(b.result_ids or []) for b in batches
                                                 if b.status == 'published'),
                },
            }, 'Publication batches retrieved successfully')
        except Exception as e:
            return server_error('Get publications error', e)
        finally:
            session_db.close()

    # ==================== STUDENT RESULTS ====================
    @bp.route('/results/student/<student_id>', methods=['GET'])
    @require_roles()
    def results_student(student_id):
        denied = _student_access_error(student_id)
        if denied:
            return denied

        session_db = get_session()
        try:
            query = session_db.query(ExamResult).filter(ExamResult.student_id == student_id)
            if query_arg('examSession'):
                query = query.filter(ExamResult.exam_session == query_arg('examSession'))
            if query_arg('examLevel'):
                query = query.filter(ExamResult.exam_level == query_arg('examLevel'))
            results = query.order_by(ExamResult.created_at).all()

            if not (_is_staff() and parse_bool(query_arg('includeUnpublished'))):
                results = [r for r in results if r.is_published]
            school_id = _teacher_school()
            if school_id:
                results = [r for r in results if r.school_id == school_id]

            if not results:
                return api_success({
                    'studentId': student_id,
                    'results': [],
                    'summary': {'totalExams': 0, 'totalSubjects': 0, 'averagePerformance': 0,
                                'bestClassification': 'None', 'latestExam': None},
                }, 'No results found for this student')

            latest = results[-1]
            summary = {
                'totalExams': len(results),
                'totalSubjects': sum(len(r.subjects or []) for r in results),
                'averagePerformance': round_half_up(sum(r.average_percentage for r in results) / len(results)),
                'bestClassification': best_classification(
                    [(r.overall_performance or {}).get('classification') for r in results]),
                'latestExam': {'examId': latest.exam_id, 'examSession': latest.exam_session,
                               'examLevel': latest.exam_level},
            }
            certificates = session_db.query(Certificate).filter(
                Certificate.student_id == student_id, Certificate.status != 'revoked').all()

            payload = {
                'studentId': student_id,
                'results': [r.to_dict() for r in reversed(results)],
                'summary': summary,
                'certificates': [{'id': c.id, 'certificateNumber': c.certificate_number,
                                  'examSession': c.exam_session, 'examLevel': c.exam_level,
                                  'status': c.status} for c in certificates],
            }
            if parse_bool(query_arg('includeAnalysis')):
                payload['analysis'] = {
                    'performanceTrends': student_trends(results),
                    'subjectAnalysis': student_subject_analysis(results),
                    'strengthsAndWeaknesses': strengths_and_weaknesses(results),
                    'recommendations': student_recommendations(latest),
                }
            return api_success(payload, 'Student results retrieved successfully')
        except Exception as e:
            return server_error('Get student results error', e)
        finally:
            session_db.close()

    # ==================== SCHOOL RESULTS ====================
    @bp.route('/results/school/<school_id>', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher', message='Insufficient permissions to view school results')
    def results_school(school_id):
        own_school = _teacher_school()
        if own_school and own_school != school_id:
            return api_error('Access denied', 403)

        session_db = get_session()
        try:
            query = session_db.query(ExamResult)
            if query_arg('examSession'):
                query = query.filter(ExamResult.exam_session == query_arg('examSession'))
            if query_arg('examLevel'):
                query = query.filter(ExamResult.exam_level == query_arg('examLevel'))
            published = [r for r in query.all() if r.is_published]
            results = [r for r in published if r.school_id == school_id]

            if not results:
                return api_success({
                    'schoolId': school_id,
                    'statistics': school_statistics([]),
                    'topPerformers': [],
                    'sessionSummary': [],
                }, 'No results found for this school')

            statistics = school_statistics(results)
            top = sorted(results, key=lambda r: r.average_percentage, reverse=True)[:10]
            payload = {
                'schoolId': school_id,
                'schoolInfo': {'schoolId': school_id, 'schoolName': results[0].school_name,
                               'totalStudents': len({r.student_id for r in results})},
                'statistics': statistics,
                'topPerformers': [{
                    'studentId': r.student_id,
                    'studentName': r.student_name,
                    'studentNumber': r.student_number,
                    'averagePercentage': r.average_percentage,
                    'classification': (r.overall_performance or {}).get('classification'),
                    'subjectsPassed': (r.overall_performance or {}).get('subjectsPassed', 0),
                } for r in top],
                'sessionSummary': session_summary(results),
            }
            if parse_bool(query_arg('includeStudentDetails')):
                payload['students'] = [r.to_dict() for r in results]
            if parse_bool(query_arg('includeComparison')):
                rankings = school_rankings(published)
                position = next(i for i, row in enumerate(rankings, 1) if row['schoolId'] == school_id)
                national = results_overview(published)
                payload['comparison'] = {
                    'ranking': position,
                    'totalSchools': len(rankings),
                    'percentile': round_half_up((len(rankings) - position) / len(rankings) * 100),
                    'nationalAverage': national['averagePerformance'],
                    'nationalPassRate': national['passRate'],
                    'performanceVsNational': statistics['averagePercentage'] - national['averagePerformance'],
                }
            if parse_bool(query_arg('includeInsights')):
                payload['insights'] = school_insights(statistics)
            return api_success(payload, 'School results retrieved successfully')
        except Exception as e:
            return server_error('Get school results error', e)
        finally:
            session_db.close()

    # ==================== STATISTICS ====================
    @bp.route('/results/statistics', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view statistics')
    def results_statistics():
        session_db = get_session()
        try:
            query = session_db.query(ExamResult)
            cert_query = session_db.query(Certificate)
            if query_arg('examId'):
                query = query.filter(ExamResult.exam_id == query_arg('examId'))
                cert_query = cert_query.filter(Certificate.exam_id == query_arg('examId'))
            if query_arg('examSession'):
                query = query.filter(ExamResult.exam_session == query_arg('examSession'))
                cert_query = cert_query.filter(Certificate.exam_session == query_arg('examSession'))
            if query_arg('examLevel'):
                query = query.filter(ExamResult.exam_level == query_arg('examLevel'))
                cert_query = cert_query.filter(Certificate.exam_level == query_arg('examLevel'))
            results = [r for r in query.all() if r.is_published]
            certificates = cert_query.all()

            logs = session_db.query(VerificationLog).all()
            day_ago = recent_window(seconds=86400)
            verified = sum(1 for v in logs if v.verification_status == 'verified')
            payload = {
                'overview': results_overview(results),
                'gradeDistribution': subject_grade_distribution(results),
                'subjectPerformance': subject_performance(results)[:10],
                'regionalPerformance': regional_performance(results),
                'trends': session_trends(results),
                'certificateStatistics': certificate_statistics(certificates),
                'verificationStatistics': {
                    'totalVerifications': len(logs),
                    'byStatus': count_by(logs, lambda v: v.verification_status),
                    'byType': count_by(logs, lambda v: v.verification_type),
                    'successRate': round_half_up(verified / len(logs) * 100) if logs else 0,
                    'last24Hours': sum(1 for v in logs if v.created_at and v.created_at >= day_ago),
                },
            }
            if parse_bool(query_arg('includeDetails')):
                payload['topPerformingSchools'] = school_rankings(results)[:10]
                payload['performanceDistribution'] = performance_distribution(results)
                payload['comparativeAnalysis'] = {
                    'oLevel': results_overview([r for r in results if r.exam_level == O_LEVEL]),
                    'aLevel': results_overview([r for r in results if r.exam_level != O_LEVEL]),
                }
            return api_success(payload, 'Statistics retrieved successfully')
        except Exception as e:
            return server_error('Get statistics error', e)
        finally:
            session_db.close()

    # ==================== PUBLIC VERIFICATION ====================
    @bp.route('/results/verify', methods=['POST'])
    def results_verify():
        data = get_json_body()
        verification_type = data.get('verificationType', 'result')
        if verification_type not in ('result', 'certificate'):
            return api_error('Invalid verification type')
        criteria = {k: data[k] for k in ('certificateNumber', 'securityCode', 'studentNumber', 'verificationCode',
                                         'examSession', 'examLevel', 'studentName') if data.get(k)}
        if verification_type == 'certificate' and not criteria.get('certificateNumber'):
            return api_error('Certificate number is required for certificate verification')
        if verification_type == 'result' and not (criteria.get('studentNumber') or criteria.get('verificationCode')):
            return api_error('Student number or verification code is required')

        session_db = get_session()
        try:
            now = datetime.utcnow()
            ip_address = client_ip()
            user_agent = request.headers.get('User-Agent', '')

            matches = _find_verification_matches(session_db, verification_type, criteria)
            record = matches[0] if len(matches) == 1 else None
            checks = security_checks(record, verification_type, now)
            recent_attempts = session_db.query(VerificationLog).filter(
                VerificationLog.ip_address == ip_address,
                VerificationLog.created_at >= recent_window(now),
            ).count()
            indicators = fraud_indicators(criteria, user_agent.lower(), recent_attempts)
            confidence = verification_confidence(len(matches), checks, indicators)
            status = verification_status(len(matches), confidence)

            verified_data = None
            if record is not None:
                verified_data = (_verified_certificate_data(record) if verification_type == 'certificate'
                                 else _verified_result_data(record))

            log = VerificationLog(
                id=generate_id('VERIFY'),
                verification_type=verification_type,
                verification_method=data.get('verificationMethod') or
                ('code' if criteria.get('verificationCode') or criteria.get('certificateNumber') else 'details'),
                search_criteria=criteria,
                is_valid=status == 'verified',
                confidence=confidence,
                matched_records=len(matches),
                verification_status=status,
                security_checks=checks,
                fraud_indicators=indicators,
                ip_address=ip_address,
                user_agent=user_agent[:255],
                created_at=now,
            )
            session_db.add(log)
            session_db.commit()
            logger.info(f"Verification {log.id}: {status} ({len(matches)} matches)")

            payload = {
                'verificationId': log.id,
                'isValid': log.is_valid,
                'status': status,
                'confidence': confidence,
                'matchedRecords': len(matches),
                'verifiedData': verified_data,
                'securityChecks': checks,
                'fraudIndicators': indicators,
                'verificationTime': now.isoformat(),
                'instructions': VERIFICATION_INSTRUCTIONS.get(status, []),
            }
            if len(matches) > 1:
                payload['multipleMatches'] = {
                    'count': len(matches),
                    'hint': 'Provide examSession, examLevel or studentName to narrow the search',
                }
            return api_success(payload, verification_message(status, len(matches)))
        except Exception as e:
            session_db.rollback()
            return server_error('Verify results error', e)
        finally:
            session_db.close()

    # ==================== CERTIFICATES ====================
    @bp.route('/results/certificates', methods=['POST'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to generate certificates')
    def results_generate_certificates():
        data = get_json_body()
        if not data.get('resultIds') or not isinstance(data['resultIds'], list):
            return api_error('Missing result IDs for certificate generation')
        certificate_type = data.get('certificateType', 'original')
        if certificate_type not in CERTIFICATE_TYPES:
            return api_error('Invalid certificate type')

        session_db = get_session()
        try:
            results = [r for r in session_db.query(ExamResult).filter(ExamResult.id.in_(data['resultIds'])).all()
                       if r.is_published]
            if not results:
                return api_error('No published results found for certificate generation', 404)

            now = datetime.utcnow()
            batch_number = data.get('batchNumber') or f"BATCH-CERT-{_stamp()}"
            sequences = {}
            generated = []
            errors = []
            for result in results:
                if certificate_type == 'original':
                    existing = session_db.query(Certificate).filter(
                        Certificate.result_id == result.id,
                        Certificate.certificate_type == 'original',
                        Certificate.status != 'revoked',
                    ).first()
                    if existing:
                        errors.append({'resultId': result.id, 'studentId': result.student_id,
                                       'error': 'Original certificate already exists'})
                        continue

                prefix = certificate_prefix(result.exam_level, result.exam_year or now.year)
                if prefix not in sequences:
                    sequences[prefix] = _next_sequences(session_db, prefix)
                number = certificate_number(result.exam_level, result.exam_year or now.year, sequences[prefix])
                sequences[prefix] += 1

                certificate_id = f"CERT-{result.exam_id}-{result.student_id}-{_stamp()}"
                certificate = Certificate(
                    id=certificate_id,
                    certificate_number=number,
                    result_id=result.id,
                    student_id=result.student_id,
                    student_name=result.student_name,
                    student_number=result.student_number,
                    exam_id=result.exam_id,
                    exam_session=result.exam_session,
                    exam_level=result.exam_level,
                    exam_year=result.exam_year,
                    school_name=result.school_name,
                    centre_name=result.centre_name,
                    subjects=list(result.subjects or []),
                    overall_performance=dict(result.overall_performance or {}),
                    certificate_type=certificate_type,
                    issuance_details={
                        'issuedDate': now.isoformat(),
                        'issuedBy': current_user.id,
                        'authorizedBy': data.get('authorizedBy') or 'Registrar, GCE Board',
                        'serialNumber': f"SN-{_stamp()}-{random_code(4)}",
                        'batchNumber': batch_number,
                    },
                    security=certificate_security(certificate_id, now),
                    delivery={'method': data.get('deliveryMethod') or 'digital', 'status': 'generated'},
                    downloads=[],
                    prints=[],
                    status='generated',
                )
                session_db.add(certificate)
                result.certificates = dict(result.certificates or {}, isGenerated=True,
                                           certificateId=certificate_id, certificateNumber=number,
                                           generatedAt=now.isoformat())
                generated.append((result, certificate))

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'CERTIFICATES_GENERATED', 'certificates',
                         f"{len(generated)} {certificate_type} certificates generated",
                         resource={'type': 'certificate_batch', 'id': batch_number}, severity='medium')
            session_db.commit()
            logger.info(f"Generated {len(generated)} certificates in {batch_number}")

            return api_success({
                'certificates': [dict(c.to_dict(), template=certificate_template(r, c)) for r, c in generated],
                'errors': errors,
                'statistics': certificate_statistics([c for _, c in generated]),
                'batchInfo': {
                    'batchNumber': batch_number,
                    'generatedAt': now.isoformat(),
                    'generatedBy': current_user.id,
                    'totalRequested': len(data['resultIds']),
                    'totalGenerated': len(generated),
                },
            }, f"{len(generated)} certificates generated successfully", 201 if generated else 200)
        except Exception as e:
            session_db.rollback()
            return server_error('Generate certificates error', e)
        finally:
            session_db.close()

    @bp.route('/results/certificates', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view certificates')
    def results_list_certificates():
        session_db = get_session()
        try:
            query = session_db.query(Certificate)
            for arg, column in (('examId', Certificate.exam_id), ('examSession', Certificate.exam_session),
                                ('examLevel', Certificate.exam_level), ('status', Certificate.status),
                                ('certificateType', Certificate.certificate_type),
                                ('studentId', Certificate.student_id)):
                if query_arg(arg):
                    query = query.filter(column == query_arg(arg))
            certificates = query.order_by(Certificate.created_at.desc()).all()

            page_items, pagination = paginate(certificates, parse_int(query_arg('page'), 1),
                                              parse_int(query_arg('limit'), 50), 'totalCertificates')
            return api_success({
                'certificates': [c.to_dict() for c in page_items],
                'pagination': pagination,
                'summary': certificate_statistics(certificates),
            }, 'Certificates retrieved successfully')
        except Exception as e:
            return server_error('Get certificates error', e)
        finally:
            session_db.close()

    @bp.route('/results/certificates/<student_id>', methods=['GET'])
    @require_roles()
    def results_student_certificates(student_id):
        denied = _student_access_error(student_id)
        if denied:
            return denied

        session_db = get_session()
        try:
            query = session_db.query(Certificate).filter(Certificate.student_id == student_id)
            if not parse_bool(query_arg('includeRevoked')):
                query = query.filter(Certificate.status != 'revoked')
            certificates = query.order_by(Certificate.created_at.desc()).all()
            school_id = _teacher_school()
            if school_id:
                allowed = {r.id for r in session_db.query(ExamResult).filter_by(student_id=student_id,
                                                                                 school_id=school_id)}
                certificates = [c for c in certificates if c.result_id in allowed]

            if not certificates:
                return api_success({'studentId': student_id, 'certificates': [], 'summary': {'total': 0}},
                                   'No certificates found for this student')

            entries = []
            for certificate in certificates:
                can_download = certificate.status in VALID_CERTIFICATE_STATUSES
                entries.append(dict(
                    certificate.to_dict(),
                    downloadUrl=_download_url(certificate) if can_download else None,
                    canDownload=can_download,
                    downloadCount=len(certificate.downloads or []),
                    printCount=certificate.print_count,
                ))
            payload = {
                'studentId': student_id,
                'certificates': entries,
                'summary': {
                    'total': len(certificates),
                    'byType': count_by(certificates, lambda c: c.certificate_type),
                    'byStatus': count_by(certificates, lambda c: c.status),
                    'latestCertificate': certificates[0].certificate_number,
                },
            }
            if caller_type() == 'student':
                payload['verificationInstructions'] = [
                    'Certificates can be verified at /api/results/verify with the certificate number',
                    'Share the security code only with institutions verifying your certificate',
                ]
            return api_success(payload, 'Certificates retrieved successfully')
        except Exception as e:
            return server_error('Get student certificates error', e)
        finally:
            session_db.close()

    @bp.route('/results/certificates/<student_id>', methods=['PUT'])
    @require_roles()
    def results_certificate_action(student_id):
        denied = _student_access_error(student_id)
        if denied:
            return denied
        data = get_json_body()
        if missing_fields(data, 'action', 'certificateId'):
            return api_error('Missing required action or certificate ID')
        action = data['action']
        if action not in CERTIFICATE_ACTIONS:
            return api_error('Invalid action')

        session_db = get_session()
        try:
            certificate = session_db.query(Certificate).filter_by(id=data['certificateId'],
                                                                  student_id=student_id).first()
            if not certificate:
                return api_error('Certificate not found', 404)
            if certificate.status == 'revoked':
                return api_error('Certificate has been revoked')

            now = datetime.utcnow()
            actor = session_db.get(User, current_user.id)

            if action == 'download':
                certificate.downloads = list(certificate.downloads or []) + [{
                    'id': f"DL-{_stamp()}",
                    'downloadedBy': current_user.id,
                    'downloadedAt': now.isoformat(),
                    'ipAddress': client_ip(),
                }]
                payload = {'downloadUrl': _download_url(certificate), 'expiresIn': '1 hour',
                           'downloadCount': len(certificate.downloads)}
            elif action == 'print':
                copies = parse_int(data.get('copies'), 1)
                if copies < 1:
                    return api_error('Invalid number of copies')
                print_id = f"PRINT-{_stamp()}"
                certificate.prints = list(certificate.prints or []) + [{
                    'id': print_id,
                    'copies': copies,
                    'printedBy': current_user.id,
                    'printedAt': now.isoformat(),
                    'reason': data.get('reason'),
                }]
                result = session_db.get(ExamResult, certificate.result_id) if certificate.result_id else None
                if result is not None:
                    result.certificates = dict(result.certificates or {}, printedCopies=certificate.print_count)
                payload = {'printId': print_id, 'copies': copies, 'printCount': certificate.print_count}
            elif action == 'request_duplicate':
                delivery = dict(certificate.delivery or {})
                requests = list(delivery.get('duplicateRequests', []))
                if len(requests) >= MAX_DUPLICATE_CERTIFICATES:
                    return api_error('Maximum number of duplicates already issued')
                request_entry = {
                    'requestId': f"DUP-REQ-{_stamp()}",
                    'requestedBy': current_user.id,
                    'requestedAt': now.isoformat(),
                    'reason': data.get('reason') or 'Lost or damaged certificate',
                    'fee': DUPLICATE_CERTIFICATE_FEE,
                    'status': 'pending',
                }
                delivery['duplicateRequests'] = requests + [request_entry]
                certificate.delivery = delivery
                payload = dict(request_entry, estimatedProcessing='5-7 business days',
                               remainingDuplicates=MAX_DUPLICATE_CERTIFICATES - len(requests) - 1)
            else:
                checks = security_checks(certificate, 'certificate', now)
                payload = {
                    'certificateNumber': certificate.certificate_number,
                    'status': certificate.status,
                    'isValid': all(c['status'] != 'failed' for c in checks),
                    'securityChecks': checks,
                }

            if action != 'verify':
                record_audit(session_db, actor, f"CERTIFICATE_{action.upper()}", 'certificates',
                             f"Certificate {certificate.certificate_number} {action}",
                             resource={'type': 'certificate', 'id': certificate.id})
            session_db.commit()
            return api_success(payload, f"Certificate {action} completed successfully")
        except Exception as e:
            session_db.rollback()
            return server_error('Certificate action error', e)
        finally:
            session_db.close()

    # ==================== NOTIFICATIONS ====================
    @bp.route('/results/notifications', methods=['POST'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to send notifications')
    def results_send_notification():
        data = get_json_body()
        context = data.get('metadata') if isinstance(data.get('metadata'), dict) else {}
        result_ids = context.get('resultIds') if isinstance(context.get('resultIds'), list) else []
        certificate_ids = context.get('certificateIds') if isinstance(context.get('certificateIds'), list) else []
        recipients = data.get('recipients') if isinstance(data.get('recipients'), list) else []
        if not data.get('type') or not (recipients or result_ids or certificate_ids):
            return api_error('Missing required notification information')
        if data['type'] not in NOTIFICATION_TYPES:
            return api_error('Invalid notification type')
        priority = data.get('priority', 'normal')
        if priority not in NOTIFICATION_PRIORITIES:
            return api_error('Invalid priority')

        session_db = get_session()
        try:
            now = datetime.utcnow()
            entries = [r for r in recipients if isinstance(r, dict) and isinstance(r.get('identifier'), str)
                       and r.get('contactMethod', 'portal') in CONTACT_METHODS]
            for entry in entries:
                entry['type'] = str(entry.get('type') or 'public')
                entry.setdefault('contactMethod', 'portal')
                entry.setdefault('contactDetails', entry['identifier'])
            for result_id in result_ids:
                result = session_db.get(ExamResult, result_id) if isinstance(result_id, str) else None
                if result is not None:
                    entries.append(student_recipient(result.student_id, result.student_name,
                                                     session_db.get(User, result.student_id)))
            for certificate_id in certificate_ids:
                certificate = session_db.get(Certificate, certificate_id) if isinstance(certificate_id, str) else None
                if certificate is not None:
                    entries.append(student_recipient(certificate.student_id, certificate.student_name,
                                                     session_db.get(User, certificate.student_id)))
            entries = unique_recipients(entries)
            if not entries:
                return api_error('No valid recipients found')

            template_id = data.get('templateId')
            content = data.get('content') if isinstance(data.get('content'), dict) else None
            if template_id or content is None:
                variables = data.get('templateVariables') if isinstance(data.get('templateVariables'), dict) else {}
                content = notification_content(template_id or data['type'], variables)
                if content is None:
                    return api_error('Invalid template ID')
            if not content.get('title') or not content.get('message'):
                return api_error('Notification title and message are required')

            send_now = parse_bool(data.get('sendImmediately'), True)
            notification = ResultNotification(
                id=generate_id('NOTIF'),
                notification_type=data['type'],
                priority=priority,
                recipients=entries,
                content=content,
                delivery={
                    'scheduledFor': data.get('scheduledFor') or (now.isoformat() if send_now else None),
                    'deliveryStatus': 'sending' if send_now else 'scheduled',
                    'deliveryAttempts': 0,
                },
                tracking={'opened': False, 'clicked': False, 'responded': False},
                context=context,
                created_by=current_user.id,
                created_at=now,
            )
            delivery_results = None
            if send_now:
                delivery_results = [_deliver_notification(notification, now)]
            session_db.add(notification)
            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'NOTIFICATION_SENT' if send_now else 'NOTIFICATION_SCHEDULED',
                         'results', f"{notification.notification_type} notification for {len(entries)} recipients",
                         resource={'type': 'notification', 'id': notification.id})
            session_db.commit()
            logger.info(f"✅ Notification {notification.id} {notification.delivery_status} "
                        f"({len(entries)} recipients)")

            payload = {
                'notification': notification.to_dict(),
                'summary': {
                    'notificationId': notification.id,
                    'recipientCount': len(entries),
                    'deliveryStatus': notification.delivery_status,
                    'scheduledFor': notification.delivery.get('scheduledFor'),
                },
            }
            if delivery_results is not None:
                payload['deliveryResults'] = delivery_results
            message = (f"Notification sent to {len(entries)} recipients" if send_now
                       else f"Notification scheduled for {notification.delivery.get('scheduledFor')}")
            return api_success(payload, message)
        except Exception as e:
            session_db.rollback()
            return server_error('Send notifications error', e)
        finally:
            session_db.close()

    @bp.route('/results/notifications', methods=['GET'])
    @require_roles(message='Authentication required')
    def results_get_notifications():
        session_db = get_session()
        try:
            notifications = session_db.query(ResultNotification).order_by(
                ResultNotification.created_at.desc()).all()
            if not _is_staff():
                notifications = [n for n in notifications if n.is_addressed_to(current_user.id)]
            if query_arg('type'):
                notifications = [n for n in notifications if n.notification_type == query_arg('type')]
            if query_arg('status'):
                notifications = [n for n in notifications if n.delivery_status == query_arg('status')]
            if query_arg('priority'):
                notifications = [n for n in notifications if n.priority == query_arg('priority')]
            if query_arg('recipientType'):
                notifications = [n for n in notifications
                                 if any(r.get('type') == query_arg('recipientType') for r in n.recipients or [])]

            page_items, pagination = paginate(notifications, parse_int(query_arg('page'), 1),
                                              parse_int(query_arg('limit'), 20), 'totalNotifications')
            return api_success({
                'notifications': [n.to_dict() for n in page_items],
                'pagination': pagination,
                'summary': notification_summary(notifications),
            }, 'Notifications retrieved successfully')
        except Exception as e:
            return server_error('Get notifications error', e)
        finally:
            session_db.close()
