"""
Results Helper Functions
Result assembly, publication checks, certificate numbering, public
verification scoring and notification content
"""

import re
from datetime import datetime, timedelta

from api_helpers import round_half_up
from grading_helpers import (
    O_LEVEL, grade_for_percentage, grade_points, is_pass, remarks_for, classify,
)
from models import random_code

CLASSIFICATION_ORDER = ['Distinction', 'Merit', 'Credit', 'Pass', 'Fail']
STUDENT_NUMBER_PATTERN = re.compile(r'^[A-Z]{2}\d{4}-\d{5}$')
CERTIFICATE_SECURITY_FEATURES = ('digitalSignature', 'qrCode', 'watermark', 'securityCode')
VALID_CERTIFICATE_STATUSES = ('generated', 'issued', 'delivered')
MAX_DUPLICATE_CERTIFICATES = 3
DUPLICATE_CERTIFICATE_FEE = 'XAF 5,000'


# ===== RESULT ASSEMBLY =====

def subject_entry(marking, exam_level, calculation=None):
    """Subject line of a result built from one marking"""
    moderation = marking.moderation or {}
    adjusted = moderation.get('finalMarks')
    final_score = adjusted or marking.total_marks or 0
    percentage = marking.percentage
    if not percentage and marking.total_max_marks:
        percentage = round_half_up(final_score / marking.total_max_marks * 100)
    percentage = percentage or 0

    grade = marking.grade
    if not grade and calculation is not None:
        grade = calculation.grade_for(marking.result_candidate_id)
    grade = grade or 'F'

    return {
        'subjectCode': marking.subject_code,
        'subjectName': marking.subject_name or marking.subject_code,
        'paperNumber': marking.paper_number or 1,
        'rawScore': marking.total_marks,
        'adjustedScore': adjusted,
        'percentage': percentage,
        'grade': grade,
        'gradePoints': grade_points(grade, exam_level),
        'remarks': remarks_for(percentage),
        'status': 'pass' if is_pass(grade, exam_level) else 'fail',
    }


def overall_performance(subjects, exam_level):
    total = len(subjects)
    passed = sum(1 for s in subjects if s['status'] == 'pass')
    average = round_half_up(sum(s['percentage'] for s in subjects) / total) if total else 0
    classification = classify([s['grade'] for s in subjects], exam_level)

    return {
        'totalSubjects': total,
        'subjectsPassed': passed,
        'subjectsFailed': total - passed,
        'averageGrade': grade_for_percentage(average, exam_level),
        'averagePercentage': average,
        'totalGradePoints': sum(s['gradePoints'] for s in subjects),
        'classification': classification,
        'distinction': classification == 'Distinction',
        'credit': classification in ('Credit', 'Merit', 'Distinction'),
    }


def verification_code(now=None):
    now = now or datetime.utcnow()
    return f"VER-{int(now.timestamp() * 1000)}-{random_code(6)}"


def best_classification(classifications):
    ranked = [c for c in classifications if c in CLASSIFICATION_ORDER]
    if not ranked:
        return 'None'
    return min(ranked, key=CLASSIFICATION_ORDER.index)


# ===== PUBLICATION =====

def publication_checks(results):
    """Pre-publication checks; a 'failed' check blocks a final publication"""
    checks = []

    unverified = [r for r in results if not (r.verification or {}).get('isVerified')]
    checks.append({
        'check': 'verification_status',
        'status': 'passed' if not unverified else 'warning',
        'details': 'All results are verified' if not unverified
        else f"{len(unverified)} results are not verified",
    })

    inconsistent = [r for r in results
                    if any(not s.get('grade') or s.get('grade') == 'Unknown' for s in r.subjects or [])]
    checks.append({
        'check': 'grade_consistency',
        'status': 'passed' if not inconsistent else 'failed',
        'details': 'All grades are properly assigned' if not inconsistent
        else f"{len(inconsistent)} results have grade inconsistencies",
    })

    incomplete = [r for r in results if not r.student_name or not r.student_number or not r.school_name]
    checks.append({
        'check': 'student_information',
        'status': 'passed' if not incomplete else 'failed',
        'details': 'All student information is complete' if not incomplete
        else f"{len(incomplete)} results have incomplete student information",
    })

    empty = [r for r in results if not r.subjects]
    checks.append({
        'check': 'subject_completeness',
        'status': 'passed' if not empty else 'failed',
        'details': 'All results have subjects' if not empty
        else f"{len(empty)} results have no subjects",
    })
    return checks


def publication_statistics(results):
    subjects = []
    for result in results:
        for subject in result.subjects or []:
            if subject.get('subjectCode') not in subjects:
                subjects.append(subject.get('subjectCode'))
    return {
        'totalResults': len(results),
        'studentsAffected': len({r.student_id for r in results}),
        'schoolsAffected': len({r.school_id for r in results}),
        'subjectsIncluded': subjects,
    }


# ===== CERTIFICATES =====

def certificate_prefix(exam_level, exam_year):
    level_code = 'OL' if exam_level == O_LEVEL else 'AL'
    return f"CM{level_code}{str(exam_year)[-2:]}"


def certificate_number(exam_level, exam_year, sequence):
    """CM{OL|AL}{yy}{6-digit sequence}"""
    return f"{certificate_prefix(exam_level, exam_year)}{sequence:06d}"


def certificate_security(certificate_id, now=None):
    stamp = int((now or datetime.utcnow()).timestamp() * 1000)
    return {
        'digitalSignature': f"SIG-{certificate_id}-{stamp}",
        'qrCode': f"QR-{certificate_id}",
        'watermark': f"WM-{stamp}",
        'securityCode': random_code(8),
        'verificationUrl': f"https://gce.cm/verify/{certificate_id}",
    }


# ===== PUBLIC VERIFICATION =====

def security_checks(record, verification_type, now=None):
    """Integrity, timestamp, status and security-feature checks on a matched record"""
    now = now or datetime.utcnow()
    checks = []
    if record is None:
        return checks

    checks.append({'check': 'data_integrity', 'status': 'passed', 'details': 'Data structure is valid'})

    created = getattr(record, 'created_at', None)
    if created:
        age_days = (now - created).total_seconds() / 86400
        if -1 < age_days <= 3650:
            checks.append({'check': 'timestamp_validation', 'status': 'passed',
                           'details': f"Valid timestamp: {max(0, round(age_days))} days old"})
        else:
            checks.append({'check': 'timestamp_validation', 'status': 'warning',
                           'details': 'Timestamp is outside expected range'})

    if verification_type == 'certificate':
        if record.status in VALID_CERTIFICATE_STATUSES:
            checks.append({'check': 'status_validation', 'status': 'passed',
                           'details': f"Certificate status: {record.status}"})
        elif record.status == 'revoked':
            checks.append({'check': 'status_validation', 'status': 'failed',
                           'details': 'Certificate has been revoked'})
        else:
            checks.append({'check': 'status_validation', 'status': 'warning',
                           'details': f"Unusual certificate status: {record.status}"})

        security = record.security or {}
        present = [f for f in CERTIFICATE_SECURITY_FEATURES if security.get(f)]
        checks.append({
            'check': 'security_features',
            'status': 'passed' if len(present) >= 3 else 'warning',
            'details': f"{len(present)}/4 security features present" if len(present) >= 3
            else f"Only {len(present)}/4 security features present",
        })
    return checks


def fraud_indicators(search_criteria, user_agent, recent_attempts):
    indicators = []
    if user_agent and 'bot' in user_agent:
        indicators.append({'indicator': 'automated_verification', 'severity': 'medium',
                           'description': 'Verification appears to be automated'})
    if recent_attempts > 5:
        indicators.append({'indicator': 'rapid_verification_attempts', 'severity': 'high',
                           'description': 'Multiple verification attempts from same IP in short time'})
    student_number = search_criteria.get('studentNumber')
    if student_number and not STUDENT_NUMBER_PATTERN.match(student_number):
        indicators.append({'indicator': 'invalid_student_number_format', 'severity': 'medium',
                           'description': 'Student number format does not match expected pattern'})
    return indicators


def verification_confidence(matched_records, checks, indicators):
    confidence = 0
    if matched_records == 1:
        confidence += 60
    elif matched_records > 1:
        confidence += 40
    if checks:
        passed = sum(1 for c in checks if c['status'] == 'passed')
        confidence += passed / len(checks) * 30
    confidence -= 20 * sum(1 for i in indicators if i['severity'] == 'high')
    confidence -= 10 * sum(1 for i in indicators if i['severity'] == 'medium')
    return max(0, min(100, round_half_up(confidence)))


def verification_status(matched_records, confidence):
    if matched_records == 1 and confidence >= 80:
        return 'verified'
    if matched_records == 0:
        return 'invalid'
    if matched_records > 1 or confidence >= 50:
        return 'partial'
    return 'suspicious'


VERIFICATION_MESSAGES = {
    'verified': 'Verification successful - document is authentic',
    'invalid': 'Verification failed - no matching records found',
    'suspicious': 'Verification flagged as suspicious - manual review required',
}

VERIFICATION_INSTRUCTIONS = {
    'verified': [
        'The document has been successfully verified as authentic',
        'All security checks have passed',
        'You can trust the information provided',
    ],
    'invalid': [
        'No matching records found in our database',
        'Please check the information provided and try again',
        'Contact the examination board if you believe this is an error',
    ],
    'partial': [
        'Verification was partially successful',
        'Some information may need additional confirmation',
        'Contact the examination board for complete verification',
    ],
    'suspicious': [
        'This verification has been flagged for manual review',
        'Please contact the examination board directly',
        'Do not rely on this document until verified by official channels',
    ],
}


def verification_message(status, matched_records):
    if status == 'partial':
        if matched_records > 1:
            return 'Multiple records found - please provide more specific information'
        return 'Partial verification - some security checks failed'
    return VERIFICATION_MESSAGES.get(status, 'Verification completed')


def recent_window(now=None, seconds=60):
    return (now or datetime.utcnow()) - timedelta(seconds=seconds)


# ===== AGGREGATION =====

REGIONS = ('Centre', 'Littoral', 'West', 'Northwest', 'Southwest', 'North', 'Adamawa', 'East', 'South', 'Far North')
PERFORMANCE_RANGES = [
    (90, 100, 'Excellent (90-100%)'),
    (80, 89, 'Very Good (80-89%)'),
    (70, 79, 'Good (70-79%)'),
    (60, 69, 'Satisfactory (60-69%)'),
    (50, 59, 'Fair (50-59%)'),
    (0, 49, 'Poor (0-49%)'),
]


def region_of(location_name):
    """Region named in a school or centre name (longest match wins)"""
    if not location_name:
        return 'Unknown'
    lowered = location_name.lower()
    for region in sorted(REGIONS, key=len, reverse=True):
        if region.lower() in lowered:
            return region
    return 'Other'


def _percent(part, whole):
    return round_half_up(part / whole * 100) if whole else 0


def _passed_any(result):
    return (result.overall_performance or {}).get('subjectsPassed', 0) > 0


def _excellent(result):
    overall = result.overall_performance or {}
    return bool(overall.get('distinction')) or overall.get('averagePercentage', 0) >= 80


def _average_percentage(results):
    return round_half_up(sum(r.average_percentage for r in results) / len(results)) if results else 0


def results_overview(results):
    if not results:
        return {
            'totalResults': 0,
            'totalStudents': 0,
            'totalSchools': 0,
            'averagePerformance': 0,
            'passRate': 0,
            'excellenceRate': 0,
        }
    return {
        'totalResults': len(results),
        'totalStudents': len({r.student_id for r in results}),
        'totalSchools': len({r.school_id for r in results}),
        'averagePerformance': _average_percentage(results),
        'passRate': _percent(sum(1 for r in results if _passed_any(r)), len(results)),
        'excellenceRate': _percent(sum(1 for r in results if _excellent(r)), len(results)),
    }


def subject_grade_distribution(results):
    counts = {}
    for result in results:
        for subject in result.subjects or []:
            counts[subject.get('grade')] = counts.get(subject.get('grade'), 0) + 1
    total = sum(counts.values())
    return {
        'counts': counts,
        'percentages': {grade: _percent(count, total) for grade, count in counts.items()},
        'totalSubjects': total,
    }


def subject_performance(results, with_top_performers=False):
    """Per-subject averages, pass and excellence rates, best first"""
    data = {}
    for result in results:
        for subject in result.subjects or []:
            code = subject.get('subjectCode')
            entry = data.setdefault(code, {
                'subjectCode': code,
                'subjectName': subject.get('subjectName'),
                'totalCandidates': 0,
                'totalMarks': 0,
                'passCount': 0,
                'excellenceCount': 0,
                'gradeDistribution': {},
                'topPerformers': [],
            })
            entry['totalCandidates'] += 1
            entry['totalMarks'] += subject.get('percentage', 0)
            entry['passCount'] += 1 if subject.get('status') == 'pass' else 0
            entry['excellenceCount'] += 1 if subject.get('percentage', 0) >= 80 else 0
            grade = subject.get('grade')
            entry['gradeDistribution'][grade] = entry['gradeDistribution'].get(grade, 0) + 1
            entry['topPerformers'].append({
                'studentId': result.student_id,
                'studentName': result.student_name,
                'percentage': subject.get('percentage', 0),
                'grade': grade,
            })

    performance = []
    for entry in data.values():
        candidates = entry['totalCandidates']
        row = {
            'subjectCode': entry['subjectCode'],
            'subjectName': entry['subjectName'],
            'totalCandidates': candidates,
            'averagePercentage': round_half_up(entry['totalMarks'] / candidates),
            'passRate': _percent(entry['passCount'], candidates),
            'excellenceRate': _percent(entry['excellenceCount'], candidates),
            'gradeDistribution': {g: _percent(c, candidates) for g, c in entry['gradeDistribution'].items()},
        }
        if with_top_performers:
            row['topPerformers'] = sorted(entry['topPerformers'], key=lambda p: p['percentage'], reverse=True)[:5]
        performance.append(row)
    return sorted(performance, key=lambda row: row['averagePercentage'], reverse=True)


def _group_summary(results):
    return {
        'totalStudents': len(results),
        'averagePercentage': _average_percentage(results),
        'passRate': _percent(sum(1 for r in results if _passed_any(r)), len(results)),
        'excellenceRate': _percent(sum(1 for r in results if _excellent(r)), len(results)),
    }


def regional_performance(results):
    regions = {}
    for result in results:
        regions.setdefault(region_of(result.school_name or result.centre_name), []).append(result)
    rows = [dict(region=region, totalSchools=len({r.school_id for r in members}), **_group_summary(members))
            for region, members in regions.items()]
    return sorted(rows, key=lambda row: row['averagePercentage'], reverse=True)


def _direction(latest, previous):
    if latest > previous:
        return 'improving'
    if latest < previous:
        return 'declining'
    return 'stable'


def session_trends(results):
    sessions = {}
    for result in results:
        sessions.setdefault(result.exam_session, []).append(result)
    trends = [dict(session=session, **_group_summary(members))
              for session, members in sorted(sessions.items(), key=lambda item: str(item[0]))]
    analysis = None
    if len(trends) >= 2:
        latest, previous = trends[-1], trends[-2]
        analysis = {
            'performanceTrend': _direction(latest['averagePercentage'], previous['averagePercentage']),
            'passRateTrend': _direction(latest['passRate'], previous['passRate']),
            'excellenceTrend': _direction(latest['excellenceRate'], previous['excellenceRate']),
        }
    return {'sessionTrends': trends, 'trendAnalysis': analysis}


def school_rankings(results):
    """Schools ordered by average percentage, best first"""
    schools = {}
    for result in results:
        schools.setdefault(result.school_id, []).append(result)
    rows = []
    for school_id, members in schools.items():
        summary = _group_summary(members)
        rows.append({
            'schoolId': school_id,
            'schoolName': members[0].school_name,
            'totalStudents': summary['totalStudents'],
            'averagePercentage': summary['averagePercentage'],
            'passRate': summary['passRate'],
        })
    return sorted(rows, key=lambda row: row['averagePercentage'], reverse=True)


def performance_distribution(results):
    rows = []
    for low, high, label in PERFORMANCE_RANGES:
        count = sum(1 for r in results if low <= r.average_percentage <= high)
        rows.append({'range': label, 'count': count, 'percentage': _percent(count, len(results))})
    return rows


def previous_session(session):
    try:
        return str(int(session) - 1)
    except (TypeError, ValueError):
        return None


def school_statistics(results):
    if not results:
        return {
            'totalStudents': 0,
            'totalSubjects': 0,
            'overallPassRate': 0,
            'averagePercentage': 0,
            'gradeDistribution': {},
            'classificationDistribution': {},
            'subjectPerformance': [],
        }
    classifications = {}
    for result in results:
        name = (result.overall_performance or {}).get('classification')
        classifications[name] = classifications.get(name, 0) + 1
    grades = subject_grade_distribution(results)
    return {
        'totalStudents': len(results),
        'totalSubjects': grades['totalSubjects'],
        'overallPassRate': _percent(sum(1 for r in results if _passed_any(r)), len(results)),
        'averagePercentage': _average_percentage(results),
        'gradeDistribution': grades['percentages'],
        'classificationDistribution': {c: _percent(n, len(results)) for c, n in classifications.items()},
        'subjectPerformance': subject_performance(results, with_top_performers=True),
    }


def school_insights(statistics):
    insights = []
    average = statistics['averagePercentage']
    if average >= 80:
        insights.append({'type': 'positive', 'category': 'overall_performance',
                         'message': 'Excellent overall school performance',
                         'recommendation': 'Continue current teaching methodologies and share best practices'})
    elif average >= 60:
        insights.append({'type': 'neutral', 'category': 'overall_performance',
                         'message': 'Good school performance with room for improvement',
                         'recommendation': 'Focus on strengthening weaker subject areas'})
    else:
        insights.append({'type': 'negative', 'category': 'overall_performance',
                         'message': 'School performance needs significant improvement',
                         'recommendation': 'Implement comprehensive academic improvement plan'})

    weak = [s['subjectCode'] for s in statistics['subjectPerformance'] if s['passRate'] < 50]
    if weak:
        insights.append({'type': 'warning', 'category': 'subject_performance',
                         'message': f"Poor performance in {len(weak)} subjects",
                         'recommendation': f"Focus on improving: {', '.join(weak)}"})
    strong = [s['subjectCode'] for s in statistics['subjectPerformance'] if s['passRate'] >= 90]
    if strong:
        insights.append({'type': 'positive', 'category': 'subject_performance',
                         'message': f"Excellent performance in {len(strong)} subjects",
                         'recommendation': f"Leverage successful practices from: {', '.join(strong)}"})
    return insights


def session_summary(results):
    sessions = {}
    for result in results:
        sessions.setdefault(result.exam_session, []).append(result)
    return [{
        'examSession': session,
        'examLevel': members[0].exam_level,
        'totalStudents': len(members),
        'averagePercentage': _average_percentage(members),
        'passRate': _percent(sum(1 for r in members if _passed_any(r)), len(members)),
    } for session, members in sessions.items()]


# ===== STUDENT ANALYSIS =====

def _snapshot(result):
    overall = result.overall_performance or {}
    return {
        'examSession': result.exam_session,
        'averagePercentage': overall.get('averagePercentage', 0),
        'classification': overall.get('classification'),
    }


def student_trends(results):
    """Movement between a student's two latest results (oldest first input)"""
    if len(results) < 2:
        return {
            'trend': 'insufficient_data',
            'improvement': 0,
            'consistency': 0,
            'bestPerformance': None,
            'worstPerformance': None,
        }
    averages = [r.average_percentage for r in results]
    improvement = averages[-1] - averages[-2]
    avg = sum(averages) / len(averages)
    sd = (sum((a - avg) ** 2 for a in averages) / len(averages)) ** 0.5
    return {
        'trend': 'improving' if improvement > 5 else 'declining' if improvement < -5 else 'stable',
        'improvement': round_half_up(improvement, 2),
        'consistency': round_half_up(max(0, 100 - sd)),
        'bestPerformance': _snapshot(max(results, key=lambda r: r.average_percentage)),
        'worstPerformance': _snapshot(min(results, key=lambda r: r.average_percentage)),
    }


def student_subject_analysis(results):
    """Per-subject history for one student (oldest first input)"""
    subjects = {}
    for result in results:
        for subject in result.subjects or []:
            subjects.setdefault(subject.get('subjectCode'), []).append({
                'examSession': result.exam_session,
                'subjectName': subject.get('subjectName'),
                'percentage': subject.get('percentage', 0),
                'grade': subject.get('grade'),
                'status': subject.get('status'),
            })
    analysis = []
    for code, performances in subjects.items():
        latest = performances[-1]
        improvement = latest['percentage'] - performances[-2]['percentage'] if len(performances) > 1 else 0
        analysis.append({
            'subjectCode': code,
            'subjectName': latest['subjectName'] or code,
            'totalAttempts': len(performances),
            'averagePercentage': round_half_up(sum(p['percentage'] for p in performances) / len(performances)),
            'latestGrade': latest['grade'],
            'latestPercentage': latest['percentage'],
            'improvement': round_half_up(improvement, 2),
            'passRate': _percent(sum(1 for p in performances if p['status'] == 'pass'), len(performances)),
            'trend': 'improving' if improvement > 5 else 'declining' if improvement < -5 else 'stable',
            'bestGrade': max(performances, key=lambda p: p['percentage'])['grade'],
            'performances': performances,
        })
    return sorted(analysis, key=lambda a: a['latestPercentage'], reverse=True)


def strengths_and_weaknesses(results):
    percentages = {}
    for result in results:
        for subject in result.subjects or []:
            percentages.setdefault(subject.get('subjectCode'), []).append(subject.get('percentage', 0))
    averages = sorted(({'subjectCode': code, 'averagePercentage': round_half_up(sum(v) / len(v))}
                       for code, v in percentages.items()),
                      key=lambda s: s['averagePercentage'], reverse=True)
    return {
        'strengths': [s for s in averages[:3] if s['averagePercentage'] >= 60],
        'weaknesses': [s for s in averages[-3:] if s['averagePercentage'] < 50],
    }


def student_recommendations(latest):
    if latest is None:
        return []
    average = latest.average_percentage
    if average >= 80:
        recommendations = ['Excellent performance! Continue maintaining high standards.',
                           'Consider taking on leadership roles in academic activities.']
    elif average >= 60:
        recommendations = ['Good performance with room for improvement.',
                           'Focus on strengthening weaker subjects.']
    elif average >= 40:
        recommendations = ['Satisfactory performance but significant improvement needed.',
                           'Consider additional study support and tutoring.']
    else:
        recommendations = ['Performance needs urgent attention.',
                           'Seek immediate academic support and counseling.']
    weak = [s.get('subjectCode') for s in latest.subjects or [] if s.get('percentage', 0) < 50]
    if weak:
        recommendations.append(f"Focus on improving performance in: {', '.join(weak)}")
    return recommendations


# ===== CERTIFICATE SUMMARIES =====

CERTIFICATE_TYPES = ('original', 'duplicate', 'replacement', 'provisional')
CERTIFICATE_STATUSES = ('draft', 'generated', 'issued', 'delivered', 'revoked')


def certificate_statistics(certificates):
    return {
        'totalCertificates': len(certificates),
        'byType': {t: sum(1 for c in certificates if c.certificate_type == t) for t in CERTIFICATE_TYPES},
        'byStatus': {s: sum(1 for c in certificates if c.status == s) for s in CERTIFICATE_STATUSES},
        'byLevel': {
            'oLevel': sum(1 for c in certificates if c.exam_level == O_LEVEL),
            'aLevel': sum(1 for c in certificates if c.exam_level != O_LEVEL),
        },
        'totalDownloads': sum(len(c.downloads or []) for c in certificates),
        'totalPrints': sum(c.print_count for c in certificates),
    }


def certificate_template(result, certificate):
    """Printable layout of a certificate"""
    issuance = certificate.issuance_details or {}
    overall = result.overall_performance or {}
    return {
        'header': {
            'title': 'REPUBLIC OF CAMEROON',
            'subtitle': 'MINISTRY OF SECONDARY EDUCATION',
            'examTitle': f"{result.exam_level} CERTIFICATE",
            'session': result.exam_session,
            'year': result.exam_year,
        },
        'student': {
            'name': result.student_name,
            'number': result.student_number,
            'school': result.school_name,
            'center': result.centre_name,
        },
        'subjects': [{'code': s.get('subjectCode'), 'name': s.get('subjectName'),
                      'grade': s.get('grade'), 'remarks': s.get('remarks')} for s in result.subjects or []],
        'performance': {k: overall.get(k) for k in
                        ('classification', 'totalSubjects', 'subjectsPassed', 'distinction', 'credit')},
        'certification': {
            'certificateNumber': certificate.certificate_number,
            'issuedDate': issuance.get('issuedDate'),
            'authorizedBy': issuance.get('authorizedBy'),
            'serialNumber': issuance.get('serialNumber'),
        },
        'security': certificate.security or {},
    }


# ===== NOTIFICATIONS =====

NOTIFICATION_TYPES = ('result_published', 'certificate_ready', 'verification_alert', 'system_update', 'reminder')
NOTIFICATION_PRIORITIES = ('low', 'normal', 'high', 'urgent')
NOTIFICATION_STATUSES = ('pending', 'scheduled', 'sending', 'sent', 'failed', 'cancelled')
CONTACT_METHODS = ('email', 'sms', 'push', 'portal')

NOTIFICATION_TEMPLATES = {
    'result_published': {
        'title': 'Your {examLevel} Results are Now Available',
        'message': 'Dear {studentName}, your {examSession} {examLevel} examination results have been published. '
                   'You can now view your results online.',
        'actionText': 'View Results',
        'actionUrl': '/results/student/{studentId}',
    },
    'certificate_ready': {
        'title': 'Your Certificate is Ready for Download',
        'message': 'Dear {studentName}, your {examLevel} certificate for {examSession} is now ready for download.',
        'actionText': 'Download Certificate',
        'actionUrl': '/certificates/{certificateId}/download',
    },
    'verification_alert': {
        'title': 'Verification Alert',
        'message': 'A verification attempt was made for {documentType} {documentNumber}. '
                   'If this was not you, please contact us immediately.',
        'actionText': 'View Details',
        'actionUrl': '/verification/logs',
    },
    'system_update': {
        'title': 'System Update Notification',
        'message': 'The GCE Results System will undergo maintenance on {maintenanceDate}. '
                   'Services may be temporarily unavailable.',
        'actionText': 'Learn More',
        'actionUrl': '/announcements',
    },
    'reminder': {
        'title': 'Reminder: {reminderType}',
        'message': '{reminderMessage}',
        'actionText': 'Take Action',
        'actionUrl': '{actionUrl}',
    },
}


def notification_content(template_id, variables):
    """
    Fill a template's {placeholders} from `variables`.
    Returns:
        content dict, or None for an unknown template
    """
    template = NOTIFICATION_TEMPLATES.get(template_id)
    if template is None:
        return None
    filled = {}
    for field in ('title', 'message', 'actionUrl'):
        text = template[field]
        for key, value in (variables or {}).items():
            text = text.replace(f"{{{key}}}", str(value))
        filled[field] = text
    filled.update(actionText=template['actionText'], templateId=template_id, variables=variables or {})
    return filled


def student_recipient(student_id, name, user=None):
    """Recipient entry for a student, by email when the account has one"""
    email = user.email if user is not None else None
    return {
        'type': 'student',
        'identifier': student_id,
        'name': name or (user.full_name if user is not None else student_id),
        'contactMethod': 'email' if email else 'portal',
        'contactDetails': email or student_id,
    }


def unique_recipients(recipients):
    """First entry for each (type, identifier) pair"""
    seen = set()
    unique = []
    for recipient in recipients:
        key = (recipient.get('type'), recipient.get('identifier'))
        if key in seen:
            continue
        seen.add(key)
        unique.append(recipient)
    return unique


def notification_summary(notifications):
    total = len(notifications)
    sent = sum(1 for n in notifications if n.delivery_status == 'sent')
    opened = sum(1 for n in notifications if (n.tracking or {}).get('opened'))
    return {
        'totalNotifications': total,
        'byType': {t: sum(1 for n in notifications if n.notification_type == t) for t in NOTIFICATION_TYPES},
        'byStatus': {s: sum(1 for n in notifications if n.delivery_status == s) for s in NOTIFICATION_STATUSES},
        'byPriority': {p: sum(1 for n in notifications if n.priority == p) for p in NOTIFICATION_PRIORITIES},
        'totalRecipients': sum(len(n.recipients or []) for n in notifications),
        'deliveryRate': _percent(sent, total),
        'openRate': _percent(opened, total),
    }
