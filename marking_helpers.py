"""
Marking Helper Functions
Score totals, examiner selection, double-marking discrepancies and
consistency measures
"""

from datetime import datetime, timedelta

from api_helpers import round_half_up
from grading_helpers import mean, population_sd
from validators import ValidationError

SCRIPTS_PER_CENTRE = 50
PRIORITY_RANK = {'urgent': 3, 'high': 2, 'normal': 1}
COUNTABLE_MARKING_STATUSES = ('submitted', 'verified', 'moderated')
REVIEW_QUALITY_SCORES = {'excellent': 5, 'good': 4, 'acceptable': 3, 'poor': 2}
DEFAULT_QUALITY_INDICATORS = {'clarity': 4, 'accuracy': 4, 'consistency': 4, 'completeness': 4}


# ===== SCORE TOTALS =====

def _mark_value(value, field_name):
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field_name, f"{field_name} must be a number")
    if value < 0:
        raise ValidationError(field_name, f"{field_name} cannot be negative")
    return value


def process_scores(sections):
    """
    Normalise submitted sections and total them.
    Returns:
        (processed_sections, total_marks, total_max_marks)
    Raises:
        ValidationError when a section, question or mark is malformed
    """
    total_marks = 0
    total_max = 0
    processed = []
    for section in sections or []:
        if not isinstance(section, dict) or not isinstance(section.get('questions') or [], list):
            raise ValidationError('scores', 'Each score section must be an object with a questions list')
        section_total = 0
        section_max = 0
        questions = []
        for question in section.get('questions') or []:
            if not isinstance(question, dict):
                raise ValidationError('scores', 'Each question score must be an object')
            awarded = _mark_value(question.get('marksAwarded'), 'marksAwarded')
            maximum = _mark_value(question.get('maxMarks'), 'maxMarks')
            section_total += awarded
            section_max += maximum
            questions.append({
                'questionId': question.get('questionId'),
                'questionNumber': question.get('questionNumber'),
                'maxMarks': question.get('maxMarks'),
                'marksAwarded': awarded,
                'comments': question.get('comments') or '',
                'annotations': question.get('annotations') or [],
            })
        total_marks += section_total
        total_max += section_max
        processed.append({
            'sectionId': section.get('sectionId'),
            'sectionName': section.get('sectionName'),
            'questions': questions,
            'sectionTotal': section_total,
            'sectionMaxMarks': section_max,
        })
    return processed, total_marks, total_max


def percentage_of(marks, max_marks):
    return round_half_up(marks / max_marks * 100) if max_marks else 0


# ===== ALLOCATION =====

def examiner_score(examiner):
    """Ranking weight: quality 40%, reliability 30%, spare allocations 30%"""
    return ((examiner.quality_rating or 0) * 0.4
            + (examiner.reliability or 0) * 0.3
            + (5 - (examiner.active_allocations or 0)) * 0.3)


def suitable_examiners(examiners, subject_name):
    """Available examiners specialised in the subject with spare capacity, best first"""
    subject = (subject_name or '').lower()
    suitable = [
        e for e in examiners
        if e.status == 'available'
        and any(subject in area.lower() for area in e.specializations or [])
        and (e.scripts_in_progress or 0) < (e.max_scripts_per_session or 0)
    ]
    return sorted(suitable, key=examiner_score, reverse=True)


def plan_allocation(total_scripts, examiners):
    """
    Share scripts between ranked examiners up to their remaining capacity.
    Returns:
        list of (examiner, script_count)
    """
    plan = []
    remaining = total_scripts
    for examiner in examiners:
        if remaining <= 0:
            break
        count = min(remaining, examiner.remaining_capacity)
        if count > 0:
            plan.append((examiner, count))
            remaining -= count
    return plan


def build_scripts(exam_id, paper_number, start_counter, count, now):
    """Script entries numbered from start_counter (1-based, global to the allocation)"""
    scripts = []
    for counter in range(start_counter, start_counter + count):
        scripts.append({
            'scriptId': f"SCRIPT-{exam_id}-P{paper_number}-{counter:04d}",
            'candidateNumber': f"CAND-{counter:05d}",
            'centerCode': f"CTR-{counter // SCRIPTS_PER_CENTRE + 1}",
            'markingStatus': 'allocated',
            'allocatedAt': now.isoformat(),
            'priority': 'normal',
        })
    return scripts


def allocation_deadlines(now):
    return {
        'firstMarking': (now + timedelta(days=7)).isoformat(),
        'doubleMarking': (now + timedelta(days=10)).isoformat(),
        'moderation': (now + timedelta(days=12)).isoformat(),
        'finalSubmission': (now + timedelta(days=14)).isoformat(),
    }


def is_overdue(deadline, status, now=None):
    if not deadline or status in ('marked', 'verified', 'completed'):
        return False
    try:
        return datetime.fromisoformat(deadline) < (now or datetime.utcnow())
    except ValueError:
        return False


# ===== DOUBLE MARKING =====

def calculate_discrepancy(first_marks, second_marks, max_marks, threshold=10):
    difference = abs(first_marks - second_marks)
    percentage = round_half_up(difference / max_marks * 100) if max_marks > 0 else 0
    return {
        'marksDifference': difference,
        'percentageDifference': percentage,
        'isSignificant': percentage > threshold,
        'threshold': threshold,
    }


def question_discrepancies(first_scores, second_scores, threshold=10):
    """Compare the two markings question by question (same position and questionId)"""
    discrepancies = []
    for section_index, section in enumerate(first_scores or []):
        if section_index >= len(second_scores or []):
            break
        other_questions = second_scores[section_index].get('questions') or []
        for question_index, question in enumerate(section.get('questions') or []):
            if question_index >= len(other_questions):
                break
            other = other_questions[question_index]
            if other.get('questionId') != question.get('questionId'):
                continue
            first = question.get('marksAwarded') or 0
            second = other.get('marksAwarded') or 0
            max_marks = question.get('maxMarks') or 0
            difference = abs(first - second)
            pct = round_half_up(difference / max_marks * 100) if max_marks > 0 else 0
            discrepancies.append({
                'questionId': question.get('questionId'),
                'questionNumber': question.get('questionNumber'),
                'firstMarkerMarks': first,
                'secondMarkerMarks': second,
                'difference': difference,
                'maxMarks': max_marks,
                'percentageDifference': pct,
                'requiresReview': pct > threshold,
            })
    return discrepancies


def marking_quality(consistency, reliability):
    if consistency >= 90 and reliability >= 90:
        return 'excellent'
    if consistency >= 80 and reliability >= 80:
        return 'good'
    if consistency >= 70 and reliability >= 70:
        return 'acceptable'
    return 'poor'


def double_marking_quality(discrepancy, questions):
    consistency = max(0, 100 - discrepancy['percentageDifference'])
    if questions:
        flagged = sum(1 for q in questions if q['requiresReview'])
        reliability = max(0, 100 - flagged / len(questions) * 100)
    else:
        reliability = 100
    return {
        'consistencyScore': round_half_up(consistency),
        'reliabilityIndex': round_half_up(reliability),
        'markingQuality': marking_quality(consistency, reliability),
    }


# ===== CONSISTENCY AND FINAL MARKS =====

def marking_consistency(markings):
    """100 minus the coefficient of variation of total marks, as a percentage"""
    if len(markings) < 2:
        return 100
    marks = [m.total_marks or 0 for m in markings]
    average = mean(marks)
    if average == 0:
        return 100
    return max(0, round_half_up(100 - population_sd(marks) / average * 100))


def final_marks(markings):
    """Moderated marks, else verified marks, else the average of submitted markings"""
    for marking in markings:
        moderation = marking.moderation or {}
        if moderation.get('isModerated'):
            return moderation.get('finalMarks') or marking.total_marks
    for marking in markings:
        if (marking.verification or {}).get('isVerified'):
            return marking.total_marks
    submitted = [m.total_marks or 0 for m in markings if m.status == 'submitted']
    if submitted:
        return round_half_up(mean(submitted))
    return 0


def review_quality(original, reviewed, max_marks=100):
    """Band a chief examiner's adjustment by its size relative to max marks"""
    difference = abs(reviewed - original) / (max_marks or 100) * 100
    if difference <= 2:
        return 'excellent'
    if difference <= 5:
        return 'good'
    if difference <= 10:
        return 'acceptable'
    return 'poor'
