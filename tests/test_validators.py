from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from validators import (ValidationError, AccountValidator, ExamValidator, missing_fields, validate_schedule,
                        parse_bool, parse_int)
from status_workflow import (check_transition, can_transition, highest_status, SCRIPT_TRANSITIONS,
                             INCIDENT_TRANSITIONS)
from registration_helpers import calculate_fees, check_subject_count, amount_paid, generate_registration_id
from exam_operations_helpers import (invigilator_requirements, auto_assign_invigilators, incident_priority,
                                     needs_follow_up, follow_up_actions)
from admin_helpers import validate_setting_value, relative_time


# ===== VALIDATORS =====

def test_missing_fields():
    data = {'a': '', 'b': [], 'c': 0, 'e': 'x'}
    assert missing_fields(data, 'a', 'b', 'c', 'd', 'e') == ['a', 'b', 'd']


def test_validate_email():
    assert AccountValidator.validate_email('  Jean.Fopa@Student.CM ') == 'jean.fopa@student.cm'
    with pytest.raises(ValidationError) as excinfo:
        AccountValidator.validate_email('not-an-email')
    assert excinfo.value.message == 'Invalid email format'
    with pytest.raises(ValidationError):
        AccountValidator.validate_email('')


def test_password_strength():
    assert AccountValidator.password_strength_errors('Str0ng!Pass') == []
    assert len(AccountValidator.password_strength_errors('abc')) == 4
    with pytest.raises(ValidationError):
        AccountValidator.validate_reset_password('lettersonly')
    assert AccountValidator.validate_reset_password('letters1!') == 'letters1!'


def test_exam_validator():
    assert ExamValidator.validate_level('A Level') == 'A Level'
    with pytest.raises(ValidationError):
        ExamValidator.validate_level('B Level')

    with pytest.raises(ValidationError) as past:
        ExamValidator.validate_exam_date('2020-01-01')
    assert past.value.message == 'Exam date must be in the future'
    with pytest.raises(ValidationError) as garbage:
        ExamValidator.validate_exam_date('not a date')
    assert garbage.value.message == 'Invalid exam date'
    future = (datetime.utcnow() + timedelta(days=30)).strftime('%Y-%m-%d')
    assert ExamValidator.validate_exam_date(future).year >= datetime.utcnow().year

    assert ExamValidator.validate_time('08:30', 'Start time').hour == 8
    with pytest.raises(ValidationError):
        ExamValidator.validate_time('25:00', 'Start time')

    with pytest.raises(ValidationError) as zero:
        ExamValidator.validate_positive_number(0, 'fee')
    assert zero.value.message == 'fee must be greater than 0'
    assert ExamValidator.validate_positive_number(0, 'fee', allow_equal=True) == 0.0


def test_validate_schedule():
    schedule = {
        'examSession': '2025', 'level': 'O Level', 'subjectCode': 'OMH', 'subjectName': 'Mathematics',
        'paperNumber': 1, 'examDate': '2099-06-01', 'startTime': '08:00', 'endTime': '11:00', 'duration': 180,
    }
    assert validate_schedule(schedule) == []

    backwards = dict(schedule, startTime='11:00', endTime='08:00', duration=20, paperNumber=0)
    errors = validate_schedule(backwards)
    assert 'End time must be after start time' in errors
    assert 'Duration must be at least 30 minutes' in errors
    assert 'Valid paper number is required' in errors


def test_parse_helpers():
    assert parse_bool('yes') is True
    assert parse_bool('0') is False
    assert parse_bool(None, True) is True
    assert parse_int('12', 1) == 12
    assert parse_int('x', 5) == 5


# ===== STATUS WORKFLOWS =====

def test_check_transition():
    assert check_transition(SCRIPT_TRANSITIONS, 'allocated', 'in_progress') == 'in_progress'
    assert check_transition(SCRIPT_TRANSITIONS, 'marked', 'marked') == 'marked'
    with pytest.raises(ValidationError) as skipped:
        check_transition(SCRIPT_TRANSITIONS, 'allocated', 'verified')
    assert skipped.value.message == 'Invalid status transition from allocated to verified'
    with pytest.raises(ValidationError) as unknown:
        check_transition(SCRIPT_TRANSITIONS, 'allocated', 'lost', entity='script')
    assert unknown.value.message == 'Invalid script status: lost'


def test_closed_incidents_cannot_reopen():
    assert can_transition(INCIDENT_TRANSITIONS, 'resolved', 'investigating')
    assert not can_transition(INCIDENT_TRANSITIONS, 'closed', 'open')


def test_highest_status():
    assert highest_status(['draft', 'verified', 'submitted']) == 'verified'
    assert highest_status([]) == 'draft'


# ===== REGISTRATION =====

def test_calculate_fees():
    assert calculate_fees(3, 'A Level') == {
        'registrationFee': 7500, 'subjectFees': 9000, 'totalAmount': 16500, 'currency': 'XAF',
    }
    assert calculate_fees(9, 'O Level')['totalAmount'] == 23000


def test_subject_count_limits():
    assert check_subject_count([], 'O Level') == 'At least one subject is required'
    assert check_subject_count([{}] * 5, 'A Level') == 'Maximum 4 subjects allowed for A Level'
    assert check_subject_count([{}] * 9, 'O Level') is None
    assert check_subject_count(['AMH'], 'A Level') == 'Each subject must be an object with a code and name'


def test_amount_paid_counts_completed_payments():
    payments = [SimpleNamespace(amount=5000, status='completed'), SimpleNamespace(amount=2000, status='failed'),
                SimpleNamespace(amount=3000, status='completed')]
    assert amount_paid(payments) == 8000


def test_registration_id_format():
    registration_id = generate_registration_id('O Level')
    assert registration_id.startswith(f"REG-{datetime.utcnow().year}-OL-")
    assert len(registration_id.rsplit('-', 1)[1]) == 6


# ===== EXAM OPERATIONS =====

def test_invigilator_requirements():
    assert invigilator_requirements(None) == {
        'chiefInvigilators': 1, 'assistantInvigilators': 3, 'observers': 1, 'specialNeedsSupport': 0,
    }
    assert invigilator_requirements({'totalCandidates': 300, 'hasSpecialNeeds': True}) == {
        'chiefInvigilators': 2, 'assistantInvigilators': 7, 'observers': 1, 'specialNeedsSupport': 1,
    }


def _invigilator(inv_id, rating, experience, status='active', region='Yaounde'):
    return {
        'id': inv_id, 'name': inv_id, 'email': f"{inv_id.lower()}@gce.cm", 'phoneNumber': '+237600000000',
        'status': status, 'rating': rating, 'experience': experience, 'qualifications': [], 'specializations': [],
        'availability': {'dates': ['2025-06-01'], 'regions': [region]},
    }


def test_auto_assign_invigilators_ranks_by_rating_and_experience():
    pool = [
        _invigilator('INV-A', 4.0, 5),
        _invigilator('INV-B', 4.5, 10),
        _invigilator('INV-C', 5.0, 20, status='inactive'),
        _invigilator('INV-D', 5.0, 20, region='Bamenda'),
        _invigilator('INV-E', 3.0, 2),
    ]
    requirements = {'chiefInvigilators': 1, 'assistantInvigilators': 1, 'observers': 0, 'specialNeedsSupport': 0}
    assignments = auto_assign_invigilators(requirements, '2025-06-01', 'Yaounde Centre', pool=pool)
    assert [(a['invigilatorId'], a['role']) for a in assignments] == [('INV-B', 'chief'), ('INV-A', 'assistant')]
    assert assignments[1]['roomNumber'] == 'Room-2'

    assert auto_assign_invigilators(requirements, '2025-07-01', 'Yaounde Centre', pool=pool) == []


def test_incident_priority_and_follow_up():
    assert incident_priority('cheating', 'high') == 'urgent'
    assert incident_priority('technical', 'low') == 'low'
    assert incident_priority('unknown', 'high') == 'normal'
    assert needs_follow_up('cheating', 'low')
    assert not needs_follow_up('technical', 'medium')
    assert len(follow_up_actions('cheating')) == 2
    assert len(follow_up_actions('medical')) == 1


# ===== SYSTEM SETTINGS =====

def test_validate_setting_value():
    number = SimpleNamespace(data_type='number', validation_rules={'required': True, 'min': 5, 'max': 480})
    assert validate_setting_value(number, 60) is None
    assert validate_setting_value(number, 1) == 'Value must be at least 5'
    assert validate_setting_value(number, 500) == 'Value must be at most 480'
    assert validate_setting_value(number, True) == 'Value must be a number'
    assert validate_setting_value(number, None) == 'Value is required'

    level = SimpleNamespace(data_type='string', validation_rules={'allowedValues': ['O Level', 'A Level']})
    assert validate_setting_value(level, 'B Level') == 'Value must be one of: O Level, A Level'
    flag = SimpleNamespace(data_type='boolean', validation_rules=None)
    assert validate_setting_value(flag, 'true') == 'Value must be a boolean'


def test_relative_time():
    now = datetime(2025, 6, 1, 12, 0, 0)
    assert relative_time(now - timedelta(seconds=30), now) == 'just now'
    assert relative_time(now - timedelta(minutes=15), now) == '15m ago'
    assert relative_time(now - timedelta(hours=3), now) == '3h ago'
    assert relative_time(now - timedelta(days=2), now) == '2d ago'
    assert relative_time(None, now) == ''
