"""
Validation Utilities
Field validation shared by the API route modules
"""

import re
from datetime import datetime
from dateutil import parser as date_parser

LEVELS = ('O Level', 'A Level')
EMAIL_PATTERN = r'^[^\s@]+@[^\s@]+\.[^\s@]+$'
SPECIAL_CHARACTERS = r'[!@#$%^&*()_+\-=\[\]{};\':"\\|,.<>\/?]'


class ValidationError(Exception):
    """Custom exception for validation errors"""
    def __init__(self, field, message):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def missing_fields(data, *fields):
    """Return the names of required fields that are absent or empty"""
    return [f for f in fields if data.get(f) in (None, '', [], {})]


class AccountValidator:
    """Validates account data"""

    @staticmethod
    def validate_email(email):
        """
        Validate email format
        Returns:
            Cleaned email (lowercase)
        Raises:
            ValidationError if invalid
        """
        if not email:
            raise ValidationError("email", "Email is required")

        email = email.strip().lower()
        if not re.match(EMAIL_PATTERN, email):
            raise ValidationError("email", "Invalid email format")
        return email

    @staticmethod
    def password_strength_errors(password):
        """List every rule the password breaks (empty list when strong)"""
        errors = []
        if len(password) < 8:
            errors.append('Password must be at least 8 characters long')
        if not re.search(r'[A-Z]', password):
            errors.append('Password must contain at least one uppercase letter')
        if not re.search(r'[a-z]', password):
            errors.append('Password must contain at least one lowercase letter')
        if not re.search(r'\d', password):
            errors.append('Password must contain at least one number')
        if not re.search(SPECIAL_CHARACTERS, password):
            errors.append('Password must contain at least one special character')
        return errors

    @staticmethod
    def validate_reset_password(password):
        """Letters, digits and a special character, at least 8 long"""
        if (len(password) < 8 or not re.search(r'[A-Za-z]', password)
                or not re.search(r'\d', password) or not re.search(SPECIAL_CHARACTERS, password)):
            raise ValidationError(
                "newPassword",
                "Password must be at least 8 characters long with letters, numbers, and special characters"
            )
        return password


class ExamValidator:
    """Validates examination data"""

    @staticmethod
    def validate_level(level, field_name="level"):
        if level not in LEVELS:
            raise ValidationError(field_name, "Level must be O Level or A Level")
        return level

    @staticmethod
    def validate_exam_date(date_str, now=None):
        """
        Parse an exam date and require it to be in the future
        Returns:
            datetime
        Raises:
            ValidationError if unparseable or not in the future
        """
        try:
            exam_date = date_parser.parse(date_str)
        except (ValueError, TypeError, OverflowError):
            raise ValidationError("examDate", "Invalid exam date")

        if exam_date.tzinfo is not None:
            exam_date = exam_date.replace(tzinfo=None)
        if exam_date <= (now or datetime.utcnow()):
            raise ValidationError("examDate", "Exam date must be in the future")
        return exam_date

    @staticmethod
    def validate_time(value, field_name):
        """HH:MM 24-hour clock"""
        if not value:
            raise ValidationError(field_name, f"{field_name} is required")
        try:
            return datetime.strptime(value.strip(), '%H:%M').time()
        except ValueError:
            raise ValidationError(field_name, f"{field_name} must be in HH:MM format")

    @staticmethod
    def validate_positive_number(value, field_name, minimum=0, allow_equal=False):
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(field_name, f"{field_name} must be a number")
        if number < minimum or (number == minimum and not allow_equal):
            comparison = "at least" if allow_equal else "greater than"
            raise ValidationError(field_name, f"{field_name} must be {comparison} {minimum}")
        return number


def validate_schedule(data):
    """
    Validate an exam schedule body.
    Returns:
        list of error strings (empty when valid)
    """
    errors = []
    if not data.get('examSession'):
        errors.append('Exam session is required')
    if data.get('level') not in LEVELS:
        errors.append('Level must be O Level or A Level')
    if not data.get('subjectCode'):
        errors.append('Subject code is required')
    if not data.get('subjectName'):
        errors.append('Subject name is required')

    paper_number = data.get('paperNumber')
    if not isinstance(paper_number, int) or isinstance(paper_number, bool) or paper_number < 1:
        errors.append('Valid paper number is required')

    for field, label in (('examDate', 'Exam date'), ('startTime', 'Start time'), ('endTime', 'End time')):
        if not data.get(field):
            errors.append(f'{label} is required')

    duration = data.get('duration')
    if not isinstance(duration, (int, float)) or isinstance(duration, bool) or duration < 30:
        errors.append('Duration must be at least 30 minutes')

    if data.get('examDate'):
        try:
            ExamValidator.validate_exam_date(data['examDate'])
        except ValidationError as e:
            errors.append(e.message)

    start, end = data.get('startTime'), data.get('endTime')
    if start and end:
        try:
            if ExamValidator.validate_time(start, 'Start time') >= ExamValidator.validate_time(end, 'End time'):
                errors.append('End time must be after start time')
        except ValidationError as e:
            errors.append(e.message)
    return errors


def parse_bool(value, default=False):
    """Interpret query-string and JSON booleans"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('true', '1', 'yes')


def parse_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default

