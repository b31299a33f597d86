"""
Core models for the GCE Examination System
Declarative base, ID generation, user accounts and authentication tokens
"""

from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Enum as SQLEnum, JSON
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timedelta
import enum
import random
import secrets
import string
import time

Base = declarative_base()


# ===== ID GENERATION =====

def generate_id(prefix: str) -> str:
    """Generate a record ID of the form PREFIX-timestamp-random"""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def random_code(length: int = 6, alphabet: str = string.ascii_uppercase + string.digits) -> str:
    """Random uppercase code used in references and security fields"""
    return ''.join(random.choices(alphabet, k=length))


def isoformat(value):
    """Serialize a datetime for JSON output"""
    return value.isoformat() if value else None


# ===== USER ENUMS =====

class UserTypeEnum(enum.Enum):
    """Account types"""
    STUDENT = "student"
    TEACHER = "teacher"
    EXAMINER = "examiner"
    ADMIN = "admin"


class AccountStatusEnum(enum.Enum):
    """Account registration status"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SUSPENDED = "suspended"


USER_ID_CODES = {
    UserTypeEnum.STUDENT: 'ST',
    UserTypeEnum.TEACHER: 'TC',
    UserTypeEnum.EXAMINER: 'EX',
    UserTypeEnum.ADMIN: 'AD',
}


def generate_user_id(user_type: UserTypeEnum) -> str:
    """User IDs look like GCE2025-ST-123456789"""
    year = datetime.utcnow().year
    stamp = str(int(time.time() * 1000))[-6:]
    return f"GCE{year}-{USER_ID_CODES[user_type]}-{stamp}{random.randint(100, 999)}"


# ===== USER MODEL =====
class User(Base, UserMixin):
    __tablename__ = 'users'

    id = Column(String(64), primary_key=True)
    full_name = Column(String(200), nullable=False)
    email = Column(String(120), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    user_type = Column(SQLEnum(UserTypeEnum), nullable=False)
    registration_status = Column(SQLEnum(AccountStatusEnum), default=AccountStatusEnum.PENDING)
    email_verified = Column(Boolean, default=False)

    # Profile
    school = Column(String(200))
    school_id = Column(String(64))
    date_of_birth = Column(String(20))
    phone_number = Column(String(30))
    candidate_number = Column(String(50), unique=True, nullable=True)
    exam_level = Column(String(50))
    exam_center = Column(String(200))
    center_code = Column(String(50))
    subjects = Column(JSON, default=list)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_login = Column(DateTime, nullable=True)

    # Password reset and email verification tokens
    reset_token = Column(String(128), nullable=True, index=True)
    reset_token_expires = Column(DateTime, nullable=True)
    verification_token = Column(String(128), nullable=True, index=True)
    verification_token_expires = Column(DateTime, nullable=True)

    refresh_tokens = relationship("RefreshToken", back_populates="user", cascade="all, delete-orphan")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def generate_reset_token(self, ttl_seconds=3600):
        """Generate a password reset token"""
        self.reset_token = secrets.token_hex(32)
        self.reset_token_expires = datetime.utcnow() + timedelta(seconds=ttl_seconds)
        return self.reset_token

    def clear_reset_token(self):
        """Clear the reset token after successful password reset"""
        self.reset_token = None
        self.reset_token_expires = None

    def generate_verification_token(self, ttl_seconds=86400):
        """Generate an email verification token"""
        self.verification_token = secrets.token_hex(32)
        self.verification_token_expires = datetime.utcnow() + timedelta(seconds=ttl_seconds)
        return self.verification_token

    @property
    def is_admin(self):
        return self.user_type == UserTypeEnum.ADMIN

    @property
    def is_active(self):
        return self.registration_status != AccountStatusEnum.SUSPENDED

    def to_dict(self):
        """Public representation (never includes the password hash)"""
        return {
            'id': self.id,
            'fullName': self.full_name,
            'email': self.email,
            'userType': self.user_type.value,
            'registrationStatus': self.registration_status.value if self.registration_status else None,
            'emailVerified': bool(self.email_verified),
            'school': self.school,
            'schoolId': self.school_id,
            'dateOfBirth': self.date_of_birth,
            'phoneNumber': self.phone_number,
            'candidateNumber': self.candidate_number,
            'examLevel': self.exam_level,
            'examCenter': self.exam_center,
            'centerCode': self.center_code,
            'subjects': self.subjects or [],
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
            'lastLogin': isoformat(self.last_login),
        }

    def __repr__(self):
        return f'<User {self.email} ({self.user_type.value})>'


# ===== AUTH TOKENS =====
class RefreshToken(Base):
    """Long-lived refresh token, rotated on every use"""
    __tablename__ = 'refresh_tokens'

    token = Column(String(128), primary_key=True)
    user_id = Column(String(64), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    issued_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)

    user = relationship("User", back_populates="refresh_tokens")

    @property
    def is_expired(self):
        return self.expires_at < datetime.utcnow()

    def __repr__(self):
        return f'<RefreshToken {self.user_id} expires {self.expires_at}>'


class RevokedToken(Base):
    """Access tokens presented at logout"""
    __tablename__ = 'revoked_tokens'

    token = Column(String(255), primary_key=True)
    user_id = Column(String(64), index=True)
    revoked_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<RevokedToken {self.user_id}>'
