"""
Admin Models
Audit trail, typed system settings with change history, tracked user
activity and system health snapshots
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON
from datetime import datetime
from models import Base, isoformat

AUDIT_CATEGORIES = (
    'authentication', 'user_management', 'data_access', 'system_config',
    'security', 'examination', 'marking', 'grading', 'results', 'certificates',
)
AUDIT_SEVERITIES = ('low', 'medium', 'high', 'critical')
AUDIT_STATUSES = ('success', 'failure', 'warning')

# Impact scope per category
CATEGORY_SCOPES = {
    'authentication': 'security',
    'security': 'security',
    'user_management': 'system',
    'system_config': 'system',
    'data_access': 'data',
    'examination': 'data',
    'marking': 'data',
    'grading': 'data',
    'results': 'data',
    'certificates': 'data',
}

SETTING_DATA_TYPES = ('string', 'number', 'boolean', 'object', 'array')

DEFAULT_SETTINGS = [
    {'category': 'authentication', 'key': 'session_timeout', 'value': 30, 'dataType': 'number',
     'description': 'Session timeout in minutes', 'isEditable': True, 'requiresRestart': False,
     'validationRules': {'required': True, 'min': 5, 'max': 480}},
    {'category': 'authentication', 'key': 'password_policy',
     'value': {'minLength': 8, 'requireUppercase': True, 'requireLowercase': True,
               'requireNumbers': True, 'requireSpecialChars': True, 'maxAge': 90},
     'dataType': 'object', 'description': 'Password policy configuration',
     'isEditable': True, 'requiresRestart': False},
    {'category': 'authentication', 'key': 'max_login_attempts', 'value': 5, 'dataType': 'number',
     'description': 'Maximum failed login attempts before account lockout',
     'isEditable': True, 'requiresRestart': False,
     'validationRules': {'required': True, 'min': 3, 'max': 10}},
    {'category': 'system', 'key': 'maintenance_mode', 'value': False, 'dataType': 'boolean',
     'description': 'Enable maintenance mode', 'isEditable': True, 'requiresRestart': False},
    {'category': 'system', 'key': 'system_timezone', 'value': 'Africa/Douala', 'dataType': 'string',
     'description': 'System timezone', 'isEditable': True, 'requiresRestart': True,
     'validationRules': {'required': True}},
    {'category': 'email', 'key': 'smtp_host', 'value': 'smtp.gce.cm', 'dataType': 'string',
     'description': 'SMTP server hostname', 'isEditable': True, 'requiresRestart': True,
     'validationRules': {'required': True}},
    {'category': 'email', 'key': 'smtp_port', 'value': 587, 'dataType': 'number',
     'description': 'SMTP server port', 'isEditable': True, 'requiresRestart': True,
     'validationRules': {'required': True, 'min': 1, 'max': 65535}},
    {'category': 'email', 'key': 'email_from_address', 'value': 'noreply@gce.cm', 'dataType': 'string',
     'description': 'Default from email address', 'isEditable': True, 'requiresRestart': False,
     'validationRules': {'required': True, 'pattern': r'^[^@]+@[^@]+\.[^@]+$'}},
    {'category': 'email', 'key': 'email_notifications_enabled', 'value': True, 'dataType': 'boolean',
     'description': 'Enable email notifications', 'isEditable': True, 'requiresRestart': False},
    {'category': 'security', 'key': 'encryption_algorithm', 'value': 'AES-256-GCM', 'dataType': 'string',
     'description': 'Encryption algorithm for sensitive data', 'isEditable': False, 'requiresRestart': True,
     'validationRules': {'allowedValues': ['AES-256-GCM', 'AES-256-CBC']}},
    {'category': 'security', 'key': 'audit_log_retention', 'value': 2555, 'dataType': 'number',
     'description': 'Audit log retention period in days', 'isEditable': True, 'requiresRestart': False,
     'validationRules': {'required': True, 'min': 365, 'max': 3650}},
    {'category': 'security', 'key': 'ip_whitelist', 'value': [], 'dataType': 'array',
     'description': 'IP addresses allowed to access admin functions',
     'isEditable': True, 'requiresRestart': False},
    {'category': 'grading', 'key': 'double_marking_threshold', 'value': 10, 'dataType': 'number',
     'description': 'Discrepancy percentage above which double markings are significant',
     'isEditable': True, 'requiresRestart': False,
     'validationRules': {'required': True, 'min': 1, 'max': 50}},
    {'category': 'grading', 'key': 'default_exam_level', 'value': 'O Level', 'dataType': 'string',
     'description': 'Grade table used when a marking has no level', 'isEditable': True,
     'requiresRestart': False, 'validationRules': {'allowedValues': ['O Level', 'A Level']}},
]


class AuditLog(Base):
    """Audit trail entry"""
    __tablename__ = 'audit_logs'

    id = Column(String(64), primary_key=True)  # LOG-{ts}-{rand}
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    user_id = Column(String(64), index=True)
    user_type = Column(String(20))
    user_name = Column(String(200))
    action = Column(String(80), nullable=False)
    category = Column(String(30), nullable=False)
    severity = Column(String(10), default='low')
    status = Column(String(10), default='success')
    resource = Column(JSON, default=dict)
    details = Column(JSON, default=dict)
    impact = Column(JSON, default=dict)
    compliance = Column(JSON, default=dict)

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': isoformat(self.timestamp),
            'userId': self.user_id,
            'userType': self.user_type,
            'userName': self.user_name,
            'action': self.action,
            'category': self.category,
            'severity': self.severity,
            'status': self.status,
            'resource': self.resource or {},
            'details': self.details or {},
            'impact': self.impact or {},
            'compliance': self.compliance or {},
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.status}>"


class SystemSetting(Base):
    """Typed configuration value editable by administrators"""
    __tablename__ = 'system_settings'

    id = Column(String(120), primary_key=True)  # {category}.{key}
    category = Column(String(40), nullable=False, index=True)
    key = Column(String(80), nullable=False)
    value = Column(JSON)
    data_type = Column(String(10), nullable=False)
    description = Column(Text)
    is_editable = Column(Boolean, default=True)
    requires_restart = Column(Boolean, default=False)
    validation_rules = Column(JSON)

    version = Column(Integer, default=1)
    modified_by = Column(String(64), default='system')
    last_modified = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'key': self.key,
            'value': self.value,
            'dataType': self.data_type,
            'description': self.description,
            'isEditable': bool(self.is_editable),
            'requiresRestart': bool(self.requires_restart),
            'validationRules': self.validation_rules,
            'metadata': {
                'lastModified': isoformat(self.last_modified),
                'modifiedBy': self.modified_by,
                'version': self.version,
            },
        }

    def __repr__(self):
        return f"<SystemSetting {self.id}={self.value!r}>"


class SystemSettingHistory(Base):
    """Previous value of a setting"""
    __tablename__ = 'system_setting_history'

    id = Column(String(64), primary_key=True)  # HIST-{ts}-{rand}
    category = Column(String(40), nullable=False, index=True)
    key = Column(String(80), nullable=False)
    old_value = Column(JSON)
    new_value = Column(JSON)
    changed_by = Column(String(64))
    changed_at = Column(DateTime, default=datetime.utcnow)
    reason = Column(Text)

    def to_dict(self):
        return {
            'id': self.id,
            'category': self.category,
            'key': self.key,
            'oldValue': self.old_value,
            'newValue': self.new_value,
            'changedBy': self.changed_by,
            'changedAt': isoformat(self.changed_at),
            'reason': self.reason,
        }


ACTIVITY_TYPES = ('login', 'logout', 'page_view', 'action', 'download', 'upload', 'search', 'api_call')


class UserActivity(Base):
    """One tracked user action with its device, location and risk score"""
    __tablename__ = 'user_activities'

    id = Column(String(64), primary_key=True)  # ACT-{ts}-{rand}
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    user_name = Column(String(200))
    user_type = Column(String(20))
    session_id = Column(String(64), index=True)

    activity_type = Column(String(20), nullable=False)
    action = Column(String(80))
    resource = Column(String(255))
    details = Column(JSON, default=dict)
    duration = Column(Integer)  # seconds

    location = Column(JSON, default=dict)
    device = Column(JSON, default=dict)
    performance = Column(JSON, default=dict)

    risk_score = Column(Integer, default=0)
    anomalies = Column(JSON, default=list)
    flags = Column(JSON, default=list)

    @property
    def is_mobile(self):
        return bool((self.device or {}).get('isMobile'))

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'userName': self.user_name,
            'userType': self.user_type,
            'sessionId': self.session_id,
            'activity': {
                'type': self.activity_type,
                'action': self.action,
                'resource': self.resource,
                'details': self.details or {},
            },
            'timestamp': isoformat(self.timestamp),
            'duration': self.duration,
            'location': self.location or {},
            'device': self.device or {},
            'performance': self.performance or {},
            'security': {
                'riskScore': self.risk_score,
                'anomalies': self.anomalies or [],
                'flags': self.flags or [],
            },
        }

    def __repr__(self):
        return f"<UserActivity {self.user_id} {self.activity_type} risk={self.risk_score}>"


class SystemHealthSnapshot(Base):
    """Health check result kept for the history view"""
    __tablename__ = 'system_health_snapshots'

    id = Column(String(64), primary_key=True)  # HEALTH-{ts}-{rand}
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    status = Column(String(20), nullable=False)
    health_score = Column(Integer, nullable=False)
    services = Column(JSON, default=dict)
    performance = Column(JSON, default=dict)

    def history_point(self):
        services = (self.services or {}).values()
        times = [s.get('responseTime', 0) for s in services]
        return {
            'timestamp': isoformat(self.timestamp),
            'status': self.status,
            'healthScore': self.health_score,
            'responseTime': round(sum(times) / len(times)) if times else 0,
            'activeConnections': (self.performance or {}).get('activeConnections', 0),
        }
