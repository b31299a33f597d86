"""
Admin Helper Functions
Audit trail recording, audit statistics, system setting validation,
user activity tracking and system health checks
"""

import re
import time
import shutil
import logging
from datetime import datetime, timedelta
from flask import request, has_request_context
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from admin_models import (AuditLog, SystemSetting, UserActivity, SystemHealthSnapshot, CATEGORY_SCOPES,
                          AUDIT_CATEGORIES, AUDIT_SEVERITIES, AUDIT_STATUSES, ACTIVITY_TYPES)
from api_helpers import client_ip
from auth_helpers import issue_access_token, verify_access_token
from config import DEFAULT_SECRET_KEY
from models import RefreshToken, generate_id, random_code
from notification_email import is_email_configured

logger = logging.getLogger(__name__)

TIME_RANGES = {
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
}


# ===== AUDIT TRAIL =====

def record_audit(session_db, user, action, category, description, resource=None,
                 severity='low', status='success', changes=None, metadata=None, request_info=True):
    """
    Add an audit entry to the caller's session (committed with the caller's work).
    `user` may be None for anonymous actions such as failed logins.
    """
    ip_address = 'unknown'
    user_agent = 'Unknown'
    if request_info and has_request_context():
        ip_address = client_ip()
        user_agent = request.headers.get('User-Agent', 'Unknown')

    entry = AuditLog(
        id=generate_id('LOG'),
        timestamp=datetime.utcnow(),
        user_id=user.id if user is not None else None,
        user_type=user.user_type.value if user is not None else 'unknown',
        user_name=user.full_name if user is not None else 'Unknown User',
        action=action,
        category=category,
        severity=severity,
        status=status,
        resource=resource or {},
        details={
            'description': description,
            'changes': changes,
            'metadata': metadata or {},
            'ipAddress': ip_address,
            'userAgent': user_agent,
            'sessionId': f"session-{random_code(6).lower()}",
        },
        impact={
            'scope': CATEGORY_SCOPES.get(category, 'system'),
            'riskLevel': severity,
        },
        compliance={
            'gdprRelevant': category in ('user_management', 'data_access'),
            'retentionPeriod': 2555 if category == 'security' else 1095,
            'dataClassification': 'restricted' if severity == 'critical'
            else 'confidential' if severity == 'high' else 'internal',
        },
    )
    session_db.add(entry)
    logger.debug(f"Audit {action} ({category}) by {entry.user_id}")
    return entry


def audit_statistics(logs, time_range='24h', now=None):
    """Counts over the logs inside the time range"""
    since = (now or datetime.utcnow()) - TIME_RANGES.get(time_range, TIME_RANGES['24h'])
    recent = [log for log in logs if log.timestamp and log.timestamp > since]
    return {
        'totalEvents': len(recent),
        'byCategory': {c: sum(1 for l in recent if l.category == c) for c in AUDIT_CATEGORIES},
        'bySeverity': {s: sum(1 for l in recent if l.severity == s) for s in AUDIT_SEVERITIES},
        'byStatus': {s: sum(1 for l in recent if l.status == s) for s in AUDIT_STATUSES},
        'uniqueUsers': len({l.user_id for l in recent}),
        'failedLogins': sum(1 for l in recent if l.action == 'LOGIN_FAILED'),
        'securityEvents': sum(1 for l in recent if l.category == 'security' or l.severity == 'critical'),
    }


# ===== SYSTEM SETTINGS =====

def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_setting_value(setting, value):
    """
    Check a new value against the setting's type and rules.
    Returns:
        error message, or None when valid
    """
    rules = setting.validation_rules or {}

    if rules.get('required') and value in (None, ''):
        return 'Value is required'

    data_type = setting.data_type
    if data_type == 'number':
        if not _is_number(value):
            return 'Value must be a number'
        if rules.get('min') is not None and value < rules['min']:
            return f"Value must be at least {rules['min']}"
        if rules.get('max') is not None and value > rules['max']:
            return f"Value must be at most {rules['max']}"
    elif data_type == 'string':
        if not isinstance(value, str):
            return 'Value must be a string'
        if rules.get('pattern') and not re.search(rules['pattern'], value):
            return 'Value does not match required pattern'
    elif data_type == 'boolean':
        if not isinstance(value, bool):
            return 'Value must be a boolean'
    elif data_type == 'array':
        if not isinstance(value, list):
            return 'Value must be an array'
    elif data_type == 'object':
        if not isinstance(value, dict):
            return 'Value must be an object'

    allowed = rules.get('allowedValues')
    if allowed and value not in allowed:
        return f"Value must be one of: {', '.join(str(v) for v in allowed)}"
    return None


def relative_time(moment, now=None):
    """'15m ago' style label"""
    if moment is None:
        return ''
    seconds = max(0, int(((now or datetime.utcnow()) - moment).total_seconds()))
    if seconds < 60:
        return 'just now'
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


def seed_settings(session_db, defaults):
    """Insert any default setting missing from the database"""
    existing = {s.id for s in session_db.query(SystemSetting.id)}
    added = 0
    for item in defaults:
        setting_id = f"{item['category']}.{item['key']}"
        if setting_id in existing:
            continue
        session_db.add(SystemSetting(
            id=setting_id,
            category=item['category'],
            key=item['key'],
            value=item['value'],
            data_type=item['dataType'],
            description=item['description'],
            is_editable=item['isEditable'],
            requires_restart=item['requiresRestart'],
            validation_rules=item.get('validationRules'),
        ))
        added += 1
    return added


def setting_value(session_db, setting_id, default=None):
    setting = session_db.get(SystemSetting, setting_id)
    return setting.value if setting is not None else default


# ===== USER ACTIVITY =====

ACTIVITY_TIME_RANGES = {
    '1h': timedelta(hours=1),
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
}
BASE_ACTIVITY_RISK = {'login': 10, 'logout': 5, 'action': 20, 'download': 15, 'upload': 25}
HIGH_RISK_SCORE = 50
TOP_USERS_LIMIT = 10


def activity_risk_score(activity_type, location, device, now=None):
    """Heuristic 0-100 risk for a tracked activity"""
    now = now or datetime.utcnow()
    score = BASE_ACTIVITY_RISK.get(activity_type, 5)
    ip_address = str((location or {}).get('ipAddress') or '')
    if not ip_address.startswith('192.168'):
        score += 10
    if (device or {}).get('isMobile'):
        score += 5
    if now.hour < 6 or now.hour > 22:
        score += 15
    return min(score, 100)


def device_info(user_agent):
    agent = user_agent or ''
    mobile = 'Mobile' in agent or 'Android' in agent or 'iPhone' in agent
    return {
        'type': 'mobile' if mobile else 'desktop',
        'isMobile': mobile,
        'userAgent': agent or 'Unknown',
    }


def _average(values):
    values = [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    return round(sum(values) / len(values)) if values else 0


def activity_statistics(activities):
    performance = [a.performance or {} for a in activities]
    return {
        'totalActivities': len(activities),
        'uniqueUsers': len({a.user_id for a in activities}),
        'totalSessions': len({a.session_id for a in activities if a.session_id}),
        'byActivityType': {t: n for t, n in ((t, sum(1 for a in activities if a.activity_type == t))
                                             for t in ACTIVITY_TYPES) if n},
        'byUserType': {t: n for t, n in ((t, sum(1 for a in activities if a.user_type == t))
                                         for t in ('student', 'teacher', 'examiner', 'admin')) if n},
        'byDevice': {
            'desktop': sum(1 for a in activities if not a.is_mobile),
            'mobile': sum(1 for a in activities if a.is_mobile),
        },
        'security': {
            'highRiskActivities': sum(1 for a in activities if (a.risk_score or 0) > HIGH_RISK_SCORE),
            'anomaliesDetected': sum(len(a.anomalies or []) for a in activities),
            'flaggedActivities': sum(1 for a in activities if a.flags),
        },
        'performance': {
            'averageLoadTime': _average([p.get('loadTime') for p in performance]),
            'averageResponseTime': _average([p.get('responseTime') for p in performance]),
        },
    }


def activity_sessions(activities):
    """Group activities by session, most recent session first"""
    sessions = {}
    for activity in sorted(activities, key=lambda a: a.timestamp):
        if not activity.session_id:
            continue
        entry = sessions.setdefault(activity.session_id, {
            'sessionId': activity.session_id,
            'userId': activity.user_id,
            'userName': activity.user_name,
            'startTime': activity.timestamp.isoformat(),
            'activities': 0,
            'pagesVisited': [],
        })
        entry['lastActivity'] = activity.timestamp.isoformat()
        entry['activities'] += 1
        if activity.activity_type == 'page_view' and activity.resource \
                and activity.resource not in entry['pagesVisited']:
            entry['pagesVisited'].append(activity.resource)
    return sorted(sessions.values(), key=lambda s: s['lastActivity'], reverse=True)


def top_users(activities, limit=TOP_USERS_LIMIT):
    users = {}
    for activity in activities:
        entry = users.setdefault(activity.user_id, {
            'userId': activity.user_id,
            'userName': activity.user_name,
            'userType': activity.user_type,
            'activityCount': 0,
            'riskScore': 0,
        })
        entry['activityCount'] += 1
        entry['riskScore'] = max(entry['riskScore'], activity.risk_score or 0)
    return sorted(users.values(), key=lambda u: u['activityCount'], reverse=True)[:limit]


# ===== SYSTEM HEALTH =====

PROCESS_STARTED_AT = time.time()
HEALTH_HISTORY_RANGES = {
    '1h': timedelta(hours=1),
    '6h': timedelta(hours=6),
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
}
SLOW_RESPONSE_MS = 100
VULNERABILITY_PENALTIES = {'critical': 20, 'high': 15, 'medium': 10, 'low': 5}


def _elapsed_ms(started):
    return round((time.perf_counter() - started) * 1000, 2)


def check_database(session_db):
    started = time.perf_counter()
    try:
        session_db.execute(text('SELECT 1'))
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        return {'status': 'offline', 'responseTime': _elapsed_ms(started), 'error': str(e)}
    return {'status': 'online', 'responseTime': _elapsed_ms(started)}


def check_authentication():
    """Sign and verify a token with the live key"""
    started = time.perf_counter()
    user_id, error = verify_access_token(issue_access_token('health-check'))
    status = 'online' if user_id == 'health-check' and error is None else 'offline'
    return {'status': status, 'responseTime': _elapsed_ms(started)}


def check_email_service():
    if is_email_configured():
        return {'status': 'online', 'responseTime': 0}
    return {'status': 'degraded', 'responseTime': 0, 'error': 'SMTP is not configured'}


def disk_usage_percent(path='.'):
    usage = shutil.disk_usage(path)
    return round(usage.used / usage.total * 100, 1) if usage.total else 0


def performance_metrics(session_db, now=None):
    now = now or datetime.utcnow()
    minute_ago = now - timedelta(minutes=1)
    requests = (session_db.query(UserActivity).filter(UserActivity.timestamp >= minute_ago).count()
                + session_db.query(AuditLog).filter(AuditLog.timestamp >= minute_ago).count())
    return {
        'uptime': int(time.time() - PROCESS_STARTED_AT),
        'activeConnections': session_db.query(RefreshToken).filter(RefreshToken.expires_at > now).count(),
        'requestsPerMinute': requests,
        'diskUsage': disk_usage_percent(),
    }


def security_status(session_db, config, now=None):
    now = now or datetime.utcnow()
    day_ago = now - timedelta(hours=24)
    vulnerabilities = []
    if config.get('SECRET_KEY') in (None, '', DEFAULT_SECRET_KEY):
        vulnerabilities.append({'severity': 'high', 'issue': 'Default secret key in use',
                                'recommendation': 'Set the SECRET_KEY environment variable'})
    if config.get('DEBUG'):
        vulnerabilities.append({'severity': 'medium', 'issue': 'Debug mode is enabled',
                                'recommendation': 'Disable debug mode in production'})
    return {
        'failedLoginAttempts': session_db.query(AuditLog).filter(
            AuditLog.action == 'LOGIN_FAILED', AuditLog.timestamp >= day_ago).count(),
        'suspiciousActivities': session_db.query(UserActivity).filter(
            UserActivity.risk_score > HIGH_RISK_SCORE, UserActivity.timestamp >= day_ago).count(),
        'vulnerabilities': vulnerabilities,
    }


def error_summary(session_db, now=None):
    """Failed audit entries from the last 24 hours grouped by category and action"""
    day_ago = (now or datetime.utcnow()) - timedelta(hours=24)
    failures = session_db.query(AuditLog).filter(AuditLog.status == 'failure',
                                                 AuditLog.timestamp >= day_ago).all()
    grouped = {}
    for log in failures:
        key = (log.category, log.action)
        entry = grouped.setdefault(key, {'category': log.category, 'action': log.action,
                                         'count': 0, 'lastOccurrence': None})
        entry['count'] += 1
        stamp = log.timestamp.isoformat() if log.timestamp else None
        if stamp and (entry['lastOccurrence'] is None or stamp > entry['lastOccurrence']):
            entry['lastOccurrence'] = stamp
    return sorted(grouped.values(), key=lambda e: e['count'], reverse=True)


def health_score(services, performance, security, errors):
    score = 100
    for service in services.values():
        if service['status'] == 'offline':
            score -= 20
        elif service['status'] == 'degraded':
            score -= 10
        if service.get('responseTime', 0) > SLOW_RESPONSE_MS:
            score -= 5
    if performance.get('diskUsage', 0) > 90:
        score -= 10
    if security['failedLoginAttempts'] > 50:
        score -= 10
    if security['suspiciousActivities'] > 10:
        score -= 15
    for vulnerability in security['vulnerabilities']:
        score -= VULNERABILITY_PENALTIES.get(vulnerability['severity'], 5)
    score -= 5 * len(errors)
    return max(0, min(100, score))


def health_status(score, maintenance=False):
    if maintenance:
        return 'maintenance'
    if score >= 90:
        return 'healthy'
    if score >= 70:
        return 'warning'
    return 'critical'


def health_recommendations(services, performance, security):
    recommendations = []
    for name, service in services.items():
        if service['status'] != 'online':
            recommendations.append({'priority': 'high', 'category': 'services',
                                    'message': f"{name} is {service['status']}"})
    if performance.get('diskUsage', 0) > 90:
        recommendations.append({'priority': 'medium', 'category': 'performance',
                                'message': 'Disk usage is above 90%'})
    if security['failedLoginAttempts'] > 50:
        recommendations.append({'priority': 'high', 'category': 'security',
                                'message': 'Unusually high number of failed logins'})
    for vulnerability in security['vulnerabilities']:
        recommendations.append({'priority': vulnerability['severity'], 'category': 'security',
                                'message': vulnerability['recommendation']})
    return recommendations


def system_health(session_db, config, now=None):
    """Run every check and score the result"""
    now = now or datetime.utcnow()
    services = {
        'database': check_database(session_db),
        'authentication': check_authentication(),
        'emailService': check_email_service(),
    }
    performance = performance_metrics(session_db, now)
    security = security_status(session_db, config, now)
    errors = error_summary(session_db, now)
    score = health_score(services, performance, security, errors)
    maintenance = bool(setting_value(session_db, 'system.maintenance_mode', False))
    return {
        'timestamp': now.isoformat(),
        'status': health_status(score, maintenance),
        'healthScore': score,
        'services': services,
        'performance': performance,
        'security': security,
        'errors': errors,
        'maintenance': {'enabled': maintenance},
        'summary': {
            'servicesOnline': sum(1 for s in services.values() if s['status'] == 'online'),
            'totalServices': len(services),
            'criticalIssues': sum(1 for s in services.values() if s['status'] == 'offline')
            + sum(1 for v in security['vulnerabilities'] if v['severity'] in ('critical', 'high')),
            'errorCount': sum(e['count'] for e in errors),
        },
        'recommendations': health_recommendations(services, performance, security),
    }


def record_health_snapshot(session_db, health):
    snapshot = SystemHealthSnapshot(
        id=generate_id('HEALTH'),
        status=health['status'],
        health_score=health['healthScore'],
        services=health['services'],
        performance=health['performance'],
    )
    session_db.add(snapshot)
    return snapshot


def health_trend(points):
    """Direction of the health score across stored snapshots, oldest first"""
    if len(points) < 2:
        return 'stable'
    change = points[-1]['healthScore'] - points[0]['healthScore']
    if change > 5:
        return 'improving'
    if change < -5:
        return 'declining'
    return 'stable'
