"""
Admin Routes
Dashboard figures, audit trail, system configuration, user activity,
system health and the statistics dashboard
"""
from flask import current_app, request
from flask_login import current_user
from datetime import datetime, timedelta
from dateutil import parser as date_parser
import logging

from db_single import get_session
from models import User, UserTypeEnum, AccountStatusEnum, generate_id, random_code
from admin_models import (AuditLog, SystemSetting, SystemSettingHistory, UserActivity, SystemHealthSnapshot,
                          DEFAULT_SETTINGS, AUDIT_CATEGORIES, AUDIT_SEVERITIES, AUDIT_STATUSES, ACTIVITY_TYPES)
from examination_models import ExamSchedule, IncidentReport
from registration_models import StudentRegistration
from marking_models import MarkingScore, DoubleMarkingVerification, ScriptAllocation
from results_models import ExamResult, PublicationBatch, Certificate
from validators import missing_fields, parse_bool, parse_int
from api_helpers import (api_success, api_error, server_error, get_json_body, query_arg, paginate, round_half_up,
                         count_by, client_ip)
from admin_helpers import (record_audit, audit_statistics, validate_setting_value, relative_time,
                           setting_value, TIME_RANGES, ACTIVITY_TIME_RANGES, HEALTH_HISTORY_RANGES, HIGH_RISK_SCORE,
                           activity_risk_score, device_info, activity_statistics, activity_sessions, top_users,
                           system_health, record_health_snapshot, health_trend)
from marking_helpers import is_overdue
from results_helpers import results_overview

logger = logging.getLogger(__name__)

DASHBOARD_TYPES = ('stats', 'activity', 'alerts')
RECENT_ACTIVITY_LIMIT = 10
HISTORY_LIMIT = 50


def _parse_date(value):
    try:
        return date_parser.parse(value).replace(tzinfo=None)
    except (ValueError, OverflowError):
        return None


def _dashboard_stats(session_db, now):
    users = session_db.query(User).all()
    by_type = {t: sum(1 for u in users if u.user_type == t) for t in UserTypeEnum}
    schedules = session_db.query(ExamSchedule).all()
    results = session_db.query(ExamResult).all()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    logins = session_db.query(AuditLog).filter(AuditLog.action == 'LOGIN_SUCCESS',
                                               AuditLog.timestamp >= midnight).count()
    maintenance = setting_value(session_db, 'system.maintenance_mode', False)
    return {
        'totalUsers': len(users),
        'totalStudents': by_type[UserTypeEnum.STUDENT],
        'totalTeachers': by_type[UserTypeEnum.TEACHER],
        'totalExaminers': by_type[UserTypeEnum.EXAMINER],
        'totalAdmins': by_type[UserTypeEnum.ADMIN],
        'pendingAccounts': sum(1 for u in users if u.registration_status == AccountStatusEnum.PENDING),
        'totalSchools': len({u.school_id for u in users if u.school_id}),
        'activeExaminations': sum(1 for s in schedules if s.status in ('scheduled', 'in_progress')),
        'completedExams': sum(1 for s in schedules if s.status == 'completed'),
        'totalRegistrations': session_db.query(StudentRegistration).count(),
        'pendingRegistrations': session_db.query(StudentRegistration).filter(
            StudentRegistration.status == 'submitted').count(),
        'pendingVerifications': session_db.query(MarkingScore).filter(MarkingScore.status == 'submitted').count(),
        'pendingResults': sum(1 for r in results if not r.is_published),
        'publishedResults': sum(1 for r in results if r.is_published),
        'todayLogins': logins,
        'systemStatus': 'Maintenance' if maintenance else 'Operational',
    }


def _recent_activity(session_db, now):
    logs = session_db.query(AuditLog).order_by(AuditLog.timestamp.desc()).limit(RECENT_ACTIVITY_LIMIT).all()
    return [{
        'id': log.id,
        'action': log.action,
        'user': log.user_name,
        'details': (log.details or {}).get('description'),
        'time': relative_time(log.timestamp, now),
        'timestamp': log.timestamp.isoformat() if log.timestamp else None,
    } for log in logs]


def _alerts(session_db, now):
    """Operational alerts derived from current records"""
    alerts = []
    day_ago = now - timedelta(hours=24)

    failed = session_db.query(AuditLog).filter(AuditLog.action == 'LOGIN_FAILED',
                                               AuditLog.timestamp >= day_ago).all()
    if failed:
        addresses = sorted({(log.details or {}).get('ipAddress') for log in failed} - {None})
        alerts.append({'level': 'error', 'category': 'security',
                       'message': f"{len(failed)} failed login attempts in the last 24 hours",
                       'details': {'ipAddresses': addresses},
                       'timestamp': max(log.timestamp for log in failed).isoformat()})

    critical = session_db.query(AuditLog).filter(AuditLog.severity == 'critical',
                                                 AuditLog.timestamp >= day_ago).count()
    if critical:
        alerts.append({'level': 'error', 'category': 'security',
                       'message': f"{critical} critical audit events in the last 24 hours"})

    overdue = [entry for a in session_db.query(ScriptAllocation).all() for entry in a.allocations or []
               if is_overdue(entry.get('deadline'), entry.get('status'), now)]
    if overdue:
        alerts.append({'level': 'warning', 'category': 'marking',
                       'message': f"{len(overdue)} script allocations are past their marking deadline"})

    escalated = [v for v in session_db.query(DoubleMarkingVerification).all()
                 if (v.escalation or {}).get('isEscalated') and (v.verification or {}).get('status') != 'resolved']
    if escalated:
        alerts.append({'level': 'warning', 'category': 'marking',
                       'message': f"{len(escalated)} double-marking discrepancies escalated for review"})

    open_incidents = [i for i in session_db.query(IncidentReport).all()
                      if i.resolution_status in ('open', 'investigating')]
    if open_incidents:
        alerts.append({'level': 'warning', 'category': 'examination',
                       'message': f"{len(open_incidents)} examination incidents awaiting resolution"})

    batches = session_db.query(PublicationBatch).filter(PublicationBatch.status == 'published',
                                                        PublicationBatch.published_at >= day_ago).all()
    for batch in batches:
        alerts.append({'level': 'success', 'category': 'results',
                       'message': f"{batch.batch_name} published ({len(batch.result_ids or [])} results)",
                       'timestamp': batch.published_at.isoformat()})

    if setting_value(session_db, 'system.maintenance_mode', False):
        alerts.append({'level': 'info', 'category': 'system', 'message': 'Maintenance mode is enabled'})

    for index, alert in enumerate(alerts, 1):
        alert['id'] = index
        alert.setdefault('timestamp', now.isoformat())
        alert['time'] = relative_time(datetime.fromisoformat(alert['timestamp']), now)
    return alerts


def _filtered_audit_logs(session_db):
    query = session_db.query(AuditLog)
    for arg, column in (('category', AuditLog.category), ('severity', AuditLog.severity),
                        ('status', AuditLog.status), ('userId', AuditLog.user_id)):
        if query_arg(arg):
            query = query.filter(column == query_arg(arg))
    if query_arg('action'):
        query = query.filter(AuditLog.action.ilike(f"%{query_arg('action')}%"))
    start = _parse_date(query_arg('startDate')) if query_arg('startDate') else None
    if start:
        query = query.filter(AuditLog.timestamp >= start)
    end = _parse_date(query_arg('endDate')) if query_arg('endDate') else None
    if end:
        query = query.filter(AuditLog.timestamp <= end)
    return query.order_by(AuditLog.timestamp.desc()).all()


def _published_at(result):
    stamp = (result.publication or {}).get('publishedAt')
    try:
        return datetime.fromisoformat(stamp) if stamp else None
    except (TypeError, ValueError):
        return None


def _rate(part, whole):
    return round_half_up(part / whole * 100) if whole else 0


def _statistics_overview(session_db, now):
    users = session_db.query(User).all()
    day_ago = now - timedelta(hours=24)
    active = {a.user_id for a in session_db.query(UserActivity).filter(UserActivity.timestamp >= day_ago)}
    active |= {u.id for u in users if u.last_login and u.last_login >= day_ago}
    results = session_db.query(ExamResult).all()
    published = sum(1 for r in results if r.is_published)
    certificates = session_db.query(Certificate).all()
    issued = sum(1 for c in certificates if c.status in ('issued', 'delivered'))
    activities = session_db.query(UserActivity).all()
    first = min((a.timestamp for a in activities), default=None)
    days = max(1, (now - first).days + 1) if first else 1
    return {
        'users': {
            'total': len(users),
            'active24h': len(active),
            'byType': {t.value: sum(1 for u in users if u.user_type == t) for t in UserTypeEnum},
        },
        'examinations': {
            'totalResults': len(results),
            'published': published,
            'pending': len(results) - published,
            'publishRate': _rate(published, len(results)),
        },
        'certificates': {
            'total': len(certificates),
            'issued': issued,
            'pending': len(certificates) - issued,
            'issuanceRate': _rate(issued, len(certificates)),
        },
        'activity': {
            'recent': sum(1 for a in activities if a.timestamp >= now - timedelta(hours=1)),
            'total': len(activities),
            'averageDaily': round_half_up(len(activities) / days),
        },
    }


def _statistics_performance(session_db, now):
    results = [r for r in session_db.query(ExamResult).all() if r.is_published]
    overview = results_overview(results)
    by_level = {}
    for level in ('O Level', 'A Level'):
        members = [r for r in results if r.exam_level == level]
        summary = results_overview(members)
        by_level[level] = {'totalResults': summary['totalResults'], 'averagePerformance': summary['averagePerformance'],
                           'passRate': summary['passRate']}
    trends = []
    for offset in range(6, -1, -1):
        day = (now - timedelta(days=offset)).date()
        members = [r for r in results if _published_at(r) and _published_at(r).date() == day]
        summary = results_overview(members)
        trends.append({'date': day.isoformat(), 'results': len(members),
                       'averagePerformance': summary['averagePerformance'], 'passRate': summary['passRate']})
    return {
        'averagePerformance': overview['averagePerformance'],
        'passRate': overview['passRate'],
        'excellenceRate': overview['excellenceRate'],
        'byLevel': by_level,
        'trends': trends,
    }


def _statistics_security(session_db, now):
    day_ago = now - timedelta(hours=24)
    failed = session_db.query(AuditLog).filter(AuditLog.action == 'LOGIN_FAILED',
                                               AuditLog.timestamp >= day_ago).all()
    activities = session_db.query(UserActivity).filter(UserActivity.timestamp >= day_ago).all()
    high_risk = sum(1 for a in activities if (a.risk_score or 0) > 70)
    suspicious = sum(1 for a in activities if (a.risk_score or 0) > HIGH_RISK_SCORE)
    addresses = {(a.location or {}).get('ipAddress') for a in activities}
    addresses |= {(log.details or {}).get('ipAddress') for log in failed}
    score = max(0, 100 - min(len(failed), 20) - 5 * high_risk - 2 * suspicious)
    alerts = []
    if len(failed) > 10:
        alerts.append({'level': 'warning', 'message': f"{len(failed)} failed login attempts in the last 24 hours"})
    if high_risk:
        alerts.append({'level': 'warning', 'message': f"{high_risk} high-risk activities detected"})
    return {
        'failedLogins24h': len(failed),
        'highRiskActivities': high_risk,
        'suspiciousActivities': suspicious,
        'uniqueIPs': len(addresses - {None, ''}),
        'securityScore': score,
        'alerts': alerts,
    }


def _statistics_activity(session_db, now):
    day_ago = now - timedelta(hours=24)
    activities = session_db.query(UserActivity).filter(UserActivity.timestamp >= day_ago).all()
    by_hour = [0] * 24
    for activity in activities:
        by_hour[activity.timestamp.hour] += 1
    return {
        'activityByHour': [{'hour': hour, 'count': count} for hour, count in enumerate(by_hour)],
        'topUsers': top_users(activities, 5),
        'byType': count_by(activities, lambda a: a.activity_type),
    }


def _statistics_alerts(performance, security, health):
    alerts = []
    if security and security['failedLogins24h'] > 10:
        alerts.append({'type': 'security', 'severity': 'high',
                       'message': f"{security['failedLogins24h']} failed logins in the last 24 hours"})
    if health and health['healthScore'] < 90:
        alerts.append({'type': 'system', 'severity': 'medium',
                       'message': f"System health score is {health['healthScore']}"})
    if performance and performance['byLevel'] and performance['passRate'] < 70 \
            and any(level['totalResults'] for level in performance['byLevel'].values()):
        alerts.append({'type': 'performance', 'severity': 'medium',
                       'message': f"Overall pass rate is {performance['passRate']}%"})
    return alerts


def register_admin_routes(bp, require_roles):
    """Register admin routes"""

    # ==================== DASHBOARD ====================
    @bp.route('/admin/dashboard/stats', methods=['GET'])
    @require_roles('admin', message='Admin access required')
    def admin_dashboard_stats():
        dashboard_type = query_arg('type')
        if dashboard_type and dashboard_type not in DASHBOARD_TYPES:
            return api_error('Invalid dashboard type')

        session_db = get_session()
        try:
            now = datetime.utcnow()
            if dashboard_type == 'stats':
                data = _dashboard_stats(session_db, now)
            elif dashboard_type == 'activity':
                data = _recent_activity(session_db, now)
            elif dashboard_type == 'alerts':
                data = _alerts(session_db, now)
            else:
                data = {
                    'stats': _dashboard_stats(session_db, now),
                    'recentActivity': _recent_activity(session_db, now),
                    'alerts': _alerts(session_db, now),
                }
            return api_success(data, 'Dashboard data retrieved successfully')
        except Exception as e:
            return server_error('Dashboard stats error', e)
        finally:
            session_db.close()

    # ==================== AUDIT LOGS ====================
    @bp.route('/admin/audit-logs', methods=['GET'])
    @require_roles('admin', message='Insufficient permissions to view audit logs')
    def admin_audit_logs():
        time_range = query_arg('timeRange', '24h')
        if time_range not in TIME_RANGES:
            return api_error('Invalid time range')

        session_db = get_session()
        try:
            logs = _filtered_audit_logs(session_db)
            page_items, pagination = paginate(logs, parse_int(query_arg('page'), 1),
                                              parse_int(query_arg('limit'), 50), 'totalLogs')
            data = {'logs': [log.to_dict() for log in page_items], 'pagination': pagination}
            if parse_bool(query_arg('includeStatistics')):
                data['statistics'] = audit_statistics(logs, time_range)
            return api_success(data, 'Audit logs retrieved successfully')
        except Exception as e:
            return server_error('Get audit logs error', e)
        finally:
            session_db.close()

    @bp.route('/admin/audit-logs', methods=['POST'])
    @require_roles('admin', message='Insufficient permissions to record audit logs')
    def admin_record_audit_log():
        data = get_json_body()
        if missing_fields(data, 'action', 'category', 'description'):
            return api_error('Missing required audit information')
        if data['category'] not in AUDIT_CATEGORIES:
            return api_error('Invalid audit category')
        severity = data.get('severity', 'low')
        if severity not in AUDIT_SEVERITIES:
            return api_error('Invalid severity')
        status = data.get('status', 'success')
        if status not in AUDIT_STATUSES:
            return api_error('Invalid status')

        session_db = get_session()
        try:
            actor = session_db.get(User, current_user.id)
            entry = record_audit(session_db, actor, str(data['action']).upper(), data['category'],
                                 data['description'], resource=data.get('resource'), severity=severity,
                                 status=status, changes=data.get('changes'), metadata=data.get('metadata'))
            session_db.commit()
            logger.info(f"Audit entry {entry.id} recorded by {current_user.id}")
            return api_success(entry.to_dict(), 'Audit log recorded successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Record audit log error', e)
        finally:
            session_db.close()

    # ==================== SYSTEM CONFIGURATION ====================
    @bp.route('/admin/system-config', methods=['GET'])
    @require_roles('admin', message='Insufficient permissions to view system configuration')
    def admin_get_system_config():
        category = query_arg('category')
        session_db = get_session()
        try:
            query = session_db.query(SystemSetting)
            if category:
                query = query.filter(SystemSetting.category == category)
            settings = query.order_by(SystemSetting.category, SystemSetting.key).all()

            grouped = {}
            for setting in settings:
                grouped.setdefault(setting.category, []).append(setting.to_dict())
            modified = [s.last_modified for s in settings if s.last_modified]
            data = {
                'configuration': grouped,
                'categories': list(grouped),
                'totalSettings': len(settings),
                'editableSettings': sum(1 for s in settings if s.is_editable),
                'lastModified': max(modified).isoformat() if modified else None,
            }
            if parse_bool(query_arg('includeHistory')):
                history = session_db.query(SystemSettingHistory)
                if category:
                    history = history.filter(SystemSettingHistory.category == category)
                data['changeHistory'] = [h.to_dict() for h in history.order_by(
                    SystemSettingHistory.changed_at.desc()).limit(HISTORY_LIMIT)]
            return api_success(data, 'System configuration retrieved successfully')
        except Exception as e:
            return server_error('Get system configuration error', e)
        finally:
            session_db.close()

    @bp.route('/admin/system-config', methods=['PUT'])
    @require_roles('admin', message='Insufficient permissions to modify system configuration')
    def admin_update_system_config():
        data = get_json_body()
        changes = data.get('changes')
        if not changes or not isinstance(changes, list):
            return api_error('No configuration changes provided')

        session_db = get_session()
        try:
            now = datetime.utcnow()
            results = []
            restart_required = []
            for change in changes:
                setting_id = f"{change.get('category')}.{change.get('key')}"
                setting = session_db.get(SystemSetting, setting_id)
                if setting is None:
                    results.append({'key': setting_id, 'success': False, 'error': 'Configuration key not found'})
                    continue
                if not setting.is_editable:
                    results.append({'key': setting_id, 'success': False, 'error': 'Configuration is not editable'})
                    continue
                value = change.get('value')
                error = validate_setting_value(setting, value)
                if error:
                    results.append({'key': setting_id, 'success': False, 'error': error})
                    continue

                old_value = setting.value
                setting.value = value
                setting.version = (setting.version or 1) + 1
                setting.modified_by = current_user.id
                setting.last_modified = now
                session_db.add(SystemSettingHistory(
                    id=generate_id('HIST'),
                    category=setting.category,
                    key=setting.key,
                    old_value=old_value,
                    new_value=value,
                    changed_by=current_user.id,
                    changed_at=now,
                    reason=data.get('reason'),
                ))
                if setting.requires_restart:
                    restart_required.append(setting_id)
                results.append({'key': setting_id, 'success': True, 'oldValue': old_value, 'newValue': value,
                                'requiresRestart': bool(setting.requires_restart)})

            successful = [r for r in results if r['success']]
            failed = len(results) - len(successful)
            summary = {
                'totalChanges': len(changes),
                'successful': len(successful),
                'failed': failed,
                'requiresRestart': bool(restart_required),
                'restartRequired': restart_required,
            }
            if not successful:
                session_db.rollback()
                return api_error('No configurations were updated', data={'results': results, 'summary': summary})

            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'CONFIG_CHANGED', 'system_config',
                         f"{len(successful)} configuration settings updated",
                         resource={'type': 'system_configuration'}, severity='high',
                         changes={r['key']: {'from': r['oldValue'], 'to': r['newValue']} for r in successful},
                         metadata={'reason': data.get('reason')})
            session_db.commit()
            logger.info(f"System configuration updated by {current_user.id}: {[r['key'] for r in successful]}")

            message = f"{len(successful)} configuration(s) updated successfully"
            if failed:
                message += f", {failed} failed"
            return api_success({'results': results, 'summary': summary}, message)
        except Exception as e:
            session_db.rollback()
            return server_error('Update system configuration error', e)
        finally:
            session_db.close()

    @bp.route('/admin/system-config', methods=['POST'])
    @require_roles('admin', message='Insufficient permissions to reset system configuration')
    def admin_reset_system_config():
        data = get_json_body()
        category = data.get('category')
        keys = data.get('keys')
        if not category and not keys:
            return api_error('Category or specific keys must be specified')

        session_db = get_session()
        try:
            now = datetime.utcnow()
            defaults = {f"{d['category']}.{d['key']}": d['value'] for d in DEFAULT_SETTINGS}
            query = session_db.query(SystemSetting)
            if category:
                query = query.filter(SystemSetting.category == category)
            settings = query.all()
            if isinstance(keys, list):
                settings = [s for s in settings if s.id in keys]

            results = []
            for setting in settings:
                if not setting.is_editable:
                    results.append({'key': setting.id, 'success': False, 'error': 'Configuration is not editable'})
                    continue
                if setting.id not in defaults:
                    results.append({'key': setting.id, 'success': False, 'error': 'No default value available'})
                    continue
                old_value = setting.value
                setting.value = defaults[setting.id]
                setting.version = (setting.version or 1) + 1
                setting.modified_by = current_user.id
                setting.last_modified = now
                session_db.add(SystemSettingHistory(
                    id=generate_id('HIST'),
                    category=setting.category,
                    key=setting.key,
                    old_value=old_value,
                    new_value=setting.value,
                    changed_by=current_user.id,
                    changed_at=now,
                    reason=data.get('reason') or 'Configuration reset to default',
                ))
                results.append({'key': setting.id, 'success': True, 'oldValue': old_value,
                                'newValue': setting.value})

            reset_count = sum(1 for r in results if r['success'])
            actor = session_db.get(User, current_user.id)
            record_audit(session_db, actor, 'CONFIG_RESET', 'system_config',
                         f"{reset_count} configuration settings reset to defaults",
                         resource={'type': 'system_configuration'}, severity='high')
            session_db.commit()
            return api_success({'results': results, 'resetCount': reset_count},
                               f"{reset_count} configuration(s) reset to defaults")
        except Exception as e:
            session_db.rollback()
            return server_error('Reset system configuration error', e)
        finally:
            session_db.close()

    # ==================== USER ACTIVITY ====================
    @bp.route('/admin/user-activity', methods=['GET'])
    @require_roles('admin', message='Insufficient permissions to view user activity')
    def admin_user_activity():
        time_range = query_arg('timeRange', '24h')
        if time_range not in ACTIVITY_TIME_RANGES:
            return api_error('Invalid time range')

        session_db = get_session()
        try:
            since = datetime.utcnow() - ACTIVITY_TIME_RANGES[time_range]
            query = session_db.query(UserActivity).filter(UserActivity.timestamp >= since)
            for arg, column in (('userId', UserActivity.user_id), ('userType', UserActivity.user_type),
                                ('activityType', UserActivity.activity_type)):
                if query_arg(arg):
                    query = query.filter(column == query_arg(arg))
            activities = query.order_by(UserActivity.timestamp.desc()).all()

            page_items, pagination = paginate(activities, parse_int(query_arg('page'), 1),
                                              parse_int(query_arg('limit'), 50), 'totalActivities')
            data = {'activities': [a.to_dict() for a in page_items], 'pagination': pagination,
                    'timeRange': time_range}
            if parse_bool(query_arg('includeStatistics')):
                data['statistics'] = activity_statistics(activities)
            if parse_bool(query_arg('includeSessions')):
                data['sessions'] = activity_sessions(activities)
            if parse_bool(query_arg('includeTopUsers')):
                data['topUsers'] = top_users(activities)
            return api_success(data, 'User activity retrieved successfully')
        except Exception as e:
            return server_error('Get user activity error', e)
        finally:
            session_db.close()

    @bp.route('/admin/user-activity', methods=['POST'])
    @require_roles(message='Authentication required')
    def admin_track_user_activity():
        data = get_json_body()
        activity = data.get('activity')
        if missing_fields(data, 'userId') or not isinstance(data['userId'], str) \
                or not isinstance(activity, dict) \
                or activity.get('type') not in ACTIVITY_TYPES:
            return api_error('Missing required activity data')
        if data['userId'] != current_user.id and not current_user.is_admin:
            return api_error('You can only track your own activity', 403)

        session_db = get_session()
        try:
            user = session_db.get(User, data['userId'])
            if user is None:
                return api_error('User not found', 404)

            now = datetime.utcnow()
            location = data.get('location') if isinstance(data.get('location'), dict) else {}
            location.setdefault('ipAddress', client_ip())
            device = data.get('device') if isinstance(data.get('device'), dict) \
                else device_info(request.headers.get('User-Agent'))
            entry = UserActivity(
                id=generate_id('ACT'),
                timestamp=now,
                user_id=user.id,
                user_name=user.full_name,
                user_type=user.user_type.value,
                session_id=data.get('sessionId') or f"session-{random_code(8).lower()}",
                activity_type=activity['type'],
                action=activity.get('action'),
                resource=activity.get('resource'),
                details=activity.get('details') if isinstance(activity.get('details'), dict) else {},
                duration=parse_int(data.get('duration'), None),
                location=location,
                device=device,
                performance=data.get('performance') if isinstance(data.get('performance'), dict) else {},
                risk_score=activity_risk_score(activity['type'], location, device, now),
                anomalies=[],
                flags=[],
            )
            if entry.risk_score > HIGH_RISK_SCORE:
                entry.flags = ['high_risk']
            session_db.add(entry)
            session_db.commit()
            logger.debug(f"Activity {entry.activity_type} tracked for {user.id} (risk {entry.risk_score})")
            return api_success({'activityId': entry.id}, 'User activity tracked successfully', 201)
        except Exception as e:
            session_db.rollback()
            return server_error('Track user activity error', e)
        finally:
            session_db.close()

    # ==================== SYSTEM HEALTH ====================
    @bp.route('/admin/system-health', methods=['GET'])
    @require_roles('admin', message='Insufficient permissions to view system health')
    def admin_system_health():
        time_range = query_arg('timeRange', '24h')
        include_history = parse_bool(query_arg('includeHistory'))
        if include_history and time_range not in HEALTH_HISTORY_RANGES:
            return api_error('Invalid time range')

        session_db = get_session()
        try:
            now = datetime.utcnow()
            health = system_health(session_db, current_app.config, now)
            record_health_snapshot(session_db, health)
            session_db.commit()

            data = {
                'currentStatus': {
                    'status': health['status'],
                    'healthScore': health['healthScore'],
                    'timestamp': health['timestamp'],
                },
                'services': health['services'],
                'performance': health['performance'],
                'summary': health['summary'],
                'recommendations': health['recommendations'],
            }
            if parse_bool(query_arg('includeDetails')):
                data['security'] = health['security']
                data['errors'] = health['errors']
                data['maintenance'] = health['maintenance']
            if include_history:
                snapshots = session_db.query(SystemHealthSnapshot).filter(
                    SystemHealthSnapshot.timestamp >= now - HEALTH_HISTORY_RANGES[time_range]).order_by(
                    SystemHealthSnapshot.timestamp).all()
                points = [s.history_point() for s in snapshots]
                data['history'] = {'timeRange': time_range, 'dataPoints': points, 'trend': health_trend(points)}
            if health['status'] == 'critical':
                logger.warning(f"System health critical (score {health['healthScore']})")
            return api_success(data, 'System health retrieved successfully')
        except Exception as e:
            session_db.rollback()
            return server_error('Get system health error', e)
        finally:
            session_db.close()

    # ==================== STATISTICS DASHBOARD ====================
    @bp.route('/admin/statistics/dashboard', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view dashboard statistics')
    def admin_statistics_dashboard():
        session_db = get_session()
        try:
            now = datetime.utcnow()
            data = {'generatedAt': now.isoformat()}
            performance = security = health = None
            if parse_bool(query_arg('includeOverview', 'true')):
                data['overview'] = _statistics_overview(session_db, now)
            if parse_bool(query_arg('includePerformance', 'true')):
                performance = data['performance'] = _statistics_performance(session_db, now)
            if parse_bool(query_arg('includeSecurity', 'true')):
                security = data['security'] = _statistics_security(session_db, now)
            if parse_bool(query_arg('includeSystemHealth', 'true')):
                health = system_health(session_db, current_app.config, now)
                data['systemHealth'] = {
                    'status': health['status'],
                    'healthScore': health['healthScore'],
                    'services': {name: s['status'] for name, s in health['services'].items()},
                    'uptime': health['performance']['uptime'],
                }
            if parse_bool(query_arg('includeRecentActivity', 'true')):
                data['recentActivity'] = _statistics_activity(session_db, now)
            data['alerts'] = _statistics_alerts(performance, security, health)
            return api_success(data, 'Dashboard statistics retrieved successfully')
        except Exception as e:
            return server_error('Get dashboard statistics error', e)
        finally:
            session_db.close()
