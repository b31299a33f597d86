from datetime import datetime

from conftest import ADMIN_ID, STUDENT_ID
from admin_helpers import activity_risk_score, health_score, health_status
from test_results import published_results


def login(client, email, password, user_type):
    return client.post('/api/auth/login', json={'email': email, 'password': password, 'userType': user_type})


def change(client, headers, *changes, **extra):
    body = {'changes': list(changes)}
    body.update(extra)
    return client.put('/api/admin/system-config', headers=headers, json=body)


# ===== DASHBOARD =====

def test_dashboard_stats(client, admin_headers):
    login(client, 'admin@gce.cm', 'admin123', 'admin')

    stats = client.get('/api/admin/dashboard/stats?type=stats', headers=admin_headers).get_json()['data']
    assert stats['totalUsers'] == 5
    assert stats['totalStudents'] == 2
    assert stats['totalTeachers'] == 1
    assert stats['totalExaminers'] == 1
    assert stats['totalAdmins'] == 1
    assert stats['pendingAccounts'] == 0
    assert stats['totalSchools'] == 3
    assert stats['todayLogins'] == 1
    assert stats['systemStatus'] == 'Operational'


def test_dashboard_activity_and_alerts(client, admin_headers):
    login(client, 'admin@gce.cm', 'wrong-password', 'admin')
    login(client, 'admin@gce.cm', 'admin123', 'admin')

    data = client.get('/api/admin/dashboard/stats', headers=admin_headers).get_json()['data']
    assert data['recentActivity'][0]['action'] == 'LOGIN_SUCCESS'
    assert data['recentActivity'][0]['time'] == 'just now'
    security = [a for a in data['alerts'] if a['category'] == 'security']
    assert security[0]['message'] == '1 failed login attempts in the last 24 hours'
    assert security[0]['level'] == 'error'


def test_dashboard_access(client, admin_headers, teacher_headers):
    assert client.get('/api/admin/dashboard/stats', headers=teacher_headers).status_code == 403
    assert client.get('/api/admin/dashboard/stats').status_code == 401
    assert client.get('/api/admin/dashboard/stats?type=charts', headers=admin_headers).status_code == 400


# ===== AUDIT LOGS =====

def test_record_and_filter_audit_logs(client, admin_headers):
    resp = client.post('/api/admin/audit-logs', headers=admin_headers, json={
        'action': 'manual_review', 'category': 'security', 'description': 'Reviewed access list',
        'severity': 'high',
    })
    assert resp.status_code == 201
    entry = resp.get_json()['data']
    assert entry['action'] == 'MANUAL_REVIEW'
    assert entry['userId'] == 'admin'
    assert entry['impact']['scope'] == 'security'
    assert entry['compliance']['dataClassification'] == 'confidential'

    data = client.get('/api/admin/audit-logs?category=security&includeStatistics=true',
                      headers=admin_headers).get_json()['data']
    assert data['pagination']['totalLogs'] == 1
    assert data['statistics']['securityEvents'] == 1
    assert data['statistics']['bySeverity']['high'] == 1

    by_action = client.get('/api/admin/audit-logs?action=review', headers=admin_headers).get_json()['data']
    assert [log['id'] for log in by_action['logs']] == [entry['id']]


def test_audit_log_validation(client, admin_headers, examiner_headers):
    assert client.get('/api/admin/audit-logs?timeRange=1y', headers=admin_headers).status_code == 400
    assert client.get('/api/admin/audit-logs', headers=examiner_headers).status_code == 403
    bad_category = client.post('/api/admin/audit-logs', headers=admin_headers, json={
        'action': 'x', 'category': 'weather', 'description': 'x',
    })
    assert bad_category.get_json()['message'] == 'Invalid audit category'
    assert client.post('/api/admin/audit-logs', headers=admin_headers, json={
        'action': 'x', 'category': 'security', 'description': 'x', 'severity': 'extreme',
    }).status_code == 400


# ===== SYSTEM CONFIGURATION =====

def test_get_system_config(client, admin_headers):
    data = client.get('/api/admin/system-config', headers=admin_headers).get_json()['data']
    assert data['totalSettings'] == 14
    assert data['editableSettings'] == 13
    assert set(data['categories']) == {'authentication', 'system', 'email', 'security', 'grading'}

    email = client.get('/api/admin/system-config?category=email', headers=admin_headers).get_json()['data']
    keys = [s['key'] for s in email['configuration']['email']]
    assert 'smtp_port' in keys
    assert email['totalSettings'] == 4


def test_update_system_config(client, admin_headers):
    resp = change(client, admin_headers,
                  {'category': 'authentication', 'key': 'session_timeout', 'value': 60},
                  {'category': 'authentication', 'key': 'max_login_attempts', 'value': 2},
                  {'category': 'security', 'key': 'encryption_algorithm', 'value': 'AES-256-CBC'},
                  {'category': 'system', 'key': 'unknown', 'value': 1},
                  {'category': 'system', 'key': 'system_timezone', 'value': 'Africa/Lagos'},
                  reason='Longer sessions for markers')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['message'] == '2 configuration(s) updated successfully, 3 failed'
    results = {r['key']: r for r in body['data']['results']}
    assert results['authentication.session_timeout']['oldValue'] == 30
    assert results['authentication.max_login_attempts']['error'] == 'Value must be at least 3'
    assert results['security.encryption_algorithm']['error'] == 'Configuration is not editable'
    assert results['system.unknown']['error'] == 'Configuration key not found'
    assert body['data']['summary']['restartRequired'] == ['system.system_timezone']

    data = client.get('/api/admin/system-config?category=authentication&includeHistory=true',
                      headers=admin_headers).get_json()['data']
    timeout = next(s for s in data['configuration']['authentication'] if s['key'] == 'session_timeout')
    assert timeout['value'] == 60
    assert timeout['metadata']['version'] == 2
    assert data['changeHistory'][0]['reason'] == 'Longer sessions for markers'


def test_update_system_config_rejects_everything(client, admin_headers):
    resp = change(client, admin_headers, {'category': 'email', 'key': 'email_from_address', 'value': 'nobody'})
    assert resp.status_code == 400
    assert resp.get_json()['data']['results'][0]['error'] == 'Value does not match required pattern'
    assert change(client, admin_headers).status_code == 400


def test_maintenance_mode_shows_on_dashboard(client, admin_headers):
    change(client, admin_headers, {'category': 'system', 'key': 'maintenance_mode', 'value': True})
    data = client.get('/api/admin/dashboard/stats', headers=admin_headers).get_json()['data']
    assert data['stats']['systemStatus'] == 'Maintenance'
    assert any(a['message'] == 'Maintenance mode is enabled' for a in data['alerts'])


def test_reset_system_config(client, admin_headers):
    change(client, admin_headers,
           {'category': 'authentication', 'key': 'session_timeout', 'value': 90},
           {'category': 'email', 'key': 'smtp_port', 'value': 2525})

    resp = client.post('/api/admin/system-config', headers=admin_headers, json={'category': 'authentication'})
    assert resp.get_json()['data']['resetCount'] == 3

    keyed = client.post('/api/admin/system-config', headers=admin_headers,
                        json={'keys': ['email.smtp_port']}).get_json()['data']
    assert keyed['results'] == [{'key': 'email.smtp_port', 'success': True, 'oldValue': 2525, 'newValue': 587}]

    data = client.get('/api/admin/system-config?category=authentication', headers=admin_headers).get_json()['data']
    timeout = next(s for s in data['configuration']['authentication'] if s['key'] == 'session_timeout')
    assert timeout['value'] == 30
    assert client.post('/api/admin/system-config', headers=admin_headers, json={}).status_code == 400


# ===== USER ACTIVITY =====

def track(client, headers, user_id, activity_type, **extra):
    body = {'userId': user_id, 'activity': {'type': activity_type, 'resource': extra.pop('resource', None)}}
    body.update(extra)
    return client.post('/api/admin/user-activity', headers=headers, json=body)


def test_activity_risk_score():
    noon = datetime(2025, 6, 2, 12, 0)
    assert activity_risk_score('login', {'ipAddress': '192.168.1.20'}, {'isMobile': False}, noon) == 10
    assert activity_risk_score('upload', {'ipAddress': '41.202.1.1'}, {'isMobile': True}, noon) == 40
    late = datetime(2025, 6, 2, 23, 30)
    assert activity_risk_score('upload', {'ipAddress': '41.202.1.1'}, {'isMobile': True}, late) == 55
    assert activity_risk_score('search', {}, {}, datetime(2025, 6, 2, 3, 0)) == 30


def test_track_and_list_user_activity(client, admin_headers, student_headers):
    assert track(client, student_headers, STUDENT_ID, 'login', sessionId='session-a',
                 location={'ipAddress': '192.168.0.5'}).status_code == 201
    track(client, student_headers, STUDENT_ID, 'page_view', sessionId='session-a', resource='/results')
    track(client, student_headers, STUDENT_ID, 'page_view', sessionId='session-a', resource='/results')
    resp = track(client, admin_headers, ADMIN_ID, 'download', sessionId='session-b',
                 device={'type': 'mobile', 'isMobile': True})
    assert resp.get_json()['message'] == 'User activity tracked successfully'
    assert resp.get_json()['data']['activityId'].startswith('ACT-')

    data = client.get('/api/admin/user-activity?includeStatistics=true&includeSessions=true&includeTopUsers=true',
                      headers=admin_headers).get_json()['data']
    assert data['pagination']['totalActivities'] == 4
    stats = data['statistics']
    assert stats['uniqueUsers'] == 2
    assert stats['totalSessions'] == 2
    assert stats['byActivityType'] == {'login': 1, 'page_view': 2, 'download': 1}
    assert stats['byDevice'] == {'desktop': 3, 'mobile': 1}
    sessions = {s['sessionId']: s for s in data['sessions']}
    assert sessions['session-a']['activities'] == 3
    assert sessions['session-a']['pagesVisited'] == ['/results']
    assert data['topUsers'][0]['userId'] == STUDENT_ID
    assert data['topUsers'][0]['activityCount'] == 3

    views = client.get('/api/admin/user-activity?activityType=page_view', headers=admin_headers).get_json()['data']
    assert views['pagination']['totalActivities'] == 2
    assert views['activities'][0]['activity']['resource'] == '/results'


def test_user_activity_validation(client, admin_headers, student_headers):
    assert track(client, student_headers, STUDENT_ID, 'teleport').status_code == 400
    no_activity = client.post('/api/admin/user-activity', headers=student_headers, json={'userId': STUDENT_ID})
    assert no_activity.get_json()['message'] == 'Missing required activity data'
    assert track(client, student_headers, ADMIN_ID, 'login').status_code == 403
    assert track(client, admin_headers, 'nobody', 'login').status_code == 404
    assert client.post('/api/admin/user-activity', json={'userId': STUDENT_ID,
                                                           'activity': {'type': 'login'}}).status_code == 401
    assert client.get('/api/admin/user-activity', headers=student_headers).status_code == 403
    assert client.get('/api/admin/user-activity?timeRange=1y', headers=admin_headers).status_code == 400


# ===== SYSTEM HEALTH =====

def test_system_health(client, admin_headers):
    data = client.get('/api/admin/system-health?includeDetails=true', headers=admin_headers).get_json()['data']
    assert data['services']['database']['status'] == 'online'
    assert data['services']['authentication']['status'] == 'online'
    assert data['summary']['totalServices'] == 3
    assert 0 <= data['currentStatus']['healthScore'] <= 100
    assert data['currentStatus']['status'] in ('healthy', 'warning', 'critical')
    assert data['security']['vulnerabilities'] == []
    assert data['security']['failedLoginAttempts'] == 0
    assert data['maintenance'] == {'enabled': False}
    assert 'security' not in client.get('/api/admin/system-health', headers=admin_headers).get_json()['data']

    history = client.get('/api/admin/system-health?includeHistory=true&timeRange=1h',
                         headers=admin_headers).get_json()['data']['history']
    assert len(history['dataPoints']) == 3
    assert history['trend'] == 'stable'


def test_system_health_flags_failures(client, admin_headers):
    login(client, 'admin@gce.cm', 'wrong-password', 'admin')
    change(client, admin_headers, {'category': 'system', 'key': 'maintenance_mode', 'value': True})

    data = client.get('/api/admin/system-health?includeDetails=true', headers=admin_headers).get_json()['data']
    assert data['security']['failedLoginAttempts'] == 1
    assert data['currentStatus']['status'] == 'maintenance'


def test_health_score_deductions():
    services = {'database': {'status': 'online', 'responseTime': 2},
                'authentication': {'status': 'online', 'responseTime': 150},
                'emailService': {'status': 'degraded', 'responseTime': 0}}
    security = {'failedLoginAttempts': 60, 'suspiciousActivities': 0,
                'vulnerabilities': [{'severity': 'high', 'recommendation': 'x'}]}
    errors = [{'category': 'security', 'action': 'LOGIN', 'count': 3}]
    assert health_score(services, {'diskUsage': 40}, security, errors) == 100 - 5 - 10 - 10 - 15 - 5
    assert health_status(95) == 'healthy'
    assert health_status(75) == 'warning'
    assert health_status(40) == 'critical'
    assert health_status(95, maintenance=True) == 'maintenance'


def test_system_health_access(client, admin_headers, examiner_headers):
    assert client.get('/api/admin/system-health', headers=examiner_headers).status_code == 403
    assert client.get('/api/admin/system-health?includeHistory=true&timeRange=90d',
                      headers=admin_headers).status_code == 400


# ===== STATISTICS DASHBOARD =====

def test_statistics_dashboard(client, admin_headers, examiner_headers):
    published_results(client, admin_headers, examiner_headers)
    track(client, admin_headers, ADMIN_ID, 'login')

    data = client.get('/api/admin/statistics/dashboard', headers=examiner_headers).get_json()['data']
    overview = data['overview']
    assert overview['users']['total'] == 5
    assert overview['users']['byType']['student'] == 2
    assert overview['examinations'] == {'totalResults': 2, 'published': 2, 'pending': 0, 'publishRate': 100}
    assert overview['activity']['total'] == 1

    performance = data['performance']
    assert performance['byLevel']['A Level']['totalResults'] == 2
    assert len(performance['trends']) == 7
    assert performance['trends'][-1]['results'] == 2
    assert data['security']['failedLogins24h'] == 0
    assert data['systemHealth']['services']['database'] == 'online'
    assert sum(h['count'] for h in data['recentActivity']['activityByHour']) == 1


def test_statistics_dashboard_sections(client, admin_headers, teacher_headers):
    data = client.get('/api/admin/statistics/dashboard?includeSecurity=false&includeSystemHealth=false'
                      '&includePerformance=false', headers=admin_headers).get_json()['data']
    assert 'security' not in data
    assert 'systemHealth' not in data
    assert 'performance' not in data
    assert data['overview']['examinations']['publishRate'] == 0
    assert data['alerts'] == []
    assert client.get('/api/admin/statistics/dashboard', headers=teacher_headers).status_code == 403
