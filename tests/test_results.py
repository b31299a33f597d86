from conftest import STUDENT_ID, DEMO_STUDENT_ID

EXAM_ID = 'EXAM-2025-AL-SCI'

CANDIDATES = {
    STUDENT_ID: {'candidateNumber': 'CM2025-12345', 'candidateName': 'Jean-Michel Fopa',
                 'schoolId': 'GBHS-001', 'schoolName': 'Government High School Limbe Southwest',
                 'marks': {'AMH': 78, 'APY': 72}},
    DEMO_STUDENT_ID: {'candidateNumber': 'DM2025-00001', 'candidateName': 'Demo Student',
                      'schoolId': 'DEMO-001', 'schoolName': 'Demo Examination Center Centre',
                      'marks': {'AMH': 45, 'APY': 35}},
}


def mark_and_grade(client, admin_headers, examiner_headers, approve=True):
    for student_id, info in CANDIDATES.items():
        for subject, score in info['marks'].items():
            client.post('/api/marking/scores', headers=examiner_headers, json={
                'scriptId': f"SCRIPT-{EXAM_ID}-{subject}-{student_id}",
                'candidateNumber': info['candidateNumber'],
                'candidateId': student_id,
                'candidateName': info['candidateName'],
                'schoolId': info['schoolId'],
                'schoolName': info['schoolName'],
                'examId': EXAM_ID,
                'subjectCode': subject,
                'paperNumber': 1,
                'examLevel': 'A Level',
                'scores': [{'sectionId': 'A', 'questions': [
                    {'questionId': 'Q1', 'maxMarks': 100, 'marksAwarded': score},
                ]}],
                'autoSubmit': True,
            })
    if not approve:
        return
    for subject in ('AMH', 'APY'):
        calculation = client.post('/api/grading/calculate-grades', headers=examiner_headers, json={
            'examId': EXAM_ID, 'subjectCode': subject, 'examLevel': 'A Level',
        }).get_json()['data']
        for status in ('reviewed', 'approved'):
            client.put('/api/grading/calculate-grades', headers=admin_headers,
                       json={'calculationId': calculation['id'], 'status': status})


def generate(client, headers, **extra):
    body = {'examId': EXAM_ID, 'examSession': '2025', 'examLevel': 'A Level', 'includeUnverified': True}
    body.update(extra)
    return client.post('/api/results/generate', headers=headers, json=body)


def publish(client, headers, result_ids, **extra):
    body = {'examId': EXAM_ID, 'resultIds': result_ids}
    body.update(extra)
    return client.put('/api/results/publish', headers=headers, json=body)


def published_results(client, admin_headers, examiner_headers):
    mark_and_grade(client, admin_headers, examiner_headers)
    results = generate(client, admin_headers).get_json()['data']['generatedResults']
    ids = {r['studentId']: r['id'] for r in results}
    publish(client, admin_headers, list(ids.values()))
    return ids


# ===== GENERATION =====

def test_generate_results(client, admin_headers, examiner_headers):
    mark_and_grade(client, admin_headers, examiner_headers)
    resp = generate(client, examiner_headers)
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['totalGenerated'] == 2
    results = {r['studentId']: r for r in data['generatedResults']}

    strong = results[STUDENT_ID]
    assert strong['status'] == 'generated'
    assert strong['examYear'] == '2025'
    assert [s['grade'] for s in strong['subjects']] == ['B', 'B']
    assert strong['overallPerformance']['averagePercentage'] == 75
    assert strong['overallPerformance']['classification'] == 'Merit'
    assert strong['verification']['verificationCode'].startswith('VER-')

    weak = results[DEMO_STUDENT_ID]['overallPerformance']
    assert weak['subjectsPassed'] == 1
    assert weak['classification'] == 'Fail'


def test_generation_requirements(client, admin_headers, examiner_headers, teacher_headers):
    assert generate(client, teacher_headers).status_code == 403
    assert client.post('/api/results/generate', headers=admin_headers,
                       json={'examId': EXAM_ID}).status_code == 400

    mark_and_grade(client, admin_headers, examiner_headers, approve=False)
    no_grades = generate(client, admin_headers)
    assert no_grades.status_code == 404
    assert no_grades.get_json()['message'] == 'No approved grade calculations found for this exam'


def test_generation_skips_unverified_markings(client, admin_headers, examiner_headers):
    mark_and_grade(client, admin_headers, examiner_headers)
    resp = generate(client, admin_headers, includeUnverified=False)
    assert resp.status_code == 404

    filtered = generate(client, admin_headers, studentIds=[STUDENT_ID]).get_json()['data']
    assert filtered['totalGenerated'] == 1


def test_regeneration_keeps_published_results(client, admin_headers, examiner_headers):
    ids = published_results(client, admin_headers, examiner_headers)

    again = generate(client, admin_headers).get_json()['data']
    assert again['totalGenerated'] == 0
    assert {e['studentId'] for e in again['errors']} == set(ids)
    assert again['errors'][0]['error'] == 'Results already published'


# ===== PUBLICATION =====

def test_publish_and_withdraw(client, admin_headers, examiner_headers, student_headers):
    mark_and_grade(client, admin_headers, examiner_headers)
    results = generate(client, admin_headers).get_json()['data']['generatedResults']
    ids = [r['id'] for r in results]

    before = client.get(f'/api/results/student/{STUDENT_ID}', headers=student_headers).get_json()
    assert before['message'] == 'No results found for this student'

    resp = publish(client, admin_headers, ids, accessLevel='public')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['data']['status'] == 'published'
    assert body['data']['statistics']['studentsAffected'] == 2
    checks = {c['check']: c['status'] for c in body['verificationChecks']}
    assert checks['verification_status'] == 'warning'
    assert checks['grade_consistency'] == 'passed'

    mine = client.get(f'/api/results/student/{STUDENT_ID}', headers=student_headers).get_json()['data']
    assert mine['summary']['totalExams'] == 1
    assert mine['summary']['bestClassification'] == 'Merit'
    assert mine['results'][0]['publication']['isPublished'] is True

    withdrawn = publish(client, admin_headers, ids[:1], action='withdraw', reason='Data error')
    assert withdrawn.get_json()['data']['count'] == 1
    listing = client.get('/api/results/generate', headers=admin_headers).get_json()['data']
    assert listing['summary']['published'] == 1
    assert listing['summary']['byStatus'] == {'verified': 1, 'published': 1}


def test_publication_validation(client, admin_headers, examiner_headers):
    mark_and_grade(client, admin_headers, examiner_headers)
    ids = [r['id'] for r in generate(client, admin_headers).get_json()['data']['generatedResults']]

    assert publish(client, admin_headers, ['RESULT-missing']).status_code == 400
    assert publish(client, admin_headers, ids, publicationType='rushed').status_code == 400
    assert publish(client, admin_headers, ids, accessLevel='world').status_code == 400
    assert publish(client, admin_headers, ids, action='hide').status_code == 400
    no_date = publish(client, admin_headers, ids, schedulePublication=True)
    assert no_date.get_json()['message'] == 'Release date is required for scheduled publication'


def test_scheduled_publication(client, admin_headers, examiner_headers):
    mark_and_grade(client, admin_headers, examiner_headers)
    ids = [r['id'] for r in generate(client, admin_headers).get_json()['data']['generatedResults']]

    resp = publish(client, admin_headers, ids, schedulePublication=True, releaseDate='2099-08-01T08:00:00')
    assert resp.get_json()['message'] == 'Results scheduled for publication on 2099-08-01T08:00:00'
    assert resp.get_json()['data']['status'] == 'scheduled'

    listing = client.get('/api/results/generate', headers=admin_headers).get_json()['data']
    assert listing['summary']['published'] == 0
    assert listing['summary']['byStatus'] == {'verified': 2}

    batches = client.get('/api/results/publish', headers=admin_headers).get_json()['data']
    assert batches['summary']['byStatus'] == {'scheduled': 1}
    assert batches['summary']['totalResultsPublished'] == 0


# ===== VIEWS =====

def test_student_results_access(client, admin_headers, examiner_headers, student_headers, teacher_headers):
    published_results(client, admin_headers, examiner_headers)

    assert client.get(f'/api/results/student/{DEMO_STUDENT_ID}', headers=student_headers).status_code == 403

    analysed = client.get(f'/api/results/student/{STUDENT_ID}?includeAnalysis=true',
                          headers=student_headers).get_json()['data']
    assert analysed['analysis']['performanceTrends']['trend'] == 'insufficient_data'
    assert analysed['analysis']['strengthsAndWeaknesses']['strengths'][0]['subjectCode'] == 'AMH'

    # Teachers only see their own school's candidates
    other_school = client.get(f'/api/results/student/{STUDENT_ID}', headers=teacher_headers).get_json()
    assert other_school['data']['results'] == []


def test_school_results(client, admin_headers, examiner_headers, teacher_headers):
    published_results(client, admin_headers, examiner_headers)

    assert client.get('/api/results/school/GBHS-001', headers=teacher_headers).status_code == 403
    empty = client.get('/api/results/school/GBHS-002', headers=teacher_headers).get_json()
    assert empty['message'] == 'No results found for this school'

    data = client.get('/api/results/school/GBHS-001?includeComparison=true&includeInsights=true',
                      headers=admin_headers).get_json()['data']
    assert data['statistics']['totalStudents'] == 1
    assert data['topPerformers'][0]['classification'] == 'Merit'
    assert data['comparison']['ranking'] == 1
    assert data['comparison']['totalSchools'] == 2
    assert data['insights'][0]['category'] == 'overall_performance'


def test_results_statistics(client, admin_headers, examiner_headers):
    published_results(client, admin_headers, examiner_headers)

    data = client.get(f'/api/results/statistics?examId={EXAM_ID}&includeDetails=true',
                      headers=admin_headers).get_json()['data']
    assert data['overview']['totalResults'] == 2
    assert data['overview']['passRate'] == 100
    assert data['gradeDistribution']['counts'] == {'B': 2, 'E': 1, 'F': 1}
    regions = {row['region'] for row in data['regionalPerformance']}
    assert regions == {'Southwest', 'Centre'}
    assert data['topPerformingSchools'][0]['schoolId'] == 'GBHS-001'


# ===== VERIFICATION =====

def test_public_result_verification(client, admin_headers, examiner_headers):
    published_results(client, admin_headers, examiner_headers)

    resp = client.post('/api/results/verify', json={'studentNumber': 'CM2025-12345'})
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['status'] == 'verified'
    assert data['isValid'] is True
    assert data['confidence'] == 90
    assert data['verifiedData']['classification'] == 'Merit'

    missing = client.post('/api/results/verify', json={'studentNumber': 'CM2025-99999'}).get_json()['data']
    assert missing['status'] == 'invalid'
    assert missing['isValid'] is False

    malformed = client.post('/api/results/verify', json={'studentNumber': 'abc'}).get_json()['data']
    assert malformed['fraudIndicators'][0]['indicator'] == 'invalid_student_number_format'

    assert client.post('/api/results/verify', json={}).status_code == 400
    assert client.post('/api/results/verify', json={'verificationType': 'passport'}).status_code == 400


# ===== CERTIFICATES =====

def test_generate_certificates(client, admin_headers, examiner_headers):
    ids = published_results(client, admin_headers, examiner_headers)

    resp = client.post('/api/results/certificates', headers=admin_headers, json={'resultIds': [ids[STUDENT_ID]]})
    assert resp.status_code == 201
    first = resp.get_json()['data']['certificates'][0]
    assert first['certificateNumber'] == 'CMAL25000001'
    assert first['template']['header']['examTitle'] == 'A Level CERTIFICATE'

    again = client.post('/api/results/certificates', headers=admin_headers, json={'resultIds': [ids[STUDENT_ID]]})
    assert again.status_code == 200
    assert again.get_json()['data']['errors'][0]['error'] == 'Original certificate already exists'

    second = client.post('/api/results/certificates', headers=admin_headers,
                         json={'resultIds': [ids[DEMO_STUDENT_ID]]}).get_json()['data']
    assert second['certificates'][0]['certificateNumber'] == 'CMAL25000002'

    summary = client.get('/api/results/certificates', headers=admin_headers).get_json()['data']['summary']
    assert summary['totalCertificates'] == 2
    assert summary['byLevel']['aLevel'] == 2


def test_certificate_requires_published_result(client, admin_headers, examiner_headers):
    mark_and_grade(client, admin_headers, examiner_headers)
    ids = [r['id'] for r in generate(client, admin_headers).get_json()['data']['generatedResults']]
    resp = client.post('/api/results/certificates', headers=admin_headers, json={'resultIds': ids})
    assert resp.status_code == 404
    assert client.post('/api/results/certificates', headers=admin_headers, json={}).status_code == 400


def test_certificate_actions(client, admin_headers, examiner_headers, student_headers):
    ids = published_results(client, admin_headers, examiner_headers)
    certificate = client.post('/api/results/certificates', headers=admin_headers,
                              json={'resultIds': [ids[STUDENT_ID]]}).get_json()['data']['certificates'][0]
    url = f'/api/results/certificates/{STUDENT_ID}'

    mine = client.get(url, headers=student_headers).get_json()['data']
    assert mine['certificates'][0]['canDownload'] is True
    assert '/certificates/download?token=' in mine['certificates'][0]['downloadUrl']
    assert 'verificationInstructions' in mine

    downloaded = client.put(url, headers=student_headers,
                            json={'action': 'download', 'certificateId': certificate['id']}).get_json()['data']
    assert downloaded['downloadCount'] == 1

    printed = client.put(url, headers=admin_headers, json={
        'action': 'print', 'certificateId': certificate['id'], 'copies': 2,
    }).get_json()['data']
    assert printed['printCount'] == 2

    for remaining in (2, 1, 0):
        duplicate = client.put(url, headers=student_headers, json={
            'action': 'request_duplicate', 'certificateId': certificate['id'],
        }).get_json()['data']
        assert duplicate['remainingDuplicates'] == remaining
    refused = client.put(url, headers=student_headers,
                         json={'action': 'request_duplicate', 'certificateId': certificate['id']})
    assert refused.status_code == 400

    checked = client.put(url, headers=student_headers,
                         json={'action': 'verify', 'certificateId': certificate['id']}).get_json()['data']
    assert checked['isValid'] is True

    assert client.put(f'/api/results/certificates/{DEMO_STUDENT_ID}', headers=student_headers,
                      json={'action': 'download', 'certificateId': certificate['id']}).status_code == 403
    assert client.put(url, headers=student_headers,
                      json={'action': 'burn', 'certificateId': certificate['id']}).status_code == 400


def test_public_certificate_verification(client, admin_headers, examiner_headers):
    ids = published_results(client, admin_headers, examiner_headers)
    certificate = client.post('/api/results/certificates', headers=admin_headers,
                              json={'resultIds': [ids[STUDENT_ID]]}).get_json()['data']['certificates'][0]

    data = client.post('/api/results/verify', json={
        'verificationType': 'certificate', 'certificateNumber': certificate['certificateNumber'],
    }).get_json()['data']
    assert data['status'] == 'verified'
    assert data['verifiedData']['studentName'] == 'Jean-Michel Fopa'

    wrong_code = client.post('/api/results/verify', json={
        'verificationType': 'certificate', 'certificateNumber': certificate['certificateNumber'],
        'securityCode': 'WRONG',
    }).get_json()['data']
    assert wrong_code['status'] == 'invalid'

    stats = client.get('/api/results/statistics', headers=admin_headers).get_json()['data']
    assert stats['verificationStatistics']['totalVerifications'] == 2
    assert stats['verificationStatistics']['successRate'] == 50


# ===== NOTIFICATIONS =====

def notify(client, headers, **body):
    return client.post('/api/results/notifications', headers=headers, json=body)


def test_result_notifications_by_email(client, admin_headers, examiner_headers, student_headers, monkeypatch):
    sent = []
    monkeypatch.setattr('results_routes.send_email',
                        lambda to, subject, body: sent.append((to, subject, body)) or (True, 'Email sent'))
    ids = published_results(client, admin_headers, examiner_headers)

    resp = notify(client, examiner_headers, type='result_published', priority='high',
                  metadata={'resultIds': list(ids.values()) + [ids[STUDENT_ID], 'RESULT-missing']},
                  templateVariables={'examLevel': 'A Level', 'examSession': '2025', 'studentName': 'Candidate'})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['message'] == 'Notification sent to 2 recipients'
    notification = body['data']['notification']
    assert notification['id'].startswith('NOTIF-')
    assert notification['content']['title'] == 'Your A Level Results are Now Available'
    assert notification['delivery']['deliveryStatus'] == 'sent'
    assert notification['delivery']['deliveredCount'] == 2
    assert sorted(sent[0][0]) == ['demo.student@gce.cm', 'jean.fopa@student.cm']
    assert sent[0][1] == 'Your A Level Results are Now Available'

    mine = client.get('/api/results/notifications', headers=student_headers).get_json()['data']
    assert mine['pagination']['totalNotifications'] == 1
    assert mine['summary']['byPriority']['high'] == 1
    assert mine['summary']['deliveryRate'] == 100


def test_result_notification_delivery_failure_and_scheduling(client, admin_headers, student_headers, monkeypatch):
    monkeypatch.setattr('results_routes.send_email', lambda to, subject, body: (False, 'Email not configured'))

    failed = notify(client, admin_headers, type='reminder', recipients=[
        {'type': 'student', 'identifier': STUDENT_ID, 'contactMethod': 'email',
         'contactDetails': 'jean.fopa@student.cm'},
    ], templateId='reminder', templateVariables={'reminderType': 'Registration',
                                                 'reminderMessage': 'Registration closes Friday',
                                                 'actionUrl': '/registration'}).get_json()['data']
    assert failed['notification']['content']['message'] == 'Registration closes Friday'
    assert failed['summary']['deliveryStatus'] == 'failed'
    assert failed['notification']['delivery']['failureReason'] == 'Email not configured'

    portal = notify(client, admin_headers, type='system_update', sendImmediately=False,
                    scheduledFor='2025-07-01T08:00:00',
                    recipients=[{'type': 'school', 'identifier': 'GBHS-001'},
                                {'type': 'school', 'identifier': 'GBHS-001'}],
                    content={'title': 'Maintenance', 'message': 'Portal offline on Sunday'})
    assert portal.get_json()['message'] == 'Notification scheduled for 2025-07-01T08:00:00'
    assert portal.get_json()['data']['summary']['recipientCount'] == 1

    everything = client.get('/api/results/notifications?recipientType=school',
                            headers=admin_headers).get_json()['data']
    assert everything['pagination']['totalNotifications'] == 1
    assert everything['notifications'][0]['delivery']['deliveryStatus'] == 'scheduled'
    summary = client.get('/api/results/notifications', headers=admin_headers).get_json()['data']['summary']
    assert summary['byStatus']['failed'] == 1
    assert summary['byStatus']['scheduled'] == 1
    assert summary['totalRecipients'] == 2
    assert client.get('/api/results/notifications', headers=student_headers).get_json()['data'][
        'pagination']['totalNotifications'] == 1


def test_result_notification_validation(client, admin_headers, teacher_headers):
    assert notify(client, teacher_headers, type='reminder',
                  recipients=[{'identifier': STUDENT_ID}]).status_code == 403
    missing = notify(client, admin_headers, type='reminder')
    assert missing.get_json()['message'] == 'Missing required notification information'
    assert notify(client, admin_headers, type='gossip', recipients=[{'identifier': STUDENT_ID}]).status_code == 400
    nobody = notify(client, admin_headers, type='result_published', metadata={'resultIds': ['RESULT-missing']})
    assert nobody.get_json()['message'] == 'No valid recipients found'
    bad_template = notify(client, admin_headers, type='reminder', templateId='birthday',
                          recipients=[{'identifier': STUDENT_ID}])
    assert bad_template.get_json()['message'] == 'Invalid template ID'
    assert client.get('/api/results/notifications').status_code == 401
