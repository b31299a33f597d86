EXAM_ID = 'EXAM-2025-AL-AMH-P1'

ASSIGNMENT = {
    'examId': EXAM_ID,
    'centerId': 'CENTER-001',
    'centerName': 'Government High School Yaounde - Centre',
    'examDate': '2025-06-01',
    'examSession': 'Morning',
}

MANUAL = [
    {'invigilatorId': 'INV-101', 'role': 'chief', 'roomNumber': 'A101'},
    {'invigilatorId': 'INV-102', 'role': 'assistant', 'roomNumber': 'A102'},
]

MATERIALS = {
    'examId': EXAM_ID,
    'examTitle': 'A Level Mathematics Paper 1',
    'examDate': '2025-06-01',
    'examLevel': 'A Level',
    'subjectCode': 'AMH',
    'paperNumber': 1,
    'materials': {
        'questionPapers': [{'language': 'English'}, {'language': 'French'}],
        'answerSheets': [{'quantity': 200}, {'quantity': 50}],
    },
    'distribution': {'centers': [{'centerId': 'CENTER-001', 'centerName': 'GHS Yaounde'},
                                 {'centerId': 'CENTER-002', 'centerName': 'LCM Douala'}]},
}

ATTENDANCE = {
    'examId': EXAM_ID,
    'centerId': 'CENTER-001',
    'examDate': '2025-06-01',
    'roomNumber': 'A101',
    'candidates': [
        {'candidateId': 'C1', 'fullName': 'Ada Nkem'},
        {'candidateId': 'C2', 'fullName': 'Bih Fru'},
        {'candidateId': 'C3', 'fullName': 'Che Ngwa'},
        {'candidateId': 'C4', 'fullName': 'Dora Epie'},
    ],
    'sessionInfo': {'startTime': '08:00', 'endTime': '11:00'},
}

INCIDENT = {
    'examId': EXAM_ID,
    'incidentType': 'cheating',
    'severity': 'high',
    'title': 'Phone found',
    'description': 'Candidate found with a phone',
    'timeOccurred': '2025-06-01T09:30:00',
    'centerName': 'GHS Yaounde',
    'impact': {'candidatesAffected': 1, 'timeDelayed': 5},
}


# ===== INVIGILATORS =====

def test_auto_assign_invigilators(client, admin_headers):
    resp = client.post('/api/examinations/assign-invigilators', headers=admin_headers,
                       json=dict(ASSIGNMENT, autoAssign=True))
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['status'] == 'assigned'
    assert data['requirements'] == {
        'chiefInvigilators': 1, 'assistantInvigilators': 3, 'observers': 1, 'specialNeedsSupport': 0,
    }
    roles = {a['invigilatorId']: a['role'] for a in data['assignments']}
    assert roles == {'INV-001': 'chief', 'INV-002': 'assistant'}

    dup = client.post('/api/examinations/assign-invigilators', headers=admin_headers,
                      json=dict(ASSIGNMENT, assignments=MANUAL))
    assert dup.status_code == 409


def test_assignment_validation(client, admin_headers, teacher_headers):
    resp = client.post('/api/examinations/assign-invigilators', headers=admin_headers,
                       json={'examId': EXAM_ID})
    assert resp.status_code == 400

    bad = client.post('/api/examinations/assign-invigilators', headers=admin_headers,
                      json=dict(ASSIGNMENT, assignments=[{'invigilatorId': 'INV-9'}]))
    assert bad.status_code == 400
    assert 'Missing required fields' in bad.get_json()['message']

    denied = client.post('/api/examinations/assign-invigilators', headers=teacher_headers,
                         json=dict(ASSIGNMENT, assignments=MANUAL))
    assert denied.status_code == 403


def test_update_assignment_actions(client, admin_headers, teacher_headers):
    created = client.post('/api/examinations/assign-invigilators', headers=admin_headers,
                          json=dict(ASSIGNMENT, assignments=MANUAL)).get_json()['data']
    url = f"/api/examinations/assign-invigilators/{created['id']}"

    resp = client.put(url, headers=admin_headers, json={
        'action': 'add_invigilator',
        'newInvigilator': {'invigilatorId': 'INV-103', 'role': 'observer', 'roomNumber': 'A103'},
    })
    assert resp.status_code == 200
    assert len(resp.get_json()['data']['assignments']) == 3
    assert resp.get_json()['data']['statistics']['byRole']['observer'] == 1

    again = client.put(url, headers=admin_headers, json={
        'action': 'add_invigilator',
        'newInvigilator': {'invigilatorId': 'INV-103', 'role': 'observer', 'roomNumber': 'A103'},
    })
    assert again.status_code == 409

    swapped = client.put(url, headers=admin_headers, json={
        'action': 'swap_invigilators',
        'swapData': {'invigilator1Id': 'INV-101', 'invigilator2Id': 'INV-102'},
    }).get_json()['data']
    rooms = {a['invigilatorId']: a['roomNumber'] for a in swapped['assignments']}
    assert rooms['INV-101'] == 'A102'
    assert rooms['INV-102'] == 'A101'

    removed = client.put(url, headers=admin_headers, json={'action': 'remove_invigilator',
                                                            'invigilatorId': 'INV-103'})
    assert len(removed.get_json()['data']['assignments']) == 2
    missing = client.put(url, headers=admin_headers, json={'action': 'remove_invigilator',
                                                            'invigilatorId': 'INV-103'})
    assert missing.status_code == 404

    # Teachers may read but not change assignments
    assert client.get(url, headers=teacher_headers).status_code == 200
    assert client.put(url, headers=teacher_headers, json={'notes': 'x'}).status_code == 403


def test_assignment_status_flow(client, admin_headers):
    created = client.post('/api/examinations/assign-invigilators', headers=admin_headers,
                          json=dict(ASSIGNMENT, assignments=MANUAL)).get_json()['data']
    url = f"/api/examinations/assign-invigilators/{created['id']}"

    skip = client.put(url, headers=admin_headers, json={'status': 'completed'})
    assert skip.status_code == 400
    assert 'Invalid status transition' in skip.get_json()['message']

    confirmed = client.put(url, headers=admin_headers, json={'status': 'confirmed'}).get_json()['data']
    assert confirmed['status'] == 'confirmed'
    assert confirmed['confirmedAt'] is not None

    assert client.delete(url, headers=admin_headers).status_code == 400

    assert client.put(url, headers=admin_headers, json={'status': 'completed'}).status_code == 200
    locked = client.put(url, headers=admin_headers, json={'notes': 'late change'})
    assert locked.status_code == 400
    assert locked.get_json()['message'] == 'Cannot modify completed assignment'


def test_list_and_delete_assignments(client, admin_headers):
    created = client.post('/api/examinations/assign-invigilators', headers=admin_headers,
                          json=dict(ASSIGNMENT, assignments=MANUAL)).get_json()['data']
    client.post('/api/examinations/assign-invigilators', headers=admin_headers,
                json=dict(ASSIGNMENT, centerId='CENTER-002', assignments=MANUAL[:1]))

    data = client.get('/api/examinations/assign-invigilators', headers=admin_headers).get_json()['data']
    assert data['pagination']['totalAssignments'] == 2
    assert data['statistics']['totalInvigilators'] == 3

    filtered = client.get('/api/examinations/assign-invigilators?centerId=CENTER-002',
                          headers=admin_headers).get_json()['data']
    assert len(filtered['assignments']) == 1

    url = f"/api/examinations/assign-invigilators/{created['id']}"
    assert client.delete(url, headers=admin_headers).status_code == 200
    assert client.get(url, headers=admin_headers).status_code == 404


# ===== MATERIALS =====

def test_create_materials(client, examiner_headers):
    resp = client.post('/api/examinations/materials', headers=examiner_headers, json=MATERIALS)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['status'] == 'preparation'
    assert data['distribution']['totalQuantity']['questionPapers'] == 2
    assert data['distribution']['totalQuantity']['answerSheets'] == 250
    shares = [c['quantities']['answerSheets'] for c in data['distribution']['centers']]
    assert shares == [125, 125]
    assert data['materials']['questionPapers'][1]['fileName'] == 'AMH_P1_FR.pdf'
    assert data['security']['auditTrail'][0]['action'] == 'Materials Created'

    assert client.post('/api/examinations/materials', headers=examiner_headers,
                       json=MATERIALS).status_code == 409
    assert client.post('/api/examinations/materials', headers=examiner_headers,
                       json={'examId': EXAM_ID}).status_code == 400


def test_update_materials(client, admin_headers):
    created = client.post('/api/examinations/materials', headers=admin_headers,
                          json=MATERIALS).get_json()['data']
    url = f"/api/examinations/materials/{created['id']}"

    added = client.put(url, headers=admin_headers, json={
        'action': 'add_question_paper', 'questionPaper': {'language': 'English', 'type': 'backup'},
    }).get_json()['data']
    papers = added['materials']['questionPapers']
    assert len(papers) == 3

    removed = client.put(url, headers=admin_headers, json={
        'action': 'remove_question_paper', 'questionPaperId': papers[-1]['id'],
    }).get_json()['data']
    assert removed['distribution']['totalQuantity']['questionPapers'] == 2
    assert client.put(url, headers=admin_headers, json={
        'action': 'remove_question_paper', 'questionPaperId': 'QP-missing',
    }).status_code == 404

    delivered = client.put(url, headers=admin_headers, json={
        'action': 'update_distribution',
        'distributionUpdate': {'centerId': 'CENTER-002', 'deliveryStatus': 'delivered'},
    }).get_json()['data']
    statuses = {c['centerId']: c['deliveryStatus'] for c in delivered['distribution']['centers']}
    assert statuses == {'CENTER-001': 'pending', 'CENTER-002': 'delivered'}

    approved = client.put(url, headers=admin_headers, json={'action': 'approve_materials'}).get_json()['data']
    assert approved['status'] == 'ready'
    assert approved['approvedBy'] == 'admin'
    actions = [entry['action'] for entry in approved['security']['auditTrail']]
    assert actions[-1] == 'Materials Approved'

    assert client.put(url, headers=admin_headers, json={'status': 'archived'}).status_code == 400
    assert client.put(url, headers=admin_headers, json={'action': 'shred'}).status_code == 400


def test_materials_by_exam(client, admin_headers):
    client.post('/api/examinations/materials', headers=admin_headers, json=MATERIALS)
    client.post('/api/examinations/materials', headers=admin_headers, json=dict(MATERIALS, paperNumber=2))

    data = client.get(f'/api/examinations/materials/{EXAM_ID}', headers=admin_headers).get_json()['data']
    assert len(data['materials']) == 2
    assert data['summary']['totalQuestionPapers'] == 4
    assert data['summary']['distributionStatus']['pending'] == 4

    assert client.get('/api/examinations/materials/EXAM-2030-OL-OLG-P1',
                      headers=admin_headers).status_code == 404


# ===== ATTENDANCE =====

def test_create_attendance(client, teacher_headers, student_headers):
    body = dict(ATTENDANCE, bulkAttendance={'status': 'present', 'candidateIds': ['C1', 'C2']})
    resp = client.post('/api/examinations/attendance', headers=teacher_headers, json=body)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['status'] == 'preparation'
    assert data['statistics']['totalCandidates'] == 4
    assert data['statistics']['present'] == 2
    assert data['statistics']['absent'] == 2
    assert data['statistics']['attendanceRate'] == 50

    assert client.post('/api/examinations/attendance', headers=teacher_headers,
                       json=ATTENDANCE).status_code == 409
    assert client.post('/api/examinations/attendance', headers=teacher_headers,
                       json=dict(ATTENDANCE, candidates='C1')).status_code == 400
    assert client.post('/api/examinations/attendance', headers=student_headers,
                       json=ATTENDANCE).status_code == 403


def test_attendance_session(client, examiner_headers):
    created = client.post('/api/examinations/attendance', headers=examiner_headers,
                          json=ATTENDANCE).get_json()['data']
    url = f"/api/examinations/attendance/{created['id']}"

    client.put(url, headers=examiner_headers, json={'action': 'start_session'})
    client.put(url, headers=examiner_headers, json={'action': 'mark_present', 'candidateId': 'C1'})
    late = client.put(url, headers=examiner_headers, json={'action': 'mark_late', 'candidateId': 'C2',
                                                           'notes': 'Transport delay'}).get_json()['data']
    assert late['status'] == 'in_progress'
    assert late['statistics']['present'] == 1
    assert late['statistics']['late'] == 1
    assert late['statistics']['attendanceRate'] == 50
    c2 = next(c for c in late['candidates'] if c['candidateId'] == 'C2')
    assert c2['notes'] == 'Transport delay'

    unknown = client.put(url, headers=examiner_headers, json={'action': 'mark_present', 'candidateId': 'C9'})
    assert unknown.status_code == 404

    bulk = client.put(url, headers=examiner_headers, json={
        'bulkAction': {'actionType': 'bulk_status_change', 'newStatus': 'excused', 'candidateIds': ['C3', 'C4']},
    }).get_json()['data']
    assert bulk['statistics']['excused'] == 2

    ended = client.put(url, headers=examiner_headers, json={'action': 'end_session'}).get_json()['data']
    assert ended['status'] == 'completed'
    assert ended['sessionInfo']['actualEndTime'] is not None

    assert client.put(url, headers=examiner_headers, json={'status': 'submitted'}).status_code == 200
    frozen = client.put(url, headers=examiner_headers, json={'action': 'mark_absent', 'candidateId': 'C1'})
    assert frozen.status_code == 400
    assert frozen.get_json()['message'] == 'Cannot modify submitted attendance record'


def test_attendance_by_exam(client, admin_headers):
    client.post('/api/examinations/attendance', headers=admin_headers,
                json=dict(ATTENDANCE, bulkAttendance={'status': 'present', 'candidateIds': ['C1']}))
    client.post('/api/examinations/attendance', headers=admin_headers,
                json=dict(ATTENDANCE, roomNumber='A102'))

    data = client.get(f'/api/examinations/attendance/{EXAM_ID}', headers=admin_headers).get_json()['data']
    assert len(data['records']) == 2
    centre = data['summary']['byCenter']['CENTER-001']
    assert centre['rooms'] == 2
    assert centre['totalCandidates'] == 8
    assert centre['present'] == 1

    bad = client.put(f'/api/examinations/attendance/{EXAM_ID}', headers=admin_headers,
                     json={'action': 'bulk_update', 'status': 'completed'})
    assert bad.status_code == 400

    moved = client.put(f'/api/examinations/attendance/{EXAM_ID}', headers=admin_headers,
                       json={'action': 'bulk_update', 'status': 'in_progress'})
    assert moved.get_json()['data']['updatedCount'] == 2

    listing = client.get('/api/examinations/attendance?status=in_progress', headers=admin_headers).get_json()['data']
    assert listing['statistics']['byStatus']['inProgress'] == 2


# ===== INCIDENTS =====

def test_report_incident(client, teacher_headers):
    resp = client.post('/api/examinations/incidents', headers=teacher_headers, json=INCIDENT)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['priority'] == 'urgent'
    assert data['followUpRequired'] is True
    assert len(data['followUpActions']) == 2
    assert data['resolution']['status'] == 'open'
    assert data['reporterRole'] == 'teacher'

    minor = client.post('/api/examinations/incidents', headers=teacher_headers,
                        json=dict(INCIDENT, incidentType='technical', severity='low')).get_json()['data']
    assert minor['priority'] == 'low'
    assert minor['followUpRequired'] is False
    assert minor['followUpActions'] == []


def test_incident_validation(client, teacher_headers):
    assert client.post('/api/examinations/incidents', headers=teacher_headers,
                       json={'examId': EXAM_ID}).status_code == 400
    wrong_type = client.post('/api/examinations/incidents', headers=teacher_headers,
                             json=dict(INCIDENT, incidentType='weather'))
    assert wrong_type.get_json()['message'] == 'Invalid incident type'
    wrong_severity = client.post('/api/examinations/incidents', headers=teacher_headers,
                                 json=dict(INCIDENT, severity='extreme'))
    assert wrong_severity.get_json()['message'] == 'Invalid severity level'


def test_list_incidents_orders_by_priority(client, admin_headers):
    client.post('/api/examinations/incidents', headers=admin_headers,
                json=dict(INCIDENT, incidentType='other', severity='low'))
    client.post('/api/examinations/incidents', headers=admin_headers, json=INCIDENT)

    data = client.get('/api/examinations/incidents', headers=admin_headers).get_json()['data']
    assert [i['priority'] for i in data['incidents']] == ['urgent', 'low']
    assert data['statistics']['total'] == 2
    assert data['statistics']['totalCandidatesAffected'] == 2
    assert data['statistics']['byType'] == {'other': 1, 'cheating': 1}

    per_exam = client.get(f'/api/examinations/incidents/{EXAM_ID}', headers=admin_headers).get_json()['data']
    assert per_exam['trends']['recentIncidents'] == 2
    assert per_exam['trends']['trendDirection'] == 'increasing'

    empty = client.get('/api/examinations/incidents/EXAM-2030-OL-OLG-P1', headers=admin_headers)
    assert empty.status_code == 200
    assert empty.get_json()['data']['incidents'] == []


def test_bulk_incident_updates(client, admin_headers, teacher_headers):
    client.post('/api/examinations/incidents', headers=admin_headers, json=INCIDENT)
    client.post('/api/examinations/incidents', headers=admin_headers,
                json=dict(INCIDENT, incidentType='medical', severity='medium'))
    url = f'/api/examinations/incidents/{EXAM_ID}'

    assert client.put(url, headers=teacher_headers, json={'action': 'bulk_priority_update',
                                                          'priority': 'high'}).status_code == 403

    assigned = client.put(url, headers=admin_headers, json={'action': 'bulk_assign_reviewer',
                                                            'reviewerId': 'GCE2025-EX-001'})
    assert assigned.status_code == 200
    assert {i['resolution']['status'] for i in assigned.get_json()['data']['incidents']} == {'investigating'}

    resolved = client.put(url, headers=admin_headers, json={'action': 'bulk_status_update', 'status': 'resolved',
                                                            'resolutionSummary': 'Handled on site'})
    data = resolved.get_json()['data']
    assert data['updatedCount'] == 2
    assert all(i['resolution']['resolutionSummary'] == 'Handled on site' for i in data['incidents'])

    stats = client.get(url, headers=admin_headers).get_json()['data']['statistics']
    assert stats['resolutionRate'] == 100

    client.put(url, headers=admin_headers, json={'action': 'bulk_status_update', 'status': 'closed'})
    reopened = client.put(url, headers=admin_headers, json={'action': 'bulk_status_update', 'status': 'open'})
    assert reopened.status_code == 400

    assert client.put(url, headers=admin_headers, json={'action': 'bulk_priority_update',
                                                        'priority': 'extreme'}).status_code == 400
    assert client.put(url, headers=admin_headers, json={'action': 'shuffle'}).status_code == 400
    assert client.put('/api/examinations/incidents/EXAM-2030-OL-OLG-P1', headers=admin_headers,
                      json={'action': 'bulk_priority_update', 'priority': 'high'}).status_code == 404
