import datetime

YEAR = datetime.datetime.utcnow().year

SCHEDULE = {
    'examSession': '2099',
    'level': 'A Level',
    'subjectCode': 'AMH',
    'subjectName': 'Mathematics',
    'paperNumber': 1,
    'examDate': '2099-06-15',
    'startTime': '09:00',
    'endTime': '12:00',
    'duration': 180,
    'venues': [{'centerId': 'CENTER-001', 'rooms': ['A101']}],
}

CENTRE = {
    'centerName': 'Lycee Bilingue de Buea',
    'centerType': 'secondary',
    'address': {'city': 'Buea', 'region': 'Southwest'},
    'contactInfo': {'phoneNumber': '+237233000000'},
    'centerHead': {'name': 'Mr. Eko'},
    'facilities': {'rooms': [{'roomNumber': 'R1', 'capacity': 60}, {'roomNumber': 'R2', 'capacity': 40}]},
}


def create_schedule(client, headers, **overrides):
    return client.post('/api/examinations/schedule', headers=headers, json=dict(SCHEDULE, **overrides))


def test_create_schedule(client, admin_headers):
    resp = create_schedule(client, admin_headers)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['id'] == f'EXAM-{YEAR}-AL-AMH-P1'
    assert data['passingMarks'] == 40
    assert data['status'] == 'draft'

    assert create_schedule(client, admin_headers).status_code == 409


def test_schedule_validation(client, examiner_headers, student_headers):
    assert create_schedule(client, student_headers).status_code == 403

    resp = create_schedule(client, examiner_headers, examDate='2001-01-01', startTime='13:00',
                           endTime='12:00', duration=20, paperNumber=0)
    assert resp.status_code == 400
    errors = resp.get_json()['errors']
    assert 'Exam date must be in the future' in errors
    assert 'End time must be after start time' in errors
    assert 'Duration must be at least 30 minutes' in errors
    assert 'Valid paper number is required' in errors


def test_list_schedules_filters(client, admin_headers):
    create_schedule(client, admin_headers)
    create_schedule(client, admin_headers, level='O Level', subjectCode='OLG', subjectName='English Language')

    resp = client.get('/api/examinations/schedule')
    data = resp.get_json()['data']
    assert data['pagination']['totalSchedules'] == 2
    assert data['statistics']['byLevel'] == {'oLevel': 1, 'aLevel': 1}

    resp = client.get('/api/examinations/schedule?level=O%20Level')
    assert [s['subjectCode'] for s in resp.get_json()['data']['schedules']] == ['OLG']

    resp = client.get('/api/examinations/schedule?centreId=CENTER-001')
    assert len(resp.get_json()['data']['schedules']) == 2


def test_schedule_status_transitions(client, admin_headers):
    exam_id = create_schedule(client, admin_headers).get_json()['data']['id']
    url = f'/api/examinations/schedule/{exam_id}'

    assert client.put(url, headers=admin_headers, json={'status': 'completed'}).status_code == 400

    resp = client.put(url, headers=admin_headers, json={'status': 'scheduled'})
    assert resp.status_code == 200
    assert resp.get_json()['data']['publishedAt']

    # Scheduled exams must be cancelled before deletion
    assert client.delete(url, headers=admin_headers).status_code == 400
    assert client.put(url, headers=admin_headers, json={'status': 'cancelled'}).status_code == 200
    assert client.delete(url, headers=admin_headers).status_code == 200
    assert client.get(url).status_code == 404


def test_seeded_centres(client):
    resp = client.get('/api/examinations/centers')
    assert resp.status_code == 200
    data = resp.get_json()['data']
    codes = sorted(c['centerCode'] for c in data['centers'])
    assert codes == ['CENS001', 'LITS002']

    resp = client.get('/api/examinations/centers?region=littoral')
    assert [c['id'] for c in resp.get_json()['data']['centers']] == ['CENTER-002']


def test_create_centre(client, admin_headers):
    resp = client.post('/api/examinations/centers', headers=admin_headers, json=CENTRE)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['centerCode'].startswith('SOS')
    assert data['facilities']['totalCapacity'] == 100
    assert data['facilities']['totalRooms'] == 2

    resp = client.post('/api/examinations/centers', headers=admin_headers,
                       json=dict(CENTRE, centerName='lycee bilingue de buea'))
    assert resp.status_code == 409

    resp = client.post('/api/examinations/centers', headers=admin_headers,
                       json=dict(CENTRE, centerName='Other', address={'city': 'X'}))
    assert resp.status_code == 400


def test_centre_delete_requires_deactivation(client, admin_headers):
    url = '/api/examinations/centers/CENTER-002'
    assert client.delete(url, headers=admin_headers).status_code == 400

    resp = client.put(url, headers=admin_headers, json={'status': 'inactive', 'address': {'street': 'New'}})
    assert resp.status_code == 200
    assert resp.get_json()['data']['address']['region'] == 'Littoral'

    assert client.delete(url, headers=admin_headers).status_code == 200
    assert client.get(url).status_code == 404
