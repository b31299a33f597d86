from conftest import STUDENT_ID, DEMO_STUDENT_ID, TEACHER_ID


def test_profile_read_and_update(client, student_headers):
    resp = client.get('/api/users/profile', headers=student_headers)
    assert resp.status_code == 200
    assert resp.get_json()['data']['candidateNumber'] == 'CM2025-12345'

    resp = client.put('/api/users/profile', headers=student_headers,
                      json={'phoneNumber': '+237670000000', 'fullName': '  '})
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['phoneNumber'] == '+237670000000'
    assert data['fullName'] == 'Jean-Michel Fopa'


def test_profile_candidate_number_conflict(client, student_headers):
    resp = client.put('/api/users/profile', headers=student_headers, json={'candidateNumber': 'DEMO123456'})
    assert resp.status_code == 409


def test_change_password_rules(client, student_headers):
    resp = client.put('/api/users/change-password', headers=student_headers, json={
        'currentPassword': 'wrong', 'newPassword': 'Str0ng!Pass', 'confirmPassword': 'Str0ng!Pass'})
    assert resp.status_code == 401

    resp = client.put('/api/users/change-password', headers=student_headers, json={
        'currentPassword': 'student123', 'newPassword': 'weakpass', 'confirmPassword': 'weakpass'})
    assert resp.status_code == 400
    assert resp.get_json()['errors']

    resp = client.put('/api/users/change-password', headers=student_headers, json={
        'currentPassword': 'student123', 'newPassword': 'Str0ng!Pass', 'confirmPassword': 'Str0ng!Pass'})
    assert resp.status_code == 200


def test_admin_creates_user(client, admin_headers):
    resp = client.post('/api/users/create', headers=admin_headers, json={
        'fullName': 'New Teacher', 'email': 'new.teacher@school.cm', 'password': 'longenough1',
        'userType': 'teacher', 'school': 'Lycee Bilingue'})
    assert resp.status_code == 201
    assert resp.get_json()['data']['registrationStatus'] == 'confirmed'

    resp = client.post('/api/users/create', headers=admin_headers, json={
        'fullName': 'No Candidate', 'email': 'nc@student.cm', 'password': 'longenough1', 'userType': 'student'})
    assert resp.status_code == 400


def test_create_user_requires_admin(client, teacher_headers):
    resp = client.post('/api/users/create', headers=teacher_headers, json={
        'fullName': 'X', 'email': 'x@school.cm', 'password': 'longenough1', 'userType': 'admin'})
    assert resp.status_code == 403


def test_search_users(client, admin_headers):
    resp = client.get('/api/users/search?userType=student&limit=1', headers=admin_headers)
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert len(data['users']) == 1
    assert data['pagination']['totalUsers'] == 2
    assert data['pagination']['hasNextPage'] is True
    assert data['statistics']['byType']['student'] == 2

    resp = client.get('/api/users/search?q=Mbeki', headers=admin_headers)
    assert [u['id'] for u in resp.get_json()['data']['users']] == [TEACHER_ID]

    assert client.get('/api/users/search?limit=500', headers=admin_headers).status_code == 400


def test_user_access_rules(client, student_headers, admin_headers):
    assert client.get(f'/api/users/{STUDENT_ID}', headers=student_headers).status_code == 200
    assert client.get(f'/api/users/{DEMO_STUDENT_ID}', headers=student_headers).status_code == 403
    assert client.get('/api/users/nobody', headers=admin_headers).status_code == 404


def test_admin_suspends_user(client, admin_headers, student_headers):
    resp = client.put(f'/api/users/{STUDENT_ID}', headers=admin_headers, json={'registrationStatus': 'suspended'})
    assert resp.status_code == 200
    assert resp.get_json()['data']['registrationStatus'] == 'suspended'

    resp = client.get('/api/users/profile', headers=student_headers)
    assert resp.status_code == 401


def test_delete_user(client, admin_headers):
    assert client.delete('/api/users/admin', headers=admin_headers).status_code == 400
    assert client.delete(f'/api/users/{DEMO_STUDENT_ID}', headers=admin_headers).status_code == 200
    assert client.get(f'/api/users/{DEMO_STUDENT_ID}', headers=admin_headers).status_code == 404


def test_bulk_create_validates_whole_batch(client, admin_headers):
    rows = [
        {'fullName': 'Amina Bello', 'email': 'amina@student.cm', 'password': 'longenough1',
         'userType': 'student', 'candidateNumber': 'CM2025-20001'},
        {'fullName': 'Amina Twin', 'email': 'AMINA@student.cm', 'password': 'short',
         'userType': 'student', 'candidateNumber': 'CM2025-12345'},
        {'fullName': '', 'email': 'not-an-email', 'password': 'longenough1', 'userType': 'teacher'},
    ]
    resp = client.post('/api/users/bulk-create', headers=admin_headers, json={'users': rows, 'validateOnly': True})
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['totalUsers'] == 3
    assert data['validUsers'] == 1
    messages = [e['message'] for e in data['errors']]
    assert 'Row 2: Duplicate email in batch' in messages
    assert 'Row 2: Password must be at least 8 characters long' in messages
    assert 'Row 2: Candidate number already exists in system' in messages
    assert 'Row 3: Full name is required' in messages
    assert 'Row 3: Invalid email format' in messages
    assert 'Row 3: School is required for teachers' in messages

    resp = client.post('/api/users/bulk-create', headers=admin_headers, json={'users': rows})
    assert resp.status_code == 400
    assert resp.get_json()['data']['errors']
    resp = client.get('/api/users/search?q=amina', headers=admin_headers)
    assert resp.get_json()['data']['users'] == []


def test_bulk_create_accounts(client, admin_headers, teacher_headers):
    rows = [
        {'fullName': f'Candidate {n}', 'email': f'candidate{n}@student.cm', 'password': 'longenough1',
         'userType': 'student', 'candidateNumber': f'CM2025-3000{n}'} for n in range(4)
    ]
    rows.append({'fullName': 'Paul Nkeng', 'email': 'paul@school.cm', 'password': 'longenough1',
                 'userType': 'teacher', 'school': 'GHS Buea', 'registrationStatus': 'pending'})

    assert client.post('/api/users/bulk-create', headers=teacher_headers, json={'users': rows}).status_code == 403
    assert client.post('/api/users/bulk-create', headers=admin_headers, json={'users': []}).status_code == 400

    resp = client.post('/api/users/bulk-create', headers=admin_headers, json={'users': rows})
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['successfullyCreated'] == 5
    assert len({u['id'] for u in data['createdUsers']}) == 5
    assert data['createdUsers'][0]['registrationStatus'] == 'confirmed'
    assert data['createdUsers'][-1]['registrationStatus'] == 'pending'

    resp = client.get('/api/users/search?userType=student', headers=admin_headers)
    assert resp.get_json()['data']['statistics']['byType']['student'] == 6

    resp = client.post('/api/users/bulk-create', headers=admin_headers, json={'users': rows[:1]})
    assert resp.status_code == 400
    assert resp.get_json()['data']['errors'][0]['message'] == 'Row 1: Email already exists in system'
