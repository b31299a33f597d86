from conftest import STUDENT_ID, DEMO_STUDENT_ID

REGISTRATION = {
    'examSession': '2025',
    'examLevel': 'A Level',
    'subjects': [
        {'code': 'ALG', 'name': 'English Literature'},
        {'code': 'AMH', 'name': 'Mathematics'},
        {'code': 'APY', 'name': 'Physics'},
    ],
    'personalInfo': {'fullName': 'Jean-Michel Fopa', 'dateOfBirth': '2005-03-15', 'gender': 'male'},
    'guardianInfo': {'name': 'Paul Fopa', 'phone': '+237677000000'},
    'schoolInfo': {'schoolName': 'Government High School Limbe'},
}


def create_registration(client, headers, **overrides):
    body = dict(REGISTRATION)
    body.update(overrides)
    return client.post('/api/registration/student', headers=headers, json=body)


def test_subject_catalogue_is_public(client):
    resp = client.get('/api/registration/subjects')
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['statistics']['total'] == 6
    assert data['statistics']['byLevel'] == {'oLevel': 3, 'aLevel': 3}

    resp = client.get('/api/registration/subjects?level=A%20Level&q=phys')
    assert [s['code'] for s in resp.get_json()['data']['subjects']] == ['APY']


def test_subject_admin_writes(client, admin_headers, student_headers):
    body = {'code': 'ACY', 'name': 'Chemistry', 'level': 'A Level', 'category': 'elective',
            'department': 'Sciences', 'duration': 180, 'fee': 3000, 'examFormat': {'papers': 3}}
    assert client.post('/api/registration/subjects', headers=student_headers, json=body).status_code == 403

    resp = client.post('/api/registration/subjects', headers=admin_headers, json=body)
    assert resp.status_code == 201
    subject_id = resp.get_json()['data']['id']

    # Same code at the same level is taken, a different level is allowed
    assert client.post('/api/registration/subjects', headers=admin_headers, json=body).status_code == 409
    other_level = dict(body, level='O Level')
    assert client.post('/api/registration/subjects', headers=admin_headers, json=other_level).status_code == 201

    resp = client.delete(f'/api/registration/subjects/{subject_id}', headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()['data']['isActive'] is False


def test_create_registration_computes_fees(client, student_headers):
    resp = create_registration(client, student_headers)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['id'].startswith('REG-') and '-AL-' in data['id']
    assert data['studentId'] == STUDENT_ID
    assert data['fees']['totalAmount'] == 7500 + 3 * 3000
    assert data['status'] == 'draft'
    assert data['personalInfo']['nationality'] == 'Cameroonian'


def test_registration_limits(client, student_headers):
    too_many = [{'code': f'S{i}', 'name': f'Subject {i}'} for i in range(5)]
    resp = create_registration(client, student_headers, subjects=too_many)
    assert resp.status_code == 400
    assert 'Maximum 4 subjects' in resp.get_json()['message']

    assert create_registration(client, student_headers, examLevel='B Level').status_code == 400
    assert create_registration(client, student_headers).status_code == 201
    assert create_registration(client, student_headers).status_code == 409


def test_malformed_registration_bodies(client, student_headers, admin_headers):
    resp = create_registration(client, student_headers, personalInfo='x')
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'personalInfo must be an object'

    resp = create_registration(client, student_headers, guardianInfo=['Paul'], schoolInfo=3)
    assert resp.get_json()['message'] == 'guardianInfo, schoolInfo must be an object'

    resp = create_registration(client, student_headers, subjects=['AMH', 'APY'])
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Each subject must be an object with a code and name'

    registration_id = create_registration(client, student_headers).get_json()['data']['id']
    resp = client.put(f'/api/registration/student/{registration_id}', headers=student_headers,
                      json={'documents': 'passport.pdf'})
    assert resp.status_code == 400

    subject = {'code': 'ACY', 'name': 'Chemistry', 'level': 'A Level', 'category': 'elective',
               'department': 'Sciences', 'duration': 180, 'fee': 3000, 'examFormat': 'three papers'}
    assert client.post('/api/registration/subjects', headers=admin_headers, json=subject).status_code == 400


def test_registration_workflow(client, student_headers, admin_headers):
    registration_id = create_registration(client, student_headers).get_json()['data']['id']
    url = f'/api/registration/student/{registration_id}'

    resp = client.put(url, headers=student_headers, json={'status': 'approved'})
    assert resp.status_code == 403

    resp = client.put(url, headers=student_headers, json={'status': 'submitted'})
    assert resp.status_code == 200
    assert resp.get_json()['data']['submittedAt']

    # submitted cannot go to payment_pending
    resp = client.put(url, headers=admin_headers, json={'status': 'payment_pending'})
    assert resp.status_code == 400

    resp = client.put(url, headers=admin_headers, json={'status': 'approved'})
    assert resp.status_code == 200

    resp = client.put(url, headers=student_headers, json={'examCenter': 'Elsewhere'})
    assert resp.status_code == 400

    # Only drafts can be deleted by their owner
    assert client.delete(url, headers=student_headers).status_code == 400


def test_registration_access_is_owner_only(client, student_headers, app):
    from conftest import bearer
    registration_id = create_registration(client, student_headers).get_json()['data']['id']
    other = bearer(app, DEMO_STUDENT_ID)
    assert client.get(f'/api/registration/student/{registration_id}', headers=other).status_code == 403

    resp = client.get('/api/registration/student', headers=other)
    assert resp.get_json()['data']['pagination']['totalRegistrations'] == 0


def test_payment_completes_registration(client, student_headers):
    registration_id = create_registration(client, student_headers).get_json()['data']['id']

    resp = client.post('/api/registration/payment', headers=student_headers, json={
        'registrationId': registration_id, 'paymentType': 'registration', 'amount': 0,
        'paymentMethod': 'mobile_money'})
    assert resp.status_code == 400

    resp = client.post('/api/registration/payment', headers=student_headers, json={
        'registrationId': registration_id, 'paymentType': 'registration', 'amount': 16500,
        'paymentMethod': 'mobile_money', 'processImmediately': True})
    assert resp.status_code == 201
    payment = resp.get_json()['data']
    assert payment['status'] == 'completed'
    assert payment['transactionId'].startswith('TXN-')
    assert payment['paymentProvider'] == 'MTN Mobile Money'

    resp = client.get(f'/api/registration/student/{registration_id}', headers=student_headers)
    assert resp.get_json()['data']['paymentStatus'] == 'completed'

    resp = client.get('/api/registration/payment', headers=student_headers)
    assert resp.get_json()['data']['summary']['totalPaid'] == 16500


def test_partial_payment_and_webhook(client, student_headers):
    registration_id = create_registration(client, student_headers).get_json()['data']['id']
    resp = client.post('/api/registration/payment', headers=student_headers, json={
        'registrationId': registration_id, 'paymentType': 'subject_fees', 'amount': 5000,
        'paymentMethod': 'bank_transfer'})
    assert resp.status_code == 201
    payment_id = resp.get_json()['data']['id']
    assert resp.get_json()['data']['status'] == 'pending'

    # Students cannot set payment status, the gateway webhook can
    resp = client.put(f'/api/registration/payment/status/{payment_id}', headers=student_headers,
                      json={'status': 'completed'})
    assert resp.status_code == 403
    resp = client.put(f'/api/registration/payment/status/{payment_id}',
                      headers={'X-Webhook-Source': 'payment-gateway'},
                      json={'status': 'completed', 'transactionId': 'TXN-EXT-1'})
    assert resp.status_code == 200

    resp = client.get(f'/api/registration/student/{registration_id}', headers=student_headers)
    assert resp.get_json()['data']['paymentStatus'] == 'partial'


def test_confirmation_requires_approval(client, student_headers, admin_headers):
    registration_id = create_registration(client, student_headers, status='submitted').get_json()['data']['id']
    url = f'/api/registration/confirmation/{registration_id}'

    resp = client.get(url, headers=student_headers)
    assert resp.status_code == 400
    assert resp.get_json()['data']['requirements']['approval'] is False

    client.put(f'/api/registration/student/{registration_id}', headers=admin_headers, json={'status': 'approved'})
    resp = client.get(url, headers=student_headers)
    assert resp.status_code == 200
    confirmation = resp.get_json()['data']['confirmation']
    assert confirmation['confirmationNumber'].startswith(f'CONF-{registration_id}-')
    assert confirmation['fees']['balance'] == 16500

    resp = client.post(url, headers=student_headers)
    assert resp.status_code == 200
    assert resp.get_json()['data']['registration']['confirmationNumber']


SCHOOL = {
    'schoolInfo': {'name': 'Bilingual Grammar School Molyko', 'type': 'Mission', 'foundedYear': 1972},
    'contactInfo': {'address': 'Molyko, Buea', 'region': 'South West', 'phoneNumber': '+237233320000',
                    'email': 'info@bgs-molyko.cm'},
    'principalInfo': {'title': 'Mrs', 'fullName': 'Grace Etonde', 'phoneNumber': '+237677100000'},
    'registrarInfo': {'fullName': 'Peter Ashu', 'phoneNumber': '+237677200000'},
    'academicInfo': {'totalStudents': 1200, 'teachingStaff': 60},
}


def test_school_registration_fees_and_code(client, teacher_headers, student_headers):
    assert client.post('/api/registration/school', headers=student_headers, json=SCHOOL).status_code == 403

    resp = client.post('/api/registration/school', headers=teacher_headers, json=SCHOOL)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['id'].startswith('SCH-REG-')
    assert data['schoolCode'].startswith('SO-MS-')
    assert data['fees'] == {'registrationFee': 60000, 'annualFee': 30000, 'totalAmount': 90000, 'currency': 'XAF'}
    assert data['schoolInfo']['level'] == 'Secondary'
    assert data['status'] == 'draft'

    renamed = dict(SCHOOL, schoolInfo=dict(SCHOOL['schoolInfo'], name='bilingual grammar school MOLYKO'))
    assert client.post('/api/registration/school', headers=teacher_headers, json=renamed).status_code == 409

    bad_type = dict(SCHOOL, schoolInfo=dict(SCHOOL['schoolInfo'], name='Other', type='Community'))
    resp = client.post('/api/registration/school', headers=teacher_headers, json=bad_type)
    assert resp.get_json()['message'] == 'Invalid school type'

    resp = client.post('/api/registration/school', headers=teacher_headers,
                       json={k: v for k, v in SCHOOL.items() if k != 'registrarInfo'})
    assert resp.get_json()['message'] == 'Missing required school information'


def test_school_registration_updates(client, admin_headers, teacher_headers, examiner_headers):
    centre = dict(SCHOOL, examCenterInfo={'isExamCenter': True, 'capacity': 400})
    school = client.post('/api/registration/school', headers=teacher_headers, json=centre).get_json()['data']
    assert school['fees']['totalAmount'] == 60000 + 30000 + 25000 + 15000
    url = f"/api/registration/school/{school['id']}"

    # Teachers cannot move the status; dropping the exam centre recalculates fees
    resp = client.put(url, headers=teacher_headers, json={'status': 'approved',
                                                          'examCenterInfo': {'isExamCenter': False}})
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['status'] == 'draft'
    assert data['fees']['totalAmount'] == 90000
    assert data['examCenterInfo']['capacity'] == 400

    assert client.put(url, headers=admin_headers, json={'status': 'approved'}).status_code == 400
    assert client.put(url, headers=admin_headers, json={'status': 'submitted'}).get_json()['data']['submittedAt']
    resp = client.put(url, headers=admin_headers, json={'status': 'approved'})
    assert resp.get_json()['data']['approvedAt']

    resp = client.put(url, headers=teacher_headers, json={'academicInfo': {'totalStudents': 1300}})
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Cannot modify approved, rejected, or suspended registration'

    assert client.get(url, headers=examiner_headers).status_code == 200
    assert client.delete(url, headers=teacher_headers).status_code == 403
    assert client.delete(url, headers=admin_headers).status_code == 200
    assert client.get(url, headers=admin_headers).status_code == 404


def test_school_listing_filters_and_statistics(client, admin_headers, teacher_headers, student_headers):
    client.post('/api/registration/school', headers=teacher_headers, json=SCHOOL)
    government = dict(SCHOOL,
                      schoolInfo={'name': 'Government High School Bamenda', 'type': 'Government'},
                      contactInfo=dict(SCHOOL['contactInfo'], region='North West', address='Up Station'),
                      academicInfo={'totalStudents': 800, 'teachingStaff': 40},
                      examCenterInfo={'isExamCenter': True})
    client.post('/api/registration/school', headers=admin_headers, json=government)

    assert client.get('/api/registration/schools', headers=student_headers).status_code == 403
    assert client.get('/api/registration/schools?limit=101', headers=admin_headers).status_code == 400

    resp = client.get('/api/registration/schools?sortBy=totalStudents&sortOrder=asc', headers=teacher_headers)
    data = resp.get_json()['data']
    assert [s['schoolInfo']['type'] for s in data['schools']] == ['Government', 'Mission']
    stats = data['statistics']
    assert stats['total'] == 2
    assert stats['byType'] == {'government': 1, 'private': 0, 'mission': 1}
    assert stats['examCenters'] == 1
    assert stats['totalStudents'] == 2000
    assert stats['totalTeachers'] == 100
    assert stats['averageStudentsPerSchool'] == 1000
    assert stats['byRegion'] == {'South West': 1, 'North West': 1}

    resp = client.get('/api/registration/schools?isExamCenter=true', headers=admin_headers)
    assert [s['schoolInfo']['name'] for s in resp.get_json()['data']['schools']] == ['Government High School Bamenda']
    resp = client.get('/api/registration/schools?q=up%20station', headers=admin_headers)
    assert resp.get_json()['data']['pagination']['totalSchools'] == 1


def test_registration_search(client, admin_headers, student_headers, examiner_headers):
    create_registration(client, student_headers)
    create_registration(client, admin_headers, studentId=DEMO_STUDENT_ID, examLevel='O Level',
                        personalInfo={'fullName': 'Demo Student', 'region': 'Centre'},
                        schoolInfo={'name': 'Demo Examination Center'})

    assert client.get('/api/registration/students/search', headers=student_headers).status_code == 403
    assert client.get('/api/registration/students/search?page=0', headers=admin_headers).status_code == 400

    resp = client.get('/api/registration/students/search?sortBy=totalAmount&sortOrder=asc', headers=examiner_headers)
    data = resp.get_json()['data']
    assert [r['examLevel'] for r in data['registrations']] == ['O Level', 'A Level']
    stats = data['statistics']
    assert stats['byLevel'] == {'oLevel': 1, 'aLevel': 1}
    assert stats['byStatus']['draft'] == 2
    assert stats['totalFees'] == (5000 + 3 * 2000) + (7500 + 3 * 3000)
    assert stats['averageFees'] == 13750

    resp = client.get('/api/registration/students/search?q=demo%20examination', headers=admin_headers)
    assert [r['studentId'] for r in resp.get_json()['data']['registrations']] == [DEMO_STUDENT_ID]
    resp = client.get('/api/registration/students/search?region=cent&examLevel=A%20Level', headers=admin_headers)
    assert resp.get_json()['data']['registrations'] == []
