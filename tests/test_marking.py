EXAM_ID = 'EXAM-2025-AL-AMH-P1'

ALLOCATION = {
    'examId': EXAM_ID,
    'subjectCode': 'AMH',
    'subjectName': 'Mathematics',
    'paperNumber': 1,
    'examLevel': 'A Level',
    'totalScripts': 10,
    'markingScheme': {'totalMarks': 100},
}


def script_id(number):
    return f"SCRIPT-{EXAM_ID}-P1-{number:04d}"


def scores(first, second):
    return [{
        'sectionId': 'A',
        'sectionName': 'Section A',
        'questions': [
            {'questionId': 'Q1', 'questionNumber': 1, 'maxMarks': 50, 'marksAwarded': first},
            {'questionId': 'Q2', 'questionNumber': 2, 'maxMarks': 50, 'marksAwarded': second},
        ],
    }]


def submit(client, headers, number, first=35, second=30, **extra):
    body = {
        'scriptId': script_id(number),
        'candidateNumber': f"CAND-{number:05d}",
        'examId': EXAM_ID,
        'subjectCode': 'AMH',
        'paperNumber': 1,
        'examLevel': 'A Level',
        'scores': scores(first, second),
        'autoSubmit': True,
    }
    body.update(extra)
    return client.post('/api/marking/scores', headers=headers, json=body)


# ===== ALLOCATION =====

def test_auto_allocation(client, admin_headers):
    resp = client.post('/api/marking/allocate-scripts', headers=admin_headers, json=ALLOCATION)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['allocatedScripts'] == 10
    assert data['remainingScripts'] == 0
    entry = data['allocations'][0]
    assert entry['examinerId'] == 'EXM-002'
    assert entry['status'] == 'allocated'
    double = [s['scriptId'] for s in entry['scripts'] if s['requiresDoubleMarking']]
    assert double == [script_id(5), script_id(10)]

    assert client.post('/api/marking/allocate-scripts', headers=admin_headers,
                       json=ALLOCATION).status_code == 409

    listing = client.get('/api/marking/allocate-scripts', headers=admin_headers).get_json()['data']
    assert listing['summary']['totalScripts'] == 10
    workload = {e['id']: e['currentWorkload'] for e in listing['examiners']}
    assert workload['EXM-002']['scriptsInProgress'] == 10


def test_allocation_validation(client, admin_headers, student_headers):
    assert client.post('/api/marking/allocate-scripts', headers=student_headers,
                       json=ALLOCATION).status_code == 403
    assert client.post('/api/marking/allocate-scripts', headers=admin_headers,
                       json=dict(ALLOCATION, totalScripts=0)).status_code == 400

    nobody = client.post('/api/marking/allocate-scripts', headers=admin_headers,
                         json=dict(ALLOCATION, paperNumber=2, subjectName='Chemistry'))
    assert nobody.status_code == 400
    assert nobody.get_json()['message'] == 'No suitable examiners available for this subject'

    manual = client.post('/api/marking/allocate-scripts', headers=admin_headers, json=dict(
        ALLOCATION, paperNumber=3, totalScripts=6, allocationMethod='manual',
        manualAllocations=[{'examinerId': 'EXM-001', 'scriptsAllocated': 4}],
    ))
    assert manual.status_code == 201
    assert manual.get_json()['data']['remainingScripts'] == 2


def test_examiner_script_queue(client, admin_headers, examiner_headers):
    allocation = client.post('/api/marking/allocate-scripts', headers=admin_headers,
                             json=ALLOCATION).get_json()['data']

    assert client.get('/api/marking/scripts/EXM-001', headers=examiner_headers).status_code == 403

    queue = client.get('/api/marking/scripts/EXM-002', headers=examiner_headers).get_json()['data']
    assert queue['summary']['totalScripts'] == 10
    assert queue['summary']['allocated'] == 10
    assert queue['workload']['estimatedCompletionTime'] == 250

    url = '/api/marking/scripts/EXM-002'
    started = client.put(url, headers=examiner_headers, json={
        'action': 'start_marking_session', 'allocationId': allocation['id'],
    }).get_json()['data']
    assert started['updatedScripts'] == 10
    assert started['allocation']['status'] == 'in_progress'

    marked = client.put(url, headers=examiner_headers, json={
        'action': 'bulk_status_update', 'allocationId': allocation['id'],
        'newStatus': 'marked', 'scriptIds': [script_id(1), script_id(2)],
    }).get_json()['data']
    assert marked['allocation']['scriptsMarked'] == 2
    assert marked['allocation']['scriptsRemaining'] == 8

    skip = client.put(url, headers=examiner_headers, json={
        'action': 'bulk_status_update', 'allocationId': allocation['id'],
        'newStatus': 'verified', 'scriptIds': [script_id(3)],
    })
    assert skip.status_code == 400

    urgent = client.put(url, headers=examiner_headers, json={
        'action': 'bulk_priority_update', 'allocationId': allocation['id'],
        'priority': 'urgent', 'scriptIds': [script_id(7)],
    })
    assert urgent.get_json()['data']['updatedScripts'] == 1
    queue = client.get(url, headers=examiner_headers).get_json()['data']
    assert queue['scripts'][0]['scriptId'] == script_id(7)

    empty = client.get('/api/marking/scripts/EXM-001', headers=admin_headers).get_json()
    assert empty['message'] == 'No scripts allocated to this examiner'


# ===== SCORES =====

def test_draft_then_submit(client, examiner_headers):
    draft = submit(client, examiner_headers, 1, autoSubmit=False)
    assert draft.status_code == 201
    assert draft.get_json()['data']['status'] == 'draft'
    assert draft.get_json()['message'] == 'Marking saved as draft'

    final = submit(client, examiner_headers, 1)
    assert final.status_code == 200
    data = final.get_json()['data']
    assert data['status'] == 'submitted'
    assert data['totalMarks'] == 65
    assert data['percentage'] == 65
    assert data['grade'] == 'C'

    assert submit(client, examiner_headers, 1).status_code == 409


def test_submission_marks_allocated_script(client, admin_headers, examiner_headers):
    client.post('/api/marking/allocate-scripts', headers=admin_headers, json=ALLOCATION)
    submit(client, examiner_headers, 4)

    queue = client.get('/api/marking/scripts/EXM-002', headers=examiner_headers).get_json()['data']
    assert queue['summary']['marked'] == 1
    assert queue['allocations'][0]['scriptsMarked'] == 1
    assert queue['allocations'][0]['progress'] == 10


def test_scores_validation(client, examiner_headers, teacher_headers):
    assert client.post('/api/marking/scores', headers=teacher_headers, json={}).status_code == 403
    assert client.post('/api/marking/scores', headers=examiner_headers,
                       json={'scriptId': script_id(1)}).status_code == 400
    assert submit(client, examiner_headers, 1, markingType='third').status_code == 400


def test_update_marking(client, admin_headers, examiner_headers):
    marking = submit(client, examiner_headers, 2, autoSubmit=False).get_json()['data']
    url = f"/api/marking/scores/{marking['id']}"

    rescored = client.put(url, headers=examiner_headers, json={'scores': scores(45, 40)}).get_json()['data']
    assert rescored['totalMarks'] == 85
    assert rescored['grade'] == 'A'

    flagged = client.put(url, headers=examiner_headers, json={
        'action': 'add_flag', 'flag': {'type': 'illegible', 'description': 'Page 3'},
    }).get_json()['data']
    assert len(flagged['flags']) == 1

    moderated = client.put(url, headers=admin_headers, json={
        'action': 'moderate_marking', 'moderation': {'finalMarks': 75, 'moderationComments': 'Lenient'},
    }).get_json()['data']
    assert moderated['status'] == 'moderated'
    assert moderated['totalMarks'] == 75
    assert moderated['grade'] == 'B'

    client.put(url, headers=admin_headers, json={'action': 'finalize_marking'})
    locked = client.put(url, headers=admin_headers, json={'action': 'add_flag', 'flag': {'type': 'x'}})
    assert locked.status_code == 400


def test_script_markings_summary(client, admin_headers, examiner_headers):
    submit(client, admin_headers, 3, 40, 30)
    submit(client, examiner_headers, 3, 30, 30, markingType='second')

    data = client.get(f"/api/marking/scores/{script_id(3)}", headers=admin_headers).get_json()['data']
    assert data['summary']['markingTypes'] == ['first', 'second']
    assert data['summary']['averageMarks'] == 65
    assert data['summary']['finalMarks'] == 65

    verified = client.put(f"/api/marking/scores/{script_id(3)}", headers=admin_headers,
                          json={'action': 'verify_markings', 'markingType': 'first'}).get_json()['data']
    assert len(verified) == 1
    assert verified[0]['status'] == 'verified'

    data = client.get(f"/api/marking/scores/{script_id(3)}", headers=admin_headers).get_json()['data']
    assert data['summary']['finalMarks'] == 70
    assert data['summary']['status'] == 'verified'

    assert client.get(f"/api/marking/scores/{script_id(9)}", headers=admin_headers).status_code == 404


def test_examiners_only_list_their_markings(client, admin_headers, examiner_headers):
    submit(client, admin_headers, 1)
    submit(client, examiner_headers, 2)

    mine = client.get('/api/marking/scores', headers=examiner_headers).get_json()['data']
    assert mine['statistics']['total'] == 1
    everyone = client.get('/api/marking/scores', headers=admin_headers).get_json()['data']
    assert everyone['statistics']['total'] == 2
    assert everyone['statistics']['byStatus']['submitted'] == 2



def test_finalized_markings_survive_script_verification(client, admin_headers, examiner_headers):
    marking = submit(client, examiner_headers, 6).get_json()['data']
    client.put(f"/api/marking/scores/{marking['id']}", headers=admin_headers, json={'action': 'finalize_marking'})

    resp = client.put(f"/api/marking/scores/{script_id(6)}", headers=admin_headers,
                      json={'action': 'verify_markings'})
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Cannot modify finalized marking'

    data = client.get(f"/api/marking/scores/{marking['id']}", headers=admin_headers).get_json()['data']
    assert data['status'] == 'finalized'
    assert data['verification']['isVerified'] is False


def test_malformed_scores_are_rejected(client, examiner_headers):
    resp = submit(client, examiner_headers, 7, first='35')
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'marksAwarded must be a number'

    assert submit(client, examiner_headers, 7, second=-4).status_code == 400
    assert submit(client, examiner_headers, 7, scores=['Section A']).status_code == 400
    assert submit(client, examiner_headers, 7, scores=[{'sectionId': 'A', 'questions': [12]}]).status_code == 400

    draft = submit(client, examiner_headers, 8, autoSubmit=False).get_json()['data']
    rescored = client.put(f"/api/marking/scores/{draft['id']}", headers=examiner_headers,
                          json={'scores': scores(40, 'forty')})
    assert rescored.status_code == 400
    assert client.get(f"/api/marking/scores/{draft['id']}",
                      headers=examiner_headers).get_json()['data']['totalMarks'] == 65


# ===== DOUBLE MARKING =====

def test_double_marking_auto_resolves(client, admin_headers, examiner_headers):
    first = submit(client, admin_headers, 5, 35, 30).get_json()['data']
    second = submit(client, examiner_headers, 5, 30, 30, markingType='second').get_json()['data']

    resp = client.post('/api/marking/verify-double-marking', headers=admin_headers, json={
        'scriptId': script_id(5), 'firstMarkingId': first['id'], 'secondMarkingId': second['id'],
        'autoResolve': True,
    })
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['discrepancy']['percentageDifference'] == 5
    assert data['discrepancy']['isSignificant'] is False
    assert data['verification']['status'] == 'resolved'
    assert data['verification']['finalMarks'] == 63
    assert data['escalation']['isEscalated'] is False

    again = client.post('/api/marking/verify-double-marking', headers=admin_headers, json={
        'scriptId': script_id(5), 'firstMarkingId': first['id'], 'secondMarkingId': second['id'],
    })
    assert again.status_code == 409


def test_double_marking_escalates(client, admin_headers, examiner_headers):
    first = submit(client, admin_headers, 10, 35, 30).get_json()['data']
    second = submit(client, examiner_headers, 10, 20, 20, markingType='second').get_json()['data']

    data = client.post('/api/marking/verify-double-marking', headers=admin_headers, json={
        'scriptId': script_id(10), 'firstMarkingId': first['id'], 'secondMarkingId': second['id'],
        'autoResolve': True,
    }).get_json()['data']
    assert data['discrepancy']['isSignificant'] is True
    assert data['verification']['status'] == 'pending'
    assert data['qualityMetrics']['markingQuality'] == 'poor'
    assert data['escalation']['isEscalated'] is True
    assert all(q['requiresReview'] for q in data['questionDiscrepancies'])

    listing = client.get('/api/marking/verify-double-marking?escalatedOnly=true',
                         headers=admin_headers).get_json()['data']
    assert listing['statistics']['escalatedCases'] == 1

    mismatch = client.post('/api/marking/verify-double-marking', headers=admin_headers, json={
        'scriptId': script_id(5), 'firstMarkingId': first['id'], 'secondMarkingId': second['id'],
    })
    assert mismatch.status_code == 400


# ===== CHIEF EXAMINER REVIEW =====

def test_chief_review_moderates_marking(client, admin_headers, examiner_headers):
    submit(client, examiner_headers, 6)
    review = {
        'examId': EXAM_ID, 'subjectCode': 'AMH', 'paperNumber': 1, 'reviewType': 'sample_review',
        'scriptsReviewed': [
            {'scriptId': script_id(6), 'originalMarks': 65, 'reviewedMarks': 68,
             'adjustmentReason': 'Q2 under-marked'},
            {'scriptId': script_id(8), 'originalMarks': 50, 'reviewedMarks': 50},
        ],
    }
    resp = client.put('/api/marking/chief-examiner-review', headers=examiner_headers, json=review)
    assert resp.status_code == 200
    assert resp.get_json()['message'] == 'Chief examiner review created successfully'
    data = resp.get_json()['data']
    assert data['status'] == 'in_progress'
    assert data['statistics']['scriptsAdjusted'] == 1
    assert data['statistics']['averageAdjustment'] == 1.5
    assert data['scriptsReviewed'][0]['markingQuality'] == 'good'

    marking = client.get(f"/api/marking/scores/{script_id(6)}", headers=admin_headers).get_json()['data']
    moderated = marking['markings'][0]
    assert moderated['status'] == 'moderated'
    assert moderated['totalMarks'] == 68
    assert moderated['moderation']['finalMarks'] == 68

    again = client.put('/api/marking/chief-examiner-review', headers=examiner_headers,
                       json=dict(review, status='completed'))
    assert again.get_json()['message'] == 'Chief examiner review updated successfully'

    summary = client.get('/api/marking/chief-examiner-review', headers=admin_headers).get_json()['data']['summary']
    assert summary['totalReviews'] == 1
    assert summary['byStatus']['completed'] == 1

    bad = client.put('/api/marking/chief-examiner-review', headers=examiner_headers,
                     json=dict(review, reviewType='casual_review'))
    assert bad.status_code == 400


# ===== ANALYTICS =====

def test_performance_analytics(client, admin_headers, examiner_headers):
    client.post('/api/marking/allocate-scripts', headers=admin_headers, json=ALLOCATION)
    submit(client, examiner_headers, 1)
    submit(client, examiner_headers, 2, 25, 25)

    overview = client.get('/api/marking/performance-analytics', headers=admin_headers).get_json()['data']
    assert overview['overview']['totalScripts'] == 2
    assert overview['overview']['productivityScore'] == 20
    assert overview['overview']['averageMarks'] == 57.5
    assert len(overview['recentActivity']) == 2

    subject = client.get('/api/marking/performance-analytics?type=subject&subjectCode=AMH',
                         headers=admin_headers).get_json()['data']['subjectPerformance']
    assert subject['totalScripts'] == 2
    assert subject['gradeDistribution'] == {'C': 1, 'D': 1}

    examiner = client.get('/api/marking/performance-analytics?type=examiner&examinerId=GCE2025-EX-001',
                          headers=admin_headers).get_json()['data']
    assert examiner['examinerPerformance']['totalScriptsMarked'] == 2
    assert examiner['examinerDetails']['id'] == 'GCE2025-EX-001'

    productivity = client.get('/api/marking/performance-analytics?type=productivity',
                              headers=admin_headers).get_json()['data']['productivityMetrics']
    assert productivity['totalScriptsAllocated'] == 10
    assert productivity['dailyProductivity'][0]['scriptsMarked'] == 2


def test_zero_discrepancy_threshold_is_honoured(client, admin_headers, examiner_headers):
    first = submit(client, admin_headers, 9, 35, 30).get_json()['data']
    second = submit(client, examiner_headers, 9, 35, 29, markingType='second').get_json()['data']
    body = {'scriptId': script_id(9), 'firstMarkingId': first['id'], 'secondMarkingId': second['id'],
            'autoResolve': True}

    assert client.post('/api/marking/verify-double-marking', headers=admin_headers,
                       json=dict(body, discrepancyThreshold='low')).status_code == 400

    data = client.post('/api/marking/verify-double-marking', headers=admin_headers,
                       json=dict(body, discrepancyThreshold=0)).get_json()['data']
    assert data['discrepancy']['threshold'] == 0
    assert data['discrepancy']['isSignificant'] is True
    assert data['verification']['status'] == 'pending'
