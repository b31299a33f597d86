EXAM_ID = 'EXAM-2025-OL-OMH-P1'
MARKS = [85, 72, 72, 55, 41, 25]

STRICT = {'A1': 90, 'B2': 80, 'B3': 70, 'C4': 60, 'C5': 55, 'C6': 50, 'D7': 40, 'E8': 30, 'F9': 0}
STANDARD = {'A1': 80, 'B2': 70, 'B3': 60, 'C4': 50, 'C5': 45, 'C6': 40, 'D7': 30, 'E8': 20, 'F9': 0}


def mark_candidates(client, headers, marks=MARKS):
    ids = []
    for number, score in enumerate(marks, start=1):
        resp = client.post('/api/marking/scores', headers=headers, json={
            'scriptId': f"SCRIPT-{EXAM_ID}-P1-{number:04d}",
            'candidateNumber': f"CAND-{number:05d}",
            'candidateId': f"STU-{number:03d}",
            'examId': EXAM_ID,
            'subjectCode': 'OMH',
            'paperNumber': 1,
            'examLevel': 'O Level',
            'scores': [{'sectionId': 'A', 'questions': [
                {'questionId': 'Q1', 'maxMarks': 100, 'marksAwarded': score},
            ]}],
            'autoSubmit': True,
        })
        ids.append(resp.get_json()['data']['id'])
    return ids


def save_boundaries(client, headers, boundaries, **extra):
    body = {'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level', 'boundaries': boundaries}
    body.update(extra)
    return client.put('/api/grading/grade-boundaries', headers=headers, json=body)


def move_boundaries(client, headers, *statuses):
    for status in statuses:
        resp = client.put(f'/api/grading/grade-boundaries/{EXAM_ID}', headers=headers,
                          json={'action': 'bulk_status_update', 'newStatus': status})
        assert resp.status_code == 200


# ===== GRADE BOUNDARIES =====

def test_create_and_adjust_boundaries(client, admin_headers, examiner_headers):
    mark_candidates(client, examiner_headers)

    created = save_boundaries(client, examiner_headers, STANDARD)
    assert created.status_code == 201
    data = created.get_json()['data']
    assert data['approvalWorkflow']['status'] == 'draft'
    assert data['statistics']['totalCandidates'] == 6
    assert data['examSession'] == '2025'

    adjusted = save_boundaries(client, examiner_headers, STRICT, adjustmentReason='Paper was easy')
    assert adjusted.status_code == 200
    data = adjusted.get_json()['data']
    assert data['previousBoundaries'] == STANDARD
    history = data['adjustmentHistory']
    assert len(history) == 1
    assert history[0]['reason'] == 'Paper was easy'
    assert history[0]['impactAnalysis']['gradeChanges'] == {'improved': 0, 'declined': 6, 'unchanged': 0}


def test_boundary_validation(client, examiner_headers, teacher_headers):
    unordered = save_boundaries(client, examiner_headers, {'A1': 50, 'B2': 60})
    assert unordered.status_code == 400
    assert 'Grade boundaries must be in descending order' in unordered.get_json()['errors']

    unknown = save_boundaries(client, examiner_headers, {'A': 80})
    assert 'Unknown grade A for O Level' in unknown.get_json()['errors']

    out_of_range = save_boundaries(client, examiner_headers, {'A1': 120})
    assert 'A1 boundary must be between 0 and 100' in out_of_range.get_json()['errors']

    assert save_boundaries(client, examiner_headers, STANDARD, examLevel='B Level').status_code == 400
    assert save_boundaries(client, teacher_headers, STANDARD).status_code == 403


def test_boundary_workflow_and_publication(client, admin_headers, teacher_headers):
    save_boundaries(client, admin_headers, STANDARD)

    skipped = client.put(f'/api/grading/grade-boundaries/{EXAM_ID}', headers=admin_headers,
                         json={'action': 'bulk_status_update', 'newStatus': 'approved'})
    assert skipped.status_code == 400

    move_boundaries(client, admin_headers, 'pending_review', 'reviewed', 'approved')
    published = client.put(f'/api/grading/grade-boundaries/{EXAM_ID}', headers=admin_headers,
                           json={'action': 'publish_all_approved'}).get_json()['data']
    assert published['totalUpdated'] == 1
    workflow = published['updatedBoundaries'][0]['approvalWorkflow']
    assert workflow['status'] == 'published'
    assert workflow['publishedBy'] == 'admin'
    assert workflow['reviewComments'] == 'Bulk review'

    frozen = save_boundaries(client, admin_headers, STRICT)
    assert frozen.status_code == 400
    assert frozen.get_json()['message'] == 'Cannot modify published grade boundaries'

    view = client.get(f'/api/grading/grade-boundaries/{EXAM_ID}', headers=teacher_headers).get_json()['data']
    assert view['summary']['approvedBoundaries'] == 1

    listing = client.get('/api/grading/grade-boundaries?status=published', headers=teacher_headers).get_json()['data']
    assert listing['summary']['totalBoundaries'] == 1


def test_bulk_deactivate_boundaries(client, admin_headers):
    save_boundaries(client, admin_headers, STANDARD)
    resp = client.put(f'/api/grading/grade-boundaries/{EXAM_ID}', headers=admin_headers,
                      json={'action': 'bulk_deactivate'})
    assert resp.get_json()['data']['updatedBoundaries'][0]['isActive'] is False

    active = client.get('/api/grading/grade-boundaries?activeOnly=true', headers=admin_headers).get_json()['data']
    assert active['boundaries'] == []

    missing = client.put('/api/grading/grade-boundaries/EXAM-2030-OL-OLG-P1', headers=admin_headers,
                         json={'action': 'bulk_activate'})
    assert missing.status_code == 404


# ===== GRADE CALCULATION =====

def test_standard_calculation(client, admin_headers, examiner_headers):
    mark_candidates(client, examiner_headers)
    resp = client.post('/api/grading/calculate-grades', headers=examiner_headers,
                       json={'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level'})
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['status'] == 'calculated'
    assert data['statistics']['totalCandidates'] == 6
    assert data['statistics']['range'] == {'min': 25, 'max': 85}
    grades = [c['grade'] for c in data['candidateGrades']]
    assert grades == ['A1', 'B2', 'B2', 'C4', 'C6', 'E8']
    assert [c['position'] for c in data['candidateGrades']] == [1, 2, 2, 4, 5, 6]
    assert data['gradeDistribution']['B2']['count'] == 2


def test_calculation_uses_approved_boundaries(client, admin_headers, examiner_headers):
    mark_candidates(client, examiner_headers)
    save_boundaries(client, admin_headers, STRICT)
    move_boundaries(client, admin_headers, 'pending_review', 'reviewed', 'approved')

    data = client.post('/api/grading/calculate-grades', headers=examiner_headers,
                       json={'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level'}).get_json()['data']
    assert data['gradeBoundaries'] == STRICT
    assert [c['grade'] for c in data['candidateGrades']] == ['B2', 'B3', 'B3', 'C5', 'D7', 'F9']


def test_curved_calculation(client, examiner_headers):
    mark_candidates(client, examiner_headers)
    data = client.post('/api/grading/calculate-grades', headers=examiner_headers, json={
        'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level',
        'calculationType': 'curved', 'curveParameters': {'adjustment': 8, 'cap': 90},
    }).get_json()['data']
    adjusted = [c['adjustedScore'] for c in data['candidateGrades']]
    assert adjusted == [90, 80, 80, 63, 49, 33]
    assert data['candidateGrades'][0]['grade'] == 'A1'
    assert data['candidateGrades'][0]['rawScore'] == 85
    assert data['adjustments'][0]['type'] == 'curve'


def test_calculation_errors(client, examiner_headers):
    missing = client.post('/api/grading/calculate-grades', headers=examiner_headers,
                          json={'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level'})
    assert missing.status_code == 404

    mark_candidates(client, examiner_headers)
    bad_type = client.post('/api/grading/calculate-grades', headers=examiner_headers, json={
        'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level', 'calculationType': 'random',
    })
    assert bad_type.status_code == 400
    bad_boundaries = client.post('/api/grading/calculate-grades', headers=examiner_headers, json={
        'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level', 'customBoundaries': {'A1': 10, 'B2': 20},
    })
    assert bad_boundaries.status_code == 400


def test_calculation_workflow(client, admin_headers, examiner_headers):
    mark_candidates(client, examiner_headers)
    calculation = client.post('/api/grading/calculate-grades', headers=examiner_headers, json={
        'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level',
    }).get_json()['data']

    def move(headers, status, **extra):
        return client.put('/api/grading/calculate-grades', headers=headers,
                          json=dict({'calculationId': calculation['id'], 'status': status}, **extra))

    assert move(admin_headers, 'published').status_code == 400
    reviewed = move(examiner_headers, 'reviewed', reviewComments='Looks consistent').get_json()['data']
    assert reviewed['reviewComments'] == 'Looks consistent'
    assert move(examiner_headers, 'approved').status_code == 403
    assert move(admin_headers, 'approved').status_code == 200
    published = move(admin_headers, 'published').get_json()['data']
    assert published['publishedAt'] is not None

    again = client.post('/api/grading/calculate-grades', headers=examiner_headers, json={
        'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level',
    })
    assert again.status_code == 409

    listing = client.get('/api/grading/calculate-grades?status=published', headers=admin_headers).get_json()['data']
    assert listing['summary']['totalCandidates'] == 6


# ===== NORMALIZATION =====

def test_linear_normalization_workflow(client, admin_headers, examiner_headers):
    marking_ids = mark_candidates(client, examiner_headers)
    resp = client.post('/api/grading/normalize-scores', headers=examiner_headers, json={
        'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level',
        'normalizationType': 'linear', 'parameters': {'scalingFactor': 1.1},
        'justification': 'Paper harder than previous years',
    })
    assert resp.status_code == 200
    assert resp.get_json()['message'] == 'Score normalization created successfully'
    data = resp.get_json()['data']
    assert data['approvalWorkflow']['status'] == 'draft'
    normalized = {a['markingId']: a['normalizedScore'] for a in data['candidateAdjustments']}
    assert normalized[marking_ids[0]] == 94
    assert normalized[marking_ids[5]] == 28
    assert data['impactAnalysis']['candidatesAffected'] == 6

    def move(headers, status):
        return client.put('/api/grading/normalize-scores', headers=headers,
                          json={'normalizationId': data['id'], 'status': status})

    assert move(admin_headers, 'applied').status_code == 400
    assert move(examiner_headers, 'pending_review').status_code == 200
    assert move(examiner_headers, 'reviewed').status_code == 200
    assert move(examiner_headers, 'approved').status_code == 403
    assert move(admin_headers, 'approved').status_code == 200
    applied = move(admin_headers, 'applied').get_json()
    assert applied['markingsUpdated'] == 6
    assert applied['data']['approvalWorkflow']['appliedBy'] == 'admin'

    marking = client.get(f'/api/marking/scores/{marking_ids[0]}', headers=admin_headers).get_json()['data']
    assert marking['totalMarks'] == 94
    assert marking['normalization']['originalScore'] == 85

    again = client.post('/api/grading/normalize-scores', headers=examiner_headers, json={
        'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level',
        'normalizationType': 'linear', 'justification': 'Second attempt',
    })
    assert again.status_code == 409


def test_normalization_applied_immediately(client, admin_headers, examiner_headers):
    mark_candidates(client, examiner_headers, [40, 60])
    resp = client.post('/api/grading/normalize-scores', headers=admin_headers, json={
        'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level',
        'normalizationType': 'percentile', 'justification': 'Rank based', 'applyImmediately': True,
    })
    data = resp.get_json()['data']
    assert resp.get_json()['message'] == 'Score normalization applied successfully'
    assert [a['normalizedScore'] for a in data['candidateAdjustments']] == [50, 100]

    summary = client.get('/api/grading/normalize-scores', headers=admin_headers).get_json()['data']['summary']
    assert summary['byStatus'] == {'applied': 1}

    invalid = client.post('/api/grading/normalize-scores', headers=admin_headers, json={
        'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level',
        'normalizationType': 'magic', 'justification': 'x',
    })
    assert invalid.status_code == 400


# ===== QUALITY ASSURANCE =====

def test_quality_assurance_dashboard(client, admin_headers, examiner_headers):
    mark_candidates(client, examiner_headers)
    client.post('/api/grading/calculate-grades', headers=examiner_headers,
                json={'examId': EXAM_ID, 'subjectCode': 'OMH', 'examLevel': 'O Level'})

    data = client.get(f'/api/grading/quality-assurance?examId={EXAM_ID}', headers=admin_headers).get_json()['data']
    assert data['overview']['totalScripts'] == 6
    assert data['overview']['completionRate'] == 100
    assert data['examinerPerformance']['totalExaminers'] == 1
    assert data['gradeDistributionAnalysis']['totalSubjects'] == 1
    assert data['doubleMarkingMetrics']['totalVerifications'] == 0

    focused = client.get('/api/grading/quality-assurance?type=markingQuality',
                         headers=admin_headers).get_json()['data']
    assert set(focused) == {'overview', 'markingQuality'}

    assert client.get('/api/grading/quality-assurance',
                      headers=examiner_headers).status_code == 200
