from conftest import EXAMINER_ID, STUDENT_ID, DEMO_STUDENT_ID
from analytics_helpers import mastery_level, percentile_against, performance_trajectory
from test_results import published_results


class FakeResult:
    def __init__(self, average):
        self.average_percentage = average


# ===== SUBJECTS AND EXAMINERS =====

def test_subject_performance_analytics(client, admin_headers, examiner_headers, teacher_headers):
    empty = client.get('/api/analytics/subject-performance?subjectCode=AMH', headers=admin_headers).get_json()
    assert empty['data']['hasData'] is False

    published_results(client, admin_headers, examiner_headers)

    data = client.get('/api/analytics/subject-performance?subjectCode=AMH&includeSchools=true&includeRegional=true',
                      headers=examiner_headers).get_json()['data']
    assert data['metrics']['totalCandidates'] == 2
    assert data['metrics']['passRate'] == 100
    assert data['metrics']['range'] == {'min': 45, 'max': 78}
    assert data['difficultyAnalysis']['difficultyLevel'] == 'moderate'
    assert data['schoolPerformance'][0]['schoolId'] == 'GBHS-001'
    assert data['insights']['insights'][0]['type'] == 'positive'

    overall = client.get('/api/analytics/subject-performance', headers=admin_headers).get_json()['data']
    assert overall['totalSubjects'] == 2
    assert overall['topPerforming'][0]['subjectCode'] == 'AMH'
    assert [s['subjectCode'] for s in overall['needsImprovement']] == ['APY']
    assert overall['overallStatistics']['totalCandidates'] == 4

    assert client.get('/api/analytics/subject-performance', headers=teacher_headers).status_code == 403


def test_examiner_metrics(client, admin_headers, examiner_headers):
    assert client.get('/api/analytics/examiner-metrics', headers=admin_headers).status_code == 400
    nothing = client.get(f'/api/analytics/examiner-metrics?examinerId={EXAMINER_ID}',
                         headers=admin_headers).get_json()['data']
    assert nothing['hasData'] is False

    published_results(client, admin_headers, examiner_headers)

    metrics = client.get(f'/api/analytics/examiner-metrics?examinerId={EXAMINER_ID}',
                         headers=examiner_headers).get_json()['data']
    assert metrics['totalScripts'] == 4
    assert metrics['completionRate'] == 100
    assert metrics['qualityScore'] == 85
    assert metrics['performanceRating'] == 'excellent'
    assert metrics['subjectExpertise'][0]['expertiseLevel'] == 'beginner'

    everyone = client.get('/api/analytics/examiner-metrics?includeAll=true', headers=admin_headers).get_json()['data']
    assert everyone['summary']['activeExaminers'] == 1
    assert everyone['examiners'][0]['examinerId'] == EXAMINER_ID


# ===== PERFORMANCE =====

def test_region_performance(client, admin_headers, examiner_headers, teacher_headers):
    empty = client.get('/api/analytics/performance/region/Southwest', headers=admin_headers).get_json()['data']
    assert empty['regionInfo']['hasData'] is False

    published_results(client, admin_headers, examiner_headers)

    data = client.get('/api/analytics/performance/region/Southwest?includeSchools=true&includeInsights=true'
                      '&includeDemographics=true', headers=examiner_headers).get_json()['data']
    assert data['regionInfo']['totalResults'] == 1
    assert data['overallMetrics']['averagePerformance'] == 75
    assert data['overallMetrics']['passRate'] == 100
    assert [s['subjectCode'] for s in data['subjectPerformance']] == ['AMH', 'APY']
    assert data['subjectPerformance'][0]['schoolsOffering'] == 1
    assert data['trends']['growthAnalysis'] is None
    assert data['schoolRankings'][0]['schoolId'] == 'GBHS-001'
    assert data['schoolRankings'][0]['rank'] == 1
    assert data['demographicAnalysis']['rural']['count'] == 1
    assert data['insights']['challenges'] == []
    assert data['insights']['opportunities'][0]['subjects'] == ['AMH', 'APY']

    centre = client.get('/api/analytics/performance/region/centre?includeInsights=true',
                        headers=admin_headers).get_json()['data']
    types = [c['type'] for c in centre['insights']['challenges']]
    assert types == ['underperforming_schools', 'weak_subjects']
    assert centre['insights']['recommendations'][-1] == 'Focus teacher training on weak subjects: APY'

    assert client.get('/api/analytics/performance/region/Littoral',
                      headers=admin_headers).get_json()['data']['regionInfo']['hasData'] is False
    assert client.get('/api/analytics/performance/region/Southwest', headers=teacher_headers).status_code == 403
    assert client.get('/api/analytics/performance/region/Southwest?timeframe=decade',
                      headers=admin_headers).status_code == 400


def test_school_performance(client, admin_headers, examiner_headers, teacher_headers):
    published_results(client, admin_headers, examiner_headers)

    data = client.get('/api/analytics/performance/school/GBHS-001?includeComparative=true'
                      '&includeOpportunities=true', headers=admin_headers).get_json()['data']
    assert data['schoolInfo']['schoolName'] == 'Government High School Limbe Southwest'
    assert data['overallMetrics']['gradeDistribution'] == {'B': 2}
    assert data['topPerformers'][0]['studentId'] == STUDENT_ID
    competitive = data['competitiveAnalysis']
    assert competitive['region'] == 'Southwest'
    assert competitive['regionalAverage'] == 75
    assert competitive['nationalAverage'] == 58
    assert competitive['nationalRanking'] == 1
    assert competitive['performanceGap']['toNationalAverage'] == 17
    assert competitive['percentileRanking'] == {'regional': 50, 'national': 65}
    assert [o['type'] for o in data['improvementOpportunities']] == ['excellence_development']

    assert client.get('/api/analytics/performance/school/GBHS-001', headers=teacher_headers).status_code == 403
    own = client.get('/api/analytics/performance/school/GBHS-002', headers=teacher_headers).get_json()['data']
    assert own['schoolInfo']['hasData'] is False


def test_student_performance(client, admin_headers, examiner_headers, student_headers, teacher_headers):
    published_results(client, admin_headers, examiner_headers)

    data = client.get(f'/api/analytics/performance/student/{STUDENT_ID}?includeComparative=true',
                      headers=student_headers).get_json()['data']
    assert data['studentInfo']['totalExams'] == 1
    assert data['performanceTrends']['trend'] == 'insufficient_data'
    assert [m['masteryLevel'] for m in data['subjectMastery']] == ['advanced', 'advanced']
    assert data['learningAnalytics']['learningVelocity'] == 'insufficient_data'
    assert [s['subjectCode'] for s in data['learningAnalytics']['strengths']] == ['AMH', 'APY']
    assert data['overallMetrics']['currentPerformance'] == 75
    comparison = data['comparativeMetrics']
    assert comparison['schoolPercentile'] == 50
    assert comparison['nationalPercentile'] == 65
    assert comparison['ranking']['national'] == 1

    weak = client.get(f'/api/analytics/performance/student/{DEMO_STUDENT_ID}?includePredictive=true',
                      headers=examiner_headers).get_json()['data']['predictiveAnalytics']
    assert weak['riskFactors'] == ['Below average performance']
    assert weak['recommendations'] == ['Prioritize foundational learning in: AMH, APY']
    assert weak['nextExamPrediction'] is None

    assert client.get(f'/api/analytics/performance/student/{DEMO_STUDENT_ID}',
                      headers=student_headers).status_code == 403
    assert client.get(f'/api/analytics/performance/student/{STUDENT_ID}',
                      headers=teacher_headers).status_code == 403


def test_performance_trajectory():
    trajectory = performance_trajectory([FakeResult(50), FakeResult(60), FakeResult(70)])
    assert trajectory['trendDirection'] == 'improving'
    assert trajectory['improvementRate'] == 10
    assert trajectory['projectedPerformance'] == 80
    assert trajectory['consistency'] == 92

    flat = performance_trajectory([FakeResult(64), FakeResult(62)])
    assert flat['trend'] == 'stable'
    assert flat['projectedPerformance'] == 60


def test_mastery_and_percentiles():
    assert [mastery_level(v) for v in (85, 70, 65, 50, 49)] == \
        ['expert', 'advanced', 'intermediate', 'developing', 'beginner']
    assert percentile_against(75, 75) == 50
    assert percentile_against(200, 50) == 99
    assert percentile_against(0, 60) == 1
    assert percentile_against(40, 0) == 50


# ===== COMPARATIVE ANALYSIS =====

def compare(client, headers, query):
    return client.get(f'/api/analytics/comparative-analysis?{query}', headers=headers)


def test_compare_schools_and_regions(client, admin_headers, examiner_headers):
    published_results(client, admin_headers, examiner_headers)

    schools = compare(client, admin_headers, 'type=schools&entities=DEMO-001,GBHS-001').get_json()['data']
    data = schools['comparisonData']
    assert [s['schoolId'] for s in data['schools']] == ['GBHS-001', 'DEMO-001']
    assert data['averages']['averagePerformance'] == 58
    assert data['mostImproved'] is None
    assert data['insights'] == ['Significant performance gap of 35 points between top and bottom schools']
    assert schools['totalResults'] == 2

    regions = compare(client, examiner_headers, 'type=regions&entities=Centre,Southwest').get_json()['data']
    assert regions['comparisonData']['topPerformer']['regionId'] == 'Southwest'
    assert len(regions['comparisonData']['insights']) == 2


def test_compare_subjects_and_sessions(client, admin_headers, examiner_headers):
    published_results(client, admin_headers, examiner_headers)

    subjects = compare(client, admin_headers, 'type=subjects&entities=APY,AMH').get_json()['data']['comparisonData']
    assert [(s['subjectCode'], s['averagePercentage'], s['passRate']) for s in subjects['subjects']] == \
        [('AMH', 62, 100), ('APY', 54, 50)]
    assert subjects['insights'][1] == 'APY needs attention with only 50% pass rate'

    sessions = compare(client, admin_headers, 'type=sessions&entities=2024,2025').get_json()['data']['comparisonData']
    assert sessions['sessions'][1]['performanceChange'] == 58
    assert sessions['trends']['overallTrend'] == 'improving'
    assert sessions['trends']['bestSession']['sessionId'] == '2025'


def test_comparative_analysis_validation(client, admin_headers, teacher_headers):
    invalid = compare(client, admin_headers, 'type=galaxies&entities=A')
    assert invalid.get_json()['message'] == 'Invalid comparison type'
    nothing = compare(client, admin_headers, 'type=schools&entities=')
    assert nothing.get_json()['message'] == 'No entities specified for comparison'
    assert compare(client, teacher_headers, 'type=schools&entities=GBHS-001').status_code == 403
