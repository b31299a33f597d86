"""
Analytics Routes
Subject performance, examiner metrics, performance by region, school and
student, and comparative analysis
"""
from flask_login import current_user
from datetime import datetime

from db_single import get_session
from models import User
from marking_models import MarkingScore, DoubleMarkingVerification
from results_models import ExamResult
from validators import parse_bool
from api_helpers import api_success, api_error, server_error, query_arg, round_half_up
from auth_helpers import caller_type
from results_helpers import subject_grade_distribution, subject_performance, performance_distribution, session_trends
from analytics_helpers import (subject_lines, subject_metrics, subject_grade_breakdown, difficulty_analysis,
                               subject_regional_performance, subject_school_performance, subject_trends,
                               subject_insights, subject_summaries, examiner_metrics, comparative_metrics,
                               TIMEFRAMES, COMPARISON_TYPES, COMPARISONS, generated_at, in_timeframe, date_range,
                               results_in_region, group_metrics, trends_with_growth, ranked_schools,
                               regional_subject_performance, urban_rural_split, regional_insights,
                               school_comparison, improvement_opportunities, top_performers,
                               performance_trajectory, subject_mastery, learning_analytics, student_comparison,
                               risk_factors, study_recommendations)


def _published_results(session_db, exam_level=None):
    query = session_db.query(ExamResult)
    if exam_level:
        query = query.filter(ExamResult.exam_level == exam_level)
    return [r for r in query.all() if r.is_published]


def _timeframe():
    timeframe = query_arg('timeframe', 'all')
    return timeframe if timeframe in TIMEFRAMES else None


def register_analytics_routes(bp, require_roles):
    """Register analytics routes"""

    # ==================== SUBJECTS AND EXAMINERS ====================
    @bp.route('/analytics/subject-performance', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view subject analytics')
    def analytics_subject_performance():
        subject_code = query_arg('subjectCode')
        session_db = get_session()
        try:
            query = session_db.query(ExamResult)
            if query_arg('examLevel'):
                query = query.filter(ExamResult.exam_level == query_arg('examLevel'))
            if query_arg('examSession'):
                query = query.filter(ExamResult.exam_session == query_arg('examSession'))
            results = [r for r in query.all() if r.is_published]

            if subject_code:
                lines = subject_lines(results, subject_code)
                if not lines:
                    return api_success({'subjectCode': subject_code, 'hasData': False,
                                        'message': 'No data available for this subject'},
                                       'No data available for subject analysis')
                metrics = subject_metrics(lines)
                difficulty = difficulty_analysis(lines)
                trends = subject_trends(lines)
                data = {
                    'subjectCode': subject_code,
                    'subjectName': lines[0][1].get('subjectName') or subject_code,
                    'hasData': True,
                    'metrics': metrics,
                    'gradeDistribution': subject_grade_breakdown(lines),
                    'difficultyAnalysis': difficulty,
                }
                if parse_bool(query_arg('includeRegional')):
                    data['regionalPerformance'] = subject_regional_performance(lines)
                if parse_bool(query_arg('includeSchools')):
                    data['schoolPerformance'] = subject_school_performance(lines)[:20]
                include_trends = parse_bool(query_arg('includeTrends'))
                if include_trends:
                    data['performanceTrends'] = trends
                data['insights'] = subject_insights(metrics, difficulty,
                                                    trends['trendAnalysis'] if include_trends else None)
            else:
                summaries = subject_summaries(subject_lines(results))
                data = {
                    'allSubjects': True,
                    'totalSubjects': len(summaries),
                    'subjectSummaries': summaries,
                    'topPerforming': summaries[:5],
                    'needsImprovement': [s for s in summaries if s['passRate'] < 70],
                    'overallStatistics': {
                        'averagePassRate': round_half_up(sum(s['passRate'] for s in summaries) / len(summaries))
                        if summaries else 0,
                        'averagePerformance': round_half_up(
                            sum(s['averagePercentage'] for s in summaries) / len(summaries)) if summaries else 0,
                        'totalCandidates': sum(s['totalCandidates'] for s in summaries),
                    },
                }
            return api_success(data, 'Subject performance analytics retrieved successfully')
        except Exception as e:
            return server_error('Get subject performance analytics error', e)
        finally:
            session_db.close()

    @bp.route('/analytics/examiner-metrics', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view examiner metrics')
    def analytics_examiner_metrics():
        examiner_id = query_arg('examinerId')
        include_all = parse_bool(query_arg('includeAll'))
        if not include_all and not examiner_id:
            return api_error('Examiner ID is required')

        session_db = get_session()
        try:
            markings = session_db.query(MarkingScore).all()
            verifications = session_db.query(DoubleMarkingVerification).all()

            if include_all:
                all_metrics = [examiner_metrics(e, markings, verifications)
                               for e in sorted({m.examiner_id for m in markings})]
                active = [m for m in all_metrics if m['hasData']]
                summary = {
                    'totalExaminers': len(all_metrics),
                    'activeExaminers': len(active),
                    'averageCompletionRate': round_half_up(sum(m['completionRate'] for m in active) / len(active))
                    if active else 0,
                    'averageQualityScore': round_half_up(sum(m['qualityScore'] for m in active) / len(active))
                    if active else 0,
                    'topPerformers': sorted(active, key=lambda m: m['qualityScore'] + m['consistencyScore']
                                            + m['completionRate'], reverse=True)[:5],
                    'needsImprovement': [m for m in active if m['performanceRating'] == 'needs_improvement'],
                }
                return api_success({
                    'allExaminers': True,
                    'summary': summary,
                    'examiners': sorted(active, key=lambda m: m['qualityScore'], reverse=True),
                }, 'All examiner metrics retrieved successfully')

            metrics = examiner_metrics(examiner_id, markings, verifications)
            if not metrics['hasData']:
                return api_success({'examinerId': examiner_id, 'hasData': False,
                                    'message': 'No marking data available for this examiner'},
                                   'No data available for examiner metrics')
            if parse_bool(query_arg('includeComparative')):
                all_metrics = [examiner_metrics(e, markings, verifications)
                               for e in sorted({m.examiner_id for m in markings})]
                metrics['comparativeMetrics'] = comparative_metrics(all_metrics, examiner_id)
            return api_success(metrics, 'Examiner metrics retrieved successfully')
        except Exception as e:
            return server_error('Get examiner metrics error', e)
        finally:
            session_db.close()

    # ==================== PERFORMANCE ====================
    @bp.route('/analytics/performance/region/<region_id>', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view regional analytics')
    def analytics_region_performance(region_id):
        timeframe = _timeframe()
        if timeframe is None:
            return api_error('Invalid timeframe')

        session_db = get_session()
        try:
            regional = results_in_region(_published_results(session_db), region_id)
            regional = in_timeframe(regional, timeframe)
            if not regional:
                return api_success({'regionInfo': {'regionId': region_id, 'hasData': False}, 'analytics': None,
                                    'message': 'No results available for this region'},
                                   'No data available for regional analytics')

            metrics = group_metrics(regional)
            subjects = regional_subject_performance(regional)
            data = {
                'regionInfo': {
                    'regionId': region_id,
                    'regionName': region_id,
                    'hasData': True,
                    'totalResults': len(regional),
                    'dateRange': date_range(regional),
                },
                'overallMetrics': metrics,
                'subjectPerformance': subjects[:15],
                'performanceDistribution': performance_distribution(regional),
                'trends': trends_with_growth(regional),
            }
            schools = ranked_schools(regional)
            if parse_bool(query_arg('includeSchools')):
                data['schoolRankings'] = schools[:20]
                data['schoolStatistics'] = {
                    'totalSchools': len(schools),
                    'topPerformers': schools[:5],
                    'needsImprovement': list(reversed(schools[-5:])),
                }
            if parse_bool(query_arg('includeDemographics')):
                data['demographicAnalysis'] = urban_rural_split(regional)
            if parse_bool(query_arg('includeInsights')):
                data['insights'] = regional_insights(metrics, schools, subjects)
            return api_success(data, 'Regional performance analytics retrieved successfully')
        except Exception as e:
            return server_error('Get regional performance analytics error', e)
        finally:
            session_db.close()

    @bp.route('/analytics/performance/school/<school_id>', methods=['GET'])
    @require_roles('admin', 'examiner', 'teacher', message='Access denied')
    def analytics_school_performance(school_id):
        if caller_type() == 'teacher' and current_user.school_id != school_id:
            return api_error('Access denied', 403)
        timeframe = _timeframe()
        if timeframe is None:
            return api_error('Invalid timeframe')

        session_db = get_session()
        try:
            published = _published_results(session_db)
            school_results = in_timeframe([r for r in published if r.school_id == school_id], timeframe)
            if not school_results:
                return api_success({'schoolInfo': {'schoolId': school_id, 'hasData': False}, 'analytics': None,
                                    'message': 'No results available for analytics'},
                                   'No data available for school analytics')

            metrics = group_metrics(school_results)
            metrics['gradeDistribution'] = subject_grade_distribution(school_results)['counts']
            subjects = subject_performance(school_results, with_top_performers=True)
            data = {
                'schoolInfo': {
                    'schoolId': school_id,
                    'schoolName': school_results[0].school_name,
                    'centerCode': school_results[0].centre_code,
                    'hasData': True,
                    'totalResults': len(school_results),
                    'dateRange': date_range(school_results),
                },
                'overallMetrics': metrics,
                'subjectPerformance': subjects[:10],
                'performanceTrends': session_trends(school_results),
                'topPerformers': top_performers(school_results),
            }
            if parse_bool(query_arg('includeComparative')):
                data['competitiveAnalysis'] = school_comparison(school_id, school_results,
                                                                in_timeframe(published, timeframe))
            if parse_bool(query_arg('includeOpportunities')):
                data['improvementOpportunities'] = improvement_opportunities(subjects, metrics)
            return api_success(data, 'School performance analytics retrieved successfully')
        except Exception as e:
            return server_error('Get school performance analytics error', e)
        finally:
            session_db.close()

    @bp.route('/analytics/performance/student/<student_id>', methods=['GET'])
    @require_roles(message='Authentication required')
    def analytics_student_performance(student_id):
        user_type = caller_type()
        if user_type == 'student' and current_user.id != student_id:
            return api_error('Access denied', 403)
        timeframe = _timeframe()
        if timeframe is None:
            return api_error('Invalid timeframe')

        session_db = get_session()
        try:
            published = _published_results(session_db)
            student_results = sorted(in_timeframe([r for r in published if r.student_id == student_id], timeframe),
                                     key=lambda r: generated_at(r) or '')
            if user_type == 'teacher':
                student = session_db.get(User, student_id)
                schools = {r.school_id for r in student_results}
                if student is not None and student.school_id:
                    schools.add(student.school_id)
                if current_user.school_id not in schools:
                    return api_error('Access denied', 403)
            if not student_results:
                return api_success({'studentInfo': {'studentId': student_id, 'hasData': False}, 'analytics': None,
                                    'message': 'No results available for analytics'},
                                   'No data available for student analytics')

            latest = student_results[-1]
            trajectory = performance_trajectory(student_results)
            mastery = subject_mastery(student_results)
            performances = [r.average_percentage for r in student_results]
            data = {
                'studentInfo': {
                    'studentId': student_id,
                    'studentName': latest.student_name,
                    'studentNumber': latest.student_number,
                    'schoolName': latest.school_name,
                    'hasData': True,
                    'totalExams': len(student_results),
                    'dateRange': date_range(student_results),
                },
                'performanceTrends': trajectory,
                'subjectMastery': mastery,
                'learningAnalytics': learning_analytics(student_results),
                'overallMetrics': {
                    'currentPerformance': latest.average_percentage,
                    'bestPerformance': max(performances),
                    'averagePerformance': round_half_up(sum(performances) / len(performances)),
                    'totalSubjects': len({s.get('subjectCode') for r in student_results for s in r.subjects or []}),
                    'passRate': group_metrics(student_results)['passRate'],
                },
            }
            if parse_bool(query_arg('includeComparative')):
                data['comparativeMetrics'] = student_comparison(latest, in_timeframe(published, timeframe))
            if parse_bool(query_arg('includePredictive')):
                data['predictiveAnalytics'] = {
                    'nextExamPrediction': trajectory['projectedPerformance'],
                    'riskFactors': risk_factors(student_results),
                    'recommendations': study_recommendations(trajectory, mastery),
                }
            return api_success(data, 'Student performance analytics retrieved successfully')
        except Exception as e:
            return server_error('Get student performance analytics error', e)
        finally:
            session_db.close()

    # ==================== COMPARATIVE ANALYSIS ====================
    @bp.route('/analytics/comparative-analysis', methods=['GET'])
    @require_roles('admin', 'examiner', message='Insufficient permissions to view comparative analysis')
    def analytics_comparative_analysis():
        comparison_type = query_arg('type', 'schools')
        if comparison_type not in COMPARISON_TYPES:
            return api_error('Invalid comparison type')
        entities = [e.strip() for e in query_arg('entities').split(',') if e.strip()]
        if not entities:
            return api_error('No entities specified for comparison')
        timeframe = _timeframe()
        if timeframe is None:
            return api_error('Invalid timeframe')

        session_db = get_session()
        try:
            results = in_timeframe(_published_results(session_db, query_arg('examLevel') or None), timeframe)
            data = {
                'comparisonType': comparison_type,
                'entities': entities,
                'timeframe': timeframe,
                'examLevel': query_arg('examLevel'),
                'totalResults': len(results),
                'comparisonData': COMPARISONS[comparison_type](results, entities),
                'metadata': {
                    'generatedAt': datetime.utcnow().isoformat(),
                    'dataRange': date_range(results),
                },
            }
            return api_success(data, 'Comparative analysis retrieved successfully')
        except Exception as e:
            return server_error('Get comparative analysis error', e)
        finally:
            session_db.close()
