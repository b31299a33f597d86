"""
Analytics Helper Functions
Analytics over published results and markings: subjects, examiners,
performance breakdowns and side-by-side comparisons
"""

from datetime import datetime

from api_helpers import round_half_up, round2
from grading_helpers import mean, population_sd, median, mode
from marking_helpers import COUNTABLE_MARKING_STATUSES
from results_helpers import region_of, results_overview, subject_performance, session_trends, school_rankings

EXPECTED_MINUTES_PER_SCRIPT = 30
QUALITY_SCORES = {'excellent': 100, 'good': 80, 'acceptable': 60}


def _rate(part, whole):
    return round_half_up(part / whole * 100) if whole else 0


# ===== SUBJECT PERFORMANCE =====

def subject_lines(results, subject_code=None):
    """(result, subject line) pairs, optionally for one subject"""
    return [(result, subject) for result in results for subject in result.subjects or []
            if subject_code is None or subject.get('subjectCode') == subject_code]


def subject_metrics(lines):
    if not lines:
        return {
            'totalCandidates': 0,
            'averagePercentage': 0,
            'passRate': 0,
            'excellenceRate': 0,
            'standardDeviation': 0,
            'median': 0,
            'mode': 0,
            'range': {'min': 0, 'max': 0},
        }
    percentages = [subject.get('percentage', 0) for _, subject in lines]
    return {
        'totalCandidates': len(lines),
        'averagePercentage': round_half_up(mean(percentages)),
        'passRate': _rate(sum(1 for _, s in lines if s.get('status') == 'pass'), len(lines)),
        'excellenceRate': _rate(sum(1 for p in percentages if p >= 80), len(lines)),
        'standardDeviation': round2(population_sd(percentages)),
        'median': round_half_up(median(percentages)),
        'mode': mode(percentages),
        'range': {'min': min(percentages), 'max': max(percentages)},
    }


def subject_grade_breakdown(lines):
    counts = {}
    for _, subject in lines:
        counts[subject.get('grade')] = counts.get(subject.get('grade'), 0) + 1
    return {
        'distribution': [{'grade': grade, 'count': count, 'percentage': _rate(count, len(lines))}
                         for grade, count in counts.items()],
        'totalCandidates': len(lines),
    }


def _reliability(percentages):
    if len(percentages) < 10:
        return 0.7
    variance = population_sd(percentages) ** 2
    return round2(min(0.95, max(0.5, 0.7 + variance / 1000)))


def difficulty_analysis(lines):
    """
    Difficulty band of a subject plus a discrimination index comparing the
    top and bottom 27% of candidates.
    """
    percentages = sorted((s.get('percentage', 0) for _, s in lines), reverse=True)
    average = mean(percentages)
    if average >= 80:
        level = 'easy'
    elif average >= 60:
        level = 'moderate'
    elif average >= 40:
        level = 'difficult'
    else:
        level = 'very_difficult'

    group = int(len(percentages) * 0.27)
    discrimination = 0
    if group:
        discrimination = round2((mean(percentages[:group]) - mean(percentages[-group:])) / 100)
    return {
        'difficultyLevel': level,
        'difficultyScore': round_half_up(average),
        'discriminationIndex': discrimination,
        'reliability': _reliability(percentages),
    }


def _grouped(lines, key):
    groups = {}
    for result, subject in lines:
        groups.setdefault(key(result), []).append(subject)
    return groups


def _group_row(subjects):
    return {
        'totalCandidates': len(subjects),
        'averagePercentage': round_half_up(mean([s.get('percentage', 0) for s in subjects])),
        'passRate': _rate(sum(1 for s in subjects if s.get('status') == 'pass'), len(subjects)),
    }


def subject_regional_performance(lines):
    groups = _grouped(lines, lambda r: region_of(r.school_name or r.centre_name))
    rows = [dict(region=region, **_group_row(subjects)) for region, subjects in groups.items()]
    return sorted(rows, key=lambda row: row['averagePercentage'], reverse=True)


def subject_school_performance(lines):
    names = {result.school_id: result.school_name for result, _ in lines}
    groups = _grouped(lines, lambda r: r.school_id)
    rows = []
    for school_id, subjects in groups.items():
        row = dict(schoolId=school_id, schoolName=names.get(school_id), **_group_row(subjects))
        row['topPerformers'] = sorted((s.get('percentage', 0) for s in subjects), reverse=True)[:3]
        rows.append(row)
    return sorted(rows, key=lambda row: row['averagePercentage'], reverse=True)


def subject_trends(lines):
    groups = _grouped(lines, lambda r: r.exam_session)
    trends = sorted((dict(session=session, **_group_row(subjects)) for session, subjects in groups.items()),
                    key=lambda row: str(row['session']))
    analysis = None
    if len(trends) >= 2:
        latest, previous = trends[-1], trends[-2]
        change = latest['averagePercentage'] - previous['averagePercentage']
        pass_change = latest['passRate'] - previous['passRate']
        analysis = {
            'performanceTrend': 'improving' if change > 0 else 'declining' if change < 0 else 'stable',
            'passRateTrend': 'improving' if pass_change > 0 else 'declining' if pass_change < 0 else 'stable',
            'performanceChange': change,
            'passRateChange': pass_change,
        }
    return {'sessionTrends': trends, 'trendAnalysis': analysis}


def subject_insights(metrics, difficulty, trend_analysis=None):
    insights = []
    recommendations = []
    if metrics['passRate'] < 60:
        insights.append({'type': 'concern', 'severity': 'high',
                         'message': f"Low pass rate of {metrics['passRate']}% indicates significant challenges"})
        recommendations += ['Review curriculum and teaching methodologies',
                            'Provide additional teacher training and resources']
    elif metrics['passRate'] >= 90:
        insights.append({'type': 'positive', 'severity': 'low',
                         'message': f"Excellent pass rate of {metrics['passRate']}% shows strong performance"})
        recommendations += ['Maintain current teaching standards',
                            'Share best practices with other subjects']
    if difficulty['difficultyLevel'] == 'very_difficult':
        insights.append({'type': 'concern', 'severity': 'high',
                         'message': 'Subject appears very difficult for students'})
        recommendations += ['Review exam difficulty and content alignment',
                            'Consider additional support materials']
    if difficulty['discriminationIndex'] < 0.3:
        insights.append({'type': 'warning', 'severity': 'medium',
                         'message': 'Low discrimination index suggests assessment may not effectively '
                                    'differentiate student abilities'})
        recommendations.append('Review assessment design and question quality')
    if trend_analysis and trend_analysis['performanceTrend'] == 'declining':
        insights.append({'type': 'concern', 'severity': 'high', 'message': 'Performance is declining over time'})
        recommendations += ['Investigate causes of performance decline', 'Implement intervention strategies']
    return {'insights': insights, 'recommendations': recommendations}


def subject_summaries(lines):
    groups = {}
    names = {}
    for result, subject in lines:
        code = subject.get('subjectCode')
        groups.setdefault(code, []).append((result, subject))
        names.setdefault(code, subject.get('subjectName') or code)
    summaries = [dict(subjectCode=code, subjectName=names[code], **subject_metrics(group))
                 for code, group in groups.items()]
    return sorted(summaries, key=lambda s: s['averagePercentage'], reverse=True)


# ===== EXAMINER METRICS =====

def _parse_iso(value):
    try:
        return datetime.fromisoformat(value) if value else None
    except (TypeError, ValueError):
        return None


def _finished_at(marking):
    return _parse_iso((marking.marking_time or {}).get('endTime')) or marking.submitted_at


def _expertise_level(total_scripts, completion_rate):
    if total_scripts >= 100 and completion_rate >= 95:
        return 'expert'
    if total_scripts >= 50 and completion_rate >= 90:
        return 'advanced'
    if total_scripts >= 20 and completion_rate >= 80:
        return 'intermediate'
    return 'beginner'


def _performance_rating(completion_rate, quality_score, consistency_score):
    overall = (completion_rate + quality_score + consistency_score) / 3
    if overall >= 90:
        return 'excellent'
    if overall >= 80:
        return 'good'
    if overall >= 70:
        return 'satisfactory'
    return 'needs_improvement'


def _subject_expertise(markings):
    subjects = {}
    for marking in markings:
        entry = subjects.setdefault(marking.subject_code, {
            'subjectCode': marking.subject_code,
            'subjectName': marking.subject_name or marking.subject_code,
            'totalScripts': 0,
            'completedScripts': 0,
            'totalTime': 0,
        })
        entry['totalScripts'] += 1
        if marking.status in COUNTABLE_MARKING_STATUSES:
            entry['completedScripts'] += 1
            entry['totalTime'] += (marking.marking_time or {}).get('totalMinutes') or 0
    rows = []
    for entry in subjects.values():
        completion = _rate(entry['completedScripts'], entry['totalScripts'])
        rows.append({
            'subjectCode': entry['subjectCode'],
            'subjectName': entry['subjectName'],
            'totalScripts': entry['totalScripts'],
            'completedScripts': entry['completedScripts'],
            'completionRate': completion,
            'averageTime': round_half_up(entry['totalTime'] / entry['completedScripts'])
            if entry['completedScripts'] else 0,
            'expertiseLevel': _expertise_level(entry['totalScripts'], completion),
        })
    return sorted(rows, key=lambda row: row['totalScripts'], reverse=True)


def examiner_metrics(examiner_id, markings, verifications):
    """Completion, quality, productivity and accuracy of one examiner"""
    mine = [m for m in markings if m.examiner_id == examiner_id]
    if not mine:
        return {
            'examinerId': examiner_id,
            'hasData': False,
            'totalScripts': 0,
            'completedScripts': 0,
            'completionRate': 0,
            'averageMarkingTime': 0,
            'qualityScore': 0,
            'consistencyScore': 0,
        }

    completed = [m for m in mine if m.status in COUNTABLE_MARKING_STATUSES]
    completion_rate = _rate(len(completed), len(mine))
    timed = [(m.marking_time or {}).get('totalMinutes') for m in mine if (m.marking_time or {}).get('totalMinutes')]
    checks = [v for v in verifications
              if (v.first_marker or {}).get('examinerId') == examiner_id
              or (v.second_marker or {}).get('examinerId') == examiner_id]

    quality_score = 85
    consistency_score = 85
    if checks:
        quality_score = round_half_up(mean([QUALITY_SCORES.get((v.quality_metrics or {}).get('markingQuality'), 40)
                                            for v in checks]))
        consistency_score = round_half_up(mean([(v.quality_metrics or {}).get('consistencyScore', 0)
                                                for v in checks]))

    finished = [_finished_at(m) for m in completed]
    finished = [f for f in finished if f is not None]
    days = {f.date() for f in finished}
    hours = {}
    for moment in finished:
        hours[moment.hour] = hours.get(moment.hour, 0) + 1
    peak_hours = [f"{hour}:00-{hour + 1}:00"
                  for hour, _ in sorted(hours.items(), key=lambda item: item[1], reverse=True)[:3]]
    completed_times = [(m.marking_time or {}).get('totalMinutes') for m in completed
                       if (m.marking_time or {}).get('totalMinutes')]

    significant = sum(1 for v in checks if (v.discrepancy or {}).get('isSignificant'))
    accuracy = {
        'totalVerifications': len(checks),
        'accuracyRate': _rate(len(checks) - significant, len(checks)) if checks else 85,
        'averageDiscrepancy': round_half_up(mean([(v.discrepancy or {}).get('percentageDifference', 0)
                                                  for v in checks])) if checks else 0,
        'significantDiscrepancies': significant,
    }

    return {
        'examinerId': examiner_id,
        'examinerName': mine[0].examiner_name,
        'hasData': True,
        'totalScripts': len(mine),
        'completedScripts': len(completed),
        'completionRate': completion_rate,
        'averageMarkingTime': round_half_up(mean(timed)) if timed else 0,
        'qualityScore': quality_score,
        'consistencyScore': consistency_score,
        'productivity': {
            'scriptsPerDay': round2(len(finished) / len(days)) if days else 0,
            'peakProductivityHours': peak_hours,
            'efficiency': round_half_up(EXPECTED_MINUTES_PER_SCRIPT / mean(completed_times) * 100)
            if completed_times else 0,
        },
        'accuracy': accuracy,
        'subjectExpertise': _subject_expertise(mine),
        'performanceRating': _performance_rating(completion_rate, quality_score, consistency_score),
    }


def _percentile(value, dataset):
    if not dataset:
        return 0
    return _rate(sum(1 for v in dataset if v <= value), len(dataset))


def comparative_metrics(all_metrics, examiner_id):
    target = next((m for m in all_metrics if m['examinerId'] == examiner_id), None)
    peers = [m for m in all_metrics if m['examinerId'] != examiner_id and m['hasData']]
    if target is None or not peers:
        return None
    result = {'peerAverages': {}, 'percentileRankings': {}, 'performanceGaps': {}}
    for key, label in (('completionRate', 'completion'), ('qualityScore', 'quality'),
                       ('consistencyScore', 'consistency')):
        values = [p[key] for p in peers]
        average = round_half_up(mean(values))
        result['peerAverages'][key] = average
        result['percentileRankings'][label] = _percentile(target[key], values)
        result['performanceGaps'][label] = target[key] - average
    return result


# ===== PERFORMANCE BY REGION, SCHOOL AND STUDENT =====

TIMEFRAMES = ('all', 'year')
MASTERY_LEVELS = ((80, 'expert'), (70, 'advanced'), (60, 'intermediate'), (50, 'developing'))
URBAN_MARKERS = ('urban', 'city')


def generated_at(result):
    stamp = (result.audit or {}).get('generatedAt')
    if stamp:
        return stamp
    return result.created_at.isoformat() if result.created_at else None


def in_timeframe(results, timeframe, now=None):
    """'year' keeps results generated this calendar year"""
    if timeframe != 'year':
        return list(results)
    year = str((now or datetime.utcnow()).year)
    return [r for r in results if (generated_at(r) or '').startswith(year)]


def date_range(results):
    stamps = sorted(s for s in (generated_at(r) for r in results) if s)
    return {'from': stamps[0] if stamps else None, 'to': stamps[-1] if stamps else None}


def results_in_region(results, region_id):
    region_id = str(region_id).lower()
    return [r for r in results if region_of(r.school_name or r.centre_name).lower() == region_id]


def group_metrics(results):
    """Headline figures over a set of results"""
    overview = results_overview(results)
    performances = [r.average_percentage for r in results]
    return {
        'totalStudents': len(results),
        'totalSchools': overview['totalSchools'],
        'averagePerformance': overview['averagePerformance'],
        'passRate': overview['passRate'],
        'excellenceRate': overview['excellenceRate'],
        'subjectCount': len({s.get('subjectCode') for r in results for s in r.subjects or []}),
        'standardDeviation': round2(population_sd(performances)),
    }


def _growth(latest, previous):
    return round2((latest - previous) / previous * 100) if previous else 0


def trends_with_growth(results):
    trends = session_trends(results)
    rows = trends['sessionTrends']
    growth = None
    if len(rows) >= 2:
        latest, previous = rows[-1], rows[-2]
        growth = {
            'performanceGrowth': _growth(latest['averagePercentage'], previous['averagePercentage']),
            'passRateGrowth': _growth(latest['passRate'], previous['passRate']),
            'studentGrowth': _growth(latest['totalStudents'], previous['totalStudents']),
        }
    trends['growthAnalysis'] = growth
    return trends


def ranked_schools(results):
    return [dict(row, rank=index) for index, row in enumerate(school_rankings(results), 1)]


def regional_subject_performance(results):
    rows = subject_performance(results)
    offering = {}
    for result in results:
        for subject in result.subjects or []:
            offering.setdefault(subject.get('subjectCode'), set()).add(result.school_id)
    for row in rows:
        row['schoolsOffering'] = len(offering.get(row['subjectCode'], ()))
    return rows


def urban_rural_split(results):
    def summary(members):
        overview = results_overview(members)
        return {'count': len(members), 'averagePerformance': overview['averagePerformance'],
                'passRate': overview['passRate']}

    urban = [r for r in results if any(m in (r.school_name or '').lower() for m in URBAN_MARKERS)]
    rural = [r for r in results if r not in urban]
    return {'urban': summary(urban), 'rural': summary(rural)}


def regional_insights(metrics, schools, subjects):
    challenges = []
    opportunities = []
    recommendations = []
    if metrics['passRate'] < 70:
        challenges.append({'type': 'low_pass_rate', 'severity': 'high',
                           'description': f"Regional pass rate of {metrics['passRate']}% is below national target",
                           'affectedStudents': round_half_up(metrics['totalStudents'] * (100 - metrics['passRate'])
                                                             / 100)})
    underperforming = sum(1 for s in schools if s['averagePercentage'] < 50)
    if underperforming:
        challenges.append({'type': 'underperforming_schools', 'severity': 'medium',
                           'description': f"{underperforming} schools performing below average",
                           'affectedSchools': underperforming})
    weak = [s['subjectCode'] for s in subjects if s['passRate'] < 60]
    if weak:
        challenges.append({'type': 'weak_subjects', 'severity': 'medium',
                           'description': f"Poor performance in {len(weak)} subjects", 'subjects': weak})

    excellent = sum(1 for s in schools if s['averagePercentage'] >= 80)
    if excellent:
        opportunities.append({'type': 'excellence_centers', 'schools': excellent,
                              'description': f"{excellent} schools showing excellence - can serve as model schools"})
    strong = [s['subjectCode'] for s in subjects if s['passRate'] >= 90]
    if strong:
        opportunities.append({'type': 'subject_strengths', 'subjects': strong,
                              'description': f"Strong performance in {len(strong)} subjects can be leveraged"})

    if challenges:
        recommendations.append('Implement targeted intervention programs for underperforming schools')
        recommendations.append('Establish peer learning networks between high and low performing schools')
    if weak:
        recommendations.append(f"Focus teacher training on weak subjects: {', '.join(weak)}")
    if excellent:
        recommendations.append('Create regional excellence hubs for knowledge sharing')
    return {'challenges': challenges, 'opportunities': opportunities, 'recommendations': recommendations}


def percentile_against(score, average):
    """Position of a score against an average on a 1-99 scale"""
    if not average:
        return 50
    return max(1, min(99, round_half_up((score - average) / average * 50 + 50)))


def rank_of(value, values):
    return sum(1 for v in values if v > value) + 1


def school_comparison(school_id, school_results, published):
    """School average against its region and the whole country"""
    average = results_overview(school_results)['averagePerformance']
    region = region_of(school_results[0].school_name or school_results[0].centre_name)
    regional = results_in_region(published, region)
    regional_schools = school_rankings(regional)
    national_schools = school_rankings(published)
    regional_average = results_overview(regional)['averagePerformance']
    national_average = results_overview(published)['averagePerformance']
    top_average = national_schools[0]['averagePercentage'] if national_schools else average
    return {
        'region': region,
        'schoolPerformance': average,
        'regionalAverage': regional_average,
        'nationalAverage': national_average,
        'topSchoolAverage': top_average,
        'regionalRanking': rank_of(average, [s['averagePercentage'] for s in regional_schools]),
        'nationalRanking': rank_of(average, [s['averagePercentage'] for s in national_schools]),
        'totalSchools': {'regional': len(regional_schools), 'national': len(national_schools)},
        'performanceGap': {
            'toRegionalAverage': average - regional_average,
            'toNationalAverage': average - national_average,
            'toTopSchool': average - top_average,
        },
        'percentileRanking': {
            'regional': percentile_against(average, regional_average),
            'national': percentile_against(average, national_average),
        },
    }


def improvement_opportunities(subjects, metrics):
    opportunities = []
    weak = [s['subjectCode'] for s in subjects if s['passRate'] < 70]
    if weak:
        opportunities.append({
            'type': 'subject_improvement', 'priority': 'high', 'impact': 'high', 'effort': 'medium',
            'title': 'Improve Weak Subject Performance',
            'description': f"Focus on subjects with low pass rates: {', '.join(weak)}",
            'recommendations': ['Provide additional teacher training for weak subjects',
                                'Implement peer tutoring programs',
                                'Review and update teaching materials'],
        })
    if metrics['passRate'] < 80:
        opportunities.append({
            'type': 'overall_performance', 'priority': 'high', 'impact': 'high', 'effort': 'high',
            'title': 'Improve Overall Pass Rate',
            'description': f"Current pass rate of {metrics['passRate']}% is below target",
            'recommendations': ['Implement comprehensive student support programs',
                                'Enhance teaching methodologies',
                                'Increase study time and resources'],
        })
    if metrics['excellenceRate'] < 20:
        opportunities.append({
            'type': 'excellence_development', 'priority': 'medium', 'impact': 'medium', 'effort': 'medium',
            'title': 'Develop Academic Excellence',
            'description': f"Excellence rate of {metrics['excellenceRate']}% can be improved",
            'recommendations': ['Create advanced learning programs',
                                'Identify and nurture high-potential students',
                                'Provide enrichment activities'],
        })
    return opportunities


def top_performers(results, limit=10):
    ordered = sorted(results, key=lambda r: r.average_percentage, reverse=True)[:limit]
    return [{
        'studentId': r.student_id,
        'studentName': r.student_name,
        'averagePercentage': r.average_percentage,
        'classification': (r.overall_performance or {}).get('classification'),
    } for r in ordered]


def performance_trajectory(results):
    """Direction, consistency and a least-squares projection over a student's results (oldest first)"""
    if len(results) < 2:
        return {'trend': 'insufficient_data', 'trendDirection': 'stable', 'improvementRate': 0,
                'consistency': 0, 'volatility': 0, 'projectedPerformance': None}
    performances = [r.average_percentage for r in results]
    change = performances[-1] - performances[-2]
    direction = 'improving' if change > 5 else 'declining' if change < -5 else 'stable'
    sd = population_sd(performances)
    average = mean(performances)

    n = len(performances)
    sum_x = n * (n + 1) / 2
    sum_y = sum(performances)
    sum_xy = sum(p * (i + 1) for i, p in enumerate(performances))
    sum_x2 = n * (n + 1) * (2 * n + 1) / 6
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x ** 2)
    intercept = (sum_y - slope * sum_x) / n
    return {
        'trend': direction,
        'trendDirection': direction,
        'improvementRate': round2((performances[-1] - performances[0]) / (n - 1)),
        'consistency': round_half_up(max(0, 100 - sd)),
        'volatility': round2(sd / average * 100) if average else 0,
        'projectedPerformance': max(0, min(100, round_half_up(slope * (n + 1) + intercept))),
    }


def mastery_level(average):
    for threshold, level in MASTERY_LEVELS:
        if average >= threshold:
            return level
    return 'beginner'


def subject_mastery(results):
    """Per-subject mastery over a student's results (oldest first)"""
    attempts = {}
    names = {}
    for result in results:
        for subject in result.subjects or []:
            code = subject.get('subjectCode')
            names.setdefault(code, subject.get('subjectName') or code)
            attempts.setdefault(code, []).append({
                'examSession': result.exam_session,
                'percentage': subject.get('percentage', 0),
                'grade': subject.get('grade'),
                'date': generated_at(result),
            })
    rows = []
    for code, history in attempts.items():
        percentages = [a['percentage'] for a in history]
        average = round_half_up(mean(percentages))
        trend = 'stable'
        if len(history) >= 2:
            change = percentages[-1] - percentages[-2]
            trend = 'improving' if change > 5 else 'declining' if change < -5 else 'stable'
        rows.append({
            'subjectCode': code,
            'subjectName': names[code],
            'attempts': history,
            'averagePercentage': average,
            'bestGrade': max(history, key=lambda a: a['percentage'])['grade'],
            'latestGrade': history[-1]['grade'],
            'masteryLevel': mastery_level(average),
            'improvementTrend': trend,
            'consistencyScore': max(0, round_half_up(100 - population_sd(percentages))),
        })
    return sorted(rows, key=lambda row: row['averagePercentage'], reverse=True)


def learning_velocity(sessions):
    if len(sessions) < 2:
        return 'insufficient_data'
    changes = [b['averagePerformance'] - a['averagePerformance'] for a, b in zip(sessions, sessions[1:])]
    average = mean(changes)
    if average > 5:
        return 'accelerating'
    if average > 0:
        return 'steady'
    if average > -5:
        return 'stable'
    return 'declining'


def learning_analytics(results):
    percentages = {}
    for result in results:
        for subject in result.subjects or []:
            percentages.setdefault(subject.get('subjectCode'), []).append(subject.get('percentage', 0))
    averages = sorted(({'subjectCode': code, 'averagePercentage': round_half_up(mean(values))}
                       for code, values in percentages.items()),
                      key=lambda s: s['averagePercentage'], reverse=True)
    strengths = [s for s in averages[:3] if s['averagePercentage'] >= 70]
    weaknesses = [s for s in averages[-3:] if s['averagePercentage'] < 60]

    by_session = []
    for session in sorted({str(r.exam_session) for r in results}):
        members = [r for r in results if str(r.exam_session) == session]
        by_session.append({
            'session': session,
            'averagePerformance': round_half_up(mean([r.average_percentage for r in members])),
            'subjectsCount': sum(len(r.subjects or []) for r in members),
        })

    focus = []
    if weaknesses:
        focus.append(f"Focus on improving performance in: {', '.join(s['subjectCode'] for s in weaknesses)}")
        focus.append('Consider additional study time for weaker subjects')
    if strengths:
        focus.append(f"Maintain excellence in: {', '.join(s['subjectCode'] for s in strengths)}")
        focus.append('Use strong subjects to boost overall performance')
    return {
        'strengths': strengths,
        'weaknesses': weaknesses,
        'performanceBySession': by_session,
        'peakPerformance': max(by_session, key=lambda s: s['averagePerformance']) if by_session else None,
        'learningVelocity': learning_velocity(by_session),
        'recommendedFocus': focus,
    }


def student_comparison(latest, published):
    """Latest result against the student's school, region and the whole country"""
    score = latest.average_percentage
    school = [r for r in published if r.school_id == latest.school_id]
    region = results_in_region(published, region_of(latest.school_name or latest.centre_name))
    averages = {
        'schoolAverage': results_overview(school)['averagePerformance'],
        'regionAverage': results_overview(region)['averagePerformance'],
        'nationalAverage': results_overview(published)['averagePerformance'],
    }
    return dict(
        studentPerformance=score,
        schoolPercentile=percentile_against(score, averages['schoolAverage']),
        regionPercentile=percentile_against(score, averages['regionAverage']),
        nationalPercentile=percentile_against(score, averages['nationalAverage']),
        ranking={
            'school': rank_of(score, [r.average_percentage for r in school]),
            'region': rank_of(score, [r.average_percentage for r in region]),
            'national': rank_of(score, [r.average_percentage for r in published]),
        },
        **averages,
    )


def risk_factors(results):
    latest = results[-1]
    risks = []
    if latest.average_percentage < 50:
        risks.append('Below average performance')
    if len(results) >= 2 and latest.average_percentage < results[-2].average_percentage - 10:
        risks.append('Declining performance trend')
    subjects = latest.subjects or []
    if sum(1 for s in subjects if s.get('status') == 'fail') > len(subjects) / 2:
        risks.append('High failure rate in subjects')
    return risks


def study_recommendations(trajectory, mastery):
    recommendations = []
    if trajectory['trendDirection'] == 'declining':
        recommendations.append('Immediate intervention needed to reverse declining performance')
        recommendations.append('Consider additional tutoring or study support')
    elif trajectory['trendDirection'] == 'improving':
        recommendations.append('Continue current study methods - showing good improvement')
    if trajectory['trend'] != 'insufficient_data' and trajectory['consistency'] < 70:
        recommendations.append('Focus on developing consistent study habits')
    beginner = [m['subjectCode'] for m in mastery if m['masteryLevel'] == 'beginner']
    if beginner:
        recommendations.append(f"Prioritize foundational learning in: {', '.join(beginner)}")
    return recommendations


# ===== COMPARATIVE ANALYSIS =====

COMPARISON_TYPES = ('schools', 'regions', 'sessions', 'subjects')


def _averages(rows, key='averagePerformance'):
    return {
        'averagePerformance': round_half_up(mean([r[key] for r in rows])),
        'passRate': round_half_up(mean([r['passRate'] for r in rows])),
        'excellenceRate': round_half_up(mean([r['excellenceRate'] for r in rows])),
    }


def _ranked(rows, key='averagePerformance'):
    ordered = sorted(rows, key=lambda row: row[key], reverse=True)
    return [dict(row, rank=index) for index, row in enumerate(ordered, 1)]


def _entity_metrics(results):
    metrics = group_metrics(results)
    return {k: metrics[k] for k in ('totalStudents', 'averagePerformance', 'passRate', 'excellenceRate',
                                    'standardDeviation')}


def _session_change(results):
    """Average change between the two latest sessions, None with fewer than two"""
    sessions = session_trends(results)['sessionTrends']
    if len(sessions) < 2:
        return None
    return sessions[-1]['averagePercentage'] - sessions[-2]['averagePercentage']


def compare_schools(results, school_ids):
    rows = []
    changes = {}
    for school_id in school_ids:
        members = [r for r in results if r.school_id == school_id]
        name = members[0].school_name if members else 'Unknown School'
        rows.append(dict(schoolId=school_id, schoolName=name, region=region_of(name or ''),
                         **_entity_metrics(members)))
        change = _session_change(members)
        if change is not None:
            changes[school_id] = change
    ranked = _ranked(rows)
    most_improved = None
    if changes:
        best = max(changes, key=changes.get)
        most_improved = dict(next(r for r in ranked if r['schoolId'] == best), performanceChange=changes[best])

    insights = []
    gap = ranked[0]['averagePerformance'] - ranked[-1]['averagePerformance']
    if gap > 30:
        insights.append(f"Significant performance gap of {gap} points between top and bottom schools")
    excellent = sum(1 for r in ranked if r['averagePerformance'] >= 80)
    if excellent:
        insights.append(f"{excellent} schools achieving excellence (80%+ average)")
    return {
        'schools': ranked,
        'averages': _averages(rows),
        'bestPerformer': ranked[0],
        'mostImproved': most_improved,
        'insights': insights,
    }


def compare_regions(results, region_ids):
    rows = []
    for region_id in region_ids:
        members = results_in_region(results, region_id)
        rows.append(dict(regionId=region_id, regionName=region_id,
                         totalSchools=len({r.school_id for r in members}), **_entity_metrics(members)))
    ranked = _ranked(rows)
    top, bottom = ranked[0], ranked[-1]
    insights = [f"{top['regionName']} leads with {top['averagePerformance']}% average performance"]
    if top['averagePerformance'] - bottom['averagePerformance'] > 20:
        insights.append(f"Regional disparity: {top['averagePerformance'] - bottom['averagePerformance']} "
                        f"point gap between highest and lowest")
    return {
        'regions': ranked,
        'nationalAverages': _averages(rows),
        'topPerformer': top,
        'insights': insights,
    }


def compare_sessions(results, session_ids):
    rows = []
    for index, session_id in enumerate(session_ids):
        members = [r for r in results if str(r.exam_session) == session_id]
        row = dict(sessionId=session_id, sessionName=f"{session_id} Session",
                   totalSchools=len({r.school_id for r in members}),
                   totalSubjects=len({s.get('subjectCode') for r in members for s in r.subjects or []}),
                   **_entity_metrics(members))
        previous = rows[index - 1] if index else None
        row['performanceChange'] = row['averagePerformance'] - previous['averagePerformance'] if previous else 0
        row['passRateChange'] = row['passRate'] - previous['passRate'] if previous else 0
        rows.append(row)

    overall = 'insufficient_data'
    if len(rows) >= 2:
        average_change = mean([r['performanceChange'] for r in rows[1:]])
        overall = 'improving' if average_change > 2 else 'declining' if average_change < -2 else 'stable'
    insights = []
    latest = rows[-1]
    if latest['performanceChange'] > 0:
        insights.append(f"Performance improved by {latest['performanceChange']} points in latest session")
    elif latest['performanceChange'] < 0:
        insights.append(f"Performance declined by {abs(latest['performanceChange'])} points in latest session")
    return {
        'sessions': rows,
        'trends': {
            'overallTrend': overall,
            'bestSession': max(rows, key=lambda r: r['averagePerformance']),
            'growthRate': _growth(rows[-1]['averagePerformance'], rows[0]['averagePerformance'])
            if len(rows) >= 2 else 0,
        },
        'insights': insights,
    }


def compare_subjects(results, subject_codes):
    rows = []
    for code in subject_codes:
        lines = [s for _, s in subject_lines(results, code)]
        candidates = len(lines)
        rows.append({
            'subjectCode': code,
            'subjectName': lines[0].get('subjectName') if lines else code,
            'totalCandidates': candidates,
            'averagePercentage': round_half_up(mean([s.get('percentage', 0) for s in lines])),
            'passRate': _rate(sum(1 for s in lines if s.get('status') == 'pass'), candidates),
            'excellenceRate': _rate(sum(1 for s in lines if s.get('percentage', 0) >= 80), candidates),
        })
    ranked = _ranked(rows, 'averagePercentage')
    insights = [f"{ranked[0]['subjectCode']} shows strongest performance with {ranked[0]['passRate']}% pass rate"]
    if ranked[-1]['passRate'] < 60:
        insights.append(f"{ranked[-1]['subjectCode']} needs attention with only {ranked[-1]['passRate']}% pass rate")
    return {
        'subjects': ranked,
        'topPerforming': ranked[:3],
        'needsImprovement': list(reversed(ranked[-3:])),
        'insights': insights,
    }


COMPARISONS = {
    'schools': compare_schools,
    'regions': compare_regions,
    'sessions': compare_sessions,
    'subjects': compare_subjects,
}
