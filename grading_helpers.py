"""
Grading Helper Functions
Grade tables, boundary validation, score statistics and normalisation
"""

import math
from collections import Counter

from api_helpers import round_half_up, round2

# ===== GRADE TABLES =====

O_LEVEL = 'O Level'
A_LEVEL = 'A Level'

# (minimum percentage, grade), highest first
O_LEVEL_GRADES = [
    (80, 'A1'), (70, 'B2'), (60, 'B3'), (50, 'C4'), (45, 'C5'),
    (40, 'C6'), (30, 'D7'), (20, 'E8'), (0, 'F9'),
]
A_LEVEL_GRADES = [
    (80, 'A'), (70, 'B'), (60, 'C'), (50, 'D'), (40, 'E'), (0, 'F'),
]

O_LEVEL_PASS_GRADES = ('A1', 'B2', 'B3', 'C4', 'C5', 'C6')
O_LEVEL_DISTINCTION_GRADES = ('A1', 'B2', 'B3')
A_LEVEL_PASS_GRADES = ('A', 'B', 'C', 'D', 'E')
A_LEVEL_EXCELLENT_GRADES = ('A', 'B')

O_LEVEL_GRADE_POINTS = {'A1': 1, 'B2': 2, 'B3': 3, 'C4': 4, 'C5': 5, 'C6': 6, 'D7': 7, 'E8': 8, 'F9': 9}
A_LEVEL_GRADE_POINTS = {'A': 5, 'B': 4, 'C': 3, 'D': 2, 'E': 1, 'F': 0}


def grade_table(exam_level):
    return A_LEVEL_GRADES if exam_level == A_LEVEL else O_LEVEL_GRADES


def grade_names(exam_level):
    return [grade for _, grade in grade_table(exam_level)]


def grade_for_percentage(percentage, exam_level=O_LEVEL):
    """Look a percentage up in the level's grade table (O Level by default)"""
    for minimum, grade in grade_table(exam_level):
        if percentage >= minimum:
            return grade
    return grade_table(exam_level)[-1][1]


def default_boundaries(exam_level):
    return {grade: minimum for minimum, grade in grade_table(exam_level)}


def grade_from_boundaries(score, boundaries, exam_level):
    """Grade for a score against custom boundaries (lowest grade when below all)"""
    for grade in grade_names(exam_level)[:-1]:
        minimum = boundaries.get(grade)
        if minimum is not None and score >= minimum:
            return grade
    return grade_names(exam_level)[-1]


def validate_boundaries(boundaries):
    """
    Boundaries must lie in 0..100 and descend in declaration order.
    Returns:
        list of error strings
    """
    errors = []
    values = list(boundaries.items())
    for grade, value in values:
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0 or value > 100:
            errors.append(f"{grade} boundary must be between 0 and 100")

    numeric = [v for _, v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    if any(numeric[i] < numeric[i + 1] for i in range(len(numeric) - 1)):
        errors.append('Grade boundaries must be in descending order')
    return errors


def grade_points(grade, exam_level):
    if exam_level == A_LEVEL:
        return A_LEVEL_GRADE_POINTS.get(grade, 0)
    return O_LEVEL_GRADE_POINTS.get(grade, 9)


def is_pass(grade, exam_level):
    if exam_level == A_LEVEL:
        return grade in A_LEVEL_PASS_GRADES
    return grade in O_LEVEL_PASS_GRADES


def remarks_for(percentage):
    if percentage >= 80:
        return 'Excellent'
    if percentage >= 70:
        return 'Very Good'
    if percentage >= 60:
        return 'Good'
    if percentage >= 50:
        return 'Satisfactory'
    if percentage >= 40:
        return 'Fair'
    return 'Poor'


def classify(grades, exam_level):
    """Overall classification from a candidate's subject grades"""
    if exam_level == A_LEVEL:
        passes = sum(1 for g in grades if g in A_LEVEL_PASS_GRADES)
        excellent = sum(1 for g in grades if g in A_LEVEL_EXCELLENT_GRADES)
        if passes < 2:
            return 'Fail'
        if excellent >= 3:
            return 'Distinction'
        if excellent >= 2:
            return 'Merit'
        return 'Pass'

    credits = sum(1 for g in grades if g in O_LEVEL_PASS_GRADES)
    distinctions = sum(1 for g in grades if g in O_LEVEL_DISTINCTION_GRADES)
    if credits >= 5:
        return 'Distinction' if distinctions >= 3 else 'Credit'
    if credits >= 1:
        return 'Pass'
    return 'Fail'


# ===== STATISTICS =====

def mean(values):
    return sum(values) / len(values) if values else 0


def population_sd(values):
    if not values:
        return 0
    avg = mean(values)
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


def median(values):
    if not values:
        return 0
    ordered = sorted(values)
    n = len(ordered)
    if n % 2 == 0:
        return (ordered[n // 2 - 1] + ordered[n // 2]) / 2
    return ordered[n // 2]


def mode(values):
    """Most frequent value (earliest seen wins ties)"""
    if not values:
        return None
    counts = Counter(values)
    best = max(counts.values())
    return next(v for v in values if counts[v] == best)


def score_statistics(scores):
    """Summary used by grade calculations (None for no scores)"""
    if not scores:
        return None
    ordered = sorted(scores)
    n = len(ordered)
    mid = median(ordered)
    return {
        'totalCandidates': n,
        'meanScore': round2(mean(scores)),
        'standardDeviation': round2(population_sd(scores)),
        'median': round2(mid),
        'mode': mode(scores),
        'range': {'min': ordered[0], 'max': ordered[-1]},
        'quartiles': {
            'q1': ordered[int(n * 0.25)],
            'q2': mid,
            'q3': ordered[min(n - 1, int(n * 0.75))],
        },
    }


def distribution_bins(scores, bin_size=10):
    """Counts per 10-point bin from 0-9 up to 100-109"""
    bins = {}
    for start in range(0, 101, bin_size):
        bins[f"{start}-{start + bin_size - 1}"] = sum(
            1 for s in scores if start <= s < start + bin_size)
    return bins


def normalization_statistics(scores):
    if not scores:
        return None
    ordered = sorted(scores)
    return {
        'mean': round2(mean(scores)),
        'standardDeviation': round2(population_sd(scores)),
        'median': round2(median(ordered)),
        'range': {'min': ordered[0], 'max': ordered[-1]},
        'distribution': distribution_bins(scores),
    }


def reliability_index(scores):
    if len(scores) < 2:
        return 0
    variance = population_sd(scores) ** 2
    return min(1, max(0, 0.7 + variance / 1000))


def discrimination_index(ranked_candidates):
    """Difference of mean raw score between top and bottom 27% (ranked best first)"""
    group = int(len(ranked_candidates) * 0.27)
    if group == 0:
        return 0
    top = [c['rawScore'] for c in ranked_candidates[:group]]
    bottom = [c['rawScore'] for c in ranked_candidates[-group:]]
    return round2((mean(top) - mean(bottom)) / 100)


def grade_distribution(candidate_grades, exam_level):
    total = len(candidate_grades)
    distribution = {}
    for grade in grade_names(exam_level):
        scores = [c['rawScore'] for c in candidate_grades if c['grade'] == grade]
        distribution[grade] = {
            'count': len(scores),
            'percentage': round2(len(scores) / total * 100) if total else 0,
            'scoreRange': {'min': min(scores), 'max': max(scores)} if scores else {'min': 0, 'max': 0},
        }
    return distribution


def correlation(xs, ys):
    """Pearson correlation rounded to 2 places (0 when undefined)"""
    n = len(xs)
    if n == 0:
        return 0
    sum_x, sum_y = sum(xs), sum(ys)
    sum_xy = sum(x * y for x, y in zip(xs, ys))
    sum_x2 = sum(x * x for x in xs)
    sum_y2 = sum(y * y for y in ys)
    numerator = n * sum_xy - sum_x * sum_y
    denominator = math.sqrt(max(0, (n * sum_x2 - sum_x ** 2) * (n * sum_y2 - sum_y ** 2)))
    return 0 if denominator == 0 else round2(numerator / denominator)


# ===== SCORE ADJUSTMENT =====

def normalize_to_target(scores, target_mean=50, target_sd=15):
    """Rescale scores to a target mean and standard deviation"""
    avg, sd = mean(scores), population_sd(scores)
    if sd == 0:
        return [round_half_up(target_mean) for _ in scores]
    return [round_half_up((s - avg) / sd * target_sd + target_mean) for s in scores]


def apply_curve(scores, adjustment=5):
    return [min(100, s + adjustment) for s in scores]


NORMALIZATION_TYPES = ('linear', 'z_score', 'percentile', 'equipercentile', 'custom')


def _clamp(value):
    return max(0, min(100, value))


def normalize_scores(scores, normalization_type, parameters=None):
    """
    Apply a normalisation method to raw scores.
    Returns:
        list of normalised scores in input order
    """
    parameters = parameters or {}
    if normalization_type == 'linear':
        factor = parameters.get('scalingFactor', 1.1)
        return [min(100, round_half_up(s * factor)) for s in scores]

    if normalization_type == 'z_score':
        target_mean = parameters.get('targetMean', 50)
        target_sd = parameters.get('targetStandardDeviation', 15)
        avg, sd = mean(scores), population_sd(scores)
        if sd == 0:
            return [_clamp(round_half_up(target_mean)) for _ in scores]
        return [_clamp(round_half_up((s - avg) / sd * target_sd + target_mean)) for s in scores]

    if normalization_type == 'percentile':
        order = sorted(range(len(scores)), key=lambda i: scores[i])
        rank = {index: position + 1 for position, index in enumerate(order)}
        return [round_half_up(rank[i] / len(scores) * 100) for i in range(len(scores))]

    if normalization_type == 'equipercentile':
        return [min(100, round_half_up(s * 1.05)) for s in scores]

    if normalization_type == 'custom':
        formula = parameters.get('customFormula')
        if formula == 'sqrt_transform':
            return [_clamp(round_half_up(math.sqrt(max(0, s)) * 10)) for s in scores]
        if formula == 'log_transform':
            return [_clamp(round_half_up(math.log(max(0, s) + 1) * 20)) for s in scores]
        return [_clamp(s) for s in scores]

    return list(scores)
