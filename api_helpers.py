"""
API Helper Functions
Response envelope, request parsing and pagination shared by every route module
"""

from flask import jsonify, request
from collections import Counter
import math
import logging

logger = logging.getLogger(__name__)


# ===== RESPONSES =====

def api_success(data=None, message='OK', status=200, **extra):
    """{success: true, data?, message}"""
    payload = {'success': True, 'message': message}
    if data is not None:
        payload['data'] = data
    payload.update(extra)
    return jsonify(payload), status


def api_error(message, status=400, **extra):
    """{success: false, message, ...extra}"""
    payload = {'success': False, 'message': message}
    payload.update(extra)
    return jsonify(payload), status


def server_error(context, error):
    """Log an unexpected exception and answer with a generic 500"""
    logger.error(f"{context}: {error}", exc_info=True)
    return api_error('Internal server error', 500)


# ===== REQUEST PARSING =====

def get_json_body():
    """Request JSON as a dict ({} when absent or not an object)"""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def query_arg(name, default=''):
    return request.args.get(name, default) or default


def client_ip():
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


# ===== PAGINATION AND AGGREGATION =====

def paginate(items, page, limit, total_key='total'):
    """
    Slice a list for one page.
    Returns:
        (page_items, pagination dict)
    """
    page = max(1, page)
    limit = max(1, limit)
    total = len(items)
    total_pages = math.ceil(total / limit) if total else 0
    start = (page - 1) * limit
    pagination = {
        'currentPage': page,
        'totalPages': total_pages,
        total_key: total,
        'limit': limit,
        'hasNextPage': page < total_pages,
        'hasPreviousPage': page > 1,
    }
    return items[start:start + limit], pagination


def count_by(items, key):
    """Histogram of key(item) values"""
    return dict(Counter(key(item) for item in items))


def round_half_up(value, digits=0):
    """Round like Math.round (halves away from zero for positives)"""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor if digits else int(math.floor(value + 0.5))


def round2(value):
    return round_half_up(value, 2)
