"""
JSON API blueprint
Every route module registers its endpoints on one blueprint mounted at /api
"""

from flask import Blueprint
import logging

from auth_helpers import require_roles

logger = logging.getLogger(__name__)


def create_api_blueprint():
    """Create the /api blueprint and attach every route module"""

    api_bp = Blueprint('api', __name__, url_prefix='/api')

    # ===== REGISTER AUTH ROUTES =====
    from auth_routes import register_auth_routes
    register_auth_routes(api_bp, require_roles)

    # ===== REGISTER USER ROUTES =====
    from user_routes import register_user_routes
    register_user_routes(api_bp, require_roles)

    # ===== REGISTER REGISTRATION ROUTES =====
    from registration_routes import register_registration_routes
    register_registration_routes(api_bp, require_roles)

    # ===== REGISTER EXAMINATION ROUTES =====
    from examination_routes import register_examination_routes
    register_examination_routes(api_bp, require_roles)

    # ===== REGISTER EXAM OPERATIONS ROUTES =====
    from exam_operations_routes import register_exam_operations_routes
    register_exam_operations_routes(api_bp, require_roles)

    # ===== REGISTER MARKING ROUTES =====
    from marking_routes import register_marking_routes
    register_marking_routes(api_bp, require_roles)

    # ===== REGISTER GRADING ROUTES =====
    from grading_routes import register_grading_routes
    register_grading_routes(api_bp, require_roles)

    # ===== REGISTER RESULTS ROUTES =====
    from results_routes import register_results_routes
    register_results_routes(api_bp, require_roles)

    # ===== REGISTER ANALYTICS ROUTES =====
    from analytics_routes import register_analytics_routes
    register_analytics_routes(api_bp, require_roles)

    # ===== REGISTER ADMIN ROUTES =====
    from admin_routes import register_admin_routes
    register_admin_routes(api_bp, require_roles)

    @api_bp.route('/health')
    def api_health():
        from api_helpers import api_success
        return api_success({'status': 'ok'}, 'Service is running')

    return api_bp
