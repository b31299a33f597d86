# main.py
"""
GCE Examination Administration API
Registration, examinations, marking, grading and results under /api
"""

import os
import sys
import logging
from flask import Flask, jsonify

# Ensure project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# --- local modules ---
from config import config
from init_db import run_on_startup
from auth_helpers import init_login_manager
from cli_commands import register_cli_commands


def create_app(config_name=None) -> Flask:
    """Create the API application for the named configuration"""
    config_name = config_name or os.environ.get('FLASK_CONFIG', 'default')
    app_config = config[config_name]()

    app = Flask(__name__)
    app.config.from_object(app_config)

    # Logging
    logging.basicConfig(level=getattr(logging, str(app_config.LOG_LEVEL).upper(), logging.INFO))
    logger = logging.getLogger(__name__)

    # DB init (database, tables, default records)
    if not run_on_startup(app_config):
        logger.warning("Database initialization had issues, continuing with existing state")

    # Flask-Login (bearer tokens)
    init_login_manager(app)

    # CLI
    register_cli_commands(app, app_config)

    # API blueprint
    try:
        from api_routes import create_api_blueprint
        app.register_blueprint(create_api_blueprint())
        logger.info("✅ API blueprint registered")
    except Exception as e:
        logger.error(f"❌ API blueprint failed: {e}")
        raise

    @app.errorhandler(404)
    def nf(_):
        return jsonify({'success': False, 'message': 'Resource not found'}), 404

    @app.errorhandler(405)
    def mna(_):
        return jsonify({'success': False, 'message': 'Method not allowed'}), 405

    @app.errorhandler(500)
    def ie(_):
        return jsonify({'success': False, 'message': 'Internal server error'}), 500

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(debug=app.config.get('DEBUG', False), host="0.0.0.0",
            port=int(os.environ.get('PORT', 5000)))
