"""
Shared fixtures: a fresh in-memory database per test, seeded with the
default accounts, examiners, centres, subjects and settings
"""

import pytest

from main import create_app
from auth_helpers import issue_access_token

ADMIN_ID = 'admin'
STUDENT_ID = 'GCE2025-ST-003421'
DEMO_STUDENT_ID = 'demo-student'
TEACHER_ID = 'GCE2025-TC-001'
EXAMINER_ID = 'GCE2025-EX-001'


@pytest.fixture
def app():
    app = create_app('testing')
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


def bearer(app, user_id):
    with app.app_context():
        return {'Authorization': f"Bearer {issue_access_token(user_id)}"}


@pytest.fixture
def admin_headers(app):
    return bearer(app, ADMIN_ID)


@pytest.fixture
def student_headers(app):
    return bearer(app, STUDENT_ID)


@pytest.fixture
def teacher_headers(app):
    return bearer(app, TEACHER_ID)


@pytest.fixture
def examiner_headers(app):
    return bearer(app, EXAMINER_ID)
