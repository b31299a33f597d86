"""
Configuration for the GCE Examination Administration API
"""

import os
from urllib.parse import quote_plus
import dotenv
dotenv.load_dotenv()  # Load environment variables from .env file

DEFAULT_SECRET_KEY = 'gce-dev-secret-key'


class Config:
    """Base configuration"""

    # Flask settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or DEFAULT_SECRET_KEY
    JSON_SORT_KEYS = False

    # Database settings (DATABASE_URL wins, otherwise MySQL from DB_* variables)
    DATABASE_URL = os.environ.get('DATABASE_URL')
    MYSQL_HOST = os.environ.get('DB_HOST', 'localhost')
    MYSQL_PORT = int(os.environ.get('DB_PORT', 3306))
    MYSQL_USERNAME = os.environ.get('DB_USER', 'gce')
    MYSQL_PASSWORD = os.environ.get('DB_PASS', '')
    MYSQL_DATABASE = os.environ.get('DB_NAME', 'gce_examinations')
    MYSQL_CHARSET = 'utf8mb4'

    # SQLAlchemy settings
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_recycle': 280,
        'pool_pre_ping': True,
    }

    # Authentication
    ACCESS_TOKEN_TTL = int(os.environ.get('ACCESS_TOKEN_TTL', 3600))
    REFRESH_TOKEN_TTL_DAYS = int(os.environ.get('REFRESH_TOKEN_TTL_DAYS', 7))
    PASSWORD_RESET_TTL = int(os.environ.get('PASSWORD_RESET_TTL', 3600))
    EMAIL_VERIFICATION_TTL = int(os.environ.get('EMAIL_VERIFICATION_TTL', 86400))

    # Payments (simulated gateway)
    PAYMENT_SIMULATION_SUCCESS_RATE = float(os.environ.get('PAYMENT_SIMULATION_SUCCESS_RATE', 0.9))

    # Marking
    DOUBLE_MARKING_THRESHOLD = float(os.environ.get('DOUBLE_MARKING_THRESHOLD', 10))

    # Links placed in emails and certificates
    FRONTEND_BASE_URL = os.environ.get('FRONTEND_BASE_URL', 'http://localhost:3000')

    # Seed default users, centres, examiners and subjects on startup
    SEED_DEFAULT_DATA = os.environ.get('SEED_DEFAULT_DATA', 'True').lower() in ('true', '1', 'yes')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    def _encoded_password(self) -> str:
        """Percent-encode special characters for URL usage."""
        return quote_plus(self.MYSQL_PASSWORD) if self.MYSQL_PASSWORD else ''

    def get_database_uri(self) -> str:
        """Get the database URI."""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = self.MYSQL_USERNAME
        pwd = self._encoded_password()
        host = self.MYSQL_HOST
        port = self.MYSQL_PORT
        database = self.MYSQL_DATABASE

        if pwd:
            return f"mysql+pymysql://{user}:{pwd}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"
        return f"mysql+pymysql://{user}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'gce-testing-secret-key'
    PAYMENT_SIMULATION_SUCCESS_RATE = 1.0
    SEED_DEFAULT_DATA = True
    LOG_LEVEL = 'WARNING'

    # Use in-memory SQLite for testing
    def get_database_uri(self) -> str:
        return 'sqlite:///:memory:'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
