"""
Database management for the examination system (single shared database)
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from config import Config
from models import Base
import logging

logger = logging.getLogger(__name__)

# Global engine and session factory
ENGINE = None
SessionLocal = None


def init_database(app_config=None):
    """Initialize database engine and session factory"""
    global ENGINE, SessionLocal

    app_config = app_config or Config()
    database_uri = app_config.get_database_uri()

    if database_uri.startswith('sqlite'):
        # One shared connection so every session sees the same in-memory database
        engine_options = {'connect_args': {'check_same_thread': False}}
        if ':memory:' in database_uri:
            engine_options['poolclass'] = StaticPool
    else:
        engine_options = dict(app_config.SQLALCHEMY_ENGINE_OPTIONS)

    ENGINE = create_engine(database_uri, **engine_options)
    SessionLocal = sessionmaker(bind=ENGINE, autoflush=False, autocommit=False,
                                expire_on_commit=False)

    logger.info(f"Database initialized: {ENGINE.url.render_as_string(hide_password=True)}")
    return ENGINE, SessionLocal


def get_session():
    """Get a database session"""
    if SessionLocal is None:
        init_database()
    return SessionLocal()


def import_models():
    """Import the model modules so their tables register on Base.metadata"""
    import registration_models  # noqa: F401
    import examination_models  # noqa: F401
    import marking_models  # noqa: F401
    import grading_models  # noqa: F401
    import results_models  # noqa: F401
    import admin_models  # noqa: F401


def create_tables():
    """Create every table registered on Base.metadata"""
    import_models()
    if ENGINE is None:
        init_database()
    Base.metadata.create_all(ENGINE)
    logger.info(f"✅ {len(Base.metadata.tables)} tables ensured")


def drop_tables():
    """Drop every table (used by the reset-db command and tests)"""
    if ENGINE is None:
        init_database()
    Base.metadata.drop_all(ENGINE)
    logger.info("🗑️ All tables dropped")
