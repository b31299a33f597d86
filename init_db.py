"""
Database Initialization and Integrity Checker
Runs on every startup to ensure the database, all tables and the default
GCE records exist
"""

import logging

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.schema import sort_tables
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError

import db_single
from config import Config
from models import Base, User, UserTypeEnum, AccountStatusEnum
from registration_models import Subject
from examination_models import ExamCentre
from marking_models import ExaminerProfile
from admin_models import DEFAULT_SETTINGS
from admin_helpers import seed_settings

logger = logging.getLogger(__name__)


DEFAULT_USERS = [
    {
        'id': 'admin',
        'full_name': 'System Administrator',
        'email': 'admin@gce.cm',
        'password': 'admin123',
        'user_type': UserTypeEnum.ADMIN,
    },
    {
        'id': 'demo-student',
        'full_name': 'Demo Student',
        'email': 'demo.student@gce.cm',
        'password': 'demo123',
        'user_type': UserTypeEnum.STUDENT,
        'school': 'Demo Examination Center',
        'school_id': 'DEMO-001',
        'exam_level': 'A Level',
        'exam_center': 'Demo Examination Center',
        'center_code': 'DEMO-001',
        'candidate_number': 'DEMO123456',
        'date_of_birth': '2000-01-01',
        'subjects': [
            {'code': 'ALG', 'name': 'English Literature', 'status': 'confirmed'},
            {'code': 'AMH', 'name': 'Mathematics', 'status': 'confirmed'},
            {'code': 'APY', 'name': 'Physics', 'status': 'confirmed'},
        ],
    },
    {
        'id': 'GCE2025-ST-003421',
        'full_name': 'Jean-Michel Fopa',
        'email': 'jean.fopa@student.cm',
        'password': 'student123',
        'user_type': UserTypeEnum.STUDENT,
        'school': 'Government High School Limbe',
        'school_id': 'GBHS-001',
        'exam_level': 'A Level',
        'exam_center': 'Government High School Limbe',
        'center_code': 'GBHS-001',
        'candidate_number': 'CM2025-12345',
        'date_of_birth': '2005-03-15',
        'subjects': [
            {'code': 'ALG', 'name': 'English Literature', 'status': 'confirmed'},
            {'code': 'AMH', 'name': 'Mathematics', 'status': 'confirmed'},
            {'code': 'APY', 'name': 'Physics', 'status': 'confirmed'},
        ],
    },
    {
        'id': 'GCE2025-TC-001',
        'full_name': 'Dr. Sarah Mbeki',
        'email': 'sarah.mbeki@school.cm',
        'password': 'teacher123',
        'user_type': UserTypeEnum.TEACHER,
        'school': 'Government High School Yaounde',
        'school_id': 'GBHS-002',
    },
    {
        'id': 'GCE2025-EX-001',
        'full_name': 'Prof. Emmanuel Ndongo',
        'email': 'emmanuel.ndongo@examiner.cm',
        'password': 'examiner123',
        'user_type': UserTypeEnum.EXAMINER,
    },
]

DEFAULT_EXAMINERS = [
    {
        'id': 'EXM-001',
        'name': 'Dr. Alice Mbeki',
        'email': 'alice.mbeki@education.cm',
        'qualifications': ['PhD English Literature', 'TESOL Certificate'],
        'specializations': ['English Literature', 'Creative Writing', 'Poetry'],
        'experience': 12,
        'total_scripts_marked': 2450,
        'average_marking_time': 25,
        'quality_rating': 4.8,
        'reliability': 4.9,
        'max_scripts_per_session': 150,
        'preferred_subjects': ['ALG', 'OLG'],
        'available_dates': ['2025-07-01', '2025-07-02', '2025-07-03'],
        'working_hours': {'start': '08:00', 'end': '17:00'},
    },
    {
        'id': 'EXM-002',
        'user_id': 'GCE2025-EX-001',
        'name': 'Prof. Jean Fouda',
        'email': 'jean.fouda@education.cm',
        'qualifications': ['PhD Mathematics', 'Statistics Certificate'],
        'specializations': ['Advanced Mathematics', 'Statistics', 'Calculus'],
        'experience': 18,
        'total_scripts_marked': 3200,
        'average_marking_time': 30,
        'quality_rating': 4.9,
        'reliability': 5.0,
        'max_scripts_per_session': 120,
        'preferred_subjects': ['AMH', 'OMH'],
        'available_dates': ['2025-07-01', '2025-07-02'],
        'working_hours': {'start': '09:00', 'end': '18:00'},
    },
]

DEFAULT_CENTRES = [
    {
        'id': 'CENTER-001',
        'centre_code': 'CENS001',
        'centre_name': 'Government High School Yaounde',
        'address': {'street': 'Avenue Kennedy', 'city': 'Yaounde', 'region': 'Centre', 'division': 'Mfoundi'},
        'contact_info': {'phoneNumber': '+237222123456', 'email': 'ghsy@education.cm'},
        'centre_head': {'name': 'Dr. Marie Ngozi', 'title': 'Principal',
                        'phoneNumber': '+237222123457', 'email': 'marie.ngozi@ghsy.cm'},
        'facilities': {
            'totalRooms': 15,
            'totalCapacity': 500,
            'rooms': [
                {'roomNumber': 'A101', 'capacity': 40, 'type': 'classroom'},
                {'roomNumber': 'A102', 'capacity': 40, 'type': 'classroom'},
                {'roomNumber': 'HALL1', 'capacity': 200, 'type': 'hall'},
            ],
            'amenities': ['Computer Lab', 'Science Lab', 'Library'],
        },
        'exam_types': ['O Level', 'A Level'],
    },
    {
        'id': 'CENTER-002',
        'centre_code': 'LITS002',
        'centre_name': 'Lycee Classique et Moderne de Douala',
        'address': {'street': 'Rue Bonanjo', 'city': 'Douala', 'region': 'Littoral', 'division': 'Wouri'},
        'contact_info': {'phoneNumber': '+237233456789', 'email': 'lcmd@education.cm'},
        'centre_head': {'name': 'Mme. Fouda Marie', 'title': 'Principal',
                        'phoneNumber': '+237233456790', 'email': 'marie.fouda@lcmd.cm'},
        'facilities': {
            'totalRooms': 12,
            'totalCapacity': 450,
            'rooms': [
                {'roomNumber': 'B101', 'capacity': 35, 'type': 'classroom'},
                {'roomNumber': 'B102', 'capacity': 35, 'type': 'classroom'},
            ],
            'amenities': ['Computer Lab', 'Science Lab'],
        },
        'exam_types': ['A Level'],
    },
]

# (id, code, name, level, category, department, description, duration, papers, passing grade)
DEFAULT_SUBJECTS = [
    ('OL-ENG-001', 'OLG', 'English Language', 'O Level', 'core', 'Languages',
     'English Language and Communication', 120, 2, 'C6'),
    ('OL-FRE-001', 'OFR', 'French', 'O Level', 'core', 'Languages',
     'French Language and Literature', 120, 2, 'C6'),
    ('OL-MAT-001', 'OMH', 'Mathematics', 'O Level', 'core', 'Sciences',
     'Ordinary Level Mathematics', 150, 2, 'C6'),
    ('AL-ENG-001', 'ALG', 'English Literature', 'A Level', 'elective', 'Languages',
     'Advanced English Literature', 180, 3, 'E'),
    ('AL-MAT-001', 'AMH', 'Mathematics', 'A Level', 'elective', 'Sciences',
     'Pure and Applied Mathematics', 180, 3, 'E'),
    ('AL-PHY-001', 'APY', 'Physics', 'A Level', 'elective', 'Sciences',
     'Advanced Physics', 180, 3, 'E'),
]

LEVEL_SUBJECT_FEES = {'O Level': 2000, 'A Level': 3000}


def get_database_url(app_config=None):
    """Database URL of the active configuration"""
    return (app_config or Config()).get_database_uri()


def create_database_if_not_exists(db_url):
    """MySQL only: the GCE schema is created on first boot"""
    url_obj = make_url(db_url)
    if not url_obj.drivername.startswith('mysql'):
        return
    server_engine = create_engine(url_obj.set(database='mysql'))
    try:
        with server_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT")
            conn.execute(text(f'CREATE DATABASE IF NOT EXISTS `{url_obj.database}`'))
    except OperationalError as e:
        logger.warning(f"⚠️ Could not create database {url_obj.database}: {e}")
    finally:
        server_engine.dispose()


def get_existing_tables(engine):
    return set(inspect(engine).get_table_names())


def get_expected_tables():
    return set(Base.metadata.tables.keys())


def create_missing_tables(engine, existing_tables, expected_tables):
    """Create model tables absent from the database, parents before children"""
    missing = expected_tables - existing_tables
    if not missing:
        return []

    created = []
    for table in sort_tables([Base.metadata.tables[name] for name in missing]):
        try:
            table.create(engine, checkfirst=True)
            created.append(table.name)
        except OperationalError as e:
            logger.error(f"❌ Table {table.name} could not be created: {str(e)[:100]}")
    if created:
        logger.info(f"✅ Created tables: {', '.join(created)}")
    return created


def get_column_type_sql(column, dialect_name):
    """SQL type string for a column in the given dialect"""
    type_str = str(column.type).split('(')[0].upper()
    if dialect_name == 'sqlite':
        return {
            'INTEGER': 'INTEGER', 'VARCHAR': 'TEXT', 'TEXT': 'TEXT', 'BOOLEAN': 'INTEGER',
            'DATETIME': 'DATETIME', 'FLOAT': 'REAL', 'JSON': 'JSON',
        }.get(type_str, 'TEXT')
    if type_str == 'VARCHAR':
        length = getattr(column.type, 'length', None) or 255
        return f'VARCHAR({length})'
    if 'ENUM' in type_str:
        return 'VARCHAR(50)'
    return {
        'INTEGER': 'INT', 'TEXT': 'TEXT', 'BOOLEAN': 'TINYINT(1)', 'DATETIME': 'DATETIME',
        'FLOAT': 'FLOAT', 'JSON': 'JSON',
    }.get(type_str, 'TEXT')


def add_missing_columns(engine):
    """
    Add columns declared on the models but missing from existing tables.
    New columns are always nullable so rows from older releases stay valid.
    Returns: (added, failed) lists of "table.column" strings
    """
    inspector = inspect(engine)
    dialect_name = engine.dialect.name
    quote = '"' if dialect_name == 'sqlite' else '`'
    existing_tables = set(inspector.get_table_names())
    added, failed = [], []

    for table_name, table in Base.metadata.tables.items():
        if table_name not in existing_tables:
            continue
        present = {col['name'] for col in inspector.get_columns(table_name)}
        for column in table.columns:
            if column.name in present:
                continue
            alter_sql = (f"ALTER TABLE {quote}{table_name}{quote} ADD COLUMN "
                         f"{quote}{column.name}{quote} {get_column_type_sql(column, dialect_name)} NULL")
            try:
                with engine.begin() as conn:
                    conn.execute(text(alter_sql))
                added.append(f"{table_name}.{column.name}")
            except OperationalError as e:
                if 'duplicate column' not in str(e).lower():
                    failed.append(f"{table_name}.{column.name}")
                    logger.error(f"❌ Column {table_name}.{column.name}: {str(e)[:100]}")

    if added:
        logger.info(f"✅ Added columns: {', '.join(added)}")
    return added, failed


# ==================== DEFAULT DATA ====================

def _seed_users(session):
    added = 0
    for seed in DEFAULT_USERS:
        if session.query(User).filter_by(email=seed['email']).first():
            continue
        fields = {k: v for k, v in seed.items() if k != 'password'}
        user = User(registration_status=AccountStatusEnum.CONFIRMED, email_verified=True, **fields)
        user.set_password(seed['password'])
        session.add(user)
        added += 1
    return added


def _seed_examiners(session):
    added = 0
    for seed in DEFAULT_EXAMINERS:
        if session.get(ExaminerProfile, seed['id']):
            continue
        session.add(ExaminerProfile(status='available', **seed))
        added += 1
    return added


def _seed_centres(session):
    added = 0
    for seed in DEFAULT_CENTRES:
        if session.get(ExamCentre, seed['id']):
            continue
        session.add(ExamCentre(centre_type='secondary', status='active', created_by='admin', **seed))
        added += 1
    return added


def _seed_subjects(session):
    added = 0
    for (subject_id, code, name, level, category, department,
         description, duration, papers, passing_grade) in DEFAULT_SUBJECTS:
        if session.get(Subject, subject_id):
            continue
        session.add(Subject(
            id=subject_id,
            code=code,
            name=name,
            level=level,
            category=category,
            department=department,
            description=description,
            duration=duration,
            fee=LEVEL_SUBJECT_FEES[level],
            currency='XAF',
            is_active=True,
            exam_format={'papers': papers, 'duration': 180, 'totalMarks': 100, 'passingGrade': passing_grade},
        ))
        added += 1
    return added


def seed_default_data(session, verbose=True):
    """
    Insert the default accounts, examiners, centres, subjects and system
    settings that are missing. Existing rows are left untouched.
    Returns a dict of counts added per kind.
    """
    counts = {
        'users': _seed_users(session),
        'examiners': _seed_examiners(session),
        'centres': _seed_centres(session),
        'subjects': _seed_subjects(session),
        'settings': seed_settings(session, DEFAULT_SETTINGS),
    }
    session.commit()

    if verbose and counts['users']:
        accounts = ", ".join(f"{seed['email']} ({seed['user_type'].value})" for seed in DEFAULT_USERS)
        logger.warning(f"⚠️ Default GCE accounts seeded with demo passwords: {accounts}")
    return counts


def initialize_database(app_config=None, seed=True, verbose=True):
    """
    Bring the GCE schema in line with the models and seed the default records.
    Returns: (success: bool, created_tables: list, issues: dict)
    """
    app_config = app_config or Config()
    try:
        db_url = get_database_url(app_config)
        create_database_if_not_exists(db_url)
        engine, _ = db_single.init_database(app_config)
        try:
            with engine.connect():
                pass
        except OperationalError as e:
            logger.error(f"❌ Cannot reach {make_url(db_url).render_as_string(hide_password=True)}: {e}")
            return False, [], {'error': str(e)}

        db_single.import_models()
        created_tables = create_missing_tables(engine, get_existing_tables(engine), get_expected_tables())
        added_columns, failed_columns = add_missing_columns(engine)

        seeded = {}
        if seed:
            session = db_single.get_session()
            try:
                seeded = seed_default_data(session, verbose=verbose)
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        if verbose:
            status = 'with column warnings' if failed_columns else 'OK'
            logger.info(f"GCE schema check {status}: {len(created_tables)} tables created, "
                        f"{len(added_columns)} columns added, seeded {seeded or 'nothing'}")
        return True, created_tables, {
            'added_columns': added_columns,
            'failed_columns': failed_columns,
            'seeded': seeded,
        }
    except Exception as e:
        logger.exception(f"❌ GCE database initialisation failed: {e}")
        return False, [], {'error': str(e)}


def run_on_startup(app_config=None):
    """Schema check and seeding, quiet under test"""
    app_config = app_config or Config()
    success, _, _ = initialize_database(
        app_config,
        seed=app_config.SEED_DEFAULT_DATA,
        verbose=not getattr(app_config, 'TESTING', False),
    )
    if not success:
        logger.warning("⚠️ Database initialisation failed; check the DB_* settings")
    return success
