import logging

from sqlalchemy import Boolean, Column, Float, JSON, String

import db_single
from config import TestingConfig
from models import User
from init_db import DEFAULT_USERS, get_column_type_sql, initialize_database


def file_config(tmp_path):
    class FileConfig(TestingConfig):
        def get_database_uri(self):
            return f"sqlite:///{tmp_path / 'gce.db'}"
    return FileConfig()


def test_initialize_database_seeds_once_and_logs(tmp_path, caplog, capsys):
    caplog.set_level(logging.INFO, logger='init_db')

    success, created, issues = initialize_database(file_config(tmp_path))
    assert success is True
    assert 'users' in created
    assert issues['seeded']['users'] == len(DEFAULT_USERS)
    assert issues['failed_columns'] == []
    assert 'Default GCE accounts seeded' in caplog.text
    assert 'GCE schema check OK' in caplog.text

    caplog.clear()
    success, created, issues = initialize_database(file_config(tmp_path), verbose=False)
    assert success is True
    assert created == []
    assert issues['added_columns'] == []
    assert issues['seeded']['users'] == 0
    assert 'GCE schema check' not in caplog.text

    session = db_single.get_session()
    try:
        assert session.query(User).count() == len(DEFAULT_USERS)
    finally:
        session.close()
        db_single.ENGINE.dispose()
    assert capsys.readouterr().out == ''


def test_column_type_sql_per_dialect():
    assert get_column_type_sql(Column('name', String(100)), 'mysql') == 'VARCHAR(100)'
    assert get_column_type_sql(Column('name', String(100)), 'sqlite') == 'TEXT'
    assert get_column_type_sql(Column('flag', Boolean()), 'mysql') == 'TINYINT(1)'
    assert get_column_type_sql(Column('flag', Boolean()), 'sqlite') == 'INTEGER'
    assert get_column_type_sql(Column('score', Float()), 'sqlite') == 'REAL'
    assert get_column_type_sql(Column('data', JSON()), 'mysql') == 'JSON'
