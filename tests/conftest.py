"""Pytest configuration and shared fixtures.

WHAT THIS FILE PROVIDES:
- psql_docker: PostgreSQL Docker container for store tests
- postgres: SQLAlchemy engine with the hchecker tables created
- Helper functions for table management (drop_tables, terminate_postgres_connections)

Store tests are skipped when no Docker daemon is reachable. Everything else
runs against in-process fakes from fixtures.py.
"""
import logging
import time

import docker
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError

from hchecker import schema
from hchecker.config import build_connection_string

logger = logging.getLogger(__name__)

APPNAME = 'test_hchecker_'
PG_PORT = 55432


@pytest.fixture(scope='module')
def psql_docker():
    """Start PostgreSQL Docker container for testing.
    """
    try:
        client = docker.from_env()
        client.ping()
    except docker.errors.DockerException as e:
        pytest.skip(f'Docker unavailable: {e}')
    try:
        existing = client.containers.get('test_hchecker_postgres')
        existing.stop()
        existing.remove()
    except docker.errors.NotFound:
        pass
    container = client.containers.run(
        image='postgres:17',
        auto_remove=True,
        environment={
            'POSTGRES_DB': 'hchecker',
            'POSTGRES_USER': 'postgres',
            'POSTGRES_PASSWORD': 'postgres'},
        name='test_hchecker_postgres',
        ports={'5432/tcp': ('127.0.0.1', PG_PORT)},
        detach=True,
        remove=True,
    )
    wait_for_postgres()
    yield container
    container.stop()


def connection_string() -> str:
    return build_connection_string('localhost', PG_PORT, 'hchecker', 'postgres', 'postgres')


def wait_for_postgres(timeout: float = 30) -> None:
    """Block until the container accepts connections.
    """
    engine = create_engine(connection_string())
    start = time.time()
    try:
        while time.time() - start < timeout:
            try:
                with engine.connect() as conn:
                    conn.execute(text('SELECT 1'))
                return
            except OperationalError:
                time.sleep(0.5)
        raise TimeoutError(f'PostgreSQL not ready within {timeout}s')
    finally:
        engine.dispose()


def drop_tables(engine, appname: str = APPNAME):
    """Drop all test tables.
    """
    tables = schema.get_table_names(appname)
    with engine.connect() as conn:
        for key in schema.TABLE_KEYS:
            conn.execute(text(f'DROP TABLE IF EXISTS {tables[key]}'))
        conn.commit()


def terminate_postgres_connections(engine):
    """Terminate all other connections to the test database.
    """
    sql = """
    SELECT pg_terminate_backend(pg_stat_activity.pid)
    FROM pg_stat_activity
    WHERE pg_stat_activity.datname = current_database()
    AND pid <> pg_backend_pid()
    """
    with engine.connect() as conn:
        conn.execute(text(sql))
        conn.commit()


@pytest.fixture
def postgres(psql_docker):
    """Provide SQLAlchemy engine for PostgreSQL tests.
    """
    engine = create_engine(connection_string(), pool_pre_ping=True)
    drop_tables(engine)
    schema.ensure_database_ready(engine, APPNAME)

    try:
        yield engine
    finally:
        terminate_postgres_connections(engine)
        drop_tables(engine)
        engine.dispose()
