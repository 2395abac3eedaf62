import logging

from sqlalchemy import Engine, text

logger = logging.getLogger(__name__)

TABLE_KEYS = ['Frontend', 'Dead', 'Lease', 'Presence']


def get_table_names(appname: str = 'hchecker_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Frontend': f'{appname}frontend',
        'Dead': f'{appname}dead',
        'Lease': f'{appname}lease',
        'Presence': f'{appname}presence',
    }


def verify_tables_exist(engine: Engine, appname: str = 'hchecker_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    status = {}

    with engine.connect() as conn:
        for table_key in TABLE_KEYS:
            result = conn.execute(text("""
                SELECT EXISTS (
                    SELECT FROM information_schema.tables
                    WHERE table_schema = 'public'
                    AND table_name = :table_name
                )
            """), {'table_name': tables[table_key]})
            status[table_key] = result.scalar()

    return status


def _create_mapping_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create the frontend mapping and dead record tables.
    """
    Frontend = tables['Frontend']
    Dead = tables['Dead']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Frontend} (
    frontend_key varchar not null,
    backend_id integer not null,
    backend_url varchar not null,
    primary key (frontend_key, backend_id)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Frontend}_url ON {Frontend}(backend_url)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Dead} (
    frontend_key varchar not null,
    backend_id integer not null,
    marked_by varchar not null,
    marked_at timestamp with time zone not null,
    expires_at timestamp with time zone not null,
    primary key (frontend_key, backend_id)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Dead}_expires ON {Dead}(expires_at)'))

        conn.commit()

    logger.debug(f'Mapping tables verified: {Frontend}, {Dead}')


def _create_coordination_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create coordination tables (Lease, Presence).
    """
    Lease = tables['Lease']
    Presence = tables['Presence']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Lease} (
    backend_url varchar not null,
    owner varchar not null,
    acquired_at timestamp with time zone not null,
    expires_at timestamp with time zone not null,
    primary key (backend_url)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Lease}_owner ON {Lease}(owner)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Presence} (
    name varchar not null,
    started_on timestamp with time zone not null,
    last_heartbeat timestamp with time zone not null,
    expires_at timestamp with time zone not null,
    primary key (name)
);
        """))

        conn.commit()

    logger.debug(f'Coordination tables verified: {Lease}, {Presence}')


def ensure_database_ready(engine: Engine, appname: str = 'hchecker_') -> None:
    """Ensure database has all required tables with correct structure.

    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    logger.debug('Verifying database structure')

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_mapping_tables(engine, tables)
        _create_coordination_tables(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
