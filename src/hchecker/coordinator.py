"""Coordination store access: leases, dead records, presence, notifications.
"""
import contextlib
import datetime
import logging
import threading

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from hchecker.config import CheckerConfig, build_connection_string, build_conninfo
from hchecker.monitor import NotificationSubscriber
from hchecker.schema import ensure_database_ready, get_table_names

logger = logging.getLogger(__name__)

__all__ = ['Coordinator', 'StoreContext']


class StoreContext:
    """Manages database engine, connections, and table names.
    """

    def __init__(self, config: CheckerConfig):
        """Initialize store context.

        Args:
            config: Checker configuration with connection parameters
        """
        connection_string = build_connection_string(
            config.host, config.port, config.dbname, config.user, config.password)
        self.engine = create_engine(connection_string, pool_pre_ping=True, pool_size=10, max_overflow=20)
        self.conninfo = build_conninfo(config)
        self.appname = config.appname
        self.tables = get_table_names(config.appname)

    def execute(self, sql: str, params: dict = None):
        """Execute SQL statement with automatic commit.

        Args:
            sql: SQL statement to execute
            params: Optional parameters for the statement

        Returns
            Result proxy object
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            conn.commit()
            return result

    def query(self, sql: str, params: dict = None) -> list:
        """Execute query and return all rows.

        Args:
            sql: SQL query to execute
            params: Optional parameters for the query

        Returns
            List of row objects
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return list(result)

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        with contextlib.suppress(Exception):
            self.engine.dispose()


class Coordinator:
    """Backend leasing, dead/alive propagation and store monitoring.

    Every operation is a single statement (or a single transaction) keyed by
    backend, so calls from concurrent check threads need no extra locking.
    In dry run mode nothing is written to the store: leases live in a
    process-local set and marks only log.
    """

    def __init__(self, config: CheckerConfig, node_name: str, store: StoreContext = None):
        """Initialize coordinator.

        Args:
            config: Checker configuration
            node_name: This process's name, used as lease owner
            store: Store context (created from config when omitted)
        """
        self.config = config
        self.node_name = node_name
        self.store = store or StoreContext(config)
        self.tables = self.store.tables
        self.dry_run = config.dry_run
        self.lease_ttl = config.lease_ttl_sec
        self.dead_ttl = config.dead_ttl_sec
        self.presence_ttl = config.presence_ttl_sec
        self.started_on = datetime.datetime.now(datetime.timezone.utc)
        self.last_heartbeat_sent = None
        self._local_leases = set()
        self._local_leases_lock = threading.Lock()
        self._shutdown_event = threading.Event()
        self._subscribers = []

    def verify_connection(self) -> None:
        """Check the store is reachable and the tables exist.

        Raises
            SQLAlchemyError: If the store cannot be reached
        """
        self.store.query('SELECT 1')
        if not self.dry_run:
            ensure_database_ready(self.store.engine, self.store.appname)

    # ------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------

    def acquire_lease(self, backend_url: str) -> bool:
        """Atomically claim a backend unless another live lease exists.

        Args:
            backend_url: Backend origin

        Returns
            True if granted, False if held elsewhere or on store error
        """
        if self.dry_run:
            with self._local_leases_lock:
                if backend_url in self._local_leases:
                    return False
                self._local_leases.add(backend_url)
                return True

        sql = f"""
        INSERT INTO {self.tables["Lease"]} (backend_url, owner, acquired_at, expires_at)
        VALUES (:url, :owner, NOW(), NOW() + make_interval(secs => :ttl))
        ON CONFLICT (backend_url) DO UPDATE
        SET owner = EXCLUDED.owner,
            acquired_at = EXCLUDED.acquired_at,
            expires_at = EXCLUDED.expires_at
        WHERE {self.tables["Lease"]}.expires_at <= NOW()
        """
        try:
            result = self.store.execute(sql, {'url': backend_url, 'owner': self.node_name, 'ttl': self.lease_ttl})
        except SQLAlchemyError as e:
            logger.error(f'Lease acquisition failed for {backend_url}: {e}')
            return False
        granted = result.rowcount > 0
        if granted:
            logger.debug(f'Lease acquired on {backend_url} by {self.node_name}')
        return granted

    def is_lease_lost(self, backend_url: str) -> bool:
        """Renew the lease if still owned.

        Args:
            backend_url: Backend origin

        Returns
            True if this process holds no live lease on the backend
        """
        if self.dry_run:
            with self._local_leases_lock:
                return backend_url not in self._local_leases

        sql = f"""
        UPDATE {self.tables["Lease"]}
        SET expires_at = NOW() + make_interval(secs => :ttl)
        WHERE backend_url = :url AND owner = :owner AND expires_at > NOW()
        """
        try:
            result = self.store.execute(sql, {'url': backend_url, 'owner': self.node_name, 'ttl': self.lease_ttl})
        except SQLAlchemyError as e:
            logger.warning(f'Lease renewal failed for {backend_url}, keeping check: {e}')
            return False
        return result.rowcount == 0

    def release_lease(self, backend_url: str) -> None:
        """Release the lease if this process owns it. Safe on expired leases.
        """
        if self.dry_run:
            with self._local_leases_lock:
                self._local_leases.discard(backend_url)
            return

        sql = f'DELETE FROM {self.tables["Lease"]} WHERE backend_url = :url AND owner = :owner'
        try:
            self.store.execute(sql, {'url': backend_url, 'owner': self.node_name})
            logger.debug(f'Lease released on {backend_url} by {self.node_name}')
        except SQLAlchemyError as e:
            logger.warning(f'Lease release failed for {backend_url}, leaving it to expire: {e}')

    def lease_owner(self, backend_url: str) -> str | None:
        """Owner of the live lease on a backend, if any.
        """
        sql = f"""
        SELECT owner FROM {self.tables["Lease"]}
        WHERE backend_url = :url AND expires_at > NOW()
        """
        rows = self.store.query(sql, {'url': backend_url})
        return rows[0][0] if rows else None

    # ------------------------------------------------------------
    # Dead records
    # ------------------------------------------------------------

    def mark_unhealthy(self, frontend_key: str, backend_id: int) -> bool:
        """Write or refresh the dead record for a mapped backend.

        Args:
            frontend_key: Frontend identifier
            backend_id: Backend position in the frontend

        Returns
            False if the (frontend, backend) pair is not mapped in the store
        """
        if self.dry_run:
            return True

        sql = f"""
        INSERT INTO {self.tables["Dead"]} (frontend_key, backend_id, marked_by, marked_at, expires_at)
        SELECT frontend_key, backend_id, :node, NOW(), NOW() + make_interval(secs => :ttl)
        FROM {self.tables["Frontend"]}
        WHERE frontend_key = :frontend_key AND backend_id = :backend_id
        ON CONFLICT (frontend_key, backend_id) DO UPDATE
        SET marked_by = EXCLUDED.marked_by,
            marked_at = EXCLUDED.marked_at,
            expires_at = EXCLUDED.expires_at
        """
        try:
            result = self.store.execute(sql, {
                'frontend_key': frontend_key,
                'backend_id': backend_id,
                'node': self.node_name,
                'ttl': self.dead_ttl
            })
        except SQLAlchemyError as e:
            logger.error(f'{frontend_key} Failed to mark backend {backend_id} as dead: {e}')
            return True
        return result.rowcount > 0

    def mark_healthy(self, frontend_key: str, backend_id: int) -> bool:
        """Clear the dead record for a mapped backend.

        Args:
            frontend_key: Frontend identifier
            backend_id: Backend position in the frontend

        Returns
            False if the (frontend, backend) pair is not mapped in the store
        """
        if self.dry_run:
            return True

        params = {'frontend_key': frontend_key, 'backend_id': backend_id}
        try:
            with self.store.engine.connect() as conn:
                mapped = conn.execute(text(f"""
                    SELECT 1 FROM {self.tables["Frontend"]}
                    WHERE frontend_key = :frontend_key AND backend_id = :backend_id
                """), params).first()
                if mapped is None:
                    conn.rollback()
                    return False
                conn.execute(text(f"""
                    DELETE FROM {self.tables["Dead"]}
                    WHERE frontend_key = :frontend_key AND backend_id = :backend_id
                """), params)
                conn.commit()
        except SQLAlchemyError as e:
            logger.error(f'{frontend_key} Failed to mark backend {backend_id} as alive: {e}')
        return True

    def unhealthy_backends(self, frontend_key: str) -> set[int]:
        """Backend ids with a live dead record for a frontend.
        """
        sql = f"""
        SELECT backend_id FROM {self.tables["Dead"]}
        WHERE frontend_key = :frontend_key AND expires_at > NOW()
        """
        return {row[0] for row in self.store.query(sql, {'frontend_key': frontend_key})}

    # ------------------------------------------------------------
    # Presence and housekeeping
    # ------------------------------------------------------------

    def heartbeat(self) -> None:
        """Announce this process. Failures are logged only.
        """
        if self.dry_run:
            return

        sql = f"""
        INSERT INTO {self.tables["Presence"]} (name, started_on, last_heartbeat, expires_at)
        VALUES (:name, :started_on, NOW(), NOW() + make_interval(secs => :ttl))
        ON CONFLICT (name) DO UPDATE
        SET last_heartbeat = EXCLUDED.last_heartbeat,
            expires_at = EXCLUDED.expires_at
        """
        try:
            self.store.execute(sql, {'name': self.node_name, 'started_on': self.started_on, 'ttl': self.presence_ttl})
            self.last_heartbeat_sent = datetime.datetime.now(datetime.timezone.utc)
            logger.debug(f'Heartbeat sent by {self.node_name}')
        except SQLAlchemyError as e:
            logger.warning(f'Heartbeat failed for {self.node_name}: {e}')

    def active_checkers(self) -> list[str]:
        """Names of processes with a live presence record.
        """
        sql = f"""
        SELECT name FROM {self.tables["Presence"]}
        WHERE expires_at > NOW()
        ORDER BY started_on ASC, name ASC
        """
        return [row[0] for row in self.store.query(sql)]

    def purge_expired(self) -> int:
        """Delete expired leases, dead records and presence rows.

        Returns
            Number of rows removed
        """
        if self.dry_run:
            return 0

        removed = 0
        try:
            with self.store.engine.connect() as conn:
                for key in ('Lease', 'Dead', 'Presence'):
                    result = conn.execute(text(f'DELETE FROM {self.tables[key]} WHERE expires_at <= NOW()'))
                    removed += result.rowcount
                conn.commit()
        except SQLAlchemyError as e:
            logger.warning(f'Failed to purge expired records: {e}')
            return 0
        if removed:
            logger.debug(f'Purged {removed} expired records')
        return removed

    def store_identity(self) -> str:
        """Opaque identity of the running store server.

        Raises
            SQLAlchemyError: If the store cannot be reached
        """
        rows = self.store.query('SELECT pg_postmaster_start_time()')
        return rows[0][0].isoformat()

    # ------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------

    def subscribe(self, channel: str, handler: callable) -> NotificationSubscriber:
        """Deliver every message on a channel to handler in the background.

        The channel is LISTENed before returning, so an unreachable store
        raises here.

        Args:
            channel: Channel name
            handler: Callable(payload: str)

        Returns
            The running subscriber

        Raises
            psycopg.Error: If the subscription cannot be established
        """
        subscriber = NotificationSubscriber(self.store.conninfo, channel, handler, self._shutdown_event)
        subscriber.listen()
        subscriber.start()
        self._subscribers.append(subscriber)
        return subscriber

    def publish(self, channel: str, payload: str) -> None:
        """Send one message on a channel.
        """
        self.store.execute('SELECT pg_notify(:channel, :payload)', {'channel': channel, 'payload': payload})

    def dispose(self) -> None:
        """Stop subscribers and dispose of engine resources.
        """
        self._shutdown_event.set()
        for subscriber in self._subscribers:
            if subscriber.thread and subscriber.thread.is_alive():
                subscriber.thread.join(timeout=5)
        self.store.dispose()
