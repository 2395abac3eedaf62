"""Background loops: notification subscriber and process supervisor.
"""
import logging
import threading
import time

import psycopg
from psycopg import sql
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

__all__ = ['Monitor', 'NotificationSubscriber', 'StoreRestarted', 'Supervisor']


class StoreRestarted(RuntimeError):
    """Raised when the coordination store identity changed under us.
    """


class Monitor:
    """Base class for background monitoring loops.
    """

    def __init__(self, name: str, interval: float, shutdown_event: threading.Event):
        """Initialize monitor.

        Args:
            name: Monitor name
            interval: Check interval in seconds
            shutdown_event: Event to signal shutdown
        """
        self.name = name
        self.interval = interval
        self.shutdown_event = shutdown_event
        self.thread = None

    def start(self) -> None:
        """Start the monitor thread.
        """
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=self.name
        )
        self.thread.start()
        logger.info(f'{self.name} monitor started')

    def stop(self) -> None:
        """Request the monitor to stop its loop.
        """
        self.shutdown_event.set()

    def _run(self) -> None:
        """Main monitoring loop.
        """
        while not self.shutdown_event.is_set():
            try:
                self.check()
            except StoreRestarted:
                raise
            except Exception as e:
                logger.error(f'{self.name} monitor error: {e}', exc_info=True)
                time.sleep(1.0)
                continue

            if self.shutdown_event.wait(timeout=self.interval):
                break

    def check(self) -> None:
        """Perform monitoring check - to be implemented by subclasses.
        """
        raise NotImplementedError


class NotificationSubscriber(Monitor):
    """Delivers NOTIFY payloads from one channel to a handler.

    The channel is LISTENed on a dedicated autocommit connection. A broken
    connection is reopened on the next loop iteration.
    """

    def __init__(self, conninfo: str, channel: str, handler: callable,
                 shutdown_event: threading.Event, poll_timeout: float = 1.0):
        """Initialize subscriber.

        Args:
            conninfo: libpq connection string
            channel: Channel name
            handler: Callable(payload: str) invoked for each message
            shutdown_event: Event to signal shutdown
            poll_timeout: Seconds to block waiting for notifications per iteration
        """
        super().__init__(f'subscriber-{channel}', 0, shutdown_event)
        self.conninfo = conninfo
        self.channel = channel
        self.handler = handler
        self.poll_timeout = poll_timeout
        self.received = 0
        self._conn = None

    def listen(self) -> None:
        """Open the connection and LISTEN on the channel.

        Raises
            psycopg.Error: If the store is unreachable
        """
        self.close()
        self._conn = psycopg.connect(self.conninfo, autocommit=True)
        self._conn.execute(sql.SQL('LISTEN {}').format(sql.Identifier(self.channel)))
        logger.info(f'Listening to the "{self.channel}" channel')

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except psycopg.Error as e:
                logger.debug(f'Failed to close subscriber connection: {e}')
            self._conn = None

    def deliver(self, payload: str) -> None:
        """Hand one payload to the handler, logging and dropping failures.
        """
        self.received += 1
        try:
            self.handler(payload)
        except Exception as e:
            logger.error(f'Failed to handle message on "{self.channel}": {payload!r}: {e}', exc_info=True)

    def check(self) -> None:
        if self._conn is None or self._conn.closed:
            self.listen()
        try:
            for notify in self._conn.notifies(timeout=self.poll_timeout):
                self.deliver(notify.payload)
        except psycopg.OperationalError:
            self.close()
            raise

    def _run(self) -> None:
        try:
            super()._run()
        finally:
            self.close()


class Supervisor(Monitor):
    """Process heartbeat, store identity verification and status log.

    Runs on the calling thread via ``run``. A changed store identity raises
    StoreRestarted out of ``run``.
    """

    def __init__(self, coordinator: 'Coordinator', dispatcher: 'Dispatcher',
                 shutdown_event: threading.Event = None):
        """Initialize supervisor.

        Args:
            coordinator: Store coordinator
            dispatcher: Dispatcher owning the running checks
            shutdown_event: Event to signal shutdown
        """
        config = coordinator.config
        super().__init__('supervisor', config.heartbeat_interval_sec, shutdown_event or threading.Event())
        self.coordinator = coordinator
        self.dispatcher = dispatcher
        self.dry_run = config.dry_run
        self.identity_check_interval = config.identity_check_interval_sec
        self.store_identity = None
        self._elapsed = 0

    def run(self) -> None:
        """Block the calling thread in the supervisor loop.
        """
        self._run()

    def check(self) -> None:
        if not self.dry_run:
            self.coordinator.heartbeat()
        self._elapsed += self.interval
        if self._elapsed < self.identity_check_interval:
            return
        self._elapsed = 0
        self.verify_store_identity()
        if not self.dry_run:
            self.coordinator.purge_expired()
        self.log_status()

    def verify_store_identity(self) -> None:
        """Cache the store identity on first success, compare afterwards.

        Raises
            StoreRestarted: If the identity differs from the cached one
        """
        try:
            identity = self.coordinator.store_identity()
        except SQLAlchemyError as e:
            logger.warning(f'Failed to fetch store identity: {e}')
            return
        if self.store_identity is None:
            self.store_identity = identity
            logger.info(f'Store identity is {identity}')
            return
        if identity != self.store_identity:
            logger.error(f'Store identity changed: {self.store_identity} -> {identity}')
            raise StoreRestarted(f'Store restarted ({self.store_identity} -> {identity})')

    def log_status(self) -> None:
        msg = 'backend URLs are being tested'
        if self.dry_run:
            msg += ' (dry run)'
        logger.info(f'Health checker status: {self.dispatcher.active_count} {msg}, '
                    f'using {threading.active_count()} threads. Store running on {self.store_identity}')
