"""Turns backend-down notifications into running checks.
"""
import logging
import threading

from hchecker.check import Check, CheckExit, CheckHooks, NotificationError
from hchecker.check import parse_notification
from hchecker.config import CheckerConfig
from hchecker.probe import Prober

logger = logging.getLogger(__name__)

__all__ = ['Dispatcher']


class Dispatcher(CheckHooks):
    """Leases backends, spawns checks and relays their transitions.

    At most one check per backend runs in this process; the store lease
    extends that guarantee across processes. A notification for a backend
    already being checked here is merged into the running check.
    """

    def __init__(self, coordinator: 'Coordinator', prober: Prober, config: CheckerConfig,
                 start_check: callable = None):
        """Initialize dispatcher.

        Args:
            coordinator: Store coordinator
            prober: Probe client shared by all checks
            config: Checker configuration
            start_check: Callable(check) that runs the check; defaults to a daemon thread
        """
        self.coordinator = coordinator
        self.prober = prober
        self.config = config
        self.dry_run = config.dry_run
        self._start_check = start_check or self._start_thread
        self._checks = {}
        self._lock = threading.Lock()

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._checks)

    def running_check(self, backend_url: str) -> Check | None:
        with self._lock:
            return self._checks.get(backend_url)

    def handle(self, line: str) -> Check | None:
        """Handle one line from the notification channel.

        Args:
            line: Raw notification payload

        Returns
            The new check if one was started
        """
        try:
            record = parse_notification(line)
        except NotificationError as e:
            logger.warning(f'Got invalid data on the "{self.config.channel}" channel: {line!r} ({e})')
            return None

        # A lone backend keeps its traffic whatever its health
        if record.group_length <= 1:
            return None

        with self._lock:
            running = self._checks.get(record.backend_url)
            if running is not None:
                running.add_binding(record.frontend_key, record.backend_id)
                running.resync()
                logger.debug(f'{record.frontend_key} Merged notification into running check for {record.backend_url}')
                return None

            # Reserved before the lease round trip; duplicates merge into it meanwhile
            check = Check(record, self, self.prober, self.config)
            self._checks[record.backend_url] = check

        if not self.coordinator.acquire_lease(record.backend_url):
            self._unregister(check)
            logger.debug(f'{record.frontend_key} Backend {record.backend_url} is checked elsewhere')
            return None

        count = self.active_count
        self._start_check(check)
        logger.info(f'{check.frontend_key} Dead backend found! Added check for {check.backend_url} | '
                    f'{count} backends being checked.')
        return check

    def _start_thread(self, check: Check) -> None:
        thread = threading.Thread(target=check.run, daemon=True, name=f'check-{check.backend_url}')
        thread.start()

    def _flag(self, check: Check, mark: callable, label: str) -> bool:
        """Apply a mark to every binding, dropping the ones no longer mapped.
        """
        msg = f'as {label}'
        if self.dry_run:
            msg += ' (dry run)'
        found = False
        for frontend_key, backend_id in check.bindings().items():
            if mark(frontend_key, backend_id):
                found = True
                logger.info(f'{frontend_key} Flagging backend {check.backend_url} {msg}')
            elif check.remove_binding(frontend_key):
                logger.warning(f'{frontend_key} Backend {check.backend_url} no longer mapped, dropped from check')
        return found

    def check_dead(self, check: Check) -> bool:
        return self._flag(check, self.coordinator.mark_unhealthy, 'dead')

    def check_alive(self, check: Check) -> bool:
        return self._flag(check, self.coordinator.mark_healthy, 'alive')

    def check_lease_lost(self, check: Check) -> bool:
        return self.coordinator.is_lease_lost(check.backend_url)

    def _unregister(self, check: Check) -> int:
        with self._lock:
            if self._checks.get(check.backend_url) is check:
                del self._checks[check.backend_url]
            return len(self._checks)

    def check_exited(self, check: Check, reason: CheckExit) -> None:
        count = self._unregister(check)
        self.coordinator.release_lease(check.backend_url)
        if reason is None:
            logger.error(f'{check.frontend_key} Check for backend {check.backend_url} crashed')
        logger.info(f'{check.frontend_key} Removed check for backend {check.backend_url} | '
                    f'{count} backends being checked.')
