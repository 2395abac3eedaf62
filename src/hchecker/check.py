"""Per-backend liveness check with hysteresis.
"""
import abc
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

from hchecker.config import CheckerConfig
from hchecker.probe import Prober

logger = logging.getLogger(__name__)

__all__ = ['Check', 'CheckExit', 'CheckHooks', 'CheckState', 'NotificationError',
           'NotificationRecord', 'parse_notification']


# ============================================================
# NOTIFICATION RECORDS
# ============================================================

class NotificationError(ValueError):
    """Raised when a line on the notification channel is malformed.
    """


@dataclass(frozen=True)
class NotificationRecord:
    """One "backend became unhealthy" message.
    """
    frontend_key: str
    backend_url: str
    backend_id: int
    group_length: int


def parse_notification(line: str) -> NotificationRecord:
    """Parse ``frontendKey;backendUrl;backendId;groupLength``.

    The backend URL is reduced to its origin.

    >>> parse_notification('fk1;http://10.0.0.1:80/;3;5')
    NotificationRecord(frontend_key='fk1', backend_url='http://10.0.0.1:80', backend_id=3, group_length=5)

    Raises
        NotificationError: If the line does not hold four valid fields
    """
    parts = line.strip().split(';')
    if len(parts) != 4:
        raise NotificationError(f'Expected 4 fields, got {len(parts)}')
    frontend_key, raw_url, raw_id, raw_length = parts
    try:
        url = urlsplit(raw_url)
        url.port  # raises on a malformed or out of range port
    except ValueError as e:
        raise NotificationError(f'Invalid backend URL: {raw_url!r} ({e})') from e
    if not url.scheme or not url.hostname:
        raise NotificationError(f'Invalid backend URL: {raw_url!r}')
    try:
        backend_id = int(raw_id)
        group_length = int(raw_length)
    except ValueError as e:
        raise NotificationError(f'Invalid numeric field: {e}') from e
    return NotificationRecord(frontend_key, f'{url.scheme}://{url.netloc}', backend_id, group_length)


# ============================================================
# STATES
# ============================================================

class CheckState(Enum):
    """Check status.
    """
    FIRST_CHECK = 'first_check'
    HEALTHY = 'healthy'
    UNHEALTHY = 'unhealthy'


class CheckExit(Enum):
    """Reasons a check loop terminates.
    """
    LEASE_LOST = 'lease_lost'
    STABLE_HEALTHY = 'stable_healthy'
    BACKEND_GONE = 'backend_gone'


class CheckHooks(abc.ABC):
    """Interface a check reports to.
    """

    @abc.abstractmethod
    def check_dead(self, check: 'Check') -> bool:
        """Flag the backend unhealthy. False means it is no longer mapped.
        """

    @abc.abstractmethod
    def check_alive(self, check: 'Check') -> bool:
        """Flag the backend healthy. False means it is no longer mapped.
        """

    @abc.abstractmethod
    def check_lease_lost(self, check: 'Check') -> bool:
        """Return True if this process no longer owns the backend.
        """

    @abc.abstractmethod
    def check_exited(self, check: 'Check', reason: CheckExit) -> None:
        """Called once when the loop exits.
        """


# ============================================================
# CHECK
# ============================================================

class Check:
    """Polls one backend until it is stable, gone, or handed off.

    The backend may be shared by several frontends; each (frontend_key,
    backend_id) pair the check reports for is a binding. The first binding
    comes from the notification that created the check.
    """

    def __init__(self, record: NotificationRecord, hooks: CheckHooks, prober: Prober,
                 config: CheckerConfig, clock: callable = time.monotonic, sleep: callable = time.sleep):
        """Initialize check from a notification record.

        Args:
            record: Notification that triggered the check
            hooks: Receiver of state transitions
            prober: Probe client
            config: Checker configuration (intervals and durations)
            clock: Monotonic clock in seconds
            sleep: Sleep function in seconds
        """
        self.origin_key = record.frontend_key
        self.backend_url = record.backend_url
        self.backend_id = record.backend_id
        self.group_length = record.group_length
        self.hooks = hooks
        self.prober = prober
        self.check_interval = config.check_interval_sec
        self.check_duration = config.check_duration_sec
        self.check_break_interval = config.check_break_interval_sec
        self.dead_refresh_interval = config.dead_refresh_interval_sec
        self._clock = clock
        self._sleep = sleep

        self.state = CheckState.FIRST_CHECK
        self.last_state_change = None
        self.last_dead_refresh = None
        self.poll_count = 0
        self.exit_reason = None

        self._bindings = {record.frontend_key: record.backend_id}
        self._bindings_lock = threading.Lock()
        self._resync = threading.Event()

    def __repr__(self) -> str:
        return f'Check({self.frontend_key},{self.backend_url},{self.state.value})'

    @property
    def frontend_key(self) -> str:
        """A frontend still bound to the check, used as log prefix.
        """
        with self._bindings_lock:
            return next(iter(self._bindings), self.origin_key)

    @property
    def time_in_state(self) -> float:
        """Seconds since the last state change.
        """
        if self.last_state_change is None:
            return 0.0
        return self._clock() - self.last_state_change

    def bindings(self) -> dict[str, int]:
        """Snapshot of frontend_key -> backend_id pairs.
        """
        with self._bindings_lock:
            return dict(self._bindings)

    def add_binding(self, frontend_key: str, backend_id: int) -> None:
        with self._bindings_lock:
            self._bindings[frontend_key] = backend_id

    def remove_binding(self, frontend_key: str) -> int:
        """Drop a binding, returning the number left.
        """
        with self._bindings_lock:
            self._bindings.pop(frontend_key, None)
            return len(self._bindings)

    def resync(self) -> None:
        """Ask the loop to report its status again on the next iteration.
        """
        self._resync.set()

    def _report(self, healthy: bool) -> bool:
        if healthy:
            ok = self.hooks.check_alive(self)
        else:
            ok = self.hooks.check_dead(self)
        if not ok:
            logger.warning(f'{self.frontend_key} Backend {self.backend_url} not found in store')
        return ok

    def poll_once(self) -> CheckExit | None:
        """Probe once and report a transition or a dead refresh.

        Returns
            CheckExit.BACKEND_GONE if the store no longer maps the backend, else None
        """
        first_check = self.state == CheckState.FIRST_CHECK
        if self._resync.is_set():
            self._resync.clear()
            first_check = True

        self.poll_count += 1
        logger.info(f'{self.frontend_key} Checking {self.backend_url} for {self.poll_count} time. '
                    f'{self.time_in_state:.0f}s since last status change.')
        result = self.prober.probe(self.backend_url)
        if not result.reachable:
            logger.info(f'{self.frontend_key} Response from {self.backend_url} ... TCP error: {result.error}')
        elif not result.healthy:
            logger.info(f'{self.frontend_key} Response from {self.backend_url} ... HTTP error: {result.status_code}')
        else:
            logger.info(f'{self.frontend_key} Response from {self.backend_url} ... OK {result.status_code}')

        new_state = CheckState.HEALTHY if result.healthy else CheckState.UNHEALTHY
        now = self._clock()

        if first_check or new_state != self.state:
            self.last_state_change = now
            self.state = new_state
            if not self._report(result.healthy):
                return CheckExit.BACKEND_GONE
            self.last_dead_refresh = None if result.healthy else now
        elif new_state == CheckState.UNHEALTHY and self.last_dead_refresh is not None \
                and now - self.last_dead_refresh >= self.dead_refresh_interval:
            # Keep the dead record alive despite its TTL
            if not self._report(False):
                return CheckExit.BACKEND_GONE
            self.last_dead_refresh = now

        return None

    def should_break(self) -> CheckExit | None:
        """Break-interval decision: lease ownership, then stability.
        """
        if self.hooks.check_lease_lost(self):
            logger.info(f'{self.frontend_key} Backend {self.backend_url} lost the lock')
            return CheckExit.LEASE_LOST
        if self.state == CheckState.HEALTHY and self.time_in_state >= self.check_duration:
            logger.info(f'{self.frontend_key} Backend {self.backend_url} state is stable and healthy')
            return CheckExit.STABLE_HEALTHY
        return None

    def run(self) -> CheckExit:
        """Poll the backend until a terminal condition is reached.

        Returns
            The exit reason (None is reported to the hooks if the loop raised)
        """
        reason = None
        last_break = self._clock()
        try:
            while True:
                reason = self.poll_once()
                if reason is not None:
                    break
                self._sleep(self.check_interval)
                # Probe time counts too, the lease expires on the wall clock
                if self._clock() - last_break >= self.check_break_interval:
                    reason = self.should_break()
                    if reason is not None:
                        break
                    last_break = self._clock()
        finally:
            self.exit_reason = reason
            self.hooks.check_exited(self, reason)
        return reason
