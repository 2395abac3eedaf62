"""Shared test fixtures, fakes, and helpers.

USE THIS FILE FOR:
- Config builders with test-optimized timings
- In-process fakes for the prober, clock, hooks and coordinator
- Store helpers used by more than one test file
"""
import logging
import threading
from dataclasses import dataclass, field

from sqlalchemy import text

from conftest import APPNAME, PG_PORT
from hchecker import schema
from hchecker.check import CheckExit, CheckHooks, NotificationRecord
from hchecker.config import CheckerConfig
from hchecker.coordinator import Coordinator
from hchecker.probe import ProbeResult

logger = logging.getLogger(__name__)

# Guards fake store state shared between FakeCoordinator instances
STORE_LOCK = threading.Lock()


# ============================================================================
# CONFIG BUILDERS
# ============================================================================

def test_config(**overrides) -> CheckerConfig:
    """Create CheckerConfig pointing at the test store.

    Production timings by default so state machine tests read like the
    real schedule; the fake clock makes them instant.
    """
    defaults = {
        'host': 'localhost',
        'port': PG_PORT,
        'dbname': 'hchecker',
        'appname': APPNAME,
        'connect_timeout_sec': 2,
        'io_timeout_sec': 2,
    }
    defaults.update(overrides)
    return CheckerConfig(**defaults)


test_config.__test__ = False


def record(frontend_key='fk1', backend_url='http://10.0.0.1:80', backend_id=3, group_length=5) -> NotificationRecord:
    return NotificationRecord(frontend_key, backend_url, backend_id, group_length)


# ============================================================================
# FAKES
# ============================================================================

class FakeClock:
    """Manual clock; sleeping advances it.
    """

    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedProber:
    """Returns scripted probe results; the last one repeats forever.

    Items are status codes, or None for a transport error.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def probe(self, backend_url: str) -> ProbeResult:
        self.calls.append(backend_url)
        status = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if status is None:
            return ProbeResult(reachable=False, error='ConnectError: refused')
        return ProbeResult(reachable=True, status_code=status)


@dataclass
class RecordingHooks(CheckHooks):
    """CheckHooks recording every call with the fake clock time.
    """
    clock: FakeClock = None
    dead_result: bool = True
    alive_result: bool = True
    lease_lost_at: float = None
    calls: list = field(default_factory=list)
    exits: list = field(default_factory=list)

    def _now(self):
        return self.clock() if self.clock else None

    def check_dead(self, check) -> bool:
        self.calls.append(('dead', self._now()))
        return self.dead_result

    def check_alive(self, check) -> bool:
        self.calls.append(('alive', self._now()))
        return self.alive_result

    def check_lease_lost(self, check) -> bool:
        self.calls.append(('lease', self._now()))
        return self.lease_lost_at is not None and self._now() >= self.lease_lost_at

    def check_exited(self, check, reason: CheckExit) -> None:
        self.exits.append(reason)

    def of(self, kind: str) -> list:
        return [t for k, t in self.calls if k == kind]


class FakeCoordinator:
    """In-memory Coordinator stand-in shared across fake processes.

    ``leases`` and ``mapping`` may be shared between instances to model
    several checker processes against one store.
    """

    def __init__(self, node_name='node1', config: CheckerConfig = None, leases: dict = None,
                 mapping: set = None, identities: list = None):
        self.node_name = node_name
        self.config = config or test_config()
        self.dry_run = self.config.dry_run
        self.leases = leases if leases is not None else {}
        self.mapping = mapping if mapping is not None else {('fk1', 3), ('fk2', 7)}
        self.dead = set()
        self.identities = list(identities or ['2026-01-01T00:00:00+00:00'])
        self.writes = []
        self.heartbeats = 0
        self.purges = 0

    def acquire_lease(self, backend_url):
        with STORE_LOCK:
            if backend_url in self.leases:
                return False
            if not self.dry_run:
                self.writes.append(('acquire', backend_url))
            self.leases[backend_url] = self.node_name
            return True

    def is_lease_lost(self, backend_url):
        return self.leases.get(backend_url) != self.node_name

    def release_lease(self, backend_url):
        with STORE_LOCK:
            if self.leases.get(backend_url) == self.node_name:
                del self.leases[backend_url]

    def mark_unhealthy(self, frontend_key, backend_id):
        if self.dry_run:
            return True
        self.writes.append(('dead', frontend_key, backend_id))
        if (frontend_key, backend_id) not in self.mapping:
            return False
        self.dead.add((frontend_key, backend_id))
        return True

    def mark_healthy(self, frontend_key, backend_id):
        if self.dry_run:
            return True
        self.writes.append(('alive', frontend_key, backend_id))
        if (frontend_key, backend_id) not in self.mapping:
            return False
        self.dead.discard((frontend_key, backend_id))
        return True

    def heartbeat(self):
        self.heartbeats += 1

    def purge_expired(self):
        self.purges += 1
        return 0

    def store_identity(self):
        if len(self.identities) > 1:
            return self.identities.pop(0)
        return self.identities[0]


# ============================================================================
# STORE HELPERS
# ============================================================================

def insert_mapping(engine, frontend_key: str, backend_id: int, backend_url: str) -> None:
    """Register a backend under a frontend in the authoritative mapping.
    """
    tables = schema.get_table_names(APPNAME)
    with engine.connect() as conn:
        conn.execute(text(f"""
            INSERT INTO {tables["Frontend"]} (frontend_key, backend_id, backend_url)
            VALUES (:fk, :id, :url)
        """), {'fk': frontend_key, 'id': backend_id, 'url': backend_url})
        conn.commit()


def expire_lease(engine, backend_url: str) -> None:
    """Force a lease to look expired.
    """
    tables = schema.get_table_names(APPNAME)
    with engine.connect() as conn:
        conn.execute(text(f"""
            UPDATE {tables["Lease"]} SET expires_at = NOW() - INTERVAL '1 second'
            WHERE backend_url = :url
        """), {'url': backend_url})
        conn.commit()


def make_coordinator(node_name: str = 'node1', **overrides) -> Coordinator:
    return Coordinator(test_config(**overrides), node_name)
