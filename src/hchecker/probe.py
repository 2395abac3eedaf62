"""Single-shot HTTP liveness probe.
"""
import logging
import platform
from dataclasses import dataclass

import httpx

from hchecker import __version__
from hchecker.config import CheckerConfig

logger = logging.getLogger(__name__)

# Returned by backends that are overloaded but alive
ALIVE_STATUS = 503


def is_healthy_status(status_code: int) -> bool:
    """Classify an HTTP status code.

    >>> is_healthy_status(200), is_healthy_status(500), is_healthy_status(503)
    (True, False, True)
    """
    return not (500 <= status_code < 600 and status_code != ALIVE_STATUS)


@dataclass
class ProbeResult:
    """Outcome of one probe.
    """
    reachable: bool
    status_code: int = None
    error: str = None

    @property
    def healthy(self) -> bool:
        return self.reachable and is_healthy_status(self.status_code)


def user_agent(provider: str) -> str:
    return f'{provider}-HealthCheck/{__version__} Python/{platform.python_version()}'


class Prober:
    """Issues liveness requests against backends.

    Connections are never reused between probes and responses are requested
    uncompressed. Retries are left to the caller's polling cadence.
    """

    def __init__(self, config: CheckerConfig, transport: httpx.BaseTransport = None):
        """Initialize the HTTP client.

        Args:
            config: Checker configuration (method, uri, host header, timeouts)
            transport: Optional httpx transport, mostly for tests
        """
        self.method = config.http_method
        self.uri = config.http_uri
        self.host = config.http_host
        self.client = httpx.Client(
            timeout=httpx.Timeout(config.io_timeout_sec, connect=config.connect_timeout_sec),
            limits=httpx.Limits(max_keepalive_connections=0),
            headers={
                'User-Agent': user_agent(config.provider),
                'Connection': 'close',
                'Accept-Encoding': 'identity',
            },
            follow_redirects=False,
            trust_env=False,
            transport=transport,
        )

    def probe(self, backend_url: str) -> ProbeResult:
        """Send one request to the backend.

        Args:
            backend_url: Backend origin, e.g. ``http://10.0.0.1:80``

        Returns
            ProbeResult; ``reachable`` is False on any transport error
        """
        url = f'{backend_url.rstrip("/")}{self.uri}'
        try:
            resp = self.client.request(self.method, url, headers={'Host': self.host})
        except httpx.TransportError as e:
            return ProbeResult(reachable=False, error=f'{type(e).__name__}: {e}')
        resp.close()
        return ProbeResult(reachable=True, status_code=resp.status_code)

    def close(self) -> None:
        self.client.close()
