"""HTTP session construction for the NCBI endpoints.

Every request the pipeline makes (directory index, dumps, ``.md5``
companions, E-utilities) goes through one pooled ``requests.Session`` whose
adapter retries transient transport failures. Those retries are per
request; a file or gene that still fails afterwards is recorded as failed
for the run and is not retried by the pipeline.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

USER_AGENT = "clinvar-sync/1.0 (+https://www.ncbi.nlm.nih.gov/clinvar/)"

# NCBI answers 429 when E-utilities rate limits are exceeded
TRANSIENT_STATUSES = (429, 500, 502, 503, 504)


@dataclass
class RetryStrategy:
    """Transport retry policy; backoff waits 2s, 4s, 8s... between attempts."""

    max_retries: int = 3
    backoff_factor: float = 2.0
    status_forcelist: Tuple[int, ...] = field(default=TRANSIENT_STATUSES)

    def get_retry_object(self) -> Retry:
        return Retry(
            total=self.max_retries,
            backoff_factor=self.backoff_factor,
            status_forcelist=self.status_forcelist,
            allowed_methods=frozenset({"GET", "HEAD"}),
            respect_retry_after_header=True,
            raise_on_status=False,
        )


class SessionManager:
    """Lazily builds the shared session and closes it on request.

    Only idempotent methods are retried, so the SendGrid POST is attempted
    once per run.
    """

    def __init__(self, retry_strategy: Optional[RetryStrategy] = None,
                 pool_connections: int = 4, pool_maxsize: int = 4):
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.pool_connections = pool_connections
        self.pool_maxsize = pool_maxsize
        self._session: Optional[requests.Session] = None

    def _build(self) -> requests.Session:
        session = requests.Session()
        session.headers["User-Agent"] = USER_AGENT
        adapter = HTTPAdapter(
            max_retries=self.retry_strategy.get_retry_object(),
            pool_connections=self.pool_connections,
            pool_maxsize=self.pool_maxsize,
        )
        for scheme in ("http://", "https://"):
            session.mount(scheme, adapter)
        return session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = self._build()
        return self._session

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
