"""Readiness probing of the relay management API."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import requests
import urllib3
from requests.exceptions import RequestException

from outpost.deploy.retry import RetryPolicy
from outpost.lib.errors import VerificationError

logger = logging.getLogger(__name__)

ACCESS_KEYS_PATH = "access-keys"
ACCESS_KEYS_MARKER = "accessKeys"

# Kept short in failure messages
_BODY_PREVIEW = 500


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a successful verification.

    Attributes:
        url: Probed URL
        attempts: Attempts used, including the successful one
        status_code: HTTP status of the successful probe
        body: Parsed JSON body
    """

    url: str
    attempts: int
    status_code: int
    body: dict[str, Any]


def build_probe_url(base_url: str, path_prefix: str) -> str:
    """Join the base URL, optional secret prefix, and the access-keys path."""
    segments = [base_url.rstrip("/")]
    prefix = path_prefix.strip("/")
    if prefix:
        segments.append(prefix)
    segments.append(ACCESS_KEYS_PATH)
    return "/".join(segments)


class HealthVerifier:
    """Polls the management endpoint until it answers with the key listing.

    A probe succeeds on HTTP 200 with a JSON object holding a top-level
    ``accessKeys`` field. Connection failures, other status codes, and
    unexpected bodies are all retried until the policy is exhausted.
    """

    DEFAULT_CONNECT_TIMEOUT = 5.0
    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        settle_delay: float = 0.0,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        timeout: float = DEFAULT_TIMEOUT,
        verify_tls: bool = False,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the verifier.

        Args:
            policy: Attempt budget and spacing (default: 3 attempts, 5 s apart)
            settle_delay: Seconds to wait before the first probe
            connect_timeout: Per-attempt connect timeout in seconds
            timeout: Per-attempt read timeout in seconds
            verify_tls: Verify the server certificate; the relay uses a
                self-signed certificate, so this is off by default
            session: HTTP session to use
            sleep: Sleep function, replaceable in tests
        """
        self.policy = policy or RetryPolicy(max_attempts=3, delay=5.0)
        self.settle_delay = settle_delay
        self.connect_timeout = connect_timeout
        self.timeout = timeout
        self.verify_tls = verify_tls
        self._session = session or requests.Session()
        self._sleep = sleep
        if not verify_tls:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def verify(self, base_url: str, path_prefix: str = "") -> ProbeResult:
        """Probe ``base_url/path_prefix/access-keys`` until it is healthy.

        Args:
            base_url: Scheme, host and port of the management API
            path_prefix: Secret API prefix (may be empty)

        Returns:
            ProbeResult of the successful attempt

        Raises:
            VerificationError: If every attempt fails
        """
        url = build_probe_url(base_url, path_prefix)
        if self.settle_delay > 0:
            logger.debug(f"Waiting {self.settle_delay}s for the API to initialize")
            self._sleep(self.settle_delay)

        last_status: int | None = None
        last_body: str | None = None
        for attempt in self.policy.attempts():
            logger.info(
                f"Testing management API (attempt {attempt}/{self.policy.max_attempts})"
            )
            try:
                response = self._session.get(
                    url,
                    timeout=(self.connect_timeout, self.timeout),
                    verify=self.verify_tls,
                )
            except RequestException as e:
                last_status, last_body = None, str(e)
                logger.warning(f"Request to {url} failed (attempt {attempt}): {e}")
                continue

            last_status = response.status_code
            last_body = response.text[:_BODY_PREVIEW]
            if response.status_code != 200:
                logger.warning(
                    f"Management API returned HTTP {response.status_code} "
                    f"(attempt {attempt})"
                )
                continue

            body = self._parse_body(response)
            if body is None:
                logger.warning(
                    f"Management API response lacks '{ACCESS_KEYS_MARKER}' "
                    f"(attempt {attempt})"
                )
                continue

            logger.info(f"Management API is functional (HTTP {response.status_code})")
            return ProbeResult(
                url=url,
                attempts=attempt,
                status_code=response.status_code,
                body=body,
            )

        raise VerificationError(url, self.policy.max_attempts, last_status, last_body)

    @staticmethod
    def _parse_body(response: requests.Response) -> dict[str, Any] | None:
        """Return the JSON body if it holds the access-keys marker."""
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict) and ACCESS_KEYS_MARKER in data:
            return data
        return None
