"""Unit tests for management API verification."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from outpost.deploy.health import HealthVerifier, build_probe_url
from outpost.deploy.retry import RetryPolicy
from outpost.lib.errors import VerificationError

BASE_URL = "https://203.0.113.7:8081"


def _response(status_code: int = 200, body: Any = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("no json")
        response.text = "Service Unavailable"
    else:
        response.json.return_value = body
        response.text = str(body)
    return response


def _verifier(session: MagicMock, attempts: int = 3, **kwargs: Any) -> HealthVerifier:
    return HealthVerifier(
        policy=RetryPolicy.immediate(attempts), session=session, **kwargs
    )


class TestBuildProbeUrl:
    """Tests for probe URL construction."""

    def test_with_prefix(self) -> None:
        assert (
            build_probe_url(BASE_URL, "Secr3t")
            == "https://203.0.113.7:8081/Secr3t/access-keys"
        )

    def test_without_prefix(self) -> None:
        assert build_probe_url(BASE_URL + "/", "") == f"{BASE_URL}/access-keys"

    def test_prefix_slashes_trimmed(self) -> None:
        assert build_probe_url(BASE_URL, "/abc/") == f"{BASE_URL}/abc/access-keys"


class TestHealthVerifier:
    """Tests for HealthVerifier.verify."""

    def test_healthy_first_attempt(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(200, {"accessKeys": []})

        result = _verifier(session).verify(BASE_URL, "Secr3t")

        assert result.attempts == 1
        assert result.status_code == 200
        assert result.url == f"{BASE_URL}/Secr3t/access-keys"
        session.get.assert_called_once_with(
            f"{BASE_URL}/Secr3t/access-keys", timeout=(5.0, 10.0), verify=False
        )

    def test_recovers_after_failures(self) -> None:
        session = MagicMock()
        session.get.side_effect = [
            requests.ConnectionError("refused"),
            _response(503),
            _response(200, {"accessKeys": [{"id": "0"}]}),
        ]

        result = _verifier(session).verify(BASE_URL, "Secr3t")

        assert result.attempts == 3
        assert result.body == {"accessKeys": [{"id": "0"}]}

    def test_exhausted_raises(self) -> None:
        """Three 503 responses exhaust the default budget."""
        session = MagicMock()
        session.get.return_value = _response(503)

        with pytest.raises(VerificationError) as exc_info:
            _verifier(session).verify(BASE_URL, "Secr3t")

        assert session.get.call_count == 3
        assert exc_info.value.operation == "verify"
        assert exc_info.value.last_status == 503

    def test_body_without_marker_retried(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(200, {"status": "ok"})

        with pytest.raises(VerificationError):
            _verifier(session, attempts=2).verify(BASE_URL, "")

        assert session.get.call_count == 2

    def test_settle_delay_and_spacing(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(503)
        sleep = MagicMock()
        verifier = HealthVerifier(
            policy=RetryPolicy(max_attempts=3, delay=5.0, sleep=sleep),
            settle_delay=10.0,
            session=session,
            sleep=sleep,
        )

        with pytest.raises(VerificationError):
            verifier.verify(BASE_URL, "abc")

        assert [c.args[0] for c in sleep.call_args_list] == [10.0, 5.0, 5.0]

    def test_tls_verification_passed_through(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(200, {"accessKeys": []})

        _verifier(session, verify_tls=True, connect_timeout=1.0, timeout=2.0).verify(
            BASE_URL
        )

        assert session.get.call_args.kwargs == {"timeout": (1.0, 2.0), "verify": True}
