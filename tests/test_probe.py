"""Tests for the Redis liveness prober."""
from __future__ import annotations

from collections.abc import Iterator

import pytest
import redis

from rpsctl.providers.probe import RedisLivenessProber


class FakeClient:
    """Minimal ``redis.Redis`` double that replays scripted PING outcomes."""

    def __init__(
        self, outcomes: Iterator[object], calls: list[dict[str, object]], **kwargs: object
    ) -> None:
        """Record the connection arguments and keep the shared outcome script."""
        calls.append(kwargs)
        self._outcomes = outcomes
        self.closed = False
        self.callbacks: dict[str, object] = {}

    def set_response_callback(self, command: str, callback: object) -> None:
        """Remember the callback installed for *command*."""
        self.callbacks[command] = callback

    def execute_command(self, *args: object) -> object:
        """Return or raise the next scripted outcome."""
        assert args == ("PING",)
        outcome = next(self._outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        """Mark the client closed."""
        self.closed = True


def _prober(
    outcomes: list[object],
    *,
    attempts: int = 3,
) -> tuple[RedisLivenessProber, list[dict[str, object]], list[float]]:
    calls: list[dict[str, object]] = []
    sleeps: list[float] = []
    script = iter(outcomes)

    def factory(**kwargs: object) -> FakeClient:
        return FakeClient(script, calls, **kwargs)

    prober = RedisLivenessProber(
        attempts=attempts,
        interval=0.5,
        timeout=1.5,
        sleep=sleeps.append,
        client_factory=factory,  # type: ignore[arg-type]
    )
    return prober, calls, sleeps


def test_probe_succeeds_first_time() -> None:
    """A PONG on the first attempt returns immediately."""
    prober, calls, sleeps = _prober(["PONG"])

    result = prober.probe(7000, "secret")

    assert result.ok is True
    assert result.attempts == 1
    assert result.reply == "PONG"
    assert sleeps == []
    assert calls == [
        {
            "host": "127.0.0.1",
            "port": 7000,
            "password": "secret",
            "socket_timeout": 1.5,
            "socket_connect_timeout": 1.5,
            "decode_responses": True,
        }
    ]


def test_probe_retries_until_reply() -> None:
    """Connection errors are retried with the configured interval."""
    prober, calls, sleeps = _prober(
        [redis.ConnectionError("refused"), redis.AuthenticationError("denied"), "PONG"]
    )

    result = prober.probe(7000, "secret")

    assert result.ok is True
    assert result.attempts == 3
    assert sleeps == [0.5, 0.5]
    assert len(calls) == 3


def test_probe_gives_up_after_bounded_attempts() -> None:
    """The last error is reported once every attempt has failed."""
    prober, _calls, sleeps = _prober(
        [redis.ConnectionError("refused"), redis.TimeoutError("slow")],
        attempts=2,
    )

    result = prober.probe(7000, "secret")

    assert result.ok is False
    assert result.attempts == 2
    assert result.error == "slow"
    assert sleeps == [0.5]


def test_unexpected_reply_is_a_failure() -> None:
    """Anything but the expected reply counts as a failed attempt."""
    prober, _calls, _sleeps = _prober(["LOADING"], attempts=1)

    result = prober.probe(7000, "secret")

    assert result.ok is False
    assert result.reply == "LOADING"
    assert "unexpected reply" in (result.error or "")


def test_non_redis_errors_propagate() -> None:
    """Programming errors are not mistaken for a dead instance."""
    prober, _calls, _sleeps = _prober([ValueError("boom")])

    with pytest.raises(ValueError, match="boom"):
        prober.probe(7000, "secret")


def test_result_dict_omits_credential() -> None:
    """The serialised result never carries the password."""
    prober, _calls, _sleeps = _prober(["PONG"])

    payload = prober.probe(7000, "TopSecretCredential").to_dict()

    assert "TopSecretCredential" not in str(payload)
    assert payload["ok"] is True
