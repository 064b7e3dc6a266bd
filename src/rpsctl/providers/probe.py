"""Liveness probing for freshly (re)started Redis instances."""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import redis


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of a bounded sequence of probe attempts."""

    ok: bool
    attempts: int
    reply: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "attempts": self.attempts,
            "reply": self.reply,
            "error": self.error,
        }


class LivenessProber(Protocol):
    """Capability interface for checking that an instance answers requests."""

    def probe(self, port: int, credential: str) -> ProbeResult:
        """Probe the instance listening on *port* using *credential*."""
        ...


def _raw_reply(response: object, **_options: object) -> object:
    return response


@dataclass(slots=True)
class RedisLivenessProber:
    """Authenticated ``PING`` against a local instance with bounded retries."""

    host: str = "127.0.0.1"
    attempts: int = 3
    interval: float = 1.0
    timeout: float = 2.0
    expected_reply: str = "PONG"
    sleep: Callable[[float], None] = time.sleep
    client_factory: Callable[..., redis.Redis] = redis.Redis

    def probe(self, port: int, credential: str) -> ProbeResult:
        """Return the first successful reply, or the last error after all attempts."""
        last_error: str | None = None
        reply: str | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                reply = self._ping(port, credential)
            except redis.RedisError as exc:
                last_error = str(exc) or type(exc).__name__
            else:
                if reply == self.expected_reply:
                    return ProbeResult(ok=True, attempts=attempt, reply=reply)
                last_error = f"unexpected reply {reply!r}"
            if attempt < self.attempts:
                self.sleep(self.interval)
        return ProbeResult(ok=False, attempts=self.attempts, reply=reply, error=last_error)

    # ------------------------------------------------------------------
    def _ping(self, port: int, credential: str) -> str:
        client = self.client_factory(
            host=self.host,
            port=port,
            password=credential,
            socket_timeout=self.timeout,
            socket_connect_timeout=self.timeout,
            decode_responses=True,
        )
        try:
            client.set_response_callback("PING", _raw_reply)
            return str(client.execute_command("PING"))
        finally:
            client.close()


__all__ = ["LivenessProber", "ProbeResult", "RedisLivenessProber"]
