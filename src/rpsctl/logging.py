"""Structured operation logging.

Each CLI command runs inside an :class:`OperationScope`. When the scope closes a
single JSON record is appended to ``operations.jsonl`` and a one-line summary
is mirrored to the human-readable ``rpsctl.log`` (rotated by size).

Logging must never break provisioning: if the log directory cannot be created
or a write fails, the logger disables itself and subsequent operations are
silently dropped.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPERATIONS_LOG = "operations.jsonl"
TEXT_LOG = "rpsctl.log"
TEXT_LOG_MAX_BYTES = 5 * 1024 * 1024
TEXT_LOG_BACKUPS = 5


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for one command invocation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope; timing starts immediately."""
        self._logger = logger
        self.command = command
        self.op_id = uuid.uuid4().hex[:12]
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self._started_at = datetime.now(UTC)
        self._started_monotonic = time.monotonic()

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(dict(context))
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        finished_at = datetime.now(UTC)
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        record: dict[str, object] = {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "started_at": self._started_at.isoformat(),
            "finished_at": finished_at.isoformat(),
            "duration_ms": duration_ms,
            "pid": os.getpid(),
            "steps": list(self.steps),
            "result": self.result
            or {"status": "success", "message": "", "changed": 0, "warnings": [], "errors": []},
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append-only JSONL operation log with a rotating text mirror."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory; disable logging if it is unusable."""
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG
        self._text_log_path = self._logs_dir / TEXT_LOG
        self._enabled = True
        self._text_logger: logging.Logger | None = None
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._text_logger = self._build_text_logger()

    @property
    def operations_log_path(self) -> Path:
        """Return the JSONL log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope and persist it when the block exits.

        Exceptions escaping the block are recorded as errors (unless a result was
        already set) and re-raised.
        """
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__)
            raise
        finally:
            self._write(scope)

    # ------------------------------------------------------------------
    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False
            return
        self._write_text(record)

    def _write_text(self, record: Mapping[str, object]) -> None:
        if self._text_logger is None:
            return
        result = record.get("result")
        status = "unknown"
        message = ""
        if isinstance(result, Mapping):
            status = str(result.get("status", "unknown"))
            message = str(result.get("message", ""))
        level = {"success": logging.INFO, "warning": logging.WARNING}.get(status, logging.ERROR)
        self._text_logger.log(
            level,
            "%s op=%s status=%s duration_ms=%s %s",
            record.get("command"),
            record.get("op_id"),
            status,
            record.get("duration_ms"),
            message,
        )

    def _build_text_logger(self) -> logging.Logger | None:
        logger = logging.getLogger(f"rpsctl.operations.{id(self)}")
        logger.setLevel(logging.INFO)
        logger.propagate = False
        try:
            handler = RotatingFileHandler(
                self._text_log_path,
                maxBytes=TEXT_LOG_MAX_BYTES,
                backupCount=TEXT_LOG_BACKUPS,
                encoding="utf-8",
                delay=True,
            )
        except OSError:
            return None
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        logger.handlers = [handler]
        return logger


__all__ = ["OperationScope", "StructuredLogger"]
