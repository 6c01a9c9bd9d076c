"""Versioned JSON state files shared by the persistent stores."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

import anyio

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class JsonStateStore(Generic[T]):
    """A dataclass state persisted as JSON, reloaded when the file changes.

    Subclasses take ``self._lock``, call ``_reload_locked_if_needed()`` before
    reading and ``_save_locked()`` after mutating ``self._state``.
    """

    def __init__(
        self,
        path: Path,
        *,
        version: int,
        state_type: type[T],
        state_factory: Callable[[], T],
        log_prefix: str,
    ) -> None:
        self._path = path
        self._version = version
        self._state_type = state_type
        self._state_factory = state_factory
        self._log_prefix = log_prefix
        self._lock = anyio.Lock()
        self._loaded = False
        self._mtime_ns: int | None = None
        self._state: T = state_factory()

    @property
    def path(self) -> Path:
        return self._path

    def _stat_mtime_ns(self) -> int | None:
        try:
            return self._path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def _reload_locked_if_needed(self) -> None:
        mtime_ns = self._stat_mtime_ns()
        if self._loaded and mtime_ns == self._mtime_ns:
            return
        self._load_locked()

    def _load_locked(self) -> None:
        self._loaded = True
        self._mtime_ns = self._stat_mtime_ns()
        if self._mtime_ns is None:
            self._state = self._state_factory()
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(
                f"{self._log_prefix}.load_failed",
                path=str(self._path),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            self._state = self._state_factory()
            return
        if not isinstance(payload, dict) or payload.get("version") != self._version:
            logger.warning(
                f"{self._log_prefix}.version_mismatch",
                path=str(self._path),
                version=payload.get("version") if isinstance(payload, dict) else None,
                expected=self._version,
            )
            self._state = self._state_factory()
            return
        self._state = self._decode(payload)

    def _decode(self, payload: dict[str, Any]) -> T:
        known = {f.name for f in fields(self._state_type)}  # type: ignore[arg-type]
        return self._state_type(**{k: v for k, v in payload.items() if k in known})

    def _save_locked(self) -> None:
        payload = asdict(self._state)  # type: ignore[call-overload]
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        tmp_path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True),
            encoding="utf-8",
        )
        os.replace(tmp_path, self._path)
        self._mtime_ns = self._stat_mtime_ns()
