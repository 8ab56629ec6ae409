"""
flyrun — process registry

File: src/flyrun/registry.py

Purpose
- Track the in-flight process handle per checker name so stale runs can be
  detected and terminated.

What should be included in this file
- ``RunHandle``: launched process, captured output, liveness, lifecycle state.
- ``ProcessRegistry``: per-name current handle plus per-name launch lock.

Functional requirements
- At most one handle is current per checker name.
- Replacing a handle never terminates the old one; the runner does that.

Non-functional requirements
- Names never share a lock; entries for different names are independent.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import suppress
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from flyrun.transport import PreparedInput


class RunState(StrEnum):
    """Lifecycle states of one checker invocation."""

    INITIALIZING = "initializing"
    PRECHECKING = "prechecking"
    LAUNCHING = "launching"
    RUNNING = "running"
    COMPLETING = "completing"
    DONE = "done"
    ABORTED = "aborted"


class RunHandle:
    """A launched checker process and the output it has produced so far."""

    def __init__(
        self,
        name: str,
        process: asyncio.subprocess.Process,
        *,
        prepared: PreparedInput | None = None,
        run_id: str | None = None,
    ) -> None:
        self.name = name
        self.process = process
        self.prepared = prepared
        self.run_id = run_id if run_id is not None else uuid.uuid4().hex[:12]
        self.state = RunState.LAUNCHING
        self.finished: asyncio.Task[None] | None = None
        self.termination_requested = False
        self._stdout: list[bytes] = []
        self._stderr: list[bytes] = []

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exit_code(self) -> int | None:
        return self.process.returncode

    def is_alive(self) -> bool:
        return self.process.returncode is None

    def terminate(self) -> bool:
        """Request termination; returns ``False`` when the process already exited."""

        if not self.is_alive():
            return False
        self.termination_requested = True
        with suppress(ProcessLookupError):
            self.process.terminate()
        return True

    def kill(self) -> None:
        if self.is_alive():
            with suppress(ProcessLookupError):
                self.process.kill()

    def append_stdout(self, chunk: bytes) -> None:
        self._stdout.append(chunk)

    def append_stderr(self, chunk: bytes) -> None:
        self._stderr.append(chunk)

    def output(self, encoding: str = "utf-8") -> str:
        return _normalize_output_text(b"".join(self._stdout), encoding)

    def stderr(self, encoding: str = "utf-8") -> str:
        return _normalize_output_text(b"".join(self._stderr), encoding)

    def discard_output(self) -> None:
        self._stdout.clear()
        self._stderr.clear()

    def release(self) -> None:
        """Release transport resources and drop buffered output; safe to repeat."""

        if self.prepared is not None:
            self.prepared.cleanup()
        self.discard_output()

    def __repr__(self) -> str:
        return (
            f"RunHandle(name={self.name!r}, run_id={self.run_id!r}, "
            f"pid={self.process.pid}, state={self.state.value!r})"
        )


class ProcessRegistry:
    """Per-checker-name store of the currently in-flight run."""

    def __init__(self) -> None:
        self._current: dict[str, RunHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get_current(self, name: str) -> RunHandle | None:
        return self._current.get(name)

    def set_current(self, name: str, handle: RunHandle) -> None:
        if handle.name != name:
            raise ValueError(f"handle: belongs to {handle.name!r}, not {name!r}")
        self._current[name] = handle

    def is_current(self, name: str, handle: RunHandle) -> bool:
        return self._current.get(name) is handle

    def discard(self, name: str, handle: RunHandle | None = None) -> RunHandle | None:
        """Remove the entry for ``name``; when ``handle`` is given, only if it is current."""

        existing = self._current.get(name)
        if existing is None:
            return None
        if handle is not None and existing is not handle:
            return None
        del self._current[name]
        return existing

    def lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._current))

    def live_handles(self) -> tuple[RunHandle, ...]:
        return tuple(
            self._current[name] for name in sorted(self._current) if self._current[name].is_alive()
        )

    def __contains__(self, name: object) -> bool:
        return name in self._current

    def __len__(self) -> int:
        return len(self._current)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())


def _normalize_output_text(raw: bytes, encoding: str) -> str:
    text = raw.decode(encoding, errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


__all__ = [
    "ProcessRegistry",
    "RunHandle",
    "RunState",
]
