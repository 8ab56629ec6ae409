"""
flyrun — input transport

File: src/flyrun/transport.py

Purpose
- Deliver the analysed text to a checker process, either streamed over stdin
  or staged in a temporary file referenced on the command line.

Functional requirements
- Staged directories are released on every exit path; release is idempotent.
- Input is encoded before launch so encoding errors never reach a live process.
- Streamed delivery closes stdin after writing so the tool sees end-of-input.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from contextlib import suppress
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog

if TYPE_CHECKING:
    from types import TracebackType

    from flyrun.models import InputSource

_DEFAULT_STAGED_NAME: Final[str] = "flyrun-input"
_DEFAULT_PREFIX: Final[str] = "flyrun-"

_logger = structlog.get_logger(__name__)


class InputMode(StrEnum):
    """How the analysed text reaches the checker process."""

    PIPE = "pipe"
    FILE = "file"


class PreparedInput:
    """Transport resources acquired before launch; released by ``cleanup``."""

    def __init__(
        self,
        mode: InputMode,
        *,
        payload: bytes = b"",
        directory: Path | None = None,
        path: Path | None = None,
    ) -> None:
        self.mode = mode
        self.payload = payload
        self.directory = directory
        self.path = path
        self._released = directory is None

    @property
    def released(self) -> bool:
        return self._released

    def cleanup(self) -> None:
        """Remove the staged directory; repeated calls are no-ops."""

        if self._released:
            return
        self._released = True
        if self.directory is not None:
            shutil.rmtree(self.directory, ignore_errors=True)

    def __enter__(self) -> PreparedInput:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.cleanup()

    def __repr__(self) -> str:
        return f"PreparedInput(mode={self.mode.value!r}, path={self.path!s})"


def coerce_input_mode(value: InputMode | str) -> InputMode:
    if isinstance(value, InputMode):
        return value
    if not isinstance(value, str):
        raise ValueError(f"input_mode: expected string, got {type(value).__name__}")
    try:
        return InputMode(value.strip().lower())
    except ValueError:
        allowed = ", ".join(item.value for item in InputMode)
        raise ValueError(
            f"input_mode: invalid value {value!r}; expected one of: {allowed}"
        ) from None


def staged_file_name(source: InputSource) -> str:
    """File name for the staged copy, taken from the document name when present."""

    if source.name:
        candidate = Path(source.name.replace("\\", "/")).name
        if candidate and candidate not in {".", ".."}:
            return candidate
    return _DEFAULT_STAGED_NAME


def prepare(
    mode: InputMode | str,
    source: InputSource,
    *,
    temp_root: str | Path | None = None,
    prefix: str = _DEFAULT_PREFIX,
) -> PreparedInput:
    """Acquire transport resources for one run."""

    resolved = coerce_input_mode(mode)
    payload = source.encode()
    if resolved is InputMode.PIPE:
        return PreparedInput(resolved, payload=payload)

    directory = Path(
        tempfile.mkdtemp(prefix=prefix, dir=str(temp_root) if temp_root is not None else None)
    )
    path = directory / staged_file_name(source)
    prepared = PreparedInput(resolved, payload=payload, directory=directory, path=path)
    try:
        path.write_bytes(payload)
    except Exception:
        prepared.cleanup()
        raise
    return prepared


async def deliver(
    mode: InputMode | str,
    process: asyncio.subprocess.Process,
    payload: bytes,
) -> None:
    """Stream the encoded ``payload`` to ``process`` stdin for pipe mode; no-op otherwise."""

    if coerce_input_mode(mode) is not InputMode.PIPE:
        return
    stdin = process.stdin
    if stdin is None:
        raise ValueError("process: stdin must be a pipe for streamed input")

    try:
        stdin.write(payload)
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as exc:
        # Tool exited before reading all input; completion still handles the run.
        _logger.debug("checker_stdin_closed_early", pid=process.pid, error=str(exc))
    finally:
        with suppress(BrokenPipeError, ConnectionResetError):
            stdin.close()
            await stdin.wait_closed()


__all__ = [
    "InputMode",
    "PreparedInput",
    "coerce_input_mode",
    "deliver",
    "prepare",
    "staged_file_name",
]
