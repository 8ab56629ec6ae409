"""
flyrun — run lifecycle controller

File: src/flyrun/runner.py

Purpose
- Execute checker definitions against input snapshots: set up, launch, supersede
  stale runs, and turn completed output into exactly one report per current run.

What should be included in this file
- ``CheckerRunner``: owns a ``ProcessRegistry`` and a ``CheckerRegistry``.
- Completion watcher tasks that extract, report, and always clean up.

Functional requirements
- ``check`` returns once the process is launched; it never waits for exit.
- Setup, precondition, and launch failures release resources and propagate unchanged.
- A run whose handle is no longer current is logged and never reported.
- Staged files and output buffers are released on every exit path.
- Teardown stops superseded runs that are still alive, not only current ones.

Non-functional requirements
- Launch and the completion "is current" check for one name are serialized by
  that name's lock; names never block each other.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Callable
from dataclasses import replace
from types import TracebackType
from typing import TYPE_CHECKING, Any, Final

import structlog

from flyrun.config import RunnerConfig
from flyrun.definitions import CheckerDefinition, CheckerRegistry, RunContext
from flyrun.extraction import extract
from flyrun.models import InputSource, ReportBatch
from flyrun.observability import run_scope
from flyrun.registry import ProcessRegistry, RunHandle, RunState
from flyrun.transport import InputMode, PreparedInput, deliver, prepare

if TYPE_CHECKING:
    from asyncio.streams import StreamReader

ReportCallback = Callable[[ReportBatch], object]

_READ_CHUNK_SIZE: Final[int] = 65_536


class CheckerRunner:
    """Generic runner executing any ``CheckerDefinition`` with one live process per name."""

    def __init__(
        self,
        config: RunnerConfig | None = None,
        *,
        registry: ProcessRegistry | None = None,
        definitions: CheckerRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = config if config is not None else RunnerConfig()
        self._registry = registry if registry is not None else ProcessRegistry()
        self._definitions = definitions if definitions is not None else CheckerRegistry()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._closed = False
        self._active: set[RunHandle] = set()

    @property
    def config(self) -> RunnerConfig:
        return self._config

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def definitions(self) -> CheckerRegistry:
        return self._definitions

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, definition: CheckerDefinition, *, replace: bool = False) -> CheckerDefinition:
        return self._definitions.register(definition, replace=replace)

    def current(self, name: str) -> RunHandle | None:
        return self._registry.get_current(name)

    def in_flight(self) -> tuple[RunHandle, ...]:
        """Runs whose completion handling has not finished, current or superseded."""

        return tuple(sorted(self._active, key=lambda handle: (handle.name, handle.pid)))

    async def check(
        self,
        checker: str | CheckerDefinition,
        source: InputSource | str,
        report: ReportCallback,
    ) -> RunHandle:
        """
        Start one checker run and return its handle as soon as the process is launched.

        ``report`` is called once with the ``ReportBatch`` if the run is still
        current when the process exits. ``await handle.finished`` waits for
        completion handling and re-raises extraction/report errors.
        """

        if self._closed:
            raise RuntimeError("runner is closed")
        definition = checker if isinstance(checker, CheckerDefinition) else self._definitions.get(checker)
        snapshot = source if isinstance(source, InputSource) else InputSource(source)
        run_id = uuid.uuid4().hex[:12]

        with run_scope(checker=definition.name, run_id=run_id):
            return await self._launch(definition, snapshot, run_id, report)

    async def _launch(
        self,
        definition: CheckerDefinition,
        source: InputSource,
        run_id: str,
        report: ReportCallback,
    ) -> RunHandle:
        name = definition.name
        state = RunState.INITIALIZING
        prepared: PreparedInput | None = None
        handle: RunHandle | None = None

        try:
            prepared = prepare(
                definition.input_mode,
                source,
                temp_root=self._config.temp_root,
                prefix=self._config.temp_prefix,
            )
            base = RunContext(
                name=name,
                source=source,
                run_id=run_id,
                input_mode=definition.input_mode,
                temp_file=prepared.path,
            )
            context = replace(base, bindings=definition.bindings_for(base))

            state = RunState.PRECHECKING
            definition.check_precondition(context)

            state = RunState.LAUNCHING
            argv = definition.build_argv(context)
            async with self._registry.lock(name):
                await self._supersede(name)
                process = await self._spawn(definition, argv)

                handle = RunHandle(name, process, prepared=prepared, run_id=run_id)
                self._registry.set_current(name, handle)
                self._active.add(handle)
                handle.state = RunState.RUNNING
                handle.finished = asyncio.create_task(
                    self._complete(definition, handle, context, report),
                    name=f"flyrun:{name}:{run_id}",
                )
                handle.finished.add_done_callback(_retrieve_failure)
                self._logger.info(
                    "checker_run_launched",
                    pid=process.pid,
                    argv=list(argv),
                    input_mode=definition.input_mode.value,
                )
                try:
                    await deliver(definition.input_mode, process, prepared.payload)
                except Exception:
                    # The watcher sees an obsolete run and releases it.
                    self._registry.discard(name, handle)
                    handle.kill()
                    handle = None
                    raise
        except Exception as exc:
            if handle is None:
                self._logger.info(
                    "checker_run_aborted",
                    state=RunState.ABORTED.value,
                    phase=state.value,
                    error=f"{type(exc).__name__}: {exc}",
                )
            raise
        finally:
            if handle is None and prepared is not None:
                prepared.cleanup()

        return handle

    async def _supersede(self, name: str) -> None:
        previous = self._registry.get_current(name)
        if previous is None or not previous.terminate():
            return
        self._logger.info(
            "checker_run_superseded",
            previous_run_id=previous.run_id,
            previous_pid=previous.pid,
        )
        if self._config.await_superseded_exit:
            await previous.process.wait()

    async def _spawn(
        self,
        definition: CheckerDefinition,
        argv: tuple[str, ...],
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=definition.cwd,
            env=definition.build_env(),
            stdin=(
                asyncio.subprocess.PIPE
                if definition.input_mode is InputMode.PIPE
                else asyncio.subprocess.DEVNULL
            ),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT if definition.merge_stderr else asyncio.subprocess.PIPE,
        )

    async def _complete(
        self,
        definition: CheckerDefinition,
        handle: RunHandle,
        context: RunContext,
        report: ReportCallback,
    ) -> None:
        name = definition.name
        try:
            await _collect_output(handle)
            async with self._registry.lock(name):
                handle.state = RunState.COMPLETING
                if not self._registry.is_current(name, handle):
                    self._logger.warning(
                        "checker_run_obsolete",
                        pid=handle.pid,
                        exit_code=handle.exit_code,
                    )
                    return

                output = handle.output(self._config.encoding)
                if definition.debug or self._config.debug:
                    self._logger.debug(
                        "checker_run_output",
                        exit_code=handle.exit_code,
                        output=output,
                        stderr=handle.stderr(self._config.encoding),
                    )
                try:
                    batch = extract(output, definition.pattern, context)
                    result = report(batch)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    self._logger.exception("checker_run_failed", exit_code=handle.exit_code)
                    raise
                self._logger.info(
                    "checker_run_reported",
                    exit_code=handle.exit_code,
                    diagnostics=len(batch),
                )
        finally:
            handle.release()
            handle.state = RunState.DONE
            self._active.discard(handle)

    async def aclose(self) -> None:
        """Stop all live runs without reporting them and wait for their cleanup."""

        self._closed = True
        for name in self._registry.names():
            async with self._registry.lock(name):
                self._registry.discard(name)

        # Superseded runs may still be alive; they are not in the registry.
        handles = list(self._active)
        for handle in handles:
            handle.terminate()

        tasks = {handle.finished for handle in handles if handle.finished is not None}
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self._config.terminate_grace_seconds)
        for handle in handles:
            if handle.finished in pending:
                handle.kill()
        # Failures were already logged by the watcher that raised them.
        await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> CheckerRunner:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()


def _retrieve_failure(task: asyncio.Task[None]) -> None:
    # Logged by the watcher already; awaiting ``finished`` still re-raises it.
    if not task.cancelled():
        task.exception()


async def _collect_output(handle: RunHandle) -> None:
    process = handle.process
    readers = []
    if process.stdout is not None:
        readers.append(_pump(process.stdout, handle.append_stdout))
    if process.stderr is not None:
        readers.append(_pump(process.stderr, handle.append_stderr))
    await asyncio.gather(*readers)
    await process.wait()


async def _pump(stream: StreamReader, sink: Callable[[bytes], None]) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK_SIZE)
        if not chunk:
            return
        sink(chunk)


__all__ = [
    "CheckerRunner",
    "ReportCallback",
]
