from __future__ import annotations

import asyncio
import gc
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pytest

from flyrun.config import RunnerConfig
from flyrun.definitions import CheckerDefinition, RunContext
from flyrun.extraction import DiagnosticFields, DiagnosticPattern, ExtractionError, line_mapper
from flyrun.models import InputSource, ReportBatch, Severity
from flyrun.registry import ProcessRegistry, RunHandle, RunState
from flyrun.runner import CheckerRunner
from flyrun.transport import InputMode

if TYPE_CHECKING:
    from pathlib import Path

# Emits "<line>: <label>: <text>" for every input line mentioning a label.
_CHECKER_SCRIPT = """
import sys, time
if len(sys.argv) > 1:
    with open(sys.argv[1], encoding="utf-8") as handle:
        text = handle.read()
else:
    text = sys.stdin.read()
if "slow" in text:
    time.sleep(30)
if "stderr" in text:
    print("1: error: from stderr", file=sys.stderr, flush=True)
for number, line in enumerate(text.splitlines(), 1):
    for label in ("error", "warning", "ignore"):
        if label in line:
            print(f"{number}: {label}: {line.strip()}", flush=True)
"""

_LABELS: dict[str, Severity | None] = {
    "error": Severity.ERROR,
    "warning": Severity.WARNING,
    "ignore": None,
}
_PATTERN = DiagnosticPattern(
    r"^(?P<line>\d+): (?P<severity>\w+): (?P<message>.+)$",
    line_mapper(severity=_LABELS),
)
_TIMEOUT_SECONDS = 20.0

# Ignores SIGTERM and signals readiness through the marker file in argv[1].
_STUBBORN_SCRIPT = """
import pathlib, signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
pathlib.Path(sys.argv[1]).write_text("ready", encoding="utf-8")
time.sleep(30)
"""


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, str, dict[str, object]]] = field(default_factory=list)

    def debug(self, event: str, **kwargs: object) -> None:
        self.events.append(("debug", event, dict(kwargs)))

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append(("info", event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append(("warning", event, dict(kwargs)))

    def exception(self, event: str, **kwargs: object) -> None:
        self.events.append(("exception", event, dict(kwargs)))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


@dataclass(slots=True)
class ReportSink:
    batches: list[ReportBatch] = field(default_factory=list)

    def __call__(self, batch: ReportBatch) -> None:
        self.batches.append(batch)


class OrderRecordingRegistry(ProcessRegistry):
    """Captures whether the previous run was already told to stop when a new one registers."""

    def __init__(self) -> None:
        super().__init__()
        self.previous_terminated: list[bool | None] = []

    def set_current(self, name: str, handle: RunHandle) -> None:
        previous = self.get_current(name)
        self.previous_terminated.append(None if previous is None else previous.termination_requested)
        super().set_current(name, handle)


def _pipe_definition(name: str = "lint", **kwargs: object) -> CheckerDefinition:
    params: dict[str, object] = {
        "name": name,
        "command": lambda context: (sys.executable, "-c", _CHECKER_SCRIPT),
        "pattern": _PATTERN,
    }
    params.update(kwargs)
    return CheckerDefinition(**params)  # type: ignore[arg-type]


def _file_definition(name: str = "lint", **kwargs: object) -> CheckerDefinition:
    return _pipe_definition(
        name,
        command=lambda context: (sys.executable, "-c", _CHECKER_SCRIPT, context.temp_file),
        input_mode=InputMode.FILE,
        **kwargs,
    )


async def _finish(*handles: RunHandle) -> None:
    tasks = [handle.finished for handle in handles if handle.finished is not None]
    await asyncio.wait_for(asyncio.gather(*tasks), timeout=_TIMEOUT_SECONDS)


async def _until_finished(handle: RunHandle) -> None:
    async def poll() -> None:
        while handle.finished is None or not handle.finished.done():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=_TIMEOUT_SECONDS)


async def _until_exists(path: Path) -> None:
    async def poll() -> None:
        while not path.exists():
            await asyncio.sleep(0.05)

    await asyncio.wait_for(poll(), timeout=_TIMEOUT_SECONDS)


@pytest.mark.integration
async def test_pipe_mode_reports_once_in_output_order(tmp_path: Path) -> None:
    logger = RecordingLogger()
    runner = CheckerRunner(RunnerConfig(temp_root=str(tmp_path)), logger=logger)
    runner.register(_pipe_definition())
    source = InputSource("x = 1\n  warning there\nignore me\nerror here\n")
    sink = ReportSink()

    handle = await runner.check("lint", source, sink)
    await _finish(handle)

    assert len(sink.batches) == 1
    (batch,) = sink.batches
    assert [(item.severity, item.message) for item in batch] == [
        (Severity.WARNING, "warning there"),
        (Severity.ERROR, "error here"),
    ]
    assert batch[0].span == source.line_region(2)
    assert {item.checker for item in batch} == {"lint"}
    assert handle.state is RunState.DONE
    assert handle.exit_code == 0
    assert runner.current("lint") is handle
    assert "checker_run_reported" in logger.names()


@pytest.mark.integration
async def test_output_without_matches_reports_empty_batch() -> None:
    runner = CheckerRunner(logger=RecordingLogger())
    sink = ReportSink()

    handle = await runner.check(_pipe_definition(), "all clean\n", sink)
    await _finish(handle)

    assert sink.batches == [()]


@pytest.mark.integration
async def test_file_mode_stages_named_copy_and_removes_it(tmp_path: Path) -> None:
    staged: list[Path] = []

    def command(context: RunContext) -> tuple[object, ...]:
        assert context.temp_file is not None
        staged.append(context.temp_file)
        return (sys.executable, "-c", _CHECKER_SCRIPT, context.temp_file)

    runner = CheckerRunner(RunnerConfig(temp_root=str(tmp_path)), logger=RecordingLogger())
    definition = _pipe_definition(command=command, input_mode=InputMode.FILE)
    sink = ReportSink()

    handle = await runner.check(definition, InputSource("error in file\n", name="src/main.py"), sink)
    assert staged[0].name == "main.py"
    assert staged[0].parent.parent == tmp_path
    await _finish(handle)

    assert [item.message for item in sink.batches[0]] == ["error in file"]
    assert not staged[0].exists()
    assert list(tmp_path.iterdir()) == []


@pytest.mark.integration
async def test_async_report_callback_is_awaited() -> None:
    received: list[ReportBatch] = []

    async def report(batch: ReportBatch) -> None:
        await asyncio.sleep(0)
        received.append(batch)

    runner = CheckerRunner(logger=RecordingLogger())
    handle = await runner.check(_pipe_definition(), "error once\n", report)
    await _finish(handle)

    assert len(received) == 1
    assert received[0][0].message == "error once"


@pytest.mark.integration
async def test_stderr_is_scanned_only_when_merged() -> None:
    runner = CheckerRunner(logger=RecordingLogger())
    merged = ReportSink()
    separate = ReportSink()

    first = await runner.check(_pipe_definition("merged"), "stderr\n", merged)
    second = await runner.check(
        _pipe_definition("separate", merge_stderr=False), "stderr\n", separate
    )
    await _finish(first, second)

    assert [item.message for item in merged.batches[0]] == ["from stderr"]
    assert separate.batches == [()]


@pytest.mark.integration
async def test_extraction_failure_surfaces_on_finished_and_cleans_up(tmp_path: Path) -> None:
    def bad_mapper(match: object, context: RunContext) -> DiagnosticFields:
        return DiagnosticFields(0, 1, "catastrophic", "boom")

    logger = RecordingLogger()
    runner = CheckerRunner(RunnerConfig(temp_root=str(tmp_path)), logger=logger)
    definition = _file_definition(pattern=DiagnosticPattern(r"^.+$", bad_mapper))
    sink = ReportSink()

    handle = await runner.check(definition, "error\n", sink)
    with pytest.raises(ExtractionError, match="unsupported value"):
        await asyncio.wait_for(handle.finished, timeout=_TIMEOUT_SECONDS)  # type: ignore[arg-type]

    assert sink.batches == []
    assert list(tmp_path.iterdir()) == []
    assert handle.state is RunState.DONE
    assert "checker_run_failed" in logger.names()


@pytest.mark.integration
async def test_new_run_supersedes_previous_and_only_latest_reports(tmp_path: Path) -> None:
    logger = RecordingLogger()
    registry = OrderRecordingRegistry()
    runner = CheckerRunner(
        RunnerConfig(temp_root=str(tmp_path)), registry=registry, logger=logger
    )
    runner.register(_file_definition())
    stale = ReportSink()
    fresh = ReportSink()

    first = await runner.check("lint", "slow\nerror one\n", stale)
    second = await runner.check("lint", "error two\n", fresh)

    assert registry.previous_terminated == [None, True]
    assert first.termination_requested
    assert runner.current("lint") is second
    await _finish(first, second)

    assert stale.batches == []
    assert [item.message for item in fresh.batches[0]] == ["error two"]
    assert first.state is RunState.DONE
    assert first.exit_code not in (None, 0)
    assert ("warning", "checker_run_obsolete") in [
        (level, event) for level, event, _ in logger.events
    ]
    names = logger.names()
    assert names.index("checker_run_superseded") < names.index("checker_run_launched", 1)
    assert list(tmp_path.iterdir()) == []


@pytest.mark.integration
async def test_await_superseded_exit_waits_for_previous_process() -> None:
    runner = CheckerRunner(RunnerConfig(await_superseded_exit=True), logger=RecordingLogger())
    runner.register(_pipe_definition())

    first = await runner.check("lint", "slow\n", ReportSink())
    second = await runner.check("lint", "warning\n", ReportSink())

    assert first.exit_code is not None
    await _finish(first, second)


@pytest.mark.integration
async def test_distinct_names_do_not_interfere() -> None:
    runner = CheckerRunner(logger=RecordingLogger())
    slow_sink = ReportSink()
    quick_sink = ReportSink()

    slow = await runner.check(_pipe_definition("lint"), "slow\nerror\n", slow_sink)
    quick = await runner.check(_pipe_definition("types"), "error\n", quick_sink)
    await _finish(quick)

    assert len(quick_sink.batches) == 1
    assert not slow.termination_requested
    assert slow.is_alive()
    assert runner.registry.names() == ("lint", "types")

    await runner.aclose()
    assert slow_sink.batches == []


@pytest.mark.integration
async def test_aclose_stops_live_runs_without_reporting(tmp_path: Path) -> None:
    sink = ReportSink()
    async with CheckerRunner(
        RunnerConfig(temp_root=str(tmp_path), terminate_grace_seconds=5.0),
        logger=RecordingLogger(),
    ) as runner:
        handle = await runner.check(_file_definition(), "slow\nerror\n", sink)

    assert runner.closed
    assert handle.state is RunState.DONE
    assert not handle.is_alive()
    assert len(runner.registry) == 0
    assert sink.batches == []
    assert list(tmp_path.iterdir()) == []


@pytest.mark.integration
async def test_delivery_failure_unregisters_run_and_never_reports(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def refuse(mode: object, process: object, payload: bytes) -> None:
        raise ConnectionAbortedError("stdin refused")

    monkeypatch.setattr("flyrun.runner.deliver", refuse)
    logger = RecordingLogger()
    runner = CheckerRunner(RunnerConfig(temp_root=str(tmp_path)), logger=logger)
    sink = ReportSink()

    with pytest.raises(ConnectionAbortedError):
        await runner.check(_file_definition(), "error late\n", sink)

    assert runner.current("lint") is None
    await runner.aclose()

    assert sink.batches == []
    assert runner.in_flight() == ()
    assert list(tmp_path.iterdir()) == []
    assert "checker_run_obsolete" in logger.names()
    aborted = [fields for _, name, fields in logger.events if name == "checker_run_aborted"]
    assert aborted[0]["phase"] == "launching"


@pytest.mark.integration
@pytest.mark.skipif(sys.platform == "win32", reason="SIGTERM cannot be ignored on Windows")
async def test_aclose_kills_superseded_run_that_ignores_termination(tmp_path: Path) -> None:
    marker = tmp_path / "ready"
    stubborn = _pipe_definition(
        command=lambda context: (sys.executable, "-c", _STUBBORN_SCRIPT, str(marker)),
    )
    runner = CheckerRunner(RunnerConfig(terminate_grace_seconds=0.5), logger=RecordingLogger())
    stale = ReportSink()
    fresh = ReportSink()

    first = await runner.check(stubborn, "error one\n", stale)
    await _until_exists(marker)
    second = await runner.check(_pipe_definition(), "error two\n", fresh)
    await _finish(second)
    await asyncio.sleep(0.2)

    assert first.termination_requested
    assert first.is_alive()
    assert runner.in_flight() == (first,)

    await runner.aclose()

    assert not first.is_alive()
    assert first.finished is not None and first.finished.done()
    assert first.state is RunState.DONE
    assert runner.in_flight() == ()
    assert stale.batches == []
    assert [item.message for item in fresh.batches[0]] == ["error two"]


@pytest.mark.integration
async def test_unawaited_report_failure_is_not_left_unretrieved() -> None:
    loop = asyncio.get_running_loop()
    unhandled: list[dict[str, object]] = []
    previous = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: unhandled.append(context))
    logger = RecordingLogger()

    def broken_report(batch: ReportBatch) -> None:
        raise RuntimeError("consumer broke")

    try:
        runner = CheckerRunner(logger=logger)
        handle = await runner.check(_pipe_definition(), "error\n", broken_report)
        await _until_finished(handle)
        await asyncio.sleep(0.05)
        runner.registry.discard("lint")
        del handle
        gc.collect()
    finally:
        loop.set_exception_handler(previous)

    assert unhandled == []
    assert "checker_run_failed" in logger.names()
