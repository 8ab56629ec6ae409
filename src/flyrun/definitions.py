"""
flyrun — checker definitions

File: src/flyrun/definitions.py

Purpose
- Describe one checker as plain data: how to build its command line, how to
  feed it input, and how to read diagnostics back out of its output.

What should be included in this file
- ``CheckerDefinition`` (the per-checker configuration struct).
- ``RunContext`` handed to setup/precondition/command hooks and mappers.
- ``CheckerRegistry`` keyed by checker name.

Functional requirements
- Invalid definitions fail at construction with ``CheckerDefinitionError``.
- Command builders may return ``os.PathLike`` items (e.g. the staged file).
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, NoReturn, TypeAlias

from flyrun.extraction import DiagnosticPattern
from flyrun.transport import InputMode, coerce_input_mode

if TYPE_CHECKING:
    from flyrun.models import InputSource

_MAX_NAME_LENGTH = 128
_MAX_ARG_LENGTH = 32_768

CommandBuilder: TypeAlias = Callable[["RunContext"], Sequence["str | os.PathLike[str]"]]
SetupHook: TypeAlias = Callable[["RunContext"], "Mapping[str, object] | None"]
Precondition: TypeAlias = Callable[["RunContext"], object]


class CheckerDefinitionError(ValueError):
    """Raised for invalid checker definitions and unknown/duplicate names."""


@dataclass(frozen=True, slots=True)
class RunContext:
    """Everything a hook or mapper may consult about the current invocation."""

    name: str
    source: InputSource
    run_id: str
    input_mode: InputMode = InputMode.PIPE
    bindings: Mapping[str, object] = field(default_factory=dict)
    temp_file: Path | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "bindings", MappingProxyType(dict(self.bindings)))

    @property
    def temp_dir(self) -> Path | None:
        return self.temp_file.parent if self.temp_file is not None else None

    def binding(self, key: str, default: object = None) -> object:
        return self.bindings.get(key, default)

    def __getitem__(self, key: str) -> object:
        return self.bindings[key]


@dataclass(frozen=True, slots=True)
class CheckerDefinition:
    """Configuration for one checker; executed by ``CheckerRunner``."""

    name: str
    command: CommandBuilder
    pattern: DiagnosticPattern
    input_mode: InputMode = InputMode.PIPE
    setup: SetupHook | None = None
    precondition: Precondition | None = None
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    inherit_env: bool = True
    merge_stderr: bool = True
    debug: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", validate_checker_name(self.name))
        if not callable(self.command):
            _fail(f"{self.name}.command", "must be callable")
        if not isinstance(self.pattern, DiagnosticPattern):
            _fail(f"{self.name}.pattern", "must be a DiagnosticPattern")
        try:
            object.__setattr__(self, "input_mode", coerce_input_mode(self.input_mode))
        except ValueError as exc:
            _fail(self.name, str(exc))
        for hook_name in ("setup", "precondition"):
            hook = getattr(self, hook_name)
            if hook is not None and not callable(hook):
                _fail(f"{self.name}.{hook_name}", "must be callable")
        if self.cwd is not None and not isinstance(self.cwd, (str, os.PathLike)):
            _fail(f"{self.name}.cwd", f"expected path, got {type(self.cwd).__name__}")
        if not isinstance(self.env, Mapping):
            _fail(f"{self.name}.env", f"expected mapping, got {type(self.env).__name__}")
        for key, value in self.env.items():
            if not isinstance(key, str) or not isinstance(value, str):
                _fail(f"{self.name}.env", "keys and values must be strings")
        object.__setattr__(self, "env", MappingProxyType(dict(sorted(self.env.items()))))

    def bindings_for(self, context: RunContext) -> dict[str, object]:
        """Evaluate the setup hook against a context that has no bindings yet."""

        if self.setup is None:
            return {}
        produced = self.setup(context)
        if produced is None:
            return {}
        if not isinstance(produced, Mapping):
            _fail(f"{self.name}.setup", f"must return a mapping, got {type(produced).__name__}")
        return dict(produced)

    def check_precondition(self, context: RunContext) -> None:
        if self.precondition is not None:
            self.precondition(context)

    def build_argv(self, context: RunContext) -> tuple[str, ...]:
        raw = self.command(context)
        path = f"{self.name}.command"
        if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes, bytearray)):
            _fail(path, f"expected argument sequence, got {type(raw).__name__}")

        argv: list[str] = []
        for index, item in enumerate(raw):
            if isinstance(item, os.PathLike):
                item = os.fspath(item)
            if not isinstance(item, str):
                _fail(f"{path}[{index}]", f"expected string, got {type(item).__name__}")
            if len(item) > _MAX_ARG_LENGTH:
                _fail(f"{path}[{index}]", f"must be <= {_MAX_ARG_LENGTH} characters")
            argv.append(item)
        if not argv or not argv[0].strip():
            _fail(path, "must name a program")
        return tuple(argv)

    def build_env(self) -> dict[str, str] | None:
        if self.inherit_env:
            if not self.env:
                return None
            env = dict(os.environ)
            env.update(self.env)
            return env
        return dict(self.env)


class CheckerRegistry:
    """Checker definitions keyed by name."""

    def __init__(self) -> None:
        self._definitions: dict[str, CheckerDefinition] = {}

    def register(self, definition: CheckerDefinition, *, replace: bool = False) -> CheckerDefinition:
        if not isinstance(definition, CheckerDefinition):
            _fail("definition", f"expected CheckerDefinition, got {type(definition).__name__}")
        existing = self._definitions.get(definition.name)
        if existing is not None and not replace and existing is not definition:
            _fail("name", f"checker {definition.name!r} is already registered")
        self._definitions[definition.name] = definition
        return definition

    def unregister(self, name: str) -> CheckerDefinition:
        definition = self.get(name)
        del self._definitions[definition.name]
        return definition

    def contains(self, name: str) -> bool:
        return validate_checker_name(name) in self._definitions

    def get(self, name: str) -> CheckerDefinition:
        normalized = validate_checker_name(name)
        definition = self._definitions.get(normalized)
        if definition is None:
            known = ", ".join(self.registered_names())
            _fail("name", f"unknown checker {normalized!r}; registered: [{known}]")
        return definition

    def registered_names(self) -> tuple[str, ...]:
        return tuple(sorted(self._definitions))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip() in self._definitions

    def __iter__(self) -> Iterator[CheckerDefinition]:
        return iter(self._definitions[name] for name in self.registered_names())

    def __len__(self) -> int:
        return len(self._definitions)


def validate_checker_name(value: object) -> str:
    if not isinstance(value, str):
        _fail("name", f"expected string, got {type(value).__name__}")
    parsed = value.strip()
    if not parsed:
        _fail("name", "must not be empty")
    if len(parsed) > _MAX_NAME_LENGTH:
        _fail("name", f"must be <= {_MAX_NAME_LENGTH} characters")
    return parsed


def _fail(path: str, message: str) -> NoReturn:
    raise CheckerDefinitionError(f"{path}: {message}")


__all__ = [
    "CheckerDefinition",
    "CheckerDefinitionError",
    "CheckerRegistry",
    "CommandBuilder",
    "Precondition",
    "RunContext",
    "SetupHook",
    "validate_checker_name",
]
