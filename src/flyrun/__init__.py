"""
flyrun — asynchronous runtime for external checker integrations.

File: src/flyrun/__init__.py

Purpose
- Package root. Launches external analysis tools on a text snapshot and turns
  their output into ordered diagnostic reports, one live process per checker.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from flyrun.config import ConfigLoadError, RunnerConfig, load_config
from flyrun.definitions import (
    CheckerDefinition,
    CheckerDefinitionError,
    CheckerRegistry,
    RunContext,
)
from flyrun.extraction import (
    DiagnosticFields,
    DiagnosticPattern,
    ExtractionError,
    MatchRecord,
    extract,
    line_mapper,
    severity_from_labels,
)
from flyrun.models import Diagnostic, InputSource, ReportBatch, Severity
from flyrun.observability import configure_logging
from flyrun.registry import ProcessRegistry, RunHandle, RunState
from flyrun.runner import CheckerRunner, ReportCallback
from flyrun.transport import InputMode

__version__ = "0.1.0"

__all__ = [
    "CheckerDefinition",
    "CheckerDefinitionError",
    "CheckerRegistry",
    "CheckerRunner",
    "ConfigLoadError",
    "Diagnostic",
    "DiagnosticFields",
    "DiagnosticPattern",
    "ExtractionError",
    "InputMode",
    "InputSource",
    "MatchRecord",
    "ProcessRegistry",
    "ReportBatch",
    "ReportCallback",
    "RunContext",
    "RunHandle",
    "RunState",
    "RunnerConfig",
    "Severity",
    "__version__",
    "configure_logging",
    "extract",
    "line_mapper",
    "load_config",
    "severity_from_labels",
]
