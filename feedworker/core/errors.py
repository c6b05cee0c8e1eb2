"""Rust-style error display for feedworker startup and validation errors.

Only construction/configuration problems are raised as exceptions. Store
operations return ``StoreResult`` values (see ``brokers/result_types.py``)
and job failures are plain ``JobFailure`` values.
"""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

# Used by _find_user_frame to tell library frames from user code.
_FEEDWORKER_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for startup/validation errors.

    - E100-E199: worker construction
    - E200-E299: config/store
    - E300-E399: CLI
    """

    # Worker construction (E100-E199)
    WORKER_INVALID_HANDLER = 'E100'
    WORKER_INVALID_QUEUE = 'E101'

    # Config/store (E200-E299)
    STORE_INVALID_URL = 'E200'
    CONFIG_INVALID_RESILIENCE = 'E201'
    CONFIG_INVALID_FEED = 'E202'

    # CLI (E300-E399)
    CLI_INVALID_ARGS = 'E300'
    CLI_INVALID_LOCATOR = 'E301'


class _Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('FEEDWORKER_FORCE_COLOR'):
        return True
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    return _env_flag('FEEDWORKER_VERBOSE')


def _should_use_plain_errors() -> bool:
    return _env_flag('FEEDWORKER_PLAIN_ERRORS')


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    @classmethod
    def from_function(cls, fn: Callable[..., Any]) -> SourceLocation | None:
        """Location of a function's definition, or None for builtins and mocks."""
        code = getattr(fn, '__code__', None)
        if code is None:
            return None
        return cls(file=code.co_filename, line=code.co_firstlineno)

    def get_source_line(self) -> str | None:
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


@dataclass
class FeedworkerError(Exception):
    """Base exception for feedworker startup/validation errors."""

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> FeedworkerError:
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> FeedworkerError:
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        code_part = f'[{self.code.value}]' if self.code else ''
        lines: list[str] = ['', f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}']

        if self.location:
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )
            source_line = self.location.get_source_line()
            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                stripped = source_line.lstrip()
                underline = ' ' * (len(source_line) - len(stripped)) + '^' * len(stripped)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                lines.append(f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}')

        for note in self.notes:
            first, *rest = note.split('\n')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {first}')
            lines.extend(f'          {extra}' for extra in rest)

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            lines.extend(f'        {help_line}' for help_line in self.help_text.split('\n'))

        return '\n'.join(lines)

    def __str__(self) -> str:
        # Plain text: safe for log files and JSON.
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _feedworker_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    if _should_use_plain_errors() or not isinstance(exc_value, FeedworkerError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _should_show_verbose():
        c = _Colors if _should_use_colors() else _NoColors
        print(file=sys.stderr)
        print(f'{c.DIM}Full traceback (FEEDWORKER_VERBOSE=1):{c.RESET}', file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for rust-style error display."""
    sys.excepthook = _feedworker_excepthook


def uninstall_error_handler() -> None:
    sys.excepthook = _original_excepthook


@dataclass
class ConfigurationError(FeedworkerError):
    """Raised when store/worker configuration is invalid."""

    pass


@dataclass
class HandlerDefinitionError(FeedworkerError):
    """Raised when a job handler cannot be used by a worker."""

    pass


class ValidationReport:
    """Collects errors raised while validating one config section."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[FeedworkerError] = []

    def add(self, error: FeedworkerError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors
        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(FeedworkerError):
    """Wraps a ValidationReport holding two or more errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Location is per-error in the report
        super(FeedworkerError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise nothing for 0 errors, the error itself for 1, a wrapper for 2+."""
    match len(report.errors):
        case 0:
            return
        case 1:
            raise report.errors[0]
        case count:
            raise MultipleValidationErrors(
                message=f'aborting due to {count} previous errors',
                report=report,
            )


def _find_user_frame() -> Any | None:
    """Walk up the stack to the first frame outside feedworker and site-packages."""
    frame = inspect.currentframe()
    while frame is not None:
        filename = frame.f_code.co_filename
        if (
            not filename.startswith('<')
            and not filename.startswith(_FEEDWORKER_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame
        frame = frame.f_back
    return None


def handler_definition_error(
    message: str,
    *,
    handler: Any = None,
    notes: list[str] | None = None,
    help_text: str | None = None,
) -> HandlerDefinitionError:
    """Build a HandlerDefinitionError pointing at the handler when it has source."""
    location = None
    if callable(handler):
        location = SourceLocation.from_function(handler)
    return HandlerDefinitionError(
        message=message,
        code=ErrorCode.WORKER_INVALID_HANDLER,
        location=location,
        notes=notes or [],
        help_text=help_text,
    )
