"""Error records and conversion of errors into trace exception documents."""

from __future__ import annotations

import inspect
import os
import secrets
import sys
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import FrameType
from typing import Any, Iterable, Iterator, Optional, Sequence

MAX_FRAME_COUNT = 32
DEFAULT_FRAME_COUNT = 32


class XRayError(Exception):
    """An error carrying a type ("error" or "panic"), a message and raw stack frames."""

    def __init__(self, type_: str, message: str, stack: Sequence[traceback.FrameSummary]) -> None:
        super().__init__(message)
        self.type = type_
        self.message = message
        self.stack = list(stack)

    def __str__(self) -> str:
        return self.message

    def stack_trace(self) -> list[traceback.FrameSummary]:
        """Return the captured frames, innermost first."""
        return self.stack


@dataclass
class StackFrame:
    """One frame of an exception document's stack."""

    path: str = ""
    line: int = 0
    label: str = ""


def _frame_dict(frame: StackFrame) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if frame.path:
        out["path"] = frame.path
    if frame.line:
        out["line"] = frame.line
    if frame.label:
        out["label"] = frame.label
    return out


@dataclass
class ExceptionDocument:
    """The shape of an exception as recorded in a segment."""

    id: str = ""
    type: str = ""
    message: str = ""
    stack: list[StackFrame] = field(default_factory=list)
    remote: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready mapping, leaving out empty fields."""
        out: dict[str, Any] = {}
        if self.id:
            out["id"] = self.id
        if self.type:
            out["type"] = self.type
        if self.message:
            out["message"] = self.message
        if self.stack:
            out["stack"] = [_frame_dict(f) for f in self.stack]
        if self.remote:
            out["remote"] = True
        return out


class MultiError(Exception):
    """Several errors reported as one."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__(*self.errors)

    def __iter__(self) -> Iterator[BaseException]:
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def __str__(self) -> str:
        lines = [f"{len(self.errors)} errors occurred:\n"]
        lines.extend(f"* {err}\n" for err in self.errors)
        return "".join(lines)


def _trim_path(path: str) -> str:
    """Make ``path`` relative to the working directory when it lies beneath it."""
    root = os.path.join(os.getcwd(), "")
    return path[len(root):] if path.startswith(root) else path


def convert_stack(frames: Iterable[traceback.FrameSummary]) -> list[StackFrame]:
    """Convert raw frames into :class:`StackFrame` records."""
    return [
        StackFrame(path=_trim_path(f.filename), line=f.lineno or 0, label=f.name)
        for f in frames
    ]


def _format(format_string: str, args: tuple) -> str:
    return format_string % args if args else format_string


def _type_name(err: BaseException) -> str:
    cls = type(err)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def _caller_of(frame: Optional[FrameType]) -> Optional[FrameType]:
    return frame.f_back if frame is not None else None


class FormattingStrategy(ABC):
    """Formats errors and exceptions for recording in segments."""

    @abstractmethod
    def error(self, message: str) -> XRayError:
        """Build an error of type "error"."""

    @abstractmethod
    def errorf(self, format_string: str, *args: Any) -> XRayError:
        """Build an error of type "error" from a format string."""

    @abstractmethod
    def panic(self, message: str) -> XRayError:
        """Build an error of type "panic"."""

    @abstractmethod
    def panicf(self, format_string: str, *args: Any) -> XRayError:
        """Build an error of type "panic" from a format string."""

    @abstractmethod
    def exception_from_error(self, err: BaseException) -> ExceptionDocument:
        """Describe ``err`` as an exception document."""


class DefaultFormattingStrategy(FormattingStrategy):
    """Default formatting with a configurable number of captured frames."""

    def __init__(self, frame_count: int = DEFAULT_FRAME_COUNT) -> None:
        if frame_count > MAX_FRAME_COUNT or frame_count < 0:
            raise ValueError("frameCount must be a non-negative integer and less than 32")
        self.frame_count = frame_count

    def _capture(self, frame: Optional[FrameType]) -> list[traceback.FrameSummary]:
        if frame is None:
            return []
        summary = traceback.StackSummary.extract(
            traceback.walk_stack(frame), limit=self.frame_count, lookup_lines=False
        )
        return list(summary)

    def _panic_stack(self, caller: Optional[FrameType]) -> list[traceback.FrameSummary]:
        exc = sys.exc_info()[1]
        tb = exc.__traceback__ if exc is not None else None
        if tb is None:
            return self._capture(caller)
        inner = list(reversed(traceback.extract_tb(tb)))
        outer = self._capture(tb.tb_frame.f_back)
        return (inner + outer)[: self.frame_count]

    def error(self, message: str) -> XRayError:
        caller = _caller_of(inspect.currentframe())
        return XRayError("error", message, self._capture(caller))

    def errorf(self, format_string: str, *args: Any) -> XRayError:
        caller = _caller_of(inspect.currentframe())
        return XRayError("error", _format(format_string, args), self._capture(caller))

    def panic(self, message: str) -> XRayError:
        caller = _caller_of(inspect.currentframe())
        return XRayError("panic", message, self._panic_stack(caller))

    def panicf(self, format_string: str, *args: Any) -> XRayError:
        caller = _caller_of(inspect.currentframe())
        return XRayError("panic", _format(format_string, args), self._panic_stack(caller))

    def exception_from_error(self, err: BaseException) -> ExceptionDocument:
        request_id = getattr(err, "request_id", None)
        doc = ExceptionDocument(
            id=secrets.token_hex(8),
            type=_type_name(err),
            message=str(err),
            remote=bool(request_id),
        )
        if isinstance(err, XRayError):
            doc.type = err.type

        frames: Optional[list[traceback.FrameSummary]] = None
        stack_trace = getattr(err, "stack_trace", None)
        if callable(stack_trace):
            frames = list(stack_trace())
        elif err.__traceback__ is not None:
            frames = list(reversed(traceback.extract_tb(err.__traceback__)))
        if frames is None:
            frames = self._capture(_caller_of(inspect.currentframe()))

        doc.stack = convert_stack(frames)
        return doc