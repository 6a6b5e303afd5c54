"""Build output parser.

Pulls structured diagnostics out of raw tool output produced by
UnrealBuildTool / MSBuild / Clang. Supported line formats:

- MSVC:   ``file(line[,col]): error|warning CXXXX: message``
- Clang:  ``file:line:col: error|warning: message``
- Linker: ``file.obj : error LNK2019: message``
- UBT:    ``ERROR: message`` / ``WARNING: message``
- Summary: ``Build SUCCEEDED`` / ``Build FAILED``

The task session treats this as an opaque pure function; any callable
with the signature of :func:`parse_build_output` can replace it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import itertools
import re
from typing import Dict, List, Optional

_MSVC_DIAG = re.compile(r"^(.+?)\((\d+)(?:,(\d+))?\)\s*:\s*(error|warning)\s+(C\d+|D\d+)?\s*:\s*(.+)$")
_CLANG_DIAG = re.compile(r"^(.+?):(\d+):(\d+):\s*(error|warning):\s*(.+)$")
_LINKER_DIAG = re.compile(r"^(.+?\.(?:obj|lib))\s*:\s*(error|warning)\s+(LNK\d+)\s*:\s*(.+)$")
_UBT_DIAG = re.compile(r"^\s*(ERROR|WARNING)\s*:\s*(.+)$")
_BUILD_RESULT = re.compile(r"Build\s+(SUCCEEDED|FAILED)", re.IGNORECASE)
_ERROR_COUNT = re.compile(r"(\d+)\s+error\(?s?\)?", re.IGNORECASE)
_WARNING_COUNT = re.compile(r"(\d+)\s+warning\(?s?\)?", re.IGNORECASE)
_UBT_DURATION = re.compile(r"Total\s+(?:build\s+)?time\s+(?:was\s+)?(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)

_BUILD_INDICATORS = [
    re.compile(r"UnrealBuildTool", re.IGNORECASE),
    re.compile(r"Building\s+\d+\s+actions", re.IGNORECASE),
    re.compile(r"Compiling\s+", re.IGNORECASE),
    re.compile(r"Linking\s+", re.IGNORECASE),
    _BUILD_RESULT,
    re.compile(r"\berror\s+C\d{4}\b"),
    re.compile(r"\berror\s+LNK\d{4}\b"),
    re.compile(r"\bwarning\s+C\d{4}\b"),
    re.compile(r"\.cpp\(\d+\)"),
    re.compile(r"\.h\(\d+\)"),
]


@dataclass
class BuildDiagnostic:
    id: str
    severity: str               # error | warning
    message: str
    raw_text: str
    category: str               # compile | linker | ubt
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    code: Optional[str] = None


@dataclass
class BuildSummary:
    success: bool
    error_count: int
    warning_count: int
    duration: Optional[str]     # e.g. "1m 23s"
    raw_text: str


@dataclass
class BuildParseResult:
    diagnostics: List[BuildDiagnostic] = field(default_factory=list)
    summary: Optional[BuildSummary] = None
    is_build_output: bool = False

    @property
    def errors(self) -> List[BuildDiagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]

    @property
    def warnings(self) -> List[BuildDiagnostic]:
        return [d for d in self.diagnostics if d.severity == "warning"]


@dataclass
class WarningGroup:
    code: Optional[str]
    message_pattern: str
    warnings: List[BuildDiagnostic]

    @property
    def count(self) -> int:
        return len(self.warnings)


def contains_build_output(text: str) -> bool:
    return any(pattern.search(text) for pattern in _BUILD_INDICATORS)


def normalize_path(file_path: str) -> str:
    """Shorten a path for display: keep from ``Source/`` on, else the basename."""
    trimmed = file_path.strip()
    idx = max(trimmed.find("Source\\"), trimmed.find("Source/"))
    if idx >= 0:
        return trimmed[idx:]
    last_slash = max(trimmed.rfind("\\"), trimmed.rfind("/"))
    if last_slash >= 0 and len(trimmed) - last_slash < 80:
        return trimmed[last_slash + 1:]
    return trimmed


def _format_duration(seconds: float) -> str:
    if seconds >= 60:
        return f"{int(seconds // 60)}m {round(seconds % 60)}s"
    return f"{round(seconds)}s"


def parse_build_output(text: str) -> BuildParseResult:
    """Parse a block of tool output for build diagnostics."""
    if not contains_build_output(text):
        return BuildParseResult()

    counter = itertools.count(1)
    result = BuildParseResult(is_build_output=True)
    diagnostics = result.diagnostics

    for raw_line in text.split("\n"):
        line = raw_line.strip()
        if not line:
            continue

        match = _MSVC_DIAG.match(line)
        if match:
            diagnostics.append(BuildDiagnostic(
                id=f"diag-{next(counter)}",
                severity=match.group(4),
                file=normalize_path(match.group(1)),
                line=int(match.group(2)),
                column=int(match.group(3)) if match.group(3) else None,
                code=match.group(5) or None,
                message=match.group(6).strip(),
                raw_text=line,
                category="compile",
            ))
            continue

        match = _CLANG_DIAG.match(line)
        if match:
            diagnostics.append(BuildDiagnostic(
                id=f"diag-{next(counter)}",
                severity=match.group(4),
                file=normalize_path(match.group(1)),
                line=int(match.group(2)),
                column=int(match.group(3)),
                message=match.group(5).strip(),
                raw_text=line,
                category="compile",
            ))
            continue

        match = _LINKER_DIAG.match(line)
        if match:
            diagnostics.append(BuildDiagnostic(
                id=f"diag-{next(counter)}",
                severity=match.group(2),
                file=normalize_path(match.group(1)),
                code=match.group(3),
                message=match.group(4).strip(),
                raw_text=line,
                category="linker",
            ))
            continue

        match = _UBT_DIAG.match(line)
        if match:
            # UBA error 9666 is transient; the build retries and succeeds
            if "9666" in line or "UBA" in line:
                continue
            diagnostics.append(BuildDiagnostic(
                id=f"diag-{next(counter)}",
                severity="error" if match.group(1).lower() == "error" else "warning",
                message=match.group(2).strip(),
                raw_text=line,
                category="ubt",
            ))
            continue

        match = _BUILD_RESULT.search(line)
        if match:
            error_count = 0
            warning_count = 0
            duration = None
            err_match = _ERROR_COUNT.search(text)
            warn_match = _WARNING_COUNT.search(text)
            dur_match = _UBT_DURATION.search(text)
            if err_match:
                error_count = int(err_match.group(1))
            if warn_match:
                warning_count = int(warn_match.group(1))
            if dur_match:
                duration = _format_duration(float(dur_match.group(1)))
            if error_count == 0:
                error_count = len([d for d in diagnostics if d.severity == "error"])
            if warning_count == 0:
                warning_count = len([d for d in diagnostics if d.severity == "warning"])
            result.summary = BuildSummary(
                success=match.group(1).upper() == "SUCCEEDED",
                error_count=error_count,
                warning_count=warning_count,
                duration=duration,
                raw_text=line,
            )

    return result


def aggregate_warnings(diagnostics: List[BuildDiagnostic]) -> List[WarningGroup]:
    """Group warnings by code, or by the first 60 chars of the message."""
    groups: Dict[str, List[BuildDiagnostic]] = {}
    for diag in diagnostics:
        if diag.severity != "warning":
            continue
        key = diag.code or diag.message[:60]
        groups.setdefault(key, []).append(diag)
    return [
        WarningGroup(code=items[0].code, message_pattern=key, warnings=items)
        for key, items in groups.items()
    ]
