"""
Exception types raised by the bufguard analyzer.

Fatal errors (rule configuration, timeouts) propagate to the caller.
Per-file errors (parse failures, invariant violations) are caught by the
scanner and recorded as diagnostics for the offending file only.
"""


class BufguardError(Exception):
    """Base class for all analyzer errors"""
    pass


class RuleConfigError(BufguardError):
    """Missing or malformed rule configuration. Aborts the whole run."""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        if path:
            message = f"{path}: {message}"
        super().__init__(message)


class SourceParseError(BufguardError):
    """A translation unit could not be parsed into the IR"""

    def __init__(self, message: str, filename: str = "", line: int = 0):
        self.filename = filename
        self.line = line
        super().__init__(message)


class AnalyzerInvariantError(BufguardError):
    """
    Internal consistency check failed (negative capacity, dangling call
    edge, non-monotone taint transition).

    This indicates a bug in the analyzer rather than in the analyzed code,
    so the unit being processed is abandoned instead of producing findings.
    """
    pass


class AnalysisTimeoutError(BufguardError):
    """The global wall-clock budget for a run was exhausted"""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"analysis exceeded the {timeout:g}s time budget")
