"""
bufguard analysis driver.

Runs the whole pipeline over a set of C/C++ files:

    Read + parse (parallel) -> call graph -> propagate + match (parallel) -> report

Usage:
    from bufguard.sil.scanner import BufferScanner, AnalysisConfig
    from bufguard.sil.specs.rules import load_rules

    scanner = BufferScanner(load_rules(), AnalysisConfig(jobs=4))
    result = scanner.analyze(["src/"])

    for finding in result.findings:
        print(finding)

Parsing is a separate phase that completes before propagation starts, so
calls that cross file boundaries can be followed. Results do not depend on
the order in which workers finish.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
import json
import os
import sys
import time
import traceback

from .analyzers.format_checker import FormatStringChecker
from .analyzers.sink_matcher import SinkMatcher
from .analyzers.taint_propagation import TaintPropagationEngine
from .errors import AnalyzerInvariantError, AnalysisTimeoutError, SourceParseError
from .frontends.c_frontend import frontend_for
from .procedure import CallGraph, TranslationUnit
from .report import (
    Diagnostic, DiagnosticKind, Finding, FindingReport, Severity, severity_value,
)
from .specs.rules import RuleSet, load_rules


SOURCE_EXTENSIONS = (".c", ".h", ".cc", ".cpp", ".cxx", ".hh", ".hpp")


def _default_jobs() -> int:
    return min(8, os.cpu_count() or 1)


@dataclass
class AnalysisConfig:
    """
    Analysis options.

    Attributes:
        max_interprocedural_depth: How many call levels taint follows into callees
        max_fixed_point_iterations: Cap on state-changing passes per function
            before widening to Unknown
        fail_on_severity: Lowest severity that fails the run (None never fails)
        jobs: Worker threads for both phases
        timeout: Wall-clock budget in seconds for the whole run (None: unlimited)
        read_retries: Extra attempts after a failed file read
        verbose: Print progress to stderr
    """
    max_interprocedural_depth: int = 1
    max_fixed_point_iterations: int = 64
    fail_on_severity: Optional[Severity] = Severity.HIGH
    jobs: int = field(default_factory=_default_jobs)
    timeout: Optional[float] = None
    read_retries: int = 1
    verbose: bool = False

    def __post_init__(self):
        if self.max_interprocedural_depth < 0:
            raise ValueError("max_interprocedural_depth must be non-negative")
        if self.max_fixed_point_iterations < 1:
            raise ValueError("max_fixed_point_iterations must be positive")
        if self.jobs < 1:
            raise ValueError("jobs must be positive")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.read_retries < 0:
            raise ValueError("read_retries must be non-negative")


@dataclass
class ScanResult:
    """Findings, diagnostics and statistics of one run"""
    report: FindingReport = field(default_factory=FindingReport)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    files_scanned: int = 0
    units_parsed: int = 0
    procedures_analyzed: int = 0
    scan_time_ms: float = 0.0

    @property
    def findings(self) -> List[Finding]:
        return self.report.findings

    @property
    def has_findings(self) -> bool:
        return len(self.report) > 0

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.is_error]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if not d.is_error]

    def highest_severity(self) -> Optional[Severity]:
        return self.report.highest_severity()

    def should_fail(self, threshold: Optional[Severity]) -> bool:
        """True when some finding is at or above `threshold`"""
        if threshold is None:
            return False
        highest = self.highest_severity()
        return highest is not None and severity_value(highest) >= severity_value(threshold)

    def to_dict(self) -> dict:
        data = self.report.to_dict()
        data["diagnostics"] = [d.to_dict() for d in self.diagnostics]
        data["stats"] = {
            "files_scanned": self.files_scanned,
            "units_parsed": self.units_parsed,
            "procedures_analyzed": self.procedures_analyzed,
            "scan_time_ms": round(self.scan_time_ms, 2),
        }
        return data

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def collect_sources(targets: Iterable[Union[str, Path]]) -> List[Path]:
    """
    Expand files and directories into the sorted list of C/C++ sources.

    Raises:
        FileNotFoundError: if a target does not exist
    """
    found = set()
    for target in targets:
        path = Path(target)
        if path.is_dir():
            for candidate in path.rglob("*"):
                if candidate.is_file() and candidate.suffix.lower() in SOURCE_EXTENSIONS:
                    found.add(candidate)
        elif path.is_file():
            found.add(path)
        else:
            raise FileNotFoundError(f"no such file or directory: {target}")
    return sorted(found, key=lambda p: str(p))


@dataclass
class _UnitOutcome:
    findings: List[Finding] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    procedures: int = 0


class BufferScanner:
    """
    Buffer-overflow scanner over C/C++ translation units.

    The rule set is shared read-only by all workers. Each worker owns the
    unit it is processing (frontend, catalog, taint states).
    """

    def __init__(self, rules: Optional[RuleSet] = None,
                 config: Optional[AnalysisConfig] = None):
        self.rules = rules if rules is not None else load_rules()
        self.config = config or AnalysisConfig()
        self.verbose = self.config.verbose
        self._deadline: Optional[float] = None

    # =========================================================================
    # Public API
    # =========================================================================

    def analyze(self, targets: Union[str, Path, Sequence[Union[str, Path]]]) -> ScanResult:
        """
        Analyze files and directories.

        Raises:
            FileNotFoundError: if a target does not exist
            AnalysisTimeoutError: if the configured timeout expires
        """
        if isinstance(targets, (str, Path)):
            targets = [targets]
        paths = collect_sources(targets)
        self._log(f"Found {len(paths)} source file(s)")
        return self._run([(str(p), None) for p in paths])

    def scan_code(self, source: Union[str, bytes], filename: str = "<unknown>") -> ScanResult:
        """Analyze one in-memory source file"""
        return self._run([(filename, source)])

    # =========================================================================
    # Phases
    # =========================================================================

    def _run(self, inputs: List[Tuple[str, Optional[Union[str, bytes]]]]) -> ScanResult:
        start_time = time.time()
        self._deadline = None
        if self.config.timeout is not None:
            self._deadline = time.monotonic() + self.config.timeout

        result = ScanResult(files_scanned=len(inputs))
        diagnostics: List[Diagnostic] = []

        # Phase 1: parse every file; the call graph needs all of them
        parsed = self._parallel(lambda item: self._parse(*item), inputs)
        units: List[TranslationUnit] = []
        for unit, diags in parsed:
            diagnostics.extend(diags)
            if unit is not None:
                units.append(unit)
        self._log(f"Parsed {len(units)} unit(s)")

        graph = CallGraph()
        accepted: List[TranslationUnit] = []
        for unit in sorted(units, key=lambda u: u.path):
            try:
                graph.add_unit(unit)
                accepted.append(unit)
            except AnalyzerInvariantError as e:
                diagnostics.append(self._internal_error(unit.path, e))
        result.units_parsed = len(accepted)

        # Phase 2: propagation and matching, one unit per worker
        outcomes = self._parallel(lambda unit: self._analyze_unit(unit, graph), accepted)
        candidates: List[Finding] = []
        for outcome in outcomes:
            candidates.extend(outcome.findings)
            diagnostics.extend(outcome.diagnostics)
            result.procedures_analyzed += outcome.procedures

        result.report = FindingReport.from_candidates(candidates)
        result.diagnostics = sorted(set(diagnostics), key=Diagnostic.sort_key)
        result.scan_time_ms = (time.time() - start_time) * 1000
        self._log(f"Analysis complete: {len(result.report)} finding(s), "
                  f"{len(result.diagnostics)} diagnostic(s) in {result.scan_time_ms:.2f}ms")
        return result

    def _parallel(self, fn: Callable, items: list) -> list:
        """
        Run `fn` over `items` on the worker pool.

        Results come back in input order. Exceptions from a worker
        propagate; the timeout cancels whatever has not started.
        """
        if not items:
            return []
        results: Dict[int, object] = {}
        executor = ThreadPoolExecutor(max_workers=min(self.config.jobs, len(items)))
        try:
            future_to_idx = {executor.submit(fn, item): i for i, item in enumerate(items)}
            remaining = None
            if self._deadline is not None:
                remaining = max(self._deadline - time.monotonic(), 0.0)
            for fut in as_completed(future_to_idx, timeout=remaining):
                results[future_to_idx[fut]] = fut.result()
        except (FutureTimeout, AnalysisTimeoutError):
            executor.shutdown(wait=False, cancel_futures=True)
            raise AnalysisTimeoutError(self.config.timeout or 0.0) from None
        except BaseException:
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)
        return [results[i] for i in range(len(items))]

    def _check_deadline(self) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise AnalysisTimeoutError(self.config.timeout or 0.0)

    # =========================================================================
    # Per-file work
    # =========================================================================

    def _read(self, path: str) -> bytes:
        """Read a file, retrying transient failures"""
        attempts = self.config.read_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with open(path, "rb") as f:
                    return f.read()
            except OSError:
                if attempt == attempts:
                    raise
                self._log(f"Retrying read of {path} ({attempt}/{attempts - 1})")
        raise OSError(f"could not read {path}")

    def _parse(self, filename: str, source: Optional[Union[str, bytes]]
               ) -> Tuple[Optional[TranslationUnit], List[Diagnostic]]:
        self._check_deadline()
        if source is None:
            try:
                source = self._read(filename)
            except OSError as e:
                return None, [Diagnostic(
                    kind=DiagnosticKind.IO_ERROR,
                    file=filename,
                    message=f"cannot read file: {e.strerror or e}",
                )]

        self._log(f"Parsing {filename}...")
        try:
            unit = frontend_for(filename).translate(source, filename)
        except SourceParseError as e:
            return None, [Diagnostic(
                kind=DiagnosticKind.PARSE_ERROR,
                file=filename,
                line=e.line,
                message=str(e),
                is_error=True,
            )]
        except AnalyzerInvariantError as e:
            return None, [self._internal_error(filename, e)]
        self._log(f"Found {len(unit.procedures)} procedure(s) and "
                  f"{len(unit.catalog)} buffer(s) in {filename}")
        diagnostics = [
            Diagnostic(
                kind=DiagnosticKind.PARSE_ERROR,
                file=filename,
                line=line,
                message=f"syntax error at line {line}; unparsable code skipped",
            )
            for line in unit.syntax_errors
        ]
        return unit, diagnostics

    def _analyze_unit(self, unit: TranslationUnit, graph: CallGraph) -> _UnitOutcome:
        self._check_deadline()
        outcome = _UnitOutcome(procedures=len(unit.procedures))
        engine = TaintPropagationEngine(
            self.rules,
            graph,
            max_depth=self.config.max_interprocedural_depth,
            max_iterations=self.config.max_fixed_point_iterations,
            deadline=self._deadline,
            timeout=self.config.timeout or 0.0,
            verbose=self.verbose,
        )
        matcher = SinkMatcher(self.rules)
        checker = FormatStringChecker(self.rules)
        try:
            for func_result in engine.analyze_unit(unit):
                outcome.diagnostics.extend(func_result.diagnostics)
                outcome.findings.extend(matcher.match_all(func_result.observations))
                findings, diags = checker.check_all(func_result.observations)
                outcome.findings.extend(findings)
                outcome.diagnostics.extend(diags)
        except AnalyzerInvariantError as e:
            # The unit is abandoned; partial findings would be misleading
            return _UnitOutcome(diagnostics=[self._internal_error(unit.path, e)])
        self._log(f"{unit.path}: {len(outcome.findings)} candidate finding(s)")
        return outcome

    def _internal_error(self, filename: str, error: Exception) -> Diagnostic:
        if self.verbose:
            traceback.print_exception(type(error), error, error.__traceback__, file=sys.stderr)
        return Diagnostic(
            kind=DiagnosticKind.INTERNAL_ERROR,
            file=filename,
            message=f"internal analyzer error: {error}",
            is_error=True,
        )

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[Scanner] {message}", file=sys.stderr)


def analyze(source_root: Union[str, Path, Sequence[Union[str, Path]]],
            rule_dir: Optional[Union[str, Path]] = None,
            config: Optional[AnalysisConfig] = None) -> ScanResult:
    """
    Convenience function: load the rules and analyze a source tree.

    Raises:
        RuleConfigError: if the rule directory is malformed
        FileNotFoundError: if a target does not exist
        AnalysisTimeoutError: if the configured timeout expires
    """
    scanner = BufferScanner(load_rules(rule_dir), config)
    return scanner.analyze(source_root)


def scan_code(source: Union[str, bytes], filename: str = "<unknown>",
              rules: Optional[RuleSet] = None,
              config: Optional[AnalysisConfig] = None) -> ScanResult:
    """
    Convenience function to scan source code held in memory.

    Args:
        source: C or C++ source
        filename: Name used for locations; its extension picks the language
        rules: Rule set (defaults to the packaged rules)
        config: Analysis options
    """
    return BufferScanner(rules, config).scan_code(source, filename)
