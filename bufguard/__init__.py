"""
bufguard: taint-aware buffer overflow detection for C/C++.

The library is organized into:
- sil.frontends: tree-sitter C/C++ frontends producing the IR
- sil.analyzers: buffer catalog, taint propagation, sink and format checks
- sil.specs: rule tables (sources, sinks, sanitizers, propagators)
- sil.report: findings, diagnostics and the finding report
- sil.scanner: the parallel analysis driver
- cli: the `bufguard` command
"""

__version__ = "0.1.0"

from bufguard.sil.report import Finding, FindingReport, Severity
from bufguard.sil.scanner import AnalysisConfig, BufferScanner, ScanResult, analyze, scan_code
from bufguard.sil.specs.rules import RuleSet, load_rules

__all__ = [
    "__version__",
    "Finding", "FindingReport", "Severity",
    "AnalysisConfig", "BufferScanner", "ScanResult", "analyze", "scan_code",
    "RuleSet", "load_rules",
]
