"""
bufguard SIL: the simplified intermediate language the analyzers work on.

Architecture:
    Source Code → Frontend (tree-sitter) → TranslationUnit (CFGs + Buffer Catalog)
                → Taint Propagation → Sink Matcher / Format Checker → FindingReport

Example usage:
    from bufguard.sil import CFrontend, BufferScanner

    scanner = BufferScanner()
    result = scanner.scan_code(source_code, "parse.c")

    # Or step by step
    unit = CFrontend().translate(source_code, "parse.c")
    engine = TaintPropagationEngine(load_rules())
    for func in engine.analyze_unit(unit):
        for obs in func.observations:
            print(obs.function, [str(v) for v in obs.arg_values])
"""

# Core types
from bufguard.sil.types import (
    Ident,
    PVar,
    Location,
    Typ,
    TypeKind,
    # Expressions
    Exp,
    ExpVar,
    ExpConst,
    ExpBinOp,
    ExpUnOp,
    ExpFieldAccess,
    ExpIndex,
    ExpCast,
    ExpSizeof,
    ExpCall,
    ExpTernary,
    access_path,
)

# Instructions
from bufguard.sil.instructions import (
    Instr,
    Assign,
    Store,
    Prune,
    PruneKind,
    Return,
    Call,
)

# Procedures and units
from bufguard.sil.procedure import (
    Node,
    NodeKind,
    Procedure,
    StructLayout,
    TranslationUnit,
    CallSite,
    CallGraph,
)

from bufguard.sil.errors import (
    BufguardError,
    RuleConfigError,
    SourceParseError,
    AnalyzerInvariantError,
    AnalysisTimeoutError,
)

from bufguard.sil.taint import TaintLevel, TaintStep, TaintValue, TaintEnv
from bufguard.sil.report import (
    Severity, Finding, Diagnostic, DiagnosticKind, FindingReport,
)
from bufguard.sil.specs.rules import RuleSet, load_rules
from bufguard.sil.frontends.c_frontend import CFrontend, CppFrontend, frontend_for
from bufguard.sil.analyzers.buffer_catalog import BufferCatalog, BufferDeclaration, BufferKind
from bufguard.sil.analyzers.taint_propagation import (
    TaintPropagationEngine, FunctionTaintResult, CallObservation,
)
from bufguard.sil.analyzers.sink_matcher import SinkMatcher
from bufguard.sil.analyzers.format_checker import FormatStringChecker, FormatSpecifier, parse_format_string
from bufguard.sil.scanner import AnalysisConfig, BufferScanner, ScanResult

__all__ = [
    # Types
    "Ident", "PVar", "Location", "Typ", "TypeKind",
    "Exp", "ExpVar", "ExpConst", "ExpBinOp", "ExpUnOp", "ExpFieldAccess",
    "ExpIndex", "ExpCast", "ExpSizeof", "ExpCall", "ExpTernary", "access_path",
    # Instructions
    "Instr", "Assign", "Store", "Prune", "PruneKind", "Return", "Call",
    # Procedures
    "Node", "NodeKind", "Procedure", "StructLayout", "TranslationUnit",
    "CallSite", "CallGraph",
    # Errors
    "BufguardError", "RuleConfigError", "SourceParseError",
    "AnalyzerInvariantError", "AnalysisTimeoutError",
    # Taint and report
    "TaintLevel", "TaintStep", "TaintValue", "TaintEnv",
    "Severity", "Finding", "Diagnostic", "DiagnosticKind", "FindingReport",
    # Rules, frontends, analyzers
    "RuleSet", "load_rules",
    "CFrontend", "CppFrontend", "frontend_for",
    "BufferCatalog", "BufferDeclaration", "BufferKind",
    "TaintPropagationEngine", "FunctionTaintResult", "CallObservation",
    "SinkMatcher", "FormatStringChecker", "FormatSpecifier", "parse_format_string",
    "AnalysisConfig", "BufferScanner", "ScanResult",
]
