"""
Findings, diagnostics and the finding report.

The report deduplicates candidate findings by (rule_id, location), orders
them deterministically and serializes them for the CI gating and SARIF
collaborators.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
import json

from .types import Location
from .taint import TaintLevel, TaintStep


class Severity(Enum):
    """Finding severity levels"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    def __str__(self) -> str:
        return self.value


def severity_value(severity: Optional[Severity]) -> int:
    """Get numeric value for severity comparison"""
    values = {
        Severity.CRITICAL: 5,
        Severity.HIGH: 4,
        Severity.MEDIUM: 3,
        Severity.LOW: 2,
        Severity.INFO: 1,
    }
    return values.get(severity, 0)


def parse_severity(name: str) -> Severity:
    """
    Parse severity from string (case-insensitive).

    Raises:
        ValueError: for an unknown severity name
    """
    try:
        return Severity(name.lower())
    except (ValueError, AttributeError):
        raise ValueError(f"unknown severity {name!r}") from None


@dataclass(frozen=True)
class Finding:
    """
    A buffer-overflow finding at one call site.

    Identity for deduplication is (rule_id, location).
    """
    rule_id: str
    severity: Severity
    location: Location
    message: str
    procedure: str = ""
    buffer_name: Optional[str] = None
    buffer_capacity: Optional[int] = None
    taint_level: TaintLevel = TaintLevel.UNTAINTED
    taint_chain: Tuple[TaintStep, ...] = ()

    @property
    def key(self) -> Tuple[str, Location]:
        return (self.rule_id, self.location)

    def sort_key(self) -> tuple:
        return (self.location.file, self.location.line, self.rule_id, self.location.column)

    def __str__(self) -> str:
        return f"{self.location}: [{self.severity.value.upper()}] {self.rule_id}: {self.message}"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization"""
        return {
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "file": self.location.file,
            "line": self.location.line,
            "column": self.location.column,
            "message": self.message,
            "procedure": self.procedure,
            "buffer": self.buffer_name,
            "capacity": self.buffer_capacity,
            "taint": str(self.taint_level),
            "taint_chain": [step.to_dict() for step in self.taint_chain],
        }


class DiagnosticKind(Enum):
    PARSE_ERROR = "parse_error"
    IO_ERROR = "io_error"
    ITERATION_LIMIT = "iteration_limit"
    INTERNAL_ERROR = "internal_error"
    MALFORMED_FORMAT = "malformed_format"


@dataclass(frozen=True)
class Diagnostic:
    """A problem with the analysis itself, reported next to the findings"""
    kind: DiagnosticKind
    file: str
    message: str
    line: int = 0
    is_error: bool = False

    @property
    def severity(self) -> str:
        return "error" if self.is_error else "warning"

    def sort_key(self) -> tuple:
        return (self.file, self.line, self.kind.value, self.message)

    def __str__(self) -> str:
        where = f"{self.file}:{self.line}" if self.line else self.file
        return f"{where}: {self.severity}: {self.message} [{self.kind.value}]"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "severity": self.severity,
            "file": self.file,
            "line": self.line,
            "message": self.message,
        }


def _preferred(current: Finding, candidate: Finding) -> Finding:
    """Pick between two findings with the same identity"""
    cur = (-severity_value(current.severity), len(current.taint_chain),
           [str(s) for s in current.taint_chain])
    new = (-severity_value(candidate.severity), len(candidate.taint_chain),
           [str(s) for s in candidate.taint_chain])
    return candidate if new < cur else current


@dataclass
class FindingReport:
    """Deduplicated, ordered findings of one analysis run"""
    findings: List[Finding] = field(default_factory=list)

    @classmethod
    def from_candidates(cls, candidates: Iterable[Finding]) -> 'FindingReport':
        """
        Deduplicate by (rule_id, location) and sort by file, line, rule id.

        When two candidates share an identity, the more severe one wins,
        then the one with the shorter taint chain. The outcome does not
        depend on the order candidates arrive in.
        """
        unique: Dict[Tuple[str, Location], Finding] = {}
        for finding in candidates:
            existing = unique.get(finding.key)
            unique[finding.key] = finding if existing is None else _preferred(existing, finding)
        return cls(findings=sorted(unique.values(), key=Finding.sort_key))

    def __len__(self) -> int:
        return len(self.findings)

    def __iter__(self):
        return iter(self.findings)

    def highest_severity(self) -> Optional[Severity]:
        """Most severe finding, or None for an empty report"""
        if not self.findings:
            return None
        return max((f.severity for f in self.findings), key=severity_value)

    def count(self, severity: Severity) -> int:
        return sum(1 for f in self.findings if f.severity == severity)

    def by_rule(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for finding in self.findings:
            counts[finding.rule_id] = counts.get(finding.rule_id, 0) + 1
        return counts

    def to_dict(self) -> dict:
        highest = self.highest_severity()
        return {
            "findings": [f.to_dict() for f in self.findings],
            "summary": {
                "total": len(self.findings),
                "critical": self.count(Severity.CRITICAL),
                "high": self.count(Severity.HIGH),
                "medium": self.count(Severity.MEDIUM),
                "low": self.count(Severity.LOW),
                "info": self.count(Severity.INFO),
                "highest_severity": highest.value if highest else None,
                "by_rule": self.by_rule(),
            },
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
