"""
Tests for findings, diagnostics and the finding report.
"""

import json
import random

import pytest

from bufguard.sil.report import (
    Diagnostic, DiagnosticKind, Finding, FindingReport, Severity,
    parse_severity, severity_value,
)
from bufguard.sil.taint import TaintLevel, TaintStep
from bufguard.sil.types import Location


def finding(rule="UnsafeStrcpy", file="a.c", line=10, column=5,
            severity=Severity.HIGH, chain=1):
    loc = Location(file, line, column)
    steps = tuple(TaintStep(Location(file, line - i - 1, 1), f"step {i}") for i in range(chain))
    return Finding(
        rule_id=rule,
        severity=severity,
        location=loc,
        message="strcpy() writes tainted data into 'buf'",
        procedure="f",
        buffer_name="buf",
        buffer_capacity=16,
        taint_level=TaintLevel.TAINTED,
        taint_chain=steps,
    )


class TestSeverity:
    def test_ordering(self):
        assert severity_value(Severity.CRITICAL) > severity_value(Severity.HIGH)
        assert severity_value(Severity.LOW) > severity_value(Severity.INFO)
        assert severity_value(None) == 0

    def test_parse(self):
        assert parse_severity("HIGH") == Severity.HIGH
        assert parse_severity("medium") == Severity.MEDIUM
        with pytest.raises(ValueError):
            parse_severity("urgent")


class TestFindingReport:
    """Deduplication and ordering"""

    def test_duplicates_collapse(self):
        report = FindingReport.from_candidates([finding(), finding()])
        assert len(report) == 1

    def test_same_location_different_rules_are_kept(self):
        report = FindingReport.from_candidates([
            finding(rule="UnsafeSprintf"),
            finding(rule="SprintfOutputOverflow"),
        ])
        assert len(report) == 2

    def test_higher_severity_wins(self):
        low = finding(severity=Severity.MEDIUM)
        high = finding(severity=Severity.HIGH)
        assert FindingReport.from_candidates([low, high]).findings[0].severity == Severity.HIGH
        assert FindingReport.from_candidates([high, low]).findings[0].severity == Severity.HIGH

    def test_shorter_chain_wins(self):
        long_chain = finding(chain=3)
        short_chain = finding(chain=1)
        report = FindingReport.from_candidates([long_chain, short_chain])
        assert len(report.findings[0].taint_chain) == 1

    def test_sorted_by_file_line_rule(self):
        candidates = [
            finding(file="b.c", line=1),
            finding(file="a.c", line=20),
            finding(file="a.c", line=3, rule="UnsafeStrcat"),
            finding(file="a.c", line=3, rule="UnsafeMemcpy"),
        ]
        report = FindingReport.from_candidates(candidates)
        assert [(f.location.file, f.location.line, f.rule_id) for f in report] == [
            ("a.c", 3, "UnsafeMemcpy"),
            ("a.c", 3, "UnsafeStrcat"),
            ("a.c", 20, "UnsafeStrcpy"),
            ("b.c", 1, "UnsafeStrcpy"),
        ]

    def test_order_independent(self):
        candidates = [finding(line=n % 7, severity=s, chain=1 + n % 3)
                      for n, s in enumerate([Severity.HIGH, Severity.MEDIUM] * 10)]
        expected = FindingReport.from_candidates(candidates).to_dict()
        shuffled = list(candidates)
        random.Random(7).shuffle(shuffled)
        assert FindingReport.from_candidates(shuffled).to_dict() == expected

    def test_summary(self):
        report = FindingReport.from_candidates([
            finding(line=1, severity=Severity.CRITICAL, rule="UnsafeGets"),
            finding(line=2),
            finding(line=3),
        ])
        assert report.highest_severity() == Severity.CRITICAL
        data = json.loads(report.to_json())
        assert data["summary"]["total"] == 3
        assert data["summary"]["critical"] == 1
        assert data["summary"]["high"] == 2
        assert data["summary"]["by_rule"] == {"UnsafeGets": 1, "UnsafeStrcpy": 2}

    def test_empty(self):
        report = FindingReport.from_candidates([])
        assert report.highest_severity() is None
        assert report.to_dict()["summary"]["highest_severity"] is None

    def test_finding_to_dict(self):
        data = finding(chain=2).to_dict()
        assert data["rule_id"] == "UnsafeStrcpy"
        assert data["severity"] == "high"
        assert data["taint"] == "tainted"
        assert data["capacity"] == 16
        assert [s["description"] for s in data["taint_chain"]] == ["step 0", "step 1"]


class TestDiagnostic:
    def test_str_and_dict(self):
        diag = Diagnostic(
            kind=DiagnosticKind.PARSE_ERROR,
            file="bad.c",
            line=4,
            message="syntax error at line 4",
            is_error=True,
        )
        assert str(diag) == "bad.c:4: error: syntax error at line 4 [parse_error]"
        assert diag.to_dict()["severity"] == "error"

    def test_warning_without_line(self):
        diag = Diagnostic(kind=DiagnosticKind.IO_ERROR, file="gone.c", message="cannot read file")
        assert diag.severity == "warning"
        assert str(diag).startswith("gone.c: warning:")
