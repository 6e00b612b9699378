#!/usr/bin/env python3
"""
bufguard command-line interface.

Usage:
    # Scan a source tree with the packaged rules
    bufguard scan src/

    # JSON report, custom rules, follow calls two levels deep
    bufguard scan src/ lib/parse.c --rules rules/ --max-depth 2 --format json -o report.json

    # Never fail the build, only report
    bufguard scan src/ --fail-on none

    # Validate and list a rule directory
    bufguard rules --rules rules/

Exit status:
    0  no finding at or above --fail-on
    1  a finding at or above --fail-on
    2  rule configuration error or missing target
    3  the --timeout budget was exhausted
"""

import argparse
import sys
from typing import List, Optional

from bufguard import __version__
from bufguard.sil.errors import AnalysisTimeoutError, RuleConfigError
from bufguard.sil.report import Finding, Severity, parse_severity
from bufguard.sil.scanner import AnalysisConfig, BufferScanner, ScanResult
from bufguard.sil.specs.rules import RuleSet, load_rules


EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_CONFIG = 2
EXIT_TIMEOUT = 3

SEVERITY_CHOICES = ["critical", "high", "medium", "low", "info"]

SEVERITY_ICONS = {
    Severity.CRITICAL: "🔴",
    Severity.HIGH: "🟠",
    Severity.MEDIUM: "🟡",
    Severity.LOW: "🔵",
    Severity.INFO: "⚪",
}


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        prog="bufguard",
        description="bufguard - taint-aware buffer overflow detection for C/C++",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="Scan C/C++ sources for buffer overflows")
    scan_parser.add_argument(
        "targets",
        nargs="+",
        help="Files or directories to scan"
    )
    scan_parser.add_argument(
        "-r", "--rules",
        help="Rule directory (default: packaged rules)"
    )
    scan_parser.add_argument(
        "--max-depth",
        type=int,
        default=1,
        help="Interprocedural depth followed into callees (default: 1)"
    )
    scan_parser.add_argument(
        "--max-iterations",
        type=int,
        default=64,
        help="Cap on state-changing fixed-point passes per function (default: 64)"
    )
    scan_parser.add_argument(
        "--fail-on",
        choices=SEVERITY_CHOICES + ["none"],
        default="high",
        help="Exit with status 1 if findings of this severity or above exist (default: high)"
    )
    scan_parser.add_argument(
        "-j", "--jobs",
        type=int,
        default=None,
        help="Worker threads (default: number of CPUs, at most 8)"
    )
    scan_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Wall-clock budget for the whole run in seconds"
    )
    scan_parser.add_argument(
        "-f", "--format",
        default="text",
        choices=["text", "json"],
        help="Output format (default: text)"
    )
    scan_parser.add_argument(
        "-o", "--output",
        help="Output file (default: stdout)"
    )
    scan_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output"
    )

    # Rules command
    rules_parser = subparsers.add_parser("rules", help="Validate and list a rule set")
    rules_parser.add_argument(
        "-r", "--rules",
        help="Rule directory (default: packaged rules)"
    )

    return parser


def format_finding(index: int, finding: Finding) -> List[str]:
    icon = SEVERITY_ICONS.get(finding.severity, "⚫")
    capacity = "unknown" if finding.buffer_capacity is None else str(finding.buffer_capacity)
    lines = [
        f"\n{index}. [{finding.severity.value.upper()}] {icon} {finding.rule_id}",
        f"   Location: {finding.location}",
        f"   Function: {finding.procedure}",
        f"   Description: {finding.message}",
        f"   Buffer: {finding.buffer_name} (capacity {capacity})",
        f"   Taint: {finding.taint_level}",
    ]
    if finding.taint_chain:
        lines.append("   Taint chain:")
        for step in finding.taint_chain:
            lines.append(f"     → {step}")
    return lines


def format_text_result(result: ScanResult) -> str:
    """Format scan result as human-readable text"""
    lines = []

    # Header
    lines.append(f"\n{'='*60}")
    lines.append("bufguard scan")
    lines.append(f"{'='*60}")

    # Stats
    lines.append(f"\nFiles scanned: {result.files_scanned}")
    lines.append(f"Units parsed: {result.units_parsed}")
    lines.append(f"Procedures analyzed: {result.procedures_analyzed}")
    lines.append(f"Scan time: {result.scan_time_ms:.2f}ms")

    if result.errors:
        lines.append("\nErrors:")
        for diag in result.errors:
            lines.append(f"  ❌ {diag}")

    if result.warnings:
        lines.append("\nWarnings:")
        for diag in result.warnings:
            lines.append(f"  ⚠️  {diag}")

    if result.findings:
        lines.append(f"\nFindings: {len(result.findings)}")
        lines.append("-" * 40)
        for i, finding in enumerate(result.findings, 1):
            lines.extend(format_finding(i, finding))
    else:
        lines.append("\n✅ No buffer overflows found!")

    lines.append(f"\n{'='*60}\n")
    return "\n".join(lines)


def format_rules(rules: RuleSet) -> str:
    """List a rule set, one entry per line"""
    lines = [f"Rules from {rules.origin}"]
    summary = rules.summary()
    lines.append(", ".join(f"{count} {kind}" for kind, count in summary.items()))

    lines.append("\nSources:")
    for spec in rules.sources:
        if spec.kind == "parameter":
            lines.append(f"  parameter     {spec.name}")
        elif spec.kind == "return_value":
            lines.append(f"  return_value  {spec.function}()")
        else:
            where = (f"argument {spec.argument}" if spec.argument is not None
                     else f"arguments {spec.variadic_from}..")
            lines.append(f"  out_argument  {spec.function}() {where}")

    lines.append("\nSinks:")
    for sink in rules.sinks:
        lines.append(f"  {sink.function:<12} {sink.kind:<14} {sink.rule_id} "
                     f"({sink.severity}/{sink.reduced_severity})")

    lines.append("\nSanitizers:")
    for sanitizer in rules.sanitizers:
        terminator = ", terminator required" if sanitizer.requires_terminator else ""
        lines.append(f"  {sanitizer.function}() destination {sanitizer.destination}, "
                     f"bound {sanitizer.bound}{terminator}")

    if rules.propagators:
        lines.append("\nPropagators:")
        for prop in rules.propagators:
            mode = "strong" if prop.strong else "weak"
            lines.append(f"  {prop.function}() {mode}")
    return "\n".join(lines)


def write_output(output: str, path: Optional[str]) -> None:
    if path:
        with open(path, "w", encoding="utf-8") as f:
            f.write(output)
    else:
        print(output)


def main(argv: List[str] = None) -> int:
    """Main CLI entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    if args.command == "scan":
        return cmd_scan(args)
    if args.command == "rules":
        return cmd_rules(args)

    return EXIT_OK


def cmd_scan(args) -> int:
    """Execute scan command"""
    try:
        rules = load_rules(args.rules)
    except RuleConfigError as e:
        print(f"Error: invalid rule configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG

    fail_on = None if args.fail_on == "none" else parse_severity(args.fail_on)
    try:
        options = dict(
            max_interprocedural_depth=args.max_depth,
            max_fixed_point_iterations=args.max_iterations,
            fail_on_severity=fail_on,
            timeout=args.timeout,
            verbose=args.verbose,
        )
        if args.jobs is not None:
            options["jobs"] = args.jobs
        config = AnalysisConfig(**options)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    scanner = BufferScanner(rules, config)
    try:
        result = scanner.analyze(args.targets)
    except FileNotFoundError as e:
        print(f"Error: Target not found: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except AnalysisTimeoutError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_TIMEOUT

    if args.format == "json":
        output = result.to_json()
    else:
        output = format_text_result(result)
    write_output(output, args.output)

    if result.should_fail(config.fail_on_severity):
        return EXIT_FINDINGS
    return EXIT_OK


def cmd_rules(args) -> int:
    """Execute rules command"""
    try:
        rules = load_rules(args.rules)
    except RuleConfigError as e:
        print(f"Error: invalid rule configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG
    print(format_rules(rules))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
