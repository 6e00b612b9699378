"""
Format-String Bound Checker.

Parses literal format strings of scanf- and printf-family calls and checks
the buffers their string conversions write into.

Scan family:
    %s / %[...] without a field width   -> UnboundedScanfString
    field width W with W > capacity - 1 -> ScanfWidthExceedsBuffer
    %Nc with N > capacity               -> ScanfWidthExceedsBuffer

Print family (unbounded sprintf/vsprintf only):
    when every conversion has a bounded output length and the total plus
    the terminator exceeds the destination -> SprintfOutputOverflow

POSIX positional arguments (`%2$s`, `%*1$d`) and the allocating scan
modifier (`%ms`, which needs no destination capacity) are understood.
Specifiers that refer past the supplied arguments and invalid conversions
are reported as MALFORMED_FORMAT diagnostics, never as findings.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import re

from ..report import Diagnostic, DiagnosticKind, Finding
from ..specs.rules import RuleSet, SinkSignature
from ..taint import TaintStep, TaintValue, UNTAINTED
from ..types import ExpConst
from .buffer_catalog import describe_buffer
from .taint_propagation import CallObservation


RULE_UNBOUNDED_SCAN = "UnboundedScanfString"
RULE_SCAN_WIDTH = "ScanfWidthExceedsBuffer"
RULE_PRINT_OVERFLOW = "SprintfOutputOverflow"

_LENGTH = r"(?P<length>hh|h|ll|l|L|j|z|t|q)?"
_ARGPOS = r"(?:(?P<argpos>[1-9]\d*)\$)?"

_PRINT_SPEC_RE = re.compile(
    r"%"
    + _ARGPOS +
    r"(?P<flags>[-+ #0']*)"
    r"(?P<width>\*(?:[1-9]\d*\$)?|\d+)?"
    r"(?:\.(?P<precision>\*(?:[1-9]\d*\$)?|\d*))?"
    + _LENGTH +
    r"(?P<conversion>[diouxXeEfFgGaAcspnm%])"
)

_SCAN_SPEC_RE = re.compile(
    r"%"
    + _ARGPOS +
    r"(?P<suppress>\*)?"
    r"(?P<width>\d+)?"
    r"(?P<alloc>m)?"
    + _LENGTH +
    r"(?P<conversion>[diouxXeEfFgGaAcspn%]|\[\^?\]?[^\]]*\])"
)

SCAN_STRING_CONVERSIONS = ("s", "[")

# Longest output of an integer conversion, without and with an `l`/`ll`/`j`/`z`/`t` modifier
_INT_MAX_LEN = {
    "d": (11, 20), "i": (11, 20),
    "u": (10, 20),
    "x": (8, 16), "X": (8, 16),
    "o": (11, 22),
}
_POINTER_MAX_LEN = 18


@dataclass(frozen=True)
class FormatSpecifier:
    """
    One conversion of a format string.

    `arg_index` is the position among the call's variadic arguments, or
    None for conversions that take no argument (`%%`, suppressed `%*s`,
    printf `%m`). A POSIX `%n$` prefix selects the argument explicitly.
    For print formats, `*` width or precision consume an argument of
    their own (`width_arg_index`, `precision_arg_index`). Scan conversions
    with the `m` modifier allocate their own buffer (`allocates`).
    """
    conversion: str
    field_width: Optional[int]
    precision: Optional[int]
    arg_index: Optional[int]
    raw: str
    position: int
    suppressed: bool = False
    length: str = ""
    width_arg_index: Optional[int] = None
    precision_arg_index: Optional[int] = None
    allocates: bool = False
    valid: bool = True

    @property
    def writes_string(self) -> bool:
        return self.conversion in SCAN_STRING_CONVERSIONS


def parse_format_string(fmt: str, scan: bool = True) -> List[FormatSpecifier]:
    """
    Parse a format string left to right.

    Malformed conversions come back with `valid=False` and consume one
    argument, so that the following specifiers keep a plausible mapping.
    """
    pattern = _SCAN_SPEC_RE if scan else _PRINT_SPEC_RE
    specs: List[FormatSpecifier] = []
    next_arg = 0
    pos = 0
    while True:
        pos = fmt.find("%", pos)
        if pos == -1:
            break

        m = pattern.match(fmt, pos)
        if m is None:
            end = pos + 1
            while end < len(fmt) and not fmt[end].isalpha() and fmt[end] != "%":
                end += 1
            end = min(end + 1, len(fmt))
            specs.append(FormatSpecifier(
                conversion="", field_width=None, precision=None,
                arg_index=next_arg, raw=fmt[pos:end], position=pos, valid=False,
            ))
            next_arg += 1
            pos = end
            continue

        raw = m.group(0)
        conversion = m.group("conversion")
        if conversion.startswith("["):
            conversion = "["
        if conversion == "%":
            pos = m.end()
            continue

        width = m.group("width")
        width_arg = None
        field_width = None
        if width and width.startswith("*"):
            width_arg, next_arg = _star_argument(width, next_arg)
        elif width:
            field_width = int(width)

        precision = None
        precision_arg = None
        if not scan:
            prec = m.group("precision")
            if prec and prec.startswith("*"):
                precision_arg, next_arg = _star_argument(prec, next_arg)
            elif prec is not None:
                precision = int(prec) if prec else 0

        suppressed = scan and m.group("suppress") is not None
        arg_index = None
        # printf %m prints strerror(errno) and takes no argument
        if not suppressed and (scan or conversion != "m"):
            if m.group("argpos"):
                arg_index = int(m.group("argpos")) - 1
            else:
                arg_index = next_arg
                next_arg += 1

        specs.append(FormatSpecifier(
            conversion=conversion,
            field_width=field_width,
            precision=precision,
            arg_index=arg_index,
            raw=raw,
            position=pos,
            suppressed=suppressed,
            length=m.group("length") or "",
            width_arg_index=width_arg,
            precision_arg_index=precision_arg,
            allocates=scan and m.group("alloc") is not None,
        ))
        pos = m.end()
    return specs


def _star_argument(text: str, next_arg: int) -> Tuple[int, int]:
    """Argument index of a `*` or `*n$` width/precision, and the next sequential index"""
    if text.endswith("$"):
        return int(text[1:-1]) - 1, next_arg
    return next_arg, next_arg + 1


def _literal_text_length(fmt: str, specs: List[FormatSpecifier]) -> int:
    """Bytes a print format emits outside its conversions (`%%` counts 1)"""
    text = fmt
    for spec in reversed(specs):
        text = text[:spec.position] + text[spec.position + len(spec.raw):]
    return len(text.replace("%%", "%").encode("utf-8"))


class FormatStringChecker:
    """
    Checks scan and print format strings against destination capacities.

    Usage:
        checker = FormatStringChecker(rules)
        findings, diagnostics = checker.check(observation)
    """

    def __init__(self, rules: RuleSet):
        self.rules = rules

    def check_all(self, observations: List[CallObservation]
                  ) -> Tuple[List[Finding], List[Diagnostic]]:
        findings: List[Finding] = []
        diagnostics: List[Diagnostic] = []
        for obs in observations:
            f, d = self.check(obs)
            findings.extend(f)
            diagnostics.extend(d)
        return findings, diagnostics

    def check(self, obs: CallObservation) -> Tuple[List[Finding], List[Diagnostic]]:
        findings: List[Finding] = []
        diagnostics: List[Diagnostic] = []
        for signature in self.rules.sinks_for(obs.function):
            if not (signature.is_scan or signature.is_print):
                continue
            fmt = self._format_literal(obs, signature)
            if fmt is None:
                continue
            if signature.is_scan:
                self._check_scan(obs, signature, fmt, findings, diagnostics)
            else:
                self._check_print(obs, signature, fmt, findings, diagnostics)
        return findings, diagnostics

    def _format_literal(self, obs: CallObservation, signature: SinkSignature) -> Optional[str]:
        args = obs.call.args
        if signature.format is None or signature.format >= len(args):
            return None
        fmt = args[signature.format]
        if isinstance(fmt, ExpConst) and isinstance(fmt.value, str):
            return fmt.value
        return None

    def _takes_va_list(self, obs: CallObservation, signature: SinkSignature) -> bool:
        """vscanf/vsprintf style calls pass one va_list instead of the arguments"""
        args = obs.call.args
        if signature.variadic_from is None or len(args) != signature.variadic_from + 1:
            return False
        typ = obs.unit.catalog.type_of(args[signature.variadic_from], obs.scope)
        return typ is not None and typ.name == "va_list"

    def _malformed(self, obs: CallObservation, message: str) -> Diagnostic:
        return Diagnostic(
            kind=DiagnosticKind.MALFORMED_FORMAT,
            file=obs.call.loc.file,
            line=obs.call.loc.line,
            message=f"{obs.function}(): {message}",
        )

    # =========================================================================
    # Scan family
    # =========================================================================

    def _scanned_value(self, obs: CallObservation, signature: SinkSignature) -> TaintValue:
        if signature.source is None:
            # scanf/fscanf read straight from a stream
            return TaintValue.tainted(
                TaintStep(obs.call.loc, f"external input scanned by {obs.function}()"))
        return obs.arg_value(signature.source)

    def _check_scan(self, obs: CallObservation, signature: SinkSignature, fmt: str,
                    findings: List[Finding], diagnostics: List[Diagnostic]) -> None:
        call = obs.call
        specs = parse_format_string(fmt, scan=True)
        value = self._scanned_value(obs, signature)
        va_list = self._takes_va_list(obs, signature)
        first = signature.variadic_from if signature.variadic_from is not None else len(call.args)
        available = max(len(call.args) - first, 0)

        for spec in specs:
            if not spec.valid:
                diagnostics.append(self._malformed(obs, f"invalid conversion '{spec.raw}'"))
                continue
            if spec.arg_index is None:
                continue

            if va_list:
                dest = None
                loc = call.loc
            elif spec.arg_index >= available:
                diagnostics.append(self._malformed(
                    obs, f"'{spec.raw}' has no matching argument "
                         f"({available} supplied)"))
                continue
            else:
                dest = call.args[first + spec.arg_index]
                loc = call.arg_loc(first + spec.arg_index)

            if spec.allocates:
                continue
            if spec.conversion not in SCAN_STRING_CONVERSIONS and spec.conversion != "c":
                continue

            decl = obs.unit.catalog.lookup(dest, obs.scope) if dest is not None else None
            name, capacity = describe_buffer(dest, decl) if dest is not None else ("<va_list>", None)

            if spec.conversion == "c":
                width = spec.field_width or 1
                if capacity is None or width <= capacity:
                    continue
                rule = RULE_SCAN_WIDTH
                problem = f"reads {width} characters"
            elif spec.field_width is None:
                rule = signature.rule_id
                problem = "has no field width"
            else:
                if capacity is not None and spec.field_width <= capacity - 1:
                    continue
                rule = RULE_SCAN_WIDTH
                if capacity is None:
                    problem = f"has width {spec.field_width} that cannot be checked"
                else:
                    problem = f"has width {spec.field_width}, leaving no room for the terminator"

            cap_text = "unknown capacity" if capacity is None else f"capacity {capacity}"
            chain: Tuple[TaintStep, ...] = ()
            if not value.is_untainted:
                chain = value.chain + (TaintStep(loc, f"'{spec.raw}' writes into '{name}'"),)
            findings.append(Finding(
                rule_id=rule,
                severity=signature.severity_for(value.level),
                location=loc,
                message=(f"{obs.function}() conversion '{spec.raw}' {problem} "
                         f"for '{name}' ({cap_text})"),
                procedure=obs.procedure,
                buffer_name=name,
                buffer_capacity=capacity,
                taint_level=value.level,
                taint_chain=chain,
            ))

    # =========================================================================
    # Print family
    # =========================================================================

    def output_size(self, obs: CallObservation, signature: SinkSignature) -> Optional[int]:
        """
        Largest number of bytes a print call writes, terminator included.

        None when the format is not a literal or some conversion has no
        static bound.
        """
        fmt = self._format_literal(obs, signature)
        if fmt is None:
            return None
        total, _ = self._print_bound(obs, signature, fmt, [])
        return None if total is None else total + 1

    def _print_bound(self, obs: CallObservation, signature: SinkSignature, fmt: str,
                     diagnostics: List[Diagnostic]) -> Tuple[Optional[int], TaintValue]:
        """Bounded output length without the terminator, and the joined argument taint"""
        call = obs.call
        specs = parse_format_string(fmt, scan=False)
        va_list = self._takes_va_list(obs, signature)
        first = signature.variadic_from if signature.variadic_from is not None else len(call.args)
        available = max(len(call.args) - first, 0)

        bounded = True
        total = _literal_text_length(fmt, specs)
        value = UNTAINTED
        for spec in specs:
            if not spec.valid:
                diagnostics.append(self._malformed(obs, f"invalid conversion '{spec.raw}'"))
                bounded = False
                continue
            if va_list:
                bounded = False
                continue
            needed = [i for i in (spec.width_arg_index, spec.precision_arg_index, spec.arg_index)
                      if i is not None]
            if any(i >= available for i in needed):
                diagnostics.append(self._malformed(
                    obs, f"'{spec.raw}' has no matching argument ({available} supplied)"))
                bounded = False
                continue
            if spec.arg_index is not None:
                value = value.join(obs.arg_value(first + spec.arg_index))
            length = self._max_output(obs, spec, first)
            if length is None:
                bounded = False
            else:
                total += length
        return (total if bounded else None), value

    def _check_print(self, obs: CallObservation, signature: SinkSignature, fmt: str,
                     findings: List[Finding], diagnostics: List[Diagnostic]) -> None:
        call = obs.call
        total, value = self._print_bound(obs, signature, fmt, diagnostics)
        if total is None or signature.size is not None:
            return
        if signature.destination is None or signature.destination >= len(call.args):
            return
        dest = call.args[signature.destination]
        decl = obs.unit.catalog.lookup(dest, obs.scope)
        if decl is None or decl.capacity is None or total + 1 <= decl.capacity:
            return

        chain: Tuple[TaintStep, ...] = ()
        if not value.is_untainted:
            chain = value.chain + (TaintStep(call.loc, f"formatted by {obs.function}()"),)
        findings.append(Finding(
            rule_id=RULE_PRINT_OVERFLOW,
            severity=signature.severity_for(value.level),
            location=call.loc,
            message=(f"{obs.function}() may write {total + 1} bytes into "
                     f"'{decl.name}' (capacity {decl.capacity})"),
            procedure=obs.procedure,
            buffer_name=decl.name,
            buffer_capacity=decl.capacity,
            taint_level=value.level,
            taint_chain=chain,
        ))

    def _max_output(self, obs: CallObservation, spec: FormatSpecifier, first: int) -> Optional[int]:
        """Longest text one conversion can produce, None when unbounded"""
        if spec.width_arg_index is not None or spec.precision_arg_index is not None:
            return None
        conv = spec.conversion
        if conv in _INT_MAX_LEN:
            short, wide = _INT_MAX_LEN[conv]
            # `#` adds a 0x / 0 prefix
            prefix = 2 if "#" in spec.raw and conv in "xX" else 0
            length = (wide if spec.length in ("l", "ll", "j", "z", "t", "q") else short) + prefix
        elif conv == "p":
            length = _POINTER_MAX_LEN
        elif conv == "c":
            length = 1
        elif conv == "n":
            length = 0
        elif conv == "s":
            length = self._string_bound(obs, spec, first)
            if length is None:
                return None
        elif conv == "m":
            # strerror text
            return None
        else:
            # Floating point output has no useful static bound
            return None
        return max(length, spec.field_width or 0)

    def _string_bound(self, obs: CallObservation, spec: FormatSpecifier, first: int) -> Optional[int]:
        arg = obs.call.args[first + spec.arg_index]
        bound = None
        if isinstance(arg, ExpConst) and isinstance(arg.value, str):
            bound = len(arg.value.encode("utf-8"))
        else:
            decl = obs.unit.catalog.lookup(arg, obs.scope)
            if decl is not None and decl.capacity is not None and decl.capacity > 0:
                bound = decl.capacity - 1
        if spec.precision is not None:
            bound = spec.precision if bound is None else min(bound, spec.precision)
        return bound
