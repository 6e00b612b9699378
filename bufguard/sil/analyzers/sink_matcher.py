"""
Sink Matcher.

Turns call observations into findings for the copy-style sinks (string
copies, concatenations, memory copies, bounded copies, formatted prints
and input reads). Scan-family format strings are handled by the format
checker.

A call is reported when the data written is Tainted or Unknown and
nothing proves the write fits: there is no size argument, the size does
not fold to a constant, the destination capacity is Unknown, or the size
exceeds the capacity. An unbounded sprintf whose formatted output has a
static bound that fits the destination is not reported.
"""

from typing import List, Optional

from ..report import Finding
from ..specs.rules import RuleSet, SinkSignature
from ..taint import TaintStep, TaintValue, UNTAINTED
from .buffer_catalog import describe_buffer
from .format_checker import FormatStringChecker
from .taint_propagation import CallObservation


# Kinds whose size argument counts bytes rather than elements
BYTE_SIZED_KINDS = ("memory_copy", "input_read")


class SinkMatcher:
    """
    Matches observed calls against the non-scan sink signatures.

    Usage:
        matcher = SinkMatcher(rules)
        findings = matcher.match(observation)
    """

    def __init__(self, rules: RuleSet):
        self.rules = rules
        self.formats = FormatStringChecker(rules)

    def match_all(self, observations: List[CallObservation]) -> List[Finding]:
        findings = []
        for obs in observations:
            findings.extend(self.match(obs))
        return findings

    def match(self, obs: CallObservation) -> List[Finding]:
        """One finding per matching signature at this call site, at most"""
        findings = []
        for signature in self.rules.sinks_for(obs.function):
            if signature.is_scan:
                continue
            finding = self._check(obs, signature)
            if finding is not None:
                findings.append(finding)
        return findings

    def _check(self, obs: CallObservation, signature: SinkSignature) -> Optional[Finding]:
        call = obs.call
        if signature.destination is None or signature.destination >= len(call.args):
            return None

        value = self._written_value(obs, signature)
        if value.is_untainted:
            return None

        catalog = obs.unit.catalog
        dest = call.args[signature.destination]
        decl = catalog.lookup(dest, obs.scope)
        limit = None
        if decl is not None:
            limit = decl.byte_size if signature.kind in BYTE_SIZED_KINDS else decl.capacity

        if signature.is_print and signature.size is None and limit is not None:
            # sprintf whose formatted output provably fits
            needed = self.formats.output_size(obs, signature)
            if needed is not None and needed <= limit:
                return None

        size = None
        bounded = signature.size is not None and signature.size < len(call.args)
        if bounded:
            size = catalog.static_value(call.args[signature.size], obs.scope)
            if size is not None and limit is not None and size <= limit:
                return None

        name, capacity = describe_buffer(dest, decl)
        cap_text = "unknown capacity" if capacity is None else f"capacity {capacity}"
        if not bounded:
            problem = "without a bound"
        elif size is None:
            problem = "with a bound that is not a constant"
        elif limit is None:
            problem = f"with bound {size} that cannot be checked"
        else:
            problem = f"with bound {size}, which exceeds the buffer"

        message = (f"{obs.function}() writes {value.level} data into '{name}' "
                   f"({cap_text}) {problem}")
        chain = value.chain + (TaintStep(call.loc, f"reaches {obs.function}()"),)
        return Finding(
            rule_id=signature.rule_id,
            severity=signature.severity_for(value.level),
            location=call.loc,
            message=message,
            procedure=obs.procedure,
            buffer_name=name,
            buffer_capacity=capacity,
            taint_level=value.level,
            taint_chain=chain,
        )

    def _written_value(self, obs: CallObservation, signature: SinkSignature) -> TaintValue:
        """Taint of the data the call writes into its destination"""
        if signature.kind == "input_read":
            # The data comes from outside the program by definition
            value = TaintValue.tainted(
                TaintStep(obs.call.loc, f"external input read by {obs.function}()"))
            if signature.source is not None:
                value = value.join(obs.arg_value(signature.source))
            return value

        if signature.is_print:
            value = UNTAINTED
            if signature.format is not None:
                value = value.join(obs.arg_value(signature.format))
            if signature.variadic_from is not None:
                for i in range(signature.variadic_from, len(obs.arg_values)):
                    value = value.join(obs.arg_value(i))
            return value

        if signature.source is None:
            return UNTAINTED
        return obs.arg_value(signature.source)

