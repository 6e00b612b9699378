"""
Rule tables for taint sources, sinks, sanitizers and propagators.

The packaged defaults live in default_rules/ as JSON.
"""

from bufguard.sil.specs.rules import (
    RuleSet, TaintSourceSpec, SinkSignature, SanitizerSignature,
    PropagatorSignature, load_rules, DEFAULT_RULES_DIR,
)

__all__ = [
    "RuleSet", "TaintSourceSpec", "SinkSignature", "SanitizerSignature",
    "PropagatorSignature", "load_rules", "DEFAULT_RULES_DIR",
]
