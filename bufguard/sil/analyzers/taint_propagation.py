"""
Dataflow Propagation Engine.

Forward taint analysis per function over the CFG, computed as a fixed
point of reverse-postorder passes:

    in(n)  = entry state                     if n is the entry (or has no preds)
           = join of out(p) for p in preds   otherwise
    out(n) = transfer(n, in(n))

Assignments strongly update their access path; stores through an index or
pointer are weak. Direct calls to defined functions are entered with the
actual arguments' taint bound to the formals while interprocedural depth
remains. Indirect calls produce Unknown. Library calls go through the
propagator table, and a recognized sanitizer resets its destination.

Once the states are stable, a final replay pass walks every node once more
and records one CallObservation per call (the argument taint just before the
call), which the sink matcher and format checker turn into findings.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import sys
import time

from ..errors import AnalyzerInvariantError, AnalysisTimeoutError
from ..instructions import Instr, Assign, Store, Prune, Return, Call
from ..procedure import Procedure, TranslationUnit, CallGraph, Node
from ..report import Diagnostic, DiagnosticKind
from ..specs.rules import RuleSet, SanitizerSignature
from ..taint import TaintEnv, TaintLevel, TaintStep, TaintValue, UNTAINTED
from ..types import (
    Exp, ExpVar, ExpConst, ExpBinOp, ExpUnOp, ExpFieldAccess, ExpIndex,
    ExpCast, ExpSizeof, ExpCall, ExpTernary, Ident, PVar, Location, access_path,
)


DEFAULT_MAX_ITERATIONS = 64
DEFAULT_MAX_DEPTH = 1


@dataclass
class CallObservation:
    """A call as seen by the final pass: callee, arguments and their taint"""
    unit: TranslationUnit
    procedure: str
    call: Call
    arg_values: List[TaintValue]
    next_instr: Optional[Instr] = None

    @property
    def function(self) -> str:
        return self.call.get_func_name()

    @property
    def scope(self) -> str:
        return self.procedure

    def arg_value(self, index: int) -> TaintValue:
        if 0 <= index < len(self.arg_values):
            return self.arg_values[index]
        return UNTAINTED


@dataclass
class FunctionTaintResult:
    """Outcome of analyzing one function in one calling context"""
    procedure: str
    unit_path: str
    return_value: TaintValue = UNTAINTED
    observations: List[CallObservation] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    iterations: int = 0
    converged: bool = True
    # Per pass: node id -> path -> level, only when history is enabled
    history: List[Dict[int, Dict[str, TaintLevel]]] = field(default_factory=list)


@dataclass
class _Context:
    unit: TranslationUnit
    proc: Procedure
    depth: int
    widened: Optional[TaintStep] = None
    record: bool = False
    returns: TaintValue = UNTAINTED
    observations: List[CallObservation] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)


class TaintPropagationEngine:
    """
    Computes taint states for the functions of one translation unit.

    Usage:
        engine = TaintPropagationEngine(rules, call_graph)
        for result in engine.analyze_unit(unit):
            for obs in result.observations:
                ...

    The rule set and call graph are only read. Callee results are memoized
    per (function, parameter levels, remaining depth), so an engine should
    not be shared between threads.
    """

    def __init__(self, rules: RuleSet,
                 call_graph: Optional[CallGraph] = None,
                 max_depth: int = DEFAULT_MAX_DEPTH,
                 max_iterations: int = DEFAULT_MAX_ITERATIONS,
                 deadline: Optional[float] = None,
                 timeout: float = 0.0,
                 record_history: bool = False,
                 verbose: bool = False):
        if max_depth < 0:
            raise ValueError("max_depth must be non-negative")
        if max_iterations < 1:
            raise ValueError("max_iterations must be positive")
        self.rules = rules
        self.call_graph = call_graph
        self.max_depth = max_depth
        self.max_iterations = max_iterations
        self.deadline = deadline
        self.timeout = timeout
        self.record_history = record_history
        self.verbose = verbose
        self._memo: Dict[Tuple, FunctionTaintResult] = {}

    # =========================================================================
    # Entry points
    # =========================================================================

    def analyze_unit(self, unit: TranslationUnit) -> List[FunctionTaintResult]:
        """Analyze every function of `unit` as an entry point"""
        if self.call_graph is None:
            self.call_graph = CallGraph.build([unit])
        results = []
        for proc in unit.procedures.values():
            results.append(self.analyze_procedure(unit, proc))
        return results

    def analyze_procedure(self, unit: TranslationUnit, proc: Procedure,
                          params: Optional[Dict[str, TaintValue]] = None,
                          depth: Optional[int] = None) -> FunctionTaintResult:
        """
        Analyze one function.

        Args:
            unit: Unit that defines `proc`
            proc: The function
            params: Taint bound to formals by a caller (None for an entry point)
            depth: Remaining interprocedural depth (defaults to max_depth)
        """
        if depth is None:
            depth = self.max_depth
        if self.call_graph is None:
            self.call_graph = CallGraph.build([unit])

        entry = self._entry_env(proc, params or {})
        key = (unit.path, proc.name, depth,
               tuple(sorted((p, entry.read(p).level) for p in proc.get_param_names())))
        cached = self._memo.get(key)
        if cached is not None:
            return cached

        result = self._solve(unit, proc, entry, depth)
        self._memo[key] = result
        return result

    # =========================================================================
    # Fixed point
    # =========================================================================

    def _entry_env(self, proc: Procedure, params: Dict[str, TaintValue]) -> TaintEnv:
        env = TaintEnv()
        loc = proc.loc or Location.unknown()
        for name in proc.get_param_names():
            value = params.get(name, UNTAINTED)
            spec = self.rules.parameter_source(name)
            if spec is not None:
                value = value.join(TaintValue.tainted(
                    TaintStep(loc, f"parameter '{name}' of {proc.name}()")))
            env.assign(name, value)
        return env

    def _solve(self, unit: TranslationUnit, proc: Procedure,
               entry: TaintEnv, depth: int) -> FunctionTaintResult:
        order = proc.reverse_postorder()
        out_states: Dict[int, TaintEnv] = {}
        result = FunctionTaintResult(procedure=proc.name, unit_path=unit.path)
        ctx = _Context(unit=unit, proc=proc, depth=depth)

        # max_iterations bounds the passes that change some state; one more
        # pass confirms the fixed point
        converged = False
        while result.iterations <= self.max_iterations:
            result.iterations += 1
            changed = False
            for node in order:
                self._check_deadline()
                out = self._transfer(ctx, node, self._in_state(proc, node, entry, out_states))
                old = out_states.get(node.id)
                if old is not None:
                    if not old.leq(out):
                        raise AnalyzerInvariantError(
                            f"{proc.name}: taint decreased at node {node.id} "
                            f"in pass {result.iterations}"
                        )
                    if old.levels() == out.levels():
                        continue
                out_states[node.id] = out
                changed = True
            if self.record_history:
                result.history.append({n: env.levels() for n, env in out_states.items()})
            if not changed:
                converged = True
                break

        result.converged = converged
        if not converged:
            loc = proc.loc or Location.unknown()
            ctx.widened = TaintStep(loc, f"iteration limit reached in {proc.name}()")
            ctx.diagnostics.append(Diagnostic(
                kind=DiagnosticKind.ITERATION_LIMIT,
                file=unit.path,
                line=loc.line,
                message=(f"taint for {proc.name}() did not stabilize within "
                         f"{self.max_iterations} iterations; results widened to unknown"),
            ))
            self._log(f"Iteration limit hit in {proc.name}()")

        # Replay pass over the final states records observations and returns
        ctx.record = True
        for node in order:
            self._check_deadline()
            env = self._in_state(proc, node, entry, out_states)
            if ctx.widened is not None:
                env = env.widen(ctx.widened, proc.get_all_vars())
            self._transfer(ctx, node, env)

        result.return_value = ctx.returns
        if ctx.widened is not None:
            result.return_value = result.return_value.join(TaintValue.unknown(ctx.widened))
        result.observations = ctx.observations
        result.diagnostics = ctx.diagnostics
        self._log(f"{proc.name}(): {result.iterations} iteration(s), "
                  f"{len(result.observations)} call(s), return {result.return_value}")
        return result

    def _in_state(self, proc: Procedure, node: Node, entry: TaintEnv,
                  out_states: Dict[int, TaintEnv]) -> TaintEnv:
        if node.id == proc.entry_node or not node.preds:
            return entry.copy()
        env = TaintEnv()
        for pred in node.preds:
            pred_out = out_states.get(pred)
            if pred_out is not None:
                env = env.join(pred_out)
        return env

    def _check_deadline(self) -> None:
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise AnalysisTimeoutError(self.timeout)

    # =========================================================================
    # Transfer functions
    # =========================================================================

    def _transfer(self, ctx: _Context, node: Node, env: TaintEnv) -> TaintEnv:
        env = env.copy()
        for i, instr in enumerate(node.instrs):
            next_instr = node.instrs[i + 1] if i + 1 < len(node.instrs) else None
            if isinstance(instr, Assign):
                value = self._eval(ctx, instr.exp, env)
                if isinstance(instr.id, PVar):
                    value = value.extend(TaintStep(instr.loc, f"assigned to '{instr.id.name}'"))
                env.assign(str(instr.id), value)
            elif isinstance(instr, Store):
                path = access_path(instr.addr)
                if path is not None:
                    value = self._eval(ctx, instr.value, env)
                    env.store(path, value.extend(TaintStep(instr.loc, f"stored into '{path}'")))
            elif isinstance(instr, Call):
                self._transfer_call(ctx, instr, next_instr, env)
            elif isinstance(instr, Return):
                if ctx.record and instr.value is not None:
                    ctx.returns = ctx.returns.join(self._eval(ctx, instr.value, env))
            elif isinstance(instr, Prune):
                pass
            else:
                raise AnalyzerInvariantError(f"unhandled instruction {type(instr).__name__}")
        return env

    def _transfer_call(self, ctx: _Context, instr: Call,
                       next_instr: Optional[Instr], env: TaintEnv) -> None:
        name = instr.get_func_name()
        arg_values = [self._eval(ctx, a, env) for a in instr.args]
        if ctx.record:
            ctx.observations.append(CallObservation(
                unit=ctx.unit,
                procedure=ctx.proc.name,
                call=instr,
                arg_values=arg_values,
                next_instr=next_instr,
            ))

        ret = self._call_result(ctx, instr, name, arg_values)

        # Untrusted producers fill their out-arguments
        for spec in self.rules.out_argument_sources(name):
            for i in spec.out_indices(len(instr.args)):
                path = access_path(instr.args[i])
                if path is not None:
                    env.assign(path, TaintValue.tainted(
                        TaintStep(instr.arg_loc(i), f"filled by {name}()")))

        for prop in self.rules.propagators_for(name):
            value = UNTAINTED
            for i in prop.source_indices(len(arg_values)):
                value = value.join(arg_values[i])
            value = value.extend(TaintStep(instr.loc, f"propagated through {name}()"))
            if prop.to_return:
                ret = ret.join(value)
            for i in prop.target_indices(len(instr.args)):
                path = access_path(instr.args[i])
                if path is None:
                    continue
                if prop.strong:
                    env.assign(path, value)
                else:
                    env.store(path, value)

        sanitizer = self.rules.sanitizer_for(name)
        if sanitizer is not None and self._sanitizes(ctx, sanitizer, instr, next_instr):
            path = access_path(instr.args[sanitizer.destination])
            if path is not None:
                env.assign(path, UNTAINTED)

        if instr.ret is not None:
            env.assign(str(instr.ret), ret)

    def _call_result(self, ctx: _Context, instr: Call, name: str,
                     arg_values: List[TaintValue]) -> TaintValue:
        """Taint of the value a call returns"""
        if instr.is_indirect:
            return TaintValue.unknown(TaintStep(instr.loc, "indirect call result"))

        if self.rules.return_source(name) is not None:
            return TaintValue.tainted(TaintStep(instr.loc, f"return value of {name}()"))

        target = self.call_graph.resolve(name, ctx.unit) if self.call_graph else None
        if target is None:
            return UNTAINTED
        if ctx.depth <= 0:
            return UNTAINTED

        callee_unit, callee = target
        params: Dict[str, TaintValue] = {}
        for i, param in enumerate(callee.get_param_names()):
            if i < len(arg_values):
                params[param] = arg_values[i].extend(
                    TaintStep(instr.arg_loc(i), f"passed to {name}() as '{param}'"))

        result = self.analyze_procedure(callee_unit, callee, params, ctx.depth - 1)
        if ctx.record:
            ctx.observations.extend(result.observations)
            ctx.diagnostics.extend(result.diagnostics)
        return result.return_value.extend(TaintStep(instr.loc, f"returned from {name}()"))

    def _sanitizes(self, ctx: _Context, sanitizer: SanitizerSignature,
                   instr: Call, next_instr: Optional[Instr]) -> bool:
        """
        True when a bounded copy provably fits its destination.

        The bound must fold to at most capacity - 1. With a terminator
        requirement, the very next instruction of the block must store 0
        into the destination at a constant index within the buffer.
        """
        if sanitizer.destination >= len(instr.args) or sanitizer.bound >= len(instr.args):
            return False
        catalog = ctx.unit.catalog
        scope = ctx.proc.name
        dest = instr.args[sanitizer.destination]
        capacity = catalog.capacity_of(dest, scope)
        bound = catalog.static_value(instr.args[sanitizer.bound], scope)
        if capacity is None or bound is None or bound > capacity - 1:
            return False
        if not sanitizer.requires_terminator:
            return True

        if not isinstance(next_instr, Store) or not isinstance(next_instr.addr, ExpIndex):
            return False
        if access_path(next_instr.addr) != access_path(dest):
            return False
        if catalog.static_value(next_instr.value, scope) != 0:
            return False
        index = catalog.static_value(next_instr.addr.index, scope)
        return index is not None and 0 <= index <= capacity - 1

    # =========================================================================
    # Expressions
    # =========================================================================

    def _eval(self, ctx: _Context, exp: Exp, env: TaintEnv) -> TaintValue:
        value = self._eval_exp(ctx, exp, env)
        if ctx.widened is not None and not isinstance(exp, (ExpConst, ExpSizeof)):
            value = value.join(TaintValue.unknown(ctx.widened))
        return value

    def _eval_exp(self, ctx: _Context, exp: Exp, env: TaintEnv) -> TaintValue:
        if isinstance(exp, ExpVar):
            if isinstance(exp.var, Ident):
                return env.get(str(exp.var))
            return env.read(exp.var.name)
        if isinstance(exp, (ExpConst, ExpSizeof)):
            return UNTAINTED
        if isinstance(exp, ExpBinOp):
            return self._eval_exp(ctx, exp.left, env).join(self._eval_exp(ctx, exp.right, env))
        if isinstance(exp, ExpUnOp):
            return self._eval_exp(ctx, exp.operand, env)
        if isinstance(exp, ExpFieldAccess):
            path = access_path(exp)
            if path is not None:
                return env.read(path)
            return self._eval_exp(ctx, exp.base, env)
        if isinstance(exp, ExpIndex):
            # The element carries the array's taint; a tainted index does not
            # make the data itself attacker controlled
            return self._eval_exp(ctx, exp.base, env)
        if isinstance(exp, ExpCast):
            return self._eval_exp(ctx, exp.exp, env)
        if isinstance(exp, ExpTernary):
            return self._eval_exp(ctx, exp.true_exp, env).join(
                self._eval_exp(ctx, exp.false_exp, env))
        if isinstance(exp, ExpCall):
            value = UNTAINTED
            for arg in exp.args:
                value = value.join(self._eval_exp(ctx, arg, env))
            return value
        raise AnalyzerInvariantError(f"unhandled expression {type(exp).__name__}")

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[Taint] {message}", file=sys.stderr)
