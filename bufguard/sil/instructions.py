"""
IR instruction definitions.

- Assign: strong update of an access path (x = e, s.f = e, p->f = e)
- Store: weak update through an index or pointer (a[i] = e, *p = e)
- Call: one per call expression, a call-graph edge
- Return: function return
- Prune: branch condition on a CFG edge
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union
from enum import Enum, auto

from .types import Ident, PVar, Exp, ExpVar, ExpCall, Location


# =============================================================================
# Enumerations
# =============================================================================

class PruneKind(Enum):
    """Kind of prune instruction (what control flow construct it came from)"""
    IF_TRUE = auto()
    IF_FALSE = auto()
    LOOP_ENTER = auto()
    LOOP_EXIT = auto()
    SWITCH_CASE = auto()


# =============================================================================
# Base Instruction
# =============================================================================

@dataclass
class Instr:
    """
    Base class for all IR instructions.

    Every instruction has a source location for findings.
    """
    loc: Location

    def __str__(self) -> str:
        return "<instr>"


# =============================================================================
# Data Instructions
# =============================================================================

@dataclass
class Assign(Instr):
    """
    Direct assignment: id = exp

    The destination is a temporary or an access path; the previous
    contents of the path are overwritten.
    """
    id: Union[Ident, PVar]
    exp: Exp

    def __str__(self) -> str:
        return f"{self.id} = {self.exp}"


@dataclass
class Store(Instr):
    """
    Store through an index or pointer: *addr = value

    `addr` is the lvalue expression (`a[i]`, `*p`). Only part of the
    target is written, so taint joins into it.
    """
    addr: Exp
    value: Exp

    def __str__(self) -> str:
        return f"{self.addr} := {self.value}"


@dataclass
class Prune(Instr):
    """
    Conditional prune: assume(condition)

    Encodes a branch on a CFG edge. Taint analysis is path-insensitive,
    so prunes only record where a branch came from.
    """
    condition: Exp
    is_true_branch: bool
    kind: PruneKind = PruneKind.IF_TRUE

    def __str__(self) -> str:
        branch = "true" if self.is_true_branch else "false"
        return f"prune({self.condition}, {branch})"


@dataclass
class Return(Instr):
    """Return from the current function"""
    value: Optional[Exp] = None

    def __str__(self) -> str:
        if self.value is not None:
            return f"return {self.value}"
        return "return"


# =============================================================================
# Function Call
# =============================================================================

@dataclass
class Call(Instr):
    """
    Function call: ret = func(args)

    `arg_locs` holds the source location of each argument, in order.
    Calls through a function pointer, a struct field or a member are
    `is_indirect`; their callee cannot be resolved statically.
    """
    ret: Optional[Ident]
    func: Exp
    args: List[Exp] = field(default_factory=list)
    arg_locs: List[Location] = field(default_factory=list)
    is_indirect: bool = False

    def __str__(self) -> str:
        call_str = str(self.as_exp())
        if self.ret:
            return f"{self.ret} = {call_str}"
        return call_str

    def as_exp(self) -> ExpCall:
        return ExpCall(self.func, list(self.args))

    def get_func_name(self) -> str:
        """Get the function name as a string"""
        if isinstance(self.func, ExpVar):
            return str(self.func.var)
        return str(self.func)

    def arg_loc(self, i: int) -> Location:
        if i < len(self.arg_locs):
            return self.arg_locs[i]
        return self.loc
