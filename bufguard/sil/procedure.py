"""
Procedure, control flow graph and translation unit definitions.

This module defines:
- Node: A basic block in the CFG
- Procedure: A C function with its CFG
- StructLayout: Field layout of a struct or union
- TranslationUnit: One parsed source file
- CallSite / CallGraph: Call edges across all analyzed units
"""

from dataclasses import dataclass, field
from typing import List, Dict, Optional, Set, Tuple, Iterator, Any
from enum import Enum, auto

from .types import PVar, Typ, Location
from .instructions import Instr, Call
from .errors import AnalyzerInvariantError


# =============================================================================
# CFG Node
# =============================================================================

class NodeKind(Enum):
    """Kind of CFG node"""
    ENTRY = auto()        # Function entry point
    EXIT = auto()         # Function exit point
    NORMAL = auto()       # Normal basic block
    BRANCH = auto()       # Branch point (if/switch)
    JOIN = auto()         # Join point (merge of branches)
    LOOP_HEAD = auto()    # Loop header


@dataclass
class Node:
    """
    A node in the Control Flow Graph.

    Each node is a basic block: a sequence of instructions with a single
    entry and a single exit. Control flow is represented by
    successor/predecessor edges.
    """

    id: int
    instrs: List[Instr] = field(default_factory=list)
    succs: List[int] = field(default_factory=list)
    preds: List[int] = field(default_factory=list)
    kind: NodeKind = NodeKind.NORMAL
    label: Optional[str] = None

    def __str__(self) -> str:
        lines = [f"Node {self.id} ({self.kind.name}):"]
        for instr in self.instrs:
            lines.append(f"  {instr}")
        if self.succs:
            lines.append(f"  -> {self.succs}")
        return "\n".join(lines)

    def add_instr(self, instr: Instr) -> None:
        """Add an instruction to this node"""
        self.instrs.append(instr)

    def add_succ(self, node_id: int) -> None:
        """Add a successor edge"""
        if node_id not in self.succs:
            self.succs.append(node_id)

    def add_pred(self, node_id: int) -> None:
        """Add a predecessor edge"""
        if node_id not in self.preds:
            self.preds.append(node_id)


# =============================================================================
# Procedure
# =============================================================================

@dataclass
class Procedure:
    """
    A C function in the IR.

    Contains the signature, local variable types and the CFG.
    """

    name: str
    params: List[Tuple[PVar, Typ]] = field(default_factory=list)
    ret_type: Optional[Typ] = None
    locals: Dict[str, Typ] = field(default_factory=dict)

    # Control flow graph
    nodes: Dict[int, Node] = field(default_factory=dict)
    entry_node: int = 0
    exit_node: int = -1

    loc: Optional[Location] = None
    is_variadic: bool = False

    _next_node_id: int = field(default=0, repr=False)

    def __str__(self) -> str:
        params_str = ", ".join(f"{t} {p.name}" for p, t in self.params)
        ret_str = f"{self.ret_type} " if self.ret_type else ""
        return f"{ret_str}{self.name}({params_str})"

    # =========================================================================
    # CFG Construction
    # =========================================================================

    def new_node(self, kind: NodeKind = NodeKind.NORMAL) -> Node:
        """Create a new CFG node and register it"""
        node = Node(id=self._next_node_id, kind=kind)
        self._next_node_id += 1
        self.nodes[node.id] = node
        return node

    def connect(self, from_id: int, to_id: int) -> None:
        """Connect two nodes with an edge"""
        if from_id in self.nodes and to_id in self.nodes:
            self.nodes[from_id].add_succ(to_id)
            self.nodes[to_id].add_pred(from_id)

    # =========================================================================
    # CFG Traversal
    # =========================================================================

    def reverse_postorder(self) -> List[Node]:
        """
        Get nodes in reverse postorder from the entry.

        Nodes unreachable from the entry (code after a return, goto
        targets) follow in id order so that every node gets visited.
        """
        visited: Set[int] = set()
        postorder: List[Node] = []

        if self.entry_node in self.nodes:
            stack = [(self.entry_node, iter(self.nodes[self.entry_node].succs))]
            visited.add(self.entry_node)
            while stack:
                node_id, succs = stack[-1]
                advanced = False
                for succ_id in succs:
                    if succ_id not in visited and succ_id in self.nodes:
                        visited.add(succ_id)
                        stack.append((succ_id, iter(self.nodes[succ_id].succs)))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    postorder.append(self.nodes[node_id])

        order = list(reversed(postorder))
        for node_id in sorted(self.nodes):
            if node_id not in visited:
                order.append(self.nodes[node_id])
        return order

    def cfg_iter(self) -> Iterator[Node]:
        """Iterate over nodes in reverse postorder"""
        yield from self.reverse_postorder()

    def get_all_instrs(self) -> Iterator[Instr]:
        """Iterate over all instructions in the procedure"""
        for node in self.cfg_iter():
            yield from node.instrs

    def validate(self) -> None:
        """Check that every CFG edge refers to a node of this procedure"""
        for node in self.nodes.values():
            for other in node.succs + node.preds:
                if other not in self.nodes:
                    raise AnalyzerInvariantError(
                        f"{self.name}: node {node.id} has an edge to missing node {other}"
                    )

    # =========================================================================
    # Analysis helpers
    # =========================================================================

    def get_param_names(self) -> List[str]:
        """Get list of parameter names"""
        return [p.name for p, _ in self.params]

    def get_all_vars(self) -> Set[str]:
        """Get all variable names (params + locals)"""
        result = set(self.get_param_names())
        result.update(self.locals.keys())
        return result


# =============================================================================
# Translation unit
# =============================================================================

@dataclass
class StructLayout:
    """Declared fields of a struct or union, in declaration order"""
    name: str
    fields: Dict[str, Typ] = field(default_factory=dict)
    is_union: bool = False
    loc: Optional[Location] = None


@dataclass
class TranslationUnit:
    """
    One parsed source file.

    Owns its procedures, globals, struct layouts, integer constants
    (object-like macros and enumerators) and its buffer catalog.
    """

    path: str
    language: str = "c"
    procedures: Dict[str, Procedure] = field(default_factory=dict)
    globals: Dict[str, Typ] = field(default_factory=dict)
    structs: Dict[str, StructLayout] = field(default_factory=dict)
    typedefs: Dict[str, Typ] = field(default_factory=dict)
    constants: Dict[str, int] = field(default_factory=dict)
    catalog: Any = None
    # Lines of recovered syntax errors
    syntax_errors: List[int] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [f"TranslationUnit {self.path} with {len(self.procedures)} procedures:"]
        for name in self.procedures:
            lines.append(f"  - {name}")
        return "\n".join(lines)

    def add_procedure(self, proc: Procedure) -> None:
        """Add a procedure; a later definition with the same name wins"""
        self.procedures[proc.name] = proc

    def call_sites(self) -> Iterator['CallSite']:
        """Yield one CallSite per Call instruction, procedure by procedure"""
        for proc_name, proc in self.procedures.items():
            for instr in proc.get_all_instrs():
                if isinstance(instr, Call):
                    yield CallSite(
                        caller=proc_name,
                        callee=instr.get_func_name(),
                        arguments=tuple(str(a) for a in instr.args),
                        location=instr.loc,
                        is_indirect=instr.is_indirect,
                    )


# =============================================================================
# Call graph
# =============================================================================

@dataclass(frozen=True)
class CallSite:
    """A call edge: caller invokes callee at location"""
    caller: str
    callee: str
    arguments: Tuple[str, ...]
    location: Location
    is_indirect: bool = False


class CallGraph:
    """
    Call graph over every analyzed translation unit.

    Built once after all units are parsed and shared read-only by the
    propagation workers. Function definitions are indexed by name; when a
    name is defined in several units, the caller's own unit wins, then
    the first unit in path order.
    """

    def __init__(self):
        self.definitions: Dict[str, List[Tuple[TranslationUnit, Procedure]]] = {}
        self.call_sites: List[CallSite] = []
        self.calls_from: Dict[str, Set[str]] = {}
        self.calls_to: Dict[str, Set[str]] = {}

    @classmethod
    def build(cls, units: List[TranslationUnit]) -> 'CallGraph':
        graph = cls()
        for unit in sorted(units, key=lambda u: u.path):
            graph.add_unit(unit)
        return graph

    def add_unit(self, unit: TranslationUnit) -> None:
        """
        Add the definitions and call edges of a unit.

        Raises:
            AnalyzerInvariantError: for a dangling CFG or call edge; the
                                    graph is left unchanged in that case
        """
        for proc in unit.procedures.values():
            proc.validate()
        sites = list(unit.call_sites())
        for site in sites:
            if site.caller not in unit.procedures:
                raise AnalyzerInvariantError(
                    f"{unit.path}: call edge from unknown function {site.caller!r}"
                )

        for proc in unit.procedures.values():
            self.definitions.setdefault(proc.name, []).append((unit, proc))
        for site in sites:
            self.call_sites.append(site)
            if site.is_indirect:
                continue
            self.calls_from.setdefault(site.caller, set()).add(site.callee)
            self.calls_to.setdefault(site.callee, set()).add(site.caller)

    def resolve(self, name: str,
                from_unit: Optional[TranslationUnit] = None
                ) -> Optional[Tuple[TranslationUnit, Procedure]]:
        """Find the definition a direct call to `name` reaches"""
        candidates = self.definitions.get(name)
        if not candidates:
            return None
        if from_unit is not None:
            for unit, proc in candidates:
                if unit is from_unit:
                    return unit, proc
        return candidates[0]

    def is_defined(self, name: str) -> bool:
        return name in self.definitions

    def callees_of(self, name: str) -> Set[str]:
        return self.calls_from.get(name, set())

    def callers_of(self, name: str) -> Set[str]:
        return self.calls_to.get(name, set())
