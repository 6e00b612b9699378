"""
Buffer Catalog.

Records every fixed-capacity declaration of a translation unit (local and
global arrays, struct-typed variables, struct fields) and answers
"how big is the buffer this expression designates?".

Scopes:
    "<global>"        file-scope declarations
    "<function name>" locals and parameters
    "struct <Name>"   fields of a struct or union

A capacity of None means the size is not statically known. It never means
zero, and callers must treat it as "cannot prove safe".
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from ..errors import AnalyzerInvariantError
from ..procedure import StructLayout
from ..types import (
    Exp, ExpVar, ExpConst, ExpBinOp, ExpUnOp, ExpFieldAccess, ExpIndex,
    ExpCast, ExpSizeof, ExpTernary, PVar, Typ, TypeKind, Location,
    SCALAR_SIZES, POINTER_SIZE,
)


GLOBAL_SCOPE = "<global>"


def struct_scope(name: str) -> str:
    return f"struct {name}"


class BufferKind(Enum):
    FIXED_ARRAY = "fixed_array"
    FIXED_STRUCT = "fixed_struct"


@dataclass(frozen=True)
class BufferDeclaration:
    """A fixed-capacity buffer: capacity in elements, None when unknown"""
    name: str
    scope: str
    capacity: Optional[int]
    kind: BufferKind
    element_size: Optional[int] = None
    location: Optional[Location] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.scope}::{self.name}"

    @property
    def byte_size(self) -> Optional[int]:
        if self.capacity is None or self.element_size is None:
            return None
        return self.capacity * self.element_size

    def __str__(self) -> str:
        cap = "?" if self.capacity is None else str(self.capacity)
        return f"{self.qualified_name}[{cap}]"


def describe_buffer(dest: Exp, decl: Optional[BufferDeclaration]) -> Tuple[str, Optional[int]]:
    """Name and capacity to print for a destination"""
    if decl is not None:
        return decl.name, decl.capacity
    return str(dest), None


class BufferCatalog:
    """
    Per-unit symbol table of buffer declarations.

    The frontend declares symbols as it translates; the analyzers only
    query. Struct layouts, typedefs and integer constants are shared with
    the owning TranslationUnit.
    """

    def __init__(self, path: str,
                 structs: Optional[Dict[str, StructLayout]] = None,
                 constants: Optional[Dict[str, int]] = None):
        self.path = path
        self.structs: Dict[str, StructLayout] = structs if structs is not None else {}
        self.constants: Dict[str, int] = constants if constants is not None else {}
        self.symbols: Dict[str, Dict[str, Typ]] = {}
        self.declarations: Dict[Tuple[str, str], BufferDeclaration] = {}
        self._fields: Dict[str, List[str]] = {}

    def __iter__(self) -> Iterator[BufferDeclaration]:
        return iter(self.declarations.values())

    def __len__(self) -> int:
        return len(self.declarations)

    # =========================================================================
    # Population
    # =========================================================================

    def declare(self, scope: str, name: str, typ: Typ,
                loc: Optional[Location] = None) -> Optional[BufferDeclaration]:
        """Record a symbol; arrays and struct values become buffer declarations"""
        self._check_lengths(name, typ, loc)
        self.symbols.setdefault(scope, {})[name] = typ

        decl = self._make_declaration(name, scope, typ, loc)
        if decl is not None:
            self.declarations[(scope, name)] = decl
        return decl

    def declare_struct(self, layout: StructLayout) -> None:
        """Record every field of a struct layout under `struct <Name>`"""
        self.structs[layout.name] = layout
        scope = struct_scope(layout.name)
        for field_name, typ in layout.fields.items():
            self.declare(scope, field_name, typ, layout.loc)
            owners = self._fields.setdefault(field_name, [])
            if layout.name not in owners:
                owners.append(layout.name)

    def _check_lengths(self, name: str, typ: Optional[Typ], loc: Optional[Location]) -> None:
        while typ is not None and typ.kind == TypeKind.ARRAY:
            if typ.length is not None and typ.length < 0:
                where = f" at {loc}" if loc else ""
                raise AnalyzerInvariantError(
                    f"negative capacity {typ.length} for {name!r}{where}"
                )
            typ = typ.element

    def _make_declaration(self, name: str, scope: str, typ: Typ,
                          loc: Optional[Location]) -> Optional[BufferDeclaration]:
        if typ.kind == TypeKind.ARRAY:
            return BufferDeclaration(
                name=name,
                scope=scope,
                capacity=typ.length,
                kind=BufferKind.FIXED_ARRAY,
                element_size=self.sizeof(typ.element) if typ.element else None,
                location=loc,
            )
        if typ.kind == TypeKind.STRUCT:
            return BufferDeclaration(
                name=name,
                scope=scope,
                capacity=self.sizeof(typ),
                kind=BufferKind.FIXED_STRUCT,
                element_size=1,
                location=loc,
            )
        return None

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, scope: str, name: str) -> Optional[BufferDeclaration]:
        return self.declarations.get((scope, name))

    def symbol_type(self, name: str, scope: str) -> Optional[Typ]:
        """Type of a variable: function scope first, then globals"""
        typ = self.symbols.get(scope, {}).get(name)
        if typ is None:
            typ = self.symbols.get(GLOBAL_SCOPE, {}).get(name)
        return typ

    def lookup(self, exp: Exp, scope: str) -> Optional[BufferDeclaration]:
        """
        Resolve the buffer an expression designates.

        Handles plain variables, struct fields through `.` and `->`,
        `&buf`, `&buf[0]`, casts and elements of multi-dimensional arrays.
        Returns None when the expression is not a fixed buffer (pointers,
        parameters, arithmetic into the middle of a buffer).
        """
        exp = self._strip(exp, scope)
        typ = self.type_of(exp, scope)
        if typ is None or typ.kind not in (TypeKind.ARRAY, TypeKind.STRUCT):
            return None

        decl = self._declared(exp, scope)
        if decl is not None:
            return decl
        return self._make_declaration(str(exp), scope, typ, None)

    def capacity_of(self, exp: Exp, scope: str) -> Optional[int]:
        decl = self.lookup(exp, scope)
        return decl.capacity if decl else None

    def _strip(self, exp: Exp, scope: str) -> Exp:
        while True:
            if isinstance(exp, ExpCast):
                exp = exp.exp
            elif isinstance(exp, ExpUnOp) and exp.op == "&":
                inner = exp.operand
                if isinstance(inner, ExpIndex) and self.static_value(inner.index, scope) == 0:
                    return self._strip(inner.base, scope)
                exp = inner
            else:
                return exp

    def _declared(self, exp: Exp, scope: str) -> Optional[BufferDeclaration]:
        if isinstance(exp, ExpVar) and isinstance(exp.var, PVar):
            return self.get(scope, exp.var.name) or self.get(GLOBAL_SCOPE, exp.var.name)
        if isinstance(exp, ExpFieldAccess):
            struct_name = self._struct_name(exp.base, scope)
            if struct_name is None:
                struct_name = self._unique_owner(exp.field_name)
            if struct_name is not None:
                return self.get(struct_scope(struct_name), exp.field_name)
        return None

    def _struct_name(self, base: Exp, scope: str) -> Optional[str]:
        typ = self.type_of(base, scope)
        while typ is not None and typ.kind in (TypeKind.POINTER, TypeKind.ARRAY):
            typ = typ.pointee if typ.kind == TypeKind.POINTER else typ.element
        if typ is not None and typ.kind == TypeKind.STRUCT and typ.name in self.structs:
            return typ.name
        return None

    def _unique_owner(self, field_name: str) -> Optional[str]:
        owners = self._fields.get(field_name, [])
        if len(owners) == 1:
            return owners[0]
        return None

    def type_of(self, exp: Exp, scope: str) -> Optional[Typ]:
        """Static type of an expression, where the catalog can tell"""
        if isinstance(exp, ExpVar):
            if isinstance(exp.var, PVar):
                return self.symbol_type(exp.var.name, scope)
            return None
        if isinstance(exp, ExpFieldAccess):
            struct_name = self._struct_name(exp.base, scope)
            if struct_name is None:
                struct_name = self._unique_owner(exp.field_name)
            if struct_name is None:
                return None
            return self.structs[struct_name].fields.get(exp.field_name)
        if isinstance(exp, ExpIndex) or (isinstance(exp, ExpUnOp) and exp.op == "*"):
            base = exp.base if isinstance(exp, ExpIndex) else exp.operand
            typ = self.type_of(base, scope)
            if typ is None:
                return None
            if typ.kind == TypeKind.ARRAY:
                return typ.element
            if typ.kind == TypeKind.POINTER:
                return typ.pointee
            return None
        if isinstance(exp, ExpUnOp) and exp.op == "&":
            typ = self.type_of(exp.operand, scope)
            return Typ.pointer_to(typ) if typ is not None else None
        if isinstance(exp, ExpCast):
            return exp.typ
        if isinstance(exp, ExpConst) and isinstance(exp.value, str):
            return Typ.array_of(Typ.char_type(), len(exp.value.encode("utf-8")) + 1)
        return None

    # =========================================================================
    # Constant folding
    # =========================================================================

    def static_value(self, exp: Exp, scope: str = GLOBAL_SCOPE) -> Optional[int]:
        """
        Fold an expression to an integer, or None.

        Understands integer and character literals, object-like macros,
        enumerators, sizeof and integer arithmetic over those.
        """
        if isinstance(exp, ExpConst):
            if isinstance(exp.value, bool):
                return int(exp.value)
            if isinstance(exp.value, int):
                return exp.value
            return None
        if isinstance(exp, ExpVar):
            if isinstance(exp.var, PVar):
                return self.constants.get(exp.var.name)
            return None
        if isinstance(exp, ExpCast):
            return self.static_value(exp.exp, scope)
        if isinstance(exp, ExpSizeof):
            if exp.typ is not None:
                return self.sizeof(exp.typ)
            typ = self.type_of(exp.operand, scope) if exp.operand is not None else None
            return self.sizeof(typ) if typ is not None else None
        if isinstance(exp, ExpUnOp):
            value = self.static_value(exp.operand, scope)
            if value is None:
                return None
            if exp.op == "-":
                return -value
            if exp.op == "+":
                return value
            if exp.op == "~":
                return ~value
            if exp.op == "!":
                return int(not value)
            return None
        if isinstance(exp, ExpBinOp):
            left = self.static_value(exp.left, scope)
            right = self.static_value(exp.right, scope)
            if left is None or right is None:
                return None
            return fold_binop(exp.op, left, right)
        if isinstance(exp, ExpTernary):
            cond = self.static_value(exp.condition, scope)
            if cond is None:
                return None
            return self.static_value(exp.true_exp if cond else exp.false_exp, scope)
        return None

    def sizeof(self, typ: Optional[Typ], _visiting: Optional[set] = None) -> Optional[int]:
        """Size in bytes on an LP64 target, None when not computable"""
        if typ is None:
            return None
        if typ.kind in (TypeKind.CHAR, TypeKind.INT, TypeKind.FLOAT, TypeKind.BOOL):
            if typ.name in SCALAR_SIZES:
                return SCALAR_SIZES[typ.name]
            return 1 if typ.kind == TypeKind.CHAR else 4
        if typ.kind == TypeKind.POINTER:
            return POINTER_SIZE
        if typ.kind == TypeKind.ARRAY:
            elem = self.sizeof(typ.element, _visiting)
            if typ.length is None or elem is None:
                return None
            return typ.length * elem
        if typ.kind == TypeKind.STRUCT:
            return self._struct_size(typ.name, _visiting or set())
        return None

    def alignof(self, typ: Optional[Typ], _visiting: Optional[set] = None) -> Optional[int]:
        if typ is None:
            return None
        if typ.kind == TypeKind.ARRAY:
            return self.alignof(typ.element, _visiting)
        if typ.kind == TypeKind.STRUCT:
            layout = self.structs.get(typ.name)
            if layout is None:
                return None
            visiting = _visiting or set()
            if typ.name in visiting:
                return None
            aligns = [self.alignof(t, visiting | {typ.name}) for t in layout.fields.values()]
            if any(a is None for a in aligns):
                return None
            return max(aligns, default=1)
        return self.sizeof(typ, _visiting)

    def _struct_size(self, name: Optional[str], visiting: set) -> Optional[int]:
        layout = self.structs.get(name) if name else None
        if layout is None or name in visiting:
            return None
        visiting = visiting | {name}

        offset = 0
        max_align = 1
        for typ in layout.fields.values():
            size = self.sizeof(typ, visiting)
            align = self.alignof(typ, visiting)
            if size is None or align is None:
                return None
            max_align = max(max_align, align)
            if layout.is_union:
                offset = max(offset, size)
            else:
                offset = _round_up(offset, align) + size
        return _round_up(offset, max_align)


def _round_up(value: int, align: int) -> int:
    if align <= 1:
        return value
    return (value + align - 1) // align * align


def fold_binop(op: str, left: int, right: int) -> Optional[int]:
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if op in ("/", "%"):
        if right == 0:
            return None
        # C truncates toward zero
        quotient = abs(left) // abs(right)
        if (left < 0) != (right < 0):
            quotient = -quotient
        return quotient if op == "/" else left - quotient * right
    if op == "<<":
        return left << right if right >= 0 else None
    if op == ">>":
        return left >> right if right >= 0 else None
    if op == "&":
        return left & right
    if op == "|":
        return left | right
    if op == "^":
        return left ^ right
    if op == "==":
        return int(left == right)
    if op == "!=":
        return int(left != right)
    if op == "<":
        return int(left < right)
    if op == ">":
        return int(left > right)
    if op == "<=":
        return int(left <= right)
    if op == ">=":
        return int(left >= right)
    if op == "&&":
        return int(bool(left) and bool(right))
    if op == "||":
        return int(bool(left) or bool(right))
    return None
