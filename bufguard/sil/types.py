"""
Core type definitions for the bufguard IR.

This module defines the fundamental types used throughout the IR:
- Identifiers and program variables
- Source locations for findings and diagnostics
- C type representations with LP64 sizes
- Expression AST nodes
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union, Dict, Any
from enum import Enum, auto


# =============================================================================
# Identifiers and Variables
# =============================================================================

@dataclass(frozen=True)
class Ident:
    """
    Identifier - a temporary introduced by the frontend.

    Nested calls are hoisted into these temporaries in evaluation order.

    Example: $call_3
    """
    name: str
    stamp: int = 0

    def __str__(self) -> str:
        if self.stamp:
            return f"${self.name}_{self.stamp}"
        return f"${self.name}"

    def __repr__(self) -> str:
        return f"Ident({self.name!r}, {self.stamp})"


@dataclass(frozen=True)
class PVar:
    """
    Program variable - a variable or access path from the source code.

    Field assignments use the dotted access path as the name, so that
    `dest->groups = x` and `dest.groups = x` both write `dest.groups`.

    Example: buf, dest.groups
    """
    name: str

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"PVar({self.name!r})"


@dataclass(frozen=True)
class Location:
    """
    Source location of an instruction, argument or declaration.

    Lines and columns are 1-based.
    """
    file: str
    line: int
    column: int = 0
    end_line: Optional[int] = None
    end_column: Optional[int] = None

    def __str__(self) -> str:
        if self.column:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"

    def __repr__(self) -> str:
        return f"Location({self.file!r}, {self.line}, {self.column})"

    @classmethod
    def unknown(cls) -> 'Location':
        """Create an unknown location"""
        return cls("<unknown>", 0)


# =============================================================================
# Types
# =============================================================================

class TypeKind(Enum):
    """Basic type kinds"""
    CHAR = auto()
    INT = auto()
    FLOAT = auto()
    BOOL = auto()
    POINTER = auto()
    ARRAY = auto()
    STRUCT = auto()
    FUNCTION = auto()
    VOID = auto()
    UNKNOWN = auto()


# Scalar sizes for an LP64 target
SCALAR_SIZES: Dict[str, int] = {
    "char": 1, "signed char": 1, "unsigned char": 1,
    "short": 2, "unsigned short": 2, "short int": 2,
    "int": 4, "unsigned": 4, "unsigned int": 4, "signed": 4,
    "long": 8, "unsigned long": 8, "long int": 8,
    "long long": 8, "unsigned long long": 8,
    "float": 4, "double": 8, "long double": 16,
    "bool": 1, "_Bool": 1,
    "int8_t": 1, "uint8_t": 1, "int16_t": 2, "uint16_t": 2,
    "int32_t": 4, "uint32_t": 4, "int64_t": 8, "uint64_t": 8,
    "size_t": 8, "ssize_t": 8, "off_t": 8, "ptrdiff_t": 8,
    "intptr_t": 8, "uintptr_t": 8, "wchar_t": 4,
    "u_char": 1, "u_int": 4, "u_long": 8,
}

POINTER_SIZE = 8


@dataclass
class Typ:
    """
    Type representation.

    Arrays carry their element count in `length` when it is statically
    known; `length is None` means the size is symbolic or omitted.
    Struct types are referenced by name and resolved through the
    translation unit's struct layouts.
    """
    kind: TypeKind
    pointee: Optional['Typ'] = None           # For pointers
    element: Optional['Typ'] = None           # For arrays
    length: Optional[int] = None              # For arrays
    name: Optional[str] = None                # Scalar spelling or struct tag

    def __str__(self) -> str:
        if self.kind == TypeKind.POINTER and self.pointee:
            return f"{self.pointee}*"
        if self.kind == TypeKind.ARRAY and self.element:
            size = "" if self.length is None else str(self.length)
            return f"{self.element}[{size}]"
        if self.kind == TypeKind.STRUCT:
            return f"struct {self.name}"
        if self.name:
            return self.name
        return self.kind.name.lower()

    @property
    def is_char(self) -> bool:
        return self.kind == TypeKind.CHAR

    @classmethod
    def int_type(cls) -> 'Typ':
        return cls(TypeKind.INT, name="int")

    @classmethod
    def char_type(cls) -> 'Typ':
        return cls(TypeKind.CHAR, name="char")

    @classmethod
    def void_type(cls) -> 'Typ':
        return cls(TypeKind.VOID)

    @classmethod
    def unknown_type(cls) -> 'Typ':
        return cls(TypeKind.UNKNOWN)

    @classmethod
    def pointer_to(cls, pointee: 'Typ') -> 'Typ':
        return cls(TypeKind.POINTER, pointee=pointee)

    @classmethod
    def array_of(cls, element: 'Typ', length: Optional[int] = None) -> 'Typ':
        return cls(TypeKind.ARRAY, element=element, length=length)

    @classmethod
    def struct_type(cls, name: str) -> 'Typ':
        return cls(TypeKind.STRUCT, name=name)

    @classmethod
    def scalar(cls, spelling: str) -> 'Typ':
        """Build a scalar type from its C spelling (`unsigned char`, `size_t`)"""
        spelling = " ".join(spelling.split())
        if spelling in ("char", "signed char", "unsigned char", "int8_t",
                        "uint8_t", "u_char"):
            return cls(TypeKind.CHAR, name=spelling)
        if spelling in ("float", "double", "long double"):
            return cls(TypeKind.FLOAT, name=spelling)
        if spelling in ("bool", "_Bool"):
            return cls(TypeKind.BOOL, name=spelling)
        if spelling == "void":
            return cls.void_type()
        if spelling in SCALAR_SIZES:
            return cls(TypeKind.INT, name=spelling)
        return cls(TypeKind.UNKNOWN, name=spelling)


# =============================================================================
# Expressions
# =============================================================================

@dataclass
class Exp:
    """Base class for expressions"""

    def __str__(self) -> str:
        return "<exp>"


@dataclass
class ExpVar(Exp):
    """
    Variable reference.

    Can be either an Ident (temporary) or PVar (program variable).
    """
    var: Union[Ident, PVar]

    def __str__(self) -> str:
        return str(self.var)

    def __repr__(self) -> str:
        return f"ExpVar({self.var!r})"


@dataclass
class ExpConst(Exp):
    """
    Constant value.

    Integers (character literals are stored as their code point),
    floats, decoded string literals and NULL.
    """
    value: Union[int, float, str, bool, None]

    def __str__(self) -> str:
        if self.value is None:
            return "NULL"
        if isinstance(self.value, str):
            escaped = self.value.replace('\\', '\\\\').replace('"', '\\"')
            escaped = escaped.replace('\n', '\\n').replace('\0', '\\0')
            if len(escaped) > 50:
                escaped = escaped[:47] + "..."
            return f'"{escaped}"'
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        return str(self.value)

    def __repr__(self) -> str:
        return f"ExpConst({self.value!r})"

    @classmethod
    def null(cls) -> 'ExpConst':
        return cls(None)

    @classmethod
    def integer(cls, n: int) -> 'ExpConst':
        return cls(n)

    @classmethod
    def string(cls, s: str) -> 'ExpConst':
        return cls(s)


@dataclass
class ExpBinOp(Exp):
    """
    Binary operation.

    Supports arithmetic, comparison, and logical operators.
    """
    op: str
    left: Exp
    right: Exp

    def __str__(self) -> str:
        return f"({self.left} {self.op} {self.right})"

    def __repr__(self) -> str:
        return f"ExpBinOp({self.op!r}, {self.left!r}, {self.right!r})"


@dataclass
class ExpUnOp(Exp):
    """
    Unary operation.

    Includes negation, logical not, dereference, and address-of.
    """
    op: str  # "-" (negate), "!" (not), "*" (deref), "&" (addr-of), "~" (bitwise not)
    operand: Exp

    def __str__(self) -> str:
        if self.op in ("*", "&"):
            return f"{self.op}{self.operand}"
        return f"{self.op}({self.operand})"

    def __repr__(self) -> str:
        return f"ExpUnOp({self.op!r}, {self.operand!r})"


@dataclass
class ExpFieldAccess(Exp):
    """
    Field access.

    Handles both struct.field and ptr->field access patterns.
    """
    base: Exp
    field_name: str
    is_arrow: bool = False  # True for ptr->field, False for struct.field

    def __str__(self) -> str:
        op = "->" if self.is_arrow else "."
        return f"{self.base}{op}{self.field_name}"

    def __repr__(self) -> str:
        return f"ExpFieldAccess({self.base!r}, {self.field_name!r}, {self.is_arrow})"


@dataclass
class ExpIndex(Exp):
    """
    Array indexing: base[index]
    """
    base: Exp
    index: Exp

    def __str__(self) -> str:
        return f"{self.base}[{self.index}]"

    def __repr__(self) -> str:
        return f"ExpIndex({self.base!r}, {self.index!r})"


@dataclass
class ExpCast(Exp):
    """
    Type cast expression.
    """
    exp: Exp
    typ: Typ

    def __str__(self) -> str:
        return f"({self.typ}){self.exp}"

    def __repr__(self) -> str:
        return f"ExpCast({self.exp!r}, {self.typ!r})"


@dataclass
class ExpSizeof(Exp):
    """
    sizeof applied to an expression or to a type name.

    Exactly one of `operand` and `typ` is set.
    """
    operand: Optional[Exp] = None
    typ: Optional[Typ] = None

    def __str__(self) -> str:
        inner = self.operand if self.operand is not None else self.typ
        return f"sizeof({inner})"

    def __repr__(self) -> str:
        return f"ExpSizeof({self.operand!r}, {self.typ!r})"


@dataclass
class ExpCall(Exp):
    """
    Call expression: the callee and its arguments.

    The frontend hoists every call into a Call instruction whose result
    lands in a temporary; the instruction exposes its callee and
    arguments in this form for display and for expression walkers.
    """
    func: Exp
    args: List[Exp]

    def __str__(self) -> str:
        args_str = ", ".join(str(a) for a in self.args)
        return f"{self.func}({args_str})"

    def __repr__(self) -> str:
        return f"ExpCall({self.func!r}, {self.args!r})"


@dataclass
class ExpTernary(Exp):
    """
    Ternary conditional expression: cond ? true_exp : false_exp
    """
    condition: Exp
    true_exp: Exp
    false_exp: Exp

    def __str__(self) -> str:
        return f"({self.condition} ? {self.true_exp} : {self.false_exp})"

    def __repr__(self) -> str:
        return f"ExpTernary({self.condition!r}, {self.true_exp!r}, {self.false_exp!r})"


# =============================================================================
# Helper functions
# =============================================================================

def var(name: str) -> ExpVar:
    """Create a variable expression from a name"""
    return ExpVar(PVar(name))


def const(value: Any) -> ExpConst:
    """Create a constant expression"""
    if value is None:
        return ExpConst.null()
    return ExpConst(value)


def access_path(exp: Exp) -> Optional[str]:
    """
    Return the access path an lvalue-like expression denotes.

    `x` -> "x", `s.f` and `p->f` -> "s.f" / "p.f", `a[i]` and `*p` -> the
    path of the array or pointer, `&x` -> "x". Casts are looked through.
    Returns None for expressions that do not name storage.
    """
    if isinstance(exp, ExpVar):
        return str(exp.var)
    if isinstance(exp, ExpFieldAccess):
        base = access_path(exp.base)
        if base is None:
            return None
        return f"{base}.{exp.field_name}"
    if isinstance(exp, ExpIndex):
        return access_path(exp.base)
    if isinstance(exp, ExpUnOp) and exp.op in ("*", "&"):
        return access_path(exp.operand)
    if isinstance(exp, ExpCast):
        return access_path(exp.exp)
    if isinstance(exp, ExpBinOp) and exp.op in ("+", "-"):
        # Pointer arithmetic: buf + n still points into buf
        return access_path(exp.left)
    return None
