"""
C/C++ to bufguard IR frontend.

This module translates C and C++ source code to the IR using tree-sitter
for parsing. It handles:
- Function definitions and their control flow (if/else, loops, switch,
  break/continue/return)
- Local and global declarations, including array sizes given by literals,
  macros, enumerators and sizeof
- Struct, union and typedef layouts
- Calls, hoisted into Call instructions in evaluation order
- Object-like #define macros with integer values

While translating, every declaration is recorded in the unit's
BufferCatalog.
"""

import re
from typing import List, Optional, Tuple, Union

import tree_sitter_c as tsc
import tree_sitter_cpp as tscpp
from tree_sitter import Language, Parser, Node as TSNode

from ..types import (
    Ident, PVar, Typ, TypeKind, Location,
    Exp, ExpVar, ExpConst, ExpBinOp, ExpUnOp,
    ExpFieldAccess, ExpIndex, ExpCast, ExpSizeof, ExpTernary,
    access_path,
)
from ..instructions import Instr, Store, Prune, Call, Assign, Return, PruneKind
from ..procedure import Procedure, Node, NodeKind, StructLayout, TranslationUnit
from ..errors import SourceParseError
from ..analyzers.buffer_catalog import BufferCatalog, GLOBAL_SCOPE, fold_binop


CPP_EXTENSIONS = (".cc", ".cpp", ".cxx", ".c++", ".hh", ".hpp", ".hxx")

_INT_SUFFIX = re.compile(r"[uUlLzZ]+$")
_MACRO_COMMENT = re.compile(r"/\*.*?\*/|//.*$", re.S)
_MACRO_TOKEN = re.compile(
    r"\s*(?:(0[xX][0-9a-fA-F]+|0[bB][01]+|\d+)[uUlL]*|([A-Za-z_]\w*)|(<<|>>|[-+*/%()~&|^]))"
)
_MACRO_PRECEDENCE = {
    "|": 1, "^": 2, "&": 3, "<<": 4, ">>": 4, "+": 5, "-": 5, "*": 6, "/": 6, "%": 6,
}
_SIMPLE_ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "a": "\a", "b": "\b", "f": "\f",
    "v": "\v", "e": "\x1b", "\\": "\\", "'": "'", '"': '"', "?": "?",
}


def decode_c_escapes(raw: str) -> str:
    """Decode the escape sequences of a C string or character literal body"""
    out = []
    i = 0
    while i < len(raw):
        c = raw[i]
        if c != "\\" or i + 1 >= len(raw):
            out.append(c)
            i += 1
            continue
        nxt = raw[i + 1]
        if nxt in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[nxt])
            i += 2
        elif nxt in "01234567":
            j = i + 1
            while j < len(raw) and j < i + 4 and raw[j] in "01234567":
                j += 1
            out.append(chr(int(raw[i + 1:j], 8)))
            i = j
        elif nxt in "xuU":
            j = i + 2
            limit = {"x": len(raw), "u": i + 6, "U": i + 10}[nxt]
            while j < len(raw) and j < limit and raw[j] in "0123456789abcdefABCDEF":
                j += 1
            digits = raw[i + 2:j]
            out.append(chr(int(digits, 16) % 0x110000) if digits else nxt)
            i = j
        else:
            out.append(nxt)
            i += 2
    return "".join(out)


def _literal_body(text: str, quote: str) -> str:
    """Strip an encoding prefix and the surrounding quotes"""
    start = text.find(quote)
    end = text.rfind(quote)
    if start < 0 or end <= start:
        return ""
    return text[start + 1:end]


class CFrontend:
    """
    Translates C source code to a TranslationUnit.

    Usage:
        frontend = CFrontend()
        unit = frontend.translate(source_bytes, "example.c")
        unit.catalog.lookup(var("buf"), "main")

    A parser instance is not thread-safe; create one frontend per worker.
    """

    language = "c"

    def __init__(self):
        self.parser = Parser(Language(tsc.language()))
        self._reset("<unknown>", b"")

    def _reset(self, filename: str, source: bytes) -> None:
        self._filename = filename
        self._source = source
        self._unit: Optional[TranslationUnit] = None
        self._catalog: Optional[BufferCatalog] = None
        self._scope = GLOBAL_SCOPE
        self._current_proc: Optional[Procedure] = None
        self._current_node: Optional[Node] = None
        self._break_targets: List[int] = []
        self._continue_targets: List[int] = []
        self._ident_counter = 0
        self._anon_counter = 0

    def translate(self, source: Union[str, bytes], filename: str = "<unknown>") -> TranslationUnit:
        """
        Translate source code to a TranslationUnit.

        Syntax errors that tree-sitter recovers from (compiler extensions,
        unexpanded macros) are skipped and their lines are kept in
        `unit.syntax_errors`.

        Raises:
            SourceParseError: if the tree has syntax errors and no function
                could be recovered from it
        """
        if isinstance(source, str):
            source = source.encode("utf8")
        self._reset(filename, source)

        tree = self.parser.parse(source)
        root = tree.root_node

        unit = TranslationUnit(path=filename, language=self.language)
        unit.catalog = BufferCatalog(filename, unit.structs, unit.constants)
        self._unit = unit
        self._catalog = unit.catalog

        self._collect_constants(root)
        self._translate_node_children(root)

        if root.has_error:
            unit.syntax_errors = self._error_lines(root)
            line = unit.syntax_errors[0] if unit.syntax_errors else 0
            if not unit.procedures:
                raise SourceParseError(f"syntax error at line {line}", filename, line)
        return unit

    def _error_lines(self, root: TSNode) -> List[int]:
        """Lines of the outermost ERROR and missing nodes"""
        lines = set()
        stack = [root]
        while stack:
            node = stack.pop()
            if node.type == "ERROR" or node.is_missing:
                lines.add(node.start_point[0] + 1)
            elif node.has_error:
                stack.extend(node.children)
        return sorted(lines)

    # =========================================================================
    # Constants: object-like macros and enumerators
    # =========================================================================

    def _collect_constants(self, root: TSNode) -> None:
        """Record integer macros and enumerators in document order"""
        stack = [root]
        while stack:
            node = stack.pop()
            if node.type == "preproc_def":
                self._record_macro(node)
            elif node.type == "enum_specifier":
                self._record_enum(node)
            stack.extend(reversed(node.named_children))

    def _record_macro(self, node: TSNode) -> None:
        name_node = node.child_by_field_name("name")
        value_node = node.child_by_field_name("value")
        if name_node is None or value_node is None:
            return
        value = self._eval_macro(self._get_text(value_node))
        if value is not None:
            self._unit.constants[self._get_text(name_node)] = value

    def _record_enum(self, node: TSNode) -> None:
        body = node.child_by_field_name("body")
        if body is None:
            return
        next_value: Optional[int] = 0
        for child in body.named_children:
            if child.type != "enumerator":
                continue
            name_node = child.child_by_field_name("name")
            value_node = child.child_by_field_name("value")
            if value_node is not None:
                next_value = self._catalog.static_value(self._translate_expression(value_node))
            if name_node is not None and next_value is not None:
                self._unit.constants[self._get_text(name_node)] = next_value
            next_value = next_value + 1 if next_value is not None else None

    def _eval_macro(self, text: str) -> Optional[int]:
        """Evaluate the replacement text of an object-like macro"""
        text = _MACRO_COMMENT.sub(" ", text).strip()
        if not text:
            return None

        tokens = []
        pos = 0
        while pos < len(text):
            m = _MACRO_TOKEN.match(text, pos)
            if m is None:
                return None
            number, name, op = m.groups()
            if number is not None:
                if number[:2].lower() == "0x":
                    tokens.append(int(number, 16))
                elif number[:2].lower() == "0b":
                    tokens.append(int(number[2:], 2))
                elif len(number) > 1 and number[0] == "0":
                    tokens.append(int(number, 8))
                else:
                    tokens.append(int(number))
            elif name is not None:
                tokens.append(("name", name))
            else:
                tokens.append(op)
            pos = m.end()

        result, rest = self._macro_expr(tokens, 0)
        if result is None or rest:
            return None
        return result

    def _macro_expr(self, tokens: list, min_prec: int) -> Tuple[Optional[int], list]:
        left, tokens = self._macro_unary(tokens)
        while left is not None and tokens and isinstance(tokens[0], str):
            op = tokens[0]
            prec = _MACRO_PRECEDENCE.get(op)
            if prec is None or prec < min_prec:
                break
            right, tokens = self._macro_expr(tokens[1:], prec + 1)
            if right is None:
                return None, tokens
            left = fold_binop(op, left, right)
        return left, tokens

    def _macro_unary(self, tokens: list) -> Tuple[Optional[int], list]:
        if not tokens:
            return None, tokens
        tok = tokens[0]
        if isinstance(tok, int):
            return tok, tokens[1:]
        if isinstance(tok, tuple):
            return self._unit.constants.get(tok[1]), tokens[1:]
        if tok in ("-", "+", "~"):
            value, rest = self._macro_unary(tokens[1:])
            if value is None:
                return None, rest
            return {"-": -value, "+": value, "~": ~value}[tok], rest
        if tok == "(":
            # (type) cast: skip the type name
            if (len(tokens) > 2 and isinstance(tokens[1], tuple) and tokens[2] == ")"
                    and tokens[1][1] not in self._unit.constants):
                return self._macro_unary(tokens[3:])
            value, rest = self._macro_expr(tokens[1:], 0)
            if value is None or not rest or rest[0] != ")":
                return None, rest
            return value, rest[1:]
        return None, tokens

    # =========================================================================
    # Top level
    # =========================================================================

    def _translate_node_children(self, node: TSNode) -> None:
        """Translate file-scope items, recursing into preprocessor blocks"""
        for child in node.named_children:
            self._translate_top_level(child)

    def _translate_top_level(self, child: TSNode) -> None:
        if child.type == "function_definition":
            proc = self._translate_function(child)
            if proc:
                self._unit.add_procedure(proc)
        elif child.type == "declaration":
            self._translate_declaration(child)
        elif child.type == "type_definition":
            self._translate_typedef(child)
        elif child.type in ("struct_specifier", "union_specifier"):
            self._base_type(child)
        elif child.type in ("preproc_if", "preproc_ifdef", "preproc_else",
                            "preproc_elif", "preproc_elifdef", "declaration_list"):
            self._translate_node_children(child)
        elif child.type == "linkage_specification":
            body = child.child_by_field_name("body")
            if body is not None:
                if body.type == "declaration_list":
                    self._translate_node_children(body)
                else:
                    self._translate_top_level(body)

    def _qualify(self, name: str) -> str:
        """Full procedure name for a function defined in the current context"""
        return name

    def _translate_function(self, node: TSNode) -> Optional[Procedure]:
        """Translate function definition"""
        declarator = node.child_by_field_name("declarator")
        if declarator is None:
            return None

        func_decl = self._function_declarator(declarator)
        if func_decl is None:
            return None
        name_node = func_decl.child_by_field_name("declarator")
        func_name = self._get_text(name_node) if name_node is not None else ""
        if not func_name:
            return None
        func_name = self._qualify(func_name)

        ret_base = self._base_type(node.child_by_field_name("type"))
        ret_type = ret_base
        cursor = declarator
        while cursor is not None and cursor.type == "pointer_declarator":
            ret_type = Typ.pointer_to(ret_type)
            cursor = cursor.child_by_field_name("declarator")

        proc = Procedure(name=func_name, ret_type=ret_type, loc=self._get_location(node))
        self._current_proc = proc
        self._scope = func_name
        self._break_targets = []
        self._continue_targets = []

        self._translate_parameters(func_decl, proc)

        entry = proc.new_node(NodeKind.ENTRY)
        proc.entry_node = entry.id
        exit_node = proc.new_node(NodeKind.EXIT)
        proc.exit_node = exit_node.id
        self._current_node = entry

        body = node.child_by_field_name("body")
        if body is not None:
            self._translate_statement(body)

        proc.connect(self._current_node.id, exit_node.id)

        self._current_proc = None
        self._current_node = None
        self._scope = GLOBAL_SCOPE
        return proc

    def _function_declarator(self, node: Optional[TSNode]) -> Optional[TSNode]:
        while node is not None:
            if node.type == "function_declarator":
                return node
            if node.type in ("pointer_declarator", "parenthesized_declarator",
                             "attributed_declarator", "reference_declarator"):
                node = node.child_by_field_name("declarator") or (
                    node.named_children[0] if node.named_children else None)
            else:
                return None
        return None

    def _translate_parameters(self, func_decl: TSNode, proc: Procedure) -> None:
        """Translate function parameters; array parameters decay to pointers"""
        params_node = func_decl.child_by_field_name("parameters")
        if params_node is None:
            return

        for child in params_node.named_children:
            if child.type == "variadic_parameter":
                proc.is_variadic = True
                continue
            if child.type not in ("parameter_declaration", "optional_parameter_declaration"):
                continue
            base = self._base_type(child.child_by_field_name("type"))
            decl_node = child.child_by_field_name("declarator")
            if decl_node is None:
                continue
            name, typ = self._declared(base, decl_node)
            if not name:
                continue
            if typ.kind == TypeKind.ARRAY:
                typ = Typ.pointer_to(typ.element)
            proc.params.append((PVar(name), typ))
            self._catalog.declare(self._scope, name, typ, self._get_location(child))

    # =========================================================================
    # Types
    # =========================================================================

    def _base_type(self, node: Optional[TSNode], name_hint: Optional[str] = None) -> Typ:
        """Translate a type specifier; struct bodies are registered on the way"""
        if node is None:
            return Typ.unknown_type()
        t = node.type
        if t in ("primitive_type", "sized_type_specifier"):
            return Typ.scalar(self._get_text(node))
        if t == "type_identifier":
            name = self._get_text(node)
            known = self._unit.typedefs.get(name)
            if known is not None:
                return known
            if name in self._unit.structs:
                # C++ allows naming a struct without the keyword
                return Typ.struct_type(name)
            return Typ.scalar(name)
        if t in ("struct_specifier", "union_specifier", "class_specifier"):
            name_node = node.child_by_field_name("name")
            body = node.child_by_field_name("body")
            if name_node is not None:
                name = self._get_text(name_node)
            elif name_hint:
                name = name_hint
            else:
                self._anon_counter += 1
                name = f"<anonymous {self._anon_counter}>"
            if body is not None:
                self._register_struct(name, body, t == "union_specifier", self._get_location(node))
            return Typ.struct_type(name)
        if t == "enum_specifier":
            return Typ.int_type()
        if t == "type_descriptor":
            return self._type_descriptor(node)
        return Typ(TypeKind.UNKNOWN, name=self._get_text(node))

    def _type_descriptor(self, node: TSNode) -> Typ:
        base = self._base_type(node.child_by_field_name("type"))
        abstract = node.child_by_field_name("declarator")
        while abstract is not None:
            if abstract.type == "abstract_pointer_declarator":
                base = Typ.pointer_to(base)
            elif abstract.type == "abstract_array_declarator":
                size = abstract.child_by_field_name("size")
                base = Typ.array_of(base, self._array_length(size))
            else:
                break
            abstract = abstract.child_by_field_name("declarator")
        return base

    def _register_struct(self, name: str, body: TSNode, is_union: bool, loc: Location) -> None:
        layout = StructLayout(name=name, is_union=is_union, loc=loc)
        for child in body.named_children:
            if child.type != "field_declaration":
                continue
            base = self._base_type(child.child_by_field_name("type"))
            declarators = child.children_by_field_name("declarator")
            if not declarators and base.kind == TypeKind.STRUCT:
                # C11 anonymous member: its fields belong to the parent
                inner = self._unit.structs.get(base.name)
                if inner is not None:
                    layout.fields.update(inner.fields)
                continue
            for decl_node in declarators:
                field_name, typ = self._declared(base, decl_node)
                if field_name and typ.kind != TypeKind.FUNCTION:
                    layout.fields[field_name] = typ
        self._catalog.declare_struct(layout)

    def _declared(self, base: Typ, node: Optional[TSNode]) -> Tuple[Optional[str], Typ]:
        """Apply a declarator to a base type: returns (name, declared type)"""
        typ = base
        while node is not None:
            t = node.type
            if t in ("identifier", "field_identifier", "type_identifier",
                     "qualified_identifier", "destructor_name", "operator_name"):
                return self._get_text(node), typ
            if t == "pointer_declarator":
                typ = Typ.pointer_to(typ)
                node = node.child_by_field_name("declarator")
            elif t == "array_declarator":
                typ = Typ.array_of(typ, self._array_length(node.child_by_field_name("size")))
                node = node.child_by_field_name("declarator")
            elif t == "function_declarator":
                typ = Typ(TypeKind.FUNCTION, pointee=typ)
                node = node.child_by_field_name("declarator")
            elif t in ("init_declarator",):
                node = node.child_by_field_name("declarator")
            elif t in ("parenthesized_declarator", "attributed_declarator", "reference_declarator"):
                named = [c for c in node.named_children if c.type != "attribute_declaration"]
                node = named[0] if named else None
            else:
                return None, typ
        return None, typ

    def _array_length(self, size_node: Optional[TSNode]) -> Optional[int]:
        if size_node is None:
            return None
        return self._catalog.static_value(self._translate_expression(size_node), self._scope)

    def _translate_typedef(self, node: TSNode) -> None:
        declarators = node.children_by_field_name("declarator")
        hint = None
        if declarators and declarators[0].type == "type_identifier":
            hint = self._get_text(declarators[0])
        base = self._base_type(node.child_by_field_name("type"), name_hint=hint)
        for decl_node in declarators:
            name, typ = self._declared(base, decl_node)
            if name:
                self._unit.typedefs[name] = typ

    # =========================================================================
    # Declarations
    # =========================================================================

    def _translate_declaration(self, node: TSNode) -> None:
        """Translate a local or file-scope declaration"""
        is_global = self._current_proc is None
        base = self._base_type(node.child_by_field_name("type"))

        for decl_node in node.children_by_field_name("declarator"):
            name, typ = self._declared(base, decl_node)
            if not name or typ.kind == TypeKind.FUNCTION:
                continue

            value = decl_node.child_by_field_name("value") if decl_node.type == "init_declarator" else None
            if typ.kind == TypeKind.ARRAY and typ.length is None and value is not None:
                typ = Typ.array_of(typ.element, self._initializer_length(value))

            loc = self._get_location(decl_node)
            self._catalog.declare(self._scope, name, typ, loc)
            if is_global:
                self._unit.globals[name] = typ
                continue

            self._current_proc.locals[name] = typ
            if value is not None:
                exp = self._translate_expression(value)
            else:
                exp = ExpConst.null()
            self._add_instr(Assign(loc=loc, id=PVar(name), exp=exp))

    def _initializer_length(self, value: TSNode) -> Optional[int]:
        if value.type in ("string_literal", "concatenated_string"):
            literal = self._translate_expression(value)
            if isinstance(literal, ExpConst) and isinstance(literal.value, str):
                return len(literal.value.encode("utf-8")) + 1
        if value.type == "initializer_list":
            return len([c for c in value.named_children if c.type != "comment"])
        return None

    # =========================================================================
    # Statements
    # =========================================================================

    def _translate_statement(self, node: TSNode) -> None:
        """Translate a statement"""
        t = node.type
        if t == "compound_statement":
            for child in node.named_children:
                self._translate_statement(child)
        elif t == "expression_statement":
            for child in node.named_children:
                self._translate_expression(child)
        elif t == "declaration":
            self._translate_declaration(node)
        elif t == "type_definition":
            self._translate_typedef(node)
        elif t in ("struct_specifier", "union_specifier"):
            self._base_type(node)
        elif t == "return_statement":
            self._translate_return(node)
        elif t == "if_statement":
            self._translate_if(node)
        elif t == "while_statement":
            self._translate_while(node)
        elif t == "for_statement":
            self._translate_for(node)
        elif t == "do_statement":
            self._translate_do_while(node)
        elif t == "switch_statement":
            self._translate_switch(node)
        elif t == "break_statement":
            self._jump(self._break_targets)
        elif t == "continue_statement":
            self._jump(self._continue_targets)
        elif t == "labeled_statement":
            for child in node.named_children:
                if child.type != "statement_identifier":
                    self._translate_statement(child)
        elif t in ("ERROR", "goto_statement", "comment", "preproc_call", "preproc_include"):
            pass
        elif t.endswith("_expression") or t in ("identifier", "number_literal", "string_literal"):
            self._translate_expression(node)
        else:
            # Anything else (attributed statements, preprocessor blocks,
            # C++ try/catch) is translated child by child
            for child in node.named_children:
                self._translate_statement(child)

    def _jump(self, targets: List[int]) -> None:
        """break / continue: edge to the enclosing target, then dead code"""
        if not targets:
            return
        self._current_proc.connect(self._current_node.id, targets[-1])
        self._current_node = self._current_proc.new_node()

    def _translate_return(self, node: TSNode) -> None:
        """Translate return statement"""
        loc = self._get_location(node)
        value_exp = None
        for child in node.named_children:
            if child.type != "comment":
                value_exp = self._translate_expression(child)
                break
        self._add_instr(Return(loc=loc, value=value_exp))
        proc = self._current_proc
        proc.connect(self._current_node.id, proc.exit_node)
        self._current_node = proc.new_node()

    def _translate_condition(self, node: Optional[TSNode]) -> Exp:
        if node is None:
            return ExpConst.integer(1)
        if node.type == "condition_clause":
            inner = node.child_by_field_name("value")
            if inner is None:
                named = node.named_children
                inner = named[-1] if named else None
            if inner is None:
                return ExpConst.integer(1)
            if inner.type == "declaration":
                self._translate_declaration(inner)
                return ExpConst.integer(1)
            return self._translate_expression(inner)
        return self._translate_expression(node)

    def _translate_if(self, node: TSNode) -> None:
        """Translate if statement"""
        loc = self._get_location(node)
        proc = self._current_proc

        condition_exp = self._translate_condition(node.child_by_field_name("condition"))
        before_node = self._current_node

        true_node = proc.new_node(NodeKind.BRANCH)
        false_node = proc.new_node(NodeKind.BRANCH)
        join_node = proc.new_node(NodeKind.JOIN)

        true_node.add_instr(Prune(loc=loc, condition=condition_exp, is_true_branch=True))
        proc.connect(before_node.id, true_node.id)
        false_node.add_instr(Prune(loc=loc, condition=condition_exp, is_true_branch=False,
                                   kind=PruneKind.IF_FALSE))
        proc.connect(before_node.id, false_node.id)

        consequence = node.child_by_field_name("consequence")
        self._current_node = true_node
        if consequence is not None:
            self._translate_statement(consequence)
        proc.connect(self._current_node.id, join_node.id)

        alternative = node.child_by_field_name("alternative")
        self._current_node = false_node
        if alternative is not None:
            if alternative.type == "else_clause":
                for child in alternative.named_children:
                    self._translate_statement(child)
            else:
                self._translate_statement(alternative)
        proc.connect(self._current_node.id, join_node.id)

        self._current_node = join_node

    def _translate_while(self, node: TSNode) -> None:
        """Translate while loop"""
        proc = self._current_proc
        loc = self._get_location(node)

        loop_head = proc.new_node(NodeKind.LOOP_HEAD)
        proc.connect(self._current_node.id, loop_head.id)
        self._current_node = loop_head
        condition_exp = self._translate_condition(node.child_by_field_name("condition"))

        body_node = proc.new_node(NodeKind.NORMAL)
        after_node = proc.new_node(NodeKind.NORMAL)

        body_node.add_instr(Prune(loc=loc, condition=condition_exp, is_true_branch=True,
                                  kind=PruneKind.LOOP_ENTER))
        proc.connect(loop_head.id, body_node.id)
        after_node.add_instr(Prune(loc=loc, condition=condition_exp, is_true_branch=False,
                                   kind=PruneKind.LOOP_EXIT))
        proc.connect(loop_head.id, after_node.id)

        self._break_targets.append(after_node.id)
        self._continue_targets.append(loop_head.id)
        self._current_node = body_node
        body = node.child_by_field_name("body")
        if body is not None:
            self._translate_statement(body)
        proc.connect(self._current_node.id, loop_head.id)
        self._break_targets.pop()
        self._continue_targets.pop()

        self._current_node = after_node

    def _translate_for(self, node: TSNode) -> None:
        """Translate for loop"""
        proc = self._current_proc
        loc = self._get_location(node)

        init = node.child_by_field_name("initializer")
        if init is not None:
            if init.type == "declaration":
                self._translate_declaration(init)
            else:
                self._translate_expression(init)

        loop_head = proc.new_node(NodeKind.LOOP_HEAD)
        proc.connect(self._current_node.id, loop_head.id)
        self._current_node = loop_head
        condition_exp = self._translate_condition(node.child_by_field_name("condition"))

        body_node = proc.new_node(NodeKind.NORMAL)
        update_node = proc.new_node(NodeKind.NORMAL)
        after_node = proc.new_node(NodeKind.NORMAL)

        body_node.add_instr(Prune(loc=loc, condition=condition_exp, is_true_branch=True,
                                  kind=PruneKind.LOOP_ENTER))
        proc.connect(loop_head.id, body_node.id)
        after_node.add_instr(Prune(loc=loc, condition=condition_exp, is_true_branch=False,
                                   kind=PruneKind.LOOP_EXIT))
        proc.connect(loop_head.id, after_node.id)

        self._break_targets.append(after_node.id)
        self._continue_targets.append(update_node.id)
        self._current_node = body_node
        body = node.child_by_field_name("body")
        if body is not None:
            self._translate_statement(body)
        proc.connect(self._current_node.id, update_node.id)
        self._break_targets.pop()
        self._continue_targets.pop()

        self._current_node = update_node
        for update in node.children_by_field_name("update"):
            self._translate_expression(update)
        proc.connect(update_node.id, loop_head.id)

        self._current_node = after_node

    def _translate_do_while(self, node: TSNode) -> None:
        """Translate do-while loop"""
        proc = self._current_proc
        loc = self._get_location(node)

        body_node = proc.new_node(NodeKind.NORMAL)
        loop_head = proc.new_node(NodeKind.LOOP_HEAD)
        after_node = proc.new_node(NodeKind.NORMAL)
        proc.connect(self._current_node.id, body_node.id)

        self._break_targets.append(after_node.id)
        self._continue_targets.append(loop_head.id)
        self._current_node = body_node
        body = node.child_by_field_name("body")
        if body is not None:
            self._translate_statement(body)
        proc.connect(self._current_node.id, loop_head.id)
        self._break_targets.pop()
        self._continue_targets.pop()

        self._current_node = loop_head
        condition_exp = self._translate_condition(node.child_by_field_name("condition"))
        proc.connect(loop_head.id, body_node.id)
        after_node.add_instr(Prune(loc=loc, condition=condition_exp, is_true_branch=False,
                                   kind=PruneKind.LOOP_EXIT))
        proc.connect(loop_head.id, after_node.id)

        self._current_node = after_node

    def _translate_switch(self, node: TSNode) -> None:
        """Translate switch: every case is reachable from the head"""
        proc = self._current_proc
        loc = self._get_location(node)

        condition_exp = self._translate_condition(node.child_by_field_name("condition"))
        head = self._current_node
        after_node = proc.new_node(NodeKind.JOIN)

        self._break_targets.append(after_node.id)
        previous_end: Optional[Node] = None
        has_default = False

        body = node.child_by_field_name("body")
        children = body.named_children if body is not None else []
        for child in children:
            if child.type != "case_statement":
                # Statements before the first label are unreachable
                self._current_node = previous_end or proc.new_node()
                self._translate_statement(child)
                previous_end = self._current_node
                continue

            case_node = proc.new_node(NodeKind.BRANCH)
            case_node.add_instr(Prune(loc=self._get_location(child), condition=condition_exp,
                                      is_true_branch=True, kind=PruneKind.SWITCH_CASE))
            proc.connect(head.id, case_node.id)
            if previous_end is not None:
                proc.connect(previous_end.id, case_node.id)
            if child.child_by_field_name("value") is None:
                has_default = True

            self._current_node = case_node
            seen_colon = False
            for stmt in child.children:
                if not seen_colon:
                    seen_colon = stmt.type == ":"
                    continue
                if stmt.is_named:
                    self._translate_statement(stmt)
            previous_end = self._current_node

        if previous_end is not None:
            proc.connect(previous_end.id, after_node.id)
        if not has_default:
            proc.connect(head.id, after_node.id)
        self._break_targets.pop()

        self._current_node = after_node

    # =========================================================================
    # Expressions
    # =========================================================================

    def _translate_expression(self, node: Optional[TSNode]) -> Exp:
        """
        Translate an expression.

        Calls and assignments inside the expression are emitted as
        instructions into the current node, left to right; the returned
        expression refers to their results.
        """
        if node is None:
            return ExpConst.null()
        t = node.type

        if t == "identifier":
            name = self._get_text(node)
            if name == "NULL":
                return ExpConst.null()
            return ExpVar(PVar(name))

        elif t == "number_literal":
            return self._parse_number(self._get_text(node))

        elif t == "string_literal":
            return ExpConst.string(decode_c_escapes(_literal_body(self._get_text(node), '"')))

        elif t == "concatenated_string":
            parts = []
            for child in node.named_children:
                if child.type != "string_literal":
                    # A macro such as PRIu64 in the middle: contents unknown
                    return ExpConst.null()
                parts.append(decode_c_escapes(_literal_body(self._get_text(child), '"')))
            return ExpConst.string("".join(parts))

        elif t == "char_literal":
            body = decode_c_escapes(_literal_body(self._get_text(node), "'"))
            return ExpConst.integer(ord(body[0]) if body else 0)

        elif t == "true":
            return ExpConst.integer(1)

        elif t == "false":
            return ExpConst.integer(0)

        elif t in ("null", "nullptr"):
            return ExpConst.null()

        elif t == "binary_expression":
            left_exp = self._translate_expression(node.child_by_field_name("left"))
            right_exp = self._translate_expression(node.child_by_field_name("right"))
            op_node = node.child_by_field_name("operator")
            op = self._get_text(op_node) if op_node is not None else "+"
            return ExpBinOp(op, left_exp, right_exp)

        elif t in ("unary_expression", "pointer_expression"):
            op_node = node.child_by_field_name("operator")
            op = self._get_text(op_node) if op_node is not None else "-"
            return ExpUnOp(op, self._translate_expression(node.child_by_field_name("argument")))

        elif t == "subscript_expression":
            arr = self._translate_expression(node.child_by_field_name("argument"))
            idx_node = node.child_by_field_name("index")
            if idx_node is None:
                indices = node.child_by_field_name("indices")
                if indices is not None and indices.named_children:
                    idx_node = indices.named_children[0]
            return ExpIndex(arr, self._translate_expression(idx_node))

        elif t == "field_expression":
            obj = self._translate_expression(node.child_by_field_name("argument"))
            field_node = node.child_by_field_name("field")
            op_node = node.child_by_field_name("operator")
            is_arrow = op_node is not None and self._get_text(op_node) == "->"
            return ExpFieldAccess(obj, self._get_text(field_node), is_arrow)

        elif t == "call_expression":
            return self._translate_call(node)

        elif t == "parenthesized_expression":
            named = [c for c in node.named_children if c.type != "comment"]
            result: Exp = ExpConst.null()
            for child in named:
                result = self._translate_expression(child)
            return result

        elif t == "conditional_expression":
            cond = self._translate_expression(node.child_by_field_name("condition"))
            conseq_node = node.child_by_field_name("consequence")
            conseq = self._translate_expression(conseq_node) if conseq_node is not None else cond
            alt = self._translate_expression(node.child_by_field_name("alternative"))
            return ExpTernary(cond, conseq, alt)

        elif t == "cast_expression":
            typ = self._type_descriptor(node.child_by_field_name("type"))
            return ExpCast(self._translate_expression(node.child_by_field_name("value")), typ)

        elif t == "sizeof_expression":
            return self._translate_sizeof(node)

        elif t == "assignment_expression":
            return self._translate_assignment(node)

        elif t == "update_expression":
            return self._translate_update(node)

        elif t == "comma_expression":
            self._translate_expression(node.child_by_field_name("left"))
            return self._translate_expression(node.child_by_field_name("right"))

        elif t in ("compound_literal_expression",):
            return self._translate_expression(node.child_by_field_name("value"))

        # Initializer lists and anything unrecognised: keep every operand
        operands = [self._translate_expression(c) for c in node.named_children
                    if c.type != "comment"]
        if not operands:
            return ExpConst.null()
        result = operands[0]
        for operand in operands[1:]:
            result = ExpBinOp(",", result, operand)
        return result

    def _translate_sizeof(self, node: TSNode) -> Exp:
        type_node = node.child_by_field_name("type")
        if type_node is not None:
            inner = type_node.child_by_field_name("type")
            # sizeof(x) where x is a variable can parse as a type name
            if (inner is not None and inner.type == "type_identifier"
                    and type_node.child_by_field_name("declarator") is None):
                name = self._get_text(inner)
                if name not in self._unit.typedefs and \
                        self._catalog.symbol_type(name, self._scope) is not None:
                    return ExpSizeof(operand=ExpVar(PVar(name)))
            return ExpSizeof(typ=self._type_descriptor(type_node))
        value = node.child_by_field_name("value")
        current, self._current_node = self._current_node, None
        try:
            # sizeof does not evaluate its operand
            operand = self._translate_expression(value)
        finally:
            self._current_node = current
        return ExpSizeof(operand=operand)

    def _translate_call(self, node: TSNode) -> Exp:
        """Emit a Call instruction and return its result temporary"""
        loc = self._get_location(node)
        func = node.child_by_field_name("function")

        is_indirect = True
        func_exp: Exp
        target = func
        while target is not None and target.type == "parenthesized_expression" \
                and len(target.named_children) == 1:
            target = target.named_children[0]
        if target is not None and target.type in ("identifier", "qualified_identifier",
                                                  "template_function"):
            name = self._get_text(target)
            func_exp = ExpVar(PVar(name))
            symbol = self._catalog.symbol_type(name, self._scope) if target.type == "identifier" else None
            is_indirect = symbol is not None and symbol.kind in (TypeKind.POINTER, TypeKind.FUNCTION)
        else:
            func_exp = self._translate_expression(func)

        arg_nodes = []
        args_node = node.child_by_field_name("arguments")
        if args_node is not None:
            arg_nodes = [c for c in args_node.named_children if c.type != "comment"]
        args = [self._translate_expression(a) for a in arg_nodes]

        ret = self._new_ident("call")
        self._add_instr(Call(
            loc=loc,
            ret=ret,
            func=func_exp,
            args=args,
            arg_locs=[self._get_location(a) for a in arg_nodes],
            is_indirect=is_indirect,
        ))
        return ExpVar(ret)

    def _translate_assignment(self, node: TSNode) -> Exp:
        """Translate `lhs = rhs` and compound assignments"""
        loc = self._get_location(node)
        left = node.child_by_field_name("left")
        value = self._translate_expression(node.child_by_field_name("right"))

        op_node = node.child_by_field_name("operator")
        op = self._get_text(op_node) if op_node is not None else "="
        if op != "=":
            value = ExpBinOp(op[:-1], self._lvalue(left), value)
        return self._assign_to(left, value, loc)

    def _translate_update(self, node: TSNode) -> Exp:
        """Translate update expression: i++ or --i"""
        loc = self._get_location(node)
        arg = node.child_by_field_name("argument")
        op = "-" if "--" in self._get_text(node) else "+"
        value = ExpBinOp(op, self._lvalue(arg), ExpConst.integer(1))
        return self._assign_to(arg, value, loc)

    def _lvalue(self, node: Optional[TSNode]) -> Exp:
        current, self._current_node = self._current_node, None
        try:
            return self._translate_expression(node)
        finally:
            self._current_node = current

    def _assign_to(self, left: Optional[TSNode], value: Exp, loc: Location) -> Exp:
        """Write `value` to an lvalue: named paths strongly, the rest weakly"""
        if left is None:
            return value
        while left.type == "parenthesized_expression" and len(left.named_children) == 1:
            left = left.named_children[0]

        target = self._translate_expression(left)
        if left.type in ("identifier", "field_expression"):
            path = access_path(target)
            if path is not None:
                self._add_instr(Assign(loc=loc, id=PVar(path), exp=value))
                return target
        self._add_instr(Store(loc=loc, addr=target, value=value))
        return target

    # =========================================================================
    # Helpers
    # =========================================================================

    def _parse_number(self, text: str) -> ExpConst:
        text = text.replace("'", "")
        body = _INT_SUFFIX.sub("", text)
        try:
            lowered = body.lower()
            if lowered.startswith("0x"):
                return ExpConst.integer(int(body, 16))
            if lowered.startswith("0b"):
                return ExpConst.integer(int(body[2:], 2))
            if len(body) > 1 and body[0] == "0" and body.isdigit():
                return ExpConst.integer(int(body, 8))
            return ExpConst.integer(int(body))
        except ValueError:
            pass
        try:
            return ExpConst(float(text.rstrip("fFlL")))
        except ValueError:
            return ExpConst.null()

    def _get_text(self, node: Optional[TSNode]) -> str:
        if node is None:
            return ""
        return self._source[node.start_byte:node.end_byte].decode("utf8", errors="replace")

    def _get_location(self, node: TSNode) -> Location:
        return Location(
            file=self._filename,
            line=node.start_point[0] + 1,
            column=node.start_point[1] + 1,
            end_line=node.end_point[0] + 1,
            end_column=node.end_point[1] + 1,
        )

    def _new_ident(self, prefix: str = "tmp") -> Ident:
        self._ident_counter += 1
        return Ident(prefix, self._ident_counter)

    def _add_instr(self, instr: Instr) -> None:
        if self._current_node is not None:
            self._current_node.add_instr(instr)


class CppFrontend(CFrontend):
    """
    Translates C++ source code to a TranslationUnit.

    Extends CFrontend with namespaces and classes: methods defined inside
    a class body are named `Class::method`, class data members are laid
    out like struct fields.
    """

    language = "cpp"

    def __init__(self):
        self.parser = Parser(Language(tscpp.language()))
        self._reset("<unknown>", b"")
        self._current_class: Optional[str] = None

    def _translate_top_level(self, child: TSNode) -> None:
        if child.type == "namespace_definition":
            body = child.child_by_field_name("body")
            if body is not None:
                self._translate_node_children(body)
        elif child.type == "template_declaration":
            self._translate_node_children(child)
        elif child.type in ("class_specifier", "struct_specifier") and \
                child.child_by_field_name("body") is not None:
            self._translate_class(child)
        else:
            super()._translate_top_level(child)

    def _qualify(self, name: str) -> str:
        if self._current_class and "::" not in name:
            return f"{self._current_class}::{name}"
        return name

    def _translate_class(self, node: TSNode) -> None:
        """Register the class layout and translate inline methods"""
        class_type = self._base_type(node)
        old_class = self._current_class
        self._current_class = class_type.name

        body = node.child_by_field_name("body")
        for child in body.named_children:
            if child.type == "function_definition":
                proc = self._translate_function(child)
                if proc:
                    self._unit.add_procedure(proc)

        self._current_class = old_class


def frontend_for(path: str) -> CFrontend:
    """Pick the C or C++ frontend from the file extension"""
    if path.lower().endswith(CPP_EXTENSIONS):
        return CppFrontend()
    return CFrontend()
