"""
Tests for the C/C++ frontend.

Covers translation of functions, declarations, calls and control flow
into the IR, and the buffer declarations recorded along the way.
"""

import pytest

# Check if tree-sitter is available
try:
    import tree_sitter_c
    import tree_sitter_cpp
    TREE_SITTER_AVAILABLE = True
except ImportError:
    TREE_SITTER_AVAILABLE = False


pytestmark = pytest.mark.skipif(
    not TREE_SITTER_AVAILABLE,
    reason="tree-sitter-c / tree-sitter-cpp not installed"
)


def calls_of(proc):
    from bufguard.sil.instructions import Call
    return [i for i in proc.get_all_instrs() if isinstance(i, Call)]


class TestCFrontend:
    """Test C to IR translation"""

    def test_simple_function(self):
        """Test translating a simple function"""
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """
int add(int a, int b) {
    int c = a + b;
    return c;
}
"""
        unit = CFrontend().translate(code, "add.c")

        assert "add" in unit.procedures
        proc = unit.procedures["add"]
        assert proc.get_param_names() == ["a", "b"]
        assert "c" in proc.locals
        assert len(list(proc.cfg_iter())) > 0

    def test_nested_calls_are_hoisted_in_order(self):
        """The inner call is emitted before the outer one"""
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """
void f(void) {
    char buf[32];
    strcpy(buf, getenv("HOME"));
}
"""
        unit = CFrontend().translate(code, "nested.c")
        names = [c.get_func_name() for c in calls_of(unit.procedures["f"])]
        assert names == ["getenv", "strcpy"]

    def test_call_argument_locations(self):
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """void f(char *dst, const char *src) {
    strcpy(dst,
           src);
}
"""
        unit = CFrontend().translate(code, "loc.c")
        call = calls_of(unit.procedures["f"])[0]
        assert call.loc.line == 2
        assert call.arg_loc(0).line == 2
        assert call.arg_loc(1).line == 3

    def test_field_assignment_uses_access_path(self):
        """Assignments through -> and . write the dotted path"""
        from bufguard.sil.frontends.c_frontend import CFrontend
        from bufguard.sil.instructions import Assign
        from bufguard.sil.types import PVar

        code = """
struct entry { int len; };
void f(struct entry *dest, int n) {
    dest->len = n;
}
"""
        unit = CFrontend().translate(code, "field.c")
        assigns = [i for i in unit.procedures["f"].get_all_instrs() if isinstance(i, Assign)]
        assert any(a.id == PVar("dest.len") for a in assigns)

    def test_indexed_write_is_a_store(self):
        from bufguard.sil.frontends.c_frontend import CFrontend
        from bufguard.sil.instructions import Store
        from bufguard.sil.types import ExpIndex

        code = """
void f(void) {
    char buf[8];
    buf[7] = '\\0';
}
"""
        unit = CFrontend().translate(code, "store.c")
        stores = [i for i in unit.procedures["f"].get_all_instrs() if isinstance(i, Store)]
        assert len(stores) == 1
        assert isinstance(stores[0].addr, ExpIndex)

    def test_if_else_creates_branches(self):
        """Test if/else produces two pruned branches that join"""
        from bufguard.sil.frontends.c_frontend import CFrontend
        from bufguard.sil.instructions import Prune
        from bufguard.sil.procedure import NodeKind

        code = """
int f(int x) {
    int y = 0;
    if (x > 0) {
        y = 1;
    } else {
        y = 2;
    }
    return y;
}
"""
        unit = CFrontend().translate(code, "branch.c")
        proc = unit.procedures["f"]
        prunes = [i for i in proc.get_all_instrs() if isinstance(i, Prune)]
        assert {p.is_true_branch for p in prunes} == {True, False}
        assert any(n.kind == NodeKind.JOIN for n in proc.nodes.values())

    def test_loop_has_back_edge(self):
        """Test a for loop head is reachable from the loop body"""
        from bufguard.sil.frontends.c_frontend import CFrontend
        from bufguard.sil.procedure import NodeKind

        code = """
void f(void) {
    int i;
    for (i = 0; i < 10; i++) {
        if (i == 5) break;
    }
}
"""
        unit = CFrontend().translate(code, "loop.c")
        proc = unit.procedures["f"]
        heads = [n for n in proc.nodes.values() if n.kind == NodeKind.LOOP_HEAD]
        assert len(heads) == 1
        assert len(heads[0].preds) >= 2

    def test_prototypes_are_not_procedures(self):
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """
char *lookup(const char *key);
static int helper(void) { return 1; }
"""
        unit = CFrontend().translate(code, "proto.c")
        assert list(unit.procedures) == ["helper"]

    def test_syntax_error_is_recovered(self):
        """Test functions around a syntax error are kept"""
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """
void ok(void) { }

void broken(void) {
    int x = ;
"""
        unit = CFrontend().translate(code, "broken.c")
        assert "ok" in unit.procedures
        assert unit.syntax_errors
        assert unit.syntax_errors[0] >= 4

    def test_unusable_tree_raises(self):
        """Test a file with no recoverable function is a parse error"""
        from bufguard.sil.frontends.c_frontend import CFrontend
        from bufguard.sil.errors import SourceParseError

        code = """
#define SIZE 8

int table[SIZE] = ;
"""
        with pytest.raises(SourceParseError) as exc_info:
            CFrontend().translate(code, "broken.c")
        assert exc_info.value.filename == "broken.c"
        assert exc_info.value.line == 4

    def test_attribute_macro_parameter(self):
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """#define UNUSED __attribute__((unused))
static void f(char *host, int x UNUSED) {
    char b[8];
    strcpy(b, host);
}
"""
        unit = CFrontend().translate(code, "attr.c")
        proc = unit.procedures["f"]
        assert proc.get_param_names()[0] == "host"
        assert unit.syntax_errors == [2]
        assert [c.get_func_name() for c in calls_of(proc)] == ["strcpy"]

    def test_function_pointer_call_is_indirect(self):
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """
void f(char *(*get)(void)) {
    char *s = get();
    puts(s);
}
"""
        unit = CFrontend().translate(code, "fp.c")
        calls = {c.get_func_name(): c for c in calls_of(unit.procedures["f"])}
        assert calls["get"].is_indirect
        assert not calls["puts"].is_indirect


class TestDeclarations:
    """Test buffer declarations recorded by the frontend"""

    def test_array_sizes_from_macros_and_enums(self):
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """
#define NAME_LEN 32
#define BIG (NAME_LEN * 2)
enum { SMALL = 4, LARGE = SMALL * 4 };

char global_buf[LARGE];

void f(void) {
    char name[NAME_LEN + 1];
    char big[BIG];
    char greeting[] = "hello";
    char *p = 0;
}
"""
        unit = CFrontend().translate(code, "decl.c")
        catalog = unit.catalog

        assert unit.constants["NAME_LEN"] == 32
        assert unit.constants["BIG"] == 64
        assert unit.constants["LARGE"] == 16
        assert catalog.get("<global>", "global_buf").capacity == 16
        assert catalog.get("f", "name").capacity == 33
        assert catalog.get("f", "big").capacity == 64
        assert catalog.get("f", "greeting").capacity == 6
        assert catalog.get("f", "p") is None

    def test_struct_layout(self):
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """
typedef struct {
    char groups[64];
    int count;
} passwd_entry;

void f(void) {
    passwd_entry e;
}
"""
        unit = CFrontend().translate(code, "struct.c")
        assert "passwd_entry" in unit.structs
        assert unit.catalog.get("struct passwd_entry", "groups").capacity == 64
        # 64 bytes of chars plus a 4-byte int
        assert unit.catalog.get("f", "e").capacity == 68

    def test_symbolic_size_is_unknown(self):
        from bufguard.sil.frontends.c_frontend import CFrontend

        code = """
void f(int n) {
    char vla[n];
}
"""
        unit = CFrontend().translate(code, "vla.c")
        decl = unit.catalog.get("f", "vla")
        assert decl is not None
        assert decl.capacity is None

    def test_array_parameter_decays(self):
        """A parameter declared as char buf[16] is a pointer, not a buffer"""
        from bufguard.sil.frontends.c_frontend import CFrontend
        from bufguard.sil.types import TypeKind

        code = "void f(char buf[16]) { }"
        unit = CFrontend().translate(code, "param.c")
        _, typ = unit.procedures["f"].params[0]
        assert typ.kind == TypeKind.POINTER
        assert unit.catalog.get("f", "buf") is None


class TestCppFrontend:
    """Test C++ specific translation"""

    def test_class_methods_are_qualified(self):
        from bufguard.sil.frontends.c_frontend import CppFrontend

        code = """
class Parser {
public:
    void parse(const char *host) {
        char buf[16];
        strcpy(buf, host);
    }
};

namespace net {
int resolve(const char *name) { return 0; }
}
"""
        unit = CppFrontend().translate(code, "parser.cpp")
        assert "Parser::parse" in unit.procedures
        assert "resolve" in unit.procedures
        assert unit.language == "cpp"

    def test_frontend_for_extension(self):
        from bufguard.sil.frontends.c_frontend import CFrontend, CppFrontend, frontend_for

        assert type(frontend_for("a.c")) is CFrontend
        assert type(frontend_for("a.h")) is CFrontend
        assert isinstance(frontend_for("a.cpp"), CppFrontend)
        assert isinstance(frontend_for("A.HPP"), CppFrontend)


class TestEscapes:
    """Test decoding of C literal escapes"""

    def test_decode(self):
        from bufguard.sil.frontends.c_frontend import decode_c_escapes

        assert decode_c_escapes("a\\nb") == "a\nb"
        assert decode_c_escapes("\\0") == "\0"
        assert decode_c_escapes("\\x41\\101") == "AA"
        assert decode_c_escapes("100%%") == "100%%"

    def test_string_literal_constant(self):
        from bufguard.sil.frontends.c_frontend import CFrontend
        from bufguard.sil.types import ExpConst

        code = """
void f(char *out, int n) {
    sprintf(out, "n=%d\\n", n);
}
"""
        unit = CFrontend().translate(code, "lit.c")
        call = calls_of(unit.procedures["f"])[0]
        assert isinstance(call.args[1], ExpConst)
        assert call.args[1].value == "n=%d\n"
