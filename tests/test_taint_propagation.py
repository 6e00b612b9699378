"""
Tests for the dataflow propagation engine.

Tests intra- and interprocedural taint flow, sanitizers, the iteration
cap and monotonicity of the fixed point.
"""

import pytest

# Check if tree-sitter is available
try:
    import tree_sitter_c
    TREE_SITTER_AVAILABLE = True
except ImportError:
    TREE_SITTER_AVAILABLE = False


pytestmark = pytest.mark.skipif(
    not TREE_SITTER_AVAILABLE,
    reason="tree-sitter-c not installed"
)


def analyze(code, filename="test.c", **options):
    """Translate `code` and run the engine on every function"""
    from bufguard.sil.frontends.c_frontend import CFrontend
    from bufguard.sil.analyzers.taint_propagation import TaintPropagationEngine
    from bufguard.sil.specs.rules import load_rules

    unit = CFrontend().translate(code, filename)
    engine = TaintPropagationEngine(load_rules(), **options)
    results = {r.procedure: r for r in engine.analyze_unit(unit)}
    return unit, results


def observed(result, function):
    """Observations of calls to `function`"""
    return [o for o in result.observations if o.function == function]


class TestIntraprocedural:
    """Taint flow inside one function"""

    def test_parameter_source(self):
        """A parameter named in the rules is tainted on entry"""
        from bufguard.sil.taint import TaintLevel

        code = """
void f(const char *groups, const char *other) {
    puts(groups);
    puts(other);
}
"""
        _, results = analyze(code)
        first, second = observed(results["f"], "puts")
        assert first.arg_value(0).level == TaintLevel.TAINTED
        assert first.arg_value(0).chain[0].description == "parameter 'groups' of f()"
        assert second.arg_value(0).level == TaintLevel.UNTAINTED

    def test_return_value_source_and_chain(self):
        code = """
void f(void) {
    char *s = getenv("HOME");
    puts(s);
}
"""
        _, results = analyze(code)
        value = observed(results["f"], "puts")[0].arg_value(0)
        assert value.is_tainted
        assert [s.description for s in value.chain] == [
            "return value of getenv()",
            "assigned to 's'",
        ]

    def test_out_argument_source(self):
        code = """
void f(FILE *fp) {
    char line[128];
    fgets(line, sizeof(line), fp);
    puts(line);
}
"""
        _, results = analyze(code)
        value = observed(results["f"], "puts")[0].arg_value(0)
        assert value.is_tainted
        assert value.chain[0].description == "filled by fgets()"

    def test_observation_sees_value_before_the_call(self):
        """fgets taints its buffer only after it returns"""
        code = """
void f(FILE *fp) {
    char line[128];
    fgets(line, sizeof(line), fp);
}
"""
        _, results = analyze(code)
        assert observed(results["f"], "fgets")[0].arg_value(0).is_untainted

    def test_strong_update_clears_taint(self):
        code = """
void f(const char *host) {
    const char *p = host;
    p = "localhost";
    puts(p);
}
"""
        _, results = analyze(code)
        assert observed(results["f"], "puts")[0].arg_value(0).is_untainted

    def test_branch_join(self):
        """Taint on one branch survives the join"""
        code = """
void f(const char *host, int flag) {
    const char *p = "default";
    if (flag) {
        p = host;
    }
    puts(p);
}
"""
        _, results = analyze(code)
        assert observed(results["f"], "puts")[0].arg_value(0).is_tainted

    def test_field_store_taints_struct(self):
        code = """
struct req { char *name; };
void f(struct req *r, const char *host) {
    r->name = host;
    puts(r->name);
    consume(r);
}
"""
        _, results = analyze(code)
        assert observed(results["f"], "puts")[0].arg_value(0).is_tainted
        assert observed(results["f"], "consume")[0].arg_value(0).is_tainted

    def test_indexed_store_is_weak(self):
        code = """
void f(const char *host) {
    char buf[8];
    buf[0] = host[0];
    buf[1] = 'a';
    puts(buf);
}
"""
        _, results = analyze(code)
        assert observed(results["f"], "puts")[0].arg_value(0).is_tainted

    def test_propagator(self):
        code = """
void f(const char *host) {
    char copy[64];
    char *dup;
    strcpy(copy, host);
    dup = strdup(copy);
    puts(dup);
}
"""
        _, results = analyze(code)
        value = observed(results["f"], "puts")[0].arg_value(0)
        assert value.is_tainted
        descriptions = [s.description for s in value.chain]
        assert "propagated through strcpy()" in descriptions
        assert "propagated through strdup()" in descriptions

    def test_indirect_call_is_unknown(self):
        from bufguard.sil.taint import TaintLevel

        code = """
void f(char *(*get)(void)) {
    char *s = get();
    puts(s);
}
"""
        _, results = analyze(code)
        value = observed(results["f"], "puts")[0].arg_value(0)
        assert value.level == TaintLevel.UNKNOWN
        assert value.chain[0].description == "indirect call result"

    def test_return_value(self):
        code = """
const char *pick(const char *host) {
    return host;
}
"""
        _, results = analyze(code)
        assert results["pick"].return_value.is_tainted


class TestSanitizers:
    """Bounded copies that reset taint"""

    def test_strncpy_with_terminator(self):
        code = """
void f(const char *host) {
    char name[32];
    strncpy(name, host, sizeof(name) - 1);
    name[sizeof(name) - 1] = '\\0';
    puts(name);
}
"""
        _, results = analyze(code)
        assert observed(results["f"], "puts")[0].arg_value(0).is_untainted

    def test_strncpy_without_terminator(self):
        code = """
void f(const char *host) {
    char name[32];
    strncpy(name, host, sizeof(name) - 1);
    puts(name);
}
"""
        _, results = analyze(code)
        assert observed(results["f"], "puts")[0].arg_value(0).is_tainted

    def test_strncpy_bound_too_large(self):
        """A bound equal to the capacity leaves no room for the terminator"""
        code = """
void f(const char *host) {
    char name[32];
    strncpy(name, host, sizeof(name));
    name[31] = 0;
    puts(name);
}
"""
        _, results = analyze(code)
        assert observed(results["f"], "puts")[0].arg_value(0).is_tainted

    def test_strlcpy(self):
        code = """
#define LEN 16
void f(const char *host) {
    char name[LEN];
    strlcpy(name, host, LEN - 1);
    puts(name);
}
"""
        _, results = analyze(code)
        assert observed(results["f"], "puts")[0].arg_value(0).is_untainted


class TestInterprocedural:
    """Calls into functions defined in the analyzed code"""

    CODE = """
char *fetch(void) {
    return getenv("HOME");
}

void use(void) {
    char *s = fetch();
    puts(s);
}
"""

    def test_return_value_followed(self):
        _, results = analyze(self.CODE)
        value = observed(results["use"], "puts")[0].arg_value(0)
        assert value.is_tainted
        assert "returned from fetch()" in [s.description for s in value.chain]

    def test_depth_zero_does_not_enter_callees(self):
        _, results = analyze(self.CODE, max_depth=0)
        assert observed(results["use"], "puts")[0].arg_value(0).is_untainted

    def test_arguments_bound_to_formals(self):
        """A callee's calls are observed with the caller's argument taint"""
        code = """
void emit(const char *v) {
    puts(v);
}

void entry(const char *host) {
    emit(host);
}
"""
        _, results = analyze(code)
        assert observed(results["emit"], "puts")[0].arg_value(0).is_untainted

        inner = observed(results["entry"], "puts")
        assert len(inner) == 1
        assert inner[0].procedure == "emit"
        value = inner[0].arg_value(0)
        assert value.is_tainted
        assert "passed to emit() as 'v'" in [s.description for s in value.chain]

    def test_recursion_terminates(self):
        code = """
int walk(const char *host, int n) {
    if (n == 0) return 0;
    return walk(host, n - 1);
}
"""
        _, results = analyze(code, max_depth=3)
        assert results["walk"].converged


class TestFixedPoint:
    """Convergence, the iteration cap and monotonicity"""

    LOOP = """
void relay(const char *host) {
    const char *a = 0;
    const char *b = 0;
    int i;
    for (i = 0; i < 3; i++) {
        b = a;
        a = host;
    }
    puts(b);
}
"""

    def test_loop_carried_taint(self):
        _, results = analyze(self.LOOP)
        result = results["relay"]
        assert result.converged
        assert result.iterations >= 3
        assert observed(result, "puts")[0].arg_value(0).is_tainted

    def test_levels_never_decrease_between_passes(self):
        from bufguard.sil.taint import TaintLevel

        _, results = analyze(self.LOOP, record_history=True)
        history = results["relay"].history
        assert len(history) == results["relay"].iterations
        for before, after in zip(history, history[1:]):
            for node_id, levels in before.items():
                for path, level in levels.items():
                    assert after[node_id].get(path, TaintLevel.UNTAINTED) >= level

    def test_iteration_limit_widens_to_unknown(self):
        from bufguard.sil.report import DiagnosticKind
        from bufguard.sil.taint import TaintLevel

        code = """
void f(const char *host) {
    const char *s = "constant";
    const char *a = 0;
    const char *b = 0;
    int i;
    for (i = 0; i < 3; i++) {
        b = a;
        a = host;
    }
    puts(s);
}
"""
        _, results = analyze(code, max_iterations=1)
        result = results["f"]
        assert not result.converged
        assert [d.kind for d in result.diagnostics] == [DiagnosticKind.ITERATION_LIMIT]
        value = observed(result, "puts")[0].arg_value(0)
        assert value.level == TaintLevel.UNKNOWN
        assert value.chain[0].description == "iteration limit reached in f()"

    def test_straight_line_converges_quickly(self):
        code = """
void f(const char *host) {
    puts(host);
}
"""
        _, results = analyze(code)
        assert results["f"].converged
        assert results["f"].iterations == 2
        assert results["f"].diagnostics == []

    def test_cap_of_one_suffices_without_loops(self):
        """One changing pass plus the confirming pass fits a cap of 1"""
        code = """
void f(void) {
    char b[8];
    strcpy(b, "hi");
}
"""
        _, results = analyze(code, max_iterations=1)
        assert results["f"].converged
        assert results["f"].iterations == 2
        assert results["f"].diagnostics == []

    def test_invalid_limits(self):
        from bufguard.sil.analyzers.taint_propagation import TaintPropagationEngine
        from bufguard.sil.specs.rules import load_rules

        with pytest.raises(ValueError):
            TaintPropagationEngine(load_rules(), max_iterations=0)
        with pytest.raises(ValueError):
            TaintPropagationEngine(load_rules(), max_depth=-1)

    def test_deadline(self):
        from bufguard.sil.analyzers.taint_propagation import TaintPropagationEngine
        from bufguard.sil.errors import AnalysisTimeoutError
        from bufguard.sil.frontends.c_frontend import CFrontend
        from bufguard.sil.specs.rules import load_rules

        unit = CFrontend().translate("void f(void) { puts(\"x\"); }", "t.c")
        engine = TaintPropagationEngine(load_rules(), deadline=0.0, timeout=5.0)
        with pytest.raises(AnalysisTimeoutError):
            engine.analyze_unit(unit)
