"""
Tests for the sink matcher.

Each test runs the frontend and the propagation engine on a small C
function and matches the observed calls against the packaged rules.
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


def match(code, filename="test.c"):
    """All sink findings for the functions in `code`"""
    from bufguard.sil.frontends.c_frontend import CFrontend
    from bufguard.sil.analyzers.taint_propagation import TaintPropagationEngine
    from bufguard.sil.analyzers.sink_matcher import SinkMatcher
    from bufguard.sil.specs.rules import load_rules

    rules = load_rules()
    unit = CFrontend().translate(code, filename)
    matcher = SinkMatcher(rules)
    findings = []
    for result in TaintPropagationEngine(rules).analyze_unit(unit):
        findings.extend(matcher.match_all(result.observations))
    return findings


class TestStringCopy:
    """strcpy / strcat"""

    def test_tainted_parameter_into_struct_field(self):
        """The motivating case: a group list copied into a fixed field"""
        from bufguard.sil.report import Severity
        from bufguard.sil.taint import TaintLevel

        code = """
struct passwd_entry {
    char name[32];
    char groups[64];
};

void fill_entry(struct passwd_entry *dest, const char *groups) {
    strcpy(dest->groups, groups);
}
"""
        findings = match(code, "entry.c")
        assert len(findings) == 1
        finding = findings[0]
        assert finding.rule_id == "UnsafeStrcpy"
        assert finding.severity == Severity.HIGH
        assert finding.taint_level == TaintLevel.TAINTED
        assert finding.buffer_name == "groups"
        assert finding.buffer_capacity == 64
        assert finding.procedure == "fill_entry"
        assert finding.location.file == "entry.c"
        assert finding.location.line == 8
        assert [s.description for s in finding.taint_chain] == [
            "parameter 'groups' of fill_entry()",
            "reaches strcpy()",
        ]

    def test_untainted_source_is_not_reported(self):
        code = """
void f(void) {
    char buf[4];
    strcpy(buf, "a much longer constant string");
}
"""
        assert match(code) == []

    def test_unknown_capacity_is_still_reported(self):
        code = """
void f(char *out, const char *host) {
    strcpy(out, host);
}
"""
        findings = match(code)
        assert len(findings) == 1
        assert findings[0].buffer_capacity is None
        assert "unknown capacity" in findings[0].message

    def test_unknown_taint_has_reduced_severity(self):
        from bufguard.sil.report import Severity
        from bufguard.sil.taint import TaintLevel

        code = """
void f(char *(*get)(void)) {
    char buf[16];
    strcpy(buf, get());
}
"""
        findings = match(code)
        assert len(findings) == 1
        assert findings[0].taint_level == TaintLevel.UNKNOWN
        assert findings[0].severity == Severity.MEDIUM

    def test_strcat(self):
        code = """
void f(const char *host) {
    char path[64] = "/var/spool/";
    strcat(path, host);
}
"""
        findings = match(code)
        assert [f.rule_id for f in findings] == ["UnsafeStrcat"]

    def test_sanitized_copy_is_not_reported(self):
        code = """
void f(const char *host) {
    char name[32];
    char out[32];
    strncpy(name, host, sizeof(name) - 1);
    name[sizeof(name) - 1] = '\\0';
    strcpy(out, name);
}
"""
        assert match(code) == []

    def test_unterminated_copy_is_reported(self):
        code = """
void f(const char *host) {
    char name[32];
    char out[32];
    strncpy(name, host, sizeof(name) - 1);
    strcpy(out, name);
}
"""
        findings = match(code)
        assert [f.rule_id for f in findings] == ["UnsafeStrcpy"]


class TestBoundedCopies:
    """memcpy / strncpy / fgets with size arguments"""

    def test_memcpy_within_bytes(self):
        code = """
void f(const char *host) {
    int ids[8];
    memcpy(ids, host, sizeof(ids));
}
"""
        assert match(code) == []

    def test_memcpy_too_large(self):
        code = """
void f(const char *host) {
    char buf[16];
    memcpy(buf, host, 32);
}
"""
        findings = match(code)
        assert len(findings) == 1
        assert findings[0].rule_id == "UnsafeMemcpy"
        assert "with bound 32" in findings[0].message

    def test_memcpy_non_constant_size(self):
        code = """
void f(const char *host, int n) {
    char buf[16];
    memcpy(buf, host, n);
}
"""
        findings = match(code)
        assert len(findings) == 1
        assert "not a constant" in findings[0].message

    def test_strncpy_bound_exceeds_capacity(self):
        code = """
void f(const char *host) {
    char buf[16];
    strncpy(buf, host, 64);
}
"""
        assert [f.rule_id for f in match(code)] == ["UnsafeStrncpy"]

    def test_bcopy_argument_order(self):
        """bcopy takes (src, dest, n)"""
        code = """
void f(const char *host) {
    char buf[16];
    bcopy(host, buf, 64);
}
"""
        findings = match(code)
        assert len(findings) == 1
        assert findings[0].buffer_name == "buf"


class TestInputReads:
    """gets / fgets / read write external data"""

    def test_gets_is_critical(self):
        from bufguard.sil.report import Severity

        code = """
void f(void) {
    char line[80];
    gets(line);
}
"""
        findings = match(code)
        assert len(findings) == 1
        assert findings[0].rule_id == "UnsafeGets"
        assert findings[0].severity == Severity.CRITICAL

    def test_fgets_with_sizeof_is_safe(self):
        code = """
void f(FILE *fp) {
    char line[80];
    fgets(line, sizeof(line), fp);
}
"""
        assert match(code) == []

    def test_fgets_oversized(self):
        code = """
void f(FILE *fp) {
    char line[80];
    fgets(line, 256, fp);
}
"""
        assert [f.rule_id for f in match(code)] == ["UnsafeFgets"]

    def test_read_counts_bytes(self):
        code = """
void f(int fd) {
    int words[4];
    read(fd, words, 16);
    read(fd, words, 17);
}
"""
        findings = match(code)
        assert len(findings) == 1
        assert findings[0].location.line == 5


class TestFormattedPrint:
    """sprintf-family values flow into the destination"""

    def test_sprintf_with_tainted_argument(self):
        code = """
void f(const char *host) {
    char msg[32];
    sprintf(msg, "connecting to %s", host);
}
"""
        assert [f.rule_id for f in match(code)] == ["UnsafeSprintf"]

    def test_sprintf_with_bounded_output(self):
        """A tainted integer cannot overflow a buffer that holds its longest form"""
        code = """
void f(int host) {
    char wide[64];
    char narrow[8];
    sprintf(wide, "port %d", host);
    sprintf(narrow, "port %d", host);
}
"""
        findings = match(code)
        assert [(f.rule_id, f.location.line) for f in findings] == [("UnsafeSprintf", 6)]

    def test_snprintf_with_fitting_size(self):
        code = """
void f(const char *host) {
    char msg[32];
    snprintf(msg, sizeof(msg), "connecting to %s", host);
}
"""
        assert match(code) == []

    def test_snprintf_with_oversized_size(self):
        code = """
void f(const char *host) {
    char msg[32];
    snprintf(msg, 128, "connecting to %s", host);
}
"""
        assert [f.rule_id for f in match(code)] == ["UnsafeSnprintf"]
