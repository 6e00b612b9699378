"""
Tests for the bufguard CLI.
"""

import json

import pytest

from bufguard.cli import (
    EXIT_CONFIG, EXIT_FINDINGS, EXIT_OK, EXIT_TIMEOUT, main,
)


VULNERABLE_C = """
struct passwd_entry {
    char groups[64];
};

void fill_entry(struct passwd_entry *dest, const char *groups) {
    strcpy(dest->groups, groups);
}
"""

PRINTF_C = """
void f(int n) {
    char out[8];
    sprintf(out, "id=%d", n);
}
"""

SAFE_C = """
int add(int a, int b) {
    return a + b;
}
"""


@pytest.fixture
def vulnerable(tmp_path):
    path = tmp_path / "entry.c"
    path.write_text(VULNERABLE_C)
    return path


class TestScanCommand:
    """Tests for the scan command"""

    def test_findings_fail_the_run(self, vulnerable, capsys):
        """Test a high-severity finding exits with 1"""
        result = main(["scan", str(vulnerable)])
        captured = capsys.readouterr()
        assert result == EXIT_FINDINGS
        assert "UnsafeStrcpy" in captured.out
        assert "Findings: 1" in captured.out
        assert "Taint chain:" in captured.out

    def test_clean_run(self, tmp_path, capsys):
        path = tmp_path / "safe.c"
        path.write_text(SAFE_C)
        result = main(["scan", str(path)])
        captured = capsys.readouterr()
        assert result == EXIT_OK
        assert "No buffer overflows found" in captured.out

    def test_fail_on_threshold(self, vulnerable, capsys):
        """Test --fail-on above the finding severity passes"""
        assert main(["scan", str(vulnerable), "--fail-on", "critical"]) == EXIT_OK
        assert main(["scan", str(vulnerable), "--fail-on", "none"]) == EXIT_OK
        assert main(["scan", str(vulnerable), "--fail-on", "medium"]) == EXIT_FINDINGS

    def test_medium_finding_passes_default_threshold(self, tmp_path, capsys):
        path = tmp_path / "printf.c"
        path.write_text(PRINTF_C)
        assert main(["scan", str(path)]) == EXIT_OK
        assert "SprintfOutputOverflow" in capsys.readouterr().out

    def test_json_format(self, vulnerable, capsys):
        """Test JSON output format"""
        result = main(["scan", str(vulnerable), "--format", "json"])
        captured = capsys.readouterr()
        assert result == EXIT_FINDINGS
        data = json.loads(captured.out)
        assert data["summary"]["total"] == 1
        finding = data["findings"][0]
        assert finding["rule_id"] == "UnsafeStrcpy"
        assert finding["capacity"] == 64
        assert finding["taint"] == "tainted"
        assert data["stats"]["files_scanned"] == 1

    def test_output_file(self, vulnerable, tmp_path, capsys):
        out = tmp_path / "report.json"
        main(["scan", str(vulnerable), "-f", "json", "-o", str(out)])
        assert capsys.readouterr().out == ""
        assert json.loads(out.read_text())["summary"]["total"] == 1

    def test_verbose_goes_to_stderr(self, vulnerable, capsys):
        main(["scan", str(vulnerable), "--format", "json", "--verbose"])
        captured = capsys.readouterr()
        assert "[Scanner]" in captured.err
        json.loads(captured.out)

    def test_depth_option(self, tmp_path, capsys):
        path = tmp_path / "depth.c"
        path.write_text("""
char *fetch(void) { return getenv("HOME"); }
void use(void) {
    char buf[16];
    strcpy(buf, fetch());
}
""")
        assert main(["scan", str(path)]) == EXIT_FINDINGS
        assert main(["scan", str(path), "--max-depth", "0"]) == EXIT_OK

    def test_missing_target(self, tmp_path, capsys):
        """Test error when the target does not exist"""
        result = main(["scan", str(tmp_path / "nope.c")])
        captured = capsys.readouterr()
        assert result == EXIT_CONFIG
        assert "Error" in captured.err

    def test_bad_rules(self, vulnerable, tmp_path, capsys):
        result = main(["scan", str(vulnerable), "--rules", str(tmp_path / "missing")])
        captured = capsys.readouterr()
        assert result == EXIT_CONFIG
        assert "invalid rule configuration" in captured.err

    def test_bad_option_value(self, vulnerable, capsys):
        assert main(["scan", str(vulnerable), "--max-iterations", "0"]) == EXIT_CONFIG
        assert main(["scan", str(vulnerable), "--jobs", "0"]) == EXIT_CONFIG

    def test_timeout(self, vulnerable, capsys):
        result = main(["scan", str(vulnerable), "--timeout", "0.000000001"])
        captured = capsys.readouterr()
        assert result == EXIT_TIMEOUT
        assert "time budget" in captured.err

    def test_parse_error_reported(self, tmp_path, capsys):
        path = tmp_path / "bad.c"
        path.write_text("int x = ;")
        result = main(["scan", str(path)])
        captured = capsys.readouterr()
        assert result == EXIT_OK
        assert "Errors:" in captured.out
        assert "parse_error" in captured.out


class TestRulesCommand:
    """Tests for the rules command"""

    def test_default_rules(self, capsys):
        result = main(["rules"])
        captured = capsys.readouterr()
        assert result == EXIT_OK
        assert "strcpy" in captured.out
        assert "Sanitizers:" in captured.out

    def test_invalid_rules(self, tmp_path, capsys):
        (tmp_path / "sources.json").write_text('{"sources": []}')
        result = main(["rules", "--rules", str(tmp_path)])
        captured = capsys.readouterr()
        assert result == EXIT_CONFIG
        assert "sinks.json" in captured.err


class TestMisc:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == EXIT_OK
        assert "usage" in capsys.readouterr().out.lower()

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert "bufguard" in capsys.readouterr().out
