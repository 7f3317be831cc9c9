import json

from stepflow.models import SecurityFinding, Severity
from stepflow.service.quality import QualityIssue, quality_audit
from stepflow.service.report import generate_capability_report

GOOD_PACKAGE = {
    "name": "vai-workflow-contract-review",
    "description": "Find and rank clauses across a contract corpus",
    "author": "Docs Team",
    "license": "MIT",
    "vai": {"category": "retrieval"},
}

GOOD_README = "# Contract review\n\n## Usage\n\n" + "Run the workflow against your corpus. " * 10


def _definition(name="contract-review", steps=2, icon="search"):
    document = {
        "name": name,
        "steps": [{"id": f"s{i}", "tool": "search", "inputs": {}} for i in range(steps)],
    }
    if icon:
        document["branding"] = {"icon": icon}
    return document


class TestQualityAudit:
    def test_clean_package(self, tmp_path):
        (tmp_path / "README.md").write_text(GOOD_README)

        assert quality_audit(_definition(), GOOD_PACKAGE, tmp_path) == []

    def test_package_metadata_problems(self):
        issues = quality_audit(_definition(), {"description": "short", "vai": {"category": "misc"}})

        assert [(i.level, i.message) for i in issues] == [
            ("error", "Package description too short (min 20 chars)"),
            ("error", "Package must have an author"),
            ("warning", "No license specified"),
            ("error", "Invalid or missing vai.category"),
        ]

    def test_readme_checks(self, tmp_path):
        (tmp_path / "README.md").write_text("# Tiny\nTODO: write docs")

        messages = [i.message for i in quality_audit(_definition(), GOOD_PACKAGE, tmp_path)]

        assert messages == [
            "README is very short (< 200 chars)",
            "README should include Usage or Install section",
            "README contains TODO placeholders",
        ]

    def test_missing_readme_is_an_error(self, tmp_path):
        issues = quality_audit(_definition(), GOOD_PACKAGE, tmp_path)

        assert issues == [QualityIssue("error", "Missing README.md")]

    def test_manifest_read_from_package_directory(self, tmp_path):
        (tmp_path / "README.md").write_text(GOOD_README)
        (tmp_path / "package.json").write_text(json.dumps(GOOD_PACKAGE))

        assert quality_audit(_definition(), package_path=tmp_path) == []

    def test_workflow_shape_checks(self):
        issues = quality_audit(_definition(name="my-flow", steps=1, icon=None), GOOD_PACKAGE)

        assert [i.level for i in issues] == ["suggestion", "suggestion", "warning"]
        assert issues[0].message.startswith("Single-step workflows")
        assert issues[1].message == "Consider adding branding.icon for store display"
        assert issues[2].message == 'Workflow name "my-flow" is too generic'

    def test_issue_wire_shape(self):
        assert QualityIssue("warning", "x").to_dict() == {"level": "warning", "message": "x"}


class TestCapabilityReport:
    def test_clean_report(self):
        report = generate_capability_report(_definition(), [], [], {"total": 2, "passed": 2, "failed": 0})

        assert report.startswith("## 📋 Workflow Validation Report: contract-review")
        assert "- 📊 **READ_DB**" in report
        assert "✅ No security issues found." in report
        assert "✅ No quality issues found." in report
        assert "✅ **2/2** tests passed" in report
        assert report.endswith("✅ **All checks passed.** This workflow is ready for review.")

    def test_report_with_findings(self):
        findings = [
            SecurityFinding(Severity.CRITICAL, 'Aggregate step "agg" contains $out stage', "agg"),
            SecurityFinding(Severity.MEDIUM, "Package contains executable code: x.js"),
        ]
        issues = [QualityIssue("error", "Missing README.md"), QualityIssue("suggestion", "icon")]
        tests = {
            "total": 2,
            "passed": 1,
            "failed": 1,
            "results": [{"name": "happy", "passed": True}, {"file": "edge.test.json", "passed": False}],
        }

        report = generate_capability_report(_definition(), findings, issues, tests)

        assert "🔴 1 CRITICAL | 🟡 1 MEDIUM" in report
        assert '| 🔴 CRITICAL | Aggregate step "agg" contains $out stage | agg |' in report
        assert "| 🟡 MEDIUM | Package contains executable code: x.js | - |" in report
        assert "❌ 1 error(s) | 💡 1 suggestion(s)" in report
        assert "- ❌ **[ERROR]** Missing README.md" in report
        assert "❌ **1/2** tests passed" in report
        assert "- ❌ edge.test.json" in report
        assert (
            "⚠️ **Issues found:** 1 critical security finding(s), 1 quality error(s), 1 test failure(s)"
            in report
        )

    def test_report_without_tests_or_capabilities(self):
        definition = {"name": "merge-only", "steps": [{"id": "m", "tool": "merge"}]}

        report = generate_capability_report(definition, [], [])

        assert "No special capabilities detected." in report
        assert "⏭️ No test results available." in report
        assert "⏭️ No test cases found." in generate_capability_report(definition, [], [], {"total": 0})
