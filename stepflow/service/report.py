"""Markdown capability report combining audit, quality and test results."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, List, Optional, Sequence

from stepflow.models import Capability, SecurityFinding, Severity
from stepflow.service.audit import DefinitionLike, as_definition, count_by_severity, extract_capabilities
from stepflow.service.quality import QualityIssue

CAPABILITY_ICONS = {
    Capability.NETWORK: "🌐",
    Capability.WRITE_DB: "💾",
    Capability.LLM: "🤖",
    Capability.LOOP: "🔄",
    Capability.READ_DB: "📊",
}

SEVERITY_ICONS = {
    Severity.CRITICAL: "🔴",
    Severity.HIGH: "🟠",
    Severity.MEDIUM: "🟡",
    Severity.LOW: "🔵",
}

LEVEL_ICONS = {"error": "❌", "warning": "⚠️", "suggestion": "💡"}


def _capability_lines(definition) -> List[str]:
    caps = extract_capabilities(definition)
    lines = ["### Capabilities"]
    if not caps:
        lines.append("No special capabilities detected.")
    for cap in Capability:
        if cap in caps:
            lines.append(f"- {CAPABILITY_ICONS[cap]} **{cap.value}**")
    return lines


def _security_lines(findings: Sequence[SecurityFinding]) -> List[str]:
    lines = ["### Security Audit"]
    if not findings:
        lines.append("✅ No security issues found.")
        return lines
    counts = count_by_severity(findings)
    lines.append(
        " | ".join(
            f"{SEVERITY_ICONS[severity]} {counts[severity.value]} {severity.value.upper()}"
            for severity in Severity
            if counts[severity.value]
        )
    )
    lines.append("")
    lines.append("| Severity | Finding | Step |")
    lines.append("|----------|---------|------|")
    for finding in findings:
        icon = SEVERITY_ICONS[finding.severity]
        label = finding.severity.value.upper()
        lines.append(f"| {icon} {label} | {finding.message} | {finding.step_id or '-'} |")
    return lines


def _quality_lines(issues: Sequence[QualityIssue]) -> List[str]:
    lines = ["### Quality Audit"]
    if not issues:
        lines.append("✅ No quality issues found.")
        return lines
    parts = []
    for level, noun in (("error", "error(s)"), ("warning", "warning(s)"), ("suggestion", "suggestion(s)")):
        count = sum(1 for issue in issues if issue.level == level)
        if count:
            parts.append(f"{LEVEL_ICONS[level]} {count} {noun}")
    lines.append(" | ".join(parts))
    lines.append("")
    for issue in issues:
        icon = LEVEL_ICONS.get(issue.level, "💡")
        lines.append(f"- {icon} **[{issue.level.upper()}]** {issue.message}")
    return lines


def _test_lines(test_results: Optional[Mapping[str, Any]]) -> List[str]:
    lines = ["### Test Results"]
    if test_results is None:
        lines.append("⏭️ No test results available.")
        return lines
    total = test_results.get("total", 0)
    if not total:
        lines.append("⏭️ No test cases found.")
        return lines
    status = "✅" if not test_results.get("failed") else "❌"
    lines.append(f"{status} **{test_results.get('passed', 0)}/{total}** tests passed")
    results = test_results.get("results") or []
    if results:
        lines.append("")
        for result in results:
            icon = "✅" if result.get("passed") else "❌"
            lines.append(f"- {icon} {result.get('name') or result.get('file')}")
    return lines


def generate_capability_report(
    definition: DefinitionLike,
    findings: Sequence[SecurityFinding],
    quality_issues: Sequence[QualityIssue],
    test_results: Optional[Mapping[str, Any]] = None,
) -> str:
    """Render the review report for a workflow package as markdown."""
    definition = as_definition(definition)
    findings = list(findings or [])
    quality_issues = list(quality_issues or [])

    lines = [f"## 📋 Workflow Validation Report: {definition.name or 'Unknown Workflow'}", ""]
    for section in (
        _capability_lines(definition),
        _security_lines(findings),
        _quality_lines(quality_issues),
        _test_lines(test_results),
    ):
        lines.extend(section)
        lines.append("")

    counts = count_by_severity(findings)
    quality_errors = sum(1 for issue in quality_issues if issue.level == "error")
    tests_failed = test_results.get("failed", 0) if test_results else 0

    lines.append("### Summary")
    problems = []
    if counts["critical"]:
        problems.append(f"{counts['critical']} critical security finding(s)")
    if counts["high"]:
        problems.append(f"{counts['high']} high security finding(s)")
    if quality_errors:
        problems.append(f"{quality_errors} quality error(s)")
    if tests_failed:
        problems.append(f"{tests_failed} test failure(s)")
    if problems:
        lines.append(f"⚠️ **Issues found:** {', '.join(problems)}")
    else:
        lines.append("✅ **All checks passed.** This workflow is ready for review.")
    return "\n".join(lines)


__all__ = ["generate_capability_report"]
