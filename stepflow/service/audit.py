"""Static capability extraction and security audit of workflow definitions.

Nothing here executes a step or raises on a finding: findings are data the
caller (a publish gate, the engine's ``block_on`` check, a report) decides
what to do with.
"""
from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union

from stepflow.logging import get_logger
from stepflow.models import Capability, SecurityFinding, Severity, Step, WorkflowDefinition
from stepflow.service.sandbox import host_matches, url_host

logger = get_logger(__name__)

# Exfiltration endpoints, request catchers and cloud metadata services
DEFAULT_BLOCKED_DOMAINS: tuple[str, ...] = (
    "webhook.site",
    "requestbin.net",
    "requestbin.com",
    "*.requestbin.net",
    "pipedream.net",
    "*.pipedream.net",
    "*.m.pipedream.net",
    "ngrok.io",
    "*.ngrok.io",
    "*.ngrok-free.app",
    "pastebin.com",
    "transfer.sh",
    "hookbin.com",
    "beeceptor.com",
    "*.beeceptor.com",
    "interact.sh",
    "*.interact.sh",
    "burpcollaborator.net",
    "*.burpcollaborator.net",
    "169.254.169.254",
    "metadata.google.internal",
    "169.254.0.0/16",
)

LOOP_ITERATION_CEILING = 1000

EXECUTABLE_SUFFIXES = (".js", ".ts", ".mjs", ".cjs", ".py", ".sh")

LIFECYCLE_SCRIPTS = ("preinstall", "install", "postinstall", "preuninstall", "postuninstall")

WRITE_STAGES = ("$out", "$merge")

_INJECTION_RE = re.compile(r"ignore\s+(previous|all)\s+instructions", re.IGNORECASE)
_SYSTEM_PREFIX_RE = re.compile(r"system\s*:\s*", re.IGNORECASE)

DefinitionLike = Union[WorkflowDefinition, Mapping[str, Any]]


def as_definition(definition: DefinitionLike) -> WorkflowDefinition:
    if isinstance(definition, WorkflowDefinition):
        return definition
    return WorkflowDefinition.from_dict(definition)


def _inputs(step: Step) -> Mapping[str, Any]:
    return step.inputs if isinstance(step.inputs, Mapping) else {}


def _write_stages(step: Step) -> List[str]:
    pipeline = _inputs(step).get("pipeline")
    stages: List[str] = []
    if isinstance(pipeline, list):
        for stage in pipeline:
            if isinstance(stage, Mapping) and stage:
                key = next(iter(stage))
                if key in WRITE_STAGES:
                    stages.append(key)
    return stages


def extract_capabilities(definition: DefinitionLike) -> Set[Capability]:
    """Capabilities a workflow needs, from its step tools alone."""
    definition = as_definition(definition)
    caps: Set[Capability] = set()
    for step in definition.steps:
        if step.tool == "http":
            caps.add(Capability.NETWORK)
        elif step.tool == "ingest":
            caps.add(Capability.WRITE_DB)
        elif step.tool == "aggregate":
            caps.add(Capability.READ_DB)
            if step.writes_allowed or _write_stages(step):
                caps.add(Capability.WRITE_DB)
        elif step.tool == "generate":
            caps.add(Capability.LLM)
        elif step.tool == "loop":
            caps.add(Capability.LOOP)
        elif step.tool in ("query", "search", "collections"):
            caps.add(Capability.READ_DB)

        if step.for_each:
            caps.add(Capability.LOOP)
    return caps


def is_blocked_url(url: str, blocked_domains: Optional[Sequence[str]] = None) -> bool:
    """True when the URL's host is on the denylist (exact, wildcard or CIDR)."""
    host = url_host(url)
    if not host:
        return False
    patterns = list(DEFAULT_BLOCKED_DOMAINS) + list(blocked_domains or [])
    return host_matches(host, patterns)


def _audit_http(step: Step, blocked: Sequence[str]) -> List[SecurityFinding]:
    url = _inputs(step).get("url")
    if not isinstance(url, str):
        return []
    if "{{" in url:
        # Resolved only at run time; the denylist cannot see it
        return [
            SecurityFinding(
                Severity.HIGH, f'HTTP step "{step.id}" has dynamic URL (needs review)', step.id
            )
        ]
    findings: List[SecurityFinding] = []
    if is_blocked_url(url, blocked):
        findings.append(
            SecurityFinding(Severity.CRITICAL, f'HTTP step "{step.id}" targets blocked domain', step.id)
        )
    if url.startswith("http://"):
        findings.append(
            SecurityFinding(Severity.MEDIUM, f'HTTP step "{step.id}" uses insecure HTTP', step.id)
        )
    return findings


def _audit_aggregate(step: Step) -> List[SecurityFinding]:
    findings: List[SecurityFinding] = []
    if step.writes_allowed:
        findings.append(
            SecurityFinding(
                Severity.HIGH,
                f'Aggregate step "{step.id}" allows write operations ($out/$merge)',
                step.id,
            )
        )
    for stage in _write_stages(step):
        findings.append(
            SecurityFinding(
                Severity.CRITICAL, f'Aggregate step "{step.id}" contains {stage} stage', step.id
            )
        )
    return findings


def _audit_generate(step: Step) -> List[SecurityFinding]:
    inputs = _inputs(step)
    findings: List[SecurityFinding] = []
    for key in ("prompt", "systemPrompt"):
        text = inputs.get(key)
        if not isinstance(text, str):
            continue
        if _INJECTION_RE.search(text):
            findings.append(
                SecurityFinding(Severity.HIGH, f'Suspicious prompt pattern in "{step.id}"', step.id)
            )
        if _SYSTEM_PREFIX_RE.search(text):
            findings.append(
                SecurityFinding(
                    Severity.MEDIUM, f'Prompt contains "system:" prefix in "{step.id}"', step.id
                )
            )
    return findings


def _audit_ingest(step: Step) -> List[SecurityFinding]:
    inputs = _inputs(step)
    findings: List[SecurityFinding] = []
    for key, label in (("db", "database"), ("collection", "collection")):
        value = inputs.get(key)
        if isinstance(value, str) and "{{" in value:
            findings.append(
                SecurityFinding(
                    Severity.MEDIUM, f'Ingest step "{step.id}" uses dynamic {label} name', step.id
                )
            )
    return findings


def _audit_loop(step: Step) -> List[SecurityFinding]:
    limit = step.iteration_limit
    if not limit or limit > LOOP_ITERATION_CEILING:
        return [
            SecurityFinding(
                Severity.MEDIUM, f'Loop step "{step.id}" has high/unbounded maxIterations', step.id
            )
        ]
    return []


def _audit_package(package_path: Path) -> List[SecurityFinding]:
    findings: List[SecurityFinding] = []
    try:
        names = sorted(entry.name for entry in package_path.iterdir() if entry.is_file())
    except OSError as exc:
        logger.warning("package_audit_unreadable", path=str(package_path), error=str(exc))
        return findings

    executables = [name for name in names if name.endswith(EXECUTABLE_SUFFIXES)]
    if executables:
        findings.append(
            SecurityFinding(
                Severity.CRITICAL, f"Package contains executable code: {', '.join(executables)}"
            )
        )

    manifest = package_path / "package.json"
    if manifest.is_file():
        try:
            package = json.loads(manifest.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("package_manifest_unreadable", path=str(manifest), error=str(exc))
            return findings
        scripts = package.get("scripts") if isinstance(package, Mapping) else None
        if isinstance(scripts, Mapping):
            for script in LIFECYCLE_SCRIPTS:
                if scripts.get(script):
                    findings.append(
                        SecurityFinding(
                            Severity.CRITICAL, f'Package has "{script}" lifecycle script'
                        )
                    )
    return findings


def security_audit(
    definition: DefinitionLike,
    package_path: Optional[Union[str, Path]] = None,
    blocked_domains: Optional[Sequence[str]] = None,
) -> List[SecurityFinding]:
    """Audit a definition (and optionally its package directory).

    Findings come back in step order, followed by package-level findings.
    """
    definition = as_definition(definition)
    blocked = list(blocked_domains or [])
    findings: List[SecurityFinding] = []
    for step in definition.steps:
        if step.tool == "http":
            findings.extend(_audit_http(step, blocked))
        elif step.tool == "aggregate":
            findings.extend(_audit_aggregate(step))
        elif step.tool == "generate":
            findings.extend(_audit_generate(step))
        elif step.tool == "ingest":
            findings.extend(_audit_ingest(step))
        elif step.tool == "loop":
            findings.extend(_audit_loop(step))

    if package_path is not None:
        findings.extend(_audit_package(Path(package_path)))

    if findings:
        logger.info(
            "security_audit_findings",
            workflow=definition.name,
            counts=count_by_severity(findings),
        )
    return findings


def max_severity(findings: Iterable[SecurityFinding]) -> Optional[Severity]:
    worst: Optional[Severity] = None
    for finding in findings:
        if worst is None or finding.severity.rank > worst.rank:
            worst = finding.severity
    return worst


def findings_at_or_above(
    findings: Iterable[SecurityFinding], severity: Union[Severity, str]
) -> List[SecurityFinding]:
    threshold = Severity(severity)
    return [finding for finding in findings if finding.severity.rank >= threshold.rank]


def count_by_severity(findings: Iterable[SecurityFinding]) -> Dict[str, int]:
    counts = {severity.value: 0 for severity in Severity}
    for finding in findings:
        counts[finding.severity.value] += 1
    return counts


__all__ = [
    "DEFAULT_BLOCKED_DOMAINS",
    "LOOP_ITERATION_CEILING",
    "extract_capabilities",
    "is_blocked_url",
    "security_audit",
    "max_severity",
    "findings_at_or_above",
    "count_by_severity",
    "as_definition",
]
