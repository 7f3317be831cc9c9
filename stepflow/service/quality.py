from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from stepflow.logging import get_logger
from stepflow.service.audit import DefinitionLike, as_definition

logger = get_logger(__name__)

CATEGORIES = ("retrieval", "analysis", "ingestion", "domain-specific", "utility", "integration")

MIN_DESCRIPTION_LENGTH = 20
MIN_README_LENGTH = 200

_GENERIC_NAME_RE = re.compile(r"^(test|my|workflow|demo|example)", re.IGNORECASE)


@dataclass(frozen=True)
class QualityIssue:
    """A publishing-quality problem; ``level`` is error, warning or suggestion."""

    level: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level, "message": self.message}


def _package_issues(package: Mapping[str, Any]) -> List[QualityIssue]:
    issues: List[QualityIssue] = []
    description = package.get("description")
    if not isinstance(description, str) or len(description) < MIN_DESCRIPTION_LENGTH:
        issues.append(QualityIssue("error", "Package description too short (min 20 chars)"))
    if not package.get("author"):
        issues.append(QualityIssue("error", "Package must have an author"))
    if not package.get("license"):
        issues.append(QualityIssue("warning", "No license specified"))
    vai = package.get("vai")
    category = vai.get("category") if isinstance(vai, Mapping) else None
    if category not in CATEGORIES:
        issues.append(QualityIssue("error", "Invalid or missing vai.category"))
    return issues


def _readme_issues(package_path: Path) -> List[QualityIssue]:
    readme_path = package_path / "README.md"
    if not readme_path.is_file():
        return [QualityIssue("error", "Missing README.md")]
    readme = readme_path.read_text(encoding="utf-8")
    issues: List[QualityIssue] = []
    if len(readme) < MIN_README_LENGTH:
        issues.append(QualityIssue("warning", "README is very short (< 200 chars)"))
    if "## Usage" not in readme and "## Install" not in readme:
        issues.append(QualityIssue("warning", "README should include Usage or Install section"))
    if "TODO" in readme:
        issues.append(QualityIssue("warning", "README contains TODO placeholders"))
    return issues


def quality_audit(
    definition: DefinitionLike,
    package: Optional[Mapping[str, Any]] = None,
    package_path: Optional[Union[str, Path]] = None,
) -> List[QualityIssue]:
    """Check package metadata, README and workflow shape for store readiness.

    ``package`` is the parsed package manifest. When omitted and
    ``package_path`` holds a ``package.json``, that file is read.
    """
    definition = as_definition(definition)
    issues: List[QualityIssue] = []

    if package is None and package_path is not None:
        manifest = Path(package_path) / "package.json"
        if manifest.is_file():
            try:
                package = json.loads(manifest.read_text(encoding="utf-8"))
            except ValueError as exc:
                logger.warning("package_manifest_unreadable", path=str(manifest), error=str(exc))
                package = {}
    issues.extend(_package_issues(package if isinstance(package, Mapping) else {}))

    if package_path is not None:
        issues.extend(_readme_issues(Path(package_path)))

    if len(definition.steps) == 1:
        issues.append(
            QualityIssue(
                "suggestion",
                "Single-step workflows may not warrant a package; consider documenting "
                "as a CLI example instead",
            )
        )

    branding = definition.branding if isinstance(definition.branding, Mapping) else {}
    if not branding.get("icon"):
        issues.append(QualityIssue("suggestion", "Consider adding branding.icon for store display"))

    if isinstance(definition.name, str) and _GENERIC_NAME_RE.match(definition.name):
        issues.append(QualityIssue("warning", f'Workflow name "{definition.name}" is too generic'))

    return issues


__all__ = ["CATEGORIES", "QualityIssue", "quality_audit"]
