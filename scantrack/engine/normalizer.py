"""Finding normalizer — turns a scan's raw findings document into canonical findings.

A findings document is a JSON object whose top-level keys name one section per
scanner output format::

    {
        "sarif": {"runs": [...]},                 # Trivy SARIF
        "secrets": [...],                         # Gitleaks report
        "static_analysis": {"results": [...]},    # Semgrep report
        "container": {"Results": [...]},          # Trivy native JSON
        "findings": [...],                        # legacy ad-hoc findings
        "critical_vulnerabilities": [...],        # legacy, written by the release gate
    }

Each section is validated into one member of the ``FindingSection`` tagged
union. Supporting a new scanner means adding a section model to the union and
a row to ``SECTION_KEYS``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Iterable, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationError

from scantrack.core.logging import get_logger

logger = get_logger(__name__)


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """0 is the most severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}

SEVERITY_ALIASES: dict[str, Severity] = {
    "CRITICAL": Severity.CRITICAL,
    "ERROR": Severity.CRITICAL,
    "HIGH": Severity.HIGH,
    "MEDIUM": Severity.MEDIUM,
    "MODERATE": Severity.MEDIUM,
    "WARNING": Severity.MEDIUM,
    "WARN": Severity.MEDIUM,
    "LOW": Severity.LOW,
    "INFO": Severity.LOW,
    "NOTE": Severity.LOW,
    "NONE": Severity.LOW,
    "NEGLIGIBLE": Severity.LOW,
}


def normalize_severity(value: Any) -> Severity:
    """Map a scanner-specific severity label onto the fixed scale (default LOW)."""
    if not value:
        return Severity.LOW
    return SEVERITY_ALIASES.get(str(value).strip().upper(), Severity.LOW)


class FindingCategory(str, Enum):
    SECRET = "secret"
    DEPENDENCY = "dependency"
    STATIC_ANALYSIS = "static_analysis"
    LEGACY = "legacy"


@dataclass(frozen=True)
class Finding:
    file: str
    line: int
    rule_id: str
    severity: Severity
    message: str
    category: FindingCategory

    @property
    def key(self) -> tuple[str, int, str]:
        """Identity used when comparing scans: (file, line, rule id)."""
        return (self.file, self.line, self.rule_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line,
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "message": self.message,
            "category": self.category.value,
        }


@dataclass(frozen=True)
class SeverityCounts:
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low


def severity_counts(findings: Iterable[Finding]) -> SeverityCounts:
    tally = {severity: 0 for severity in Severity}
    for finding in findings:
        tally[finding.severity] += 1
    return SeverityCounts(
        critical=tally[Severity.CRITICAL],
        high=tally[Severity.HIGH],
        medium=tally[Severity.MEDIUM],
        low=tally[Severity.LOW],
    )


# ── Section models ────────────────────────────────────────────────────────────

class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _valid_items(model: type[BaseModel]) -> BeforeValidator:
    """Validate list entries one by one, dropping the malformed ones.

    A non-list value is passed through so the list validation rejects it.
    """
    adapter = TypeAdapter(model)

    def _keep_valid(value: Any) -> Any:
        if not isinstance(value, list):
            return value
        kept = []
        for item in value:
            try:
                kept.append(adapter.validate_python(item))
            except ValidationError as exc:
                logger.debug(
                    "Skipping malformed finding entry",
                    model=model.__name__.lstrip("_"),
                    errors=exc.error_count(),
                )
        return kept

    return BeforeValidator(_keep_valid)


# SARIF (Trivy --format sarif)

class _SarifMessage(_Lenient):
    text: str | None = None


class _SarifArtifactLocation(_Lenient):
    uri: str | None = None


class _SarifRegion(_Lenient):
    start_line: int | None = Field(None, alias="startLine")


class _SarifPhysicalLocation(_Lenient):
    artifact_location: _SarifArtifactLocation | None = Field(None, alias="artifactLocation")
    region: _SarifRegion | None = None


class _SarifLocation(_Lenient):
    physical_location: _SarifPhysicalLocation | None = Field(None, alias="physicalLocation")


class _SarifResult(_Lenient):
    rule_id: str | None = Field(None, alias="ruleId")
    level: str | None = None
    message: _SarifMessage | None = None
    locations: Annotated[
        list[_SarifLocation], _valid_items(_SarifLocation)
    ] = Field(default_factory=list)


class _SarifRun(_Lenient):
    results: Annotated[
        list[_SarifResult], _valid_items(_SarifResult)
    ] = Field(default_factory=list)


class SarifSection(_Lenient):
    kind: Literal["sarif"] = "sarif"
    runs: Annotated[list[_SarifRun], _valid_items(_SarifRun)] = Field(default_factory=list)

    def findings(self) -> list[Finding]:
        out: list[Finding] = []
        for run in self.runs:
            for result in run.results:
                physical = result.locations[0].physical_location if result.locations else None
                artifact = physical.artifact_location if physical else None
                region = physical.region if physical else None
                out.append(Finding(
                    file=(artifact.uri if artifact else None) or "Unknown",
                    line=(region.start_line if region else None) or 0,
                    rule_id=result.rule_id or "UNKNOWN_RULE",
                    severity=normalize_severity(result.level),
                    message=(result.message.text if result.message else None) or "No description",
                    category=FindingCategory.DEPENDENCY,
                ))
        return out


# Gitleaks

class _Leak(_Lenient):
    file: str | None = Field(None, alias="File")
    start_line: int | None = Field(None, alias="StartLine")
    rule_id: str | None = Field(None, alias="RuleID")
    description: str | None = Field(None, alias="Description")
    match: str | None = Field(None, alias="Match")


class SecretSection(_Lenient):
    kind: Literal["secrets"] = "secrets"
    items: Annotated[list[_Leak], _valid_items(_Leak)] = Field(default_factory=list)

    def findings(self) -> list[Finding]:
        # A leaked credential is critical whatever the rule says
        return [
            Finding(
                file=leak.file or "Unknown",
                line=leak.start_line or 0,
                rule_id=leak.rule_id or "SECRET-LEAK",
                severity=Severity.CRITICAL,
                message=leak.description or f"Secret match: {leak.match}",
                category=FindingCategory.SECRET,
            )
            for leak in self.items
        ]


# Semgrep

class _SemgrepPosition(_Lenient):
    line: int | None = None


class _SemgrepExtra(_Lenient):
    severity: str | None = None
    message: str | None = None


class _SemgrepResult(_Lenient):
    path: str | None = None
    start: _SemgrepPosition | None = None
    check_id: str | None = None
    extra: _SemgrepExtra | None = None


class StaticAnalysisSection(_Lenient):
    kind: Literal["static_analysis"] = "static_analysis"
    results: Annotated[
        list[_SemgrepResult], _valid_items(_SemgrepResult)
    ] = Field(default_factory=list)

    def findings(self) -> list[Finding]:
        return [
            Finding(
                file=result.path or "Unknown",
                line=(result.start.line if result.start else None) or 0,
                rule_id=result.check_id or "CODE-ISSUE",
                severity=normalize_severity(result.extra.severity if result.extra else None),
                message=(result.extra.message if result.extra else None)
                or "Code vulnerability found",
                category=FindingCategory.STATIC_ANALYSIS,
            )
            for result in self.results
        ]


# Trivy native JSON

class _TrivyVulnerability(_Lenient):
    vulnerability_id: str | None = Field(None, alias="VulnerabilityID")
    pkg_name: str | None = Field(None, alias="PkgName")
    severity: str | None = Field(None, alias="Severity")
    title: str | None = Field(None, alias="Title")
    description: str | None = Field(None, alias="Description")


class _TrivyResult(_Lenient):
    target: str | None = Field(None, alias="Target")
    vulnerabilities: Annotated[
        list[_TrivyVulnerability] | None, _valid_items(_TrivyVulnerability)
    ] = Field(None, alias="Vulnerabilities")


class ContainerSection(_Lenient):
    kind: Literal["container"] = "container"
    results: Annotated[
        list[_TrivyResult] | None, _valid_items(_TrivyResult)
    ] = Field(None, alias="Results")

    def findings(self) -> list[Finding]:
        out: list[Finding] = []
        for result in self.results or []:
            for vuln in result.vulnerabilities or []:
                out.append(Finding(
                    file=vuln.pkg_name or result.target or "Unknown",
                    line=0,
                    rule_id=vuln.vulnerability_id or "UNKNOWN",
                    severity=normalize_severity(vuln.severity),
                    message=vuln.title or vuln.description or "Vulnerability detected",
                    category=FindingCategory.DEPENDENCY,
                ))
        return out


# Legacy ad-hoc findings

class _LegacyFinding(_Lenient):
    file: str | None = None
    pkg_name: str | None = Field(None, alias="pkgName")
    line: int | None = None
    rule_id: str | None = Field(None, alias="ruleId")
    vulnerability_id: str | None = Field(None, alias="vulnerabilityID")
    severity: str | None = None
    message: str | None = None
    description: str | None = None
    title: str | None = None


class LegacySection(_Lenient):
    kind: Literal["legacy"] = "legacy"
    items: Annotated[
        list[_LegacyFinding], _valid_items(_LegacyFinding)
    ] = Field(default_factory=list)

    def findings(self) -> list[Finding]:
        return [
            Finding(
                file=item.file or item.pkg_name or "Unknown",
                line=item.line or 0,
                rule_id=item.rule_id or item.vulnerability_id or "UNKNOWN",
                severity=normalize_severity(item.severity),
                message=item.message or item.description or item.title or "",
                category=FindingCategory.LEGACY,
            )
            for item in self.items
        ]


FindingSection = Annotated[
    Union[SarifSection, SecretSection, StaticAnalysisSection, ContainerSection, LegacySection],
    Field(discriminator="kind"),
]

_section_adapter: TypeAdapter[FindingSection] = TypeAdapter(FindingSection)

# (document key, section kind) in output order
SECTION_KEYS: tuple[tuple[str, str], ...] = (
    ("sarif", "sarif"),
    ("secrets", "secrets"),
    ("static_analysis", "static_analysis"),
    ("container", "container"),
    ("findings", "legacy"),
    ("critical_vulnerabilities", "legacy"),
)


def parse_sections(document: Any) -> list[FindingSection]:
    """Validate each recognised key of a findings document into its section model.

    Unknown keys are ignored. A malformed entry is dropped from its section;
    a section whose shape is wrong altogether is skipped.
    """
    if not isinstance(document, dict):
        return []

    sections: list[FindingSection] = []
    for key, kind in SECTION_KEYS:
        value = document.get(key)
        if not value:
            continue
        if isinstance(value, list):
            payload: dict[str, Any] = {"kind": kind, "items": value}
        elif isinstance(value, dict):
            payload = {**value, "kind": kind}
        else:
            continue
        try:
            sections.append(_section_adapter.validate_python(payload))
        except ValidationError as exc:
            logger.debug("Skipping malformed findings section", key=key, errors=exc.error_count())
    return sections


def normalize(document: Any) -> list[Finding]:
    """Return the canonical findings contained in a findings document.

    A non-empty SARIF section takes precedence over the legacy arrays; the two
    are never merged because older records carry both for the same issues.
    """
    sections = parse_sections(document)
    by_section = [(section, section.findings()) for section in sections]
    has_sarif = any(section.kind == "sarif" and found for section, found in by_section)

    findings: list[Finding] = []
    for section, found in by_section:
        if section.kind == "legacy" and has_sarif:
            continue
        findings.extend(found)
    return findings
