"""Finding comparator — classify findings of two scans as new, resolved or persistent."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal

from scantrack.engine.normalizer import Finding, normalize
from scantrack.models.scan_record import ScanRecord

Trend = Literal["improved", "degraded", "same"]


@dataclass
class ComparisonResult:
    new: list[Finding] = field(default_factory=list)
    resolved: list[Finding] = field(default_factory=list)
    persistent: list[Finding] = field(default_factory=list)

    @property
    def new_count(self) -> int:
        return len(self.new)

    @property
    def resolved_count(self) -> int:
        return len(self.resolved)

    @property
    def persistent_count(self) -> int:
        return len(self.persistent)


@dataclass(frozen=True)
class SeverityDelta:
    """Change in denormalized severity counts from baseline to target."""

    critical: int
    high: int
    medium: int
    low: int

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low

    @property
    def trend(self) -> Trend:
        if self.total < 0:
            return "improved"
        if self.total > 0:
            return "degraded"
        return "same"


def compare_findings(
    baseline: Iterable[Finding], target: Iterable[Finding]
) -> ComparisonResult:
    """Diff two finding sequences keyed on (file, line, rule id).

    Duplicate keys within one side collapse to the last occurrence. For
    persistent findings the target-side copy is kept since it carries the
    current severity and message.
    """
    baseline_map = {finding.key: finding for finding in baseline}
    target_map = {finding.key: finding for finding in target}

    result = ComparisonResult()
    for key, finding in target_map.items():
        if key in baseline_map:
            result.persistent.append(finding)
        else:
            result.new.append(finding)
    for key, finding in baseline_map.items():
        if key not in target_map:
            result.resolved.append(finding)
    return result


def compare(baseline: ScanRecord, target: ScanRecord) -> ComparisonResult:
    """Compare the findings of two scan records of the same service."""
    return compare_findings(normalize(baseline.findings), normalize(target.findings))


def severity_delta(baseline: ScanRecord, target: ScanRecord) -> SeverityDelta:
    return SeverityDelta(
        critical=target.vuln_critical - baseline.vuln_critical,
        high=target.vuln_high - baseline.vuln_high,
        medium=target.vuln_medium - baseline.vuln_medium,
        low=target.vuln_low - baseline.vuln_low,
    )
