from __future__ import annotations

from dataclasses import dataclass, field

from bacify.age_guard import AgeCheck
from bacify.analyzer import AnalysisResult
from bacify.errors import StaleBackupError
from bacify.models import Finding, FindingKind, ScanIssue, SnapshotInfo


EXIT_CLEAN = 0
EXIT_FAILED = 1


@dataclass(slots=True)
class VerificationReport:
    snapshot: SnapshotInfo
    scan_root: str
    findings: list[Finding]
    age_check: AgeCheck | None = None
    scan_issues: list[ScanIssue] = field(default_factory=list)
    files_scanned: int = 0
    content_checks: int = 0
    degraded_birth_times: int = 0

    @property
    def missing(self) -> list[Finding]:
        return [f for f in self.findings if f.kind is FindingKind.MISSING_FROM_BACKUP]

    @property
    def mismatched(self) -> list[Finding]:
        return [f for f in self.findings if f.kind is FindingKind.CONTENT_MISMATCH]

    @property
    def stale_error(self) -> StaleBackupError | None:
        return self.age_check.error if self.age_check is not None else None

    @property
    def is_stale(self) -> bool:
        return self.age_check is not None and self.age_check.is_stale

    @property
    def is_clean(self) -> bool:
        return not self.findings and not self.is_stale

    @property
    def exit_code(self) -> int:
        return EXIT_CLEAN if self.is_clean else EXIT_FAILED


def build_report(
    snapshot: SnapshotInfo,
    scan_root: str,
    analysis: AnalysisResult,
    *,
    age_check: AgeCheck | None = None,
    scan_issues: list[ScanIssue] | None = None,
    files_scanned: int = 0,
    degraded_birth_times: int = 0,
) -> VerificationReport:
    issues = sorted([*(scan_issues or []), *analysis.issues], key=lambda issue: issue.path)
    return VerificationReport(
        snapshot=snapshot,
        scan_root=scan_root,
        findings=list(analysis.findings),
        age_check=age_check,
        scan_issues=issues,
        files_scanned=files_scanned,
        content_checks=analysis.content_checks,
        degraded_birth_times=degraded_birth_times,
    )
