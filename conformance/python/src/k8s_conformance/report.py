from __future__ import annotations

import io
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field
from ruamel.yaml import YAML

from k8s_conformance import REPORT_API_VERSION, REPORT_KIND
from k8s_conformance.errors import PersistError
from k8s_conformance.models import Outcome, OutcomeSet, OutcomeStatus

logger = logging.getLogger(__name__)

DATE_SENTINEL = "-"
REPORT_FORMATS = ("yaml", "json")
# Profile entry collecting outcomes that belong to none of the reported profiles.
NO_PROFILE = "none"

ResultKind = Literal["success", "partial", "failure"]


class _ReportModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


class Implementation(_ReportModel):
    organization: str
    project: str
    url: str
    version: str
    contact: list[str] = Field(default_factory=list)


class Statistics(_ReportModel):
    passed: int = 0
    failed: int = 0
    skipped: int = 0


class CaseResult(_ReportModel):
    name: str
    outcome: OutcomeStatus
    message: str | None = None


class ProfileReport(_ReportModel):
    name: str
    result: ResultKind
    statistics: Statistics
    failed_tests: list[str] = Field(default_factory=list, alias="failedTests")
    skipped_tests: list[str] = Field(default_factory=list, alias="skippedTests")
    supported_features: list[str] = Field(default_factory=list, alias="supportedFeatures")
    unsupported_features: list[str] = Field(default_factory=list, alias="unsupportedFeatures")
    results: list[CaseResult] = Field(default_factory=list)


class ReportDocument(_ReportModel):
    api_version: str = Field(default=REPORT_API_VERSION, alias="apiVersion")
    kind: str = REPORT_KIND
    date: str = DATE_SENTINEL
    implementation: Implementation
    target_api_version: str = Field(alias="targetAPIVersion")
    target_api_channel: str = Field(alias="targetAPIChannel")
    mode: str = "default"
    profiles: list[ProfileReport] = Field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def file_name(self, fmt: str) -> str:
        return f"{self.target_api_channel}-{self.implementation.version}-{self.mode}-report.{fmt}"

    def relative_path(self, fmt: str) -> Path:
        return Path(self.target_api_version) / self.file_name(fmt)


@dataclass(frozen=True)
class ReportMetadata:
    implementation: Implementation
    api_version: str
    channel: str
    profiles: tuple[str, ...]
    supported_features: frozenset[str] = frozenset()
    mode: str = "default"


def _profile_result(stats: Statistics) -> ResultKind:
    if stats.failed:
        return "failure"
    if stats.skipped:
        return "partial"
    return "success"


def _profile_report(name: str, outcomes: Iterable[Outcome], supported: frozenset[str]) -> ProfileReport:
    members = sorted(outcomes, key=lambda o: o.name)
    stats = Statistics(
        passed=sum(1 for o in members if o.status == OutcomeStatus.PASSED),
        failed=sum(1 for o in members if o.status == OutcomeStatus.FAILED),
        skipped=sum(1 for o in members if o.status == OutcomeStatus.SKIPPED),
    )
    features: set[str] = set()
    for outcome in members:
        features.update(outcome.features)
    return ProfileReport(
        name=name,
        result=_profile_result(stats),
        statistics=stats,
        failed_tests=[o.name for o in members if o.status == OutcomeStatus.FAILED],
        skipped_tests=[o.name for o in members if o.status == OutcomeStatus.SKIPPED],
        supported_features=sorted(features & supported),
        unsupported_features=sorted(features - supported),
        results=[CaseResult(name=o.name, outcome=o.status, message=o.message) for o in members],
    )


def generate(outcomes: OutcomeSet, metadata: ReportMetadata) -> ReportDocument:
    profiles = sorted(set(metadata.profiles))
    if not profiles:
        names: set[str] = set()
        for outcome in outcomes:
            names.update(outcome.profiles)
        profiles = sorted(names)

    entries = [
        _profile_report(name, (o for o in outcomes if name in o.profiles), metadata.supported_features)
        for name in profiles
    ]
    reported = set(profiles)
    unclaimed = [o for o in outcomes if not reported.intersection(o.profiles)]
    if unclaimed:
        entries.append(_profile_report(NO_PROFILE, unclaimed, metadata.supported_features))
    return ReportDocument(
        implementation=metadata.implementation,
        target_api_version=metadata.api_version,
        target_api_channel=metadata.channel,
        mode=metadata.mode,
        profiles=sorted(entries, key=lambda p: p.name),
    )


def render(report: ReportDocument, fmt: str = "yaml") -> str:
    data = report.to_dict()
    data["date"] = DATE_SENTINEL
    if fmt == "json":
        return json.dumps(data, indent=2, sort_keys=False, ensure_ascii=False) + "\n"
    if fmt == "yaml":
        yaml = YAML(typ="safe", pure=True)
        yaml.default_flow_style = False
        yaml.sort_base_mapping_type_on_output = False
        buf = io.StringIO()
        yaml.dump(data, buf)
        return buf.getvalue()
    raise ValueError(f"Unsupported report format: {fmt}")


def persist(report: ReportDocument, base_path: Path, fmt: str = "yaml") -> Path:
    text = render(report, fmt)
    out_path = Path(base_path) / report.relative_path(fmt)
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(out_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
    except OSError as exc:
        raise PersistError(f"Could not write report to {out_path}: {exc}", details={"path": str(out_path)}) from exc
    logger.info("Report written to: %s", out_path)
    return out_path
