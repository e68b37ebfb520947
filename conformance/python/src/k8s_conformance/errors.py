from __future__ import annotations

from typing import Any


class HarnessError(Exception):
    code = "harness_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.details:
            rendered = ", ".join(f"{key}={value}" for key, value in sorted(self.details.items()))
            return f"{self.code}: {self.message} ({rendered})"
        return f"{self.code}: {self.message}"


class ProvisionFailure(HarnessError):
    code = "provision_failure"


class ImageNotPresent(ProvisionFailure):
    code = "image_not_present"


class ClusterNotReady(ProvisionFailure):
    code = "cluster_not_ready"


class ManifestApplyFailure(ProvisionFailure):
    code = "manifest_apply_failure"


class ImageLoadFailure(ProvisionFailure):
    code = "image_load_failure"


class SubjectNotReady(ProvisionFailure):
    code = "subject_not_ready"


class SchemaNotRegistered(HarnessError):
    code = "schema_not_registered"

    def __init__(self, api_version: str, kind: str) -> None:
        self.api_version = api_version
        self.kind = kind
        super().__init__(
            f"No type registered for {api_version}/{kind}",
            details={"api_version": api_version, "kind": kind},
        )


class SubjectUnreachable(HarnessError):
    code = "subject_unreachable"


class TestExecutionError(HarnessError):
    """The test registry as a whole could not be prepared, so no test can be evaluated.

    A single test that aborts is not raised as this; it is recorded as a failed
    Outcome carrying the exception class and message.
    """

    code = "test_execution_error"

    __test__ = False


class PersistError(HarnessError):
    code = "persist_error"


class TeardownFailure(HarnessError):
    code = "teardown_failure"
