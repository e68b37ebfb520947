from __future__ import annotations

__all__ = [
    "__version__",
    "REPORT_API_VERSION",
    "REPORT_KIND",
]

__version__ = "0.3.0"
REPORT_API_VERSION = "conformance.k8s-conformance.io/v1"
REPORT_KIND = "ConformanceReport"
