# FILE: sharegate/exporter.py
# Prometheus metrics for the verification service.
#
# - Metrics are structured around verdicts (accepted / rejected per stage),
#   validation error keys, ledger failures and HTTP request latency.
# - Label sets are small and controlled; label values are truncated and
#   unknown label keys are dropped before they reach the backend.
# - Every VerifyMetrics owns its CollectorRegistry, so several apps can live
#   in one process (tests, embedded use) without duplicate registration.
#
# The host ASGI app exposes the registry through a single /metrics endpoint.

from __future__ import annotations

from typing import Any, Dict, Optional, Set, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    Info,
    generate_latest,
)


def _safe_str(value: Any) -> str:
    """
    Convert values to short strings for labels.

    - None -> ""
    - Long strings are truncated to 64 characters to limit label explosion.
    """
    if value is None:
        return ""
    s = str(getattr(value, "value", value))
    if len(s) > 64:
        s = s[:61] + "..."
    return s


# metric_name -> allowed label keys; anything else is dropped.
_METRIC_LABEL_WHITELIST: Dict[str, Set[str]] = {
    "sharegate_verdicts_total": {"outcome", "stage"},
    "sharegate_validation_errors_total": {"stage", "key"},
    "sharegate_verify_latency_seconds": {"outcome"},
    "sharegate_requests_total": {"route", "status"},
    "sharegate_request_latency_seconds": {"route"},
}

_LATENCY_BUCKETS = (0.005, 0.01, 0.02, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0)


class VerifyMetrics:
    """
    Prometheus metrics for claim verification.

        metrics = VerifyMetrics(version="1.0.0", config_hash="abc123")
        metrics.record_verdict(verdict, elapsed_s)
        body, content_type = metrics.render()
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        *,
        version: str = "dev",
        config_hash: str = "",
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self._build_info = Info(
            "sharegate_build",
            "Verification service build metadata",
            registry=self.registry,
        )
        self._build_info.info({"version": str(version), "config_hash": str(config_hash)})

        self._verdicts = Counter(
            "sharegate_verdicts_total",
            "Verification verdicts by outcome and failing stage",
            ["outcome", "stage"],
            registry=self.registry,
        )
        self._validation_errors = Counter(
            "sharegate_validation_errors_total",
            "Validation errors reported, by stage and error key",
            ["stage", "key"],
            registry=self.registry,
        )
        self._ledger_failures = Counter(
            "sharegate_ledger_failures_total",
            "Verifications that could not complete because of the ledger",
            registry=self.registry,
        )
        self._verify_latency = Histogram(
            "sharegate_verify_latency_seconds",
            "Latency of one claim verification",
            ["outcome"],
            buckets=_LATENCY_BUCKETS,
            registry=self.registry,
        )
        self._requests = Counter(
            "sharegate_requests_total",
            "HTTP requests served",
            ["route", "status"],
            registry=self.registry,
        )
        self._request_latency = Histogram(
            "sharegate_request_latency_seconds",
            "HTTP request latency",
            ["route"],
            buckets=_LATENCY_BUCKETS,
            registry=self.registry,
        )

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def _labels(metric_name: str, label_values: Dict[str, Any]) -> Dict[str, str]:
        allowed = _METRIC_LABEL_WHITELIST.get(metric_name, set())
        return {k: _safe_str(v) for k, v in label_values.items() if k in allowed}

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    def record_verdict(self, verdict: Any, elapsed_s: float) -> None:
        """
        Record one verdict: the outcome counter, one sample per error key and
        the verification latency.
        """
        outcome = "accepted" if verdict.accepted else "rejected"
        stage = verdict.stage if verdict.stage is not None else "none"

        self._verdicts.labels(
            **self._labels("sharegate_verdicts_total", {"outcome": outcome, "stage": stage})
        ).inc()
        for err in verdict.errors:
            self._validation_errors.labels(
                **self._labels(
                    "sharegate_validation_errors_total", {"stage": stage, "key": err.key}
                )
            ).inc()
        self._verify_latency.labels(
            **self._labels("sharegate_verify_latency_seconds", {"outcome": outcome})
        ).observe(max(0.0, float(elapsed_s)))

    def record_incomplete(self, elapsed_s: float) -> None:
        """Verification aborted because the ledger could not be consulted."""
        self._ledger_failures.inc()
        self._verify_latency.labels(
            **self._labels("sharegate_verify_latency_seconds", {"outcome": "incomplete"})
        ).observe(max(0.0, float(elapsed_s)))

    def observe_request(self, route: str, status: int, elapsed_s: float) -> None:
        self._requests.labels(
            **self._labels("sharegate_requests_total", {"route": route, "status": status})
        ).inc()
        self._request_latency.labels(
            **self._labels("sharegate_request_latency_seconds", {"route": route})
        ).observe(max(0.0, float(elapsed_s)))

    def render(self) -> Tuple[bytes, str]:
        """Exposition body and content type for a /metrics endpoint."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


__all__ = ["VerifyMetrics"]
