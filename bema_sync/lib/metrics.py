"""
Prometheus-compatible metrics for observability.

Tracks the sync engine's key counters:
- Sync runs (by job_type, status)
- Tier transitions (by campaign, from_tier, to_tier)
- Batch chunks (by status)
- Memory cleanups and stale lock sweeps
- External push failures (by operation)

Usage:
    metrics = MetricsCollector()
    metrics.increment_sync_runs(job_type="hourly", status="completed")
    metrics.increment_transitions(campaign="2025_ETB_EOE", from_tier="bronze", to_tier="silver")

    # Export for Prometheus
    prometheus_output = metrics.export_prometheus()
"""

from typing import Dict, Tuple
from threading import Lock


class MetricsCollector:
    """
    Prometheus-style metrics collector for the sync engine.

    Counters:
    - sync_runs_total: Reconciliation runs (labels: job_type, status)
    - tier_transitions_total: Subscribers moved between tiers (labels: campaign, from_tier, to_tier)
    - batch_chunks_total: Chunks processed (labels: status)
    - memory_cleanups_total: Garbage collections triggered under memory pressure
    - stale_locks_cleared_total: Locks force-released by the health check
    - external_push_failures_total: Failed subscriber pushes (labels: operation)

    Thread-safe for concurrent increments.
    """

    def __init__(self):
        self._lock = Lock()

        # Counters: key = (metric_name, labels_tuple), value = count
        self._counters: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], int] = {}

    def _get_counter_key(self, metric_name: str, labels: Dict[str, str]) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        """Generate unique key for counter with sorted labels."""
        sorted_labels = tuple(sorted(labels.items()))
        return (metric_name, sorted_labels)

    def _increment(self, metric_name: str, labels: Dict[str, str], amount: int = 1):
        key = self._get_counter_key(metric_name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def _get_value(self, metric_name: str, labels: Dict[str, str]) -> int:
        key = self._get_counter_key(metric_name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    # ===== Run Metrics =====

    def increment_sync_runs(self, job_type: str, status: str, amount: int = 1):
        """
        Increment reconciliation runs counter.

        Args:
            job_type: Schedule that triggered the run (hourly, daily, weekly, custom, retry)
            status: Final run status (completed, failed, stopped, skipped)
            amount: Increment amount (default 1)
        """
        labels = {
            "job_type": job_type.lower(),
            "status": status.lower(),
        }
        self._increment("sync_runs_total", labels, amount)

    def increment_transitions(self, campaign: str, from_tier: str, to_tier: str, amount: int = 1):
        labels = {
            "campaign": campaign.upper(),
            "from_tier": from_tier.lower(),
            "to_tier": to_tier.lower(),
        }
        self._increment("tier_transitions_total", labels, amount)

    def increment_chunks(self, status: str, amount: int = 1):
        """Increment processed chunks (status: success, retried, failed)."""
        self._increment("batch_chunks_total", {"status": status.lower()}, amount)

    # ===== Health Metrics =====

    def increment_memory_cleanups(self, amount: int = 1):
        self._increment("memory_cleanups_total", {}, amount)

    def increment_stale_locks_cleared(self, amount: int = 1):
        self._increment("stale_locks_cleared_total", {}, amount)

    def increment_push_failures(self, operation: str, amount: int = 1):
        """
        Increment failed external group pushes.

        Args:
            operation: group_swap (tier change), purchase_field (purchase flag)
                or add_to_group (campaign move)
            amount: Increment amount
        """
        self._increment("external_push_failures_total", {"operation": operation.lower()}, amount)

    # ===== Export =====

    def export_prometheus(self) -> str:
        """
        Export all metrics in Prometheus text format.

        Returns:
            Prometheus-compatible text output
        """
        output_lines = []

        metrics_by_name: Dict[str, list] = {}
        with self._lock:
            for (metric_name, labels_tuple), value in self._counters.items():
                metrics_by_name.setdefault(metric_name, []).append((dict(labels_tuple), value))

        for metric_name in sorted(metrics_by_name.keys()):
            output_lines.append(f"# HELP {metric_name} {self._get_help_text(metric_name)}")
            output_lines.append(f"# TYPE {metric_name} counter")

            for labels_dict, value in sorted(metrics_by_name[metric_name], key=lambda x: str(x[0])):
                if labels_dict:
                    labels_str = ",".join([f'{k}="{v}"' for k, v in sorted(labels_dict.items())])
                    output_lines.append(f"{metric_name}{{{labels_str}}} {value}")
                else:
                    output_lines.append(f"{metric_name} {value}")

            output_lines.append("")

        return "\n".join(output_lines)

    def _get_help_text(self, metric_name: str) -> str:
        help_texts = {
            "sync_runs_total": "Total number of reconciliation runs",
            "tier_transitions_total": "Total number of subscriber tier transitions",
            "batch_chunks_total": "Total number of batch chunks processed",
            "memory_cleanups_total": "Total number of garbage collections under memory pressure",
            "stale_locks_cleared_total": "Total number of stale locks force-released",
            "external_push_failures_total": "Total number of failed subscriber pushes",
        }
        return help_texts.get(metric_name, "Counter metric")

    def get_counter_value(self, metric_name: str, labels: Dict[str, str]) -> int:
        """
        Get current value of a specific counter.

        Args:
            metric_name: Name of the metric
            labels: Label filters

        Returns:
            Current counter value
        """
        return self._get_value(metric_name, labels)

    def reset_all(self):
        """Reset all counters (for testing)."""
        with self._lock:
            self._counters.clear()
