"""
Metrics collection for the marketing site API.

In-process counters, gauges and histograms for the request-protection layer,
with a JSON summary and a Prometheus text export for the admin surface.
"""

import threading
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Tuple, Union
from enum import Enum

from .logging_config import get_logger


LabelKey = Tuple[Tuple[str, str], ...]


class MetricUnit(str, Enum):
    """Metric units."""
    COUNT = "count"
    BYTES = "bytes"
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"


def _label_key(labels: Dict[str, Any]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


class Counter:
    """Counter metric that only increases, tracked per label set."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._values: Dict[LabelKey, Union[int, float]] = {}
        self._lock = threading.Lock()

    def increment(self, amount: Union[int, float] = 1, **labels):
        """Increment the counter."""
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def get_value(self, **labels) -> Union[int, float]:
        """Get the value for one label set, or the total when no labels are given."""
        with self._lock:
            if labels:
                return self._values.get(_label_key(labels), 0)
            return sum(self._values.values())

    def samples(self) -> Dict[LabelKey, Union[int, float]]:
        with self._lock:
            return dict(self._values)

    def reset(self):
        """Reset counter to zero."""
        with self._lock:
            self._values.clear()


class Gauge:
    """Gauge metric that can increase or decrease."""

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT):
        self.name = name
        self.description = description
        self.unit = unit
        self._values: Dict[LabelKey, Union[int, float]] = {}
        self._lock = threading.Lock()

    def set(self, value: Union[int, float], **labels):
        """Set the gauge value."""
        with self._lock:
            self._values[_label_key(labels)] = value

    def get_value(self, **labels) -> Union[int, float]:
        """Get current value."""
        with self._lock:
            return self._values.get(_label_key(labels), 0)

    def samples(self) -> Dict[LabelKey, Union[int, float]]:
        with self._lock:
            return dict(self._values)


class Histogram:
    """Histogram metric for tracking distributions."""

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.SECONDS,
                 buckets: List[float] = None):
        self.name = name
        self.description = description
        self.unit = unit
        self.buckets = buckets or [0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, float('inf')]
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: Union[int, float]):
        """Observe a value."""
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    def get_statistics(self) -> Dict[str, Any]:
        """Get histogram statistics."""
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'buckets': self._bucket_counts.copy()
            }


class MetricsCollector:
    """Central metrics registry."""

    _instance: Optional['MetricsCollector'] = None
    _lock = threading.Lock()

    def __init__(self):
        self.logger = get_logger(__name__, 'metrics_collector')
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self.histograms: Dict[str, Histogram] = {}
        self._registry_lock = threading.Lock()
        self.started_at = datetime.now(timezone.utc)

    @classmethod
    def get_instance(cls) -> 'MetricsCollector':
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Drop the singleton so the next caller gets an empty registry."""
        with cls._lock:
            cls._instance = None

    def get_counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        with self._registry_lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, description)
            return self.counters[name]

    def get_gauge(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT) -> Gauge:
        """Get or create a gauge."""
        with self._registry_lock:
            if name not in self.gauges:
                self.gauges[name] = Gauge(name, description, unit)
            return self.gauges[name]

    def get_histogram(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.SECONDS,
                      buckets: List[float] = None) -> Histogram:
        """Get or create a histogram."""
        with self._registry_lock:
            if name not in self.histograms:
                self.histograms[name] = Histogram(name, description, unit, buckets)
            return self.histograms[name]

    # Security layer helpers

    def record_decision(self, policy: str, allowed: bool, reason: Optional[str] = None):
        """Record the outcome of a rate limit check."""
        if allowed:
            self.get_counter(
                'security_requests_allowed_total', 'Requests admitted by the rate limiter'
            ).increment(policy=policy)
        else:
            self.get_counter(
                'security_requests_denied_total', 'Requests denied by the rate limiter'
            ).increment(policy=policy, reason=reason or 'rate_limit_exceeded')

    def record_ip_block(self, policy: str, rule: str):
        """Record an abuse escalation."""
        self.get_counter('security_ip_blocks_total', 'Abuse rule escalations').increment(
            policy=policy, rule=rule
        )

    def record_csrf_failure(self, policy: str):
        self.get_counter('security_csrf_failures_total', 'Rejected CSRF tokens').increment(policy=policy)

    def record_validation_failure(self, policy: str):
        self.get_counter(
            'security_validation_failures_total', 'Requests rejected by structural validation'
        ).increment(policy=policy)

    def observe_gateway_duration(self, seconds: float):
        self.get_histogram(
            'security_gateway_duration_seconds', 'Time spent in protect_route'
        ).observe(seconds)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics."""
        summary = {
            'started_at': self.started_at.isoformat(),
            'counters': {},
            'gauges': {},
            'histograms': {},
        }

        for name, counter in self.counters.items():
            summary['counters'][name] = {
                'total': counter.get_value(),
                'samples': [
                    {'labels': dict(key), 'value': value}
                    for key, value in counter.samples().items()
                ],
            }

        for name, gauge in self.gauges.items():
            summary['gauges'][name] = [
                {'labels': dict(key), 'value': value}
                for key, value in gauge.samples().items()
            ]

        for name, histogram in self.histograms.items():
            stats = histogram.get_statistics()
            stats['buckets'] = {str(bucket): count for bucket, count in stats['buckets'].items()}
            summary['histograms'][name] = stats

        return summary

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        def _labels(key: LabelKey) -> str:
            if not key:
                return ''
            return '{' + ','.join(f'{k}="{v}"' for k, v in key) + '}'

        for name, counter in self.counters.items():
            lines.append(f"# HELP {name} {counter.description or name}")
            lines.append(f"# TYPE {name} counter")
            for key, value in counter.samples().items():
                lines.append(f"{name}{_labels(key)} {value}")

        for name, gauge in self.gauges.items():
            lines.append(f"# HELP {name} {gauge.description or name}")
            lines.append(f"# TYPE {name} gauge")
            for key, value in gauge.samples().items():
                lines.append(f"{name}{_labels(key)} {value}")

        for name, histogram in self.histograms.items():
            stats = histogram.get_statistics()
            lines.append(f"# HELP {name} {histogram.description or name}")
            lines.append(f"# TYPE {name} histogram")
            for bucket, count in stats['buckets'].items():
                le = '+Inf' if bucket == float('inf') else bucket
                lines.append(f'{name}_bucket{{le="{le}"}} {count}')
            lines.append(f"{name}_sum {stats['sum']}")
            lines.append(f"{name}_count {stats['count']}")

        return '\n'.join(lines)


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return MetricsCollector.get_instance()
