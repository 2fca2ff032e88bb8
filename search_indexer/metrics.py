"""Request metrics for the indexer and a WSGI middleware that records them."""

from __future__ import annotations

import bisect
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_CLUSTER_PATH = re.compile(r"^/aggregator/clusters/(?P<id>[^/]+)(?:/|$)")


@dataclass
class Sample:
    """One labelled series within a metric family."""

    labels: dict[str, str]
    value: float = 0.0
    count: int = 0
    sum: float = 0.0
    buckets: tuple[tuple[float, int], ...] = ()


@dataclass
class MetricFamily:
    """A snapshot of a metric and all of its series."""

    name: str
    documentation: str
    type: str
    samples: list[Sample] = field(default_factory=list)


class _Metric:
    type = ""

    def __init__(self, name: str, documentation: str, label_names: Sequence[str] = ()):
        if not _NAME.fullmatch(name):
            raise ValueError(f"invalid metric name {name!r}")
        self.name = name
        self.documentation = documentation
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _key(self, labels: Mapping[str, Any] | None) -> tuple[str, ...]:
        given = dict(labels or {})
        if set(given) != set(self.label_names):
            raise ValueError(
                f"{self.name}: expected labels {sorted(self.label_names)}, got {sorted(given)}"
            )
        return tuple(str(given[name]) for name in self.label_names)

    def _labels(self, key: tuple[str, ...]) -> dict[str, str]:
        return dict(zip(self.label_names, key))


class Counter(_Metric):
    """A monotonically increasing value, optionally split by labels."""

    type = "counter"

    def __init__(self, name: str, documentation: str, label_names: Sequence[str] = ()):
        super().__init__(name, documentation, label_names)
        self._values: dict[tuple[str, ...], float] = {} if self.label_names else {(): 0.0}

    def inc(self, labels: Mapping[str, Any] | None = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, labels: Mapping[str, Any] | None = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def collect(self) -> MetricFamily:
        with self._lock:
            samples = [
                Sample(labels=self._labels(key), value=value)
                for key, value in sorted(self._values.items())
            ]
        return MetricFamily(self.name, self.documentation, self.type, samples)


class Gauge(_Metric):
    """A value that can go up and down."""

    type = "gauge"

    def __init__(self, name: str, documentation: str):
        super().__init__(name, documentation)
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def collect(self) -> MetricFamily:
        with self._lock:
            sample = Sample(labels={}, value=self._value)
        return MetricFamily(self.name, self.documentation, self.type, [sample])


@dataclass
class _Series:
    counts: list[int]
    count: int = 0
    total: float = 0.0


class Histogram(_Metric):
    """Counts observations into cumulative buckets."""

    type = "histogram"

    def __init__(
        self,
        name: str,
        documentation: str,
        buckets: Sequence[float],
        label_names: Sequence[str] = (),
    ):
        super().__init__(name, documentation, label_names)
        bounds = [float(b) for b in buckets if b != float("inf")]
        if not bounds:
            raise ValueError("histogram needs at least one bucket")
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be strictly increasing")
        self.buckets = tuple(bounds)
        self._series: dict[tuple[str, ...], _Series] = {}
        if not self.label_names:
            self._series[()] = self._new_series()

    def _new_series(self) -> _Series:
        return _Series(counts=[0] * len(self.buckets))

    def observe(self, value: float, labels: Mapping[str, Any] | None = None) -> None:
        key = self._key(labels)
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            series = self._series.setdefault(key, self._new_series())
            if index < len(self.buckets):
                series.counts[index] += 1
            series.count += 1
            series.total += value

    def sample_count(self, labels: Mapping[str, Any] | None = None) -> int:
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            return series.count if series else 0

    def collect(self) -> MetricFamily:
        samples = []
        with self._lock:
            for key, series in sorted(self._series.items()):
                cumulative, running = [], 0
                for bound, count in zip(self.buckets, series.counts):
                    running += count
                    cumulative.append((bound, running))
                cumulative.append((float("inf"), series.count))
                samples.append(
                    Sample(
                        labels=self._labels(key),
                        count=series.count,
                        sum=series.total,
                        buckets=tuple(cumulative),
                    )
                )
        return MetricFamily(self.name, self.documentation, self.type, samples)


def _format_number(value: float) -> str:
    if value == float("inf"):
        return "+Inf"
    if value == float("-inf"):
        return "-Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _format_labels(labels: Mapping[str, str]) -> str:
    if not labels:
        return ""
    parts = []
    for name, value in labels.items():
        escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        parts.append(f'{name}="{escaped}"')
    return "{" + ",".join(parts) + "}"


class Registry:
    """Holds metrics and produces snapshots of them."""

    def __init__(self) -> None:
        self._metrics: dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, metric: Any) -> Any:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric {metric.name!r} is already registered")
            self._metrics[metric.name] = metric
        return metric

    def gather(self) -> list[MetricFamily]:
        """Snapshot every metric that has at least one series, sorted by name."""
        with self._lock:
            metrics = [self._metrics[name] for name in sorted(self._metrics)]
        families = (metric.collect() for metric in metrics)
        return [family for family in families if family.samples]

    def render(self) -> str:
        """Return the snapshot in the Prometheus text exposition format."""
        lines = []
        for family in self.gather():
            help_text = family.documentation.replace("\\", "\\\\").replace("\n", "\\n")
            lines.append(f"# HELP {family.name} {help_text}")
            lines.append(f"# TYPE {family.name} {family.type}")
            for sample in family.samples:
                if family.type == "histogram":
                    for bound, count in sample.buckets:
                        labels = {**sample.labels, "le": _format_number(bound)}
                        lines.append(f"{family.name}_bucket{_format_labels(labels)} {count}")
                    labels = _format_labels(sample.labels)
                    lines.append(f"{family.name}_sum{labels} {_format_number(sample.sum)}")
                    lines.append(f"{family.name}_count{labels} {sample.count}")
                else:
                    labels = _format_labels(sample.labels)
                    lines.append(f"{family.name}{labels} {_format_number(sample.value)}")
        return "\n".join(lines) + "\n"


class IndexerMetrics:
    """The indexer's request metrics, registered in one registry."""

    def __init__(self, registry: Registry | None = None) -> None:
        self.registry = registry if registry is not None else Registry()
        self.request_count = self.registry.register(
            Counter(
                "search_indexer_request_count",
                "Total requests received by the search indexer (from managed clusters).",
                ["managed_cluster_name"],
            )
        )
        self.request_duration = self.registry.register(
            Histogram(
                "search_indexer_request_duration",
                "Time (seconds) the search indexer takes to process a request "
                "(from managed cluster).",
                [0.25, 0.5, 1, 1.5, 2, 3, 5, 10],
                ["code"],
            )
        )
        self.requests_in_flight = self.registry.register(
            Gauge(
                "search_indexer_requests_in_flight",
                "Total requests the search indexer is processing at a given time.",
            )
        )
        self.request_size = self.registry.register(
            Histogram(
                "search_indexer_request_size",
                "Total changes (add, update, delete) in the search indexer request "
                "(from managed cluster).",
                [50, 100, 200, 500, 5000, 10000, 25000, 50000, 100000, 200000],
            )
        )


def cluster_name_from_path(path: str) -> str:
    """Return the cluster id from an ``/aggregator/clusters/<id>/...`` path, or ""."""
    match = _CLUSTER_PATH.match(path or "")
    return match.group("id") if match else ""


class _InstrumentedBody:
    def __init__(self, body: Iterable[bytes], finish: Callable[[], None]):
        self._body = body
        self._finish = finish
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        yield from self._body

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            close = getattr(self._body, "close", None)
            if close is not None:
                close()
        finally:
            self._finish()


def prometheus_middleware(app: Callable, metrics: IndexerMetrics) -> Callable:
    """Wrap a WSGI app so each request updates the indexer's request metrics."""

    def middleware(environ: dict, start_response: Callable) -> Iterable[bytes]:
        cluster = cluster_name_from_path(environ.get("PATH_INFO", ""))
        status_code = ["200"]

        def recording_start_response(status, headers, exc_info=None):
            status_code[0] = status.split(" ", 1)[0]
            if exc_info is None:
                return start_response(status, headers)
            return start_response(status, headers, exc_info)

        metrics.requests_in_flight.inc()
        started = time.perf_counter()
        try:
            body = app(environ, recording_start_response)
        except BaseException:
            metrics.requests_in_flight.dec()
            raise

        def finish() -> None:
            try:
                metrics.request_count.inc({"managed_cluster_name": cluster})
                metrics.request_duration.observe(
                    time.perf_counter() - started, {"code": status_code[0]}
                )
            finally:
                metrics.requests_in_flight.dec()

        return _InstrumentedBody(body, finish)

    return middleware