from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from authgate.logging import get_logger

logger = get_logger(__name__)

LabelKey = Tuple[Tuple[str, str], ...]

_DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_HELP = {
    "login_attempts_total": "Login attempts by outcome",
    "refresh_attempts_total": "Refresh attempts by outcome",
    "refresh_replay_total": "Rotated-out refresh tokens presented again",
    "rate_limited_total": "Requests rejected by the rate guard",
    "errors_total": "Requests that ended in a 5xx response",
    "request_duration_seconds": "HTTP request latency",
    "storage_duration_seconds": "Latency of store and rate counter calls",
}


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _format_labels(key: LabelKey, extra: Iterable[Tuple[str, str]] = ()) -> str:
    pairs = list(key) + list(extra)
    if not pairs:
        return ""
    body = ",".join(
        '{}="{}"'.format(k, v.replace("\\", "\\\\").replace('"', '\\"')) for k, v in pairs
    )
    return "{" + body + "}"


class _Histogram:
    def __init__(self, buckets: Tuple[float, ...]) -> None:
        self.buckets = buckets
        self.counts = [0] * len(buckets)
        self.total = 0
        self.sum = 0.0

    def observe(self, value: float) -> None:
        self.total += 1
        self.sum += value
        for idx, bound in enumerate(self.buckets):
            if value <= bound:
                self.counts[idx] += 1


class MetricsRegistry:
    """Process-local counters and histograms rendered as Prometheus text.

    Recording never raises: a failure to record is logged and dropped so it
    cannot fail the operation being measured.
    """

    def __init__(self, prefix: str = "authgate") -> None:
        self.prefix = prefix
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[LabelKey, float]] = {}
        self._histograms: Dict[str, Dict[LabelKey, _Histogram]] = {}

    def inc(self, name: str, labels: Optional[Dict[str, str]] = None, amount: float = 1) -> None:
        try:
            key = _label_key(labels)
            with self._lock:
                series = self._counters.setdefault(name, {})
                series[key] = series.get(key, 0) + amount
        except Exception as exc:
            logger.warning("metrics_record_failed", metric=name, error=str(exc))

    def observe(
        self, name: str, value: float, labels: Optional[Dict[str, str]] = None
    ) -> None:
        try:
            key = _label_key(labels)
            sample = float(value)
            with self._lock:
                series = self._histograms.setdefault(name, {})
                hist = series.get(key)
                if hist is None:
                    hist = series[key] = _Histogram(_DEFAULT_BUCKETS)
                hist.observe(sample)
        except Exception as exc:
            logger.warning("metrics_record_failed", metric=name, error=str(exc))

    def counter_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0)

    def render(self) -> List[str]:
        lines: List[str] = []
        with self._lock:
            for name in sorted(self._counters):
                full = f"{self.prefix}_{name}"
                lines.append(f"# HELP {full} {_HELP.get(name, name)}")
                lines.append(f"# TYPE {full} counter")
                for key, value in sorted(self._counters[name].items()):
                    lines.append(f"{full}{_format_labels(key)} {value:g}")
            for name in sorted(self._histograms):
                full = f"{self.prefix}_{name}"
                lines.append(f"# HELP {full} {_HELP.get(name, name)}")
                lines.append(f"# TYPE {full} histogram")
                for key, hist in sorted(self._histograms[name].items()):
                    for bound, count in zip(hist.buckets, hist.counts):
                        le = _format_labels(key, [("le", f"{bound:g}")])
                        lines.append(f"{full}_bucket{le} {count}")
                    inf = _format_labels(key, [("le", "+Inf")])
                    lines.append(f"{full}_bucket{inf} {hist.total}")
                    lines.append(f"{full}_sum{_format_labels(key)} {hist.sum:.6f}")
                    lines.append(f"{full}_count{_format_labels(key)} {hist.total}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()


metrics = MetricsRegistry()
