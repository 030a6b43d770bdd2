"""
Prometheus text-format exporter.

No HTTP server is started here; `/metrics` on the REST API and the `get_metrics` MCP tool
return the rendered text so operators can scrape it however they deploy.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Tuple

_re_non_ident = re.compile(r"[^a-zA-Z0-9_]")
_re_series = re.compile(r"^(?P<name>[^{]+)(?P<labels>\{.*\})?$")


def _number(v: Any) -> float | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str) and v.strip():
        try:
            return float(v.strip())
        except ValueError:
            return None
    return None


def _name(s: str) -> str:
    s2 = _re_non_ident.sub("_", (s or "").strip())
    s2 = re.sub(r"_+", "_", s2).strip("_")
    return s2.lower() or "unnamed"


def _split(series: str) -> Tuple[str, str]:
    m = _re_series.match(series.strip())
    if not m:
        return _name(series), ""
    return _name(m.group("name")), m.group("labels") or ""


def render_prometheus(snapshot: Dict[str, Any], *, namespace: str = "guarded_signer") -> str:
    """
    Render Metrics.snapshot() into Prometheus exposition format.

    Series that share a metric name get one `# TYPE` line.
    """
    ns = _name(namespace)
    lines: List[str] = []

    uptime = _number(snapshot.get("uptime_sec"))
    if uptime is not None:
        lines.append(f"# TYPE {ns}_uptime_sec gauge")
        lines.append(f"{ns}_uptime_sec {int(uptime)}")

    for section, kind, integral in (("counters", "counter", True), ("gauges", "gauge", False)):
        values = snapshot.get(section) or {}
        if not isinstance(values, dict):
            continue
        typed = set()
        for series, v in sorted(values.items(), key=lambda kv: str(kv[0])):
            fv = _number(v)
            if fv is None:
                continue
            name, labels = _split(str(series))
            metric = f"{ns}_{name}"
            if metric not in typed:
                typed.add(metric)
                lines.append(f"# TYPE {metric} {kind}")
            lines.append(f"{metric}{labels} {int(fv) if integral else fv}")

    timers = snapshot.get("timers") or {}
    if isinstance(timers, dict):
        for series, agg in sorted(timers.items(), key=lambda kv: str(kv[0])):
            if not isinstance(agg, dict):
                continue
            name, labels = _split(str(series))
            for field, suffix in (("count", "count"), ("total_ms", "sum"), ("max_ms", "max"), ("avg_ms", "avg")):
                fv = _number(agg.get(field))
                if fv is None:
                    continue
                lines.append(f"{ns}_{name}_{suffix}{labels} {fv}")

    return "\n".join(lines) + "\n"
