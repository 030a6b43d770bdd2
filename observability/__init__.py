from .audit import AuditLog, now_ms
from .logging import build_log_context, log_event, redact
from .metrics import Metrics
from .prometheus import render_prometheus

__all__ = ["AuditLog", "Metrics", "build_log_context", "log_event", "now_ms", "redact", "render_prometheus"]
