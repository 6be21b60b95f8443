"""Monitoring and observability package."""
from .health import HealthCheck
from .logging import session_context, setup_logging
from .metrics import metrics

__all__ = ["metrics", "session_context", "setup_logging", "HealthCheck"]
