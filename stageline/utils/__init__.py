"""Small helpers shared by stageline modules."""

from .clock import utcnow
from .retry import compute_backoff, schedule_retry

__all__ = ["utcnow", "compute_backoff", "schedule_retry"]
