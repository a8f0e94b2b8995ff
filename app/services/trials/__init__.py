"""
Trial Service Package
"""

from app.services.trials.service import ensure_trial

__all__ = ["ensure_trial"]
