"""
Resilience components for the crawl pipeline.
"""

from .progress_store import ProgressStore
from .rate_controller import RateAdaptiveController
from .retry_handler import RetryHandler

__all__ = [
    'ProgressStore',
    'RateAdaptiveController',
    'RetryHandler'
]
