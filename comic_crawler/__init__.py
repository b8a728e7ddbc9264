"""
Adaptive crawler for a paginated comic catalog API.
"""

from .crawler import Crawler, build_crawler
from .pipeline import CrawlPipeline
from .supervisor import WorkerSupervisor

__version__ = "2.0.0"

__all__ = [
    'Crawler',
    'build_crawler',
    'CrawlPipeline',
    'WorkerSupervisor'
]
