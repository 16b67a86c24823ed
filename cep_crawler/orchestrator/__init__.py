"""
Crawl job orchestration.
"""

from .orchestrator import CrawlOrchestrator, is_valid_job_id, validate_range

__all__ = ["CrawlOrchestrator", "validate_range", "is_valid_job_id"]
