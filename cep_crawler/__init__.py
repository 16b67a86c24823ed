"""
CEP Range Crawler

Splits a postal-code (CEP) range into one work item per code, distributes
them over SQS, and resolves each one against rate-limited external lookup
providers while tracking job progress in DynamoDB.
"""

from .utils.logging import setup_crawler_logger

__version__ = "0.1.0"
__all__ = ["setup_crawler_logger"]
