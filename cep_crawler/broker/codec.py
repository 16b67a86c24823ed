"""
Wire format for work items.

A work item travels as `{"id": "<job_id>-<item_key>", "body": "<json>"}`.
The id doubles as the broker-side deduplication key.
"""

import json
import logging
from typing import Dict, Optional

from pydantic import ValidationError

from ..core.types import WorkItem

logger = logging.getLogger(__name__)


def work_item_id(job_id: str, item_key: str) -> str:
    return f"{job_id}-{item_key}"


def encode_work_item(item: WorkItem) -> Dict[str, str]:
    return {
        "id": work_item_id(item.job_id, item.item_key),
        "body": json.dumps({"job_id": item.job_id, "item_key": item.item_key}),
    }


def decode_work_item(body: Optional[str]) -> Optional[WorkItem]:
    """
    Parse a message body back into a WorkItem.

    Returns None for empty bodies, invalid JSON and missing or blank fields.
    """
    if not body:
        return None

    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Unparseable work item body: {e}")
        return None

    if not isinstance(data, dict):
        return None

    try:
        return WorkItem(job_id=data.get("job_id"), item_key=data.get("item_key"))
    except ValidationError as e:
        logger.warning(f"Invalid work item fields: {e.error_count()} errors")
        return None
