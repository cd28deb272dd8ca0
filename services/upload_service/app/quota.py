# services/upload_service/app/quota.py
from core.models import QuotaState


def check_quota(current_usage: int, queue_size: int, ceiling: int) -> QuotaState:
    """Would committing queue_size more bytes on top of current_usage go over ceiling?"""
    projected = current_usage + queue_size
    ratio = min(projected / ceiling, 1.0) if ceiling > 0 else 1.0
    return QuotaState(
        current_usage=current_usage,
        queue_size=queue_size,
        ceiling=ceiling,
        exceeds=projected > ceiling,
        ratio=ratio,
    )
