"""
group_tiers/services/request_workflow.py
Pieces shared by the three apply/decide request flows.

A decision claims its request with a conditional UPDATE (status still
PENDING) before touching anything else, so exactly one decider wins. Every
check after the claim re-reads live state; any failure rolls the claim back
together with the rest of the transaction.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from group_tiers.errors import ConflictError, ErrorCode, validate_enum
from group_tiers.orm.requests import DECISION_STATUSES, RequestStatus

logger = logging.getLogger(__name__)


def normalize_decision(status: Any) -> str:
    return validate_enum(status, DECISION_STATUSES, "status", code=ErrorCode.INVALID_STATUS)


async def claim_pending_request(
    db: AsyncSession,
    model,
    request_id: int,
    decision: str,
    decided_by_user_id: int,
    reason: Optional[str],
    now: datetime,
    label: str,
    **extra_values: Any
) -> None:
    """PENDING -> decision, or Conflict when someone else already decided."""
    values: Dict[str, Any] = {
        "status": decision,
        "decided_by_user_id": decided_by_user_id,
        "decision_reason": (reason or "").strip() or None,
        "decided_at": now,
    }
    values.update(extra_values)

    result = await db.execute(
        update(model)
        .where(model.id == request_id, model.status == RequestStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"{label} {request_id} already processed, decision {decision} rejected")
        raise ConflictError(f"{label} already processed", code=ErrorCode.ALREADY_PROCESSED)


def duplicate_pending(label: str) -> ConflictError:
    return ConflictError(
        f"A pending {label} already exists",
        code=ErrorCode.DUPLICATE_PENDING_REQUEST
    )
