"""
Project audit log.

Audit rows are written on the same session as the change they describe and
committed with it; a rolled-back change leaves no audit entry.
"""

import logging
from typing import List

from sqlalchemy.orm import Session

import config
from ids import generate_id
from models import Audit, ProjectMember
from time_utils import utc_now, audit_window_start

logger = logging.getLogger(__name__)


def record_audit(db: Session, membership: ProjectMember, body: str) -> Audit:
    """
    Add an audit entry for an action taken through ``membership``.

    Args:
        db: Session of the transaction performing the action
        membership: The acting member; its project scopes the entry
        body: Human-readable description, e.g. "Moved task group 'Backlog'"

    Returns:
        The flushed Audit row (not yet committed)
    """
    logger.debug(f"Recording audit for member {membership.id} in project {membership.project_id}: {body}")

    entry = Audit(
        id=generate_id(db, Audit),
        auditor=membership.id,
        project_id=membership.project_id,
        body=body,
        timestamp=utc_now(),
    )
    db.add(entry)
    db.flush()
    return entry


def list_audits(
    db: Session,
    project_id: str,
    days: int = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Audit]:
    """List a project's audit entries from the last ``days`` days, newest first."""
    window_start = audit_window_start(days or config.AUDIT_DEFAULT_DAYS)
    return (
        db.query(Audit)
        .filter(Audit.project_id == project_id, Audit.timestamp >= window_start)
        .order_by(Audit.timestamp.desc(), Audit.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
