"""
Project-level permission resolution.

This module answers one question for every request: given an entity id and a
caller, which project does the entity belong to, and what may the caller do
there?

Effective permissions come from exactly one of two sources:
1. An accepted membership in the project (its stored capability set)
2. The project's public permissions, for read-only requests by non-members

Pending invitations grant nothing. Missing entities, foreign entities and
insufficient capabilities all fail with the same Forbidden error.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from errors import Forbidden
from models import Project, ProjectMember, TaskGroup, Task, SubTask
from auth.capabilities import Permissions, NONE, READ_ONLY_MASK, check, from_bits

logger = logging.getLogger(__name__)


class EntityKind(enum.Enum):
    PROJECT = "project"
    TASK_GROUP = "task_group"
    TASK = "task"
    SUB_TASK = "sub_task"


# (id column, project id column) per entity kind
_PROJECT_LOOKUP = {
    EntityKind.PROJECT: (Project.id, Project.id),
    EntityKind.TASK_GROUP: (TaskGroup.id, TaskGroup.project_id),
    EntityKind.TASK: (Task.id, Task.project_id),
    EntityKind.SUB_TASK: (SubTask.id, SubTask.project_id),
}


@dataclass
class Access:
    """Result of a successful authorization."""

    project: Project
    user_id: Optional[str]
    membership: Optional[ProjectMember]
    permissions: Permissions

    @property
    def project_id(self) -> str:
        return self.project.id


def resolve_project_id(db: Session, kind: EntityKind, entity_id: str) -> Optional[str]:
    """
    Find the project an entity belongs to.

    Returns:
        The project id, or None if the entity does not exist
    """
    id_column, project_column = _PROJECT_LOOKUP[kind]
    row = db.query(project_column).filter(id_column == entity_id).first()
    return row[0] if row else None


def load_membership(
    db: Session, project_id: str, user_id: str, for_share: bool = False
) -> Optional[ProjectMember]:
    query = db.query(ProjectMember).filter(
        ProjectMember.project_id == project_id,
        ProjectMember.user_id == user_id,
    )
    if for_share:
        # Held until commit so a concurrent permission change cannot interleave
        query = query.with_for_update(read=True)
    return query.first()


def authorize(
    db: Session,
    kind: EntityKind,
    entity_id: str,
    user_id: Optional[str],
    required: Permissions,
    read_only: bool = False,
) -> Access:
    """
    Resolve the caller's effective permissions for the entity's project.

    Args:
        db: Database session (the caller's transaction for mutations)
        kind: What ``entity_id`` refers to
        entity_id: Id of a project, task group, task or sub-task
        user_id: Authenticated caller, or None for anonymous reads
        required: Capabilities the operation needs
        read_only: True for reads; only reads may use public permissions

    Returns:
        Access with the project, the caller's membership (if any) and the
        effective permission set

    Raises:
        Forbidden: if the entity is missing, the caller has no usable
            membership, or a required capability is absent

    Example:
        >>> access = authorize(db, EntityKind.TASK, task_id, user_id, Permissions.EDIT_TASKS)
        >>> record_audit(db, access.membership, "Edited task 'Write docs'")
    """
    logger.debug(
        f"Authorizing user {user_id} for {kind.value} {entity_id}, "
        f"required={required!r}, read_only={read_only}"
    )

    project_id = resolve_project_id(db, kind, entity_id)
    if project_id is None:
        logger.info(f"Denied user {user_id}: {kind.value} {entity_id} not found")
        raise Forbidden()

    project = db.query(Project).filter(Project.id == project_id).first()
    if project is None:
        logger.info(f"Denied user {user_id}: project {project_id} not found")
        raise Forbidden()

    membership = None
    if user_id is not None:
        membership = load_membership(db, project_id, user_id, for_share=not read_only)

    if membership is not None and membership.accepted:
        effective = from_bits(membership.permissions)
    elif read_only and from_bits(project.public_permissions) != NONE:
        effective = from_bits(project.public_permissions) & READ_ONLY_MASK
        logger.debug(f"Using public permissions of project {project_id} for user {user_id}")
        # The public path never carries a membership, pending or not
        membership = None
    else:
        reason = "pending invitation" if membership is not None else "not a member"
        logger.info(f"Denied user {user_id} on project {project_id}: {reason}")
        raise Forbidden()

    check(effective, required)
    logger.debug(f"User {user_id} authorized on project {project_id} with {effective!r}")
    return Access(project=project, user_id=user_id, membership=membership, permissions=effective)


def resolve_invitation(db: Session, project_id: str, user_id: str) -> ProjectMember:
    """
    Load the caller's pending invitation to a project.

    This is the one path where an unaccepted membership is meaningful; it
    grants no capabilities and is only used to accept or deny the invite.

    Raises:
        Forbidden: if there is no pending invitation for this caller
    """
    membership = load_membership(db, project_id, user_id, for_share=True)
    if membership is None or membership.accepted:
        logger.info(f"User {user_id} has no pending invitation to project {project_id}")
        raise Forbidden()
    return membership
