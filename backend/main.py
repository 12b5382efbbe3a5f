from fastapi import FastAPI, Depends, Query, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

import config
from database import get_db, engine, Base, run_transaction
import models
import schemas
import cascade
from audit import record_audit, list_audits
from errors import Conflict, Forbidden, ValidationFailed, register_exception_handlers
from ids import generate_id
from ordering import TASK_GROUPS, TASKS, SUB_TASKS
from auth.routes import router as users_router
from auth.dependencies import get_current_user, get_current_user_id, get_optional_user_id
from auth.capabilities import Permissions, ALL, NONE, DEFAULT_MEMBER, check, from_bits, to_bits
from auth.permissions import EntityKind, Access, authorize, resolve_invitation, resolve_project_id

# Configure logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Task Tracker API",
    description="Multi-tenant projects with ordered task groups, tasks and sub-tasks",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Register user/authentication router
app.include_router(users_router)


@app.on_event("startup")
def create_tables():
    """Create missing tables for local development (disabled in production)."""
    if not config.AUTO_CREATE_TABLES:
        logger.debug("AUTO_CREATE_TABLES disabled, skipping schema creation")
        return
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")


# ============== Helpers ==============

def project_view(access: Access) -> dict:
    """Serialize a project together with the caller's effective permissions."""
    data = schemas.Project.model_validate(access.project).model_dump()
    data["permissions"] = to_bits(access.permissions)
    return data


def require_accepted_member(db: Session, project_id: str, member_id: Optional[str]) -> models.ProjectMember:
    """
    Load an accepted membership of ``project_id`` by membership id.

    Raises:
        ValidationFailed: if the member is missing, pending, or in another project
    """
    member = db.query(models.ProjectMember).filter(
        models.ProjectMember.id == member_id,
        models.ProjectMember.project_id == project_id,
    ).first()
    if not member or not member.accepted:
        logger.info(f"Member {member_id} is not an accepted member of project {project_id}")
        raise ValidationFailed("Assignee must be an accepted member of the project")
    return member


def require_project_member(db: Session, project_id: str, member_id: str) -> models.ProjectMember:
    member = db.query(models.ProjectMember).filter(
        models.ProjectMember.id == member_id,
        models.ProjectMember.project_id == project_id,
    ).first()
    if not member:
        logger.info(f"Member {member_id} not found in project {project_id}")
        raise Forbidden()
    return member


def ensure_unique_group_name(db: Session, project_id: str, name: str, exclude_id: Optional[str] = None):
    query = db.query(models.TaskGroup.id).filter(
        models.TaskGroup.project_id == project_id,
        models.TaskGroup.name == name,
    )
    if exclude_id is not None:
        query = query.filter(models.TaskGroup.id != exclude_id)
    if query.first():
        logger.info(f"Task group name '{name}' already used in project {project_id}")
        raise Conflict("A task group with this name already exists")


@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Projects ==============

@app.get("/api/v1/projects", response_model=List[schemas.ProjectWithPermissions])
def list_projects(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """List projects the caller is an accepted member of."""
    logger.debug(f"User {user_id} listing projects")

    rows = (
        db.query(models.Project, models.ProjectMember)
        .join(models.ProjectMember, models.ProjectMember.project_id == models.Project.id)
        .filter(models.ProjectMember.user_id == user_id, models.ProjectMember.accepted.is_(True))
        .order_by(models.Project.created_at)
        .all()
    )

    logger.info(f"User {user_id} retrieved {len(rows)} projects")
    return [
        project_view(Access(project, user_id, membership, from_bits(membership.permissions)))
        for project, membership in rows
    ]


@app.post("/api/v1/projects", response_model=schemas.ProjectWithPermissions, status_code=status.HTTP_201_CREATED)
def create_project(
    project: schemas.ProjectCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a project; the creator becomes its owner with every permission."""
    logger.debug(f"User {current_user.id} creating project: {project.name}")

    def apply():
        db_project = models.Project(
            id=generate_id(db, models.Project),
            name=project.name,
            owner=current_user.id,
            icon_url=project.icon_url,
            public_permissions=to_bits(from_bits(project.public_permissions)),
        )
        db.add(db_project)
        db.flush()

        membership = models.ProjectMember(
            id=generate_id(db, models.ProjectMember),
            project_id=db_project.id,
            user_id=current_user.id,
            permissions=to_bits(ALL),
            accepted=True,
        )
        db.add(membership)
        db.flush()

        record_audit(db, membership, f"Created project '{db_project.name}'")
        return Access(db_project, current_user.id, membership, ALL)

    access = run_transaction(db, apply)

    logger.info(f"Project created: {access.project.name} (ID: {access.project_id}) by user {current_user.id}")
    return project_view(access)


@app.get("/api/v1/projects/{project_id}", response_model=schemas.ProjectWithPermissions)
def get_project(
    project_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    """Get a project (public projects are readable without membership)."""
    logger.debug(f"User {user_id} fetching project {project_id}")
    access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.READ_PROJECT, read_only=True)
    return project_view(access)


@app.put("/api/v1/projects/{project_id}", response_model=schemas.ProjectWithPermissions)
def update_project(
    project_id: str,
    project_update: schemas.ProjectUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Update project name, icon or public permissions (requires EDIT_PROJECT)."""
    logger.debug(f"User {user_id} updating project {project_id}")
    update_data = project_update.model_dump(exclude_unset=True)

    def apply():
        access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.EDIT_PROJECT)
        project = access.project

        if update_data.get("name") is not None and update_data["name"] != project.name:
            record_audit(db, access.membership, f"Changed project name from '{project.name}' to '{update_data['name']}'")
            project.name = update_data["name"]
        if "icon_url" in update_data and update_data["icon_url"] != project.icon_url:
            project.icon_url = update_data["icon_url"]
            record_audit(db, access.membership, "Changed project icon")
        if update_data.get("public_permissions") is not None:
            public_permissions = to_bits(from_bits(update_data["public_permissions"]))
            if public_permissions != project.public_permissions:
                project.public_permissions = public_permissions
                visibility = "public" if public_permissions else "private"
                record_audit(db, access.membership, f"Made project {visibility}")

        db.flush()
        return access

    access = run_transaction(db, apply)

    logger.info(f"Project {project_id} updated by user {user_id}")
    return project_view(access)


@app.delete("/api/v1/projects/{project_id}")
def delete_project(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Delete a project and everything in it (requires DELETE_PROJECT)."""
    logger.debug(f"User {user_id} deleting project {project_id}")

    def apply():
        access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.DELETE_PROJECT)
        cascade.delete_project(db, access.project)

    run_transaction(db, apply)

    logger.info(f"Project deleted: {project_id} by user {user_id}")
    return {"message": "Project deleted"}


@app.get("/api/v1/projects/{project_id}/audits", response_model=List[schemas.Audit])
def get_project_audits(
    project_id: str,
    days: int = Query(config.AUDIT_DEFAULT_DAYS, ge=1, le=365),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    """List recent audit entries for a project, newest first."""
    logger.debug(f"User {user_id} fetching audits for project {project_id} (days={days})")
    access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.READ_PROJECT, read_only=True)
    audits = list_audits(db, access.project_id, days=days, limit=limit, offset=offset)
    logger.info(f"Retrieved {len(audits)} audit entries for project {project_id}")
    return audits


@app.put("/api/v1/projects/{project_id}/owner", response_model=schemas.ProjectWithPermissions)
def transfer_ownership(
    project_id: str,
    transfer: schemas.OwnershipTransfer,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Hand the project to another accepted member (current owner only)."""
    logger.debug(f"User {user_id} transferring project {project_id} to user {transfer.user_id}")

    def apply():
        access = authorize(db, EntityKind.PROJECT, project_id, user_id, NONE)
        project = access.project
        if project.owner != user_id:
            logger.info(f"User {user_id} is not the owner of project {project_id}")
            raise Forbidden()

        target = db.query(models.ProjectMember).filter(
            models.ProjectMember.project_id == project_id,
            models.ProjectMember.user_id == transfer.user_id,
            models.ProjectMember.accepted.is_(True),
        ).first()
        if not target:
            logger.info(f"User {transfer.user_id} is not an accepted member of project {project_id}")
            raise Forbidden()

        target.permissions = to_bits(ALL)
        project.owner = transfer.user_id
        record_audit(db, access.membership, f"Transferred ownership to member {target.id}")
        db.flush()
        return access

    access = run_transaction(db, apply)

    logger.info(f"Project {project_id} ownership transferred to user {transfer.user_id}")
    return project_view(access)


# ============== Members & invitations ==============

@app.get("/api/v1/projects/{project_id}/members", response_model=List[schemas.ProjectMember])
def list_project_members(
    project_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    """List all memberships of a project, including pending invitations."""
    logger.debug(f"User {user_id} listing members of project {project_id}")
    access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.READ_PROJECT, read_only=True)

    members = (
        db.query(models.ProjectMember)
        .filter(models.ProjectMember.project_id == access.project_id)
        .order_by(models.ProjectMember.created_at)
        .all()
    )
    logger.info(f"Project {project_id} has {len(members)} memberships")
    return members


@app.post(
    "/api/v1/projects/{project_id}/members",
    response_model=List[schemas.ProjectMember],
    status_code=status.HTTP_201_CREATED,
)
def invite_members(
    project_id: str,
    invite: schemas.MemberInvite,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Invite users to a project (requires INVITE_MEMBERS).

    Invitations start unaccepted. Requested permissions may not exceed the
    inviter's own; without a request the default member set is used.
    """
    logger.debug(f"User {user_id} inviting {invite.user_ids} to project {project_id}")

    def apply():
        access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.INVITE_MEMBERS)

        if invite.permissions is None:
            permissions = DEFAULT_MEMBER
        else:
            permissions = from_bits(invite.permissions)
            check(access.permissions, permissions)

        invited = []
        for invitee_id in dict.fromkeys(invite.user_ids):
            invitee = db.query(models.User).filter(models.User.id == invitee_id).first()
            if not invitee:
                logger.info(f"Invitee {invitee_id} does not exist")
                raise Forbidden()

            existing = db.query(models.ProjectMember.id).filter(
                models.ProjectMember.project_id == project_id,
                models.ProjectMember.user_id == invitee_id,
            ).first()
            if existing:
                logger.info(f"User {invitee_id} is already a member of project {project_id}")
                raise Conflict("User is already a member of this project")

            membership = models.ProjectMember(
                id=generate_id(db, models.ProjectMember),
                project_id=project_id,
                user_id=invitee_id,
                permissions=to_bits(permissions),
                accepted=False,
            )
            db.add(membership)
            db.flush()
            record_audit(db, access.membership, f"Invited '{invitee.username}'")
            invited.append(membership)
        return invited

    invited = run_transaction(db, apply)

    logger.info(f"User {user_id} invited {len(invited)} users to project {project_id}")
    return invited


@app.put("/api/v1/projects/{project_id}/members/{member_id}", response_model=schemas.ProjectMember)
def update_member_permissions(
    project_id: str,
    member_id: str,
    member_update: schemas.MemberUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Change a member's permissions (requires EDIT_MEMBERS; cannot grant beyond your own)."""
    logger.debug(f"User {user_id} updating permissions of member {member_id} in project {project_id}")

    def apply():
        access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.EDIT_MEMBERS)
        member = require_project_member(db, project_id, member_id)

        if member.user_id == access.project.owner:
            logger.info(f"Refusing to change permissions of project {project_id} owner")
            raise Conflict("The project owner's permissions cannot be changed")

        permissions = from_bits(member_update.permissions)
        check(access.permissions, permissions)

        member.permissions = to_bits(permissions)
        record_audit(db, access.membership, f"Changed permissions of member {member.id}")
        db.flush()
        return member

    member = run_transaction(db, apply)

    logger.info(f"Member {member_id} in project {project_id} now has permissions {member.permissions}")
    return member


@app.delete("/api/v1/projects/{project_id}/members/{member_id}")
def remove_project_member(
    project_id: str,
    member_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Remove a member or revoke an invitation (requires REMOVE_MEMBERS)."""
    logger.debug(f"User {user_id} removing member {member_id} from project {project_id}")

    def apply():
        access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.REMOVE_MEMBERS)
        member = require_project_member(db, project_id, member_id)

        if member.user_id == access.project.owner:
            logger.info(f"Refusing to remove owner of project {project_id}")
            raise Conflict("The project owner cannot be removed")

        record_audit(db, access.membership, f"Removed member {member.id}")
        cascade.remove_member(db, member)

    run_transaction(db, apply)

    logger.info(f"Member {member_id} removed from project {project_id}")
    return {"message": "Member removed"}


@app.post("/api/v1/projects/{project_id}/leave")
def leave_project(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Leave a project. The owner must transfer ownership first."""
    logger.debug(f"User {user_id} leaving project {project_id}")

    def apply():
        access = authorize(db, EntityKind.PROJECT, project_id, user_id, NONE)
        if access.project.owner == user_id:
            logger.info(f"Owner {user_id} cannot leave project {project_id}")
            raise Conflict("The project owner cannot leave the project")

        record_audit(db, access.membership, "Left the project")
        cascade.remove_member(db, access.membership)

    run_transaction(db, apply)

    logger.info(f"User {user_id} left project {project_id}")
    return {"message": "Left project"}


@app.post("/api/v1/projects/{project_id}/invitation", response_model=schemas.ProjectMember)
def accept_invitation(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Accept a pending invitation to the project."""
    logger.debug(f"User {user_id} accepting invitation to project {project_id}")

    def apply():
        membership = resolve_invitation(db, project_id, user_id)
        membership.accepted = True
        db.flush()
        record_audit(db, membership, "Joined the project")
        return membership

    membership = run_transaction(db, apply)

    logger.info(f"User {user_id} joined project {project_id}")
    return membership


@app.delete("/api/v1/projects/{project_id}/invitation")
def deny_invitation(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Decline a pending invitation; the membership row is removed."""
    logger.debug(f"User {user_id} declining invitation to project {project_id}")

    def apply():
        membership = resolve_invitation(db, project_id, user_id)
        record_audit(db, membership, "Declined the invitation")
        cascade.remove_member(db, membership)

    run_transaction(db, apply)

    logger.info(f"User {user_id} declined invitation to project {project_id}")
    return {"message": "Invitation declined"}


# ============== Task groups ==============

@app.get("/api/v1/projects/{project_id}/task-groups", response_model=List[schemas.TaskGroup])
def list_task_groups(
    project_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {user_id} listing task groups of project {project_id}")
    access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.READ_PROJECT, read_only=True)
    return (
        db.query(models.TaskGroup)
        .filter(models.TaskGroup.project_id == access.project_id)
        .order_by(models.TaskGroup.position)
        .all()
    )


@app.post(
    "/api/v1/projects/{project_id}/task-groups",
    response_model=schemas.TaskGroup,
    status_code=status.HTTP_201_CREATED,
)
def create_task_group(
    project_id: str,
    group: schemas.TaskGroupCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Create a task group at the end, or at ``position`` if given (requires CREATE_TASK_GROUPS)."""
    logger.debug(f"User {user_id} creating task group '{group.name}' in project {project_id}")

    def apply():
        access = authorize(db, EntityKind.PROJECT, project_id, user_id, Permissions.CREATE_TASK_GROUPS)
        ensure_unique_group_name(db, project_id, group.name)

        db_group = models.TaskGroup(
            id=generate_id(db, models.TaskGroup),
            project_id=project_id,
            name=group.name,
        )
        if group.position is None:
            TASK_GROUPS.append(db, db_group)
        else:
            TASK_GROUPS.insert_at(db, db_group, group.position)

        record_audit(db, access.membership, f"Created task group '{db_group.name}'")
        return db_group

    db_group = run_transaction(db, apply)

    logger.info(f"Task group created: {db_group.name} (ID: {db_group.id}) at position {db_group.position}")
    return db_group


@app.get("/api/v1/task-groups/{group_id}", response_model=schemas.TaskGroup)
def get_task_group(
    group_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {user_id} fetching task group {group_id}")
    authorize(db, EntityKind.TASK_GROUP, group_id, user_id, Permissions.READ_PROJECT, read_only=True)
    return db.query(models.TaskGroup).filter(models.TaskGroup.id == group_id).first()


@app.put("/api/v1/task-groups/{group_id}", response_model=schemas.TaskGroup)
def update_task_group(
    group_id: str,
    group_update: schemas.TaskGroupUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Rename and/or move a task group (requires EDIT_TASK_GROUPS)."""
    logger.debug(f"User {user_id} updating task group {group_id}")

    def apply():
        access = authorize(db, EntityKind.TASK_GROUP, group_id, user_id, Permissions.EDIT_TASK_GROUPS)
        db_group = db.query(models.TaskGroup).filter(models.TaskGroup.id == group_id).first()
        if group_update.position is not None:
            TASK_GROUPS.lock_item(db, db_group)

        if group_update.name is not None and group_update.name != db_group.name:
            ensure_unique_group_name(db, db_group.project_id, group_update.name, exclude_id=db_group.id)
            record_audit(db, access.membership, f"Changed task group name from '{db_group.name}' to '{group_update.name}'")
            db_group.name = group_update.name

        if group_update.position is not None and group_update.position != db_group.position:
            old_position = db_group.position
            TASK_GROUPS.move(db, db_group, group_update.position)
            if db_group.position != old_position:
                record_audit(db, access.membership, f"Moved task group '{db_group.name}'")

        db.flush()
        return db_group

    db_group = run_transaction(db, apply)

    logger.info(f"Task group {group_id} updated by user {user_id}")
    return db_group


@app.delete("/api/v1/task-groups/{group_id}")
def delete_task_group(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Delete a task group with its tasks and sub-tasks (requires DELETE_TASK_GROUPS)."""
    logger.debug(f"User {user_id} deleting task group {group_id}")

    def apply():
        access = authorize(db, EntityKind.TASK_GROUP, group_id, user_id, Permissions.DELETE_TASK_GROUPS)
        db_group = db.query(models.TaskGroup).filter(models.TaskGroup.id == group_id).first()
        record_audit(db, access.membership, f"Removed task group '{db_group.name}'")
        cascade.delete_task_group(db, db_group)

    run_transaction(db, apply)

    logger.info(f"Task group deleted: {group_id}")
    return {"message": "Task group deleted"}


# ============== Tasks ==============

@app.get("/api/v1/task-groups/{group_id}/tasks", response_model=List[schemas.Task])
def list_tasks(
    group_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {user_id} listing tasks of task group {group_id}")
    authorize(db, EntityKind.TASK_GROUP, group_id, user_id, Permissions.READ_PROJECT, read_only=True)
    return (
        db.query(models.Task)
        .filter(models.Task.task_group_id == group_id)
        .order_by(models.Task.position)
        .all()
    )


@app.post(
    "/api/v1/task-groups/{group_id}/tasks",
    response_model=schemas.Task,
    status_code=status.HTTP_201_CREATED,
)
def create_task(
    group_id: str,
    task: schemas.TaskCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Create a task in a task group (requires CREATE_TASKS)."""
    logger.debug(f"User {user_id} creating task '{task.name}' in task group {group_id}")

    def apply():
        access = authorize(db, EntityKind.TASK_GROUP, group_id, user_id, Permissions.CREATE_TASKS)

        task_data = task.model_dump(exclude={"position"})
        db_task = models.Task(
            id=generate_id(db, models.Task),
            project_id=access.project_id,
            task_group_id=group_id,
            creator=user_id,
            **task_data,
        )
        if task.position is None:
            TASKS.append(db, db_task)
        else:
            TASKS.insert_at(db, db_task, task.position)

        record_audit(db, access.membership, f"Created task '{db_task.name}'")
        return db_task

    db_task = run_transaction(db, apply)

    logger.info(f"Task created: {db_task.name} (ID: {db_task.id}) at position {db_task.position}")
    return db_task


@app.get("/api/v1/tasks/{task_id}", response_model=schemas.TaskWithSubTasks)
def get_task(
    task_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    """Get a task with its sub-tasks in order."""
    logger.debug(f"User {user_id} fetching task {task_id}")
    authorize(db, EntityKind.TASK, task_id, user_id, Permissions.READ_PROJECT, read_only=True)
    return db.query(models.Task).filter(models.Task.id == task_id).first()


@app.put("/api/v1/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: str,
    task_update: schemas.TaskUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Update a task (requires EDIT_TASKS).

    Moving to another task group needs an explicit ``position`` and the target
    group must belong to the same project.
    """
    logger.debug(f"User {user_id} updating task {task_id}")
    update_data = task_update.model_dump(exclude_unset=True)
    new_group_id = update_data.pop("task_group_id", None)
    new_position = update_data.pop("position", None)

    def apply():
        access = authorize(db, EntityKind.TASK, task_id, user_id, Permissions.EDIT_TASKS)
        db_task = db.query(models.Task).filter(models.Task.id == task_id).first()
        if new_group_id is not None:
            if resolve_project_id(db, EntityKind.TASK_GROUP, new_group_id) != access.project_id:
                logger.info(f"Task group {new_group_id} is not in project {access.project_id}")
                raise Forbidden()
            TASKS.lock_item(db, db_task, new_group_id)
        elif new_position is not None:
            TASKS.lock_item(db, db_task)

        edited = False
        for field, value in update_data.items():
            if field == "name" and value is None:
                continue
            if getattr(db_task, field) == value:
                continue
            if field == "name":
                record_audit(db, access.membership, f"Changed task name from '{db_task.name}' to '{value}'")
            else:
                edited = True
            setattr(db_task, field, value)

        if new_group_id is not None and new_group_id != db_task.task_group_id:
            if new_position is None:
                raise ValidationFailed("A position is required when moving a task to another task group")
            TASKS.move_to_scope(db, db_task, new_group_id, new_position)
            record_audit(db, access.membership, f"Moved task '{db_task.name}' to another task group")
        elif new_position is not None and new_position != db_task.position:
            old_position = db_task.position
            TASKS.move(db, db_task, new_position)
            if db_task.position != old_position:
                record_audit(db, access.membership, f"Moved task '{db_task.name}'")

        if edited:
            record_audit(db, access.membership, f"Edited task '{db_task.name}'")
        db.flush()
        return db_task

    db_task = run_transaction(db, apply)

    logger.info(f"Task {task_id} updated by user {user_id}")
    return db_task


@app.delete("/api/v1/tasks/{task_id}")
def delete_task(
    task_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Delete a task and its sub-tasks (requires DELETE_TASKS)."""
    logger.debug(f"User {user_id} deleting task {task_id}")

    def apply():
        access = authorize(db, EntityKind.TASK, task_id, user_id, Permissions.DELETE_TASKS)
        db_task = db.query(models.Task).filter(models.Task.id == task_id).first()
        record_audit(db, access.membership, f"Removed task '{db_task.name}'")
        cascade.delete_task(db, db_task)

    run_transaction(db, apply)

    logger.info(f"Task deleted: {task_id}")
    return {"message": "Task deleted"}


# ============== Sub-tasks ==============

@app.get("/api/v1/tasks/{task_id}/sub-tasks", response_model=List[schemas.SubTask])
def list_sub_tasks(
    task_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {user_id} listing sub-tasks of task {task_id}")
    authorize(db, EntityKind.TASK, task_id, user_id, Permissions.READ_PROJECT, read_only=True)
    return (
        db.query(models.SubTask)
        .filter(models.SubTask.task_id == task_id)
        .order_by(models.SubTask.position)
        .all()
    )


@app.post(
    "/api/v1/tasks/{task_id}/sub-tasks",
    response_model=schemas.SubTask,
    status_code=status.HTTP_201_CREATED,
)
def create_sub_task(
    task_id: str,
    sub_task: schemas.SubTaskCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Create a sub-task (requires CREATE_TASKS)."""
    logger.debug(f"User {user_id} creating sub-task in task {task_id}")

    def apply():
        access = authorize(db, EntityKind.TASK, task_id, user_id, Permissions.CREATE_TASKS)
        if sub_task.assignee is not None:
            require_accepted_member(db, access.project_id, sub_task.assignee)

        db_sub_task = models.SubTask(
            id=generate_id(db, models.SubTask),
            task_id=task_id,
            project_id=access.project_id,
            assignee=sub_task.assignee,
            body=sub_task.body,
            weight=sub_task.weight,
            completed=False,
        )
        if sub_task.position is None:
            SUB_TASKS.append(db, db_sub_task)
        else:
            SUB_TASKS.insert_at(db, db_sub_task, sub_task.position)

        record_audit(db, access.membership, f"Created sub-task '{db_sub_task.body}'")
        return db_sub_task

    db_sub_task = run_transaction(db, apply)

    logger.info(f"Sub-task created: {db_sub_task.id} at position {db_sub_task.position}")
    return db_sub_task


@app.get("/api/v1/sub-tasks/{sub_task_id}", response_model=schemas.SubTask)
def get_sub_task(
    sub_task_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    logger.debug(f"User {user_id} fetching sub-task {sub_task_id}")
    authorize(db, EntityKind.SUB_TASK, sub_task_id, user_id, Permissions.READ_PROJECT, read_only=True)
    return db.query(models.SubTask).filter(models.SubTask.id == sub_task_id).first()


@app.put("/api/v1/sub-tasks/{sub_task_id}", response_model=schemas.SubTask)
def update_sub_task(
    sub_task_id: str,
    sub_task_update: schemas.SubTaskUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Edit, complete, assign or move a sub-task (requires EDIT_TASKS)."""
    logger.debug(f"User {user_id} updating sub-task {sub_task_id}")
    update_data = sub_task_update.model_dump(exclude_unset=True)

    def apply():
        access = authorize(db, EntityKind.SUB_TASK, sub_task_id, user_id, Permissions.EDIT_TASKS)
        db_sub_task = db.query(models.SubTask).filter(models.SubTask.id == sub_task_id).first()
        if update_data.get("position") is not None:
            SUB_TASKS.lock_item(db, db_sub_task)

        if update_data.get("body") is not None and update_data["body"] != db_sub_task.body:
            record_audit(db, access.membership, f"Changed sub-task from '{db_sub_task.body}' to '{update_data['body']}'")
            db_sub_task.body = update_data["body"]
        if update_data.get("weight") is not None:
            db_sub_task.weight = update_data["weight"]
        if update_data.get("completed") is not None and update_data["completed"] != db_sub_task.completed:
            db_sub_task.completed = update_data["completed"]
            state = "complete" if db_sub_task.completed else "incomplete"
            record_audit(db, access.membership, f"Marked sub-task '{db_sub_task.body}' as {state}")

        if "assignee" in update_data and update_data["assignee"] != db_sub_task.assignee:
            if update_data["assignee"] is not None:
                require_accepted_member(db, access.project_id, update_data["assignee"])
            db_sub_task.assignee = update_data["assignee"]
            record_audit(db, access.membership, f"Changed assignee of sub-task '{db_sub_task.body}'")

        if update_data.get("position") is not None and update_data["position"] != db_sub_task.position:
            old_position = db_sub_task.position
            SUB_TASKS.move(db, db_sub_task, update_data["position"])
            if db_sub_task.position != old_position:
                record_audit(db, access.membership, f"Moved sub-task '{db_sub_task.body}'")

        db.flush()
        return db_sub_task

    db_sub_task = run_transaction(db, apply)

    logger.info(f"Sub-task {sub_task_id} updated by user {user_id}")
    return db_sub_task


@app.delete("/api/v1/sub-tasks/{sub_task_id}")
def delete_sub_task(
    sub_task_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Delete a sub-task (requires DELETE_TASKS)."""
    logger.debug(f"User {user_id} deleting sub-task {sub_task_id}")

    def apply():
        access = authorize(db, EntityKind.SUB_TASK, sub_task_id, user_id, Permissions.DELETE_TASKS)
        db_sub_task = db.query(models.SubTask).filter(models.SubTask.id == sub_task_id).first()
        record_audit(db, access.membership, f"Removed sub-task '{db_sub_task.body}'")
        cascade.delete_sub_task(db, db_sub_task)

    run_transaction(db, apply)

    logger.info(f"Sub-task deleted: {sub_task_id}")
    return {"message": "Sub-task deleted"}
