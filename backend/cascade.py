"""
Cascading deletes, children first.

The schema has no ON DELETE actions, so every delete of a parent removes its
descendants explicitly in the same transaction before removing itself.
"""

import logging

from sqlalchemy.orm import Session

from models import Project, ProjectMember, TaskGroup, Task, SubTask, Audit
from ordering import TASK_GROUPS, TASKS, SUB_TASKS

logger = logging.getLogger(__name__)


def _lock_rows(db: Session, model, *criteria) -> None:
    # Child inserts lock their parent row; hold the parents until deleted
    db.query(model.id).filter(*criteria).order_by(model.id).with_for_update().all()


def delete_project(db: Session, project: Project) -> None:
    """Delete a project with all of its groups, tasks, members and audit log."""
    project_id = project.id
    logger.debug(f"Cascading delete of project {project_id}")
    TASK_GROUPS.lock_scope(db, project_id)
    _lock_rows(db, TaskGroup, TaskGroup.project_id == project_id)
    _lock_rows(db, Task, Task.project_id == project_id)

    sub_tasks = db.query(SubTask).filter(SubTask.project_id == project_id).delete(synchronize_session=False)
    tasks = db.query(Task).filter(Task.project_id == project_id).delete(synchronize_session=False)
    groups = db.query(TaskGroup).filter(TaskGroup.project_id == project_id).delete(synchronize_session=False)
    members = db.query(ProjectMember).filter(ProjectMember.project_id == project_id).delete(synchronize_session=False)
    audits = db.query(Audit).filter(Audit.project_id == project_id).delete(synchronize_session=False)

    db.delete(project)
    db.flush()
    logger.info(
        f"Deleted project {project_id}: {groups} task groups, {tasks} tasks, "
        f"{sub_tasks} sub-tasks, {members} members, {audits} audit entries"
    )


def delete_task_group(db: Session, group: TaskGroup) -> None:
    logger.debug(f"Cascading delete of task group {group.id}")
    TASK_GROUPS.lock_item(db, group)
    _lock_rows(db, Task, Task.task_group_id == group.id)
    task_ids = db.query(Task.id).filter(Task.task_group_id == group.id)

    db.query(SubTask).filter(SubTask.task_id.in_(task_ids.scalar_subquery())).delete(synchronize_session=False)
    db.query(Task).filter(Task.task_group_id == group.id).delete(synchronize_session=False)
    TASK_GROUPS.remove(db, group)


def delete_task(db: Session, task: Task) -> None:
    logger.debug(f"Cascading delete of task {task.id}")
    TASKS.lock_item(db, task)
    db.query(SubTask).filter(SubTask.task_id == task.id).delete(synchronize_session=False)
    TASKS.remove(db, task)


def delete_sub_task(db: Session, sub_task: SubTask) -> None:
    SUB_TASKS.remove(db, sub_task)


def remove_member(db: Session, member: ProjectMember) -> int:
    """
    Delete a membership, first clearing it from every sub-task it is assigned to.

    Tasks the member created and audit entries it wrote are left untouched.

    Returns:
        Number of sub-tasks that lost their assignee
    """
    unassigned = (
        db.query(SubTask)
        .filter(SubTask.assignee == member.id)
        .update({SubTask.assignee: None}, synchronize_session="fetch")
    )
    db.delete(member)
    db.flush()
    logger.info(f"Removed member {member.id} from project {member.project_id}, unassigned {unassigned} sub-tasks")
    return unassigned
