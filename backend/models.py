from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    Text,
    Boolean,
    ForeignKey,
    DateTime,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from database import Base
from time_utils import utc_now


# Foreign keys carry no ON DELETE actions; cascade.py deletes children first.
# Collections are read-only views, ordered by position.


class User(Base):
    __tablename__ = "users"
    __id_length__ = 8

    id = Column(String(8), primary_key=True)
    username = Column(String(30), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class Project(Base):
    __tablename__ = "projects"
    __id_length__ = 8

    id = Column(String(8), primary_key=True)
    name = Column(String(30), nullable=False)
    owner = Column(String(8), ForeignKey("users.id"), nullable=False)
    icon_url = Column(Text)
    # Capability bits granted to non-members; 0 means private
    public_permissions = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    task_groups = relationship("TaskGroup", order_by="TaskGroup.position", viewonly=True)


class ProjectMember(Base):
    __tablename__ = "project_members"
    __id_length__ = 10
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
    )

    id = Column(String(10), primary_key=True)
    project_id = Column(String(8), ForeignKey("projects.id"), nullable=False, index=True)
    user_id = Column(String(8), ForeignKey("users.id"), nullable=False, index=True)
    permissions = Column(BigInteger, nullable=False, default=0)
    accepted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    user = relationship("User")


class TaskGroup(Base):
    __tablename__ = "task_groups"
    __id_length__ = 10
    __table_args__ = (
        Index("ix_task_groups_project_position", "project_id", "position"),
    )

    id = Column(String(10), primary_key=True)
    project_id = Column(String(8), ForeignKey("projects.id"), nullable=False)
    name = Column(String(30), nullable=False)
    position = Column(Integer, nullable=False)

    tasks = relationship("Task", order_by="Task.position", viewonly=True)


class Task(Base):
    __tablename__ = "tasks"
    __id_length__ = 10
    __table_args__ = (
        Index("ix_tasks_group_position", "task_group_id", "position"),
    )

    id = Column(String(10), primary_key=True)
    project_id = Column(String(8), ForeignKey("projects.id"), nullable=False, index=True)
    task_group_id = Column(String(10), ForeignKey("task_groups.id"), nullable=False)
    name = Column(String(30), nullable=False)
    information = Column(Text)
    creator = Column(String(8), ForeignKey("users.id"))
    due = Column(DateTime(timezone=True))
    primary_colour = Column(String(32))
    accent_colour = Column(String(32))
    custom_metadata = Column(JSON().with_variant(JSONB, "postgresql"))
    position = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    sub_tasks = relationship("SubTask", order_by="SubTask.position", viewonly=True)


class SubTask(Base):
    __tablename__ = "sub_tasks"
    __id_length__ = 12
    __table_args__ = (
        Index("ix_sub_tasks_task_position", "task_id", "position"),
    )

    id = Column(String(12), primary_key=True)
    task_id = Column(String(10), ForeignKey("tasks.id"), nullable=False)
    project_id = Column(String(8), ForeignKey("projects.id"), nullable=False, index=True)
    assignee = Column(String(10), ForeignKey("project_members.id"), index=True)
    body = Column(String(90), nullable=False)
    weight = Column(Integer, nullable=False, default=1)
    completed = Column(Boolean, nullable=False, default=False)
    position = Column(Integer, nullable=False)


class Audit(Base):
    __tablename__ = "audit_log"
    __id_length__ = 12
    __table_args__ = (
        Index("ix_audit_log_project_timestamp", "project_id", "timestamp"),
    )

    id = Column(String(12), primary_key=True)
    # Membership id at the time of writing; kept after the member is removed
    auditor = Column(String(10), nullable=False)
    project_id = Column(String(8), ForeignKey("projects.id"), nullable=False)
    body = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class LoginHistory(Base):
    __tablename__ = "login_history"
    __id_length__ = 10
    __table_args__ = (
        Index("ix_login_history_user_timestamp", "user_id", "login_timestamp"),
    )

    id = Column(String(10), primary_key=True)
    user_id = Column(String(8), ForeignKey("users.id"), nullable=False)
    login_timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now)
