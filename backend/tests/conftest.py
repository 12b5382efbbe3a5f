"""
Test configuration and fixtures for task tracker tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users, projects, memberships and task groups
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Generator, Dict

# Must be set before the application modules read their configuration
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db, create_db_engine
from main import app
import models
from auth.security import hash_password, issue_token
from auth.capabilities import ALL, DEFAULT_MEMBER, Permissions, to_bits
from ordering import TASK_GROUPS, TASKS, SUB_TASKS
from ids import generate_id

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_db_engine(SQLALCHEMY_TEST_DATABASE_URL, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def create_user(db: Session, username: str) -> models.User:
    logger.debug(f"Creating user {username}")
    user = models.User(
        id=generate_id(db, models.User),
        username=username,
        email=f"{username}@test.com",
        password_hash=hash_password(f"{username}-password"),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {username} with ID: {user.id}")
    return user


def add_member(
    db: Session,
    project: models.Project,
    user: models.User,
    permissions: Permissions = DEFAULT_MEMBER,
    accepted: bool = True,
) -> models.ProjectMember:
    """Insert a membership row directly, bypassing the invitation flow."""
    member = models.ProjectMember(
        id=generate_id(db, models.ProjectMember),
        project_id=project.id,
        user_id=user.id,
        permissions=to_bits(permissions),
        accepted=accepted,
    )
    db.add(member)
    db.commit()
    db.refresh(member)
    return member


def make_task_group(db: Session, project: models.Project, name: str) -> models.TaskGroup:
    group = models.TaskGroup(id=generate_id(db, models.TaskGroup), project_id=project.id, name=name)
    TASK_GROUPS.append(db, group)
    db.commit()
    db.refresh(group)
    return group


def make_task(db: Session, group: models.TaskGroup, name: str) -> models.Task:
    task = models.Task(
        id=generate_id(db, models.Task),
        project_id=group.project_id,
        task_group_id=group.id,
        name=name,
    )
    TASKS.append(db, task)
    db.commit()
    db.refresh(task)
    return task


def make_sub_task(db: Session, task: models.Task, body: str, assignee: str = None) -> models.SubTask:
    sub_task = models.SubTask(
        id=generate_id(db, models.SubTask),
        task_id=task.id,
        project_id=task.project_id,
        body=body,
        assignee=assignee,
    )
    SUB_TASKS.append(db, sub_task)
    db.commit()
    db.refresh(sub_task)
    return sub_task


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    return issue_token(user.id, expires_delta)


def auth_headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def owner_user(test_db: Session) -> models.User:
    return create_user(test_db, "owner")


@pytest.fixture(scope="function")
def member_user(test_db: Session) -> models.User:
    return create_user(test_db, "member")


@pytest.fixture(scope="function")
def outsider_user(test_db: Session) -> models.User:
    return create_user(test_db, "outsider")


@pytest.fixture(scope="function")
def owner_headers(owner_user: models.User) -> Dict[str, str]:
    return auth_headers_for(owner_user)


@pytest.fixture(scope="function")
def member_headers(member_user: models.User) -> Dict[str, str]:
    return auth_headers_for(member_user)


@pytest.fixture(scope="function")
def outsider_headers(outsider_user: models.User) -> Dict[str, str]:
    return auth_headers_for(outsider_user)


@pytest.fixture(scope="function")
def project(test_db: Session, owner_user: models.User) -> models.Project:
    """
    Create a private project owned by owner_user with an accepted ALL membership.
    """
    logger.debug("Creating test project")
    project = models.Project(
        id=generate_id(test_db, models.Project),
        name="Test Project",
        owner=owner_user.id,
        public_permissions=0,
    )
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)

    add_member(test_db, project, owner_user, ALL)

    logger.info(f"Created test project with ID: {project.id}")
    return project


@pytest.fixture(scope="function")
def member(test_db: Session, project: models.Project, member_user: models.User) -> models.ProjectMember:
    """member_user as an accepted member with the default permission set."""
    return add_member(test_db, project, member_user, DEFAULT_MEMBER)


@pytest.fixture(scope="function")
def task_group(test_db: Session, project: models.Project) -> models.TaskGroup:
    return make_task_group(test_db, project, "Backlog")


@pytest.fixture(scope="function")
def task(test_db: Session, task_group: models.TaskGroup) -> models.Task:
    return make_task(test_db, task_group, "Write docs")
