"""
Tests for membership resolution (auth/permissions.py) and project access over HTTP.

Tests cover:
- Creator gets an accepted ALL membership (project creation)
- Pending invitations grant nothing until accepted
- Public projects are readable, never writable, by non-members
- Missing, foreign and unauthorized entities are indistinguishable
"""

import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from errors import Forbidden
from auth.capabilities import Permissions, ALL, DEFAULT_MEMBER, NONE, from_bits, to_bits
from auth.permissions import EntityKind, authorize, resolve_invitation, resolve_project_id
from tests.conftest import add_member, auth_headers_for, make_sub_task

logger = logging.getLogger(__name__)


# ============== Resolver unit tests ==============


def test_resolve_project_id_for_every_kind(test_db: Session, project: models.Project, task: models.Task):
    sub_task = make_sub_task(test_db, task, "Proofread")

    assert resolve_project_id(test_db, EntityKind.PROJECT, project.id) == project.id
    assert resolve_project_id(test_db, EntityKind.TASK_GROUP, task.task_group_id) == project.id
    assert resolve_project_id(test_db, EntityKind.TASK, task.id) == project.id
    assert resolve_project_id(test_db, EntityKind.SUB_TASK, sub_task.id) == project.id
    assert resolve_project_id(test_db, EntityKind.TASK, "missing000") is None


def test_accepted_member_gets_stored_permissions(
    test_db: Session, project: models.Project, member: models.ProjectMember, member_user: models.User
):
    access = authorize(test_db, EntityKind.PROJECT, project.id, member_user.id, Permissions.EDIT_TASKS)
    assert access.permissions == DEFAULT_MEMBER
    assert access.membership.id == member.id
    assert access.project_id == project.id


def test_member_lacking_capability_is_forbidden(
    test_db: Session, project: models.Project, member: models.ProjectMember, member_user: models.User
):
    with pytest.raises(Forbidden):
        authorize(test_db, EntityKind.PROJECT, project.id, member_user.id, Permissions.DELETE_PROJECT)


def test_missing_entity_is_forbidden(test_db: Session, owner_user: models.User):
    for kind in EntityKind:
        with pytest.raises(Forbidden):
            authorize(test_db, kind, "nothing-here", owner_user.id, NONE, read_only=True)


def test_pending_invitation_grants_nothing(
    test_db: Session, project: models.Project, member_user: models.User
):
    add_member(test_db, project, member_user, ALL, accepted=False)

    with pytest.raises(Forbidden):
        authorize(test_db, EntityKind.PROJECT, project.id, member_user.id, Permissions.READ_PROJECT, read_only=True)
    with pytest.raises(Forbidden):
        authorize(test_db, EntityKind.PROJECT, project.id, member_user.id, NONE)
    logger.info("✓ Pending invitation grants no capability, even with ALL stored")


def test_resolve_invitation_only_for_pending(
    test_db: Session, project: models.Project, member_user: models.User, owner_user: models.User
):
    pending = add_member(test_db, project, member_user, DEFAULT_MEMBER, accepted=False)
    assert resolve_invitation(test_db, project.id, member_user.id).id == pending.id

    # The owner's membership is accepted, so there is nothing to accept
    with pytest.raises(Forbidden):
        resolve_invitation(test_db, project.id, owner_user.id)


def test_public_project_read_only(
    test_db: Session, project: models.Project, outsider_user: models.User
):
    project.public_permissions = to_bits(Permissions.READ_PROJECT | Permissions.EDIT_TASKS)
    test_db.commit()

    access = authorize(test_db, EntityKind.PROJECT, project.id, outsider_user.id, Permissions.READ_PROJECT, read_only=True)
    assert access.permissions == Permissions.READ_PROJECT
    assert access.membership is None

    anonymous = authorize(test_db, EntityKind.PROJECT, project.id, None, Permissions.READ_PROJECT, read_only=True)
    assert anonymous.user_id is None

    # Public grants never apply to mutations, whatever bits are stored
    with pytest.raises(Forbidden):
        authorize(test_db, EntityKind.PROJECT, project.id, outsider_user.id, Permissions.EDIT_TASKS)
    with pytest.raises(Forbidden):
        authorize(test_db, EntityKind.PROJECT, project.id, outsider_user.id, Permissions.EDIT_TASKS, read_only=True)


def test_private_project_rejects_non_members(
    test_db: Session, project: models.Project, outsider_user: models.User
):
    with pytest.raises(Forbidden):
        authorize(test_db, EntityKind.PROJECT, project.id, outsider_user.id, Permissions.READ_PROJECT, read_only=True)
    with pytest.raises(Forbidden):
        authorize(test_db, EntityKind.PROJECT, project.id, None, Permissions.READ_PROJECT, read_only=True)


def test_unknown_stored_bits_do_not_grant(
    test_db: Session, project: models.Project, member_user: models.User
):
    add_member(test_db, project, member_user, Permissions.READ_PROJECT)
    membership = test_db.query(models.ProjectMember).filter(models.ProjectMember.user_id == member_user.id).first()
    membership.permissions = to_bits(Permissions.READ_PROJECT) | (1 << 40)
    test_db.commit()

    access = authorize(test_db, EntityKind.PROJECT, project.id, member_user.id, NONE)
    assert access.permissions == Permissions.READ_PROJECT


# ============== HTTP scenarios ==============


def test_create_project_gives_creator_full_membership(
    client: TestClient, test_db: Session, owner_user: models.User, owner_headers
):
    """Creating a project makes the creator an accepted member with every permission."""
    response = client.post("/api/v1/projects", json={"name": "Apollo"}, headers=owner_headers)

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["owner"] == owner_user.id
    assert data["permissions"] == to_bits(ALL)
    assert len(data["id"]) == 8

    membership = test_db.query(models.ProjectMember).filter(
        models.ProjectMember.project_id == data["id"],
        models.ProjectMember.user_id == owner_user.id,
    ).one()
    assert membership.accepted is True
    assert from_bits(membership.permissions) == ALL
    logger.info("✓ Creator has accepted ALL membership")


def test_invited_user_forbidden_until_accepted(
    client: TestClient,
    test_db: Session,
    project: models.Project,
    member_user: models.User,
    owner_headers,
    member_headers,
):
    """An invitee cannot read the project until accepting the invitation."""
    response = client.post(
        f"/api/v1/projects/{project.id}/members",
        json={"user_ids": [member_user.id]},
        headers=owner_headers,
    )
    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    invited = response.json()[0]
    assert invited["accepted"] is False
    assert invited["permissions"] == to_bits(DEFAULT_MEMBER)

    response = client.get(f"/api/v1/projects/{project.id}", headers=member_headers)
    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"

    response = client.post(f"/api/v1/projects/{project.id}/invitation", headers=member_headers)
    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert response.json()["accepted"] is True

    response = client.get(f"/api/v1/projects/{project.id}", headers=member_headers)
    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert response.json()["permissions"] == to_bits(DEFAULT_MEMBER)
    logger.info("✓ Invitee gains access only after accepting")


def test_forbidden_responses_are_identical(
    client: TestClient,
    test_db: Session,
    project: models.Project,
    member: models.ProjectMember,
    member_user: models.User,
    member_headers,
    outsider_headers,
):
    """Missing entity, missing capability and non-membership return the same 403 body."""
    pending_project = models.Project(id="pending1", name="Pending", owner=project.owner, public_permissions=0)
    test_db.add(pending_project)
    test_db.commit()
    add_member(test_db, pending_project, member_user, DEFAULT_MEMBER, accepted=False)

    responses = [
        client.get("/api/v1/projects/doesnotexist", headers=member_headers),
        client.delete(f"/api/v1/projects/{project.id}", headers=member_headers),
        client.get(f"/api/v1/projects/{project.id}", headers=outsider_headers),
        client.get(f"/api/v1/projects/{pending_project.id}", headers=member_headers),
    ]

    for response in responses:
        assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"
        assert response.json() == {"detail": "Forbidden"}
    logger.info("✓ All Forbidden causes are indistinguishable")


def test_foreign_entity_is_forbidden(
    client: TestClient, test_db: Session, project: models.Project, task_group: models.TaskGroup, outsider_user: models.User
):
    """A task group from someone else's project cannot be read or written through another project."""
    other_project = models.Project(id="otherprj", name="Other", owner=outsider_user.id, public_permissions=0)
    test_db.add(other_project)
    test_db.commit()
    add_member(test_db, other_project, outsider_user, ALL)
    headers = auth_headers_for(outsider_user)

    response = client.get(f"/api/v1/task-groups/{task_group.id}", headers=headers)
    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"

    response = client.put(f"/api/v1/task-groups/{task_group.id}", json={"name": "Hijacked"}, headers=headers)
    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"

    test_db.refresh(task_group)
    assert task_group.name == "Backlog"


def test_public_project_readable_anonymously(
    client: TestClient, test_db: Session, project: models.Project, task_group: models.TaskGroup
):
    project.public_permissions = to_bits(Permissions.READ_PROJECT)
    test_db.commit()

    response = client.get(f"/api/v1/projects/{project.id}")
    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert response.json()["permissions"] == to_bits(Permissions.READ_PROJECT)

    response = client.get(f"/api/v1/projects/{project.id}/task-groups")
    assert response.status_code == 200
    assert [group["id"] for group in response.json()] == [task_group.id]

    response = client.post(f"/api/v1/projects/{project.id}/task-groups", json={"name": "Sneaky"})
    assert response.status_code == 401, f"Expected 401, got {response.status_code}: {response.json()}"


def test_public_project_not_writable_by_outsider(
    client: TestClient, test_db: Session, project: models.Project, outsider_headers
):
    project.public_permissions = to_bits(Permissions.READ_PROJECT)
    test_db.commit()

    response = client.post(
        f"/api/v1/projects/{project.id}/task-groups", json={"name": "Sneaky"}, headers=outsider_headers
    )
    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"
    assert test_db.query(models.TaskGroup).count() == 0
