"""
Tests for dense sibling ordering (ordering.py).

Tests cover:
- Append, insert-at, move and remove on task groups, tasks and sub-tasks
- Clamping and validation of positions
- Moving a task between task groups
- Density after a long random sequence of operations
"""

import logging
import random

import pytest
from sqlalchemy.orm import Session

import models
from errors import Forbidden, ValidationFailed
from ids import generate_id
from ordering import TASK_GROUPS, TASKS, SUB_TASKS
from tests.conftest import make_task_group, make_task, make_sub_task

logger = logging.getLogger(__name__)


def new_group(db: Session, project: models.Project, name: str) -> models.TaskGroup:
    return models.TaskGroup(id=generate_id(db, models.TaskGroup), project_id=project.id, name=name)


def group_names(db: Session, project: models.Project):
    groups = (
        db.query(models.TaskGroup)
        .filter(models.TaskGroup.project_id == project.id)
        .order_by(models.TaskGroup.position)
        .all()
    )
    return [group.name for group in groups]


def assert_dense(collection, db: Session, scope_id: str):
    positions = collection.positions(db, scope_id)
    assert positions == list(range(len(positions))), f"Positions not dense in {scope_id}: {positions}"


def test_append_into_empty_scope_starts_at_zero(test_db: Session, project: models.Project):
    group = TASK_GROUPS.append(test_db, new_group(test_db, project, "First"))
    assert group.position == 0
    assert TASK_GROUPS.positions(test_db, project.id) == [0]


def test_three_appends_then_delete_middle(test_db: Session, project: models.Project):
    """Three appended groups sit at [0, 1, 2]; removing the middle one leaves [0, 1]."""
    groups = [make_task_group(test_db, project, name) for name in ("Todo", "Doing", "Done")]

    assert [group.position for group in groups] == [0, 1, 2]

    TASK_GROUPS.remove(test_db, groups[1])
    test_db.commit()

    assert TASK_GROUPS.positions(test_db, project.id) == [0, 1]
    assert group_names(test_db, project) == ["Todo", "Done"]
    logger.info("✓ Delete compacts sibling positions")


def test_insert_at_front_shifts_siblings(test_db: Session, project: models.Project):
    """Inserting at 0 when groups are at [0, 1] moves them to [1, 2]."""
    first = make_task_group(test_db, project, "Todo")
    second = make_task_group(test_db, project, "Done")

    inserted = TASK_GROUPS.insert_at(test_db, new_group(test_db, project, "Inbox"), 0)
    test_db.commit()

    test_db.refresh(first)
    test_db.refresh(second)
    assert inserted.position == 0
    assert (first.position, second.position) == (1, 2)
    assert group_names(test_db, project) == ["Inbox", "Todo", "Done"]


def test_insert_in_middle(test_db: Session, project: models.Project):
    for name in ("A", "B", "C"):
        make_task_group(test_db, project, name)

    TASK_GROUPS.insert_at(test_db, new_group(test_db, project, "X"), 1)
    test_db.commit()

    assert group_names(test_db, project) == ["A", "X", "B", "C"]
    assert_dense(TASK_GROUPS, test_db, project.id)


def test_insert_past_end_clamps_to_append(test_db: Session, project: models.Project):
    make_task_group(test_db, project, "A")

    inserted = TASK_GROUPS.insert_at(test_db, new_group(test_db, project, "B"), 42)
    test_db.commit()

    assert inserted.position == 1
    assert_dense(TASK_GROUPS, test_db, project.id)


def test_negative_positions_rejected(test_db: Session, project: models.Project):
    group = make_task_group(test_db, project, "A")

    with pytest.raises(ValidationFailed):
        TASK_GROUPS.insert_at(test_db, new_group(test_db, project, "B"), -1)
    with pytest.raises(ValidationFailed):
        TASK_GROUPS.move(test_db, group, -3)


def test_append_to_missing_scope_is_forbidden(test_db: Session, project: models.Project):
    orphan = models.Task(id=generate_id(test_db, models.Task), project_id=project.id, task_group_id="nogroup000", name="Orphan")
    with pytest.raises(Forbidden):
        TASKS.append(test_db, orphan)


@pytest.mark.parametrize(
    "start, target, expected",
    [
        (0, 3, ["B", "C", "D", "A"]),
        (3, 0, ["D", "A", "B", "C"]),
        (1, 2, ["A", "C", "B", "D"]),
        (2, 1, ["A", "C", "B", "D"]),
        (1, 99, ["A", "C", "D", "B"]),
        (2, 2, ["A", "B", "C", "D"]),
    ],
)
def test_move_within_scope(test_db: Session, project: models.Project, start, target, expected):
    groups = [make_task_group(test_db, project, name) for name in ("A", "B", "C", "D")]

    TASK_GROUPS.move(test_db, groups[start], target)
    test_db.commit()

    assert group_names(test_db, project) == expected
    assert_dense(TASK_GROUPS, test_db, project.id)


def test_delete_only_child_leaves_empty_scope(test_db: Session, task: models.Task):
    sub_task = make_sub_task(test_db, task, "Only one")

    SUB_TASKS.remove(test_db, sub_task)
    test_db.commit()

    assert SUB_TASKS.positions(test_db, task.id) == []
    assert test_db.query(models.SubTask).filter(models.SubTask.task_id == task.id).count() == 0


def test_move_task_to_another_group(test_db: Session, project: models.Project):
    source = make_task_group(test_db, project, "Source")
    target = make_task_group(test_db, project, "Target")
    moving = [make_task(test_db, source, name) for name in ("S0", "S1", "S2")]
    staying = [make_task(test_db, target, name) for name in ("T0", "T1")]

    TASKS.move_to_scope(test_db, moving[1], target.id, 1)
    test_db.commit()

    source_names = [t.name for t in test_db.query(models.Task).filter(models.Task.task_group_id == source.id).order_by(models.Task.position)]
    target_names = [t.name for t in test_db.query(models.Task).filter(models.Task.task_group_id == target.id).order_by(models.Task.position)]

    assert source_names == ["S0", "S2"]
    assert target_names == ["T0", "S1", "T1"]
    assert_dense(TASKS, test_db, source.id)
    assert_dense(TASKS, test_db, target.id)
    assert len(staying) == 2


def test_random_operations_keep_positions_dense(test_db: Session, project: models.Project):
    """Any sequence of append/insert/move/remove keeps every scope at 0..n-1."""
    rng = random.Random(20240611)
    group = make_task_group(test_db, project, "Random")
    expected = []

    for step in range(150):
        operation = rng.choice(["append", "insert", "move", "remove"]) if expected else "append"

        if operation == "append":
            task = make_task(test_db, group, f"t{step}")
            expected.append(task.id)
        elif operation == "insert":
            position = rng.randint(0, len(expected) + 2)
            task = models.Task(id=generate_id(test_db, models.Task), project_id=project.id, task_group_id=group.id, name=f"t{step}")
            TASKS.insert_at(test_db, task, position)
            expected.insert(min(position, len(expected)), task.id)
        elif operation == "move":
            task_id = rng.choice(expected)
            task = test_db.query(models.Task).filter(models.Task.id == task_id).one()
            position = rng.randint(0, len(expected) + 2)
            TASKS.move(test_db, task, position)
            expected.remove(task_id)
            expected.insert(min(position, len(expected)), task_id)
        else:
            task_id = rng.choice(expected)
            task = test_db.query(models.Task).filter(models.Task.id == task_id).one()
            TASKS.remove(test_db, task)
            expected.remove(task_id)

        test_db.commit()
        assert_dense(TASKS, test_db, group.id)

    actual = [
        row[0]
        for row in test_db.query(models.Task.id)
        .filter(models.Task.task_group_id == group.id)
        .order_by(models.Task.position)
    ]
    assert actual == expected
    logger.info(f"✓ {len(expected)} tasks dense and in expected order after 150 random operations")
