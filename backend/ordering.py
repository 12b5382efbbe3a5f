"""
Dense ordering of sibling collections.

Task groups under a project, tasks under a task group and sub-tasks under a
task each keep their positions as exactly 0..n-1 within their parent scope.
``OrderedCollection`` implements append, insert, move and remove once for all
three; every operation runs on the caller's session and inside the caller's
transaction, so the shift and the accompanying row change commit together.

Concurrent writers to the same scope are serialized by locking the parent
row (``SELECT ... FOR UPDATE``) before reading the sibling count. Operations
on an existing item re-read it under that lock, so a position loaded before
the lock was taken is never used for a shift. On SQLite the whole
transaction already holds the write lock from ``BEGIN IMMEDIATE``.
"""

import logging
from typing import List

from sqlalchemy import func
from sqlalchemy.orm import Session

from errors import Forbidden, ValidationFailed
from models import Project, TaskGroup, Task, SubTask

logger = logging.getLogger(__name__)


class OrderedCollection:
    """
    Ordered children of one parent type.

    Args:
        model: ORM class of the children (must have ``position``)
        scope_attr: Name of the child column referencing the parent
        parent_model: ORM class of the parent, locked during mutations
    """

    def __init__(self, model, scope_attr: str, parent_model):
        self.model = model
        self.scope_attr = scope_attr
        self.parent_model = parent_model

    def __repr__(self):
        return f"OrderedCollection({self.model.__tablename__} by {self.scope_attr})"

    @property
    def scope_column(self):
        return getattr(self.model, self.scope_attr)

    def scope_of(self, item) -> str:
        return getattr(item, self.scope_attr)

    def lock_scope(self, db: Session, scope_id: str) -> None:
        """
        Lock the parent row for the rest of the transaction.

        Raises:
            Forbidden: if the parent does not exist
        """
        row = (
            db.query(self.parent_model.id)
            .filter(self.parent_model.id == scope_id)
            .with_for_update()
            .first()
        )
        if row is None:
            logger.info(f"Scope {scope_id} for {self.model.__tablename__} not found")
            raise Forbidden()

    def lock_item(self, db: Session, item, *other_scopes: str) -> str:
        """
        Lock the scope of an existing item, then the item itself.

        The item is re-selected with ``populate_existing`` so its position
        and scope reflect what is committed now, not what the caller loaded
        earlier. If a concurrent move changed its scope in between, the new
        scope is locked as well. Any ``other_scopes`` are locked alongside,
        all in id order.

        Returns:
            The item's scope id as seen under the lock

        Raises:
            Forbidden: if the item or a scope no longer exists
        """
        # populate_existing would discard unflushed edits to the item
        db.flush()

        locked = set()
        scope_id = self.scope_of(item)
        while True:
            for pending in sorted({scope_id, *other_scopes} - locked):
                self.lock_scope(db, pending)
                locked.add(pending)

            current = (
                db.query(self.model)
                .filter(self.model.id == item.id)
                .populate_existing()
                .with_for_update()
                .first()
            )
            if current is None:
                logger.info(f"{self.model.__tablename__} {item.id} no longer exists")
                raise Forbidden()

            if self.scope_of(current) in locked:
                return self.scope_of(current)
            logger.debug(f"{self.model.__tablename__} {item.id} changed scope concurrently, relocking")
            scope_id = self.scope_of(current)

    def next_position(self, db: Session, scope_id: str) -> int:
        """Position one past the last sibling; equals the sibling count when dense."""
        current_max = (
            db.query(func.coalesce(func.max(self.model.position), -1))
            .filter(self.scope_column == scope_id)
            .scalar()
        )
        return current_max + 1

    def positions(self, db: Session, scope_id: str) -> List[int]:
        rows = (
            db.query(self.model.position)
            .filter(self.scope_column == scope_id)
            .order_by(self.model.position)
            .all()
        )
        return [row[0] for row in rows]

    def _shift(self, db: Session, scope_id: str, delta: int, *criteria) -> int:
        shifted = (
            db.query(self.model)
            .filter(self.scope_column == scope_id, *criteria)
            .update({self.model.position: self.model.position + delta}, synchronize_session="fetch")
        )
        logger.debug(f"Shifted {shifted} {self.model.__tablename__} in scope {scope_id} by {delta:+d}")
        return shifted

    def append(self, db: Session, item):
        """Add ``item`` at the end of its scope."""
        scope_id = self.scope_of(item)
        self.lock_scope(db, scope_id)
        item.position = self.next_position(db, scope_id)
        db.add(item)
        db.flush()
        logger.debug(f"Appended {self.model.__tablename__} {item.id} at {item.position} in {scope_id}")
        return item

    def insert_at(self, db: Session, item, position: int):
        """
        Add ``item`` at ``position``, pushing later siblings back by one.

        A position past the end is clamped to append.

        Raises:
            ValidationFailed: if ``position`` is negative
        """
        if position < 0:
            raise ValidationFailed("Position must not be negative")

        scope_id = self.scope_of(item)
        self.lock_scope(db, scope_id)
        count = self.next_position(db, scope_id)
        if position >= count:
            position = count
        else:
            self._shift(db, scope_id, 1, self.model.position >= position)

        item.position = position
        db.add(item)
        db.flush()
        logger.debug(f"Inserted {self.model.__tablename__} {item.id} at {position} in {scope_id}")
        return item

    def move(self, db: Session, item, new_position: int):
        """
        Move ``item`` to ``new_position`` within its current scope.

        The target is clamped to the last position. Siblings between the old
        and new position shift by one toward the gap left behind.

        Raises:
            ValidationFailed: if ``new_position`` is negative
        """
        if new_position < 0:
            raise ValidationFailed("Position must not be negative")

        scope_id = self.lock_item(db, item)
        last = self.next_position(db, scope_id) - 1
        new_position = min(new_position, last)
        old_position = item.position

        if new_position == old_position:
            logger.debug(f"{self.model.__tablename__} {item.id} already at {new_position}")
            return item

        if new_position < old_position:
            # Moving up: [new, old) shifts down the list
            self._shift(
                db, scope_id, 1,
                self.model.position >= new_position,
                self.model.position < old_position,
                self.model.id != item.id,
            )
        else:
            # Moving down: (old, new] shifts up the list
            self._shift(
                db, scope_id, -1,
                self.model.position > old_position,
                self.model.position <= new_position,
                self.model.id != item.id,
            )

        item.position = new_position
        db.flush()
        logger.debug(
            f"Moved {self.model.__tablename__} {item.id} from {old_position} to {new_position} in {scope_id}"
        )
        return item

    def move_to_scope(self, db: Session, item, new_scope_id: str, position: int):
        """
        Move ``item`` into another parent at ``position``.

        Both scopes are locked in id order; the old scope is compacted and the
        new one opened up as for ``insert_at``.
        """
        if position < 0:
            raise ValidationFailed("Position must not be negative")

        old_scope_id = self.lock_item(db, item, new_scope_id)
        if new_scope_id == old_scope_id:
            return self.move(db, item, position)

        old_position = item.position
        self._shift(
            db, old_scope_id, -1,
            self.model.position > old_position,
            self.model.id != item.id,
        )

        count = self.next_position(db, new_scope_id)
        if position >= count:
            position = count
        else:
            self._shift(db, new_scope_id, 1, self.model.position >= position)

        setattr(item, self.scope_attr, new_scope_id)
        item.position = position
        db.flush()
        logger.debug(
            f"Moved {self.model.__tablename__} {item.id} from {old_scope_id}[{old_position}] "
            f"to {new_scope_id}[{position}]"
        )
        return item

    def remove(self, db: Session, item) -> None:
        """Delete ``item`` and close the gap it leaves."""
        scope_id = self.lock_item(db, item)
        old_position = item.position

        db.delete(item)
        db.flush()

        self._shift(db, scope_id, -1, self.model.position > old_position)
        logger.debug(f"Removed {self.model.__tablename__} {item.id} from {scope_id}[{old_position}]")


TASK_GROUPS = OrderedCollection(TaskGroup, "project_id", Project)
TASKS = OrderedCollection(Task, "task_group_id", TaskGroup)
SUB_TASKS = OrderedCollection(SubTask, "task_id", Task)
