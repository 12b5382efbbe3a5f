"""
Capability bitset for project memberships.

Each capability is one distinct bit. A membership stores the integer form of
its set; public projects store the set granted to non-members.

Degrade policy for stored values: bits outside the known capabilities are
dropped when reading, and a value that is not an integer at all reads as the
empty set. Deserialization therefore never raises and can only remove rights.
"""

import enum
import functools
import logging
import operator

from errors import Forbidden

logger = logging.getLogger(__name__)


class Permissions(enum.IntFlag):
    READ_PROJECT = 1 << 0
    CREATE_TASKS = 1 << 1
    EDIT_TASKS = 1 << 2
    DELETE_TASKS = 1 << 3
    CREATE_TASK_GROUPS = 1 << 4
    EDIT_TASK_GROUPS = 1 << 5
    DELETE_TASK_GROUPS = 1 << 6
    UPLOAD_FILES = 1 << 7
    REMOVE_FILES = 1 << 8
    INVITE_MEMBERS = 1 << 9
    REMOVE_MEMBERS = 1 << 10
    EDIT_MEMBERS = 1 << 11
    EDIT_PROJECT = 1 << 12
    DELETE_PROJECT = 1 << 13


NONE = Permissions(0)

ALL = functools.reduce(operator.or_, Permissions, NONE)

DEFAULT_MEMBER = (
    Permissions.READ_PROJECT
    | Permissions.CREATE_TASKS
    | Permissions.EDIT_TASKS
    | Permissions.UPLOAD_FILES
)

PUBLIC_READ = Permissions.READ_PROJECT

# The only bits a public (non-member) grant may use for reads
READ_ONLY_MASK = Permissions.READ_PROJECT


def contains(have: Permissions, required: Permissions) -> bool:
    """True when every bit in ``required`` is present in ``have``."""
    return (have & required) == required


def check(have: Permissions, required: Permissions) -> None:
    """
    Require ``required`` to be a subset of ``have``.

    Raises:
        Forbidden: if any required bit is missing
    """
    if not contains(have, required):
        missing = Permissions(int(required) & ~int(have))
        logger.info(f"Permission check failed, missing: {missing!r}")
        raise Forbidden()


def to_bits(permissions: Permissions) -> int:
    return int(permissions)


def from_bits(value) -> Permissions:
    """
    Read a stored permission value.

    Unknown bits are truncated; non-integer input (including bool) reads as
    the empty set.

    Example:
        >>> from_bits(0b1 | (1 << 40)) == Permissions.READ_PROJECT
        True
    """
    if isinstance(value, bool) or not isinstance(value, int):
        if value is not None:
            logger.warning(f"⚠️  Non-integer permission value {value!r}, treating as empty")
        return NONE
    if value < 0:
        logger.warning(f"⚠️  Negative permission value {value}, treating as empty")
        return NONE
    unknown = value & ~int(ALL)
    if unknown:
        logger.warning(f"⚠️  Dropping unknown permission bits {unknown:#x}")
    return Permissions(value & int(ALL))
