"""
Random base62 identifiers for all entities.

Each model declares its id length as ``__id_length__``. Ids are drawn from a
CSPRNG and checked against the table before use.
"""

import logging
import secrets
import string

from sqlalchemy.orm import Session

from errors import IdGenerationError

logger = logging.getLogger(__name__)

BASE62_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase
ID_GENERATION_ATTEMPTS = 20


def random_base62(length: int) -> str:
    return "".join(secrets.choice(BASE62_ALPHABET) for _ in range(length))


def generate_id(db: Session, model) -> str:
    """
    Generate an unused id for ``model``.

    Args:
        db: Database session used for the collision check
        model: ORM class with ``__id_length__`` and an ``id`` column

    Returns:
        A base62 string of the model's id length

    Raises:
        IdGenerationError: if every attempt collided
    """
    length = model.__id_length__
    for attempt in range(ID_GENERATION_ATTEMPTS):
        candidate = random_base62(length)
        exists = db.query(model.id).filter(model.id == candidate).first()
        if exists is None:
            return candidate
        logger.debug(f"Id collision for {model.__tablename__} on attempt {attempt + 1}")

    logger.error(f"Could not generate a free id for {model.__tablename__}")
    raise IdGenerationError(f"Id generation exhausted for {model.__tablename__}")
