"""Repository for note owners.

Owners are issued by the identity provider; this repository only keeps the
rows notes hang off. Removing an owner is the identity side's job, and the
schema cascades it to their notes and history.
"""
import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from notevault.exceptions import StorageUnavailableError, ValidationError
from notevault.models.db_models import DBUser, get_session_factory
from notevault.models.schema import User, ensure_timezone_aware, utc_now

logger = logging.getLogger(__name__)


class UserRepository:
    """Owner rows that notes hang off."""

    def __init__(self, engine: Any):
        self.engine = engine
        self.session_factory = get_session_factory(engine)
        self._write_sessions = get_session_factory(engine, write=True)

    @staticmethod
    def _to_model(db_user: DBUser) -> User:
        return User(
            id=db_user.id,
            username=db_user.username,
            created_at=ensure_timezone_aware(db_user.created_at),
        )

    def get(self, user_id: str) -> Optional[User]:
        """Get an owner by ID, or None."""
        with self.session_factory() as session:
            db_user = session.get(DBUser, user_id)
            return self._to_model(db_user) if db_user else None

    def ensure(self, user_id: str, username: Optional[str] = None) -> User:
        """Return the owner row, creating it on first sight.

        Raises:
            ValidationError: If the id or username is blank.
        """
        if not user_id or not user_id.strip():
            raise ValidationError("Owner ID cannot be empty", field="owner_id")
        username = username or user_id
        if not username.strip():
            raise ValidationError("Username cannot be empty", field="username")

        existing = self.get(user_id)
        if existing:
            return existing

        try:
            with self._write_sessions() as session:
                with session.begin():
                    db_user = session.get(DBUser, user_id)
                    if db_user is None:
                        db_user = DBUser(id=user_id, username=username, created_at=utc_now())
                        session.add(db_user)
                        logger.info(f"Registered owner {user_id}")
                    return self._to_model(db_user)
        except IntegrityError:
            # Another writer registered the same owner first
            return self.get(user_id)
        except SQLAlchemyError as e:
            raise StorageUnavailableError(
                f"Failed to register owner {user_id}",
                operation="ensure_user",
                original_error=e,
            ) from e
