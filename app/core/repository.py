"""Base repository pattern implementation.

This module provides a generic repository pattern used as the base for
domain-specific repositories. Repositories only stage changes; committing is
left to the service that owns the transaction.
"""

from typing import Generic, TypeVar, cast

from sqlalchemy.orm import Session

ModelType = TypeVar("ModelType")


class BaseRepository(Generic[ModelType]):
    """Generic repository with common lookup operations.

    Example:
        ```python
        class ConversationRepository(BaseRepository[Conversation]):
            def __init__(self, db: Session):
                super().__init__(db, Conversation)

            def find_by_direct_key(self, key: str) -> Conversation | None:
                return self.db.query(self.model).filter(self.model.direct_key == key).first()
        ```
    """

    def __init__(self, db: Session, model: type[ModelType]):
        """Initialize repository with database session and model class.

        Args:
            db: SQLAlchemy session.
            model: The model class this repository operates on.
        """
        self.db = db
        self.model = model

    def get_by_id(self, entity_id: str) -> ModelType | None:
        """Get a single entity by ID.

        Args:
            entity_id: The ULID of the entity.

        Returns:
            The entity if found, None otherwise.
        """
        result = self.db.query(self.model).filter(self.model.id == entity_id).first()  # type: ignore[attr-defined]
        return cast(ModelType | None, result)

    def add(self, instance: ModelType) -> ModelType:
        """Stage a new entity in the current transaction.

        Args:
            instance: The entity to add.

        Returns:
            The same instance.
        """
        self.db.add(instance)
        return instance

