"""
Base repository class for data access layer.

Each entity repository exposes only the operations the settlement pipeline
and API need; this base carries the shared query plumbing.

Example:
    class MatchupRepository(BaseRepository[Matchup]):
        def find_by_round(self, tournament_id: str, round_num: int) -> List[Matchup]:
            return self.where(
                Matchup.tournament_id == tournament_id,
                Matchup.round_num == round_num,
            )
"""
import uuid
from abc import ABC
from typing import TypeVar, Generic, Type, Optional, List, Any
from sqlalchemy import func
from sqlalchemy.orm import Query, Session

T = TypeVar("T")


class BaseRepository(Generic[T], ABC):
    """
    Base repository class providing common data access methods.

    Attributes:
        model_type: The SQLAlchemy model class this repository manages
        db: The database session
    """

    def __init__(self, model_type: Type[T], db: Session):
        self.model_type = model_type
        self.db = db

    # ========================================================================
    # CRUD Operations
    # ========================================================================

    def find_by_id(self, id: str) -> Optional[T]:
        """Find a single record by ID."""
        return self.db.query(self.model_type).filter(self.model_type.id == id).first()

    def create(self, **kwargs) -> T:
        """
        Create a new record with a generated UUID primary key.

        Returns:
            The created record (added to the session, not committed)
        """
        kwargs.setdefault("id", str(uuid.uuid4()))
        instance = self.model_type(**kwargs)
        self.db.add(instance)
        return instance

    def delete(self, id: str) -> bool:
        """
        Delete a record by ID.

        Returns:
            True if deleted, False if not found
        """
        instance = self.find_by_id(id)
        if instance:
            self.db.delete(instance)
            return True
        return False

    # ========================================================================
    # Query Builders
    # ========================================================================

    def query(self) -> Query:
        """Get a new query object for this model."""
        return self.db.query(self.model_type)

    def where(self, *criterion) -> List[T]:
        """Filter records using SQLAlchemy expressions."""
        return self.db.query(self.model_type).filter(*criterion).all()

    def where_first(self, *criterion) -> Optional[T]:
        """Filter records using SQLAlchemy expressions and return first match."""
        return self.db.query(self.model_type).filter(*criterion).first()

    def group_by_and_count(self, group_field: str, *additional_criterion) -> List[tuple[Any, int]]:
        """
        Group by a field and count records in each group.

        Returns:
            List of tuples: [(group_value, count), ...]
        """
        column = getattr(self.model_type, group_field)
        query = self.db.query(column, func.count(self.model_type.id))

        if additional_criterion:
            query = query.filter(*additional_criterion)

        return query.group_by(column).all()

    # ========================================================================
    # Save Operations
    # ========================================================================

    def flush(self) -> None:
        """Flush pending changes without committing."""
        self.db.flush()
