"""Contract between the sync orchestrator and whatever fetches entities remotely."""

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from jirasync.models.entity import EntityRecord


class Pagination(BaseModel):
    """Offset-based page request."""

    start_at: int = Field(default=0, ge=0)
    max_results: int = Field(default=100, ge=1)

    def next(self, received: int) -> "Pagination":
        return Pagination(start_at=self.start_at + received, max_results=self.max_results)


class FetchPage(BaseModel):
    """One page of search results."""

    entities: list[EntityRecord] = Field(default_factory=list)
    start_at: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0, description="Total matches reported by the remote")
    is_last: bool = Field(default=True, description="No further pages follow")
    received: int | None = Field(
        default=None, ge=0, description="Items the remote returned before conversion"
    )

    @property
    def advance_by(self) -> int:
        """How far the next page request must move the offset."""
        return len(self.entities) if self.received is None else self.received


@runtime_checkable
class EntityFetcher(Protocol):
    """Runs a search predicate against the remote.

    Implementations raise TransportError when the remote cannot be reached
    and RemoteRejection when it answers with an error status.
    """

    async def fetch(self, predicate: str, pagination: Pagination) -> FetchPage: ...
