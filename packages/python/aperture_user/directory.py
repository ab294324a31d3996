from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol, Sequence

from aperture_core.types import ItemId, MediaType, WatchedItem

DislikeBehavior = Literal["exclude", "include"]


@dataclass
class UserRef:
    id: str
    username: str = ""
    max_parental_rating: int | None = None
    library_ids: list[str] | None = None  # None -> whole catalog
    enabled_media: set[MediaType] = field(default_factory=lambda: {MediaType.MOVIE, MediaType.SERIES})
    include_watched: bool | None = None  # None -> media type default
    dislike_behavior: DislikeBehavior = "exclude"


class WatchHistoryStore(Protocol):
    def watched_items(self, user_id: str, media_type: MediaType) -> list[WatchedItem]: ...

    def disliked_items(self, user_id: str, media_type: MediaType) -> list[ItemId]: ...


class UserDirectory(Protocol):
    def eligible_users(self, media_type: MediaType) -> Sequence[UserRef]: ...

    def get_user(self, user_id: str) -> UserRef | None: ...
