from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from qdrant_client.models import (
    FieldCondition,
    Filter as QFilter,
    IsEmptyCondition,
    IsNullCondition,
    MatchAny,
    MatchValue,
    PayloadField,
    Range,
)


# content rating label -> minimum viewer age; None ceiling means "no limit"
PARENTAL_RATING_VALUES = {
    "G": 0,
    "TV-Y": 0,
    "TV-G": 0,
    "TV-Y7": 7,
    "PG": 10,
    "TV-PG": 10,
    "PG-13": 13,
    "TV-14": 14,
    "R": 17,
    "NC-17": 18,
    "TV-MA": 18,
}


def parental_value_for(content_rating: str | None) -> Optional[int]:
    if not content_rating:
        return None
    return PARENTAL_RATING_VALUES.get(content_rating.strip().upper())


Conditions = tuple[list, list]  # (must, must_not)


class RetrievalFilter(ABC):
    """A predicate over index payloads; combine with `&`."""

    @abstractmethod
    def conditions(self) -> Conditions: ...

    def __and__(self, other: "RetrievalFilter") -> "AllOf":
        left = self.parts if isinstance(self, AllOf) else (self,)
        right = other.parts if isinstance(other, AllOf) else (other,)
        return AllOf(parts=tuple(left) + tuple(right))


@dataclass(frozen=True)
class AllOf(RetrievalFilter):
    parts: tuple[RetrievalFilter, ...] = ()

    def conditions(self) -> Conditions:
        must: list = []
        must_not: list = []
        for p in self.parts:
            m, mn = p.conditions()
            must.extend(m)
            must_not.extend(mn)
        return must, must_not


@dataclass(frozen=True)
class LibraryScope(RetrievalFilter):
    """Only items from the user's libraries; empty/None means whole catalog."""

    library_ids: Optional[tuple[str, ...]] = None

    def conditions(self) -> Conditions:
        if not self.library_ids:
            return [], []
        return [FieldCondition(key="library_id", match=MatchAny(any=list(self.library_ids)))], []


@dataclass(frozen=True)
class ParentalCeiling(RetrievalFilter):
    """Keep items rated at or under the ceiling, or with no rating at all."""

    max_value: Optional[int] = None
    key: str = "parental_rating_value"

    def conditions(self) -> Conditions:
        if self.max_value is None:
            return [], []
        allowed = QFilter(
            should=[
                FieldCondition(key=self.key, range=Range(lte=int(self.max_value))),
                IsEmptyCondition(is_empty=PayloadField(key=self.key)),
                IsNullCondition(is_null=PayloadField(key=self.key)),
            ]
        )
        return [allowed], []


@dataclass(frozen=True)
class ExcludeItems(RetrievalFilter):
    item_ids: tuple[str, ...] = ()

    def conditions(self) -> Conditions:
        if not self.item_ids:
            return [], []
        return [], [FieldCondition(key="media_id", match=MatchAny(any=list(self.item_ids)))]


@dataclass(frozen=True)
class EmbeddingModelIs(RetrievalFilter):
    """Never match vectors produced by a different embedding model."""

    model_id: str

    def conditions(self) -> Conditions:
        return [FieldCondition(key="embedding_model", match=MatchValue(value=self.model_id))], []


def build_qfilter(spec: RetrievalFilter) -> Optional[QFilter]:
    must, must_not = spec.conditions()
    if not must and not must_not:
        return None
    return QFilter(must=must or None, must_not=must_not or None)
