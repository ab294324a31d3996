from __future__ import annotations

import math
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Sequence

from aperture_core.types import MediaType, WatchedItem


# (title regex, franchise name); first match wins
_FRANCHISE_TITLE_PATTERNS: list[tuple[str, str]] = [
    (r"^Star Trek([:\s]|$)", "Star Trek"),
    (r"^Star Wars[:\s]", "Star Wars"),
    (r"^(The Mandalorian|The Book of Boba Fett|Obi-Wan Kenobi|Ahsoka|Andor|The Acolyte|Skeleton Crew)$", "Star Wars"),
    (r"^Marvel['’]s", "Marvel"),
    (r"^(The )?Avengers", "Marvel Cinematic Universe"),
    (r"^(Iron Man|Captain America|Ant-Man|Black Panther|Doctor Strange|Guardians of the Galaxy|She-Hulk)", "Marvel Cinematic Universe"),
    (r"^Thor([:\s]|$)", "Marvel Cinematic Universe"),
    (r"^Spider-Man[:\s]", "Marvel Cinematic Universe"),
    (r"^(WandaVision|Loki|Hawkeye|Moon Knight|Ms\. Marvel|Secret Invasion|Echo|Agatha All Along)$", "Marvel Cinematic Universe"),
    (r"^DC['’]s", "DC"),
    (r"^(Batman|Superman)[:\s]", "DC"),
    (r"^(The Batman|The Flash|Peacemaker)$", "DC"),
    (r"^(Justice League|Wonder Woman|Aquaman|Shazam)", "DC"),
    (r"^Stargate([:\s]|$)", "Stargate"),
    (r"^Law (&|and) Order", "Law & Order"),
    (r"^NCIS([:\s]|$)", "NCIS"),
    (r"^CSI([:\s]|$)", "CSI"),
    (r"^Chicago (Fire|P\.?D\.?|Med|Justice)", "One Chicago"),
    (r"^(Fear |Tales of )?The Walking Dead", "The Walking Dead"),
    (r"^(Game of Thrones|House of the Dragon)$", "Game of Thrones"),
    (r"^(The Lord of the Rings|The Hobbit)", "Lord of the Rings"),
    (r"^The Rings of Power$", "Lord of the Rings"),
    (r"^(Harry Potter|Fantastic Beasts)", "Harry Potter"),
    (r"^(Fast & Furious|The Fast and the Furious|Furious \d)", "Fast & Furious"),
    (r"^Mission: Impossible", "Mission: Impossible"),
    (r"^(James Bond|007[:\s])", "James Bond"),
    (r"^Jurassic (Park|World)", "Jurassic Park"),
    (r"^Transformers", "Transformers"),
    (r"^Pirates of the Caribbean", "Pirates of the Caribbean"),
    (r"^John Wick", "John Wick"),
    (r"^(The Conjuring|Annabelle|The Nun)", "The Conjuring"),
    (r"^(Alien[:\s]|Aliens$|Prometheus$)", "Alien"),
    (r"^Predator", "Predator"),
    (r"^(The )?Terminator", "Terminator"),
    (r"Planet of the Apes", "Planet of the Apes"),
    (r"^(X-Men|Deadpool)", "X-Men"),
    (r"^(Logan|The Wolverine)$", "X-Men"),
    (r"^Toy Story", "Toy Story"),
    (r"^Finding (Nemo|Dory)$", "Finding Nemo"),
    (r"^The Incredibles", "The Incredibles"),
    (r"^(Shrek|Puss in Boots)", "Shrek"),
    (r"^How to Train Your Dragon", "How to Train Your Dragon"),
    (r"^(Despicable Me|Minions)", "Despicable Me"),
    (r"^The Matrix", "The Matrix"),
    (r"^(Rocky|Creed)", "Rocky"),
    (r"^Indiana Jones", "Indiana Jones"),
    (r"^Raiders of the Lost Ark$", "Indiana Jones"),
    (r"^Back to the Future", "Back to the Future"),
    (r"^Ghostbusters", "Ghostbusters"),
    (r"^Men in Black", "Men in Black"),
    (r"^Die Hard", "Die Hard"),
    (r"^The Hunger Games", "The Hunger Games"),
    (r"^Scream", "Scream"),
    (r"^Halloween", "Halloween"),
    (r"^Saw( |$)", "Saw"),
    (r"^Final Destination", "Final Destination"),
    (r"^Godzilla", "MonsterVerse"),
    (r"^Ice Age", "Ice Age"),
    (r"^Kung Fu Panda", "Kung Fu Panda"),
]

FRANCHISE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(p, re.IGNORECASE), name) for p, name in _FRANCHISE_TITLE_PATTERNS
]

# engagement needed to count as a "high engagement" franchise
HIGH_ENGAGEMENT = {MediaType.MOVIE: 3, MediaType.SERIES: 50}


def detect_franchise_from_title(title: str) -> str | None:
    for pattern, name in FRANCHISE_PATTERNS:
        if pattern.search(title):
            return name
    return None


def franchise_of(item: WatchedItem) -> str | None:
    """Collection name wins, title patterns are the fallback."""
    return item.collection_name or detect_franchise_from_title(item.title)


def normalize_rating(r: float) -> float:
    """Map a 5- or 10-point rating to [0, 1]."""
    return r / 10.0 if r > 5 else r / 5.0


def _engagement(item: WatchedItem, media_type: MediaType) -> float:
    if media_type == MediaType.SERIES:
        return float(item.episode_count or 0)
    return float(item.play_count or 1)


@dataclass
class FranchiseStats:
    franchise_name: str
    items_watched: int = 0
    total_engagement: float = 0.0
    total_in_library: int = 0
    ratings: list[float] = field(default_factory=list)
    last_engaged_at: datetime | None = None
    high_engagement: bool = False

    @property
    def avg_rating(self) -> float | None:
        return sum(self.ratings) / len(self.ratings) if self.ratings else None


def collect_franchise_stats(
    items: Sequence[WatchedItem],
    media_type: MediaType,
    library_totals: Mapping[str, int] | None = None,
) -> list[FranchiseStats]:
    """Group watched items by franchise; sorted by engagement desc."""
    by_name: dict[str, FranchiseStats] = {}
    for it in items:
        name = franchise_of(it)
        if not name:
            continue
        st = by_name.setdefault(name, FranchiseStats(franchise_name=name))
        st.items_watched += 1
        st.total_engagement += _engagement(it, media_type)
        if it.user_rating:
            st.ratings.append(float(it.user_rating))
        if it.last_played_at and (st.last_engaged_at is None or it.last_played_at > st.last_engaged_at):
            st.last_engaged_at = it.last_played_at

    totals = library_totals or {}
    threshold = HIGH_ENGAGEMENT[media_type]
    for st in by_name.values():
        st.total_in_library = max(totals.get(st.franchise_name, 0), st.items_watched)
        st.high_engagement = st.total_engagement >= threshold

    return sorted(by_name.values(), key=lambda s: (-s.total_engagement, s.franchise_name))


def franchise_preference_score(st: FranchiseStats) -> float:
    score = (st.items_watched / max(st.total_in_library, 1)) * 0.4
    if st.high_engagement:
        score += 0.3
    elif st.total_engagement >= 2:
        score += 0.15
    avg = st.avg_rating
    if avg is not None:
        score += (normalize_rating(avg) - 0.5) * 0.6
    return max(-1.0, min(1.0, score))


def decay_toward_neutral(
    score: float,
    last_engaged_at: datetime | None,
    now: datetime,
    half_life_days: float = 365.0,
) -> float:
    """Auto scores fade toward 0 as the last engagement ages."""
    if last_engaged_at is None or half_life_days <= 0:
        return score
    days = max(0.0, (now - last_engaged_at).total_seconds() / 86400.0)
    return score * math.pow(0.5, days / half_life_days)


# ---- genres ----
@dataclass
class GenreStats:
    genre: str
    items_watched: int = 0
    total_engagement: float = 0.0
    ratings: list[float] = field(default_factory=list)
    has_favorites: bool = False

    @property
    def avg_rating(self) -> float | None:
        return sum(self.ratings) / len(self.ratings) if self.ratings else None


def collect_genre_stats(items: Sequence[WatchedItem], media_type: MediaType) -> list[GenreStats]:
    by_genre: dict[str, GenreStats] = defaultdict(lambda: GenreStats(genre=""))
    for it in items:
        for g in it.genres:
            st = by_genre[g]
            st.genre = g
            st.items_watched += 1
            st.total_engagement += _engagement(it, media_type) or 1.0
            if it.user_rating:
                st.ratings.append(float(it.user_rating))
            st.has_favorites = st.has_favorites or it.is_favorite
    return sorted(by_genre.values(), key=lambda s: (-s.total_engagement, s.genre))


def genre_weight(st: GenreStats, all_stats: Sequence[GenreStats]) -> float:
    """
    Engagement relative to the user's average genre engagement, nudged by
    rating and favourites. Result is in [0, 2] with 1.0 neutral.
    """
    avg_eng = sum(s.total_engagement for s in all_stats) / max(len(all_stats), 1)
    rel = st.total_engagement / avg_eng if avg_eng > 0 else 1.0
    w = 0.8 + (min(2.0, max(0.5, rel)) - 0.5) * 0.4
    avg = st.avg_rating
    if avg is not None:
        w += (normalize_rating(avg) - 0.5) * 0.6
    if st.has_favorites:
        w += 0.2
    return max(0.0, min(2.0, w))
