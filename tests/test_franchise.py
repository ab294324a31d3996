from datetime import timedelta

import pytest

from aperture_core.types import MediaType, WatchedItem
from aperture_user.signals.franchise import (
    collect_franchise_stats,
    collect_genre_stats,
    decay_toward_neutral,
    detect_franchise_from_title,
    franchise_of,
    franchise_preference_score,
    genre_weight,
    normalize_rating,
)

from conftest import NOW, watched


@pytest.mark.parametrize(
    "title,expected",
    [
        ("Star Trek Beyond", "Star Trek"),
        ("star trek: discovery", "Star Trek"),
        ("Aliens", "Alien"),
        ("Alien: Covenant", "Alien"),
        ("Loki", "Marvel Cinematic Universe"),
        ("Law & Order: Special Victims Unit", "Law & Order"),
        ("Arrival", None),
        ("Moonstruck", None),
    ],
)
def test_detect_franchise_from_title(title, expected):
    assert detect_franchise_from_title(title) == expected


def test_collection_name_wins_over_title():
    item = WatchedItem(item_id="x", title="Star Wars: A New Hope", collection_name="Skywalker Saga")
    assert franchise_of(item) == "Skywalker Saga"
    assert franchise_of(WatchedItem(item_id="y", title="Star Wars: A New Hope")) == "Star Wars"


def test_normalize_rating_handles_both_scales():
    assert normalize_rating(8) == pytest.approx(0.8)
    assert normalize_rating(4) == pytest.approx(0.8)


def test_collect_franchise_stats_groups_and_scores():
    items = [
        watched("m1", "Star Trek: First Contact", collection_name="Star Trek Collection", user_rating=9),
        watched("m2", "Star Trek: Insurrection", collection_name="Star Trek Collection", user_rating=9,
                last_played_at=NOW - timedelta(days=2)),
        watched("m4", "Arrival"),
    ]
    stats = collect_franchise_stats(items, MediaType.MOVIE, {"Star Trek Collection": 4})
    assert [s.franchise_name for s in stats] == ["Star Trek Collection"]
    st = stats[0]
    assert st.items_watched == 2
    assert st.total_in_library == 4
    assert st.last_engaged_at == NOW - timedelta(days=2)
    assert not st.high_engagement
    # 0.2 completion + 0.15 engagement + 0.24 rating
    assert franchise_preference_score(st) == pytest.approx(0.59)


def test_high_engagement_movie_franchise():
    items = [watched("m1", "Alien", play_count=4, collection_name="Alien Collection")]
    st = collect_franchise_stats(items, MediaType.MOVIE)[0]
    assert st.high_engagement
    assert st.total_in_library == 1
    assert franchise_preference_score(st) == pytest.approx(0.7)


def test_low_rating_pushes_score_negative():
    one = collect_franchise_stats([watched("m1", "Saw II", user_rating=1)], MediaType.MOVIE, {"Saw": 10})[0]
    # 0.04 completion - 0.18 rating (1/5 -> 0.2)
    assert franchise_preference_score(one) == pytest.approx(-0.14)

    items = [watched("m1", "Saw II", user_rating=1), watched("m2", "Saw III", user_rating=1)]
    two = collect_franchise_stats(items, MediaType.MOVIE, {"Saw": 10})[0]
    # 0.08 completion + 0.15 engagement - 0.18 rating
    assert franchise_preference_score(two) == pytest.approx(0.05)


def test_decay_toward_neutral():
    assert decay_toward_neutral(0.8, None, NOW) == 0.8
    assert decay_toward_neutral(0.8, NOW - timedelta(days=365), NOW) == pytest.approx(0.4)
    assert decay_toward_neutral(-0.6, NOW - timedelta(days=730), NOW) == pytest.approx(-0.15)


def test_genre_weight_relative_engagement():
    items = [
        watched("a", "A", genres=["Drama"]),
        watched("b", "B", genres=["Comedy"], is_favorite=True),
    ]
    stats = {s.genre: s for s in collect_genre_stats(items, MediaType.MOVIE)}
    assert genre_weight(stats["Drama"], list(stats.values())) == pytest.approx(1.0)
    assert genre_weight(stats["Comedy"], list(stats.values())) == pytest.approx(1.2)


def test_genre_weight_is_clamped():
    items = [watched(f"d{i}", f"D{i}", genres=["Drama"], user_rating=10, is_favorite=True) for i in range(8)]
    items.append(watched("h", "H", genres=["Horror"], user_rating=1))
    stats = collect_genre_stats(items, MediaType.MOVIE)
    weights = {s.genre: genre_weight(s, stats) for s in stats}
    assert 0.0 <= weights["Horror"] < 1.0
    assert weights["Drama"] <= 2.0
