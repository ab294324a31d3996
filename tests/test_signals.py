from datetime import timedelta

import pytest

from aperture_core.types import BuildParams, MediaType, WatchedItem
from aperture_user.signals.decay import half_life_decay, linear_decay, recency_factor
from aperture_user.signals.selectors import select_profile_items
from aperture_user.signals.weights import (
    cap_weights,
    engagement_weight,
    franchise_boost,
    genre_boost,
    rating_factor,
)
from aperture_user.taste.schemas import FranchisePreference, GenreWeight

from conftest import NOW


def test_half_life_decay_halves_and_floors():
    assert half_life_decay(NOW, NOW, 180, 0.25) == pytest.approx(1.0)
    assert half_life_decay(NOW - timedelta(days=180), NOW, 180, 0.25) == pytest.approx(0.5)
    assert half_life_decay(NOW - timedelta(days=3650), NOW, 180, 0.25) == pytest.approx(0.25)


def test_linear_decay_reaches_floor_at_window():
    assert linear_decay(NOW - timedelta(days=365), NOW, 730, 0.25) == pytest.approx(0.625)
    assert linear_decay(NOW - timedelta(days=2000), NOW, 730, 0.25) == pytest.approx(0.25)


def test_recency_factor_modes():
    old = NOW - timedelta(days=365)
    assert recency_factor(None, NOW, BuildParams()) == 1.0
    assert recency_factor(old, NOW, BuildParams(decay_mode="linear")) == pytest.approx(0.625)
    # two half lives would be 0.246, below the floor
    assert recency_factor(old, NOW, BuildParams()) == pytest.approx(0.25)
    assert recency_factor(NOW - timedelta(days=90), NOW, BuildParams()) == pytest.approx(0.5 ** 0.5)


def test_engagement_weight_movies_and_series():
    p = BuildParams()
    movie = WatchedItem(item_id="a", title="A", play_count=10)
    assert engagement_weight(movie, MediaType.MOVIE, p) == pytest.approx(1.5)
    movie.is_favorite = True
    assert engagement_weight(movie, MediaType.MOVIE, p) == pytest.approx(2.25)

    show = WatchedItem(item_id="s", title="S", episode_count=100, completion_rate=0.95)
    assert engagement_weight(show, MediaType.SERIES, p) == pytest.approx(4.5)
    show.completion_rate = 0.6
    assert engagement_weight(show, MediaType.SERIES, p) == pytest.approx(3.6)


def test_rating_factor_scales():
    assert rating_factor(WatchedItem(item_id="a", title="A")) == 1.0
    assert rating_factor(WatchedItem(item_id="a", title="A", user_rating=10)) == pytest.approx(1.25)
    # 4 on a 5-point scale
    assert rating_factor(WatchedItem(item_id="a", title="A", user_rating=4)) == pytest.approx(1.1)


def test_franchise_boost_respects_min_items_and_user_overrides():
    item = WatchedItem(item_id="a", title="Star Trek: Nemesis")
    auto = FranchisePreference(user_id="u", franchise_name="Star Trek", preference_score=0.8, items_watched=3)
    assert franchise_boost(item, MediaType.MOVIE, [auto], min_items=2) == pytest.approx(1.4)
    assert franchise_boost(item, MediaType.MOVIE, [auto], min_items=5) == 1.0

    user_set = FranchisePreference(
        user_id="u", franchise_name="star trek", preference_score=-1.0, items_watched=0, is_user_set=True
    )
    assert franchise_boost(item, MediaType.MOVIE, [user_set], min_items=5) == pytest.approx(0.5)

    series_only = FranchisePreference(
        user_id="u", franchise_name="Star Trek", media_type=MediaType.SERIES, preference_score=1.0, items_watched=9
    )
    assert franchise_boost(item, MediaType.MOVIE, [series_only]) == 1.0


def test_genre_boost_averages_matching_weights():
    weights = [
        GenreWeight(user_id="u", genre="Drama", weight=2.0),
        GenreWeight(user_id="u", genre="Comedy", weight=0.0),
    ]
    assert genre_boost(WatchedItem(item_id="a", title="A", genres=["Drama"]), weights) == pytest.approx(1.5)
    assert genre_boost(WatchedItem(item_id="a", title="A", genres=["drama", "Comedy"]), weights) == pytest.approx(1.0)
    assert genre_boost(WatchedItem(item_id="a", title="A", genres=["Horror"]), weights) == 1.0


def test_cap_weights_limits_outliers():
    w = {"a": 10.0, "b": 1.0, "c": 1.0}
    assert cap_weights(w, 3.0) == w
    assert cap_weights(w, 2.0)["a"] == pytest.approx(8.0)


def test_select_profile_items_prefers_favourites_then_plays_then_recency():
    items = [
        WatchedItem(item_id="old", title="Old", play_count=1, last_played_at=NOW - timedelta(days=300)),
        WatchedItem(item_id="new", title="New", play_count=1, last_played_at=NOW),
        WatchedItem(item_id="many", title="Many", play_count=5, last_played_at=NOW - timedelta(days=900)),
        WatchedItem(item_id="fav", title="Fav", is_favorite=True, last_played_at=None),
    ]
    assert [i.item_id for i in select_profile_items(items, 3)] == ["fav", "many", "new"]
    assert select_profile_items(items, 0) == []
