import numpy as np
import pytest

from aperture_core.errors import InsufficientDataError
from aperture_core.types import BuildParams, EmbeddingModelSpec, MediaType, WatchedItem
from aperture_user.taste.schemas import CustomInterest, GenreWeight
from aperture_user.taste.taste_builder import TasteInputs, build_taste_vector

from conftest import MODEL, NOW, vec

OTHER = EmbeddingModelSpec(model_id="other-embed", dimension=8)


def _lookup(table):
    def get(ids):
        return {i: table[i] for i in ids if i in table}

    return get


def _item(item_id, **kw):
    return WatchedItem(item_id=item_id, title=item_id.upper(), **kw)


def test_equal_items_give_unit_average():
    inputs = TasteInputs(media_type=MediaType.MOVIE, watched=[_item("a"), _item("b")])
    v, debug = build_taste_vector(
        inputs,
        get_item_embeddings=_lookup({"a": vec(1.0), "b": vec(0.0, 1.0)}),
        model=MODEL,
        params=BuildParams(),
        now=NOW,
    )
    assert v.matches(MODEL)
    assert float(np.linalg.norm(v.values)) == pytest.approx(1.0, abs=1e-6)
    assert v.values[0] == pytest.approx(v.values[1], abs=1e-6)
    assert debug["item_vectors_n"] == 2
    assert debug["interest_vectors_n"] == 0


def test_favourite_pulls_the_vector():
    inputs = TasteInputs(media_type=MediaType.MOVIE, watched=[_item("a", is_favorite=True), _item("b")])
    v, _ = build_taste_vector(
        inputs,
        get_item_embeddings=_lookup({"a": vec(1.0), "b": vec(0.0, 1.0)}),
        model=MODEL,
        params=BuildParams(),
        now=NOW,
    )
    assert v.values[0] > v.values[1]


def test_avoided_genre_lowers_item_weight():
    inputs = TasteInputs(
        media_type=MediaType.MOVIE,
        watched=[_item("a", genres=["Horror"]), _item("b", genres=["Drama"])],
        genre_weights=[GenreWeight(user_id="u", genre="Horror", weight=0.0)],
    )
    v, _ = build_taste_vector(
        inputs,
        get_item_embeddings=_lookup({"a": vec(1.0), "b": vec(0.0, 1.0)}),
        model=MODEL,
        params=BuildParams(),
        now=NOW,
    )
    assert v.values[1] > v.values[0]


def test_vectors_from_another_model_are_skipped():
    inputs = TasteInputs(media_type=MediaType.MOVIE, watched=[_item("a"), _item("b")])
    v, debug = build_taste_vector(
        inputs,
        get_item_embeddings=_lookup({"a": vec(1.0), "b": vec(0.0, 1.0, model=OTHER)}),
        model=MODEL,
        params=BuildParams(),
        now=NOW,
    )
    assert debug["skipped_model_mismatch"] == 1
    assert v.values[0] == pytest.approx(1.0, abs=1e-6)


def test_interests_alone_can_build_a_profile():
    interest = CustomInterest(
        id="i1",
        user_id="u",
        media_type=MediaType.MOVIE,
        interest_text="slow cerebral space drama",
        embedding=vec(0.0, 0.0, 3.0),
    )
    inputs = TasteInputs(media_type=MediaType.MOVIE, watched=[], interests=[interest])
    v, debug = build_taste_vector(
        inputs, get_item_embeddings=_lookup({}), model=MODEL, params=BuildParams(), now=NOW
    )
    assert debug["interest_vectors_n"] == 1
    assert v.values[2] == pytest.approx(1.0, abs=1e-6)


def test_no_usable_vectors_raises():
    inputs = TasteInputs(media_type=MediaType.MOVIE, watched=[_item("a"), _item("b")])
    with pytest.raises(InsufficientDataError) as exc:
        build_taste_vector(
            inputs,
            get_item_embeddings=_lookup({"b": vec(1.0, model=OTHER)}),
            model=MODEL,
            params=BuildParams(),
            now=NOW,
        )
    assert exc.value.code == "insufficient_data"


def test_recent_watch_limit_bounds_profile_items():
    watched = [_item(f"m{i}", play_count=10 - i) for i in range(5)]
    seen = []

    def get(ids):
        seen.extend(ids)
        return {i: vec(1.0) for i in ids}

    _, debug = build_taste_vector(
        TasteInputs(media_type=MediaType.MOVIE, watched=watched),
        get_item_embeddings=get,
        model=MODEL,
        params=BuildParams(recent_watch_limit=2),
        now=NOW,
    )
    assert sorted(seen) == ["m0", "m1"]
    assert debug["profile_items_n"] == 2
