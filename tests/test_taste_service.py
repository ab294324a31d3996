import pytest

from aperture_core.errors import InsufficientDataError, ProviderError, StaleProfileError
from aperture_core.types import EmbeddingModelSpec, MediaType
from aperture_user.taste.schemas import ProfileSettingsUpdate, ProfileState
from aperture_user.taste.taste_profile_service import TasteProfileService

from conftest import MODEL, NOW, FakeEmbeddingProvider, vec

pytestmark = pytest.mark.anyio

OTHER = EmbeddingModelSpec(model_id="legacy-embed", dimension=8)


@pytest.fixture()
def service(taste_repo, history, store):
    return TasteProfileService(
        taste_repo,
        history,
        store,
        model=MODEL,
        provider=FakeEmbeddingProvider(),
        provider_timeout_s=2.0,
        library_totals=lambda media_type: {"Star Trek Collection": 4},
    )


async def test_profile_is_built_once_then_reused(service):
    assert await service.state("u1", MediaType.MOVIE) == ProfileState.MISSING

    first = await service.ensure_profile("u1", MediaType.MOVIE)
    assert first.embedding is not None and first.embedding.matches(MODEL)
    assert first.auto_updated_at is not None
    assert await service.state("u1", MediaType.MOVIE) == ProfileState.FRESH

    again = await service.ensure_profile("u1", MediaType.MOVIE)
    assert again.auto_updated_at == first.auto_updated_at
    # sci-fi heavy history
    assert again.embedding.values[0] > again.embedding.values[1]


async def test_empty_history_is_insufficient_data(service):
    with pytest.raises(InsufficientDataError):
        await service.ensure_profile("u2", MediaType.MOVIE)
    assert await service.get_profile("u2", MediaType.MOVIE) is None


async def test_profile_from_another_model_is_stale_and_rebuilt(service, taste_repo):
    taste_repo.upsert_profile_embedding_sync("u1", MediaType.MOVIE, vec(0.0, 1.0, model=OTHER), {})
    assert await service.state("u1", MediaType.MOVIE) == ProfileState.STALE

    rebuilt = await service.ensure_profile("u1", MediaType.MOVIE)
    assert rebuilt.embedding.model_id == MODEL.model_id


async def test_locked_stale_profile_is_refused(service, taste_repo):
    taste_repo.upsert_profile_embedding_sync("u1", MediaType.MOVIE, vec(0.0, 1.0, model=OTHER), {})
    await service.update_settings("u1", MediaType.MOVIE, ProfileSettingsUpdate(is_locked=True))

    with pytest.raises(StaleProfileError):
        await service.ensure_profile("u1", MediaType.MOVIE)


async def test_locked_profile_only_rebuilds_when_forced(service, taste_repo):
    taste_repo.upsert_profile_embedding_sync("u1", MediaType.MOVIE, vec(0.0, 1.0, model=OTHER), {})
    locked = await service.update_settings("u1", MediaType.MOVIE, ProfileSettingsUpdate(is_locked=True))
    assert locked.is_locked and locked.user_modified_at is not None

    kept = await service.rebuild("u1", media_type=MediaType.MOVIE)
    assert kept.embedding.model_id == OTHER.model_id

    forced = await service.rebuild("u1", media_type=MediaType.MOVIE, force=True)
    assert forced.embedding.model_id == MODEL.model_id
    assert forced.is_locked


async def test_locked_expired_profile_is_still_used(service, taste_repo):
    taste_repo.upsert_profile_embedding_sync("u1", MediaType.MOVIE, vec(0.0, 1.0), {})
    await service.update_settings(
        "u1", MediaType.MOVIE, ProfileSettingsUpdate(is_locked=True, refresh_interval_days=1)
    )
    later = NOW.replace(year=NOW.year + 5)
    assert await service.state("u1", MediaType.MOVIE, now=later) == ProfileState.EXPIRED
    profile = await service.ensure_profile("u1", MediaType.MOVIE, now=later)
    assert profile.embedding.values[1] == pytest.approx(1.0)


async def test_refresh_preferences_keeps_user_overrides(service, taste_repo):
    counts = await service.refresh_preferences("u1", MediaType.MOVIE, now=NOW)
    assert counts["franchises"] == 1
    [auto] = taste_repo.get_franchise_prefs_sync("u1", MediaType.MOVIE)
    assert auto.franchise_name == "Star Trek Collection"
    assert not auto.is_user_set
    assert auto.items_watched == 1

    taste_repo.set_franchise_pref_sync("u1", "Star Trek Collection", MediaType.MOVIE, -0.5)
    counts = await service.refresh_preferences("u1", MediaType.MOVIE, now=NOW)
    assert counts["franchises"] == 0
    [pref] = taste_repo.get_franchise_prefs_sync("u1", MediaType.MOVIE)
    assert pref.is_user_set
    assert pref.preference_score == pytest.approx(-0.5)

    genres = {g.genre: g for g in taste_repo.get_genre_weights_sync("u1")}
    assert set(genres) == {"Science Fiction", "Drama"}
    assert genres["Science Fiction"].weight > genres["Drama"].weight


async def test_merge_mode_only_adds_new_rows(service, taste_repo):
    await service.refresh_preferences("u1", MediaType.MOVIE, now=NOW)
    counts = await service.refresh_preferences("u1", MediaType.MOVIE, mode="merge", now=NOW)
    assert counts == {"franchises": 0, "genres": 0}


async def test_small_franchises_are_ignored(taste_repo, history, store):
    service = TasteProfileService(taste_repo, history, store, model=MODEL)
    counts = await service.refresh_preferences("u1", MediaType.MOVIE, min_franchise_size=2, now=NOW)
    assert counts["franchises"] == 0


async def test_add_interest_embeds_text(service):
    interest = await service.add_interest("u2", MediaType.MOVIE, "  quiet space exploration ")
    assert interest.interest_text == "quiet space exploration"
    assert interest.embedding is not None and interest.embedding.matches(MODEL)

    profile = await service.ensure_profile("u2", MediaType.MOVIE)
    assert profile.embedding is not None

    assert await service.remove_interest("u2", interest.id)
    assert not await service.remove_interest("u2", interest.id)


async def test_missing_interest_embeddings_are_filled(taste_repo, history, store):
    plain = TasteProfileService(taste_repo, history, store, model=MODEL)
    stored = await plain.add_interest("u2", MediaType.MOVIE, "heist comedies")
    assert stored.embedding is None

    provider = FakeEmbeddingProvider()
    embedding = TasteProfileService(taste_repo, history, store, model=MODEL, provider=provider)
    assert await embedding.embed_missing_interests("u2", MediaType.MOVIE) == 1
    assert provider.calls == [["heist comedies"]]
    [interest] = taste_repo.get_interests_sync("u2", MediaType.MOVIE)
    assert interest.embedding is not None
    assert await embedding.embed_missing_interests("u2", MediaType.MOVIE) == 0


async def test_slow_provider_times_out_as_outage(taste_repo, history, store):
    slow = TasteProfileService(
        taste_repo,
        history,
        store,
        model=MODEL,
        provider=FakeEmbeddingProvider(delay=1.0),
        provider_timeout_s=0.1,
    )
    with pytest.raises(ProviderError) as exc:
        await slow.add_interest("u1", MediaType.MOVIE, "anything")
    assert exc.value.kind == "outage"
    assert exc.value.retryable
