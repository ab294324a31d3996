from datetime import datetime, timezone
from typing import Sequence

from aperture_core.types import WatchedItem

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def select_profile_items(items: Sequence[WatchedItem], limit: int) -> list[WatchedItem]:
    """
    Pick the watched items that feed the taste vector: favourites first,
    then most played, then most recent (tie-break by item_id).
    """
    if limit <= 0:
        return []
    ranked = sorted(
        items,
        key=lambda it: (
            not it.is_favorite,
            -(it.play_count or 0),
            -(it.last_played_at or _EPOCH).timestamp(),
            it.item_id,
        ),
    )
    return ranked[:limit]
