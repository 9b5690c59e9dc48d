"""Playlist contents and naming.

Pure functions, no I/O. ``build`` keeps Spotify's own ranking order: the
first occurrence of a track wins and nothing is re-sorted.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Mapping, Union

DEFAULT_LIMIT = 50

# On or before this day of the month, a run mostly covers the previous month
_PREVIOUS_MONTH_BEFORE_DAY = 15


class MalformedTracksError(ValueError):
    """The top-tracks payload does not have the expected shape."""


@dataclass(frozen=True)
class Track:
    id: str
    uri: str
    name: str = ""

    def as_item(self) -> dict[str, str]:
        """Render back into the shape of a top-tracks item."""
        return {"id": self.id, "uri": self.uri, "name": self.name}


def _items(raw: Union[Mapping[str, Any], Iterable[Any]]) -> list:
    if isinstance(raw, Mapping):
        items = raw.get("items")
        if not isinstance(items, list):
            raise MalformedTracksError("top tracks response has no 'items' list")
        return items
    if isinstance(raw, (str, bytes)):
        raise MalformedTracksError("top tracks must be a response object or a list of items")
    return list(raw)


def _track(item: Any, position: int) -> Track:
    if isinstance(item, Track):
        return item
    if not isinstance(item, Mapping):
        raise MalformedTracksError(f"item {position} is not an object")
    uri = item.get("uri")
    if not isinstance(uri, str) or not uri:
        raise MalformedTracksError(f"item {position} has no uri")
    track_id = item.get("id") or uri.rsplit(":", 1)[-1]
    return Track(id=str(track_id), uri=uri, name=str(item.get("name") or ""))


def build(
    raw_top_tracks: Union[Mapping[str, Any], Iterable[Any]], limit: int = DEFAULT_LIMIT
) -> list[Track]:
    """Ordered, de-duplicated, truncated track list ready for publishing.

    ``raw_top_tracks`` is either the ``/me/top/tracks`` response object or a
    sequence of its items. Duplicate ids keep the first position; the result
    has at most ``limit`` entries and is never padded.
    """
    if limit < 0:
        raise ValueError("limit must not be negative")

    seen: set[str] = set()
    tracks: list[Track] = []
    for position, item in enumerate(_items(raw_top_tracks)):
        if len(tracks) >= limit:
            break
        track = _track(item, position)
        if track.id in seen:
            continue
        seen.add(track.id)
        tracks.append(track)
    return tracks


def playlist_period(run_date: date) -> date:
    """First day of the month a run on ``run_date`` is named for.

    Runs early in a month (the scheduler fires on the 1st, possibly still the
    previous day in another timezone) belong to the month before.
    """
    if run_date.day >= _PREVIOUS_MONTH_BEFORE_DAY:
        return run_date.replace(day=1)
    if run_date.month == 1:
        return date(run_date.year - 1, 12, 1)
    return date(run_date.year, run_date.month - 1, 1)


def playlist_name(run_date: date) -> str:
    """e.g. ``2024-05 (May) BOTM``."""
    return playlist_period(run_date).strftime("%Y-%m (%b) BOTM")


def playlist_description(run_date: date, generated_on: date) -> str:
    period = playlist_period(run_date)
    return (
        f"{period.strftime('Bangers of the month for %B %Y')}, "
        f"(generated on {generated_on.isoformat()})"
    )
