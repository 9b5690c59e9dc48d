"""Tests for playlist contents and naming."""

from datetime import date

import pytest

from botm.services.playlist_builder import (
    MalformedTracksError,
    Track,
    build,
    playlist_description,
    playlist_name,
    playlist_period,
)
from conftest import top_tracks_payload


def test_build_drops_duplicates_keeping_first_position():
    raw = top_tracks_payload(["a", "b", "a", "c", "b", "d"])

    tracks = build(raw, limit=50)

    assert [t.id for t in tracks] == ["a", "b", "c", "d"]
    assert tracks[0] == Track(id="a", uri="spotify:track:a", name="Song a")


def test_build_twelve_tracks_with_one_duplicate_gives_eleven_in_order():
    ids = [f"t{i}" for i in range(11)]
    raw = top_tracks_payload(ids[:5] + ["t2"] + ids[5:])

    tracks = build(raw, limit=50)

    assert len(raw["items"]) == 12
    assert [t.id for t in tracks] == ids


def test_build_truncates_to_limit():
    raw = top_tracks_payload([str(i) for i in range(80)])

    tracks = build(raw, limit=50)

    assert len(tracks) == 50
    assert tracks[-1].id == "49"


def test_build_never_pads_short_lists():
    assert len(build(top_tracks_payload(["x", "y"]), limit=50)) == 2
    assert build({"items": []}, limit=50) == []


def test_build_limit_counts_unique_tracks():
    raw = top_tracks_payload(["a", "a", "a", "b", "c"])

    assert [t.id for t in build(raw, limit=2)] == ["a", "b"]


def test_build_is_deterministic_and_idempotent():
    raw = top_tracks_payload(["c", "a", "c", "b", "a", "d"])

    first = build(raw, limit=3)
    again = build(raw, limit=3)
    rebuilt = build([t.as_item() for t in first], limit=3)

    assert first == again
    assert rebuilt == first


def test_build_accepts_plain_item_list():
    items = top_tracks_payload(["a", "b"])["items"]

    assert [t.uri for t in build(items)] == ["spotify:track:a", "spotify:track:b"]


def test_build_falls_back_to_id_from_uri():
    items = [{"uri": "spotify:track:abc"}, {"uri": "spotify:track:abc", "id": "abc"}]

    tracks = build(items)

    assert tracks == [Track(id="abc", uri="spotify:track:abc", name="")]


@pytest.mark.parametrize(
    "raw",
    [
        {"error": "nope"},
        {"items": "not-a-list"},
        [{"id": "a"}],
        ["spotify:track:a"],
        "spotify:track:a",
    ],
)
def test_build_rejects_malformed_payloads(raw):
    with pytest.raises(MalformedTracksError):
        build(raw)


def test_build_rejects_negative_limit():
    with pytest.raises(ValueError):
        build({"items": []}, limit=-1)


def test_early_month_runs_are_named_for_previous_month():
    assert playlist_period(date(2024, 6, 1)) == date(2024, 5, 1)
    assert playlist_period(date(2024, 6, 14)) == date(2024, 5, 1)
    assert playlist_period(date(2024, 6, 15)) == date(2024, 6, 1)
    assert playlist_period(date(2024, 6, 30)) == date(2024, 6, 1)


def test_january_run_rolls_back_to_december():
    assert playlist_period(date(2024, 1, 1)) == date(2023, 12, 1)
    assert playlist_name(date(2024, 1, 1)) == "2023-12 (Dec) BOTM"


def test_playlist_name_and_description():
    assert playlist_name(date(2024, 6, 1)) == "2024-05 (May) BOTM"
    assert playlist_description(date(2024, 6, 1), date(2024, 6, 1)) == (
        "Bangers of the month for May 2024, (generated on 2024-06-01)"
    )
