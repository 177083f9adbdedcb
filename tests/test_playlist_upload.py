import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "lambda"))
import app  # noqa: E402


class FakeUser:
    def __init__(self, replace_outcomes=None, add_outcomes=None, playlist_outcomes=None):
        self.replace_outcomes = list(replace_outcomes or [])
        self.add_outcomes = list(add_outcomes or [])
        self.playlist_outcomes = list(playlist_outcomes or [])
        self.calls = []

    def _next(self, outcomes):
        if outcomes:
            return outcomes.pop(0)
        return app.Success({"snapshot_id": f"snap-{len(self.calls)}"})

    def replace_tracks(self, playlist_id, uris):
        self.calls.append(("replace", playlist_id, list(uris)))
        return self._next(self.replace_outcomes)

    def add_tracks(self, playlist_id, uris):
        self.calls.append(("append", playlist_id, list(uris)))
        return self._next(self.add_outcomes)

    def playlists(self, limit=50):
        self.calls.append(("playlists", limit))
        return self._next(self.playlist_outcomes)


def rate_limited(retry_after_s=0):
    return app.RateLimited(retry_after_s, app.SpotifyAPIError(429, "API rate limit exceeded"))


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(app, "sleep_for", lambda s: sleeps.append(s))
    return sleeps


def track_ids(count):
    return [f"track{i:03d}" for i in range(count)]


def test_to_track_uri():
    assert app.to_track_uri("4uLU6hMCjMI75M1A2tKUQC") == "spotify:track:4uLU6hMCjMI75M1A2tKUQC"


@pytest.mark.parametrize("count", [0, 1, 3, 49, 50])
def test_small_lists_use_single_replace(count):
    user = FakeUser()
    playlist = {"id": "P1", "snapshot_id": "snap-old"}
    ids = track_ids(count)

    snapshot_id = app.upload_tracks(user, playlist, ids)

    assert user.calls == [("replace", "P1", [app.to_track_uri(i) for i in ids])]
    assert snapshot_id == "snap-1"
    assert playlist["snapshot_id"] == "snap-1"


def test_empty_list_still_clears_playlist():
    user = FakeUser()
    app.upload_tracks(user, {"id": "P1", "snapshot_id": "s"}, [])
    assert user.calls == [("replace", "P1", [])]


@pytest.mark.parametrize("count", [51, 100, 101, 149, 237])
def test_large_lists_replace_then_append_in_order(count):
    user = FakeUser()
    ids = track_ids(count)

    snapshot_id = app.upload_tracks(user, {"id": "P1", "snapshot_id": "s"}, ids)

    kinds = [call[0] for call in user.calls]
    assert kinds[0] == "replace"
    assert all(kind == "append" for kind in kinds[1:])
    assert len(user.calls[0][2]) == 50
    assert all(1 <= len(call[2]) <= 50 for call in user.calls[1:])
    delivered = [uri for call in user.calls for uri in call[2]]
    assert delivered == [app.to_track_uri(i) for i in ids]
    assert len(user.calls) == 1 + (count - 50 + 49) // 50
    assert snapshot_id == f"snap-{len(user.calls)}"


def test_custom_batch_limit():
    user = FakeUser()
    app.upload_tracks(user, {"id": "P1"}, track_ids(7), batch_limit=3)
    assert [len(call[2]) for call in user.calls] == [3, 3, 1]


def test_rate_limited_append_is_retried_without_gaps(no_sleep):
    user = FakeUser(add_outcomes=[rate_limited(2), rate_limited(0)])
    ids = track_ids(120)

    app.upload_tracks(user, {"id": "P1"}, ids)

    assert no_sleep == [3, 1]
    appended = [call[2] for call in user.calls if call[0] == "append"]
    # the first append batch is attempted three times with the same tracks
    assert appended[0] == appended[1] == appended[2]
    unique_batches = [user.calls[0][2]] + appended[2:]
    delivered = [uri for batch in unique_batches for uri in batch]
    assert delivered == [app.to_track_uri(i) for i in ids]


def test_initial_server_error_propagates_by_default():
    server_error = app.Fatal(app.SpotifyAPIError(500, "Server error"))
    user = FakeUser(replace_outcomes=[server_error])

    with pytest.raises(app.SpotifyAPIError) as excinfo:
        app.upload_tracks(user, {"id": "P1"}, track_ids(80))
    assert excinfo.value.status_code == 500
    assert [call[0] for call in user.calls] == ["replace"]


def test_initial_server_error_can_be_suppressed(capsys):
    server_error = app.Fatal(app.SpotifyAPIError(500, "Server error"))
    user = FakeUser(replace_outcomes=[server_error])

    snapshot_id = app.upload_tracks(
        user,
        {"id": "P1", "snapshot_id": "snap-old"},
        track_ids(80),
        suppress_initial_server_error=True,
    )

    assert [call[0] for call in user.calls] == ["replace", "append"]
    assert snapshot_id == "snap-2"
    assert "Suppressed server error on initial replace" in capsys.readouterr().out


def test_suppression_only_applies_to_initial_replace():
    server_error = app.Fatal(app.SpotifyAPIError(500, "Server error"))
    user = FakeUser(add_outcomes=[server_error])

    with pytest.raises(app.SpotifyAPIError):
        app.upload_tracks(
            user, {"id": "P1"}, track_ids(80), suppress_initial_server_error=True
        )


def test_suppression_keeps_previous_snapshot_for_short_lists():
    user = FakeUser(replace_outcomes=[app.Fatal(app.SpotifyAPIError(500, "Server error"))])
    snapshot_id = app.upload_tracks(
        user,
        {"id": "P1", "snapshot_id": "snap-old"},
        track_ids(5),
        suppress_initial_server_error=True,
    )
    assert snapshot_id == "snap-old"


def test_resolve_returns_matching_playlist_unchanged():
    target = {"id": "P1", "snapshot_id": "abc", "name": "Road trip"}
    user = FakeUser(
        playlist_outcomes=[app.Success({"items": [{"id": "P0"}, target, {"id": "P2"}]})]
    )
    assert app.resolve_playlist(user, "P1") is target
    assert user.calls == [("playlists", 50)]


def test_resolve_missing_playlist_returns_not_found():
    user = FakeUser(playlist_outcomes=[app.Success({"items": [{"id": "P0"}]})])
    result = app.resolve_playlist(user, "P9")
    assert isinstance(result, app.PlaylistNotFound)
    assert result.playlist_id == "P9"


@pytest.mark.parametrize("status", [400, 401])
def test_resolve_client_errors_become_auth_error(status, no_sleep):
    user = FakeUser(
        playlist_outcomes=[app.Fatal(app.SpotifyAPIError(status, "Invalid access token"))]
    )
    result = app.resolve_playlist(user, "P1")
    assert isinstance(result, app.LookupAuthError)
    assert result.status_code == status
    assert result.message == "Invalid access token"
    assert len(user.calls) == 1 and no_sleep == []


def test_resolve_other_errors_propagate():
    user = FakeUser(playlist_outcomes=[app.Fatal(app.SpotifyAPIError(503, "Service unavailable"))])
    with pytest.raises(app.SpotifyAPIError):
        app.resolve_playlist(user, "P1")


def test_resolve_retries_rate_limit(no_sleep):
    user = FakeUser(
        playlist_outcomes=[rate_limited(4), app.Success({"items": [{"id": "P1"}]})]
    )
    assert app.resolve_playlist(user, "P1") == {"id": "P1"}
    assert no_sleep == [5]


@pytest.mark.parametrize("batch_limit", [0, -1, 101, True])
def test_invalid_batch_limit_argument_rejected(batch_limit):
    user = FakeUser()
    with pytest.raises(ValueError):
        app.upload_tracks(user, {"id": "P1"}, track_ids(3), batch_limit=batch_limit)
    assert user.calls == []


@pytest.mark.parametrize("configured", [0, -1, 101])
def test_invalid_configured_batch_limit_rejected(monkeypatch, configured):
    config = dict(app.ENV_CONFIG)
    config["track_batch_limit"] = configured
    monkeypatch.setattr(app, "ENV_CONFIG", config)
    user = FakeUser()

    with pytest.raises(app.HTTPError) as excinfo:
        app.upload_tracks(user, {"id": "P1"}, track_ids(3))
    assert excinfo.value.status_code == 502
    assert "track_batch_limit" in excinfo.value.message
    assert user.calls == []


def test_maximum_batch_limit_accepted():
    user = FakeUser()
    app.upload_tracks(user, {"id": "P1"}, track_ids(150), batch_limit=100)
    assert [len(call[2]) for call in user.calls] == [100, 50]
