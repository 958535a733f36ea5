# test_spotify_api.py
import pytest
from spotipy.exceptions import SpotifyException
from spotipy.oauth2 import SpotifyOauthError

import spotify_api
from conftest import make_song
from spotify_api import SpotifyAPI, SpotifyTrack, format_duration, track_from_api
from tools import SearchError, SpotifyError

PLAYLIST_URL = "https://open.spotify.com/playlist/37i9dQZF1DXcBWIGoYBM5M?si=abc"

def api_track(name, *artists, duration_ms=200000):
    return {'name': name, 'artists': [{'name': a} for a in artists], 'duration_ms': duration_ms, 'external_urls': {'spotify': f"https://open.spotify.com/track/{name}"}}

class FakeSpotify:
    def __init__(self, name="Mix", items=None, error=None):
        self.name, self.items, self.error = name, items or [], error
        self.item_calls = []

    def playlist(self, playlist_id):
        if self.error: raise self.error
        return {'name': self.name, 'tracks': {'total': len(self.items)}}

    def playlist_items(self, playlist_id, fields=None, limit=50, offset=0):
        self.item_calls.append((offset, limit))
        return {'items': self.items[offset:offset + limit]}

    def search(self, q, type='track', limit=20, market=None):
        self.last_search = (q, type, limit, market)
        return {'tracks': {'items': [api_track("Hit", "Band"), None]}}

class FakeYouTube:
    def __init__(self, missing=()):
        self.missing, self.queries = set(missing), []

    async def search_by_query(self, query, limit=5):
        self.queries.append((query, limit))
        if query in self.missing: raise SearchError("No results found")
        if query == "explode": raise RuntimeError("unexpected")
        return [make_song(len(self.queries), title=f"YT {query}")]

def make_api(youtube=None, sp=None) -> SpotifyAPI:
    api = SpotifyAPI(youtube or FakeYouTube(), client_id="id", client_secret="secret", search_delay=0)
    api.sp = sp
    return api

def test_playlist_url_helpers():
    assert SpotifyAPI.extract_playlist_id(PLAYLIST_URL) == "37i9dQZF1DXcBWIGoYBM5M"
    assert SpotifyAPI.is_spotify_playlist_url("open.spotify.com/playlist/abc123")
    assert not SpotifyAPI.is_spotify_playlist_url("https://open.spotify.com/track/abc123")
    assert SpotifyAPI.extract_playlist_id("https://youtube.com/watch?v=x") is None

def test_track_from_api_skips_removed_tracks():
    assert track_from_api(None) is None
    assert track_from_api({'name': ''}) is None
    track = track_from_api(api_track("Song", "A", "B"))
    assert track.artists == ["A", "B"] and track.search_query == "A B Song"

def test_format_duration():
    assert format_duration(0) == "0:00"
    assert format_duration(3725000) == "62:05"

def test_is_configured_reads_environment(monkeypatch):
    monkeypatch.delenv("SPOTIFY_CLIENT_ID", raising=False)
    monkeypatch.delenv("SPOTIFY_CLIENT_SECRET", raising=False)
    assert not SpotifyAPI(FakeYouTube()).is_configured
    monkeypatch.setenv("SPOTIFY_CLIENT_ID", "id")
    monkeypatch.setenv("SPOTIFY_CLIENT_SECRET", "secret")
    assert SpotifyAPI(FakeYouTube()).is_configured

async def test_authenticate_without_credentials_returns_false():
    api = SpotifyAPI(FakeYouTube(), client_id="", client_secret="")
    assert await api.authenticate() is False
    with pytest.raises(SpotifyError, match="authenticate"):
        await api.get_playlist_tracks("abc")

async def test_authenticate_success_and_failure(monkeypatch):
    class FakeCredentials:
        fail = False
        def __init__(self, client_id, client_secret):
            self.client_id = client_id
        def get_access_token(self, as_dict=False):
            if FakeCredentials.fail: raise SpotifyOauthError("invalid_client")
            return "token"

    monkeypatch.setattr(spotify_api, "SpotifyClientCredentials", FakeCredentials)
    monkeypatch.setattr(spotify_api.spotipy, "Spotify", lambda auth_manager: FakeSpotify())
    api = make_api()
    assert await api.authenticate() is True and api.is_authenticated

    FakeCredentials.fail = True
    api = make_api()
    assert await api.authenticate() is False and not api.is_authenticated

async def test_get_playlist_tracks_pages_and_drops_null_tracks():
    items = [{'track': api_track(f"t{i}", "Artist")} for i in range(120)]
    items[3] = {'track': None}
    sp = FakeSpotify(name="Big", items=items)
    playlist = await make_api(sp=sp).get_playlist_tracks("abc")
    assert playlist.name == "Big"
    assert playlist.total_tracks == 119
    assert sp.item_calls == [(0, 50), (50, 50), (100, 50)]

async def test_get_playlist_tracks_drops_local_files():
    local_track = dict(api_track("home recording", "Me"), id=None, is_local=True)
    items = [{'track': api_track("Real", "Band")}, {'is_local': True, 'track': local_track}, {'track': local_track}]
    playlist = await make_api(sp=FakeSpotify(items=items)).get_playlist_tracks("abc")
    assert [t.title for t in playlist.tracks] == ["Real"]

def test_track_from_api_rejects_local_track():
    assert track_from_api(dict(api_track("demo", "Me"), is_local=True)) is None

async def test_get_playlist_tracks_not_found():
    sp = FakeSpotify(error=SpotifyException(404, -1, "Not found."))
    with pytest.raises(SpotifyError, match="not found or is private"):
        await make_api(sp=sp).get_playlist_tracks("abc")

async def test_get_playlist_tracks_reauthenticates_once_on_401(monkeypatch):
    api = make_api(sp=FakeSpotify(error=SpotifyException(401, -1, "The access token expired")))
    recovered = FakeSpotify(name="Recovered", items=[{'track': api_track("t", "a")}])

    async def reauth():
        api.sp = recovered
        return True

    monkeypatch.setattr(api, "authenticate", reauth)
    playlist = await api.get_playlist_tracks("abc")
    assert playlist.name == "Recovered" and playlist.total_tracks == 1

async def test_get_playlist_tracks_gives_up_after_second_401(monkeypatch):
    api = make_api(sp=FakeSpotify(error=SpotifyException(401, -1, "expired")))

    async def reauth():
        api.sp = FakeSpotify(error=SpotifyException(401, -1, "expired"))
        return True

    monkeypatch.setattr(api, "authenticate", reauth)
    with pytest.raises(SpotifyError, match="Authentication failed"):
        await api.get_playlist_tracks("abc")

async def test_convert_to_youtube_tracks_reports_failures():
    youtube = FakeYouTube(missing={"Ghost Lost Song"})
    tracks = [SpotifyTrack("Found", ["Band"]), SpotifyTrack("Lost Song", ["Ghost"]), SpotifyTrack("", ["explode"])]
    result = await make_api(youtube).convert_to_youtube_tracks(tracks, "dj")

    assert [q for q, _ in youtube.queries] == ["Band Found", "Ghost Lost Song", "explode"]
    assert all(limit == 1 for _, limit in youtube.queries)
    assert len(result.tracks) == 1
    assert result.tracks[0].requested_by == "dj" and result.tracks[0].source == "spotify"
    assert [t.title for t in result.failed_tracks] == ["Lost Song", ""]
    assert result.success_rate == "1/3"

async def test_get_playlist_from_url():
    sp = FakeSpotify(name="Road", items=[{'track': api_track("One", "A")}, {'track': api_track("Two", "B")}])
    converted = await make_api(sp=sp).get_playlist_from_url(PLAYLIST_URL, "dj")
    assert converted.name == "Road"
    assert converted.original_count == 2 and converted.converted_count == 2
    assert converted.success_rate == "2/2"

async def test_get_playlist_from_invalid_url():
    with pytest.raises(SpotifyError, match="Invalid"):
        await make_api(sp=FakeSpotify()).get_playlist_from_url("https://example.com", "dj")

async def test_search_artist_tracks():
    sp = FakeSpotify()
    tracks = await make_api(sp=sp).search_artist_tracks("Band", limit=10)
    assert sp.last_search == ("artist:Band", "track", 10, "US")
    assert [t.title for t in tracks] == ["Hit"]
