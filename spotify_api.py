# spotify_api.py
import asyncio
import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

import spotipy
from loguru import logger
from spotipy.exceptions import SpotifyException
from spotipy.oauth2 import SpotifyClientCredentials, SpotifyOauthError

from queue_manager import Song
from tools import SearchError, SpotifyError
from youtube_search import YouTubeSearch

PLAYLIST_URL_RE = re.compile(r'(?:https?://)?(?:open\.)?spotify\.com/playlist/([a-zA-Z0-9]+)')
PAGE_SIZE = 50  # Spotify API limit for playlist items
PLAYLIST_ITEM_FIELDS = 'items(is_local,track(name,artists,duration_ms,external_urls,is_local))'

@dataclass
class SpotifyTrack:
    title: str
    artists: List[str]
    duration_ms: int = 0
    spotify_url: Optional[str] = None
    popularity: int = 0
    source: str = "spotify"

    @property
    def search_query(self) -> str:
        return f"{' '.join(self.artists)} {self.title}".strip()

@dataclass
class SpotifyPlaylist:
    name: str
    tracks: List[SpotifyTrack] = field(default_factory=list)

    @property
    def total_tracks(self) -> int:
        return len(self.tracks)

@dataclass
class ConversionResult:
    tracks: List[Song]
    failed_tracks: List[SpotifyTrack]

    @property
    def success_rate(self) -> str:
        return f"{len(self.tracks)}/{len(self.tracks) + len(self.failed_tracks)}"

@dataclass
class ConvertedPlaylist:
    name: str
    original_count: int
    converted_count: int
    tracks: List[Song]
    failed_tracks: List[SpotifyTrack]
    success_rate: str

def track_from_api(track: Optional[Dict[str, Any]]) -> Optional[SpotifyTrack]:
    """Builds a SpotifyTrack from an API track object; None for removed or local entries."""
    if not track or not track.get('name') or track.get('is_local'): return None
    return SpotifyTrack(
        title=track['name'],
        artists=[a['name'] for a in track.get('artists') or [] if a.get('name')],
        duration_ms=track.get('duration_ms') or 0,
        spotify_url=(track.get('external_urls') or {}).get('spotify'),
        popularity=track.get('popularity') or 0,
    )

def format_duration(ms: Optional[int]) -> str:
    seconds = int((ms or 0) // 1000)
    return f"{seconds // 60}:{seconds % 60:02d}"

class SpotifyAPI:
    """Reads Spotify playlist metadata (client-credentials flow) and maps tracks to YouTube."""

    def __init__(self, youtube: YouTubeSearch, client_id: Optional[str] = None, client_secret: Optional[str] = None, search_delay: float = 0.1):
        self.youtube = youtube
        self.client_id = client_id if client_id is not None else os.getenv("SPOTIFY_CLIENT_ID")
        self.client_secret = client_secret if client_secret is not None else os.getenv("SPOTIFY_CLIENT_SECRET")
        self.search_delay = search_delay
        self.sp: Optional[spotipy.Spotify] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def is_authenticated(self) -> bool:
        return self.sp is not None

    async def authenticate(self) -> bool:
        if not self.is_configured:
            logger.warning("Spotify credentials not found in .env. Spotify links will not work.")
            return False
        logger.info("Authenticating with Spotify...")
        try:
            auth_manager = SpotifyClientCredentials(client_id=self.client_id, client_secret=self.client_secret)
            # Fetch a token now so bad credentials fail here rather than mid-playlist
            await asyncio.to_thread(auth_manager.get_access_token, as_dict=False)
            self.sp = spotipy.Spotify(auth_manager=auth_manager)
        except SpotifyOauthError as e:
            logger.error(f"Spotify authentication failed: {e}")
            self.sp = None
            return False
        logger.info("Spotify authentication successful")
        return True

    async def ensure_authenticated(self) -> bool:
        """spotipy refreshes client-credentials tokens itself, so only a missing client needs work."""
        if self.sp is not None: return True
        return await self.authenticate()

    @staticmethod
    def extract_playlist_id(url: str) -> Optional[str]:
        match = PLAYLIST_URL_RE.search(url)
        return match.group(1) if match else None

    @staticmethod
    def is_spotify_playlist_url(text: str) -> bool:
        return bool(PLAYLIST_URL_RE.search(text))

    async def get_playlist_tracks(self, playlist_id: str, retry_auth: bool = True) -> SpotifyPlaylist:
        if not await self.ensure_authenticated():
            raise SpotifyError("Failed to authenticate with Spotify")

        logger.info(f"Fetching Spotify playlist: {playlist_id}")
        try:
            # No fields filter on the metadata call; some playlists 404 when one is supplied
            info = await asyncio.to_thread(self.sp.playlist, playlist_id)
            name, total = info.get('name', 'Spotify Playlist'), (info.get('tracks') or {}).get('total', 0)
            logger.info(f"Playlist: '{name}' ({total} tracks)")

            tracks, offset = [], 0
            while offset < total:
                page = await asyncio.to_thread(self.sp.playlist_items, playlist_id, fields=PLAYLIST_ITEM_FIELDS, limit=PAGE_SIZE, offset=offset)
                items = (page or {}).get('items') or []
                # Local files have no streaming counterpart to search for
                remote = (item.get('track') for item in items if item and not item.get('is_local'))
                tracks.extend(t for t in (track_from_api(track) for track in remote) if t)
                if not items: break
                offset += PAGE_SIZE
        except SpotifyException as e:
            logger.error(f"Error fetching Spotify playlist {playlist_id}: {e}")
            if e.http_status == 404:
                raise SpotifyError("Playlist not found or is private") from e
            if e.http_status == 401:
                self.sp = None
                if retry_auth: return await self.get_playlist_tracks(playlist_id, retry_auth=False)
                raise SpotifyError("Authentication failed") from e
            raise SpotifyError(e.msg or str(e)) from e

        logger.info(f"Retrieved {len(tracks)} tracks from Spotify playlist")
        return SpotifyPlaylist(name=name, tracks=tracks)

    async def convert_to_youtube_tracks(self, spotify_tracks: List[SpotifyTrack], requested_by: Optional[str]) -> ConversionResult:
        """Looks up the top YouTube result for each track; misses are reported, not raised."""
        youtube_tracks, failed_tracks = [], []
        logger.info(f"Converting {len(spotify_tracks)} Spotify tracks to YouTube...")

        for i, track in enumerate(spotify_tracks, start=1):
            query = track.search_query
            logger.debug(f"[{i}/{len(spotify_tracks)}] Searching: {query}")
            try:
                songs = await self.youtube.search_by_query(query, 1)
                youtube_tracks.append(replace(songs[0], requested_by=requested_by, source="spotify"))
            except SearchError:
                logger.info(f"No YouTube result for: {query}")
                failed_tracks.append(track)
            except Exception as e:
                logger.error(f"Error searching for {query}: {e}")
                failed_tracks.append(track)
            if self.search_delay: await asyncio.sleep(self.search_delay)

        result = ConversionResult(youtube_tracks, failed_tracks)
        logger.info(f"Successfully converted {result.success_rate} tracks")
        if failed_tracks: logger.warning(f"Failed to find YouTube equivalents for {len(failed_tracks)} tracks")
        return result

    async def get_playlist_from_url(self, url: str, requested_by: Optional[str]) -> ConvertedPlaylist:
        playlist_id = self.extract_playlist_id(url)
        if not playlist_id: raise SpotifyError("Invalid Spotify playlist URL")

        playlist = await self.get_playlist_tracks(playlist_id)
        conversion = await self.convert_to_youtube_tracks(playlist.tracks, requested_by)
        return ConvertedPlaylist(
            name=playlist.name,
            original_count=playlist.total_tracks,
            converted_count=len(conversion.tracks),
            tracks=conversion.tracks,
            failed_tracks=conversion.failed_tracks,
            success_rate=conversion.success_rate,
        )

    async def search_artist_tracks(self, artist_name: str, limit: int = 20) -> List[SpotifyTrack]:
        if not await self.ensure_authenticated():
            raise SpotifyError("Failed to authenticate with Spotify")
        logger.info(f"Searching Spotify for artist: {artist_name}")
        try:
            results = await asyncio.to_thread(self.sp.search, q=f"artist:{artist_name}", type='track', limit=limit, market='US')
        except SpotifyException as e:
            logger.error(f"Error searching Spotify for artist: {e}")
            raise SpotifyError(e.msg or str(e)) from e
        items = ((results or {}).get('tracks') or {}).get('items') or []
        tracks = [t for t in (track_from_api(item) for item in items) if t]
        logger.info(f"Found {len(tracks)} tracks for artist: {artist_name}")
        return tracks
