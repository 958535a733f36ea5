# youtube_search.py
import asyncio
import math
import re
from typing import Any, Dict, List, Optional

import discord
import yt_dlp
from yt_dlp.utils import DownloadError
from loguru import logger

from queue_manager import Song
from tools import PlaybackError, SearchError

# --- YT-DLP / FFMPEG CONFIG ---
YDL_SEARCH_OPTIONS = {
    'extract_flat': 'in_playlist',
    'skip_download': True,
    'noplaylist': True,
    'nocheckcertificate': True,
    'quiet': True,
    'no_warnings': True,
    'logtostderr': False,
    'source_address': '0.0.0.0',
}
YDL_STREAM_OPTIONS = {
    'format': 'bestaudio/best',
    'skip_download': True,
    'noplaylist': True,
    'nocheckcertificate': True,
    'quiet': True,
    'no_warnings': True,
    'logtostderr': False,
    'source_address': '0.0.0.0',
}
STREAM_FORMATS = {
    'best': 'bestaudio/best',
    'lowest': 'worstaudio/worst',
}
FFMPEG_OPTIONS = {
    'before_options': '-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5',
    'options': '-vn -loglevel error',
}

YOUTUBE_URL_RE = re.compile(r'^(https?://)?(www\.)?(youtube\.com/(watch\?v=|embed/|v/)|youtu\.be/)[\w-]+')
VIDEO_ID_RE = re.compile(r'(?:youtube\.com/(?:[^/]+/.+/|(?:v|e(?:mbed)?)/|.*[?&]v=)|youtu\.be/)([^"&?/\s]{11})')
UNAVAILABLE_TITLES = ('[deleted video]', '[private video]')

def format_duration(ms: Optional[float]) -> str:
    """Formats milliseconds as M:SS, or H:MM:SS for anything an hour or longer."""
    if not ms: return "0:00"
    seconds = int(ms // 1000)
    hours, minutes, remaining = seconds // 3600, (seconds % 3600) // 60, seconds % 60
    if hours > 0: return f"{hours}:{minutes:02d}:{remaining:02d}"
    return f"{minutes}:{remaining:02d}"

def _thumbnail_from_info(info: Dict[str, Any]) -> Optional[str]:
    if info.get('thumbnail'): return info['thumbnail']
    thumbnails = info.get('thumbnails') or []
    return thumbnails[-1].get('url') if thumbnails else None

def song_from_info(info: Dict[str, Any]) -> Song:
    """Normalizes a yt-dlp info dict (flat search entry or full extraction) into a Song."""
    video_id = info.get('id')
    url = info.get('webpage_url') or (f"https://www.youtube.com/watch?v={video_id}" if video_id else info.get('url'))
    duration_ms = int((info.get('duration') or 0) * 1000)
    return Song(
        title=info.get('title') or 'Unknown Title',
        url=url,
        duration=format_duration(duration_ms),
        duration_ms=duration_ms,
        thumbnail=_thumbnail_from_info(info),
        channel=info.get('channel') or info.get('uploader') or 'Unknown',
        views=info.get('view_count') or 0,
        source='youtube',
    )

class YouTubeSearch:
    """Search, metadata and audio streams for YouTube, all delegated to yt-dlp."""

    def __init__(self, max_results: int = 10, retry_backoff: float = 1.0):
        self.max_results = max_results
        self.retry_backoff = retry_backoff

    @staticmethod
    def is_youtube_url(text: str) -> bool:
        return bool(YOUTUBE_URL_RE.match(text.strip()))

    @staticmethod
    def extract_video_id(url: str) -> Optional[str]:
        match = VIDEO_ID_RE.search(url)
        return match.group(1) if match else None

    async def _extract(self, target: str, options: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with yt_dlp.YoutubeDL(options) as ydl:
            return await asyncio.to_thread(ydl.extract_info, target, download=False)

    async def search_by_query(self, query: str, limit: int = 5) -> List[Song]:
        logger.info(f"Searching YouTube for: '{query}'")
        limit = max(1, min(limit, self.max_results))
        try:
            results = await self._extract(f"ytsearch{limit}:{query}", YDL_SEARCH_OPTIONS)
        except DownloadError as e:
            logger.error(f"YouTube search error for '{query}': {e}")
            raise SearchError(f"YouTube search failed: {e}") from e

        songs = []
        for entry in (results or {}).get('entries') or []:
            if not entry: continue
            if (entry.get('title') or '').lower() in UNAVAILABLE_TITLES:
                logger.info(f"Skipping unavailable search result: {entry.get('title')}")
                continue
            songs.append(song_from_info(entry))

        if not songs: raise SearchError("No results found")
        logger.info(f"Found {len(songs)} results for '{query}'")
        return songs

    async def get_video_info(self, url: str) -> Song:
        logger.info(f"Fetching YouTube video info: {url}")
        try:
            info = await self._extract(url, YDL_STREAM_OPTIONS)
        except DownloadError as e:
            logger.error(f"Error getting video info for {url}: {e}")
            raise SearchError(f"Could not get video info: {e}") from e
        if info and info.get('entries'): info = info['entries'][0]
        if not info: raise SearchError("Could not get video info")
        song = song_from_info(info)
        logger.info(f"Retrieved video info: '{song.title}'")
        return song

    async def search_by_artist(self, artist_name: str, limit: int = 10) -> List[Song]:
        """Collects popular songs for an artist from a few search phrasings, de-duplicated by URL."""
        queries = [f"{artist_name} songs", f"{artist_name} best hits", f"{artist_name} popular"]
        per_query = math.ceil(limit / len(queries))

        unique_songs, seen_urls = [], set()
        for query in queries:
            try:
                songs = await self.search_by_query(query, per_query)
            except SearchError as e:
                logger.warning(f"Artist search query '{query}' returned nothing: {e}")
                continue
            for song in songs:
                if song.url not in seen_urls and len(unique_songs) < limit:
                    seen_urls.add(song.url)
                    unique_songs.append(song)

        if not unique_songs: raise SearchError(f"No songs found for artist: {artist_name}")
        logger.info(f"Found {len(unique_songs)} songs for artist: {artist_name}")
        return unique_songs

    async def get_multiple_video_info(self, urls: List[str]) -> List[Song]:
        songs = []
        for url in urls:
            if not self.is_youtube_url(url): continue
            try: songs.append(await self.get_video_info(url))
            except SearchError: logger.warning(f"Skipping unavailable video: {url}")
        return songs

    async def is_playable(self, url: str) -> bool:
        try:
            info = await self._extract(url, YDL_STREAM_OPTIONS)
        except DownloadError as e:
            logger.error(f"Error checking if URL is playable: {e}")
            return False
        formats = (info or {}).get('formats') or []
        return any(f.get('acodec') not in (None, 'none') and f.get('vcodec') in (None, 'none') for f in formats)

    async def get_stream_url(self, url: str, quality: str = 'best') -> str:
        """Resolves a fresh direct audio URL; YouTube stream URLs expire, so never cache these."""
        options = dict(YDL_STREAM_OPTIONS, format=STREAM_FORMATS.get(quality, STREAM_FORMATS['best']))
        info = await self._extract(url, options)
        if info and info.get('entries'): info = info['entries'][0]
        audio_url = (info or {}).get('url')
        if not audio_url: raise PlaybackError("yt-dlp failed to extract a playable audio URL.")
        return audio_url

    async def get_audio_source(self, url: str, quality: str = 'best', volume: float = 0.5) -> discord.PCMVolumeTransformer:
        stream_url = await self.get_stream_url(url, quality)
        logger.info(f"Creating audio stream (quality={quality}) for: {url}")
        return discord.PCMVolumeTransformer(discord.FFmpegPCMAudio(stream_url, **FFMPEG_OPTIONS), volume=volume)

    async def get_audio_source_with_retry(self, url: str, quality: str = 'best', volume: float = 0.5, retries: int = 3) -> discord.PCMVolumeTransformer:
        for attempt in range(1, retries + 1):
            try:
                logger.info(f"Stream attempt {attempt}/{retries} for: {url}")
                return await self.get_audio_source(url, quality, volume)
            except Exception as e:
                logger.error(f"Stream attempt {attempt} failed: {e}")
                if attempt == retries: raise
                await asyncio.sleep(self.retry_backoff * attempt)
        raise PlaybackError(f"No stream attempts were made for {url}")
