# queue_manager.py
import asyncio
import json
import os
import random
import re
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

from loguru import logger

from tools import PlaylistError

@dataclass
class Song:
    """A playable track as stored in a guild queue or a saved playlist."""
    title: str
    url: str
    duration: str = "Unknown"
    duration_ms: int = 0
    thumbnail: Optional[str] = None
    channel: str = "Unknown"
    views: int = 0
    requested_by: Optional[str] = None
    source: str = "youtube"  # 'youtube' or 'spotify'

    def with_requester(self, requested_by: Optional[str]) -> 'Song':
        return replace(self, requested_by=requested_by)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Song':
        known = {f.name for f in fields(cls)}
        song = cls(**{k: v for k, v in data.items() if k in known})
        if not song.source: song.source = "youtube"
        return song

@dataclass
class GuildQueue:
    """Per-guild queue plus the playback flags the player keeps in sync."""
    guild_id: int
    songs: List[Song] = field(default_factory=list)
    current_index: int = 0
    is_playing: bool = False
    is_paused: bool = False
    loop: bool = False
    shuffle: bool = False
    voice_client: Optional[Any] = None
    text_channel: Optional[Any] = None

    # Playback bookkeeping owned by MusicPlayer
    pending_starts: int = 0
    generation: int = 0
    retry_count: int = 0
    started_at: Optional[float] = None

class AddResult(NamedTuple):
    start_index: int
    end_index: int
    count: int

@dataclass
class QueueStatus:
    songs_count: int
    current_index: int
    is_playing: bool
    is_paused: bool
    loop: bool
    shuffle: bool
    current_song: Optional[Song]
    up_next: List[Song]

@dataclass
class SavedPlaylist:
    name: str
    songs: List[Song]
    created_at: str
    guild_id: int

@dataclass
class PlaylistSummary:
    name: str
    song_count: int
    created_at: str
    filename: str

def playlist_filename(guild_id: int, name: str) -> str:
    return f"{guild_id}_{re.sub(r'[^a-zA-Z0-9]', '_', name)}.json"

#########################################
# Blocking file helpers (run in a worker thread)
#########################################

def _write_json_sync(file_path: str, data: dict) -> None:
    os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
    with open(file_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)

def _read_json_sync(file_path: str) -> dict:
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)

def _list_dir_sync(dir_path: str) -> List[str]:
    if not os.path.isdir(dir_path): return []
    return sorted(os.listdir(dir_path))

class QueueManager:
    """Keeps one GuildQueue per guild and persists saved playlists to disk."""

    def __init__(self, playlists_dir: str = "data/playlists", up_next_count: int = 5, rng: Optional[random.Random] = None):
        self.queues: Dict[int, GuildQueue] = {}
        self.playlists_dir = playlists_dir
        self.up_next_count = up_next_count
        self._random = rng or random.Random()

    def get_queue(self, guild_id: int) -> GuildQueue:
        """Returns the guild's queue, creating an empty one on first use."""
        if guild_id not in self.queues:
            self.queues[guild_id] = GuildQueue(guild_id=guild_id)
        return self.queues[guild_id]

    def has_queue(self, guild_id: int) -> bool:
        return guild_id in self.queues

    def add_song(self, guild_id: int, song: Song) -> int:
        """Appends a song and returns the new queue length (its 1-based position)."""
        queue = self.get_queue(guild_id)
        queue.songs.append(replace(song, source=song.source or "youtube"))
        return len(queue.songs)

    def add_songs(self, guild_id: int, songs: List[Song]) -> AddResult:
        queue = self.get_queue(guild_id)
        start_index = len(queue.songs)
        queue.songs.extend(replace(song, source=song.source or "youtube") for song in songs)
        return AddResult(start_index, len(queue.songs) - 1, len(songs))

    def get_current_song(self, guild_id: int) -> Optional[Song]:
        queue = self.get_queue(guild_id)
        if 0 <= queue.current_index < len(queue.songs):
            return queue.songs[queue.current_index]
        return None

    def skip_song(self, guild_id: int) -> Optional[Song]:
        """Moves to the next song according to shuffle/loop. None means the queue is finished."""
        queue = self.get_queue(guild_id)
        if queue.shuffle and len(queue.songs) > 1:
            candidates = [i for i in range(len(queue.songs)) if i != queue.current_index]
            queue.current_index = self._random.choice(candidates)
        else:
            queue.current_index += 1
            if queue.current_index >= len(queue.songs):
                if not queue.loop: return None
                queue.current_index = 0
        return self.get_current_song(guild_id)

    def previous_song(self, guild_id: int) -> Optional[Song]:
        queue = self.get_queue(guild_id)
        if queue.shuffle and queue.songs:
            queue.current_index = self._random.randrange(len(queue.songs))
        else:
            queue.current_index -= 1
            if queue.current_index < 0:
                if queue.loop and queue.songs:
                    queue.current_index = len(queue.songs) - 1
                else:
                    queue.current_index = 0
                    return None
        return self.get_current_song(guild_id)

    def clear_queue(self, guild_id: int) -> None:
        queue = self.get_queue(guild_id)
        queue.songs = []
        queue.current_index = 0
        queue.is_playing, queue.is_paused = False, False

    def remove_song(self, guild_id: int, index: int) -> Optional[Song]:
        """Removes the song at a 0-based index, keeping current_index on the same song."""
        queue = self.get_queue(guild_id)
        if not 0 <= index < len(queue.songs): return None
        removed = queue.songs.pop(index)
        if index < queue.current_index:
            queue.current_index -= 1
        elif index == queue.current_index and queue.current_index >= len(queue.songs):
            queue.current_index = 0
        return removed

    def toggle_shuffle(self, guild_id: int) -> bool:
        queue = self.get_queue(guild_id)
        queue.shuffle = not queue.shuffle
        return queue.shuffle

    def toggle_loop(self, guild_id: int) -> bool:
        queue = self.get_queue(guild_id)
        queue.loop = not queue.loop
        return queue.loop

    def get_queue_status(self, guild_id: int) -> QueueStatus:
        queue = self.get_queue(guild_id)
        start = queue.current_index + 1
        return QueueStatus(
            songs_count=len(queue.songs),
            current_index=queue.current_index,
            is_playing=queue.is_playing,
            is_paused=queue.is_paused,
            loop=queue.loop,
            shuffle=queue.shuffle,
            current_song=self.get_current_song(guild_id),
            up_next=queue.songs[start:start + self.up_next_count],
        )

    #########################################
    # Saved playlists
    #########################################

    def _playlist_path(self, guild_id: int, name: str) -> str:
        return os.path.join(self.playlists_dir, playlist_filename(guild_id, name))

    async def save_playlist(self, guild_id: int, name: str, songs: Optional[List[Song]] = None) -> str:
        """Writes the given songs (default: the guild's queue) to disk and returns the filename."""
        to_save = songs if songs is not None else self.get_queue(guild_id).songs
        data = {
            "name": name,
            "songs": [song.to_dict() for song in to_save],
            "created_at": datetime.now(timezone.utc).isoformat(),
            "guild_id": guild_id,
        }
        file_path = self._playlist_path(guild_id, name)
        try:
            await asyncio.to_thread(_write_json_sync, file_path, data)
        except OSError as e:
            logger.error(f"Error saving playlist '{name}' for guild {guild_id}: {e}", exc_info=True)
            raise PlaylistError(f"Could not save playlist: {e}") from e
        logger.info(f"Saved playlist '{name}' ({len(to_save)} songs) for guild {guild_id}")
        return os.path.basename(file_path)

    async def load_playlist(self, guild_id: int, name: str) -> SavedPlaylist:
        file_path = self._playlist_path(guild_id, name)
        try:
            data = await asyncio.to_thread(_read_json_sync, file_path)
        except FileNotFoundError as e:
            raise PlaylistError(f"Playlist '{name}' was not found.") from e
        except (OSError, ValueError) as e:
            logger.error(f"Error loading playlist '{name}' for guild {guild_id}: {e}", exc_info=True)
            raise PlaylistError(f"Could not read playlist '{name}'.") from e
        return SavedPlaylist(
            name=data.get("name", name),
            songs=[Song.from_dict(s) for s in data.get("songs", [])],
            created_at=data.get("created_at", ""),
            guild_id=data.get("guild_id", guild_id),
        )

    async def list_playlists(self, guild_id: int) -> List[PlaylistSummary]:
        try:
            files = await asyncio.to_thread(_list_dir_sync, self.playlists_dir)
        except OSError as e:
            logger.error(f"Error listing playlists: {e}", exc_info=True)
            raise PlaylistError("Could not list saved playlists.") from e

        summaries = []
        for filename in files:
            if not (filename.startswith(f"{guild_id}_") and filename.endswith(".json")): continue
            try:
                data = await asyncio.to_thread(_read_json_sync, os.path.join(self.playlists_dir, filename))
                summaries.append(PlaylistSummary(
                    name=data["name"], song_count=len(data.get("songs", [])),
                    created_at=data.get("created_at", ""), filename=filename,
                ))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.error(f"Error reading playlist file {filename}: {e}")
        return summaries

    async def delete_playlist(self, guild_id: int, name: str) -> None:
        file_path = self._playlist_path(guild_id, name)
        try:
            await asyncio.to_thread(os.remove, file_path)
        except FileNotFoundError as e:
            raise PlaylistError(f"Playlist '{name}' was not found.") from e
        except OSError as e:
            logger.error(f"Error deleting playlist '{name}': {e}", exc_info=True)
            raise PlaylistError(f"Could not delete playlist '{name}'.") from e
        logger.info(f"Deleted playlist '{name}' for guild {guild_id}")

    async def delete_queue(self, guild_id: int) -> None:
        """Stops audio, drops the voice connection and forgets the guild's queue."""
        queue = self.queues.pop(guild_id, None)
        if queue is None: return
        voice_client = queue.voice_client
        if voice_client is None: return
        if voice_client.is_playing() or voice_client.is_paused():
            voice_client.stop()
        if voice_client.is_connected():
            await voice_client.disconnect(force=True)
