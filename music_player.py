# music_player.py
import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Optional, Set

import discord
from discord.opus import OpusNotLoaded
from loguru import logger

import helper
from queue_manager import GuildQueue, QueueManager, Song
from tools import BotConfig, PlaybackError
from youtube_search import YouTubeSearch

@dataclass
class PlayerStatus:
    has_player: bool
    has_connection: bool
    player_state: str
    connection_state: str
    is_playing: bool
    is_paused: bool
    current_song: Optional[Song]

def is_opus_error(error: BaseException) -> bool:
    return isinstance(error, OpusNotLoaded) or 'opus' in str(error).lower()

class MusicPlayer:
    """Drives each guild's voice client from its queue and turns player events into queue transitions."""

    def __init__(self, queue_manager: QueueManager, youtube: YouTubeSearch, config: BotConfig):
        self.queue_manager = queue_manager
        self.youtube = youtube
        self.config = config
        # Every started source gets a fresh token; callbacks carrying an old token are ignored
        self._tokens = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()

    #########################################
    # Voice connection
    #########################################

    async def join_channel(self, voice_channel: Any) -> Any:
        """Connects to (or moves into) the given voice channel and records the client on the queue."""
        guild = voice_channel.guild
        queue = self.queue_manager.get_queue(guild.id)
        voice_client = guild.voice_client

        if voice_client and voice_client.is_connected():
            if voice_client.channel != voice_channel:
                logger.info(f"Moving to voice channel: {voice_channel.name} in {guild.name}")
                try:
                    await voice_client.move_to(voice_channel)
                except (asyncio.TimeoutError, discord.ClientException) as e:
                    logger.error(f"Failed to move to {voice_channel.name}: {e}", exc_info=True)
                    raise PlaybackError("Failed to move to your voice channel.") from e
            queue.voice_client = voice_client
            return voice_client

        logger.info(f"Joining voice channel: {voice_channel.name} in {guild.name}")
        try:
            voice_client = await voice_channel.connect(timeout=self.config.VOICE_CONNECT_TIMEOUT, reconnect=True)
        except (asyncio.TimeoutError, discord.ClientException) as e:
            logger.error(f"Failed to connect to {voice_channel.name}: {e}", exc_info=True)
            raise PlaybackError("Failed to connect to your voice channel.") from e

        queue.voice_client = voice_client
        logger.info(f"Successfully joined voice channel in {guild.name}")
        return voice_client

    #########################################
    # Playback
    #########################################

    def is_idle(self, guild_id: int) -> bool:
        queue = self.queue_manager.get_queue(guild_id)
        return not (queue.is_playing or queue.is_paused or queue.pending_starts)

    def _is_current(self, guild_id: int, token: int) -> bool:
        return self.queue_manager.has_queue(guild_id) and self.queue_manager.get_queue(guild_id).generation == token

    def _invalidate(self, queue: GuildQueue) -> int:
        queue.generation = next(self._tokens)
        return queue.generation

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _notify(self, queue: GuildQueue, embed: discord.Embed) -> None:
        if not queue.text_channel: return
        try: await queue.text_channel.send(embed=embed)
        except discord.HTTPException as e: logger.error(f"Failed to send message to text channel: {e}")

    def _start(self, queue: GuildQueue, source: discord.AudioSource) -> None:
        voice_client = queue.voice_client
        if voice_client.is_playing() or voice_client.is_paused():
            voice_client.stop()
        token = next(self._tokens)
        queue.generation = token
        loop = asyncio.get_running_loop()
        guild_id = queue.guild_id
        # 'after' runs on the voice client's audio thread
        voice_client.play(source, after=lambda error: asyncio.run_coroutine_threadsafe(self.handle_playback_finished(guild_id, token, error), loop))
        queue.is_playing, queue.is_paused = True, False
        queue.started_at = time.monotonic()

    async def play_song(self, guild_id: int, token: Optional[int] = None) -> bool:
        """Streams the queue's current song. Returns False when nothing could be started.

        Every call claims a fresh token unless one is passed in, so the most recent request
        wins when several starts overlap.
        """
        queue = self.queue_manager.get_queue(guild_id)
        song = self.queue_manager.get_current_song(guild_id)
        if not song:
            logger.info(f"No current song to play in guild {guild_id}")
            return False

        voice_client = queue.voice_client
        if not voice_client or not voice_client.is_connected():
            logger.error(f"No voice connection for guild {guild_id}")
            return False

        logger.info(f"Playing: {song.title} ({song.url})")
        start_token = token if token is not None else self._invalidate(queue)
        queue.pending_starts += 1
        try:
            try:
                started = await self._stream(queue, song, 'best', self.config.STREAM_RETRIES, start_token)
            except Exception as e:
                if is_opus_error(e):
                    logger.error("OPUS ENCODER ERROR: audio encoding failed. The Opus library is probably not installed.")
                    queue.is_playing, queue.is_paused = False, False
                    await self._notify(queue, helper.encoding_error_embed())
                    return False

                logger.warning(f"Error creating audio stream: {e}. Trying alternative stream configuration...")
                try:
                    started = await self._stream(queue, song, 'lowest', 1, start_token)
                except Exception as alt_e:
                    logger.error(f"Alternative stream also failed: {alt_e}", exc_info=True)
                    queue.is_playing, queue.is_paused = False, False
                    return False
        finally:
            queue.pending_starts -= 1

        if started: logger.info(f"Playback started for: {song.title}")
        return started

    async def _stream(self, queue: GuildQueue, song: Song, quality: str, retries: int, start_token: int) -> bool:
        source = await self.youtube.get_audio_source_with_retry(song.url, quality, self.config.MUSIC_BOT_VOLUME, retries)
        # A stop, skip or leave while the stream was resolving wins over this start
        if not self._is_current(queue.guild_id, start_token) or not queue.voice_client or not queue.voice_client.is_connected():
            logger.info(f"Playback of '{song.title}' was cancelled while the stream was loading")
            source.cleanup()
            return False
        self._start(queue, source)
        return True

    async def play_next(self, guild_id: int) -> bool:
        queue = self.queue_manager.get_queue(guild_id)
        queue.retry_count = 0
        next_song = self.queue_manager.skip_song(guild_id)
        if next_song is None:
            logger.info(f"Queue finished in guild {guild_id}")
            queue.is_playing, queue.is_paused = False, False
            await self._notify(queue, helper.queue_finished_embed())
            return False

        token = self._invalidate(queue)
        if await self.play_song(guild_id, token): return True
        if self._is_current(guild_id, token):
            await self._notify(queue, helper.playback_failed_embed(next_song))
        return False

    async def handle_playback_finished(self, guild_id: int, token: int, error: Optional[Exception] = None) -> None:
        """Reacts to a source ending: recover from errors, advance, or retry a stream that died at once."""
        if not self._is_current(guild_id, token):
            logger.debug(f"Ignoring stale playback callback in guild {guild_id}")
            return

        queue = self.queue_manager.get_queue(guild_id)
        was_playing = queue.is_playing
        played_for = time.monotonic() - queue.started_at if queue.started_at is not None else 0.0
        queue.is_playing, queue.is_paused, queue.started_at = False, False, None

        if error:
            logger.error(f"Audio player error in guild {guild_id}: {error}")
            await asyncio.sleep(self.config.RECOVERY_DELAY)
            if not self._is_current(guild_id, token): return
            logger.info("Attempting to recover from player error...")
            await self.play_next(guild_id)
            return

        if was_playing and played_for >= self.config.MIN_PLAY_SECONDS:
            logger.info(f"Playback finished in guild {guild_id}, auto-playing next song...")
            await asyncio.sleep(self.config.AUTO_ADVANCE_DELAY)
            if not self._is_current(guild_id, token): return
            await self.play_next(guild_id)
            return

        if queue.retry_count >= self.config.MAX_PLAYBACK_RETRIES:
            logger.warning(f"Current song keeps stopping immediately in guild {guild_id}, skipping it")
            await self.play_next(guild_id)
            return

        queue.retry_count += 1
        logger.warning(f"Player went idle without playing in guild {guild_id} - possible stream issue (retry {queue.retry_count}/{self.config.MAX_PLAYBACK_RETRIES})")
        await asyncio.sleep(self.config.RECOVERY_DELAY)
        if not self._is_current(guild_id, token): return
        if not self.queue_manager.get_current_song(guild_id): return
        retry_token = self._invalidate(queue)
        if await self.play_song(guild_id, retry_token): return
        if self._is_current(guild_id, retry_token):
            logger.warning(f"Retry could not start a stream in guild {guild_id}, moving to the next song")
            await self.play_next(guild_id)

    #########################################
    # Controls
    #########################################

    def pause(self, guild_id: int) -> bool:
        queue = self.queue_manager.get_queue(guild_id)
        voice_client = queue.voice_client
        if not voice_client or not voice_client.is_playing(): return False
        voice_client.pause()
        queue.is_playing, queue.is_paused = False, True
        logger.info(f"Playback paused in guild {guild_id}")
        return True

    def resume(self, guild_id: int) -> bool:
        queue = self.queue_manager.get_queue(guild_id)
        voice_client = queue.voice_client
        if not voice_client or not voice_client.is_paused(): return False
        voice_client.resume()
        queue.is_playing, queue.is_paused = True, False
        logger.info(f"Playback resumed in guild {guild_id}")
        return True

    def stop(self, guild_id: int) -> bool:
        """Stops the current source without advancing the queue."""
        queue = self.queue_manager.get_queue(guild_id)
        voice_client = queue.voice_client
        if not voice_client: return False
        self._invalidate(queue)
        if voice_client.is_playing() or voice_client.is_paused():
            voice_client.stop()
        queue.is_playing, queue.is_paused, queue.started_at = False, False, None
        return True

    def skip(self, guild_id: int) -> bool:
        """Stops the current source and starts the next song in the background."""
        queue = self.queue_manager.get_queue(guild_id)
        voice_client = queue.voice_client
        if not voice_client or not voice_client.is_connected(): return False
        self.stop(guild_id)
        self._spawn(self.play_next(guild_id))
        return True

    def previous(self, guild_id: int) -> Optional[Song]:
        queue = self.queue_manager.get_queue(guild_id)
        voice_client = queue.voice_client
        if not voice_client or not voice_client.is_connected(): return None
        song = self.queue_manager.previous_song(guild_id)
        if song is None: return None
        self.stop(guild_id)
        queue.retry_count = 0
        self._spawn(self.play_song(guild_id))
        return song

    async def leave(self, guild_id: int, voice_client: Optional[Any] = None) -> bool:
        logger.info(f"Leaving voice channel in guild {guild_id}")
        if self.queue_manager.has_queue(guild_id):
            queue = self.queue_manager.get_queue(guild_id)
            voice_client = voice_client or queue.voice_client
            queue.voice_client = voice_client
        elif voice_client is not None and voice_client.is_connected():
            await voice_client.disconnect(force=True)
            return True
        await self.cleanup(guild_id)
        return True

    async def cleanup(self, guild_id: int) -> None:
        """Stops audio, disconnects and deletes the guild's queue."""
        if self.queue_manager.has_queue(guild_id):
            self.stop(guild_id)
        await self.queue_manager.delete_queue(guild_id)
        logger.info(f"Cleaned up resources for guild {guild_id}")

    def get_status(self, guild_id: int) -> PlayerStatus:
        queue = self.queue_manager.get_queue(guild_id)
        voice_client = queue.voice_client
        connected = bool(voice_client and voice_client.is_connected())
        if voice_client and voice_client.is_playing(): player_state = 'playing'
        elif voice_client and voice_client.is_paused(): player_state = 'paused'
        else: player_state = 'idle'
        return PlayerStatus(
            has_player=voice_client is not None,
            has_connection=connected,
            player_state=player_state,
            connection_state='connected' if connected else 'disconnected',
            is_playing=queue.is_playing,
            is_paused=queue.is_paused,
            current_song=self.queue_manager.get_current_song(guild_id),
        )
