# conftest.py
import asyncio

import pytest

from queue_manager import QueueManager, Song
from tools import BotConfig

def make_song(n: int, **overrides) -> Song:
    data = dict(title=f"Song {n}", url=f"https://www.youtube.com/watch?v=video{n:06d}", duration="3:00", duration_ms=180000)
    data.update(overrides)
    return Song(**data)

class FakeSource:
    def __init__(self, url: str, quality: str):
        self.url, self.quality, self.cleaned_up = url, quality, False

    def cleanup(self):
        self.cleaned_up = True

class FakeVoiceClient:
    """Mimics the parts of discord.VoiceClient the player touches; 'after' is fired by the test."""

    def __init__(self, channel=None, guild=None):
        self.channel, self.guild = channel, guild
        self.source, self.after = None, None
        self.played = []
        self._playing, self._paused, self._connected = False, False, True

    def play(self, source, *, after=None):
        self.source, self.after = source, after
        self.played.append(source)
        self._playing, self._paused = True, False

    def stop(self):
        self._playing, self._paused = False, False

    def pause(self):
        self._playing, self._paused = False, True

    def resume(self):
        self._playing, self._paused = True, False

    def is_playing(self): return self._playing
    def is_paused(self): return self._paused
    def is_connected(self): return self._connected

    async def move_to(self, channel):
        self.channel = channel

    async def disconnect(self, *, force=False):
        self._connected = False

class FakeTextChannel:
    def __init__(self):
        self.sent = []

    async def send(self, embed=None, **kwargs):
        self.sent.append(embed)

class FakeYouTube:
    """Stands in for YouTubeSearch; streams fail for listed qualities or URLs, and can take a while to resolve."""

    def __init__(self, fail_qualities=(), error=None, fail_urls=(), delay=0):
        self.fail_qualities, self.fail_urls, self.delay = set(fail_qualities), set(fail_urls), delay
        self.error = error or RuntimeError("stream unavailable")
        self.requests = []
        self.sources = []
        self.before_return = None

    async def get_audio_source_with_retry(self, url, quality='best', volume=0.5, retries=3):
        self.requests.append((url, quality, retries))
        if self.delay: await asyncio.sleep(self.delay)
        if quality in self.fail_qualities or url in self.fail_urls: raise self.error
        source = FakeSource(url, quality)
        self.sources.append(source)
        if self.before_return: self.before_return()
        return source

@pytest.fixture
def fast_config() -> BotConfig:
    return BotConfig(AUTO_ADVANCE_DELAY=0, RECOVERY_DELAY=0, MIN_PLAY_SECONDS=2.0, MAX_PLAYBACK_RETRIES=2, STREAM_RETRIES=3, LOG_FILE=None)

@pytest.fixture
def queue_manager(tmp_path) -> QueueManager:
    return QueueManager(playlists_dir=str(tmp_path / "playlists"), up_next_count=3)
