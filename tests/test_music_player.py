# test_music_player.py
import asyncio
import time

import pytest
from discord.opus import OpusNotLoaded

from conftest import FakeTextChannel, FakeVoiceClient, FakeYouTube, make_song
from music_player import MusicPlayer, is_opus_error

GUILD = 42

@pytest.fixture
def voice_client():
    return FakeVoiceClient()

@pytest.fixture
def text_channel():
    return FakeTextChannel()

@pytest.fixture
def setup(queue_manager, fast_config, voice_client, text_channel):
    """Builds a player over a three-song queue that is connected to a fake voice client."""
    def build(youtube=None, songs=3):
        youtube = youtube or FakeYouTube()
        player = MusicPlayer(queue_manager, youtube, fast_config)
        queue = queue_manager.get_queue(GUILD)
        queue_manager.add_songs(GUILD, [make_song(i) for i in range(1, songs + 1)])
        queue.voice_client, queue.text_channel = voice_client, text_channel
        return player, queue, youtube
    return build

def titles(embeds):
    return [e.title for e in embeds]

async def drain(player):
    while player._tasks:
        await asyncio.gather(*list(player._tasks))

def test_is_opus_error():
    assert is_opus_error(OpusNotLoaded())
    assert is_opus_error(RuntimeError("Opus encoder failed"))
    assert not is_opus_error(RuntimeError("HTTP Error 403"))

async def test_play_song_starts_current_song(setup, voice_client):
    player, queue, youtube = setup()
    assert await player.play_song(GUILD) is True
    assert queue.is_playing and not queue.is_paused and queue.pending_starts == 0
    assert voice_client.source.url == make_song(1).url
    assert youtube.requests == [(make_song(1).url, 'best', 3)]
    assert queue.generation > 0 and queue.started_at is not None
    assert not player.is_idle(GUILD)

async def test_play_song_without_song_or_connection(setup, queue_manager, voice_client):
    player, queue, _ = setup(songs=0)
    assert await player.play_song(GUILD) is False

    queue_manager.add_song(GUILD, make_song(1))
    voice_client._connected = False
    assert await player.play_song(GUILD) is False
    assert voice_client.played == []

async def test_play_song_falls_back_to_lowest_quality(setup, voice_client):
    player, queue, youtube = setup(FakeYouTube(fail_qualities={'best'}))
    assert await player.play_song(GUILD) is True
    assert [q for _, q, _ in youtube.requests] == ['best', 'lowest']
    assert youtube.requests[1][2] == 1
    assert voice_client.source.quality == 'lowest'

async def test_play_song_gives_up_when_both_configurations_fail(setup, text_channel):
    player, queue, _ = setup(FakeYouTube(fail_qualities={'best', 'lowest'}))
    assert await player.play_song(GUILD) is False
    assert not queue.is_playing and queue.pending_starts == 0
    assert text_channel.sent == []

async def test_opus_error_posts_encoding_embed(setup, text_channel):
    player, queue, youtube = setup(FakeYouTube(fail_qualities={'best'}, error=OpusNotLoaded()))
    assert await player.play_song(GUILD) is False
    assert titles(text_channel.sent) == ["❌ Audio Encoding Error"]
    assert [q for _, q, _ in youtube.requests] == ['best']

async def test_finished_song_advances_to_next(setup, voice_client):
    player, queue, _ = setup()
    await player.play_song(GUILD)
    queue.started_at = time.monotonic() - 180
    await player.handle_playback_finished(GUILD, queue.generation)
    assert queue.current_index == 1
    assert voice_client.source.url == make_song(2).url
    assert queue.is_playing

async def test_player_error_recovers_by_advancing(setup, voice_client):
    player, queue, _ = setup()
    await player.play_song(GUILD)
    await player.handle_playback_finished(GUILD, queue.generation, RuntimeError("ffmpeg died"))
    assert queue.current_index == 1 and queue.is_playing

async def test_end_of_queue_posts_finished_embed(setup, text_channel):
    player, queue, _ = setup(songs=1)
    await player.play_song(GUILD)
    queue.started_at = time.monotonic() - 180
    await player.handle_playback_finished(GUILD, queue.generation)
    assert titles(text_channel.sent) == ["🎵 Queue Finished"]
    assert not queue.is_playing and player.is_idle(GUILD)

async def test_loop_wraps_to_first_song(setup, voice_client):
    player, queue, _ = setup(songs=2)
    queue.loop = True
    queue.current_index = 1
    await player.play_song(GUILD)
    queue.started_at = time.monotonic() - 180
    await player.handle_playback_finished(GUILD, queue.generation)
    assert queue.current_index == 0 and voice_client.source.url == make_song(1).url

async def test_immediate_stop_retries_then_skips(setup, voice_client):
    player, queue, youtube = setup()
    await player.play_song(GUILD)

    # Each source ends right away; the song is retried twice, then skipped
    for expected_retries in (1, 2):
        await player.handle_playback_finished(GUILD, queue.generation)
        assert queue.retry_count == expected_retries
        assert queue.current_index == 0
    await player.handle_playback_finished(GUILD, queue.generation)
    assert queue.current_index == 1 and queue.retry_count == 0
    assert [url for url, _, _ in youtube.requests].count(make_song(1).url) == 3

async def test_stale_callback_is_ignored(setup):
    player, queue, _ = setup()
    await player.play_song(GUILD)
    old_token = queue.generation
    queue.started_at = time.monotonic() - 180
    await player.handle_playback_finished(GUILD, queue.generation)
    assert queue.current_index == 1

    await player.handle_playback_finished(GUILD, old_token)
    assert queue.current_index == 1

async def test_stop_does_not_advance(setup, voice_client):
    player, queue, _ = setup()
    await player.play_song(GUILD)
    token = queue.generation
    assert player.stop(GUILD) is True
    assert not voice_client.is_playing() and not queue.is_playing
    await player.handle_playback_finished(GUILD, token)
    assert queue.current_index == 0 and player.is_idle(GUILD)

async def test_stop_while_stream_loads_cancels_start(setup, voice_client):
    youtube = FakeYouTube()
    player, queue, _ = setup(youtube)
    youtube.before_return = lambda: player.stop(GUILD)
    assert await player.play_song(GUILD) is False
    assert voice_client.played == []
    assert youtube.sources[0].cleaned_up

async def test_after_callback_is_marshalled_to_the_loop(setup, voice_client):
    player, queue, _ = setup()
    await player.play_song(GUILD)
    queue.started_at = time.monotonic() - 180
    future = voice_client.after(None)
    await asyncio.wrap_future(future)
    assert queue.current_index == 1

async def test_skip_plays_next_song_even_when_paused(setup, voice_client):
    player, queue, _ = setup()
    await player.play_song(GUILD)
    assert player.pause(GUILD) is True
    assert player.skip(GUILD) is True
    await drain(player)
    assert queue.current_index == 1 and queue.is_playing
    assert voice_client.source.url == make_song(2).url

async def test_skip_on_last_song_finishes_queue(setup, text_channel):
    player, queue, _ = setup(songs=1)
    await player.play_song(GUILD)
    player.skip(GUILD)
    await drain(player)
    assert titles(text_channel.sent) == ["🎵 Queue Finished"]

async def test_skip_to_unplayable_song_reports_failure(setup, text_channel):
    youtube = FakeYouTube()
    player, queue, _ = setup(youtube)
    await player.play_song(GUILD)
    youtube.fail_qualities = {'best', 'lowest'}
    player.skip(GUILD)
    await drain(player)
    assert titles(text_channel.sent) == ["❌ Playback Error"]
    assert queue.current_index == 1 and player.is_idle(GUILD)

async def test_previous_replays_earlier_song(setup, voice_client):
    player, queue, _ = setup()
    queue.current_index = 2
    await player.play_song(GUILD)
    song = player.previous(GUILD)
    assert song.title == "Song 2"
    await drain(player)
    assert voice_client.source.url == make_song(2).url

async def test_previous_at_start_returns_none(setup):
    player, queue, _ = setup()
    await player.play_song(GUILD)
    assert player.previous(GUILD) is None

async def test_pause_and_resume(setup, voice_client):
    player, queue, _ = setup()
    assert player.pause(GUILD) is False
    await player.play_song(GUILD)
    assert player.pause(GUILD) is True
    assert queue.is_paused and not queue.is_playing
    assert player.pause(GUILD) is False
    assert player.resume(GUILD) is True
    assert queue.is_playing and voice_client.is_playing()
    assert player.resume(GUILD) is False

async def test_join_channel_reuses_existing_client(setup, voice_client):
    player, queue, _ = setup()

    class Guild:
        id, name = GUILD, "Test Guild"

    class Channel:
        def __init__(self, name):
            self.name, self.guild = name, Guild

        async def connect(self, timeout, reconnect):
            raise AssertionError("should reuse the existing connection")

    target = Channel("music")
    Guild.voice_client = voice_client
    assert await player.join_channel(target) is voice_client
    assert voice_client.channel is target and queue.voice_client is voice_client

async def test_join_channel_connects(queue_manager, fast_config):
    player = MusicPlayer(queue_manager, FakeYouTube(), fast_config)
    created = FakeVoiceClient()

    class Guild:
        id, name, voice_client = GUILD, "Test Guild", None

    class Channel:
        name, guild = "music", Guild

        async def connect(self, timeout, reconnect):
            self.timeout = timeout
            return created

    channel = Channel()
    assert await player.join_channel(channel) is created
    assert channel.timeout == fast_config.VOICE_CONNECT_TIMEOUT
    assert queue_manager.get_queue(GUILD).voice_client is created

async def test_leave_cleans_up_queue(setup, voice_client, queue_manager):
    player, queue, _ = setup()
    await player.play_song(GUILD)
    token = queue.generation
    await player.leave(GUILD)
    assert not queue_manager.has_queue(GUILD)
    assert not voice_client.is_connected()
    await player.handle_playback_finished(GUILD, token)
    assert not queue_manager.has_queue(GUILD)

async def test_get_status(setup):
    player, queue, _ = setup()
    status = player.get_status(GUILD)
    assert status.player_state == 'idle' and status.connection_state == 'connected'
    await player.play_song(GUILD)
    status = player.get_status(GUILD)
    assert status.player_state == 'playing' and status.is_playing
    assert status.current_song.title == "Song 1"

async def test_rapid_skips_play_the_song_the_queue_points_at(setup, voice_client, text_channel):
    youtube = FakeYouTube(delay=0.01)
    player, queue, _ = setup(youtube, songs=4)
    await player.play_song(GUILD)
    player.skip(GUILD)
    player.skip(GUILD)
    await drain(player)

    assert queue.current_index == 2
    assert voice_client.source.url == make_song(3).url
    assert queue.is_playing and queue.pending_starts == 0
    # The stream for the song skipped over is discarded, not started
    assert youtube.sources[1].url == make_song(2).url and youtube.sources[1].cleaned_up
    assert text_channel.sent == []

async def test_overlapping_start_requests_latest_wins(setup, voice_client):
    youtube = FakeYouTube(delay=0.01)
    player, queue, _ = setup(youtube)
    first = asyncio.create_task(player.play_song(GUILD))
    await asyncio.sleep(0)
    queue.current_index = 2
    assert await player.play_song(GUILD) is True
    assert await first is False
    assert voice_client.played == [youtube.sources[1]]
    assert voice_client.source.url == make_song(3).url

async def test_failed_retry_moves_on_to_next_song(setup, voice_client, text_channel):
    youtube = FakeYouTube()
    player, queue, _ = setup(youtube)
    await player.play_song(GUILD)
    youtube.fail_urls = {make_song(1).url}

    await player.handle_playback_finished(GUILD, queue.generation)
    assert queue.current_index == 1 and queue.is_playing
    assert voice_client.source.url == make_song(2).url
    assert queue.retry_count == 0
    assert text_channel.sent == []

async def test_failed_retry_reports_when_nothing_can_play(setup, text_channel):
    youtube = FakeYouTube()
    player, queue, _ = setup(youtube)
    await player.play_song(GUILD)
    youtube.fail_qualities = {'best', 'lowest'}

    await player.handle_playback_finished(GUILD, queue.generation)
    assert queue.current_index == 1
    assert titles(text_channel.sent) == ["❌ Playback Error"]
    assert player.is_idle(GUILD)
