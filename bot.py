#!/usr/bin/env python
# -*- coding: utf-8 -*-
# bot.py

# Standard library imports
import ctypes.util
import os
import shutil
import signal
import sys
from typing import Optional

# Third-party imports
import discord
from discord import app_commands
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

# Local application imports
try:
    import config
except ImportError:
    logger.critical("CRITICAL: config.py not found. Please create it based on the example.")
    sys.exit(1)
import helper
from music_player import MusicPlayer
from queue_manager import QueueManager, Song
from spotify_api import SpotifyAPI
from tools import (
    BotConfig,
    MusicBotError,
    PlaylistError,
    SearchError,
    configure_logging,
    handle_errors,
    respond,
)
from youtube_search import YouTubeSearch

# Load environment variables from the .env file
load_dotenv()

# --- VALIDATION AND INITIALIZATION ---
# Load configuration from the config.py module into a structured dataclass
bot_config = BotConfig.from_config_module(config)
configure_logging(bot_config.LOG_FILE)

# Shared services; every guild gets its own queue inside the queue manager
queue_manager = QueueManager(bot_config.PLAYLISTS_DIR, bot_config.UP_NEXT_COUNT)
youtube_search = YouTubeSearch()
spotify_api = SpotifyAPI(youtube_search, search_delay=bot_config.SPOTIFY_SEARCH_DELAY)
music_player = MusicPlayer(queue_manager, youtube_search, bot_config)

# Initialize the Discord bot instance with required intents
intents = discord.Intents.default()
intents.voice_states = True # Required for voice state updates
bot = commands.Bot(command_prefix=commands.when_mentioned, help_command=None, intents=intents)

SOURCE_CHOICES = [
    app_commands.Choice(name="YouTube", value="youtube"),
    app_commands.Choice(name="YouTube by Artist", value="artist"),
]

#########################################
# Helpers
#########################################

def requester_name(interaction: discord.Interaction) -> str:
    return interaction.user.display_name

def member_voice_channel(interaction: discord.Interaction) -> Optional[discord.VoiceChannel]:
    voice = getattr(interaction.user, 'voice', None)
    return voice.channel if voice else None

def human_listeners(channel) -> list:
    return [m for m in channel.members if not m.bot]

async def start_playback_if_idle(guild_id: int, voice_channel) -> bool:
    """Joins the member's channel and starts the current song unless the guild is already busy."""
    if not music_player.is_idle(guild_id): return False
    await music_player.join_channel(voice_channel)
    return await music_player.play_song(guild_id)

async def play_youtube_url(interaction: discord.Interaction, url: str, voice_channel) -> None:
    video_id = youtube_search.extract_video_id(url)
    if not video_id: return await respond(interaction, helper.error_embed("Invalid YouTube URL!"))
    song = (await youtube_search.get_video_info(url)).with_requester(requester_name(interaction))
    await queue_single_song(interaction, song, voice_channel)

async def play_search(interaction: discord.Interaction, query: str, voice_channel) -> None:
    try:
        results = await youtube_search.search_by_query(query, bot_config.SEARCH_RESULT_LIMIT)
    except SearchError:
        return await respond(interaction, helper.error_embed(f'No results found for: "{query}"', title="❌ No Results"))
    await queue_single_song(interaction, results[0].with_requester(requester_name(interaction)), voice_channel)

async def queue_single_song(interaction: discord.Interaction, song: Song, voice_channel) -> None:
    guild_id = interaction.guild_id
    position = queue_manager.add_song(guild_id, song)
    queued = queue_manager.get_queue(guild_id).songs[position - 1]
    started = await start_playback_if_idle(guild_id, voice_channel)

    # The new song only plays right away when the queue was waiting on it
    if started and queue_manager.get_current_song(guild_id) is queued:
        embed = helper.now_playing_embed(song)
    else:
        embed = helper.added_to_queue_embed(song, position)
    await respond(interaction, embed)

async def play_artist(interaction: discord.Interaction, artist: str, voice_channel) -> None:
    guild_id = interaction.guild_id
    try:
        songs = await youtube_search.search_by_artist(artist, bot_config.ARTIST_SEARCH_LIMIT)
    except SearchError:
        return await respond(interaction, helper.error_embed(f'No songs found for artist: "{artist}"', title="❌ No Results"))
    songs = [song.with_requester(requester_name(interaction)) for song in songs]
    result = queue_manager.add_songs(guild_id, songs)
    await start_playback_if_idle(guild_id, voice_channel)
    embed = helper.songs_added_embed("🎵 Added Artist Songs", f"Added **{result.count}** songs by **{artist}** to the queue!", songs, result, requester_name(interaction))
    await respond(interaction, embed)

async def play_spotify_playlist(interaction: discord.Interaction, url: str, voice_channel) -> None:
    if not spotify_api.is_configured:
        return await respond(interaction, helper.error_embed("Spotify support is not configured on this bot."))
    await respond(interaction, helper.spotify_loading_embed())

    guild_id = interaction.guild_id
    playlist = await spotify_api.get_playlist_from_url(url, requester_name(interaction))
    if not playlist.tracks:
        return await respond(interaction, helper.error_embed("Could not find any playable tracks from this Spotify playlist.", title="❌ No Tracks"))

    result = queue_manager.add_songs(guild_id, playlist.tracks)
    await start_playback_if_idle(guild_id, voice_channel)
    await respond(interaction, helper.spotify_playlist_embed(playlist, result, requester_name(interaction)))

#########################################
# Bot Event Handlers
#########################################

@bot.event
async def setup_hook() -> None:
    if bot_config.GUILD_ID:
        guild = discord.Object(id=bot_config.GUILD_ID)
        bot.tree.copy_global_to(guild=guild)
        synced = await bot.tree.sync(guild=guild)
        logger.info(f"Synced {len(synced)} commands to guild {bot_config.GUILD_ID}")
    else:
        synced = await bot.tree.sync()
        logger.info(f"Synced {len(synced)} global commands")

def check_dependencies() -> None:
    """Logs whether FFmpeg and the Opus library are available for voice playback."""
    ffmpeg_path = shutil.which("ffmpeg")
    if ffmpeg_path: logger.info(f"FFmpeg found at {ffmpeg_path}")
    else: logger.error("FFmpeg not found on PATH. Audio playback will fail.")

    if not discord.opus.is_loaded():
        opus_path = ctypes.util.find_library("opus")
        if opus_path:
            try: discord.opus.load_opus(opus_path)
            except OSError as e: logger.error(f"Failed to load Opus from {opus_path}: {e}")
    if discord.opus.is_loaded(): logger.info("Opus library loaded")
    else: logger.error("Opus library not loaded. Audio encoding will fail.")

@bot.event
async def on_ready() -> None:
    logger.info(f"Bot is online as {bot.user}")
    logger.info(f"Serving {len(bot.guilds)} guilds")
    try:
        check_dependencies()
        if spotify_api.is_configured and not spotify_api.is_authenticated: await spotify_api.authenticate()
        await bot.change_presence(activity=discord.Activity(type=discord.ActivityType.listening, name="🎵 Music | /play"))
        logger.info("Initialization complete")
    except Exception as e:
        logger.error(f"Error during on_ready: {e}", exc_info=True)

@bot.event
@handle_errors
async def on_voice_state_update(member: discord.Member, before: discord.VoiceState, after: discord.VoiceState) -> None:
    """Cleans up when the bot is disconnected and leaves channels that are empty of users."""
    guild_id = member.guild.id
    if member.id == bot.user.id:
        if before.channel and after.channel is None and queue_manager.has_queue(guild_id):
            logger.info(f"Bot was disconnected from voice in {member.guild.name}")
            await music_player.cleanup(guild_id)
        return

    if member.bot or not bot_config.AUTO_DISCONNECT_WHEN_ALONE: return
    voice_client = member.guild.voice_client
    if not voice_client or not voice_client.is_connected(): return
    if before.channel != voice_client.channel: return

    if not human_listeners(voice_client.channel):
        logger.info(f"Channel '{voice_client.channel.name}' is empty of users. Disconnecting.")
        await music_player.leave(guild_id, voice_client)

#########################################
# Music Commands
#########################################

@bot.tree.command(name="play", description="Play music from YouTube or add a Spotify playlist to the queue")
@app_commands.describe(query="Song name, YouTube URL, or Spotify playlist URL", source="Where to search (default: YouTube)")
@app_commands.choices(source=SOURCE_CHOICES)
@app_commands.guild_only()
@handle_errors
async def play(interaction: discord.Interaction, query: str, source: Optional[app_commands.Choice[str]] = None):
    await interaction.response.defer()
    voice_channel = member_voice_channel(interaction)
    if not voice_channel:
        return await respond(interaction, helper.error_embed("You need to be in a voice channel to play music!"))

    queue_manager.get_queue(interaction.guild_id).text_channel = interaction.channel
    query = query.strip()
    mode = source.value if source else "youtube"
    logger.info(f"/play by {interaction.user} in {interaction.guild}: {query} ({mode})")
    try:
        if spotify_api.is_spotify_playlist_url(query): await play_spotify_playlist(interaction, query, voice_channel)
        elif youtube_search.is_youtube_url(query): await play_youtube_url(interaction, query, voice_channel)
        elif mode == "artist": await play_artist(interaction, query, voice_channel)
        else: await play_search(interaction, query, voice_channel)
    except MusicBotError as e:
        logger.warning(f"/play failed for '{query}': {e}")
        await respond(interaction, helper.error_embed(str(e)))

@bot.tree.command(name="test", description="Test YouTube lookup and streaming for a URL")
@app_commands.describe(url="YouTube URL to test")
@handle_errors
async def test(interaction: discord.Interaction, url: str):
    await interaction.response.defer()
    if not youtube_search.is_youtube_url(url):
        return await respond(interaction, helper.error_embed("Please provide a valid YouTube URL."))
    await respond(interaction, discord.Embed(title="🔍 Testing YouTube Functionality", description=f"Testing: {url}", color=helper.INFO_COLOR))

    try:
        song = await youtube_search.get_video_info(url)
    except MusicBotError as e:
        return await respond(interaction, helper.error_embed(f"Could not get video info: {e}", title="❌ YouTube Test Failed"))
    playable = await youtube_search.is_playable(url)

    stream_ok, stream_error = True, None
    try:
        source = await youtube_search.get_audio_source_with_retry(url, volume=bot_config.MUSIC_BOT_VOLUME, retries=1)
        source.cleanup()
    except Exception as e:
        stream_ok, stream_error = False, str(e)

    embed = discord.Embed(title="✅ YouTube Test Results" if stream_ok else "⚠️ YouTube Test Results", color=helper.SUCCESS_COLOR if stream_ok else helper.WARNING_COLOR)
    embed.add_field(name="📺 Title", value=song.title, inline=False)
    embed.add_field(name="⏱️ Duration", value=song.duration, inline=True)
    embed.add_field(name="📊 Views", value=f"{song.views:,}", inline=True)
    embed.add_field(name="🎵 Playable", value="✅ Yes" if playable else "❌ No", inline=True)
    embed.add_field(name="🔊 Stream Test", value="✅ Success" if stream_ok else f"❌ Failed: {stream_error[:200]}", inline=False)
    if song.thumbnail: embed.set_thumbnail(url=song.thumbnail)
    await respond(interaction, embed)

#########################################
# Playlist Commands
#########################################

playlist_group = app_commands.Group(name="playlist", description="Manage saved playlists and the queue", guild_only=True)

@playlist_group.command(name="save", description="Save the current queue as a playlist")
@app_commands.describe(name="Name for the playlist")
@handle_errors
async def playlist_save(interaction: discord.Interaction, name: str):
    queue = queue_manager.get_queue(interaction.guild_id)
    if not queue.songs:
        return await respond(interaction, helper.error_embed("Cannot save an empty queue! Add some songs first.", title="❌ Empty Queue"))
    try:
        await queue_manager.save_playlist(interaction.guild_id, name)
    except PlaylistError as e:
        return await respond(interaction, helper.error_embed(str(e), title="❌ Save Failed"))
    await respond(interaction, helper.playlist_saved_embed(name, len(queue.songs), requester_name(interaction)))

@playlist_group.command(name="load", description="Load a saved playlist into the queue")
@app_commands.describe(name="Name of the playlist to load")
@handle_errors
async def playlist_load(interaction: discord.Interaction, name: str):
    voice_channel = member_voice_channel(interaction)
    if not voice_channel:
        return await respond(interaction, helper.error_embed("You need to be in a voice channel to load a playlist!"))
    await interaction.response.defer()

    guild_id = interaction.guild_id
    try:
        playlist = await queue_manager.load_playlist(guild_id, name)
    except PlaylistError as e:
        return await respond(interaction, helper.error_embed(str(e), title="❌ Load Failed"))
    if not playlist.songs:
        return await respond(interaction, helper.error_embed(f"Playlist **{name}** has no songs.", title="❌ Empty Playlist"))

    queue_manager.get_queue(guild_id).text_channel = interaction.channel
    songs = [song.with_requester(requester_name(interaction)) for song in playlist.songs]
    result = queue_manager.add_songs(guild_id, songs)
    try:
        await start_playback_if_idle(guild_id, voice_channel)
    except MusicBotError as e:
        return await respond(interaction, helper.error_embed(str(e)))
    await respond(interaction, helper.playlist_loaded_embed(playlist, result, requester_name(interaction)))

@playlist_group.command(name="list", description="List this server's saved playlists")
@handle_errors
async def playlist_list(interaction: discord.Interaction):
    try:
        playlists = await queue_manager.list_playlists(interaction.guild_id)
    except PlaylistError as e:
        return await respond(interaction, helper.error_embed(str(e)))
    await respond(interaction, helper.playlist_list_embed(playlists))

@playlist_group.command(name="delete", description="Delete a saved playlist")
@app_commands.describe(name="Name of the playlist to delete")
@handle_errors
async def playlist_delete(interaction: discord.Interaction, name: str):
    try:
        await queue_manager.delete_playlist(interaction.guild_id, name)
    except PlaylistError as e:
        return await respond(interaction, helper.error_embed(str(e), title="❌ Delete Failed"))
    await respond(interaction, discord.Embed(title="🗑️ Playlist Deleted", description=f"Playlist **\"{name}\"** has been deleted.", color=helper.WARNING_COLOR))

@playlist_group.command(name="clear", description="Clear the current queue")
@handle_errors
async def playlist_clear(interaction: discord.Interaction):
    guild_id = interaction.guild_id
    if not queue_manager.get_queue(guild_id).songs:
        return await respond(interaction, helper.error_embed("The queue is already empty!", title="❌ Empty Queue"))
    music_player.stop(guild_id)
    queue_manager.clear_queue(guild_id)
    await respond(interaction, discord.Embed(title="🗑️ Queue Cleared", description="All songs have been removed from the queue.", color=helper.WARNING_COLOR))

@playlist_group.command(name="remove", description="Remove a song from the queue")
@app_commands.describe(position="Position of the song in the queue (1, 2, 3...)")
@handle_errors
async def playlist_remove(interaction: discord.Interaction, position: app_commands.Range[int, 1]):
    guild_id = interaction.guild_id
    queue = queue_manager.get_queue(guild_id)
    if not queue.songs:
        return await respond(interaction, helper.error_embed("The queue is empty!", title="❌ Empty Queue"))
    if position > len(queue.songs):
        return await respond(interaction, helper.error_embed(f"Invalid position! Queue has {len(queue.songs)} songs.", title="❌ Invalid Position"))

    index = position - 1
    if index == queue.current_index and (queue.is_playing or queue.is_paused):
        return await respond(interaction, helper.error_embed("Cannot remove the currently playing song! Use `/controls skip` instead."))

    removed = queue_manager.remove_song(guild_id, index)
    await respond(interaction, helper.song_removed_embed(removed, position))

bot.tree.add_command(playlist_group)

#########################################
# Playback Controls
#########################################

controls_group = app_commands.Group(name="controls", description="Control music playback", guild_only=True)

@controls_group.command(name="pause", description="Pause the current song")
@handle_errors
async def controls_pause(interaction: discord.Interaction):
    queue = queue_manager.get_queue(interaction.guild_id)
    if queue.is_paused:
        return await respond(interaction, helper.error_embed("Music is already paused!", title="❌ Already Paused"))
    if not queue.is_playing or not music_player.pause(interaction.guild_id):
        return await respond(interaction, helper.error_embed("No music is currently playing!", title="❌ Nothing Playing"))
    await respond(interaction, discord.Embed(title="⏸️ Paused", description="Music has been paused", color=helper.WARNING_COLOR))

@controls_group.command(name="resume", description="Resume the paused song")
@handle_errors
async def controls_resume(interaction: discord.Interaction):
    if not music_player.resume(interaction.guild_id):
        return await respond(interaction, helper.error_embed("Music is not paused!", title="❌ Not Paused"))
    await respond(interaction, discord.Embed(title="▶️ Resumed", description="Music has been resumed", color=helper.PRIMARY_COLOR))

@controls_group.command(name="skip", description="Skip to the next song")
@handle_errors
async def controls_skip(interaction: discord.Interaction):
    guild_id = interaction.guild_id
    current = queue_manager.get_current_song(guild_id)
    if not current or not music_player.skip(guild_id):
        return await respond(interaction, helper.error_embed("No music is currently playing!", title="❌ Nothing Playing"))
    await respond(interaction, discord.Embed(title="⏭️ Skipped", description=f"Skipped: **{current.title}**", color=helper.PRIMARY_COLOR))

@controls_group.command(name="previous", description="Go back to the previous song")
@handle_errors
async def controls_previous(interaction: discord.Interaction):
    song = music_player.previous(interaction.guild_id)
    if not song:
        return await respond(interaction, helper.error_embed("There is no previous song to play.", title="❌ No Previous Song"))
    await respond(interaction, discord.Embed(title="⏮️ Previous", description=f"Playing: {helper.song_link(song)}", color=helper.PRIMARY_COLOR))

@controls_group.command(name="stop", description="Stop music, clear the queue and leave the voice channel")
@handle_errors
async def controls_stop(interaction: discord.Interaction):
    guild_id = interaction.guild_id
    if not queue_manager.has_queue(guild_id) or not queue_manager.get_queue(guild_id).songs:
        return await respond(interaction, helper.error_embed("No music is currently playing!", title="❌ Nothing Playing"))
    music_player.stop(guild_id)
    queue_manager.clear_queue(guild_id)
    await music_player.leave(guild_id, interaction.guild.voice_client)
    await respond(interaction, discord.Embed(title="⏹️ Stopped", description="Music stopped and queue cleared", color=helper.ERROR_COLOR))

@controls_group.command(name="shuffle", description="Toggle shuffle mode")
@handle_errors
async def controls_shuffle(interaction: discord.Interaction):
    enabled = queue_manager.toggle_shuffle(interaction.guild_id)
    embed = discord.Embed(title="🔀 Shuffle", description=f"Shuffle is now **{'ON' if enabled else 'OFF'}**", color=helper.PRIMARY_COLOR if enabled else helper.ERROR_COLOR)
    await respond(interaction, embed)

@controls_group.command(name="loop", description="Toggle loop mode")
@handle_errors
async def controls_loop(interaction: discord.Interaction):
    enabled = queue_manager.toggle_loop(interaction.guild_id)
    embed = discord.Embed(title="🔁 Loop", description=f"Loop is now **{'ON' if enabled else 'OFF'}**", color=helper.PRIMARY_COLOR if enabled else helper.ERROR_COLOR)
    await respond(interaction, embed)

@controls_group.command(name="nowplaying", description="Show the currently playing song")
@handle_errors
async def controls_nowplaying(interaction: discord.Interaction):
    guild_id = interaction.guild_id
    song = queue_manager.get_current_song(guild_id)
    if not song:
        return await respond(interaction, helper.error_embed("No music is currently playing!", title="❌ Nothing Playing"))
    await respond(interaction, helper.now_playing_status_embed(queue_manager.get_queue(guild_id), song))

@controls_group.command(name="queue", description="Show the current queue")
@app_commands.describe(page="Page number to show")
@handle_errors
async def controls_queue(interaction: discord.Interaction, page: app_commands.Range[int, 1] = 1):
    view = helper.QueueView(queue_manager, interaction.guild_id, interaction.user, page - 1, bot_config.QUEUE_PAGE_SIZE)
    embed = view.build_embed()
    view.update_components()
    await interaction.response.send_message(embed=embed, view=view)
    view.message = await interaction.original_response()

bot.tree.add_command(controls_group)

#########################################
# Shutdown
#########################################

async def _initiate_shutdown() -> None:
    if getattr(bot, "_is_shutting_down", False): return
    bot._is_shutting_down = True
    logger.critical("Shutdown initiated by system")
    for guild_id in list(queue_manager.queues):
        try: await music_player.cleanup(guild_id)
        except Exception as e: logger.error(f"Error cleaning up guild {guild_id}: {e}")
    await bot.close()

#########################################
# Main Execution
#########################################
if __name__ == "__main__":
    if not os.getenv("DISCORD_TOKEN"):
        logger.critical("Missing environment variable: DISCORD_TOKEN"); sys.exit(1)
    if not spotify_api.is_configured:
        logger.warning("Spotify credentials not found in .env. Spotify links will not work.")

    def handle_shutdown_signal(signum, _frame):
        logger.info("Graceful shutdown initiated by signal")
        if not getattr(bot, "_is_shutting_down", False):
            bot.loop.create_task(_initiate_shutdown())

    signal.signal(signal.SIGINT, handle_shutdown_signal)
    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    try:
        bot.run(os.getenv("DISCORD_TOKEN"))
    except discord.LoginFailure: logger.critical("Invalid token"); sys.exit(1)
    finally:
        logger.info("Shutdown complete")
