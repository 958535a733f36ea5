# tools.py
import sys
from dataclasses import dataclass
from functools import wraps
from typing import Any, Optional

import discord
from discord.ext import commands
from loguru import logger

ERROR_COLOR = discord.Color.from_str("#FF6B6B")

# --- LOGGER CONFIGURATION ---
def configure_logging(log_file: Optional[str] = "bot.log") -> None:
    """Routes loguru output to a colourised console sink and a rotating log file."""
    logger.remove()
    logger.add(sys.stdout, colorize=True, format="<green>{time:MM-DD-YYYY HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>", enqueue=True)
    if log_file:
        logger.add(log_file, rotation="10 MB", compression="zip", enqueue=True, level="INFO")

# --- ERRORS ---
class MusicBotError(Exception):
    """Base class for errors that are reported back to the user."""

class SearchError(MusicBotError):
    pass

class SpotifyError(MusicBotError):
    pass

class PlaylistError(MusicBotError):
    pass

class PlaybackError(MusicBotError):
    pass

async def respond(interaction: discord.Interaction, embed: discord.Embed, **kwargs) -> None:
    """Replies to an interaction, or edits the original response once it was deferred or sent."""
    if interaction.response.is_done():
        kwargs.pop('ephemeral', None)
        await interaction.edit_original_response(embed=embed, **kwargs)
    else:
        await interaction.response.send_message(embed=embed, **kwargs)

def handle_errors(func: Any) -> Any:
    """A decorator for centralized error handling and logging."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        interaction = None
        # The interaction is the first argument of a command callback, or the second for methods
        if args:
            if isinstance(args[0], (commands.Context, discord.Interaction)):
                interaction = args[0]
            elif len(args) > 1 and isinstance(args[1], (commands.Context, discord.Interaction)):
                interaction = args[1]
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}", exc_info=True)
            if interaction is None: return
            embed = discord.Embed(title="❌ Error", description="An error occurred while executing the command.", color=ERROR_COLOR)
            try:
                if isinstance(interaction, discord.Interaction): await respond(interaction, embed)
                else: await interaction.send(embed=embed, delete_after=15)
            except Exception as send_e: logger.error(f"Failed to send error message: {send_e}")
    return wrapper

@dataclass
class BotConfig:
    """Holds all configuration variables for the music bot."""
    # Slash commands are synced to this guild when set, globally otherwise
    GUILD_ID: Optional[int] = None

    # Storage
    PLAYLISTS_DIR: str = "data/playlists"
    LOG_FILE: Optional[str] = "bot.log"

    # Queue display
    QUEUE_PAGE_SIZE: int = 10
    UP_NEXT_COUNT: int = 5

    # Search
    SEARCH_RESULT_LIMIT: int = 5
    ARTIST_SEARCH_LIMIT: int = 5
    SPOTIFY_SEARCH_DELAY: float = 0.1

    # Playback
    MUSIC_BOT_VOLUME: float = 0.5
    VOICE_CONNECT_TIMEOUT: float = 30.0
    AUTO_ADVANCE_DELAY: float = 1.0
    RECOVERY_DELAY: float = 2.0
    STREAM_RETRIES: int = 3
    MAX_PLAYBACK_RETRIES: int = 2
    MIN_PLAY_SECONDS: float = 2.0
    AUTO_DISCONNECT_WHEN_ALONE: bool = True

    @staticmethod
    def from_config_module(config_module: Any) -> 'BotConfig':
        """Creates a BotConfig instance from the config.py module."""
        defaults = BotConfig()
        return BotConfig(
            GUILD_ID=getattr(config_module, 'GUILD_ID', defaults.GUILD_ID),

            PLAYLISTS_DIR=getattr(config_module, 'PLAYLISTS_DIR', defaults.PLAYLISTS_DIR),
            LOG_FILE=getattr(config_module, 'LOG_FILE', defaults.LOG_FILE),

            QUEUE_PAGE_SIZE=getattr(config_module, 'QUEUE_PAGE_SIZE', defaults.QUEUE_PAGE_SIZE),
            UP_NEXT_COUNT=getattr(config_module, 'UP_NEXT_COUNT', defaults.UP_NEXT_COUNT),

            SEARCH_RESULT_LIMIT=getattr(config_module, 'SEARCH_RESULT_LIMIT', defaults.SEARCH_RESULT_LIMIT),
            ARTIST_SEARCH_LIMIT=getattr(config_module, 'ARTIST_SEARCH_LIMIT', defaults.ARTIST_SEARCH_LIMIT),
            SPOTIFY_SEARCH_DELAY=getattr(config_module, 'SPOTIFY_SEARCH_DELAY', defaults.SPOTIFY_SEARCH_DELAY),

            MUSIC_BOT_VOLUME=getattr(config_module, 'MUSIC_BOT_VOLUME', defaults.MUSIC_BOT_VOLUME),
            VOICE_CONNECT_TIMEOUT=getattr(config_module, 'VOICE_CONNECT_TIMEOUT', defaults.VOICE_CONNECT_TIMEOUT),
            AUTO_ADVANCE_DELAY=getattr(config_module, 'AUTO_ADVANCE_DELAY', defaults.AUTO_ADVANCE_DELAY),
            RECOVERY_DELAY=getattr(config_module, 'RECOVERY_DELAY', defaults.RECOVERY_DELAY),
            STREAM_RETRIES=getattr(config_module, 'STREAM_RETRIES', defaults.STREAM_RETRIES),
            MAX_PLAYBACK_RETRIES=getattr(config_module, 'MAX_PLAYBACK_RETRIES', defaults.MAX_PLAYBACK_RETRIES),
            MIN_PLAY_SECONDS=getattr(config_module, 'MIN_PLAY_SECONDS', defaults.MIN_PLAY_SECONDS),
            AUTO_DISCONNECT_WHEN_ALONE=getattr(config_module, 'AUTO_DISCONNECT_WHEN_ALONE', defaults.AUTO_DISCONNECT_WHEN_ALONE),
        )
