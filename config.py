# -----------------------------------------------------------------------------------
# config.py - Configuration file for the Discord Music Bot
# -----------------------------------------------------------------------------------
# Instructions:
# 1. Put DISCORD_TOKEN, SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET in a .env file.
# 2. Optionally, adjust any of the settings below to your preference.
# To find your Server ID, enable Developer Mode in Discord settings,
# then right-click your server icon and select "Copy Server ID".
# -----------------------------------------------------------------------------------

# --- COMMAND REGISTRATION ---
# If set, slash commands are synced to this server only (updates show up instantly).
# Leave as None to register them globally (can take up to an hour to propagate).
GUILD_ID = None # or e.g., 123456789012345678

# --- STORAGE ---
# Directory where saved playlists are written as JSON files.
PLAYLISTS_DIR = "data/playlists"

# Log file path. Set to None to log to the console only.
LOG_FILE = "bot.log"

# --- QUEUE DISPLAY ---
# Songs shown per page of /controls queue.
QUEUE_PAGE_SIZE = 10

# Songs listed as "up next" in the queue status.
UP_NEXT_COUNT = 5

# --- SEARCH ---
# How many songs /play adds when searching by artist.
ARTIST_SEARCH_LIMIT = 5

# Default number of results fetched for a YouTube search.
SEARCH_RESULT_LIMIT = 5

# Pause (in seconds) between YouTube searches while converting a Spotify playlist.
SPOTIFY_SEARCH_DELAY = 0.1

# --- PLAYBACK ---
# Playback volume (from 0.0 to 1.0).
MUSIC_BOT_VOLUME = 0.5

# Seconds to wait for the voice connection to become ready.
VOICE_CONNECT_TIMEOUT = 30

# Seconds to wait before starting the next song once one finishes.
AUTO_ADVANCE_DELAY = 1

# Seconds to wait before recovering from a player or stream error.
RECOVERY_DELAY = 2

# Attempts made to open a YouTube audio stream before giving up.
STREAM_RETRIES = 3

# A song that stops almost immediately is retried this many times before it is skipped.
MAX_PLAYBACK_RETRIES = 2
MIN_PLAY_SECONDS = 2

# Leave the voice channel when no listeners remain.
AUTO_DISCONNECT_WHEN_ALONE = True
