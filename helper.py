# helper.py
import math
from datetime import datetime
from typing import Any, List, Optional

import discord
from loguru import logger

from queue_manager import AddResult, GuildQueue, PlaylistSummary, QueueManager, SavedPlaylist, Song
from tools import ERROR_COLOR

PRIMARY_COLOR = discord.Color.from_str("#4ECDC4")
WARNING_COLOR = discord.Color.from_str("#FFA500")
QUEUE_COLOR = discord.Color.from_str("#45B7D1")
SPOTIFY_COLOR = discord.Color.from_str("#1DB954")
INFO_COLOR = discord.Color.from_str("#0099FF")
SUCCESS_COLOR = discord.Color.from_str("#00D166")

def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit - 1] + "…"

def _format_date(iso_timestamp: str) -> str:
    try: return discord.utils.format_dt(datetime.fromisoformat(iso_timestamp), style="d")
    except (TypeError, ValueError): return iso_timestamp or "Unknown"

def song_link(song: Song) -> str:
    return f"**[{_truncate(song.title, 200)}]({song.url})**"

def error_embed(description: str, title: str = "❌ Error") -> discord.Embed:
    return discord.Embed(title=title, description=description, color=ERROR_COLOR)

#########################################
# Playback embeds
#########################################

def now_playing_embed(song: Song, queue_position: Optional[int] = None) -> discord.Embed:
    embed = discord.Embed(title="🎵 Now Playing", description=song_link(song), color=PRIMARY_COLOR, timestamp=discord.utils.utcnow())
    embed.add_field(name="⏱️ Duration", value=song.duration or "Unknown", inline=True)
    embed.add_field(name="📺 Channel", value=song.channel or "Unknown", inline=True)
    embed.add_field(name="👤 Requested by", value=song.requested_by or "Unknown", inline=True)
    if song.thumbnail: embed.set_thumbnail(url=song.thumbnail)
    if queue_position is not None:
        embed.add_field(name="📍 Position in Queue", value=str(queue_position + 1), inline=True)
    return embed

def added_to_queue_embed(song: Song, position: int) -> discord.Embed:
    embed = now_playing_embed(song)
    embed.title = "🎵 Added to Queue"
    embed.add_field(name="📍 Position in Queue", value=str(position), inline=True)
    return embed

def now_playing_status_embed(queue: GuildQueue, song: Song) -> discord.Embed:
    embed = now_playing_embed(song, queue.current_index)
    if queue.is_playing: status = "▶️ Playing"
    elif queue.is_paused: status = "⏸️ Paused"
    else: status = "⏹️ Stopped"
    embed.add_field(name="🎵 Status", value=status, inline=True)
    embed.add_field(name="📋 Queue Position", value=f"{queue.current_index + 1}/{len(queue.songs)}", inline=True)
    modes = [label for enabled, label in ((queue.loop, "🔁 Loop"), (queue.shuffle, "🔀 Shuffle")) if enabled]
    if modes: embed.add_field(name="⚙️ Modes", value=" | ".join(modes), inline=True)
    return embed

def total_pages(song_count: int, per_page: int) -> int:
    return max(1, math.ceil(song_count / per_page))

def queue_embed(queue: GuildQueue, current_song: Optional[Song], page: int = 0, per_page: int = 10) -> discord.Embed:
    """Renders one page of the queue; out-of-range pages are clamped."""
    embed = discord.Embed(title="📋 Music Queue", color=QUEUE_COLOR, timestamp=discord.utils.utcnow())
    if not queue.songs:
        embed.description = "Queue is empty! Use `/play` to add songs."
        return embed

    if current_song:
        embed.add_field(
            name="▶️ Currently Playing",
            value=_truncate(f"{song_link(current_song)}\nDuration: {current_song.duration} | Requested by: {current_song.requested_by or 'Unknown'}", 1024),
            inline=False,
        )

    pages = total_pages(len(queue.songs), per_page)
    page = min(max(page, 0), pages - 1)
    start = page * per_page
    lines = []
    for index, song in enumerate(queue.songs[start:start + per_page], start=start):
        if index == queue.current_index: prefix = "▶️"
        elif index == queue.current_index + 1: prefix = "🔜"
        else: prefix = f"{index + 1}."
        lines.append(f"{prefix} {song_link(song)}\n   Duration: {song.duration} | By: {song.requested_by or 'Unknown'}")
    embed.description = _truncate("\n\n".join(lines), 4096)

    footer = f"Page {page + 1}/{pages} | {len(queue.songs)} songs total"
    if queue.loop: footer += " | 🔁 Loop ON"
    if queue.shuffle: footer += " | 🔀 Shuffle ON"
    embed.set_footer(text=footer)
    return embed

def queue_finished_embed() -> discord.Embed:
    return discord.Embed(title="🎵 Queue Finished", description="No more songs in the queue!", color=ERROR_COLOR, timestamp=discord.utils.utcnow())

def encoding_error_embed() -> discord.Embed:
    embed = discord.Embed(title="❌ Audio Encoding Error", description="The bot cannot encode audio. This is a server configuration issue.", color=ERROR_COLOR, timestamp=discord.utils.utcnow())
    embed.add_field(name="Error", value="Missing Opus encoder", inline=False)
    embed.add_field(name="Solution", value="Bot admin needs to install audio dependencies", inline=False)
    return embed

def playback_failed_embed(song: Song) -> discord.Embed:
    return error_embed(f"Could not play {song_link(song)}. Use `/controls skip` to move on.", title="❌ Playback Error")

#########################################
# Search / import embeds
#########################################

def songs_added_embed(title: str, description: str, songs: List[Song], add_result: AddResult, requested_by: str, color: discord.Color = PRIMARY_COLOR) -> discord.Embed:
    embed = discord.Embed(title=title, description=description, color=color, timestamp=discord.utils.utcnow())
    embed.add_field(name="📍 Queue Position", value=f"{add_result.start_index + 1} - {add_result.end_index + 1}", inline=True)
    embed.add_field(name="👤 Requested by", value=requested_by, inline=True)
    preview = "\n".join(f"{i}. **{_truncate(song.title, 80)}** ({song.duration})" for i, song in enumerate(songs[:5], start=1))
    if len(songs) > 5:
        embed.add_field(name="🎵 Songs Preview", value=_truncate(f"{preview}\n... and {len(songs) - 5} more", 1024), inline=False)
    elif preview:
        embed.add_field(name="🎵 Songs Added", value=_truncate(preview, 1024), inline=False)
    return embed

def spotify_loading_embed() -> discord.Embed:
    return discord.Embed(title="🔄 Processing Spotify Playlist", description="Fetching playlist and converting to YouTube... This may take a moment.", color=SPOTIFY_COLOR)

def spotify_playlist_embed(playlist: Any, add_result: AddResult, requested_by: str) -> discord.Embed:
    embed = discord.Embed(title="🎵 Spotify Playlist Added", description=f"**{playlist.name}**", color=SPOTIFY_COLOR, timestamp=discord.utils.utcnow())
    embed.add_field(name="📊 Conversion Stats", value=f"{playlist.converted_count}/{playlist.original_count} tracks converted", inline=True)
    embed.add_field(name="📍 Queue Position", value=f"{add_result.start_index + 1} - {add_result.end_index + 1}", inline=True)
    embed.add_field(name="👤 Requested by", value=requested_by, inline=True)
    rate = playlist.converted_count / playlist.original_count * 100 if playlist.original_count else 0.0
    embed.add_field(name="✅ Success Rate", value=f"{rate:.1f}%", inline=True)

    failed = playlist.failed_tracks
    if 0 < len(failed) <= 5:
        failed_list = "\n".join(f"• {', '.join(track.artists)} - {track.title}" for track in failed)
        embed.add_field(name="⚠️ Tracks Not Found", value=_truncate(failed_list, 1024), inline=False)
    elif len(failed) > 5:
        embed.add_field(name="⚠️ Tracks Not Found", value=f"{len(failed)} tracks could not be found on YouTube", inline=False)
    return embed

#########################################
# Playlist embeds
#########################################

def playlist_saved_embed(name: str, song_count: int, saved_by: str) -> discord.Embed:
    embed = discord.Embed(title="💾 Playlist Saved", description=f"Playlist **\"{name}\"** has been saved successfully!", color=PRIMARY_COLOR, timestamp=discord.utils.utcnow())
    embed.add_field(name="🎵 Songs Count", value=str(song_count), inline=True)
    embed.add_field(name="👤 Saved by", value=saved_by, inline=True)
    return embed

def playlist_loaded_embed(playlist: SavedPlaylist, add_result: AddResult, loaded_by: str) -> discord.Embed:
    embed = discord.Embed(title="📋 Playlist Loaded", description=f"Loaded playlist **\"{playlist.name}\"**", color=PRIMARY_COLOR, timestamp=discord.utils.utcnow())
    embed.add_field(name="🎵 Songs Count", value=str(len(playlist.songs)), inline=True)
    embed.add_field(name="📍 Queue Position", value=f"{add_result.start_index + 1} - {add_result.end_index + 1}", inline=True)
    embed.add_field(name="👤 Loaded by", value=loaded_by, inline=True)
    embed.add_field(name="📅 Created", value=_format_date(playlist.created_at), inline=True)
    return embed

def playlist_list_embed(playlists: List[PlaylistSummary]) -> discord.Embed:
    if not playlists:
        return discord.Embed(title="📋 No Playlists", description="No saved playlists found for this server.\nUse `/playlist save <name>` to save your first playlist!", color=WARNING_COLOR)
    lines = [f"{i}. **{p.name}**\n   🎵 {p.song_count} songs | 📅 {_format_date(p.created_at)}" for i, p in enumerate(playlists, start=1)]
    embed = discord.Embed(title="📋 Saved Playlists", description=_truncate("\n\n".join(lines), 4096), color=QUEUE_COLOR, timestamp=discord.utils.utcnow())
    embed.set_footer(text=f"Total: {len(playlists)} playlists")
    return embed

def song_removed_embed(song: Song, position: int) -> discord.Embed:
    embed = discord.Embed(title="🗑️ Song Removed", description=f"Removed **{song.title}** from position {position}", color=WARNING_COLOR, timestamp=discord.utils.utcnow())
    embed.add_field(name="👤 Originally requested by", value=song.requested_by or "Unknown", inline=True)
    embed.add_field(name="⏱️ Duration", value=song.duration or "Unknown", inline=True)
    if song.thumbnail: embed.set_thumbnail(url=song.thumbnail)
    return embed

#########################################
# Views
#########################################

class QueueView(discord.ui.View):
    """Prev/Next buttons that re-render the queue embed for the requesting member."""

    def __init__(self, queue_manager: QueueManager, guild_id: int, author: Any, page: int = 0, per_page: int = 10):
        super().__init__(timeout=300.0)
        self.queue_manager, self.guild_id, self.author = queue_manager, guild_id, author
        self.current_page, self.per_page, self.message = page, per_page, None
        self.update_components()

    @property
    def total_pages(self) -> int:
        return total_pages(len(self.queue_manager.get_queue(self.guild_id).songs), self.per_page)

    def build_embed(self) -> discord.Embed:
        self.current_page = min(max(self.current_page, 0), self.total_pages - 1)
        queue = self.queue_manager.get_queue(self.guild_id)
        return queue_embed(queue, self.queue_manager.get_current_song(self.guild_id), self.current_page, self.per_page)

    def update_components(self):
        self.clear_items()
        if self.total_pages > 1:
            self.add_item(self.create_nav_button("⬅️ Prev", "prev_page", self.current_page == 0))
            self.add_item(self.create_nav_button("Next ➡️", "next_page", self.current_page >= self.total_pages - 1))

    def create_nav_button(self, label: str, custom_id: str, disabled: bool) -> discord.ui.Button:
        button = discord.ui.Button(label=label, style=discord.ButtonStyle.secondary, custom_id=custom_id, disabled=disabled)
        async def nav_callback(interaction: discord.Interaction):
            if interaction.user != self.author: return await interaction.response.send_message("You can't control this.", ephemeral=True)
            if interaction.data['custom_id'] == 'prev_page': self.current_page -= 1
            else: self.current_page += 1
            embed = self.build_embed()
            self.update_components()
            await interaction.response.edit_message(embed=embed, view=self)
        button.callback = nav_callback
        return button

    async def on_timeout(self):
        if self.message:
            for item in self.children: item.disabled = True
            try: await self.message.edit(view=self)
            except discord.NotFound: pass
            except discord.HTTPException as e: logger.warning(f"Could not disable queue view: {e}")
