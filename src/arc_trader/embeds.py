"""Embed builder utilities for consistent formatting."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List

import discord

from .database import Listing, ListingStatus

FIELD_VALUE_LIMIT = 1024
LINE_CUT = 80
LINES_PER_MESSAGE = 10

HELP_TEXT = "\n".join(
    [
        "**ARC Raiders Trade Market – How it works**",
        "• Use **/trade post** to publish a card (HAVE → WANT).",
        "• Use **/trade search q:** to find items/perks quickly.",
        "• Use **/trade list** to see your cards, a member's, or everyone's latest.",
        "• Buttons let you contact seller, close, or mark traded.",
        "• Mods can close/mark any card; posts can auto-expire.",
        "Safety: avoid upfront payments; trade in-game; report scammers to mods.",
    ]
)


def truncate(text: str | None, limit: int) -> str:
    return (text or "")[:limit]


def _timestamp(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


def info_embed(title: str, description: str | None = None, *, color: int = 0x2b2d31) -> discord.Embed:
    embed = discord.Embed(title=title, description=description or "", color=color)
    embed.set_footer(text="ARC Trade Market")
    return embed


def listing_embed(listing: Listing, author_tag: str) -> discord.Embed:
    """Render a listing as a HAVE → WANT card."""

    embed = discord.Embed(title="HAVE → WANT", timestamp=_timestamp(listing.created_at))
    embed.add_field(name="Have", value=truncate(listing.have, FIELD_VALUE_LIMIT), inline=False)
    embed.add_field(name="Want", value=truncate(listing.want, FIELD_VALUE_LIMIT), inline=False)
    optional_fields = (
        ("Price/Terms", listing.price),
        ("Platform/Region", listing.platform),
        ("Notes", listing.notes),
    )
    for name, value in optional_fields:
        if value:
            embed.add_field(name=name, value=truncate(value, FIELD_VALUE_LIMIT), inline=False)
    if listing.expires_at is not None:
        embed.add_field(
            name="Expires",
            value=discord.utils.format_dt(_timestamp(listing.expires_at), style="R"),
            inline=False,
        )
    embed.set_footer(text=f"#{listing.id} • {author_tag}")
    return embed


def status_embed(listing_id: int, status: ListingStatus, *, now: int) -> discord.Embed:
    if status is ListingStatus.TRADED:
        description = f"✅ Trade #{listing_id} marked as **TRADED**"
    elif status is ListingStatus.CLOSED:
        description = f"🛑 Trade #{listing_id} **CLOSED**"
    else:
        description = f"⌛ Trade #{listing_id} **{status.value.upper()}**"
    return discord.Embed(description=description, timestamp=_timestamp(now))


def _bold_cut(text: str) -> str:
    return f"**{truncate(text, LINE_CUT)}**"


def format_listing_line(listing: Listing, *, show_owner: bool = False) -> str:
    parts = [f"#{listing.id}"]
    if show_owner:
        parts.append(f"<@{listing.owner_id}>")
    parts.append(f"**Have:** {_bold_cut(listing.have)} → **Want:** {_bold_cut(listing.want)}")
    if listing.price:
        parts.append(listing.price)
    return " • ".join(parts)


def chunk_lines(lines: Iterable[str], per: int = LINES_PER_MESSAGE) -> List[str]:
    """Join lines into message bodies of at most ``per`` lines each."""

    entries = list(lines)
    return ["\n".join(entries[start : start + per]) for start in range(0, len(entries), per)]
