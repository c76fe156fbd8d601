"""Discord bot entrypoint and command registration."""
from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

import discord
from discord import app_commands
from discord.ext import commands, tasks

from .config import Settings, load_settings
from .cooldowns import RateLimiter
from .database import Listing, ListingStatus, ListingStore, now_ms, validate_have_want
from .embeds import (
    HELP_TEXT,
    chunk_lines,
    format_listing_line,
    info_embed,
    listing_embed,
    status_embed,
    truncate,
)
from .errors import (
    Forbidden,
    NotFound,
    PreconditionFailed,
    StorageUnavailable,
    TradeError,
    ValidationError,
)

_log = logging.getLogger(__name__)
LIST_PAGE_SIZE = 20
MAX_EXPIRES_HOURS = 24 * 30
HOUR_MS = 60 * 60 * 1000
CHOICE_NAME_LIMIT = 100
PERSISTENT_VIEW_BATCH = 100


def _format_duration(seconds: int) -> str:
    delta = timedelta(seconds=seconds)
    days = delta.days
    hours, remainder = divmod(delta.seconds, 3600)
    minutes, secs = divmod(remainder, 60)

    if days:
        return f"{days} day(s)"
    if hours:
        return f"{hours} hour(s)"
    if minutes:
        return f"{minutes} minute(s)"
    return f"{secs} second(s)"


def _expires_at(created_at: int, expires_hours: Optional[int]) -> Optional[int]:
    if not expires_hours:
        return None
    return created_at + expires_hours * HOUR_MS


def _format_ref(channel_id: int, message_id: int) -> str:
    return f"{channel_id}:{message_id}"


def _parse_ref(ref: Optional[str]) -> Tuple[int, int] | None:
    """Split a ``channel_id:message_id`` reference, ignoring malformed ones."""

    if not ref:
        return None
    channel_id, sep, message_id = ref.partition(":")
    if not sep or not channel_id.isdigit() or not message_id.isdigit():
        return None
    return int(channel_id), int(message_id)


def _is_moderator(interaction: discord.Interaction) -> bool:
    permissions = getattr(interaction.user, "guild_permissions", None)
    return bool(getattr(permissions, "manage_messages", False))


def _error_message(exc: TradeError) -> str:
    if isinstance(exc, NotFound):
        return f"Trade #{exc.listing_id} not found (maybe closed/expired)."
    if isinstance(exc, Forbidden):
        return "Only the seller or a mod can change this trade."
    if isinstance(exc, PreconditionFailed):
        return f"Trade #{exc.listing_id} is already {exc.status}."
    if isinstance(exc, StorageUnavailable):
        return "The trade board is unavailable right now. Try again in a moment."
    if isinstance(exc, ValidationError):
        return f"{exc.message}."
    return exc.message


async def _report_error(interaction: discord.Interaction, error: Exception) -> None:
    original = getattr(error, "original", error)
    if isinstance(original, TradeError):
        if isinstance(original, StorageUnavailable):
            _log.warning("Trade storage unavailable: %s", original)
        embed = info_embed("⚠️ Trade not updated", _error_message(original))
    else:
        _log.error("Unhandled error while handling an interaction", exc_info=original)
        embed = info_embed("⚠️ Error", "Something went wrong. Try again in a moment.")

    try:
        if interaction.response.is_done():
            await interaction.followup.send(embed=embed, ephemeral=True)
        else:
            await interaction.response.send_message(embed=embed, ephemeral=True)
    except discord.HTTPException:
        _log.warning("Failed to report an error for interaction %s", interaction.id)


async def _enforce_cooldown(interaction: discord.Interaction) -> bool:
    """Reply and return ``True`` when the member is still on cooldown."""

    client = interaction.client
    window = client.settings.cooldown_seconds * 1000
    now = client.clock()
    actor_id = str(interaction.user.id)
    if client.cooldowns.try_acquire(actor_id, now, window):
        return False

    wait_seconds = math.ceil(client.cooldowns.retry_after(actor_id, now, window) / 1000)
    await interaction.response.send_message(
        embed=info_embed(
            "⏳ Slow down",
            f"Slow down a bit, you can use this again in ~{_format_duration(wait_seconds)}.",
        ),
        ephemeral=True,
    )
    return True


async def _send_listing_lines(
    interaction: discord.Interaction, title: str, lines: List[str], header: str = ""
) -> None:
    chunks = chunk_lines(lines)
    await interaction.response.send_message(
        embed=info_embed(title, f"{header}{chunks[0]}"), ephemeral=True
    )
    for chunk in chunks[1:]:
        await interaction.followup.send(embed=info_embed(title, chunk), ephemeral=True)


class TraderBot(commands.Bot):
    """Discord bot that exposes the trade board slash commands."""

    def __init__(
        self,
        settings: Settings,
        store: ListingStore,
        *,
        cooldowns: RateLimiter | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        intents = discord.Intents.default()
        super().__init__(command_prefix=commands.when_mentioned_or("!"), intents=intents)
        self.settings = settings
        self.store = store
        self.cooldowns = cooldowns or RateLimiter()
        self.clock = clock
        self.tree.add_command(ListingGroup(self))
        self.tree.error(self.on_app_command_error)

    async def setup_hook(self) -> None:
        await self.store.setup()
        await self.register_persistent_views()
        self.sweep_expired_listings.change_interval(seconds=self.settings.sweep_interval_seconds)
        self.sweep_expired_listings.start()

        if self.settings.guild_id:
            guild = discord.Object(id=self.settings.guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            _log.info("Slash commands synced for guild %s", self.settings.guild_id)
        else:
            await self.tree.sync()
            _log.info("Slash commands synced")

    async def register_persistent_views(self) -> None:
        """Re-attach card buttons to every active listing posted before a restart."""

        offset = 0
        registered = 0
        while True:
            listings = await self.store.list_active(PERSISTENT_VIEW_BATCH, offset)
            for listing in listings:
                ref = _parse_ref(listing.external_ref)
                if ref is None:
                    continue
                _, message_id = ref
                self.add_view(ListingCardView(self, listing.id), message_id=message_id)
                registered += 1
            if len(listings) < PERSISTENT_VIEW_BATCH:
                break
            offset += PERSISTENT_VIEW_BATCH
        _log.info("Registered %s trade card view(s)", registered)

    async def close(self) -> None:
        self.sweep_expired_listings.cancel()
        await super().close()

    async def on_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        await _report_error(interaction, error)

    @tasks.loop(minutes=5)
    async def sweep_expired_listings(self) -> None:
        try:
            expired = await self.store.sweep_expired(self.clock())
        except StorageUnavailable:
            _log.warning("Skipping expiry sweep; trade storage unavailable", exc_info=True)
            return
        if expired:
            _log.info("Expired %s trade listing(s)", expired)

    @sweep_expired_listings.before_loop
    async def _before_sweep(self) -> None:
        await self.wait_until_ready()

    async def retire_card(self, listing: Listing) -> None:
        """Replace a listing's posted card with its final status, if it can be found."""

        ref = _parse_ref(listing.external_ref)
        if ref is None:
            return
        channel_id, message_id = ref
        try:
            channel = self.get_channel(channel_id) or await self.fetch_channel(channel_id)
            await channel.get_partial_message(message_id).edit(
                embed=status_embed(listing.id, listing.status, now=self.clock()), view=None
            )
        except discord.HTTPException:
            _log.warning("Failed to update the card for trade %s", listing.id)


class ListingGroup(app_commands.Group):
    def __init__(self, bot: TraderBot):
        super().__init__(name="trade", description="Post, search, or manage ARC Raiders trades")
        self.bot = bot

    @app_commands.command(name="post", description="Create a trade card (have → want)")
    @app_commands.describe(
        have="What you are offering (weapon/mod/material)",
        want="What you want in return",
        price="Optional: price or terms",
        platform="Platform/server (e.g., Steam/PS, Region, Mode)",
        notes="Any extra info (rolls, tiers, caps, etc.)",
        expires_hours="Auto-expire after N hours (e.g., 24)",
    )
    async def post(
        self,
        interaction: discord.Interaction,
        have: str,
        want: str,
        price: Optional[str] = None,
        platform: Optional[str] = None,
        notes: Optional[str] = None,
        expires_hours: Optional[app_commands.Range[int, 1, MAX_EXPIRES_HOURS]] = None,
    ):
        have = have.strip()
        want = want.strip()
        validate_have_want(have, want)
        if await _enforce_cooldown(interaction):
            return

        listing = await self.bot.store.create(
            str(interaction.user.id),
            have,
            want,
            price=price,
            platform=platform,
            notes=notes,
            expires_at=_expires_at(self.bot.clock(), expires_hours),
        )
        await interaction.response.send_message(
            embed=listing_embed(listing, str(interaction.user)),
            view=ListingCardView(self.bot, listing.id),
        )
        message = await interaction.original_response()
        await self.bot.store.attach_external_ref(
            listing.id, _format_ref(message.channel.id, message.id)
        )
        _log.info("Trade #%s posted by %s", listing.id, interaction.user.id)

    @app_commands.command(name="search", description="Search active trades")
    @app_commands.describe(q="Keyword (item name, perk, etc.)")
    async def search(self, interaction: discord.Interaction, q: str):
        results = await self.bot.store.search(q)
        if not results:
            await interaction.response.send_message(
                embed=info_embed("🔍 No matches", "No active trades matched your search."),
                ephemeral=True,
            )
            return

        lines = [format_listing_line(listing) for listing in results]
        await _send_listing_lines(
            interaction, "🔍 Search results", lines, header=f"Found **{len(results)}** matches:\n\n"
        )

    @search.autocomplete("q")
    async def search_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> List[app_commands.Choice[str]]:
        names = await self.bot.store.suggest(current)
        return [
            app_commands.Choice(name=truncate(name, CHOICE_NAME_LIMIT), value=truncate(name, CHOICE_NAME_LIMIT))
            for name in names
        ]

    @app_commands.command(name="list", description="List your active trades, a member's, or the latest")
    @app_commands.describe(
        user="Whose trades? default: you",
        everyone="Show the latest trades from everyone instead",
        page="Page of the latest trades",
    )
    async def list_listings(
        self,
        interaction: discord.Interaction,
        user: Optional[discord.User] = None,
        everyone: bool = False,
        page: app_commands.Range[int, 1, 50] = 1,
    ):
        if everyone:
            listings = await self.bot.store.list_active(LIST_PAGE_SIZE, (page - 1) * LIST_PAGE_SIZE)
            empty_message = "No active trades yet." if page == 1 else "No trades on that page."
            title = "📋 Latest trades"
        else:
            target = user or interaction.user
            listings = await self.bot.store.list_by_owner(str(target.id), LIST_PAGE_SIZE)
            if target.id == interaction.user.id:
                empty_message = "You have no active trades."
            else:
                empty_message = f"{target.display_name} has no active trades."
            title = f"📋 Trades by {target.display_name}"

        if not listings:
            await interaction.response.send_message(
                embed=info_embed(title, empty_message), ephemeral=True
            )
            return

        lines = [format_listing_line(listing, show_owner=True) for listing in listings]
        await _send_listing_lines(interaction, title, lines)

    @app_commands.command(name="close", description="Close one of your trades by ID")
    @app_commands.rename(listing_id="id")
    @app_commands.describe(listing_id="Trade ID")
    async def close(self, interaction: discord.Interaction, listing_id: int):
        if await _enforce_cooldown(interaction):
            return

        listing = await self.bot.store.set_status(
            listing_id,
            str(interaction.user.id),
            _is_moderator(interaction),
            ListingStatus.CLOSED,
        )
        await interaction.response.send_message(
            embed=info_embed("🛑 Trade closed", f"Closed trade #{listing.id}."),
            ephemeral=True,
        )
        await self.bot.retire_card(listing)

    @close.autocomplete("listing_id")
    async def close_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> List[app_commands.Choice[int]]:
        listings = await self.bot.store.list_by_owner(str(interaction.user.id), 25)
        choices = []
        for listing in listings:
            label = truncate(f"#{listing.id} {listing.have} → {listing.want}", CHOICE_NAME_LIMIT)
            if current.strip().lower() in label.lower():
                choices.append(app_commands.Choice(name=label, value=listing.id))
        return choices

    @app_commands.command(name="help", description="How the market works")
    async def help(self, interaction: discord.Interaction):
        await interaction.response.send_message(content=HELP_TEXT, ephemeral=True)


class BasePersistentView(discord.ui.View):
    def __init__(self, *args, **kwargs):
        kwargs.setdefault("timeout", None)
        super().__init__(*args, **kwargs)

    async def on_error(
        self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item
    ) -> None:
        await _report_error(interaction, error)


class ListingCardView(BasePersistentView):
    def __init__(self, bot: TraderBot, listing_id: int) -> None:
        super().__init__()
        self.bot = bot
        self.listing_id = listing_id
        self.contact_button.custom_id = f"listing:{listing_id}:contact"
        self.traded_button.custom_id = f"listing:{listing_id}:traded"
        self.close_button.custom_id = f"listing:{listing_id}:close"

    async def _transition(self, interaction: discord.Interaction, target: ListingStatus) -> None:
        listing = await self.bot.store.set_status(
            self.listing_id, str(interaction.user.id), _is_moderator(interaction), target
        )
        await interaction.response.edit_message(
            embed=status_embed(listing.id, listing.status, now=self.bot.clock()), view=None
        )
        _log.info("Trade #%s set to %s by %s", listing.id, listing.status.value, interaction.user.id)

    @discord.ui.button(label="Contact Seller", style=discord.ButtonStyle.primary)
    async def contact_button(self, interaction: discord.Interaction, _: discord.ui.Button):
        listing = await self.bot.store.get(self.listing_id)
        if listing.status is not ListingStatus.ACTIVE:
            await interaction.response.send_message(
                embed=info_embed(
                    "ℹ️ Trade unavailable", f"Trade #{listing.id} is already {listing.status.value}."
                ),
                ephemeral=True,
            )
            return

        buyer = interaction.user
        try:
            owner_id = int(listing.owner_id)
            seller = self.bot.get_user(owner_id) or await self.bot.fetch_user(owner_id)
            await buyer.send(
                f"You contacted **{seller}** about trade #{listing.id}. Please discuss details here. "
                "⚠️ Avoid upfront payments; use safe in-game trades."
            )
            await seller.send(
                f"**{buyer}** is interested in your trade #{listing.id}:\n"
                f"Have: {listing.have}\nWant: {listing.want}"
            )
        except discord.HTTPException:
            _log.warning("Failed to open DMs for trade %s", listing.id)
            await interaction.response.send_message(
                embed=info_embed(
                    "📪 DMs closed", "Could not open DMs. The user may have DMs disabled."
                ),
                ephemeral=True,
            )
            return

        await interaction.response.send_message(
            embed=info_embed("📨 Seller contacted", "Opened a DM with the seller. Trade safely!"),
            ephemeral=True,
        )

    @discord.ui.button(label="Mark as Traded", style=discord.ButtonStyle.success)
    async def traded_button(self, interaction: discord.Interaction, _: discord.ui.Button):
        await self._transition(interaction, ListingStatus.TRADED)

    @discord.ui.button(label="Close", style=discord.ButtonStyle.secondary)
    async def close_button(self, interaction: discord.Interaction, _: discord.ui.Button):
        await self._transition(interaction, ListingStatus.CLOSED)


def run_bot() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = load_settings()
    bot = TraderBot(settings, ListingStore(settings.database_path))
    bot.run(settings.discord_token)


if __name__ == "__main__":
    run_bot()
