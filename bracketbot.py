#!/usr/bin/env python3
"""Discord bot running a 20-player single-elimination tournament."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Final, Literal

import boto3
import discord
from discord import app_commands
from discord.abc import Messageable
from discord.app_commands import errors as app_errors

from bracket_bot import (
    BracketError,
    Entrant,
    InvalidValueError,
    Match,
    Slot,
    TournamentStorage,
    assign_seeds,
    generate_bracket,
    record_winner,
)
from bracket_bot.bracket import (
    bracket_rounds,
    champion,
    override_slot,
    playable_matches,
    render_bracket,
)
from bracket_bot.config import read_config
from bracket_bot.demo import populate_demo_entrants
from bracket_bot.models import BRACKET_SIZE, CHAMPIONSHIP_ROUND, MATCHES_PER_ROUND
from bracket_bot.rating import fetch_player_rating
from bracket_bot.registration import register_entrant, reset_tournament

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
log = logging.getLogger("bracket-bot")

# ---------- Environment ----------
CONFIG: Final = read_config()

# ---------- Discord Setup ----------
intents = discord.Intents.default()
intents.guilds = True
intents.members = True

bot = discord.Client(intents=intents)
tree = app_commands.CommandTree(bot)

GUILD_OBJECT = (
    discord.Object(id=CONFIG.guild_id) if CONFIG.guild_id is not None else None
)


def tournament_command(*args, **kwargs):
    """Register a slash command scoped to the configured tournament guild."""

    def decorator(func):
        command_kwargs = dict(kwargs)
        if (
            GUILD_OBJECT is not None
            and "guild" not in command_kwargs
            and "guilds" not in command_kwargs
        ):
            command_kwargs["guild"] = GUILD_OBJECT
        return tree.command(*args, **command_kwargs)(func)

    return decorator


# ---------- Permission Checks ----------


def _has_admin_or_tournament_role(interaction: discord.Interaction) -> bool:
    member = interaction.user
    guild_perms = getattr(member, "guild_permissions", None)
    if getattr(guild_perms, "administrator", False):
        return True
    if CONFIG.admin_role_id is None:
        return False
    roles = getattr(member, "roles", [])
    for role in roles or []:
        if getattr(role, "id", None) == CONFIG.admin_role_id:
            return True
    return False


def require_admin_or_tournament_role():
    async def predicate(interaction: discord.Interaction) -> bool:
        if _has_admin_or_tournament_role(interaction):
            return True
        raise app_commands.CheckFailure(
            "You need administrator or tournament-admin role to run this command."
        )

    return app_commands.check(predicate)


# ---------- AWS Clients ----------
dynamodb = boto3.resource("dynamodb", region_name=CONFIG.aws_region)
table = dynamodb.Table(CONFIG.table_name) if CONFIG.table_name else None
storage = TournamentStorage(table, CONFIG.tournament_id)


# ---------- Helpers ----------
_MATCH_LABEL = re.compile(r"^R(\d+)\s*M(\d+)$")


def parse_match_label(raw: str) -> tuple[int, int]:
    """Parse ``R2M3`` style identifiers into ``(round, match_number)``."""
    value = raw.strip().upper().replace(" ", "")
    match = _MATCH_LABEL.match(value)
    if not match:
        raise InvalidValueError(
            "Use match identifiers such as R1M3 (round 1, match 3)."
        )
    round_, match_number = int(match.group(1)), int(match.group(2))
    if round_ not in MATCHES_PER_ROUND:
        raise InvalidValueError(f"Round must be between 1 and {CHAMPIONSHIP_ROUND}.")
    if not 1 <= match_number <= MATCHES_PER_ROUND[round_]:
        raise InvalidValueError(
            f"Round {round_} has matches 1 to {MATCHES_PER_ROUND[round_]}."
        )
    return round_, match_number


def parse_slot(raw: str) -> Slot:
    value = raw.strip().upper()
    if value not in ("A", "B"):
        raise InvalidValueError("Slot must be A or B.")
    return Slot(value)


def format_entrant_lines(entrants: Sequence[Entrant]) -> list[str]:
    lines: list[str] = []
    for index, entrant in enumerate(entrants, start=1):
        seed = f"#{entrant.seed}" if entrant.seed is not None else "-"
        rating = str(entrant.rating) if entrant.rating is not None else "N/A"
        civ = f" | {entrant.civilization}" if entrant.civilization else ""
        lines.append(
            f"{index}. {entrant.handle} ({entrant.name}) | Seed {seed}"
            f" | Rating {rating}{civ} | ID {entrant.entrant_id}"
        )
    return lines


def bracket_summary(matches: Sequence[Match]) -> str:
    if not matches:
        return "No bracket generated"
    decided = sum(1 for match in matches if match.is_decided)
    ready = len(playable_matches(matches))
    rounds = bracket_rounds(matches)
    current = next(
        (
            round_
            for round_, round_matches in rounds.items()
            if any(not match.is_decided for match in round_matches)
        ),
        None,
    )
    parts = [f"Decided: {decided}/{len(matches)}", f"Ready to play: {ready}"]
    if current is not None:
        parts.append(f"Current round: {rounds[current][0].round_name}")
    return " | ".join(parts)


def champion_name(matches: Sequence[Match], entrants: Sequence[Entrant]) -> str | None:
    winner_id = champion(matches)
    if winner_id is None:
        return None
    for entrant in entrants:
        if entrant.entrant_id == winner_id:
            return entrant.display()
    return f"Entrant {winner_id}"


BRACKET_EMBED_LIMIT: Final[int] = 3900


def build_bracket_embed(
    matches: Sequence[Match],
    entrants: Sequence[Entrant],
    *,
    title: str,
    requested_by: discord.abc.User | None = None,
    summary_note: str | None = None,
    shrink_completed: bool = False,
) -> discord.Embed:
    graph = render_bracket(matches, entrants, shrink_completed=shrink_completed)
    if len(graph) > BRACKET_EMBED_LIMIT:
        graph = render_bracket(matches, entrants, shrink_completed=True)
    if len(graph) > BRACKET_EMBED_LIMIT:
        graph = graph[: BRACKET_EMBED_LIMIT - 3] + "..."
    description = f"```\n{graph}\n```" if graph else "Bracket has not been generated yet."
    embed = discord.Embed(
        title=title,
        description=description,
        color=discord.Color.blurple(),
        timestamp=datetime.now(UTC),
    )
    embed.add_field(name="Summary", value=bracket_summary(matches), inline=False)
    winner = champion_name(matches, entrants)
    if winner:
        embed.add_field(name="Champion", value=winner, inline=False)
    if summary_note:
        embed.add_field(name="Note", value=summary_note, inline=False)
    if requested_by is not None:
        embed.set_footer(text=f"Updated by {requested_by}")
    return embed


async def send_ephemeral(interaction: discord.Interaction, message: str) -> None:
    if interaction.response.is_done():
        await interaction.followup.send(message, ephemeral=True)
    else:
        await interaction.response.send_message(message, ephemeral=True)


def _rating_lookup():
    return fetch_player_rating if CONFIG.rating_lookup else None


def _reseed(target: TournamentStorage) -> None:
    """Fresh seeds for a bracket that is regenerated right after."""
    assign_seeds(target, replace_bracket=True)


# ---------- Commands ----------
@app_commands.describe(
    name="Your full name",
    email="Contact email",
    handle="Your in-game username (used for rating lookup)",
    code="Tournament registration code",
    civilization="Preferred civilization (optional)",
)
@tournament_command(name="register", description="Register for the tournament")
async def register_command(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction,
    name: str,
    email: str,
    handle: str,
    code: str,
    civilization: str | None = None,
) -> None:
    try:
        storage.ensure_table()
    except RuntimeError as exc:
        await send_ephemeral(interaction, str(exc))
        return

    await interaction.response.defer(ephemeral=True)
    try:
        entrant = await asyncio.to_thread(
            register_entrant,
            storage,
            entrant_id=interaction.user.id,
            name=name,
            email=email,
            handle=handle,
            tournament_code=code,
            expected_code=CONFIG.tournament_code,
            civilization=civilization,
            rating_lookup=_rating_lookup(),
        )
    except InvalidValueError as exc:
        await send_ephemeral(interaction, str(exc))
        return

    rating = f" Rating: {entrant.rating}." if entrant.rating is not None else ""
    await send_ephemeral(
        interaction,
        f"Registered {entrant.handle} for the tournament.{rating}",
    )


@tournament_command(name="entrants", description="List registered entrants")
async def entrants_command(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction,
) -> None:
    try:
        storage.ensure_table()
    except RuntimeError as exc:
        await send_ephemeral(interaction, str(exc))
        return

    entrants = storage.list_entrants(order_by="registration")
    if not entrants:
        await send_ephemeral(interaction, "No entrants have registered yet.")
        return
    embed = discord.Embed(
        title=f"Registered Entrants ({len(entrants)}/{BRACKET_SIZE})",
        description="\n".join(format_entrant_lines(entrants)),
        color=discord.Color.teal(),
        timestamp=datetime.now(UTC),
    )
    await interaction.response.send_message(embed=embed, ephemeral=True)


@require_admin_or_tournament_role()
@tournament_command(name="assign-seeds", description="Randomly seed all entrants")
async def assign_seeds_command(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction,
) -> None:
    try:
        storage.ensure_table()
    except RuntimeError as exc:
        await send_ephemeral(interaction, str(exc))
        return

    try:
        seeded = assign_seeds(storage)
    except BracketError as exc:
        await send_ephemeral(interaction, str(exc))
        return
    await send_ephemeral(
        interaction,
        f"Assigned random seeds to {len(seeded)} entrant(s). Top seed: "
        + (seeded[0].display() if seeded else "none"),
    )


@app_commands.describe(reseed="Assign fresh random seeds before generating")
@require_admin_or_tournament_role()
@tournament_command(
    name="generate-bracket", description="Build the bracket from the current seeds"
)
async def generate_bracket_command(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction,
    reseed: bool = True,
) -> None:
    try:
        storage.ensure_table()
    except RuntimeError as exc:
        await send_ephemeral(interaction, str(exc))
        return

    await interaction.response.defer(ephemeral=True)
    count = storage.entrant_count()
    if count != BRACKET_SIZE:
        await send_ephemeral(
            interaction,
            f"Exactly {BRACKET_SIZE} entrants are required; {count} registered.",
        )
        return

    try:
        matches = generate_bracket(
            storage,
            holder=str(interaction.user.id),
            seeder=_reseed if reseed else None,
        )
    except BracketError as exc:
        await send_ephemeral(interaction, str(exc))
        return

    await send_ephemeral(interaction, f"Bracket generated with {len(matches)} matches.")
    channel = interaction.channel
    if isinstance(channel, Messageable):
        embed = build_bracket_embed(
            matches,
            storage.list_entrants(order_by="seed"),
            title="Tournament Bracket Created",
            requested_by=interaction.user,
        )
        try:
            await channel.send(embed=embed)
        except discord.HTTPException as exc:  # pragma: no cover - network failure
            log.warning("Failed to send bracket announcement: %s", exc)


@app_commands.describe(
    match="Match identifier such as R1M3",
    winner="Entrant ID of the winner (see /entrants)",
)
@require_admin_or_tournament_role()
@tournament_command(name="record-winner", description="Record a match result")
async def record_winner_command(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction,
    match: str,
    winner: str,
) -> None:
    try:
        storage.ensure_table()
        round_, match_number = parse_match_label(match)
        winner_id = int(winner.strip())
    except (RuntimeError, InvalidValueError) as exc:
        await send_ephemeral(interaction, str(exc))
        return
    except ValueError:
        await send_ephemeral(interaction, "Winner must be a numeric entrant ID.")
        return

    target = storage.get_match_at(round_, match_number)
    if target is None:
        await send_ephemeral(interaction, "No bracket has been generated yet.")
        return
    try:
        decided = record_winner(storage, target.match_id, winner_id)
    except BracketError as exc:
        await send_ephemeral(interaction, str(exc))
        return

    note = f"{decided.label} ({decided.round_name}) decided."
    if decided.round == CHAMPIONSHIP_ROUND:
        note += " The championship is complete!"
    await send_ephemeral(interaction, note)


@app_commands.describe(
    match="Match identifier such as R2M5",
    slot="Slot to fill (A or B)",
    entrant="Entrant ID to place",
)
@require_admin_or_tournament_role()
@tournament_command(
    name="place-entrant",
    description="Manually place an entrant into an undecided match",
)
async def place_entrant_command(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction,
    match: str,
    slot: Literal["A", "B"],
    entrant: str,
) -> None:
    try:
        storage.ensure_table()
        round_, match_number = parse_match_label(match)
        slot_value = parse_slot(slot)
        entrant_id = int(entrant.strip())
    except (RuntimeError, InvalidValueError) as exc:
        await send_ephemeral(interaction, str(exc))
        return
    except ValueError:
        await send_ephemeral(interaction, "Entrant must be a numeric entrant ID.")
        return

    target = storage.get_match_at(round_, match_number)
    if target is None:
        await send_ephemeral(interaction, "No bracket has been generated yet.")
        return
    try:
        updated = override_slot(storage, target.match_id, slot_value, entrant_id)
    except BracketError as exc:
        await send_ephemeral(interaction, str(exc))
        return
    await send_ephemeral(
        interaction, f"Placed entrant {entrant_id} into {updated.label} slot {slot}."
    )


@app_commands.describe(compact="Hide rounds that are already complete")
@tournament_command(name="show-bracket", description="Display the tournament bracket")
async def show_bracket_command(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction,
    compact: bool = False,
) -> None:
    try:
        storage.ensure_table()
    except RuntimeError as exc:
        await send_ephemeral(interaction, str(exc))
        return

    matches = storage.list_matches()
    if not matches:
        await send_ephemeral(interaction, "Bracket has not been generated yet.")
        return
    embed = build_bracket_embed(
        matches,
        storage.list_entrants(order_by="seed"),
        title="Tournament Bracket",
        shrink_completed=compact,
    )
    await interaction.response.send_message(embed=embed)


@require_admin_or_tournament_role()
@tournament_command(
    name="reset-tournament", description="Delete all matches and entrants"
)
async def reset_tournament_command(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction,
) -> None:
    try:
        storage.ensure_table()
    except RuntimeError as exc:
        await send_ephemeral(interaction, str(exc))
        return
    matches, entrants = reset_tournament(storage)
    await send_ephemeral(
        interaction, f"Removed {matches} match(es) and {entrants} entrant(s)."
    )


@require_admin_or_tournament_role()
@tournament_command(
    name="demo-entrants", description="Replace all entrants with the demo roster"
)
async def demo_entrants_command(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction,
) -> None:
    try:
        storage.ensure_table()
    except RuntimeError as exc:
        await send_ephemeral(interaction, str(exc))
        return
    entrants = populate_demo_entrants(storage)
    await send_ephemeral(interaction, f"Created {len(entrants)} demo entrants.")


@tree.error
async def on_app_command_error(  # pragma: no cover - Discord slash command wiring
    interaction: discord.Interaction, error: app_commands.AppCommandError
) -> None:
    if isinstance(error, app_errors.MissingPermissions) or isinstance(
        error, app_errors.CheckFailure
    ):
        await send_ephemeral(
            interaction,
            "You need administrator or tournament-admin role to run this command.",
        )
        return
    log.exception("Unhandled command error: %s", error)
    await send_ephemeral(interaction, "An unexpected error occurred.")


# ---------- Lifecycle ----------
@bot.event
async def on_ready() -> None:  # pragma: no cover - Discord lifecycle hook
    if GUILD_OBJECT is not None:
        tree.clear_commands(guild=None)
        await tree.sync(guild=None)
        await tree.sync(guild=GUILD_OBJECT)
        log.info("Commands synced to guild %s", CONFIG.guild_id)
    else:
        await tree.sync()
        log.info("Commands synced globally")
    log.info("Bracket bot ready as %s (%s)", bot.user, bot.user.id)


async def main() -> None:  # pragma: no cover - CLI entry point
    missing = CONFIG.missing_required()
    if missing:
        raise RuntimeError(
            f"Missing required environment variables: {', '.join(missing)}"
        )
    async with bot:
        await bot.start(CONFIG.discord_token)  # type: ignore[arg-type]


if __name__ == "__main__":
    asyncio.run(main())
