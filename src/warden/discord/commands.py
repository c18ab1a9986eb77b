"""Slash commands through which users control their worker."""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

import discord

from warden.common import settings, store
from warden.common.auth_phases import AuthPhase
from warden.common.db.connection import make_session
from warden.common.db.models import UserStatus, WorkerStatus
from warden.api.services import Services
from warden.api.tokens import VerifyOutcome
from warden.orchestrator.containers import WorkerNotFoundError, container_name

logger = logging.getLogger(__name__)

SettingName = Literal[
    "low_threshold",
    "action_threshold",
    "default_action",
    "enable_deletion",
    "enable_blocking",
]

LOG_LINES = 50
COUNTER_FIELDS = ("messages_processed", "spam_detected", "spam_archived", "spam_blocked")
# Room left in a message for the code fence around the logs
LOG_CHARACTERS = settings.DISCORD_MESSAGE_LIMIT - 100


class CommandError(Exception):
    """Raised when a user-facing error occurs while handling a command."""


@dataclass(slots=True)
class CommandResponse:
    """Value object returned by handlers."""

    content: str
    ephemeral: bool = True


@dataclass(slots=True)
class CommandContext:
    """All information a handler needs to fulfil a command."""

    services: Services
    user_id: int
    username: str | None = None


CommandHandler = Callable[..., Awaitable[CommandResponse]]


def format_duration(seconds: int | None) -> str:
    if seconds is None:
        return "unknown"
    hours, remainder = divmod(int(seconds), 3600)
    minutes = remainder // 60
    if hours >= 24:
        return f"{hours // 24}d {hours % 24}h"
    return f"{hours}h {minutes}m"


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on", "enable", "enabled"):
        return True
    if lowered in ("0", "false", "no", "off", "disable", "disabled"):
        return False
    raise CommandError(f"`{value}` is not a yes/no value.")


def _require_user(user_id: int):
    with make_session() as session:
        user = store.get_user(session, user_id)
        if not user:
            raise CommandError("You are not registered yet. Use the start command first.")
        store.touch_user(session, user_id)
        return user


def _audit(user_id: int, event_type: str, details: dict | None = None) -> None:
    with make_session() as session:
        store.add_audit_log(session, user_id, event_type, details)


# --- Handlers ----------------------------------------------------------------


async def handle_start(context: CommandContext, token: str | None = None) -> CommandResponse:
    """Register the user, and redeem a session token from the web login if given."""
    with make_session() as session:
        store.create_user(session, context.user_id, context.username)

    if not token:
        _audit(context.user_id, "bot_started")
        return CommandResponse(
            "Welcome! I run a personal spam filter for your account.\n"
            "Use the `login` command to connect your account, "
            "and `help` to see everything I can do."
        )

    outcome = await context.services.tokens.verify(token, context.user_id)
    if outcome == VerifyOutcome.MISMATCH:
        _audit(context.user_id, "web_auth_mismatch")
        return CommandResponse(
            "This authentication link was generated for a different account. "
            "Use the `login` command to get your own link."
        )
    if outcome != VerifyOutcome.OK:
        return CommandResponse(
            "This authentication link is invalid or has expired. "
            "Use the `login` command to get a new one."
        )

    with make_session() as session:
        store.update_auth_state(session, context.user_id, AuthPhase.READY)
        store.update_user_status(session, context.user_id, UserStatus.ACTIVE)
        store.add_audit_log(session, context.user_id, "auth_verified")
    return CommandResponse("Authentication complete! Your agent is now protecting your account.")


async def handle_login(context: CommandContext) -> CommandResponse:
    _require_user(context.user_id)
    with make_session() as session:
        record = store.get_active_worker(session, context.user_id)
        auth = store.get_auth_state(session, context.user_id)
        already_ready = bool(record and auth and auth.auth_phase == AuthPhase.READY)

    if already_ready:
        return CommandResponse(
            "Your agent is already running and authenticated. "
            "Use `status` to check on it or `stop` to shut it down."
        )

    token = await context.services.tokens.issue_preauth(context.user_id)
    _audit(context.user_id, "login_requested")
    minutes = settings.TOKEN_TTL // 60
    return CommandResponse(
        f"Open this link to connect your account (valid for {minutes} minutes, single use):\n"
        f"{settings.WEB_LOGIN_URL}?token={token}"
    )


async def handle_status(context: CommandContext) -> CommandResponse:
    user = _require_user(context.user_id)
    with make_session() as session:
        record = store.get_active_worker(session, context.user_id)
        auth = store.get_auth_state(session, context.user_id)
        metrics = store.get_latest_metrics(session, context.user_id)
        phase = auth.phase if auth else AuthPhase.NONE.value

    lines = [f"**Account status:** {user.status}", f"**Authentication:** {phase}"]
    if not record:
        lines.append("**Agent:** not running. Use `login` to start one.")
        return CommandResponse("\n".join(lines))

    runtime = await context.services.lifecycle.status(container_name(context.user_id))
    lines.append(f"**Agent:** {record.status} (runtime: {runtime.state})")
    if runtime.running:
        lines.append(f"**Uptime:** {format_duration(runtime.uptime_seconds)}")
        lines.append(f"**Health:** {runtime.health}")
    if metrics:
        lines.append(
            f"**Messages processed:** {metrics.messages_processed}, "
            f"**spam detected:** {metrics.spam_detected} "
            f"({metrics.spam_rate * 100:.1f}%)"
        )
    return CommandResponse("\n".join(lines))


async def handle_pause(context: CommandContext) -> CommandResponse:
    user = _require_user(context.user_id)
    if user.status == UserStatus.PAUSED.value:
        return CommandResponse("Your agent is already paused. Use `resume` to start it again.")

    async with context.services.locks.hold(context.user_id):
        with make_session() as session:
            record = store.get_active_worker(session, context.user_id)
        if not record:
            raise CommandError("You have no running agent to pause.")

        await context.services.lifecycle.stop(container_name(context.user_id))
        with make_session() as session:
            store.update_worker_status(session, record.id, WorkerStatus.STOPPED)
            store.update_user_status(session, context.user_id, UserStatus.PAUSED)
            store.add_audit_log(session, context.user_id, "agent_paused")

    return CommandResponse("Agent paused. Use `resume` to start it again.")


async def handle_resume(context: CommandContext) -> CommandResponse:
    user = _require_user(context.user_id)
    if user.status != UserStatus.PAUSED.value:
        return CommandResponse("Your agent is not paused.")

    async with context.services.locks.hold(context.user_id):
        with make_session() as session:
            record = store.get_latest_worker(session, context.user_id)
        if not record:
            raise CommandError("No agent found. Use `login` to create one.")

        try:
            await context.services.lifecycle.restart(container_name(context.user_id))
        except WorkerNotFoundError:
            with make_session() as session:
                if record.status != WorkerStatus.FAILED.value:
                    store.update_worker_status(session, record.id, WorkerStatus.FAILED)
                store.update_user_status(session, context.user_id, UserStatus.STOPPED)
            raise CommandError("Your agent no longer exists. Use `login` to create a new one.")

        with make_session() as session:
            store.update_worker_status(session, record.id, WorkerStatus.RUNNING)
            store.update_user_status(session, context.user_id, UserStatus.ACTIVE)
            store.add_audit_log(session, context.user_id, "agent_resumed")

    return CommandResponse("Agent resumed.")


async def _teardown(context: CommandContext) -> bool:
    """Stop and remove the user's container. Callers must hold the user's lock."""
    name = container_name(context.user_id)
    await context.services.lifecycle.stop(name)
    removed = await context.services.lifecycle.remove(name)
    with make_session() as session:
        if record := store.get_active_worker(session, context.user_id):
            store.update_worker_status(session, record.id, WorkerStatus.STOPPED)
        store.update_user_status(session, context.user_id, UserStatus.STOPPED)
    return removed


async def handle_stop(context: CommandContext, confirm: bool = False) -> CommandResponse:
    _require_user(context.user_id)
    if not confirm:
        return CommandResponse(
            "This stops and removes your agent; spam filtering ends until you log in again. "
            "Run the command again with `confirm: True` to proceed."
        )

    async with context.services.locks.hold(context.user_id):
        with make_session() as session:
            record = store.get_active_worker(session, context.user_id)
        if not record:
            raise CommandError("You have no running agent.")
        await _teardown(context)

    _audit(context.user_id, "agent_stopped")
    return CommandResponse("Agent stopped and removed. Use `login` to start it again.")


async def handle_reset(context: CommandContext, confirm: bool = False) -> CommandResponse:
    _require_user(context.user_id)
    if not confirm:
        return CommandResponse(
            "This removes your agent and deletes its saved session, so you will need to "
            "authenticate again. Run the command again with `confirm: True` to proceed."
        )

    services = context.services
    async with services.locks.hold(context.user_id):
        await _teardown(context)
        session_dir = services.lifecycle.session_dir(context.user_id)
        if session_dir.exists():
            await asyncio.to_thread(shutil.rmtree, session_dir)
            logger.info(f"Deleted session data of user {context.user_id}")
        services.coordinator.reset(context.user_id)

    _audit(context.user_id, "session_reset")
    return CommandResponse("Your session has been reset. Use `login` to authenticate again.")


async def handle_logs(context: CommandContext, lines: int = LOG_LINES) -> CommandResponse:
    _require_user(context.user_id)
    with make_session() as session:
        record = store.get_active_worker(session, context.user_id)
    if not record:
        raise CommandError("You have no running agent.")

    lines = max(1, min(lines, 500))
    try:
        logs = await context.services.lifecycle.logs(container_name(context.user_id), tail=lines)
    except WorkerNotFoundError:
        raise CommandError("Your agent container could not be found.")

    if not logs.strip():
        return CommandResponse("No logs yet.")
    if len(logs) > LOG_CHARACTERS:
        logs = "...\n" + logs[-LOG_CHARACTERS:]
    return CommandResponse(f"```\n{logs}\n```")


def _format_settings(payload: dict[str, Any]) -> str:
    return "\n".join(f"**{key}:** {value}" for key, value in payload.items())


async def handle_settings(
    context: CommandContext,
    field: SettingName | None = None,
    value: str | None = None,
) -> CommandResponse:
    _require_user(context.user_id)
    if field is None:
        with make_session() as session:
            settings_row = store.get_settings(session, context.user_id)
            if not settings_row:
                raise CommandError("No settings found.")
            payload = settings_row.as_payload()
        return CommandResponse("Current settings:\n" + _format_settings(dict(payload)))

    if value is None:
        raise CommandError(f"Give a value for `{field}`.")

    converted: Any = value
    if field in ("enable_deletion", "enable_blocking"):
        converted = parse_bool(value)
    elif field in ("low_threshold", "action_threshold"):
        try:
            converted = float(value)
        except ValueError:
            raise CommandError(f"`{value}` is not a number.")

    try:
        with make_session() as session:
            settings_row = store.update_settings(session, context.user_id, **{field: converted})
            store.add_audit_log(
                session, context.user_id, "settings_changed", {"field": field, "value": converted}
            )
            payload = settings_row.as_payload()
    except ValueError as e:
        raise CommandError(str(e))

    return CommandResponse(
        f"Updated `{field}`. Changes apply the next time your agent is created "
        "(`reset` or `stop` then `login`).\n" + _format_settings(dict(payload))
    )


async def handle_stats(context: CommandContext, hours: int = 24) -> CommandResponse:
    _require_user(context.user_id)
    with make_session() as session:
        history = store.get_metrics_history(session, context.user_id, hours=hours)
        snapshots = [snapshot.serialize() for snapshot in history]

    if not snapshots:
        return CommandResponse(
            f"No data for the last {hours} hours. "
            "Your agent needs to be running to collect metrics."
        )

    # Counters are cumulative and the history is newest first
    latest, oldest = snapshots[0], snapshots[-1]
    totals = {
        key: latest[key] - oldest[key] if len(snapshots) > 1 else latest[key]
        for key in COUNTER_FIELDS
    }
    processed = totals["messages_processed"]
    rate = totals["spam_detected"] / processed * 100 if processed else 0.0

    return CommandResponse(
        f"**Statistics for the last {hours} hours**\n"
        f"Messages processed: {processed}\n"
        f"Spam detected: {totals['spam_detected']}\n"
        f"Archived: {totals['spam_archived']}\n"
        f"Blocked: {totals['spam_blocked']}\n"
        f"Spam rate: {rate:.1f}%\n"
        f"Data points: {len(snapshots)}"
    )


async def handle_help(context: CommandContext) -> CommandResponse:
    prefix = settings.DISCORD_COMMAND_PREFIX
    commands = [
        ("start", "register, or finish a web login with its token"),
        ("login", "get a link to connect your account"),
        ("status", "show your agent's status"),
        ("pause", "stop filtering for a while"),
        ("resume", "start a paused agent again"),
        ("stop", "stop and remove your agent"),
        ("reset", "remove your agent and its saved session"),
        ("logs", "show your agent's recent logs"),
        ("settings", "show or change filter settings"),
        ("stats", "show spam statistics"),
    ]
    return CommandResponse(
        "\n".join(f"`/{prefix}_{name}`: {description}" for name, description in commands)
    )


# --- Registration --------------------------------------------------------------


async def _run_interaction_command(
    interaction: discord.Interaction,
    services: Services,
    *,
    handler: CommandHandler,
    **handler_kwargs,
) -> None:
    """Shared coroutine used by the registered slash commands."""
    # Container operations can outlast the interaction's three second window
    await interaction.response.defer(ephemeral=True, thinking=True)

    context = CommandContext(
        services=services,
        user_id=interaction.user.id,
        username=interaction.user.name,
    )
    try:
        response = await handler(context, **handler_kwargs)
    except CommandError as exc:
        await interaction.followup.send(str(exc), ephemeral=True)
        return
    except Exception:
        logger.exception(f"Command {handler.__name__} failed for user {context.user_id}")
        await interaction.followup.send(
            "Something went wrong while handling that command. Please try again later.",
            ephemeral=True,
        )
        return

    await interaction.followup.send(response.content, ephemeral=response.ephemeral)


def register_slash_commands(bot: discord.Client, services: Services) -> None:
    """Register the worker control slash commands on the provided bot."""

    if getattr(bot, "_warden_commands_registered", False):
        return

    setattr(bot, "_warden_commands_registered", True)

    if not hasattr(bot, "tree"):
        raise RuntimeError("Bot instance does not support app commands")

    tree = bot.tree
    name = settings.DISCORD_COMMAND_PREFIX

    @tree.command(name=f"{name}_start", description="Register, or finish a web login")
    @discord.app_commands.describe(token="Token from the link shown after logging in")
    async def start_command(interaction: discord.Interaction, token: str | None = None) -> None:
        await _run_interaction_command(interaction, services, handler=handle_start, token=token)

    @tree.command(name=f"{name}_login", description="Get a link to connect your account")
    async def login_command(interaction: discord.Interaction) -> None:
        await _run_interaction_command(interaction, services, handler=handle_login)

    @tree.command(name=f"{name}_status", description="Show your agent's status")
    async def status_command(interaction: discord.Interaction) -> None:
        await _run_interaction_command(interaction, services, handler=handle_status)

    @tree.command(name=f"{name}_pause", description="Pause your agent")
    async def pause_command(interaction: discord.Interaction) -> None:
        await _run_interaction_command(interaction, services, handler=handle_pause)

    @tree.command(name=f"{name}_resume", description="Resume a paused agent")
    async def resume_command(interaction: discord.Interaction) -> None:
        await _run_interaction_command(interaction, services, handler=handle_resume)

    @tree.command(name=f"{name}_stop", description="Stop and remove your agent")
    @discord.app_commands.describe(confirm="Set to true to really stop the agent")
    async def stop_command(interaction: discord.Interaction, confirm: bool = False) -> None:
        await _run_interaction_command(interaction, services, handler=handle_stop, confirm=confirm)

    @tree.command(name=f"{name}_reset", description="Remove your agent and its saved session")
    @discord.app_commands.describe(confirm="Set to true to really reset the session")
    async def reset_command(interaction: discord.Interaction, confirm: bool = False) -> None:
        await _run_interaction_command(interaction, services, handler=handle_reset, confirm=confirm)

    @tree.command(name=f"{name}_logs", description="Show your agent's recent logs")
    @discord.app_commands.describe(lines="How many lines to show (default 50)")
    async def logs_command(interaction: discord.Interaction, lines: int = LOG_LINES) -> None:
        await _run_interaction_command(interaction, services, handler=handle_logs, lines=lines)

    @tree.command(name=f"{name}_settings", description="Show or change filter settings")
    @discord.app_commands.describe(
        field="Setting to change. Leave empty to show all settings",
        value="New value for the setting",
    )
    async def settings_command(
        interaction: discord.Interaction,
        field: SettingName | None = None,
        value: str | None = None,
    ) -> None:
        await _run_interaction_command(
            interaction, services, handler=handle_settings, field=field, value=value
        )

    @tree.command(name=f"{name}_stats", description="Show spam statistics")
    @discord.app_commands.describe(hours="How many hours back to look (default 24)")
    async def stats_command(interaction: discord.Interaction, hours: int = 24) -> None:
        await _run_interaction_command(interaction, services, handler=handle_stats, hours=hours)

    @tree.command(name=f"{name}_help", description="List the available commands")
    async def help_command(interaction: discord.Interaction) -> None:
        await _run_interaction_command(interaction, services, handler=handle_help)
