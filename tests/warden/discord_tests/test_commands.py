from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from warden.api.services import Services
from warden.api.tokens import TokenStore
from warden.common import settings, store
from warden.common.auth_phases import AuthPhase
from warden.common.db.models import MetricsSnapshot, UserStatus, WorkerRecord, WorkerStatus
from warden.discord import commands
from warden.discord.commands import (
    CommandContext,
    CommandError,
    CommandResponse,
    format_duration,
    parse_bool,
)
from warden.orchestrator.containers import RuntimeStatus, WorkerNotFoundError
from warden.orchestrator.locks import UserLocks
from warden.orchestrator.reconciler import HealthReconciler

USER_ID = 42


@pytest.fixture
def services(mock_lifecycle, tmp_path):
    mock_lifecycle.session_dir.return_value = tmp_path / "sessions" / str(USER_ID)
    coordinator = MagicMock()
    return Services(
        lifecycle=mock_lifecycle,
        coordinator=coordinator,
        tokens=TokenStore(ttl=600),
        locks=UserLocks(),
        login=MagicMock(),
        reconciler=MagicMock(),
    )


@pytest.fixture
def context(services, session_factory):
    return CommandContext(services=services, user_id=USER_ID, username="alice")


@pytest.fixture
def registered(context, session_factory):
    with session_factory() as session:
        store.create_user(session, USER_ID, "alice")
    return context


def add_worker(session_factory, status=WorkerStatus.RUNNING, container_id="c1"):
    with session_factory() as session:
        return store.create_worker_record(session, USER_ID, container_id, status=status).id


def set_user_status(session_factory, status):
    with session_factory() as session:
        store.update_user_status(session, USER_ID, status)


def user_status(session_factory):
    with session_factory() as session:
        return store.get_user(session, USER_ID).status


def worker_status(session_factory, record_id):
    with session_factory() as session:
        return session.get(WorkerRecord, record_id).status


def audit_events(session_factory):
    with session_factory() as session:
        return [e.event_type for e in store.get_audit_logs(session, USER_ID)]


async def session_token_for(tokens, user_id):
    login = await tokens.create_login(user_id, f"agent-{user_id}")
    return (await tokens.complete_login(login.token)).session_token


@pytest.mark.parametrize(
    "seconds, expected",
    [(None, "unknown"), (0, "0h 0m"), (3700, "1h 1m"), (90000, "1d 1h")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


@pytest.mark.parametrize("value, expected", [("yes", True), ("On", True), ("0", False), ("disabled", False)])
def test_parse_bool(value, expected):
    assert parse_bool(value) is expected


def test_parse_bool_rejects_garbage():
    with pytest.raises(CommandError):
        parse_bool("maybe")


@pytest.mark.asyncio
async def test_start_registers_user(context, session_factory):
    response = await commands.handle_start(context)

    assert "Welcome" in response.content
    assert response.ephemeral
    with session_factory() as session:
        user = store.get_user(session, USER_ID)
        assert user.username == "alice"
        assert user.status == "stopped"
    assert audit_events(session_factory) == ["bot_started"]


@pytest.mark.asyncio
async def test_start_with_session_token_completes_auth(context, services, session_factory):
    token = await session_token_for(services.tokens, USER_ID)

    response = await commands.handle_start(context, token=token)

    assert "Authentication complete" in response.content
    assert user_status(session_factory) == UserStatus.ACTIVE.value
    with session_factory() as session:
        assert store.get_auth_state(session, USER_ID).auth_phase == AuthPhase.READY
    assert "auth_verified" in audit_events(session_factory)

    again = await commands.handle_start(context, token=token)
    assert "invalid or has expired" in again.content


@pytest.mark.asyncio
async def test_start_with_someone_elses_token(context, services, session_factory):
    token = await session_token_for(services.tokens, 7)

    response = await commands.handle_start(context, token=token)

    assert "different account" in response.content
    assert user_status(session_factory) == UserStatus.STOPPED.value
    assert "web_auth_mismatch" in audit_events(session_factory)
    assert (await services.tokens.verify(token, 7)).value == "ok"


@pytest.mark.asyncio
async def test_start_with_unknown_token(context, session_factory):
    response = await commands.handle_start(context, token="bogus")

    assert "invalid or has expired" in response.content
    assert user_status(session_factory) == UserStatus.STOPPED.value


@pytest.mark.asyncio
async def test_login_requires_registration(context):
    with pytest.raises(CommandError):
        await commands.handle_login(context)


@pytest.mark.asyncio
async def test_login_issues_preauth_link(registered, services, session_factory):
    response = await commands.handle_login(registered)

    assert f"{settings.WEB_LOGIN_URL}?token=" in response.content
    token = response.content.rsplit("?token=", 1)[1].strip()
    assert (await services.tokens.validate_preauth(token)).user_id == USER_ID
    assert "login_requested" in audit_events(session_factory)


@pytest.mark.asyncio
async def test_login_when_already_authenticated(registered, services, session_factory):
    add_worker(session_factory)
    with session_factory() as session:
        store.update_auth_state(session, USER_ID, AuthPhase.READY)

    response = await commands.handle_login(registered)

    assert "already running" in response.content
    assert len(services.tokens) == 0


@pytest.mark.asyncio
async def test_status_without_worker(registered, mock_lifecycle):
    response = await commands.handle_status(registered)

    assert "not running" in response.content
    mock_lifecycle.status.assert_not_awaited()


@pytest.mark.asyncio
async def test_status_with_running_worker(registered, mock_lifecycle, session_factory):
    add_worker(session_factory)
    with session_factory() as session:
        store.add_metrics_snapshot(session, USER_ID, messages_processed=200, spam_detected=30)
    mock_lifecycle.status.return_value = RuntimeStatus(
        state="running", container_id="c1", uptime_seconds=3700, health="healthy"
    )

    response = await commands.handle_status(registered)

    assert "running (runtime: running)" in response.content
    assert "1h 1m" in response.content
    assert "healthy" in response.content
    assert "15.0%" in response.content


@pytest.mark.asyncio
async def test_pause(registered, mock_lifecycle, session_factory):
    record_id = add_worker(session_factory)
    set_user_status(session_factory, UserStatus.ACTIVE)

    await commands.handle_pause(registered)

    mock_lifecycle.stop.assert_awaited_once_with("agent-42")
    assert worker_status(session_factory, record_id) == "stopped"
    assert user_status(session_factory) == "paused"
    assert "agent_paused" in audit_events(session_factory)


@pytest.mark.asyncio
async def test_pause_without_worker(registered, mock_lifecycle):
    with pytest.raises(CommandError):
        await commands.handle_pause(registered)
    mock_lifecycle.stop.assert_not_awaited()


@pytest.mark.asyncio
async def test_resume(registered, mock_lifecycle, session_factory):
    record_id = add_worker(session_factory)
    await commands.handle_pause(registered)

    await commands.handle_resume(registered)

    mock_lifecycle.restart.assert_awaited_once_with("agent-42")
    assert worker_status(session_factory, record_id) == "running"
    assert user_status(session_factory) == "active"
    assert "agent_resumed" in audit_events(session_factory)


@pytest.mark.asyncio
async def test_resumed_old_worker_survives_health_check(
    registered, mock_lifecycle, session_factory
):
    record_id = add_worker(session_factory)
    with session_factory() as session:
        session.get(WorkerRecord, record_id).created_at = store.utcnow() - timedelta(hours=1)
    await commands.handle_pause(registered)
    await commands.handle_resume(registered)
    mock_lifecycle.status.return_value = RuntimeStatus(state="running", container_id="c1")

    reconciler = HealthReconciler(
        mock_lifecycle, grace_period=300, session_factory=session_factory
    )
    assert await reconciler.run_once() == {"unchanged": 1}

    assert worker_status(session_factory, record_id) == "running"
    with session_factory() as session:
        assert store.get_active_worker(session, USER_ID).id == record_id


@pytest.mark.asyncio
async def test_resume_when_not_paused(registered, mock_lifecycle):
    response = await commands.handle_resume(registered)

    assert "not paused" in response.content
    mock_lifecycle.restart.assert_not_awaited()


@pytest.mark.asyncio
async def test_resume_vanished_container(registered, mock_lifecycle, session_factory):
    record_id = add_worker(session_factory)
    await commands.handle_pause(registered)
    mock_lifecycle.restart.side_effect = WorkerNotFoundError("agent-42")

    with pytest.raises(CommandError, match="no longer exists"):
        await commands.handle_resume(registered)

    assert worker_status(session_factory, record_id) == "failed"
    assert user_status(session_factory) == "stopped"


@pytest.mark.asyncio
async def test_stop_needs_confirmation(registered, mock_lifecycle, session_factory):
    add_worker(session_factory)

    response = await commands.handle_stop(registered)

    assert "confirm" in response.content
    mock_lifecycle.stop.assert_not_awaited()
    mock_lifecycle.remove.assert_not_awaited()


@pytest.mark.asyncio
async def test_stop(registered, mock_lifecycle, session_factory):
    record_id = add_worker(session_factory)
    set_user_status(session_factory, UserStatus.ACTIVE)

    await commands.handle_stop(registered, confirm=True)

    mock_lifecycle.stop.assert_awaited_once_with("agent-42")
    mock_lifecycle.remove.assert_awaited_once_with("agent-42")
    assert worker_status(session_factory, record_id) == "stopped"
    assert user_status(session_factory) == "stopped"
    assert "agent_stopped" in audit_events(session_factory)


@pytest.mark.asyncio
async def test_stop_without_worker(registered):
    with pytest.raises(CommandError):
        await commands.handle_stop(registered, confirm=True)


@pytest.mark.asyncio
async def test_reset_deletes_session(registered, services, mock_lifecycle, session_factory, tmp_path):
    session_dir = tmp_path / "sessions" / str(USER_ID)
    session_dir.mkdir(parents=True)
    (session_dir / "td.binlog").write_bytes(b"secret")
    record_id = add_worker(session_factory)

    response = await commands.handle_reset(registered, confirm=True)

    assert "reset" in response.content
    assert not session_dir.exists()
    mock_lifecycle.remove.assert_awaited_once_with("agent-42")
    services.coordinator.reset.assert_called_once_with(USER_ID)
    assert worker_status(session_factory, record_id) == "stopped"
    assert "session_reset" in audit_events(session_factory)


@pytest.mark.asyncio
async def test_reset_without_session_dir(registered, services):
    await commands.handle_reset(registered, confirm=True)
    services.coordinator.reset.assert_called_once_with(USER_ID)


@pytest.mark.asyncio
async def test_logs(registered, mock_lifecycle, session_factory):
    add_worker(session_factory)
    mock_lifecycle.logs.return_value = "2024-01-01T00:00:00Z AUTH_READY\n"

    response = await commands.handle_logs(registered, lines=1000)

    assert response.content.startswith("```\n")
    assert "AUTH_READY" in response.content
    mock_lifecycle.logs.assert_awaited_once_with("agent-42", tail=500)


@pytest.mark.asyncio
async def test_logs_are_truncated(registered, mock_lifecycle, session_factory):
    add_worker(session_factory)
    mock_lifecycle.logs.return_value = "x" * 10_000

    response = await commands.handle_logs(registered)

    assert len(response.content) <= settings.DISCORD_MESSAGE_LIMIT
    assert response.content.startswith("```\n...\n")


@pytest.mark.asyncio
async def test_logs_without_worker(registered):
    with pytest.raises(CommandError):
        await commands.handle_logs(registered)


@pytest.mark.asyncio
async def test_show_settings(registered):
    response = await commands.handle_settings(registered)

    assert "**low_threshold:** 0.3" in response.content
    assert "**default_action:** archive" in response.content


@pytest.mark.asyncio
async def test_update_settings(registered, session_factory):
    await commands.handle_settings(registered, "enable_blocking", "yes")
    response = await commands.handle_settings(registered, "low_threshold", "0.5")

    assert "Updated `low_threshold`" in response.content
    with session_factory() as session:
        settings_row = store.get_settings(session, USER_ID)
        assert settings_row.enable_blocking is True
        assert settings_row.low_threshold == 0.5
    assert audit_events(session_factory).count("settings_changed") == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "field, value",
    [
        ("low_threshold", "lots"),
        ("low_threshold", "0.95"),
        ("action_threshold", "2"),
        ("default_action", "explode"),
        ("enable_deletion", "perhaps"),
        ("low_threshold", None),
    ],
)
async def test_update_settings_rejects_bad_values(registered, field, value):
    with pytest.raises(CommandError):
        await commands.handle_settings(registered, field, value)


@pytest.mark.asyncio
async def test_stats_use_counter_differences(registered, session_factory):
    now = store.utcnow()
    with session_factory() as session:
        session.add_all(
            [
                MetricsSnapshot(
                    user_id=USER_ID,
                    messages_processed=100,
                    spam_detected=10,
                    spam_archived=5,
                    timestamp=now - timedelta(hours=2),
                ),
                MetricsSnapshot(
                    user_id=USER_ID,
                    messages_processed=300,
                    spam_detected=40,
                    spam_archived=25,
                    timestamp=now - timedelta(minutes=5),
                ),
            ]
        )

    response = await commands.handle_stats(registered)

    assert "Messages processed: 200" in response.content
    assert "Spam detected: 30" in response.content
    assert "Archived: 20" in response.content
    assert "Spam rate: 15.0%" in response.content
    assert "Data points: 2" in response.content


@pytest.mark.asyncio
async def test_stats_without_data(registered):
    response = await commands.handle_stats(registered, hours=6)
    assert "No data for the last 6 hours" in response.content


@pytest.mark.asyncio
async def test_help_lists_commands(registered):
    response = await commands.handle_help(registered)
    for name in ("start", "login", "status", "pause", "resume", "stop", "reset", "logs", "settings", "stats"):
        assert f"/{settings.DISCORD_COMMAND_PREFIX}_{name}`" in response.content


def make_interaction(user_id=USER_ID):
    interaction = MagicMock()
    interaction.user.id = user_id
    interaction.user.name = "alice"
    interaction.response.defer = AsyncMock()
    interaction.followup.send = AsyncMock()
    return interaction


@pytest.mark.asyncio
async def test_run_interaction_command_sends_response(services):
    interaction = make_interaction()
    handler = AsyncMock(return_value=CommandResponse("done"))

    await commands._run_interaction_command(interaction, services, handler=handler, confirm=True)

    interaction.response.defer.assert_awaited_once_with(ephemeral=True, thinking=True)
    context = handler.await_args.args[0]
    assert context.user_id == USER_ID
    assert context.username == "alice"
    assert handler.await_args.kwargs == {"confirm": True}
    interaction.followup.send.assert_awaited_once_with("done", ephemeral=True)


@pytest.mark.asyncio
async def test_run_interaction_command_reports_command_errors(services):
    interaction = make_interaction()
    handler = AsyncMock(side_effect=CommandError("You have no running agent."))

    await commands._run_interaction_command(interaction, services, handler=handler)

    interaction.followup.send.assert_awaited_once_with("You have no running agent.", ephemeral=True)


@pytest.mark.asyncio
async def test_run_interaction_command_hides_unexpected_errors(services):
    interaction = make_interaction()
    handler = AsyncMock(side_effect=RuntimeError("docker exploded"))
    handler.__name__ = "handle_status"

    await commands._run_interaction_command(interaction, services, handler=handler)

    message = interaction.followup.send.await_args.args[0]
    assert "Something went wrong" in message
    assert "docker" not in message


def test_register_slash_commands_once(services):
    bot = MagicMock(spec=["tree"])

    commands.register_slash_commands(bot, services)
    commands.register_slash_commands(bot, services)

    names = {call.kwargs["name"] for call in bot.tree.command.call_args_list}
    prefix = settings.DISCORD_COMMAND_PREFIX
    assert names == {
        f"{prefix}_{name}"
        for name in (
            "start", "login", "status", "pause", "resume", "stop",
            "reset", "logs", "settings", "stats", "help",
        )
    }
