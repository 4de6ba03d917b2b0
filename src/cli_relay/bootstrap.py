from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from slack_sdk.web.async_client import AsyncWebClient

from cli_relay.app_config import AppConfig, RuntimeEnv
from cli_relay.chat.monitors import DelayAlertCounter
from cli_relay.chat.router import ChannelRoutes, MessageRouter
from cli_relay.chat.slack_messenger import SlackMessenger
from cli_relay.cli.launcher import CliLauncher
from cli_relay.cli.mcp_config import detect_mcp_overrides
from cli_relay.logging_config import setup_logging
from cli_relay.memory import AlertCounterStore, MemoryStore, WorkflowStore
from cli_relay.sessions.controller import DiscussionController
from cli_relay.sessions.registry import SessionRegistry
from cli_relay.workflows.alert import AlertWorkflowController
from cli_relay.workflows.delay_alert import DelayAlertWorkflowController


@dataclass
class AppRuntime:
    messenger: SlackMessenger
    router: MessageRouter
    discussions: DiscussionController
    alerts: AlertWorkflowController
    delay_alerts: DelayAlertWorkflowController
    memory_store: MemoryStore
    log_descriptions: list[str]

    def kill_all(self) -> int:
        return self.alerts.kill_all() + self.delay_alerts.kill_all() + self.discussions.kill_all()


async def _resolve_routes(messenger: SlackMessenger, app: AppConfig) -> ChannelRoutes:
    channels = app.channels
    disabled = channels.discuss.disabled + channels.monitor.disabled + channels.monitor_delay.disabled
    for name in disabled:
        logger.info(f"Channel #{name} disabled (skipped)")

    wanted = channels.discuss.enabled + channels.monitor.enabled + channels.monitor_delay.enabled
    ids = await messenger.resolve_channel_ids(wanted)

    def pick(names: list[str]) -> set[str]:
        return {ids[n.lower()] for n in names if n.lower() in ids}

    routes = ChannelRoutes(
        discuss=pick(channels.discuss.enabled),
        monitor=pick(channels.monitor.enabled),
        monitor_delay=pick(channels.monitor_delay.enabled),
    )
    for name in wanted:
        if name.lower() in ids:
            logger.info(f"Routing #{name} -> {ids[name.lower()]}")
    return routes


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv, *, web_client: AsyncWebClient | None = None) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    db_path = Path(app.database_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    memory_store = MemoryStore(str(db_path))
    workflow_store = WorkflowStore(memory_store)
    logger.info(f"Database initialized at {db_path}")

    mcp_config_path: str | None = None
    if app.working_directory:
        mcp_config_path = detect_mcp_overrides(
            app.claude_config_path,
            app.working_directory,
            app.required_mcp_servers,
            db_path.parent,
        )

    launcher = CliLauncher(
        binary=app.cli_binary,
        cwd=app.working_directory,
        model=app.discuss_model,
        alert_model=app.alert_model,
        mcp_config_path=mcp_config_path,
        skills_dir=app.skills_directory,
        compact_timeout_seconds=app.compact_timeout_seconds,
    )
    messenger = SlackMessenger(web_client or AsyncWebClient(token=env.slack_bot_token))

    discussions = DiscussionController(
        registry=SessionRegistry(),
        launcher=launcher,
        messenger=messenger,
        store=workflow_store,
        turn_timeout_seconds=app.turn_timeout_seconds,
        heartbeat_interval_seconds=app.heartbeat_interval_seconds,
        max_message_chars=app.max_message_chars,
        context_max_tokens=app.context_max_tokens,
        context_warn_tokens=app.context_warn_tokens,
    )
    workflow_kwargs = dict(
        launcher=launcher,
        messenger=messenger,
        workspace_domain=app.workspace_domain,
        store=workflow_store,
        feedback_timeout_seconds=app.feedback_timeout_seconds,
        turn_timeout_seconds=app.turn_timeout_seconds,
    )
    alerts = AlertWorkflowController(
        registry=SessionRegistry(),
        skill=app.alert_skill,
        pagerduty_api_token=env.pagerduty_api_token,
        pagerduty_from_email=env.pagerduty_from_email,
        **workflow_kwargs,
    )
    delay_alerts = DelayAlertWorkflowController(
        registry=SessionRegistry(),
        skill=app.delay_alert_skill,
        **workflow_kwargs,
    )
    delay_counter = DelayAlertCounter(
        window_seconds=app.delay_alert_window_seconds,
        store=AlertCounterStore(memory_store),
    )

    discussions.restore()
    alerts.restore()
    delay_alerts.restore()
    delay_counter.restore()

    router = MessageRouter(
        owner_user_id=env.owner_user_id,
        routes=await _resolve_routes(messenger, app),
        messenger=messenger,
        discussions=discussions,
        alerts=alerts,
        delay_alerts=delay_alerts,
        delay_counter=delay_counter,
        delay_threshold=app.delay_alert_threshold,
        delay_task_patterns=app.delay_alert_task_patterns,
        bot_user_id=await messenger.bot_user_id(),
    )

    return AppRuntime(
        messenger=messenger,
        router=router,
        discussions=discussions,
        alerts=alerts,
        delay_alerts=delay_alerts,
        memory_store=memory_store,
        log_descriptions=log_descriptions,
    )
