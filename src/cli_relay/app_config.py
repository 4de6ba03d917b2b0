from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class RuntimeEnv:
    slack_bot_token: str
    slack_app_token: str
    owner_user_id: str
    pagerduty_api_token: str | None
    pagerduty_from_email: str | None


@dataclass
class ChannelList:
    enabled: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)


@dataclass
class ChannelsConfig:
    discuss: ChannelList = field(default_factory=ChannelList)
    monitor: ChannelList = field(default_factory=ChannelList)
    monitor_delay: ChannelList = field(default_factory=ChannelList)


@dataclass
class AppConfig:
    cli_binary: str
    working_directory: str | None
    skills_directory: str | None
    discuss_model: str
    alert_model: str
    turn_timeout_seconds: float
    heartbeat_interval_seconds: float
    compact_timeout_seconds: float
    feedback_timeout_seconds: float
    max_message_chars: int
    context_max_tokens: int
    context_warn_tokens: int
    database_path: str
    workspace_domain: str
    alert_skill: str
    delay_alert_skill: str
    delay_alert_threshold: int
    delay_alert_window_seconds: float
    delay_alert_task_patterns: list[str]
    channels: ChannelsConfig
    required_mcp_servers: list[str]
    claude_config_path: str
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    return [item.strip() for item in items if item.strip()]


def parse_channel_list(value: object) -> ChannelList:
    """Split channel names into enabled and disabled; a leading ``!`` disables a name."""
    channels = ChannelList()
    for item in _to_list(value):
        if item.startswith("!"):
            channels.disabled.append(item[1:])
        else:
            channels.enabled.append(item)
    return channels


def parse_app_config(config: dict) -> AppConfig:
    channels = config.get("Channels") or {}
    working_directory = config.get("WorkingDirectory")
    skills_directory = config.get("SkillsDirectory")
    if skills_directory is None and working_directory:
        skills_directory = str(Path(working_directory) / ".claude" / "skills")
    return AppConfig(
        cli_binary=config.get("CliBinary", "claude"),
        working_directory=working_directory,
        skills_directory=skills_directory,
        discuss_model=config.get("DiscussModel", "claude-sonnet-4-5-20250929"),
        alert_model=config.get("AlertModel", "claude-opus-4-6"),
        turn_timeout_seconds=float(config.get("TurnTimeoutSeconds", 600)),
        heartbeat_interval_seconds=float(config.get("HeartbeatIntervalSeconds", 30)),
        compact_timeout_seconds=float(config.get("CompactTimeoutSeconds", 120)),
        feedback_timeout_seconds=float(config.get("FeedbackTimeoutSeconds", 300)),
        max_message_chars=int(config.get("MaxMessageChars", 39_000)),
        context_max_tokens=int(config.get("ContextMaxTokens", 200_000)),
        context_warn_tokens=int(config.get("ContextWarnTokens", 150_000)),
        database_path=str(config.get("DatabasePath", "data/bot.db")),
        workspace_domain=config.get("WorkspaceDomain", "slack.com"),
        alert_skill=config.get("AlertSkill", "one:pay-ops-production"),
        delay_alert_skill=config.get("DelayAlertSkill", "one:pay-ops-tax-production"),
        delay_alert_threshold=int(config.get("DelayAlertThreshold", 3)),
        delay_alert_window_seconds=float(config.get("DelayAlertWindowSeconds", 3600)),
        delay_alert_task_patterns=_to_list(config.get("DelayAlertTaskPatterns")),
        channels=ChannelsConfig(
            discuss=parse_channel_list(channels.get("Discuss")),
            monitor=parse_channel_list(channels.get("Monitor")),
            monitor_delay=parse_channel_list(channels.get("MonitorDelay")),
        ),
        required_mcp_servers=_to_list(config.get("RequiredMcpServers")) or ["chrome-devtools", "athena"],
        claude_config_path=str(config.get("ClaudeConfigPath") or Path.home() / ".claude.json"),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def _required(name: str) -> str:
    value = os.environ.get(name, "")
    if not value:
        raise ValueError(f"Missing required env var: {name}")
    return value


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        slack_bot_token=_required("SLACK_BOT_TOKEN"),
        slack_app_token=_required("SLACK_APP_TOKEN"),
        owner_user_id=_required("OWNER_USER_ID"),
        pagerduty_api_token=os.environ.get("PAGERDUTY_API_TOKEN") or None,
        pagerduty_from_email=os.environ.get("PAGERDUTY_FROM_EMAIL") or None,
    )
