from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger


def detect_mcp_overrides(
    claude_config_path: str | Path,
    project_path: str,
    required_servers: list[str],
    override_dir: str | Path,
) -> str | None:
    """Write an ``--mcp-config`` override for required servers disabled in the project.

    Returns the override file path, or None when no override is needed.
    """
    config_path = Path(claude_config_path)
    if not config_path.exists():
        logger.info("CLI config not found, skipping MCP detection")
        return None

    try:
        with open(config_path, encoding="utf-8") as f:
            cli_config: dict[str, Any] = json.load(f)
    except (OSError, json.JSONDecodeError) as ex:
        logger.warning(f"Failed to parse CLI config {config_path}: {ex}")
        return None

    project_config = (cli_config.get("projects") or {}).get(project_path)
    if not project_config:
        logger.info(f"No project config found for {project_path}")
        return None

    servers = project_config.get("mcpServers") or {}
    disabled = set(project_config.get("disabledMcpServers") or [])
    overrides: dict[str, Any] = {}

    for name in required_servers:
        if name not in servers:
            logger.warning(f"Required MCP server {name!r} not configured in project")
        elif name in disabled:
            logger.info(f"Required MCP server {name!r} is disabled, forcing it on via --mcp-config")
            overrides[name] = servers[name]
        else:
            logger.debug(f"Required MCP server {name!r} is enabled")

    if not overrides:
        logger.info("All required MCP servers enabled, no override needed")
        return None

    override_path = Path(override_dir) / "mcp-override.json"
    override_path.parent.mkdir(parents=True, exist_ok=True)
    override_path.write_text(json.dumps({"mcpServers": overrides}, indent=2), encoding="utf-8")
    logger.info(f"MCP override config written to {override_path}")
    return str(override_path)
