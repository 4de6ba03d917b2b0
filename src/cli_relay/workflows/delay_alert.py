from __future__ import annotations

from loguru import logger

from cli_relay.workflows.feedback import FeedbackWorkflowController


class DelayAlertWorkflowController(FeedbackWorkflowController):
    """Repeated scheduler-delay investigations, at most one per job (dag) name."""

    kind = "delay_alert"
    log_tag = "DelayAlertWorkflow"
    completion_text = "Investigation complete."
    target_column = "dag_name"

    async def start(self, conversation_id: str, channel_id: str, target: str | None = None) -> bool:
        if target is not None and self.is_active_for_target(target):
            logger.info(f"[{self.log_tag}] Workflow already active for Dag: {target}, skipping")
            return False
        return await super().start(conversation_id, channel_id, target)
