from __future__ import annotations

import httpx
from loguru import logger

from cli_relay.pagerduty import acknowledge_incident
from cli_relay.sessions.models import WorkflowSession
from cli_relay.workflows.feedback import FeedbackWorkflowController


class AlertWorkflowController(FeedbackWorkflowController):
    """Paging-alert investigations. The target is the incident id, when one was found."""

    kind = "alert"
    log_tag = "AlertWorkflow"
    completion_text = "Investigation complete. VPN disconnected."
    target_column = "incident_id"

    def __init__(
        self,
        *,
        pagerduty_api_token: str | None = None,
        pagerduty_from_email: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._pagerduty_api_token = pagerduty_api_token
        self._pagerduty_from_email = pagerduty_from_email
        self._http_client = http_client

    def skill_args(self, link: str) -> str:
        return f"on {link}"

    async def on_start(self, session: WorkflowSession) -> None:
        incident_id = session.target
        if not (incident_id and self._pagerduty_api_token and self._pagerduty_from_email):
            return
        ack = await acknowledge_incident(
            incident_id,
            self._pagerduty_api_token,
            self._pagerduty_from_email,
            client=self._http_client,
        )
        if ack.success:
            logger.info(f"[{self.log_tag}] PD incident {incident_id} acknowledged")
        else:
            logger.error(f"[{self.log_tag}] Failed to ack PD incident {incident_id}: {ack.error}")

    async def teardown(self, session: WorkflowSession) -> None:
        # The skill's "off" mode disconnects the VPN it opened.
        result = await self.run_to_completion(f"/{self._skill} off")
        logger.info(f"[{self.log_tag}] Teardown for thread {session.conversation_id} exited (code: {result.exit_code})")
