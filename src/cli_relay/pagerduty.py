from __future__ import annotations

from dataclasses import dataclass

import httpx

_INCIDENTS_URL = "https://api.pagerduty.com/incidents"
_TIMEOUT_SECONDS = 30


@dataclass
class AckResult:
    success: bool
    error: str | None = None


async def acknowledge_incident(
    incident_id: str,
    api_token: str,
    from_email: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> AckResult:
    """Mark an incident acknowledged. One attempt; failures come back in the result."""
    headers = {
        "Authorization": f"Token token={api_token}",
        "From": from_email,
        "Content-Type": "application/json",
        "Accept": "application/vnd.pagerduty+json;version=2",
    }
    body = {"incident": {"type": "incident_reference", "status": "acknowledged"}}
    url = f"{_INCIDENTS_URL}/{incident_id}"

    try:
        if client is not None:
            response = await client.put(url, headers=headers, json=body)
        else:
            async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS) as owned:
                response = await owned.put(url, headers=headers, json=body)
    except httpx.HTTPError as ex:
        return AckResult(success=False, error=str(ex) or type(ex).__name__)

    if response.status_code >= 400:
        return AckResult(success=False, error=f"HTTP {response.status_code}: {response.text}")
    return AckResult(success=True)
