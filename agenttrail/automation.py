"""Client for the browser-automation engine (TinyFish SSE API).

A run is a single POST of `{goal, url}`; the engine answers with a
server-sent event stream:

    STARTED        carries runId
    STREAMING_URL  carries a live-view URL
    PROGRESS       informational
    COMPLETE       terminal; status COMPLETED carries resultJson
    ERROR          terminal; carries error

Only the terminal event decides the outcome. A stream that closes without
one is an error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .config import DEFAULT_AUTOMATION_URL, TrailConfig
from .errors import (
    AutomationError,
    ConfigurationError,
    trail_error,
    TRAIL_E_AUTOMATION_FAILED,
    TRAIL_E_AUTOMATION_HTTP,
    TRAIL_E_AUTOMATION_PROTOCOL,
    TRAIL_E_CONFIG,
)

logger = logging.getLogger("agenttrail.automation")


@dataclass(frozen=True)
class AutomationResult:
    run_id: str
    streaming_url: str
    final_url: str
    timestamp: str
    result_json: Dict[str, Any] = field(default_factory=dict)


def _automation_error(code: str, message: str, **details: Any) -> AutomationError:
    return trail_error(code, message, kind=AutomationError, retryable=True, http_status=502, **details)  # type: ignore[return-value]


def parse_sse_events(lines: Iterable[str]) -> Iterator[str]:
    """Yield the `data` payload of each event in an SSE line stream.

    Multi-line data fields are joined with "\\n"; comment lines and other
    fields are ignored; an event is dispatched on a blank line.
    """
    data: List[str] = []
    for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data.append(value)
    if data:
        yield "\n".join(data)


def resolve_run(events: Iterable[str], requested_url: str) -> AutomationResult:
    """Fold decoded SSE event payloads into the run outcome."""
    run_id = ""
    streaming_url = ""
    for payload in events:
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise _automation_error(TRAIL_E_AUTOMATION_PROTOCOL, "Failed to parse automation SSE event") from e
        if not isinstance(event, dict):
            raise _automation_error(TRAIL_E_AUTOMATION_PROTOCOL, "Automation SSE event is not an object")

        etype = event.get("type")
        if etype == "STARTED":
            run_id = str(event.get("runId") or "")
        elif etype == "STREAMING_URL" and event.get("streamingUrl"):
            streaming_url = str(event["streamingUrl"])
        elif etype == "PROGRESS":
            logger.debug("Automation run %s progress: %s", run_id or "?", event.get("purpose"))
        elif etype == "COMPLETE" and event.get("status") == "COMPLETED":
            result_json = event.get("resultJson")
            if not isinstance(result_json, dict):
                result_json = {}
            final_url = result_json.get("url")
            return AutomationResult(
                run_id=run_id or str(event.get("runId") or ""),
                streaming_url=streaming_url,
                final_url=final_url if isinstance(final_url, str) and final_url else requested_url,
                timestamp=str(event.get("timestamp") or ""),
                result_json=result_json,
            )
        elif etype == "ERROR":
            raise _automation_error(
                TRAIL_E_AUTOMATION_FAILED,
                str(event.get("error") or "Automation run failed"),
                run_id=run_id or event.get("runId"),
            )
    raise _automation_error(TRAIL_E_AUTOMATION_PROTOCOL, "Automation stream ended without completing", run_id=run_id)


class AutomationClient:
    """Blocking HTTP client; `run` offloads it to a worker thread."""

    def __init__(self, api_key: str, *, url: str = DEFAULT_AUTOMATION_URL, timeout_seconds: float = 300.0):
        if not api_key:
            raise trail_error(
                TRAIL_E_CONFIG,
                "Missing TINYFISH_API_KEY environment variable",
                kind=ConfigurationError,
                http_status=500,
            )
        self.api_key = api_key
        self.url = url
        self.timeout_seconds = float(timeout_seconds)

    def run_sync(self, goal: str, url: str) -> AutomationResult:
        body = json.dumps({"goal": goal, "url": url}).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=body,
            headers={
                "Content-Type": "application/json",
                "Accept": "text/event-stream",
                "X-API-Key": self.api_key,
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                lines = (raw.decode("utf-8") for raw in resp)
                result = resolve_run(parse_sse_events(lines), url)
        except urllib.error.HTTPError as e:
            raise _automation_error(
                TRAIL_E_AUTOMATION_HTTP,
                f"Automation API returned {e.code}: {e.reason}",
                status=e.code,
            ) from e
        except AutomationError:
            raise
        except Exception as e:
            raise _automation_error(TRAIL_E_AUTOMATION_HTTP, f"Automation request failed: {type(e).__name__}: {e}") from e
        logger.info("Automation run %s completed for %s", result.run_id or "?", result.final_url)
        return result

    async def run(self, goal: str, url: str) -> AutomationResult:
        return await asyncio.to_thread(self.run_sync, goal, url)


def build_automation_client_from_env(config: Optional[TrailConfig] = None) -> Optional[AutomationClient]:
    """Automation client, or None when no API key is configured."""
    cfg = config or TrailConfig.from_env()
    if not cfg.automation_api_key:
        return None
    return AutomationClient(cfg.automation_api_key, url=cfg.automation_url)
