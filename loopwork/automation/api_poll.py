"""HTTP polling for loop API triggers"""

import asyncio
import json
import logging
import time
from typing import Callable, Dict, Optional

import aiohttp

from .conditions import check_condition, get_json_path_value
from .errors import ApiPollError
from .models import DEFAULT_API_TIMEOUT_MS, ApiEvent, ApiTrigger

logger = logging.getLogger(__name__)


def build_request_headers(trigger: ApiTrigger) -> Dict[str, str]:
    """Copy configured headers; default Content-Type for JSON bodies."""
    headers = dict(trigger.headers or {})
    if trigger.body_json:
        if not any(key.lower() == "content-type" for key in headers):
            headers["Content-Type"] = "application/json"
    return headers


async def poll_api(
    trigger: ApiTrigger,
    default_timeout_ms: int = DEFAULT_API_TIMEOUT_MS,
    clock: Callable[[], float] = time.time,
) -> Optional[ApiEvent]:
    """Run one polling attempt.

    Returns:
        ApiEvent when the condition matched, None otherwise

    Raises:
        ApiPollError: request failed, timed out, or the body is not JSON
    """
    timeout_ms = trigger.timeout_ms or default_timeout_ms
    data = json.dumps(trigger.body_json) if trigger.body_json else None
    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout_ms / 1000)
        ) as session:
            async with session.request(
                trigger.method or "GET",
                trigger.url,
                headers=build_request_headers(trigger),
                data=data,
            ) as resp:
                status = resp.status
                payload = await resp.json(content_type=None)
    except asyncio.TimeoutError as e:
        raise ApiPollError(f"request to {trigger.url} timed out after {timeout_ms}ms") from e
    except aiohttp.ClientError as e:
        raise ApiPollError(f"{e.__class__.__name__}: {e}") from e
    except ValueError as e:
        raise ApiPollError(f"invalid JSON response: {e}") from e

    path_value = get_json_path_value(payload, trigger.json_path or "$")
    matched = check_condition(trigger.op, path_value, trigger.expected)
    logger.debug(f"API poll {trigger.method} {trigger.url} -> {status}, {trigger.op}={matched!r}")
    if not matched:
        return None
    return ApiEvent(ts=clock(), response=payload, path_value=path_value, status=status)
