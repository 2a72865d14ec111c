"""Tests for API trigger polling"""
import asyncio

import pytest
from aiohttp import web

from loopwork.automation.api_poll import build_request_headers, poll_api
from loopwork.automation.errors import ApiPollError
from loopwork.automation.models import ApiTrigger
from tests.helpers import json_server


def test_content_type_defaulted_for_json_body():
    trigger = ApiTrigger(body_json={"a": 1}, headers={"X-Token": "t"})
    assert build_request_headers(trigger) == {"X-Token": "t", "Content-Type": "application/json"}


def test_existing_content_type_kept():
    trigger = ApiTrigger(body_json={"a": 1}, headers={"content-type": "application/vnd.api+json"})
    assert build_request_headers(trigger) == {"content-type": "application/vnd.api+json"}


def test_no_body_no_content_type():
    assert build_request_headers(ApiTrigger()) == {}


class TestPollApi:
    @pytest.mark.asyncio
    async def test_match_returns_event(self):
        async def handler(request):
            return web.json_response({"jobs": [{"state": "queued"}, {"state": "done"}]})

        async with json_server(handler) as url:
            trigger = ApiTrigger(url=url, json_path="$.jobs[1].state", op="equals", expected="done")
            event = await poll_api(trigger, clock=lambda: 42.0)

        assert event.status == 200
        assert event.path_value == "done"
        assert event.response["jobs"][0]["state"] == "queued"
        assert event.ts == 42.0

    @pytest.mark.asyncio
    async def test_no_match_returns_none(self):
        async def handler(request):
            return web.json_response({"count": 0})

        async with json_server(handler) as url:
            assert await poll_api(ApiTrigger(url=url, json_path="count")) is None

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self):
        seen = {}

        async def handler(request):
            seen["method"] = request.method
            seen["content_type"] = request.headers.get("Content-Type")
            seen["body"] = await request.json()
            return web.json_response({"message": "release ready"})

        async with json_server(handler) as url:
            trigger = ApiTrigger(
                url=url,
                method="POST",
                body_json={"query": "status"},
                json_path="message",
                op="contains",
                expected="ready",
            )
            event = await poll_api(trigger)

        assert event is not None
        assert seen == {"method": "POST", "content_type": "application/json", "body": {"query": "status"}}

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def handler(request):
            await asyncio.sleep(0.5)
            return web.json_response({})

        async with json_server(handler) as url:
            with pytest.raises(ApiPollError, match="timed out after 50ms"):
                await poll_api(ApiTrigger(url=url, timeout_ms=50))

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        async def handler(request):
            return web.Response(text="<html>nope</html>", content_type="text/html")

        async with json_server(handler) as url:
            with pytest.raises(ApiPollError, match="invalid JSON response"):
                await poll_api(ApiTrigger(url=url))

    @pytest.mark.asyncio
    async def test_connection_refused(self, unused_tcp_port):
        trigger = ApiTrigger(url=f"http://127.0.0.1:{unused_tcp_port}/status")
        with pytest.raises(ApiPollError):
            await poll_api(trigger, default_timeout_ms=2000)
