"""Shared fixtures: a local aiohttp server standing in for the system under load."""

from __future__ import annotations

import asyncio

import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer


async def _ok(request: web.Request) -> web.Response:
    return web.Response(text="x" * 200_000)


async def _not_found(request: web.Request) -> web.Response:
    return web.Response(status=404, text="missing")


async def _slow(request: web.Request) -> web.Response:
    await asyncio.sleep(float(request.query.get("delay", "0.2")))
    return web.Response(text="slow")


@pytest_asyncio.fixture
async def server():
    app = web.Application()
    app.router.add_get("/ok", _ok)
    app.router.add_get("/ok/{tail:.*}", _ok)
    app.router.add_get("/missing", _not_found)
    app.router.add_get("/slow", _slow)

    srv = TestServer(app)
    await srv.start_server()
    try:
        yield srv
    finally:
        await srv.close()


def url_for(srv: TestServer, path: str) -> str:
    return str(srv.make_url(path))


def authority(srv: TestServer) -> str:
    return f"{srv.host}:{srv.port}"
