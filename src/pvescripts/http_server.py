"""Embedded HTTP server: session WebSocket, backup API, health check.

The session protocol lives at ``/ws/script-execution``; every connection is
one :class:`WebSocketChannel`. Closing the socket tears down every session
it started.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Protocol

from aiohttp import WSMsgType, web

from pvescripts.catalog.sqlite import SqliteCatalog
from pvescripts.config import Settings
from pvescripts.discovery import BackupDiscovery
from pvescripts.logger import logger
from pvescripts.restore import RestoreOrchestrator, read_restore_log
from pvescripts.sessions import ExecutionSessionRegistry, SessionEvent, SessionRequest

_start_time = time.monotonic()


class HttpDeps(Protocol):
    """Services the HTTP layer needs. Implemented by ServiceContainer."""

    settings: Settings
    sessions: ExecutionSessionRegistry
    catalog: SqliteCatalog
    discovery: BackupDiscovery
    restore: RestoreOrchestrator


deps_key = web.AppKey("deps", HttpDeps)


class WebSocketChannel:
    """Delivers session events to one WebSocket as JSON text frames."""

    def __init__(self, ws: web.WebSocketResponse) -> None:
        self._ws = ws
        self._send_lock = asyncio.Lock()

    async def send_event(self, event: SessionEvent) -> None:
        if self._ws.closed:
            return
        async with self._send_lock:
            await self._ws.send_str(json.dumps(event.to_dict()))

    async def send_error(self, message: str) -> None:
        await self.send_event(SessionEvent(type="error", data=message))


# ------------------------------------------------------------------
# Session protocol
# ------------------------------------------------------------------


async def handle_session_message(
    registry: ExecutionSessionRegistry, channel: WebSocketChannel, raw: str
) -> None:
    """Route one inbound protocol message. Never raises on bad input."""
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        await channel.send_error("Invalid message format")
        return
    if not isinstance(message, dict):
        await channel.send_error("Invalid message format")
        return

    execution_id = message.get("executionId")
    match message.get("action"):
        case "start":
            if not message.get("scriptPath") or not execution_id:
                await channel.send_error("Missing scriptPath or executionId")
                return
            try:
                request = SessionRequest.from_message(message)
            except (ValueError, TypeError) as exc:
                await channel.send_error(str(exc))
                return
            # Registered before returning; the launch (rsync, spawn) runs in the background
            await registry.submit(channel, str(execution_id), request)
        case "stop":
            if not execution_id:
                await channel.send_error("Missing executionId")
                return
            await registry.stop(str(execution_id))
        case "input":
            if not execution_id or "input" not in message:
                await channel.send_error("Missing executionId or input")
                return
            await registry.input(channel, str(execution_id), str(message["input"]))
        case _:
            await channel.send_error("Unknown action")


async def _handle_ws(request: web.Request) -> web.WebSocketResponse:
    deps = request.app[deps_key]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    channel = WebSocketChannel(ws)
    logger.info("Session channel connected", remote=request.remote)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await handle_session_message(deps.sessions, channel, msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("WebSocket error", err=str(ws.exception()))
    finally:
        await deps.sessions.disconnect(channel)
        logger.info("Session channel disconnected", remote=request.remote)
    return ws


# ------------------------------------------------------------------
# Backup API
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(
        {
            "status": "ok",
            "uptime_seconds": round(time.monotonic() - _start_time),
            "active_sessions": len(deps.sessions),
        }
    )


async def _handle_list_backups(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response({"success": True, "backups": await deps.catalog.get_backups_grouped()})


async def _handle_discover_all(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    try:
        count = await deps.discovery.discover_all()
    except Exception as exc:
        logger.exception("Backup discovery failed")
        return web.json_response({"success": False, "error": str(exc)}, status=500)
    return web.json_response(
        {"success": True, "message": "Backup discovery completed successfully", "count": count}
    )


async def _handle_discover_container(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    container_id = request.match_info["containerId"]
    try:
        server_id = int(request.match_info["serverId"])
    except ValueError:
        return web.json_response({"success": False, "error": "serverId must be an integer"}, status=400)
    if not container_id.isdigit():
        return web.json_response({"success": False, "error": "Invalid container id"}, status=400)

    server = await deps.catalog.get_server_by_id(server_id)
    if server is None:
        return web.json_response(
            {"success": False, "error": f"Server with ID {server_id} not found"}, status=404
        )

    body: dict[str, Any] = {}
    if request.can_read_body:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"success": False, "error": "Invalid JSON body"}, status=400)
    if not isinstance(body, dict):
        body = {}
    hostname = str(body.get("hostname") or f"CT-{container_id}")

    backups = await deps.discovery.refresh_container(server, container_id, hostname)
    return web.json_response({"success": True, "backups": [b.to_dict() for b in backups]})


async def _handle_restore(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"success": False, "error": "Invalid JSON body"}, status=400)

    backup_id = body.get("backupId") if isinstance(body, dict) else None
    container_id = body.get("containerId") if isinstance(body, dict) else None
    server_id = body.get("serverId") if isinstance(body, dict) else None
    if (
        not isinstance(backup_id, int)
        or not isinstance(server_id, int)
        or not isinstance(container_id, str)
    ):
        return web.json_response(
            {
                "success": False,
                "error": "backupId (int), containerId (str) and serverId (int) are required",
            },
            status=400,
        )

    result = await deps.restore.execute_restore(backup_id, container_id, server_id)
    return web.json_response(result.to_dict())


async def _handle_restore_log(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    status = read_restore_log(deps.settings.restore_log_path)
    return web.json_response(status.to_dict())


# ------------------------------------------------------------------
# Server setup
# ------------------------------------------------------------------


def create_app(deps: HttpDeps) -> web.Application:
    app = web.Application()
    app[deps_key] = deps
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/ws/script-execution", _handle_ws)
    app.router.add_get("/api/backups", _handle_list_backups)
    app.router.add_post("/api/backups/discover", _handle_discover_all)
    app.router.add_post(
        "/api/backups/discover/{serverId}/{containerId}", _handle_discover_container
    )
    app.router.add_post("/api/backups/restore", _handle_restore)
    app.router.add_get("/api/backups/restore-log", _handle_restore_log)
    return app


async def start_http_server(deps: HttpDeps) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    app = create_app(deps)
    runner = web.AppRunner(app)
    await runner.setup()
    host, port = deps.settings.server.host, deps.settings.server.port
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server listening", host=host, port=port)
    return runner
