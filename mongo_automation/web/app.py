import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

import anyio
from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.websockets import WebSocketDisconnect, WebSocketState

from mongo_automation.context import AutomationContext
from mongo_automation.errors import (
    AutomationError,
    CommandError,
    InstallationInProgress,
    NodeConnectionError,
    ReadinessTimeout,
    ValidationError,
)
from mongo_automation.events import INSTALLATION_STATUS, LIVE_LOGS, NODE_STATS, REPLICATION_STATUS

logger = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 1000


class QueryRequest(BaseModel):
    node: str
    query: str = ""
    database: Optional[str] = None


class CommandRequest(BaseModel):
    node: str
    command: str = ""


class SeedRequest(BaseModel):
    recordCount: Optional[int] = None
    includeFiles: Optional[bool] = None


class TerminalRequest(BaseModel):
    node: str
    cols: int = 80
    rows: int = 24


def ok(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data}


def fail(message: str, status_code: int, **extra) -> JSONResponse:
    body = {"success": False, "error": message}
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def _offer(queue: asyncio.Queue, item: Dict[str, Any]) -> None:
    try:
        queue.put_nowait(item)
    except asyncio.QueueFull:
        logger.warning("Event queue full, dropping %s", item.get("event"))


def create_app(ctx: AutomationContext, monitor_on_startup: bool = True) -> FastAPI:
    api_key = ctx.settings.dashboard_api_key

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Dashboard listening on port %s", ctx.settings.port)
        if monitor_on_startup:
            loop = asyncio.get_running_loop()
            loop.run_in_executor(None, ctx.start_monitoring_if_reachable)
        yield
        ctx.close()

    app = FastAPI(title="HRM Labs MongoDB Cluster Dashboard", version=ctx.version, lifespan=lifespan)
    app.state.context = ctx

    # ------------------------------
    # error mapping
    # ------------------------------

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return fail(str(exc), 400, field=exc.field)

    @app.exception_handler(InstallationInProgress)
    async def in_progress(request: Request, exc: InstallationInProgress):
        return fail(str(exc), 409)

    @app.exception_handler(NodeConnectionError)
    async def node_unreachable(request: Request, exc: NodeConnectionError):
        logger.error("Request to %s failed: %s", request.url.path, exc)
        return fail(str(exc), 502, node=exc.node)

    @app.exception_handler(CommandError)
    async def command_failed(request: Request, exc: CommandError):
        result = exc.result.to_dict() if exc.result is not None else None
        return fail(str(exc), 500, result=result)

    @app.exception_handler(ReadinessTimeout)
    async def timed_out(request: Request, exc: ReadinessTimeout):
        return fail(str(exc), 504)

    @app.exception_handler(AutomationError)
    async def automation_error(request: Request, exc: AutomationError):
        logger.error("Request to %s failed: %s", request.url.path, exc)
        return fail(str(exc), 500)

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError):
        return fail("Invalid request", 422, detail=json.loads(json.dumps(exc.errors(), default=str)))

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return fail(str(exc.detail), exc.status_code)

    def require_api_key(request: Request, x_api_key: Optional[str] = Header(None)):
        if api_key and x_api_key != api_key:
            host = request.client.host if request.client else "unknown"
            logger.warning("Rejected request from %s to %s: bad API key", host, request.url.path)
            raise StarletteHTTPException(status_code=403, detail="Unauthorized")

    # ------------------------------
    # HTTP
    # ------------------------------

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "uptime": ctx.uptime,
            "version": ctx.version,
        }

    @app.get("/api/status")
    def replication_status():
        status = ctx.poller.poll()
        if status is None:
            return fail("Failed to get replication status", 503)
        return ok(status)

    @app.get("/api/installation-status")
    async def installation_status():
        return ok(ctx.sequencer.status())

    @app.post("/api/install")
    def start_installation():
        ctx.sequencer.trigger()
        run = ctx.sequencer.status()
        return ok({"message": "Installation started", "runId": run["runId"]})

    @app.get("/api/nodes")
    async def nodes():
        return ok(ctx.registry.snapshot())

    @app.post("/api/connectivity")
    def connectivity():
        return ok(ctx.check_connectivity())

    @app.get("/api/logs/{node}")
    def logs(node: str, lines: int = Query(100)):
        return ok({"node": node, "lines": lines, "logs": ctx.tail_logs(node, lines)})

    @app.post("/api/query")
    def run_query(body: QueryRequest):
        return ok(ctx.run_query(body.node, body.query, body.database))

    @app.post("/api/ssh", dependencies=[Depends(require_api_key)])
    def run_command(body: CommandRequest):
        return ok(ctx.run_command(body.node, body.command).to_dict())

    @app.get("/api/config")
    async def get_config():
        return ok(ctx.config_document())

    @app.post("/api/config")
    async def set_config(request: Request):
        try:
            payload = await request.json()
        except ValueError as e:
            raise ValidationError(f"Body must be JSON: {e}") from e
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, ctx.replace_config, payload)
        return ok(ctx.config_document())

    @app.post("/api/generate-test-data")
    def generate_test_data(body: Optional[SeedRequest] = None):
        body = body or SeedRequest()
        ctx.seed_in_background(body.recordCount, body.includeFiles)
        return ok({"message": "Test data generation started"})

    @app.post("/api/terminal", dependencies=[Depends(require_api_key)])
    def create_terminal(body: TerminalRequest):
        if ctx.registry.get(body.node) is None:
            raise ValidationError(f"Unknown node: {body.node}", field="node")
        return ok({"terminalId": ctx.terminals.create(body.node, body.cols, body.rows)})

    # ------------------------------
    # WebSockets
    # ------------------------------

    async def run_until_closed(*loops) -> None:
        """Run the loops together; the first one to return ends all of them."""
        async with anyio.create_task_group() as tg:
            async def wrap(func):
                try:
                    await func()
                except WebSocketDisconnect:
                    pass
                tg.cancel_scope.cancel()

            for func in loops:
                tg.start_soon(wrap, func)

    @app.websocket("/ws/events")
    async def events_socket(websocket: WebSocket):
        await websocket.accept()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)

        def forward(event: str, payload: Any) -> None:
            loop.call_soon_threadsafe(_offer, queue, {"event": event, "data": payload})

        token = ctx.events.subscribe(forward)
        logger.info("Event subscriber connected")
        try:
            await websocket.send_json({"event": INSTALLATION_STATUS, "data": ctx.sequencer.status()})
            if ctx.registry.replication_status is not None:
                await websocket.send_json({"event": REPLICATION_STATUS, "data": ctx.registry.replication_status})
            if ctx.registry.metrics:
                await websocket.send_json({"event": NODE_STATS, "data": ctx.registry.metrics})

            async def send_events():
                while True:
                    item = await queue.get()
                    await websocket.send_json(item)

            async def receive_messages():
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        return
                    try:
                        request = json.loads(message.get("text") or message.get("bytes") or "null")
                    except ValueError:
                        continue
                    if not isinstance(request, dict) or request.get("type") != "subscribe-logs":
                        continue
                    node = str(request.get("node", ""))
                    try:
                        payload = await loop.run_in_executor(None, ctx.live_logs, node)
                        _offer(queue, {"event": LIVE_LOGS, "data": payload})
                    except AutomationError as e:
                        _offer(queue, {"event": LIVE_LOGS, "data": {"node": node, "error": str(e)}})

            await run_until_closed(send_events, receive_messages)
        finally:
            ctx.events.unsubscribe(token)
            logger.info("Event subscriber disconnected")

    @app.websocket("/terminal")
    async def terminal_socket(websocket: WebSocket, terminalId: str = Query(...), apiKey: Optional[str] = Query(None)):
        if api_key and apiKey != api_key:
            host = websocket.client.host if websocket.client else "unknown"
            logger.warning("Rejected request from %s to /terminal: bad API key", host)
            await websocket.close(code=1008)
            return
        if ctx.terminals.get(terminalId) is None:
            await websocket.close(code=1008)
            return
        await websocket.accept()
        loop = asyncio.get_running_loop()

        async def pump_output():
            while True:
                data = await loop.run_in_executor(None, ctx.terminals.read, terminalId)
                if not data:
                    return
                await websocket.send_bytes(data)

        async def pump_input():
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                data = message.get("bytes")
                if data is None and message.get("text") is not None:
                    data = message["text"].encode("utf-8")
                if data:
                    await loop.run_in_executor(None, ctx.terminals.write, terminalId, data)

        try:
            await run_until_closed(pump_output, pump_input)
        finally:
            # unblocks a pending read on the shell channel
            ctx.terminals.close(terminalId)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()

    return app
