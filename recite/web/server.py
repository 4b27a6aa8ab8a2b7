"""
Control server for the recitation companion.

Provides:
- FastAPI routes to start/stop listening and navigate lines
- WebSocket streaming of display updates, session state and text events
- mDNS registration for .local hostname access
- A minimal reader page served from static/
"""

import asyncio
import json
import logging
import socket
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from zeroconf import ServiceInfo, Zeroconf

from recite.config import Config
from recite.signals import LineSignal, ScalarSignal, SignalBus, StateSignal, TextSignal

if TYPE_CHECKING:
    from recite.engine import MatchStateMachine

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"


def line_message(signal: LineSignal) -> dict:
    return {"type": "line", "timestamp": signal.timestamp, "line": signal.line}


def state_message(signal: StateSignal) -> dict:
    return {
        "type": "state",
        "timestamp": signal.timestamp,
        "state": signal.state,
        "permission": signal.permission,
        "position": signal.position,
        "completed_count": signal.completed_count,
        "total_lines": signal.total_lines,
        "completed_ids": list(signal.completed_ids),
    }


def text_message(signal: TextSignal) -> dict:
    return {
        "type": "text",
        "timestamp": signal.timestamp,
        "category": signal.category,
        "message": signal.message,
        "level": signal.level,
    }


def scalar_message(signal: ScalarSignal) -> dict:
    return {"type": "scalar", "timestamp": signal.timestamp, "name": signal.name, "value": signal.value}


class ConnectionManager:
    """Manages WebSocket connections for broadcasting."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self.active_connections.append(websocket)
        logger.info("websocket_connected", extra={"clients": len(self.active_connections)})

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)
        logger.info("websocket_disconnected", extra={"clients": len(self.active_connections)})

    async def broadcast(self, message: dict) -> None:
        """Send a message to every client, dropping the ones that fail."""
        if not self.active_connections:
            return

        data = json.dumps(message, ensure_ascii=False)
        disconnected = []

        async with self._lock:
            connections = list(self.active_connections)

        for connection in connections:
            try:
                await connection.send_text(data)
            except (WebSocketDisconnect, RuntimeError):
                disconnected.append(connection)

        if disconnected:
            async with self._lock:
                for conn in disconnected:
                    if conn in self.active_connections:
                        self.active_connections.remove(conn)


class ControlServer:
    """
    HTTP/WebSocket surface over one MatchStateMachine.

    Usage:
        server = ControlServer(machine, signal_bus)
        await server.start()
    """

    def __init__(
        self,
        machine: "MatchStateMachine",
        signal_bus: SignalBus,
        mdns_enabled: Optional[bool] = None,
    ):
        self.machine = machine
        self.signal_bus = signal_bus
        self.mdns_enabled = Config.WEB_MDNS_ENABLED if mdns_enabled is None else mdns_enabled
        self.manager = ConnectionManager()
        self.zeroconf: Optional[Zeroconf] = None
        self.service_info: Optional[ServiceInfo] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscriptions = []
        self._broadcast_tasks: set = set()
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            self._loop = asyncio.get_running_loop()
            self._start_signal_subscriptions()
            if self.mdns_enabled:
                self._register_mdns()
            logger.info(f"Control server available at http://{Config.WEB_HOSTNAME}.local:{Config.WEB_PORT}")

            yield

            self._stop_signal_subscriptions()
            self._loop = None
            self._unregister_mdns()

        app = FastAPI(
            title="Recitation Companion",
            description="Live line tracking for a read-aloud text",
            lifespan=lifespan,
        )

        @app.get("/", response_class=HTMLResponse)
        async def get_reader():
            index_path = STATIC_DIR / "index.html"
            if index_path.exists():
                return index_path.read_text(encoding="utf-8")
            return HTMLResponse(
                content="<html><body><h1>Reader page not found</h1></body></html>",
                status_code=404,
            )

        # Plain (sync) routes run in the threadpool; start/stop touch the audio device
        @app.get("/api/status")
        def get_status():
            return self.machine.snapshot()

        @app.post("/api/start")
        def post_start():
            started = self.machine.start()
            if not started:
                raise HTTPException(status_code=503, detail="Microphone unavailable or denied")
            return self.machine.snapshot()

        @app.post("/api/stop")
        def post_stop():
            self.machine.stop()
            return self.machine.snapshot()

        @app.post("/api/reset")
        def post_reset():
            self.machine.reset()
            return self.machine.snapshot()

        @app.post("/api/prev")
        def post_prev():
            self.machine.go_prev()
            return self.machine.snapshot()

        @app.post("/api/next")
        def post_next():
            self.machine.go_next()
            return self.machine.snapshot()

        @app.post("/api/title")
        def post_title():
            self.machine.go_title()
            return self.machine.snapshot()

        @app.post("/api/goto/{index}")
        def post_goto(index: int):
            if self.machine.total_lines == 0:
                raise HTTPException(status_code=409, detail="No corpus loaded")
            self.machine.go_to_index(index)
            return self.machine.snapshot()

        @app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket):
            await self.manager.connect(websocket)
            try:
                await websocket.send_text(json.dumps(
                    {"type": "status", **self.machine.snapshot()},
                    ensure_ascii=False,
                ))
                while True:
                    data = await websocket.receive_text()
                    await self._handle_client_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self.manager.disconnect(websocket)

        return app

    async def _handle_client_message(self, data: str) -> None:
        """Navigation commands sent over the socket."""
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from client: {data}")
            return

        msg_type = message.get("type")
        if msg_type == "next":
            self.machine.go_next()
        elif msg_type == "prev":
            self.machine.go_prev()
        elif msg_type == "title":
            self.machine.go_title()
        elif msg_type == "goto" and isinstance(message.get("index"), int):
            self.machine.go_to_index(message["index"])
        elif msg_type == "ping":
            pass
        else:
            logger.debug(f"Unknown client message type: {msg_type}")

    def _start_signal_subscriptions(self) -> None:
        handlers = [
            (LineSignal, line_message),
            (StateSignal, state_message),
            (TextSignal, text_message),
            (ScalarSignal, scalar_message),
        ]
        for signal_type, to_message in handlers:
            self._subscriptions.append(self.signal_bus.subscribe(
                signal_type=signal_type,
                callback=lambda signal, fn=to_message: self._schedule_broadcast(fn(signal)),
            ))

    def _stop_signal_subscriptions(self) -> None:
        for subscription in self._subscriptions:
            self.signal_bus.unsubscribe(subscription)
        self._subscriptions = []

    def _schedule_broadcast(self, message: dict) -> None:
        """Called from the SignalBus thread; hands off to the event loop."""
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._spawn_broadcast, message)

    def _spawn_broadcast(self, message: dict) -> None:
        # The loop only keeps weak references to tasks
        task = asyncio.create_task(self.manager.broadcast(message))
        self._broadcast_tasks.add(task)
        task.add_done_callback(self._broadcast_tasks.discard)

    def _register_mdns(self) -> None:
        """Register mDNS service for .local hostname access."""
        hostname = Config.WEB_HOSTNAME
        port = Config.WEB_PORT

        local_ips = self._get_local_ips()
        if not local_ips:
            logger.warning("Could not determine local IP address for mDNS")
            return

        try:
            self.zeroconf = Zeroconf()
            self.service_info = ServiceInfo(
                "_http._tcp.local.",
                f"{hostname}._http._tcp.local.",
                addresses=[socket.inet_aton(ip) for ip in local_ips],
                port=port,
                properties={"path": "/", "name": "Recitation Companion"},
                server=f"{hostname}.local.",
            )
            self.zeroconf.register_service(self.service_info)
            logger.info(f"mDNS registered: {hostname}.local:{port} ({', '.join(local_ips)})")
        except OSError as e:
            logger.error(f"Failed to register mDNS: {e}")

    def _unregister_mdns(self) -> None:
        if self.zeroconf is None:
            return
        try:
            if self.service_info:
                self.zeroconf.unregister_service(self.service_info)
        finally:
            self.zeroconf.close()
            self.zeroconf = None
            self.service_info = None

    @staticmethod
    def _get_local_ips() -> list[str]:
        """Local IPv4 addresses, loopback excluded."""
        ips = []
        try:
            # Connecting a UDP socket sends nothing; it only picks the default route
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect(("8.8.8.8", 80))
                ips.append(s.getsockname()[0])
        except OSError:
            pass

        if not ips:
            try:
                for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET):
                    ip = info[4][0]
                    if not ip.startswith("127."):
                        ips.append(ip)
            except OSError:
                pass

        return sorted(set(ips))

    async def start(self) -> None:
        """Serve until cancelled."""
        import uvicorn

        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=Config.WEB_PORT,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
