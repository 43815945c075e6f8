import json
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Any, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from blobs import BlobStore
from ledger import HistoryLedger
from relay import BroadcastRouter, Connection, RelayPolicy, error_frame
from schemas import dump_records
from sessions import SessionRegistry
from settings import Settings
from store import DurableLogStore

logger = logging.getLogger(__name__)

# -------------------- Utilities --------------------

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def client_meta(headers: Any, client: Any) -> Dict[str, Optional[str]]:
    # Try headers first (supports proxies), then client host
    xff = headers.get("x-forwarded-for")
    ip = (xff.split(",")[0].strip() if xff else None) or (client.host if client else None)
    return {"ip": ip, "user_agent": headers.get("user-agent")}


def build_router(settings: Settings) -> BroadcastRouter:
    store = DurableLogStore(settings.history_file)
    ledger = HistoryLedger(store.load())
    return BroadcastRouter(
        ledger=ledger,
        sessions=SessionRegistry(settings.admin_key),
        store=store,
        blobs=BlobStore(settings.upload_dir, settings.upload_url_prefix, settings.max_upload_bytes),
        policy=RelayPolicy(
            require_join_before_submit=settings.require_join_before_submit,
            presence_enabled=settings.presence_enabled,
        ),
    )


# -------------------- App --------------------

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.admin_key:
            logger.warning("ADMIN_KEY is not set. Admin features will be disabled.")
        Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
        router = build_router(settings)
        await router.store.start()
        app.state.router = router
        yield
        logger.info("Shutting down, flushing history to %s", settings.history_file)
        for connection in list(router.manager.connections.values()):
            await connection.close()
        await router.store.aclose()

    app = FastAPI(title="Snippet Relay", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.mount(settings.upload_url_prefix, StaticFiles(directory=settings.upload_dir, check_dir=False),
              name="uploads")

    # -------------------- HTTP Endpoints --------------------

    @app.get("/")
    def read_root():
        return {"message": "Snippet relay is alive and running."}

    @app.get("/messages")
    def read_messages(request: Request):
        return dump_records(request.app.state.router.ledger.snapshot())

    @app.get("/health")
    def health(request: Request):
        router: BroadcastRouter = request.app.state.router
        return {
            "backend": "running",
            "messages": len(router.ledger),
            "connections": len(router.manager),
            "users": router.sessions.active_names(),
            "admin_enabled": router.sessions.admin_enabled,
            "history_file": str(router.store.path),
            "history_writes": router.store.writes,
            "last_save_error": router.store.last_error,
        }

    # -------------------- WebSocket Endpoint --------------------

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        origin = websocket.headers.get("origin")
        if not settings.origin_allowed(origin):
            logger.warning("Refusing websocket from origin %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        router: BroadcastRouter = websocket.app.state.router
        meta = client_meta(websocket.headers, websocket.client)
        connection = Connection(uuid.uuid4().hex, websocket, settings.outbox_size, remote=meta["ip"])
        await router.on_connect(connection)
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    connection.send(error_frame("frames must be JSON"))
                    continue
                await router.dispatch(connection, data)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Websocket error on %s", connection.id)
            if not connection.closed:
                await websocket.close(code=1011)
        finally:
            await router.on_disconnect(connection)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = app.state.settings
    # base64 inflates uploads by a third; leave headroom for the JSON envelope
    ws_max_size = settings.max_upload_bytes * 4 // 3 + 64 * 1024
    uvicorn.run(app, host=settings.host, port=settings.port, ws_max_size=ws_max_size)
