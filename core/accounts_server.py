"""
FastAPI Accounts Server for the Trade Copier
============================================

Serves the reconciled account view built from the bots' status files:
- /health: health check endpoint
- /accounts: grouped view (masters with their slaves, unconnected slaves, pending)
- /accounts/snapshot: flat list of accounts with effective copier status
- /accounts/events: server-sent events, one per account change
- /accounts/{account_id}/enabled: switch copying on/off for an account
- /copier/global: read or flip the global copier switch
- /accounts/{platform}/{account_id} (DELETE): unlink an account
- /accounts/{account_id}/convert-to-master, /convert-to-slave: adopt a pending account
- /accounts/{account_id}/config: change a master's or slave's CONFIG fields
- /accounts/{account_id}/merge: collapse same-file platform duplicates
- /connections: link or unlink a slave and a master
- /copier/emergency-shutdown, /copier/reset-all-on: switch every master off or on
- /files (DELETE): forget a status file and its accounts

Authentication:
- Every endpoint except /health requires an X-API-Key header. When
  COPIER_API_KEYS is set, the key must be one of the listed keys.

Usage:
    env COPIER_API_KEYS=xxx COPIER_STATUS_DIR=/path/to/csv_data \\
        python -m uvicorn core.accounts_server:app --host 127.0.0.1 --port 8443
"""
from __future__ import annotations

import json
import logging
import os
import queue
import time
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from dotenv import load_dotenv

from src.copier.config import CopierSettings, load_settings
from src.copier.errors import (
    AccountNotFound,
    ConfigNotWritten,
    RegistryCorrupt,
    RegistryNotFound,
    mask_api_key,
)
from src.copier.notifier import ChangeEvent
from src.copier.poller import AccountPoller

# Load environment variables from .env if present
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("COPIER_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# SSE keep-alive and per-client buffer
SSE_PING_INTERVAL = 15.0
SSE_QUEUE_SIZE = 500


# ============================================================================
# Helper Functions
# ============================================================================

def _timestamp() -> str:
    return datetime.utcnow().isoformat()


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request, considering X-Forwarded-For."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _settings(request: Request) -> CopierSettings:
    return request.app.state.settings


def _poller(request: Request) -> AccountPoller:
    poller = request.app.state.poller
    if poller is None:
        raise HTTPException(status_code=503, detail="poller_not_ready")
    return poller


def _require_api_key(request: Request) -> str:
    """Return the caller's API key.

    Raises HTTPException if the key is missing or not accepted.
    """
    client_ip = _get_client_ip(request)
    api_key = request.headers.get("X-API-Key", "").strip()

    if not api_key:
        logger.error(f"Missing API key from {client_ip}")
        raise HTTPException(status_code=401, detail="missing_api_key")

    allowed = _settings(request).api_keys
    if allowed and api_key not in allowed:
        logger.error(f"Invalid API key from {client_ip}: {mask_api_key(api_key)}")
        raise HTTPException(status_code=403, detail="invalid_api_key")

    _poller(request).touch(api_key)
    return api_key


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"invalid_json: {e}")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="invalid_json: expected an object")
    return body


async def _optional_json_body(request: Request) -> Dict[str, Any]:
    if not await request.body():
        return {}
    return await _json_body(request)


def _config_fields(body: Dict[str, Any], skip: Tuple[str, ...] = ()) -> Dict[str, Any]:
    """CONFIG field values from a request body; only scalars and null are accepted."""
    values = {k: v for k, v in body.items() if k not in skip}
    for name, value in values.items():
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise HTTPException(status_code=400, detail=f"'{name}' must be a string, number, boolean or null")
    return values


def _require_str(body: Dict[str, Any], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(status_code=400, detail=f"'{name}' is required")
    return value.strip()


def _require_bool(body: Dict[str, Any], name: str) -> bool:
    value = body.get(name)
    if not isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"'{name}' must be true or false")
    return value


def format_sse(data: Dict[str, Any], event: Optional[str] = None, event_id: Optional[int] = None) -> str:
    """Render one server-sent event frame."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    if event:
        lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, default=str)}")
    return "\n".join(lines) + "\n\n"


def _event_frame(event: ChangeEvent) -> str:
    return format_sse(event.to_dict(), event=event.type, event_id=event.id)


# ============================================================================
# App factory
# ============================================================================

def create_app(poller: Optional[AccountPoller] = None, settings: Optional[CopierSettings] = None, start_poller: bool = True) -> FastAPI:
    """Build the FastAPI app around one AccountPoller.

    When ``poller`` is None one is built from ``settings`` at startup, so
    importing this module never touches the filesystem or starts threads.
    """
    settings = settings or (poller.settings if poller is not None else load_settings())

    # ------------------------------------------------------------------
    # Startup/Shutdown
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.poller is None:
            app.state.poller = AccountPoller(settings)
        logger.info("=" * 60)
        logger.info("Trade Copier Accounts Server Starting")
        logger.info("=" * 60)
        logger.info(f"Status directory: {settings.status_dir}")
        logger.info(f"Registry directory: {settings.registry_dir}")
        logger.info(f"Activity timeout: {settings.activity_timeout}s")
        logger.info(f"API keys configured: {len(settings.api_keys)}")
        logger.info("=" * 60)
        if start_poller:
            app.state.poller.start()
        try:
            yield
        finally:
            logger.info("Trade Copier Accounts Server Shutting Down")
            if start_poller:
                app.state.poller.close()

    app = FastAPI(
        title="Trade Copier Accounts",
        description="Account status reconciliation for the trade copier bots",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.poller = poller

    # ------------------------------------------------------------------
    # API Endpoints
    # ------------------------------------------------------------------
    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint - no authentication required."""
        current = request.app.state.poller
        return {
            "status": "ok",
            "service": "copier-accounts",
            "timestamp": _timestamp(),
            "version": SERVICE_VERSION,
            "status_dir": str(settings.status_dir),
            "poller_running": bool(current is not None and current.running),
            "cycles": current.cycles if current is not None else 0,
            "watched_files": len(current.watched_files()) if current is not None else 0,
            "tracked_api_keys": len(current.active_keys()) if current is not None else 0,
            "api_keys_configured": bool(settings.api_keys),
        }

    @app.get("/accounts")
    async def get_accounts(request: Request):
        """Grouped account view for the caller's API key."""
        api_key = _require_api_key(request)
        view = _poller(request).get_view(api_key)
        return {
            "status": "ok",
            **view.to_dict(),
            "timestamp": _timestamp(),
        }

    @app.get("/accounts/snapshot")
    async def get_snapshot(request: Request):
        """Every known account with its effective copier status."""
        api_key = _require_api_key(request)
        states = _poller(request).get_snapshot(api_key)
        return {
            "status": "ok",
            "accounts": [s.to_dict() for s in states],
            "timestamp": _timestamp(),
        }

    @app.get("/accounts/events")
    def stream_events(request: Request, last_event_id: Optional[int] = None, max_events: Optional[int] = None):
        """Server-sent events for account changes.

        The stream opens with the full current account list (or, when
        ``last_event_id`` / ``Last-Event-ID`` is given, with the buffered
        events after it) and then sends one event per change.
        ``max_events`` closes the stream after that many data events.
        """
        api_key = _require_api_key(request)
        poller = _poller(request)
        if last_event_id is None:
            header = request.headers.get("Last-Event-ID")
            if header and header.strip().isdigit():
                last_event_id = int(header.strip())

        q: "queue.Queue[ChangeEvent]" = queue.Queue(maxsize=SSE_QUEUE_SIZE)

        def _enqueue(event: ChangeEvent) -> None:
            try:
                q.put_nowait(event)
            except queue.Full:
                logger.warning(f"SSE client queue full for {mask_api_key(api_key)}, dropping event {event.id}")

        unsubscribe = poller.on_change(api_key, _enqueue)

        if last_event_id is not None:
            opening = [_event_frame(e) for e in poller.notifier.recent(api_key, after_id=last_event_id)]
        else:
            accounts = [s.to_dict() for s in poller.get_snapshot(api_key)]
            opening = [format_sse({"accounts": accounts, "timestamp": _timestamp()}, event="snapshot")]

        def gen() -> Iterator[str]:
            sent = 0
            try:
                for frame in opening:
                    yield frame
                    sent += 1
                    if max_events is not None and sent >= max_events:
                        return
                last_ping = time.time()
                while True:
                    try:
                        event = q.get(timeout=1.0)
                    except queue.Empty:
                        now = time.time()
                        if now - last_ping > SSE_PING_INTERVAL:
                            yield "event: ping\ndata: {}\n\n"
                            last_ping = now
                        continue
                    yield _event_frame(event)
                    sent += 1
                    if max_events is not None and sent >= max_events:
                        return
            finally:
                unsubscribe()

        return StreamingResponse(
            gen(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/accounts/{account_id}/enabled")
    async def set_account_enabled(account_id: str, request: Request):
        """Switch copying on/off for one account.

        Expected payload:
            {"role": "MASTER" | "SLAVE", "enabled": true | false}
        """
        api_key = _require_api_key(request)
        body = await _json_body(request)
        enabled = _require_bool(body, "enabled")
        role = str(body.get("role", "")).upper()
        try:
            states = _poller(request).set_enabled(api_key, account_id, role, enabled)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "status": "ok",
            "account_id": account_id,
            "role": role,
            "enabled": enabled,
            "accounts": [s.to_dict() for s in states],
            "timestamp": _timestamp(),
        }

    @app.get("/copier/global")
    async def get_global_status(request: Request):
        api_key = _require_api_key(request)
        try:
            entry = _poller(request).registry.load(api_key)
            global_status = entry.copier_status.global_status
        except RegistryNotFound:
            global_status = True
        return {"status": "ok", "global_status": global_status, "timestamp": _timestamp()}

    @app.post("/copier/global")
    async def set_global_status(request: Request):
        """Flip the global copier switch.

        Expected payload:
            {"enabled": true | false}
        """
        api_key = _require_api_key(request)
        body = await _json_body(request)
        enabled = _require_bool(body, "enabled")
        global_status = _poller(request).set_global_status(api_key, enabled)
        return {"status": "ok", "global_status": global_status, "timestamp": _timestamp()}

    @app.delete("/accounts/{platform}/{account_id}")
    async def unlink_account(platform: str, account_id: str, request: Request):
        api_key = _require_api_key(request)
        snap = _poller(request).unlink(api_key, platform, account_id)
        if snap is None:
            raise HTTPException(status_code=404, detail=f"unknown_account: {platform.upper()}:{account_id}")
        return {
            "status": "ok",
            "removed": snap.to_dict(),
            "timestamp": _timestamp(),
        }

    @app.post("/accounts/{account_id}/convert-to-master")
    async def convert_to_master(account_id: str, request: Request):
        """Turn a pending account into a master.

        Optional payload:
            {"name": "My master"}
        """
        api_key = _require_api_key(request)
        body = await _optional_json_body(request)
        name = body.get("name")
        if name is not None and not isinstance(name, str):
            raise HTTPException(status_code=400, detail="'name' must be a string")
        try:
            states = _poller(request).convert_to_master(api_key, account_id, name=name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "status": "ok",
            "account_id": account_id,
            "requested_role": "MASTER",
            "accounts": [s.to_dict() for s in states],
            "timestamp": _timestamp(),
        }

    @app.post("/accounts/{account_id}/convert-to-slave")
    async def convert_to_slave(account_id: str, request: Request):
        """Turn a pending account into a slave of ``master_id``.

        Expected payload:
            {"master_id": "52381082", "enabled": false, "lot_multiplier": 1.0,
             "force_lot": null, "reverse_trading": false, "prefix": null, "suffix": null}
        """
        api_key = _require_api_key(request)
        body = await _json_body(request)
        master_id = _require_str(body, "master_id")
        enabled = _require_bool(body, "enabled") if "enabled" in body else False
        fields = _config_fields(body, skip=("master_id", "enabled"))
        try:
            states = _poller(request).convert_to_slave(api_key, account_id, master_id, enabled=enabled, **fields)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "status": "ok",
            "account_id": account_id,
            "requested_role": "SLAVE",
            "master_id": master_id,
            "accounts": [s.to_dict() for s in states],
            "timestamp": _timestamp(),
        }

    @app.post("/accounts/{account_id}/config")
    async def update_account_config(account_id: str, request: Request):
        """Change the CONFIG fields of a master or slave.

        Expected payload:
            {"role": "MASTER", "name": ..., "prefix": ..., "suffix": ...}
            {"role": "SLAVE", "lot_multiplier": ..., "force_lot": ..., "reverse_trading": ...,
             "master_id": ..., "master_file_path": ..., "prefix": ..., "suffix": ...}
        Only the fields present are changed.
        """
        api_key = _require_api_key(request)
        body = await _json_body(request)
        role = str(body.get("role", "")).upper()
        fields = _config_fields(body, skip=("role",))
        poller = _poller(request)
        try:
            if role == "MASTER":
                states = poller.update_master_config(api_key, account_id, **fields)
            elif role == "SLAVE":
                states = poller.update_slave_config(api_key, account_id, **fields)
            else:
                raise ValueError(f"role must be MASTER or SLAVE, got {role!r}")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "status": "ok",
            "account_id": account_id,
            "role": role,
            "accounts": [s.to_dict() for s in states],
            "timestamp": _timestamp(),
        }

    @app.post("/accounts/{account_id}/merge")
    async def merge_account_platforms(account_id: str, request: Request):
        """Collapse snapshots of one account that share a status file.

        Expected payload:
            {"keep_platform": "MT5"}
        """
        api_key = _require_api_key(request)
        body = await _json_body(request)
        keep_platform = _require_str(body, "keep_platform")
        removed = _poller(request).merge_platforms(api_key, account_id, keep_platform)
        return {
            "status": "ok",
            "account_id": account_id,
            "kept": f"{keep_platform.upper()}:{account_id}",
            "removed": removed,
            "timestamp": _timestamp(),
        }

    @app.post("/connections")
    async def connect_slave(request: Request):
        """Link a slave to a master.

        Expected payload:
            {"slave_id": "201", "master_id": "100"}
        """
        api_key = _require_api_key(request)
        body = await _json_body(request)
        slave_id = _require_str(body, "slave_id")
        master_id = _require_str(body, "master_id")
        states = _poller(request).connect_slave(api_key, slave_id, master_id)
        return {
            "status": "ok",
            "slave_id": slave_id,
            "master_id": master_id,
            "accounts": [s.to_dict() for s in states],
            "timestamp": _timestamp(),
        }

    @app.delete("/connections/{slave_id}")
    async def disconnect_slave(slave_id: str, request: Request):
        api_key = _require_api_key(request)
        previous = _poller(request).disconnect_slave(api_key, slave_id)
        return {"status": "ok", "slave_id": slave_id, "master_id": previous, "timestamp": _timestamp()}

    @app.post("/copier/emergency-shutdown")
    async def emergency_shutdown(request: Request):
        """Turn the global switch and every master off."""
        api_key = _require_api_key(request)
        masters = _poller(request).emergency_shutdown(api_key)
        logger.warning(f"Emergency shutdown by {mask_api_key(api_key)}: {len(masters)} masters off")
        return {"status": "ok", "global_status": False, "affected_masters": masters, "timestamp": _timestamp()}

    @app.post("/copier/reset-all-on")
    async def reset_all_on(request: Request):
        """Turn the global switch and every master back on."""
        api_key = _require_api_key(request)
        masters = _poller(request).reset_all_on(api_key)
        return {"status": "ok", "global_status": True, "affected_masters": masters, "timestamp": _timestamp()}

    @app.delete("/files")
    async def forget_file(path: str, request: Request):
        """Stop watching a status file and drop the accounts it reported."""
        _require_api_key(request)
        removed = _poller(request).forget_file(Path(path))
        if removed is None:
            raise HTTPException(status_code=404, detail=f"unknown_file: {path}")
        return {"status": "ok", "file": path, "removed": removed, "timestamp": _timestamp()}

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Custom exception handler for better error messages."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "status": "error",
                "detail": exc.detail,
                "timestamp": _timestamp(),
            }
        )

    @app.exception_handler(AccountNotFound)
    async def account_not_found_handler(request: Request, exc: AccountNotFound):
        return JSONResponse(
            status_code=404,
            content={
                "status": "error",
                "detail": f"unknown_account: {exc.args[0] if exc.args else ''}",
                "timestamp": _timestamp(),
            }
        )

    @app.exception_handler(ConfigNotWritten)
    async def config_not_written_handler(request: Request, exc: ConfigNotWritten):
        logger.error(f"CONFIG update failed: {exc}")
        return JSONResponse(
            status_code=409,
            content={
                "status": "error",
                "detail": "config_not_written",
                "timestamp": _timestamp(),
            }
        )

    @app.exception_handler(RegistryCorrupt)
    async def registry_corrupt_handler(request: Request, exc: RegistryCorrupt):
        logger.error(f"Registry unavailable: {exc}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "error",
                "detail": "registry_corrupt",
                "timestamp": _timestamp(),
            }
        )

    return app


app = create_app()


# ============================================================================
# Main (for direct execution)
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    host = os.getenv("COPIER_HOST", "127.0.0.1")
    port = int(os.getenv("COPIER_PORT", "8443"))

    logger.info(f"Starting server on {host}:{port}")

    uvicorn.run(
        "core.accounts_server:app",
        host=host,
        port=port,
        log_level=os.getenv("COPIER_LOG_LEVEL", "info").lower(),
        reload=False,
    )
