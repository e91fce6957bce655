"""
WhatsApp Gateway Service

FastAPI app that lets tenants pair, query, use and remove WhatsApp sessions.

Responsibilities:
- Create the schema and restore connected sessions on startup
- Expose the instance manager over HTTP (QR pairing, status, send, disconnect)
- Map gateway errors to HTTP status codes with a stable error body
- Close live transports (without logging out) on shutdown
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from gatewaycore.logging import setup_logging
from gatewaycore.settings import get_settings
from whatsapp_sessions.exceptions import GatewayError
from whatsapp_sessions.manager import InstanceManager, build_instance_manager

setup_logging()
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "validation_error": 400,
    "not_found": 404,
    "not_connected": 400,
    "pairing_timeout": 504,
    "terminal_logout": 410,
    "transient_protocol_error": 503,
    "send_failed": 502,
    "persistence_error": 500,
}


class SendMessageRequest(BaseModel):
    token: Optional[str] = None
    instance_id: Optional[str] = "default"
    number: Optional[str] = None
    message: Optional[str] = None


class InstanceRequest(BaseModel):
    token: Optional[str] = None
    instance_id: Optional[str] = None


class CreateUserRequest(BaseModel):
    token: Optional[str] = None
    name: Optional[str] = None


def get_manager(request: Request) -> InstanceManager:
    return request.app.state.manager


def create_app(
    manager: InstanceManager | None = None,
    restore_on_startup: bool | None = None,
) -> FastAPI:
    """
    Build the gateway app.

    Args:
        manager: Instance manager to serve (built from settings by default)
        restore_on_startup: Reopen persisted sessions at startup (default RESTORE_ON_STARTUP)
    """
    settings = get_settings()
    if restore_on_startup is None:
        restore_on_startup = settings.RESTORE_ON_STARTUP

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        instance_manager = manager or build_instance_manager(settings)
        app.state.manager = instance_manager
        instance_manager.create_schema()
        if restore_on_startup:
            report = await instance_manager.restore()
            logger.info("Startup restore complete", extra=report.to_dict())
        logger.info("WhatsApp gateway service started")
        try:
            yield
        finally:
            await instance_manager.shutdown()
            logger.info("WhatsApp gateway service stopped")

    app = FastAPI(
        title="WhatsApp Gateway",
        description="Multi-tenant WhatsApp session gateway",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        status_code = ERROR_STATUS.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}", extra={"kind": exc.kind})
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.message}", extra={"kind": exc.kind})
        return JSONResponse(status_code=status_code, content={"success": False, **exc.to_dict()})

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint with live session counts."""
        live = get_manager(request).describe_live()
        by_status: dict[str, int] = {}
        for handle in live:
            by_status[handle["status"]] = by_status.get(handle["status"], 0) + 1
        return {
            "status": "healthy",
            "service": "whatsapp-gateway",
            "live_instances": len(live),
            "by_status": by_status,
        }

    @app.get("/qr")
    async def get_qr(request: Request, token: Optional[str] = Query(None)):
        """
        Pair a new session for the tenant.

        Returns the tenant's connected session if there is one, otherwise a
        QR code to scan (waiting up to PAIRING_TIMEOUT_SECONDS for it).
        """
        result = await get_manager(request).create_or_resume_session(token)
        body = {"success": True, **result.to_dict()}
        if result.connected:
            body["message"] = "Instance already connected"
        elif result.qr:
            body["message"] = "Scan the QR code to connect"
        else:
            body["message"] = "Instance is reconnecting"
        return body

    @app.post("/restart")
    async def restart_instance(request: Request, body: InstanceRequest):
        """Reconnect a known instance."""
        result = await get_manager(request).resume_instance(body.token, body.instance_id)
        return {"success": True, **result.to_dict()}

    @app.get("/status")
    async def get_status(
        request: Request,
        token: Optional[str] = Query(None),
        instance_id: Optional[str] = Query(None),
    ):
        """Status of one instance, or the tenant's best instance."""
        report = get_manager(request).get_status(token, instance_id)
        body = {"success": True, **report.to_dict()}
        if not report.connected:
            body["message"] = "No connected instance"
        return body

    @app.get("/instances")
    async def list_instances(request: Request, token: Optional[str] = Query(None)):
        """All instances of a tenant."""
        return {"success": True, "instances": get_manager(request).list_instances(token)}

    @app.get("/messages")
    async def list_messages(
        request: Request,
        token: Optional[str] = Query(None),
        instance_id: Optional[str] = Query(None),
        limit: int = Query(50),
        offset: int = Query(0),
    ):
        """Messages sent by a tenant, newest first."""
        messages = get_manager(request).get_messages(token, instance_id, limit=limit, offset=offset)
        return {"success": True, "messages": [m.to_dict() for m in messages]}

    @app.post("/send-message")
    async def send_message(request: Request, body: SendMessageRequest):
        """Send a text message through a connected instance."""
        result = await get_manager(request).send(body.token, body.instance_id, body.number, body.message)
        return {"success": True, "message": "Message sent", **result.to_dict()}

    @app.delete("/disconnect")
    async def disconnect(request: Request, body: InstanceRequest):
        """Log out and remove an instance."""
        await get_manager(request).disconnect(body.token, body.instance_id)
        return {"success": True, "message": "Instance disconnected", "instance_id": body.instance_id}

    @app.post("/create-user")
    async def create_user(request: Request, body: CreateUserRequest):
        """Register a tenant."""
        tenant = get_manager(request).register_tenant(body.token, body.name)
        return {"success": True, "message": "Tenant saved", "token": tenant.token, "name": tenant.name}

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
