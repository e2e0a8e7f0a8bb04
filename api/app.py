from contextlib import asynccontextmanager
from logging import getLogger
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from predictgate.config import GatewaySettings
from predictgate.container import GatewayServices
from predictgate.exceptions import CredentialError
from predictgate.gateway import ToolRegistry, build_tools
from predictgate.gateway.server import AUTH_STATE_KEY, authenticate_request, build_mcp_server

logger = getLogger("api")

MCP_PATH = "/mcp"


def create_app(settings: Optional[GatewaySettings] = None, services: Optional[GatewayServices] = None) -> FastAPI:
    """
    Build the HTTP app with the MCP server mounted at ``/mcp``.

    Services are built here unless an already built ``services`` is passed
    in; only services built here are closed on shutdown.
    """
    owned = services is None
    services = services or GatewayServices.build(settings or GatewaySettings.load())
    registry = ToolRegistry(*build_tools(services))
    mcp_app = build_mcp_server(registry).http_app(path=MCP_PATH, stateless_http=True, json_response=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.db.create_all()
        app.state.services = services
        async with mcp_app.lifespan(app):
            logger.info("Gateway ready with %d tools", len(registry))
            try:
                yield
            finally:
                if owned:
                    await services.aclose()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.middleware("http")
    async def authenticate(request: Request, call_next):
        if request.method != "POST" or request.url.path != MCP_PATH:
            return await call_next(request)
        body = await request.body()
        try:
            raw_body = body.decode("utf-8")
        except UnicodeDecodeError:
            return JSONResponse(
                {"jsonrpc": "2.0", "id": None, "error": {"code": -32600, "message": "Request body must be UTF-8"}},
                status_code=400,
            )
        if request.headers.get("x-api-key"):
            try:
                auth = await authenticate_request(
                    services.api_keys, request.headers, request.method, request.url.path, raw_body
                )
            except CredentialError as e:
                auth = e
            setattr(request.state, AUTH_STATE_KEY, auth)
        return await call_next(request)

    @app.middleware("http")
    async def add_cors_header(request: Request, call_next):
        response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        return response

    # Mounted last so /health wins over the catch-all mount.
    app.mount("/", mcp_app)
    return app


def start(host: str = "0.0.0.0", port: int = 3002, settings: Optional[GatewaySettings] = None) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port)
