from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from litestar import Litestar, Request, get
from litestar.config.cors import CORSConfig
from litestar.handlers import asgi
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController

from .gateway import ALLOWED_METHODS, MirrorGateway
from .settings import GatewaySettings

if TYPE_CHECKING:
    from litestar.types import Receive, Scope, Send

LOG = logging.getLogger("s3_mirror.app")

prometheus_config = PrometheusConfig(app_name="s3_mirror", prefix="s3_mirror")


def configure_logging(level: str) -> None:
    logger = logging.getLogger("s3_mirror")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)


def create_app(gateway: MirrorGateway | None = None) -> Litestar:
    """Create the mirror gateway ASGI application."""
    if gateway is None:
        gateway = MirrorGateway.from_env()
    settings = gateway.config.gateway
    configure_logging(settings.log_level)

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # Every method reaches the gateway so it can answer 405 itself.
    @asgi(path="/", is_mount=True, copy_scope=True)
    async def proxy_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        path = scope.get("path", "/")
        if not path.startswith("/"):
            path = f"/{path}"
        try:
            response = await gateway.handle(request, path)
        except Exception:
            if not settings.passthrough_on_error:
                raise
            # Last resort: let the origin answer rather than fail the request.
            LOG.exception(
                "unhandled error for %s %s, passing request through to origin",
                request.method,
                path,
            )
            response = await gateway.passthrough(request, path)
        asgi_response = response.to_asgi_response(
            None, request, is_head_response=request.method == "HEAD"
        )
        await asgi_response(scope, receive, send)

    async def startup(app: Litestar) -> None:
        await gateway.startup()

    async def shutdown(app: Litestar) -> None:
        await gateway.shutdown()

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=list(ALLOWED_METHODS),
        allow_headers=["*"],
        expose_headers=["ETag", "Content-Range", "Accept-Ranges", "Content-Length"],
    )

    return Litestar(
        route_handlers=[health, proxy_handler, PrometheusController],
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
    )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    server_settings = GatewaySettings()
    uvicorn.run(
        "s3_mirror.app:app",
        host=server_settings.host,
        port=server_settings.port,
        access_log=True,
    )
