"""Pull-through mirror gateway serving origin objects from a primary S3 store."""

from .app import create_app
from .gateway import MirrorGateway
from .settings import (
    CacheSettings,
    GatewayConfig,
    GatewaySettings,
    MirrorSettings,
    OriginSettings,
    StoreSettings,
)

__all__ = [
    "CacheSettings",
    "GatewayConfig",
    "GatewaySettings",
    "MirrorGateway",
    "MirrorSettings",
    "OriginSettings",
    "StoreSettings",
    "create_app",
]
