from .handshake import (
    ForwardedMetadata,
    RequestHead,
    build_upgrade_request,
    forwarded_metadata,
    is_upgrade_request,
)
from .upgrader import TunnelUpgrader

__all__ = [
    "ForwardedMetadata",
    "RequestHead",
    "TunnelUpgrader",
    "build_upgrade_request",
    "forwarded_metadata",
    "is_upgrade_request",
]
