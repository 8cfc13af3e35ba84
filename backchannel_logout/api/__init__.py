# Back-Channel Logout API
from backchannel_logout.api.health import router as health_router

__all__ = ["health_router"]
