# Back-Channel Logout Schemas
from backchannel_logout.schemas.logout import LogoutErrorResponse

__all__ = ["LogoutErrorResponse"]
