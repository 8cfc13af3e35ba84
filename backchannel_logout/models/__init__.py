# Back-Channel Logout Models
from backchannel_logout.models.base import BaseModel
from backchannel_logout.models.logout_token_jti import LogoutTokenJti
from backchannel_logout.models.oidc_session import OIDCSession

__all__ = [
    "BaseModel",
    "LogoutTokenJti",
    "OIDCSession",
]
