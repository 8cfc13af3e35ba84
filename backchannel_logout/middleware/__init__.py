"""Middleware module for the back-channel logout service."""

from backchannel_logout.middleware.backchannel_logout import (
    BackChannelLogoutConfig,
    BackChannelLogoutConfigRef,
    BackChannelLogoutMiddleware,
)
from backchannel_logout.middleware.replay_cleanup import replay_cleanup_loop

__all__ = [
    "BackChannelLogoutConfig",
    "BackChannelLogoutConfigRef",
    "BackChannelLogoutMiddleware",
    "replay_cleanup_loop",
]
