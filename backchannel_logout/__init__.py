"""OIDC Back-Channel Logout relying party."""

__version__ = "0.1.0"
