"""Extraction of the logout token from an inbound request."""

from collections.abc import Sequence
from dataclasses import dataclass

from starlette.datastructures import FormData

from backchannel_logout.services.errors import invalid_request

LOGOUT_TOKEN_PARAMETER = "logout_token"


@dataclass(frozen=True)
class LogoutRequest:
    """A logout token awaiting authentication."""

    raw_token: str

    def __repr__(self) -> str:
        return f"LogoutRequest(raw_token=<{len(self.raw_token)} chars>)"


class LogoutRequestConverter:
    """Pulls ``logout_token`` out of a form body without validating it."""

    def convert_values(self, values: Sequence[str]) -> LogoutRequest | None:
        """Build a request from every submitted ``logout_token`` value.

        Returns None when the parameter was not submitted at all.

        Raises:
            BackChannelLogoutError: ``INVALID_REQUEST`` if the parameter is
                repeated or empty.
        """
        if not values:
            return None
        if len(values) > 1:
            raise invalid_request("The logout_token parameter must be supplied only once")
        raw_token = values[0]
        if not isinstance(raw_token, str) or not raw_token.strip():
            raise invalid_request("The logout_token parameter must not be empty")
        return LogoutRequest(raw_token=raw_token.strip())

    def convert(self, form: FormData) -> LogoutRequest | None:
        return self.convert_values(form.getlist(LOGOUT_TOKEN_PARAMETER))
