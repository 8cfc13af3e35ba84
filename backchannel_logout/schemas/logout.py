"""Wire schemas of the back-channel logout endpoint."""

from pydantic import BaseModel, Field


class LogoutErrorResponse(BaseModel):
    """Body of a 400 response to a rejected logout request."""

    error_code: str = Field(..., description="OAuth 2.0 error code, e.g. invalid_token")
    error_description: str = Field(..., description="Human-readable reason for the rejection")
    error_uri: str = Field(..., description="Reference for the failed validation rule")
