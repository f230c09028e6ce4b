"""errors.py — Structured error shared by the nextwiki adapters.

Codes:
  config_error   — configuration missing or invalid (raised at startup)
  provider_error — upstream answered with a non-success status
  network_error  — connection failed, timed out, or dropped
  image_error    — image lookup returned no usable candidate
"""

from typing import Optional


class NextwikiError(Exception):
    """Structured error with code and optional upstream status code."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "error": "NextwikiError",
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
        }
