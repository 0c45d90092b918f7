from __future__ import annotations

from typing import Any

from channel_hub.core.models import VerificationResult
from .base import Credentials, ProviderAdapter


# PUBLIC_INTERFACE
class GenericApiKeyAdapter(ProviderAdapter):
    """Placeholder adapter for providers without a real integration yet.

    It only checks that the key field is present and long enough. It never contacts the
    provider, so a valid result here says nothing about whether the key works.
    """

    def __init__(self, key: str, field: str = "apiKey", min_length: int = 8, name: str = "", **kwargs: Any):
        super().__init__(**kwargs)
        self.key = key
        self.name = name or key
        self.field = field
        self.min_length = min_length

    async def verify_credentials(self, credentials: Credentials) -> VerificationResult:
        creds = self.open_credentials(credentials)
        value = creds.get(self.field)
        if not isinstance(value, str) or len(value.strip()) < self.min_length:
            return VerificationResult(
                is_valid=False,
                error=f"{self.field} must be at least {self.min_length} characters",
            )
        return VerificationResult(is_valid=True, metadata={"verification": "shape_only"})
