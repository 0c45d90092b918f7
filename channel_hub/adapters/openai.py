from __future__ import annotations

from typing import Any, Dict

import httpx

from channel_hub.core.models import StatusResult, VerificationResult
from channel_hub.core.response import describe_upstream_error
from .base import Credentials, ProviderAdapter, StatusProbe, json_object, missing_fields, provider_error_text


class OpenAIAdapter(ProviderAdapter, StatusProbe):
    """OpenAI-compatible model provider; credentials are ``apiKey`` and optional ``organization``."""

    key = "openai"
    name = "OpenAI"

    def __init__(self, base_url: str = "https://api.openai.com/v1", **kwargs: Any):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    async def _list_models(self, creds: Credentials) -> httpx.Response:
        headers: Dict[str, str] = {"Authorization": f"Bearer {creds['apiKey']}"}
        if creds.get("organization"):
            headers["OpenAI-Organization"] = str(creds["organization"])
        async with self._client(headers=headers) as client:
            return await client.get(f"{self.base_url}/models")

    async def verify_credentials(self, credentials: Credentials) -> VerificationResult:
        creds = self.open_credentials(credentials)
        if missing_fields(creds, ["apiKey"]):
            return VerificationResult(is_valid=False, error="Missing required fields: apiKey")
        try:
            resp = await self._list_models(creds)
        except httpx.HTTPError as exc:
            return VerificationResult(is_valid=False, error=f"Network error connecting to OpenAI: {exc}", network_error=True)
        if resp.status_code >= 400:
            error = describe_upstream_error(resp.status_code, provider_error_text(resp), dict(resp.headers))
            return VerificationResult(is_valid=False, error=error)
        data = json_object(resp)
        if data is None:
            return VerificationResult(is_valid=False, error=f"Unexpected response from OpenAI ({resp.status_code})")
        models = data.get("data") or []
        return VerificationResult(is_valid=True, metadata={"model_count": len(models)})

    async def check_connection_status(self, credentials: Credentials) -> StatusResult:
        creds = self.open_credentials(credentials)
        if missing_fields(creds, ["apiKey"]):
            return StatusResult(status="error", message="Missing credentials")
        try:
            resp = await self._list_models(creds)
        except httpx.HTTPError as exc:
            return StatusResult(status="error", message=str(exc) or type(exc).__name__)
        if resp.status_code < 400:
            return StatusResult(status="active")
        return StatusResult(status="error", message=describe_upstream_error(resp.status_code, provider_error_text(resp)))
