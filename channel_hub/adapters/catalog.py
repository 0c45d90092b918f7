from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from channel_hub.core.models import ConfigSchema, ProviderDescriptor


def _schema(required: List[str], **properties: str) -> ConfigSchema:
    props = {name: {"type": "string", "title": title} for name, title in properties.items()}
    return ConfigSchema(required=required, properties=props)


DEFAULT_PROVIDERS: List[ProviderDescriptor] = [
    ProviderDescriptor(
        key="meta_whatsapp",
        name="WhatsApp Cloud API",
        category="messaging",
        config_schema=_schema(
            ["phoneNumberId", "accessToken"],
            phoneNumberId="Phone Number ID",
            accessToken="Permanent Access Token",
            businessAccountId="WhatsApp Business Account ID",
        ),
    ),
    ProviderDescriptor(
        key="evolution_api",
        name="WhatsApp (QR gateway)",
        category="messaging",
        config_schema=_schema(
            ["baseUrl", "apiKey", "instanceName"],
            baseUrl="Gateway URL",
            apiKey="Global API Key",
            instanceName="Instance Name",
        ),
    ),
    ProviderDescriptor(
        key="openai",
        name="OpenAI",
        category="ai",
        is_premium=True,
        config_schema=_schema(["apiKey"], apiKey="API Key", organization="Organization ID"),
    ),
    ProviderDescriptor(
        key="aws_s3",
        name="Amazon S3",
        category="storage",
        config_schema=_schema(
            ["accessKeyId", "secretAccessKey", "bucket", "region"],
            accessKeyId="Access Key ID",
            secretAccessKey="Secret Access Key",
            bucket="Bucket",
            region="Region",
        ),
    ),
    ProviderDescriptor(
        key="google_drive",
        name="Google Drive",
        category="storage",
        config_schema=_schema(["serviceAccountJson"], serviceAccountJson="Service Account JSON", folderId="Folder ID"),
    ),
    ProviderDescriptor(
        key="sendgrid",
        name="SendGrid",
        category="api_key",
        config_schema=_schema(["apiKey"], apiKey="API Key"),
    ),
    ProviderDescriptor(
        key="stripe",
        name="Stripe",
        category="api_key",
        is_premium=True,
        config_schema=_schema(["apiKey"], apiKey="Secret Key"),
    ),
]


# PUBLIC_INTERFACE
class ProviderCatalog:
    """Read-mostly set of provider descriptors, keyed by provider key."""

    def __init__(self, providers: Optional[Iterable[ProviderDescriptor]] = None):
        self._providers: Dict[str, ProviderDescriptor] = {}
        for p in providers if providers is not None else DEFAULT_PROVIDERS:
            self._providers[p.key] = p

    def get(self, key: str) -> Optional[ProviderDescriptor]:
        return self._providers.get(key)

    def add(self, descriptor: ProviderDescriptor) -> None:
        self._providers[descriptor.key] = descriptor

    # PUBLIC_INTERFACE
    def required_fields(self, key: str) -> List[str]:
        """Fields the provider's config schema marks as required; empty for unknown providers."""
        descriptor = self._providers.get(key)
        return list(descriptor.config_schema.required) if descriptor else []

    def list(self) -> List[ProviderDescriptor]:
        return list(self._providers.values())
