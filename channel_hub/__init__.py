# PUBLIC_INTERFACE
"""
Channel Hub package.

Multi-tenant management of third-party integration connections:
- core: settings, logging, errors, credential envelope, tenant boundary
- adapters: provider adapters and the adapter registry
- repositories: connection storage and invariants
- services: verification, live status, webhooks
- api: FastAPI application
"""

__version__ = "0.1.0"
