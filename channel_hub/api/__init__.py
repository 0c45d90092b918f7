# PUBLIC_INTERFACE
"""FastAPI application factory and routes."""
