"""Public HTTP API (FastAPI) for the Cloud Vault runtime."""
