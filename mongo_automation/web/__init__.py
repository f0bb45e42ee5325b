"""HTTP and WebSocket gateway for the cluster dashboard."""
from mongo_automation.web.app import create_app

__all__ = ["create_app"]
