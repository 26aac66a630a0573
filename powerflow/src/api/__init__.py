"""FastAPI application, HTTP routes and the WebSocket endpoint."""
