"""
asgi.py -- Application assembly for the membership site.

This is the ONLY file that imports from both api/ and web/. It mounts the
catch-all dispatcher and hands its handler registry to the app, where the
lifespan checks it against the request table.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.controllers import registry
from web.routes import router as web_router

# Mounted last: the dispatcher matches every path.
app.include_router(web_router, tags=["Web UI"])
app.state.handler_registry = registry
