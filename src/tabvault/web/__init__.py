"""HTTP surface for the session daemon."""

from fastapi import FastAPI

from tabvault.commands import CommandDispatcher


def create_app(dispatcher: CommandDispatcher) -> FastAPI:
    """Build the API app around a running daemon's dispatcher."""
    from tabvault.web.routes import sessions

    app = FastAPI(title="tabvault")
    app.state.dispatcher = dispatcher
    app.include_router(sessions.router, prefix="/api")
    return app
