"""
Voice Receptionist API
Duplex WebSocket voice calls + session bootstrap + health
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket

from backend.receptionist.config import load_settings
from backend.receptionist.deps import RuntimeDeps, build_runtime_deps
from backend.receptionist.errors import ConfigurationError
from backend.receptionist.messages import PROTOCOL_VERSION
from backend.receptionist.websocket import handle as receptionist_ws_handle

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(deps: Optional[RuntimeDeps] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager with graceful shutdown"""
        logger.info("Starting Voice Receptionist API")
        runtime = deps
        if runtime is None:
            try:
                runtime = build_runtime_deps(load_settings())
                logger.info("Configuration validation passed")
            except ValueError as e:
                logger.error(f"Configuration validation failed: {e}")
                raise
        app.state.deps = runtime

        yield

        logger.info("Shutting down Voice Receptionist API")
        await runtime.calls.broadcast_shutdown()
        try:
            runtime.cleanup()
        except Exception as e:
            logger.warning(f"Failed releasing TTS resources: {e}")
        logger.info("Shutdown cleanup completed")

    app = FastAPI(
        title="Voice Receptionist API",
        description="Real-time voice receptionist over a duplex WebSocket",
        version=VERSION,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        runtime: RuntimeDeps = request.app.state.deps
        settings = runtime.settings
        return {
            "status": "healthy",
            "version": VERSION,
            "protocol": PROTOCOL_VERSION,
            "backends": {"speech": settings.speech_backend, "llm": settings.llm_backend, "tts": settings.tts_backend},
            "active_calls": runtime.calls.count(),
        }

    @app.post("/api/sessions")
    async def create_session(request: Request):
        """Issue a short-lived session id + token for the websocket"""
        runtime: RuntimeDeps = request.app.state.deps
        try:
            runtime.settings.require_credentials()
        except ConfigurationError as e:
            raise HTTPException(status_code=503, detail=e.message)
        return runtime.tokens.issue()

    @app.websocket('/ws')
    async def ws_primary(ws: WebSocket):
        await receptionist_ws_handle(ws, ws.app.state.deps)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
