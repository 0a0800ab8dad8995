import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from word_impostor import __version__
from word_impostor.config import settings
from word_impostor.exceptions import GameError

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Word Impostor backend starting up (store=%s, words=%s)", settings.store_backend, settings.word_source)
    yield
    logger.info("Backend shutting down.")


app = FastAPI(
    title="Word Impostor",
    version=__version__,
    description="Find-the-impostor word party game: rounds, votes and live room snapshots",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "word-impostor", "version": __version__}


from word_impostor.routers.room_router import router as room_router  # noqa: E402
from word_impostor.routers.ws_router import router as ws_router  # noqa: E402

app.include_router(room_router, prefix="/api")
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("word_impostor.main:app", host="0.0.0.0", port=8000, reload=True)
