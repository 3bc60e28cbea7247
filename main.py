"""
OpenReader Audiobook Server - Main Entry Point
Chapter ingestion, whole-book assembly and reset for TTS audiobooks.

Run: uvicorn main:app --host 0.0.0.0 --port 3003 --reload
"""

import asyncio
import io
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from adapters.filesystem import FilesystemObjectStore
from adapters.sqlite_records import SQLiteRecordStore
from config import settings
from errors import AudiobookError, Cancelled, InvalidArgument
from models.audiobook import MIME_TYPES, GenerationSettings
from pipeline.cancellation import CancelToken
from pipeline.naming import is_safe_id, sanitize_download_name
from pipeline.orchestrator import AudiobookOrchestrator
from pipeline.transcoder import Transcoder

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


# ============================================================================
# Request Models
# ============================================================================

class ChapterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chapter_title: str = Field("", alias="chapterTitle")
    buffer: List[int]
    book_id: Optional[str] = Field(None, alias="bookId")
    format: Optional[str] = None
    chapter_index: Optional[Union[int, float, str]] = Field(None, alias="chapterIndex")
    settings: Optional[dict] = None

    def audio_bytes(self) -> bytes:
        try:
            return bytes(self.buffer)
        except ValueError:
            raise InvalidArgument("buffer must be a byte array")

    def generation_settings(self) -> Optional[GenerationSettings]:
        return GenerationSettings.from_dict(self.settings) if self.settings is not None else None


# ============================================================================
# Authentication / Owner Dependencies
# ============================================================================

async def verify_api_key(x_api_key: str = Header(None)):
    """
    Verify API key if password is configured.
    Add header: X-API-Key: your_password
    """
    if not settings.api_password:
        return True  # No password configured, allow all

    if not x_api_key:
        raise HTTPException(status_code=401, detail="X-API-Key header required")

    if x_api_key != settings.api_password:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


async def current_user(x_user_id: str = Header(None)) -> str:
    """Owner of the request; unauthenticated callers share the unclaimed owner."""
    if not x_user_id:
        return settings.unclaimed_user_id
    if not is_safe_id(x_user_id):
        raise InvalidArgument("Invalid X-User-Id header")
    return x_user_id


def get_orchestrator(request: Request) -> AudiobookOrchestrator:
    return request.app.state.orchestrator


@asynccontextmanager
async def disconnect_token(request: Request):
    """CancelToken that fires when the HTTP client goes away."""
    token = CancelToken()

    async def watch():
        while not token.cancelled:
            if await request.is_disconnected():
                token.cancel("client disconnected")
                return
            await asyncio.sleep(settings.disconnect_poll_seconds)

    watcher = asyncio.create_task(watch())
    try:
        yield token
    finally:
        watcher.cancel()


def audio_response(data: bytes, fmt: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        io.BytesIO(data),
        media_type=MIME_TYPES[fmt],
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(data)),
            "Cache-Control": "no-cache"
        }
    )


# ============================================================================
# API Endpoints
# ============================================================================

router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.get("/api/status")
async def root():
    """Health check endpoint."""
    return {
        "status": "running",
        "name": "OpenReader Audiobook Server",
        "version": "1.0.0"
    }


@router.get("/api/health")
async def health_check():
    """Detailed health check."""
    return {
        "status": "healthy",
        "storage": str(settings.storage_dir),
        "audiobooks_dir": str(settings.audiobooks_dir)
    }


@router.post("/api/audiobook")
async def ingest_chapter(
    body: ChapterRequest,
    request: Request,
    user_id: str = Depends(current_user),
    orchestrator: AudiobookOrchestrator = Depends(get_orchestrator)
):
    """
    Encode one chapter of TTS audio and add it to an audiobook.

    Omitting bookId starts a new book; omitting chapterIndex appends at the
    first free index.
    """
    try:
        async with disconnect_token(request) as cancel:
            result = await orchestrator.ingest_chapter(
                user_id=user_id,
                title=body.chapter_title,
                raw_audio=body.audio_bytes(),
                book_id=body.book_id,
                requested_format=body.format,
                chapter_index=body.chapter_index,
                incoming_settings=body.generation_settings(),
                cancel=cancel
            )
    except AudiobookError:
        raise
    except Exception as e:
        logger.exception(f"Error processing audio chapter: {e}")
        raise AudiobookError("Failed to process audio chapter") from e
    return result.to_dict()


@router.put("/api/audiobook/chapter")
async def regenerate_chapter(
    body: ChapterRequest,
    request: Request,
    book_id: str = Query(..., alias="bookId"),
    chapter_index: str = Query(..., alias="chapterIndex"),
    user_id: str = Depends(current_user),
    orchestrator: AudiobookOrchestrator = Depends(get_orchestrator)
):
    """Replace an existing chapter's audio (and title)."""
    try:
        async with disconnect_token(request) as cancel:
            result = await orchestrator.regenerate_chapter(
                user_id=user_id,
                book_id=book_id,
                chapter_index=chapter_index,
                title=body.chapter_title,
                raw_audio=body.audio_bytes(),
                requested_format=body.format,
                incoming_settings=body.generation_settings(),
                cancel=cancel
            )
    except AudiobookError:
        raise
    except Exception as e:
        logger.exception(f"Error regenerating chapter: {e}")
        raise AudiobookError("Failed to regenerate audio chapter") from e
    return result.to_dict()


@router.get("/api/audiobook")
async def get_full_book(
    request: Request,
    book_id: Optional[str] = Query(None, alias="bookId"),
    fmt: Optional[str] = Query(None, alias="format"),
    user_id: str = Depends(current_user),
    orchestrator: AudiobookOrchestrator = Depends(get_orchestrator)
):
    """Download the whole audiobook, assembling it if the chapters changed."""
    if not book_id:
        raise InvalidArgument("Missing bookId parameter")
    try:
        async with disconnect_token(request) as cancel:
            artifact = await orchestrator.get_full_book(user_id, book_id, fmt, cancel)
    except AudiobookError:
        raise
    except Exception as e:
        logger.exception(f"Error creating audiobook: {e}")
        raise AudiobookError("Failed to create audiobook file") from e
    return audio_response(artifact.data, artifact.format, f"audiobook.{artifact.format}")


@router.delete("/api/audiobook")
async def reset_book(
    book_id: Optional[str] = Query(None, alias="bookId"),
    user_id: str = Depends(current_user),
    orchestrator: AudiobookOrchestrator = Depends(get_orchestrator)
):
    """Delete an audiobook and everything generated for it."""
    if not book_id:
        raise InvalidArgument("Missing bookId parameter")
    try:
        existed = await orchestrator.reset(user_id, book_id)
    except AudiobookError:
        raise
    except Exception as e:
        logger.exception(f"Error resetting audiobook: {e}")
        raise AudiobookError("Failed to reset audiobook") from e
    return {"success": True, "existed": existed}


@router.get("/api/audiobook/status")
async def book_status(
    book_id: Optional[str] = Query(None, alias="bookId"),
    user_id: str = Depends(current_user),
    orchestrator: AudiobookOrchestrator = Depends(get_orchestrator)
):
    """Chapters generated so far, recorded settings and whether a full file is cached."""
    if not book_id:
        raise InvalidArgument("Missing bookId parameter")
    status = await orchestrator.status(user_id, book_id)
    return status.to_dict()


@router.get("/api/audiobook/chapter")
async def download_chapter(
    book_id: Optional[str] = Query(None, alias="bookId"),
    chapter_index: Optional[str] = Query(None, alias="chapterIndex"),
    user_id: str = Depends(current_user),
    orchestrator: AudiobookOrchestrator = Depends(get_orchestrator)
):
    """Download a single stored chapter."""
    if not book_id or chapter_index is None:
        raise InvalidArgument("Missing bookId or chapterIndex parameter")
    chapter, data = await orchestrator.read_chapter(user_id, book_id, chapter_index)
    return audio_response(data, chapter.format, f"{sanitize_download_name(chapter.title)}.{chapter.format}")


# ============================================================================
# Error Handlers
# ============================================================================

async def handle_audiobook_error(request: Request, exc: AudiobookError):
    if isinstance(exc, Cancelled):
        logger.info(f"{request.method} {request.url.path} cancelled by client")
    elif exc.status_code >= 500:
        detail = getattr(exc, "detail", None)
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}" + (f" ({detail})" if detail else ""))
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def handle_validation_error(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return JSONResponse({"error": f"Invalid request: {problems}"}, status_code=400)


async def handle_http_error(request: Request, exc: HTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


# ============================================================================
# App
# ============================================================================

def build_orchestrator() -> AudiobookOrchestrator:
    objects = FilesystemObjectStore(Path(settings.audiobooks_dir))
    objects.sweep_stale_temp_files()
    records = SQLiteRecordStore(Path(settings.db_path))
    return AudiobookOrchestrator(objects, records, Transcoder())


def create_app(orchestrator: AudiobookOrchestrator = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize storage on startup."""
        if getattr(app.state, "orchestrator", None) is None:
            app.state.orchestrator = build_orchestrator()
        records = app.state.orchestrator.records
        if isinstance(records, SQLiteRecordStore):
            await records.init_db()
        logger.info("OpenReader Audiobook Server started")
        yield
        logger.info("OpenReader Audiobook Server shutting down")

    app = FastAPI(
        title="OpenReader Audiobook Server",
        description="Chapter-by-chapter audiobook generation and assembly API",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.orchestrator = orchestrator

    # Configure CORS for local network access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AudiobookError, handle_audiobook_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(HTTPException, handle_http_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
