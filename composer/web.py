import base64
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from composer.config import Settings, load_settings
from composer.errors import DecodeError, GenerationServiceError, SessionNotFoundError
from composer.generation import GenerationClient
from composer.intake import decode_payload, fetch_image, read_upload
from composer.session import SessionSnapshot, SessionStore, Slot

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"


# --- Request payloads ---
class EncodedImage(BaseModel):
    data: str = Field(..., description="Base64 image bytes, or a full data URI.")
    mimeType: Optional[str] = Field(None, description="image/png, image/jpeg or image/webp.")


class CompositePayload(BaseModel):
    personImage: EncodedImage
    productImage: EncodedImage


class ImageUrlPayload(BaseModel):
    url: str


def create_app(settings: Optional[Settings] = None, client: Optional[GenerationClient] = None) -> FastAPI:
    """Build the application. Fails fast when no API key is configured."""
    settings = settings or load_settings()
    client = client or GenerationClient(settings)
    store = SessionStore(client, settings)

    app = FastAPI(
        title="Product Composite Studio",
        description="Places a person and a product into one photorealistic image with Gemini.",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.store = store
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found(request: Request, exc: SessionNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    def decode_failure(exc: DecodeError) -> HTTPException:
        return HTTPException(status_code=400, detail=settings.message(exc.message_key))

    def log_transition(snapshot: SessionSnapshot) -> None:
        logger.debug(f"Session {snapshot.session_id} -> {snapshot.status.value}")

    @app.get("/", include_in_schema=False)
    async def index():
        return FileResponse(STATIC_DIR / "index.html")

    @app.get("/api/messages")
    async def get_messages():
        return {"locale": settings.locale, "messages": settings.messages()}

    @app.post("/api/sessions", response_model=SessionSnapshot)
    async def create_session():
        session = store.create()
        session.subscribe(log_transition)
        return session.snapshot()

    @app.get("/api/sessions/{session_id}", response_model=SessionSnapshot)
    async def get_session(session_id: str):
        return store.get(session_id).snapshot()

    @app.delete("/api/sessions/{session_id}", status_code=204)
    async def delete_session(session_id: str):
        store.get(session_id)
        store.discard(session_id)
        return Response(status_code=204)

    @app.post("/api/sessions/{session_id}/images/{slot}", response_model=SessionSnapshot)
    async def upload_image(session_id: str, slot: Slot, file: UploadFile = File(...)):
        session = store.get(session_id)
        try:
            await session.load_image(slot, read_upload(file, max_bytes=settings.max_upload_bytes))
        except DecodeError as e:
            raise decode_failure(e)
        return session.snapshot()

    @app.post("/api/sessions/{session_id}/images/{slot}/url", response_model=SessionSnapshot)
    async def upload_image_from_url(session_id: str, slot: Slot, payload: ImageUrlPayload):
        session = store.get(session_id)
        try:
            await session.load_image(slot, fetch_image(payload.url, max_bytes=settings.max_upload_bytes))
        except DecodeError as e:
            raise decode_failure(e)
        return session.snapshot()

    @app.delete("/api/sessions/{session_id}/images/{slot}", response_model=SessionSnapshot)
    async def clear_image(session_id: str, slot: Slot):
        session = store.get(session_id)
        session.clear_image(slot)
        return session.snapshot()

    @app.post("/api/sessions/{session_id}/generate", response_model=SessionSnapshot)
    async def generate_for_session(session_id: str):
        return await store.get(session_id).generate()

    @app.post(
        "/generate",
        response_class=Response,
        responses={
            200: {
                "content": {settings.output_mime_type: {}},
                "description": "The generated composite image.",
            }
        },
    )
    async def generate_composite(payload: CompositePayload):
        try:
            person = decode_payload(payload.personImage.data, payload.personImage.mimeType, settings.max_upload_bytes)
            product = decode_payload(payload.productImage.data, payload.productImage.mimeType, settings.max_upload_bytes)
        except DecodeError as e:
            raise decode_failure(e)

        try:
            result = await client.generate_composite(person.image, product.image)
        except GenerationServiceError as e:
            logger.exception(f"Stateless generation failed: {e}")
            raise HTTPException(status_code=502, detail=settings.message(e.message_key))
        except Exception as e:
            logger.exception(f"Stateless generation failed unexpectedly: {e}")
            raise HTTPException(status_code=502, detail=settings.message(GenerationServiceError.message_key))

        return Response(content=base64.b64decode(result), media_type=settings.output_mime_type)

    return app
