"""Per-session UI state and the generation state machine.

    idle -> loading -> success | failure -> loading -> ...

Image slots change independently of the status. Every transition is
published to subscribers as a SessionSnapshot.
"""

import logging
import uuid
from collections import OrderedDict
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from composer.config import Settings
from composer.errors import (
    ComposerError,
    DecodeError,
    GenerationServiceError,
    SessionNotFoundError,
    ValidationError,
)
from composer.generation import GenerationClient
from composer.intake import ImageUpload, to_data_uri

logger = logging.getLogger(__name__)


class Slot(str, Enum):
    person = "person"
    product = "product"


class Status(str, Enum):
    idle = "idle"
    loading = "loading"
    success = "success"
    failure = "failure"


class SlotView(BaseModel):
    filename: Optional[str] = None
    mime_type: str
    size: int
    preview_uri: str


class SessionSnapshot(BaseModel):
    session_id: str
    status: Status
    person_image: Optional[SlotView] = None
    product_image: Optional[SlotView] = None
    generated_image: Optional[str] = None
    is_loading: bool
    error: Optional[str] = None
    can_generate: bool


Listener = Callable[[SessionSnapshot], None]


def _slot_view(upload: Optional[ImageUpload]) -> Optional[SlotView]:
    if upload is None:
        return None
    return SlotView(
        filename=upload.filename,
        mime_type=upload.image.mime_type,
        size=upload.size,
        preview_uri=upload.preview_uri,
    )


class CompositeSession:
    def __init__(self, client: GenerationClient, settings: Settings, session_id: Optional[str] = None):
        self.session_id = session_id or uuid.uuid4().hex
        self.client = client
        self.settings = settings
        self.images: Dict[Slot, Optional[ImageUpload]] = {Slot.person: None, Slot.product: None}
        self.status = Status.idle
        self.generated_image: Optional[str] = None
        self.error: Optional[str] = None
        self._listeners: List[Listener] = []

    @property
    def is_loading(self) -> bool:
        return self.status is Status.loading

    @property
    def can_generate(self) -> bool:
        return all(self.images.values()) and not self.is_loading

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            status=self.status,
            person_image=_slot_view(self.images[Slot.person]),
            product_image=_slot_view(self.images[Slot.product]),
            generated_image=self.generated_image,
            is_loading=self.is_loading,
            error=self.error,
            can_generate=self.can_generate,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception(f"Session {self.session_id}: listener failed")

    # --- Image slots ---

    def set_image(self, slot: Slot, upload: Optional[ImageUpload]) -> None:
        self.images[Slot(slot)] = upload
        self._notify()

    def clear_image(self, slot: Slot) -> None:
        self.set_image(slot, None)

    async def load_image(self, slot: Slot, loader: Awaitable[ImageUpload]) -> ImageUpload:
        """Await an intake coroutine and store its result in `slot`.

        On DecodeError the slot is emptied before the error propagates, so no
        stale image survives a failed upload.
        """
        slot = Slot(slot)
        try:
            upload = await loader
        except DecodeError as e:
            logger.warning(f"Session {self.session_id}: {slot.value} image rejected: {e}")
            self.clear_image(slot)
            raise
        self.set_image(slot, upload)
        return upload

    # --- Generation ---

    def _fail(self, error: ComposerError) -> None:
        self.status = Status.failure
        self.generated_image = None
        self.error = self.settings.message(error.message_key)
        self._notify()

    async def generate(self) -> SessionSnapshot:
        if self.is_loading:
            logger.info(f"Session {self.session_id}: generation already in progress, ignoring trigger")
            return self.snapshot()

        person, product = self.images[Slot.person], self.images[Slot.product]
        if person is None or product is None:
            logger.info(f"Session {self.session_id}: generation requested with a missing image")
            self._fail(ValidationError("Both a person and a product image are required"))
            return self.snapshot()

        self.status = Status.loading
        self.generated_image = None
        self.error = None
        self._notify()

        try:
            payload = await self.client.generate_composite(person.image, product.image)
        except ComposerError as e:
            logger.exception(f"Session {self.session_id}: generation failed: {e}")
            self._fail(e)
            return self.snapshot()
        except Exception as e:
            logger.exception(f"Session {self.session_id}: generation failed unexpectedly: {e}")
            self._fail(GenerationServiceError(str(e)))
            return self.snapshot()
        else:
            self.status = Status.success
            self.generated_image = to_data_uri(payload, self.settings.output_mime_type)
            self.error = None
            self._notify()
            return self.snapshot()
        finally:
            # Cancellation lands here with the status still loading.
            if self.is_loading:
                logger.warning(f"Session {self.session_id}: generation interrupted")
                self._fail(GenerationServiceError("Generation was interrupted"))


class SessionStore:
    """In-memory sessions, oldest evicted first once `max_sessions` is hit."""

    def __init__(self, client: GenerationClient, settings: Settings):
        self.client = client
        self.settings = settings
        self._sessions: "OrderedDict[str, CompositeSession]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self) -> CompositeSession:
        self._evict()
        session = CompositeSession(self.client, self.settings)
        self._sessions[session.session_id] = session
        logger.info(f"Created session {session.session_id}")
        return session

    def get(self, session_id: str) -> CompositeSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        self._sessions.move_to_end(session_id)
        return session

    def discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def _evict(self) -> None:
        while len(self._sessions) >= self.settings.max_sessions:
            victim = next(
                (sid for sid, s in self._sessions.items() if not s.is_loading),
                None,
            )
            if victim is None:
                break
            logger.info(f"Evicting session {victim}")
            del self._sessions[victim]
