"""
Tests for the session state machine and session store.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from composer.errors import DecodeError, GenerationServiceError, NoImageInResponseError, SessionNotFoundError
from composer.intake import read_image
from composer.session import CompositeSession, SessionStore, Slot, Status
from conftest import fake_response, image_part, text_part


@pytest.fixture
def session(client, settings):
    return CompositeSession(client, settings)


@pytest.fixture
def loaded_session(session, jpeg_bytes, png_bytes):
    session.set_image(Slot.person, read_image(jpeg_bytes, "image/jpeg", filename="person.jpg"))
    session.set_image(Slot.product, read_image(png_bytes, "image/png", filename="product.png"))
    return session


class TestCompositeSession:

    def test_starts_idle(self, session):
        snapshot = session.snapshot()
        assert snapshot.status == Status.idle
        assert snapshot.person_image is None
        assert snapshot.product_image is None
        assert not snapshot.can_generate

    def test_slot_updates_do_not_change_status(self, loaded_session):
        snapshot = loaded_session.snapshot()
        assert snapshot.status == Status.idle
        assert snapshot.person_image.filename == "person.jpg"
        assert snapshot.product_image.mime_type == "image/png"
        assert snapshot.can_generate

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", [Slot.person, Slot.product])
    async def test_missing_image_fails_without_calling_client(self, loaded_session, mock_model, missing):
        loaded_session.clear_image(missing)

        snapshot = await loaded_session.generate()

        assert snapshot.status == Status.failure
        assert snapshot.error == "Please upload both images."
        assert snapshot.generated_image is None
        mock_model.generate_content_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_end_to_end_success(self, loaded_session):
        snapshot = await loaded_session.generate()

        assert snapshot.status == Status.success
        assert snapshot.generated_image == "data:image/jpeg;base64,SGVsbG8="
        assert snapshot.error is None
        assert snapshot.is_loading is False

    @pytest.mark.asyncio
    async def test_output_mime_type_is_fixed(self, session, png_bytes):
        session.set_image(Slot.person, read_image(png_bytes, "image/png"))
        session.set_image(Slot.product, read_image(png_bytes, "image/png"))

        snapshot = await session.generate()

        assert snapshot.generated_image.startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_service_failure(self, loaded_session, mock_model):
        mock_model.generate_content_async.side_effect = RuntimeError("timeout")

        snapshot = await loaded_session.generate()

        assert snapshot.status == Status.failure
        assert snapshot.generated_image is None
        assert snapshot.error == "Could not create the image. Please try again."
        assert "timeout" not in snapshot.error

    @pytest.mark.asyncio
    async def test_no_image_reads_like_service_failure(self, loaded_session, mock_model):
        mock_model.generate_content_async.return_value = fake_response(text_part("sorry, cannot"))

        snapshot = await loaded_session.generate()

        assert snapshot.status == Status.failure
        assert snapshot.error == loaded_session.settings.message(NoImageInResponseError.message_key)
        assert snapshot.error == loaded_session.settings.message(GenerationServiceError.message_key)

    @pytest.mark.asyncio
    async def test_retrigger_clears_previous_failure(self, loaded_session, mock_model):
        mock_model.generate_content_async.side_effect = [RuntimeError("boom"), fake_response_with_image()]

        failed = await loaded_session.generate()
        succeeded = await loaded_session.generate()

        assert failed.status == Status.failure and failed.generated_image is None
        assert succeeded.status == Status.success and succeeded.error is None

    @pytest.mark.asyncio
    async def test_second_trigger_while_loading_is_ignored(self, loaded_session, mock_model):
        release = asyncio.Event()

        async def slow_generate(*args, **kwargs):
            await release.wait()
            return fake_response_with_image()

        mock_model.generate_content_async.side_effect = slow_generate

        first = asyncio.create_task(loaded_session.generate())
        await asyncio.sleep(0)
        assert loaded_session.is_loading

        second = await loaded_session.generate()
        assert second.status == Status.loading
        assert second.can_generate is False

        release.set()
        final = await first

        assert final.status == Status.success
        assert mock_model.generate_content_async.await_count == 1

    @pytest.mark.asyncio
    async def test_malformed_response_fails_and_allows_retrigger(self, loaded_session, mock_model):
        mock_model.generate_content_async.side_effect = [
            SimpleNamespace(candidates={"c": 1}),
            fake_response_with_image(),
        ]

        failed = await loaded_session.generate()
        retried = await loaded_session.generate()

        assert failed.status == Status.failure
        assert failed.error == "Could not create the image. Please try again."
        assert retried.status == Status.success
        assert mock_model.generate_content_async.await_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_client_error_becomes_failure(self, loaded_session):
        with patch.object(loaded_session.client, "generate_composite", AsyncMock(side_effect=KeyError("parts"))):
            snapshot = await loaded_session.generate()

        assert snapshot.status == Status.failure
        assert snapshot.is_loading is False
        assert snapshot.generated_image is None
        assert snapshot.error == "Could not create the image. Please try again."

    @pytest.mark.asyncio
    async def test_cancelled_generation_does_not_stay_loading(self, loaded_session, mock_model):
        started = asyncio.Event()

        async def never_returns(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        mock_model.generate_content_async.side_effect = never_returns

        task = asyncio.create_task(loaded_session.generate())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert loaded_session.status == Status.failure
        assert loaded_session.can_generate

        mock_model.generate_content_async.side_effect = None
        mock_model.generate_content_async.return_value = fake_response_with_image()
        assert (await loaded_session.generate()).status == Status.success

    @pytest.mark.asyncio
    async def test_loading_clears_result_and_error(self, loaded_session, mock_model):
        seen = []
        loaded_session.subscribe(seen.append)

        await loaded_session.generate()
        await loaded_session.generate()

        loading = [s for s in seen if s.status == Status.loading]
        assert len(loading) == 2
        assert all(s.generated_image is None and s.error is None and s.is_loading for s in loading)

    def test_unsubscribe(self, session, png_bytes):
        seen = []
        unsubscribe = session.subscribe(seen.append)
        session.set_image(Slot.person, read_image(png_bytes, "image/png"))
        unsubscribe()
        session.clear_image(Slot.person)

        assert len(seen) == 1

    def test_failing_listener_does_not_break_transitions(self, session, png_bytes):
        def broken(snapshot):
            raise RuntimeError("listener bug")

        session.subscribe(broken)
        session.set_image(Slot.person, read_image(png_bytes, "image/png"))

        assert session.snapshot().person_image is not None

    @pytest.mark.asyncio
    async def test_load_image_failure_clears_slot(self, loaded_session):
        async def bad_loader():
            raise DecodeError("unreadable")

        with pytest.raises(DecodeError):
            await loaded_session.load_image(Slot.person, bad_loader())

        assert loaded_session.snapshot().person_image is None
        assert loaded_session.snapshot().product_image is not None

    def test_localized_messages(self, client, settings):
        vi_session = CompositeSession(client, settings.model_copy(update={"locale": "vi"}))
        assert vi_session.settings.message("missing_images") == "Vui lòng tải lên cả hai ảnh."


def fake_response_with_image():
    return fake_response(image_part(b"Hello"))


class TestSessionStore:

    def test_create_and_get(self, client, settings):
        store = SessionStore(client, settings)
        session = store.create()
        assert store.get(session.session_id) is session

    def test_unknown_session(self, client, settings):
        store = SessionStore(client, settings)
        with pytest.raises(SessionNotFoundError):
            store.get("nope")

    def test_discard(self, client, settings):
        store = SessionStore(client, settings)
        session = store.create()
        store.discard(session.session_id)
        with pytest.raises(SessionNotFoundError):
            store.get(session.session_id)

    def test_evicts_least_recently_used(self, client, settings):
        store = SessionStore(client, settings)
        sessions = [store.create() for _ in range(settings.max_sessions)]
        store.get(sessions[0].session_id)

        store.create()

        assert len(store) == settings.max_sessions
        store.get(sessions[0].session_id)
        with pytest.raises(SessionNotFoundError):
            store.get(sessions[1].session_id)

    def test_loading_sessions_are_not_evicted(self, client, settings):
        store = SessionStore(client, settings)
        sessions = [store.create() for _ in range(settings.max_sessions)]
        sessions[0].status = Status.loading

        store.create()

        store.get(sessions[0].session_id)
        with pytest.raises(SessionNotFoundError):
            store.get(sessions[1].session_id)
