from io import BytesIO
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from composer.config import Settings
from composer.generation import GenerationClient


def make_image_bytes(fmt="PNG", size=(8, 8), color=(200, 40, 90)):
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


def image_part(data, mime_type="image/png"):
    return SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type))


def text_part(text):
    return SimpleNamespace(text=text, inline_data=None)


def fake_response(*parts, block_reason=None):
    if not parts:
        return SimpleNamespace(candidates=[], prompt_feedback=SimpleNamespace(block_reason=block_reason))
    candidate = SimpleNamespace(content=SimpleNamespace(parts=list(parts)), finish_reason="STOP")
    return SimpleNamespace(candidates=[candidate], prompt_feedback=None)


@pytest.fixture
def settings():
    return Settings(api_key="test-key", max_sessions=4)


@pytest.fixture
def mock_model():
    """Stand-in for genai.GenerativeModel returning one image part."""
    model = MagicMock()
    model.generate_content_async = AsyncMock(return_value=fake_response(image_part(b"Hello")))
    return model


@pytest.fixture
def client(settings, mock_model):
    return GenerationClient(settings, model=mock_model)


@pytest.fixture
def png_bytes():
    return make_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes("JPEG")
