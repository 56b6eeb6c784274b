"""Gemini client for person + product composites.

One call per composite: the person image, the product image and the
instruction prompt go out as a single request (in that order, the model
treats the first image as the subject). The first response part carrying
inline image data is the result.
"""

import base64
import logging
from typing import Any, Dict, Optional

import google.generativeai as genai

from composer.config import Settings
from composer.errors import GenerationServiceError, NoImageInResponseError
from composer.intake import ImageData

logger = logging.getLogger(__name__)


def _blob(image: ImageData) -> Dict[str, Any]:
    return {"mime_type": image.mime_type, "data": image.raw_bytes()}


def extract_image_payload(response: Any) -> str:
    """Return the first inline image in `response` as base64 text.

    Text parts are skipped. Raises NoImageInResponseError when no part
    carries image data.
    """
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None) if feedback else None
        raise NoImageInResponseError(f"No candidates in response. Block reason: {block_reason or 'Unknown'}")

    content = getattr(candidates[0], "content", None)
    for part in getattr(content, "parts", None) or []:
        inline_data = getattr(part, "inline_data", None)
        if not inline_data:
            continue
        data = getattr(inline_data, "data", None)
        if not data:
            continue
        if isinstance(data, bytes):
            return base64.b64encode(data).decode("ascii")
        return data

    finish_reason = getattr(candidates[0], "finish_reason", None)
    raise NoImageInResponseError(f"No image data found in the API response. Finish reason: {finish_reason}")


class GenerationClient:
    def __init__(self, settings: Settings, model: Optional[Any] = None):
        self.settings = settings
        if model is None:
            genai.configure(api_key=settings.api_key)
            model = genai.GenerativeModel(model_name=settings.model_name)
        self.model = model

    async def generate_composite(self, person: ImageData, product: ImageData) -> str:
        """Send one generation request and return the image payload (base64).

        Raises:
            NoImageInResponseError: the service answered without an image.
            GenerationServiceError: the call itself failed.
        """
        contents = [_blob(person), _blob(product), self.settings.prompt]
        logger.info(
            f"Requesting composite from {self.settings.model_name} "
            f"(person={person.mime_type}, product={product.mime_type})"
        )
        try:
            response = await self.model.generate_content_async(
                contents,
                generation_config=self.settings.generation_config(),
                request_options={"timeout": self.settings.timeout_seconds},
            )
        except Exception as e:
            raise GenerationServiceError(f"Failed to generate image from the API: {e}") from e

        try:
            payload = extract_image_payload(response)
        except NoImageInResponseError:
            raise
        except (AttributeError, TypeError, ValueError, LookupError) as e:
            raise GenerationServiceError(f"Malformed response from the API: {e}") from e

        logger.info(f"Composite received ({len(payload)} base64 chars)")
        return payload
