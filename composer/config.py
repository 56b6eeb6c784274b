import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from composer.errors import ConfigurationError


DEFAULT_MODEL = "gemini-2.5-flash-image-preview"

COMPOSITE_PROMPT = (
    "You are an expert photo editor. Take the first image of a person and the second image "
    "of a product. Create a new, single, photorealistic image where the person is naturally "
    "interacting with the product. The final output must be seamless, with realistic lighting, "
    "shadows, perspective, and scale. The background should be cohesive and believable. "
    "Only output the final image."
)

# --- User-facing messages, keyed by locale ---
MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "missing_images": "Please upload both images.",
        "generation_failed": "Could not create the image. Please try again.",
        "decode_failed": "Could not read this file as an image.",
        "unsupported_type": "Only PNG, JPG and WEBP images are supported.",
        "file_too_large": "This file is too large.",
        "ui_title": "Product Composite Studio",
        "ui_subtitle": "Upload a photo of a person and a photo of a product to get one natural, photorealistic composite.",
        "ui_person": "1. Person",
        "ui_product": "2. Product",
        "ui_upload": "Click to upload",
        "ui_generate": "Create composite",
        "ui_generating": "Generating...",
        "ui_placeholder": "The generated image will appear here.",
        "ui_result_alt": "Generated",
    },
    "vi": {
        "missing_images": "Vui lòng tải lên cả hai ảnh.",
        "generation_failed": "Không thể tạo ảnh. Vui lòng thử lại.",
        "decode_failed": "Không thể đọc tệp này dưới dạng ảnh.",
        "unsupported_type": "Chỉ hỗ trợ ảnh PNG, JPG và WEBP.",
        "file_too_large": "Tệp quá lớn.",
        "ui_title": "AI Ảnh Ghép NanoBanana",
        "ui_subtitle": "Tải lên ảnh một người và một sản phẩm để AI tạo ra một bức ảnh ghép tự nhiên và chân thực.",
        "ui_person": "1. Tải ảnh nhân vật",
        "ui_product": "2. Tải ảnh sản phẩm",
        "ui_upload": "Nhấn để tải lên",
        "ui_generate": "Tạo Ảnh Ghép",
        "ui_generating": "Đang tạo ảnh...",
        "ui_placeholder": "Ảnh được tạo sẽ xuất hiện ở đây.",
        "ui_result_alt": "Ảnh đã tạo",
    },
}


class Settings(BaseModel):
    model_config = {"protected_namespaces": ()}

    api_key: str = Field(..., repr=False)
    model_name: str = DEFAULT_MODEL
    prompt: str = COMPOSITE_PROMPT
    output_mime_type: str = "image/jpeg"
    timeout_seconds: float = 120.0
    temperature: Optional[float] = None
    max_upload_bytes: int = 10 * 1024 * 1024
    max_sessions: int = 256
    locale: str = "en"
    cors_origins: List[str] = ["*"]

    def generation_config(self) -> Dict[str, Any]:
        """Generation config forwarded untouched to the model."""
        config: Dict[str, Any] = {
            "candidate_count": 1,
            "response_modalities": ["IMAGE", "TEXT"],
        }
        if self.temperature is not None:
            config["temperature"] = self.temperature
        return config

    def message(self, key: str) -> str:
        table = MESSAGES.get(self.locale, MESSAGES["en"])
        return table.get(key) or MESSAGES["en"][key]

    def messages(self) -> Dict[str, str]:
        """Every message for the configured locale, English filling any gaps."""
        return {**MESSAGES["en"], **MESSAGES.get(self.locale, {})}


def load_settings() -> Settings:
    """Build settings from the environment (and a local .env file).

    Raises ConfigurationError when GEMINI_API_KEY is missing: the app must not
    start without a credential.
    """
    load_dotenv()
    api_key = os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise ConfigurationError("GEMINI_API_KEY not set in environment or .env file")

    temperature = os.getenv("GENERATION_TEMPERATURE")
    origins = os.getenv("CORS_ORIGINS", "*")

    return Settings(
        api_key=api_key,
        model_name=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
        output_mime_type=os.getenv("OUTPUT_MIME_TYPE", "image/jpeg"),
        timeout_seconds=float(os.getenv("GENERATION_TIMEOUT_SECONDS", "120")),
        temperature=float(temperature) if temperature else None,
        max_upload_bytes=int(float(os.getenv("MAX_UPLOAD_MB", "10")) * 1024 * 1024),
        max_sessions=int(os.getenv("MAX_SESSIONS", "256")),
        locale=os.getenv("APP_LOCALE", "en").lower(),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )
