import logging
import re
from typing import Optional

import google.generativeai as genai

from .config import VisionSettings

logger = logging.getLogger(__name__)


class VisionClient:
    """Single request/response text extraction with a Gemini model.

    Every failure is soft: the caller gets ``None`` and keeps its local OCR result.
    """

    def __init__(self, settings: VisionSettings, model=None):
        self.settings = settings
        self._model = model

    @property
    def model(self):
        if self._model is None:
            genai.configure(api_key=self.settings.api_key)
            self._model = genai.GenerativeModel(self.settings.model)
        return self._model

    def extract_text(self, png_bytes: bytes) -> Optional[str]:
        if not self.settings.enabled:
            return None

        try:
            response = self.model.generate_content(
                [self.settings.prompt, {'mime_type': 'image/png', 'data': png_bytes}],
                request_options={'timeout': self.settings.timeout},
            )
            text = response.text
        except Exception as e:
            logger.warning(f"Vision extraction failed: {e}")
            return None

        if not text or not text.strip():
            logger.warning("Vision model returned no text")
            return None
        return strip_code_fences(text)


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith('```'):
        cleaned = re.sub(r'^```[a-zA-Z]*|```$', '', cleaned, flags=re.MULTILINE).strip()
    return cleaned
