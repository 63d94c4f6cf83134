"""Content fingerprinting for uploaded certificates.

Every page goes through the same fallback chain: the PDF text layer first,
local Tesseract OCR on a raster of the page when the text layer is too thin,
and finally the remote vision model when OCR confidence stays low. The text
of all pages is normalized and hashed with SHA-256, so a certificate keeps
its fingerprint whether it was produced digitally or scanned.
"""
import io
import logging
import re
import unicodedata
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import fitz  # PyMuPDF
import pytesseract
from PIL import Image, ImageOps
from pytesseract import Output

from .config import FingerprintSettings
from .errors import ExtractionError
from .hashing import sha256_hex
from .vision import VisionClient

logger = logging.getLogger(__name__)

TEXT_EXTRACTION = 'text-extraction'
OCR = 'ocr'
VISION = 'vision'
MIXED = 'mixed'

MAX_CONFIDENCE = 100.0

OcrEngine = Callable[[Image.Image, FingerprintSettings], Tuple[str, float]]


@dataclass
class PageText:
    page_number: int
    text: str
    method: str
    confidence: float

    def to_dict(self) -> Dict:
        return {
            'page': self.page_number,
            'method': self.method,
            'confidence': round(self.confidence, 2),
            'characters': len(self.text),
        }


@dataclass
class Fingerprint:
    content_hash: str
    method: str
    confidence: float
    normalized_text: str
    pages: List[PageText] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'certificate_hash': self.content_hash,
            'method': self.method,
            'confidence': round(self.confidence, 2),
            'pages': [p.to_dict() for p in self.pages],
        }


# --- Text helpers ---

def normalize_text(text: str, stop_words: Iterable[str] = ()) -> str:
    """Case-folds, strips punctuation and boilerplate words, collapses whitespace."""
    if not text:
        return ''
    stop_words = frozenset(w.casefold() for w in stop_words)
    text = unicodedata.normalize('NFKC', text).casefold()
    text = re.sub(r'[^\w\s]|_', ' ', text)
    return ' '.join(w for w in text.split() if w not in stop_words)


def score_candidate(text: str, confidence: float, settings: FingerprintSettings) -> float:
    """Weighted heuristic used to pick between OCR and vision output for a page."""
    lowered = (text or '').lower()
    keyword_hits = sum(1 for kw in settings.domain_keywords if kw in lowered)
    length_ratio = min(len(lowered.strip()) / float(settings.length_saturation), 1.0)
    return (confidence * settings.confidence_weight
            + keyword_hits * settings.keyword_weight
            + length_ratio * settings.length_weight)


# --- Local OCR ---

def preprocess_for_ocr(image: Image.Image, scale_factor: int = 1) -> Image.Image:
    """Grayscale, stretch contrast, optionally upscale."""
    processed_image = image.convert('L')
    processed_image = ImageOps.autocontrast(processed_image)

    if scale_factor and scale_factor > 1:
        width, height = processed_image.size
        new_size = (width * scale_factor, height * scale_factor)
        processed_image = processed_image.resize(new_size, Image.LANCZOS)

    return processed_image


def run_tesseract(image: Image.Image, settings: FingerprintSettings) -> Tuple[str, float]:
    """Returns the page text and the mean word confidence (0-100)."""
    processed_image = preprocess_for_ocr(image, settings.scale_factor)
    custom_config = f'--oem {settings.oem_mode} --psm {settings.psm_mode}'
    data = pytesseract.image_to_data(processed_image, output_type=Output.DICT, config=custom_config)

    lines: Dict[Tuple[int, int, int], List[str]] = {}
    confidences = []
    for i in range(len(data['level'])):
        if data['level'][i] == 5 and str(data['text'][i]).strip():
            confidence = float(data['conf'][i])
            if confidence > 0:
                key = (data['block_num'][i], data['par_num'][i], data['line_num'][i])
                lines.setdefault(key, []).append(str(data['text'][i]).strip())
                confidences.append(confidence)

    text = '\n'.join(' '.join(words) for _, words in sorted(lines.items()))
    mean_confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return text, mean_confidence


def render_page(page, dpi: int) -> Image.Image:
    pix = page.get_pixmap(dpi=dpi, alpha=False)
    return Image.frombytes('RGB', (pix.width, pix.height), pix.samples)


def image_to_png(image: Image.Image) -> bytes:
    img_io = io.BytesIO()
    image.save(img_io, 'PNG')
    return img_io.getvalue()


# --- Pipeline ---

class Fingerprinter:

    def __init__(self, settings: FingerprintSettings, vision: Optional[VisionClient] = None,
                 ocr_engine: Optional[OcrEngine] = None):
        self.settings = settings
        self.vision = vision
        self.ocr_engine = ocr_engine or run_tesseract

    def fingerprint(self, pdf_bytes: bytes) -> Fingerprint:
        pages: List[Optional[PageText]] = []
        pending: Dict[Future, int] = {}
        workers = max(1, self.settings.max_workers)

        def collect(futures):
            for future in futures:
                pages[pending.pop(future)] = future.result()

        # PyMuPDF documents are not thread-safe, so text and rasters are read serially.
        # At most `workers` rasters are handed to the pool at a time.
        with open_pdf(pdf_bytes) as doc, ThreadPoolExecutor(max_workers=workers) as executor:
            for index, page in enumerate(doc):
                text = page.get_text('text') or ''
                if len(text.strip()) > self.settings.min_text_layer_chars:
                    pages.append(PageText(index + 1, text, TEXT_EXTRACTION, MAX_CONFIDENCE))
                    continue

                logger.info(f"Page {index + 1}: text layer has {len(text.strip())} chars, rasterizing for OCR")
                pages.append(None)
                if len(pending) >= workers:
                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    collect(done)
                image = render_page(page, self.settings.raster_dpi)
                pending[executor.submit(self.recognize_page, index + 1, image)] = index
                del image

            collect(as_completed(list(pending)))

        return self.combine(pages)

    def recognize_page(self, page_number: int, image: Image.Image) -> PageText:
        try:
            text, confidence = self.ocr_engine(image, self.settings)
        except Exception as e:
            logger.warning(f"Page {page_number}: local OCR failed: {e}")
            text, confidence = '', 0.0

        best = PageText(page_number, text, OCR, confidence)
        logger.info(f"Page {page_number}: OCR confidence {confidence:.1f}, {len(text)} chars")

        if confidence >= self.settings.ocr_confidence_threshold:
            return best
        if not self.vision or not self.vision.settings.enabled:
            return best

        logger.info(f"Page {page_number}: OCR below {self.settings.ocr_confidence_threshold}, escalating to vision model")
        vision_text = self.vision.extract_text(image_to_png(image))
        if not vision_text:
            return best

        candidate = PageText(page_number, vision_text, VISION, self.settings.vision_base_confidence)
        ocr_score = score_candidate(best.text, best.confidence, self.settings)
        vision_score = score_candidate(candidate.text, candidate.confidence, self.settings)
        logger.info(f"Page {page_number}: OCR score {ocr_score:.1f} vs vision score {vision_score:.1f}")
        return candidate if vision_score > ocr_score else best

    def combine(self, pages: List[PageText]) -> Fingerprint:
        if not pages:
            raise ExtractionError('The document has no pages')

        full_text = '\n'.join(p.text for p in pages)
        normalized = normalize_text(full_text, self.settings.stop_words)
        if len(normalized) < self.settings.min_total_chars:
            raise ExtractionError(
                f"Could not extract enough text from the document "
                f"({len(normalized)} characters after normalization, "
                f"{self.settings.min_total_chars} required)")

        methods = {p.method for p in pages}
        method = methods.pop() if len(methods) == 1 else MIXED

        total_chars = sum(len(p.text) for p in pages)
        if total_chars:
            confidence = sum(p.confidence * len(p.text) for p in pages) / total_chars
        else:
            confidence = 0.0

        return Fingerprint(
            content_hash=sha256_hex(normalized),
            method=method,
            confidence=confidence,
            normalized_text=normalized,
            pages=pages,
        )


def open_pdf(pdf_bytes: bytes):
    if not pdf_bytes:
        raise ExtractionError('Empty document')
    try:
        return fitz.open(stream=pdf_bytes, filetype='pdf')
    except Exception as e:
        raise ExtractionError(f"Could not read PDF: {e}") from e


def fingerprint_document(pdf_bytes: bytes, settings: FingerprintSettings,
                         vision: Optional[VisionClient] = None) -> Fingerprint:
    return Fingerprinter(settings, vision=vision).fingerprint(pdf_bytes)
