import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import fitz  # PyMuPDF
import qrcode
from PIL import Image

from .config import QrSettings
from .errors import HashFormatError
from .fingerprint import open_pdf, render_page
from .hashing import normalize_hash

logger = logging.getLogger(__name__)

# Takes a PIL image, returns the raw payload strings of every QR code found.
QrDecoder = Callable[[Image.Image], List[str]]


@dataclass
class QrPayload:
    certificate_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: str = ''
    structured: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'certificate_hash': self.certificate_hash,
            'metadata': self.metadata,
            'structured': self.structured,
        }


# --- Encoding ---

def build_payload(certificate_hash: str, metadata: Optional[Dict[str, Any]] = None) -> str:
    data = {'hash': normalize_hash(certificate_hash)}
    for key, value in (metadata or {}).items():
        if value is not None and key != 'hash':
            data[key] = value
    return json.dumps(data, separators=(',', ':'), sort_keys=True, default=str)


def render_qr_png(payload: str, settings: QrSettings) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=settings.box_size,
        border=settings.border,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color='black', back_color='white').convert('RGB')
    img = img.resize((settings.size_px, settings.size_px), Image.NEAREST)

    buf = io.BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()


def qr_rect(page, settings: QrSettings) -> fitz.Rect:
    """Bottom-right corner of the page, fixed size."""
    width, height = page.rect.width, page.rect.height
    x1 = width - settings.margin_pt
    y1 = height - settings.margin_pt
    return fitz.Rect(x1 - settings.rect_size_pt, y1 - settings.rect_size_pt, x1, y1)


def embed_qr(pdf_bytes: bytes, png_bytes: bytes, settings: QrSettings) -> bytes:
    with open_pdf(pdf_bytes) as doc:
        page = doc[0]
        page.insert_image(qr_rect(page, settings), stream=png_bytes)
        return doc.tobytes(garbage=3, deflate=True)


def stamp_certificate(pdf_bytes: bytes, certificate_hash: str, metadata: Dict[str, Any],
                      settings: QrSettings) -> bytes:
    payload = build_payload(certificate_hash, metadata)
    return embed_qr(pdf_bytes, render_qr_png(payload, settings), settings)


# --- Decoding ---

def pyzbar_decoder(image: Image.Image) -> List[str]:
    # Imported here: pyzbar loads the native zbar library at import time.
    from pyzbar.pyzbar import ZBarSymbol, decode

    decoded_objects = decode(image, symbols=[ZBarSymbol.QRCODE])
    return [obj.data.decode('utf-8', errors='ignore') for obj in decoded_objects]


def parse_payload(raw: str) -> Optional[QrPayload]:
    """JSON payload with a ``hash`` key, or the raw payload taken as the hash itself."""
    raw = (raw or '').strip()
    if not raw:
        return None

    try:
        data = json.loads(raw)
    except ValueError:
        data = None

    if isinstance(data, dict) and 'hash' in data:
        try:
            certificate_hash = normalize_hash(data['hash'])
        except HashFormatError as e:
            logger.warning(f"QR payload carries an invalid hash: {e.message}")
            return None
        metadata = {k: v for k, v in data.items() if k != 'hash'}
        return QrPayload(certificate_hash, metadata, raw, structured=True)

    try:
        certificate_hash = normalize_hash(raw)
    except HashFormatError:
        logger.warning(f"QR payload is neither JSON nor a hash: '{raw[:40]}'")
        return None
    return QrPayload(certificate_hash, {}, raw, structured=False)


def extract_qr(pdf_bytes: bytes, settings: QrSettings,
               decoder: Optional[QrDecoder] = None) -> Optional[QrPayload]:
    decoder = decoder or pyzbar_decoder

    with open_pdf(pdf_bytes) as doc:
        for index, page in enumerate(doc):
            image = render_page(page, settings.scan_dpi)
            try:
                payloads = decoder(image)
            except Exception as e:
                logger.warning(f"QR scan failed on page {index + 1}: {e}")
                continue

            for raw in payloads:
                payload = parse_payload(raw)
                if payload:
                    logger.info(f"QR payload found on page {index + 1}")
                    return payload

    return None
