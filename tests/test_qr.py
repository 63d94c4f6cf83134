import io
import json

import fitz
import pytest
from PIL import Image

from conftest import CERTIFICATE_TEXT, make_pdf
from veridoc.config import FingerprintSettings, QrSettings
from veridoc.errors import ExtractionError
from veridoc.fingerprint import Fingerprinter
from veridoc.qr import build_payload, embed_qr, extract_qr, parse_payload, qr_rect, render_qr_png, stamp_certificate

HASH = 'abc123' + '0' * 58
SETTINGS = QrSettings(scan_dpi=150)


def test_build_payload_is_compact_sorted_json():
    payload = build_payload('0x' + HASH.upper(), {'student': 'Jane Doe', 'certificate_id': 7, 'course': None})
    assert payload == json.dumps({'certificate_id': 7, 'hash': HASH, 'student': 'Jane Doe'},
                                 separators=(',', ':'), sort_keys=True)


def test_parse_structured_payload():
    payload = parse_payload(build_payload(HASH, {'certificate_id': 7}))
    assert payload.certificate_hash == HASH
    assert payload.metadata == {'certificate_id': 7}
    assert payload.structured


def test_parse_raw_hash_payload():
    payload = parse_payload('0x' + HASH)
    assert payload.certificate_hash == HASH
    assert payload.metadata == {}
    assert not payload.structured


@pytest.mark.parametrize('raw', ['', '   ', 'https://example.org/certificate', '{"hash": "abc123"}', '{"id": 1}'])
def test_unusable_payloads_are_ignored(raw):
    assert parse_payload(raw) is None


def test_render_qr_png_has_configured_size():
    png = render_qr_png(build_payload(HASH), SETTINGS)
    image = Image.open(io.BytesIO(png))
    assert image.size == (SETTINGS.size_px, SETTINGS.size_px)


def test_qr_rect_sits_in_bottom_right_corner():
    with fitz.open(stream=make_pdf(CERTIFICATE_TEXT), filetype='pdf') as doc:
        page = doc[0]
        rect = qr_rect(page, SETTINGS)
        assert rect.x1 == pytest.approx(page.rect.width - SETTINGS.margin_pt)
        assert rect.y1 == pytest.approx(page.rect.height - SETTINGS.margin_pt)
        assert rect.width == pytest.approx(SETTINGS.rect_size_pt)


def test_embedding_keeps_the_content_hash():
    pdf = make_pdf(CERTIFICATE_TEXT)
    fingerprinter = Fingerprinter(FingerprintSettings(raster_dpi=72))
    original = fingerprinter.fingerprint(pdf)

    stamped = stamp_certificate(pdf, original.content_hash, {'certificate_id': 1}, SETTINGS)

    with fitz.open(stream=stamped, filetype='pdf') as doc:
        assert len(doc[0].get_images()) == 1
    assert fingerprinter.fingerprint(stamped).content_hash == original.content_hash


def test_embed_qr_rejects_unreadable_pdf():
    with pytest.raises(ExtractionError):
        embed_qr(b'', render_qr_png(HASH, SETTINGS), SETTINGS)


def test_extract_qr_returns_first_valid_payload():
    seen = []

    def decoder(image):
        seen.append(image.size)
        if len(seen) == 1:
            return ['not a hash']
        return ['0x' + HASH]

    payload = extract_qr(make_pdf(CERTIFICATE_TEXT, CERTIFICATE_TEXT), SETTINGS, decoder)
    assert payload.certificate_hash == HASH
    assert len(seen) == 2


def test_extract_qr_skips_pages_where_decoder_fails():
    calls = []

    def decoder(image):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError('zbar crashed')
        return [build_payload(HASH)]

    payload = extract_qr(make_pdf(CERTIFICATE_TEXT, CERTIFICATE_TEXT), SETTINGS, decoder)
    assert payload.certificate_hash == HASH


def test_extract_qr_without_codes_returns_none():
    assert extract_qr(make_pdf(CERTIFICATE_TEXT), SETTINGS, lambda image: []) is None


def test_stamped_certificate_decodes_with_zbar():
    pytest.importorskip('pyzbar.pyzbar')
    stamped = stamp_certificate(make_pdf(CERTIFICATE_TEXT), HASH, {'certificate_id': 3}, QrSettings())

    payload = extract_qr(stamped, QrSettings())

    assert payload is not None
    assert payload.certificate_hash == HASH
    assert payload.metadata == {'certificate_id': 3}
