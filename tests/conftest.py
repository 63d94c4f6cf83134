import io
from datetime import datetime

import fitz
import pytest

from veridoc.app import create_app
from veridoc.chain import IssueReceipt
from veridoc.config import FingerprintSettings, QrSettings, RetrySettings, Settings
from veridoc.errors import ChainError
from veridoc.models import IssuedCertificate, db

INSTITUTION = '0x90f8bf6a479f320ead074411a4b0e7944ea8c9c1'
RECIPIENT = '0xffcf8fdee72ac11b5c542428b35eef5769c409f0'
VERIFIER = '0x22d491bde2303f2f43325b2108d26f1eaba1e32b'

CERTIFICATE_TEXT = (
    "Riverside University\n"
    "Certificate of Completion\n"
    "This is to certify that Jane Doe, roll number CS-2024-017,\n"
    "has successfully completed the course Bachelor of Computer Science\n"
    "with grade A on 12 June 2024."
)


def make_pdf(*pages):
    """Builds a PDF with one page per argument. ``None`` makes a blank page."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


def pdf_upload(data, filename='certificate.pdf'):
    return (io.BytesIO(data), filename)


class FakeSigner:
    def __init__(self, address):
        self.address = address


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self, owner=INSTITUTION):
        self._owner = owner
        self.signer = FakeSigner(owner)
        self.valid = {}
        self.next_id = 1
        self.fail_verify = None
        self.fail_issue = None
        self.issued = []
        self.revoked = []

    def issue_certificate(self, recipient, name, course, institution, date_issued):
        if self.fail_issue:
            raise self.fail_issue
        certificate_id = self.next_id
        self.next_id += 1
        self.valid[certificate_id] = True
        self.issued.append((recipient, name, course, institution, date_issued))
        return IssueReceipt(certificate_id=certificate_id, tx_hash='0x' + f'{certificate_id:064x}',
                            block_number=100 + certificate_id)

    def verify_certificate(self, certificate_id):
        if self.fail_verify:
            raise self.fail_verify
        return self.valid.get(int(certificate_id), False)

    def revoke_certificate(self, certificate_id):
        if not self.valid.get(int(certificate_id)):
            raise ChainError('Blockchain revocation failed: execution reverted', kind='revert')
        self.valid[int(certificate_id)] = False
        self.revoked.append(int(certificate_id))
        return '0x' + 'ee' * 32

    def owner(self):
        return self._owner

    def get_total_certificates(self):
        return len(self.valid)

    def status(self):
        return {
            'network': 'ganache',
            'chain_id': 1337,
            'block_number': 123,
            'contract_address': '0x' + '11' * 20,
            'total_certificates': self.get_total_certificates(),
            'owner': self._owner,
            'signer': self.signer.address,
        }


class FakeDecoder:
    """QR decoder returning whatever payloads the test sets."""

    def __init__(self):
        self.payloads = []
        self.calls = 0

    def __call__(self, image):
        self.calls += 1
        return list(self.payloads)


def blank_ocr(image, settings):
    return '', 0.0


def make_record(certificate_hash, certificate_id=1, **overrides):
    fields = dict(
        student_name='Jane Doe',
        roll_number='CS-2024-017',
        course='Bachelor of Computer Science',
        certificate_id=certificate_id,
        certificate_hash=certificate_hash,
        institution_wallet=INSTITUTION,
        blockchain_tx_hash='0x' + 'aa' * 32,
        is_revoked=False,
        issued_at=datetime(2024, 6, 12, 10, 0, 0),
    )
    fields.update(overrides)
    return IssuedCertificate(**fields)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        authorized_institutions=frozenset({INSTITUTION.lower()}),
        fingerprint=FingerprintSettings(raster_dpi=72, max_workers=2),
        qr=QrSettings(scan_dpi=150),
        retry=RetrySettings(attempts=3, base_delay=0.0, outbox_max_attempts=2),
        outbox_path=str(tmp_path / 'outbox.json'),
    )


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def decoder():
    return FakeDecoder()


@pytest.fixture
def app(settings, chain, decoder):
    app = create_app(
        settings,
        config_overrides={
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'SECRET_KEY': 'test',
        },
        chain=chain,
        qr_decoder=decoder,
        ocr_engine=blank_ocr,
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions['veridoc'].store


def login(client, username='institution_user', password='inst123'):
    return client.post('/login', data={'username': username, 'password': password})
