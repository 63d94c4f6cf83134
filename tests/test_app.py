import base64

import pytest
from sqlalchemy.exc import OperationalError

from conftest import CERTIFICATE_TEXT, INSTITUTION, RECIPIENT, VERIFIER, login, make_pdf, make_record, pdf_upload
from veridoc.errors import PersistenceError
from veridoc.models import VerificationLog, db
from veridoc.qr import build_payload

QR_HASH = 'abc123' + '0' * 58


def issue(client, pdf=None, **fields):
    data = {
        'student_name': 'Jane Doe',
        'roll_number': 'CS-2024-017',
        'course': 'Bachelor of Computer Science',
        'recipient_wallet': RECIPIENT,
        'file': pdf_upload(pdf or make_pdf(CERTIFICATE_TEXT)),
    }
    data.update(fields)
    return client.post('/api/certificates', data=data, content_type='multipart/form-data')


def verify(client, pdf, **fields):
    data = {'file': pdf_upload(pdf)}
    data.update(fields)
    return client.post('/api/verify', data=data, content_type='multipart/form-data')


# --- Auth ---

def test_login_and_logout(client):
    response = login(client)
    assert response.status_code == 200
    assert response.get_json()['role'] == 'institution'
    assert client.get('/').get_json()['user'] == 'institution_user'

    client.get('/logout')
    assert client.get('/').get_json()['user'] is None


def test_login_rejects_bad_password(client):
    assert login(client, password='wrong').status_code == 401


def test_issuing_requires_institution_role(client):
    assert issue(client).status_code == 401
    login(client, 'verifier_user', 'ver123')
    assert issue(client).status_code == 403


def test_unknown_endpoint_is_json_404(client):
    response = client.get('/api/nothing-here')
    assert response.status_code == 404
    assert response.get_json() == {'error': 'Endpoint not found'}


# --- Uploads ---

def test_fingerprint_endpoint(client):
    response = client.post('/api/fingerprint', data={'file': pdf_upload(make_pdf(CERTIFICATE_TEXT))},
                           content_type='multipart/form-data')
    assert response.status_code == 200
    body = response.get_json()
    assert body['method'] == 'text-extraction'
    assert body['confidence'] == 100.0
    assert len(body['certificate_hash']) == 64


@pytest.mark.parametrize('upload, message', [
    (None, 'No file provided'),
    ((b'%PDF-1.4', 'certificate.png'), "File type '.png' not allowed"),
    ((b'GIF89a', 'certificate.pdf'), 'Invalid file type'),
])
def test_upload_validation(client, upload, message):
    data = {}
    if upload:
        data['file'] = pdf_upload(*upload)
    response = client.post('/api/fingerprint', data=data, content_type='multipart/form-data')
    assert response.status_code == 400
    assert message in response.get_json()['error']


def test_oversized_upload_is_rejected(app, client):
    app.config['MAX_FILE_SIZE'] = 100
    app.config['MAX_CONTENT_LENGTH'] = 100
    response = client.post('/api/fingerprint', data={'file': pdf_upload(make_pdf(CERTIFICATE_TEXT))},
                           content_type='multipart/form-data')
    assert response.status_code == 413


def test_unreadable_text_is_422(client):
    response = client.post('/api/fingerprint', data={'file': pdf_upload(make_pdf(None))},
                           content_type='multipart/form-data')
    assert response.status_code == 422


# --- Issuance ---

def test_issue_certificate(client, chain, store):
    login(client)
    response = issue(client, institution='Riverside University')
    assert response.status_code == 201
    body = response.get_json()

    assert body['certificate']['certificate_id'] == 1
    assert body['certificate']['institution_wallet'] == INSTITUTION
    assert body['transaction_hash'] == '0x' + f'{1:064x}'
    assert body['block_number'] == 101
    assert body['stamped_pdf_name'] == 'certificate-1.pdf'
    assert base64.b64decode(body['stamped_pdf']).startswith(b'%PDF')

    recipient, name, course, institution, date_issued = chain.issued[0]
    assert (recipient, name, institution) == (RECIPIENT, 'Jane Doe', 'Riverside University')
    assert date_issued > 0
    assert store.find_by_hash(body['fingerprint']['certificate_hash']).certificate_id == 1


def test_issue_rejects_missing_fields_and_bad_wallet(client):
    login(client)
    response = issue(client, course='  ')
    assert response.status_code == 400
    assert 'course' in response.get_json()['error']

    assert issue(client, recipient_wallet='not-a-wallet').status_code == 400


def test_issue_twice_is_a_conflict(client, chain):
    login(client)
    assert issue(client).status_code == 201
    response = issue(client)
    assert response.status_code == 409
    assert response.get_json()['conflict'] is True
    assert len(chain.issued) == 1


def test_database_failure_after_chain_is_partial(app, client, monkeypatch):
    def fail(data, queue_on_failure=True):
        raise PersistenceError('Database unavailable after 3 attempts', queued=True)

    monkeypatch.setattr(app.extensions['veridoc'].store, 'insert_certificate', fail)
    login(client)
    response = issue(client)

    assert response.status_code == 207
    body = response.get_json()
    assert body['registered_on_chain'] is True
    assert body['database_saved'] is False
    assert body['queued'] is True
    assert body['certificate_id'] == 1


def test_unwritable_outbox_still_reports_partial_issuance(client, chain, store, monkeypatch):
    def insert_once(data):
        raise OperationalError('INSERT INTO issued_certificates', {}, Exception('database is locked'))

    def disk_full(record, error=''):
        raise OSError(28, 'No space left on device')

    monkeypatch.setattr(store, '_insert_once', insert_once)
    monkeypatch.setattr(store.outbox, 'enqueue', disk_full)
    login(client)
    response = issue(client)

    assert response.status_code == 207
    body = response.get_json()
    assert body['queued'] is False
    assert body['certificate_id'] == 1
    assert body['transaction_hash'] == '0x' + f'{1:064x}'
    assert len(chain.issued) == 1


def test_issue_without_chain_is_503(app, client):
    app.extensions['veridoc'].issuance.chain = None
    login(client)
    response = issue(client)
    assert response.status_code == 503
    assert response.get_json()['kind'] == 'not_configured'


# --- Verification ---

def test_issued_pdf_verifies(client):
    pdf = make_pdf(CERTIFICATE_TEXT)
    login(client)
    issue(client, pdf=pdf)
    client.get('/logout')

    response = verify(client, pdf, verifier_wallet=VERIFIER)
    assert response.status_code == 200
    body = response.get_json()
    assert body['is_valid'] is True
    assert body['reason'] == 'verified'
    assert body['evidence'] == 'ocr-only'
    assert body['security_score'] == 100
    assert body['message'] == 'Certificate authenticity verified successfully.'


def test_full_agreement_with_embedded_qr(client, decoder):
    pdf = make_pdf(CERTIFICATE_TEXT)
    login(client)
    certificate_hash = issue(client, pdf=pdf).get_json()['fingerprint']['certificate_hash']
    decoder.payloads = [build_payload(certificate_hash, {'certificate_id': 1})]

    body = verify(client, pdf).get_json()
    assert body['evidence'] == 'both-agree'
    assert body['is_valid'] is True
    assert body['security_score'] == 100


def test_scanned_copy_verifies_through_qr(client, decoder):
    db.session.add(make_record(QR_HASH, certificate_id=7))
    db.session.commit()
    client.application.extensions['veridoc'].chain.valid[7] = True
    decoder.payloads = ['0x' + QR_HASH]

    body = verify(client, make_pdf(None)).get_json()
    assert body['evidence'] == 'qr-only'
    assert body['is_valid'] is True
    assert body['reason'] == 'verified'
    assert body['security_score'] == 95
    assert body['extraction_error']


def test_unknown_document_is_not_found(client):
    body = verify(client, make_pdf(CERTIFICATE_TEXT.replace('Jane Doe', 'John Roe'))).get_json()
    assert body['is_valid'] is False
    assert body['reason'] == 'not found in records'
    assert 'not found in records' in body['message']


def test_tampered_document(client, decoder):
    decoder.payloads = [QR_HASH]
    body = verify(client, make_pdf(CERTIFICATE_TEXT)).get_json()
    assert body['tampered'] is True
    assert body['reason'] == 'content tampered'
    assert body['security_score'] == 0


def test_revoked_certificate_fails_verification(client):
    pdf = make_pdf(CERTIFICATE_TEXT)
    login(client)
    issue(client, pdf=pdf)

    response = client.post('/api/certificates/1/revoke')
    assert response.status_code == 200
    assert response.get_json()['certificate']['is_revoked'] is True
    assert client.post('/api/certificates/1/revoke').status_code == 409

    body = verify(client, pdf).get_json()
    assert body['is_valid'] is False
    assert body['reason'] == 'revoked'


def test_revocation_saved_on_retry_after_database_failure(app, client, chain, store, monkeypatch):
    pdf = make_pdf(CERTIFICATE_TEXT)
    login(client)
    issue(client, pdf=pdf)

    mark_revoked = store.mark_revoked
    failures = [PersistenceError('Could not save revocation: database is locked')]

    def flaky_mark_revoked(certificate_id):
        if failures:
            raise failures.pop()
        return mark_revoked(certificate_id)

    monkeypatch.setattr(store, 'mark_revoked', flaky_mark_revoked)

    response = client.post('/api/certificates/1/revoke')
    assert response.status_code == 207
    body = response.get_json()
    assert body['revoked_on_chain'] is True
    assert body['database_saved'] is False
    assert body['transaction_hash'] == '0x' + 'ee' * 32
    assert store.find_by_id(1).is_revoked is False

    response = client.post('/api/certificates/1/revoke')
    assert response.status_code == 200
    assert response.get_json()['certificate']['is_revoked'] is True
    assert response.get_json()['transaction_hash'] is None
    assert chain.revoked == [1]

    assert verify(client, pdf).get_json()['reason'] == 'revoked'


def test_revoke_unknown_certificate_is_404(client):
    login(client)
    assert client.post('/api/certificates/99/revoke').status_code == 404


def test_nothing_recoverable_is_422_and_logged(client):
    response = verify(client, make_pdf(None))
    assert response.status_code == 422
    assert VerificationLog.query.count() == 1
    assert VerificationLog.query.first().result is False


def test_verifier_wallet_is_validated(client):
    response = verify(client, make_pdf(CERTIFICATE_TEXT), verifier_wallet='nope')
    assert response.status_code == 400


def test_every_attempt_is_logged(client):
    pdf = make_pdf(CERTIFICATE_TEXT)
    login(client)
    certificate_hash = issue(client, pdf=pdf).get_json()['fingerprint']['certificate_hash']
    verify(client, pdf, verifier_wallet=VERIFIER)
    verify(client, make_pdf(CERTIFICATE_TEXT + '\nForged addendum'))

    logs = client.get(f'/api/verification-logs?hash=0x{certificate_hash}').get_json()
    assert len(logs) == 1
    assert logs[0]['result'] is True
    assert logs[0]['verifier_wallet'] == VERIFIER
    assert logs[0]['details']['reason'] == 'verified'
    assert len(client.get('/api/verification-logs').get_json()) == 2


# --- Lookups ---

def test_certificate_lookups(client):
    login(client)
    certificate_hash = issue(client).get_json()['fingerprint']['certificate_hash']

    assert client.get('/api/certificates/1').get_json()['certificate_hash'] == certificate_hash
    assert client.get(f'/api/certificates/by-hash/0x{certificate_hash.upper()}').status_code == 200
    assert client.get('/api/certificates/2').status_code == 404
    assert client.get('/api/certificates/by-hash/' + 'ef' * 32).status_code == 404
    assert client.get('/api/certificates/by-hash/abc').status_code == 400


def test_chain_status(app, client):
    assert client.get('/api/chain/status').get_json()['chain_id'] == 1337
    app.extensions['veridoc'].chain = None
    assert client.get('/api/chain/status').status_code == 503


def test_outbox_flush_endpoint(client, store):
    store.outbox.enqueue({
        'student_name': 'Jane Doe',
        'roll_number': 'CS-2024-017',
        'course': 'BSc',
        'certificate_id': 5,
        'certificate_hash': QR_HASH,
        'institution_wallet': INSTITUTION,
        'blockchain_tx_hash': None,
        'issued_at': '2024-06-12T10:00:00',
    })
    assert client.post('/api/outbox/flush').status_code == 401

    login(client)
    response = client.post('/api/outbox/flush')
    assert response.get_json() == {'processed': 1, 'remaining': 0, 'dropped': 0}
    assert store.find_by_id(5).certificate_hash == QR_HASH
