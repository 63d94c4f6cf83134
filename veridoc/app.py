import base64
import logging
import os
from functools import wraps
from typing import Optional, Tuple

from flask import Flask, current_app, jsonify, request, session
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.security import check_password_hash

from .chain import ChainClient
from .config import Config, Settings, env_bool
from .errors import ChainError, NotFoundError, UploadError, VeriDocError
from .fingerprint import Fingerprinter
from .hashing import normalize_hash
from .models import db
from .outbox import Outbox
from .reconcile import Reconciler
from .services import IssuanceService, VerificationService
from .store import CertificateStore
from .vision import VisionClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

PDF_MAGIC = b'%PDF'


class Services:
    """Per-app collaborators, built once from the Settings object."""

    def __init__(self, settings: Settings, store: CertificateStore, chain: Optional[ChainClient],
                 fingerprinter: Fingerprinter, qr_decoder=None):
        self.settings = settings
        self.store = store
        self.chain = chain
        self.fingerprinter = fingerprinter
        self.issuance = IssuanceService(settings, store, chain, fingerprinter)
        self.verification = VerificationService(settings, store, Reconciler(store, chain, settings),
                                                fingerprinter, qr_decoder=qr_decoder)


def services() -> Services:
    return current_app.extensions['veridoc']


# --- RBAC ---

def login_required(role="ANY"):
    """Rejects anonymous sessions with 401 and, unless role is "ANY", other roles with 403."""
    def wrapper(fn):
        @wraps(fn)
        def decorated_view(*args, **kwargs):
            if 'username' not in session:
                return jsonify({'error': 'Authentication required'}), 401
            if role != "ANY" and session.get('role') != role:
                return jsonify({'error': "You don't have permission to access this resource."}), 403
            return fn(*args, **kwargs)
        return decorated_view
    return wrapper


# --- Validation Functions ---

def validate_file_size(file_storage, max_size: int) -> Tuple[bool, Optional[str]]:
    """Checks the declared size of an upload; the body is checked again after reading."""
    if hasattr(file_storage, 'content_length') and file_storage.content_length:
        if file_storage.content_length > max_size:
            return False, f"File size exceeds maximum allowed size of {max_size // (1024*1024)}MB"
    return True, None


def validate_file_extension(filename: str, allowed_extensions: set) -> Tuple[bool, Optional[str]]:
    if not filename:
        return False, "No filename provided"

    ext = os.path.splitext(filename)[1].lower()
    if ext not in allowed_extensions:
        return False, f"File type '{ext}' not allowed. Allowed types: {', '.join(sorted(allowed_extensions))}"

    return True, None


def read_document_upload(field_name: str = 'file') -> bytes:
    """Returns the bytes of the uploaded PDF or raises UploadError."""
    file_storage = request.files.get(field_name)
    if not file_storage or not file_storage.filename:
        raise UploadError("No file provided")

    valid_ext, ext_error = validate_file_extension(file_storage.filename,
                                                   current_app.config['ALLOWED_DOCUMENT_EXTENSIONS'])
    if not valid_ext:
        raise UploadError(ext_error)

    max_size = current_app.config['MAX_FILE_SIZE']
    valid_size, size_error = validate_file_size(file_storage, max_size)
    if not valid_size:
        raise UploadError(size_error, status_code=413)

    data = file_storage.read()
    if len(data) > max_size:
        raise UploadError(f"File size exceeds maximum allowed size of {max_size // (1024*1024)}MB",
                          status_code=413)
    if not data.startswith(PDF_MAGIC):
        raise UploadError("Invalid file type. Please upload a PDF file.")
    return data


def request_value(name: str) -> str:
    if request.is_json:
        return str((request.get_json(silent=True) or {}).get(name) or '')
    return request.form.get(name, '')


# --- App factory ---

def create_app(settings: Optional[Settings] = None, config_overrides: Optional[dict] = None,
               chain: Optional[ChainClient] = None, connect_chain: bool = True,
               qr_decoder=None, ocr_engine=None) -> Flask:
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)
    app.config['MAX_CONTENT_LENGTH'] = app.config['MAX_FILE_SIZE']

    db.init_app(app)
    with app.app_context():
        db.create_all()

    if chain is None and connect_chain:
        try:
            chain = ChainClient.connect(settings)
        except ChainError as e:
            logger.error(f"Error setting up blockchain connection: {e.message}")
            chain = None

    vision = VisionClient(settings.vision) if settings.vision.enabled else None
    fingerprinter = Fingerprinter(settings.fingerprint, vision=vision, ocr_engine=ocr_engine)
    outbox = Outbox(settings.outbox_path, max_attempts=settings.retry.outbox_max_attempts)
    store = CertificateStore(retry=settings.retry, outbox=outbox)
    app.extensions['veridoc'] = Services(settings, store, chain, fingerprinter, qr_decoder=qr_decoder)

    register_routes(app)
    register_error_handlers(app)
    return app


def register_routes(app: Flask):

    @app.route('/')
    def index():
        return jsonify({
            'service': 'veridoc',
            'user': session.get('username'),
            'role': session.get('role'),
            'blockchain_connected': services().chain is not None,
        })

    @app.route('/login', methods=['POST'])
    def login():
        """Handles user login."""
        username = request_value('username')
        password = request_value('password')
        user = services().settings.users.get(username)

        if user and check_password_hash(user['pw_hash'], password):
            session['username'] = username
            session['role'] = user['role']
            logger.info(f"User '{username}' logged in with role '{user['role']}'.")
            return jsonify({'success': True, 'username': username, 'role': user['role']})

        logger.warning(f"Failed login attempt for username: '{username}'.")
        return jsonify({'error': 'Invalid username or password.'}), 401

    @app.route('/logout')
    def logout():
        """Logs the user out."""
        session.clear()
        return jsonify({'success': True})

    # --- API Routes ---

    @app.route('/api/fingerprint', methods=['POST'])
    def fingerprint_document():
        """Hashes an uploaded PDF without touching the store or the chain."""
        pdf_bytes = read_document_upload()
        fingerprint = services().fingerprinter.fingerprint(pdf_bytes)
        return jsonify(fingerprint.to_dict())

    @app.route('/api/certificates', methods=['POST'])
    @login_required(role='institution')
    def issue_certificate():
        """Registers the uploaded certificate on-chain and in the database, returns the QR-stamped PDF."""
        pdf_bytes = read_document_upload()
        svc = services()
        result = svc.issuance.issue(
            pdf_bytes,
            student_name=request.form.get('student_name'),
            roll_number=request.form.get('roll_number'),
            course=request.form.get('course'),
            recipient_wallet=request.form.get('recipient_wallet'),
            institution=request.form.get('institution'),
        )

        response = {
            'success': True,
            'message': 'Certificate has been registered on blockchain and database.',
            'certificate': result.record.to_dict(),
            'transaction_hash': result.receipt.tx_hash,
            'block_number': result.receipt.block_number,
            'explorer_url': svc.settings.network.tx_url(result.receipt.tx_hash),
            'fingerprint': result.fingerprint.to_dict(),
            'stamped_pdf': None,
            'stamp_error': result.stamp_error,
        }
        if result.stamped_pdf:
            response['stamped_pdf'] = base64.b64encode(result.stamped_pdf).decode('utf-8')
            response['stamped_pdf_name'] = f"certificate-{result.record.certificate_id}.pdf"
        return jsonify(response), 201

    @app.route('/api/certificates/<int:certificate_id>', methods=['GET'])
    def get_certificate(certificate_id):
        record = services().store.find_by_id(certificate_id)
        if record is None:
            raise NotFoundError(f"Certificate {certificate_id} not found")
        return jsonify(record.to_dict())

    @app.route('/api/certificates/by-hash/<certificate_hash>', methods=['GET'])
    def get_certificate_by_hash(certificate_hash):
        record = services().store.find_by_hash(normalize_hash(certificate_hash))
        if record is None:
            raise NotFoundError("No certificate registered under this hash")
        return jsonify(record.to_dict())

    @app.route('/api/certificates/<int:certificate_id>/revoke', methods=['POST'])
    @login_required(role='institution')
    def revoke_certificate(certificate_id):
        record, tx_hash = services().issuance.revoke(certificate_id)
        return jsonify({
            'success': True,
            'message': f"Certificate {certificate_id} revoked.",
            'certificate': record.to_dict(),
            'transaction_hash': tx_hash,
        })

    @app.route('/api/verify', methods=['POST'])
    def verify_certificate():
        """Recomputes the hashes of an uploaded certificate and reconciles them with the records."""
        pdf_bytes = read_document_upload()
        result = services().verification.verify(pdf_bytes, verifier_wallet=request.form.get('verifier_wallet'))
        response = result.to_dict()
        if result.verdict.is_valid:
            response['message'] = 'Certificate authenticity verified successfully.'
        else:
            response['message'] = ('Certificate could not be verified. It may be invalid or forged '
                                   f"({result.verdict.reason}).")
        return jsonify(response)

    @app.route('/api/verification-logs', methods=['GET'])
    def list_verification_logs():
        certificate_hash = request.args.get('hash')
        if certificate_hash:
            certificate_hash = normalize_hash(certificate_hash)
        limit = min(request.args.get('limit', 100, type=int), 500)
        logs = services().store.list_logs(certificate_hash, limit=limit)
        return jsonify([entry.to_dict() for entry in logs])

    @app.route('/api/chain/status', methods=['GET'])
    def chain_status():
        chain = services().chain
        if chain is None:
            raise ChainError('Blockchain is not configured or connected.', kind='not_configured')
        return jsonify(chain.status())

    @app.route('/api/outbox/flush', methods=['POST'])
    @login_required(role='institution')
    def flush_outbox():
        summary = services().store.flush_outbox()
        logger.info(f"Outbox flush: {summary}")
        return jsonify(summary)


# --- Error Handlers ---

def register_error_handlers(app: Flask):

    @app.errorhandler(VeriDocError)
    def handle_veridoc_error(e):
        if e.status_code >= 500:
            logger.error(f"{type(e).__name__}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(RequestEntityTooLarge)
    def too_large(e):
        return jsonify({'error': f'File too large. Maximum size is {app.config["MAX_FILE_SIZE"] // (1024*1024)}MB'}), 413

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Endpoint not found'}), 404

    @app.errorhandler(500)
    def internal_error(e):
        logger.error(f"Internal server error: {str(e)}")
        return jsonify({'error': 'Internal server error'}), 500


if __name__ == '__main__':
    create_app().run(debug=env_bool('FLASK_DEBUG'),
                     host=os.environ.get('FLASK_HOST', '127.0.0.1'),
                     port=int(os.environ.get('FLASK_PORT', 5000)))
