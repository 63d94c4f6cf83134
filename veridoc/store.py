import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .config import RetrySettings
from .errors import NotFoundError, PersistenceError
from .hashing import hash_variants, normalize_hash
from .models import IssuedCertificate, VerificationLog, db, utcnow
from .outbox import Outbox

logger = logging.getLogger(__name__)

CERTIFICATE_FIELDS = (
    'student_name', 'roll_number', 'course', 'certificate_id', 'certificate_hash',
    'institution_wallet', 'blockchain_tx_hash', 'issued_at',
)


class CertificateStore:
    """Row-level access to certificate records and verification logs."""

    def __init__(self, retry: Optional[RetrySettings] = None, outbox: Optional[Outbox] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.retry = retry or RetrySettings()
        self.outbox = outbox
        self.sleep = sleep

    # --- Certificates ---

    def _build_record(self, data: Dict[str, Any]) -> IssuedCertificate:
        fields = {k: data[k] for k in CERTIFICATE_FIELDS if data.get(k) is not None}
        fields['certificate_hash'] = normalize_hash(fields['certificate_hash'])
        fields['certificate_id'] = int(fields['certificate_id'])
        if isinstance(fields.get('issued_at'), str):
            fields['issued_at'] = datetime.fromisoformat(fields['issued_at'])
        return IssuedCertificate(**fields)

    def _insert_once(self, data: Dict[str, Any]) -> IssuedCertificate:
        record = self._build_record(data)
        try:
            db.session.add(record)
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            logger.error(f"Certificate insert conflict: {e.orig}")
            raise PersistenceError('A certificate with this hash or id is already registered', conflict=True) from e
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return record

    def insert_certificate(self, data: Dict[str, Any], queue_on_failure: bool = True) -> IssuedCertificate:
        """Inserts with exponential backoff; conflicts are not retried.

        When every attempt fails the record is handed to the outbox and a
        PersistenceError with ``queued=True`` is raised.
        """
        last_error = None
        for attempt in range(1, self.retry.attempts + 1):
            try:
                return self._insert_once(data)
            except SQLAlchemyError as e:
                last_error = e
                logger.warning(f"Database save attempt {attempt} failed: {e}")
                if attempt < self.retry.attempts:
                    self.sleep(self.retry.base_delay * 2 ** (attempt - 1))

        queued = False
        if queue_on_failure and self.outbox is not None:
            try:
                self.outbox.enqueue(serialize_record(data), error=str(last_error))
                queued = True
            except (OSError, ValueError) as e:
                logger.error(f"Could not queue certificate {data.get('certificate_id')} for retry: {e}")
        raise PersistenceError(f"Database unavailable after {self.retry.attempts} attempts: {last_error}",
                               queued=queued)

    def deliver_queued(self, data: Dict[str, Any]) -> None:
        """Single-attempt insert used when replaying the outbox."""
        try:
            self._insert_once(data)
        except PersistenceError as e:
            if e.conflict and self.find_by_hash(data['certificate_hash']) is not None:
                logger.info(f"Queued certificate {data.get('certificate_id')} was already stored")
                return
            raise

    def flush_outbox(self) -> Dict[str, int]:
        if self.outbox is None:
            return {'processed': 0, 'remaining': 0, 'dropped': 0}
        return self.outbox.flush(self.deliver_queued)

    def find_by_hash(self, certificate_hash: str) -> Optional[IssuedCertificate]:
        """Matches the stored hash whether it was saved bare or 0x-prefixed."""
        variants = hash_variants(certificate_hash)
        try:
            return IssuedCertificate.query.filter(IssuedCertificate.certificate_hash.in_(variants)).first()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f"Certificate lookup failed: {e}") from e

    def find_by_id(self, certificate_id: int) -> Optional[IssuedCertificate]:
        try:
            return IssuedCertificate.query.filter_by(certificate_id=int(certificate_id)).first()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f"Certificate lookup failed: {e}") from e

    def mark_revoked(self, certificate_id: int) -> IssuedCertificate:
        record = self.find_by_id(certificate_id)
        if record is None:
            raise NotFoundError(f"Certificate {certificate_id} not found")
        if record.is_revoked:
            raise PersistenceError(f"Certificate {certificate_id} is already revoked", conflict=True)
        record.is_revoked = True
        record.revoked_at = utcnow()
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f"Could not save revocation: {e}") from e
        return record

    # --- Verification logs ---

    def log_verification(self, certificate_hash: str, verifier_wallet: Optional[str], result: bool,
                         details: Optional[Dict[str, Any]] = None,
                         blockchain_tx_hash: Optional[str] = None) -> VerificationLog:
        entry = VerificationLog(
            certificate_hash=certificate_hash,
            verifier_wallet=verifier_wallet,
            result=result,
            details=details,
            blockchain_tx_hash=blockchain_tx_hash,
        )
        try:
            db.session.add(entry)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f"Could not save verification log: {e}") from e
        return entry

    def list_logs(self, certificate_hash: Optional[str] = None, limit: int = 100) -> List[VerificationLog]:
        query = VerificationLog.query
        if certificate_hash:
            query = query.filter(VerificationLog.certificate_hash.in_(hash_variants(certificate_hash)))
        return query.order_by(VerificationLog.verified_at.desc()).limit(limit).all()


def serialize_record(data: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key in CERTIFICATE_FIELDS:
        value = data.get(key)
        if isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out
