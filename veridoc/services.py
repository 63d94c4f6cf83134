import logging
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Dict, Optional

from web3 import Web3

from .chain import ChainClient, IssueReceipt
from .config import Settings
from .errors import (ChainError, ExtractionError, NotFoundError, PartialIssuanceError, PartialRevocationError,
                     PersistenceError, UploadError)
from .fingerprint import Fingerprint, Fingerprinter
from .models import IssuedCertificate, utcnow
from .qr import QrDecoder, QrPayload, extract_qr, stamp_certificate
from .reconcile import Reconciler, Verdict
from .store import CertificateStore

logger = logging.getLogger(__name__)


@dataclass
class IssuanceResult:
    record: IssuedCertificate
    receipt: IssueReceipt
    fingerprint: Fingerprint
    stamped_pdf: Optional[bytes] = None
    stamp_error: Optional[str] = None


@dataclass
class VerificationResult:
    verdict: Verdict
    fingerprint: Optional[Fingerprint] = None
    qr_payload: Optional[QrPayload] = None
    extraction_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.verdict.to_dict()
        data['fingerprint'] = self.fingerprint.to_dict() if self.fingerprint else None
        data['extraction_error'] = self.extraction_error
        return data


def require_fields(**fields) -> Dict[str, str]:
    cleaned = {k: (v or '').strip() for k, v in fields.items()}
    missing = [k for k, v in cleaned.items() if not v]
    if missing:
        raise UploadError(f"Missing required fields: {', '.join(missing)}")
    return cleaned


class IssuanceService:

    def __init__(self, settings: Settings, store: CertificateStore, chain: Optional[ChainClient],
                 fingerprinter: Fingerprinter):
        self.settings = settings
        self.store = store
        self.chain = chain
        self.fingerprinter = fingerprinter

    def _require_chain(self) -> ChainClient:
        if self.chain is None:
            raise ChainError('Blockchain is not configured or connected.', kind='not_configured')
        return self.chain

    def issue(self, pdf_bytes: bytes, student_name: str, roll_number: str, course: str,
              recipient_wallet: str, institution: Optional[str] = None) -> IssuanceResult:
        form = require_fields(student_name=student_name, roll_number=roll_number, course=course,
                              recipient_wallet=recipient_wallet)
        if not Web3.is_address(form['recipient_wallet']):
            raise UploadError(f"Invalid recipient wallet address: '{form['recipient_wallet']}'")
        institution = (institution or '').strip() or self.settings.institution_name
        chain = self._require_chain()

        fingerprint = self.fingerprinter.fingerprint(pdf_bytes)
        certificate_hash = fingerprint.content_hash
        logger.info(f"Fingerprinted upload via {fingerprint.method}: {certificate_hash}")

        if self.store.find_by_hash(certificate_hash) is not None:
            raise PersistenceError('This certificate is already registered', conflict=True)

        issued_at = utcnow()
        receipt = chain.issue_certificate(
            recipient=form['recipient_wallet'],
            name=form['student_name'],
            course=form['course'],
            institution=institution,
            date_issued=int(issued_at.replace(tzinfo=timezone.utc).timestamp()),
        )
        logger.info(f"Certificate {receipt.certificate_id} issued on-chain in {receipt.tx_hash}")

        data = {
            'student_name': form['student_name'],
            'roll_number': form['roll_number'],
            'course': form['course'],
            'certificate_id': receipt.certificate_id,
            'certificate_hash': certificate_hash,
            'institution_wallet': chain.signer.address,
            'blockchain_tx_hash': receipt.tx_hash,
            'issued_at': issued_at,
        }
        try:
            record = self.store.insert_certificate(data)
        except PersistenceError as e:
            logger.error(f"Certificate {receipt.certificate_id} registered on-chain but not saved: {e.message}")
            raise PartialIssuanceError(
                'Certificate issued on blockchain but failed to save metadata'
                + ('; the record is queued for retry.' if e.queued else '.'),
                certificate_id=receipt.certificate_id,
                tx_hash=receipt.tx_hash,
                certificate_hash=certificate_hash,
                queued=e.queued,
            ) from e

        result = IssuanceResult(record=record, receipt=receipt, fingerprint=fingerprint)
        metadata = {
            'certificate_id': receipt.certificate_id,
            'student': form['student_name'],
            'course': form['course'],
            'issued_at': issued_at.isoformat(),
        }
        try:
            result.stamped_pdf = stamp_certificate(pdf_bytes, certificate_hash, metadata, self.settings.qr)
        except Exception as e:
            logger.error(f"Could not embed QR code into certificate {receipt.certificate_id}: {e}")
            result.stamp_error = str(e)
        return result

    def revoke(self, certificate_id: int):
        record = self.store.find_by_id(certificate_id)
        if record is None:
            raise NotFoundError(f"Certificate {certificate_id} not found")
        if record.is_revoked:
            raise PersistenceError(f"Certificate {certificate_id} is already revoked", conflict=True)

        chain = self._require_chain()
        tx_hash = None
        if chain.verify_certificate(certificate_id):
            tx_hash = chain.revoke_certificate(certificate_id)
            logger.info(f"Certificate {certificate_id} revoked on-chain in {tx_hash}")
        else:
            # Already invalid on chain, e.g. after an earlier attempt whose commit failed.
            logger.info(f"Certificate {certificate_id} is already invalid on-chain, updating the record only")

        try:
            return self.store.mark_revoked(certificate_id), tx_hash
        except PersistenceError as e:
            if e.conflict:
                raise
            logger.error(f"Certificate {certificate_id} revoked on-chain but not saved: {e.message}")
            raise PartialRevocationError(
                'Certificate revoked on blockchain but failed to update the record; retry the revocation.',
                certificate_id=certificate_id,
                tx_hash=tx_hash,
            ) from e


class VerificationService:

    def __init__(self, settings: Settings, store: CertificateStore, reconciler: Reconciler,
                 fingerprinter: Fingerprinter, qr_decoder: Optional[QrDecoder] = None):
        self.settings = settings
        self.store = store
        self.reconciler = reconciler
        self.fingerprinter = fingerprinter
        self.qr_decoder = qr_decoder

    def verify(self, pdf_bytes: bytes, verifier_wallet: Optional[str] = None) -> VerificationResult:
        verifier_wallet = (verifier_wallet or '').strip() or None
        if verifier_wallet and not Web3.is_address(verifier_wallet):
            raise UploadError(f"Invalid verifier wallet address: '{verifier_wallet}'")

        fingerprint = None
        extraction_error = None
        try:
            fingerprint = self.fingerprinter.fingerprint(pdf_bytes)
        except ExtractionError as e:
            logger.warning(f"Content hash unavailable: {e.message}")
            extraction_error = e

        try:
            qr_payload = extract_qr(pdf_bytes, self.settings.qr, self.qr_decoder)
        except ExtractionError as e:
            logger.warning(f"QR scan unavailable: {e.message}")
            qr_payload = None

        ocr_hash = fingerprint.content_hash if fingerprint else None
        verdict = self.reconciler.reconcile(ocr_hash, qr_payload)
        result = VerificationResult(
            verdict=verdict,
            fingerprint=fingerprint,
            qr_payload=qr_payload,
            extraction_error=extraction_error.message if extraction_error else None,
        )

        record_tx = verdict.record.blockchain_tx_hash if verdict.record is not None else None
        try:
            self.store.log_verification(
                certificate_hash=verdict.examined_hash or '',
                verifier_wallet=verifier_wallet,
                result=verdict.is_valid,
                details=result.to_dict(),
                blockchain_tx_hash=record_tx,
            )
        except PersistenceError as e:
            logger.warning(f"Failed to log verification, continuing: {e.message}")

        if ocr_hash is None and qr_payload is None:
            raise extraction_error or ExtractionError('No content hash or QR code could be recovered')
        return result
