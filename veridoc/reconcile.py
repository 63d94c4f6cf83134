"""Reconciles the four verification signals into one verdict.

Signals: the hash recomputed from the document text (OCR hash), the hash
carried by the embedded QR code, the stored record found under either hash,
and the contract's ``verifyCertificate`` answer for that record's id.

The shape of the hash evidence is a small tagged union so every combination
is handled explicitly:

    OcrOnly       only the content hash could be computed
    QrOnly        only the QR code could be read
    BothAgree     both present and equal
    QrFallback    both present, different, and only the QR hash is on record
    BothDisagree  both present, different, and the QR hash is not on record

A stored record is authoritative over a raw OCR/QR mismatch: tampering is
reported only when the hashes disagree and neither one is on record.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

from web3 import Web3

from .config import ScoringWeights, Settings
from .errors import ChainError
from .models import IssuedCertificate
from .qr import QrPayload

logger = logging.getLogger(__name__)

MATCH_OCR = 'ocr'
MATCH_QR = 'qr'

CLOCK_SKEW = timedelta(minutes=5)


# --- Evidence shapes ---

@dataclass(frozen=True)
class OcrOnly:
    ocr_hash: str
    kind = 'ocr-only'


@dataclass(frozen=True)
class QrOnly:
    qr_hash: str
    kind = 'qr-only'


@dataclass(frozen=True)
class BothAgree:
    content_hash: str
    kind = 'both-agree'


@dataclass(frozen=True)
class QrFallback:
    ocr_hash: str
    qr_hash: str
    kind = 'qr-fallback'


@dataclass(frozen=True)
class BothDisagree:
    ocr_hash: str
    qr_hash: str
    kind = 'both-disagree'


Evidence = Union[OcrOnly, QrOnly, BothAgree, QrFallback, BothDisagree]


def classify_evidence(ocr_hash: Optional[str], qr_hash: Optional[str],
                      matched_via: Optional[str]) -> Optional[Evidence]:
    if ocr_hash and qr_hash:
        if ocr_hash == qr_hash:
            return BothAgree(ocr_hash)
        if matched_via == MATCH_QR:
            return QrFallback(ocr_hash, qr_hash)
        return BothDisagree(ocr_hash, qr_hash)
    if ocr_hash:
        return OcrOnly(ocr_hash)
    if qr_hash:
        return QrOnly(qr_hash)
    return None


@dataclass(frozen=True)
class EvidenceFlags:
    hashes_agree: bool
    via_qr: bool
    tampered: bool
    primary_hash: str


def evidence_flags(evidence: Evidence, record_found: bool) -> EvidenceFlags:
    if isinstance(evidence, OcrOnly):
        return EvidenceFlags(True, False, False, evidence.ocr_hash)
    if isinstance(evidence, QrOnly):
        return EvidenceFlags(True, True, False, evidence.qr_hash)
    if isinstance(evidence, BothAgree):
        return EvidenceFlags(True, False, False, evidence.content_hash)
    if isinstance(evidence, QrFallback):
        return EvidenceFlags(False, True, False, evidence.qr_hash)
    if isinstance(evidence, BothDisagree):
        return EvidenceFlags(False, False, not record_found, evidence.ocr_hash)
    raise TypeError(f"Unknown evidence shape: {evidence!r}")


# --- Verdict ---

VERIFIED = 'verified'
NO_CONTENT = 'no verifiable content'
TAMPERED = 'content tampered'
NOT_FOUND = 'not found in records'
REVOKED = 'revoked'
CHAIN_UNCONFIRMED = 'not confirmed on blockchain'
HASH_MISMATCH = 'hash mismatch'


@dataclass
class VerificationChecks:
    database_match: bool = False
    chain_match: bool = False
    no_tamper: bool = False
    institution_authorized: bool = False
    metadata_plausible: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            'database_match': self.database_match,
            'chain_match': self.chain_match,
            'no_tamper': self.no_tamper,
            'institution_authorized': self.institution_authorized,
            'metadata_plausible': self.metadata_plausible,
        }


@dataclass
class Verdict:
    is_valid: bool
    reason: str
    security_score: int
    checks: VerificationChecks
    evidence: Optional[Evidence] = None
    matched_via: Optional[str] = None
    tampered: bool = False
    revoked: bool = False
    ocr_hash: Optional[str] = None
    qr_hash: Optional[str] = None
    record: Optional[IssuedCertificate] = None
    qr_metadata: Dict[str, Any] = field(default_factory=dict)
    chain_error: Optional[str] = None

    @property
    def examined_hash(self) -> Optional[str]:
        if self.record is not None:
            return self.record.certificate_hash
        return self.ocr_hash or self.qr_hash

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'reason': self.reason,
            'security_score': self.security_score,
            'evidence': self.evidence.kind if self.evidence else None,
            'matched_via': self.matched_via,
            'tampered': self.tampered,
            'revoked': self.revoked,
            'ocr_hash': self.ocr_hash,
            'qr_hash': self.qr_hash,
            'checks': self.checks.to_dict(),
            'certificate': self.record.to_dict() if self.record is not None else None,
            'qr_metadata': self.qr_metadata,
            'chain_error': self.chain_error,
        }


def security_score(checks: VerificationChecks, via_qr: bool, weights: ScoringWeights) -> int:
    score = 0
    if checks.database_match:
        score += weights.database
    if checks.chain_match:
        score += weights.chain
    if checks.no_tamper:
        score += weights.no_tamper
    if checks.institution_authorized:
        score += weights.institution
    if checks.metadata_plausible:
        score += weights.metadata
    if via_qr and checks.database_match:
        score -= weights.fallback_penalty
    return max(0, min(100, score))


def metadata_plausible(record: IssuedCertificate, qr_metadata: Dict[str, Any],
                       now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    for value in (record.student_name, record.roll_number, record.course):
        if not value or not str(value).strip():
            return False
    if not record.institution_wallet or not Web3.is_address(record.institution_wallet):
        return False
    if record.issued_at and record.issued_at > now + CLOCK_SKEW:
        return False
    if 'certificate_id' in qr_metadata:
        try:
            if int(qr_metadata['certificate_id']) != int(record.certificate_id):
                return False
        except (TypeError, ValueError):
            return False
    return True


class Reconciler:
    """Combines store, chain and document evidence.

    ``chain`` needs ``verify_certificate(id)`` and ``owner()``; it may be None
    when the blockchain is not configured, in which case the chain check fails.
    """

    def __init__(self, store, chain, settings: Settings):
        self.store = store
        self.chain = chain
        self.settings = settings

    def lookup(self, ocr_hash: Optional[str], qr_hash: Optional[str]) -> Tuple[Optional[IssuedCertificate], Optional[str]]:
        if ocr_hash:
            record = self.store.find_by_hash(ocr_hash)
            if record is not None:
                return record, MATCH_OCR
        if qr_hash:
            record = self.store.find_by_hash(qr_hash)
            if record is not None:
                return record, MATCH_QR
        return None, None

    def check_chain(self, record: IssuedCertificate) -> Tuple[bool, Optional[str]]:
        if self.chain is None:
            return False, 'Blockchain is not configured'
        try:
            return self.chain.verify_certificate(record.certificate_id), None
        except ChainError as e:
            logger.error(f"Blockchain verification failed for certificate {record.certificate_id}: {e.message}")
            return False, e.message

    def institution_authorized(self, record: IssuedCertificate) -> bool:
        wallet = (record.institution_wallet or '').lower()
        if not wallet:
            return False
        if self.settings.authorized_institutions:
            return wallet in self.settings.authorized_institutions
        if self.chain is None:
            return False
        try:
            return wallet == str(self.chain.owner()).lower()
        except ChainError as e:
            logger.warning(f"Could not read contract owner: {e.message}")
            return False

    def reconcile(self, ocr_hash: Optional[str], qr_payload: Optional[QrPayload],
                  now: Optional[datetime] = None) -> Verdict:
        qr_hash = qr_payload.certificate_hash if qr_payload else None
        qr_metadata = dict(qr_payload.metadata) if qr_payload else {}

        record, matched_via = self.lookup(ocr_hash, qr_hash)
        evidence = classify_evidence(ocr_hash, qr_hash, matched_via)
        if evidence is None:
            return Verdict(is_valid=False, reason=NO_CONTENT, security_score=0, checks=VerificationChecks())

        flags = evidence_flags(evidence, record is not None)
        checks = VerificationChecks(database_match=record is not None, no_tamper=not flags.tampered)
        revoked = False
        chain_error = None

        if record is not None:
            revoked = bool(record.is_revoked)
            checks.chain_match, chain_error = self.check_chain(record)
            checks.institution_authorized = self.institution_authorized(record)
            checks.metadata_plausible = metadata_plausible(record, qr_metadata, now)

        is_valid = (checks.database_match and checks.chain_match and not revoked
                    and (flags.hashes_agree or flags.via_qr))

        if flags.tampered:
            reason = TAMPERED
        elif record is None:
            reason = NOT_FOUND
        elif revoked:
            reason = REVOKED
        elif not checks.chain_match:
            reason = CHAIN_UNCONFIRMED
        elif not is_valid:
            reason = HASH_MISMATCH
        else:
            reason = VERIFIED

        score = security_score(checks, flags.via_qr, self.settings.scoring)
        logger.info(f"Reconciled {evidence.kind}: valid={is_valid} reason='{reason}' score={score}")

        return Verdict(
            is_valid=is_valid,
            reason=reason,
            security_score=score,
            checks=checks,
            evidence=evidence,
            matched_via=matched_via,
            tampered=flags.tampered,
            revoked=revoked,
            ocr_hash=ocr_hash,
            qr_hash=qr_hash,
            record=record,
            qr_metadata=qr_metadata,
            chain_error=chain_error,
        )
