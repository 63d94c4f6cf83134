import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def uid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IssuedCertificate(db.Model):
    __tablename__ = 'issued_certificates'

    id = db.Column(db.String(36), primary_key=True, default=uid)

    student_name = db.Column(db.String(255), nullable=False)
    roll_number = db.Column(db.String(100), nullable=False)
    course = db.Column(db.String(255), nullable=False)
    certificate_id = db.Column(db.BigInteger, unique=True, nullable=False, index=True)
    certificate_hash = db.Column(db.String(66), unique=True, nullable=False, index=True)
    institution_wallet = db.Column(db.String(42), nullable=False)
    blockchain_tx_hash = db.Column(db.String(66))

    is_revoked = db.Column(db.Boolean, nullable=False, default=False)
    issued_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    revoked_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'student_name': self.student_name,
            'roll_number': self.roll_number,
            'course': self.course,
            'certificate_id': self.certificate_id,
            'certificate_hash': self.certificate_hash,
            'institution_wallet': self.institution_wallet,
            'blockchain_tx_hash': self.blockchain_tx_hash,
            'is_revoked': self.is_revoked,
            'issued_at': self.issued_at.isoformat() if self.issued_at else None,
            'revoked_at': self.revoked_at.isoformat() if self.revoked_at else None,
        }


class VerificationLog(db.Model):
    __tablename__ = 'verification_logs'

    id = db.Column(db.String(36), primary_key=True, default=uid)
    certificate_hash = db.Column(db.String(66), nullable=False, index=True)
    verifier_wallet = db.Column(db.String(42), index=True)
    result = db.Column(db.Boolean, nullable=False)
    details = db.Column(db.JSON)
    blockchain_tx_hash = db.Column(db.String(66))
    verified_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'certificate_hash': self.certificate_hash,
            'verifier_wallet': self.verifier_wallet,
            'result': self.result,
            'details': self.details,
            'blockchain_tx_hash': self.blockchain_tx_hash,
            'verified_at': self.verified_at.isoformat() if self.verified_at else None,
        }
