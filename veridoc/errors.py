"""Error taxonomy shared by the services and the HTTP layer."""
from typing import Any, Dict, Optional


class VeriDocError(Exception):
    """Base error. Carries a human-readable message and an HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.message}


class UploadError(VeriDocError):
    status_code = 400


class ExtractionError(VeriDocError):
    """Not enough text could be recovered from the document."""
    status_code = 422


class HashFormatError(VeriDocError):
    status_code = 400


class PersistenceError(VeriDocError):
    status_code = 503

    def __init__(self, message: str, conflict: bool = False, queued: bool = False):
        super().__init__(message, status_code=409 if conflict else None)
        self.conflict = conflict
        self.queued = queued

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['conflict'] = self.conflict
        data['queued'] = self.queued
        return data


class NotFoundError(VeriDocError):
    status_code = 404


class ChainError(VeriDocError):
    """Blockchain failure. ``kind`` is one of CHAIN_ERROR_KINDS."""

    status_code = 502

    def __init__(self, message: str, kind: str = 'rpc'):
        super().__init__(message, status_code=503 if kind == 'not_configured' else None)
        self.kind = kind

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['kind'] = self.kind
        return data


CHAIN_ERROR_KINDS = ('rpc', 'rejected', 'insufficient_funds', 'revert', 'not_configured')


class PartialIssuanceError(VeriDocError):
    """The certificate is registered on chain but its database record is missing."""

    status_code = 207

    def __init__(self, message: str, certificate_id: int, tx_hash: str,
                 certificate_hash: str, queued: bool):
        super().__init__(message)
        self.certificate_id = certificate_id
        self.tx_hash = tx_hash
        self.certificate_hash = certificate_hash
        self.queued = queued

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.message,
            'registered_on_chain': True,
            'database_saved': False,
            'queued': self.queued,
            'certificate_id': self.certificate_id,
            'transaction_hash': self.tx_hash,
            'certificate_hash': self.certificate_hash,
        }


class PartialRevocationError(VeriDocError):
    """The certificate is revoked on chain but the database still shows it as active."""

    status_code = 207

    def __init__(self, message: str, certificate_id: int, tx_hash: Optional[str]):
        super().__init__(message)
        self.certificate_id = certificate_id
        self.tx_hash = tx_hash

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.message,
            'revoked_on_chain': True,
            'database_saved': False,
            'certificate_id': self.certificate_id,
            'transaction_hash': self.tx_hash,
        }
