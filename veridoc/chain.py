import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.logs import DISCARD

from .config import NetworkConfig, Settings
from .errors import ChainError

logger = logging.getLogger(__name__)

DEFAULT_ABI_PATH = os.path.join(os.path.dirname(__file__), 'abi', 'CertificateContract.json')
ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
GAS_MARGIN = 1.2


@dataclass
class OnChainCertificate:
    id: int
    recipient: str
    name: str
    course: str
    institution: str
    date_issued: int
    is_valid: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'recipient': self.recipient,
            'name': self.name,
            'course': self.course,
            'institution': self.institution,
            'date_issued': self.date_issued,
            'is_valid': self.is_valid,
        }


@dataclass
class IssueReceipt:
    certificate_id: int
    tx_hash: str
    block_number: int


def load_abi(path: Optional[str] = None) -> List[Dict[str, Any]]:
    path = path or DEFAULT_ABI_PATH
    with open(path) as f:
        data = json.load(f)
    return data['abi'] if isinstance(data, dict) else data


def classify_chain_error(exc: Exception, action: str) -> ChainError:
    """Maps a web3/RPC failure onto the ChainError kinds."""
    if isinstance(exc, ChainError):
        return exc
    message = str(exc)
    lowered = message.lower()
    if isinstance(exc, ContractLogicError) or 'revert' in lowered:
        kind = 'revert'
    elif 'insufficient funds' in lowered:
        kind = 'insufficient_funds'
    elif any(s in lowered for s in ('rejected', 'denied', 'nonce too low', 'underpriced')):
        kind = 'rejected'
    else:
        kind = 'rpc'
    return ChainError(f"Blockchain {action} failed: {message}", kind=kind)


def connect_web3(network: NetworkConfig) -> Web3:
    """Returns a Web3 instance for the first reachable RPC URL of the network."""
    for url in network.rpc_urls:
        try:
            w3 = Web3(Web3.HTTPProvider(url))
            if w3.is_connected():
                logger.info(f"Connected to {network.name} via {url}")
                return w3
            logger.warning(f"RPC endpoint {url} is not reachable")
        except Exception as e:
            logger.warning(f"RPC endpoint {url} failed: {e}")
    raise ChainError(f"Could not connect to any {network.name} RPC endpoint", kind='rpc')


class ChainClient:
    """Certificate contract access. Transactions are signed with the configured key."""

    def __init__(self, w3: Web3, contract, network: NetworkConfig, private_key: Optional[str] = None):
        self.w3 = w3
        self.contract = contract
        self.network = network
        self._private_key = private_key
        self.signer = w3.eth.account.from_key(private_key) if private_key else None

    @classmethod
    def connect(cls, settings: Settings) -> 'ChainClient':
        address = settings.contract_address
        if not address or address.lower() == ZERO_ADDRESS:
            raise ChainError('Contract address is not configured. Deploy the contract and set CONTRACT_ADDRESS.',
                             kind='not_configured')

        w3 = connect_web3(settings.network)
        chain_id = w3.eth.chain_id
        if chain_id != settings.network.chain_id:
            raise ChainError(
                f"Connected to chain {chain_id}, expected {settings.network.name} ({settings.network.chain_id})",
                kind='rpc')

        try:
            abi = load_abi(settings.abi_path)
        except FileNotFoundError as e:
            raise ChainError(f"Contract ABI file not found at: {settings.abi_path}", kind='not_configured') from e

        checksum = Web3.to_checksum_address(address)
        if w3.eth.get_code(checksum) in (b'', None):
            raise ChainError(f"Certificate contract not found at address {checksum} on {settings.network.name}",
                             kind='not_configured')

        client = cls(w3, w3.eth.contract(address=checksum, abi=abi), settings.network,
                     settings.signer_private_key)
        if client.signer and client.signer.address.lower() == checksum.lower():
            raise ChainError('Contract address cannot be the same as the signer address', kind='not_configured')
        return client

    # --- Reads ---

    def _call(self, action: str, fn):
        try:
            return fn.call()
        except Exception as e:
            error = classify_chain_error(e, action)
            logger.error(error.message)
            raise error from e

    def verify_certificate(self, certificate_id: int) -> bool:
        return bool(self._call('verify', self.contract.functions.verifyCertificate(int(certificate_id))))

    def get_certificate(self, certificate_id: int) -> OnChainCertificate:
        raw = self._call('lookup', self.contract.functions.getCertificate(int(certificate_id)))
        return OnChainCertificate(
            id=int(raw[0]),
            recipient=raw[1],
            name=raw[2],
            course=raw[3],
            institution=raw[4],
            date_issued=int(raw[5]),
            is_valid=bool(raw[6]),
        )

    def get_total_certificates(self) -> int:
        return int(self._call('total count', self.contract.functions.getTotalCertificates()))

    def owner(self) -> str:
        return self._call('owner lookup', self.contract.functions.owner())

    def status(self) -> Dict[str, Any]:
        try:
            block_number = self.w3.eth.block_number
        except Exception as e:
            raise classify_chain_error(e, 'status') from e
        return {
            'network': self.network.name,
            'chain_id': self.network.chain_id,
            'block_number': block_number,
            'contract_address': self.contract.address,
            'total_certificates': self.get_total_certificates(),
            'owner': self.owner(),
            'signer': self.signer.address if self.signer else None,
        }

    # --- Writes ---

    def _transact(self, action: str, fn) -> Any:
        if not self.signer:
            raise ChainError('No signer key configured (SIGNER_PRIVATE_KEY)', kind='not_configured')

        try:
            gas = int(fn.estimate_gas({'from': self.signer.address}) * GAS_MARGIN)
            tx_data = {
                'from': self.signer.address,
                'nonce': self.w3.eth.get_transaction_count(self.signer.address),
                'gas': gas,
                'gasPrice': self.w3.eth.gas_price,
                'chainId': self.network.chain_id,
            }
            transaction = fn.build_transaction(tx_data)
            signed_txn = self.w3.eth.account.sign_transaction(transaction, private_key=self._private_key)
            tx_hash = self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)
            tx_receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash)
        except TimeExhausted as e:
            raise ChainError(f"Blockchain {action} was not confirmed in time", kind='rpc') from e
        except Exception as e:
            error = classify_chain_error(e, action)
            logger.error(error.message)
            raise error from e

        if tx_receipt['status'] != 1:
            raise ChainError(f"Blockchain {action} transaction reverted", kind='revert')

        logger.info(f"{action.capitalize()} confirmed on-chain. Tx hash: {Web3.to_hex(tx_receipt['transactionHash'])}")
        return tx_receipt

    def issue_certificate(self, recipient: str, name: str, course: str, institution: str,
                          date_issued: int) -> IssueReceipt:
        fn = self.contract.functions.issueCertificate(
            Web3.to_checksum_address(recipient), name, course, institution, int(date_issued))
        receipt = self._transact('issuance', fn)

        events = self.contract.events.CertificateIssued().process_receipt(receipt, errors=DISCARD)
        if not events:
            raise ChainError('Issuance transaction did not emit CertificateIssued', kind='rpc')

        return IssueReceipt(
            certificate_id=int(events[0]['args']['certificateId']),
            tx_hash=Web3.to_hex(receipt['transactionHash']),
            block_number=receipt['blockNumber'],
        )

    def revoke_certificate(self, certificate_id: int) -> str:
        receipt = self._transact('revocation', self.contract.functions.revokeCertificate(int(certificate_id)))
        return Web3.to_hex(receipt['transactionHash'])
