import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

load_dotenv()


def parse_env_set(key, default=None):
    val = os.environ.get(key)
    if val is None:
        return default
    return set(v.strip() for v in val.split(',') if v.strip())


def parse_env_list(key, default=None):
    val = os.environ.get(key)
    if val is None:
        return default
    return [v.strip() for v in val.split(',') if v.strip()]


def env_bool(key, default=False):
    val = os.environ.get(key)
    if val is None:
        return default
    return val.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'a-super-secret-key-for-development')
    MAX_FILE_SIZE = int(os.environ.get('MAX_FILE_SIZE', 10 * 1024 * 1024))
    MAX_CONTENT_LENGTH = MAX_FILE_SIZE
    ALLOWED_DOCUMENT_EXTENSIONS = {'.pdf'}
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///veridoc.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    MAX_WORKERS = int(os.environ.get('MAX_WORKERS', 4))


# --- Network presets ---

DEFAULT_SEPOLIA_RPC_URLS = [
    'https://sepolia.drpc.org',
    'https://rpc.sepolia.org',
    'https://sepolia.gateway.tenderly.co',
    'https://ethereum-sepolia.publicnode.com',
]


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    chain_id: int
    rpc_urls: Tuple[str, ...]
    explorer_url: Optional[str] = None

    def tx_url(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_url or not tx_hash:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


def ganache_network(rpc_urls=None) -> NetworkConfig:
    return NetworkConfig(
        name='ganache',
        chain_id=1337,
        rpc_urls=tuple(rpc_urls or ['http://127.0.0.1:7545']),
    )


def sepolia_network(infura_api_key=None, rpc_urls=None) -> NetworkConfig:
    urls = list(rpc_urls or DEFAULT_SEPOLIA_RPC_URLS)
    if infura_api_key and not rpc_urls:
        urls.insert(0, f'https://sepolia.infura.io/v3/{infura_api_key}')
    return NetworkConfig(
        name='sepolia',
        chain_id=11155111,
        rpc_urls=tuple(urls),
        explorer_url='https://sepolia.etherscan.io/',
    )


def network_from_env() -> NetworkConfig:
    name = os.environ.get('NETWORK', 'ganache').strip().lower()
    rpc_urls = parse_env_list('RPC_URLS')
    if name == 'ganache':
        network = ganache_network(rpc_urls)
    elif name == 'sepolia':
        network = sepolia_network(os.environ.get('INFURA_API_KEY'), rpc_urls)
    else:
        if not rpc_urls or 'CHAIN_ID' not in os.environ:
            raise ValueError(f"Custom network '{name}' needs both RPC_URLS and CHAIN_ID")
        network = NetworkConfig(name=name, chain_id=int(os.environ['CHAIN_ID']),
                                rpc_urls=tuple(rpc_urls),
                                explorer_url=os.environ.get('EXPLORER_URL'))
    if 'CHAIN_ID' in os.environ and network.chain_id != int(os.environ['CHAIN_ID']):
        network = NetworkConfig(name=network.name, chain_id=int(os.environ['CHAIN_ID']),
                                rpc_urls=network.rpc_urls, explorer_url=network.explorer_url)
    return network


# --- Domain settings ---

DEFAULT_STOP_WORDS = frozenset({
    'a', 'an', 'and', 'the', 'of', 'in', 'on', 'for', 'to', 'by', 'with', 'at',
    'is', 'this', 'that', 'has', 'have', 'been', 'be', 'was', 'are',
    'certificate', 'certify', 'certifies', 'certified', 'hereby',
    'awarded', 'presented', 'successfully', 'completed', 'completion',
    'date', 'signature', 'signed', 'authorized', 'authorised',
})

DEFAULT_DOMAIN_KEYWORDS = (
    'certificate', 'university', 'college', 'institute', 'course', 'degree',
    'awarded', 'student', 'roll', 'completion', 'grade', 'semester',
)


@dataclass(frozen=True)
class FingerprintSettings:
    min_text_layer_chars: int = 50
    min_total_chars: int = 20
    ocr_confidence_threshold: float = 60.0
    raster_dpi: int = 300
    scale_factor: int = 1
    psm_mode: int = 3
    oem_mode: int = 3
    vision_base_confidence: float = 85.0
    confidence_weight: float = 0.6
    keyword_weight: float = 5.0
    length_weight: float = 20.0
    length_saturation: int = 500
    domain_keywords: Tuple[str, ...] = DEFAULT_DOMAIN_KEYWORDS
    stop_words: FrozenSet[str] = DEFAULT_STOP_WORDS
    max_workers: int = 4


@dataclass(frozen=True)
class QrSettings:
    size_px: int = 300
    box_size: int = 10
    border: int = 2
    rect_size_pt: float = 96.0
    margin_pt: float = 24.0
    scan_dpi: int = 200


@dataclass(frozen=True)
class ScoringWeights:
    database: int = 30
    chain: int = 30
    no_tamper: int = 20
    institution: int = 10
    metadata: int = 10
    fallback_penalty: int = 5


@dataclass(frozen=True)
class RetrySettings:
    attempts: int = 3
    base_delay: float = 1.0
    outbox_max_attempts: int = 5


@dataclass(frozen=True)
class VisionSettings:
    api_key: Optional[str] = None
    model: str = 'gemini-1.5-flash'
    timeout: float = 30.0
    prompt: str = ('Extract all visible text from this certificate image exactly as written. '
                   'Return plain text only, no commentary, no markdown.')

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


def default_users() -> Dict[str, Dict[str, str]]:
    # In a real deployment, override through VERIDOC_USERS.
    return {
        'institution_user': {
            'pw_hash': generate_password_hash('inst123'),
            'role': 'institution',
        },
        'verifier_user': {
            'pw_hash': generate_password_hash('ver123'),
            'role': 'verifier',
        },
    }


def users_from_env() -> Dict[str, Dict[str, str]]:
    """Parses ``VERIDOC_USERS`` as ``name:password:role`` entries separated by commas."""
    raw = parse_env_list('VERIDOC_USERS')
    if not raw:
        return default_users()
    users = {}
    for entry in raw:
        parts = entry.split(':')
        if len(parts) != 3:
            raise ValueError(f"Invalid VERIDOC_USERS entry: '{entry}'")
        name, password, role = parts
        users[name] = {'pw_hash': generate_password_hash(password), 'role': role}
    return users


@dataclass
class Settings:
    """Everything the services need, passed explicitly instead of module globals."""

    network: NetworkConfig = field(default_factory=ganache_network)
    contract_address: Optional[str] = None
    signer_private_key: Optional[str] = None
    abi_path: Optional[str] = None
    institution_name: str = 'VeriDoc Institution'
    authorized_institutions: FrozenSet[str] = frozenset()
    fingerprint: FingerprintSettings = field(default_factory=FingerprintSettings)
    qr: QrSettings = field(default_factory=QrSettings)
    scoring: ScoringWeights = field(default_factory=ScoringWeights)
    retry: RetrySettings = field(default_factory=RetrySettings)
    vision: VisionSettings = field(default_factory=VisionSettings)
    outbox_path: str = 'instance/certificate_outbox.json'
    users: Dict[str, Dict[str, str]] = field(default_factory=default_users)

    @classmethod
    def from_env(cls) -> 'Settings':
        fingerprint = FingerprintSettings(
            min_text_layer_chars=int(os.environ.get('MIN_TEXT_LAYER_CHARS', 50)),
            min_total_chars=int(os.environ.get('MIN_TOTAL_CHARS', 20)),
            ocr_confidence_threshold=float(os.environ.get('OCR_CONFIDENCE_THRESHOLD', 60.0)),
            raster_dpi=int(os.environ.get('RASTER_DPI', 300)),
            scale_factor=int(os.environ.get('DEFAULT_SCALE_FACTOR', 1)),
            psm_mode=int(os.environ.get('DEFAULT_PSM_MODE', 3)),
            oem_mode=int(os.environ.get('DEFAULT_OEM_MODE', 3)),
            stop_words=frozenset(w.casefold() for w in parse_env_set('STOP_WORDS', DEFAULT_STOP_WORDS)),
            domain_keywords=tuple(parse_env_list('DOMAIN_KEYWORDS', list(DEFAULT_DOMAIN_KEYWORDS))),
            max_workers=Config.MAX_WORKERS,
        )
        scoring = ScoringWeights(
            database=int(os.environ.get('SCORE_DATABASE', 30)),
            chain=int(os.environ.get('SCORE_CHAIN', 30)),
            no_tamper=int(os.environ.get('SCORE_NO_TAMPER', 20)),
            institution=int(os.environ.get('SCORE_INSTITUTION', 10)),
            metadata=int(os.environ.get('SCORE_METADATA', 10)),
            fallback_penalty=int(os.environ.get('SCORE_FALLBACK_PENALTY', 5)),
        )
        retry = RetrySettings(
            attempts=int(os.environ.get('DB_RETRY_ATTEMPTS', 3)),
            base_delay=float(os.environ.get('DB_RETRY_BASE_DELAY', 1.0)),
            outbox_max_attempts=int(os.environ.get('OUTBOX_MAX_ATTEMPTS', 5)),
        )
        vision = VisionSettings(
            api_key=os.environ.get('GEMINI_API_KEY') or None,
            model=os.environ.get('GEMINI_MODEL', 'gemini-1.5-flash'),
            timeout=float(os.environ.get('VISION_TIMEOUT', 30.0)),
        )
        authorized = parse_env_set('AUTHORIZED_INSTITUTIONS', set())
        return cls(
            network=network_from_env(),
            contract_address=os.environ.get('CONTRACT_ADDRESS'),
            signer_private_key=os.environ.get('SIGNER_PRIVATE_KEY'),
            abi_path=os.environ.get('ABI_PATH'),
            institution_name=os.environ.get('INSTITUTION_NAME', 'VeriDoc Institution'),
            authorized_institutions=frozenset(a.lower() for a in authorized),
            fingerprint=fingerprint,
            scoring=scoring,
            retry=retry,
            vision=vision,
            outbox_path=os.environ.get('OUTBOX_PATH', 'instance/certificate_outbox.json'),
            users=users_from_env(),
        )
