"""VeriDoc: blockchain-backed certificate issuance and verification."""

__version__ = '0.1.0'
