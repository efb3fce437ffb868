"""CertKeeper: certificate lifecycle engine for private PKI."""

__version__ = "1.0.0"
