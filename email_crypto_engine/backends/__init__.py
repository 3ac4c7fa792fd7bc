"""Crypto backend implementations."""
from .gnupg_backend import GnuPGBackend
from .smime_backend import SMIMEBackend

__all__ = ["GnuPGBackend", "SMIMEBackend"]
