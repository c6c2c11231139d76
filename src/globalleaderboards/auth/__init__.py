"""Auth module - secure API key storage."""

from .keychain import KeychainManager

__all__ = ["KeychainManager"]
