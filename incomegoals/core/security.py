from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from incomegoals.core.config import settings
import logging

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "ig_session"


def get_cipher():
    """Get Fernet cipher instance for encryption/decryption"""
    key = settings.session_encryption_key.encode()
    return Fernet(key)


def encrypt_session_token(refresh_token: str) -> str:
    """Encrypt a refresh token before it is placed in the session cookie"""
    logger.info("encrypt_session_token: Entry")

    try:
        cipher = get_cipher()
        encrypted = cipher.encrypt(refresh_token.encode())
        logger.info("encrypt_session_token: Success")
        return encrypted.decode()
    except Exception as e:
        logger.error(f"encrypt_session_token: Failure - {e}")
        raise


def decrypt_session_token(encrypted_token: str) -> Optional[str]:
    """Decrypt the session cookie. Returns None for tampered or foreign cookies."""
    logger.info("decrypt_session_token: Entry")

    try:
        cipher = get_cipher()
        decrypted = cipher.decrypt(encrypted_token.encode())
        logger.info("decrypt_session_token: Success")
        return decrypted.decode()
    except InvalidToken:
        logger.warning("decrypt_session_token: Invalid session cookie")
        return None
    except Exception as e:
        logger.error(f"decrypt_session_token: Failure - {e}")
        raise
