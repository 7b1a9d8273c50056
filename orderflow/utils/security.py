# orderflow/utils/security.py
import hashlib
import hmac
from typing import Optional, Union

def sign(secret: str, message: Union[str, bytes]) -> str:
    """HMAC-SHA256 hex digest of `message` under `secret`"""
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()

def payment_signature(secret: str, external_order_id: str, external_payment_id: str) -> str:
    """Signature the gateway attaches to a checkout callback"""
    return sign(secret, f"{external_order_id}|{external_payment_id}")

def verify_signature(secret: str, message: Union[str, bytes], signature: Optional[str]) -> bool:
    """Constant-time check of `signature` against `message`"""
    if not secret or not signature:
        return False
    expected = sign(secret, message)
    return hmac.compare_digest(expected, signature)

def verify_payment_signature(secret: str, external_order_id: str,
                             external_payment_id: str, signature: Optional[str]) -> bool:
    return verify_signature(secret, f"{external_order_id}|{external_payment_id}", signature)
