import os
import base64
import hashlib
import hmac
from typing import Optional
from nacl import secret, utils


def _derive_key(secret_key: str) -> bytes:
    return hashlib.sha256(secret_key.encode("utf-8")).digest()


def _box() -> secret.SecretBox:
    key_str = os.getenv("SECRET_KEY", "dev_secret_key_change_me")
    return secret.SecretBox(_derive_key(key_str))


def encrypt_text(plain: str) -> str:
    """Encrypt OAuth tokens before they are written to calendar_accounts."""
    box = _box()
    nonce = utils.random(secret.SecretBox.NONCE_SIZE)
    ct = box.encrypt(plain.encode("utf-8"), nonce)
    return base64.b64encode(ct).decode("utf-8")


def decrypt_text(enc_b64: str) -> Optional[str]:
    if not enc_b64:
        return None
    try:
        pt = _box().decrypt(base64.b64decode(enc_b64))
        return pt.decode("utf-8")
    except Exception:
        return None


def sign_state(value: str) -> str:
    """HMAC-sign an OAuth state value so the callback can trust the tenant id in it."""
    key = _derive_key(os.getenv("SECRET_KEY", "dev_secret_key_change_me"))
    mac = hmac.new(key, value.encode("utf-8"), hashlib.sha256).hexdigest()[:32]
    return f"{value}.{mac}"


def verify_state(state: str) -> Optional[str]:
    value, _, mac = (state or "").rpartition(".")
    if not value or not mac:
        return None
    expected = sign_state(value).rpartition(".")[2]
    return value if hmac.compare_digest(mac, expected) else None
