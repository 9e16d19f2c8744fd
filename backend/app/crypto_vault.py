from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time

import bcrypt
import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CryptoError

NONCE_SIZE = 12
BCRYPT_COST = 12

JWT_ISSUER = "me.yaml"
JWT_AUDIENCE = "view-access"
JWT_ALGORITHM = "HS256"
VIEW_ACCESS_TTL_SECONDS = 3600


def _derive_key(secret: str, purpose: str) -> bytes:
    return hashlib.sha256(f"{secret}:{purpose}".encode("utf-8")).digest()


class CryptoVault:
    """AES-256-GCM for provider keys, HMAC-SHA256 for bearer tokens, bcrypt for passwords."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("encryption secret is required")
        self._aead = AESGCM(_derive_key(secret, "encryption"))
        self._hmac_key = _derive_key(secret, "hmac")
        self._jwt_key = _derive_key(secret, "jwt")

    def encrypt(self, plaintext: bytes | str) -> str:
        if not plaintext:
            return ""
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, data, None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, blob: str) -> str:
        plaintext = self.decrypt_bytes(blob)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CryptoError("malformed", "plaintext is not UTF-8 text; use decrypt_bytes") from exc

    def decrypt_bytes(self, blob: str) -> bytes:
        if not blob:
            return b""
        try:
            raw = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise CryptoError("malformed", f"ciphertext is not valid base64: {exc}") from exc

        if len(raw) < NONCE_SIZE:
            raise CryptoError("malformed", "ciphertext too short")

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise CryptoError("tampered", "ciphertext failed authentication") from exc
        return plaintext

    def hmac_token(self, raw: str) -> str:
        digest = hmac.new(self._hmac_key, raw.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify_token(self, raw: str, stored_hmac: str) -> bool:
        if not raw or not stored_hmac:
            return False
        return hmac.compare_digest(self.hmac_token(raw), stored_hmac)

    @staticmethod
    def hash_password(password: str) -> str:
        hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_COST))
        return hashed.decode("utf-8")

    @staticmethod
    def check_password(password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            return False

    @staticmethod
    def random_token(n_bytes: int = 32) -> str:
        return secrets.token_urlsafe(n_bytes)

    def issue_view_access_token(self, view_id: str, *, ttl_seconds: int = VIEW_ACCESS_TTL_SECONDS) -> tuple[str, int]:
        now = int(time.time())
        expires_at = now + ttl_seconds
        claims = {
            "iss": JWT_ISSUER,
            "aud": JWT_AUDIENCE,
            "vid": view_id,
            "iat": now,
            "exp": expires_at,
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(claims, self._jwt_key, algorithm=JWT_ALGORITHM), expires_at

    def read_view_access_token(self, token: str) -> str | None:
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                self._jwt_key,
                algorithms=[JWT_ALGORITHM],
                audience=JWT_AUDIENCE,
                issuer=JWT_ISSUER,
                options={"require": ["exp", "iss", "aud", "vid"]},
            )
        except jwt.InvalidTokenError:
            return None

        view_id = claims.get("vid")
        if not isinstance(view_id, str) or not view_id:
            return None
        return view_id
