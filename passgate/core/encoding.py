import base64
import binascii
import hashlib
import re
import secrets
import string
from typing import Optional, Sequence, Union

_BASE64URL_RE = re.compile(r"^[A-Za-z0-9_-]*={0,2}$")


class EncodingUtils:
    """
    Binary helpers shared by the ceremony code. Every WebAuthn binary field
    crosses the wire as unpadded base64url, in both directions.
    """

    @staticmethod
    def base64url_encode(data: bytes) -> str:
        """
        Encodes bytes to a base64url string without padding.
        """
        return base64.urlsafe_b64encode(data).rstrip(b'=').decode('utf-8')

    @staticmethod
    def base64url_decode(data: Union[str, bytes]) -> bytes:
        """
        Decodes a base64url string (padding optional) to bytes.
        Standard base64 characters ('+', '/') are rejected instead of being
        silently skipped.
        """
        if isinstance(data, bytes):
            data = data.decode('ascii', errors='strict')
        if not isinstance(data, str) or not _BASE64URL_RE.match(data):
            raise ValueError("Value is not base64url encoded.")
        data = data.rstrip('=')
        padding = '=' * (-len(data) % 4)
        try:
            return base64.urlsafe_b64decode(data + padding)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64url value: {e}")

    @staticmethod
    def gen_random_string(length: int = 8, symbol_set: Optional[Sequence] = None):
        """
        Generates a cryptographically secure random string.
        """
        symbol_set = (string.ascii_letters + string.digits) if symbol_set is None else symbol_set
        return ''.join(secrets.choice(symbol_set) for _ in range(length))

    @staticmethod
    def gen_random_bytes(length: int = 32) -> bytes:
        return secrets.token_bytes(length)

    def user_handle(self, user_id: str) -> bytes:
        """
        One-way handle placed in WebAuthn user entities so the internal id
        format never reaches the authenticator.
        """
        return hashlib.sha256(str(user_id).encode('utf-8')).digest()

    def short_id(self, credential_id: Union[bytes, str, None], length: int = 8) -> str:
        """Truncated credential id for logs and audit details."""
        if credential_id is None:
            return "unknown"
        if isinstance(credential_id, bytes):
            credential_id = self.base64url_encode(credential_id)
        return credential_id[:length] + "..."

    @staticmethod
    def fingerprint(value: Optional[str]) -> str:
        """Hex SHA-256 of a request attribute (user agent) used as binding context."""
        return hashlib.sha256((value or "").encode('utf-8')).hexdigest()


encoding_utils = EncodingUtils()
