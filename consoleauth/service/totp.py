from __future__ import annotations

import base64
import binascii
import re
import time
from io import BytesIO
from typing import Optional

import pyotp
import qrcode
from qrcode.constants import ERROR_CORRECT_M
from qrcode.image.pil import PilImage

from consoleauth.logging import get_logger
from consoleauth.service.errors import SecretFormatInvalid

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
# One step either side of "now" tolerates +/-30s of clock drift
TOTP_VALID_WINDOW = 1
MIN_SECRET_BITS = 80
GENERATED_SECRET_LENGTH = 32  # base32 chars, 160 bits

_BASE32_RE = re.compile(r"^[A-Z2-7]+$")
_CODE_RE = re.compile(r"^[0-9]{6}$")


def is_totp_code(value: Optional[str]) -> bool:
    return bool(value) and bool(_CODE_RE.match(value))


class TOTPEngine:
    """RFC 6238 codes over 30-second steps, backed by pyotp.

    Stateless: any number of verifications can run in parallel.
    """

    def __init__(self, issuer: str = "Admin Console") -> None:
        self.issuer = issuer

    @staticmethod
    def generate_secret() -> str:
        return pyotp.random_base32(length=GENERATED_SECRET_LENGTH)

    @staticmethod
    def normalize_secret(secret: str) -> str:
        """Validate a caller-supplied secret and return its canonical form.

        Whitespace and trailing padding are ignored and case is folded. Anything
        that is not Base32, or carries less than 80 bits of key material, is
        rejected rather than padded or truncated.
        """
        if not isinstance(secret, str):
            raise SecretFormatInvalid("secret must be a base32 string")
        cleaned = "".join(secret.split()).upper().rstrip("=")
        if not cleaned or not _BASE32_RE.match(cleaned):
            raise SecretFormatInvalid("secret must be base32 (A-Z, 2-7)")
        if len(cleaned) * 5 < MIN_SECRET_BITS:
            raise SecretFormatInvalid(
                f"secret must carry at least {MIN_SECRET_BITS} bits",
                detail={"min_length": MIN_SECRET_BITS // 5},
            )
        padded = cleaned + "=" * (-len(cleaned) % 8)
        try:
            base64.b32decode(padded)
        except (binascii.Error, ValueError) as exc:
            # e.g. lengths such as 17 that no byte string encodes to
            raise SecretFormatInvalid("secret is not valid base32") from exc
        return cleaned

    @staticmethod
    def _totp(secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)

    def generate(self, secret: str, timestamp: Optional[float] = None) -> str:
        for_time = time.time() if timestamp is None else timestamp
        return self._totp(secret).at(int(for_time))

    def verify(
        self, secret: str, code: Optional[str], timestamp: Optional[float] = None
    ) -> bool:
        if not secret or not is_totp_code(code):
            return False
        for_time = time.time() if timestamp is None else timestamp
        try:
            # pyotp compares in constant time
            return self._totp(secret).verify(
                code, for_time=int(for_time), valid_window=TOTP_VALID_WINDOW
            )
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return False

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        return self._totp(secret).provisioning_uri(
            name=account_name, issuer_name=self.issuer
        )

    @staticmethod
    def qr_code_data_uri(uri: str, box_size: int = 10, border: int = 4) -> str:
        """Render ``uri`` as a PNG QR code embedded in a data URI."""
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECT_M,
            box_size=box_size,
            border=border,
        )
        qr.add_data(uri)
        qr.make(fit=True)
        image = qr.make_image(image_factory=PilImage)
        with BytesIO() as buffer:
            image.save(buffer, format="PNG")
            encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"
