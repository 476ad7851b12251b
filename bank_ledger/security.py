"""
PIN Security

PINs are never stored in cleartext. Each PIN is hashed with scrypt under a
random per-account salt; the stored form records the cost so it can be
raised later without invalidating existing hashes.
"""

import hashlib
import hmac
import re
import secrets
from typing import Optional

from .config import get_config
from .errors import ValidationError

PIN_PATTERN = re.compile(r"\d{4}")
HASH_SCHEME = "scrypt"


def is_valid_pin(pin) -> bool:
    """True when pin is exactly 4 decimal digits"""
    return isinstance(pin, str) and PIN_PATTERN.fullmatch(pin) is not None


def validate_pin(pin, label: str = "PIN") -> str:
    """Return pin unchanged or raise ValidationError"""
    if not is_valid_pin(pin):
        raise ValidationError(f"{label} must be exactly 4 digits")
    return pin


class PinHasher:
    """Salted one-way PIN hashing with constant-time verification"""

    def __init__(self, n: Optional[int] = None, r: int = 8, p: int = 1):
        self.n = n or get_config().pin_hash_n
        self.r = r
        self.p = p

    def _derive(self, pin: str, salt: str, n: int) -> str:
        return hashlib.scrypt(
            pin.encode(),
            salt=salt.encode(),
            n=n, r=self.r, p=self.p
        ).hex()

    def hash(self, pin: str) -> str:
        """Hash a validated PIN, returning 'scrypt$<n>$<salt>$<digest>'"""
        validate_pin(pin)
        salt = secrets.token_hex(16)
        return f"{HASH_SCHEME}${self.n}${salt}${self._derive(pin, salt, self.n)}"

    def verify(self, pin: str, stored: str) -> bool:
        """Check a PIN against its stored hash"""
        if not is_valid_pin(pin) or not stored:
            return False
        try:
            scheme, n, salt, digest = stored.split("$")
            if scheme != HASH_SCHEME:
                return False
            # scrypt rejects a cost that is not a power of two
            return hmac.compare_digest(self._derive(pin, salt, int(n)), digest)
        except (ValueError, OverflowError, TypeError):
            return False
