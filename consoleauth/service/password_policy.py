from __future__ import annotations

import hmac
import secrets
import string
from typing import List, Optional

from consoleauth.service.errors import WeakPassword

MIN_PASSWORD_LENGTH = 12
SYMBOLS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"


class PasswordPolicy:
    """Complexity rules for new passwords."""

    def __init__(self, min_length: int = MIN_PASSWORD_LENGTH, symbols: str = SYMBOLS) -> None:
        self.min_length = min_length
        self.symbols = symbols

    def violations(
        self, new_password: str, current_password: Optional[str] = None
    ) -> List[str]:
        problems: List[str] = []
        if len(new_password) < self.min_length:
            problems.append(f"must be at least {self.min_length} characters")
        if not any(c.isupper() for c in new_password):
            problems.append("must contain an uppercase letter")
        if not any(c.islower() for c in new_password):
            problems.append("must contain a lowercase letter")
        if not any(c.isdigit() for c in new_password):
            problems.append("must contain a digit")
        if not any(c in self.symbols for c in new_password):
            problems.append("must contain a symbol")
        if current_password is not None and hmac.compare_digest(
            new_password.encode(), current_password.encode()
        ):
            problems.append("must differ from the current password")
        return problems

    def check(self, new_password: str, current_password: Optional[str] = None) -> None:
        problems = self.violations(new_password, current_password)
        if problems:
            raise WeakPassword(problems)

    def generate_temporary_password(self, length: int = 16) -> str:
        length = max(length, self.min_length)
        required = [
            secrets.choice(string.ascii_uppercase),
            secrets.choice(string.ascii_lowercase),
            secrets.choice(string.digits),
            secrets.choice(self.symbols),
        ]
        alphabet = string.ascii_letters + string.digits + self.symbols
        rest = [secrets.choice(alphabet) for _ in range(length - len(required))]
        chars = required + rest
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)
