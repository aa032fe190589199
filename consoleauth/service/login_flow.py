"""Admin console login as an explicit state machine.

A login starts in ``CREDENTIALS``. Valid credentials move it to exactly one
of ``FORCED_PASSWORD_CHANGE`` (temporary password, no session),
``TWO_FACTOR`` (MFA enabled, second factor still missing) or
``AUTHENTICATED`` (session issued). ``TWO_FACTOR`` keeps no server state: the
console re-posts the credentials together with the code, and any failure
drops the attempt back to ``CREDENTIALS``.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from consoleauth.logging import get_logger
from consoleauth.service.codec import ObfuscationCodec, ObfuscationError
from consoleauth.service.credentials import CredentialVerifier
from consoleauth.service.errors import (
    AccountBlocked,
    AuthenticationError,
    InvalidCredentials,
)
from consoleauth.service.mfa import MFALifecycle
from consoleauth.service.password_policy import PasswordPolicy
from consoleauth.service.sessions import SessionIssuer
from consoleauth.storage.memory import MemoryStore, normalize_email
from consoleauth.storage.models import Session, User

logger = get_logger(__name__)


class LoginState(str, Enum):
    CREDENTIALS = "credentials"
    TWO_FACTOR = "two_factor"
    FORCED_PASSWORD_CHANGE = "forced_password_change"
    AUTHENTICATED = "authenticated"


@dataclass
class LoginAttempt:
    email: str
    password: str
    secret_code: Optional[str] = None
    second_factor: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None


@dataclass
class LoginOutcome:
    state: LoginState
    user: Optional[User] = None
    session: Optional[Session] = None
    rotation_ticket: Optional[str] = None


class LoginStateMachine:
    def __init__(
        self,
        store: MemoryStore,
        codec: ObfuscationCodec,
        verifier: CredentialVerifier,
        mfa: MFALifecycle,
        sessions: SessionIssuer,
        policy: PasswordPolicy,
        *,
        secret_code: Optional[str] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.verifier = verifier
        self.mfa = mfa
        self.sessions = sessions
        self.policy = policy
        self.secret_code = secret_code

    def decode_email(self, attempt: LoginAttempt) -> Optional[str]:
        """Plain, normalized email of an attempt, or None if it does not decode."""
        try:
            return normalize_email(self.codec.decode(attempt.email))
        except (ObfuscationError, ValueError):
            return None

    def _decode(self, attempt: LoginAttempt) -> tuple[str, str]:
        try:
            return self.codec.decode(attempt.email), self.codec.decode(attempt.password)
        except (ObfuscationError, ValueError) as exc:
            logger.info("login_payload_undecodable")
            raise InvalidCredentials() from exc

    def _check_secret_code(self, submitted: Optional[str]) -> None:
        if not self.secret_code:
            return
        if not hmac.compare_digest(
            (submitted or "").encode(), self.secret_code.encode()
        ):
            logger.info("login_secret_code_mismatch")
            raise InvalidCredentials()

    async def submit(self, attempt: LoginAttempt) -> LoginOutcome:
        email, password = self._decode(attempt)
        self._check_secret_code(attempt.secret_code)
        user = self.verifier.verify(email, password)

        if user.must_change_password:
            ticket = await self.sessions.issue_rotation_ticket(user.id)
            logger.info("login_forced_password_change", user_id=user.id)
            return LoginOutcome(
                state=LoginState.FORCED_PASSWORD_CHANGE, user=user, rotation_ticket=ticket
            )

        cfg = self.store.get_user_mfa_secret(user.id)
        if cfg and cfg.enabled:
            if not attempt.second_factor:
                logger.info("login_second_factor_required", user_id=user.id)
                return LoginOutcome(state=LoginState.TWO_FACTOR, user=user)
            method = await self.mfa.verify_second_factor(user.id, attempt.second_factor)
            logger.info("login_second_factor_accepted", user_id=user.id, method=method)

        session = await self.sessions.issue(
            user, user_agent=attempt.user_agent, ip_addr=attempt.ip_addr
        )
        logger.info("login_succeeded", user_id=user.id)
        return LoginOutcome(state=LoginState.AUTHENTICATED, user=user, session=session)

    async def complete_password_rotation(
        self,
        current_password: str,
        new_password: str,
        *,
        user_id: Optional[str] = None,
        ticket: Optional[str] = None,
    ) -> LoginOutcome:
        """Replace the password and end every session of the identity.

        Either an authenticated ``user_id`` or a rotation ``ticket`` from a
        forced-change login identifies the account. The result always asks
        for a fresh login.
        """
        self.policy.check(new_password, current_password)
        if user_id is None:
            user_id = await self.sessions.redeem_rotation_ticket(ticket)
            if not user_id:
                raise AuthenticationError("rotation ticket is invalid or expired")
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("unknown identity")
        if user.is_blocked:
            raise AccountBlocked()

        new_hash, algo = self.verifier.hash_password(new_password)
        with self.store.identity_lock(user_id):
            if not self.verifier.verify_password_for(user_id, current_password):
                logger.info("password_change_current_mismatch", user_id=user_id)
                raise InvalidCredentials("current password is incorrect")
            self.store.save_password(user_id, new_hash, algo, clear_must_change=True)
        await self.sessions.revoke_all(user_id)
        logger.info("password_changed", user_id=user_id)
        return LoginOutcome(state=LoginState.CREDENTIALS, user=self.store.get_user(user_id))
