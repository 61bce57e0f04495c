"""
auth/mfa.py -- TOTP multi-factor enrollment and backup codes.

Implements RFC 6238 TOTP compatible with Google Authenticator, Authy and
other authenticator apps.

Enrollment is a two-phase state machine over auth.models.MFAEnrollment:

    MFAAbsent --begin_setup--> MFAPending --confirm_setup--> MFAConfirmed
                                  ^   |                           |
                                  +---+ (begin_setup again)       |
    MFAAbsent <------------------------ disable ------------------+

  - begin_setup() on a confirmed enrollment fails with MFAAlreadyEnabled. A
    hijacked session must not be able to swap out the victim's second factor
    without first passing disable(), which demands the password.
  - A pending enrollment may be overwritten by a new begin_setup().
  - Wrong codes during confirm_setup() leave the enrollment pending. Lockout
    belongs to the rate limiter, not here.

Backup codes:
  Ten XXXX-XXXX hex codes are generated per setup. Only
  HMAC-SHA256(SECRET_KEY, salt + code) is stored, with a random salt per code;
  the plaintext list is returned once from begin_setup() and is never
  retrievable again. Consumption is a conditional UPDATE in the credential
  store, so concurrent use of one code has exactly one winner.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from io import BytesIO

import pyotp
import qrcode

from auth.models import BackupCode, MFAAbsent, MFAConfirmed, MFAPending, User
from auth.passwords import verify_password
from auth.store import UserStore
from core.config import Settings
from core.errors import Conflict, InvalidCode, InvalidCredentials, InvalidOrUsed, MFAAlreadyEnabled, ValidationFailed

logger = logging.getLogger("spendtracker.mfa")

TOTP_PATTERN = re.compile(r"^\d{6}$")
BACKUP_CODE_PATTERN = re.compile(r"^[0-9A-F]{4}-[0-9A-F]{4}$")


@dataclass(frozen=True)
class MFASetup:
    """Everything the user needs to enroll. Shown once."""

    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64,...
    backup_codes: list[str]


@dataclass(frozen=True)
class MFAStatus:
    enabled: bool
    has_secret: bool
    remaining_backup_codes: int


# ---------------------------------------------------------------------------
# Backup code helpers
# ---------------------------------------------------------------------------


def generate_backup_code() -> str:
    """Return a fresh code in XXXX-XXXX form (32 random bits, hex)."""
    raw = secrets.token_hex(4).upper()
    return f"{raw[:4]}-{raw[4:]}"


def normalize_backup_code(code: str) -> str | None:
    """Canonicalize user input to XXXX-XXXX, or None if it cannot be a backup code.

    Accepts lower case, surrounding whitespace and a missing dash.
    """
    cleaned = re.sub(r"\s+", "", code or "").upper()
    if len(cleaned) == 8 and "-" not in cleaned:
        cleaned = f"{cleaned[:4]}-{cleaned[4:]}"
    return cleaned if BACKUP_CODE_PATTERN.match(cleaned) else None


def render_qr_data_url(payload: str) -> str:
    """Render payload as a PNG QR code and return it as a data URL."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class MFAService:
    """Manages MFA enrollment, verification and backup codes for users."""

    def __init__(self, store: UserStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings
        self._hash_key = settings.secret_key.encode()

    def _hash_code(self, salt: str, code: str) -> str:
        return hmac.new(self._hash_key, (salt + code).encode(), hashlib.sha256).hexdigest()

    def _new_backup_codes(self, user_id: int) -> tuple[list[str], list[BackupCode]]:
        plain: list[str] = []
        stored: list[BackupCode] = []
        while len(plain) < self._settings.backup_code_count:
            code = generate_backup_code()
            if code in plain:
                continue
            salt = secrets.token_hex(8)
            plain.append(code)
            stored.append(BackupCode(user_id=user_id, salt=salt, code_hash=self._hash_code(salt, code)))
        return plain, stored

    def _check_totp(self, secret: str, code: str) -> bool:
        if not TOTP_PATTERN.match(code or ""):
            return False
        return pyotp.TOTP(secret).verify(code, valid_window=self._settings.totp_valid_window)

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def begin_setup(self, user: User) -> MFASetup:
        """Provision a fresh secret and backup codes; enrollment becomes pending.

        Raises MFAAlreadyEnabled if a confirmed enrollment exists. The store
        write is itself conditional on "not confirmed", so a confirmation that
        lands between the check and the write still cannot be overwritten.
        """
        if isinstance(self._store.get_mfa_enrollment(user.id), MFAConfirmed):
            raise MFAAlreadyEnabled()

        secret = pyotp.random_base32()
        plain_codes, stored_codes = self._new_backup_codes(user.id)
        if not self._store.save_pending_enrollment(user.id, secret, stored_codes):
            raise MFAAlreadyEnabled()

        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self._settings.mfa_issuer_name)
        logger.info("MFA setup started for user %d", user.id)
        return MFASetup(
            secret=secret,
            provisioning_uri=uri,
            qr_code=render_qr_data_url(uri),
            backup_codes=plain_codes,
        )

    def confirm_setup(self, user: User, code: str) -> None:
        """Validate the first code from the authenticator and enable MFA."""
        enrollment = self._store.get_mfa_enrollment(user.id)
        if isinstance(enrollment, MFAConfirmed):
            raise Conflict("MFA is already enabled.")
        if isinstance(enrollment, MFAAbsent):
            raise ValidationFailed("MFA not set up. Please initiate setup first.")
        if not self._check_totp(enrollment.secret, code):
            logger.info("MFA confirmation rejected for user %d", user.id)
            raise InvalidCode("Invalid verification code. Please try again.")
        if not self._store.confirm_enrollment(user.id, enrollment.secret):
            # A concurrent begin_setup() replaced the secret we just checked.
            raise InvalidCode("Invalid verification code. Please try again.")
        logger.info("MFA enabled for user %d", user.id)

    def status(self, user: User) -> MFAStatus:
        enrollment = self._store.get_mfa_enrollment(user.id)
        return MFAStatus(
            enabled=isinstance(enrollment, MFAConfirmed),
            has_secret=isinstance(enrollment, (MFAPending, MFAConfirmed)),
            remaining_backup_codes=self._store.count_unused_backup_codes(user.id),
        )

    def is_required(self, user: User) -> bool:
        return isinstance(self._store.get_mfa_enrollment(user.id), MFAConfirmed)

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    def consume_backup_code(self, user: User, code: str) -> None:
        """Spend one backup code. Raises InvalidOrUsed unless this call won it.

        Only codes of a confirmed enrollment are spendable.
        """
        normalized = normalize_backup_code(code)
        if normalized is None or not self.is_required(user):
            raise InvalidOrUsed()
        for candidate in self._store.list_unused_backup_codes(user.id):
            if hmac.compare_digest(self._hash_code(candidate.salt, normalized), candidate.code_hash):
                if self._store.mark_backup_code_used(candidate.id):
                    logger.info("Backup code consumed for user %d", user.id)
                    return
                break
        raise InvalidOrUsed()

    def verify_second_factor(self, user: User, code: str) -> None:
        """Check a login-time code: 6 digits are TOTP, XXXX-XXXX is a backup code.

        Raises InvalidCode for a wrong TOTP and InvalidOrUsed for a bad
        backup code.
        """
        enrollment = self._store.get_mfa_enrollment(user.id)
        if not isinstance(enrollment, MFAConfirmed):
            raise InvalidCode()
        candidate = (code or "").strip()
        if TOTP_PATTERN.match(candidate):
            if not self._check_totp(enrollment.secret, candidate):
                raise InvalidCode()
            return
        self.consume_backup_code(user, candidate)

    # ------------------------------------------------------------------
    # Disable
    # ------------------------------------------------------------------

    def disable(self, user: User, password: str) -> int:
        """Turn MFA off after re-checking the password.

        Clears the secret and every backup code, then revokes all of the
        user's sessions. Returns the number of sessions revoked.
        """
        if not isinstance(self._store.get_mfa_enrollment(user.id), MFAConfirmed):
            raise Conflict("MFA is not enabled.")
        if not user.hashed_password or not verify_password(password, user.hashed_password):
            raise InvalidCredentials("Invalid password.")
        self._store.clear_enrollment(user.id)
        revoked = self._store.revoke_user_sessions(user.id, reason="mfa_disabled")
        logger.info("MFA disabled for user %d (%d session(s) revoked)", user.id, revoked)
        return revoked
