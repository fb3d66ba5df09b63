"""TOTP enrollment lifecycle.

States move NOT_ENROLLED -> PENDING (start_enroll) -> ENROLLED (validate_enroll)
and back to NOT_ENROLLED (disable). Restarting enrollment from PENDING replaces
the pending secret. Codes are checked with one 30 second step of tolerance on
each side.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from io import BytesIO
from typing import Protocol

import pyotp
import qrcode

from serverpanel.logging import get_logger
from serverpanel.service.errors import (
    FieldRequiredError,
    InvalidCredentialsError,
    OtpStateError,
)
from serverpanel.service.notifications import Outbox
from serverpanel.storage.models import OtpEnrollment, OtpState, User

logger = get_logger(__name__)

VALID_WINDOW = 1


class OtpStore(Protocol):
    def get_otp_enrollment(self, user_id: str) -> OtpEnrollment: ...

    def save_otp_enrollment(self, enrollment: OtpEnrollment) -> OtpEnrollment: ...


@dataclass(frozen=True)
class OtpChallenge:
    secret: str
    # data:image/png;base64 QR code of the provisioning URI
    img: str


def _qr_data_uri(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


def _normalize_code(code: str) -> str:
    return "".join((code or "").split())


class OtpService:
    def __init__(self, store: OtpStore, *, issuer_name: str = "ServerPanel") -> None:
        self.store = store
        self.issuer_name = issuer_name

    def _matches(self, secret: str, code: str) -> bool:
        code = _normalize_code(code)
        if not code or not secret:
            return False
        return pyotp.TOTP(secret).verify(code, valid_window=VALID_WINDOW)

    def get_status(self, user_id: str) -> bool:
        return self.store.get_otp_enrollment(user_id).state == OtpState.ENROLLED

    def start_enroll(self, user: User) -> OtpChallenge:
        current = self.store.get_otp_enrollment(user.id)
        if current.state == OtpState.ENROLLED:
            raise OtpStateError("otp is already enabled")
        secret = pyotp.random_base32()
        self.store.save_otp_enrollment(
            OtpEnrollment(user_id=user.id, state=OtpState.PENDING, secret=secret)
        )
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self.issuer_name)
        logger.info("otp_enroll_started", user_id=user.id, restarted=current.state == OtpState.PENDING)
        return OtpChallenge(secret=secret, img=_qr_data_uri(uri))

    def validate_enroll(self, user: User, code: str, outbox: Outbox) -> None:
        if not _normalize_code(code):
            raise FieldRequiredError("token")
        current = self.store.get_otp_enrollment(user.id)
        if current.state != OtpState.PENDING:
            raise OtpStateError("no otp enrollment is pending")
        if not self._matches(current.secret or "", code):
            logger.warning("otp_enroll_code_rejected", user_id=user.id)
            raise InvalidCredentialsError("invalid otp code")
        self.store.save_otp_enrollment(
            OtpEnrollment(user_id=user.id, state=OtpState.ENROLLED, secret=current.secret)
        )
        outbox.queue(user.email, "otpEnabled")
        logger.info("otp_enrolled", user_id=user.id)

    def disable(self, user: User, code: str, outbox: Outbox) -> None:
        current = self.store.get_otp_enrollment(user.id)
        if current.state != OtpState.ENROLLED:
            raise OtpStateError("otp is not enabled")
        if not self._matches(current.secret or "", code):
            logger.warning("otp_disable_code_rejected", user_id=user.id)
            raise InvalidCredentialsError("invalid otp code")
        self.store.save_otp_enrollment(OtpEnrollment(user_id=user.id, state=OtpState.NOT_ENROLLED))
        outbox.queue(user.email, "otpDisabled")
        logger.info("otp_disabled", user_id=user.id)

    def verify_code(self, user_id: str, code: str) -> bool:
        """Check a login code; always False unless enrollment is complete."""
        current = self.store.get_otp_enrollment(user_id)
        if current.state != OtpState.ENROLLED:
            return False
        return self._matches(current.secret or "", code)
