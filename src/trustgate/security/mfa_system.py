"""
TrustGate Multi-Factor Authentication (MFA) System
TOTP + SMS one-time codes + single-use backup codes
"""

import hmac
import json
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import pyotp

from trustgate.core.cache import KeyValueStore
from trustgate.core.clock import Clock, SystemClock
from trustgate.core.encryption import SecretCipher
from trustgate.core.logging import LoggerMixin
from .audit import SecurityEventLog
from .errors import (
    DeliveryError, ExpiredError, InvalidCodeError, MFAError, NotFoundError,
    RateLimitedError, TrustGateError, UnauthorizedError
)
from .models import MFADeviceType, SecurityEventType
from .repository import DeviceRepository, MFADeviceSnapshot
from .sms import SMSSender

_PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,15}$")


class MFAMethod(str, Enum):
    """Verification method recorded on MFA events"""
    TOTP = "TOTP"
    SMS = "SMS"
    BACKUP_CODE = "BACKUP_CODE"


@dataclass
class TOTPSetupResult:
    """TOTP enrolment material handed back to the caller once"""
    secret: str
    provisioning_uri: str
    backup_codes: List[str]
    device_id: str


@dataclass
class MFADeviceInfo:
    """Device listing entry; never carries the secret"""
    id: str
    device_type: MFADeviceType
    device_name: str
    is_active: bool
    is_verified: bool
    failed_attempts: int
    last_used: Optional[datetime]
    created_at: Optional[datetime]
    backup_codes_remaining: int


def hash_backup_code(code: str, cipher: SecretCipher) -> str:
    """Keyed digest of a normalised backup code; the clear code is never stored"""
    normalized = code.strip().upper().replace("-", "").replace(" ", "")
    return cipher.digest(normalized)


class MFASystemManager(LoggerMixin):
    """
    Credential engine for TOTP, SMS and backup codes.

    Verification methods return a plain bool. Every failure reason (unknown
    device, wrong code, expired code, lockout) goes to the security log only.
    """

    def __init__(
        self,
        devices: DeviceRepository,
        event_log: SecurityEventLog,
        store: KeyValueStore,
        sms_sender: SMSSender,
        cipher: SecretCipher,
        clock: Optional[Clock] = None,
        issuer_name: str = "TrustGate",
        totp_interval: int = 30,
        totp_digits: int = 6,
        totp_window: int = 2,
        backup_codes_count: int = 10,
        backup_code_bytes: int = 4,
        sms_code_ttl: int = 600,
        lockout_threshold: Optional[int] = None,
    ):
        self.devices = devices
        self.event_log = event_log
        self.store = store
        self.sms_sender = sms_sender
        self.cipher = cipher
        self.clock = clock or SystemClock()
        self.issuer_name = issuer_name

        # TOTP configuration
        self.totp_interval = totp_interval
        self.totp_digits = totp_digits
        self.totp_window = totp_window

        # Backup codes configuration
        self.backup_codes_count = backup_codes_count
        self.backup_code_bytes = backup_code_bytes

        self.sms_code_ttl = sms_code_ttl
        self.lockout_threshold = lockout_threshold

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    def setup_totp(
        self,
        user_id: str,
        tenant_id: str,
        device_name: str,
        account_name: Optional[str] = None
    ) -> TOTPSetupResult:
        """Enrol an unverified TOTP device and return its secret and backup codes"""
        try:
            secret = pyotp.random_base32()  # 32 base32 chars = 160 bits
            totp = pyotp.TOTP(secret, digits=self.totp_digits, interval=self.totp_interval)
            provisioning_uri = totp.provisioning_uri(
                name=account_name or user_id,
                issuer_name=self.issuer_name
            )

            backup_codes = self._generate_backup_codes()

            device = self.devices.create(
                user_id=user_id,
                tenant_id=tenant_id,
                device_type=MFADeviceType.TOTP,
                device_name=device_name,
                created_at=self.clock.now(),
                secret=self.cipher.encrypt(secret, self._secret_key_id(user_id, tenant_id)),
                backup_code_hashes=[hash_backup_code(code, self.cipher) for code in backup_codes],
            )
        except Exception as e:
            self.logger.error(f"TOTP setup failed: {e}")
            raise MFAError(f"TOTP setup failed: {e}")

        self.event_log.record(
            SecurityEventType.MFA_SUCCESS,
            tenant_id=tenant_id,
            user_id=user_id,
            details={"action": "TOTP_SETUP", "device_name": device_name, "device_id": device.id},
        )

        self.logger.info(f"TOTP setup initiated for user: {user_id}")
        return TOTPSetupResult(
            secret=secret,
            provisioning_uri=provisioning_uri,
            backup_codes=backup_codes,
            device_id=device.id,
        )

    def verify_totp(
        self,
        device_id: str,
        code: str,
        user_id: str,
        tenant_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> bool:
        """Check a TOTP code against the current step and two steps either side"""
        context = {"ip_address": ip_address, "user_agent": user_agent}
        try:
            device = self._load_device(device_id, user_id, tenant_id, MFADeviceType.TOTP)
            self._check_lockout(device)

            secret = self.cipher.decrypt(device.secret, self._secret_key_id(user_id, tenant_id))
            totp = pyotp.TOTP(secret, digits=self.totp_digits, interval=self.totp_interval)

            token = (code or "").strip().replace(" ", "")
            is_valid = (
                len(token) == self.totp_digits
                and token.isdigit()
                and totp.verify(token, for_time=self.clock.now(), valid_window=self.totp_window)
            )
        except TrustGateError as e:
            self._log_failure(user_id, tenant_id, device_id, MFAMethod.TOTP, e.reason, **context)
            return False

        if is_valid:
            self.devices.record_success(device_id, tenant_id, self.clock.now(), mark_verified=True)
            self._log_success(user_id, tenant_id, device_id, MFAMethod.TOTP, **context)
            return True

        attempts = self.devices.increment_failed_attempts(device_id, tenant_id)
        self._log_failure(
            user_id, tenant_id, device_id, MFAMethod.TOTP, "INVALID_TOKEN",
            failed_attempts=attempts, **context
        )
        return False

    # ------------------------------------------------------------------
    # SMS
    # ------------------------------------------------------------------

    def setup_sms(self, user_id: str, phone_number: str, tenant_id: str) -> str:
        """Enrol an SMS device and send its first verification code"""
        phone = re.sub(r"[\s\-()]", "", phone_number or "")
        if not _PHONE_PATTERN.match(phone):
            raise InvalidCodeError("Invalid phone number", reason="INVALID_PHONE")

        try:
            device = self.devices.create(
                user_id=user_id,
                tenant_id=tenant_id,
                device_type=MFADeviceType.SMS,
                device_name=f"SMS {phone[-4:]}",
                created_at=self.clock.now(),
                phone_number=phone,
            )
        except Exception as e:
            self.logger.error(f"SMS MFA setup failed: {e}")
            raise MFAError(f"SMS MFA setup failed: {e}")

        self._issue_sms_code(device)

        self.event_log.record(
            SecurityEventType.MFA_SUCCESS,
            tenant_id=tenant_id,
            user_id=user_id,
            details={"action": "SMS_SETUP", "device_id": device.id, "phone_suffix": phone[-4:]},
        )
        return device.id

    def send_sms_code(self, device_id: str, user_id: str, tenant_id: str) -> bool:
        """Issue a fresh code for an enrolled SMS device; any earlier code stops working"""
        try:
            device = self._load_device(device_id, user_id, tenant_id, MFADeviceType.SMS)
            self._check_lockout(device)
        except TrustGateError as e:
            self._log_failure(user_id, tenant_id, device_id, MFAMethod.SMS, e.reason)
            return False

        self._issue_sms_code(device)
        self.event_log.record(
            SecurityEventType.MFA_SUCCESS,
            tenant_id=tenant_id,
            user_id=user_id,
            details={"action": "SMS_CODE_SENT", "device_id": device_id},
        )
        return True

    def verify_sms(
        self,
        device_id: str,
        code: str,
        user_id: str,
        tenant_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> bool:
        """Consume the pending SMS code for a device"""
        context = {"ip_address": ip_address, "user_agent": user_agent}
        key = self._sms_key(tenant_id, device_id)
        try:
            device = self._load_device(device_id, user_id, tenant_id, MFADeviceType.SMS)
            self._check_lockout(device)

            payload = self.store.get(key)
            if payload is None:
                raise ExpiredError("No pending code")
            pending = json.loads(payload)
            if self.clock.now() >= datetime.fromisoformat(pending["expires_at"]):
                self.store.compare_and_delete(key, payload)
                raise ExpiredError("Code expired")

            submitted = (code or "").strip()
            if not hmac.compare_digest(pending["code"].encode("utf-8"), submitted.encode("utf-8")):
                attempts = self.devices.increment_failed_attempts(device_id, tenant_id)
                self._log_failure(
                    user_id, tenant_id, device_id, MFAMethod.SMS, "INVALID_CODE",
                    failed_attempts=attempts, **context
                )
                return False

            # Exactly one concurrent verifier gets to consume the code
            if not self.store.compare_and_delete(key, payload):
                raise ExpiredError("Code already consumed")
        except TrustGateError as e:
            self._log_failure(user_id, tenant_id, device_id, MFAMethod.SMS, e.reason, **context)
            return False

        self.devices.record_success(device_id, tenant_id, self.clock.now(), mark_verified=True)
        self._log_success(user_id, tenant_id, device_id, MFAMethod.SMS, **context)
        return True

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def redeem_backup_code(
        self,
        device_id: str,
        code: str,
        user_id: str,
        tenant_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> bool:
        """Verify and consume a backup code"""
        context = {"ip_address": ip_address, "user_agent": user_agent}
        try:
            device = self._load_device(device_id, user_id, tenant_id)
            self._check_lockout(device)
        except TrustGateError as e:
            self._log_failure(user_id, tenant_id, device_id, MFAMethod.BACKUP_CODE, e.reason, **context)
            return False

        now = self.clock.now()
        if self.devices.consume_backup_code(device_id, tenant_id, hash_backup_code(code or "", self.cipher), now):
            self.devices.record_success(device_id, tenant_id, now)
            remaining = device.backup_codes_remaining - 1
            refreshed = self.devices.get(device_id, tenant_id)
            if refreshed is not None:
                remaining = refreshed.backup_codes_remaining
            self._log_success(
                user_id, tenant_id, device_id, MFAMethod.BACKUP_CODE,
                remaining_codes=remaining, **context
            )
            if remaining <= 2:
                self.logger.warning(f"User {user_id} has only {remaining} backup codes left on {device_id}")
            return True

        attempts = self.devices.increment_failed_attempts(device_id, tenant_id)
        self._log_failure(
            user_id, tenant_id, device_id, MFAMethod.BACKUP_CODE, "INVALID_BACKUP_CODE",
            failed_attempts=attempts, **context
        )
        return False

    def regenerate_backup_codes(self, device_id: str, user_id: str, tenant_id: str) -> List[str]:
        """Replace every unused backup code on a device"""
        self._load_device(device_id, user_id, tenant_id)

        backup_codes = self._generate_backup_codes()
        self.devices.replace_backup_codes(
            device_id, tenant_id, [hash_backup_code(code, self.cipher) for code in backup_codes]
        )

        self.event_log.record(
            SecurityEventType.MFA_SUCCESS,
            tenant_id=tenant_id,
            user_id=user_id,
            details={
                "action": "BACKUP_CODES_REGENERATED",
                "device_id": device_id,
                "codes_generated": len(backup_codes),
            },
        )
        self.logger.info(f"Backup codes regenerated for user: {user_id}")
        return backup_codes

    # ------------------------------------------------------------------
    # Device management
    # ------------------------------------------------------------------

    def list_devices(self, user_id: str, tenant_id: str) -> List[MFADeviceInfo]:
        return [
            MFADeviceInfo(
                id=d.id,
                device_type=d.device_type,
                device_name=d.device_name,
                is_active=d.is_active,
                is_verified=d.is_verified,
                failed_attempts=d.failed_attempts,
                last_used=d.last_used,
                created_at=d.created_at,
                backup_codes_remaining=d.backup_codes_remaining,
            )
            for d in self.devices.list_for_tenant(tenant_id, user_id=user_id)
        ]

    def deactivate_device(self, device_id: str, user_id: str, tenant_id: str) -> bool:
        """Retire a device; it is refused by every verification afterwards"""
        device = self.devices.get(device_id, tenant_id)
        if device is None or device.user_id != user_id:
            return False

        deactivated = self.devices.deactivate(device_id, tenant_id)
        if deactivated:
            self.store.delete(self._sms_key(tenant_id, device_id))
            self.event_log.record(
                SecurityEventType.MFA_SUCCESS,
                tenant_id=tenant_id,
                user_id=user_id,
                details={"action": "DEVICE_DEACTIVATED", "device_id": device_id},
            )
            self.logger.info(f"MFA device {device_id} deactivated for user: {user_id}")
        return deactivated

    def is_locked_out(self, device_id: str, tenant_id: str, threshold: Optional[int] = None) -> bool:
        """Whether a device's failure counter has reached ``threshold``"""
        limit = threshold if threshold is not None else self.lockout_threshold
        device = self.devices.get(device_id, tenant_id)
        if device is None or limit is None:
            return False
        return device.failed_attempts >= limit

    def get_mfa_status(self, user_id: str, tenant_id: str) -> Dict[str, Any]:
        """Summary of a user's enrolled factors"""
        devices = self.list_devices(user_id, tenant_id)
        active = [d for d in devices if d.is_active]
        verified = [d for d in active if d.is_verified]
        backup_codes = sum(d.backup_codes_remaining for d in active)
        last_used = max((d.last_used for d in active if d.last_used), default=None)
        return {
            "enabled": bool(verified),
            "methods": sorted({d.device_type.value for d in verified}),
            "devices": len(active),
            "setup_pending": any(not d.is_verified for d in active),
            "backup_codes_available": backup_codes,
            "needs_backup_codes": bool(verified) and backup_codes <= 2,
            "last_used": last_used,
            "locked_out": self.lockout_threshold is not None and any(
                d.failed_attempts >= self.lockout_threshold for d in active
            ),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_device(
        self,
        device_id: str,
        user_id: str,
        tenant_id: str,
        device_type: Optional[MFADeviceType] = None
    ) -> MFADeviceSnapshot:
        device = self.devices.get(device_id, tenant_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")
        if device.user_id != user_id:
            raise UnauthorizedError(f"Device {device_id} belongs to another user")
        if not device.is_active:
            raise UnauthorizedError(f"Device {device_id} is inactive", reason="DEVICE_INACTIVE")
        if device_type is not None and device.device_type != device_type:
            raise UnauthorizedError(f"Device {device_id} is not a {device_type.value} device")
        return device

    def _check_lockout(self, device: MFADeviceSnapshot) -> None:
        if self.lockout_threshold is not None and device.failed_attempts >= self.lockout_threshold:
            raise RateLimitedError(f"Device {device.id} is locked after {device.failed_attempts} failures")

    def _issue_sms_code(self, device: MFADeviceSnapshot) -> None:
        low = 10 ** (self.totp_digits - 1)
        code = str(low + secrets.randbelow(9 * low))
        expires_at = self.clock.now() + timedelta(seconds=self.sms_code_ttl)
        payload = json.dumps({
            "code": code,
            "expires_at": expires_at.isoformat(),
            "nonce": secrets.token_hex(8),
        })
        key = self._sms_key(device.tenant_id, device.id)

        # Replaces any code still outstanding for this device
        self.store.set(key, payload, ttl_seconds=self.sms_code_ttl)

        try:
            self.sms_sender.send(device.phone_number, code)
        except Exception as e:
            self.store.compare_and_delete(key, payload)
            self.logger.error(f"SMS delivery failed for device {device.id}: {e}")
            raise DeliveryError(f"SMS delivery failed: {e}")

    def _generate_backup_codes(self) -> List[str]:
        """Generate cryptographically secure backup codes"""
        return [
            secrets.token_hex(self.backup_code_bytes).upper()
            for _ in range(self.backup_codes_count)
        ]

    @staticmethod
    def _secret_key_id(user_id: str, tenant_id: str) -> str:
        return f"totp:{tenant_id}:{user_id}"

    @staticmethod
    def _sms_key(tenant_id: str, device_id: str) -> str:
        return f"mfa:sms:{tenant_id}:{device_id}"

    def _log_success(
        self,
        user_id: str,
        tenant_id: str,
        device_id: str,
        method: MFAMethod,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        **details: Any
    ) -> None:
        self.event_log.record(
            SecurityEventType.MFA_SUCCESS,
            tenant_id=tenant_id,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"device_id": device_id, "method": method.value, **details},
        )

    def _log_failure(
        self,
        user_id: str,
        tenant_id: str,
        device_id: str,
        method: MFAMethod,
        reason: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        **details: Any
    ) -> None:
        self.event_log.record(
            SecurityEventType.MFA_FAILURE,
            tenant_id=tenant_id,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"device_id": device_id, "method": method.value, "reason": reason, **details},
        )
