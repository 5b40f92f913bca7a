from __future__ import annotations

import secrets
from datetime import datetime
from typing import List, Optional, Protocol, Union

from loanease.config import Settings
from loanease.logging import get_logger
from loanease.service.clock import Clock, SystemClock
from loanease.service.errors import Rejection, RejectionKind
from loanease.service.notifier import DeliveryResult, Notifier
from loanease.storage.errors import StorageUnavailable
from loanease.storage.models import OneTimeCode, User

logger = get_logger(__name__)


class OneTimeCodeStore(Protocol):
    def create_one_time_code(self, record: OneTimeCode) -> OneTimeCode: ...

    def find_one_time_codes(self, user_id: str, code: str) -> List[OneTimeCode]: ...

    def consume_one_time_code(self, code_id: str, now: datetime) -> bool: ...


class OneTimeCodeService:
    """Short numeric second-factor codes, each usable exactly once.

    Issuing a new code does not invalidate earlier live codes for the same
    user; any of them verifies until it expires or is consumed. Attempt
    limiting is the caller's job.
    """

    def __init__(
        self,
        store: OneTimeCodeStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.store = store
        self.digits = settings.two_fa_code_digits
        self.ttl = settings.two_fa_code_ttl
        self.clock = clock or SystemClock()
        self.notifier = notifier

    def _generate_code(self) -> str:
        return str(secrets.randbelow(10**self.digits)).zfill(self.digits)

    def issue(self, user_id: str) -> Union[str, Rejection]:
        now = self.clock.now()
        code = self._generate_code()
        record = OneTimeCode.new(user_id, code, now=now, expires_at=now + self.ttl)
        try:
            self.store.create_one_time_code(record)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        logger.info("one_time_code_issued", user_id=user_id, expires_at=record.expires_at.isoformat())
        return code

    def verify(self, user_id: str, code: str) -> Union[OneTimeCode, Rejection]:
        now = self.clock.now()
        try:
            matches = self.store.find_one_time_codes(user_id, code)
        except StorageUnavailable:
            return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
        if not matches:
            logger.info("one_time_code_rejected", user_id=user_id, reason="not_found")
            return Rejection(RejectionKind.NOT_FOUND)

        lost_race = False
        for record in matches:
            if record.consumed or record.is_expired(now):
                continue
            try:
                won = self.store.consume_one_time_code(record.id, now)
            except StorageUnavailable:
                return Rejection(RejectionKind.DEPENDENCY_UNAVAILABLE)
            if won:
                logger.info("one_time_code_verified", user_id=user_id, code_id=record.id)
                record.consumed = True
                record.consumed_at = now
                return record
            lost_race = True

        if lost_race or any(record.consumed for record in matches):
            logger.info("one_time_code_rejected", user_id=user_id, reason="already_consumed")
            return Rejection(RejectionKind.ALREADY_CONSUMED)
        logger.info("one_time_code_rejected", user_id=user_id, reason="expired")
        return Rejection(RejectionKind.EXPIRED)

    def deliver(self, user: User) -> Union[DeliveryResult, Rejection]:
        """Issue a code for ``user`` and hand it to the notifier.

        A failed send is logged and reported back, but the code stays valid:
        the caller still treats the request as accepted.
        """
        code = self.issue(user.id)
        if isinstance(code, Rejection):
            return code
        if self.notifier is None:
            return DeliveryResult(success=False, error="no notifier configured")
        result = self.notifier.send_code(user.email, code, user.display_name)
        if not result.success:
            logger.warning("one_time_code_delivery_failed", user_id=user.id, error=result.error)
        return result
