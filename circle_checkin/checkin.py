import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional, Tuple

from .errors import IntervalViolation, NotFoundError, StoreConflictError
from .intervals import can_check_in
from .models import CheckIn, CheckInInput, CheckInResult, User, validate_input
from .store import CheckinStore
from .streaks import next_streak

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CheckinCoordinator:
    """
    Records a check-in and the user's new streak in one store transaction.

    The latest check-in is read inside the transaction, so two concurrent
    requests for the same user are serialized and the second one sees the
    first one's check-in. Lock contention is retried up to `max_attempts`
    times. `on_committed` runs only after a successful commit; anything it
    raises is logged and never reaches the caller.
    """

    def __init__(self, store: CheckinStore, tz: tzinfo = timezone.utc,
                 clock: Callable[[], datetime] = utc_now, max_attempts: int = 3,
                 on_committed: Optional[Callable[[User, CheckIn], object]] = None):
        self.store = store
        self.tz = tz
        self.clock = clock
        self.max_attempts = max(1, max_attempts)
        self.on_committed = on_committed

    def check_in(self, user_id: str) -> CheckInResult:
        validate_input(CheckInInput, user_id=user_id)

        for attempt in range(1, self.max_attempts + 1):
            try:
                user, checkin, streak = self._record(user_id)
                break
            except IntervalViolation as e:
                logger.info(f"Check-in refused for {user_id}: {e.wait_reason}")
                return CheckInResult(success=False, message=e.wait_reason, wait_reason=e.wait_reason)
            except StoreConflictError:
                logger.warning(f"Check-in for {user_id} hit store contention (attempt {attempt}/{self.max_attempts})")
                if attempt == self.max_attempts:
                    raise

        logger.info(f"Checkin recorded for {user_id} at {checkin.timestamp.isoformat()}, streak={streak}")
        if self.on_committed is not None:
            try:
                self.on_committed(user, checkin)
            except Exception as e:
                logger.exception(f"Post-check-in hook failed for {user_id}: {e}")

        return CheckInResult(success=True, message="Checked in! Your circle will be notified.",
                             streak=streak, checkin_id=checkin.id)

    def _record(self, user_id: str) -> Tuple[User, CheckIn, int]:
        with self.store.transaction() as tx:
            user = tx.get_user(user_id)
            if user is None:
                raise NotFoundError("User not found.")

            now = self.clock()
            latest = tx.latest_checkin(user_id)
            last_time = latest.timestamp if latest else None

            decision = can_check_in(last_time, user.cadence, user.custom_hours, now)
            if not decision.allowed:
                raise IntervalViolation(decision.wait_reason)

            streak = next_streak(last_time, now, user.cadence, user.streak, self.tz)
            checkin = tx.insert_checkin(user_id, now)
            tx.update_user(user_id, streak=streak)
        return user, checkin, streak
