"""
The public surface of the core.

`CheckinService` is built once at process start from an explicitly created
store, dispatcher and contact transports, and is handed to whatever host
layer exposes it.
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional

from .alerts import AlertWorkflows
from .checkin import CheckinCoordinator, utc_now
from .dispatcher import MulticastDispatcher
from .errors import NotFoundError
from .intervals import can_check_in, is_within_interval
from .models import (
    CheckIn, CheckInResult, CheckInStats, CheckInStatus, Channel, DeviceEndpoint, EmergencyAlertResult,
    InactiveRemindersResult, InactivityScanResult, NotifyResult, ScanReport, Target, User,
    target_from_fields,
)
from .resolvers import EndpointRegistry, MembershipResolver
from .scanner import InactivityScanner
from .stats import calculate_check_in_stats
from .store import CheckinStore

logger = logging.getLogger(__name__)


class CheckinService:
    def __init__(self, store: CheckinStore, dispatcher: MulticastDispatcher, email=None, sms=None,
                 tz: tzinfo = timezone.utc, clock: Callable[[], datetime] = utc_now,
                 max_attempts: int = 3, emergency_after_days: int = 2,
                 notify_workers: int = 4, notify_executor: Optional[ThreadPoolExecutor] = None):
        self.store = store
        self.dispatcher = dispatcher
        self.tz = tz
        self.clock = clock
        self.endpoints = EndpointRegistry(store)
        self.members = MembershipResolver(store)
        self.workflows = AlertWorkflows(store, self.endpoints, self.members, dispatcher,
                                        email=email, sms=sms, tz=tz, clock=clock)
        self.coordinator = CheckinCoordinator(store, tz=tz, clock=clock, max_attempts=max_attempts,
                                              on_committed=self._after_check_in)
        self.scanner = InactivityScanner(store, self.workflows, clock=clock,
                                         emergency_after_days=emergency_after_days)
        self._notify_pool = notify_executor or ThreadPoolExecutor(max_workers=notify_workers, thread_name_prefix="notify")

    # Check-in

    def check_in(self, user_id: str) -> CheckInResult:
        return self.coordinator.check_in(user_id)

    def _after_check_in(self, user: User, checkin: CheckIn) -> Future:
        """Queue the circle fan-out; the check-in is already committed."""
        name = user.display_name or "Your friend"
        future = self._notify_pool.submit(self.workflows.notify_circle_on_check_in, user.id, name)
        future.add_done_callback(lambda f: self._log_fanout(user.id, f))
        return future

    @staticmethod
    def _log_fanout(user_id: str, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Circle notification after check-in by {user_id} failed: {error!r}")
        else:
            logger.info(f"Circle notification after check-in by {user_id}: {future.result().message}")

    def get_status(self, user_id: str) -> CheckInStatus:
        user = self._require_user(user_id)
        latest = self.store.latest_checkin(user_id)
        last_time = latest.timestamp if latest else None
        now = self.clock()
        decision = can_check_in(last_time, user.cadence, user.custom_hours, now)
        return CheckInStatus(
            user_id=user_id,
            last_checkin=last_time,
            streak=user.streak,
            cadence=user.cadence,
            can_check_in=decision.allowed,
            wait_reason=decision.wait_reason,
            within_interval=bool(last_time) and is_within_interval(
                last_time, user.cadence, now, user.custom_hours, self.tz
            ),
        )

    def get_stats(self, user_id: str) -> CheckInStats:
        user = self._require_user(user_id)
        return calculate_check_in_stats(self.store.list_checkins(user_id), user.streak, self.clock(), self.tz)

    # Settings and devices

    def save_user(self, user: User) -> User:
        return self.store.upsert_user(user)

    def register_device(self, user_id: str, token: str, channel: Channel = Channel.WEB_PUSH) -> DeviceEndpoint:
        self._require_user(user_id)
        return self.endpoints.register(user_id, token, channel)

    def unregister_device(self, token: str) -> bool:
        return self.endpoints.remove(token)

    # Alerting

    def send_reminder(self, recipient_id: str, sender_name: str, recipient_name: str) -> NotifyResult:
        return self.workflows.send_reminder(recipient_id, sender_name, recipient_name)

    def send_reminders_to_inactive_members(self, circle_id: str, sender_id: str,
                                           sender_name: str) -> InactiveRemindersResult:
        return self.workflows.send_reminders_to_inactive_members(circle_id, sender_id, sender_name)

    def notify_circle_on_check_in(self, user_id: str, user_name: str) -> NotifyResult:
        return self.workflows.notify_circle_on_check_in(user_id, user_name)

    def send_not_okay_alert(self, actor_id: str, actor_name: str, target: Optional[Target] = None,
                            message: Optional[str] = None, recipient_id: Optional[str] = None,
                            circle_id: Optional[str] = None) -> NotifyResult:
        """`target` may be given directly, or derived from `recipient_id` / `circle_id`."""
        if target is None:
            target = target_from_fields(recipient_id, circle_id)
        return self.workflows.send_not_okay_alert(actor_id, actor_name, target, message)

    def send_emergency_alert(self, user_id: str, user_name: str,
                             days_since_last_check_in: int) -> EmergencyAlertResult:
        return self.workflows.send_emergency_alert(user_id, user_name, days_since_last_check_in)

    def send_test_notification(self, user_id: str) -> NotifyResult:
        return self.workflows.send_test_notification(user_id)

    # Timer entry points

    def run_reminder_scan(self) -> ScanReport:
        return self.scanner.run_reminder_scan()

    def run_emergency_scan(self) -> ScanReport:
        return self.scanner.run_emergency_scan()

    def scan_inactivity_and_notify(self) -> InactivityScanResult:
        return self.scanner.scan_inactivity_and_notify()

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def close(self, wait: bool = True) -> None:
        self._notify_pool.shutdown(wait=wait)
        self.dispatcher.shutdown(wait=wait)
