"""
Batch entry points for the external timer.

Two independent scans: daily reminders per circle, and emergency escalation
for users who have been quiet too long. A failure on one circle or user is
logged, counted and never stops the rest of the scan.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .alerts import AlertWorkflows
from .checkin import utc_now
from .models import Circle, InactivityScanResult, ScanReport, User
from .store import CheckinStore

logger = logging.getLogger(__name__)


class InactivityScanner:
    def __init__(self, store: CheckinStore, workflows: AlertWorkflows,
                 clock: Callable[[], datetime] = utc_now, emergency_after_days: int = 2,
                 detail_limit: int = 50):
        self.store = store
        self.workflows = workflows
        self.clock = clock
        self.emergency_after_days = emergency_after_days
        self.detail_limit = detail_limit

    def _finish(self, report: ScanReport, summary: str) -> ScanReport:
        report.details = report.details[:self.detail_limit]
        report.message = summary
        logger.info(summary)
        return report

    def _pick_sender(self, circle: Circle) -> Optional[User]:
        # first member (in join order) that still has a user record
        for member_id in circle.member_ids:
            user = self.store.get_user(member_id)
            if user is not None:
                return user
        return None

    def run_reminder_scan(self) -> ScanReport:
        report = ScanReport()
        for circle in self.store.list_circles():
            report.processed += 1
            if not circle.member_ids:
                report.skipped += 1
                report.details.append(f"Circle {circle.id}: skipped (no members)")
                continue
            try:
                sender = self._pick_sender(circle)
                if sender is None:
                    report.skipped += 1
                    report.details.append(f"Circle {circle.id}: skipped (no known members)")
                    continue
                result = self.workflows.send_reminders_to_inactive_members(
                    circle.id, sender.id, sender.display_name or "Friend"
                )
                report.sent += result.sent
                report.failed += result.failed
                report.skipped += result.skipped
                report.details.extend(result.details)
            except Exception as e:
                logger.exception(f"Error processing circle {circle.id}: {e}")
                report.failed += 1
                report.details.append(f"Circle {circle.id}: error - {e}")

        return self._finish(report, f"Reminder scan completed. Sent {report.sent} reminder(s), "
                                    f"{report.failed} failed, {report.skipped} skipped.")

    def run_emergency_scan(self) -> ScanReport:
        report = ScanReport()
        now = self.clock()
        for user in self.store.users_with_emergency_alerts():
            report.processed += 1
            name = user.display_name or "User"
            try:
                outcome, detail = self._escalate_if_quiet(user, name, now)
            except Exception as e:
                logger.exception(f"Error processing user {user.id}: {e}")
                outcome, detail = "failed", f"User {user.id}: error - {e}"
            setattr(report, outcome, getattr(report, outcome) + 1)
            report.details.append(detail)

        return self._finish(report, f"Emergency scan completed. {report.sent} alert(s) sent, "
                                    f"{report.failed} failed, {report.skipped} skipped.")

    def _escalate_if_quiet(self, user: User, name: str, now: datetime):
        if user.emergency_contact is None:
            return "skipped", f"{name}: skipped (no emergency contact set)"

        latest = self.store.latest_checkin(user.id)
        if latest is None:
            # no history at all: too new to judge
            return "skipped", f"{name}: skipped (no check-ins yet)"

        days = (now - latest.timestamp) // timedelta(days=1)
        if days < self.emergency_after_days:
            return "skipped", f"{name}: skipped (only {days} day{'' if days == 1 else 's'} since last check-in)"

        result = self.workflows.send_emergency_alert(user.id, name, days)
        if not result.success:
            return "failed", f"{name}: failed - {result.message}"
        contact = "notified" if result.emergency_contact_notified else "not reached"
        return "sent", f"{name}: alert sent ({result.notified} circle notification(s), emergency contact {contact})"

    def scan_inactivity_and_notify(self) -> InactivityScanResult:
        reminders = self.run_reminder_scan()
        emergencies = self.run_emergency_scan()
        return InactivityScanResult(
            success=True,
            message=f"{reminders.message} {emergencies.message}",
            reminders=reminders,
            emergencies=emergencies,
        )
