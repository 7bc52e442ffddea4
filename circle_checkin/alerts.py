"""
Alerting workflows built on the membership/endpoint resolvers and the dispatcher.

Delivery problems are reported in the returned result; only invalid input
and missing circles/users raise.
"""
import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional, Tuple

from .checkin import utc_now
from .dispatcher import MulticastDispatcher
from .errors import NotFoundError
from .models import (
    AllCirclesTarget, CheckInInput, CircleTarget, DistressAlert, EmergencyAlertInput, EmergencyAlertResult,
    EmergencyContact, InactiveRemindersInput, InactiveRemindersResult, NotifyCircleInput,
    NotifyResult, NotOkayInput, Notification, PersonTarget, ReminderInput, Target, validate_input,
)
from .resolvers import EndpointRegistry, MembershipResolver
from .store import CheckinStore, new_id

logger = logging.getLogger(__name__)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def reminder_notification(sender_name: str) -> Notification:
    return Notification(
        title="Your circle is thinking of you! 👋",
        body=f"{sender_name} is thinking of you! Don't forget to check in today.",
    )


class AlertWorkflows:
    def __init__(self, store: CheckinStore, endpoints: EndpointRegistry, members: MembershipResolver,
                 dispatcher: MulticastDispatcher, email=None, sms=None, tz: tzinfo = timezone.utc,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.endpoints = endpoints
        self.members = members
        self.dispatcher = dispatcher
        self.email = email
        self.sms = sms
        self.tz = tz
        self.clock = clock

    def has_checked_in_today(self, user_id: str) -> bool:
        latest = self.store.latest_checkin(user_id)
        if latest is None:
            return False
        today = self.clock().astimezone(self.tz).date()
        return latest.timestamp.astimezone(self.tz).date() == today

    # Reminder

    def send_reminder(self, recipient_id: str, sender_name: str, recipient_name: str) -> NotifyResult:
        validate_input(ReminderInput, recipient_id=recipient_id, sender_name=sender_name,
                       recipient_name=recipient_name)

        endpoints = self.endpoints.resolve_endpoints(recipient_id)
        if not endpoints:
            logger.info(f"No endpoints found for {recipient_id}, reminder not sent")
            return NotifyResult(
                success=False,
                message=f"Couldn't send a reminder to {recipient_name} as they haven't enabled notifications.",
            )

        result = self.dispatcher.send(endpoints, reminder_notification(sender_name), link="/check-in")
        if result.success_count == 0:
            return NotifyResult(
                success=False,
                message=f"The reminder to {recipient_name} couldn't be delivered to any of their devices.",
                failed=result.failure_count,
            )

        if result.failure_count:
            total = result.success_count + result.failure_count
            message = (f"A friendly reminder has been sent to {recipient_name} "
                       f"({result.success_count} of {_plural(total, 'device')} reached).")
        else:
            message = f"A friendly reminder has been sent to {recipient_name}."
        return NotifyResult(success=True, message=message, notified=result.success_count,
                            failed=result.failure_count)

    def send_reminders_to_inactive_members(self, circle_id: str, sender_id: str,
                                           sender_name: str) -> InactiveRemindersResult:
        validate_input(InactiveRemindersInput, circle_id=circle_id, sender_id=sender_id, sender_name=sender_name)

        circle = self.store.get_circle(circle_id)
        if circle is None:
            raise NotFoundError("Circle not found.")

        others = [m for m in dict.fromkeys(circle.member_ids) if m != sender_id]
        if not others:
            return InactiveRemindersResult(success=True, message="No other members in the circle.")

        result = InactiveRemindersResult(success=True, message="")
        for member_id in others:
            try:
                outcome, detail = self._remind_if_inactive(member_id, sender_name)
            except Exception as e:
                logger.exception(f"Error sending reminder to member {member_id}: {e}")
                outcome, detail = "failed", f"{member_id}: error - {e}"
            setattr(result, outcome, getattr(result, outcome) + 1)
            result.details.append(detail)

        result.message = f"Sent {result.sent} reminder(s) to inactive members."
        return result

    def _remind_if_inactive(self, member_id: str, sender_name: str) -> Tuple[str, str]:
        user = self.store.get_user(member_id)
        if user is None:
            return "failed", f"{member_id}: failed (user not found)"
        name = user.display_name or "Friend"

        if self.has_checked_in_today(member_id):
            return "skipped", f"{name}: skipped (already checked in)"

        endpoints = self.endpoints.resolve_endpoints(member_id)
        if not endpoints:
            return "skipped", f"{name}: skipped (notifications not enabled)"

        result = self.dispatcher.send(endpoints, reminder_notification(sender_name), link="/check-in")
        if result.success_count > 0:
            return "sent", f"{name}: sent"
        return "failed", f"{name}: failed (no valid tokens)"

    # Check-in fan-out

    def notify_circle_on_check_in(self, user_id: str, user_name: str) -> NotifyResult:
        validate_input(NotifyCircleInput, user_id=user_id, user_name=user_name)

        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if not user.notify_circle_on_checkin:
            return NotifyResult(success=True, message="Notifications disabled by user.")

        members = self.members.resolve_all_circles_members(user_id)
        if not members:
            return NotifyResult(success=True, message="User is not in any circles with other members.")

        endpoints = self.endpoints.resolve_many(members)
        if not endpoints:
            return NotifyResult(success=True, message="No members with notifications enabled.")

        notification = Notification(
            title=f"{user_name} checked in! ✅",
            body=f"{user_name} just checked in. They're doing okay!",
        )
        result = self.dispatcher.send(endpoints, notification, link="/circle")
        return NotifyResult(
            success=True,
            message=f"Notified {_plural(result.success_count, 'circle member device')}.",
            notified=result.success_count,
            failed=result.failure_count,
        )

    # Distress

    def resolve_target(self, actor_id: str, target: Target):
        if isinstance(target, PersonTarget):
            recipients = {target.recipient_id}
        elif isinstance(target, CircleTarget):
            recipients = self.members.resolve_circle_members(target.circle_id, exclude_user_id=actor_id)
        elif isinstance(target, AllCirclesTarget):
            recipients = self.members.resolve_all_circles_members(actor_id)
        else:
            raise TypeError(f"Unknown alert target: {target!r}")
        recipients.discard(actor_id)
        return recipients

    def send_not_okay_alert(self, actor_id: str, actor_name: str, target: Target,
                            message: Optional[str] = None) -> NotifyResult:
        validate_input(NotOkayInput, actor_id=actor_id, actor_name=actor_name, message=message)
        message = message.strip() if message and message.strip() else None

        recipients = self.resolve_target(actor_id, target)
        endpoints = self.endpoints.resolve_many(recipients)
        if not endpoints:
            return NotifyResult(success=False,
                                message="No one you chose has notifications enabled, so the alert wasn't sent.")

        notification = Notification(
            title=f"🚨 {actor_name} needs help",
            body=message or f"{actor_name} isn't feeling okay and could use a check-in.",
        )
        result = self.dispatcher.send(endpoints, notification, link="/circle", high_priority=True)

        alert = DistressAlert(
            id=new_id(),
            actor_id=actor_id,
            actor_name=actor_name,
            circle_id=target.circle_id if isinstance(target, CircleTarget) else None,
            recipient_id=target.recipient_id if isinstance(target, PersonTarget) else None,
            message=message,
            created_at=self.clock(),
        )
        try:
            self.store.insert_distress_alert(alert)
        except Exception as e:
            logger.exception(f"Could not record distress alert from {actor_id}: {e}")

        if result.success_count == 0:
            return NotifyResult(success=False, message="Your alert couldn't be delivered. Please try another way.",
                                failed=result.failure_count)
        return NotifyResult(
            success=True,
            message=f"Your alert was delivered to {_plural(result.success_count, 'device')}.",
            notified=result.success_count,
            failed=result.failure_count,
        )

    # Escalation

    def send_emergency_alert(self, user_id: str, user_name: str,
                             days_since_last_check_in: int) -> EmergencyAlertResult:
        validate_input(EmergencyAlertInput, user_id=user_id, user_name=user_name,
                       days_since_last_check_in=days_since_last_check_in)

        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if not user.emergency_alert_enabled:
            return EmergencyAlertResult(success=False, message="Emergency alerts are not enabled for this user.")
        if user.emergency_contact is None:
            return EmergencyAlertResult(success=False, message="No emergency contact is configured.")

        days = _plural(days_since_last_check_in, "day")
        circle_result = None
        endpoints = self.endpoints.resolve_many(self.members.resolve_all_circles_members(user_id))
        if endpoints:
            notification = Notification(
                title=f"⚠️ Please check on {user_name}",
                body=f"{user_name} hasn't checked in for {days}. Please reach out and make sure they're okay.",
            )
            circle_result = self.dispatcher.send(endpoints, notification, link="/circle", high_priority=True)
        notified = circle_result.success_count if circle_result else 0
        failed = circle_result.failure_count if circle_result else 0

        channel = self._notify_emergency_contact(user.emergency_contact, user_name, days)
        contact_reached = channel is not None

        if not notified and not contact_reached:
            return EmergencyAlertResult(
                success=False,
                message=f"Could not reach {user_name}'s circle or emergency contact.",
                failed=failed,
            )
        return EmergencyAlertResult(
            success=True,
            message=(f"Emergency alert sent: {_plural(notified, 'circle notification')}, "
                     f"emergency contact {'notified by ' + channel if contact_reached else 'not reached'}."),
            notified=notified,
            failed=failed,
            emergency_contact_notified=contact_reached,
            contact_channel=channel,
        )

    def _notify_emergency_contact(self, contact: EmergencyContact, user_name: str, days: str) -> Optional[str]:
        """Try email, then SMS if email did not get through. Returns the channel that worked."""
        text = (f"Hi {contact.name}, {user_name} listed you as their emergency contact. "
                f"They haven't checked in for {days}. Please check on them.")

        if contact.email and self.email is not None and self.email.is_configured():
            try:
                if self.email.send(contact.email, f"Please check on {user_name}", text):
                    return "email"
            except Exception as e:
                logger.exception(f"Emergency email to {contact.email} failed: {e}")

        if contact.phone and self.sms is not None and self.sms.is_configured():
            try:
                if self.sms.send(contact.phone, text):
                    return "sms"
            except Exception as e:
                logger.exception(f"Emergency SMS to {contact.phone} failed: {e}")

        logger.warning(f"Emergency contact {contact.name} for {user_name} was not reached")
        return None

    # Diagnostics

    def send_test_notification(self, user_id: str) -> NotifyResult:
        validate_input(CheckInInput, user_id=user_id)
        endpoints = self.endpoints.resolve_endpoints(user_id)
        if not endpoints:
            return NotifyResult(
                success=False,
                message="No push tokens found for this user. Make sure they have enabled notifications.",
            )
        notification = Notification(title="🧪 Test Notification",
                                    body="If you see this, push notifications are working!")
        result = self.dispatcher.send(endpoints, notification, link="/check-in")
        return NotifyResult(
            success=result.success_count > 0,
            message=f"Test notification sent to {result.success_count} of {_plural(len(endpoints), 'device')}.",
            notified=result.success_count,
            failed=result.failure_count,
        )
