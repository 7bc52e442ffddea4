from datetime import timedelta

import pytest

from circle_checkin.errors import InvalidInputError, NotFoundError
from circle_checkin.models import CircleTarget, EmergencyContact, PersonTarget

CONTACT = EmergencyContact(name="Dana", email="dana@example.com", phone="+15551234567")


@pytest.fixture
def family(store, add_user, add_device):
    for user_id in ("ann", "bob", "cat", "dan"):
        add_user(user_id)
    store.create_circle("One", "ann", ["bob"], circle_id="C1")
    store.create_circle("Two", "ann", ["cat", "dan"], circle_id="C2")
    add_device("bob")
    add_device("cat")


# Reminders

def test_reminder_without_endpoints(service, add_user):
    add_user("bob")
    result = service.send_reminder("bob", "Ann", "Bob")
    assert not result.success
    assert result.message == "Couldn't send a reminder to Bob as they haven't enabled notifications."


def test_reminder_delivered(service, family, web_push):
    result = service.send_reminder("bob", "Ann", "Bob")

    assert result.success
    assert result.message == "A friendly reminder has been sent to Bob."
    assert web_push.calls[0]["notification"].body == "Ann is thinking of you! Don't forget to check in today."


def test_reminder_partially_delivered(service, family, add_device, web_push):
    add_device("bob", "bob-old")
    web_push.fail_tokens.add("bob-old")

    result = service.send_reminder("bob", "Ann", "Bob")

    assert result.success
    assert result.message == "A friendly reminder has been sent to Bob (1 of 2 devices reached)."


def test_reminder_not_delivered_anywhere(service, family, web_push):
    web_push.fail_tokens.add("tok-bob")
    result = service.send_reminder("bob", "Ann", "Bob")
    assert not result.success
    assert result.failed == 1


def test_reminders_to_inactive_members(service, family, add_checkin, clock, web_push):
    add_checkin("cat", clock() - timedelta(hours=1))

    result = service.send_reminders_to_inactive_members("C2", "ann", "Ann")

    assert result.success
    assert (result.sent, result.skipped, result.failed) == (0, 2, 0)

    result = service.send_reminders_to_inactive_members("C1", "ann", "Ann")
    assert result.sent == 1
    assert result.message == "Sent 1 reminder(s) to inactive members."
    assert web_push.sent_tokens == ["tok-bob"]


def test_reminders_yesterday_check_in_counts_as_inactive(service, family, add_checkin, clock):
    add_checkin("cat", clock() - timedelta(days=1))
    result = service.send_reminders_to_inactive_members("C2", "ann", "Ann")
    assert (result.sent, result.skipped) == (1, 1)


def test_reminders_unknown_circle(service):
    with pytest.raises(NotFoundError):
        service.send_reminders_to_inactive_members("nope", "ann", "Ann")


def test_reminders_sender_alone(service, store, add_user):
    add_user("ann")
    store.create_circle("Solo", "ann", circle_id="S")
    result = service.send_reminders_to_inactive_members("S", "ann", "Ann")
    assert result.success
    assert result.message == "No other members in the circle."


def test_reminders_rejects_blank_sender(service):
    with pytest.raises(InvalidInputError):
        service.send_reminders_to_inactive_members("C1", "ann", "")


# Check-in fan-out

def test_notify_circle_reaches_every_circle_once(service, family, add_device, web_push):
    add_device("cat", "cat-tablet")
    result = service.notify_circle_on_check_in("ann", "Ann")

    assert result.success
    assert result.notified == 3
    assert sorted(web_push.sent_tokens) == ["cat-tablet", "tok-bob", "tok-cat"]


def test_notify_circle_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.notify_circle_on_check_in("ghost", "Ghost")


def test_notify_circle_without_enabled_members(service, store, add_user):
    add_user("ann")
    add_user("bob")
    store.create_circle("Pals", "ann", ["bob"])
    result = service.notify_circle_on_check_in("ann", "Ann")
    assert result.success
    assert result.message == "No members with notifications enabled."


# Not-okay alerts

def test_recipient_takes_precedence_over_circle(service, family, web_push, store):
    result = service.send_not_okay_alert("ann", "Ann", recipient_id="bob", circle_id="C2")

    assert result.success
    assert web_push.sent_tokens == ["tok-bob"]
    assert web_push.calls[0]["high_priority"]
    assert web_push.calls[0]["notification"].title == "🚨 Ann needs help"

    [alert] = store.list_distress_alerts("ann")
    assert alert.recipient_id == "bob"
    assert alert.circle_id is None


def test_circle_target_excludes_actor(service, family, add_device, web_push, store):
    add_device("ann")
    result = service.send_not_okay_alert("ann", "Ann", target=CircleTarget("C2"), message="  rough day  ")

    assert result.notified == 1
    assert web_push.sent_tokens == ["tok-cat"]
    assert web_push.calls[0]["notification"].body == "rough day"
    assert store.list_distress_alerts("ann")[0].circle_id == "C2"


def test_all_circles_target(service, family, web_push):
    result = service.send_not_okay_alert("ann", "Ann")
    assert result.success
    assert sorted(web_push.sent_tokens) == ["tok-bob", "tok-cat"]


def test_alert_to_self_reaches_nobody(service, family, add_device, web_push, store):
    add_device("ann")
    result = service.send_not_okay_alert("ann", "Ann", target=PersonTarget("ann"))

    assert not result.success
    assert web_push.calls == []
    assert store.list_distress_alerts("ann") == []


def test_alert_without_endpoints_records_nothing(service, family, store):
    result = service.send_not_okay_alert("ann", "Ann", recipient_id="dan")
    assert not result.success
    assert store.list_distress_alerts("ann") == []


def test_alert_is_recorded_even_when_every_device_fails(service, family, store, web_push):
    web_push.fail_tokens.add("tok-bob")

    result = service.send_not_okay_alert("ann", "Ann", recipient_id="bob")

    assert not result.success
    assert result.failed == 1
    [alert] = store.list_distress_alerts("ann")
    assert alert.recipient_id == "bob"


def test_alert_message_length_is_capped(service, family, web_push):
    with pytest.raises(InvalidInputError):
        service.send_not_okay_alert("ann", "Ann", recipient_id="bob", message="x" * 201)
    assert web_push.calls == []


def test_alert_to_unknown_circle(service, family):
    with pytest.raises(NotFoundError):
        service.send_not_okay_alert("ann", "Ann", circle_id="missing")


# Emergency escalation

def test_emergency_disabled_touches_no_transport(service, family, web_push, email, sms, add_user):
    add_user("ann", emergency_contact=CONTACT)

    result = service.send_emergency_alert("ann", "Ann", 3)

    assert not result.success
    assert result.message == "Emergency alerts are not enabled for this user."
    assert web_push.calls == [] and email.calls == [] and sms.calls == []


def test_emergency_without_contact(service, family, add_user, web_push):
    add_user("ann", emergency_alert_enabled=True)
    result = service.send_emergency_alert("ann", "Ann", 3)
    assert not result.success
    assert web_push.calls == []


def test_emergency_alerts_circle_and_emails_contact(service, family, add_user, web_push, sms, contact_events):
    add_user("ann", emergency_alert_enabled=True, emergency_contact=CONTACT)

    result = service.send_emergency_alert("ann", "Ann", 3)

    assert result.success
    assert result.notified == 2
    assert result.emergency_contact_notified
    assert result.contact_channel == "email"
    assert contact_events == ["email"]
    assert sms.calls == []
    assert "3 days" in web_push.calls[0]["notification"].body


def test_emergency_falls_back_to_sms(service, family, add_user, email, sms, contact_events):
    add_user("ann", emergency_alert_enabled=True, emergency_contact=CONTACT)
    email.result = False

    result = service.send_emergency_alert("ann", "Ann", 2)

    assert result.contact_channel == "sms"
    assert contact_events == ["email", "sms"]
    assert sms.calls[0][0] == "+15551234567"


def test_emergency_contact_only_by_phone(service, add_user, email, contact_events):
    add_user("ann", emergency_alert_enabled=True,
             emergency_contact=EmergencyContact(name="Dana", phone="+15551234567"))

    result = service.send_emergency_alert("ann", "Ann", 4)

    assert result.success
    assert result.notified == 0
    assert contact_events == ["sms"]


def test_emergency_nobody_reachable(service, add_user, email, sms):
    email.configured = False
    sms.result = False
    add_user("ann", emergency_alert_enabled=True, emergency_contact=CONTACT)

    result = service.send_emergency_alert("ann", "Ann", 4)

    assert not result.success
    assert not result.emergency_contact_notified
    assert email.calls == []


# Diagnostics

def test_test_notification(service, family, add_device):
    assert not service.send_test_notification("dan").success
    result = service.send_test_notification("bob")
    assert result.success
    assert result.message == "Test notification sent to 1 of 1 device."
