import logging
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from circle_checkin import config
from circle_checkin.dispatcher import MulticastDispatcher
from circle_checkin.errors import CheckinError
from circle_checkin.models import (
    Cadence, Channel, CheckInInput, EmergencyAlertInput, EmergencyContact, InactiveRemindersInput,
    NotifyCircleInput, NotOkayInput, ReminderInput, User,
)
from circle_checkin.service import CheckinService
from circle_checkin.store import CheckinStore
from circle_checkin.transports import (
    ApnsTransport, FcmWebPushTransport, SmtpEmailTransport, TwilioSmsTransport, init_firebase_app,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("circle_checkin_api")

app = FastAPI(title="Circle Check-in API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.service = None

scheduler = BackgroundScheduler(timezone=config.TIMEZONE)


def build_service() -> CheckinService:
    """Create the store and every transport client once, and wire them into the service."""
    store = CheckinStore(config.DB_PATH, busy_timeout=config.STORE_BUSY_TIMEOUT_SECONDS)
    store.init_db()

    firebase_app = init_firebase_app(
        config.FIREBASE_SERVICE_ACCOUNT_KEY, config.SERVICE_ACCOUNT, config.TRANSPORT_TIMEOUT_SECONDS
    )
    web_push = FcmWebPushTransport(firebase_app, config.APP_URL, on_invalid_token=store.remove_endpoint)
    native_push = ApnsTransport(
        config.APNS_KEY_ID, config.APNS_TEAM_ID, config.APNS_AUTH_KEY_BASE64, config.APNS_BUNDLE_ID,
        use_sandbox=config.APNS_USE_SANDBOX, timeout=config.TRANSPORT_TIMEOUT_SECONDS,
        on_invalid_token=store.remove_endpoint,
    )
    if not native_push.is_configured():
        logger.warning("APNs is not configured: native push endpoints will be counted as failures")

    dispatcher = MulticastDispatcher(web_push, native_push, timeout=config.TRANSPORT_TIMEOUT_SECONDS,
                                     max_workers=config.DISPATCH_WORKERS)
    email = SmtpEmailTransport(config.SMTP_SERVER, config.SMTP_PORT, config.SENDER_EMAIL,
                               config.SENDER_PASSWORD, timeout=config.TRANSPORT_TIMEOUT_SECONDS)
    sms = TwilioSmsTransport(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN, config.TWILIO_PHONE_NUMBER,
                             timeout=config.TRANSPORT_TIMEOUT_SECONDS)
    return CheckinService(
        store, dispatcher, email=email, sms=sms, tz=ZoneInfo(config.TIMEZONE),
        max_attempts=config.CHECKIN_MAX_ATTEMPTS, emergency_after_days=config.EMERGENCY_INACTIVITY_DAYS,
        notify_workers=config.NOTIFY_WORKERS,
    )


def service() -> CheckinService:
    if app.state.service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return app.state.service


@app.exception_handler(CheckinError)
async def checkin_error_handler(request, exc: CheckinError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


# Models
class RegisterDevice(BaseModel):
    user_id: str = Field(min_length=1)
    token: str = Field(min_length=1)
    channel: Channel = Channel.WEB_PUSH


class UserSettings(BaseModel):
    display_name: str = ""
    cadence: Cadence = Cadence.DAILY
    custom_hours: Optional[int] = Field(default=None, ge=1, le=168)
    notify_circle_on_checkin: bool = True
    emergency_alert_enabled: bool = False
    emergency_contact: Optional[EmergencyContact] = None


class TestNotificationRequest(BaseModel):
    user_id: str = Field(min_length=1)


def require_api_key(x_api_key: str = Header(None)):
    if x_api_key != config.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


def require_cron_secret(authorization: Optional[str]):
    # open when no secret is configured
    if config.CRON_SECRET and authorization != f"Bearer {config.CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")


# Endpoints
@app.post("/checkin")
def checkin(payload: CheckInInput, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    return service().check_in(payload.user_id)


@app.get("/status/{user_id}")
def status(user_id: str, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    return service().get_status(user_id)


@app.get("/stats/{user_id}")
def stats(user_id: str, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    return service().get_stats(user_id)


@app.put("/users/{user_id}")
def save_user(user_id: str, payload: UserSettings, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    user = service().save_user(User(id=user_id, **payload.model_dump()))
    logger.info(f"Saved settings for {user_id}")
    return user


@app.post("/register_device")
def register_device(payload: RegisterDevice, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    service().register_device(payload.user_id, payload.token, payload.channel)
    return {"ok": True}


@app.delete("/unregister_device/{token}")
def unregister_device(token: str, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    return {"ok": service().unregister_device(token)}


@app.post("/reminder")
def reminder(payload: ReminderInput, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    return service().send_reminder(payload.recipient_id, payload.sender_name, payload.recipient_name)


@app.post("/reminders_inactive")
def reminders_inactive(payload: InactiveRemindersInput, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    return service().send_reminders_to_inactive_members(payload.circle_id, payload.sender_id, payload.sender_name)


@app.post("/notify_checkin")
def notify_checkin(payload: NotifyCircleInput, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    return service().notify_circle_on_check_in(payload.user_id, payload.user_name)


@app.post("/not_okay")
def not_okay(payload: NotOkayInput, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    return service().send_not_okay_alert(
        payload.actor_id, payload.actor_name, message=payload.message,
        recipient_id=payload.recipient_id, circle_id=payload.circle_id,
    )


@app.post("/emergency")
def emergency(payload: EmergencyAlertInput, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    return service().send_emergency_alert(payload.user_id, payload.user_name, payload.days_since_last_check_in)


@app.post("/test_notification")
def test_notification(payload: TestNotificationRequest, x_api_key: str = Header(None)):
    require_api_key(x_api_key)
    if not config.ALLOW_TEST_ENDPOINTS:
        raise HTTPException(status_code=403, detail="Test endpoint disabled")
    return service().send_test_notification(payload.user_id)


@app.get("/cron/reminders")
def cron_reminders(authorization: str = Header(None)):
    require_cron_secret(authorization)
    return service().run_reminder_scan()


@app.get("/cron/emergency-alerts")
def cron_emergency_alerts(authorization: str = Header(None)):
    require_cron_secret(authorization)
    return service().run_emergency_scan()


@app.get("/cron/scan")
def cron_scan(authorization: str = Header(None)):
    require_cron_secret(authorization)
    return service().scan_inactivity_and_notify()


# Background jobs
def run_reminder_job():
    try:
        report = service().run_reminder_scan()
        logger.info(f"Reminder job: {report.message}")
    except Exception as e:
        logger.exception("Error in reminder job: %s", e)


def run_emergency_job():
    try:
        report = service().run_emergency_scan()
        logger.info(f"Emergency job: {report.message}")
    except Exception as e:
        logger.exception("Error in emergency job: %s", e)


@app.on_event("startup")
def startup_event():
    if app.state.service is None:
        app.state.service = build_service()
    if config.ENABLE_SCHEDULER:
        logger.info("Starting scheduler...")
        scheduler.add_job(run_reminder_job, CronTrigger.from_crontab(config.REMINDER_SCAN_CRON, timezone=config.TIMEZONE),
                          id="reminder_scan", replace_existing=True)
        scheduler.add_job(run_emergency_job, CronTrigger.from_crontab(config.EMERGENCY_SCAN_CRON, timezone=config.TIMEZONE),
                          id="emergency_scan", replace_existing=True)
        scheduler.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler.running:
        logger.info("Shutting down scheduler...")
        scheduler.shutdown()
    if app.state.service is not None:
        app.state.service.close()
