from dotenv import load_dotenv
load_dotenv()

import os


def _flag(name, default="0"):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# Storage
DB_PATH = os.environ.get("DB_PATH", "circle_checkin.db")
STORE_BUSY_TIMEOUT_SECONDS = float(os.environ.get("STORE_BUSY_TIMEOUT_SECONDS", "5"))
CHECKIN_MAX_ATTEMPTS = int(os.environ.get("CHECKIN_MAX_ATTEMPTS", "3"))

# API access
API_KEY = os.environ.get("API_KEY", "api-key")
CRON_SECRET = os.environ.get("CRON_SECRET")
ALLOW_TEST_ENDPOINTS = _flag("ALLOW_TEST_ENDPOINTS")

# Calendar days are compared in this zone
TIMEZONE = os.environ.get("TIMEZONE", "UTC")
APP_URL = os.environ.get("APP_URL", "https://daily-connect-app.vercel.app").rstrip("/")

# Delivery
TRANSPORT_TIMEOUT_SECONDS = float(os.environ.get("TRANSPORT_TIMEOUT_SECONDS", "10"))
DISPATCH_WORKERS = int(os.environ.get("DISPATCH_WORKERS", "8"))
NOTIFY_WORKERS = int(os.environ.get("NOTIFY_WORKERS", "4"))

# Firebase (web push)
FIREBASE_SERVICE_ACCOUNT_KEY = os.environ.get("FIREBASE_SERVICE_ACCOUNT_KEY")
SERVICE_ACCOUNT = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "serviceAccountKey.json")

# APNs (native push)
APNS_KEY_ID = os.environ.get("APNS_KEY_ID")
APNS_TEAM_ID = os.environ.get("APNS_TEAM_ID")
APNS_AUTH_KEY_BASE64 = os.environ.get("APNS_AUTH_KEY_BASE64")
APNS_BUNDLE_ID = os.environ.get("APNS_BUNDLE_ID", "com.dailyconnect.app")
APNS_USE_SANDBOX = _flag("APNS_USE_SANDBOX")

# Emergency contact channels
SMTP_SERVER = os.environ.get("SMTP_SERVER", "smtp.gmail.com")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SENDER_EMAIL = os.environ.get("SENDER_EMAIL")
SENDER_PASSWORD = os.environ.get("SENDER_PASSWORD")
TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.environ.get("TWILIO_PHONE_NUMBER")

# Inactivity scanning
EMERGENCY_INACTIVITY_DAYS = int(os.environ.get("EMERGENCY_INACTIVITY_DAYS", "2"))
ENABLE_SCHEDULER = _flag("ENABLE_SCHEDULER", "1")
REMINDER_SCAN_CRON = os.environ.get("REMINDER_SCAN_CRON", "0 9 * * *")  # daily at 09:00
EMERGENCY_SCAN_CRON = os.environ.get("EMERGENCY_SCAN_CRON", "0 10 * * *")  # daily at 10:00
