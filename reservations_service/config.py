import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./reservations.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Test runs never talk to the real calendar or webhook.
TESTING = os.getenv("TESTING") == "1"

REAPER_INTERVAL_SECONDS = int(os.getenv("REAPER_INTERVAL_SECONDS", "300"))
REAPER_ENABLED = os.getenv("REAPER_ENABLED", "1") == "1"

# MUST MATCH the identity provider that mints the bearer tokens
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "super-secret-smart-meeting-room-key")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

CALENDAR_API_URL = os.getenv("CALENDAR_API_URL")
CALENDAR_TOKEN_URL = os.getenv("CALENDAR_TOKEN_URL")
CALENDAR_CLIENT_ID = os.getenv("CALENDAR_CLIENT_ID")
CALENDAR_CLIENT_SECRET = os.getenv("CALENDAR_CLIENT_SECRET")
CALENDAR_SCOPE = os.getenv("CALENDAR_SCOPE", "https://graph.microsoft.com/.default")
CALENDAR_USER_ID = os.getenv("CALENDAR_USER_ID")
CALENDAR_TIMEOUT_SECONDS = float(os.getenv("CALENDAR_TIMEOUT_SECONDS", "10"))

NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
