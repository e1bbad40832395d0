"""Constants for the WebUntis authentication layer."""

from datetime import timedelta

# Backend endpoints, relative to https://{server}
JSONRPC_PATH = "/WebUntis/jsonrpc.do"
JSONRPC_INTERN_PATH = "/WebUntis/jsonrpc_intern.do"
APP_CONFIG_PATH = "/WebUntis/api/app/config"
TOKEN_PATH = "/WebUntis/api/token/new"
APP_DATA_PATH = "/WebUntis/api/rest/view/v1/app/data"

QR_LOGIN_METHOD = "getUserData2017"
QR_LOGIN_VERSION = "i2.2"
CREDENTIAL_LOGIN_METHOD = "authenticate"
LOGOUT_METHOD = "logout"
LOGIN_CLIENT_NAME = "App"

DEFAULT_SERVER = "webuntis.com"

# Timeouts (seconds)
PROTOCOL_TIMEOUT = 10
RPC_TIMEOUT = 15
APP_DATA_TIMEOUT = 15

# Cache timing. The backend issues tokens valid for 15 minutes.
AUTH_CACHE_TTL = timedelta(minutes=14)
CACHE_SAFETY_BUFFER = timedelta(minutes=2)
COOKIE_VALIDATION_INTERVAL = timedelta(minutes=5)
SESSION_CACHE_GRACE = timedelta(seconds=60)

# OTP
OTP_DIGITS = 6
OTP_PERIOD = 30
OTP_SECRET_MIN_LENGTH = 26
OTP_SECRET_FILLER = "A"

# Roles
ROLE_STUDENT = "STUDENT"
ROLE_TEACHER = "TEACHER"
ROLE_LEGAL_GUARDIAN = "LEGAL_GUARDIAN"

# Login modes for REST targets
MODE_QR = "qr"
MODE_PARENT = "parent"

MAX_RECORDED_WARNINGS = 50

# Environment variables read by config.settings_from_env
ENV_CACHE_TTL = "UNTIS_AUTH_CACHE_TTL_SECONDS"
ENV_SAFETY_BUFFER = "UNTIS_AUTH_SAFETY_BUFFER_SECONDS"
ENV_COOKIE_CHECK = "UNTIS_AUTH_COOKIE_CHECK_SECONDS"
