"""WebUntis authentication and session cache.

Most callers only need ``untis_auth.broker.AuthBroker``.
"""

__version__ = "1.0.0"
__all__ = [
	"auth",
	"broker",
	"config",
	"cookie_jar",
	"exceptions",
	"models",
	"targets",
]
