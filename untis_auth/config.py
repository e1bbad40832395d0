"""Settings and config validation for the WebUntis authentication layer."""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import voluptuous as vol
from dotenv import load_dotenv

from .const import (
	APP_DATA_TIMEOUT,
	AUTH_CACHE_TTL,
	CACHE_SAFETY_BUFFER,
	COOKIE_VALIDATION_INTERVAL,
	ENV_CACHE_TTL,
	ENV_COOKIE_CHECK,
	ENV_SAFETY_BUFFER,
	PROTOCOL_TIMEOUT,
	RPC_TIMEOUT,
)
from .exceptions import UntisDataError

_LOGGER = logging.getLogger(__name__)

STUDENT_SCHEMA = vol.Schema(
	{
		vol.Optional("title"): vol.Any(None, str),
		vol.Optional("qrcode"): vol.Any(None, str),
		vol.Optional("school"): vol.Any(None, str),
		vol.Optional("server"): vol.Any(None, str),
		vol.Optional("username"): vol.Any(None, str),
		vol.Optional("password"): vol.Any(None, str),
		vol.Optional("student_id"): vol.Any(None, vol.Coerce(int)),
		vol.Optional("auto_discovered", default=False): bool,
	},
	extra=vol.ALLOW_EXTRA,
)

MODULE_SCHEMA = vol.Schema(
	{
		vol.Optional("school"): vol.Any(None, str),
		vol.Optional("server"): vol.Any(None, str),
		vol.Optional("username"): vol.Any(None, str),
		vol.Optional("password"): vol.Any(None, str),
	},
	extra=vol.ALLOW_EXTRA,
)


def validate_student(student: Dict[str, Any]) -> Dict[str, Any]:
	"""Validate and normalise one configured student entry."""
	try:
		return STUDENT_SCHEMA(student)
	except vol.Invalid as err:
		raise UntisDataError(f"Invalid student config: {err}") from err


def validate_module_config(module_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
	"""Validate module-level defaults (parent credentials, school, server)."""
	try:
		return MODULE_SCHEMA(module_config or {})
	except vol.Invalid as err:
		raise UntisDataError(f"Invalid module config: {err}") from err


@dataclass
class BrokerSettings:
	"""Cache timing and timeouts, in seconds."""
	cache_ttl: float = AUTH_CACHE_TTL.total_seconds()
	safety_buffer: float = CACHE_SAFETY_BUFFER.total_seconds()
	cookie_check_interval: float = COOKIE_VALIDATION_INTERVAL.total_seconds()
	protocol_timeout: float = PROTOCOL_TIMEOUT
	rpc_timeout: float = RPC_TIMEOUT
	app_data_timeout: float = APP_DATA_TIMEOUT

	def __post_init__(self) -> None:
		# Cached bundles must expire before the backend token does
		if self.cache_ttl <= self.safety_buffer:
			raise ValueError(
				f"cache_ttl ({self.cache_ttl}s) must be longer than safety_buffer ({self.safety_buffer}s)"
			)


def _float_env(name: str, default: float) -> float:
	raw = os.getenv(name)
	if raw is None or raw == "":
		return default
	try:
		return float(raw)
	except ValueError:
		_LOGGER.warning(f"Ignoring non-numeric {name}={raw!r}")
		return default


def settings_from_env(dotenv_path: Optional[str] = None) -> BrokerSettings:
	"""Build settings from the environment, loading a .env file first."""
	load_dotenv(dotenv_path)
	defaults = BrokerSettings()
	return BrokerSettings(
		cache_ttl=_float_env(ENV_CACHE_TTL, defaults.cache_ttl),
		safety_buffer=_float_env(ENV_SAFETY_BUFFER, defaults.safety_buffer),
		cookie_check_interval=_float_env(ENV_COOKIE_CHECK, defaults.cookie_check_interval),
	)
