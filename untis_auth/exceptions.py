"""Custom exceptions for the WebUntis authentication layer."""

import asyncio
from typing import Any, Dict, Optional

import aiohttp


class UntisError(Exception):
	"""Base exception for WebUntis errors."""

	def __init__(self, message: str = "", status: Optional[int] = None) -> None:
		super().__init__(message)
		self.status = status


class UntisAuthError(UntisError):
	"""Authentication failed."""
	pass


class InvalidQrCode(UntisAuthError):
	"""QR code URL is missing required parameters."""
	pass


class QrAuthFailed(UntisAuthError):
	"""QR/OTP login was rejected by the backend."""
	pass


class CredentialAuthFailed(UntisAuthError):
	"""Username/password login was rejected by the backend."""
	pass


class SessionExpired(UntisAuthError):
	"""Session cookies are no longer accepted by the backend."""
	pass


class UntisAPIError(UntisError):
	"""API request failed."""

	def __init__(self, message: str = "", status: Optional[int] = None, method: Optional[str] = None) -> None:
		super().__init__(message, status)
		self.method = method


class UntisConnectionError(UntisError):
	"""Connection to WebUntis failed."""
	pass


class UntisDataError(UntisError):
	"""Data parsing or validation error."""
	pass


def error_to_warning(error: Optional[BaseException], context: Optional[Dict[str, Any]] = None) -> Optional[str]:
	"""Convert an error into a short, user-facing hint.

	The caller renders the text; this only makes error shapes distinguishable.
	"""
	if error is None:
		return None

	context = context or {}
	student_title = context.get("studentTitle") or "Student"
	school = context.get("school") or "school"
	server = context.get("server") or "server"

	msg = str(error).lower()
	status = getattr(error, "status", None)

	if status in (401, 403) or isinstance(error, UntisAuthError) or "401" in msg or "403" in msg:
		return f'Authentication failed for "{student_title}": Invalid credentials or insufficient permissions.'

	if isinstance(error, (UntisConnectionError, aiohttp.ClientConnectionError, asyncio.TimeoutError)) or "timeout" in msg:
		return f'Cannot connect to WebUntis server "{server}". Check server name and network connection.'

	if status == 503 or "503" in msg:
		return "WebUntis API temporarily unavailable (HTTP 503). Retrying on next fetch..."

	if "school" in msg or "not found" in msg:
		return f'School "{school}" not found or invalid credentials. Check school name and spelling.'

	if status and 400 <= status < 500:
		return f'HTTP {status} error for "{student_title}": {error}'

	return f"Error talking to WebUntis: {error or 'Unknown error'}"
