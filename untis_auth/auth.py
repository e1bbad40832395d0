"""Protocol client for WebUntis authentication.

Encodes the three login protocols (QR/OTP, username/password, bearer token
exchange) plus generic JSON-RPC and logout. Nothing here retries; every
failure is raised and the caller decides what to do with it.
"""

import asyncio
import base64
import binascii
import hashlib
import json
import logging
import re
import time
from typing import Any, Dict, Optional, Tuple

import aiohttp
import pyotp

from .config import BrokerSettings
from .const import (
	APP_CONFIG_PATH,
	APP_DATA_PATH,
	CREDENTIAL_LOGIN_METHOD,
	JSONRPC_INTERN_PATH,
	JSONRPC_PATH,
	LOGIN_CLIENT_NAME,
	LOGOUT_METHOD,
	OTP_DIGITS,
	OTP_PERIOD,
	OTP_SECRET_FILLER,
	OTP_SECRET_MIN_LENGTH,
	QR_LOGIN_METHOD,
	QR_LOGIN_VERSION,
	SESSION_CACHE_GRACE,
	AUTH_CACHE_TTL,
	TOKEN_PATH,
)
from .cookie_jar import CookieJar
from .exceptions import (
	CredentialAuthFailed,
	InvalidQrCode,
	QrAuthFailed,
	SessionExpired,
	UntisAPIError,
	UntisAuthError,
	UntisConnectionError,
	UntisError,
)
from .models import CredentialLoginResult, Outcome, QrLoginResult
from .targets import parse_qr_url

_LOGGER = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r"JSESSIONID=([^;]+)")

JSON_HEADERS = {
	"Accept": "application/json",
	"Content-Type": "application/json",
}


def pad_otp_secret(secret: str) -> str:
	"""Right-pad short OTP secrets to the minimum base32 length.

	Some QR codes carry truncated secrets which the backend still accepts
	once padded with the filler character.
	"""
	if len(secret) < OTP_SECRET_MIN_LENGTH:
		return secret + OTP_SECRET_FILLER * (OTP_SECRET_MIN_LENGTH - len(secret))
	return secret


def generate_otp(secret: str, for_time: float) -> str:
	"""6-digit, 30 second, SHA1 TOTP code for ``secret`` at ``for_time``."""
	totp = pyotp.TOTP(pad_otp_secret(secret), digits=OTP_DIGITS, interval=OTP_PERIOD, digest=hashlib.sha1)
	return totp.at(int(for_time))


def _json_or_text(text: str, content_type: str) -> Any:
	"""Parse a body as JSON when it looks like JSON, else keep the text."""
	if not text:
		return None
	if content_type and "json" not in content_type.lower() and not text.lstrip().startswith(("{", "[")):
		return text
	try:
		return json.loads(text)
	except json.JSONDecodeError:
		return text


def _rpc_error_message(data: Any) -> str:
	if isinstance(data, dict) and isinstance(data.get("error"), dict):
		return data["error"].get("message") or "Unknown error"
	return "Unknown error"


def _looks_like_token(body: str) -> bool:
	if not body:
		return False
	if body.startswith("<") or body.startswith("{"):
		return False
	return "doctype" not in body.lower()


class UntisAuth:
	"""Handles the WebUntis login protocols."""

	def __init__(self, session: Optional[aiohttp.ClientSession] = None, settings: Optional[BrokerSettings] = None):
		"""Initialise the protocol client.

		Args:
			session: aiohttp session to use for requests. If None, one is
				created on first use and closed by ``close()``.
			settings: Timeouts; defaults apply when omitted.
		"""
		self._session = session
		self._own_session = session is None
		self.settings = settings or BrokerSettings()
		self.cookie_jar = CookieJar()
		self._session_cache: Dict[str, Dict[str, Any]] = {}

	async def __aenter__(self):
		return self

	async def __aexit__(self, exc_type, exc_val, exc_tb):
		await self.close()

	@property
	def session(self) -> aiohttp.ClientSession:
		if self._session is None:
			self._session = aiohttp.ClientSession()
		return self._session

	async def close(self) -> None:
		if self._own_session and self._session is not None:
			await self._session.close()
			self._session = None

	async def _request(
		self,
		method: str,
		url: str,
		context: str,
		timeout: float,
		**kwargs: Any,
	) -> Tuple[int, str, Any]:
		"""Send one request and return ``(status, body_text, headers)``.

		Network failures and timeouts are raised as UntisConnectionError
		naming ``context``.
		"""
		request = self.session.post if method == "POST" else self.session.get
		try:
			async with request(url, timeout=aiohttp.ClientTimeout(total=timeout), **kwargs) as resp:
				text = await resp.text()
				return resp.status, text, resp.headers
		except asyncio.TimeoutError as err:
			raise UntisConnectionError(f"{context}: request timeout after {timeout}s") from err
		except aiohttp.ClientError as err:
			raise UntisConnectionError(f"{context}: connection error: {err}") from err

	async def authenticate_with_qr(self, qr_url: str) -> QrLoginResult:
		"""Log in with the OTP secret carried by a WebUntis QR code URL."""
		qr = parse_qr_url(qr_url)
		missing = [name for name in ("school", "url", "key", "user") if not qr[name]]
		if missing:
			raise InvalidQrCode(f"Invalid QR code: missing {', '.join(missing)} parameter")

		school, server, user = qr["school"], qr["url"], qr["user"]
		now = time.time()
		try:
			otp = generate_otp(qr["key"], now)
		except (binascii.Error, ValueError, TypeError) as err:
			raise InvalidQrCode(f"Invalid QR code: OTP key is not valid base32 ({err})") from err

		body = {
			"jsonrpc": "2.0",
			"method": QR_LOGIN_METHOD,
			"params": [{"auth": {"clientTime": int(now * 1000), "user": user, "otp": otp}}],
			"id": 1,
		}
		params = {"m": QR_LOGIN_METHOD, "school": school, "v": QR_LOGIN_VERSION}

		try:
			status, text, headers = await self._request(
				"POST",
				f"https://{server}{JSONRPC_INTERN_PATH}",
				QR_LOGIN_METHOD,
				self.settings.protocol_timeout,
				params=params,
				json=body,
				headers=JSON_HEADERS,
			)
			data = _json_or_text(text, headers.get("Content-Type", ""))
			if status != 200 or (isinstance(data, dict) and data.get("error")):
				raise QrAuthFailed(
					f"QR code authentication failed: {status} - {_rpc_error_message(data)}",
					status=status,
				)

			# Each login starts from an empty jar for its server
			self.cookie_jar.clear(server)
			self.cookie_jar.record_cookies(headers, server)
			cookies = self.cookie_jar.cookie_header_for(server)
			match = SESSION_ID_RE.search(cookies)
			if not match:
				raise QrAuthFailed("QR code authentication failed: No JSESSIONID in cookies")
			session_id = match.group(1)

			person_id, person_type = await self._get_app_config(server, school, session_id)
		except UntisError as err:
			_LOGGER.error(f"QR authentication failed for {school}@{server}: {err}")
			raise

		_LOGGER.debug(f"QR authentication successful for {school}@{server}")
		return QrLoginResult(
			cookies=cookies,
			session_id=session_id,
			person_id=person_id,
			person_type=person_type,
			school=school,
			server=server,
		)

	async def _get_app_config(self, server: str, school: str, session_id: str) -> Tuple[int, Optional[str]]:
		"""Read personId and its person type from the app config endpoint."""
		school_cookie = base64.b64encode(school.encode("utf-8")).decode("ascii")
		status, text, headers = await self._request(
			"GET",
			f"https://{server}{APP_CONFIG_PATH}",
			"app/config",
			self.settings.protocol_timeout,
			headers={
				"Accept": "application/json",
				"Cookie": f"JSESSIONID={session_id}; schoolname=_{school_cookie}",
			},
		)
		data = _json_or_text(text, headers.get("Content-Type", ""))
		if status != 200 or not isinstance(data, dict):
			raise QrAuthFailed(f"QR code authentication failed: app config returned {status}", status=status)

		user = (((data.get("data") or {}).get("loginServiceConfig")) or {}).get("user")
		if not isinstance(user, dict):
			raise QrAuthFailed("QR code authentication failed: Invalid app config response")

		person_id = user.get("personId")
		if not person_id:
			raise QrAuthFailed("QR code authentication failed: No personId in config")

		person_type = None
		for person in user.get("persons") or []:
			if isinstance(person, dict) and person.get("id") == person_id:
				person_type = person.get("type")
				break
		return person_id, person_type

	async def authenticate_with_credentials(
		self,
		school: str,
		username: str,
		password: str,
		server: str,
	) -> CredentialLoginResult:
		"""Log in with username and password via JSON-RPC."""
		body = {
			"jsonrpc": "2.0",
			"method": CREDENTIAL_LOGIN_METHOD,
			"params": {"user": username, "password": password, "client": LOGIN_CLIENT_NAME},
			"id": 1,
		}
		try:
			status, text, headers = await self._request(
				"POST",
				f"https://{server}{JSONRPC_PATH}",
				CREDENTIAL_LOGIN_METHOD,
				self.settings.protocol_timeout,
				params={"school": school},
				json=body,
				headers=JSON_HEADERS,
			)
			data = _json_or_text(text, headers.get("Content-Type", ""))
			result = data.get("result") if isinstance(data, dict) else None
			if status != 200 or not result:
				raise CredentialAuthFailed(
					f"Credentials authentication failed: {status} - {_rpc_error_message(data)}",
					status=status,
				)
		except UntisError as err:
			_LOGGER.error(f"Credential authentication failed for {username}@{school}: {err}")
			raise

		self.cookie_jar.clear(server)
		self.cookie_jar.record_cookies(headers, server)
		_LOGGER.debug(f"Credential authentication successful for {username}@{school}")
		return CredentialLoginResult(
			cookies=self.cookie_jar.cookie_header_for(server),
			session_id=result.get("sessionId") if isinstance(result, dict) else None,
			person_id=result.get("personId") if isinstance(result, dict) else None,
			school=school,
			server=server,
		)

	async def get_bearer_token(self, server: str, cookies: str) -> str:
		"""Exchange session cookies for a REST bearer token.

		The backend answers an expired session with its HTML login page and
		HTTP 200, so the body shape is checked rather than the status.
		"""
		status, text, _headers = await self._request(
			"GET",
			f"https://{server}{TOKEN_PATH}",
			"token/new",
			self.settings.protocol_timeout,
			headers={"Cookie": cookies},
		)
		if status in (401, 403):
			raise SessionExpired(f"Bearer token request rejected: {status}", status=status)
		if status != 200:
			raise UntisAPIError(f"Bearer token request failed: {status}", status=status, method="token/new")

		body = (text or "").strip()
		if not _looks_like_token(body):
			_LOGGER.debug(f"Token endpoint returned non-token body: {body[:40]}...")
			raise SessionExpired("Session expired - token endpoint returned a page instead of a token", status=status)

		_LOGGER.debug(f"Bearer token obtained ({body[:10]}...)")
		return body

	async def json_rpc(
		self,
		server: str,
		school: str,
		method: str,
		params: Optional[Any] = None,
		cookies: Optional[str] = None,
	) -> Any:
		"""Call a JSON-RPC method and return its ``result``."""
		body = {
			"jsonrpc": "2.0",
			"method": method,
			"params": params or {},
			"id": int(time.time() * 1000),
		}
		headers = dict(JSON_HEADERS)
		if cookies:
			headers["Cookie"] = cookies

		status, text, resp_headers = await self._request(
			"POST",
			f"https://{server}{JSONRPC_PATH}",
			f"JSON-RPC {method}",
			self.settings.rpc_timeout,
			params={"school": school},
			json=body,
			headers=headers,
		)
		data = _json_or_text(text, resp_headers.get("Content-Type", ""))
		if status != 200 or not isinstance(data, dict):
			raise UntisAPIError(f"JSON-RPC {method} failed: {status}", status=status, method=method)
		if data.get("error"):
			raise UntisAPIError(f"JSON-RPC {method} error: {_rpc_error_message(data)}", status=status, method=method)
		return data.get("result")

	async def logout(self, server: str, school: str, cookies: Optional[str]) -> Outcome[bool]:
		"""End the backend session. Never raises; failures come back as a warning."""
		try:
			await self.json_rpc(server, school, LOGOUT_METHOD, {}, cookies)
		except UntisError as err:
			_LOGGER.debug(f"Logout failed (non-critical): {err}")
			return Outcome(False, warning=f"Logout failed (non-critical): {err}")
		_LOGGER.debug(f"Logout successful for {school}@{server}")
		return Outcome(True)

	async def get_app_data(self, server: str, cookies: str, token: Optional[str]) -> Dict[str, Any]:
		"""Fetch the full app/data payload (tenant, school year, user, holidays)."""
		headers = {"Cookie": cookies, "Accept": "application/json"}
		if token:
			headers["Authorization"] = f"Bearer {token}"

		status, text, resp_headers = await self._request(
			"GET",
			f"https://{server}{APP_DATA_PATH}",
			"app/data",
			self.settings.app_data_timeout,
			headers=headers,
		)
		if status in (401, 403):
			raise UntisAuthError(f"app/data rejected: {status}", status=status)
		if status != 200:
			raise UntisAPIError(f"app/data failed: {status}", status=status, method="app/data")

		data = _json_or_text(text, resp_headers.get("Content-Type", ""))
		if not isinstance(data, dict):
			raise SessionExpired("Session expired - app/data returned a page instead of JSON", status=status)
		return data

	def cache_session(self, key: str, data: Dict[str, Any], ttl: Optional[float] = None) -> None:
		"""Remember raw login results for ``key`` for ``ttl`` seconds."""
		ttl = AUTH_CACHE_TTL.total_seconds() if ttl is None else ttl
		self._session_cache[key] = {**data, "expires_at": time.time() + ttl}

	def get_cached_session(self, key: str) -> Optional[Dict[str, Any]]:
		cached = self._session_cache.get(key)
		if not cached:
			return None
		if cached["expires_at"] <= time.time() + SESSION_CACHE_GRACE.total_seconds():
			del self._session_cache[key]
			return None
		return cached

	def clear_session_cache(self, key: Optional[str] = None) -> None:
		if key:
			self._session_cache.pop(key, None)
		else:
			self._session_cache.clear()

	def get_session_cache_stats(self) -> Dict[str, Any]:
		return {"size": len(self._session_cache), "keys": list(self._session_cache)}
