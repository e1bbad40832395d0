"""Cached, single-flight access to WebUntis identities.

``AuthBroker`` is the one object callers talk to. It turns a QR code URL,
credentials or an existing session into an ``IdentityBundle`` and keeps it
for reuse:

- bundles are cached per cache key and expire before the backend token does;
- concurrent requests for the same key share one login attempt;
- session cookies are re-checked every few minutes, because the backend
  drops idle sessions without telling anyone;
- ``invalidate_cache`` forces the next request for a key to log in afresh.

All state lives on the instance. Use one long-lived broker per process.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set, Union

import aiohttp

from . import targets
from .auth import UntisAuth
from .config import BrokerSettings, validate_module_config, validate_student
from .const import DEFAULT_SERVER, MAX_RECORDED_WARNINGS
from .exceptions import UntisAuthError, UntisError
from .models import (
	AppDataResult,
	DerivedStudent,
	IdentityBundle,
	LoginMaterial,
	Outcome,
	RestTarget,
)

_LOGGER = logging.getLogger(__name__)

# Returned by a login strategy that does not apply to the request
NOT_APPLICABLE = object()

ExistingSession = Union[IdentityBundle, Mapping[str, Any]]


@dataclass
class AuthRequest:
	"""Everything one caller supplied for a login."""
	school: Optional[str] = None
	username: Optional[str] = None
	password: Optional[str] = None
	server: Optional[str] = None
	qr_url: Optional[str] = None
	existing_session: Optional[ExistingSession] = None
	force_fresh_metadata: bool = False


@dataclass
class _PendingAuth:
	task: "asyncio.Task[IdentityBundle]"
	forced: bool


def _session_value(session: ExistingSession, name: str) -> Any:
	if isinstance(session, Mapping):
		return session.get(name)
	return getattr(session, name, None)


def _retrieve_exception(task: "asyncio.Task[Any]") -> None:
	# Every awaiter may have given up; keep asyncio from logging the error as unretrieved
	if not task.cancelled():
		task.exception()


class AuthBroker:
	"""Hands out cached WebUntis identity bundles."""

	def __init__(
		self,
		session: Optional[aiohttp.ClientSession] = None,
		settings: Optional[BrokerSettings] = None,
		auth: Optional[UntisAuth] = None,
		clock: Callable[[], float] = time.time,
	):
		"""Initialise the broker.

		Args:
			session: aiohttp session handed to the protocol client.
			settings: Cache timings and timeouts.
			auth: Protocol client; built from ``session`` when omitted.
			clock: Returns the current time in seconds.
		"""
		self.settings = settings or BrokerSettings()
		self.auth = auth or UntisAuth(session, self.settings)
		self._clock = clock
		self._cache: Dict[str, IdentityBundle] = {}
		self._pending: Dict[str, _PendingAuth] = {}
		self._force_reauth: Set[str] = set()
		self.warnings: Deque[str] = deque(maxlen=MAX_RECORDED_WARNINGS)
		self._strategies = (
			self._login_with_existing_session,
			self._login_with_qr,
			self._login_with_credentials,
		)

	async def __aenter__(self):
		return self

	async def __aexit__(self, exc_type, exc_val, exc_tb):
		await self.close()

	async def close(self) -> None:
		await self.auth.close()

	def _record_warning(self, message: str) -> None:
		_LOGGER.warning(message)
		self.warnings.append(message)

	async def get_auth_from_qr(
		self,
		qr_url: str,
		cache_key: Optional[str] = None,
		force_fresh_metadata: bool = False,
	) -> IdentityBundle:
		"""Identity for a QR code login."""
		key = cache_key or f"qrcode:{qr_url}"
		request = AuthRequest(qr_url=qr_url, force_fresh_metadata=force_fresh_metadata)
		return await self._get_bundle(key, request)

	async def get_auth(
		self,
		school: Optional[str] = None,
		username: Optional[str] = None,
		password: Optional[str] = None,
		server: Optional[str] = None,
		cache_key: Optional[str] = None,
		existing_session: Optional[ExistingSession] = None,
		qr_url: Optional[str] = None,
		force_fresh_metadata: bool = False,
	) -> IdentityBundle:
		"""Identity for a credential login, or for an already established session.

		``qr_url`` is only used as a fallback when ``existing_session`` turns
		out to be stale. A credential login needs ``school``; ``server``
		defaults to webuntis.com.
		"""
		key = cache_key or f"user:{username or 'session'}@{server or school or 'default'}"
		request = AuthRequest(
			school=school,
			username=username,
			password=password,
			server=server,
			qr_url=qr_url,
			existing_session=existing_session,
			force_fresh_metadata=force_fresh_metadata,
		)
		return await self._get_bundle(key, request)

	async def _get_bundle(self, key: str, request: AuthRequest) -> IdentityBundle:
		# No await between the checks below and registering the pending
		# attempt, so the first caller to miss is the only one to log in.
		now = self._clock()
		pending = self._pending.get(key)
		forced = key in self._force_reauth and not (pending and pending.forced)
		probe: Optional[IdentityBundle] = None

		if forced:
			_LOGGER.info(f"Forced re-authentication for {key}")
			self._cache.pop(key, None)
			self._pending.pop(key, None)
		else:
			if request.force_fresh_metadata and self._cache.pop(key, None) is not None:
				_LOGGER.debug(f"Dropping cached identity for {key} to fetch fresh metadata")

			cached = self._cache.get(key)
			if cached and cached.is_fresh(now, self.settings.safety_buffer):
				if not cached.needs_cookie_check(now, self.settings.cookie_check_interval):
					_LOGGER.debug(f"Using cached identity for {key}")
					return cached
				probe = cached

			if pending:
				_LOGGER.debug(f"Authentication for {key} already in progress, waiting")
				return await asyncio.shield(pending.task)

		task = asyncio.ensure_future(self._run_attempt(key, request, probe, forced))
		task.add_done_callback(_retrieve_exception)
		self._pending[key] = _PendingAuth(task, forced)
		return await asyncio.shield(task)

	def _owns_key(self, key: str) -> bool:
		"""True while the running attempt is still the registered one for ``key``."""
		pending = self._pending.get(key)
		return pending is not None and pending.task is asyncio.current_task()

	async def _run_attempt(
		self,
		key: str,
		request: AuthRequest,
		probe: Optional[IdentityBundle],
		forced: bool,
	) -> IdentityBundle:
		try:
			if probe is not None:
				refreshed = await self._revalidate(key, probe)
				if refreshed is not None:
					return refreshed
				if not self._owns_key(key):
					# Invalidated during the cookie check; join whichever attempt owns the key now
					_LOGGER.debug(f"Cookie check for {key} was superseded, joining the current login")
					return await self._get_bundle(key, request)

			bundle = await self._authenticate(key, request, forced)
			if self._owns_key(key):
				self._cache[key] = bundle
			else:
				_LOGGER.debug(f"Identity for {key} was invalidated during login, not caching")
			return bundle
		finally:
			if self._owns_key(key):
				del self._pending[key]
				if forced:
					self._force_reauth.discard(key)

	async def _revalidate(self, key: str, cached: IdentityBundle) -> Optional[IdentityBundle]:
		"""Probe cached cookies; a refreshed bundle on success, None after eviction."""
		outcome = await self._probe_cookies(cached)
		if outcome.ok:
			refreshed = cached.with_token(outcome.value, self._clock())
			if self._owns_key(key):
				self._cache[key] = refreshed
			_LOGGER.debug(f"Session cookies for {key} still valid")
			return refreshed

		self._record_warning(f"Session for {key} no longer valid, re-authenticating: {outcome.warning}")
		if self._cache.get(key) is cached:
			del self._cache[key]
		return None

	async def _probe_cookies(self, bundle: IdentityBundle) -> Outcome[str]:
		try:
			token = await self.auth.get_bearer_token(bundle.server, bundle.cookie_string)
		except UntisError as err:
			return Outcome(None, warning=str(err))
		return Outcome(token)

	async def _authenticate(self, key: str, request: AuthRequest, forced: bool) -> IdentityBundle:
		material: Any = NOT_APPLICABLE
		for strategy in self._strategies:
			material = await strategy(key, request, forced)
			if material is not NOT_APPLICABLE:
				break
		if material is NOT_APPLICABLE:
			raise UntisAuthError("No username specified and no existing session available")

		for warning in material.warnings:
			self._record_warning(warning)

		server = material.server or request.server
		metadata = material.metadata
		if metadata is None:
			outcome = await self.fetch_app_data(
				server, material.cookies, material.token, keep_raw=request.force_fresh_metadata
			)
			if outcome.warning:
				self._record_warning(outcome.warning)
			metadata = outcome.value

		app_data = metadata.app_data
		person_id = material.person_id
		if not person_id and app_data:
			person_id = ((app_data.get("user") or {}).get("person") or {}).get("id")

		role = targets.role_from_app_data(app_data)
		if role is None and material.person_type:
			role = str(material.person_type).upper()

		now = self._clock()
		bundle = IdentityBundle(
			token=material.token,
			cookie_string=material.cookies,
			tenant_id=metadata.tenant_id,
			school_year_id=metadata.school_year_id,
			app_data=app_data,
			person_id=person_id,
			role=role,
			school=material.school or request.school,
			server=server,
			expires_at=now + self.settings.cache_ttl,
			last_cookie_validation=now,
			raw_app_data=metadata.raw_app_data,
		)
		_LOGGER.info(f"Authenticated {key} (person {person_id}, role {role})")
		return bundle

	async def _login_with_existing_session(self, key: str, request: AuthRequest, forced: bool) -> Any:
		"""Reuse a session somebody else already logged in."""
		session = request.existing_session
		if session is None or forced:
			return NOT_APPLICABLE

		cookies = _session_value(session, "cookie_string")
		if not cookies:
			raise UntisAuthError("No session cookies available from existing login")
		server = _session_value(session, "server") or request.server

		warnings: List[str] = []
		try:
			token = await self.auth.get_bearer_token(server, cookies)
			_LOGGER.info(f"Refreshed token from existing session for {key}")
		except UntisError as err:
			warning = f"Token refresh from existing session failed for {key}: {err}"
			if request.qr_url:
				# Stale cookies: start over with a clean QR login
				self._record_warning(warning)
				self._cache.pop(key, None)
				return NOT_APPLICABLE
			if request.username:
				self._record_warning(warning)
				return NOT_APPLICABLE
			warnings.append(warning)
			token = None

		metadata = None
		app_data = _session_value(session, "app_data")
		if app_data and not request.force_fresh_metadata:
			metadata = AppDataResult(
				tenant_id=_session_value(session, "tenant_id"),
				school_year_id=_session_value(session, "school_year_id"),
				app_data=app_data,
			)

		return LoginMaterial(
			cookies=cookies,
			token=token,
			school=_session_value(session, "school") or request.school,
			server=server,
			person_id=_session_value(session, "person_id"),
			metadata=metadata,
			warnings=warnings,
		)

	async def _login_with_qr(self, key: str, request: AuthRequest, forced: bool) -> Any:
		if not request.qr_url:
			return NOT_APPLICABLE
		_LOGGER.info(f"Starting QR code authentication for {key}")
		result = await self.auth.authenticate_with_qr(request.qr_url)
		token = await self.auth.get_bearer_token(result.server, result.cookies)
		self.auth.cache_session(key, {
			"session_id": result.session_id,
			"person_id": result.person_id,
			"school": result.school,
			"server": result.server,
		}, ttl=self.settings.cache_ttl)
		return LoginMaterial(
			cookies=result.cookies,
			token=token,
			school=result.school,
			server=result.server,
			person_id=result.person_id,
			person_type=result.person_type,
		)

	async def _login_with_credentials(self, key: str, request: AuthRequest, forced: bool) -> Any:
		if not request.username:
			return NOT_APPLICABLE
		if not request.school:
			raise UntisAuthError("School is required for credential login")
		server = request.server or DEFAULT_SERVER
		_LOGGER.info(f"Starting credential authentication for {key}")
		result = await self.auth.authenticate_with_credentials(
			request.school, request.username, request.password, server
		)
		if not result.cookies:
			raise UntisAuthError("No session cookies received")
		token = await self.auth.get_bearer_token(server, result.cookies)
		self.auth.cache_session(key, {
			"session_id": result.session_id,
			"person_id": result.person_id,
			"school": result.school,
			"server": result.server,
		}, ttl=self.settings.cache_ttl)
		return LoginMaterial(
			cookies=result.cookies,
			token=token,
			school=result.school,
			server=result.server,
			person_id=result.person_id,
		)

	async def fetch_app_data(
		self,
		server: str,
		cookies: str,
		token: Optional[str],
		keep_raw: bool = False,
	) -> Outcome[AppDataResult]:
		"""Fetch and compact account metadata.

		A failure here does not fail the login: the result carries
		``app_data=None`` and a warning, and role/child mapping is then
		unavailable.
		"""
		try:
			raw = await self.auth.get_app_data(server, cookies, token)
		except UntisError as err:
			return Outcome(AppDataResult(), warning=f"Failed to fetch app/data from {server}: {err}")

		return Outcome(AppDataResult(
			tenant_id=(raw.get("tenant") or {}).get("id"),
			school_year_id=(raw.get("currentSchoolYear") or {}).get("id"),
			app_data=targets.compact_app_data(raw),
			raw_app_data=raw if keep_raw else None,
		))

	def invalidate_cache(self, cache_key: str) -> bool:
		"""Forget a key after the backend rejected its session.

		The next request for the key performs a full login instead of reusing
		the cookies now known to be bad.
		"""
		if not cache_key:
			_LOGGER.warning("invalidate_cache called with empty cache key")
			return False
		if cache_key not in self._cache and cache_key not in self._pending:
			return False

		self._cache.pop(cache_key, None)
		self._pending.pop(cache_key, None)
		self._force_reauth.add(cache_key)
		self.auth.clear_session_cache(cache_key)
		_LOGGER.info(f"Invalidated cached identity for {cache_key}")
		return True

	def clear_cache(self, cache_key: Optional[str] = None) -> None:
		if cache_key:
			self._cache.pop(cache_key, None)
		else:
			self._cache.clear()

	def get_cache_stats(self) -> Dict[str, Any]:
		return {
			"size": len(self._cache),
			"keys": list(self._cache),
			"pending": list(self._pending),
			"force_reauth": sorted(self._force_reauth),
			"sessions": self.auth.get_session_cache_stats()["keys"],
		}

	async def logout(self, cache_key: str) -> Outcome[bool]:
		"""Log a cached identity out of the backend and drop it. Never raises."""
		bundle = self._cache.pop(cache_key, None)
		self.auth.clear_session_cache(cache_key)
		if bundle is None:
			return Outcome(False, warning=f"No cached identity for {cache_key}")
		outcome = await self.auth.logout(bundle.server, bundle.school, bundle.cookie_string)
		if outcome.warning:
			self._record_warning(outcome.warning)
		return outcome

	def resolve_school_and_server(
		self,
		student: Dict[str, Any],
		module_config: Optional[Dict[str, Any]] = None,
	) -> Dict[str, Optional[str]]:
		return targets.resolve_school_and_server(validate_student(student), validate_module_config(module_config))

	def build_rest_targets(
		self,
		student: Dict[str, Any],
		module_config: Optional[Dict[str, Any]],
		school: Optional[str],
		server: Optional[str],
		own_person_id: Optional[int],
		bearer_token: Optional[str] = None,
		app_data: Optional[Dict[str, Any]] = None,
		role: Optional[str] = None,
	) -> List[RestTarget]:
		return targets.build_rest_targets(
			validate_student(student),
			validate_module_config(module_config),
			school,
			server,
			own_person_id,
			bearer_token=bearer_token,
			app_data=app_data,
			role=role,
		)

	def targets_for_bundle(
		self,
		student: Dict[str, Any],
		module_config: Optional[Dict[str, Any]],
		bundle: IdentityBundle,
	) -> List[RestTarget]:
		"""Targets for a student using the identity a login produced."""
		return self.build_rest_targets(
			student,
			module_config,
			bundle.school,
			bundle.server,
			bundle.person_id,
			bearer_token=bundle.token,
			app_data=bundle.app_data,
			role=bundle.role,
		)

	@staticmethod
	def derive_students_from_app_data(app_data: Optional[Dict[str, Any]]) -> List[DerivedStudent]:
		return targets.derive_students_from_app_data(app_data)
