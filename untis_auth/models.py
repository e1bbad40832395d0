"""Data models for the WebUntis authentication layer."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass
class IdentityBundle:
	"""A completed, cacheable login for one cache key."""
	token: Optional[str]
	cookie_string: str
	tenant_id: Any = None
	school_year_id: Any = None
	app_data: Optional[Dict[str, Any]] = None
	person_id: Optional[int] = None
	role: Optional[str] = None
	school: Optional[str] = None
	server: Optional[str] = None
	expires_at: float = 0.0
	last_cookie_validation: Optional[float] = None
	raw_app_data: Optional[Dict[str, Any]] = None

	def is_fresh(self, now: float, buffer_seconds: float) -> bool:
		"""True when the bundle stays valid for at least ``buffer_seconds``."""
		return self.expires_at > now + buffer_seconds

	def needs_cookie_check(self, now: float, interval_seconds: float) -> bool:
		if self.last_cookie_validation is None:
			return True
		return now - self.last_cookie_validation >= interval_seconds

	def with_token(self, token: str, validated_at: float) -> "IdentityBundle":
		return replace(self, token=token, last_cookie_validation=validated_at)


@dataclass
class RestTarget:
	"""Which credentials and which person a data query should use."""
	mode: str
	school: Optional[str]
	server: Optional[str]
	username: Optional[str] = None
	password: Optional[str] = None
	person_id: Optional[int] = None
	role: Optional[str] = None


@dataclass
class QrLoginResult:
	"""Result of the QR/OTP login protocol."""
	cookies: str
	session_id: str
	person_id: int
	school: str
	server: str
	person_type: Optional[str] = None


@dataclass
class CredentialLoginResult:
	"""Result of the username/password login protocol."""
	cookies: str
	session_id: Optional[str]
	person_id: Optional[int]
	school: str
	server: str


@dataclass
class AppDataResult:
	"""Account metadata extracted from the app/data endpoint."""
	tenant_id: Any = None
	school_year_id: Any = None
	app_data: Optional[Dict[str, Any]] = None
	raw_app_data: Optional[Dict[str, Any]] = None


@dataclass
class DerivedStudent:
	"""A child linked to a parent account."""
	title: str
	student_id: int
	image_url: Optional[str] = None


@dataclass
class Outcome(Generic[T]):
	"""Result of a best-effort step: a value, plus a warning when it degraded."""
	value: Optional[T] = None
	warning: Optional[str] = None

	@property
	def ok(self) -> bool:
		return self.warning is None


@dataclass
class LoginMaterial:
	"""Session material produced by one login strategy."""
	cookies: str
	token: Optional[str]
	school: Optional[str] = None
	server: Optional[str] = None
	person_id: Optional[int] = None
	person_type: Optional[str] = None
	metadata: Optional[AppDataResult] = None
	warnings: List[str] = field(default_factory=list)
