"""Shared fixtures for the untis_auth tests."""

import base64
import json
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from multidict import CIMultiDict

from untis_auth.config import BrokerSettings
from untis_auth.models import CredentialLoginResult, Outcome, QrLoginResult

QR_URL = "untis://setschool?url=demo.webuntis.com&school=demo-school&user=max&key=JBSWY3DPEHPK3PXP"

APP_DATA = {
	"tenant": {"id": 77, "displayName": "Demo School"},
	"currentSchoolYear": {"id": 2026, "name": "2026/27", "timeGrid": {"units": []}},
	"holidays": [{"name": "Autumn break"}],
	"user": {
		"person": {"id": 4711, "displayName": "Max"},
		"roles": ["STUDENT"],
		"students": [],
		"permissions": ["lots", "of", "things"],
	},
	"settings": {"unused": True},
}


class MockResponse:
	"""Stand-in for an aiohttp response used as ``async with``."""

	def __init__(self, status: int, json_data: Any = None, text_data: Optional[str] = None, headers=None):
		self.status = status
		if text_data is None and json_data is not None:
			text_data = json.dumps(json_data)
		self._text_data = text_data or ""
		self.headers = CIMultiDict(headers or [])
		if json_data is not None and "Content-Type" not in self.headers:
			self.headers["Content-Type"] = "application/json"

	async def text(self):
		return self._text_data

	async def __aenter__(self):
		return self

	async def __aexit__(self, exc_type, exc_val, exc_tb):
		pass


class FakeClock:
	"""Manually advanced clock, in seconds."""

	def __init__(self, now: float = 1_000_000.0):
		self.now = now

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


def make_jwt(payload: Dict[str, Any]) -> str:
	def encode(part: Dict[str, Any]) -> str:
		return base64.urlsafe_b64encode(json.dumps(part).encode()).rstrip(b"=").decode()

	return f"{encode({'alg': 'HS256', 'typ': 'JWT'})}.{encode(payload)}.signature"


@pytest.fixture
def clock():
	return FakeClock()


@pytest.fixture
def settings():
	return BrokerSettings()


@pytest.fixture
def mock_session():
	session = MagicMock()
	session.get = MagicMock()
	session.post = MagicMock()
	session.close = AsyncMock()
	return session


@pytest.fixture
def fake_auth():
	"""Protocol client double whose logins always succeed."""
	auth = MagicMock()
	auth.authenticate_with_qr = AsyncMock(return_value=QrLoginResult(
		cookies="JSESSIONID=qr-session; schoolname=_ZGVtbw==",
		session_id="qr-session",
		person_id=4711,
		person_type="STUDENT",
		school="demo-school",
		server="demo.webuntis.com",
	))
	auth.authenticate_with_credentials = AsyncMock(return_value=CredentialLoginResult(
		cookies="JSESSIONID=cred-session",
		session_id="cred-session",
		person_id=4711,
		school="demo-school",
		server="demo.webuntis.com",
	))
	auth.get_bearer_token = AsyncMock(return_value="token-1")
	auth.get_app_data = AsyncMock(return_value=APP_DATA)
	auth.logout = AsyncMock(return_value=Outcome(True))
	auth.close = AsyncMock()
	auth.get_session_cache_stats = MagicMock(return_value={"size": 0, "keys": []})
	return auth
