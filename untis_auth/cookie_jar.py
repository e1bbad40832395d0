"""Per-domain cookie store fed from Set-Cookie response headers."""

import logging
from typing import Any, Dict, Iterable, List

_LOGGER = logging.getLogger(__name__)


def _set_cookie_values(headers: Any) -> List[str]:
	"""Return the raw Set-Cookie header values from any header container."""
	if headers is None:
		return []
	if isinstance(headers, str):
		return [headers]
	# aiohttp's CIMultiDictProxy
	if hasattr(headers, "getall"):
		return list(headers.getall("Set-Cookie", []))
	if isinstance(headers, dict):
		value = headers.get("Set-Cookie", headers.get("set-cookie"))
		if value is None:
			return []
		return [value] if isinstance(value, str) else list(value)
	if isinstance(headers, Iterable):
		return [h for h in headers if isinstance(h, str)]
	return []


class CookieJar:
	"""Name/value cookies keyed by ``domain:name``.

	Attributes such as Path or Expires are ignored; a later cookie with the
	same name replaces the earlier one.
	"""

	def __init__(self) -> None:
		self._cookies: Dict[str, str] = {}

	def record_cookies(self, headers: Any, domain: str) -> None:
		for cookie_str in _set_cookie_values(headers):
			name_value = cookie_str.split(";", 1)[0]
			name, sep, value = name_value.partition("=")
			name = name.strip()
			value = value.strip()
			if not sep or not name or not value:
				_LOGGER.debug(f"Skipping malformed cookie header for {domain}")
				continue
			# WebUntis sometimes sends quoted values
			if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
				value = value[1:-1]
			self._cookies[f"{domain}:{name}"] = value

	def cookie_header_for(self, domain: str) -> str:
		prefix = f"{domain}:"
		return "; ".join(
			f"{key[len(prefix):]}={value}"
			for key, value in self._cookies.items()
			if key.startswith(prefix)
		)

	def clear(self, domain: str) -> None:
		prefix = f"{domain}:"
		for key in [k for k in self._cookies if k.startswith(prefix)]:
			del self._cookies[key]

	def clear_all(self) -> None:
		self._cookies.clear()

	def __len__(self) -> int:
		return len(self._cookies)
