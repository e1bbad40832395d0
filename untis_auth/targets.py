"""Pure helpers that turn account metadata and student config into targets.

Nothing in here performs I/O; everything is safe to call from any context.
"""

import base64
import binascii
import json
import logging
import math
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from .const import (
	DEFAULT_SERVER,
	MODE_PARENT,
	MODE_QR,
	ROLE_LEGAL_GUARDIAN,
	ROLE_STUDENT,
	ROLE_TEACHER,
)
from .models import DerivedStudent, RestTarget

_LOGGER = logging.getLogger(__name__)

# Highest priority first
ROLE_PRIORITY = (ROLE_TEACHER, ROLE_STUDENT, ROLE_LEGAL_GUARDIAN)


def _to_int(value: Any) -> Optional[int]:
	"""Coerce a backend id to int, or None if it is not numeric."""
	if value is None or isinstance(value, bool):
		return None
	if isinstance(value, int):
		return value
	if isinstance(value, float):
		return int(value) if math.isfinite(value) else None
	if isinstance(value, str):
		try:
			number = float(value.strip())
		except ValueError:
			return None
		return int(number) if math.isfinite(number) else None
	return None


def _first_present(mapping: Dict[str, Any], *keys: str) -> Any:
	for key in keys:
		if mapping.get(key) is not None:
			return mapping[key]
	return None


def parse_qr_url(qr_url: Optional[str]) -> Dict[str, Optional[str]]:
	"""Extract school, server url, OTP key and user from a QR code URL."""
	result: Dict[str, Optional[str]] = {"school": None, "url": None, "key": None, "user": None}
	if not qr_url:
		return result
	query = parse_qs(urlparse(qr_url).query)
	for name in result:
		values = query.get(name)
		if values and values[0]:
			result[name] = values[0]
	return result


def normalize_roles(roles: Any) -> List[str]:
	"""Turn any role shape into an ordered list of unique uppercase strings.

	Accepts a list of strings, a list of ``{"role": ...}``/``{"name": ...}``
	objects, a bare string or a bare object.
	"""
	if roles is None:
		return []
	if not isinstance(roles, (list, tuple)):
		roles = [roles]

	normalized: List[str] = []
	for item in roles:
		if isinstance(item, dict):
			item = item.get("role") or item.get("name")
		if not isinstance(item, str) or not item.strip():
			continue
		role = item.strip().upper()
		if role not in normalized:
			normalized.append(role)
	return normalized


def role_from_app_data(app_data: Optional[Dict[str, Any]]) -> Optional[str]:
	"""Pick the effective role of the logged-in user."""
	if not app_data:
		return None
	user = app_data.get("user") or {}
	roles = normalize_roles(user.get("roles"))
	if not roles:
		return None
	for candidate in ROLE_PRIORITY:
		if candidate in roles:
			return candidate
	return roles[0]


def person_id_from_jwt(token: Optional[str]) -> Optional[int]:
	"""Read ``person_id`` from a JWT payload. Best effort, never raises."""
	if not token or not isinstance(token, str):
		return None
	parts = token.split(".")
	if len(parts) != 3:
		_LOGGER.debug(f"Token is not a JWT ({len(parts)} segments)")
		return None

	segment = parts[1].replace("+", "-").replace("/", "_")
	segment += "=" * (-len(segment) % 4)
	try:
		payload = json.loads(base64.urlsafe_b64decode(segment).decode("utf-8"))
	except (binascii.Error, ValueError) as err:
		_LOGGER.debug(f"Could not decode JWT payload: {err}")
		return None

	if not isinstance(payload, dict):
		return None
	return _to_int(payload.get("person_id"))


def compact_app_data(app_data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
	"""Keep only the app/data fields later logic depends on."""
	if not app_data:
		return None

	school_year = app_data.get("currentSchoolYear")
	user = app_data.get("user")
	tenant = app_data.get("tenant")
	return {
		"holidays": app_data.get("holidays") or [],
		"currentSchoolYear": {
			"id": school_year.get("id"),
			"timeGrid": school_year.get("timeGrid"),
		} if school_year else None,
		"user": {
			"students": user.get("students") or [],
			"person": user.get("person"),
			"roles": user.get("roles") or [],
		} if user else None,
		"tenant": {"id": tenant.get("id")} if tenant else None,
	}


def derive_students_from_app_data(app_data: Optional[Dict[str, Any]]) -> List[DerivedStudent]:
	"""List the children of a parent account from app/data."""
	if not app_data or not isinstance(app_data.get("user"), dict):
		return []
	students = app_data["user"].get("students")
	if not isinstance(students, list):
		return []

	derived: List[DerivedStudent] = []
	for idx, entry in enumerate(students):
		if not isinstance(entry, dict):
			continue
		student_id = _to_int(_first_present(entry, "id", "studentId", "personId"))
		if student_id is None:
			continue
		title = entry.get("displayName") or entry.get("name") or f"Student {idx + 1}"
		derived.append(DerivedStudent(title=title, student_id=student_id, image_url=entry.get("imageUrl")))
	return derived


def resolve_school_and_server(
	student: Dict[str, Any],
	module_config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Optional[str]]:
	"""Work out school and server for a student entry."""
	module_config = module_config or {}
	school = student.get("school") or module_config.get("school")
	server = student.get("server") or module_config.get("server")

	if (not school or not server) and student.get("qrcode"):
		qr = parse_qr_url(student["qrcode"])
		school = school or qr["school"]
		server = server or qr["url"]

	if server and server.startswith("http"):
		hostname = urlparse(server).hostname
		if hostname:
			server = hostname
		else:
			_LOGGER.debug(f"Could not parse hostname from server {server}")

	return {"school": school, "server": server}


def _match_child(children: List[Dict[str, Any]], title: Optional[str]) -> Dict[str, Any]:
	if title:
		for child in children:
			if title in (child.get("displayName") or "") or title in (child.get("name") or ""):
				return child
	return children[0]


def build_rest_targets(
	student: Dict[str, Any],
	module_config: Optional[Dict[str, Any]],
	school: Optional[str],
	server: Optional[str],
	own_person_id: Optional[int],
	bearer_token: Optional[str] = None,
	app_data: Optional[Dict[str, Any]] = None,
	role: Optional[str] = None,
) -> List[RestTarget]:
	"""Decide which backend person and credentials to query for one student.

	The logged-in person (``own_person_id``) is not always the person whose
	data is wanted: a parent login reads a child's data. Returns one target
	per configured login mode; both a ``qr`` and a ``parent`` target can be
	returned when both are configured.
	"""
	module_config = module_config or {}
	use_qr_login = bool(student.get("qrcode"))
	has_own_credentials = all(student.get(k) for k in ("username", "password", "school", "server"))
	has_parent_creds = bool(module_config.get("username") and module_config.get("password"))
	is_parent_login = has_parent_creds and not use_qr_login and not has_own_credentials

	configured_id = _to_int(student.get("student_id"))
	auto_discovered = bool(student.get("auto_discovered"))

	effective_id: Optional[int] = None
	if role == ROLE_TEACHER:
		effective_id = own_person_id
		_LOGGER.debug(f"Teacher login: querying own person {own_person_id}")
	else:
		if configured_id is not None and not auto_discovered:
			effective_id = configured_id
			_LOGGER.debug(f"Using configured student_id={effective_id}")
		elif configured_id is not None:
			effective_id = configured_id
			_LOGGER.debug(f"Using auto-discovered student_id={effective_id}")

		if effective_id is None and is_parent_login:
			children = [
				c for c in (((app_data or {}).get("user") or {}).get("students") or [])
				if isinstance(c, dict)
			]
			if children:
				child = _match_child(children, student.get("title"))
				effective_id = _to_int(_first_present(child, "id", "studentId", "personId"))
				child_name = child.get("displayName") or child.get("name")
				_LOGGER.debug(f"Parent login: mapped person {own_person_id} to child {effective_id} ({child_name})")
			else:
				_LOGGER.warning(f"Parent login (person {own_person_id}) but app data lists no students")
		elif effective_id is None and (use_qr_login or has_own_credentials):
			effective_id = own_person_id
			_LOGGER.debug(f"Student login: person {own_person_id} is the student")

	if effective_id is None and bearer_token:
		effective_id = person_id_from_jwt(bearer_token)
		if effective_id is not None:
			_LOGGER.debug(f"Using person_id {effective_id} from bearer token")

	target_role = role
	if role == ROLE_LEGAL_GUARDIAN and effective_id is not None and effective_id != own_person_id:
		target_role = ROLE_STUDENT

	targets: List[RestTarget] = []
	if use_qr_login and school and server:
		targets.append(RestTarget(
			mode=MODE_QR,
			school=school,
			server=server,
			person_id=effective_id,
			role=target_role,
		))

	if has_parent_creds and effective_id is not None:
		targets.append(RestTarget(
			mode=MODE_PARENT,
			school=school or module_config.get("school"),
			server=server or module_config.get("server") or DEFAULT_SERVER,
			username=module_config.get("username"),
			password=module_config.get("password"),
			person_id=effective_id,
			role=target_role,
		))

	return targets
