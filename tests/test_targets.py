"""Tests for the pure target and metadata helpers."""

import pytest

from untis_auth.models import DerivedStudent, RestTarget
from untis_auth.targets import (
	build_rest_targets,
	compact_app_data,
	derive_students_from_app_data,
	normalize_roles,
	parse_qr_url,
	person_id_from_jwt,
	resolve_school_and_server,
	role_from_app_data,
)

from conftest import APP_DATA, QR_URL, make_jwt

PARENT_CONFIG = {"username": "parent", "password": "pw", "school": "demo-school", "server": "demo.webuntis.com"}


def test_parse_qr_url():
	assert parse_qr_url(QR_URL) == {
		"school": "demo-school",
		"url": "demo.webuntis.com",
		"key": "JBSWY3DPEHPK3PXP",
		"user": "max",
	}
	assert parse_qr_url("untis://setschool?school=x")["url"] is None
	assert parse_qr_url(None) == {"school": None, "url": None, "key": None, "user": None}


@pytest.mark.parametrize("roles,expected", [
	(["STUDENT", "TEACHER"], "TEACHER"),
	(["legal_guardian", "student"], "STUDENT"),
	(["LEGAL_GUARDIAN"], "LEGAL_GUARDIAN"),
	([{"role": "teacher"}], "TEACHER"),
	([{"name": "Staff"}], "STAFF"),
	("student", "STUDENT"),
	({"role": "teacher"}, "TEACHER"),
	([], None),
	(None, None),
])
def test_role_from_app_data(roles, expected):
	assert role_from_app_data({"user": {"roles": roles}}) == expected


def test_role_from_missing_app_data():
	assert role_from_app_data(None) is None
	assert role_from_app_data({}) is None


def test_normalize_roles_dedupes_in_order():
	assert normalize_roles(["student", "STUDENT", " Teacher ", "", 5]) == ["STUDENT", "TEACHER"]


def test_person_id_from_jwt():
	assert person_id_from_jwt(make_jwt({"person_id": 9999})) == 9999
	assert person_id_from_jwt(make_jwt({"person_id": "123"})) == 123
	assert person_id_from_jwt(make_jwt({"sub": "x"})) is None


@pytest.mark.parametrize("token", [None, "", "a.b", "a.b.c.d", "header.!!!notbase64!!!.sig", "header.bm90IGpzb24.sig"])
def test_person_id_from_bad_tokens(token):
	assert person_id_from_jwt(token) is None


def test_compact_app_data():
	compact = compact_app_data(APP_DATA)

	assert compact == {
		"holidays": [{"name": "Autumn break"}],
		"currentSchoolYear": {"id": 2026, "timeGrid": {"units": []}},
		"user": {"students": [], "person": {"id": 4711, "displayName": "Max"}, "roles": ["STUDENT"]},
		"tenant": {"id": 77},
	}
	assert compact_app_data(None) is None
	assert compact_app_data({"holidays": None})["user"] is None


def test_derive_students():
	app_data = {"user": {"students": [
		{"id": 1, "displayName": "X", "imageUrl": "https://img/x.png"},
		{"studentId": "2"},
		{"personId": "not-a-number", "displayName": "Skipped"},
		"garbage",
	]}}

	students = derive_students_from_app_data(app_data)

	assert students == [
		DerivedStudent(title="X", student_id=1, image_url="https://img/x.png"),
		DerivedStudent(title="Student 2", student_id=2),
	]
	assert derive_students_from_app_data({"user": {"students": None}}) == []
	assert derive_students_from_app_data(None) == []


def test_resolve_school_and_server():
	assert resolve_school_and_server({"qrcode": QR_URL}) == {"school": "demo-school", "server": "demo.webuntis.com"}
	assert resolve_school_and_server(
		{"server": "https://other.webuntis.com/WebUntis"}, {"school": "fallback"},
	) == {"school": "fallback", "server": "other.webuntis.com"}
	# Explicit values win over the QR code
	assert resolve_school_and_server({"qrcode": QR_URL, "school": "mine"})["school"] == "mine"


def test_teacher_targets_own_person():
	targets = build_rest_targets(
		{"qrcode": QR_URL, "student_id": 5}, {}, "demo-school", "demo.webuntis.com", 4711, role="TEACHER",
	)

	assert targets == [RestTarget(mode="qr", school="demo-school", server="demo.webuntis.com", person_id=4711, role="TEACHER")]


def test_qr_student_targets_own_person():
	targets = build_rest_targets({"qrcode": QR_URL}, {}, "demo-school", "demo.webuntis.com", 4711, role="STUDENT")

	assert len(targets) == 1
	assert targets[0].mode == "qr"
	assert targets[0].person_id == 4711
	assert targets[0].role == "STUDENT"


def test_configured_student_id_wins():
	targets = build_rest_targets(
		{"qrcode": QR_URL, "student_id": 42}, {}, "demo-school", "demo.webuntis.com", 4711, role="LEGAL_GUARDIAN",
	)

	assert targets[0].person_id == 42
	# A guardian reading another person's data is queried as that student
	assert targets[0].role == "STUDENT"


def test_auto_discovered_student_id():
	targets = build_rest_targets(
		{"title": "Lisa", "student_id": 222, "auto_discovered": True},
		PARENT_CONFIG, "demo-school", "demo.webuntis.com", 12, role="LEGAL_GUARDIAN",
	)

	assert targets == [RestTarget(
		mode="parent",
		school="demo-school",
		server="demo.webuntis.com",
		username="parent",
		password="pw",
		person_id=222,
		role="STUDENT",
	)]


def test_parent_login_matches_child_by_title():
	app_data = {"user": {"students": [
		{"id": 111, "displayName": "Tom Example"},
		{"id": 222, "displayName": "Lisa Example"},
	]}}

	lisa = build_rest_targets({"title": "Lisa"}, PARENT_CONFIG, None, None, 12, app_data=app_data, role="LEGAL_GUARDIAN")
	unknown = build_rest_targets({"title": "Nobody"}, PARENT_CONFIG, None, None, 12, app_data=app_data, role="LEGAL_GUARDIAN")

	assert lisa[0].person_id == 222
	assert lisa[0].school == "demo-school"
	assert lisa[0].server == "demo.webuntis.com"
	assert unknown[0].person_id == 111


def test_parent_login_without_children_yields_no_target():
	targets = build_rest_targets({"title": "Lisa"}, {"username": "p", "password": "pw"}, None, None, 12, app_data={"user": {}})

	assert targets == []


def test_parent_target_defaults_server():
	targets = build_rest_targets({"student_id": 5}, {"username": "p", "password": "pw"}, "s", None, 12)

	assert targets[0].server == "webuntis.com"


def test_jwt_fallback_for_person_id():
	targets = build_rest_targets(
		{"qrcode": QR_URL}, {}, "demo-school", "demo.webuntis.com", None,
		bearer_token=make_jwt({"person_id": 9999}),
	)

	assert targets[0].person_id == 9999


def test_qr_and_parent_targets_together():
	targets = build_rest_targets(
		{"qrcode": QR_URL, "student_id": 42}, PARENT_CONFIG, "demo-school", "demo.webuntis.com", 4711, role="STUDENT",
	)

	assert [t.mode for t in targets] == ["qr", "parent"]
	assert {t.person_id for t in targets} == {42}


def test_qr_target_needs_school_and_server():
	assert build_rest_targets({"qrcode": QR_URL}, {}, None, "demo.webuntis.com", 4711) == []
