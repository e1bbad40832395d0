"""Tests for mapping errors to user-facing warnings."""

import asyncio

import pytest

from untis_auth.exceptions import (
	QrAuthFailed,
	UntisAPIError,
	UntisConnectionError,
	UntisError,
	error_to_warning,
)

CONTEXT = {"studentTitle": "Lisa", "school": "demo-school", "server": "demo.webuntis.com"}


@pytest.mark.parametrize("error,expected", [
	(QrAuthFailed("rejected"), 'Authentication failed for "Lisa"'),
	(UntisAPIError("forbidden", status=403), 'Authentication failed for "Lisa"'),
	(UntisConnectionError("token/new: connection error"), 'Cannot connect to WebUntis server "demo.webuntis.com"'),
	(asyncio.TimeoutError(), 'Cannot connect to WebUntis server "demo.webuntis.com"'),
	(UntisAPIError("maintenance", status=503), "temporarily unavailable (HTTP 503)"),
	(UntisError("unknown school"), 'School "demo-school" not found'),
	(UntisAPIError("bad request", status=400), 'HTTP 400 error for "Lisa": bad request'),
	(RuntimeError("boom"), "Error talking to WebUntis: boom"),
])
def test_error_to_warning(error, expected):
	assert expected in error_to_warning(error, CONTEXT)


def test_error_to_warning_defaults():
	assert error_to_warning(None) is None
	assert error_to_warning(QrAuthFailed("x")).startswith('Authentication failed for "Student"')
	assert 'server "server"' in error_to_warning(UntisConnectionError("down"))
