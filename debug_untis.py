#!/usr/bin/env python3
"""
WebUntis Debug Script

Runs one login through the AuthBroker and prints what it produced: role,
person, linked students, REST targets and cache state.

Usage:
    python3 debug_untis.py

Credentials are read from a .env file or the environment:
    UNTIS_QRCODE=untis://setschool?url=...&school=...&user=...&key=...

or, for a username/password (parent) login:
    UNTIS_SCHOOL=your-school
    UNTIS_SERVER=your-school.webuntis.com
    UNTIS_USERNAME=parent_username
    UNTIS_PASSWORD=your_password_here
    UNTIS_STUDENT_TITLE=Lisa    (optional, picks the child by name)
"""

import asyncio
import getpass
import json
import logging
import os
import sys

from dotenv import load_dotenv

from untis_auth.broker import AuthBroker
from untis_auth.config import settings_from_env
from untis_auth.exceptions import UntisConnectionError, UntisError, error_to_warning

load_dotenv()

logging.basicConfig(
	level=logging.DEBUG if os.getenv("UNTIS_DEBUG") else logging.INFO,
	format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


async def debug_login(student: dict, module_config: dict) -> bool:
	"""Log in once, show the resulting identity, then log out again."""
	print("🔍 Debugging WebUntis Login")
	print("=" * 50)

	async with AuthBroker(settings=settings_from_env()) as broker:
		location = broker.resolve_school_and_server(student, module_config)
		print(f"\n1️⃣ School: {location['school']}  Server: {location['server']}")

		print("\n2️⃣ Authenticating...")
		try:
			if student.get("qrcode"):
				bundle = await broker.get_auth_from_qr(student["qrcode"])
			else:
				bundle = await broker.get_auth(
					school=location["school"],
					username=module_config.get("username"),
					password=module_config.get("password"),
					server=location["server"],
				)
		except UntisConnectionError as e:
			print(f"   ❌ Connection failed: {e}")
			return False
		except UntisError as e:
			print(f"   ❌ {error_to_warning(e, {'studentTitle': student.get('title'), **location})}")
			return False

		print("   ✅ Authentication successful!")
		print(f"   Person ID: {bundle.person_id}")
		print(f"   Role: {bundle.role or 'unknown'}")
		print(f"   Tenant: {bundle.tenant_id}  School year: {bundle.school_year_id}")
		print(f"   Bearer token: {'yes' if bundle.token else 'no'}")

		print("\n3️⃣ Linked students:")
		students = broker.derive_students_from_app_data(bundle.app_data)
		if not students:
			print("   (none)")
		for child in students:
			print(f"   👤 {child.title} (id {child.student_id})")

		print("\n4️⃣ REST targets:")
		for target in broker.targets_for_bundle(student, module_config, bundle):
			print(f"   🎯 mode={target.mode} person={target.person_id} role={target.role} server={target.server}")

		print("\n5️⃣ Cache state:")
		print(json.dumps(broker.get_cache_stats(), indent=2))

		for warning in broker.warnings:
			print(f"   ⚠️  {warning}")

		key = next(iter(broker.get_cache_stats()["keys"]), None)
		if key:
			outcome = await broker.logout(key)
			print(f"\n6️⃣ Logout: {'✅' if outcome.ok else '⚠️  ' + outcome.warning}")

	return True


def read_config() -> tuple:
	"""Collect student and module config from the environment or a prompt."""
	qrcode = os.getenv("UNTIS_QRCODE")
	student = {"title": os.getenv("UNTIS_STUDENT_TITLE"), "qrcode": qrcode}
	module_config = {
		"school": os.getenv("UNTIS_SCHOOL"),
		"server": os.getenv("UNTIS_SERVER"),
		"username": os.getenv("UNTIS_USERNAME"),
		"password": os.getenv("UNTIS_PASSWORD"),
	}

	if not qrcode and not module_config["username"]:
		print("No credentials found in environment or .env file")
		module_config["school"] = input("School: ").strip()
		module_config["server"] = input("Server (e.g. demo.webuntis.com): ").strip()
		module_config["username"] = input("Username: ").strip()
		module_config["password"] = getpass.getpass("Password: ")
	elif module_config["username"] and not module_config["password"]:
		module_config["password"] = getpass.getpass("Password: ")

	return student, module_config


async def main():
	student, module_config = read_config()
	if not student["qrcode"] and not module_config["username"]:
		print("❌ Need a QR code or a username")
		return 1
	return 0 if await debug_login(student, module_config) else 1


if __name__ == "__main__":
	sys.exit(asyncio.run(main()))
