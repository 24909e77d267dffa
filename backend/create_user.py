#!/usr/bin/env python3
"""
Harbormaster User Tool
Command-line utility to create users and issue their API keys
"""

import sys
import argparse
from config.settings import AppConfig
from database import (
    DatabaseManager, DuplicateObjectError, ObjectNotFoundError,
    ENDPOINT_ROLE_ADMIN, ENDPOINT_ROLE_STANDARD, ROLE_ADMIN, ROLE_STANDARD,
)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Harbormaster User Tool")
    parser.add_argument("username", nargs="?", help="Username to create")
    parser.add_argument("--admin", "-a", action="store_true", help="Create an administrator")
    parser.add_argument("--endpoint", "-e", type=int, help="Endpoint ID to authorize the user on")
    parser.add_argument("--endpoint-admin", action="store_true",
                        help="Grant the endpoint_admin role instead of standard access")
    parser.add_argument("--list", "-l", action="store_true", help="List all usernames")

    args = parser.parse_args(argv)

    db = DatabaseManager(AppConfig.DATABASE_PATH)

    if args.list:
        users = db.list_users()
        if users:
            print("Existing users:")
            for user in users:
                print(f"  - {user}")
        else:
            print("No users found in database.")
        return 0

    if not args.username:
        parser.print_usage()
        print("Error: username is required")
        return 1

    if args.endpoint_admin and args.endpoint is None:
        print("Error: --endpoint-admin requires --endpoint")
        return 1

    try:
        user, api_key = db.create_user(args.username, ROLE_ADMIN if args.admin else ROLE_STANDARD)
    except DuplicateObjectError:
        print(f"Error: User '{args.username}' already exists.")
        return 1

    print(f"✓ Created {'administrator' if args.admin else 'user'}: {user.username}")

    if args.endpoint is not None:
        role = ENDPOINT_ROLE_ADMIN if args.endpoint_admin else ENDPOINT_ROLE_STANDARD
        try:
            db.grant_endpoint_access(args.endpoint, user.id, role)
        except ObjectNotFoundError:
            print(f"Error: Endpoint {args.endpoint} not found. The user was created without endpoint access.")
            print(f"API key: {api_key}")
            return 1
        print(f"✓ Granted {role} access to endpoint {args.endpoint}")

    print(f"API key: {api_key}")
    print("\n⚠️  Please save this key securely. It cannot be shown again.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nOperation cancelled.")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
