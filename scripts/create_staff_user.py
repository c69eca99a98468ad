import argparse
import getpass
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from referralweb.auth import USERS_PATH, set_staff_user


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or reset a staff dashboard account.")
    parser.add_argument("username")
    parser.add_argument("--display-name", default="")
    parser.add_argument("--password", default=os.getenv("REFERRAL_STAFF_PASSWORD", ""))
    args = parser.parse_args()

    password = args.password or getpass.getpass("Password: ")
    try:
        user = set_staff_user(args.username, password, display_name=args.display_name)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Saved staff user '{user.username}' to {USERS_PATH}")


if __name__ == "__main__":
    main()
