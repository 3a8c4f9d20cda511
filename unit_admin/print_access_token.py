"""Print a bearer token for an existing user to stdout.

Usage:
    python -m unit_admin.print_access_token admin@example.com
"""
import sys

from unit_admin.auth.jwt_handler import create_access_token
from unit_admin.database import SessionLocal
from unit_admin.models.unit import Unit  # noqa: F401
from unit_admin.models.user import User


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("Usage: python -m unit_admin.print_access_token <email>", file=sys.stderr)
        sys.exit(2)

    email = args[0].strip().lower()
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
    finally:
        db.close()

    if user is None:
        print(f"No user with email {email}", file=sys.stderr)
        sys.exit(1)

    print(create_access_token(user.email, role=user.role))


if __name__ == "__main__":
    main()
