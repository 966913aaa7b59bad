"""Create an account (admin by default) or reset its password and role."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from sqlalchemy import select
from werkzeug.security import generate_password_hash

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from servio import create_app  # noqa: E402
from servio.extensions import db  # noqa: E402
from servio.models import ROLES, AuthAccount, User  # noqa: E402


def create_account(email: str, password: str, role: str = "admin", name: str | None = None) -> None:
    app = create_app()
    email = email.strip().lower()

    with app.app_context():
        user = db.session.scalar(select(User).where(User.email == email))
        if user is None:
            user = User(name=name or f"{role.title()} User", email=email, role=role)
            db.session.add(user)
            db.session.flush()
            print(f"Created {role} account {email}")
        elif user.role != role:
            print(f"Changing role of {email} from '{user.role}' to '{role}'")
            user.role = role

        account = db.session.get(AuthAccount, user.user_id)
        if account is None:
            account = AuthAccount(user_id=user.user_id)
            db.session.add(account)

        account.password_hash = generate_password_hash(password)
        db.session.commit()
        print(f"Password for '{email}' has been set.")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create or update an account with a password.")
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("--role", choices=ROLES, default="admin")
    parser.add_argument("--name")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    create_account(args.email, args.password, args.role, args.name)


if __name__ == "__main__":
    main()
