import argparse
import getpass
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kartapi.accounts import MIN_PASSWORD_LENGTH, AccountService
from kartapi.config import Settings, load_settings
from kartapi.database import Database
from kartapi.errors import KartError
from kartapi.models import Role
from kartapi.security import PasswordHasher, TokenService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a Carrera Kart API user")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Unique email address for login")
    parser.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.USER.value,
        help="Role granted to the new account (default: USER)",
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to KART_DB_PATH or data/kart.sqlite3)",
    )
    return parser.parse_args()


def prompt_for_password() -> str:
    for _ in range(3):
        password = getpass.getpass("Password: ")
        confirm = getpass.getpass("Confirm password: ")
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        if len(password) < MIN_PASSWORD_LENGTH:
            print(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def main() -> int:
    args = parse_args()
    password = prompt_for_password()

    settings = load_settings()
    if args.db_path:
        settings = Settings.from_dict({"database_path": args.db_path}, settings)

    database = Database(settings.database_path)
    database.initialize()

    accounts = AccountService(
        database,
        PasswordHasher(rounds=settings.bcrypt_rounds),
        TokenService(settings.jwt_secret, ttl=settings.jwt_expires_in),
    )
    try:
        user = accounts.create_user(args.name.strip(), args.email.strip(), password, Role(args.role))
    except KartError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created {user.role.value} user #{user.id}: {user.name} <{user.email}>")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
