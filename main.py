"""Command-line interface for the Carrera Kart API."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from getpass import getpass
from pathlib import Path
from typing import Sequence


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv() or __name__ != "__main__":
        return

    venv_dir = Path(__file__).resolve().parent / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
        venv_dir / "Scripts" / "python.exe",
        venv_dir / "Scripts" / "python",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


_bootstrap_virtualenv()

from kartapi.accounts import MIN_PASSWORD_LENGTH, AccountService
from kartapi.config import ConfigError, Settings, load_settings
from kartapi.database import Database
from kartapi.errors import KartError
from kartapi.models import Role
from kartapi.operating_hours import OperatingHoursRegistry
from kartapi.security import PasswordHasher, TokenService

logger = logging.getLogger("kartapi.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Carrera Kart API utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create the database schema")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "5000")),
        help="Port for the HTTP API (default: $PORT or 5000)",
    )

    seed_parser = subparsers.add_parser(
        "seed-hours", help="Provision the default operating-hours slots"
    )
    seed_parser.add_argument(
        "--reset",
        action="store_true",
        help="Remove existing slots before seeding",
    )

    admin_parser = subparsers.add_parser("create-admin", help="Create an administrator account")
    admin_parser.add_argument("name", help="Display name for the administrator")
    admin_parser.add_argument("email", help="Unique email address for login")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "seed-hours", "create-admin"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(*, settings: Settings, database: Database, host: str, port: int) -> None:
    from kartapi.api import create_app
    import uvicorn

    logger.info("Starting Carrera Kart API on http://%s:%s%s", host, port, settings.api_prefix)
    if not settings.is_production:
        logger.info("Health check available at %s/health", settings.api_prefix)

    app = create_app(settings=settings, database=database)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        proxy_headers=True,
        forwarded_allow_ips=",".join(settings.trusted_proxies),
    )


def _seed_hours(database: Database, *, reset: bool) -> int:
    created = OperatingHoursRegistry(database).seed(reset=reset)
    if created:
        print(f"Seeded {created} operating-hour slot(s).")
    else:
        print("Operating hours are already seeded; use --reset to replace them.")
    return 0


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass(f"Password (min {MIN_PASSWORD_LENGTH} characters): ")
        if len(password) < MIN_PASSWORD_LENGTH:
            print("Password is too short. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _create_admin(settings: Settings, database: Database, *, name: str, email: str) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Aborted creating administrator.", file=sys.stderr)
        return 1

    accounts = AccountService(
        database,
        PasswordHasher(rounds=settings.bcrypt_rounds),
        TokenService(settings.jwt_secret, ttl=settings.jwt_expires_in),
    )
    try:
        user = accounts.create_user(name.strip(), email.strip(), password, role=Role.ADMIN)
    except KartError as exc:
        print(f"Failed to create administrator: {exc}", file=sys.stderr)
        return 1

    print(f"Created administrator #{user.id}: {user.name} <{user.email}>")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    try:
        settings = load_settings()
    except ConfigError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    args = _parse_args(argv)
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port)
    elif args.command == "seed-hours":
        return _seed_hours(database, reset=args.reset)
    elif args.command == "create-admin":
        return _create_admin(settings, database, name=args.name, email=args.email)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
