#!/usr/bin/env python3
"""
TeamPass -- operator command line.

Usage:
  python main.py sweep-invites
  python main.py set-subscription owner@example.com --plan business --seats 10
  python main.py create-admin admin@example.com --password 'a-long-password'

sweep-invites is meant for a scheduler (cron, systemd timer). Invites also
expire lazily when their link is opened, so a missed sweep only delays the
seat count catching up.

Configuration comes from the same environment / .env as the API
(DATABASE_URL, SECRET_KEY, EMAIL_BACKEND, ...).
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from auth.models import Subscription, User
from auth.roles import PLANS_DATA, Plan, Role, SubscriptionStatus
from auth.store import UserStore
from core.clock import SystemClock
from core.config import Settings, get_settings
from core.errors import DuplicateKey
from notify.email import build_email_sender
from teams.invites import InviteManager
from teams.store import InviteStore

logger = logging.getLogger("teampass.cli")


def _sweep_invites(args: argparse.Namespace, settings: Settings) -> int:
    clock = SystemClock()
    users = UserStore(settings.database_url, settings.bcrypt_rounds, clock)
    invites = InviteStore(settings.database_url, clock)
    try:
        manager = InviteManager(invites, users, build_email_sender(settings), settings, clock)
        count = manager.sweep_expired()
    finally:
        invites.close()
        users.close()
    print(f"Expired {count} invitation(s).")
    return 0


def _set_subscription(args: argparse.Namespace, settings: Settings) -> int:
    """Create or update a team owner's subscription.

    The owner's role follows the plan (admins keep admin), so a business
    subscription also unlocks the invite routes for that account.
    """
    clock = SystemClock()
    users = UserStore(settings.database_url, settings.bcrypt_rounds, clock)
    try:
        owner = users.find_by_email(args.email)
        if owner is None:
            print(f"  [!] No user with email {args.email}", file=sys.stderr)
            return 1

        seats = args.seats if args.seats is not None else PLANS_DATA[args.plan]["allowed_users"]
        existing = users.get_subscription(owner.id)
        sub = Subscription(
            user_id=owner.id,
            plan=args.plan,
            status=args.status,
            seats_total=seats,
            seats_used=existing.seats_used if existing is not None else 1,
            start_date=existing.start_date if existing is not None else clock.now(),
            id=existing.id if existing is not None else None,
        )
        users.upsert_subscription(sub)

        if owner.role != Role.admin.value and owner.role != args.plan:
            owner.role = args.plan
            users.save(owner)
    finally:
        users.close()

    logger.info("Subscription for user id=%s set to %s (%d seats)", owner.id, args.plan, seats)
    print(f"{args.email}: plan={args.plan} status={args.status} seats={seats}")
    return 0


def _create_admin(args: argparse.Namespace, settings: Settings) -> int:
    if len(args.password) < 8:
        print("  [!] Password must be at least 8 characters", file=sys.stderr)
        return 1
    clock = SystemClock()
    users = UserStore(settings.database_url, settings.bcrypt_rounds, clock)
    try:
        admin = users.create(
            User(
                email=args.email,
                name=args.name,
                hashed_password=users.hash_password(args.password),
                role=Role.admin.value,
                is_email_verified=True,
            )
        )
    except DuplicateKey as exc:
        print(f"  [!] A user with this {exc.field} already exists", file=sys.stderr)
        return 1
    finally:
        users.close()
    logger.info("Created admin user id=%s", admin.id)
    print(f"Created admin {admin.email} (id={admin.id})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="teampass",
        description="TeamPass maintenance commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    sweep = commands.add_parser("sweep-invites", help="Expire pending invitations past their deadline")
    sweep.set_defaults(handler=_sweep_invites)

    sub = commands.add_parser("set-subscription", help="Create or update a team owner's subscription")
    sub.add_argument("email", help="Email of the team owner")
    sub.add_argument(
        "--plan",
        required=True,
        choices=[p.value for p in Plan],
        help="Subscription plan",
    )
    sub.add_argument(
        "--seats",
        type=int,
        default=None,
        help="Seat allowance (default: the plan's allowed_users)",
    )
    sub.add_argument(
        "--status",
        default=SubscriptionStatus.active.value,
        choices=[s.value for s in SubscriptionStatus],
        help="Subscription status, stored for billing only (default: active)",
    )
    sub.set_defaults(handler=_set_subscription)

    admin = commands.add_parser("create-admin", help="Provision a pre-verified admin account")
    admin.add_argument("email", help="Email of the new admin")
    admin.add_argument("--password", required=True, help="Initial password (8+ characters)")
    admin.add_argument("--name", default="Administrator", help="Display name")
    admin.set_defaults(handler=_create_admin)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = build_parser().parse_args(argv)
    return args.handler(args, get_settings())


if __name__ == "__main__":
    sys.exit(main())
