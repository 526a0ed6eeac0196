# make_admin.py
# Usage: python make_admin.py <username> [--password PASSWORD] [--wallet WALLET]

import argparse
import os
from sqlalchemy.exc import IntegrityError

from app import create_app
from extensions import db
from models import User, UserStatus
from triangle.placement import PlacementResolver


def make_admin(username, password=None, wallet=None):
    app = create_app()
    with app.app_context():
        user = User.query.filter_by(username=username).first()

        if user:
            print(f"Found user id={user.id}, username={user.username}. Promoting to admin...")
        else:
            password = password or os.getenv("ADMIN_PASSWORD")
            if not password:
                raise SystemExit("No such user. Pass --password (or set ADMIN_PASSWORD) to create one.")

            print(f"No user named {username} found, creating an admin account.")
            try:
                user = User(
                    username=username,
                    wallet_address=wallet or f"admin_{username}",
                    plan_name=app.config.get("ADMIN_PLAN", "Knight"),
                    referral_code=PlacementResolver.generate_referral_code(username),
                    status=UserStatus.CONFIRMED.value,
                    is_admin=False,
                )
                user.set_password(password)
                db.session.add(user)
                db.session.commit()
            except IntegrityError as e:
                db.session.rollback()
                raise SystemExit(f"Could not create {username}: {e.orig}")

        user.is_admin = True
        db.session.commit()
        print(f"User (id={user.id}, username={user.username}) is now admin.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Promote or create an admin user")
    parser.add_argument("username")
    parser.add_argument("--password")
    parser.add_argument("--wallet")
    args = parser.parse_args()
    make_admin(args.username, args.password, args.wallet)
