#!/usr/bin/env python3
"""Create (or promote) an administrator account.
Usage: python create_admin.py <email> <password>
"""
import sys

from app import app, db, ensure_admin_user, is_strong_password, PASSWORD_POLICY_MESSAGE


def main(argv):
    if len(argv) != 3:
        print("Usage: python create_admin.py <email> <password>")
        return 1

    email, password = argv[1], argv[2]
    if not is_strong_password(password):
        print(f"❌ {PASSWORD_POLICY_MESSAGE}")
        return 1

    with app.app_context():
        db.create_all()
        admin = ensure_admin_user(email, password)

        print("\n" + "=" * 60)
        print("ADMIN ACCOUNT READY")
        print("=" * 60)
        print(f"📧 Email: {admin.email}")
        print(f"🌐 Login URL: http://127.0.0.1:5000/login")
        print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
