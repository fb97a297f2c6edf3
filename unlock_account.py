"""
Unlock a member account that was locked after too many failed logins.
Usage: python unlock_account.py <email>
"""
import sys

from app import app, find_user_by_email


def unlock_member_account(email):
    """Clear the lockout for ``email``. Returns False when no such account exists."""
    with app.app_context():
        user = find_user_by_email(email)

        if not user:
            print(f"❌ User not found: {email}")
            return False

        if not user.account_locked:
            print(f"ℹ️  Account {user.email} is not locked.")
            print(f"   Failed attempts: {user.failed_login_attempts}")
            return True

        user.unlock_account()

        print(f"✅ Account unlocked: {user.email}")
        print(f"   Name: {user.full_name}")
        print(f"   Failed attempts reset to 0")
        return True


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python unlock_account.py <email>")
        sys.exit(1)

    success = unlock_member_account(sys.argv[1])
    sys.exit(0 if success else 1)
