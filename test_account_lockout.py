"""
Account lockout: failed-attempt counting, time-boxed locks and the login
redirects that report them.
"""
from app import (
    app, db, User, AuditLog,
    record_failed_attempt, is_account_locked, reset_failed_attempts,
    remaining_lockout_minutes, remaining_attempts,
)
from conftest import login, STRONG_PASSWORD


def fail(email, times):
    for _ in range(times):
        record_failed_attempt(email)


def test_failures_below_threshold_only_count(make_user):
    user = make_user()
    fail(user.email, 4)

    assert user.failed_login_attempts == 4
    assert not user.account_locked
    assert not is_account_locked(user.email)
    assert remaining_attempts(user.email) == 1


def test_reaching_threshold_locks_account(make_user, clock):
    user = make_user()
    fail(user.email, 5)

    assert user.account_locked
    assert user.lockout_time == clock.now
    assert is_account_locked(user.email)
    assert remaining_attempts(user.email) == 0
    assert remaining_lockout_minutes(user.email) == 30


def test_failures_while_locked_are_ignored(make_user, clock):
    user = make_user()
    fail(user.email, 5)
    locked_at = user.lockout_time

    clock.advance(minutes=5)
    fail(user.email, 3)

    assert user.failed_login_attempts == 5
    assert user.lockout_time == locked_at


def test_unknown_email_is_a_safe_noop():
    record_failed_attempt("nobody@familymail.ca")

    assert not is_account_locked("nobody@familymail.ca")
    assert remaining_attempts("nobody@familymail.ca") == 5
    assert remaining_lockout_minutes("nobody@familymail.ca") == 0
    reset_failed_attempts("nobody@familymail.ca")
    assert User.query.count() == 0


def test_lookups_ignore_email_case(make_user):
    user = make_user(email="casey@familymail.ca")
    fail("Casey@FamilyMail.CA", 5)

    assert user.account_locked
    assert is_account_locked("CASEY@familymail.ca")


def test_remaining_minutes_counts_down(make_user, clock):
    user = make_user()
    fail(user.email, 5)

    clock.advance(minutes=10)
    assert remaining_lockout_minutes(user.email) == 20

    clock.advance(minutes=19, seconds=30)
    assert remaining_lockout_minutes(user.email) == 1


def test_lock_expires_and_clears_on_read(make_user, clock):
    user = make_user()
    fail(user.email, 5)

    clock.advance(minutes=29, seconds=59)
    assert is_account_locked(user.email)

    clock.advance(seconds=2)
    assert not is_account_locked(user.email)
    assert not user.account_locked
    assert user.failed_login_attempts == 0
    assert user.lockout_time is None

    # Second read sees an already-unlocked account
    assert not is_account_locked(user.email)
    assert remaining_attempts(user.email) == 5


def test_reset_clears_count_and_lock(make_user):
    user = make_user()
    fail(user.email, 5)

    reset_failed_attempts(user.email)

    assert user.failed_login_attempts == 0
    assert not user.account_locked
    assert user.lockout_time is None


def test_thresholds_are_read_from_config_each_time(make_user, clock):
    user = make_user()
    app.config["MAX_FAILED_LOGIN_ATTEMPTS"] = 3
    app.config["LOCKOUT_DURATION_MINUTES"] = 10

    fail(user.email, 3)
    assert is_account_locked(user.email)
    assert remaining_lockout_minutes(user.email) == 10

    clock.advance(minutes=10)
    assert not is_account_locked(user.email)


# ==========================
# LOGIN ROUTE
# ==========================

def test_wrong_password_reports_remaining_attempts(client, make_user):
    user = make_user()
    response = login(client, user.email, "Wrong!Pass1")

    assert response.status_code == 302
    assert "error=true" in response.headers["Location"]
    assert "remaining=4" in response.headers["Location"]


def test_unknown_email_gets_same_redirect_as_first_failure(client):
    response = login(client, "ghost@familymail.ca", "Wrong!Pass1")

    assert "error=true" in response.headers["Location"]
    assert "remaining=5" in response.headers["Location"]
    assert AuditLog.query.filter_by(action="login_attempt_invalid_user").count() == 1


def test_fifth_failure_redirects_to_locked_page(client, make_user, clock):
    user = make_user()
    for _ in range(4):
        login(client, user.email, "Wrong!Pass1")

    response = login(client, user.email, "Wrong!Pass1")

    assert "locked=true" in response.headers["Location"]
    assert "minutes=30" in response.headers["Location"]
    assert AuditLog.query.filter_by(action="account_locked", user_id=user.id).count() == 1


def test_correct_password_is_refused_while_locked(client, make_user, clock):
    user = make_user()
    fail(user.email, 5)

    response = login(client, user.email, STRONG_PASSWORD)

    assert "locked=true" in response.headers["Location"]
    with client.session_transaction() as sess:
        assert "user_id" not in sess


def test_login_after_lock_expires_succeeds_and_resets(client, make_user, clock):
    user = make_user()
    fail(user.email, 5)
    clock.advance(minutes=31)

    response = login(client, user.email, STRONG_PASSWORD)

    assert response.headers["Location"].endswith("/profile")
    assert user.failed_login_attempts == 0
    assert user.last_login == clock.now


def test_successful_login_resets_earlier_failures(client, make_user):
    user = make_user()
    fail(user.email, 4)
    assert not user.account_locked

    login(client, user.email, STRONG_PASSWORD)

    assert user.failed_login_attempts == 0
    assert not user.account_locked
    with client.session_transaction() as sess:
        assert sess["user_id"] == user.id


def test_login_page_shows_lock_message(client):
    response = client.get("/login?locked=true&minutes=12")
    assert b"Try again in 12 minutes" in response.data


def test_admin_can_unlock_account(admin_client, make_user):
    user = make_user(email="locked@familymail.ca")
    fail(user.email, 5)

    response = admin_client.post(f"/admin/users/{user.id}/unlock")

    assert response.status_code == 200
    assert response.get_json() == {"success": True}
    db.session.refresh(user)
    assert not user.account_locked
    assert AuditLog.query.filter_by(action="admin_unlock_account").count() == 1


def test_unlock_script_clears_lock(make_user):
    from unlock_account import unlock_member_account

    user = make_user(email="script@familymail.ca")
    fail(user.email, 5)

    assert unlock_member_account("Script@FamilyMail.ca")
    db.session.expire_all()
    assert not user.account_locked
    assert not unlock_member_account("missing@familymail.ca")


def test_unlock_cli_command(make_user):
    user = make_user(email="cli@familymail.ca")
    fail(user.email, 5)

    result = app.test_cli_runner().invoke(args=["unlock-account", "cli@familymail.ca"])

    assert "Account unlocked: cli@familymail.ca" in result.output
    assert not user.account_locked
