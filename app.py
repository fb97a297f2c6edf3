from datetime import datetime, date, timedelta, timezone
from decimal import Decimal
from functools import wraps
from io import BytesIO
from dataclasses import dataclass
import typing as t
import hashlib
import math
import secrets
import time

import click
import openpyxl
from openpyxl.styles import Font, PatternFill, Alignment
from flask import (
    Flask, render_template, redirect, url_for,
    request, flash, session, make_response, jsonify, g
)
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func
from sqlalchemy.orm import selectinload, joinedload
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect
from flask_mail import Mail, Message
from flask_caching import Cache
from flask_session import Session
from cachelib.file import FileSystemCache
from redis import Redis
from werkzeug.datastructures import MultiDict
from wtforms import (
    StringField, PasswordField, SubmitField, IntegerField, DateField, HiddenField
)
from wtforms.validators import (
    DataRequired, Optional, Email, Length, NumberRange, Regexp, EqualTo, ValidationError
)
from werkzeug.security import generate_password_hash, check_password_hash
from dotenv import load_dotenv

import registration_wizard as wizard

# Load environment variables from .env file BEFORE importing Config so it can read envs
load_dotenv()

from config import Config

app = Flask(__name__)
app.config.from_object(Config)
db = SQLAlchemy(app)
mail = Mail(app)
csrf = CSRFProtect(app)

# Redis when configured, otherwise an in-process cache
if app.config.get("REDIS_URL"):
    cache = Cache(app, config={
        'CACHE_TYPE': 'RedisCache',
        'CACHE_REDIS_URL': app.config["REDIS_URL"],
        'CACHE_DEFAULT_TIMEOUT': app.config["CACHE_DEFAULT_TIMEOUT"],
    })
else:
    cache = Cache(app, config={
        'CACHE_TYPE': 'SimpleCache',
        'CACHE_DEFAULT_TIMEOUT': app.config["CACHE_DEFAULT_TIMEOUT"],
    })

# Session data (including registration wizard state) is stored server-side
if app.config["SESSION_TYPE"] == "redis":
    app.config["SESSION_REDIS"] = Redis.from_url(app.config["REDIS_URL"])
else:
    app.config["SESSION_CACHELIB"] = FileSystemCache(
        cache_dir=app.config["SESSION_FILE_DIR"], threshold=500
    )
Session(app)


# Performance monitoring
@app.before_request
def before_request():
    g.start_time = time.time()


@app.after_request
def after_request(response):
    if hasattr(g, 'start_time'):
        response_time = time.time() - g.start_time
        response.headers['X-Response-Time'] = f"{response_time:.3f}s"

    # Security headers
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    return response


def utcnow():
    """Current time as naive UTC; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_one_year(moment):
    """Same calendar date one year later (Feb 29 falls back to Feb 28)."""
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        return moment.replace(year=moment.year + 1, day=28)


def normalize_email(raw):
    return (raw or "").strip().lower()


# ==========================
# MODELS
# ==========================

class Role:
    USER = "USER"
    ADMIN = "ADMIN"


class Membership(db.Model):
    """
    A membership tier offered to families.
    Two defaults are seeded: Free and Premium ($20/year).
    """
    __tablename__ = "membership_options"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=True)  # null for free tiers
    features = db.Column(db.Text, nullable=True)  # one feature per line
    is_free = db.Column(db.Boolean, default=False, nullable=False, index=True)
    display_order = db.Column(db.Integer, default=0)
    active = db.Column(db.Boolean, default=True, index=True)

    @property
    def feature_list(self):
        return [line.strip() for line in (self.features or "").splitlines() if line.strip()]

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": str(self.price) if self.price is not None else None,
            "features": self.feature_list,
            "isFree": self.is_free,
            "displayOrder": self.display_order,
            "active": self.active,
        }


class User(db.Model):
    """
    Parents/guardians registered through the wizard, and administrators.
    - role = ADMIN: access to the admin dashboard and export.
    - role = USER: regular member account.
    """
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    middle_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)  # stored lower-cased
    password_hash = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(100), nullable=True, index=True)
    province = db.Column(db.String(100), nullable=True, index=True)
    postal_code = db.Column(db.String(10), nullable=True)
    role = db.Column(db.String(20), nullable=False, default=Role.USER, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    last_login = db.Column(db.DateTime, nullable=True)

    membership_id = db.Column(db.Integer, db.ForeignKey("membership_options.id"), nullable=True)
    membership_start_date = db.Column(db.DateTime, nullable=True)
    membership_expiry_date = db.Column(db.DateTime, nullable=True)

    # Lockout state; account_locked implies lockout_time is set
    failed_login_attempts = db.Column(db.Integer, default=0, nullable=False)
    account_locked = db.Column(db.Boolean, default=False, nullable=False, index=True)
    lockout_time = db.Column(db.DateTime, nullable=True)

    membership = db.relationship("Membership")
    children = db.relationship(
        "Child",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="Child.id",
    )
    cart = db.relationship(
        "Cart",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def full_name(self):
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(p for p in parts if p)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password or "")

    def lock_account(self, when):
        """Lock the account as of ``when``. Caller commits."""
        self.account_locked = True
        self.lockout_time = when

    def unlock_account(self):
        """Unlock user account and reset failed attempts."""
        self.account_locked = False
        self.failed_login_attempts = 0
        self.lockout_time = None
        db.session.commit()


class Child(db.Model):
    """A child record owned by a user account."""
    __tablename__ = "children"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name = db.Column(db.String(150), nullable=False)
    age = db.Column(db.Integer, nullable=True)
    date_of_birth = db.Column(db.Date, nullable=True)
    hearing_loss_type = db.Column(db.String(100), nullable=True)
    equipment_type = db.Column(db.String(100), nullable=True)
    siblings_names = db.Column(db.String(255), nullable=True)
    chapter_location = db.Column(db.String(150), nullable=True)

    user = db.relationship("User", back_populates="children")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "age": self.age,
            "dateOfBirth": self.date_of_birth.isoformat() if self.date_of_birth else None,
            "hearingLossType": self.hearing_loss_type,
            "equipmentType": self.equipment_type,
            "siblingsNames": self.siblings_names,
            "chapterLocation": self.chapter_location,
        }


class Cart(db.Model):
    """One cart per user, holding the memberships they have paid for."""
    __tablename__ = "carts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    user = db.relationship("User", back_populates="cart")
    items = db.relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )


class CartItem(db.Model):
    __tablename__ = "cart_items"

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(
        db.Integer,
        db.ForeignKey("carts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    membership_id = db.Column(db.Integer, db.ForeignKey("membership_options.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(10, 2), nullable=True)
    total_price = db.Column(db.Numeric(10, 2), nullable=True)

    cart = db.relationship("Cart", back_populates="items")
    membership = db.relationship("Membership")


class MembershipBenefit(db.Model):
    __tablename__ = "membership_benefits"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)
    icon = db.Column(db.String(50), nullable=False)  # Font Awesome class
    display_order = db.Column(db.Integer, default=0)
    active = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "icon": self.icon,
            "displayOrder": self.display_order,
        }


class LandingPageContent(db.Model):
    """Key/value text blocks shown on the landing page (e.g. the tagline)."""
    __tablename__ = "landing_page_content"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column("content_key", db.String(100), unique=True, nullable=False)
    value = db.Column("content_value", db.Text, nullable=True)
    active = db.Column(db.Boolean, default=True)


class AuditLog(db.Model):
    """
    Audit trail for security events and administrative actions.
    """
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = db.Column(db.String(100), nullable=False, index=True)
    resource_type = db.Column(db.String(50), nullable=True)
    resource_id = db.Column(db.Integer, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)


class SecurityToken(db.Model):
    """
    Single-use, expiring tokens (password resets). Only the SHA-256 of the
    token is stored.
    """
    __tablename__ = "security_tokens"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_type = db.Column(db.String(20), nullable=False)  # password_reset
    token_hash = db.Column(db.String(64), nullable=False, unique=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    user = db.relationship("User", backref=db.backref("security_tokens", cascade="all, delete-orphan"))

    @staticmethod
    def hash_token(token):
        return hashlib.sha256(token.encode()).hexdigest()

    @classmethod
    def create_token(cls, user_id, token_type, expires_in_hours=24):
        """Create a new security token and return the unhashed version."""
        token = secrets.token_urlsafe(32)
        security_token = cls(
            user_id=user_id,
            token_type=token_type,
            token_hash=cls.hash_token(token),
            expires_at=utcnow() + timedelta(hours=expires_in_hours)
        )
        db.session.add(security_token)
        return token, security_token

    @classmethod
    def find_valid(cls, token, token_type):
        if not token:
            return None
        return cls.query.filter_by(
            token_hash=cls.hash_token(token),
            token_type=token_type,
            used_at=None
        ).filter(cls.expires_at > utcnow()).first()


# ==========================
# FORMS
# ==========================

PASSWORD_POLICY_MESSAGE = (
    "Password must be 8-64 chars, include upper, lower, number, special, and contain no spaces"
)
SPECIAL_CHARACTERS = set("~`!@#$%^&*()_+-={}[]|:;\"'<>,.?/")
PHONE_PATTERN = r"^\(?([0-9]{3})\)?[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})$"
POSTAL_CODE_PATTERN = r"^[A-Za-z][0-9][A-Za-z] ?[0-9][A-Za-z][0-9]$"


def is_strong_password(password):
    if password is None or not 8 <= len(password) <= 64:
        return False
    if any(ch.isspace() for ch in password):
        return False
    return (
        any(ch.islower() for ch in password)
        and any(ch.isupper() for ch in password)
        and any(ch.isdigit() for ch in password)
        and any(ch in SPECIAL_CHARACTERS for ch in password)
    )


def strong_password(form, field):
    if not is_strong_password(field.data):
        raise ValidationError(PASSWORD_POLICY_MESSAGE)


class ContactFieldsMixin:
    first_name = StringField("First Name", validators=[DataRequired(message="First name is required"), Length(max=100)])
    middle_name = StringField("Middle Name", validators=[Optional(), Length(max=100)])
    last_name = StringField("Last Name", validators=[DataRequired(message="Last name is required"), Length(max=100)])
    email = StringField(
        "Email",
        validators=[
            DataRequired(),
            Email(message="Please enter a valid email address (e.g., name@example.com)"),
            Length(max=255)
        ]
    )
    phone = StringField(
        "Phone",
        validators=[
            DataRequired(message="Phone number is required"),
            Regexp(PHONE_PATTERN, message="Invalid phone number format. Use: (XXX) XXX-XXXX or XXX-XXX-XXXX or XXXXXXXXXX (10 digits)")
        ]
    )
    address = StringField("Address", validators=[Optional(), Length(max=255)])
    city = StringField("City", validators=[Optional(), Length(max=100)])
    province = StringField("Province", validators=[Optional(), Length(max=100)])
    postal_code = StringField(
        "Postal Code",
        validators=[Optional(), Regexp(POSTAL_CODE_PATTERN, message="Valid Canadian postal code, e.g., A1A 1A1")]
    )


class RegisterForm(ContactFieldsMixin, FlaskForm):
    password = PasswordField("Password", validators=[DataRequired(), strong_password])
    confirm_password = PasswordField(
        "Confirm Password",
        validators=[EqualTo("password", message="Passwords do not match")]
    )
    submit = SubmitField("Continue")


class ProfileForm(ContactFieldsMixin, FlaskForm):
    submit = SubmitField("Save Changes")


class LoginForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email()])
    password = PasswordField("Password", validators=[DataRequired()])
    submit = SubmitField("Log In")


class ChildForm(FlaskForm):
    name = StringField("Child's Name", validators=[DataRequired(message="Child's name is required"), Length(max=150)])
    age = IntegerField("Age", validators=[Optional(), NumberRange(min=0, max=30)])
    date_of_birth = DateField("Date of Birth", validators=[Optional()], format="%Y-%m-%d")
    hearing_loss_type = StringField("Hearing Loss Type", validators=[Optional(), Length(max=100)])
    equipment_type = StringField("Equipment Type", validators=[Optional(), Length(max=100)])
    siblings_names = StringField("Siblings' Names", validators=[Optional(), Length(max=255)])
    chapter_location = StringField("Chapter Location", validators=[Optional(), Length(max=150)])
    submit = SubmitField("Save Child")


class CheckoutForm(FlaskForm):
    # Presence checks only; no payment gateway is attached.
    card_number = StringField("Card Number", validators=[DataRequired()])
    card_holder_name = StringField("Card Holder Name", validators=[DataRequired()])
    expiry_month = StringField("Expiry Month", validators=[DataRequired()])
    expiry_year = StringField("Expiry Year", validators=[DataRequired()])
    cvv = PasswordField("CVV", validators=[DataRequired()])
    submit = SubmitField("Pay Now")


class UpgradeCheckoutForm(CheckoutForm):
    membership_id = HiddenField("Membership", validators=[DataRequired()])


# ==========================
# SECURITY FUNCTIONS
# ==========================

def log_audit_event(action, user_id=None, resource_type=None, resource_id=None, details=None):
    """Log security and administrative events."""
    try:
        audit_log = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=request.environ.get('HTTP_X_FORWARDED_FOR', request.remote_addr) if request else None,
            user_agent=(request.headers.get('User-Agent') or '')[:200] if request else None,
            details=details
        )
        db.session.add(audit_log)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.warning(f"Failed to log audit event {action}: {e}")


# ==========================
# ACCOUNT LOCKOUT
# ==========================

def lockout_settings():
    """(max failed attempts, lockout minutes), read from config on every check."""
    max_attempts = int(app.config.get('MAX_FAILED_LOGIN_ATTEMPTS', 5) or 0)
    lock_minutes = int(app.config.get('LOCKOUT_DURATION_MINUTES', 30) or 0)
    return max_attempts, lock_minutes


def find_user_by_email(email):
    """Case-insensitive lookup; None for blank or unknown emails."""
    email = normalize_email(email)
    if not email:
        return None
    return User.query.filter(func.lower(User.email) == email).first()


def record_failed_attempt(email):
    """Count a failed login. Unknown and already-locked accounts are left alone."""
    user = find_user_by_email(email)
    if user is None or user.account_locked:
        return

    max_attempts, lock_minutes = lockout_settings()
    user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
    if max_attempts > 0 and user.failed_login_attempts >= max_attempts:
        user.lock_account(utcnow())
        app.logger.info(
            f"Account {user.id} locked after {user.failed_login_attempts} failed attempts "
            f"for {lock_minutes} minutes"
        )
    db.session.commit()


def is_account_locked(email) -> bool:
    """True while a lock is in force. An expired lock is cleared on read."""
    user = find_user_by_email(email)
    if user is None or not user.account_locked:
        return False

    _, lock_minutes = lockout_settings()
    if user.lockout_time is not None:
        if utcnow() - user.lockout_time >= timedelta(minutes=lock_minutes):
            user.unlock_account()
            app.logger.info(f"Lockout expired for account {user.id}; unlocked")
            return False
    return True


def reset_failed_attempts(email):
    """Clear the failure count and any lock after a verified login."""
    user = find_user_by_email(email)
    if user is None:
        return
    user.unlock_account()


def remaining_lockout_minutes(email) -> int:
    user = find_user_by_email(email)
    if user is None or not user.account_locked or user.lockout_time is None:
        return 0
    _, lock_minutes = lockout_settings()
    remaining = timedelta(minutes=lock_minutes) - (utcnow() - user.lockout_time)
    return max(0, math.ceil(remaining.total_seconds() / 60))


def remaining_attempts(email) -> int:
    max_attempts, _ = lockout_settings()
    user = find_user_by_email(email)
    if user is None:
        return max_attempts
    return max(0, max_attempts - (user.failed_login_attempts or 0))


# ==========================
# AUTH HELPERS
# ==========================

def get_current_user():
    user_id = session.get("user_id")
    if not user_id:
        return None
    return db.session.get(User, user_id)


def login_user_session(user):
    session.permanent = True
    session["user_id"] = user.id
    session.modified = True


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not get_current_user():
            flash("Please log in to continue.", "warning")
            return redirect(url_for("login", next=request.path))
        return view_func(*args, **kwargs)
    return wrapper


def admin_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        user = get_current_user()
        if not user:
            flash("Please log in to continue.", "warning")
            return redirect(url_for("login", next=request.path))
        if not user.is_admin:
            flash("Admin access required.", "danger")
            return redirect(url_for("index"))
        return view_func(*args, **kwargs)
    return wrapper


def logged_out_required(view_func):
    """Registration pages are only for visitors without an account session."""
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        current = get_current_user()
        if current:
            flash("You are already logged in.", "info")
            return redirect(home_url_for(current))
        return view_func(*args, **kwargs)
    return wrapper


def home_url_for(user):
    return url_for("admin_dashboard") if user.is_admin else url_for("profile")


def is_safe_next_url(target):
    return bool(target) and target.startswith("/") and not target.startswith("//")


@app.context_processor
def inject_globals():
    return {
        "current_user": get_current_user(),
        "total_steps": wizard.TOTAL_STEPS,
    }


# ==========================
# EMAIL FUNCTIONS
# ==========================

def send_email(to, subject, body, html=None):
    """Send an email using Flask-Mail. Failures are logged, never raised."""
    try:
        msg = Message(subject, recipients=[to], body=body, html=html)
        mail.send(msg)
        return True
    except Exception as e:
        app.logger.error(f"Email send failed ({subject}): {e}")
        return False


def send_password_reset_email(to, reset_link):
    body = (
        "We received a request to reset your password.\n\n"
        f"Use the link below to choose a new one:\n{reset_link}\n\n"
        "If you did not ask for this, you can ignore this email."
    )
    html = render_template("email/reset_password.html", reset_link=reset_link)
    return send_email(to, "Password Reset Request", body, html=html)


def send_upgrade_confirmation(user, membership):
    expiry = user.membership_expiry_date.strftime("%B %d, %Y") if user.membership_expiry_date else "-"
    body = (
        f"Congratulations {user.full_name}!\n\n"
        f"Your membership has been upgraded to {membership.name}.\n"
        f"Status: Active/Paid\nExpiry Date: {expiry}\n\n"
        "Thank you for supporting VOICE."
    )
    html = render_template(
        "email/upgrade_confirmation.html",
        user=user,
        membership=membership,
        expiry=expiry,
    )
    return send_email(user.email, "Membership Upgrade Successful - VOICE", body, html=html)


# ==========================
# LANDING PAGE / SEED DATA
# ==========================

DEFAULT_TAGLINE = "Empowering families of children who are Deaf and Hard of Hearing"

DEFAULT_BENEFITS = [
    ("Community Network", "Connect with like-minded families and professionals", "fa-users"),
    ("Exclusive Content", "Access to premium articles, webinars, and resources", "fa-book"),
    ("Career Opportunities", "Find jobs, internships, and collaboration opportunities", "fa-briefcase"),
    ("Skill Development", "Participate in workshops and training programs", "fa-graduation-cap"),
    ("24/7 Support", "Get help when you need it from our support team", "fa-headset"),
]


@cache.memoize()
def get_landing_page_data():
    """Tagline, active memberships and benefits as plain data."""
    tagline = LandingPageContent.query.filter_by(key="tagline", active=True).first()
    memberships = (
        Membership.query
        .filter_by(active=True)
        .order_by(Membership.display_order.asc())
        .all()
    )
    benefits = (
        MembershipBenefit.query
        .filter_by(active=True)
        .order_by(MembershipBenefit.display_order.asc())
        .all()
    )
    return {
        "tagline": tagline.value if tagline else "",
        "memberships": [m.to_dict() for m in memberships],
        "benefits": [b.to_dict() for b in benefits],
    }


def _ensure_membership(name, is_free, **fields):
    existing = Membership.query.filter_by(name=name, is_free=is_free).first()
    if existing is None:
        db.session.add(Membership(name=name, is_free=is_free, active=True, **fields))
        app.logger.info(f"Created {name} membership")
    elif not existing.active:
        existing.active = True
        app.logger.info(f"Re-activated {name} membership")


def seed_defaults():
    """Idempotently create the default memberships, benefits and tagline."""
    _ensure_membership(
        "Free", True,
        description="Get started with VOICE community",
        price=None,
        features="Basic access\nCommunity forum access\nWeekly newsletters\nNo voting rights",
        display_order=1,
    )
    _ensure_membership(
        "Premium", False,
        description="Support VOICE and unlock premium benefits",
        price=Decimal("20.00"),
        features=(
            "Membership with full voting rights\n"
            "Includes two adults and any minor dependents in the same household\n"
            "Exclusive webinars\n"
            "Updates on events"
        ),
        display_order=2,
    )

    if MembershipBenefit.query.count() == 0:
        for order, (title, description, icon) in enumerate(DEFAULT_BENEFITS, 1):
            db.session.add(MembershipBenefit(
                title=title, description=description, icon=icon, display_order=order, active=True
            ))

    if not LandingPageContent.query.filter_by(key="tagline").first():
        db.session.add(LandingPageContent(key="tagline", value=DEFAULT_TAGLINE, active=True))

    db.session.commit()
    cache.delete_memoized(get_landing_page_data)


def ensure_admin_user(email=None, password=None):
    """Create the administrator account, or promote and re-password an existing one."""
    email = normalize_email(email or app.config.get("ADMIN_EMAIL"))
    password = password or app.config.get("ADMIN_PASSWORD")
    admin = find_user_by_email(email)
    if admin is None:
        admin = User(first_name="Admin", last_name="User", email=email, role=Role.ADMIN)
        db.session.add(admin)
        app.logger.info(f"Admin user created: {email}")
    else:
        admin.role = Role.ADMIN
        app.logger.info(f"Admin credentials updated: {email}")
    admin.set_password(password)
    db.session.commit()
    return admin


# ==========================
# PUBLIC ROUTES
# ==========================

@app.route("/")
def index():
    data = get_landing_page_data()
    return render_template(
        "index.html",
        tagline=data["tagline"] or DEFAULT_TAGLINE,
        memberships=data["memberships"],
        benefits=data["benefits"],
        is_user_logged_in=get_current_user() is not None,
    )


@app.route("/api/landing-page/data")
def api_landing_page_data():
    data = dict(get_landing_page_data())
    data["isUserLoggedIn"] = get_current_user() is not None
    return jsonify(data)


@app.route("/api/landing-page/health")
def api_landing_page_health():
    return jsonify({"status": "ok", "message": "Landing page service is running"})


@app.route("/api/landing-page/initialize")
def api_landing_page_initialize():
    try:
        seed_defaults()
    except Exception as e:
        db.session.rollback()
        app.logger.exception("Landing page initialization failed")
        return jsonify({"status": "error", "message": str(e)}), 500
    return jsonify({"status": "success", "message": "Default landing page content initialized successfully"})


# ==========================
# AUTH ROUTES
# ==========================

@app.route("/login", methods=["GET", "POST"])
def login():
    current = get_current_user()
    if current:
        return redirect(home_url_for(current))

    form = LoginForm()
    if form.validate_on_submit():
        email = normalize_email(form.email.data)

        if is_account_locked(email):
            user = find_user_by_email(email)
            log_audit_event('login_attempt_locked_account', user.id if user else None, details={
                'failed_attempts': user.failed_login_attempts if user else None,
            })
            return redirect(url_for("login", locked="true", minutes=remaining_lockout_minutes(email)))

        user = find_user_by_email(email)
        if user and user.check_password(form.password.data):
            reset_failed_attempts(email)
            user.last_login = utcnow()
            db.session.commit()
            login_user_session(user)
            log_audit_event('login_success', user.id)

            next_url = request.args.get("next")
            if is_safe_next_url(next_url):
                return redirect(next_url)
            return redirect(home_url_for(user))

        # Bad credentials
        record_failed_attempt(email)
        if user is None:
            log_audit_event('login_attempt_invalid_user', details={'email': email})
        elif is_account_locked(email):
            log_audit_event('account_locked', user.id, details={
                'failed_attempts': user.failed_login_attempts,
                'lock_minutes': lockout_settings()[1],
            })
            return redirect(url_for("login", locked="true", minutes=remaining_lockout_minutes(email)))
        else:
            log_audit_event('login_failure', user.id, details={
                'failed_attempts': user.failed_login_attempts,
            })
        return redirect(url_for("login", error="true", remaining=remaining_attempts(email)))

    return render_template(
        "login.html",
        form=form,
        error=request.args.get("error") == "true",
        remaining=request.args.get("remaining", type=int),
        locked=request.args.get("locked") == "true",
        minutes=request.args.get("minutes", type=int),
        registered=request.args.get("registered") == "true",
        logged_out=request.args.get("logout") == "true",
        password_reset=request.args.get("reset") == "true",
    )


@app.route("/logout", methods=["GET", "POST"])
def logout():
    user = get_current_user()
    if user:
        log_audit_event('logout', user.id)
    session.clear()
    flash("Logged out.", "info")
    return redirect(url_for("index"))


# ==========================
# PASSWORD RESET
# ==========================

RESET_REQUESTED_MESSAGE = "If an account exists for that email, a password reset link has been sent."


def build_reset_link(token):
    base_url = app.config.get("APP_BASE_URL")
    if base_url:
        return base_url.rstrip("/") + url_for("reset_password", token=token)
    return url_for("reset_password", token=token, _external=True)


def request_password_reset(email):
    """Issue a reset token and email it. Returns False for unknown emails."""
    user = find_user_by_email(email)
    if user is None:
        return False
    token, _ = SecurityToken.create_token(
        user.id,
        "password_reset",
        expires_in_hours=app.config.get("PASSWORD_RESET_TOKEN_HOURS", 24)
    )
    db.session.commit()
    send_password_reset_email(user.email, build_reset_link(token))
    log_audit_event('password_reset_requested', user.id)
    return True


def reset_password_with_token(token, new_password):
    """Consume a valid reset token and set the new password. Also clears any lockout."""
    security_token = SecurityToken.find_valid(token, "password_reset")
    if security_token is None:
        return False
    user = security_token.user
    user.set_password(new_password)
    user.failed_login_attempts = 0
    user.account_locked = False
    user.lockout_time = None
    security_token.used_at = utcnow()
    db.session.commit()
    log_audit_event('password_reset_completed', user.id)
    return True


@app.route("/forgot-password", methods=["GET", "POST"])
def forgot_password():
    message = None
    if request.method == "POST":
        email = normalize_email(request.form.get("email"))
        if not email:
            flash("Please enter your email address.", "danger")
        else:
            try:
                request_password_reset(email)
            except Exception:
                db.session.rollback()
                app.logger.exception("Password reset request failed")
            message = RESET_REQUESTED_MESSAGE
    return render_template("forgot_password.html", message=message)


@app.route("/reset-password", methods=["GET", "POST"])
def reset_password():
    if request.method == "POST":
        token = request.form.get("token", "")
        password = request.form.get("password", "")
        confirm_password = request.form.get("confirm_password", "")

        if not is_strong_password(password):
            return render_template("reset_password.html", token=token, message=PASSWORD_POLICY_MESSAGE + ".")
        if password != confirm_password:
            return render_template("reset_password.html", token=token, message="Passwords do not match.")
        if reset_password_with_token(token, password):
            return render_template(
                "reset_password.html",
                token=None,
                message="Your password has been reset. You can now log in.",
                success=True,
            )
        return render_template("reset_password.html", token=token, message="Invalid or expired reset link.")

    token = request.args.get("token", "")
    return render_template("reset_password.html", token=token, message=None)


# ==========================
# REGISTRATION WIZARD
# ==========================

def _parse_int(value):
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _parse_date(value):
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def _clean(value):
    value = (value or "").strip()
    return value or None


# Step 2 form fields and the ChildForm / ChildEntry attribute they map to
CHILD_ROW_FIELDS = (
    ("childName", "name"),
    ("childAge", "age"),
    ("childDob", "date_of_birth"),
    ("hearingLossType", "hearing_loss_type"),
    ("equipmentType", "equipment_type"),
    ("siblingsNames", "siblings_names"),
    ("chapterLocation", "chapter_location"),
)


def _child_row_values(form):
    """Yield one {attribute: raw value} dict per submitted step 2 row."""
    columns = {attr: form.getlist(param) for param, attr in CHILD_ROW_FIELDS}
    for i in range(len(columns["name"])):
        yield {attr: values[i] if i < len(values) else None for attr, values in columns.items()}


def child_rows_from_request(form):
    """Rebuild the step 2 rows from the repeated child fields."""
    rows = []
    for values in _child_row_values(form):
        rows.append(wizard.ChildEntry(
            name=(values["name"] or "").strip(),
            age=_parse_int(values["age"]),
            date_of_birth=_parse_date(values["date_of_birth"]),
            hearing_loss_type=_clean(values["hearing_loss_type"]),
            equipment_type=_clean(values["equipment_type"]),
            siblings_names=_clean(values["siblings_names"]),
            chapter_location=_clean(values["chapter_location"]),
        ))
    return rows


def child_row_errors(form):
    """
    Check every named step 2 row against the same limits the profile
    page's ChildForm enforces. Rows with a blank name are skipped.
    """
    errors = []
    for number, values in enumerate(_child_row_values(form), start=1):
        if not (values["name"] or "").strip():
            continue
        row_form = ChildForm(
            formdata=MultiDict({k: v for k, v in values.items() if v not in (None, "")}),
            meta={"csrf": False},
        )
        if not row_form.validate():
            for field_name, messages in row_form.errors.items():
                label = row_form[field_name].label.text
                errors.extend(f"Child {number} - {label}: {message}" for message in messages)
    return errors


def render_step1(form, status=200):
    return render_template(
        "register.html",
        form=form,
        step=1,
        error=request.args.get("error"),
    ), status


@app.route("/register", methods=["GET"])
@logged_out_required
def register():
    # A fresh visit starts over
    wizard.clear(session)
    return render_step1(RegisterForm())


@app.route("/register/step1", methods=["POST"])
@logged_out_required
def register_step1():
    form = RegisterForm()
    valid = form.validate_on_submit()

    email = normalize_email(form.email.data)
    if email and find_user_by_email(email):
        form.email.errors = list(form.email.errors) + ["Email already exists"]
        valid = False

    if not valid:
        return render_step1(form)

    details = wizard.UserDetails(
        first_name=form.first_name.data.strip(),
        middle_name=_clean(form.middle_name.data),
        last_name=form.last_name.data.strip(),
        email=email,
        password_hash=generate_password_hash(form.password.data),
        phone=form.phone.data.strip(),
        address=_clean(form.address.data),
        city=_clean(form.city.data),
        province=_clean(form.province.data),
        postal_code=_clean(form.postal_code.data.upper() if form.postal_code.data else None),
    )
    wizard.save(session, wizard.start(details))
    return redirect(url_for("register_step2"))


@app.route("/register/step2", methods=["GET", "POST"])
@logged_out_required
def register_step2():
    state = wizard.load(session)
    if state is None:
        return redirect(url_for("register"))
    if not isinstance(state, wizard.DetailsEntered):
        state = state.edit_children()

    if request.method == "POST":
        rows = child_rows_from_request(request.form)
        errors = child_row_errors(request.form)
        if errors:
            return render_template(
                "register_step2.html",
                children=rows or [wizard.ChildEntry()],
                step=2,
                errors=errors,
            )
        if request.form.get("action") == "addChild":
            wizard.save(session, state.add_child_row(rows))
            return redirect(url_for("register_step2"))
        wizard.save(session, state.submit_children(rows))
        return redirect(url_for("register_step3"))

    rows = state.child_rows or [wizard.ChildEntry()]
    return render_template("register_step2.html", children=rows, step=2)


@app.route("/register/step3", methods=["GET", "POST"])
@logged_out_required
def register_step3():
    state = wizard.load(session)
    if state is None:
        return redirect(url_for("register"))
    if not wizard.has_children_step(state):
        return redirect(url_for("register_step2"))

    if request.method == "POST":
        membership_id = _parse_int(request.form.get("membershipId"))
        if membership_id is None or db.session.get(Membership, membership_id) is None:
            flash("Please choose a membership.", "warning")
            return redirect(url_for("register_step3"))
        wizard.save(session, state.select_membership(membership_id))
        return redirect(url_for("register_step4"))

    memberships = (
        Membership.query
        .filter_by(active=True)
        .order_by(Membership.display_order.asc())
        .all()
    )
    selected = state.membership_id if isinstance(state, wizard.MembershipSelected) else None
    return render_template(
        "register_step3.html",
        memberships=memberships,
        selected_membership_id=selected,
        step=3,
    )


def _cart_state_and_membership():
    """
    Resolve the step 4 prerequisites.
    Returns (state, membership, redirect_response); exactly one of
    membership / redirect_response is set.
    """
    state = wizard.load(session)
    if state is None:
        return None, None, redirect(url_for("register"))
    if not isinstance(state, wizard.MembershipSelected):
        return state, None, redirect(url_for("register_step3"))
    membership = db.session.get(Membership, state.cart_membership_id)
    if membership is None:
        return state, None, redirect(url_for("register_step3"))
    return state, membership, None


@app.route("/register/step4", methods=["GET", "POST"])
@logged_out_required
def register_step4():
    if request.method == "POST" and request.form.get("action") == "remove":
        state = wizard.load(session)
        if state is None:
            return redirect(url_for("register"))
        if isinstance(state, wizard.MembershipSelected):
            wizard.save(session, state.remove_from_cart())
        return redirect(url_for("register_step3"))

    state, membership, response = _cart_state_and_membership()
    if response is not None:
        return response

    if request.method == "POST":
        if membership.is_free:
            return complete_registration(state, membership, failure_endpoint="register_step4")
        return redirect(url_for("register_checkout"))

    error = None
    if request.args.get("error"):
        error = "An error occurred. Please try again."
    return render_template(
        "register_step4.html",
        membership=membership,
        children=state.children,
        step=4,
        error=error,
    )


@app.route("/register/checkout", methods=["GET", "POST"])
@logged_out_required
def register_checkout():
    state, membership, response = _cart_state_and_membership()
    if response is not None:
        return response
    if membership.is_free:
        # Free memberships never need payment
        return complete_registration(state, membership, failure_endpoint="register_step4")

    form = CheckoutForm()
    error = None
    if request.method == "POST":
        if form.validate_on_submit():
            return complete_registration(state, membership, failure_endpoint="register_checkout")
        error = "All payment fields are required"
    elif request.args.get("error"):
        error = "An error occurred processing your payment. Please try again."

    return render_template(
        "checkout.html",
        form=form,
        membership=membership,
        total_amount=membership.price,
        error=error,
    )


def complete_registration(state, membership, failure_endpoint):
    """
    Persist the account built up by the wizard in one transaction, sign the
    new member in and discard the wizard state. On failure the state is kept
    so the user can retry.
    """
    details = state.user_details
    try:
        user = User(
            first_name=details.first_name,
            middle_name=details.middle_name,
            last_name=details.last_name,
            email=normalize_email(details.email),
            password_hash=details.password_hash,
            phone=details.phone,
            address=details.address,
            city=details.city,
            province=details.province,
            postal_code=details.postal_code,
            role=Role.USER,
            membership=membership,
        )
        if not membership.is_free:
            start = utcnow()
            user.membership_start_date = start
            user.membership_expiry_date = add_one_year(start)

        for entry in state.children:
            if entry.is_blank:
                continue
            user.children.append(Child(
                name=entry.name.strip(),
                age=entry.age,
                date_of_birth=entry.date_of_birth,
                hearing_loss_type=entry.hearing_loss_type,
                equipment_type=entry.equipment_type,
                siblings_names=entry.siblings_names,
                chapter_location=entry.chapter_location,
            ))

        cart = Cart(user=user)
        # Free plans get an empty cart; only paid plans produce a line item.
        if not membership.is_free:
            cart.items.append(CartItem(
                membership=membership,
                quantity=1,
                unit_price=membership.price,
                total_price=membership.price,
            ))

        db.session.add(user)
        db.session.add(cart)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception(f"Registration could not be completed for {details.email}")
        return redirect(url_for(failure_endpoint, error="registration_failed"))

    app.logger.info(f"New member registered: {user.email} (ID: {user.id}, membership: {membership.name})")
    log_audit_event('registration_completed', user.id, details={
        'membership': membership.name,
        'is_free': membership.is_free,
        'children': len(user.children),
    })

    try:
        login_user_session(user)
    except Exception:
        app.logger.exception(f"Auto-login failed for new member {user.id}")
        return redirect(url_for("login", registered="true"))

    wizard.clear(session)
    flash("Welcome! Your account has been created.", "success")
    return redirect(url_for("profile"))


# ==========================
# MEMBERSHIP SERVICES
# ==========================

@dataclass
class CancellationResult:
    success: bool
    message: str


@dataclass
class MembershipInfo:
    name: t.Optional[str]
    is_free: bool
    description: t.Optional[str]


def free_membership():
    return (
        Membership.query
        .filter_by(is_free=True)
        .order_by(Membership.display_order.asc(), Membership.id.asc())
        .first()
    )


def cancel_membership(user_id) -> CancellationResult:
    """Downgrade a paid member to the free tier (or to no membership when none exists)."""
    user = db.session.get(User, user_id)
    if user is None:
        return CancellationResult(False, "User not found")

    current = user.membership
    if current is None:
        return CancellationResult(False, "No active membership to cancel")
    if current.is_free:
        return CancellationResult(
            False, "Free memberships cannot be cancelled. You already have a free membership."
        )

    cancelled_name = current.name
    fallback = free_membership()
    if fallback is not None:
        user.membership = fallback
        user.membership_start_date = utcnow()
    else:
        user.membership = None
        user.membership_start_date = None
    user.membership_expiry_date = None
    db.session.commit()

    app.logger.info(f"User {user.id} cancelled {cancelled_name} membership")
    return CancellationResult(True, f"Successfully cancelled {cancelled_name} membership")


def can_cancel_membership(user_id) -> bool:
    user = db.session.get(User, user_id)
    if user is None or user.membership is None:
        return False
    return not user.membership.is_free


def current_membership_info(user_id) -> MembershipInfo:
    user = db.session.get(User, user_id)
    if user is None or user.membership is None:
        return MembershipInfo(None, False, "No membership")
    membership = user.membership
    return MembershipInfo(membership.name, membership.is_free, membership.description)


def upgrade_membership(user, membership):
    """Move a member onto a paid plan for one year and record the purchase."""
    start = utcnow()
    user.membership = membership
    user.membership_start_date = start
    user.membership_expiry_date = add_one_year(start)

    cart = user.cart
    if cart is None:
        cart = Cart(user=user)
        db.session.add(cart)
    cart.items.append(CartItem(
        membership=membership,
        quantity=1,
        unit_price=membership.price,
        total_price=membership.price,
    ))
    db.session.commit()


# ==========================
# PROFILE ROUTES
# ==========================

def membership_summary(user):
    membership = user.membership
    if membership is None:
        return {
            "membership_type": "No Membership Yet",
            "membership_status": "None",
            "membership_expiry_date": "-",
            "show_benefits": False,
            "membership_benefit": None,
        }
    if membership.is_free:
        return {
            "membership_type": membership.name,
            "membership_status": "Free",
            "membership_expiry_date": "No expiry",
            "show_benefits": True,
            "membership_benefit": membership.description or "-",
        }
    expiry = user.membership_expiry_date
    if expiry is None and user.created_at is not None:
        expiry = add_one_year(user.created_at)
    return {
        "membership_type": membership.name,
        "membership_status": "Paid",
        "membership_expiry_date": expiry.strftime("%B %d, %Y") if expiry else "-",
        "show_benefits": False,
        "membership_benefit": None,
    }


@app.route("/profile")
@login_required
def profile():
    user = get_current_user()
    return render_template(
        "profile.html",
        user=user,
        children=user.children,
        member_since=user.created_at.strftime("%B %d, %Y") if user.created_at else "Recently",
        cancelled=request.args.get("cancelled") == "true",
        upgraded=request.args.get("upgraded") == "true",
        error=request.args.get("error"),
        **membership_summary(user),
    )


@app.route("/profile/edit", methods=["GET", "POST"])
@login_required
def edit_profile():
    user = get_current_user()
    form = ProfileForm(obj=user)

    if request.method == "POST":
        valid = form.validate_on_submit()
        new_email = normalize_email(form.email.data)
        if new_email and new_email != user.email:
            other = find_user_by_email(new_email)
            if other is not None and other.id != user.id:
                form.email.errors = list(form.email.errors) + ["Email already exists. Choose a different one."]
                valid = False
        if valid:
            user.first_name = form.first_name.data.strip()
            user.middle_name = _clean(form.middle_name.data)
            user.last_name = form.last_name.data.strip()
            user.email = new_email
            user.phone = form.phone.data.strip()
            user.address = _clean(form.address.data)
            user.city = _clean(form.city.data)
            user.province = _clean(form.province.data)
            user.postal_code = _clean(form.postal_code.data.upper() if form.postal_code.data else None)
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                app.logger.exception(f"Profile update failed for user {user.id}")
                flash("We could not save your changes. Please try again.", "danger")
                return render_template("edit_profile.html", form=form)
            flash("Profile updated.", "success")
            return redirect(url_for("profile"))

    return render_template("edit_profile.html", form=form)


def _owned_child_or_none(user, child_id):
    child = db.session.get(Child, child_id)
    if child is None or child.user_id != user.id:
        return None
    return child


def _apply_child_form(child, form):
    child.name = form.name.data.strip()
    child.age = form.age.data
    child.date_of_birth = form.date_of_birth.data
    child.hearing_loss_type = _clean(form.hearing_loss_type.data)
    child.equipment_type = _clean(form.equipment_type.data)
    child.siblings_names = _clean(form.siblings_names.data)
    child.chapter_location = _clean(form.chapter_location.data)


@app.route("/profile/child/add", methods=["GET", "POST"])
@login_required
def add_child():
    user = get_current_user()
    form = ChildForm()
    if form.validate_on_submit():
        child = Child(user=user)
        _apply_child_form(child, form)
        try:
            db.session.add(child)
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.exception(f"Could not add child for user {user.id}")
            return redirect(url_for("add_child", error="save_failed"))
        return redirect(url_for("profile"))
    return render_template("edit_child.html", form=form, is_edit=False, child=None)


@app.route("/profile/child/edit/<int:child_id>", methods=["GET", "POST"])
@login_required
def edit_child(child_id):
    user = get_current_user()
    child = _owned_child_or_none(user, child_id)
    if child is None:
        return redirect(url_for("profile"))

    form = ChildForm(obj=child)
    if form.validate_on_submit():
        _apply_child_form(child, form)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.exception(f"Could not update child {child_id}")
            return redirect(url_for("edit_child", child_id=child_id, error="update_failed"))
        return redirect(url_for("profile"))
    return render_template("edit_child.html", form=form, is_edit=True, child=child)


@app.route("/profile/child/delete/<int:child_id>", methods=["POST"])
@login_required
def delete_child(child_id):
    user = get_current_user()
    child = _owned_child_or_none(user, child_id)
    if child is not None:
        try:
            db.session.delete(child)
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.exception(f"Could not delete child {child_id}")
    return redirect(url_for("profile"))


@app.route("/profile/upgrade-membership")
@login_required
def upgrade_membership_page():
    user = get_current_user()
    if user.membership is None or not user.membership.is_free:
        return redirect(url_for("profile", error="not_eligible_for_upgrade"))

    paid_memberships = (
        Membership.query
        .filter_by(is_free=False, active=True)
        .order_by(Membership.display_order.asc())
        .all()
    )
    return render_template(
        "upgrade_membership.html",
        user=user,
        current_membership=user.membership,
        paid_memberships=paid_memberships,
        error=request.args.get("error"),
    )


def _paid_membership_or_none(raw_id):
    membership_id = _parse_int(raw_id)
    if membership_id is None:
        return None
    membership = db.session.get(Membership, membership_id)
    if membership is None or membership.is_free:
        return None
    return membership


@app.route("/profile/upgrade-membership/select", methods=["POST"])
@login_required
def select_upgrade_membership():
    user = get_current_user()
    if user.membership is None or not user.membership.is_free:
        return redirect(url_for("profile", error="not_eligible_for_upgrade"))

    membership = _paid_membership_or_none(request.form.get("membershipId"))
    if membership is None:
        return redirect(url_for("upgrade_membership_page", error="invalid_membership"))

    form = UpgradeCheckoutForm(formdata=None, membership_id=membership.id)
    return render_template("upgrade_checkout.html", user=user, membership=membership, form=form, error=None)


@app.route("/profile/upgrade-membership/checkout", methods=["POST"])
@login_required
def upgrade_membership_checkout():
    user = get_current_user()
    if user.membership is None or not user.membership.is_free:
        return redirect(url_for("profile", error="not_eligible_for_upgrade"))

    form = UpgradeCheckoutForm()
    membership = _paid_membership_or_none(form.membership_id.data)
    if membership is None:
        return redirect(url_for("upgrade_membership_page", error="invalid_membership"))
    if not form.validate_on_submit():
        return render_template(
            "upgrade_checkout.html",
            user=user,
            membership=membership,
            form=form,
            error="All payment fields are required",
        )

    try:
        upgrade_membership(user, membership)
    except Exception:
        db.session.rollback()
        app.logger.exception(f"Membership upgrade failed for user {user.id}")
        return redirect(url_for("upgrade_membership_page", error="upgrade_failed"))

    log_audit_event('membership_upgraded', user.id, 'membership', membership.id)
    send_upgrade_confirmation(user, membership)
    return redirect(url_for("profile", upgraded="true"))


@app.route("/profile/cancel-membership", methods=["GET", "POST"])
@login_required
def cancel_membership_page():
    user = get_current_user()
    if not can_cancel_membership(user.id):
        return redirect(url_for("profile", error="no_membership_to_cancel"))

    if request.method == "POST":
        try:
            result = cancel_membership(user.id)
        except Exception:
            db.session.rollback()
            app.logger.exception(f"Membership cancellation failed for user {user.id}")
            return redirect(url_for("profile", error="cancellation_failed"))
        if not result.success:
            flash(result.message, "danger")
            return redirect(url_for("profile", error="cancellation_failed"))
        log_audit_event('membership_cancelled', user.id, details={'message': result.message})
        flash(result.message, "success")
        return redirect(url_for("profile", cancelled="true"))

    info = current_membership_info(user.id)
    return render_template(
        "cancel_membership.html",
        user=user,
        current_membership_name=info.name,
        current_membership_description=info.description,
    )


# ==========================
# ADMIN ROUTES
# ==========================

def _parse_filter_date(value):
    value = (value or "").strip()
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return None


def _contains(haystack, needle):
    return haystack is not None and needle.lower() in haystack.lower()


def filter_users(users, address=None, city=None, province=None, min_age=None, max_age=None,
                 hearing_loss_type=None, equipment_type=None, start_date=None, end_date=None):
    """Apply the admin dashboard filters. Blank filters match everything."""
    address = (address or "").strip()
    city = (city or "").strip()
    province = (province or "").strip()
    hearing_loss_type = (hearing_loss_type or "").strip().lower()
    equipment_type = (equipment_type or "").strip().lower()
    start = _parse_filter_date(start_date)
    end = _parse_filter_date(end_date)
    if end is not None:
        end = end + timedelta(days=1)

    def child_matches(user, predicate):
        return any(predicate(child) for child in user.children)

    def age_in_range(child):
        if child.age is None:
            return False
        return (min_age is None or child.age >= min_age) and (max_age is None or child.age <= max_age)

    result = []
    for user in users:
        if address and not (_contains(user.address, address) or _contains(user.postal_code, address)):
            continue
        if city and not _contains(user.city, city):
            continue
        if province and not _contains(user.province, province):
            continue
        if (min_age is not None or max_age is not None) and not child_matches(user, age_in_range):
            continue
        if hearing_loss_type and not child_matches(
                user, lambda c: (c.hearing_loss_type or "").lower() == hearing_loss_type):
            continue
        if equipment_type and not child_matches(
                user, lambda c: (c.equipment_type or "").lower() == equipment_type):
            continue
        if start is not None or end is not None:
            if user.created_at is None:
                continue
            if start is not None and user.created_at < start:
                continue
            if end is not None and user.created_at >= end:
                continue
        result.append(user)
    return result


@app.route("/admin/dashboard")
@admin_required
def admin_dashboard():
    admin = get_current_user()
    filters = {
        "address": request.args.get("address"),
        "city": request.args.get("city"),
        "province": request.args.get("province"),
        "min_age": request.args.get("minAge", type=int),
        "max_age": request.args.get("maxAge", type=int),
        "hearing_loss_type": request.args.get("hearingLossType"),
        "equipment_type": request.args.get("equipmentType"),
        "start_date": request.args.get("startDate"),
        "end_date": request.args.get("endDate"),
    }
    all_users = (
        User.query
        .options(selectinload(User.children), joinedload(User.membership))
        .order_by(User.created_at.desc())
        .all()
    )
    users = filter_users(all_users, **filters)
    return render_template(
        "admin.html",
        admin_name=admin.full_name,
        admin_email=admin.email,
        total_users=len(all_users),
        users=users,
        filters=filters,
    )


def serialize_user(user):
    return {
        "id": user.id,
        "firstName": user.first_name,
        "middleName": user.middle_name,
        "lastName": user.last_name,
        "email": user.email,
        "phone": user.phone,
        "address": user.address,
        "city": user.city,
        "province": user.province,
        "postalCode": user.postal_code,
        "role": user.role or Role.USER,
        "creation": user.created_at.isoformat() if user.created_at else None,
        "membershipStartDate": user.membership_start_date.isoformat() if user.membership_start_date else None,
        "membershipExpiryDate": user.membership_expiry_date.isoformat() if user.membership_expiry_date else None,
        "accountLocked": user.account_locked,
        "failedLoginAttempts": user.failed_login_attempts,
        "children": [child.to_dict() for child in user.children],
        "membership": user.membership.to_dict() if user.membership else None,
    }


@app.route("/admin/user/<int:user_id>")
@admin_required
def admin_user_details(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return jsonify({"error": "User not found"}), 404
    return jsonify(serialize_user(user))


USER_EXPORT_COLUMNS = [
    "ID", "First Name", "Middle Name", "Last Name", "Email", "Phone", "Address",
    "City", "Province", "Postal Code", "Role", "Membership", "Registration Date",
    "Number of Children",
]
CHILD_EXPORT_COLUMNS = [
    "Child ID", "Child Name", "Age", "Date of Birth", "Hearing Loss Type",
    "Equipment Type", "Chapter Location", "Siblings Names",
    "Parent ID", "Parent First Name", "Parent Middle Name", "Parent Last Name",
    "Parent Email", "Parent Phone",
]


def _write_header(ws, headers):
    header_fill = PatternFill(start_color="0066CC", end_color="0066CC", fill_type="solid")
    header_font = Font(color="FFFFFF", bold=True)
    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=1, column=col, value=header)
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = Alignment(horizontal='center')


def _fit_columns(ws):
    for column_cells in ws.columns:
        width = max(len(str(cell.value)) if cell.value is not None else 0 for cell in column_cells)
        ws.column_dimensions[column_cells[0].column_letter].width = min(max(width + 2, 10), 50)


def build_users_workbook(users):
    """Two sheets: one row per user, and one row per child with parent details."""
    wb = openpyxl.Workbook()
    users_sheet = wb.active
    users_sheet.title = "Users"
    _write_header(users_sheet, USER_EXPORT_COLUMNS)

    for row, user in enumerate(users, 2):
        values = [
            user.id,
            user.first_name or "",
            user.middle_name or "",
            user.last_name or "",
            user.email or "",
            user.phone or "",
            user.address or "",
            user.city or "",
            user.province or "",
            user.postal_code or "",
            user.role or Role.USER,
            user.membership.name if user.membership else "",
            user.created_at.strftime("%Y-%m-%d %H:%M:%S") if user.created_at else "",
            len(user.children),
        ]
        for col, value in enumerate(values, 1):
            users_sheet.cell(row=row, column=col, value=value)
    _fit_columns(users_sheet)

    children_sheet = wb.create_sheet("Children")
    _write_header(children_sheet, CHILD_EXPORT_COLUMNS)
    row = 2
    for user in users:
        for child in user.children:
            values = [
                child.id,
                child.name or "",
                child.age if child.age is not None else "",
                child.date_of_birth.strftime("%Y-%m-%d") if child.date_of_birth else "",
                child.hearing_loss_type or "",
                child.equipment_type or "",
                child.chapter_location or "",
                child.siblings_names or "",
                user.id,
                user.first_name or "",
                user.middle_name or "",
                user.last_name or "",
                user.email or "",
                user.phone or "",
            ]
            for col, value in enumerate(values, 1):
                children_sheet.cell(row=row, column=col, value=value)
            row += 1
    _fit_columns(children_sheet)
    return wb


@app.route("/admin/export-users")
@admin_required
def admin_export_users():
    users = (
        User.query
        .options(selectinload(User.children), joinedload(User.membership))
        .order_by(User.id.asc())
        .all()
    )
    wb = build_users_workbook(users)
    output = BytesIO()
    wb.save(output)
    output.seek(0)

    response = make_response(output.getvalue())
    response.headers['Content-Type'] = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    response.headers['Content-Disposition'] = (
        f'attachment; filename=users_and_children_{date.today().isoformat()}.xlsx'
    )
    log_audit_event('export_users', get_current_user().id, details={'user_count': len(users)})
    return response


@app.route("/admin/users/<int:user_id>/unlock", methods=["POST"])
@admin_required
def admin_unlock_user(user_id):
    """Unlock a user account."""
    current_user = get_current_user()
    user = db.get_or_404(User, user_id)
    try:
        user.unlock_account()
    except Exception as e:
        db.session.rollback()
        app.logger.exception(f"Admin unlock failed for user {user_id}")
        return jsonify({"success": False, "error": str(e)}), 500

    log_audit_event('admin_unlock_account', current_user.id, 'user', user_id, {
        'target_user': user.email,
        'unlocked_by': current_user.email
    })
    return jsonify({"success": True})


# ==========================
# ERROR HANDLERS
# ==========================

@app.errorhandler(404)
def not_found(error):
    return render_template("errors/404.html"), 404


@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    app.logger.error(f"Unhandled error: {error}")
    return render_template(
        "errors/500.html",
        error_message="An unexpected error occurred. Please try again later."
    ), 500


# ==========================
# CLI COMMANDS
# ==========================

@app.cli.command("init-db")
def init_db_command():
    """
    Create tables, seed default memberships/benefits/tagline and the admin user.
    Run with: flask --app app init-db
    """
    db.create_all()
    seed_defaults()
    admin = ensure_admin_user()
    print(f"Admin account ready: {admin.email}")
    print("Database initialized.")


@app.cli.command("unlock-account")
@click.argument("email")
def unlock_account_command(email):
    """Clear the lockout for EMAIL. Run with: flask --app app unlock-account EMAIL"""
    user = find_user_by_email(email)
    if user is None:
        print(f"User not found: {email}")
        return
    user.unlock_account()
    print(f"Account unlocked: {user.email}")


if __name__ == "__main__":
    with app.app_context():
        db.create_all()
        seed_defaults()
    app.run(debug=True)
