"""
Session-carried state for the four-step registration wizard.

The wizard is modelled as one of three states, each carrying exactly the data
its step needs:

    DetailsEntered      step 2 (account details collected)
    ChildrenEntered     step 3 (children collected, possibly none)
    MembershipSelected  step 4 (membership chosen and placed in the cart)

Step 1 is the absence of any state; completion discards the state. A
MembershipSelected without a membership id cannot be built, so step 4 can
never be reached without one.

States are stored in the Flask session as plain dicts tagged with ``step``.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from typing import List, Optional, Union

SESSION_KEY = "registration_data"
TOTAL_STEPS = 4


class WizardStateError(Exception):
    """Raised when a transition guard fails or a stored state is unreadable."""


@dataclass(frozen=True)
class UserDetails:
    first_name: str
    last_name: str
    email: str
    password_hash: str
    phone: str
    middle_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "first_name": self.first_name,
            "middle_name": self.middle_name,
            "last_name": self.last_name,
            "email": self.email,
            "password_hash": self.password_hash,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "province": self.province,
            "postal_code": self.postal_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserDetails":
        try:
            return cls(
                first_name=data["first_name"],
                middle_name=data.get("middle_name"),
                last_name=data["last_name"],
                email=data["email"],
                password_hash=data["password_hash"],
                phone=data["phone"],
                address=data.get("address"),
                city=data.get("city"),
                province=data.get("province"),
                postal_code=data.get("postal_code"),
            )
        except (KeyError, TypeError) as e:
            raise WizardStateError(f"Invalid user details: {e}") from e


@dataclass(frozen=True)
class ChildEntry:
    name: str = ""
    age: Optional[int] = None
    date_of_birth: Optional[date] = None
    hearing_loss_type: Optional[str] = None
    equipment_type: Optional[str] = None
    siblings_names: Optional[str] = None
    chapter_location: Optional[str] = None

    @property
    def is_blank(self) -> bool:
        return not (self.name or "").strip()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "age": self.age,
            "date_of_birth": self.date_of_birth.isoformat() if self.date_of_birth else None,
            "hearing_loss_type": self.hearing_loss_type,
            "equipment_type": self.equipment_type,
            "siblings_names": self.siblings_names,
            "chapter_location": self.chapter_location,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChildEntry":
        dob = data.get("date_of_birth")
        try:
            return cls(
                name=data.get("name") or "",
                age=data.get("age"),
                date_of_birth=date.fromisoformat(dob) if dob else None,
                hearing_loss_type=data.get("hearing_loss_type"),
                equipment_type=data.get("equipment_type"),
                siblings_names=data.get("siblings_names"),
                chapter_location=data.get("chapter_location"),
            )
        except (TypeError, ValueError) as e:
            raise WizardStateError(f"Invalid child entry: {e}") from e


@dataclass(frozen=True)
class DetailsEntered:
    """Step 2: account details are valid, children are being entered."""

    user_details: UserDetails
    # Rows shown on the step 2 form; blank rows are placeholders.
    child_rows: List[ChildEntry] = field(default_factory=list)

    step = 2

    def add_child_row(self, rows: Optional[List[ChildEntry]] = None) -> "DetailsEntered":
        """Stay on step 2 with one more (empty) row, keeping what was typed."""
        current = list(rows) if rows is not None else list(self.child_rows)
        return replace(self, child_rows=current + [ChildEntry()])

    def submit_children(self, rows: List[ChildEntry]) -> "ChildrenEntered":
        return ChildrenEntered(
            user_details=self.user_details,
            children=[row for row in rows if not row.is_blank],
        )


@dataclass(frozen=True)
class ChildrenEntered:
    """Step 3: waiting for a membership choice."""

    user_details: UserDetails
    children: List[ChildEntry] = field(default_factory=list)

    step = 3

    def select_membership(self, membership_id: Optional[int]) -> "MembershipSelected":
        if membership_id is None:
            raise WizardStateError("A membership must be selected")
        return MembershipSelected(
            user_details=self.user_details,
            children=list(self.children),
            membership_id=int(membership_id),
        )

    def edit_children(self) -> DetailsEntered:
        return DetailsEntered(user_details=self.user_details, child_rows=list(self.children))


@dataclass(frozen=True)
class MembershipSelected:
    """Step 4: the chosen membership sits in the cart awaiting confirmation."""

    user_details: UserDetails
    children: List[ChildEntry]
    membership_id: int

    step = 4

    @property
    def selected_membership_id(self) -> int:
        return self.membership_id

    @property
    def cart_membership_id(self) -> int:
        return self.membership_id

    def select_membership(self, membership_id: Optional[int]) -> "MembershipSelected":
        return self.remove_from_cart().select_membership(membership_id)

    def remove_from_cart(self) -> ChildrenEntered:
        return ChildrenEntered(user_details=self.user_details, children=list(self.children))

    def edit_children(self) -> DetailsEntered:
        return DetailsEntered(user_details=self.user_details, child_rows=list(self.children))


WizardState = Union[DetailsEntered, ChildrenEntered, MembershipSelected]


def start(user_details: UserDetails) -> DetailsEntered:
    """Step 1 -> step 2. Field validation happens before this is called."""
    return DetailsEntered(user_details=user_details, child_rows=[ChildEntry()])


def has_children_step(state: Optional[WizardState]) -> bool:
    return isinstance(state, (ChildrenEntered, MembershipSelected))


def to_dict(state: WizardState) -> dict:
    data = {"step": state.step, "user_details": state.user_details.to_dict()}
    if isinstance(state, DetailsEntered):
        data["child_rows"] = [row.to_dict() for row in state.child_rows]
    else:
        data["children"] = [child.to_dict() for child in state.children]
    if isinstance(state, MembershipSelected):
        data["membership_id"] = state.membership_id
    return data


def from_dict(data: dict) -> WizardState:
    if not isinstance(data, dict):
        raise WizardStateError("Stored wizard state is not a mapping")
    step = data.get("step")
    user_details = UserDetails.from_dict(data.get("user_details") or {})
    if step == DetailsEntered.step:
        rows = [ChildEntry.from_dict(row) for row in data.get("child_rows") or []]
        return DetailsEntered(user_details=user_details, child_rows=rows)
    children = [ChildEntry.from_dict(child) for child in data.get("children") or []]
    if step == ChildrenEntered.step:
        return ChildrenEntered(user_details=user_details, children=children)
    if step == MembershipSelected.step:
        membership_id = data.get("membership_id")
        if membership_id is None:
            raise WizardStateError("Step 4 state without a membership")
        return MembershipSelected(
            user_details=user_details, children=children, membership_id=int(membership_id)
        )
    raise WizardStateError(f"Unknown wizard step: {step!r}")


def load(session) -> Optional[WizardState]:
    """Return the wizard state held in ``session``, or None when absent or unreadable."""
    data = session.get(SESSION_KEY)
    if data is None:
        return None
    try:
        return from_dict(data)
    except WizardStateError:
        session.pop(SESSION_KEY, None)
        return None


def save(session, state: WizardState) -> None:
    session[SESSION_KEY] = to_dict(state)


def clear(session) -> None:
    session.pop(SESSION_KEY, None)
