"""Registration page analysis and form-fill planning.

Pure functions only: the browser driver hands over page text and form
fields, and these decide what a page is (payment page, confirmation page)
and what to type where. Sensitive payment/identity fields are never filled.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date

from family_events.integrations.browser import FormField

PAYMENT_TEXT_KEYWORDS = (
    "credit card",
    "card number",
    "cvv",
    "security code",
    "expiration date",
    "billing address",
    "checkout",
    "paypal",
)

PAYMENT_SELECTORS = (
    'input[name*="card"]',
    'input[name*="credit"]',
    'input[name*="payment"]',
    'input[id*="card"]',
    'input[id*="payment"]',
    'input[placeholder*="card"]',
    ".payment-form",
    ".credit-card",
    'iframe[src*="stripe"]',
    'iframe[src*="paypal"]',
)

SENSITIVE_FIELD_KEYWORDS = (
    "card",
    "cvv",
    "cvc",
    "credit",
    "payment",
    "billing",
    "expir",
    "security_code",
    "iban",
    "routing",
    "account_number",
    "ssn",
    "social_security",
    "password",
)

SUCCESS_PHRASES = (
    "thank you for registering",
    "thanks for registering",
    "registration complete",
    "registration confirmed",
    "registration received",
    "successfully registered",
    "you're registered",
    "you are registered",
    "is confirmed",
    "see you there",
    "thank you",
)

ERROR_PHRASES = (
    "please correct",
    "required field",
    "is required",
    "error",
    "sold out",
    "registration is closed",
    "waitlist",
)

_PRICE_RE = re.compile(r"\$\s?(\d{1,4}(?:,\d{3})*(?:\.\d{2})?)")
_CONFIRMATION_RE = re.compile(
    r"(?:confirmation|registration|booking|reference|order|ticket)\s*"
    r"(?:number|no\.?|#|id|code)?\s*[:#]?\s*"
    r"(?=[A-Z-]*\d)([A-Z0-9][A-Z0-9-]{3,})",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RegistrantChild:
    name: str
    age: int


@dataclass(frozen=True)
class Registrant:
    first_name: str
    last_name: str
    email: str
    phone: str
    children: tuple[RegistrantChild, ...]
    adult_count: int = 1
    zip_code: str = ""
    emergency_phone: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def build_registrant(
    parents: Sequence,
    children: Sequence,
    event_day: date,
    age_min: float | None = None,
    age_max: float | None = None,
    zip_code: str = "",
    emergency_phone: str = "",
) -> Registrant:
    """Registrant for one event: the first parent plus the children the event fits.

    Falls back to every child when none is inside the age range.
    """
    if not parents:
        raise ValueError("No parent configured to register with")
    low = age_min if age_min is not None else 0.0
    high = age_max if age_max is not None else 99.0

    all_children = [RegistrantChild(name=c.name, age=int(c.age_on(event_day))) for c in children]
    eligible = [c for c in all_children if low <= c.age <= high] or all_children
    parent = parents[0]
    return Registrant(
        first_name=parent.first_name,
        last_name=parent.last_name,
        email=parent.email,
        phone=parent.phone,
        children=tuple(eligible),
        adult_count=1,
        zip_code=zip_code,
        emergency_phone=emergency_phone or parent.phone,
    )


@dataclass
class FillPlan:
    assignments: list[tuple[FormField, str]] = field(default_factory=list)
    refused: list[FormField] = field(default_factory=list)
    missing_required: list[FormField] = field(default_factory=list)


def _has(descriptor: str, *words: str) -> bool:
    return any(word in descriptor for word in words)


def _value_for(form_field: FormField, registrant: Registrant) -> str | None:
    d = form_field.descriptor
    first_child = registrant.children[0] if registrant.children else None
    child_word = _has(d, "child", "kid", "participant", "attendee_name", "camper", "student")
    count_word = _has(d, "count", "num", "number_of", "how_many", "quantity", "qty")

    if form_field.field_type == "email" or "email" in d:
        return registrant.email
    if _has(d, "emergency"):
        return registrant.emergency_phone or None
    if form_field.field_type == "tel" or _has(d, "phone", "mobile", "cell"):
        return registrant.phone
    if child_word and count_word:
        return str(len(registrant.children))
    if _has(d, "adult", "parent", "guardian") and count_word:
        return str(registrant.adult_count)
    if (_has(d, "attendees", "tickets", "guests") and count_word) or _has(d, "party_size"):
        return str(registrant.adult_count + len(registrant.children))
    if child_word and "age" in d and first_child:
        return str(first_child.age)
    if child_word and "name" in d and first_child:
        return first_child.name
    if _has(d, "age") and not _has(d, "page", "message", "language") and first_child:
        return str(first_child.age)
    if _has(d, "first_name", "firstname", "fname", "given"):
        return registrant.first_name
    if _has(d, "last_name", "lastname", "lname", "surname", "family_name"):
        return registrant.last_name
    if _has(d, "parent", "guardian") and "name" in d:
        return registrant.full_name
    if _has(d, "zip", "postal"):
        return registrant.zip_code or None
    if "name" in d:
        return registrant.full_name
    return None


def plan_form_fill(fields: Sequence[FormField], registrant: Registrant) -> FillPlan:
    """Decide a value for each recognizable field; refuse sensitive ones."""
    plan = FillPlan()
    for form_field in fields:
        if _has(form_field.descriptor, *SENSITIVE_FIELD_KEYWORDS) or form_field.field_type == "password":
            plan.refused.append(form_field)
            continue
        if form_field.field_type in ("checkbox", "radio"):
            # Consent boxes and choices are left for a human
            if form_field.required:
                plan.missing_required.append(form_field)
            continue
        value = _value_for(form_field, registrant)
        if value is None:
            if form_field.required:
                plan.missing_required.append(form_field)
            continue
        plan.assignments.append((form_field, value))
    return plan


def find_payment_signals(page_text: str) -> list[str]:
    """Payment keywords and non-zero prices found in page text."""
    text = page_text.lower()
    signals = [kw for kw in PAYMENT_TEXT_KEYWORDS if kw in text]
    for match in _PRICE_RE.finditer(page_text):
        if float(match.group(1).replace(",", "")) > 0:
            signals.append(f"price ${match.group(1)}")
    return signals


def looks_confirmed(page_text: str) -> bool:
    text = page_text.lower()
    if any(phrase in text for phrase in ERROR_PHRASES):
        return False
    return any(phrase in text for phrase in SUCCESS_PHRASES)


def extract_confirmation_number(page_text: str) -> str | None:
    match = _CONFIRMATION_RE.search(page_text)
    return match.group(1) if match else None
