"""SMS message text for approvals, confirmations and registration notices."""

from datetime import datetime, timezone

from family_events.schemas.events import EventRecord

MAX_LOCATION_LENGTH = 40


def _short_location(event: EventRecord) -> str:
    text = event.location.address or event.location.name or "TBD"
    if len(text) <= MAX_LOCATION_LENGTH:
        return text
    return text[: MAX_LOCATION_LENGTH - 3].rstrip() + "..."


def _format_cost(cost: float) -> str:
    return f"${cost:.0f}" if float(cost).is_integer() else f"${cost:.2f}"


def _special_notes(event: EventRecord) -> list[str]:
    notes: list[str] = []
    tags = {tag.lower() for tag in (event.social_proof.tags if event.social_proof else [])}
    if "registration_open" in tags:
        notes.append("🔥 Registration just opened!")
    if "filling_fast" in tags:
        notes.append("⚡ Filling fast")
    if "trending" in tags:
        notes.append("📸 Trending locally")
    if "new_venue" in tags:
        notes.append("✨ New venue for us!")
    return notes


def build_approval_message(event: EventRecord, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    weeks_away = round((event.start_time - now).total_seconds() / (7 * 86400))

    title_line = event.title
    if event.social_proof and event.social_proof.rating is not None:
        title_line += f" ⭐ {event.social_proof.rating:.1f}"

    lines = [
        "New family event found!",
        title_line,
        f"Date: {event.start_time.strftime('%a %b %d, %I:%M %p')} ({weeks_away} weeks away)",
        f"Location: {_short_location(event)}",
    ]
    if event.is_free:
        lines.append("Cost: FREE")
    else:
        lines.append(f"⚠️ COST: {_format_cost(event.cost)} - REQUIRES PAYMENT")
    if event.age_range and event.age_range.min is not None and event.age_range.max is not None:
        lines.append(f"Ages: {event.age_range.min:g}-{event.age_range.max:g}")
    lines.extend(_special_notes(event))

    lines.append("")
    if event.is_free:
        lines.append("Reply YES to book or NO to skip")
    else:
        lines.append("Reply YES to approve (you'll get the payment link)")
        lines.append("Reply NO to skip")
    return "\n".join(lines)


def build_decision_confirmation(event: EventRecord, approved: bool) -> str:
    if not approved:
        return f"👍 Got it! Skipping \"{event.title}\". I'll keep looking for other great events for the family!"
    if event.is_free:
        return f"✅ Perfect! \"{event.title}\" approved and will be booked automatically. You'll get a calendar invite soon! 🎉"
    return f"✅ Great! \"{event.title}\" approved. It needs payment, so the registration link is coming next."


def build_clarification(event_title: str, body: str) -> str:
    shown = body.strip()[:40]
    return f"I didn't understand \"{shown}\". Please reply YES to book \"{event_title}\" or NO to skip it."


def build_registration_success(event: EventRecord, confirmation_number: str | None) -> str:
    message = f"🎉 Registered for \"{event.title}\" on {event.start_time.strftime('%a %b %d, %I:%M %p')}."
    if confirmation_number:
        message += f" Confirmation: {confirmation_number}"
    return message


def build_manual_registration_notice(event: EventRecord, reason: str) -> str:
    message = f"⚠️ Couldn't register automatically for \"{event.title}\" ({reason})."
    if event.registration_url:
        message += f" Please finish here: {event.registration_url}"
    return message
