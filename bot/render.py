from html import escape
from typing import Any

from engine import Field, Wizard
from submission import SubmissionStatus

EMPTY = "—"


def render_value(field: Field, value: Any) -> str:
    if field.kind == "toggle":
        return "Yes" if value else "No"
    if value is None or value == "":
        return EMPTY
    if field.kind == "password":
        return "•" * 8
    if field.kind == "choice":
        return escape(field.choice_label(value))
    return escape(str(value))


def render_step(wizard: Wizard) -> str:
    """HTML-текст поточного кроку: значення полів, помилки під полями, банер унизу."""
    step = wizard.step
    lines = [
        f"<b>{escape(wizard.config.title)}</b>",
        f"📋 <b>Step {wizard.index + 1}/{wizard.step_count}: {escape(step.title)}</b>",
    ]
    if step.description:
        lines.append(f"<i>{escape(step.description)}</i>")
    lines.append("")

    for field in step.fields:
        mark = " *" if field.required else ""
        lines.append(f"<b>{escape(field.label)}{mark}:</b> {render_value(field, wizard.get(field.name))}")
        if field.name in wizard.errors:
            lines.append(f"   ⚠️ {escape(wizard.errors[field.name])}")

    if step.accepts_assets:
        staged = len(wizard.staging)
        lines.append(f"📸 <b>Photos:</b> {staged}/{wizard.staging.max_count} — send images to this chat")
        if wizard.asset_error:
            lines.append(f"   ⚠️ {escape(wizard.asset_error)}")

    if wizard.is_last_step and len(wizard.config.steps) > 1:
        lines.append("")
        lines.append(render_summary(wizard))

    submission = wizard.submission
    if submission is not None and submission.status is SubmissionStatus.PENDING:
        lines.append("")
        lines.append("⏳ Submitting...")
    elif wizard.banner:
        lines.append("")
        lines.append(f"❌ {escape(wizard.banner)}")

    return "\n".join(lines)


def render_summary(wizard: Wizard) -> str:
    """Короткий підсумок усіх заповнених полів з попередніх кроків."""
    lines = ["🧾 <b>Summary</b>"]
    for step in wizard.config.steps[:-1]:
        for field in step.fields:
            value = wizard.get(field.name)
            if field.kind != "toggle" and (value is None or value == ""):
                continue
            lines.append(f"• {escape(field.label)}: {render_value(field, value)}")
    if wizard.config.max_assets:
        lines.append(f"• Photos: {len(wizard.staging)}")
    return "\n".join(lines)
