"""Report card email content.

One consolidated message per recipient group.  Templates are
``string.Template`` files in ``templates/``.
"""
from __future__ import annotations

import html
from dataclasses import dataclass
from pathlib import Path
from string import Template

from report_dispatch.core.constants import RecipientType
from report_dispatch.distribution.grouper import RecipientGroup

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"

_RELATIONSHIP: dict[RecipientType, tuple[str, str]] = {
    # kind: (phrase after the student list, multi-document subject line)
    RecipientType.SPONSOR: ("you sponsor", "Report Cards for Your Sponsored Students"),
    RecipientType.PARENT: ("in your family", "Report Cards for Your Children"),
    RecipientType.GUARDIAN: ("in your care", "Report Cards for Students in Your Care"),
    RecipientType.STUDENT: ("on your account", "Your Report Cards"),
    RecipientType.OTHER: ("linked to you", "Report Cards for Linked Students"),
}

_missing = set(RecipientType) - set(_RELATIONSHIP)
if _missing:
    raise RuntimeError(f"No relationship wording for recipient types {sorted(_missing)}")


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    html: str
    text: str


def relationship_phrase(kind: RecipientType) -> str:
    return _RELATIONSHIP[RecipientType(kind)][0]


def _load_template(template_dir: Path, name: str) -> Template:
    path = template_dir / name
    if not path.is_file():
        raise FileNotFoundError(f"No template {name!r} in {template_dir}")
    return Template(path.read_text(encoding="utf-8"))


def _subject_line(group: RecipientGroup, academic_year: str) -> str:
    if len(group.documents) == 1:
        return f"Report Card - {group.documents[0].subject_name} - {academic_year}"
    headline = _RELATIONSHIP[RecipientType(group.recipient.kind)][1]
    return f"{headline} - {academic_year}"


def render_group(
    group: RecipientGroup,
    academic_year: str,
    school_name: str,
    template_dir: str | Path | None = None,
) -> RenderedMessage:
    """Render subject, HTML and text bodies for one recipient group."""
    template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
    plural = len(group.documents) > 1

    def label(doc) -> str:
        if doc.admission_number:
            return f"{doc.subject_name} (Admission No: {doc.admission_number})"
        return doc.subject_name

    common = {
        "school_name": school_name,
        "academic_year": academic_year,
        "report_noun": "report cards" if plural else "report card",
        "student_noun": "students" if plural else "student",
        "verb": "are" if plural else "is",
        "relationship": relationship_phrase(group.recipient.kind),
    }

    html_body = _load_template(template_dir, "report_card_email.html").safe_substitute(
        {key: html.escape(value) for key, value in common.items()},
        recipient_name=html.escape(group.recipient.name),
        student_items="\n".join(
            f"          <li>{html.escape(label(doc))}</li>" for doc in group.documents
        ),
    )
    text_body = _load_template(template_dir, "report_card_email.txt").safe_substitute(
        common,
        recipient_name=group.recipient.name,
        student_lines="\n".join(f"- {label(doc)}" for doc in group.documents),
    )
    return RenderedMessage(
        subject=_subject_line(group, academic_year),
        html=html_body,
        text=text_body.strip(),
    )
