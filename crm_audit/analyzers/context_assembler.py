"""Context assembler - renders a contact and its timeline into model input text.

Pure string assembly: no I/O, and the same input always renders to the same text.
"""

from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo

from ..config import get_settings
from ..models.analysis import PromptSettings, TimelineEntry
from ..models.crm import Contact

SECTION_SEPARATOR = "\n\n---\n\n"
TIMESTAMP_FORMAT = "%d/%m/%Y, %H:%M:%S"


def _resolve_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class ContextAssembler:
    """Builds the context block appended to a prompt's content."""

    def __init__(self, timezone_name: str | None = None):
        self.tz = _resolve_timezone(timezone_name or get_settings().display_timezone)

    def format_timestamp(self, value: datetime | None) -> str:
        if value is None:
            return "unknown time"
        return value.astimezone(self.tz).strftime(TIMESTAMP_FORMAT)

    def contact_section(self, contact: Contact) -> str:
        lines = [
            "CONTACT INFORMATION:",
            f"Name: {contact.name}",
            f"Email: {contact.email or 'N/A'}",
            f"Phone: {contact.phone or 'N/A'}",
            f"Tags: {', '.join(contact.tags) if contact.tags else 'None'}",
            f"Source: {contact.source or 'N/A'}",
        ]
        if contact.custom_fields:
            lines.append("Custom Fields:")
            for key in sorted(contact.custom_fields):
                lines.append(f"  {key}: {contact.custom_fields[key]}")
        return "\n".join(lines)

    def history_section(self, timeline: list[TimelineEntry]) -> str:
        lines = [f"COMMUNICATION HISTORY ({len(timeline)} messages):", ""]
        for entry in timeline:
            lines.append(
                f"[{self.format_timestamp(entry.timestamp)}] "
                f"{entry.channel.value} - {entry.direction.upper()}: {entry.content}"
            )
        return "\n".join(lines)

    def assemble(
        self,
        contact: Contact,
        timeline: list[TimelineEntry],
        settings: PromptSettings,
    ) -> str:
        """Render the context block.

        The contact section is present iff ``settings.include_contact_info``;
        the history section is present iff the timeline is non-empty.
        """
        sections = []
        if settings.include_contact_info:
            sections.append(self.contact_section(contact))
        if timeline:
            sections.append(self.history_section(timeline))
        return SECTION_SEPARATOR.join(sections)


def build_model_input(prompt_content: str, context: str) -> str:
    """The final text sent to the model: prompt content followed by the context."""
    if not context:
        return prompt_content
    return f"{prompt_content}\n\n{context}"
