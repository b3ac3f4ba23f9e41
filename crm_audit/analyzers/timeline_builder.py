"""Timeline builder - merges a contact's messages into one chronological sequence."""

from dataclasses import dataclass
from datetime import datetime, timezone

from ..models.analysis import PromptSettings, TimelineEntry, Transcription
from ..models.crm import Message, MessageType

# Sorts messages without a timestamp before everything else
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ChannelSelection:
    """Which channels take part in an analysis run."""

    calls: bool = True
    sms: bool = True
    whatsapp: bool = True

    @classmethod
    def resolve(
        cls,
        settings: PromptSettings,
        include_calls: bool = True,
        include_sms: bool = True,
        include_whatsapp: bool = True,
    ) -> "ChannelSelection":
        """A channel is included only if both the request and the prompt allow it."""
        return cls(
            calls=include_calls and settings.include_calls,
            sms=include_sms and settings.include_sms,
            whatsapp=include_whatsapp and settings.include_whatsapp,
        )

    def allows(self, channel: MessageType) -> bool:
        if channel == MessageType.CALL:
            return self.calls
        if channel == MessageType.SMS:
            return self.sms
        return self.whatsapp


def select_messages(messages: list[Message], selection: ChannelSelection) -> list[Message]:
    """Drop messages whose channel is excluded, keeping encounter order."""
    return [message for message in messages if selection.allows(message.message_type)]


def count_by_channel(entries: list[TimelineEntry]) -> dict[MessageType, int]:
    counts = {channel: 0 for channel in MessageType}
    for entry in entries:
        counts[entry.channel] += 1
    return counts


def build_timeline(
    messages: list[Message],
    transcripts: dict[str, Transcription],
) -> list[TimelineEntry]:
    """Build the timeline from already-selected messages.

    Call messages take their content from ``transcripts``; a call with no
    transcript is left out. The result is sorted ascending by timestamp and
    the sort is stable, so messages with equal timestamps keep their input
    order.

    Args:
        messages: Messages from every conversation of the contact, in fetch order
        transcripts: Successful transcriptions keyed by message id

    Returns:
        The ordered timeline
    """
    entries: list[TimelineEntry] = []
    for message in messages:
        if message.message_type == MessageType.CALL:
            transcript = transcripts.get(message.id)
            if transcript is None:
                continue
            content = transcript.text
        else:
            content = message.body or ""

        entries.append(
            TimelineEntry(
                message_id=message.id,
                channel=message.message_type,
                direction=message.direction,
                timestamp=message.timestamp,
                content=content,
            )
        )

    entries.sort(key=lambda entry: entry.timestamp or _EPOCH)
    return entries
