"""Pure analysis steps: timeline building and context rendering."""

from .context_assembler import SECTION_SEPARATOR, ContextAssembler, build_model_input
from .timeline_builder import ChannelSelection, build_timeline, count_by_channel, select_messages

__all__ = [
    "SECTION_SEPARATOR",
    "ContextAssembler",
    "build_model_input",
    "ChannelSelection",
    "build_timeline",
    "count_by_channel",
    "select_messages",
]
