"""Call transcriber - downloads call recordings and turns them into transcripts.

A failed call never aborts the batch: it is logged, recorded in the returned
failure list and left out of the result.
"""

import asyncio
import logging

from ..clients.highlevel_client import HighLevelClient
from ..clients.transcription_client import TranscriptionClient
from ..config import get_settings
from ..errors import UpstreamError
from ..models.analysis import Transcription, TranscriptionResult
from ..models.crm import Message, MessageType

logger = logging.getLogger(__name__)


class CallTranscriber:
    """Transcribes the CALL messages of an analysis run with bounded concurrency."""

    def __init__(
        self,
        crm_client: HighLevelClient,
        transcription_client: TranscriptionClient,
        concurrency: int | None = None,
    ):
        self.crm = crm_client
        self.transcription = transcription_client
        self.concurrency = max(concurrency or get_settings().transcription_concurrency, 1)

    async def transcribe_message(self, message_id: str, language: str) -> TranscriptionResult:
        """Download and transcribe one recording. Errors propagate to the caller."""
        audio = await self.crm.download_recording(message_id)
        if not audio:
            raise UpstreamError(HighLevelClient.SERVICE, f"recording for message {message_id} is empty")
        return await self.transcription.transcribe(audio, language=language)

    async def transcribe_calls(
        self,
        messages: list[Message],
        language: str,
    ) -> tuple[dict[str, Transcription], list[dict]]:
        """Transcribe every CALL message in ``messages``.

        Returns:
            Tuple of (transcriptions keyed by message id, failures as
            ``{"messageId", "error"}`` dicts in input order)
        """
        calls = [message for message in messages if message.message_type == MessageType.CALL]
        if not calls:
            return {}, []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(message: Message) -> Transcription | str:
            async with semaphore:
                try:
                    result = await self.transcribe_message(message.id, language)
                except Exception as e:
                    logger.warning("Transcription failed for call %s: %s", message.id, e)
                    return str(e) or type(e).__name__
            if not result.text.strip():
                logger.warning("Transcription for call %s came back empty", message.id)
                return "empty transcript"
            return Transcription(
                message_id=message.id,
                text=result.text,
                duration=result.duration,
                language=result.language or language,
                timestamp=message.timestamp,
            )

        outcomes = await asyncio.gather(*(_one(message) for message in calls))

        transcripts: dict[str, Transcription] = {}
        failures: list[dict] = []
        for message, outcome in zip(calls, outcomes):
            if isinstance(outcome, Transcription):
                transcripts[message.id] = outcome
            else:
                failures.append({"messageId": message.id, "error": outcome})

        logger.info("Transcribed %d of %d calls", len(transcripts), len(calls))
        return transcripts, failures
