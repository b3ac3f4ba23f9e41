"""Speech-to-text client backed by OpenAI Whisper."""

import logging

import openai
from openai import AsyncOpenAI

from ..config import get_settings
from ..errors import UpstreamError, UpstreamTimeoutError
from ..models.analysis import TranscriptionResult, TranscriptSegment

logger = logging.getLogger(__name__)


class TranscriptionClient:
    """Transcribes raw audio bytes with a language hint."""

    SERVICE = "Transcription"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        client: AsyncOpenAI | None = None,
    ):
        settings = get_settings()
        self.model = model or settings.transcription_model
        self.timeout_seconds = settings.transcription_timeout_seconds
        self.openai = client or AsyncOpenAI(
            api_key=api_key or settings.openai_api_key,
            max_retries=settings.transcription_max_retries,
            timeout=self.timeout_seconds,
        )

    async def transcribe(
        self,
        audio: bytes,
        language: str = "es",
        filename: str = "recording.mp3",
    ) -> TranscriptionResult:
        """Transcribe an audio file.

        Args:
            audio: Raw audio bytes (mp3, wav, m4a, ...)
            language: ISO-639-1 language hint
            filename: Name sent with the upload; its extension tells the API the format

        Returns:
            Transcript text, detected language, duration in seconds and segments

        Raises:
            UpstreamError: If the transcription service fails
        """
        try:
            response = await self.openai.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio),
                language=language,
                response_format="verbose_json",
            )
        except openai.APITimeoutError as e:
            raise UpstreamTimeoutError(self.SERVICE, self.timeout_seconds) from e
        except openai.APIStatusError as e:
            raise UpstreamError(
                self.SERVICE,
                e.message,
                status_code=e.status_code,
                raw_body=e.response.text,
            ) from e
        except openai.OpenAIError as e:
            raise UpstreamError(self.SERVICE, str(e)) from e

        segments = [
            TranscriptSegment(start=segment.start, end=segment.end, text=segment.text.strip())
            for segment in getattr(response, "segments", None) or []
        ]
        return TranscriptionResult(
            text=(response.text or "").strip(),
            language=getattr(response, "language", None) or language,
            duration=getattr(response, "duration", None),
            segments=segments,
        )
