"""
Transcription Service Client

Audio and video answers are stored as media references. Before they can be
judged they are transcribed by an external Whisper-compatible service. The
client here resolves a reference to a download URL, checks the format and
size limits, downloads the media and posts it for transcription.

Failures are raised as ``TranscriptionError`` subclasses and are not retried
here; the evaluator scores such a question zero.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

from competency_backend.assessments.base.models import QuestionType
from competency_backend.common.error_handling import (
    ConfigurationError,
    FileTooLargeError,
    TranscriptionFailedError,
    UnsupportedFormatError,
)
from competency_backend.common.logger import app_logger

# Module logger
logger = app_logger.getChild("competency.transcription")

MAX_FILE_BYTES = 25 * 1024 * 1024

AUDIO_FORMATS: Tuple[str, ...] = ("mp3", "wav", "m4a", "webm", "mpeg", "mpga", "ogg")
VIDEO_FORMATS: Tuple[str, ...] = ("mp4", "mov", "webm", "avi", "mkv", "mpeg")

SUPPORTED_FORMATS: Dict[QuestionType, Tuple[str, ...]] = {
    QuestionType.AUDIO: AUDIO_FORMATS,
    QuestionType.VIDEO: VIDEO_FORMATS,
}

# Format assumed when a reference carries no file extension
DEFAULT_FORMATS: Dict[QuestionType, str] = {
    QuestionType.AUDIO: "mp3",
    QuestionType.VIDEO: "mp4",
}

_CHUNK_SIZE = 64 * 1024

MediaResolver = Callable[[str], Awaitable[str]]


class TranscriptionService(ABC):
    """Interface of the external transcription service."""

    @abstractmethod
    async def transcribe(self, media_reference: str, media_type: QuestionType) -> str:
        """
        Transcribe a stored audio or video answer.

        Args:
            media_reference: Storage URL or key of the media
            media_type: QuestionType.AUDIO or QuestionType.VIDEO

        Returns:
            The transcript text (never empty)

        Raises:
            TranscriptionError: If the media cannot be transcribed
        """
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None


async def passthrough_resolver(media_reference: str) -> str:
    """Accept references that are already HTTP(S) URLs."""
    if urlparse(media_reference).scheme in ("http", "https"):
        return media_reference
    raise TranscriptionFailedError(f"Cannot resolve media reference to a URL: {media_reference}")


def media_format(reference: str, media_type: QuestionType) -> str:
    """
    Determine and check the file format of a media reference.

    Raises:
        UnsupportedFormatError: If the extension is not supported for the type
    """
    if media_type not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError(media_type.value, [])

    path = urlparse(reference).path or reference
    extension = os.path.splitext(path)[1].lower().lstrip(".")
    if not extension:
        return DEFAULT_FORMATS[media_type]

    supported = SUPPORTED_FORMATS[media_type]
    if extension not in supported:
        raise UnsupportedFormatError(extension, list(supported))
    return extension


class WhisperTranscriptionClient(TranscriptionService):
    """Transcription backed by an OpenAI-compatible ``/audio/transcriptions`` API."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        model: str = "whisper-1",
        timeout: float = 120.0,
        max_file_bytes: int = MAX_FILE_BYTES,
        resolver: Optional[MediaResolver] = None,
        language: str = "en",
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_file_bytes = max_file_bytes
        self.resolver = resolver or passthrough_resolver
        self.language = language
        self._session = session
        self._owns_session = session is None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is not None and not self._session.closed:
            return self._session

        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                )
                self._owns_session = True
        return self._session

    async def transcribe(self, media_reference: str, media_type: QuestionType) -> str:
        if not self.api_key:
            raise ConfigurationError("Transcription service API key is not configured")

        file_format = media_format(media_reference, media_type)
        url = await self.resolver(media_reference)

        logger.info(f"Starting {media_type.value.lower()} transcription ({file_format})")
        content = await self._download(url)
        logger.info(f"Media downloaded ({len(content) / 1024 / 1024:.2f}MB), transcribing")

        text = await self._post_transcription(content, file_format)
        if not text or not text.strip():
            raise TranscriptionFailedError("Transcription returned no text")

        logger.info(f"Transcription completed ({len(text)} characters)")
        return text.strip()

    async def _download(self, url: str) -> bytes:
        session = await self._get_session()
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    raise TranscriptionFailedError(f"Media download returned HTTP {response.status}")

                if response.content_length is not None and response.content_length > self.max_file_bytes:
                    raise FileTooLargeError(response.content_length, self.max_file_bytes)

                buffer = bytearray()
                async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                    buffer.extend(chunk)
                    if len(buffer) > self.max_file_bytes:
                        raise FileTooLargeError(len(buffer), self.max_file_bytes)
                return bytes(buffer)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TranscriptionFailedError(
                f"Media download failed: {type(e).__name__}", cause=e
            ) from e

    async def _post_transcription(self, content: bytes, file_format: str) -> str:
        form = aiohttp.FormData()
        form.add_field("file", content, filename=f"answer.{file_format}")
        form.add_field("model", self.model)
        form.add_field("language", self.language)
        form.add_field("response_format", "json")

        headers = {"Authorization": f"Bearer {self.api_key}"}
        session = await self._get_session()
        try:
            async with session.post(
                f"{self.base_url}/audio/transcriptions", data=form, headers=headers
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise TranscriptionFailedError(
                        f"Transcription service returned HTTP {response.status}: {body[:200]}"
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TranscriptionFailedError(
                f"Transcription request failed: {type(e).__name__}", cause=e
            ) from e

        if not isinstance(data, dict):
            raise TranscriptionFailedError("Unexpected transcription payload")
        text = data.get("text")
        return text if isinstance(text, str) else ""

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
