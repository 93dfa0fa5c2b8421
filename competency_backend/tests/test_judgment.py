"""
Tests for the judgment and transcription clients and response parsing.
"""

import math

import aiohttp
import pytest

from competency_backend.assessments.base.models import QuestionType
from competency_backend.assessments.competency.judgment import (
    DEFAULT_FEEDBACK,
    OpenAIJudgmentClient,
    clamp_score,
    parse_feedback_response,
    parse_score_response,
)
from competency_backend.assessments.competency.transcription import (
    WhisperTranscriptionClient,
    media_format,
    passthrough_resolver,
)
from competency_backend.common.error_handling import (
    ConfigurationError,
    ExternalServiceError,
    FileTooLargeError,
    MalformedResponseError,
    TranscriptionFailedError,
    UnsupportedFormatError,
)


class FakeContent:
    def __init__(self, body: bytes):
        self.body = body

    async def iter_chunked(self, size):
        for start in range(0, len(self.body), size):
            yield self.body[start:start + size]


class FakeResponse:
    def __init__(self, status=200, payload=None, text="", body=b"", content_length=None):
        self.status = status
        self.payload = payload
        self._text = text
        self.content = FakeContent(body)
        self.content_length = content_length

    async def text(self):
        return self._text

    async def json(self, content_type=None):
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; records requests and replays responses."""

    def __init__(self, post=None, get=None):
        self.closed = False
        self._post = post
        self._get = get
        self.requests = []

    def _reply(self, reply):
        if isinstance(reply, Exception):
            raise reply
        return reply

    def post(self, url, **kwargs):
        self.requests.append(("POST", url, kwargs))
        return self._reply(self._post)

    def get(self, url, **kwargs):
        self.requests.append(("GET", url, kwargs))
        return self._reply(self._get)

    async def close(self):
        self.closed = True


def chat_payload(content):
    return {"choices": [{"message": {"content": content}}]}


class TestParseScoreResponse:
    def test_parses_score_and_feedback(self):
        judged = parse_score_response('{"score": 3.5, "feedback": "Good reflection."}', 5)
        assert judged.score == 3.5
        assert judged.feedback == "Good reflection."

    def test_extracts_json_from_surrounding_text(self):
        judged = parse_score_response('Here you go:\n{"score": 4, "feedback": "Clear."}\nThanks', 5)
        assert judged.score == 4

    def test_clamps_out_of_range_scores(self):
        assert parse_score_response('{"score": 9}', 5).score == 5
        assert parse_score_response('{"score": -2}', 5).score == 0

    def test_numeric_string_score_is_accepted(self):
        assert parse_score_response('{"score": "2"}', 5).score == 2

    def test_missing_feedback_uses_default(self):
        assert parse_score_response('{"score": 1}', 5).feedback == DEFAULT_FEEDBACK

    @pytest.mark.parametrize("text", [
        "no json here",
        '{"feedback": "no score"}',
        '{"score": "high"}',
        '{"score": true}',
        '{"score": null}',
        "{not valid json}",
    ])
    def test_unusable_output_is_malformed(self, text):
        with pytest.raises(MalformedResponseError):
            parse_score_response(text, 5)

    def test_clamp_score_handles_nan(self):
        assert clamp_score(math.nan, 5) == 0.0
        assert clamp_score(2.5, 5) == 2.5


class TestParseFeedbackResponse:
    def test_reads_feedback_field(self):
        assert parse_feedback_response('{"feedback": " Strong overall. "}') == "Strong overall."

    def test_plain_text_is_the_narrative(self):
        assert parse_feedback_response("  You did well in planning.  ") == "You did well in planning."

    @pytest.mark.parametrize("text", ["", "   ", '{"score": 3}', '{"feedback": ""}'])
    def test_unusable_output_is_malformed(self, text):
        with pytest.raises(MalformedResponseError):
            parse_feedback_response(text)


class TestOpenAIJudgmentClient:
    @pytest.mark.asyncio
    async def test_posts_chat_completion_and_returns_content(self):
        session = FakeSession(post=FakeResponse(payload=chat_payload('{"score": 4}')))
        client = OpenAIJudgmentClient("key", base_url="https://llm.example.com/v1/", model="m", session=session)

        text = await client.judge("system", "user", temperature=0.5, max_tokens=300)

        assert text == '{"score": 4}'
        method, url, kwargs = session.requests[0]
        assert url == "https://llm.example.com/v1/chat/completions"
        assert kwargs["json"]["temperature"] == 0.5
        assert kwargs["json"]["max_tokens"] == 300
        assert kwargs["json"]["messages"][0] == {"role": "system", "content": "system"}
        assert kwargs["headers"]["Authorization"] == "Bearer key"

    @pytest.mark.asyncio
    async def test_missing_api_key_is_a_configuration_error(self):
        client = OpenAIJudgmentClient(None, session=FakeSession())
        with pytest.raises(ConfigurationError):
            await client.judge("system", "user")

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        session = FakeSession(post=FakeResponse(status=503, text="overloaded"))
        client = OpenAIJudgmentClient("key", session=session)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.judge("system", "user")
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_transport_error(self):
        session = FakeSession(post=aiohttp.ClientConnectionError("refused"))
        client = OpenAIJudgmentClient("key", session=session)

        with pytest.raises(ExternalServiceError):
            await client.judge("system", "user")

    @pytest.mark.asyncio
    async def test_unexpected_payload_is_malformed(self):
        session = FakeSession(post=FakeResponse(payload={"choices": []}))
        client = OpenAIJudgmentClient("key", session=session)

        with pytest.raises(MalformedResponseError):
            await client.judge("system", "user")

    @pytest.mark.asyncio
    async def test_close_leaves_injected_session_open(self):
        session = FakeSession()
        client = OpenAIJudgmentClient("key", session=session)
        await client.close()
        assert session.closed is False


class TestMediaFormat:
    def test_extension_from_url_path(self):
        assert media_format("https://cdn.example.com/a/answer.WAV?sig=1", QuestionType.AUDIO) == "wav"
        assert media_format("https://cdn.example.com/answer.mov", QuestionType.VIDEO) == "mov"

    def test_default_when_no_extension(self):
        assert media_format("https://cdn.example.com/answer", QuestionType.AUDIO) == "mp3"
        assert media_format("https://cdn.example.com/answer", QuestionType.VIDEO) == "mp4"

    def test_unsupported_extension(self):
        with pytest.raises(UnsupportedFormatError):
            media_format("https://cdn.example.com/answer.flac", QuestionType.AUDIO)
        with pytest.raises(UnsupportedFormatError):
            media_format("https://cdn.example.com/answer.mp3", QuestionType.VIDEO)


class TestWhisperTranscriptionClient:
    @pytest.mark.asyncio
    async def test_passthrough_resolver_rejects_storage_keys(self):
        assert await passthrough_resolver("https://cdn.example.com/a.mp3") == "https://cdn.example.com/a.mp3"
        with pytest.raises(TranscriptionFailedError):
            await passthrough_resolver("uploads/a.mp3")

    @pytest.mark.asyncio
    async def test_downloads_and_transcribes(self):
        session = FakeSession(
            get=FakeResponse(body=b"audio-bytes", content_length=11),
            post=FakeResponse(payload={"text": "  I would pause the lesson.  "}),
        )
        client = WhisperTranscriptionClient("key", base_url="https://stt.example.com/v1", session=session)

        text = await client.transcribe("https://cdn.example.com/answer.m4a", QuestionType.AUDIO)

        assert text == "I would pause the lesson."
        assert session.requests[0][:2] == ("GET", "https://cdn.example.com/answer.m4a")
        assert session.requests[1][:2] == ("POST", "https://stt.example.com/v1/audio/transcriptions")

    @pytest.mark.asyncio
    async def test_rejects_large_files_by_header(self):
        session = FakeSession(get=FakeResponse(body=b"", content_length=2048))
        client = WhisperTranscriptionClient("key", max_file_bytes=1024, session=session)

        with pytest.raises(FileTooLargeError):
            await client.transcribe("https://cdn.example.com/answer.mp3", QuestionType.AUDIO)

    @pytest.mark.asyncio
    async def test_rejects_large_files_while_streaming(self):
        session = FakeSession(get=FakeResponse(body=b"x" * 4096, content_length=None))
        client = WhisperTranscriptionClient("key", max_file_bytes=1024, session=session)

        with pytest.raises(FileTooLargeError):
            await client.transcribe("https://cdn.example.com/answer.mp3", QuestionType.AUDIO)

    @pytest.mark.asyncio
    async def test_empty_transcript_fails(self):
        session = FakeSession(
            get=FakeResponse(body=b"audio"),
            post=FakeResponse(payload={"text": "   "}),
        )
        client = WhisperTranscriptionClient("key", session=session)

        with pytest.raises(TranscriptionFailedError):
            await client.transcribe("https://cdn.example.com/answer.mp3", QuestionType.AUDIO)

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        client = WhisperTranscriptionClient(None, session=FakeSession())
        with pytest.raises(ConfigurationError):
            await client.transcribe("https://cdn.example.com/answer.mp3", QuestionType.AUDIO)
