import json
import math
from pathlib import Path

import httpx
import pytest

from vidscribe.audio_preprocessor import AudioChunk
from vidscribe.engines import whisper_client as whisper_module
from vidscribe.engines.whisper_client import WhisperClient, parse_response
from vidscribe.errors import EngineConnectionError, SourceNotFound, TranscriptionError
from vidscribe.retry import engine_call_policy


class StubPreprocessor:
    def __init__(self, duration: float, chunks: list[AudioChunk] | None = None) -> None:
        self.duration = duration
        self.chunks = chunks or []
        self.split_calls: list[tuple[float, float]] = []

    def get_duration(self, audio_path: str) -> float:
        return self.duration

    def split_into_chunks(self, audio_path, chunk_duration, overlap, *, total_duration=None, prefix="chunk"):
        self.split_calls.append((chunk_duration, overlap))
        return self.chunks


def _verbose_json(text: str = "Hello world.", words: bool = True) -> dict:
    segment = {"start": 0.0, "end": 1.0, "text": f" {text}", "avg_logprob": -0.1}
    if words:
        segment["words"] = [
            {"start": 0.0, "end": 0.5, "word": " Hello", "probability": 0.95},
            {"start": 0.5, "end": 1.0, "word": " world.", "probability": 0.9},
        ]
    return {"text": f" {text}", "language": "en", "duration": 1.0, "segments": [segment]}


def _client(handler, tmp_path: Path, duration: float = 30.0, chunks=None, sleeps=None) -> WhisperClient:
    sleeps = [] if sleeps is None else sleeps
    return WhisperClient(
        host="whisper.local",
        port=3333,
        preprocessor=StubPreprocessor(duration, chunks),
        retry_policy=engine_call_policy("whisper transcription", sleep=sleeps.append),
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture()
def audio_file(tmp_path: Path) -> str:
    path = tmp_path / "audio.wav"
    path.write_bytes(b"RIFF-fake-wav")
    return str(path)


def test_connection_failure_on_every_attempt_raises_connection_error(tmp_path: Path, audio_file: str) -> None:
    calls = []
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("Connection refused", request=request)

    client = _client(handler, tmp_path, sleeps=sleeps)

    with pytest.raises(EngineConnectionError, match="Cannot connect to Whisper server at whisper.local:3333"):
        client.transcribe(audio_file)
    assert len(calls) == 3
    assert sleeps == [2.0, 4.0]


def test_third_attempt_success_returns_result(tmp_path: Path, audio_file: str) -> None:
    calls = []
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("Connection reset", request=request)
        return httpx.Response(200, json=_verbose_json())

    result = _client(handler, tmp_path, sleeps=sleeps).transcribe(audio_file)

    assert len(calls) == 3
    assert sleeps == [2.0, 4.0]
    assert result.text == "Hello world."
    assert [word.text for word in result.words] == [" Hello", " world."]


def test_bad_request_is_not_retried(tmp_path: Path, audio_file: str) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, text="missing file")

    with pytest.raises(TranscriptionError, match="Bad request") as excinfo:
        _client(handler, tmp_path).transcribe(audio_file)
    assert len(calls) == 1
    assert excinfo.value.retryable is False


def test_server_error_is_retried(tmp_path: Path, audio_file: str) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(500, text="failed to process audio")
        return httpx.Response(200, json=_verbose_json())

    result = _client(handler, tmp_path).transcribe(audio_file)

    assert len(calls) == 2
    assert result.language == "en"


def test_unparseable_body_is_not_retried(tmp_path: Path, audio_file: str) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(TranscriptionError, match="Failed to parse"):
        _client(handler, tmp_path).transcribe(audio_file)
    assert len(calls) == 1


def test_read_timeout_is_retried_then_surfaces(tmp_path: Path, audio_file: str) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TranscriptionError, match="timed out"):
        _client(handler, tmp_path).transcribe(audio_file)
    assert len(calls) == 3


def test_request_carries_decoding_parameters(tmp_path: Path, audio_file: str) -> None:
    seen: dict[str, bytes] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        request.read()
        seen["url"] = str(request.url).encode()
        seen["body"] = request.content
        return httpx.Response(200, json=_verbose_json())

    _client(handler, tmp_path).transcribe(audio_file)

    body = seen["body"]
    assert seen["url"] == b"http://whisper.local:3333/inference"
    for name, value in [
        ("response_format", b"verbose_json"),
        ("language", b"en"),
        ("word_timestamps", b"true"),
        ("temperature", b"0.0"),
        ("no_speech_threshold", b"0.6"),
        ("compression_ratio_threshold", b"2.4"),
        ("condition_on_previous_text", b"false"),
    ]:
        assert f'name="{name}"'.encode() in body
        assert value in body
    assert b'filename="audio.wav"' in body


def test_suppression_parameters_can_be_disabled() -> None:
    client = WhisperClient(suppress_hallucinations=False)

    assert "no_speech_threshold" not in client.form_fields()
    assert client.form_fields()["temperature"] == "0.0"


def test_parse_relative_word_timestamps_and_defaults() -> None:
    body = {
        "text": "later words",
        "segments": [
            {
                "start": 10.0,
                "end": 12.0,
                "text": " later words",
                "confidence": 0.7,
                "words": [
                    {"start": 0.2, "end": 0.6, "word": " later"},
                    {"start": 10.7, "end": 11.2, "word": " words", "probability": 0.8},
                    {"start": None, "end": 11.5, "word": " skipped"},
                    {"start": -1.0, "end": 0.5, "word": " negative"},
                    {"start": 11.8, "end": 11.6, "word": " backwards"},
                ],
            }
        ],
    }

    result = parse_response(json.dumps(body))

    assert [word.text for word in result.words] == [" later", " words"]
    assert [word.start for word in result.words] == pytest.approx([10.2, 10.7])
    assert [word.end for word in result.words] == pytest.approx([10.6, 11.2])
    assert result.words[0].confidence == 0.9
    assert result.segments[0].confidence == 0.7
    assert result.subword_tokens is True
    assert result.duration == 12.0


def test_segments_without_words_get_synthetic_timings() -> None:
    result = parse_response(json.dumps(_verbose_json(words=False)))

    assert [word.text for word in result.words] == ["Hello", "world."]
    assert result.words[0].confidence == pytest.approx(math.exp(-0.1))
    assert result.segments[0].confidence == pytest.approx(math.exp(-0.1))
    assert result.subword_tokens is False


def test_long_audio_is_chunked_and_offset(tmp_path: Path, audio_file: str) -> None:
    chunk_paths = []
    chunks = []
    for index, start in enumerate([0.0, 117.0]):
        path = tmp_path / f"chunk_{index}.wav"
        path.write_bytes(b"chunk")
        chunk_paths.append(path)
        chunks.append(AudioChunk(path=str(path), index=index, start_sec=start, duration_sec=120.0 if index == 0 else 33.0))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "text": "chunk",
                "language": "en",
                "segments": [
                    {"start": 0.0, "end": 2.0, "text": " chunk", "words": [{"start": 3.5, "end": 3.9, "word": " chunk"}]}
                ],
            },
        )

    client = _client(handler, tmp_path, duration=150.0, chunks=chunks)
    result = client.transcribe(audio_file)

    assert client.preprocessor.split_calls == [(120.0, 3.0)]
    assert [word.start for word in result.words] == [3.5, 120.5]
    assert [segment.start for segment in result.segments] == [0.0, 117.0]
    assert result.text == "chunk chunk"
    assert result.duration == 150.0
    assert not any(path.exists() for path in chunk_paths)


def test_chunk_files_removed_when_engine_fails(tmp_path: Path, audio_file: str) -> None:
    path = tmp_path / "chunk_0.wav"
    path.write_bytes(b"chunk")
    chunks = [AudioChunk(path=str(path), index=0, start_sec=0.0, duration_sec=120.0)]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="nope")

    with pytest.raises(TranscriptionError):
        _client(handler, tmp_path, duration=200.0, chunks=chunks).transcribe(audio_file)
    assert not path.exists()


def test_missing_audio_raises_source_not_found(tmp_path: Path) -> None:
    client = _client(lambda request: httpx.Response(200, json=_verbose_json()), tmp_path)

    with pytest.raises(SourceNotFound):
        client.transcribe(str(tmp_path / "missing.wav"))


def test_health_check_uses_tcp_connect(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(address, timeout=None):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(whisper_module.socket, "create_connection", refuse)

    assert WhisperClient().health_check() is False
    assert WhisperClient().engine_name == "whisper"
