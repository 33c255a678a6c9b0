"""
Tests for the streaming completion client and its SSE decoder.
"""

import logging

import pytest
import requests

from conftest import REFERENCE_STREAM, FakeResponse, FakeSession, split_bytes
from nemonic_chat.config import ChatLLMConfig, SamplingParameters
from nemonic_chat.errors import MissingCredential, TransportError
from nemonic_chat.llm_client import (
    Aborted,
    CancellationToken,
    ChatLLMClient,
    Chunk,
    LineDecoder,
    StreamError,
    StreamState,
    UsageFinal,
)
from nemonic_chat.models import TokenUsage

MESSAGES = [{"role": "user", "content": "hi"}]


def open_stream(llm_config, session, token=None, sampling=None):
    client = ChatLLMClient(llm_config, session=session)
    return client.stream_completion(MESSAGES, api_key="sk-test", model="test/model", sampling=sampling, cancel_token=token)


class TestLineDecoder:
    """Carry-over buffering across reads."""

    def test_partial_line_is_carried_over(self):
        decoder = LineDecoder()
        assert decoder.feed(b"data: one\ndata: tw") == ["data: one"]
        assert decoder.feed(b"o\n") == ["data: two"]

    def test_crlf_is_stripped(self):
        decoder = LineDecoder()
        assert decoder.feed(b"data: x\r\n\r\n") == ["data: x", ""]

    def test_multibyte_character_split_between_reads(self):
        decoder = LineDecoder()
        raw = "data: é\n".encode("utf-8")
        split = raw.index(b"\xa9")
        assert decoder.feed(raw[:split]) == []
        assert decoder.feed(raw[split:]) == ["data: é"]

    def test_flush_returns_unterminated_tail(self):
        decoder = LineDecoder()
        decoder.feed(b"data: a\ndata: tail")
        assert decoder.flush() == "data: tail"
        assert decoder.flush() == ""


class TestCancellationToken:
    def test_callbacks_run_once(self):
        token = CancellationToken()
        calls = []
        token.add_callback(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        assert calls == [1]
        assert token.cancelled

    def test_callback_added_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append(1))
        assert calls == [1]

    def test_removed_callback_does_not_run(self):
        token = CancellationToken()
        calls = []

        def callback():
            calls.append(1)

        token.add_callback(callback)
        token.remove_callback(callback)
        token.cancel()
        assert calls == []


class TestStreamDecode:
    """Decoding the newline-delimited ``data:`` framing."""

    def test_reference_stream(self, llm_config):
        response = FakeResponse([REFERENCE_STREAM.encode("utf-8")])
        stream = open_stream(llm_config, FakeSession([response]))

        events = list(stream)

        assert events == [
            Chunk("Hel"),
            Chunk("lo"),
            UsageFinal(TokenUsage(prompt_tokens=5, completion_tokens=2, total_tokens=7)),
        ]
        assert stream.state is StreamState.COMPLETED
        assert response.close_calls == 1

    @pytest.mark.parametrize("read_size", [1, 3, 7, 64])
    def test_reads_split_at_arbitrary_boundaries(self, llm_config, read_size):
        response = FakeResponse(split_bytes(REFERENCE_STREAM, read_size))
        events = list(open_stream(llm_config, FakeSession([response])))
        assert [e.text for e in events if isinstance(e, Chunk)] == ["Hel", "lo"]
        assert events[-1] == UsageFinal(TokenUsage(5, 2, 7))

    def test_nothing_is_read_after_sentinel(self, llm_config):
        late = b'data: {"choices":[{"delta":{"content":"late"}}]}\n'
        response = FakeResponse([REFERENCE_STREAM.encode("utf-8"), late])
        events = list(open_stream(llm_config, FakeSession([response])))
        assert Chunk("late") not in events
        assert response.delivered == 1

    def test_comments_blank_and_foreign_lines_are_ignored(self, llm_config):
        body = (
            ": OPENROUTER PROCESSING\n"
            "\n"
            "event: ping\n"
            'data: {"choices":[{"delta":{"content":"ok"}}]}\n'
            "data: [DONE]\n"
        )
        events = list(open_stream(llm_config, FakeSession([FakeResponse([body.encode()])])))
        assert events[0] == Chunk("ok")
        assert isinstance(events[1], UsageFinal)
        assert len(events) == 2

    def test_malformed_frame_is_skipped(self, llm_config, caplog):
        body = (
            'data: {"choices":[{"delta":{"content":"a"}}]}\n'
            "data: {not json\n"
            'data: {"choices":[{"delta":{"content":"b"}}]}\n'
            "data: [DONE]\n"
        )
        stream = open_stream(llm_config, FakeSession([FakeResponse([body.encode()])]))
        with caplog.at_level(logging.WARNING):
            events = list(stream)

        assert [e.text for e in events if isinstance(e, Chunk)] == ["a", "b"]
        assert stream.state is StreamState.COMPLETED
        assert len(stream.parse_errors) == 1
        assert stream.parse_errors[0].frame == "{not json"
        assert "malformed stream frame" in caplog.text

    def test_missing_usage_reports_zero(self, llm_config, caplog):
        body = 'data: {"choices":[{"delta":{"content":"x"}}]}\ndata: [DONE]\n'
        stream = open_stream(llm_config, FakeSession([FakeResponse([body.encode()])]))
        with caplog.at_level(logging.WARNING):
            events = list(stream)

        assert events[-1] == UsageFinal(TokenUsage.zero())
        assert stream.missing_usage is True
        assert "No usage data" in caplog.text

    def test_latest_usage_wins_and_snake_case_is_accepted(self, llm_config):
        body = (
            'data: {"choices":[],"usage":{"prompt_tokens":1,"completion_tokens":1,"total_tokens":2}}\n'
            'data: {"choices":[],"usage":{"prompt_tokens":10,"completion_tokens":3,"total_tokens":13}}\n'
            "data: [DONE]\n"
        )
        events = list(open_stream(llm_config, FakeSession([FakeResponse([body.encode()])])))
        assert events == [UsageFinal(TokenUsage(10, 3, 13))]

    def test_stream_closed_without_sentinel_still_completes(self, llm_config):
        body = (
            'data: {"choices":[{"delta":{"content":"x"}}]}\n'
            'data: {"choices":[],"usage":{"prompt_tokens":4,"completion_tokens":1,"total_tokens":5}}'
        )
        stream = open_stream(llm_config, FakeSession([FakeResponse([body.encode()])]))
        events = list(stream)
        assert events == [Chunk("x"), UsageFinal(TokenUsage(4, 1, 5))]
        assert stream.state is StreamState.COMPLETED

    def test_request_payload_and_headers(self, llm_config):
        session = FakeSession([FakeResponse([b"data: [DONE]\n"])])
        list(open_stream(llm_config, session, sampling=SamplingParameters(temperature=0.2, top_p=0.9)))

        url, kwargs = session.posts[0]
        assert url == llm_config.endpoint
        assert kwargs["stream"] is True
        assert kwargs["json"] == {
            "model": "test/model",
            "messages": MESSAGES,
            "temperature": 0.2,
            "top_p": 0.9,
            "stream": True,
        }
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
        assert kwargs["headers"]["X-Title"] == "Nemonic Chat"

    def test_stream_is_single_use(self, llm_config):
        stream = open_stream(llm_config, FakeSession([FakeResponse([b"data: [DONE]\n"])]))
        list(stream)
        with pytest.raises(RuntimeError):
            iter(stream)


class TestStreamFailures:
    def test_missing_credential_fails_before_opening(self, llm_config):
        session = FakeSession()
        client = ChatLLMClient(llm_config, session=session)
        with pytest.raises(MissingCredential):
            client.stream_completion(MESSAGES, api_key="", model="test/model")
        assert session.posts == []

    def test_http_error_carries_body(self, llm_config):
        response = FakeResponse(status_code=401, text='{"error":"invalid key"}')
        stream = open_stream(llm_config, FakeSession([response]))

        events = list(stream)

        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        error = events[0].cause
        assert isinstance(error, TransportError)
        assert error.status_code == 401
        assert error.body == '{"error":"invalid key"}'
        assert "invalid key" in error.message
        assert stream.state is StreamState.FAILED
        assert response.close_calls == 1

    def test_connection_error_on_open(self, llm_config):
        stream = open_stream(llm_config, FakeSession(error=requests.ConnectionError("refused")))
        events = list(stream)
        assert isinstance(events[0], StreamError)
        assert isinstance(events[0].cause, TransportError)
        assert stream.state is StreamState.FAILED

    def test_connection_lost_mid_stream(self, llm_config):
        first = b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n'
        response = FakeResponse([first, requests.exceptions.ChunkedEncodingError("reset")])
        stream = open_stream(llm_config, FakeSession([response]))

        events = list(stream)

        assert events[0] == Chunk("Hel")
        assert isinstance(events[1], StreamError)
        assert len(events) == 2
        assert response.close_calls == 1


class TestCancellation:
    def test_cancel_after_first_chunk(self, llm_config):
        token = CancellationToken()
        response = FakeResponse([REFERENCE_STREAM.encode("utf-8")])
        stream = open_stream(llm_config, FakeSession([response]), token=token)

        events = []
        for event in stream:
            events.append(event)
            if event == Chunk("Hel"):
                token.cancel()

        assert events == [Chunk("Hel"), Aborted()]
        assert stream.state is StreamState.ABORTED
        assert response.close_calls == 1

    def test_cancel_between_reads_releases_reader_once(self, llm_config):
        token = CancellationToken()
        reads = split_bytes(REFERENCE_STREAM, 48)
        response = FakeResponse([reads[0], token.cancel] + reads[1:])
        stream = open_stream(llm_config, FakeSession([response]), token=token)

        events = list(stream)

        assert not any(isinstance(e, (UsageFinal, StreamError)) for e in events)
        assert events[-1] == Aborted()
        assert response.close_calls == 1

    def test_cancel_before_open_sends_nothing(self, llm_config):
        token = CancellationToken()
        token.cancel()
        session = FakeSession([FakeResponse([REFERENCE_STREAM.encode()])])
        stream = open_stream(llm_config, session, token=token)

        assert list(stream) == [Aborted()]
        assert session.posts == []

    def test_cancel_after_completion_is_a_no_op(self, llm_config):
        token = CancellationToken()
        stream = open_stream(llm_config, FakeSession([FakeResponse([REFERENCE_STREAM.encode()])]), token=token)
        events = list(stream)
        token.cancel()
        assert stream.state is StreamState.COMPLETED
        assert not any(isinstance(e, Aborted) for e in events)

    def test_closing_the_iterator_counts_as_abort(self, llm_config):
        response = FakeResponse([REFERENCE_STREAM.encode()])
        stream = open_stream(llm_config, FakeSession([response]))
        events = iter(stream)
        assert next(events) == Chunk("Hel")
        events.close()
        assert stream.state is StreamState.ABORTED
        assert response.close_calls == 1


class TestComplete:
    def test_returns_message_content(self, llm_config):
        response = FakeResponse(json_data={"choices": [{"message": {"role": "assistant", "content": "hello"}}]})
        session = FakeSession([response])
        client = ChatLLMClient(llm_config, session=session)

        assert client.complete(MESSAGES, api_key="sk", model="test/model") == "hello"
        assert session.posts[0][1]["json"]["stream"] is False

    def test_error_status_raises(self, llm_config):
        client = ChatLLMClient(llm_config, session=FakeSession([FakeResponse(status_code=500, text="boom")]))
        with pytest.raises(TransportError) as excinfo:
            client.complete(MESSAGES, api_key="sk", model="test/model")
        assert excinfo.value.status_code == 500

    def test_default_config(self):
        client = ChatLLMClient(session=FakeSession())
        assert isinstance(client.config, ChatLLMConfig)
        assert client.config.endpoint.endswith("/chat/completions")


class TestCompleteResponseBody:
    def test_unreadable_json_raises_transport_error(self, llm_config):
        response = FakeResponse(json_data=ValueError("Expecting value"))
        client = ChatLLMClient(llm_config, session=FakeSession([response]))
        with pytest.raises(TransportError, match="unreadable"):
            client.complete(MESSAGES, api_key="sk", model="test/model")

    def test_non_object_body_raises_transport_error(self, llm_config):
        client = ChatLLMClient(llm_config, session=FakeSession([FakeResponse(json_data=["unexpected"])]))
        with pytest.raises(TransportError):
            client.complete(MESSAGES, api_key="sk", model="test/model")
