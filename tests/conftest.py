"""
Shared pytest fixtures and fakes for the chat engine tests.

The fakes stand in for ``requests.Session`` / ``requests.Response`` so the
streaming client can be driven without a network.
"""

import pytest
import requests

from nemonic_chat.config import ChatConfig, ChatLLMConfig
from nemonic_chat.llm_client import ChatLLMClient
from nemonic_chat.models import ModelInfo, ModelPricing
from nemonic_chat.service import ChatOrchestrator
from nemonic_chat.storage import InMemoryStore

REFERENCE_STREAM = (
    'data: {"choices":[{"delta":{"content":"Hel"}}]}\n'
    'data: {"choices":[{"delta":{"content":"lo"}}]}\n'
    'data: {"choices":[{"delta":{}}],"usage":{"promptTokens":5,"completionTokens":2,"totalTokens":7}}\n'
    "data: [DONE]\n"
)


def split_bytes(text, size):
    """Cut ``text`` into byte reads of ``size`` to exercise the carry-over buffer."""
    raw = text.encode("utf-8")
    return [raw[i:i + size] for i in range(0, len(raw), size)]


class FakeResponse:
    """Minimal stand-in for a streamed ``requests.Response``.

    ``reads`` items are bytes to deliver, exceptions to raise, or callables
    invoked at that point of the read loop (for cancelling mid-stream).
    """

    def __init__(self, reads=(), status_code=200, text="", json_data=None):
        self.reads = list(reads)
        self.status_code = status_code
        self.text = text
        self.json_data = json_data
        self.close_calls = 0
        self.delivered = 0

    @property
    def ok(self):
        return self.status_code < 400

    def iter_content(self, chunk_size=1):
        for item in self.reads:
            if self.close_calls:
                raise requests.exceptions.ConnectionError("connection closed")
            if isinstance(item, Exception):
                raise item
            if callable(item):
                item()
                continue
            self.delivered += 1
            yield item

    def close(self):
        self.close_calls += 1

    def json(self):
        if isinstance(self.json_data, Exception):
            raise self.json_data
        return self.json_data

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    """Records requests and hands back queued responses."""

    def __init__(self, responses=(), error=None, get_response=None):
        self.responses = list(responses)
        self.error = error
        self.get_response = get_response
        self.posts = []
        self.gets = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        self.gets.append((url, kwargs))
        if isinstance(self.get_response, Exception):
            raise self.get_response
        return self.get_response


class FakeCatalog:
    def __init__(self, models=None):
        self.models = models or []
        self.calls = 0

    def get_models(self, api_key=None):
        self.calls += 1
        return list(self.models)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def llm_config():
    return ChatLLMConfig(endpoint="http://llm.test/v1/chat/completions", models_endpoint="http://llm.test/v1/models")


@pytest.fixture
def catalog():
    return FakeCatalog([ModelInfo(id="test/model", pricing=ModelPricing(prompt=2.0, completion=4.0))])


@pytest.fixture
def make_orchestrator(store, llm_config, catalog):
    """Build an orchestrator whose client replays the given responses."""

    def factory(*responses, config=None, api_key="sk-test", model="test/model"):
        session = FakeSession(responses)
        if api_key:
            store.set("nemonic_api_key", api_key)
        store.set("nemonic_model", model)
        chat_config = config or ChatConfig(llm=llm_config)
        client = ChatLLMClient(chat_config.llm, session=session)
        orchestrator = ChatOrchestrator(store, chat_config, client=client, catalog=catalog)
        return orchestrator, session

    return factory
