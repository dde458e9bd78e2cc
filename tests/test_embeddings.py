"""Tests for the embedding providers, the disk cache and the chat-backed extractors.

HTTP is faked with httpx.MockTransport; nothing leaves the process.
"""
import json

import httpx
import pytest

from mnemos.decay import LLMReflector
from mnemos.embeddings import EmbeddingCache, EmbeddingError, OllamaEmbedder, OpenAIEmbedder
from mnemos.graph import LLMEntityExtractor
from mnemos.llm import ChatClient, LLMError, parse_json_array
from mnemos.storage.models import Memory


def openai_handler(requests, fail_first=0):
    """Echo handler: each input's vector is [len(text), index]."""
    state = {"failures": fail_first}

    def handler(request):
        requests.append(request)
        if state["failures"] > 0:
            state["failures"] -= 1
            return httpx.Response(503, json={"error": "busy"})
        body = json.loads(request.content)
        data = [{"index": i, "embedding": [float(len(t)), float(i)]} for i, t in enumerate(body["input"])]
        return httpx.Response(200, json={"data": list(reversed(data))})

    return handler


def make_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestOpenAIEmbedder:

    @pytest.mark.asyncio
    async def test_batches_and_preserves_order(self):
        requests = []
        embedder = OpenAIEmbedder(api_key="k", batch_size=2, client=make_client(openai_handler(requests)))

        vectors = await embedder.embed(["a", "bb", "ccc"])

        assert vectors == [[1.0, 0.0], [2.0, 1.0], [3.0, 0.0]]
        assert len(requests) == 2
        assert str(requests[0].url) == "https://openrouter.ai/api/v1/embeddings"
        assert json.loads(requests[0].content)["model"] == "openai/text-embedding-3-large"
        await embedder.close()

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        requests = []
        embedder = OpenAIEmbedder(api_key="k", retry_delay=0,
                                  client=make_client(openai_handler(requests, fail_first=2)))

        assert await embedder.embed_one("hello") == [5.0, 0.0]
        assert len(requests) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        requests = []
        embedder = OpenAIEmbedder(api_key="k", retry_delay=0, max_retries=2,
                                  client=make_client(openai_handler(requests, fail_first=5)))

        with pytest.raises(EmbeddingError):
            await embedder.embed_one("hello")
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_missing_key_fails_at_call_time(self):
        embedder = OpenAIEmbedder(api_key=None)
        with pytest.raises(EmbeddingError):
            await embedder.embed_one("hello")


class TestOllamaEmbedder:

    @pytest.mark.asyncio
    async def test_embed(self):
        def handler(request):
            assert request.url.path == "/api/embeddings"
            return httpx.Response(200, json={"embedding": [0.1, 0.2]})

        embedder = OllamaEmbedder(client=make_client(handler))
        assert await embedder.embed(["x", "y"]) == [[0.1, 0.2], [0.1, 0.2]]

    @pytest.mark.asyncio
    async def test_error_wrapped(self):
        embedder = OllamaEmbedder(client=make_client(lambda request: httpx.Response(500)))
        with pytest.raises(EmbeddingError):
            await embedder.embed_one("x")


class CountingEmbedder:
    def __init__(self):
        self.batches = []

    async def embed_one(self, text):
        return (await self.embed([text]))[0]

    async def embed(self, texts):
        self.batches.append(list(texts))
        return [[float(len(t)), 1.0] for t in texts]


class TestEmbeddingCache:

    @pytest.mark.asyncio
    async def test_only_misses_are_embedded(self, tmp_path):
        inner = CountingEmbedder()
        cache = EmbeddingCache(tmp_path / "cache", inner)

        first = await cache.embed(["alpha", "beta"])
        second = await cache.embed(["beta", "gamma", "alpha"])

        assert first == [[5.0, 1.0], [4.0, 1.0]]
        assert second == [[4.0, 1.0], [5.0, 1.0], [5.0, 1.0]]
        assert inner.batches == [["alpha", "beta"], ["gamma"]]
        assert len(list((tmp_path / "cache").glob("*.npy"))) == 3

    @pytest.mark.asyncio
    async def test_cache_survives_new_instance(self, tmp_path):
        await EmbeddingCache(tmp_path, CountingEmbedder()).embed_one("persisted")
        inner = CountingEmbedder()

        assert await EmbeddingCache(tmp_path, inner).embed_one("persisted") == [9.0, 1.0]
        assert inner.batches == []


class TestChatClient:

    @pytest.mark.asyncio
    async def test_openai_completion(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "hi"}}]})

        chat = ChatClient(api_key="k", client=make_client(handler))

        assert await chat.complete("Say hi", model="m", max_tokens=10) == "hi"
        assert seen["body"]["messages"] == [{"role": "user", "content": "Say hi"}]
        assert seen["body"]["max_tokens"] == 10

    @pytest.mark.asyncio
    async def test_ollama_completion(self):
        def handler(request):
            assert request.url.path == "/api/chat"
            return httpx.Response(200, json={"message": {"content": "local"}})

        chat = ChatClient(provider="ollama", base_url="http://localhost:11434", client=make_client(handler))
        assert await chat.complete("x", model="llama3") == "local"

    @pytest.mark.asyncio
    async def test_errors(self):
        with pytest.raises(LLMError):
            await ChatClient(api_key=None).complete("x", model="m")
        chat = ChatClient(api_key="k", client=make_client(lambda request: httpx.Response(429)))
        with pytest.raises(LLMError):
            await chat.complete("x", model="m")
        with pytest.raises(ValueError):
            ChatClient(provider="bedrock")


def chat_returning(text):
    return ChatClient(api_key="k", client=make_client(
        lambda request: httpx.Response(200, json={"choices": [{"message": {"content": text}}]})))


class TestLLMCollaborators:

    @pytest.mark.asyncio
    async def test_entity_extractor_parses_fenced_json(self):
        extractor = LLMEntityExtractor(chat_returning(
            'Sure!\n```json\n[{"type": "person", "name": "Alice"}, {"type": "pet", "name": "Rex"}]\n```'
        ), model="fast")

        entities = await extractor.extract("Alice walked Rex in the park this morning")

        assert [(e.type, e.name) for e in entities] == [("person", "Alice")]

    @pytest.mark.asyncio
    async def test_entity_extractor_no_json(self):
        extractor = LLMEntityExtractor(chat_returning("nothing to see"), model="fast")
        assert await extractor.extract("Alice walked Rex in the park this morning") == []

    @pytest.mark.asyncio
    async def test_reflector(self):
        reflector = LLMReflector(chat_returning('["User likes hiking", "User avoids crowds"]'), model="deep")
        memories = [Memory(id=f"m{i}", user_id="u1", content=f"hike {i}", sector="episodic")
                    for i in range(5)]

        insights = await reflector.reflect(memories)

        assert [i.content for i in insights] == ["User likes hiking", "User avoids crowds"]
        assert all(i.sector == "reflective" for i in insights)

    @pytest.mark.asyncio
    async def test_reflector_without_array_raises(self):
        reflector = LLMReflector(chat_returning("I cannot help"), model="deep")
        with pytest.raises(LLMError):
            await reflector.reflect([Memory(id="m", user_id="u1", content="x", sector="episodic")])


@pytest.mark.parametrize("text,expected", [
    ('["a", "b"]', ["a", "b"]),
    ('Here you go: ["a"] thanks', ["a"]),
    ('no array', None),
    ('[not json]', None),
    ('', None),
])
def test_parse_json_array(text, expected):
    assert parse_json_array(text) == expected
