"""Tests for the proxy-backed clients using httpx.MockTransport."""

import asyncio
import base64
import json

import httpx
import pytest

from gourmet_vision.clients import HttpImageGenerator, HttpMenuParser
from gourmet_vision.observability import AnalysisError, GenerationError
from gourmet_vision.schemas import PhotoStyle


def _run(client_factory, handler):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await client_factory(http)

    return asyncio.run(scenario())


class TestHttpMenuParser:
    def test_posts_base64_and_parses_dishes(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "dishes": [
                        {
                            "originalName": "牛肉面",
                            "englishTranslation": "Beef Noodle Soup",
                            "ingredientsOrDescription": "Braised beef",
                            "price": "$12",
                        }
                    ]
                },
            )

        records = _run(lambda http: HttpMenuParser("https://proxy.test/", client=http).parse(b"menu"), handler)

        assert seen["url"] == "https://proxy.test/api/parse-menu"
        assert base64.b64decode(seen["body"]["base64Image"]) == b"menu"
        assert records[0].english_translation == "Beef Noodle Soup"
        assert records[0].price == "$12"

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, json={"error": "Failed to parse menu"}),
            httpx.Response(200, text="<html>oops</html>"),
            httpx.Response(200, json={"items": []}),
            httpx.Response(200, json={"dishes": [{"originalName": "X"}]}),
        ],
    )
    def test_bad_responses_become_analysis_error(self, response):
        with pytest.raises(AnalysisError):
            _run(lambda http: HttpMenuParser("https://proxy.test", client=http).parse(b"menu"), lambda r: response)

    def test_transport_error_becomes_analysis_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AnalysisError, match="unreachable"):
            _run(lambda http: HttpMenuParser("https://proxy.test", client=http).parse(b"menu"), handler)


class TestHttpImageGenerator:
    def test_posts_dish_and_style(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"imageUrl": "data:image/png;base64,AAAA"})

        ref = _run(
            lambda http: HttpImageGenerator("https://proxy.test", style=PhotoStyle.SOCIAL, client=http).generate(
                "Beef Noodle Soup", "Braised beef"
            ),
            handler,
        )

        assert ref == "data:image/png;base64,AAAA"
        assert seen["url"] == "https://proxy.test/api/generate-image"
        assert seen["body"] == {"dishName": "Beef Noodle Soup", "description": "Braised beef", "style": "SOCIAL"}

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, json={"error": "Failed to generate image"}),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"imageUrl": ""}),
            httpx.Response(200, json=["data:image/png;base64,AAAA"]),
        ],
    )
    def test_bad_responses_become_generation_error(self, response):
        with pytest.raises(GenerationError):
            _run(
                lambda http: HttpImageGenerator("https://proxy.test", client=http).generate("Tea", "Green tea"),
                lambda r: response,
            )

    def test_timeout_becomes_generation_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(GenerationError, match="unreachable"):
            _run(lambda http: HttpImageGenerator("https://proxy.test", client=http).generate("Tea", "Tea"), handler)
