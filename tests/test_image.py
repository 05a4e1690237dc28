import json

import httpx
import pytest

from flashflow.service.errors import NodeExecutionError
from flashflow.service.image import ImageService


def _service(handler, **kwargs):
    return ImageService(
        api_url="https://images.example.com/v1/generate",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_generate_posts_payload_and_returns_url():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"images": [{"url": "https://cdn.example.com/cat.png"}]})

    service = _service(handler, api_key="img-key")
    result = await service.generate(
        "a cat",
        negative_prompt="blurry",
        reference_images=["https://cdn.example.com/ref.png"],
    )

    assert result == {"imageUrl": "https://cdn.example.com/cat.png"}
    assert seen["auth"] == "Bearer img-key"
    assert seen["body"] == {
        "model": "Kwai-Kolors/Kolors",
        "prompt": "a cat",
        "imageSize": "1024x1024",
        "cfg": 7.5,
        "numInferenceSteps": 25,
        "negativePrompt": "blurry",
        "referenceImages": ["https://cdn.example.com/ref.png"],
    }


@pytest.mark.asyncio
async def test_generate_accepts_alternate_response_shapes():
    for body in ({"imageUrl": "u1"}, {"url": "u1"}, {"data": [{"url": "u1"}]}):
        service = _service(lambda request, body=body: httpx.Response(200, json=body))
        assert await service.generate("x") == {"imageUrl": "u1"}


@pytest.mark.asyncio
async def test_generate_failures_raise_node_errors():
    cases = [
        lambda request: httpx.Response(500, json={"error": "boom"}),
        lambda request: httpx.Response(200, text="not json"),
        lambda request: httpx.Response(200, json={"images": []}),
    ]
    for handler in cases:
        with pytest.raises(NodeExecutionError):
            await _service(handler).generate("x")


@pytest.mark.asyncio
async def test_generate_requires_backend_and_prompt():
    with pytest.raises(NodeExecutionError, match="not configured"):
        await ImageService(api_url=None).generate("x")
    with pytest.raises(NodeExecutionError, match="empty"):
        await _service(lambda request: httpx.Response(200, json={"url": "u"})).generate("   ")


@pytest.mark.asyncio
async def test_transport_errors_are_wrapped():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NodeExecutionError, match="request failed"):
        await _service(handler).generate("x")
