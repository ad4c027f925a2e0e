import json

import httpx

from storefront.notifications import EmailService

ORDER = {
    "order_number": "ORD-1-ABC",
    "items": [{"product_name": "Verde", "variant_name": "Large", "quantity": 2, "price": 6.25}],
    "subtotal": 12.5,
    "discount": 0.0,
    "shipping": 5.99,
    "total": 18.49,
}


def relay(status_code=200, requests=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(status_code, json={"id": "msg_1"})
    return httpx.MockTransport(handler)


def service(transport, api_url="https://mail.test/send"):
    return EmailService(api_url=api_url, api_key="key", sender="shop@example.com", timeout=1, transport=transport)


async def test_send_posts_json_to_relay():
    requests = []
    sent = await service(relay(requests=requests)).send_order_confirmation("ada@example.com", ORDER)

    assert sent is True
    [request] = requests
    assert request.headers["Authorization"] == "Bearer key"
    payload = json.loads(request.content)
    assert payload["to"] == "ada@example.com"
    assert payload["from"] == "shop@example.com"
    assert "ORD-1-ABC" in payload["subject"]
    assert "Verde (Large) x2 @ $6.25" in payload["text"]
    assert "Total: $18.49" in payload["text"]


async def test_relay_error_is_reported_not_raised():
    assert await service(relay(status_code=502)).send_welcome("ada@example.com") is False


async def test_transport_failure_is_reported_not_raised():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert await service(httpx.MockTransport(handler)).send_order_status_update("ada@example.com", "ORD-1", "SHIPPED") is False


async def test_unconfigured_relay_skips_sending():
    requests = []
    email = service(relay(requests=requests), api_url=None)

    assert email.configured is False
    assert await email.send("ada@example.com", "Hi", "text") is False
    assert requests == []


async def test_low_stock_alert_lists_products():
    requests = []
    products = [{"name": "Verde", "category": "Sauces", "stock": 2, "variants": [{"name": "Large", "stock": 1}]}]

    await service(relay(requests=requests)).send_low_stock_alert("admin@example.com", products, 10)

    text = json.loads(requests[0].content)["text"]
    assert "Verde (Sauces): 2 units" in text
    assert "Large: 1 units" in text
