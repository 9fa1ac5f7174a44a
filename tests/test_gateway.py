import hashlib
import hmac

import httpx
import pytest

from nurserybook.errors import GatewayError, GatewayNotConfigured
from nurserybook.gateway import (
    MockGateway, RazorpayGateway, expected_signature, new_gateway,
    verify_signature,
)

SECRET = "s3cr3t"


def _mutations(s):
    alphabet = "0123456789abcdef"
    for i, ch in enumerate(s):
        repl = alphabet[(alphabet.index(ch) + 1) % 16] \
            if ch in alphabet else "0"
        yield s[:i] + repl + s[i + 1:]


class TestSignature:
    def test_hmac_rule(self) -> None:
        want = hmac.new(b"s3cr3t", b"order_1|pay_1",
                        hashlib.sha256).hexdigest()
        assert expected_signature(SECRET, "order_1", "pay_1") == want
        assert verify_signature("order_1", "pay_1", want, SECRET)

    def test_any_single_character_change_fails(self) -> None:
        sig = expected_signature(SECRET, "order_1", "pay_1")
        for bad in _mutations(sig):
            assert not verify_signature("order_1", "pay_1", bad, SECRET)

    def test_swapped_or_altered_ids_fail(self) -> None:
        sig = expected_signature(SECRET, "order_1", "pay_1")
        assert not verify_signature("pay_1", "order_1", sig, SECRET)
        assert not verify_signature("order_2", "pay_1", sig, SECRET)
        assert not verify_signature("order_1", "pay_1", sig, "other")

    def test_missing_parts_fail(self) -> None:
        sig = expected_signature(SECRET, "order_1", "pay_1")
        assert not verify_signature("order_1", "pay_1", None, SECRET)
        assert not verify_signature("order_1", "pay_1", "", SECRET)
        assert not verify_signature("", "pay_1", sig, SECRET)


class TestMockGateway:
    @pytest.mark.anyio
    async def test_pay_produces_valid_signature(self) -> None:
        gw = MockGateway()
        intent = await gw.create_intent(15000, "INR", "r-1", {})
        assert intent["amount"] == 15000
        assert intent["intent_id"].startswith("order_")
        paid = gw.pay(intent["intent_id"])
        assert gw.verify(paid["order_id"], paid["payment_id"],
                         paid["signature"])

    def test_pay_unknown_intent(self) -> None:
        with pytest.raises(GatewayError):
            MockGateway().pay("order_missing")

    @pytest.mark.anyio
    async def test_paid_intent_is_forgotten(self) -> None:
        gw = MockGateway()
        intent = await gw.create_intent(100, "INR", "r-1", {})
        gw.pay(intent["intent_id"])
        assert gw.intents == {}
        with pytest.raises(GatewayError):
            gw.pay(intent["intent_id"])

    @pytest.mark.anyio
    async def test_open_intents_are_capped(self) -> None:
        gw = MockGateway(max_open=3)
        ids = [(await gw.create_intent(100, "INR", f"r-{i}", {}))["intent_id"]
               for i in range(5)]
        assert list(gw.intents) == ids[2:]
        with pytest.raises(GatewayError):
            gw.pay(ids[0])

    @pytest.mark.anyio
    async def test_missing_keys(self) -> None:
        gw = MockGateway(key_secret=None)
        assert not gw.configured
        with pytest.raises(GatewayNotConfigured):
            await gw.create_intent(100, "INR", "r-1", {})
        with pytest.raises(GatewayNotConfigured):
            gw.verify("order_1", "pay_1", "00")


class TestRazorpayGateway:
    @pytest.mark.anyio
    async def test_create_order(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = request.content
            return httpx.Response(200, json={
                "id": "order_abc", "amount": 15000, "currency": "INR",
            })

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        gw = RazorpayGateway("rzp_key", "rzp_secret",
                             base_url="https://gw.test/v1/", http=http)
        intent = await gw.create_intent(15000, "INR", "nursery-adv-1",
                                        {"bookingId": "1"})
        await http.aclose()

        assert intent == {"intent_id": "order_abc", "amount": 15000,
                          "currency": "INR"}
        assert seen["url"] == "https://gw.test/v1/orders"
        assert seen["auth"].startswith("Basic ")
        assert b'"receipt":"nursery-adv-1"' in seen["body"].replace(b" ", b"")

    @pytest.mark.anyio
    async def test_http_failure_is_gateway_error(self) -> None:
        http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(500, json={"error": "boom"})
        ))
        gw = RazorpayGateway("rzp_key", "rzp_secret", http=http)
        with pytest.raises(GatewayError):
            await gw.create_intent(100, "INR", "r", {})
        await http.aclose()


def test_new_gateway_kinds() -> None:
    assert isinstance(new_gateway("mock", None, None, ""), MockGateway)
    assert isinstance(
        new_gateway("razorpay", "k", "s", "https://gw.test"), RazorpayGateway
    )
    with pytest.raises(RuntimeError):
        new_gateway("paypal", "k", "s", "")
