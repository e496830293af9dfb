"""Tests for channel adapters: payload normalization, verification and delivery."""

import hashlib
import hmac
import json

import httpx
import pytest

from agent_desk.channels.base import split_message, verify_meta_signature
from agent_desk.channels.mail import EmailAdapter, reply_subject
from agent_desk.channels.messenger import MessengerAdapter
from agent_desk.channels.registry import ChannelRegistry
from agent_desk.channels.telegram import TelegramAdapter
from agent_desk.channels.whatsapp import WhatsAppAdapter
from agent_desk.config import (
    DeliveryConfig,
    EmailConfig,
    MessengerConfig,
    TelegramConfig,
    WhatsAppConfig,
)
from agent_desk.errors import ChannelNotConfigured, DeliveryError, VerificationFailed

FAST = DeliveryConfig(retry_attempts=3, retry_min_wait=0, retry_max_wait=0)


def _whatsapp(handler=None, **overrides):
    config = WhatsAppConfig(
        access_token="token", phone_number_id="PNID", verify_token="verify-me", **overrides
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return WhatsAppAdapter(config, FAST, client=client)


# -- WhatsApp ------------------------------------------------------------------


def test_whatsapp_normalizes_text_and_media():
    payload = {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"value": {
            "metadata": {"phone_number_id": "PNID"},
            "contacts": [{"wa_id": "15550001", "profile": {"name": "Jane"}}],
            "messages": [
                {"from": "15550001", "id": "wamid.1", "timestamp": "1714564800",
                 "type": "text", "text": {"body": "Hello"}},
                {"from": "15550001", "id": "wamid.2", "timestamp": "1714564801",
                 "type": "image", "image": {"caption": "my receipt"}},
                {"from": "15550001", "id": "wamid.3", "timestamp": "1714564802",
                 "type": "sticker", "sticker": {}},
            ],
        }}]}],
    }
    messages = _whatsapp().normalize_inbound(payload)

    assert [m.text for m in messages] == ["Hello", "my receipt", "[sticker]"]
    first = messages[0]
    assert first.external_sender_id == "15550001"
    assert first.native_message_id == "wamid.1"
    assert first.contact_name == "Jane"
    assert first.timestamp.timestamp() == 1714564800
    assert first.metadata == {"phone_number_id": "PNID"}


@pytest.mark.parametrize("payload", [
    {},
    {"object": "page"},
    {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {"statuses": []}}]}]},
    {"object": "whatsapp_business_account", "entry": [None]},
])
def test_whatsapp_unsupported_payloads_are_empty(payload):
    assert _whatsapp().normalize_inbound(payload) == []


def test_whatsapp_challenge():
    adapter = _whatsapp()
    assert adapter.verify_challenge("subscribe", "verify-me", "123") == "123"
    with pytest.raises(VerificationFailed):
        adapter.verify_challenge("subscribe", "wrong", "123")
    with pytest.raises(VerificationFailed):
        adapter.verify_challenge("unsubscribe", "verify-me", "123")


def test_meta_signature():
    body = b'{"object":"page"}'
    good = "sha256=" + hmac.new(b"secret", body, hashlib.sha256).hexdigest()
    assert verify_meta_signature("secret", body, good)
    assert not verify_meta_signature("secret", body, "sha256=00")
    assert not verify_meta_signature("secret", body, None)
    assert verify_meta_signature(None, body, None)


async def test_whatsapp_send_posts_to_graph_api():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"messages": [{"id": "wamid.OUT"}]})

    result = await _whatsapp(handler).send("+1 555-0001", "Hi there")

    assert result.success and result.provider_message_id == "wamid.OUT"
    [request] = requests
    assert request.url.path.endswith("/PNID/messages")
    assert request.headers["Authorization"] == "Bearer token"
    body = json.loads(request.content)
    assert body["to"] == "15550001"
    assert body["text"]["body"] == "Hi there"


async def test_whatsapp_retries_server_errors_then_fails():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, json={"error": {"message": "down"}})

    with pytest.raises(DeliveryError) as exc_info:
        await _whatsapp(handler).send("15550001", "Hi")
    assert len(calls) == 3
    assert exc_info.value.status_code == 500


async def test_whatsapp_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "bad number"}})

    with pytest.raises(DeliveryError) as exc_info:
        await _whatsapp(handler).send("15550001", "Hi")
    assert len(calls) == 1
    assert exc_info.value.detail == {"message": "bad number"}


async def test_whatsapp_recovers_after_transient_failure():
    responses = iter([httpx.Response(429), httpx.Response(200, json={"messages": [{"id": "ok"}]})])
    result = await _whatsapp(lambda request: next(responses)).send("15550001", "Hi")
    assert result.provider_message_id == "ok"


async def test_whatsapp_retry_resends_only_the_failed_chunk():
    """A transient error on the second chunk must not repeat the first one."""
    posted = []
    failed_once = []

    def handler(request):
        text = json.loads(request.content)["text"]["body"]
        if text.startswith("B") and not failed_once:
            failed_once.append(text)
            return httpx.Response(503)
        posted.append(text[0])
        return httpx.Response(200, json={"messages": [{"id": f"wamid.{len(posted)}"}]})

    result = await _whatsapp(handler).send("15550001", "A" * 4000 + "\n" + "B" * 100)

    assert posted == ["A", "B"]
    assert result.provider_message_id == "wamid.2"


# -- Messenger -----------------------------------------------------------------


def _messenger(handler=None):
    config = MessengerConfig(page_access_token="pat", page_id="PAGE", verify_token="v")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return MessengerAdapter(config, FAST, client=client)


def test_messenger_normalizes_and_skips_echoes():
    payload = {
        "object": "page",
        "entry": [{"messaging": [
            {"sender": {"id": "PSID1"}, "recipient": {"id": "PAGE"}, "timestamp": 1714564800000,
             "message": {"mid": "m_1", "text": "Hi"}},
            {"sender": {"id": "PAGE"}, "recipient": {"id": "PSID1"}, "timestamp": 1714564801000,
             "message": {"mid": "m_2", "text": "echo", "is_echo": True}},
            {"sender": {"id": "PSID1"}, "recipient": {"id": "PAGE"}, "timestamp": 1714564802000,
             "message": {"mid": "m_3", "attachments": [{"type": "image"}]}},
            {"sender": {"id": "PSID1"}, "delivery": {"mids": ["m_0"]}},
        ]}],
    }
    messages = _messenger().normalize_inbound(payload)

    assert [(m.native_message_id, m.text) for m in messages] == [("m_1", "Hi"), ("m_3", "[image]")]
    assert messages[0].timestamp.timestamp() == 1714564800
    assert messages[1].message_type == "image"


async def test_messenger_send():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"recipient_id": "PSID1", "message_id": "m_out"})

    result = await _messenger(handler).send("PSID1", "Thanks!")
    assert result.provider_message_id == "m_out"
    assert bodies == [{"recipient": {"id": "PSID1"}, "message": {"text": "Thanks!"},
                       "messaging_type": "RESPONSE"}]


# -- Telegram ------------------------------------------------------------------


def test_telegram_normalizes_update():
    adapter = TelegramAdapter(TelegramConfig(bot_token="123:ABC", webhook_secret="s3"))
    update = {
        "update_id": 10,
        "message": {
            "message_id": 5,
            "date": 1714564800,
            "chat": {"id": 4242, "type": "private"},
            "from": {"id": 4242, "is_bot": False, "first_name": "Jane", "last_name": "Doe"},
            "text": "Hello bot",
        },
    }
    [message] = adapter.normalize_inbound(update)

    assert message.external_sender_id == "4242"
    assert message.native_message_id == "5"
    assert message.text == "Hello bot"
    assert message.contact_name == "Jane Doe"
    assert message.metadata["update_id"] == 10


def test_telegram_ignores_updates_without_messages():
    adapter = TelegramAdapter(TelegramConfig(bot_token="123:ABC"))
    assert adapter.normalize_inbound({"update_id": 11, "poll": {}}) == []
    assert adapter.normalize_inbound({"not": "an update"}) == []


def test_telegram_secret_header():
    adapter = TelegramAdapter(TelegramConfig(bot_token="123:ABC", webhook_secret="s3"))
    assert adapter.verify_inbound_request({"X-Telegram-Bot-Api-Secret-Token": "s3"}, b"")
    assert not adapter.verify_inbound_request({"X-Telegram-Bot-Api-Secret-Token": "no"}, b"")
    assert not adapter.verify_inbound_request({}, b"")


# -- Email ---------------------------------------------------------------------


def _email():
    return EmailAdapter(
        EmailConfig(smtp_host="localhost", from_address="desk@acme.test", inbound_secret="in"),
        FAST,
    )


def test_email_normalizes_inbound():
    payload = {
        "FromFull": {"Email": "Jane@Example.com", "Name": "Jane"},
        "Subject": "Order 17",
        "TextBody": "Where is it?\n\n> quoted",
        "StrippedTextReply": "Where is it?",
        "MessageID": "<abc@mail>",
        "Date": "Wed, 01 May 2024 12:00:00 +0000",
    }
    [message] = _email().normalize_inbound(payload)

    assert message.external_sender_id == "jane@example.com"
    assert message.text == "Where is it?"
    assert message.contact_name == "Jane"
    assert message.native_message_id == "<abc@mail>"
    assert message.metadata == {"subject": "Order 17"}
    assert message.timestamp.timestamp() == 1714564800


def test_email_without_sender_is_empty():
    assert _email().normalize_inbound({"TextBody": "hi"}) == []


def test_reply_subject():
    assert reply_subject("Order 17") == "Re: Order 17"
    assert reply_subject("RE: Order 17") == "RE: Order 17"
    assert reply_subject("") == "Re: your message"


# -- shared helpers ------------------------------------------------------------


def test_split_message_prefers_newlines():
    text = "a" * 10 + "\n" + "b" * 10
    assert split_message(text, max_length=15) == ["a" * 10, "b" * 10]
    assert split_message("c" * 30, max_length=10) == ["c" * 10] * 3


def test_registry_require():
    registry = ChannelRegistry()
    registry.register(_whatsapp())
    assert registry.types() == ["whatsapp"]
    assert registry.require("whatsapp").channel_type == "whatsapp"
    with pytest.raises(ChannelNotConfigured):
        registry.require("telegram")
