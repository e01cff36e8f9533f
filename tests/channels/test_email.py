"""Tests for the email binding: webhook auth, inbound processing, batched replies."""

from __future__ import annotations

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

import relay.channels.email.binding as email_binding
from relay.channels.coordinator import RunCoordinator
from relay.channels.email import EmailBinding, EmailThread, channel_id_for
from relay.channels.gateway import Gateway
from relay.channels.instructions import ContentAppend, Replace, StatusUpdate, ThreadDetail
from relay.channels.protocol import RunOutcome
from relay.channels.renderer import RenderSettings
from relay.core.errors import TransportError

FAST = RenderSettings(edit_interval=0, stream_interval=0, stream_min_chars=10)
NO_STREAM = RenderSettings(edit_interval=0, stream_interval=0, streaming=False)
SEND_URL = "https://mail.test/api/email/send"
HOOK_TOKEN = "hook-token"

QUESTION = {
    "from": "Ada@Example.com",
    "to": "agent@mail.test",
    "subject": "Question",
    "body": "What changed last week?",
    "messageId": "<m2@example.com>",
    "references": "<m1@example.com>",
}


def _mail_api(sent: list, status: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(status, json={"ok": status == 200, "messageId": f"<r{len(sent)}@mail.test>"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _email(transcript, sent: list | None = None, **kwargs) -> EmailBinding:
    return EmailBinding(
        SEND_URL,
        "send-token",
        webhook_token=HOOK_TOKEN,
        client=_mail_api(sent if sent is not None else []),
        transcript=transcript,
        **kwargs,
    )


def _serve(binding) -> TestClient:
    gateway = Gateway(host="127.0.0.1")
    gateway.register(binding.route_path, binding.handle_request)
    gateway.mark_ready(binding.route_path)
    return TestClient(gateway.app)


def _auth(token: str = HOOK_TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ── Webhook ─────────────────────────────────────────────────


class TestEmailWebhook:
    @pytest.fixture
    def email(self, transcript) -> EmailBinding:
        binding = _email(transcript)
        coordinator = MagicMock()
        coordinator.is_running.return_value = False
        binding.attach(coordinator)
        return binding

    def test_webhook_token_is_required(self, transcript) -> None:
        with pytest.raises(ValueError):
            EmailBinding(SEND_URL, "send-token", webhook_token="", transcript=transcript)

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": HOOK_TOKEN}])
    def test_bad_token_is_401(self, email, headers) -> None:
        resp = _serve(email).post(email.route_path, json=QUESTION, headers=headers)
        assert resp.status_code == 401
        email.coordinator.enqueue_run.assert_not_called()

    def test_invalid_json_is_400(self, email) -> None:
        resp = _serve(email).post(email.route_path, content=b"{nope", headers=_auth())
        assert resp.status_code == 400

    @pytest.mark.parametrize(
        "payload",
        [["not", "an", "object"], {"from": "ada@example.com"}, {"body": "hi"}, {"from": "", "body": "hi"}],
    )
    def test_missing_fields_are_400(self, email, payload) -> None:
        resp = _serve(email).post(email.route_path, json=payload, headers=_auth())
        assert resp.status_code == 400
        email.coordinator.enqueue_run.assert_not_called()

    def test_valid_email_is_acknowledged_and_queued(self, email) -> None:
        resp = _serve(email).post(email.route_path, json=QUESTION, headers=_auth())
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        event, binding = email.coordinator.enqueue_run.call_args.args
        assert binding is email
        assert event.channel_id == "email-ada_example_com"
        assert event.user_id == "Ada@Example.com"
        assert event.user_name == "Ada"
        assert event.text == "Subject: Question\n\nWhat changed last week?"


# ── Inbound processing ──────────────────────────────────────


class TestEmailInbound:
    def test_channel_id_groups_by_sender(self) -> None:
        assert channel_id_for("Ada.Lovelace@Example.com") == "email-ada_lovelace_example_com"
        assert channel_id_for("ada.lovelace@example.com") == channel_id_for("ADA.LOVELACE@EXAMPLE.COM")

    async def test_attachments_are_saved_and_listed(self, transcript) -> None:
        email = _email(transcript)
        email.attach(MagicMock())
        payload = {
            "from": "ada@example.com",
            "subject": "Report",
            "body": "See attached.",
            "attachments": [
                {"filename": "../notes.txt", "content_type": "text/plain", "content": base64.b64encode(b"hi").decode()},
                {"filename": "broken.bin", "content": "***not base64***"},
            ],
        }
        await email.process(payload)

        event = email.coordinator.enqueue_run.call_args.args[0]
        saved = transcript.root / "email-ada_example_com" / "attachments" / "notes.txt"
        assert saved.read_bytes() == b"hi"
        assert event.text == f"Subject: Report\n\nSee attached.\n\nAttachments saved to disk:\n- notes.txt: {saved}"
        assert [a.name for a in event.attachments] == ["notes.txt"]

    async def test_inbound_is_written_to_transcript(self, transcript) -> None:
        email = _email(transcript)
        email.attach(MagicMock())
        await email.process({"from": "ada@example.com", "body": "no subject here"})
        entries = transcript.read("email-ada_example_com")
        assert entries[-1]["text"] == "no subject here"
        assert entries[-1]["isBot"] is False


# ── Reply ───────────────────────────────────────────────────


class TestEmailReply:
    async def test_run_sends_one_threaded_reply_with_work_log(self, transcript, engine_factory) -> None:
        sent: list = []
        email = _email(transcript, sent)
        engine = engine_factory(
            [
                StatusUpdate("Reading notes"),
                ThreadDetail("*✓ read*: notes.txt (0.4s)"),
                Replace("Here is the summary."),
            ]
        )
        email.attach(RunCoordinator(engine, render_settings=FAST))

        outcome = await (await email.process(dict(QUESTION)))

        assert outcome == RunOutcome.COMPLETED
        assert sent == [
            {
                "to": "Ada@Example.com",
                "subject": "Re: Question",
                "body": "Here is the summary.",
                "log": "inline",
                "log_content": "Work log:\n→ Reading notes\n→ notes.txt (0.4s)\n1 tool calls",
                "in_reply_to": "<m2@example.com>",
                "references": "<m1@example.com> <m2@example.com>",
            }
        ]
        assert transcript.read("email-ada_example_com")[-1]["text"] == "Here is the summary."

    async def test_subject_already_a_reply_is_kept(self, transcript, engine_factory) -> None:
        sent: list = []
        email = _email(transcript, sent)
        email.attach(RunCoordinator(engine_factory([Replace("ok")]), render_settings=FAST))
        await (await email.process({"from": "ada@example.com", "subject": "Re: Plans", "body": "and?"}))
        assert sent[0]["subject"] == "Re: Plans"
        assert "in_reply_to" not in sent[0]
        assert "log" not in sent[0]

    async def test_text_kept_in_status_becomes_the_reply(self, transcript, engine_factory) -> None:
        sent: list = []
        email = _email(transcript, sent)
        engine = engine_factory([ContentAppend("Interim findings"), StatusUpdate("search")])
        email.attach(RunCoordinator(engine, render_settings=NO_STREAM))
        await (await email.process(dict(QUESTION)))
        assert sent[0]["body"] == "Interim findings"
        assert sent[0]["log_content"] == "Work log:\n→ search\n1 tool calls"

    async def test_run_without_text_sends_nothing(self, transcript, engine_factory) -> None:
        sent: list = []
        email = _email(transcript, sent)
        email.attach(RunCoordinator(engine_factory([]), render_settings=FAST))
        outcome = await (await email.process(dict(QUESTION)))
        assert outcome == RunOutcome.COMPLETED
        assert sent == []

    async def test_send_failure_does_not_fail_the_run(self, transcript, engine_factory) -> None:
        sent: list = []
        email = EmailBinding(
            SEND_URL,
            "send-token",
            webhook_token=HOOK_TOKEN,
            client=_mail_api(sent, status=500),
            transcript=transcript,
        )
        coordinator = RunCoordinator(engine_factory([Replace("answer")]), render_settings=FAST)
        email.attach(coordinator)
        outcome = await (await email.process(dict(QUESTION)))
        assert outcome == RunOutcome.COMPLETED
        assert len(sent) == 1
        assert not coordinator.is_running("email-ada_example_com")

    async def test_send_error_is_transport_error(self, transcript) -> None:
        email = EmailBinding(
            SEND_URL, "send-token", webhook_token=HOOK_TOKEN, client=_mail_api([], status=502), transcript=transcript
        )
        with pytest.raises(TransportError):
            await email.send(EmailThread("ada@example.com"), "hello")

    async def test_send_uses_pooled_client(self, transcript, monkeypatch) -> None:
        sent: list = []
        pooled = AsyncMock(return_value=_mail_api(sent))
        monkeypatch.setattr(email_binding, "get_client", pooled)
        email = EmailBinding(SEND_URL, "send-token", webhook_token=HOOK_TOKEN, transcript=transcript)
        assert await email.send(EmailThread("ada@example.com"), "hello") == "<r1@mail.test>"
        pooled.assert_awaited_once_with("email", headers={"Authorization": "Bearer send-token"})
        assert sent[0]["subject"] == "Re: (no subject)"


# ── Outside a run ───────────────────────────────────────────


class TestEmailDirectPost:
    async def test_post_outside_run_mails_last_thread(self, transcript, engine_factory) -> None:
        sent: list = []
        email = _email(transcript, sent)
        email.attach(RunCoordinator(engine_factory([Replace("first")]), render_settings=FAST))
        await (await email.process(dict(QUESTION)))

        handle = await email.post("email-ada_example_com", "Reminder: standup at 10")
        assert handle == "<r2@mail.test>"
        assert sent[1]["body"] == "Reminder: standup at 10"
        assert sent[1]["in_reply_to"] == "<m2@example.com>"

    async def test_post_to_unknown_address_fails(self, transcript) -> None:
        email = _email(transcript)
        email.attach(MagicMock(is_running=MagicMock(return_value=False)))
        with pytest.raises(TransportError):
            await email.post("email-nobody_example_com", "hello")
