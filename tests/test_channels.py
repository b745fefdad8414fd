from __future__ import annotations

import asyncio
import logging

import pytest

from relayd.channels import ChannelNotifier, OutboxAdapter


class FlakyAdapter(OutboxAdapter):
    async def send_message(self, channel: str, text: str) -> None:
        if channel == "broken":
            raise ConnectionError("channel offline")
        await super().send_message(channel, text)


def test_status_is_edited_in_place() -> None:
    outbox = OutboxAdapter()

    async def scenario() -> None:
        handle = await outbox.send_status("chat", "Working...")
        await outbox.send_message("chat", "partial")
        await outbox.edit_status("chat", handle, "Done")
        await outbox.edit_status("other", handle, "Hijacked")

    asyncio.run(scenario())

    assert [(message.kind, message.text) for message in outbox.messages("chat")] == [
        ("status", "Done"),
        ("message", "partial"),
    ]


def test_outbox_limit_and_drain() -> None:
    outbox = OutboxAdapter(limit=3)

    async def scenario() -> None:
        for number in range(5):
            await outbox.send_message("chat", str(number))
        await outbox.send_buttons("ops", "Pick one", ["/resume a", "/resume b"])

    asyncio.run(scenario())

    assert [message.text for message in outbox.messages("chat")] == ["2", "3", "4"]
    assert sorted(outbox.channels()) == ["chat", "ops"]
    (buttons,) = outbox.drain("ops")
    assert buttons.to_dict()["options"] == ["/resume a", "/resume b"]
    assert outbox.messages("ops") == []


def test_notifier_fans_out_and_logs_failures(caplog: pytest.LogCaptureFixture) -> None:
    adapter = FlakyAdapter()
    notifier = ChannelNotifier(adapter, ["ops", "broken", "alerts"])

    with caplog.at_level(logging.ERROR, logger="relayd.channels"):
        asyncio.run(notifier.notify("digest completed", {"task": "digest"}))

    assert [message.text for message in adapter.messages("ops")] == ["digest completed"]
    assert [message.text for message in adapter.messages("alerts")] == ["digest completed"]
    assert any(record.message == "Notification delivery failed" for record in caplog.records)


def test_notifier_without_channels_drops_quietly() -> None:
    adapter = OutboxAdapter()
    notifier = ChannelNotifier(adapter, [])

    asyncio.run(notifier.notify("hello"))

    assert adapter.channels() == []
