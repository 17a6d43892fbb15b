"""Tests for the message channel."""

import queue
import threading

import pytest

from hubcache.messaging import Message, MessageChannel, MessageType


class TestMessage:
    """Tests for the Message type."""

    def test_to_dict_omits_empty_payload(self) -> None:
        assert Message(MessageType.GET_VERSION).to_dict() == {"type": "GET_VERSION"}

    def test_from_dict(self) -> None:
        message = Message.from_dict({"type": "UPDATE_AVAILABLE", "payload": {"version": "hub-static-v2"}})
        assert message.type == MessageType.UPDATE_AVAILABLE
        assert message.payload == {"version": "hub-static-v2"}

    def test_from_dict_unknown_type(self) -> None:
        with pytest.raises(ValueError):
            Message.from_dict({"type": "SELF_DESTRUCT"})

    def test_from_dict_bad_payload(self) -> None:
        with pytest.raises(ValueError, match="payload"):
            Message.from_dict({"type": "SW_READY", "payload": "ready"})

    def test_reply_without_reply_channel(self) -> None:
        assert Message(MessageType.SKIP_WAITING).reply(Message(MessageType.SW_READY)) is False

    def test_reply_to_not_part_of_equality(self) -> None:
        assert Message(MessageType.GET_VERSION, reply_to=queue.Queue()) == Message(MessageType.GET_VERSION)


class TestMessageChannel:
    """Tests for MessageChannel routing."""

    def test_post_goes_to_inbox(self) -> None:
        channel = MessageChannel()
        channel.post(Message(MessageType.CHECK_UPDATE))

        assert channel.inbox.get_nowait().type == MessageType.CHECK_UPDATE

    def test_broadcast_reaches_every_client(self) -> None:
        channel = MessageChannel()
        _, first = channel.register_client()
        _, second = channel.register_client()

        delivered = channel.broadcast(Message(MessageType.SW_READY, {"version": "hub-static-v1"}))

        assert delivered == 2
        assert first.get_nowait().payload["version"] == "hub-static-v1"
        assert second.get_nowait().payload["version"] == "hub-static-v1"

    def test_unregistered_client_gets_nothing(self) -> None:
        channel = MessageChannel()
        client_id, client_queue = channel.register_client()
        channel.unregister_client(client_id)

        assert channel.broadcast(Message(MessageType.SW_READY)) == 0
        assert client_queue.empty()
        assert channel.client_count == 0

    def test_client_ids_are_unique(self) -> None:
        channel = MessageChannel()
        ids = {channel.register_client()[0] for _ in range(5)}
        assert len(ids) == 5

    def test_request_returns_reply(self) -> None:
        channel = MessageChannel()

        def responder() -> None:
            message = channel.inbox.get(timeout=2.0)
            message.reply(Message(MessageType.VERSION, {"version": "hub-static-v3"}))

        thread = threading.Thread(target=responder)
        thread.start()
        reply = channel.request(MessageType.GET_VERSION, timeout=2.0)
        thread.join()

        assert reply is not None
        assert reply.type == MessageType.VERSION
        assert reply.payload["version"] == "hub-static-v3"

    def test_request_times_out(self) -> None:
        channel = MessageChannel()
        assert channel.request(MessageType.GET_VERSION, timeout=0.05) is None
