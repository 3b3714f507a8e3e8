import unittest
from types import SimpleNamespace


class TestSplitMessage(unittest.TestCase):
    def test_short_text_is_untouched(self) -> None:
        from chatrelay.ports.im.adapters.base import split_message

        self.assertEqual(split_message("hello", 2000), ["hello"])
        self.assertEqual(split_message("", 2000), [])

    def test_splits_on_lines(self) -> None:
        from chatrelay.ports.im.adapters.base import split_message

        text = "\n".join(["a" * 900, "b" * 900, "c" * 900])
        parts = split_message(text, 2000)
        self.assertEqual(parts, ["a" * 900 + "\n" + "b" * 900, "c" * 900])
        self.assertTrue(all(len(p) <= 2000 for p in parts))

    def test_hard_cuts_overlong_line(self) -> None:
        from chatrelay.ports.im.adapters.base import split_message

        parts = split_message("head\n" + "x" * 4500, 2000)
        self.assertEqual(parts[0], "head")
        self.assertEqual([len(p) for p in parts[1:]], [2000, 2000, 500])


class TestSendMessage(unittest.IsolatedAsyncioTestCase):
    async def test_send_message_splits_and_stops_on_failure(self) -> None:
        from chatrelay.ports.im.adapters.base import IMAdapter

        class _Adapter(IMAdapter):
            max_message_length = 10

            def __init__(self, fail_at=None):
                self.sent = []
                self.fail_at = fail_at

            async def connect(self, on_event):
                return True

            async def disconnect(self):
                pass

            async def send_text(self, chat_id, text):
                self.sent.append(text)
                return len(self.sent) != self.fail_at

            async def resolve_channel(self, guild_id, name):
                return None

        a = _Adapter()
        self.assertTrue(await a.send_message("c", "12345\n67890\nabc"))
        self.assertEqual(a.sent, ["12345", "67890\nabc"])

        b = _Adapter(fail_at=1)
        self.assertFalse(await b.send_message("c", "12345\n67890\nabc"))
        self.assertEqual(b.sent, ["12345"])
        self.assertFalse(await b.add_reaction("c", "1", "⏳"))


class TestDiscordInbound(unittest.TestCase):
    def _adapter(self, **kw):
        from chatrelay.ports.im.adapters.discord import DiscordAdapter

        a = DiscordAdapter("token", **kw)
        a._client = SimpleNamespace(user=SimpleNamespace(id=1))
        return a

    def _message(self, *, author_id=2, bot=False, webhook_id=None, content="hi there"):
        author = SimpleNamespace(id=author_id, bot=bot, display_name="Alice", name="alice")
        channel = SimpleNamespace(id=100, name="claude")
        return SimpleNamespace(id=555, author=author, channel=channel, content=content, webhook_id=webhook_id)

    def test_builds_chat_event(self) -> None:
        ev = self._adapter()._to_event(self._message())
        self.assertEqual(ev.conversation_id, "100")
        self.assertEqual(ev.author_name, "Alice")
        self.assertEqual(ev.message_id, "555")
        self.assertEqual(ev.conversation_title, "claude")
        self.assertFalse(ev.is_automated)

    def test_skips_own_and_empty_messages(self) -> None:
        a = self._adapter()
        self.assertIsNone(a._to_event(self._message(author_id=1)))
        self.assertIsNone(a._to_event(self._message(content="   ")))

    def test_webhook_messages(self) -> None:
        ev = self._adapter()._to_event(self._message(webhook_id=9))
        self.assertTrue(ev.is_automated)
        self.assertTrue(ev.is_webhook)
        self.assertIsNone(self._adapter(ignore_bots=True)._to_event(self._message(bot=True)))

    def test_creation_time_is_carried(self) -> None:
        from datetime import datetime, timezone

        msg = self._message()
        msg.created_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
        ev = self._adapter()._to_event(msg)
        self.assertEqual(ev.created_at, msg.created_at.timestamp())
        self.assertEqual(self._adapter()._to_event(self._message()).created_at, 0.0)


class _HistoryChannel:
    def __init__(self, messages):
        self.messages = messages
        self.kwargs = None

    def history(self, **kwargs):
        self.kwargs = kwargs

        async def gen():
            for m in self.messages:
                yield m

        return gen()


class TestDiscordHistory(unittest.IsolatedAsyncioTestCase):
    async def test_fetch_messages_after_cursor(self) -> None:
        from chatrelay.ports.im.adapters.discord import DiscordAdapter

        author = SimpleNamespace(id=2, bot=True, display_name="Relay", name="relay")
        chan = SimpleNamespace(id=200, name="general")
        msgs = [
            SimpleNamespace(id=11, author=author, channel=chan, content="mine too", webhook_id=None),
            SimpleNamespace(id=12, author=author, channel=chan, content="  ", webhook_id=None),
        ]
        history = _HistoryChannel(msgs)

        a = DiscordAdapter("token", ignore_bots=True)
        a._client = SimpleNamespace(user=SimpleNamespace(id=1), get_channel=lambda cid: history)

        events = await a.fetch_messages("200", after="10", limit=5)
        self.assertEqual([e.message_id for e in events], ["11"])
        self.assertTrue(events[0].is_automated)
        self.assertEqual(history.kwargs["limit"], 5)
        self.assertEqual(history.kwargs["after"].id, 10)

        await a.fetch_messages("200")
        self.assertIsNone(history.kwargs["after"])


if __name__ == "__main__":
    unittest.main()
