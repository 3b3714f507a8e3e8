import unittest


class _FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _FakeScheduler:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        t = _FakeTimer(delay, callback)
        self.timers.append(t)
        return t

    def active(self):
        return [t for t in self.timers if not t.cancelled]


def _msg(text, at, author="alice", message_id=""):
    from chatrelay.daemon.aggregator import QueuedMessage

    return QueuedMessage(author=author, text=text, arrived_at=at, message_id=message_id)


class TestMessageAggregator(unittest.IsolatedAsyncioTestCase):
    def _make(self, **kwargs):
        from chatrelay.daemon.aggregator import MessageAggregator

        self.flushes = []
        self.acks = []
        self.scheduler = _FakeScheduler()

        async def on_flush(cid, messages, prompt):
            self.flushes.append((cid, list(messages), prompt))

        async def on_ack(cid, message):
            self.acks.append((cid, message.text))

        return MessageAggregator(on_flush, on_ack=on_ack, scheduler=self.scheduler, **kwargs)

    async def test_first_message_arms_short_timer(self) -> None:
        from chatrelay.daemon.aggregator import BufferState

        agg = self._make()
        await agg.enqueue("c1", _msg("hello", 0.0))

        active = self.scheduler.active()
        self.assertEqual(len(active), 1)
        self.assertEqual(active[0].delay, 10.0)
        buf = agg.buffer("c1")
        self.assertEqual(buf.state, BufferState.PENDING_SHORT)
        self.assertEqual(buf.deadline, 10.0)
        self.assertFalse(buf.burst)

    async def test_burst_switches_to_long_timeout(self) -> None:
        from chatrelay.daemon.aggregator import BufferState

        agg = self._make()
        await agg.enqueue("c1", _msg("one", 0.0))
        await agg.enqueue("c1", _msg("two", 3.0))

        active = self.scheduler.active()
        self.assertEqual(len(active), 1)
        self.assertEqual(active[0].delay, 120.0)
        self.assertTrue(self.scheduler.timers[0].cancelled)

        buf = agg.buffer("c1")
        self.assertTrue(buf.burst)
        self.assertEqual(buf.state, BufferState.PENDING_LONG)
        self.assertEqual(buf.deadline, 123.0)

    async def test_gap_beyond_window_keeps_short_timeout(self) -> None:
        agg = self._make()
        await agg.enqueue("c1", _msg("one", 0.0))
        await agg.enqueue("c1", _msg("two", 31.0))

        buf = agg.buffer("c1")
        self.assertFalse(buf.burst)
        self.assertEqual(self.scheduler.active()[0].delay, 10.0)
        self.assertEqual(buf.deadline, 41.0)

    async def test_gap_exactly_at_window_counts_as_burst(self) -> None:
        agg = self._make()
        await agg.enqueue("c1", _msg("one", 0.0))
        await agg.enqueue("c1", _msg("two", 30.0))
        self.assertTrue(agg.buffer("c1").burst)

    async def test_max_size_flushes_once_without_timer(self) -> None:
        agg = self._make()
        for i in range(100):
            await agg.enqueue("c1", _msg(f"m{i}", 0.0))

        self.assertEqual(len(self.flushes), 1)
        self.assertEqual(len(self.flushes[0][1]), 100)
        self.assertEqual(self.scheduler.active(), [])
        self.assertEqual(agg.pending_counts(), {})

    async def test_timer_fire_flushes_combined_prompt(self) -> None:
        agg = self._make()
        await agg.enqueue("c1", _msg("hello", 0.0, author="alice"))
        await agg.enqueue("c1", _msg("world", 40.0, author="bob"))

        self.scheduler.active()[0].callback()
        await agg.wait_idle()

        self.assertEqual(len(self.flushes), 1)
        cid, messages, prompt = self.flushes[0]
        self.assertEqual(cid, "c1")
        self.assertEqual([m.text for m in messages], ["hello", "world"])
        self.assertEqual(prompt, "[1] alice: hello\n\n[2] bob: world")
        self.assertEqual(agg.pending_counts(), {})

    async def test_ack_fires_once_per_batch(self) -> None:
        agg = self._make()
        await agg.enqueue("c1", _msg("one", 0.0))
        await agg.enqueue("c1", _msg("two", 1.0))
        self.assertEqual(self.acks, [("c1", "one")])

        await agg.flush("c1")
        await agg.enqueue("c1", _msg("three", 200.0))
        self.assertEqual(self.acks, [("c1", "one"), ("c1", "three")])

    async def test_flush_resets_burst_and_state(self) -> None:
        from chatrelay.daemon.aggregator import BufferState

        agg = self._make()
        await agg.enqueue("c1", _msg("one", 0.0))
        await agg.enqueue("c1", _msg("two", 2.0))
        self.assertTrue(await agg.flush("c1"))

        buf = agg.buffer("c1")
        self.assertFalse(buf.burst)
        self.assertIsNone(buf.timer)
        self.assertEqual(buf.state, BufferState.IDLE)
        self.assertFalse(await agg.flush("c1"))

    async def test_sink_failure_is_logged_and_buffer_cleared(self) -> None:
        from chatrelay.daemon.aggregator import BufferState, MessageAggregator

        async def boom(cid, messages, prompt):
            raise RuntimeError("worker gone")

        agg = MessageAggregator(boom, scheduler=_FakeScheduler())
        await agg.enqueue("c1", _msg("hello", 0.0))

        with self.assertLogs("chatrelay.aggregator", level="ERROR"):
            self.assertTrue(await agg.flush("c1"))
        self.assertEqual(agg.pending_counts(), {})
        self.assertEqual(agg.buffer("c1").state, BufferState.IDLE)

    async def test_conversations_are_independent(self) -> None:
        agg = self._make()
        await agg.enqueue("c1", _msg("a", 0.0))
        await agg.enqueue("c2", _msg("b", 1.0))

        self.assertFalse(agg.buffer("c2").burst)
        self.assertEqual(agg.pending_counts(), {"c1": 1, "c2": 1})

        await agg.flush("c1")
        self.assertEqual(agg.pending_counts(), {"c2": 1})
        self.assertEqual(len(self.scheduler.active()), 1)

    async def test_shutdown_flushes_everything(self) -> None:
        agg = self._make()
        await agg.enqueue("c1", _msg("a", 0.0))
        await agg.enqueue("c2", _msg("b", 0.0))

        await agg.shutdown()
        self.assertEqual(sorted(f[0] for f in self.flushes), ["c1", "c2"])
        self.assertEqual(self.scheduler.active(), [])

        await agg.enqueue("c1", _msg("late", 5.0))
        self.assertEqual(len(self.flushes), 3)
        self.assertEqual(self.flushes[-1][1][0].text, "late")

    async def test_burst_scenario_extends_deadline(self) -> None:
        agg = self._make()
        await agg.enqueue("c1", _msg("a", 0.0))
        await agg.enqueue("c1", _msg("b", 5.0))
        await agg.enqueue("c1", _msg("c", 12.0))

        buf = agg.buffer("c1")
        self.assertEqual(buf.deadline, 132.0)
        self.assertEqual(len(self.scheduler.active()), 1)

        self.scheduler.active()[0].callback()
        await agg.wait_idle()
        self.assertEqual([m.text for m in self.flushes[0][1]], ["a", "b", "c"])


class TestComposePrompt(unittest.TestCase):
    def test_orders_by_arrival_and_tags_author(self) -> None:
        from chatrelay.daemon.aggregator import compose_prompt

        prompt = compose_prompt([_msg("second", 2.0, author="bob"), _msg("first", 1.0, author="alice")])
        self.assertEqual(prompt, "[1] alice: first\n\n[2] bob: second")

    def test_single_message_is_numbered(self) -> None:
        from chatrelay.daemon.aggregator import compose_prompt

        self.assertEqual(compose_prompt([_msg("  hi  ", 0.0, author="")]), "[1] user: hi")


class TestBurstWindow(unittest.TestCase):
    def test_boundary_is_inclusive(self) -> None:
        from chatrelay.daemon.aggregator import BURST_WINDOW_S, within_burst_window

        self.assertTrue(within_burst_window(BURST_WINDOW_S, BURST_WINDOW_S))
        self.assertTrue(within_burst_window(3.0, BURST_WINDOW_S))
        self.assertFalse(within_burst_window(BURST_WINDOW_S + 0.001, BURST_WINDOW_S))


if __name__ == "__main__":
    unittest.main()
