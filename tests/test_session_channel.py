import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch


class _FakeTmux:
    """Stands in for `_run_tmux`; per-command return codes are consumed in order."""

    def __init__(self, codes=None, out=""):
        self.calls = []
        self.codes = {k: list(v) for k, v in (codes or {}).items()}
        self.out = out

    def __call__(self, args, *, timeout_s=5.0):
        self.calls.append(list(args))
        queue = self.codes.get(args[0])
        code = queue.pop(0) if queue else 0
        return code, (self.out if code == 0 else ""), ("" if code == 0 else "boom")


class TestSessionChannelSend(unittest.IsolatedAsyncioTestCase):
    def _make(self, fake):
        from chatrelay.runners.tmux import SessionChannel

        self.sleeps = []

        async def sleep(s):
            self.sleeps.append(round(s, 3))

        patcher = patch("chatrelay.runners.tmux._run_tmux", fake)
        patcher.start()
        self.addCleanup(patcher.stop)
        return SessionChannel("s1", startup_wait_s=5.0, sleep=sleep)

    async def test_dash_payload_is_sent_literally(self) -> None:
        fake = _FakeTmux()
        ch = self._make(fake)

        self.assertTrue(await ch.send("-help"))
        self.assertEqual(fake.calls[0], ["send-keys", "-t", "s1", "-l", "--", "-help"])
        self.assertEqual(fake.calls[1], ["send-keys", "-t", "s1", "C-m"])
        self.assertEqual(len(fake.calls), 2)
        self.assertEqual(self.sleeps, [0.2])

    async def test_long_payload_gets_second_submit(self) -> None:
        fake = _FakeTmux()
        ch = self._make(fake)

        self.assertTrue(await ch.send("x" * 301))
        self.assertEqual(len(fake.calls), 3)
        self.assertEqual(fake.calls[2], ["send-keys", "-t", "s1", "C-m"])
        self.assertEqual(self.sleeps, [0.3, 0.1])

    async def test_carriage_returns_are_normalised(self) -> None:
        fake = _FakeTmux()
        ch = self._make(fake)

        self.assertTrue(await ch.send("  a\r\nb\rc  "))
        self.assertEqual(fake.calls[0][-1], "a\nb\nc")

    async def test_text_failure_aborts_before_submit(self) -> None:
        fake = _FakeTmux(codes={"send-keys": [1]})
        ch = self._make(fake)

        self.assertFalse(await ch.send("hello"))
        self.assertEqual(len(fake.calls), 1)
        self.assertIn("text", ch.last_error)
        self.assertEqual(self.sleeps, [])

    async def test_submit_failure_is_reported(self) -> None:
        fake = _FakeTmux(codes={"send-keys": [0, 1]})
        ch = self._make(fake)

        with self.assertLogs("chatrelay.tmux", level="ERROR") as cm:
            self.assertFalse(await ch.send("hello"))
        self.assertEqual(len(fake.calls), 2)
        self.assertIn("manual recovery", "\n".join(cm.output))

    async def test_empty_payload_is_rejected(self) -> None:
        fake = _FakeTmux()
        ch = self._make(fake)

        self.assertFalse(await ch.send(" \r\n "))
        self.assertEqual(fake.calls, [])


class TestSessionChannelLifecycle(unittest.IsolatedAsyncioTestCase):
    def _make(self, fake):
        from chatrelay.runners.tmux import SessionChannel

        self.sleeps = []

        async def sleep(s):
            self.sleeps.append(round(s, 3))

        patcher = patch("chatrelay.runners.tmux._run_tmux", fake)
        patcher.start()
        self.addCleanup(patcher.stop)
        return SessionChannel("s1", startup_wait_s=5.0, sleep=sleep)

    async def test_existing_session_is_reused(self) -> None:
        fake = _FakeTmux()
        ch = self._make(fake)

        self.assertTrue(await ch.ensure_session(Path("/tmp")))
        self.assertTrue(await ch.ensure_session(Path("/tmp")))
        self.assertEqual([c[0] for c in fake.calls], ["has-session", "has-session"])
        self.assertIsNotNone(ch.handle)

    async def test_missing_session_is_created_with_launch_flags(self) -> None:
        from chatrelay.runners.tmux import LaunchFlags

        fake = _FakeTmux(codes={"has-session": [1]})
        ch = self._make(fake)

        with tempfile.TemporaryDirectory() as td:
            flags = LaunchFlags(skip_permissions=True, resume=True, continue_session=True)
            self.assertTrue(await ch.ensure_session(Path(td), flags))

            self.assertEqual(fake.calls[1], ["new-session", "-d", "-s", "s1", "-c", td])
            self.assertEqual(
                fake.calls[2],
                ["send-keys", "-t", "s1", "-l", "--", "claude --dangerously-skip-permissions -r -c"],
            )
            self.assertEqual(self.sleeps[-1], 5.0)

    async def test_creation_failure_tears_down(self) -> None:
        fake = _FakeTmux(codes={"has-session": [1], "new-session": [1]})
        ch = self._make(fake)

        with self.assertLogs("chatrelay.tmux", level="ERROR"):
            self.assertFalse(await ch.ensure_session(Path("/tmp")))
        self.assertEqual(fake.calls[-1], ["kill-session", "-t", "s1"])
        self.assertIn("new-session", ch.last_error)
        self.assertIsNone(ch.handle)

    async def test_restart_reuses_previous_launch(self) -> None:
        from chatrelay.runners.tmux import LaunchFlags

        fake = _FakeTmux(codes={"has-session": [1, 1]})
        ch = self._make(fake)

        with tempfile.TemporaryDirectory() as td:
            await ch.ensure_session(Path(td), LaunchFlags(skip_permissions=True))
            fake.calls.clear()

            self.assertTrue(await ch.restart())
            names = [c[0] for c in fake.calls]
            self.assertEqual(names[:3], ["kill-session", "has-session", "new-session"])
            self.assertIn("--dangerously-skip-permissions", fake.calls[3][-1])
            self.assertIn(1.0, self.sleeps)

    async def test_snapshot_and_status(self) -> None:
        fake = _FakeTmux(out="line1\nline2\n")
        ch = self._make(fake)

        self.assertEqual(await ch.snapshot(), "line1\nline2\n")
        self.assertEqual(fake.calls[-1], ["capture-pane", "-t", "s1", "-p", "-S", "-"])
        st = await ch.status()
        self.assertTrue(st.exists)
        self.assertEqual(st.idle_minutes, 0)

    async def test_snapshot_failure_returns_none(self) -> None:
        fake = _FakeTmux(codes={"capture-pane": [1]})
        ch = self._make(fake)

        with self.assertLogs("chatrelay.tmux", level="WARNING"):
            self.assertIsNone(await ch.snapshot())


class TestTmuxHelpers(unittest.TestCase):
    def test_settle_delay(self) -> None:
        from chatrelay.runners.tmux import settle_delay_ms

        self.assertEqual(settle_delay_ms(0), 200)
        self.assertEqual(settle_delay_ms(199), 200)
        self.assertEqual(settle_delay_ms(200), 300)
        self.assertEqual(settle_delay_ms(450), 400)
        self.assertEqual(settle_delay_ms(100000), 2200)

    def test_launch_command_quotes_worker(self) -> None:
        from chatrelay.runners.tmux import LaunchFlags, SessionHandle

        h = SessionHandle(name="s", working_dir=Path("."), flags=LaunchFlags(resume=True), worker_command="claude --model 'x y'")
        self.assertEqual(h.launch_command(), "claude --model 'x y' -r")

    def test_missing_session_name_rejected(self) -> None:
        from chatrelay.runners.tmux import SessionChannel

        with self.assertRaises(ValueError):
            SessionChannel("  ")

    def test_list_sessions_filters_marker(self) -> None:
        from chatrelay.runners import tmux

        fake = _FakeTmux(out="claude-main\nother\nclaude-2\n")
        with patch("chatrelay.runners.tmux._run_tmux", fake):
            self.assertEqual(tmux.list_sessions(), ["claude-main", "claude-2"])


if __name__ == "__main__":
    unittest.main()
