import unittest
from typing import Dict, List, Tuple
from unittest.mock import patch

PANES = "\n".join(
    [
        "100 work:0.0 claude",
        "200 work:1.0 node",
        "300 work:2.0 bash",
        "400 misc:0.0 2.1.3",
        "garbage",
    ]
)


class FakeShell:
    """Scripted stand-in for run_command keyed on the command line."""

    def __init__(self, *, panes: str = PANES, panes_rc: int = 0) -> None:
        self.panes = panes
        self.panes_rc = panes_rc
        self.children: Dict[int, str] = {200: "201 claude --resume"}
        self.parents: Dict[int, int] = {}
        self.fail_targets: set = set()
        self.calls: List[List[str]] = []

    async def __call__(self, argv, *, timeout_s=5.0, stdin=None) -> Tuple[int, str, str]:
        argv = list(argv)
        self.calls.append(argv)
        if argv[:2] == ["tmux", "list-panes"]:
            return (self.panes_rc, self.panes if self.panes_rc == 0 else "", "" if self.panes_rc == 0 else "no server running")
        if argv[:2] == ["tmux", "send-keys"]:
            if argv[3] in self.fail_targets:
                return 1, "", "can't find pane"
            return 0, "", ""
        if argv[0] == "pgrep":
            pid = int(argv[2])
            return (0, self.children[pid], "") if pid in self.children else (1, "", "")
        if argv[0] == "ps":
            pid = int(argv[-1])
            return (0, f"{self.parents[pid]}\n", "") if pid in self.parents else (1, "", "")
        return 127, "", "unexpected"

    def sends(self) -> List[List[str]]:
        return [c for c in self.calls if c[:2] == ["tmux", "send-keys"]]


class TestTmuxHelpers(unittest.TestCase):
    def test_parse_pane_line(self) -> None:
        from autoresume.delivery.tmux import parse_pane_line

        pane = parse_pane_line("123 main:0.1 claude")
        assert pane is not None
        self.assertEqual((pane.pid, pane.target, pane.command), (123, "main:0.1", "claude"))
        self.assertIsNone(parse_pane_line("bad"))
        self.assertIsNone(parse_pane_line("x main:0.0 bash"))

    def test_resume_sequence_shape(self) -> None:
        from autoresume.delivery.tmux import build_resume_sequence

        seq = build_resume_sequence("keep going", "2")
        self.assertEqual([s.keys[0] for s in seq], ["Escape", "Escape", "2", "Escape", "Escape", "C-u", "keep going", "Enter"])
        self.assertEqual([s.delay_ms for s in seq], [500, 300, 1000, 500, 300, 200, 200, 0])
        self.assertEqual([s.literal for s in seq].count(True), 1)
        self.assertTrue(seq[6].literal)

    def test_resume_sequence_defaults(self) -> None:
        from autoresume.delivery.tmux import build_resume_sequence

        seq = build_resume_sequence("", "")
        self.assertEqual(seq[2].keys, ("1",))
        self.assertEqual(seq[6].keys, ("continue",))


class TestTmuxDiscovery(unittest.IsolatedAsyncioTestCase):
    async def test_find_claude_panes_by_command_and_child(self) -> None:
        from autoresume.delivery.tmux import find_claude_panes

        shell = FakeShell()
        with patch("autoresume.delivery.tmux.run_command", new=shell):
            panes = await find_claude_panes()
        self.assertEqual([p.target for p in panes], ["work:0.0", "work:1.0"])
        # bash is not a candidate host, so its children are never listed
        self.assertNotIn(["pgrep", "-P", "300", "-a"], shell.calls)
        self.assertIn(["pgrep", "-P", "400", "-a"], shell.calls)

    async def test_no_tmux_server(self) -> None:
        from autoresume.delivery.tmux import find_claude_panes

        with patch("autoresume.delivery.tmux.run_command", new=FakeShell(panes_rc=1)):
            self.assertEqual(await find_claude_panes(), [])

    async def test_find_target_pane_by_process_ancestry(self) -> None:
        from autoresume.delivery.tmux import find_target_panes

        shell = FakeShell()
        shell.parents = {555: 556, 556: 300}
        with patch("autoresume.delivery.tmux.run_command", new=shell):
            panes = await find_target_panes(555)
        self.assertEqual([p.target for p in panes], ["work:2.0"])

    async def test_unknown_pid_falls_back_to_claude_panes(self) -> None:
        from autoresume.delivery.tmux import find_target_panes

        shell = FakeShell()
        shell.parents = {555: 1}
        with patch("autoresume.delivery.tmux.run_command", new=shell):
            panes = await find_target_panes(555)
        self.assertEqual([p.target for p in panes], ["work:0.0", "work:1.0"])

    async def test_walk_stops_on_cycle(self) -> None:
        from autoresume.delivery.tmux import walk_process_tree

        shell = FakeShell()
        shell.parents = {10: 11, 11: 10}
        with patch("autoresume.delivery.tmux.run_command", new=shell):
            self.assertIsNone(await walk_process_tree(10, {}))


class TestTmuxTier(unittest.IsolatedAsyncioTestCase):
    async def test_delivers_to_every_claude_pane(self) -> None:
        from autoresume.delivery.base import DeliveryContext
        from autoresume.delivery.tmux import TmuxTier

        shell = FakeShell()
        with patch("autoresume.delivery.tmux.run_command", new=shell):
            out = await TmuxTier(delay_scale=0).run(DeliveryContext(resume_text="continue", menu_selection="1"))

        self.assertTrue(out.success)
        self.assertEqual(out.tier, "tmux")
        self.assertEqual([t.target.target for t in out.targets if t.ok], ["work:0.0", "work:1.0"])
        self.assertEqual(len(shell.sends()), 16)
        self.assertIn(["tmux", "send-keys", "-t", "work:0.0", "-l", "--", "continue"], shell.sends())
        self.assertEqual(shell.sends()[-1], ["tmux", "send-keys", "-t", "work:1.0", "Enter"])

    async def test_failed_pane_does_not_stop_others(self) -> None:
        from autoresume.delivery.base import DeliveryContext
        from autoresume.delivery.tmux import TmuxTier

        shell = FakeShell()
        shell.fail_targets = {"work:0.0"}
        with patch("autoresume.delivery.tmux.run_command", new=shell):
            out = await TmuxTier(delay_scale=0).run(DeliveryContext())

        self.assertTrue(out.success)
        oks = {t.target.target: t.ok for t in out.targets}
        self.assertEqual(oks, {"work:0.0": False, "work:1.0": True})
        self.assertIn("can't find pane", out.error)

    async def test_no_panes_is_a_failed_tier(self) -> None:
        from autoresume.delivery.base import DeliveryContext
        from autoresume.delivery.tmux import TmuxTier

        with patch("autoresume.delivery.tmux.run_command", new=FakeShell(panes="")):
            out = await TmuxTier(delay_scale=0).run(DeliveryContext())
        self.assertFalse(out.success)
        self.assertEqual(out.error, "no claude tmux panes")


if __name__ == "__main__":
    unittest.main()
