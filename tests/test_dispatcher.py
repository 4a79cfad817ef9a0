import io
import itertools
import os
import tempfile
import unittest
from pathlib import Path
from typing import Dict, List, Sequence, Tuple


def _make_exec(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    os.chmod(path, 0o755)
    return path


class _ExecRecorder:
    def __init__(self) -> None:
        self.calls: List[Tuple[Path, List[str], Dict[str, str]]] = []

    def __call__(self, path: Path, argv: Sequence[str], env: Dict[str, str]) -> int:
        self.calls.append((Path(path), list(argv), dict(env)))
        return 0


@unittest.skipIf(os.name == "nt", "POSIX executable bits")
class TestDispatcher(unittest.TestCase):
    def setUp(self) -> None:
        from claude_shim.paths import ShimPaths

        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        root = Path(self._td.name)
        self.paths = ShimPaths(home=root / "home")
        self.bin_dir = root / "bin"
        self.real = _make_exec(self.bin_dir / "claude")
        # A shim earlier on PATH must never be picked as the real binary.
        _make_exec(self.paths.shims_dir / "claude")
        self.env = {"PATH": os.pathsep.join([str(self.paths.shims_dir), str(self.bin_dir)]), "HOME": str(root)}

    def _settings(self, **kw):
        from claude_shim.kernel.settings import ShimSettings

        return ShimSettings(**kw)

    def _stage(self, name: str, command: str = "claude") -> Path:
        return _make_exec(self.paths.stage_dir(name) / command)

    def _invocation(self, args: Sequence[str], env: Dict[str, str], command: str = "claude"):
        from claude_shim.contracts.v1 import Invocation

        return Invocation(command=command, args=list(args), env=env)

    def test_no_stages_goes_to_real_binary(self) -> None:
        from claude_shim.contracts.v1 import ENV_BYPASS, ENV_REAL_BINARY, ENV_STAGE
        from claude_shim.kernel.dispatcher import Dispatcher

        d = Dispatcher(self._settings(), self.paths)
        plan = d.plan(self._invocation(["-p", "hi"], self.env))

        self.assertTrue(plan.terminal)
        self.assertEqual(plan.target, self.real)
        self.assertEqual(plan.argv, [str(self.real), "-p", "hi"])
        self.assertEqual(plan.env[ENV_REAL_BINARY], str(self.real))
        self.assertNotIn(ENV_STAGE, plan.env)
        self.assertNotIn(ENV_BYPASS, plan.env)

    def test_missing_first_stage_is_skipped(self) -> None:
        from claude_shim.contracts.v1 import ENV_STAGE
        from claude_shim.kernel.dispatcher import Dispatcher

        serena = self._stage("serena")
        d = Dispatcher(self._settings(stage_order=["ccr", "serena"]), self.paths)

        self.assertEqual(d.summary("claude", bypass=False), ["serena"])
        plan = d.plan(self._invocation(["x"], self.env))
        self.assertEqual(plan.stage, "serena")
        self.assertEqual(plan.target, serena)
        self.assertEqual(plan.env[ENV_STAGE], "2")

        # serena forwards: the next dispatcher call lands on the real binary.
        nxt = d.plan(self._invocation(["x"], plan.env))
        self.assertTrue(nxt.terminal)
        self.assertEqual(nxt.target, self.real)

    def test_every_subset_runs_stages_once_in_order_and_real_binary_once(self) -> None:
        from claude_shim.contracts.v1 import ENV_STAGE
        from claude_shim.kernel.dispatcher import Dispatcher

        order = ["a", "b", "c", "d"]
        settings = self._settings(stage_order=order)
        for n in range(len(order) + 1):
            for present in itertools.combinations(order, n):
                with self.subTest(present=present):
                    for name in order:
                        p = self.paths.stage_dir(name) / "claude"
                        if p.exists():
                            p.unlink()
                    for name in present:
                        self._stage(name)

                    d = Dispatcher(settings, self.paths)
                    env = dict(self.env)
                    visited: List[str] = []
                    real_runs = 0
                    last_index = -1
                    for _ in range(len(order) + 2):
                        plan = d.plan(self._invocation(["q"], env))
                        if plan.terminal:
                            real_runs += 1
                            break
                        seen = int(plan.env[ENV_STAGE])
                        self.assertGreater(seen, last_index)
                        last_index = seen
                        visited.append(plan.stage or "")
                        env = plan.env

                    self.assertEqual(real_runs, 1)
                    self.assertEqual(visited, list(present))

    def test_bypass_only_runs_designated_stages(self) -> None:
        from claude_shim.contracts.v1 import ENV_BYPASS, ENV_STAGE
        from claude_shim.kernel.dispatcher import Dispatcher

        self._stage("ccr")
        serena = self._stage("serena")
        d = Dispatcher(self._settings(stage_order=["ccr", "serena"], bypass_stages=["serena"]), self.paths)

        plan = d.plan(self._invocation(["--native", "-p", "hi"], self.env))
        self.assertEqual(plan.target, serena)
        self.assertEqual(plan.argv, [str(serena), "-p", "hi"])
        self.assertEqual(plan.env[ENV_BYPASS], "1")
        self.assertEqual(plan.env[ENV_STAGE], "2")
        self.assertEqual(d.summary("claude", bypass=True), ["serena", "ccr (skipping in --native mode)"])

        # Even a stage that re-enters from the start never reaches ccr.
        restart = dict(plan.env)
        restart[ENV_STAGE] = "0"
        again = d.plan(self._invocation(["-p", "hi"], restart))
        self.assertEqual(again.stage, "serena")

        final = d.plan(self._invocation(["-p", "hi"], plan.env))
        self.assertTrue(final.terminal)
        self.assertNotIn(ENV_BYPASS, final.env)

    def test_bypass_without_designated_stage_goes_straight_to_real_binary(self) -> None:
        from claude_shim.kernel.dispatcher import Dispatcher

        self._stage("ccr")
        d = Dispatcher(self._settings(stage_order=["ccr", "serena"], bypass_stages=["serena"]), self.paths)
        plan = d.plan(self._invocation(["--native"], self.env))
        self.assertTrue(plan.terminal)
        self.assertEqual(plan.argv, [str(self.real)])

    def test_control_flag_is_stripped_everywhere(self) -> None:
        from claude_shim.kernel.dispatcher import Dispatcher, strip_control_flags

        kept, found = strip_control_flags(["a", "--native", "b", "--native"], ["--native"])
        self.assertEqual(kept, ["a", "b"])
        self.assertEqual(found, ["--native", "--native"])

        serena = self._stage("serena")
        d = Dispatcher(self._settings(stage_order=["serena"]), self.paths)
        plan = d.plan(self._invocation(["-p", "--native", "x"], self.env))
        self.assertEqual(plan.argv, [str(serena), "-p", "x"])

    def test_disabled_stage_is_skipped(self) -> None:
        from claude_shim.kernel.dispatcher import Dispatcher

        self._stage("ccr")
        serena = self._stage("serena")
        d = Dispatcher(self._settings(stage_order=["ccr", "serena"], disabled_stages=["ccr"]), self.paths)
        self.assertEqual(d.plan(self._invocation([], self.env)).target, serena)
        self.assertEqual(d.summary("claude", bypass=False), ["serena"])

    def test_index_past_end_is_terminal(self) -> None:
        from claude_shim.contracts.v1 import ENV_STAGE
        from claude_shim.kernel.dispatcher import Dispatcher

        self._stage("ccr")
        env = dict(self.env)
        env[ENV_STAGE] = "7"
        plan = Dispatcher(self._settings(stage_order=["ccr"]), self.paths).plan(self._invocation([], env))
        self.assertTrue(plan.terminal)

    def test_garbage_index_starts_from_zero(self) -> None:
        from claude_shim.contracts.v1 import ENV_STAGE
        from claude_shim.kernel.dispatcher import Dispatcher

        ccr = self._stage("ccr")
        for raw in ("", "abc", "-3"):
            with self.subTest(raw=raw):
                env = dict(self.env)
                env[ENV_STAGE] = raw
                plan = Dispatcher(self._settings(stage_order=["ccr"]), self.paths).plan(self._invocation([], env))
                self.assertEqual(plan.target, ccr)

    def test_inherited_real_binary_is_reused(self) -> None:
        from claude_shim.contracts.v1 import ENV_REAL_BINARY
        from claude_shim.kernel.dispatcher import Dispatcher

        other = _make_exec(Path(self._td.name) / "elsewhere" / "claude-real")
        env = dict(self.env)
        env[ENV_REAL_BINARY] = str(other)
        plan = Dispatcher(self._settings(), self.paths).plan(self._invocation([], env))
        self.assertEqual(plan.target, other)

    def test_real_binary_only_in_managed_dirs_is_fatal(self) -> None:
        from claude_shim.kernel.dispatcher import dispatch

        env = {"PATH": str(self.paths.shims_dir)}
        rec = _ExecRecorder()
        err = io.StringIO()
        code = dispatch(self._invocation([], env), settings=self._settings(), paths=self.paths, exec_fn=rec, err=err)
        self.assertEqual(code, 1)
        self.assertEqual(rec.calls, [])
        self.assertIn("DISPATCHER: Error", err.getvalue())
        self.assertIn("not found", err.getvalue())

    def test_summary_only_at_top_level(self) -> None:
        from claude_shim.contracts.v1 import ENV_STAGE
        from claude_shim.kernel.dispatcher import dispatch

        self._stage("serena")
        settings = self._settings(stage_order=["ccr", "serena"])

        err = io.StringIO()
        rec = _ExecRecorder()
        dispatch(self._invocation([], self.env), settings=settings, paths=self.paths, exec_fn=rec, err=err)
        self.assertEqual(err.getvalue().count("shims active: serena"), 1)
        self.assertEqual(len(rec.calls), 1)

        err2 = io.StringIO()
        env = dict(self.env)
        env[ENV_STAGE] = "2"
        dispatch(self._invocation([], env), settings=settings, paths=self.paths, exec_fn=rec, err=err2)
        self.assertEqual(err2.getvalue(), "")

    def test_summary_can_be_disabled(self) -> None:
        from claude_shim.kernel.dispatcher import dispatch

        self._stage("serena")
        err = io.StringIO()
        dispatch(
            self._invocation([], self.env),
            settings=self._settings(stage_order=["serena"], summary=False),
            paths=self.paths,
            exec_fn=_ExecRecorder(),
            err=err,
        )
        self.assertEqual(err.getvalue(), "")

    def test_exit_code_of_exec_target_is_returned_unchanged(self) -> None:
        from claude_shim.kernel.dispatcher import dispatch

        code = dispatch(
            self._invocation([], self.env),
            settings=self._settings(),
            paths=self.paths,
            exec_fn=lambda path, argv, env: 42,
            err=io.StringIO(),
        )
        self.assertEqual(code, 42)

    def test_unexecutable_target_reports_and_returns_126(self) -> None:
        import errno

        from claude_shim.kernel.dispatcher import dispatch

        serena = self._stage("serena")

        def refuse(path, argv, env):
            raise OSError(errno.ENOEXEC, "Exec format error", str(path))

        err = io.StringIO()
        code = dispatch(
            self._invocation([], self.env),
            settings=self._settings(stage_order=["serena"]),
            paths=self.paths,
            exec_fn=refuse,
            err=err,
        )
        self.assertEqual(code, 126)
        self.assertIn(f"DISPATCHER: Error: cannot execute {serena}: Exec format error", err.getvalue())


if __name__ == "__main__":
    unittest.main()
