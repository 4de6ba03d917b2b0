import asyncio
import stat
import tempfile
import unittest
from pathlib import Path

from cli_relay.cli.launcher import (
    SKILL_RULES_PROMPT,
    CliLauncher,
    CliRun,
    TurnAccumulator,
    context_tokens,
    safe_kill,
    wait_result,
)
from cli_relay.cli.stream_parser import decode_record
from tests.fakes import FakeProcess


def _assistant(text: str | None = None, usage: dict | None = None) -> dict:
    content = [{"type": "text", "text": text}] if text is not None else []
    message: dict = {"content": content}
    if usage is not None:
        message["usage"] = usage
    return {"type": "assistant", "message": message}


class ArgumentShapeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.launcher = CliLauncher(model="discuss-model", alert_model="alert-model")

    def test_single_turn_shape(self) -> None:
        self.assertEqual(
            [
                "-p", "investigate",
                "--verbose",
                "--model", "alert-model",
                "--dangerously-skip-permissions",
                "--output-format", "stream-json",
            ],
            self.launcher.build_single_turn_args("investigate"),
        )

    def test_resumable_shape_puts_resume_before_prompt(self) -> None:
        args = self.launcher.build_resumable_args("next", "tok-1")
        self.assertEqual(["--resume", "tok-1", "-p", "next"], args[:4])
        self.assertIn("discuss-model", args)
        self.assertEqual(SKILL_RULES_PROMPT, args[args.index("--append-system-prompt") + 1])

    def test_resumable_shape_without_token(self) -> None:
        args = self.launcher.build_resumable_args("first")
        self.assertNotIn("--resume", args)
        self.assertEqual(["-p", "first"], args[:2])

    def test_compact_shape_has_no_prompt(self) -> None:
        args = self.launcher.build_compact_args("tok-2")
        self.assertEqual(["--resume", "tok-2"], args[:2])
        self.assertNotIn("-p", args)
        self.assertIn("stream-json", args)

    def test_mcp_config_appended_to_every_shape(self) -> None:
        launcher = CliLauncher(mcp_config_path="/tmp/mcp-override.json")
        for args in (
            launcher.build_single_turn_args("x"),
            launcher.build_resumable_args("x", "t"),
            launcher.build_compact_args("t"),
        ):
            self.assertEqual(["--mcp-config", "/tmp/mcp-override.json"], args[-2:])


class ResumablePromptTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        skills_dir = Path(self._tmp.name)
        (skills_dir / "deploy").mkdir()
        (skills_dir / "deploy" / "SKILL.md").write_text("1. Ship it", encoding="utf-8")
        self.launcher = CliLauncher(skills_dir=str(skills_dir))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_skill_named_in_context_is_not_run(self) -> None:
        context = "Thread context (messages from other users):\n<@U2>: I ran /deploy staging earlier\n\n"
        self.assertEqual(context + "what is 2+2?", self.launcher.compose_resumable_prompt("what is 2+2?", context))

    def test_owner_skill_keeps_context_prefix(self) -> None:
        context = "Thread context (messages from other users):\n<@U2>: staging is red\n\n"
        prompt = self.launcher.compose_resumable_prompt("/deploy staging", context)
        self.assertTrue(prompt.startswith(context + 'Execute skill "deploy" with arguments "staging".'))
        self.assertIn("<skill>\n1. Ship it\n</skill>", prompt)

    def test_plain_prompt_without_context(self) -> None:
        self.assertEqual("hello", self.launcher.compose_resumable_prompt("hello"))


class TurnAccumulatorTests(unittest.TestCase):
    def _fold(self, records: list[dict], *, track_resumption: bool = True, exit_code: int = 0):
        acc = TurnAccumulator(track_resumption=track_resumption)
        for obj in records:
            acc.apply(decode_record(obj))
        return acc.finish(exit_code)

    def test_last_usage_record_wins(self) -> None:
        result = self._fold(
            [
                _assistant(usage={"input_tokens": 100, "cache_creation_input_tokens": 20, "cache_read_input_tokens": 5}),
                _assistant(usage={"input_tokens": 50, "cache_creation_input_tokens": 0, "cache_read_input_tokens": 200}),
            ]
        )
        self.assertEqual(250, result.input_tokens)

    def test_context_tokens_ignores_missing_fields(self) -> None:
        self.assertEqual(7, context_tokens({"input_tokens": 7, "output_tokens": 99}))

    def test_terminal_result_fields(self) -> None:
        result = self._fold(
            [
                _assistant("thinking out loud"),
                {"type": "result", "result": "final", "session_id": "s-9", "num_turns": 3, "total_cost_usd": 0.0123},
            ]
        )
        self.assertEqual("final", result.response)
        self.assertEqual("s-9", result.resumption_token)
        self.assertEqual(3, result.turn_count)
        self.assertAlmostEqual(0.0123, result.cost_usd)

    def test_falls_back_to_last_text_block(self) -> None:
        result = self._fold([_assistant("first"), _assistant("second"), {"type": "result", "result": ""}])
        self.assertEqual("second", result.response)

    def test_single_turn_does_not_track_resumption(self) -> None:
        result = self._fold([{"type": "result", "result": "x", "session_id": "s-1"}], track_resumption=False)
        self.assertIsNone(result.resumption_token)

    def test_no_records(self) -> None:
        result = self._fold([], exit_code=1)
        self.assertEqual(1, result.exit_code)
        self.assertIsNone(result.response)
        self.assertFalse(result.launch_failed)


class SafeKillTests(unittest.TestCase):
    def test_kill_live_process(self) -> None:
        process = FakeProcess()
        self.assertTrue(safe_kill(process))
        self.assertEqual(1, process.terminate_calls)

    def test_exited_process_is_not_signalled(self) -> None:
        process = FakeProcess(returncode=0)
        self.assertFalse(safe_kill(process))
        self.assertEqual(0, process.terminate_calls)

    def test_kill_failure_is_reported_not_raised(self) -> None:
        class _Gone(FakeProcess):
            def terminate(self) -> None:
                raise ProcessLookupError()

        self.assertFalse(safe_kill(_Gone()))
        self.assertFalse(safe_kill(None))


class SubprocessTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_dir = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _script(self, body: str) -> str:
        path = self.tmp_dir / "fake-claude"
        path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    def _records_file(self, lines: list[str]) -> str:
        path = self.tmp_dir / "records.jsonl"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)

    def test_resumable_turn_end_to_end(self) -> None:
        records = self._records_file(
            [
                '{"type":"assistant","message":{"content":[{"type":"text","text":"partial"}],"usage":{"input_tokens":10}}}',
                "warning: something on stdout",
                '{"type":"result","result":"done","session_id":"s-1","num_turns":2,"total_cost_usd":0.5}',
            ]
        )
        launcher = CliLauncher(binary=self._script(f'cat "{records}"\necho "stderr noise" >&2\n'))

        async def scenario():
            run = await launcher.start_resumable("hello")
            return run, await wait_result(run)

        run, result = asyncio.run(scenario())
        self.assertIsNotNone(run.process)
        self.assertEqual(0, result.exit_code)
        self.assertEqual("done", result.response)
        self.assertEqual("s-1", result.resumption_token)
        self.assertEqual(10, result.input_tokens)
        self.assertEqual(2, result.turn_count)
        self.assertEqual(0.5, result.cost_usd)

    def test_nonzero_exit_is_a_value(self) -> None:
        launcher = CliLauncher(binary=self._script("exit 2\n"))

        async def scenario():
            run = await launcher.start_single_turn("x")
            return await wait_result(run)

        result = asyncio.run(scenario())
        self.assertEqual(2, result.exit_code)
        self.assertIsNone(result.response)

    def test_missing_binary_resolves_launch_failure(self) -> None:
        launcher = CliLauncher(binary=str(self.tmp_dir / "does-not-exist"))

        async def scenario():
            run = await launcher.start_resumable("hello")
            return run, await wait_result(run)

        run, result = asyncio.run(scenario())
        self.assertIsNone(run.process)
        self.assertFalse(run.is_alive)
        self.assertIsNone(result.exit_code)
        self.assertTrue(result.launch_failed)

    def test_compact_writes_command_to_stdin(self) -> None:
        records = self._records_file(
            ['{"type":"assistant","message":{"content":[],"usage":{"input_tokens":1000,"cache_read_input_tokens":234}}}']
        )
        launcher = CliLauncher(
            binary=self._script(f'read line\nif [ "$line" = "/compact" ]; then cat "{records}"; exit 0; fi\nexit 3\n')
        )

        async def scenario():
            run = await launcher.start_compact("tok")
            return await wait_result(run)

        result = asyncio.run(scenario())
        self.assertTrue(result.success)
        self.assertEqual(1234, result.input_tokens)

    def test_compact_safety_timeout_kills_process(self) -> None:
        launcher = CliLauncher(binary=self._script("exec sleep 30\n"), compact_timeout_seconds=0.2)

        async def scenario():
            run = await launcher.start_compact("tok")
            return await asyncio.wait_for(wait_result(run), timeout=10)

        result = asyncio.run(scenario())
        self.assertFalse(result.success)

    def test_kill_terminates_running_process(self) -> None:
        launcher = CliLauncher(binary=self._script("exec sleep 30\n"))

        async def scenario():
            run: CliRun = await launcher.start_single_turn("x")
            self.assertTrue(run.is_alive)
            self.assertTrue(run.kill())
            return await asyncio.wait_for(wait_result(run), timeout=10)

        result = asyncio.run(scenario())
        self.assertNotEqual(0, result.exit_code)

    def test_non_finite_turn_count_does_not_break_collection(self) -> None:
        records = self._records_file(
            ['{"type":"result","result":"done","session_id":"s-2","num_turns":Infinity,"total_cost_usd":NaN}']
        )
        launcher = CliLauncher(binary=self._script(f'cat "{records}"\n'))

        async def scenario():
            run = await launcher.start_resumable("hello")
            return await asyncio.wait_for(wait_result(run), timeout=10)

        result = asyncio.run(scenario())
        self.assertEqual("done", result.response)
        self.assertEqual("s-2", result.resumption_token)
        self.assertIsNone(result.turn_count)
        self.assertIsNone(result.cost_usd)
