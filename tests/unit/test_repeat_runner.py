from __future__ import annotations

import pytest

from opsdeck.core.contracts import CommandResult, ModuleConfig
from opsdeck.modules.loop.repeat_runner import DEFAULT_COMMANDS, RepeatRunner


class RecordingRunner:
    """Fake shell runner that fails on a chosen (run, command) call."""

    def __init__(self, fail_on_call: int | None = None, returncode: int = 1) -> None:
        self.calls: list[str] = []
        self.kwargs: list[dict] = []
        self._fail_on_call = fail_on_call
        self._returncode = returncode

    async def __call__(self, command: str, **kwargs) -> CommandResult:
        self.calls.append(command)
        self.kwargs.append(kwargs)
        failed = len(self.calls) == self._fail_on_call
        return CommandResult(args=(command,), returncode=self._returncode if failed else 0)


@pytest.mark.asyncio
async def test_defaults_run_both_commands_ten_times() -> None:
    runner = RecordingRunner()
    repeat = RepeatRunner(runner=runner)

    report = await repeat.run()

    assert report.success
    assert report.runs_completed == 10
    assert runner.calls == list(DEFAULT_COMMANDS) * 10


@pytest.mark.asyncio
async def test_stops_at_first_failure() -> None:
    runner = RecordingRunner(fail_on_call=5, returncode=3)
    repeat = RepeatRunner(runner=runner)
    await repeat.configure(ModuleConfig(options={"max_runs": 4, "commands": ["a", "b"]}))

    report = await repeat.run()

    assert not report.success
    assert report.failed_run == 3
    assert report.failed_command == "a"
    assert report.returncode == 3
    assert report.runs_completed == 2
    assert runner.calls == ["a", "b", "a", "b", "a"]
    health = await repeat.health()
    assert health.status == "error"


@pytest.mark.asyncio
async def test_zero_runs_succeeds_without_executing() -> None:
    runner = RecordingRunner()
    repeat = RepeatRunner(runner=runner)
    await repeat.configure(ModuleConfig(options={"max_runs": 0}))

    report = await repeat.run()

    assert report.success
    assert runner.calls == []


@pytest.mark.asyncio
async def test_shell_options_are_forwarded() -> None:
    runner = RecordingRunner()
    repeat = RepeatRunner(runner=runner)
    await repeat.configure(
        ModuleConfig(
            options={
                "max_runs": 1,
                "commands": ["make test"],
                "shell": "/bin/bash",
                "timeout_seconds": 30,
                "env": {"CI": 1},
            }
        )
    )

    await repeat.run()

    assert runner.kwargs == [
        {"shell": "/bin/bash", "cwd": None, "env": {"CI": "1"}, "timeout": 30.0}
    ]


@pytest.mark.asyncio
async def test_negative_max_runs_is_rejected() -> None:
    with pytest.raises(ValueError):
        await RepeatRunner().configure(ModuleConfig(options={"max_runs": -2}))


@pytest.mark.asyncio
async def test_real_shell_commands() -> None:
    repeat = RepeatRunner()
    await repeat.configure(ModuleConfig(options={"max_runs": 2, "commands": ["true"]}))
    assert (await repeat.run()).success

    await repeat.configure(ModuleConfig(options={"max_runs": 3, "commands": ["exit 7"]}))
    report = await repeat.run()

    assert report.failed_run == 1
    assert report.returncode == 7
