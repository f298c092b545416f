from __future__ import annotations

import sys
from pathlib import Path

import pytest

from opsdeck.core.contracts import CommandResult
from opsdeck.core.process import decode_output
from opsdeck.modules.backup.virtualization import (
    VirtualizationCli,
    VirtualizationError,
    parse_instance_list,
)


def test_parse_instance_list_handles_wsl_utf16_output() -> None:
    raw = "Ubuntu\r\nDebian\r\n\r\nUbuntu\r\n".encode("utf-16-le")

    assert parse_instance_list(decode_output(raw)) == ["Ubuntu", "Debian"]


def test_parse_instance_list_strips_bom() -> None:
    assert parse_instance_list("\ufeffUbuntu\n  Alpine  \n") == ["Ubuntu", "Alpine"]


@pytest.mark.asyncio
async def test_list_instances_uses_configured_command() -> None:
    cli = VirtualizationCli(
        list_command=[sys.executable, "-c", "print('Ubuntu'); print('Fedora')"]
    )

    assert await cli.list_instances() == ["Ubuntu", "Fedora"]


@pytest.mark.asyncio
async def test_list_instances_failure_raises() -> None:
    cli = VirtualizationCli(list_command=[sys.executable, "-c", "raise SystemExit(3)"])

    with pytest.raises(VirtualizationError, match="exit status 3"):
        await cli.list_instances()


@pytest.mark.asyncio
async def test_missing_executable_is_reported_as_failure(tmp_path: Path) -> None:
    cli = VirtualizationCli(list_command=[str(tmp_path / "no-such-wsl")])

    with pytest.raises(VirtualizationError, match="exit status 127"):
        await cli.list_instances()


@pytest.mark.asyncio
async def test_export_writes_archive(tmp_path: Path, fake_export_command: list[str]) -> None:
    cli = VirtualizationCli(export_command=fake_export_command)
    target = tmp_path / "Ubuntu" / "Ubuntu_1.tar"

    result = await cli.export("Ubuntu", target)

    assert result.ok
    assert target.read_bytes() == b"exported Ubuntu"


@pytest.mark.asyncio
async def test_export_failure_discards_partial_archive(tmp_path: Path) -> None:
    script = "import sys; open(sys.argv[1], 'wb').write(b'partial'); raise SystemExit(1)"
    cli = VirtualizationCli(export_command=[sys.executable, "-c", script, "{path}"])
    target = tmp_path / "Ubuntu" / "Ubuntu_1.tar"

    with pytest.raises(VirtualizationError):
        await cli.export("Ubuntu", target)
    assert not target.exists()


@pytest.mark.asyncio
async def test_export_without_archive_is_a_failure(tmp_path: Path) -> None:
    async def runner(args, **kwargs) -> CommandResult:
        return CommandResult(args=tuple(args), returncode=0)

    cli = VirtualizationCli(runner=runner)

    with pytest.raises(VirtualizationError, match="missing"):
        await cli.export("Ubuntu", tmp_path / "Ubuntu" / "Ubuntu_1.tar")


@pytest.mark.asyncio
async def test_export_empty_archive_is_a_failure(tmp_path: Path) -> None:
    target = tmp_path / "Ubuntu" / "Ubuntu_1.tar"

    async def runner(args, **kwargs) -> CommandResult:
        target.write_bytes(b"")
        return CommandResult(args=tuple(args), returncode=0)

    cli = VirtualizationCli(runner=runner)

    with pytest.raises(VirtualizationError, match="empty"):
        await cli.export("Ubuntu", target)
    assert not target.exists()


def test_export_args_substitute_placeholders(tmp_path: Path) -> None:
    cli = VirtualizationCli()

    args = cli.export_args("Ubuntu", tmp_path / "a.tar")

    assert args == ["wsl", "--export", "Ubuntu", str(tmp_path / "a.tar")]
