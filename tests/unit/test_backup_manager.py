from __future__ import annotations

import asyncio
import datetime as dt
import sys
from pathlib import Path

import pytest

from opsdeck.core.contracts import CommandResult, ModuleConfig
from opsdeck.modules.backup.manager import BackupManager
from opsdeck.modules.backup.retention import InvalidConfiguration

AGES = (1, 2, 4, 6, 10)


def _manager(now: dt.datetime, **kwargs) -> BackupManager:
    return BackupManager(clock=lambda: now, **kwargs)


def _seed(write_archive, root: Path, instance: str, now: dt.datetime) -> list[Path]:
    return [
        write_archive(root / instance, f"{instance}_{age:02d}.tar", now - dt.timedelta(days=age))
        for age in AGES
    ]


@pytest.mark.asyncio
async def test_export_and_prune_selected_instances(
    tmp_path: Path, now: dt.datetime, write_archive, fake_export_command: list[str]
) -> None:
    root = tmp_path / "backups"
    seeded = _seed(write_archive, root, "Ubuntu", now)
    manager = _manager(now)
    await manager.configure(
        ModuleConfig(
            options={
                "root_dir": str(root),
                "instances": ["Ubuntu", "docker-desktop"],
                "excluded_instances": ["docker-desktop"],
                "keep_count": 3,
                "keep_age_days": 5,
                "export_command": fake_export_command,
            }
        )
    )

    report = await manager.run()

    assert report.ok
    assert [result.instance for result in report.instances] == ["Ubuntu"]
    ubuntu = report.result_for("Ubuntu")
    assert ubuntu.exported
    archive = Path(ubuntu.archive_path)
    assert archive.read_bytes() == b"exported Ubuntu"
    assert archive.name == "Ubuntu_20260315_120000.tar"
    # The fresh export plus the 1, 2 and 4 day old archives survive.
    assert sorted(ubuntu.deleted) == sorted(str(path) for path in seeded[3:])
    assert all(path.exists() for path in seeded[:3])
    assert not any(path.exists() for path in seeded[3:])
    assert not (root / "docker-desktop").exists()


@pytest.mark.asyncio
async def test_failed_export_does_not_stop_other_instances(
    tmp_path: Path, now: dt.datetime
) -> None:
    script = "import sys; raise SystemExit(0 if sys.argv[1] == 'Debian' else 4)"
    writer = "import sys, pathlib; pathlib.Path(sys.argv[2]).write_bytes(b'ok')"
    command = [sys.executable, "-c", f"{writer}\n{script}", "{instance}", "{path}"]
    manager = _manager(now)
    await manager.configure(
        ModuleConfig(
            options={
                "root_dir": str(tmp_path),
                "instances": ["Ubuntu", "Debian"],
                "export_command": command,
            }
        )
    )

    report = await manager.run_once()

    assert not report.ok
    assert not report.result_for("Ubuntu").exported
    assert "exit status 4" in report.result_for("Ubuntu").errors[0]
    assert report.result_for("Debian").exported
    assert list((tmp_path / "Ubuntu").iterdir()) == []


@pytest.mark.asyncio
async def test_prune_only_discovers_directories(
    tmp_path: Path, now: dt.datetime, write_archive
) -> None:
    ubuntu = _seed(write_archive, tmp_path, "Ubuntu", now)
    excluded = _seed(write_archive, tmp_path, "docker-desktop", now)
    manager = _manager(now)
    await manager.configure(
        ModuleConfig(
            options={
                "root_dir": str(tmp_path),
                "excluded_instances": ["docker-desktop"],
                "export_enabled": False,
                "keep_count": 1,
                "keep_age_days": 3,
            }
        )
    )

    report = await manager.run_once()

    assert report.ok
    assert report.files_deleted == 3
    assert [path.exists() for path in ubuntu] == [True, True, False, False, False]
    assert all(path.exists() for path in excluded)


@pytest.mark.asyncio
async def test_deletion_failure_is_recorded_and_pass_continues(
    tmp_path: Path, now: dt.datetime, write_archive, monkeypatch: pytest.MonkeyPatch
) -> None:
    seeded = _seed(write_archive, tmp_path, "Ubuntu", now)
    stuck = seeded[-1]
    original_unlink = Path.unlink

    def flaky_unlink(self: Path, missing_ok: bool = False) -> None:
        if self == stuck:
            raise PermissionError("archive is locked")
        original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)
    manager = _manager(now)
    await manager.configure(
        ModuleConfig(
            options={
                "root_dir": str(tmp_path),
                "instances": ["Ubuntu"],
                "export_enabled": False,
                "keep_count": 0,
                "keep_age_days": 5,
            }
        )
    )

    report = await manager.run_once()

    result = report.result_for("Ubuntu")
    assert result.failed_deletions == [str(stuck)]
    assert result.deleted == [str(seeded[3])]
    assert stuck.exists()
    assert not report.ok


@pytest.mark.asyncio
async def test_dry_run_touches_nothing(
    tmp_path: Path, now: dt.datetime, write_archive, fake_export_command: list[str]
) -> None:
    seeded = _seed(write_archive, tmp_path, "Ubuntu", now)
    manager = _manager(now)
    await manager.configure(
        ModuleConfig(
            options={
                "root_dir": str(tmp_path),
                "instances": ["Ubuntu"],
                "keep_count": 0,
                "keep_age_days": 0,
                "dry_run": True,
                "export_command": fake_export_command,
            }
        )
    )

    report = await manager.run_once()

    assert report.dry_run
    assert report.files_deleted == 0
    assert all(path.exists() for path in seeded)
    assert len(list((tmp_path / "Ubuntu").iterdir())) == len(seeded)


@pytest.mark.asyncio
async def test_discovery_failure_is_reported(tmp_path: Path, now: dt.datetime) -> None:
    async def runner(args, **kwargs) -> CommandResult:
        return CommandResult(args=tuple(args), returncode=1, stderr="wsl unavailable")

    manager = _manager(now, runner=runner)
    await manager.configure(ModuleConfig(options={"root_dir": str(tmp_path)}))

    report = await manager.run_once()

    assert not report.ok
    assert "wsl unavailable" in report.errors[0]
    assert report.instances == []
    health = await manager.health()
    assert health.status == "degraded"


@pytest.mark.asyncio
async def test_discovered_instances_are_exported(tmp_path: Path, now: dt.datetime) -> None:
    calls: list[tuple[str, ...]] = []

    async def runner(args, **kwargs) -> CommandResult:
        calls.append(tuple(args))
        if args[1] == "--list":
            return CommandResult(args=tuple(args), stdout="Ubuntu\ndocker-desktop\n", returncode=0)
        Path(args[3]).write_bytes(b"archive")
        return CommandResult(args=tuple(args), returncode=0)

    manager = _manager(now, runner=runner)
    await manager.configure(
        ModuleConfig(
            options={"root_dir": str(tmp_path), "excluded_instances": ["docker-desktop"]}
        )
    )

    report = await manager.run_once()

    assert report.ok
    assert [call[:3] for call in calls] == [
        ("wsl", "--list", "--quiet"),
        ("wsl", "--export", "Ubuntu"),
    ]
    assert (await manager.health()).status == "healthy"


@pytest.mark.asyncio
async def test_negative_retention_is_rejected(now: dt.datetime) -> None:
    manager = _manager(now)

    with pytest.raises(InvalidConfiguration):
        await manager.configure(ModuleConfig(options={"keep_count": -1}))


@pytest.mark.asyncio
async def test_scheduled_manager_stops_on_request(tmp_path: Path, now: dt.datetime) -> None:
    manager = _manager(now)
    await manager.configure(
        ModuleConfig(
            options={
                "root_dir": str(tmp_path),
                "instances": ["Ubuntu"],
                "export_enabled": False,
                "interval_seconds": 60,
            }
        )
    )
    assert manager.scheduled

    task = asyncio.create_task(manager.run())
    await asyncio.sleep(0.05)
    await manager.stop()
    report = await asyncio.wait_for(task, timeout=1)

    assert report.root == str(tmp_path)


@pytest.mark.asyncio
async def test_failed_cycle_is_logged_and_loop_continues(
    tmp_path: Path, now: dt.datetime, write_archive, caplog: pytest.LogCaptureFixture
) -> None:
    write_archive(tmp_path / "Ubuntu", "Ubuntu_01.tar", now - dt.timedelta(days=1))
    ticks: list[int] = []

    def clock() -> dt.datetime:
        ticks.append(1)
        if len(ticks) == 1:
            raise RuntimeError("clock unavailable")
        return now

    manager = BackupManager(clock=clock)
    await manager.configure(
        ModuleConfig(
            options={
                "root_dir": str(tmp_path),
                "instances": ["Ubuntu"],
                "export_enabled": False,
                "interval_seconds": 0.01,
            }
        )
    )

    task = asyncio.create_task(manager.run())
    for _ in range(200):
        if len(ticks) >= 2:
            break
        await asyncio.sleep(0.01)
    await manager.stop()
    report = await asyncio.wait_for(task, timeout=1)

    assert "Backup cycle failed." in caplog.text
    assert report.started_at == now
    assert report.result_for("Ubuntu").kept
    health = await manager.health()
    assert health.details["archives"] == 1
