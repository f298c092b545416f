from __future__ import annotations

import datetime as dt
import os
import sys
import textwrap
from pathlib import Path

import pytest

from opsdeck.core.config import ConfigService
from opsdeck.core.contracts import BackupArtifact


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


@pytest.fixture
def now() -> dt.datetime:
    return dt.datetime(2026, 3, 15, 12, 0, tzinfo=dt.UTC)


@pytest.fixture
def make_artifact(now: dt.datetime):
    """Build in-memory artifacts aged a number of days before ``now``."""

    def _make(age_days: float, *, instance: str = "Ubuntu", name: str | None = None):
        when = now - dt.timedelta(days=age_days)
        file_name = name or f"{instance}_{when.strftime('%Y%m%d_%H%M%S')}.tar"
        return BackupArtifact(
            instance=instance,
            name=file_name,
            path=Path("/backups") / instance / file_name,
            last_modified=when,
        )

    return _make


@pytest.fixture
def write_archive():
    """Create an archive file on disk with a given modification time."""

    def _write(directory: Path, name: str, when: dt.datetime, payload: bytes = b"tar") -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_bytes(payload)
        stamp = when.timestamp()
        os.utime(path, (stamp, stamp))
        return path

    return _write


@pytest.fixture
def fake_export_command() -> list[str]:
    """Export command that writes a small archive to ``{path}`` using the test interpreter."""

    script = "import sys; open(sys.argv[2], 'wb').write(b'exported ' + sys.argv[1].encode())"
    return [sys.executable, "-c", script, "{instance}", "{path}"]


@pytest.fixture
def sample_config_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    backups_dir = tmp_path / "backups"
    config_yaml = f"""
    logging:
      level: "DEBUG"
      file: "{(tmp_path / 'logs' / 'opsdeck.log').as_posix()}"

    repeat:
      max_runs: 3
      commands:
        - "true"

    backup:
      root_dir: "{backups_dir.as_posix()}"
      instances: ["Ubuntu", "Debian"]
      excluded_instances: ["docker-desktop"]
      keep_count: 2
      keep_age_days: 4

    bootstrap:
      stages: 1
      work_dir: "{tmp_path.as_posix()}"
      stage1_install_dir: "{(tmp_path / 'stage1').as_posix()}"
      stage2_install_dir: "{(tmp_path / 'stage2').as_posix()}"
      install_stage2: false
    """
    local_yaml = """
    backup:
      keep_age_days: 7
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    _write_yaml(config_dir / "local.yaml", local_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)
