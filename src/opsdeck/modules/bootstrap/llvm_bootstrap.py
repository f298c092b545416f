"""
Two-stage LLVM/Clang bootstrap driver.

Stage 1 builds Clang with the host compiler. Stage 2 rebuilds the toolchain
with the stage 1 Clang, linking against libc++ and LLD. Both stages go
through CMake with the Ninja generator and can optionally install into a
prefix. Every step checks the CMake exit status and the presence of the
expected binaries before moving on.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ...core.config import ConfigError
from ...core.contracts import (
    BaseModule,
    BootstrapReport,
    HealthStatus,
    ModuleConfig,
    StageReport,
)
from ...core.process import Runner, run_command

logger = logging.getLogger(__name__)

VALID_STAGES = ("1", "2", "all")
DEFAULT_PROJECTS = ("clang", "clang-tools-extra", "lld", "lldb")
DEFAULT_RUNTIMES = ("libcxx", "libcxxabi", "libunwind", "compiler-rt")
DEFAULT_TARGET_TRIPLE = "x86_64-unknown-linux-gnu"


class BootstrapError(RuntimeError):
    """Raised when a bootstrap step fails or expected artifacts are missing."""


@dataclass(slots=True)
class BootstrapOptions:
    """Resolved options for a bootstrap run."""

    stages: str = "all"
    source_dir: Path = Path("llvm")
    work_dir: Path = Path(".")
    stage1_build_dir: Path = Path("build-stage1")
    stage2_build_dir: Path = Path("build-stage2")
    stage1_install_dir: Path = Path("~/llvm-stage1")
    stage2_install_dir: Path = Path("~/llvm")
    install_stage1: bool = True
    install_stage2: bool = True
    generator: str = "Ninja"
    build_type: str = "Release"
    projects: tuple[str, ...] = DEFAULT_PROJECTS
    runtimes: tuple[str, ...] = DEFAULT_RUNTIMES
    targets: str = "host"
    target_triple: str = DEFAULT_TARGET_TRIPLE
    cmake: str = "cmake"

    @property
    def run_stage1(self) -> bool:
        return self.stages in ("1", "all")

    @property
    def run_stage2(self) -> bool:
        return self.stages in ("2", "all")

    def resolve(self, path: Path) -> Path:
        """Make ``path`` absolute relative to the work dir; it need not exist."""
        expanded = path.expanduser()
        if not expanded.is_absolute():
            expanded = self.work_dir.expanduser().resolve() / expanded
        return Path(os.path.normpath(expanded))

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> BootstrapOptions:
        defaults = cls()
        stages = str(options.get("stages", defaults.stages)).strip().lower()
        if stages not in VALID_STAGES:
            raise ConfigError(
                f"Invalid stages value {stages!r}. Valid options: {', '.join(VALID_STAGES)}"
            )

        def _path(key: str) -> Path:
            return Path(options.get(key) or getattr(defaults, key))

        def _names(key: str) -> tuple[str, ...]:
            value = options.get(key)
            if not value:
                return getattr(defaults, key)
            if isinstance(value, str):
                return tuple(part for part in value.split(";") if part)
            return tuple(str(part) for part in value)

        settings = cls(
            stages=stages,
            source_dir=_path("source_dir"),
            work_dir=_path("work_dir"),
            stage1_build_dir=_path("stage1_build_dir"),
            stage2_build_dir=_path("stage2_build_dir"),
            stage1_install_dir=_path("stage1_install_dir"),
            stage2_install_dir=_path("stage2_install_dir"),
            install_stage1=bool(options.get("install_stage1", defaults.install_stage1)),
            install_stage2=bool(options.get("install_stage2", defaults.install_stage2)),
            generator=str(options.get("generator") or defaults.generator),
            build_type=str(options.get("build_type") or defaults.build_type),
            projects=_names("projects"),
            runtimes=_names("runtimes"),
            targets=str(options.get("targets") or defaults.targets),
            target_triple=str(options.get("target_triple") or defaults.target_triple),
            cmake=str(options.get("cmake") or defaults.cmake),
        )
        settings.work_dir = settings.work_dir.expanduser().resolve()
        for key in (
            "source_dir",
            "stage1_build_dir",
            "stage2_build_dir",
            "stage1_install_dir",
            "stage2_install_dir",
        ):
            setattr(settings, key, settings.resolve(getattr(settings, key)))
        return settings


@dataclass(slots=True)
class StageToolchain:
    """Location of the stage 1 compiler used to drive stage 2."""

    bin_dir: Path
    lib_dir: Path
    arch_lib_dir: Path

    def environment(self, base: Mapping[str, str]) -> dict[str, str]:
        """Child environment with the stage 1 toolchain ahead of everything else."""

        path = os.pathsep.join(filter(None, [str(self.bin_dir), base.get("PATH", "")]))
        ld_parts = [str(self.lib_dir), str(self.arch_lib_dir), base.get("LD_LIBRARY_PATH", "")]
        return {
            "PATH": path,
            "LD_LIBRARY_PATH": os.pathsep.join(filter(None, dict.fromkeys(ld_parts))),
        }


def _common_configure_args(
    settings: BootstrapOptions, build_dir: Path, prefix: Path
) -> list[str]:
    triple = settings.target_triple
    return [
        settings.cmake,
        "-S",
        str(settings.source_dir),
        "-B",
        str(build_dir),
        "-G",
        settings.generator,
        f"-DCMAKE_BUILD_TYPE={settings.build_type}",
        f"-DCMAKE_INSTALL_PREFIX={prefix}",
        f"-DCMAKE_BUILD_RPATH=$ORIGIN/../lib;$ORIGIN/../lib/{triple}",
        f"-DCMAKE_INSTALL_RPATH={prefix}/lib;{prefix}/lib/{triple}",
        "-DCMAKE_BUILD_WITH_INSTALL_RPATH=OFF",
        "-DCMAKE_INSTALL_RPATH_USE_LINK_PATH=OFF",
        f"-DLLVM_ENABLE_PROJECTS={';'.join(settings.projects)}",
        f"-DLLVM_ENABLE_RUNTIMES={';'.join(settings.runtimes)}",
        f"-DLLVM_TARGETS_TO_BUILD={settings.targets}",
    ]


def stage1_configure_args(settings: BootstrapOptions) -> list[str]:
    """CMake configure command for the host-compiled stage 1."""
    return _common_configure_args(
        settings, settings.stage1_build_dir, settings.stage1_install_dir
    )


def stage2_configure_args(settings: BootstrapOptions) -> list[str]:
    """CMake configure command for the self-hosted stage 2."""
    args = _common_configure_args(
        settings, settings.stage2_build_dir, settings.stage2_install_dir
    )
    args[7:7] = ["-DCMAKE_C_COMPILER=clang", "-DCMAKE_CXX_COMPILER=clang++"]
    args.extend(
        [
            "-DLLVM_ENABLE_LLD=ON",
            "-DLLVM_ENABLE_LIBCXX=ON",
            "-DCLANG_DEFAULT_CXX_STDLIB=libc++",
        ]
    )
    return args


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def locate_stage1(settings: BootstrapOptions) -> StageToolchain:
    """
    Find a usable stage 1 toolchain, preferring the install prefix.

    Raises:
        BootstrapError: when no stage 1 clang exists or required files are missing.
    """

    install_bin = settings.stage1_install_dir / "bin"
    build_bin = settings.stage1_build_dir / "bin"
    if settings.install_stage1 and _is_executable(install_bin / "clang"):
        logger.info("Found stage1 installation at: %s", settings.stage1_install_dir)
    elif _is_executable(build_bin / "clang"):
        logger.info("Found stage1 build artifacts in %s", settings.stage1_build_dir)
    else:
        raise BootstrapError(
            "Stage 1 build not found! Run stage 1 first (--stages=1) or verify that "
            f"{install_bin / 'clang'} or {build_bin / 'clang'} exists."
        )

    if settings.install_stage1 and install_bin.is_dir():
        root = settings.stage1_install_dir
    elif build_bin.is_dir():
        root = settings.stage1_build_dir
    else:  # pragma: no cover - guarded by the executable checks above
        raise BootstrapError("No valid stage1 binaries found!")

    toolchain_bin = root / "bin"
    toolchain_lib = root / "lib"
    for required in (toolchain_bin / "clang", toolchain_lib / "libclang.so"):
        if not required.exists():
            raise BootstrapError(f"Missing required stage1 file: {required}")

    arch_lib = toolchain_lib / settings.target_triple
    if not arch_lib.is_dir():
        arch_lib = toolchain_lib
    return StageToolchain(bin_dir=toolchain_bin, lib_dir=toolchain_lib, arch_lib_dir=arch_lib)


class LlvmBootstrap(BaseModule):
    """Drive the stage 1 / stage 2 LLVM build through CMake."""

    name = "modules.bootstrap.llvm"

    def __init__(
        self,
        *,
        runner: Runner | None = None,
        which: Callable[[str], str | None] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__()
        self._settings = BootstrapOptions()
        self._runner = runner or run_command
        self._which = which or shutil.which
        self._environ = environ if environ is not None else os.environ
        self._completed: list[StageReport] = []

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        self._settings = BootstrapOptions.from_options(config.options)

    @property
    def settings(self) -> BootstrapOptions:
        return self._settings

    async def run(self) -> BootstrapReport:
        settings = self._settings
        self._completed = []
        if self._which(settings.cmake) is None:
            raise BootstrapError(f"'{settings.cmake}' command is required but not found.")

        if settings.run_stage1:
            await self._stage1()
        if settings.run_stage2:
            await self._stage2()
        logger.info("=== Build completed successfully ===")
        return BootstrapReport(stages=list(self._completed))

    async def health(self) -> HealthStatus:
        details: dict[str, Any] = {
            "stages": self._settings.stages,
            "completed": [stage.stage for stage in self._completed],
        }
        return HealthStatus(status="healthy" if self._configured else "degraded", details=details)

    async def _stage1(self) -> None:
        settings = self._settings
        logger.info("=== Running Stage 1 Build ===")
        await self._cmake("stage 1 configure", stage1_configure_args(settings))
        await self._cmake(
            "stage 1 build", [settings.cmake, "--build", str(settings.stage1_build_dir)]
        )
        if settings.install_stage1:
            await self._install(1, settings.stage1_build_dir, settings.stage1_install_dir)
        self._completed.append(
            StageReport(
                stage=1,
                build_dir=str(settings.stage1_build_dir),
                install_dir=str(settings.stage1_install_dir) if settings.install_stage1 else None,
                installed=settings.install_stage1,
            )
        )

    async def _stage2(self) -> None:
        settings = self._settings
        logger.info("=== Running Stage 2 Build ===")
        toolchain = locate_stage1(settings)
        env = toolchain.environment(self._environ)
        logger.info("Using stage1 binaries from: %s", toolchain.bin_dir)
        logger.info("Current PATH: %s", env["PATH"])
        logger.info("Current LD_LIBRARY_PATH: %s", env["LD_LIBRARY_PATH"])

        await self._cmake("stage 2 configure", stage2_configure_args(settings), env=env)
        await self._cmake(
            "stage 2 build", [settings.cmake, "--build", str(settings.stage2_build_dir)], env=env
        )
        if settings.install_stage2:
            await self._install(2, settings.stage2_build_dir, settings.stage2_install_dir, env=env)
        self._completed.append(
            StageReport(
                stage=2,
                build_dir=str(settings.stage2_build_dir),
                install_dir=str(settings.stage2_install_dir) if settings.install_stage2 else None,
                installed=settings.install_stage2,
            )
        )

    async def _install(
        self,
        stage: int,
        build_dir: Path,
        prefix: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        logger.info("=== Installing Stage %d Build ===", stage)
        await self._cmake(
            f"stage {stage} install",
            [self._settings.cmake, "--build", str(build_dir), "--target", "install"],
            env=env,
        )
        if not _is_executable(prefix / "bin" / "clang"):
            raise BootstrapError(
                f"Stage{stage} installation failed! clang not found in {prefix / 'bin'}"
            )

    async def _cmake(
        self, step: str, args: list[str], *, env: Mapping[str, str] | None = None
    ) -> None:
        logger.info("Running %s: %s", step, " ".join(args))
        result = await self._runner(
            args, cwd=self._settings.work_dir, env=env, timeout=None, capture=False
        )
        if not result.ok:
            raise BootstrapError(f"{step} failed with exit status {result.returncode}")


__all__ = [
    "BootstrapError",
    "BootstrapOptions",
    "LlvmBootstrap",
    "StageToolchain",
    "locate_stage1",
    "stage1_configure_args",
    "stage2_configure_args",
]
