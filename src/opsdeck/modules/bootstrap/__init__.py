"""Compiler toolchain bootstrap drivers."""

from .llvm_bootstrap import BootstrapError, LlvmBootstrap

__all__ = ["BootstrapError", "LlvmBootstrap"]
