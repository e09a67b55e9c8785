"""Coralph - run an AI coding assistant in a loop against a repository's issues."""

from importlib.metadata import PackageNotFoundError, version

from coralph.schemas import GeneratedTask, LoopResult, StopReason

__all__ = ["GeneratedTask", "LoopResult", "StopReason"]

try:
    __version__ = version("coralph")
except PackageNotFoundError:
    __version__ = "0.0.0"
