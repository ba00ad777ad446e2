"""Runtime-only policy modules (not user-configurable)."""

from paneherd.runtime.binaries import TmuxBinary

__all__ = ["TmuxBinary"]
