"""TUI package for neuroclear."""

from neuroclear.tui.app import NeuroclearApp, run_tui

__all__ = ["NeuroclearApp", "run_tui"]
