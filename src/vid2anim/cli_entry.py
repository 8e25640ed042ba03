"""Console-script entry point for the vid2anim CLI."""

from .cli import main  # re-export from the real CLI package

__all__ = ["main"]
