"""vid2anim - video to animated GIF/WebP conversion orchestration."""

__version__: str = "0.1.0"
__author__: str = "vid2anim Team"
