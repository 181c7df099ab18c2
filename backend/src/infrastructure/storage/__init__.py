"""Local file storage adapters."""

from .secure_eraser import SecureEraser, DEFAULT_PASSES

__all__ = ["SecureEraser", "DEFAULT_PASSES"]
