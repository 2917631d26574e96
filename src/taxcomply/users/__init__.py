from __future__ import annotations

from .models import User

__all__ = ["User"]
