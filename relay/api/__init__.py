"""Endpoint helpers built on RelayClient."""

from .auth import login, logout

__all__ = ["login", "logout"]
