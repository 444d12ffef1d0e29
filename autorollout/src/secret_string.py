from __future__ import annotations

from pydantic import SecretStr


class SecretString(SecretStr):
    """A sensitive string (token, password, Basic auth value) that never prints itself.

    ``str()``, ``repr()`` and ``format()`` all yield ``<REDACTED, length N>``.
    The raw value is only reachable through :meth:`get_secret_value`.
    """

    def _redacted(self) -> str:
        return f"<REDACTED, length {len(self.get_secret_value())}>"

    def _display(self) -> str:
        return self._redacted()

    def __str__(self) -> str:
        return self._redacted()

    def __repr__(self) -> str:
        return self._redacted()

    def __format__(self, format_spec: str) -> str:
        return format(self._redacted(), format_spec)
