from __future__ import annotations

import secrets

from clusterlab.core.errors import ClusterlabError
from clusterlab.utils.hashing import sha256_text


class ClusterToken:
    """Write-once join secret.

    Generated by the step that initialises the primary and read-only from then
    on, so readers never race a writer.
    """

    def __init__(self) -> None:
        self._value: str | None = None

    def generate(self, nbytes: int = 24) -> str:
        return self.set(secrets.token_hex(nbytes))

    def set(self, value: str) -> str:
        if self._value is not None:
            raise ClusterlabError("cluster token already issued for this run")
        if not value:
            raise ClusterlabError("cluster token must not be empty")
        self._value = value
        return value

    @property
    def issued(self) -> bool:
        return self._value is not None

    @property
    def value(self) -> str:
        if self._value is None:
            raise ClusterlabError("cluster token read before the primary issued it")
        return self._value

    def fingerprint(self) -> str:
        return sha256_text(self.value)[:16]

    def discard(self) -> None:
        self._value = None
