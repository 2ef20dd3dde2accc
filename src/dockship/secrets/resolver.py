"""Resolve descriptor secret references at deploy time."""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, Mapping, Optional

from ..descriptor.models import SecretReference
from ..errors import SecretUnavailable
from ..utils.logging import get_logger, register_secrets, unregister_secrets
from .backends import SecretBackend

logger = get_logger(__name__)


class ResolvedSecrets(Mapping[str, str]):
    """Secret values for one deploy run.

    Use as a context manager: values are masked in log output while the block
    runs and the mapping is emptied when it exits.
    """

    def __init__(self, values: Dict[str, str]) -> None:
        self._values = dict(values)
        self._registered: list[str] = []

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ResolvedSecrets(names={sorted(self._values)})"

    def __enter__(self) -> "ResolvedSecrets":
        self._registered = list(self._values.values())
        register_secrets(self._registered)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.scrub()

    @property
    def scrubbed(self) -> bool:
        return not self._values

    def scrub(self) -> None:
        self._values.clear()
        unregister_secrets(self._registered)
        self._registered = []


class SecretResolver:
    """Queries the configured backend for every reference, in order."""

    def __init__(self, backends: Mapping[str, SecretBackend]) -> None:
        self.backends = dict(backends)

    def resolve(
        self, references: Iterable[SecretReference], *, service: Optional[str] = None
    ) -> ResolvedSecrets:
        values: Dict[str, str] = {}
        for reference in references:
            backend = self.backends.get(reference.source)
            if backend is None:
                values.clear()
                raise SecretUnavailable(
                    reference.name, f"no backend configured for source {reference.source!r}",
                    service=service,
                )
            try:
                values[reference.name] = backend.fetch(reference)
            except SecretUnavailable as exc:
                values.clear()
                exc.service = service
                raise
            logger.debug("Resolved secret %s from %s", reference.name, reference.source)
        return ResolvedSecrets(values)
