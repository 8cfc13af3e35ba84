"""Identity-provider client registry.

Read-only at request time: built once from settings and only ever queried.
"""

from collections.abc import Iterable, Iterator
from types import MappingProxyType

from backchannel_logout.core.config import OIDCClientSettings

ClientConfig = OIDCClientSettings


class ClientRegistry:
    """Looks up configured identity-provider clients by issuer."""

    def __init__(self, clients: Iterable[ClientConfig]):
        by_issuer: dict[str, ClientConfig] = {}
        for client in clients:
            if client.issuer in by_issuer:
                raise ValueError(f"Duplicate issuer in client registry: {client.issuer}")
            by_issuer[client.issuer] = client
        self._by_issuer = MappingProxyType(by_issuer)

    def resolve_by_issuer(self, issuer: str | None) -> ClientConfig | None:
        """Return the client registered for ``issuer``, or None."""
        if not isinstance(issuer, str) or not issuer:
            return None
        return self._by_issuer.get(issuer)

    def __iter__(self) -> Iterator[ClientConfig]:
        return iter(self._by_issuer.values())

    def __len__(self) -> int:
        return len(self._by_issuer)
