import os
from collections.abc import Mapping
from typing import Any, Optional


class ConfigSource(Mapping):
    """
    Read-only lookup of constants across layers; the first layer holding a key wins.
    """

    def __init__(self, *layers: Mapping):
        self.layers = layers

    def __getitem__(self, key: str) -> Any:
        for layer in self.layers:
            if key in layer:
                return layer[key]
        raise KeyError(key)

    def __iter__(self):
        seen = set()
        for layer in self.layers:
            for key in layer:
                if key not in seen:
                    seen.add(key)
                    yield key

    def __len__(self) -> int:
        return sum(1 for _ in self)

    @classmethod
    def for_network(
        cls, manifest, network: str, environ: Optional[Mapping] = None
    ) -> "ConfigSource":
        """Network constants, then manifest constants, then the process environment."""
        network_config = manifest.network(network)
        environ = os.environ if environ is None else environ
        return cls(network_config.constants, manifest.constants, environ)
