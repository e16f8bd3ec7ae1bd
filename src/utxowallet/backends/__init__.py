"""
Blockchain data provider backends.

Available backends:
- EsploraBackend: Esplora REST API (blockstream.info, mempool.space, self-hosted)

ProviderSet wraps an ordered list of backends and falls back from one to
the next on network errors, non-2xx responses and timeouts.
"""

from utxowallet.backends.base import ProviderBackend
from utxowallet.backends.esplora import EsploraBackend
from utxowallet.backends.provider_set import ProviderSet

__all__ = [
    "EsploraBackend",
    "ProviderBackend",
    "ProviderSet",
]
