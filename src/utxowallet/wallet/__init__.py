"""
Send pipeline components and the wallet orchestrator.

Import from the submodules directly; the backends package depends on
``utxowallet.wallet.models``, so this package stays import-free.
"""
