"""Blockchain side of wallet-cron.

Chain registry, a synchronous multi-chain Web3 provider, the per-address
nonce lock, 0x swaps on Base, and the wallet manager that ties them to the
key-value store.
"""
