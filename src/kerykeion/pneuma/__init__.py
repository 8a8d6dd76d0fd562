"""
Pneuma - On-chain interaction layer for Kerykeion.

Provides the JSON-RPC client, fee & nonce planning, ABI codec,
transaction building and signing, confirmation tracking and live
subscriptions.

Uses httpx + eth-account + eth-abi instead of the heavyweight web3.py.
"""
