"""
Orchestration and recovery engine for bridging NFTs between EVM chains,
Solana and the Internet Computer.
"""

__version__ = "0.1.0"
