"""Off-chain mirror of a Solana bonding curve token market."""

__version__ = "0.1.0"
