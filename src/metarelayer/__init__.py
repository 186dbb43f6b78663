"""Relay trader-signed instructions to an on-ledger venue through a rotating pool of signers."""

__version__ = "0.1.0"
