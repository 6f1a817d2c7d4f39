"""Command line entry point (``testnet``)."""
