"""Configuration: defaults and topology loading.

Import the submodules directly (``testnet.config.defaults``,
``testnet.config.topology``); this package does not re-export them so that
low-level modules can depend on ``defaults`` without loading the topology
parser.
"""
