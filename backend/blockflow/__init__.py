"""Blockflow: block-graph automations compiled into sandboxed scripts."""

__version__ = "0.1.0"
