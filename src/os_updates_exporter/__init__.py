"""Periodic host-compliance agent for pending OS package updates."""

__version__ = "0.1.0"
__commit__ = "none"
