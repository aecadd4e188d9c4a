"""Operator control plane."""

from relaybot.gateway.api import create_control_app

__all__ = ["create_control_app"]
